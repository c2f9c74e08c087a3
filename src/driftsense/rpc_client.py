"""Subprocess JSON-RPC client for the remote drift analysis service."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import select
import shlex
import subprocess
import threading
import time
from collections.abc import Sequence
from functools import partial
from typing import Any

import anyio

from .types import DriftRequest, OutlineSymbol, Range, TextDocument

logger = logging.getLogger(__name__)

CHECK_DRIFT_METHOD = "vokt/checkDrift"
DEFAULT_SERVER_COMMAND = ("vokt", "lsp", "serve")
SERVER_COMMAND_ENV_VAR = "DRIFTSENSE_SERVER_COMMAND"
REQUEST_TIMEOUT_ENV_VAR = "DRIFTSENSE_REQUEST_TIMEOUT"

_HEADER_END = b"\r\n\r\n"
_READ_CHUNK = 65536


def _content_length(header: bytes) -> int:
    for line in header.decode("ascii", errors="replace").split("\r\n"):
        name, _, value = line.partition(":")
        if name.strip().lower() == "content-length":
            length = int(value)
            if length < 0:
                raise ValueError(f"Negative Content-Length: {length}")
            return length
    raise ValueError("Frame header without Content-Length")


class _FramedPipe:
    """
    ``Content-Length`` framed JSON messages over a child's stdin/stdout.

    Both directions wait with ``select`` against an absolute deadline, so a
    server that stops reading or answering raises ``TimeoutError`` instead
    of blocking the calling thread. POSIX pipes only.
    """

    def __init__(self, proc: subprocess.Popen[bytes]) -> None:
        if proc.stdin is None or proc.stdout is None:
            raise RuntimeError("Analysis service was started without pipes")
        self._stdin = proc.stdin
        self._stdout = proc.stdout
        os.set_blocking(self._stdin.fileno(), False)
        self._buffer = bytearray()

    def send(self, payload: dict[str, Any], deadline: float) -> None:
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        pending = memoryview(b"Content-Length: %d\r\n\r\n" % len(body) + body)
        fd = self._stdin.fileno()
        while pending:
            _wait_until(deadline, writable=fd)
            try:
                written = os.write(fd, pending)
            except BlockingIOError:
                continue
            pending = pending[written:]

    def receive(self, deadline: float) -> dict[str, Any]:
        """Next complete message; ``EOFError`` once the server closes stdout."""
        while True:
            message = self._take_message()
            if message is not None:
                return message
            fd = self._stdout.fileno()
            _wait_until(deadline, readable=fd)
            chunk = os.read(fd, _READ_CHUNK)
            if not chunk:
                raise EOFError("Analysis service closed its output")
            self._buffer += chunk

    def _take_message(self) -> dict[str, Any] | None:
        header_end = self._buffer.find(_HEADER_END)
        if header_end < 0:
            return None

        length = _content_length(bytes(self._buffer[:header_end]))
        body_start = header_end + len(_HEADER_END)
        if len(self._buffer) - body_start < length:
            return None

        body = bytes(self._buffer[body_start : body_start + length])
        del self._buffer[: body_start + length]
        message = json.loads(body)
        if not isinstance(message, dict):
            raise ValueError(f"Expected a JSON object, got {type(message).__name__}")
        return message

    def close(self) -> None:
        for stream in (self._stdin, self._stdout):
            with contextlib.suppress(OSError):
                stream.close()


def _wait_until(
    deadline: float, *, readable: int | None = None, writable: int | None = None
) -> None:
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("Analysis service did not respond in time")
        ready_r, ready_w, _ = select.select(
            [] if readable is None else [readable],
            [] if writable is None else [writable],
            [],
            remaining,
        )
        if ready_r or ready_w:
            return


class SubprocessDriftClient:
    """
    Drift client speaking JSON-RPC 2.0 to a service on the child's stdio.

    Exchanges run one at a time under a lock, each bounded by
    ``request_timeout``. A timed-out or broken exchange kills the process
    and releases the lock; the next request starts a fresh process. The
    async entry points run the blocking exchange on a worker thread so the
    event loop keeps servicing other documents.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        request_timeout: float = 5.0,
        initialization_options: dict[str, Any] | None = None,
    ) -> None:
        self._command = tuple(command)
        self._request_timeout = request_timeout
        self._initialization_options = initialization_options or {}

        self._proc: subprocess.Popen[bytes] | None = None
        self._pipe: _FramedPipe | None = None
        self._initialized = False
        self._disabled = False
        self._server_name: str | None = None
        self._next_id = 1
        self._lock = threading.RLock()

    @property
    def server_name(self) -> str | None:
        """``serverInfo.name`` from the last initialize response."""
        return self._server_name

    @property
    def is_running(self) -> bool:
        """Whether the service can take requests (started lazily on first use)."""
        if self._disabled:
            return False
        return self._proc is None or self._proc.poll() is None

    # -------------------------------------------------------------------------
    # Process lifecycle
    # -------------------------------------------------------------------------

    def _ensure_ready(self) -> None:
        """Start and initialize the service if needed; raise RuntimeError if it cannot run."""
        if self._disabled:
            raise RuntimeError(f"Analysis service unavailable: {self._command}")
        if self._proc is not None:
            if self._proc.poll() is None and self._initialized:
                return
            self._discard(f"exited with code {self._proc.poll()}")

        if not self._command:
            self._disabled = True
            logger.warning("Cannot start analysis service: empty command")
            raise RuntimeError("Analysis service command is empty")

        try:
            proc = subprocess.Popen(
                self._command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                bufsize=0,
            )
        except OSError as exc:
            self._disabled = True
            logger.warning("Failed to start analysis service %s: %s", self._command, exc)
            raise RuntimeError(f"Analysis service unavailable: {self._command}") from exc

        self._proc = proc
        self._pipe = _FramedPipe(proc)
        self._next_id = 1
        self._handshake()

    def _handshake(self) -> None:
        params = {
            "processId": os.getpid(),
            "rootUri": None,
            "capabilities": {
                "textDocument": {"documentSymbol": {"hierarchicalDocumentSymbolSupport": True}}
            },
            "initializationOptions": self._initialization_options,
            "clientInfo": {"name": "driftsense"},
        }
        try:
            result = self._exchange("initialize", params)
            self._send_notification("initialized", {})
        except (TimeoutError, RuntimeError) as exc:
            self._discard("initialize failed")
            raise RuntimeError(f"Analysis service failed to initialize: {exc}") from exc

        server_info = result.get("serverInfo") if isinstance(result, dict) else None
        self._server_name = server_info.get("name") if isinstance(server_info, dict) else None
        self._initialized = True
        logger.debug(
            "Analysis service %s ready (%s)", self._command, self._server_name or "unnamed"
        )

    def _detach(self) -> subprocess.Popen[bytes] | None:
        proc, pipe = self._proc, self._pipe
        self._proc = None
        self._pipe = None
        self._initialized = False
        if pipe is not None:
            pipe.close()
        return proc

    def _discard(self, reason: str) -> None:
        """Kill the process without the shutdown handshake."""
        proc = self._detach()
        if proc is None:
            return
        logger.warning("Stopping analysis service %s: %s", self._command, reason)
        proc.kill()
        proc.wait()

    # -------------------------------------------------------------------------
    # Exchanges
    # -------------------------------------------------------------------------

    def _exchange(
        self, method: str, params: dict[str, Any] | None, *, timeout: float | None = None
    ) -> Any:
        """One request/response round trip; the caller holds the lock."""
        if self._pipe is None:
            raise RuntimeError("Analysis service is not started")

        limit = self._request_timeout if timeout is None else timeout
        deadline = time.monotonic() + limit
        request_id = self._next_id
        self._next_id += 1

        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params

        try:
            self._pipe.send(payload, deadline)
            reply = self._pipe.receive(deadline)
            # Skip server notifications and server-to-client requests.
            while "method" in reply or reply.get("id") != request_id:
                reply = self._pipe.receive(deadline)
        except TimeoutError:
            self._discard(f"no reply to {method} within {limit:.1f}s")
            raise TimeoutError(f"Timed out after {limit:.1f}s waiting for {method}") from None
        except (EOFError, OSError, ValueError) as exc:
            self._discard(f"transport failed during {method}")
            raise RuntimeError(f"Analysis service transport failed during {method}: {exc}") from exc

        if "error" in reply:
            raise RuntimeError(f"Analysis service error in {method}: {reply['error']}")
        return reply.get("result")

    def _send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        if self._pipe is None:
            raise RuntimeError("Analysis service is not started")

        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            payload["params"] = params
        try:
            self._pipe.send(payload, time.monotonic() + self._request_timeout)
        except OSError as exc:
            self._discard(f"transport failed during {method}")
            raise RuntimeError(f"Analysis service transport failed during {method}: {exc}") from exc

    def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Blocking request: start the service on demand, raise on any failure."""
        with self._lock:
            self._ensure_ready()
            return self._exchange(method, params)

    # -------------------------------------------------------------------------
    # Drift checks and outlines
    # -------------------------------------------------------------------------

    def check_drift_sync(self, request: DriftRequest) -> Any:
        return self.request(CHECK_DRIFT_METHOD, request.to_params())

    async def check_drift(self, request: DriftRequest) -> Any:
        return await anyio.to_thread.run_sync(self.check_drift_sync, request)

    def document_symbols_sync(self, document: TextDocument) -> list[OutlineSymbol] | None:
        """Outline of ``document`` as the service sees it, or None on any failure."""
        text_document = {"uri": document.uri}
        with self._lock:
            try:
                self._ensure_ready()
                self._send_notification(
                    "textDocument/didOpen",
                    {
                        "textDocument": {
                            **text_document,
                            "languageId": document.language_id,
                            "version": document.version,
                            "text": document.text,
                        }
                    },
                )
                try:
                    result = self._exchange(
                        "textDocument/documentSymbol", {"textDocument": text_document}
                    )
                finally:
                    if self._pipe is not None:
                        self._send_notification(
                            "textDocument/didClose", {"textDocument": text_document}
                        )
            except (TimeoutError, RuntimeError) as exc:
                logger.debug("No outline for %s: %s", document.uri, exc)
                return None
        return _parse_symbols(result)

    async def document_symbols(self, document: TextDocument) -> list[OutlineSymbol] | None:
        return await anyio.to_thread.run_sync(partial(self.document_symbols_sync, document))

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def close(self, *, force: bool = False) -> None:
        """Stop the service, sending ``shutdown``/``exit`` first unless ``force`` is set."""
        with self._lock:
            if self._initialized and not force:
                try:
                    self._exchange("shutdown", None, timeout=min(self._request_timeout, 1.0))
                    self._send_notification("exit")
                except (TimeoutError, RuntimeError) as exc:
                    logger.debug("Analysis service shutdown failed: %s", exc)

            proc = self._detach()
            if proc is None:
                return
            try:
                proc.wait(timeout=1.0)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()

    def __enter__(self) -> SubprocessDriftClient:
        return self

    def __exit__(self, _exc_type: Any, _exc: Any, _tb: Any) -> None:
        self.close()


def _parse_symbols(items: Any) -> list[OutlineSymbol]:
    """Accept both ``DocumentSymbol`` trees and flat ``SymbolInformation`` lists."""
    if not isinstance(items, list):
        return []
    symbols = (_parse_symbol(item) for item in items if isinstance(item, dict))
    return [symbol for symbol in symbols if symbol is not None]


def _parse_symbol(data: dict[str, Any]) -> OutlineSymbol | None:
    name = str(data.get("name", "<anonymous>"))
    try:
        kind = int(data.get("kind", 0))
    except (TypeError, ValueError):
        kind = 0

    if "range" in data:
        return OutlineSymbol(
            name=name,
            kind=kind,
            range=Range.from_dict(data["range"]),
            children=tuple(_parse_symbols(data.get("children"))),
        )

    location = data.get("location")
    if not isinstance(location, dict):
        return None
    return OutlineSymbol(name=name, kind=kind, range=Range.from_dict(location.get("range")))


def parse_command(command: Sequence[str] | str | None) -> list[str]:
    if command is None:
        return []
    if isinstance(command, str):
        return shlex.split(command)
    return [str(part) for part in command if str(part)]


def resolve_server_command(
    command: Sequence[str] | str | None = None,
    *,
    command_env_var: str = SERVER_COMMAND_ENV_VAR,
    default_command: Sequence[str] = DEFAULT_SERVER_COMMAND,
) -> tuple[list[str], str]:
    """Resolve effective command with precedence: explicit -> env -> default."""
    explicit = parse_command(command)
    if explicit:
        return explicit, "explicit"

    env_command = parse_command(os.getenv(command_env_var, ""))
    if env_command:
        return env_command, "env"

    return parse_command(default_command), "default"


def create_client_from_env(
    command: Sequence[str] | str | None = None,
    *,
    default_timeout: float = 5.0,
) -> SubprocessDriftClient:
    """Create a client from explicit/env/default command and env timeout."""
    resolved, source = resolve_server_command(command)
    logger.debug("Analysis service command %s (from %s)", resolved, source)

    timeout_text = os.getenv(REQUEST_TIMEOUT_ENV_VAR, str(default_timeout))
    try:
        timeout = float(timeout_text)
    except ValueError:
        timeout = default_timeout

    return SubprocessDriftClient(resolved, request_timeout=max(timeout, 0.1))
