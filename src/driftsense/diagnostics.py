"""
Smart drift diagnostics: classify, debounce, scope and dispatch edits.

Raw change events are classified; significant ones are buffered per
document. When a document goes idle (or is saved) its buffered edits are
collapsed into one affected range, resolved to an enclosing scope and sent
to the remote analysis service as a single request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import asdict, dataclass, replace
from typing import Any, Protocol

from .change_filter import ChangeFilter
from .config import FilterConfig, SmartDiagnosticsConfig
from .context import CloseOnExitMixin
from .edit_buffer import EditBuffer
from .scope_tracker import OutlineProvider, ScopeTracker
from .symbol_cache import DEFAULT_SYMBOL_CACHE_SIZE
from .types import BufferedEdit, DocumentChangeEvent, DriftRequest, EditScope, TextDocument

logger = logging.getLogger(__name__)

FAILURE_THRESHOLD = 3
NOTIFICATION_COOLDOWN_SECONDS = 60.0
UNAVAILABLE_MESSAGE = (
    "Drift detection temporarily unavailable. Check the driftsense log output for details."
)


class DriftClient(Protocol):
    """Request/response channel to the remote analysis service."""

    @property
    def is_running(self) -> bool:
        """Whether the service can currently accept requests."""
        ...

    async def check_drift(self, request: DriftRequest) -> Any:
        """Send one drift-check request; raise on any transport failure."""
        ...


class NullDriftClient:
    """Client used when no analysis service is connected."""

    @property
    def is_running(self) -> bool:
        return False

    async def check_drift(self, request: DriftRequest) -> Any:
        raise RuntimeError(f"No analysis service connected for {request.uri}")


@dataclass
class DispatchStats:
    total_changes: int = 0
    filtered_out: int = 0
    sent_to_lsp: int = 0


class SmartDiagnostics(CloseOnExitMixin):
    """Wires ChangeFilter, EditBuffer and ScopeTracker to a DriftClient."""

    def __init__(
        self,
        config: SmartDiagnosticsConfig | None = None,
        *,
        client: DriftClient | None = None,
        outline_provider: OutlineProvider | None = None,
        notify: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        cache_size: int = DEFAULT_SYMBOL_CACHE_SIZE,
    ) -> None:
        self._config = config or SmartDiagnosticsConfig()
        self._client: DriftClient = client if client is not None else NullDriftClient()
        self._notify = notify if notify is not None else logger.warning
        self._clock = clock

        self._change_filter = ChangeFilter(self._config.filter)
        self._scope_tracker = ScopeTracker(outline_provider, cache_size)
        self._edit_buffer = EditBuffer(self._config.idle_ms)
        self._edit_buffer.on_idle(self._on_buffer_idle)

        self._stats = DispatchStats()
        self._consecutive_failures = 0
        self._last_notification_time: float | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    # =========================================================================
    # Wiring
    # =========================================================================

    @property
    def config(self) -> SmartDiagnosticsConfig:
        return self._config

    @property
    def edit_buffer(self) -> EditBuffer:
        return self._edit_buffer

    @property
    def scope_tracker(self) -> ScopeTracker:
        return self._scope_tracker

    def set_client(self, client: DriftClient) -> None:
        self._client = client

    def set_outline_provider(self, provider: OutlineProvider) -> None:
        self._scope_tracker.set_provider(provider)

    def update_config(
        self,
        *,
        idle_ms: int | None = None,
        enabled: bool | None = None,
        filter: FilterConfig | Mapping[str, bool] | None = None,
    ) -> None:
        """Apply live configuration changes without rebuilding the pipeline."""
        if idle_ms is not None:
            self._edit_buffer.set_idle_ms(idle_ms)
            self._config = replace(self._config, idle_ms=idle_ms)
        if filter is not None:
            if isinstance(filter, FilterConfig):
                merged = filter
            else:
                merged = self._config.filter.merged(**filter)
            self._change_filter.update_config(merged)
            self._config = replace(self._config, filter=merged)
        if enabled is not None:
            self._config = replace(self._config, enabled=enabled)

    # =========================================================================
    # Event intake
    # =========================================================================

    def on_document_change(self, event: DocumentChangeEvent) -> None:
        if not self._config.enabled:
            return

        document = event.document
        if not document.is_file:
            return

        self._stats.total_changes += 1

        classification = self._change_filter.classify(document, event.content_changes)
        logger.debug(
            "Change in %s: type=%s, significant=%s",
            document.uri,
            classification.change_type.value,
            classification.is_significant,
        )

        if not classification.is_significant:
            self._stats.filtered_out += 1
            return

        self._edit_buffer.add_edit(document, event.content_changes)
        logger.debug(
            "Buffered %s (%d edits pending)",
            document.uri,
            self._edit_buffer.get_buffered_edit_count(document.uri),
        )

    def on_document_save(self, document: TextDocument) -> asyncio.Task[None] | None:
        """Flush a saved document immediately, bypassing the idle window."""
        if not self._config.enabled or not document.is_file:
            return None

        entry = self._edit_buffer.flush(document.uri)
        if entry is None or not entry.edits:
            return None

        logger.debug(f"Flushing on save: {len(entry.edits)} edits for {document.uri}")
        return self._schedule(document.uri, entry.document, entry.edits)

    def _on_buffer_idle(self, uri: str, document: TextDocument, edits: list[BufferedEdit]) -> None:
        self._schedule(uri, document, edits)

    def _schedule(
        self, uri: str, document: TextDocument, edits: list[BufferedEdit]
    ) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(self.process_edits(uri, document, edits))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight processing task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Processing
    # =========================================================================

    async def process_edits(
        self, uri: str, document: TextDocument, edits: Sequence[BufferedEdit]
    ) -> None:
        if not self._client.is_running:
            logger.debug(f"Analysis service not running, skipping drift check for {uri}")
            return

        if not edits:
            return

        # Counts attempts; a failed or hung dispatch is still counted.
        self._stats.sent_to_lsp += 1

        combined_range = self._edit_buffer.get_combined_range(edits)

        scope: EditScope | None = None
        try:
            scope = await self._scope_tracker.get_enclosing_scope_for_range(
                document, combined_range
            )
        except Exception as exc:
            logger.debug(f"Failed to resolve scope for {uri}: {exc}")

        logger.debug(
            "Sending %d edits for %s, scope=%s (%s)",
            len(edits),
            uri,
            scope.name if scope else "none",
            scope.kind.value if scope else "unknown",
        )

        request = DriftRequest(
            uri=uri,
            content=document.get_text(),
            version=document.version,
            affected_range=combined_range,
            scope=scope,
        )
        await self._dispatch(request)

    async def _dispatch(self, request: DriftRequest) -> None:
        try:
            await self._client.check_drift(request)
        except Exception as exc:
            logger.debug(f"Drift check failed for {request.uri}: {exc}")
            self._handle_failure()
            return
        self._consecutive_failures = 0

    def _handle_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures < FAILURE_THRESHOLD:
            return

        now = self._clock()
        last = self._last_notification_time
        if last is None or now - last >= NOTIFICATION_COOLDOWN_SECONDS:
            self._last_notification_time = now
            self._notify(UNAVAILABLE_MESSAGE)
        else:
            logger.debug("Suppressing unavailable warning during cooldown")
        # The streak restarts whether or not the warning was shown.
        self._consecutive_failures = 0

    # =========================================================================
    # Stats and lifecycle
    # =========================================================================

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def get_stats(self) -> dict[str, int]:
        return asdict(self._stats)

    def reset_stats(self) -> None:
        self._stats = DispatchStats()

    def dispose(self) -> None:
        """Cancel idle timers, drop unflushed edits and clear cached outlines."""
        logger.debug(f"Disposing smart diagnostics: {self.get_stats()}")
        self._edit_buffer.dispose()
        self._scope_tracker.clear_cache()

    close = dispose
