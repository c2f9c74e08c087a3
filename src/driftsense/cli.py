#!/usr/bin/env python3
"""CLI for classifying edits and replaying recorded editor sessions."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .change_filter import ChangeFilter
from .config import SmartDiagnosticsConfig
from .diagnostics import SmartDiagnostics
from .rpc_client import create_client_from_env
from .types import DocumentChangeEvent, DriftRequest, Range, RawChange, TextDocument

logger = logging.getLogger(__name__)


class DryRunDriftClient:
    """Client that records requests instead of sending them."""

    def __init__(self) -> None:
        self.requests: list[DriftRequest] = []

    @property
    def is_running(self) -> bool:
        return True

    async def check_drift(self, request: DriftRequest) -> Any:
        self.requests.append(request)
        logger.info(
            "Would send drift check for %s v%d range=%s scope=%s",
            request.uri,
            request.version,
            request.affected_range.to_dict(),
            request.scope.name if request.scope else None,
        )
        return None


def _document_from_event(event: dict[str, Any]) -> TextDocument:
    return TextDocument(
        uri=str(event["uri"]),
        language_id=str(event.get("languageId", "plaintext")),
        version=int(event.get("version", 0)),
        text=str(event.get("text", "")),
    )


def load_events(path: Path) -> list[dict[str, Any]]:
    """Read a JSON-lines event recording, skipping blank lines."""
    events: list[dict[str, Any]] = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ValueError(f"{path}:{lineno}: invalid JSON: {exc}") from exc
        if not isinstance(event, dict) or event.get("type") not in ("change", "save"):
            raise ValueError(f"{path}:{lineno}: expected a change or save event")
        events.append(event)
    return events


async def replay_events(
    events: list[dict[str, Any]],
    diagnostics: SmartDiagnostics,
) -> dict[str, int]:
    """Feed recorded events through the pipeline and wait for it to settle."""
    for event in events:
        delay_ms = float(event.get("delayMs", 0))
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000.0)

        document = _document_from_event(event)
        if event["type"] == "change":
            changes = tuple(RawChange.from_dict(c) for c in event.get("changes", []))
            diagnostics.on_document_change(DocumentChangeEvent(document, changes))
        else:
            diagnostics.on_document_save(document)

    # Let every idle window elapse, then wait for dispatches.
    while diagnostics.edit_buffer.pending_uris:
        await asyncio.sleep(diagnostics.config.idle_ms / 1000.0 + 0.01)
    await diagnostics.drain()
    return diagnostics.get_stats()


def _run_classify(args: argparse.Namespace) -> None:
    lines = args.new.split("\n")
    document = TextDocument(
        uri="file:///classify",
        language_id=args.language,
        version=1,
        text=args.new,
    )
    change = RawChange(
        range=Range.of(0, 0, len(lines) - 1, len(lines[-1])),
        text=args.new,
        old_text=args.old,
    )
    result = ChangeFilter().classify(document, [change])
    if args.json:
        payload = {
            "changeType": result.change_type.value,
            "isSignificant": result.is_significant,
            "affectedRange": result.affected_range.to_dict(),
        }
        print(json.dumps(payload, indent=2))
    else:
        print(f"Type: {result.change_type.value}")
        print(f"Significant: {result.is_significant}")


def _run_replay(args: argparse.Namespace) -> int:
    try:
        events = load_events(Path(args.events))
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    config = SmartDiagnosticsConfig.from_env()
    if args.idle_ms is not None:
        config = SmartDiagnosticsConfig(idle_ms=args.idle_ms, enabled=True, filter=config.filter)

    if args.dry_run:
        client: Any = DryRunDriftClient()
        outline_provider = None
    else:
        client = create_client_from_env(args.server)
        outline_provider = client

    async def _main() -> dict[str, int]:
        with SmartDiagnostics(config, client=client, outline_provider=outline_provider) as diag:
            return await replay_events(events, diag)

    try:
        stats = asyncio.run(_main())
    finally:
        close = getattr(client, "close", None)
        if close is not None:
            close()

    if args.json:
        print(json.dumps(stats, indent=2))
    else:
        print(f"Total changes: {stats['total_changes']}")
        print(f"Filtered out:  {stats['filtered_out']}")
        print(f"Sent:          {stats['sent_to_lsp']}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Debounced, scope-aware drift notifications for source edits"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    classify_parser = subparsers.add_parser("classify", help="Classify a single text replacement")
    classify_parser.add_argument("--language", required=True, help="Document language id")
    classify_parser.add_argument("--old", required=True, help="Replaced text")
    classify_parser.add_argument("--new", required=True, help="Inserted text")
    classify_parser.add_argument("--json", action="store_true", help="Output as JSON")

    replay_parser = subparsers.add_parser("replay", help="Replay recorded change/save events")
    replay_parser.add_argument("events", help="JSON-lines file of change/save events")
    replay_parser.add_argument("--idle-ms", type=int, default=None, help="Idle window override")
    replay_parser.add_argument("--server", default=None, help="Analysis service command")
    replay_parser.add_argument(
        "--dry-run", action="store_true", help="Log requests instead of sending them"
    )
    replay_parser.add_argument("--json", action="store_true", help="Output as JSON")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "classify":
        _run_classify(args)
        return 0
    if args.command == "replay":
        return _run_replay(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
