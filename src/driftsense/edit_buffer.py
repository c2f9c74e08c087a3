"""
Per-document debounced edit accumulator.

Each URI gets one buffer entry and one single-shot idle timer. Every new edit
cancels and restarts the timer, so a document only fires after a strictly
idle interval.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence

from .config import DEFAULT_IDLE_MS
from .context import CloseOnExitMixin
from .types import BufferedEdit, BufferEntry, Range, RawChange, TextDocument, combine_ranges

logger = logging.getLogger(__name__)

IdleCallback = Callable[[str, TextDocument, list[BufferedEdit]], None]


class EditBuffer(CloseOnExitMixin):
    """
    Debounces bursts of edits per document.

    Timers run on the asyncio loop that is current when an edit is added;
    all methods must be called from that loop's thread.
    """

    def __init__(self, idle_ms: int = DEFAULT_IDLE_MS) -> None:
        self._idle_ms = 0
        self.set_idle_ms(idle_ms)
        self._entries: dict[str, BufferEntry] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._idle_callback: IdleCallback | None = None
        self._disposed = False

    @property
    def idle_ms(self) -> int:
        return self._idle_ms

    def set_idle_ms(self, idle_ms: int) -> None:
        """Change the idle window; pending timers keep their original deadline."""
        if idle_ms < 0:
            raise ValueError(f"idle_ms must be >= 0, got {idle_ms}")
        self._idle_ms = idle_ms

    def on_idle(self, callback: IdleCallback) -> None:
        self._idle_callback = callback

    def add_edit(self, document: TextDocument, changes: Sequence[RawChange]) -> None:
        if self._disposed:
            logger.debug(f"Ignoring edit for {document.uri}: buffer disposed")
            return

        # Raises before any state changes when called off the loop.
        loop = asyncio.get_running_loop()

        uri = document.uri
        entry = self._entries.get(uri)
        if entry is None:
            entry = BufferEntry(document=document)
            self._entries[uri] = entry

        entry.document = document
        entry.edits.append(
            BufferedEdit(changes=tuple(changes), timestamp=time.time(), version=document.version)
        )
        self._reset_timer(loop, uri)

    def flush(self, uri: str) -> BufferEntry | None:
        """Cancel the pending timer and take the entry, if any."""
        self._cancel_timer(uri)
        return self._entries.pop(uri, None)

    def flush_all(self) -> dict[str, BufferEntry]:
        for uri in list(self._timers):
            self._cancel_timer(uri)
        entries = dict(self._entries)
        self._entries.clear()
        return entries

    def has_buffered_edits(self, uri: str) -> bool:
        entry = self._entries.get(uri)
        return entry is not None and bool(entry.edits)

    def get_buffered_edit_count(self, uri: str) -> int:
        entry = self._entries.get(uri)
        return len(entry.edits) if entry is not None else 0

    @property
    def pending_uris(self) -> list[str]:
        return list(self._entries)

    @staticmethod
    def get_combined_range(edits: Sequence[BufferedEdit]) -> Range:
        """Smallest range covering every change of every edit."""
        return combine_ranges(change.range for edit in edits for change in edit.changes)

    def _reset_timer(self, loop: asyncio.AbstractEventLoop, uri: str) -> None:
        self._cancel_timer(uri)
        self._timers[uri] = loop.call_later(self._idle_ms / 1000.0, self._on_timer_fired, uri)

    def _cancel_timer(self, uri: str) -> None:
        timer = self._timers.pop(uri, None)
        if timer is not None:
            timer.cancel()

    def _on_timer_fired(self, uri: str) -> None:
        self._timers.pop(uri, None)
        entry = self._entries.get(uri)
        if entry is None or not entry.edits:
            return

        # Drop the entry first so edits made by the callback start a fresh one.
        del self._entries[uri]

        if self._idle_callback is None:
            return
        try:
            self._idle_callback(uri, entry.document, entry.edits)
        except Exception:
            logger.exception(f"Error in idle callback for {uri}")

    def dispose(self) -> None:
        """Cancel all timers and drop buffered edits without invoking callbacks."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._entries.clear()
        self._disposed = True

    close = dispose
