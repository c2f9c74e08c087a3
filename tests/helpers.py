"""Shared test utilities."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from driftsense.types import (
    DocumentChangeEvent,
    DriftRequest,
    OutlineSymbol,
    Range,
    RawChange,
    SymbolKind,
    TextDocument,
)


def make_document(
    text: str = "",
    *,
    uri: str = "file:///test.ts",
    language_id: str = "typescript",
    version: int = 1,
) -> TextDocument:
    return TextDocument(uri=uri, language_id=language_id, version=version, text=text)


def make_change(
    start_line: int = 0,
    start_char: int = 0,
    end_line: int | None = None,
    end_char: int | None = None,
    text: str = "x",
    old_text: str | None = None,
) -> RawChange:
    return RawChange(
        range=Range.of(
            start_line,
            start_char,
            start_line if end_line is None else end_line,
            start_char if end_char is None else end_char,
        ),
        text=text,
        old_text=old_text,
    )


def make_event(document: TextDocument, *changes: RawChange) -> DocumentChangeEvent:
    return DocumentChangeEvent(document=document, content_changes=tuple(changes))


def make_symbol(
    name: str,
    kind: SymbolKind,
    start_line: int,
    end_line: int,
    children: Sequence[OutlineSymbol] = (),
    *,
    start_char: int = 0,
    end_char: int = 1,
) -> OutlineSymbol:
    return OutlineSymbol(
        name=name,
        kind=kind,
        range=Range.of(start_line, start_char, end_line, end_char),
        children=tuple(children),
    )


class FakeOutlineProvider:
    """Outline provider returning fixed symbols and counting calls."""

    def __init__(
        self,
        symbols: Sequence[OutlineSymbol] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.symbols = list(symbols) if symbols is not None else None
        self.error = error
        self.calls = 0

    async def document_symbols(self, document: TextDocument) -> Sequence[OutlineSymbol] | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.symbols


class RecordingDriftClient:
    """Drift client recording requests; optionally failing every call."""

    def __init__(self, *, running: bool = True, fail: bool = False) -> None:
        self.running = running
        self.fail = fail
        self.requests: list[DriftRequest] = []

    @property
    def is_running(self) -> bool:
        return self.running

    async def check_drift(self, request: DriftRequest) -> Any:
        self.requests.append(request)
        if self.fail:
            raise ConnectionError("analysis service unreachable")
        return {"ok": True}
