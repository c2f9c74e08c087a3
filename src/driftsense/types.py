"""
Immutable value types shared by the change pipeline.

Documents, ranges and outline trees are snapshots: nothing here holds a
reference back into live editor state.
"""

from __future__ import annotations

import enum
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit


@dataclass(frozen=True, order=True)
class Position:
    """Zero-based line/character position."""

    line: int
    character: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"line": self.line, "character": self.character}

    @classmethod
    def from_dict(cls, data: Any) -> Position:
        if not isinstance(data, dict):
            return cls(0, 0)
        return cls(line=int(data.get("line", 0)), character=int(data.get("character", 0)))


@dataclass(frozen=True)
class Range:
    """Range between two positions, inclusive on both ends for containment."""

    start: Position
    end: Position

    @classmethod
    def of(cls, start_line: int, start_char: int, end_line: int, end_char: int) -> Range:
        return cls(Position(start_line, start_char), Position(end_line, end_char))

    @property
    def is_empty(self) -> bool:
        return self.start == self.end

    def contains(self, other: Position | Range) -> bool:
        """Check whether a position or a whole range lies inside this range."""
        if isinstance(other, Range):
            return self.contains(other.start) and self.contains(other.end)
        return self.start <= other <= self.end

    def union(self, other: Range) -> Range:
        return Range(start=min(self.start, other.start), end=max(self.end, other.end))

    def to_dict(self) -> dict[str, dict[str, int]]:
        return {"start": self.start.to_dict(), "end": self.end.to_dict()}

    @classmethod
    def from_dict(cls, data: Any) -> Range:
        if not isinstance(data, dict):
            return EMPTY_RANGE
        return cls(
            start=Position.from_dict(data.get("start")),
            end=Position.from_dict(data.get("end")),
        )


EMPTY_RANGE = Range(Position(0, 0), Position(0, 0))


def combine_ranges(ranges: Iterator[Range] | Sequence[Range]) -> Range:
    """Smallest range covering every input range; empty input yields (0,0)-(0,0)."""
    combined: Range | None = None
    for item in ranges:
        combined = item if combined is None else combined.union(item)
    return combined if combined is not None else EMPTY_RANGE


@dataclass(frozen=True)
class RawChange:
    """
    One content delta from an editor change event.

    ``range`` is expressed in pre-change coordinates. ``old_text`` carries the
    replaced text when the event source knows it.
    """

    range: Range
    text: str
    range_length: int = 0
    old_text: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RawChange:
        return cls(
            range=Range.from_dict(data.get("range")),
            text=str(data.get("text", "")),
            range_length=int(data.get("rangeLength", 0)),
            old_text=data.get("oldText"),
        )


@dataclass(frozen=True)
class TextDocument:
    """Snapshot of an open document at one version."""

    uri: str
    language_id: str
    version: int
    text: str

    @property
    def scheme(self) -> str:
        return urlsplit(self.uri).scheme

    @property
    def is_file(self) -> bool:
        """Whether the document is backed by a file on disk."""
        return self.scheme == "file"

    @property
    def lines(self) -> list[str]:
        return self.text.split("\n")

    @property
    def line_count(self) -> int:
        return len(self.lines)

    def line_at(self, line: int) -> str:
        lines = self.lines
        if line < 0 or line >= len(lines):
            raise IndexError(f"Line {line} out of range for {self.uri}")
        return lines[line].rstrip("\r")

    def offset_at(self, position: Position) -> int:
        """Character offset of a position, clamped to the document bounds."""
        lines = self.lines
        line = min(max(position.line, 0), len(lines) - 1)
        offset = sum(len(text) + 1 for text in lines[:line])
        return offset + min(max(position.character, 0), len(lines[line]))

    def get_text(self, text_range: Range | None = None) -> str:
        if text_range is None:
            return self.text
        start = self.offset_at(text_range.start)
        end = self.offset_at(text_range.end)
        return self.text[start:end] if end >= start else ""


@dataclass(frozen=True)
class DocumentChangeEvent:
    """A batch of deltas applied to one document."""

    document: TextDocument
    content_changes: tuple[RawChange, ...]


class ChangeType(str, enum.Enum):
    CODE = "code"
    COMMENT = "comment"
    WHITESPACE = "whitespace"
    FORMATTING = "formatting"
    MIXED = "mixed"


@dataclass(frozen=True)
class ChangeClassification:
    is_significant: bool
    change_type: ChangeType
    affected_range: Range


@dataclass(frozen=True)
class BufferedEdit:
    """One change event held by the edit buffer."""

    changes: tuple[RawChange, ...]
    timestamp: float
    version: int


@dataclass
class BufferEntry:
    """Pending edits for one URI plus the latest document snapshot."""

    document: TextDocument
    edits: list[BufferedEdit] = field(default_factory=list)


class SymbolKind(enum.IntEnum):
    """LSP SymbolKind numbering (https://microsoft.github.io/language-server-protocol/)."""

    FILE = 1
    MODULE = 2
    NAMESPACE = 3
    PACKAGE = 4
    CLASS = 5
    METHOD = 6
    PROPERTY = 7
    FIELD = 8
    CONSTRUCTOR = 9
    ENUM = 10
    INTERFACE = 11
    FUNCTION = 12
    VARIABLE = 13
    CONSTANT = 14
    STRING = 15
    NUMBER = 16
    BOOLEAN = 17
    ARRAY = 18
    OBJECT = 19
    KEY = 20
    NULL = 21
    ENUM_MEMBER = 22
    STRUCT = 23
    EVENT = 24
    OPERATOR = 25
    TYPE_PARAMETER = 26


@dataclass(frozen=True)
class OutlineSymbol:
    """Nested symbol tree as returned by an outline provider."""

    name: str
    kind: int
    range: Range
    children: tuple[OutlineSymbol, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class OutlineNode:
    """Arena node: children and parent are indices into the owning Outline."""

    index: int
    name: str
    kind: int
    range: Range
    parent: int | None
    children: tuple[int, ...]


class Outline:
    """Flattened outline tree addressed by node index."""

    def __init__(self, nodes: Sequence[OutlineNode], roots: Sequence[int]) -> None:
        self._nodes = tuple(nodes)
        self._roots = tuple(roots)

    @classmethod
    def from_symbols(cls, symbols: Sequence[OutlineSymbol]) -> Outline:
        nodes: list[OutlineNode | None] = []

        def add(symbol: OutlineSymbol, parent: int | None) -> int:
            index = len(nodes)
            nodes.append(None)
            children = tuple(add(child, index) for child in symbol.children)
            nodes[index] = OutlineNode(
                index=index,
                name=symbol.name,
                kind=symbol.kind,
                range=symbol.range,
                parent=parent,
                children=children,
            )
            return index

        roots = [add(symbol, None) for symbol in symbols]
        return cls([node for node in nodes if node is not None], roots)

    @property
    def roots(self) -> tuple[int, ...]:
        return self._roots

    def node(self, index: int) -> OutlineNode:
        return self._nodes[index]

    def ancestors(self, index: int) -> Iterator[OutlineNode]:
        """Yield parents from nearest to outermost."""
        parent = self._nodes[index].parent
        while parent is not None:
            node = self._nodes[parent]
            yield node
            parent = node.parent

    def walk(self) -> Iterator[OutlineNode]:
        """Pre-order traversal over every node."""
        stack = list(reversed(self._roots))
        while stack:
            node = self._nodes[stack.pop()]
            yield node
            stack.extend(reversed(node.children))

    def __len__(self) -> int:
        return len(self._nodes)

    def __bool__(self) -> bool:
        return bool(self._nodes)


class ScopeKind(str, enum.Enum):
    FUNCTION = "function"
    METHOD = "method"
    CLASS = "class"
    MODULE = "module"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class EditScope:
    """Smallest named unit enclosing an edit."""

    name: str
    kind: ScopeKind
    range: Range
    symbol_kind: int
    class_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "range": self.range.to_dict(),
        }
        if self.class_name is not None:
            payload["className"] = self.class_name
        return payload


@dataclass(frozen=True)
class DriftRequest:
    """Payload of one outbound drift-check request."""

    uri: str
    content: str
    version: int
    affected_range: Range
    scope: EditScope | None = None

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "uri": self.uri,
            "content": self.content,
            "version": self.version,
            "affectedRange": self.affected_range.to_dict(),
        }
        if self.scope is not None:
            params["scope"] = self.scope.to_dict()
        return params
