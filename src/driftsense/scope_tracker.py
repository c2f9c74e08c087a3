"""
Map an edited position or range to its enclosing named scope.

Outlines come from an external provider (usually a language server's
``textDocument/documentSymbol``) and are cached per document version.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from .symbol_cache import DEFAULT_SYMBOL_CACHE_SIZE, SymbolCache
from .types import (
    EditScope,
    Outline,
    OutlineNode,
    OutlineSymbol,
    Position,
    Range,
    ScopeKind,
    SymbolKind,
    TextDocument,
)

logger = logging.getLogger(__name__)

_RELEVANT_KINDS = frozenset(
    {
        SymbolKind.FUNCTION,
        SymbolKind.METHOD,
        SymbolKind.CLASS,
        SymbolKind.CONSTRUCTOR,
        SymbolKind.MODULE,
        SymbolKind.NAMESPACE,
        SymbolKind.INTERFACE,
        SymbolKind.STRUCT,
    }
)
_CLASS_LIKE_KINDS = frozenset({SymbolKind.CLASS, SymbolKind.STRUCT, SymbolKind.INTERFACE})

_SCOPE_KINDS = {
    SymbolKind.FUNCTION: ScopeKind.FUNCTION,
    SymbolKind.METHOD: ScopeKind.METHOD,
    SymbolKind.CONSTRUCTOR: ScopeKind.METHOD,
    SymbolKind.CLASS: ScopeKind.CLASS,
    SymbolKind.STRUCT: ScopeKind.CLASS,
    SymbolKind.INTERFACE: ScopeKind.CLASS,
    SymbolKind.MODULE: ScopeKind.MODULE,
    SymbolKind.NAMESPACE: ScopeKind.MODULE,
}


class OutlineProvider(Protocol):
    """Source of document outlines."""

    async def document_symbols(self, document: TextDocument) -> Sequence[OutlineSymbol] | None:
        """Return the symbol tree for a document, or None when unavailable."""
        ...


class NullOutlineProvider:
    """Fallback provider when no outline source is configured."""

    async def document_symbols(self, document: TextDocument) -> Sequence[OutlineSymbol] | None:
        del document
        return None


class ScopeTracker:
    """Resolve the finest function/method/class enclosing an edit."""

    def __init__(
        self,
        provider: OutlineProvider | None = None,
        cache_size: int = DEFAULT_SYMBOL_CACHE_SIZE,
    ) -> None:
        self._provider: OutlineProvider = (
            provider if provider is not None else NullOutlineProvider()
        )
        self._cache = SymbolCache(cache_size)

    def set_provider(self, provider: OutlineProvider) -> None:
        self._provider = provider

    async def get_enclosing_scope(
        self, document: TextDocument, position: Position
    ) -> EditScope | None:
        return await self._resolve(document, position)

    async def get_enclosing_scope_for_range(
        self, document: TextDocument, text_range: Range
    ) -> EditScope | None:
        """Scope containing the whole range, or None."""
        return await self._resolve(document, text_range)

    def clear_cache(self, uri: str | None = None) -> None:
        if uri is None:
            self._cache.clear()
        else:
            self._cache.evict(uri)

    def cache_info(self) -> dict[str, int]:
        return {
            "hits": self._cache.hits,
            "misses": self._cache.misses,
            "size": len(self._cache),
        }

    async def _resolve(self, document: TextDocument, target: Position | Range) -> EditScope | None:
        outline = await self._get_outline(document)
        if not outline:
            return None

        index = _find_enclosing(outline, outline.roots, target)
        if index is None:
            return None
        return _to_edit_scope(outline, outline.node(index))

    async def _get_outline(self, document: TextDocument) -> Outline | None:
        cached = self._cache.lookup(document.uri, document.version)
        if cached is not None:
            return cached

        try:
            symbols = await self._provider.document_symbols(document)
        except Exception as exc:
            logger.debug(f"Outline fetch failed for {document.uri}: {exc}")
            return None

        if not symbols:
            return None

        outline = Outline.from_symbols(symbols)
        self._cache.store(document.uri, document.version, outline)
        return outline


def _find_enclosing(
    outline: Outline, indices: Sequence[int], target: Position | Range
) -> int | None:
    """Descend into containing nodes; children win over their parent."""
    for index in indices:
        node = outline.node(index)
        if not node.range.contains(target):
            continue
        if node.children:
            child = _find_enclosing(outline, node.children, target)
            if child is not None:
                return child
        if node.kind in _RELEVANT_KINDS:
            return index
    return None


def _find_owner_class(outline: Outline, method: OutlineNode) -> str | None:
    """Innermost class-like node whose range contains the method's range."""
    owner: OutlineNode | None = None
    for node in outline.walk():
        if node.index == method.index or node.kind not in _CLASS_LIKE_KINDS:
            continue
        if not node.range.contains(method.range):
            continue
        if owner is None or owner.range.contains(node.range):
            owner = node
    return owner.name if owner is not None else None


def _to_edit_scope(outline: Outline, node: OutlineNode) -> EditScope:
    kind = _SCOPE_KINDS.get(node.kind, ScopeKind.UNKNOWN)
    class_name = _find_owner_class(outline, node) if kind is ScopeKind.METHOD else None
    return EditScope(
        name=node.name,
        kind=kind,
        range=node.range,
        symbol_kind=node.kind,
        class_name=class_name,
    )
