"""
Bounded LRU cache of document outlines.

Entries are keyed by document URI and stamped with the document version they
were fetched at; a version mismatch is a miss, never an invalidation pushed
from elsewhere.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Hashable, Iterator
from dataclasses import dataclass
from typing import Generic, TypeVar

from .types import Outline

logger = logging.getLogger(__name__)

DEFAULT_SYMBOL_CACHE_SIZE = 50

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """
    Strict least-recently-used mapping.

    Both ``get`` and ``set`` count as a touch. Inserting a new key at capacity
    evicts exactly one entry, the least recently touched, before insertion.
    """

    def __init__(self, max_size: int = DEFAULT_SYMBOL_CACHE_SIZE) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._max_size = max_size
        self._cache: OrderedDict[K, V] = OrderedDict()

    @property
    def max_size(self) -> int:
        return self._max_size

    def get(self, key: K) -> V | None:
        if key not in self._cache:
            return None
        self._cache.move_to_end(key)
        return self._cache[key]

    def set(self, key: K, value: V) -> None:
        if key in self._cache:
            self._cache.move_to_end(key)
        elif len(self._cache) >= self._max_size:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug(f"LRU evicted {evicted!r}")
        self._cache[key] = value

    def delete(self, key: K) -> bool:
        if key not in self._cache:
            return False
        del self._cache[key]
        return True

    def clear(self) -> None:
        self._cache.clear()

    def keys(self) -> Iterator[K]:
        """Keys from least to most recently used."""
        return iter(list(self._cache))

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        return len(self._cache)


@dataclass(frozen=True)
class OutlineCacheEntry:
    outline: Outline
    version: int


class SymbolCache:
    """Per-URI outline snapshots, reused only while the document version matches."""

    def __init__(self, max_size: int = DEFAULT_SYMBOL_CACHE_SIZE) -> None:
        self._entries: LRUCache[str, OutlineCacheEntry] = LRUCache(max_size)
        self.hits = 0
        self.misses = 0

    def lookup(self, uri: str, version: int) -> Outline | None:
        entry = self._entries.get(uri)
        if entry is not None and entry.version == version:
            self.hits += 1
            return entry.outline
        self.misses += 1
        return None

    def store(self, uri: str, version: int, outline: Outline) -> None:
        self._entries.set(uri, OutlineCacheEntry(outline=outline, version=version))

    def evict(self, uri: str) -> None:
        self._entries.delete(uri)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, uri: object) -> bool:
        return uri in self._entries

    def __len__(self) -> int:
        return len(self._entries)
