"""
Change significance classifier.

Decides whether a batch of content deltas could alter run-time behaviour
(code) or is noise (whitespace, re-indentation, comments). The classifier
never parses source; it works from per-language comment regexes and the
text on either side of each delta.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from .config import FilterConfig
from .types import (
    EMPTY_RANGE,
    ChangeClassification,
    ChangeType,
    RawChange,
    TextDocument,
    combine_ranges,
)

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class CommentPatterns:
    """Regexes recognising comments for one language."""

    line: re.Pattern[str]
    block_start: re.Pattern[str]
    block_end: re.Pattern[str]


_C_STYLE = CommentPatterns(
    line=re.compile(r"^\s*//"),
    block_start=re.compile(r"/\*"),
    block_end=re.compile(r"\*/"),
)

_COMMENT_PATTERNS: dict[str, CommentPatterns] = {
    "go": _C_STYLE,
    "javascript": _C_STYLE,
    "typescript": _C_STYLE,
    "java": _C_STYLE,
    "rust": _C_STYLE,
    "c": _C_STYLE,
    "cpp": _C_STYLE,
    "python": CommentPatterns(
        line=re.compile(r"^\s*#"),
        block_start=re.compile(r"^(\s*\"\"\"|\s*''')"),
        block_end=re.compile(r"(\"\"\"|''')\s*$"),
    ),
}


def register_comment_patterns(language_id: str, patterns: CommentPatterns) -> None:
    """Add or replace comment recognition for a language."""
    _COMMENT_PATTERNS[language_id] = patterns


def comment_patterns_for(language_id: str) -> CommentPatterns | None:
    return _COMMENT_PATTERNS.get(language_id)


def _is_whitespace_only(old_text: str, new_text: str) -> bool:
    return old_text.strip() == "" and new_text.strip() == ""


def _is_formatting_only(old_text: str, new_text: str) -> bool:
    old_normalized = _WHITESPACE_RE.sub("", old_text)
    new_normalized = _WHITESPACE_RE.sub("", new_text)
    return old_normalized == new_normalized and old_text != new_text


class ChangeFilter:
    """Classify content deltas as code, comment, whitespace or formatting."""

    def __init__(self, config: FilterConfig | None = None, **options: bool) -> None:
        self._config = (config or FilterConfig()).merged(**options)

    @property
    def config(self) -> FilterConfig:
        return self._config

    def update_config(self, config: FilterConfig | None = None, **options: bool) -> None:
        """Merge options into the current filter settings."""
        if config is not None:
            self._config = config
        self._config = self._config.merged(**options)

    def classify(
        self, document: TextDocument, changes: Sequence[RawChange]
    ) -> ChangeClassification:
        if not changes:
            return ChangeClassification(
                is_significant=False,
                change_type=ChangeType.WHITESPACE,
                affected_range=EMPTY_RANGE,
            )

        affected_range = combine_ranges(change.range for change in changes)
        kinds = {self._classify_change(document, change) for change in changes}

        has_code = ChangeType.CODE in kinds
        has_comment = ChangeType.COMMENT in kinds
        has_whitespace = ChangeType.WHITESPACE in kinds

        if has_code:
            change_type = ChangeType.MIXED if has_comment or has_whitespace else ChangeType.CODE
            significant = True
        elif has_comment:
            # Whitespace and formatting riding along with a comment edit stay a comment edit.
            change_type = ChangeType.COMMENT
            significant = not self._config.ignore_comments
        elif kinds == {ChangeType.WHITESPACE}:
            change_type = ChangeType.WHITESPACE
            significant = not self._config.ignore_whitespace
        else:
            change_type = ChangeType.FORMATTING
            significant = not self._config.ignore_formatting

        return ChangeClassification(
            is_significant=significant,
            change_type=change_type,
            affected_range=affected_range,
        )

    def _classify_change(self, document: TextDocument, change: RawChange) -> ChangeType:
        try:
            return self._classify_change_unchecked(document, change)
        except Exception as exc:
            # Unclassifiable deltas are treated as code so real edits are never dropped.
            logger.debug("Could not classify change in %s: %s", document.uri, exc)
            return ChangeType.CODE

    def _classify_change_unchecked(self, document: TextDocument, change: RawChange) -> ChangeType:
        new_text = change.text
        old_text = self._old_text(document, change)

        if _is_whitespace_only(old_text, new_text):
            return ChangeType.WHITESPACE
        if _is_formatting_only(old_text, new_text):
            return ChangeType.FORMATTING
        if self._is_in_comment(document, change):
            return ChangeType.COMMENT
        if self._is_comment_text(document.language_id, new_text):
            return ChangeType.COMMENT
        return ChangeType.CODE

    def _old_text(self, document: TextDocument, change: RawChange) -> str:
        """
        Best-effort pre-image of the replaced range.

        Without ``old_text`` on the delta, the post-change document is read at
        the pre-change coordinates, which only matches the original text when
        the edit did not shift content within that range.
        """
        if change.old_text is not None:
            return change.old_text
        return document.get_text(change.range)

    def _is_in_comment(self, document: TextDocument, change: RawChange) -> bool:
        patterns = _COMMENT_PATTERNS.get(document.language_id)
        if patterns is None:
            return False

        start_line = change.range.start.line
        if start_line >= document.line_count:
            return False

        if patterns.line.search(document.line_at(start_line)):
            return True

        # Walk upward to the nearest block opener; a closer seen first means
        # the edit line is outside any block comment.
        for i in range(start_line, -1, -1):
            text = document.line_at(i)
            if i < start_line and patterns.block_end.search(text):
                return False

            opener = patterns.block_start.search(text)
            if opener is None:
                continue
            if patterns.block_end.search(text[opener.start() :]):
                continue
            for j in range(i + 1, start_line + 1):
                if patterns.block_end.search(document.line_at(j)):
                    return False
            return True

        return False

    def _is_comment_text(self, language_id: str, text: str) -> bool:
        patterns = _COMMENT_PATTERNS.get(language_id)
        if patterns is None:
            return False

        trimmed = text.strip()
        if not trimmed:
            return False
        if patterns.line.search(trimmed):
            return True
        return bool(patterns.block_start.search(trimmed) and patterns.block_end.search(trimmed))
