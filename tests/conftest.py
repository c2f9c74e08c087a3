"""Global pytest fixtures for deterministic test behavior."""

import pytest

from driftsense.change_filter import _COMMENT_PATTERNS


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep DRIFTSENSE_* settings from the developer shell out of tests."""
    for name in (
        "DRIFTSENSE_IDLE_MS",
        "DRIFTSENSE_ENABLED",
        "DRIFTSENSE_IGNORE_COMMENTS",
        "DRIFTSENSE_IGNORE_WHITESPACE",
        "DRIFTSENSE_IGNORE_FORMATTING",
        "DRIFTSENSE_SERVER_COMMAND",
        "DRIFTSENSE_REQUEST_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _restore_comment_patterns():
    """Undo languages registered by individual tests."""
    saved = dict(_COMMENT_PATTERNS)
    yield
    _COMMENT_PATTERNS.clear()
    _COMMENT_PATTERNS.update(saved)
