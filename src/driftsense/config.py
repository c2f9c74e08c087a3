"""
Configuration values consumed by the change pipeline.

Loading and persisting settings is the host's job; this module only turns
editor-style settings mappings or environment variables into frozen values.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_IDLE_MS = 400

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})

# Editor settings key -> (section, field)
_SETTINGS_KEYS = {
    "diagnostics.debounceMs": (None, "idle_ms"),
    "diagnostics.enabled": (None, "enabled"),
    "filter.ignoreComments": ("filter", "ignore_comments"),
    "filter.ignoreWhitespace": ("filter", "ignore_whitespace"),
    "filter.ignoreFormatting": ("filter", "ignore_formatting"),
}

_ENV_KEYS = {
    "DRIFTSENSE_IDLE_MS": (None, "idle_ms"),
    "DRIFTSENSE_ENABLED": (None, "enabled"),
    "DRIFTSENSE_IGNORE_COMMENTS": ("filter", "ignore_comments"),
    "DRIFTSENSE_IGNORE_WHITESPACE": ("filter", "ignore_whitespace"),
    "DRIFTSENSE_IGNORE_FORMATTING": ("filter", "ignore_formatting"),
}


@dataclass(frozen=True)
class FilterConfig:
    """Which non-code change categories are dropped."""

    ignore_comments: bool = True
    ignore_whitespace: bool = True
    ignore_formatting: bool = True

    def merged(self, **options: bool) -> FilterConfig:
        """Return a copy with the given options overridden."""
        known = {f.name for f in fields(self)}
        unknown = set(options) - known
        if unknown:
            raise TypeError(f"Unknown filter option(s): {', '.join(sorted(unknown))}")
        return replace(self, **{k: bool(v) for k, v in options.items() if v is not None})


@dataclass(frozen=True)
class SmartDiagnosticsConfig:
    idle_ms: int = DEFAULT_IDLE_MS
    enabled: bool = True
    filter: FilterConfig = field(default_factory=FilterConfig)

    def __post_init__(self) -> None:
        if self.idle_ms < 0:
            raise ValueError(f"idle_ms must be >= 0, got {self.idle_ms}")

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> SmartDiagnosticsConfig:
        """Build config from editor-style dotted keys (``filter.ignoreComments`` etc.)."""
        raw = {key: settings[key] for key in _SETTINGS_KEYS if key in settings}
        return _build(cls(), raw, _SETTINGS_KEYS)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SmartDiagnosticsConfig:
        """Build config from ``DRIFTSENSE_*`` environment variables."""
        env = os.environ if environ is None else environ
        raw = {key: env[key] for key in _ENV_KEYS if env.get(key, "").strip()}
        return _build(cls(), raw, _ENV_KEYS)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_idle_ms(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"not an integer: {value!r}")
    parsed = int(value)
    if parsed < 0:
        raise ValueError(f"negative idle window: {parsed}")
    return parsed


def _build(
    base: SmartDiagnosticsConfig,
    raw: Mapping[str, Any],
    keys: Mapping[str, tuple[str | None, str]],
) -> SmartDiagnosticsConfig:
    top: dict[str, Any] = {}
    filter_options: dict[str, bool] = {}

    for key, value in raw.items():
        section, name = keys[key]
        parser = _parse_idle_ms if name == "idle_ms" else _parse_bool
        try:
            parsed = parser(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid value for %s: %r", key, value)
            continue
        if section == "filter":
            filter_options[name] = parsed
        else:
            top[name] = parsed

    if filter_options:
        top["filter"] = base.filter.merged(**filter_options)
    return replace(base, **top)
