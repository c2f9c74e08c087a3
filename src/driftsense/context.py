"""Context-manager mixins for objects that own timers or subprocesses."""

from __future__ import annotations

from typing import Any


class CloseOnExitMixin:
    """Call ``close()`` when leaving a ``with`` block."""

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> Any:
        return self

    def __exit__(self, _exc_type: Any, _exc: Any, _tb: Any) -> None:
        self.close()
