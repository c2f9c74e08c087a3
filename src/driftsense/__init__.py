"""driftsense - debounced, scope-aware change notifications for behavioural drift analysis."""

from .change_filter import ChangeFilter
from .config import FilterConfig, SmartDiagnosticsConfig
from .diagnostics import SmartDiagnostics
from .edit_buffer import EditBuffer
from .scope_tracker import ScopeTracker

__version__ = "0.1.0"

__all__ = [
    "ChangeFilter",
    "EditBuffer",
    "FilterConfig",
    "ScopeTracker",
    "SmartDiagnostics",
    "SmartDiagnosticsConfig",
]
