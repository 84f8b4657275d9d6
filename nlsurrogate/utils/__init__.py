"""
Utilities package for nlsurrogate.

Exports shared helpers for logging and resource profiling.
Keep this package lightweight and free of domain-specific logic.
"""

from nlsurrogate.utils.logging import configure_logging, get_logger
from nlsurrogate.utils.profiler import ProfileStats, profile_block

__all__ = [
    "configure_logging",
    "get_logger",
    "ProfileStats",
    "profile_block",
]
