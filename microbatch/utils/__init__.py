"""
Utilities package for the microbatch streaming engine.

Exports shared helpers for logging, profiling, and other cross-cutting concerns.
Keep this package lightweight and free of domain-specific logic.
"""

from microbatch.utils.logging import configure_logging, get_logger
from microbatch.utils.profiler import PhaseTimer, ProfileStats, profile_block

__all__ = [
    "configure_logging",
    "get_logger",
    "PhaseTimer",
    "ProfileStats",
    "profile_block",
]
