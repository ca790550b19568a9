"""
Infrastructure package for the microbatch streaming engine.

Centralizes durable filesystem concerns (atomic writes, publishing, retries).
Keep this layer focused on I/O, decoupled from scheduler and sink logic.
"""

from microbatch.infrastructure.storage import (
    atomic_write_bytes,
    atomic_write_json,
    durable_retry,
    publish,
    read_json,
    write_lines,
)

__all__ = [
    "atomic_write_bytes",
    "atomic_write_json",
    "durable_retry",
    "publish",
    "read_json",
    "write_lines",
]
