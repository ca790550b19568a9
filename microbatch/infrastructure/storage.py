"""
Local filesystem helpers for durable state and published output.

Everything the engine persists (checkpoints, source file logs, sink
manifests, data files) goes through these helpers so that a crash never
leaves a half-written file under its final name: content is written to a
temporary sibling, fsynced, then renamed into place with `os.replace`.

Includes retry logic for transient I/O failures using tenacity.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential


def _fsync_dir(path: Path) -> None:
    """Persist a rename by syncing the containing directory (POSIX only)."""
    if os.name != "posix":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """
    Write `data` to `path` so readers see either the old file or the complete new one.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise
    _fsync_dir(path.parent)


def atomic_write_json(path: Path, payload: Any) -> None:
    data = json.dumps(payload, indent=2, sort_keys=True, default=str).encode("utf-8")
    atomic_write_bytes(path, data)


def write_lines(path: Path, lines: Iterable[str]) -> int:
    """Write newline-terminated lines and fsync. Returns the number of lines."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", encoding="utf-8", newline="\n") as f:
        for line in lines:
            f.write(line)
            f.write("\n")
            count += 1
        f.flush()
        os.fsync(f.fileno())
    return count


def publish(staged: Path, final: Path) -> None:
    """Move a fully written staged file to its final, visible location."""
    final.parent.mkdir(parents=True, exist_ok=True)
    os.replace(staged, final)
    _fsync_dir(final.parent)


def read_json(path: Path) -> Optional[Any]:
    """Return the parsed JSON content of `path`, or None if it does not exist."""
    try:
        with Path(path).open("r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None


def durable_retry(attempts: int, backoff_seconds: float):
    """
    Retry decorator for operations that fail with transient OSError.

    `attempts` counts the first try; backoff grows exponentially from
    `backoff_seconds` up to ten times that value.
    """
    return retry(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(
            multiplier=backoff_seconds, min=backoff_seconds, max=backoff_seconds * 10
        ),
        retry=retry_if_exception_type(OSError),
        reraise=True,
    )


__all__ = [
    "atomic_write_bytes",
    "atomic_write_json",
    "durable_retry",
    "publish",
    "read_json",
    "write_lines",
]
