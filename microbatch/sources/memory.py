"""
In-memory source backed by an append-only list of payloads.

Useful for tests and interactive sessions: push payloads with `add_data` and
a running stream picks them up on its next trigger.
"""

from __future__ import annotations

import json
import threading
from typing import Any, List, Optional

from microbatch.domain.models import RawRecord
from microbatch.sources.abstract import AbstractSource, PollResult


class MemorySource(AbstractSource):
    """
    Thread-safe append-only buffer. Offsets are list positions starting at 0.
    """

    name: str = "memory"

    def __init__(self, max_records_per_poll: Optional[int] = None) -> None:
        self.max_records_per_poll = max_records_per_poll
        self._records: List[RawRecord] = []
        self._lock = threading.Lock()

    def add_data(self, *payloads: Any) -> int:
        """
        Append payloads and return the offset after the last one.

        `bytes` are stored verbatim, `str` is UTF-8 encoded and anything else
        is serialized as JSON.
        """
        with self._lock:
            for payload in payloads:
                offset = len(self._records)
                self._records.append(RawRecord(offset=offset, payload=_to_bytes(payload)))
            return len(self._records)

    @property
    def latest_offset(self) -> int:
        with self._lock:
            return len(self._records)

    def poll(self, since_offset: int) -> PollResult:
        with self._lock:
            end = len(self._records)
            if self.max_records_per_poll is not None:
                end = min(end, since_offset + self.max_records_per_poll)
            if since_offset >= end:
                return [], since_offset
            return list(self._records[since_offset:end]), end


def _to_bytes(payload: Any) -> bytes:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload).encode("utf-8")


__all__ = ["MemorySource"]
