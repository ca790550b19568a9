"""
Sink interfaces and result contracts for the microbatch streaming engine.

Concrete sinks (materialized view, partitioned files) implement the Sink
protocol and return a SinkResult TypedDict so the scheduler can report
per-sink progress uniformly. A write covers a whole batch: it either succeeds
completely or raises `SinkFailure`, with no partially accepted rows visible.
"""

from __future__ import annotations

import abc
from typing import Any, Dict, List, Optional, Protocol, TypedDict, runtime_checkable

from microbatch.domain.models import Batch


class SinkResult(TypedDict, total=False):
    """
    Minimal outcome contract returned by sinks.

    Fields are optional to keep implementations lightweight; the scheduler
    tolerates missing values.
    """

    rows: int
    skipped_rows: int
    files: List[str]
    replayed: bool
    notes: Optional[str]
    extra: Dict[str, Any]


@runtime_checkable
class Sink(Protocol):
    """
    Common interface all sinks must implement.

    Attributes
    ----------
    sink_id : str
        Unique identifier of the sink within a stream; keys the per-sink
        committed flags of the checkpoint.
    """

    sink_id: str

    def write(self, batch: Batch) -> SinkResult:
        """
        Accept every eligible record of `batch`, atomically.

        Must be idempotent per batch id: writing a batch this sink already
        accepted is a no-op reported with `replayed=True`.

        Raises
        ------
        SinkFailure
            When the batch could not be accepted as a whole.
        """
        ...


class AbstractSink(abc.ABC):
    """
    Optional ABC helper for class-based sinks.

    Subclasses set `sink_id` and implement `write`.
    """

    sink_id: str

    @abc.abstractmethod
    def write(self, batch: Batch) -> SinkResult:  # pragma: no cover - interface only
        """Write the batch and return its outcome."""
        raise NotImplementedError

    def close(self) -> None:
        return None


__all__ = [
    "AbstractSink",
    "Sink",
    "SinkResult",
]
