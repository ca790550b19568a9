"""
Error taxonomy for the microbatch streaming engine.

Only sink and checkpoint failures stop a stream. Transient source errors are
absorbed by the scheduler, and decode failures never escape the decoder: they
are carried on the record itself (see `DecodedRecord.decode_failed`).
"""

from __future__ import annotations

from typing import Optional


class StreamError(Exception):
    """Base class for all engine errors."""


class SchemaError(StreamError, ValueError):
    """Invalid schema or partition spec definition."""


class TransientSourceError(StreamError):
    """Poll timed out or the source is temporarily unreachable. Retried with the same offset."""


class DecodeFailure(StreamError):
    """Payload could not be parsed as a JSON object."""

    def __init__(self, reason: str, offset: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.offset = offset


class SinkFailure(StreamError):
    """A sink rejected a whole batch."""

    def __init__(
        self,
        sink_id: str,
        batch_id: int,
        message: str = "sink rejected batch",
        fatal: bool = False,
    ) -> None:
        super().__init__(f"[{sink_id}] batch {batch_id}: {message}")
        self.sink_id = sink_id
        self.batch_id = batch_id
        self.fatal = fatal


class CheckpointWriteFailure(StreamError):
    """Durable progress could not be written after the sinks accepted a batch."""


class StreamFailedError(StreamError):
    """Raised by `StreamHandle.await_termination` when the stream ended in FAILED."""

    def __init__(self, stream_id: str, cause: Optional[BaseException]) -> None:
        super().__init__(f"stream '{stream_id}' failed: {cause!r}")
        self.stream_id = stream_id
        self.cause = cause


__all__ = [
    "StreamError",
    "SchemaError",
    "TransientSourceError",
    "DecodeFailure",
    "SinkFailure",
    "CheckpointWriteFailure",
    "StreamFailedError",
]
