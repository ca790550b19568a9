"""
Domain models for the microbatch streaming engine.

Hot-path values (raw records, decoded records, batches) are frozen
dataclasses. Durable and reported state (checkpoints, progress) are pydantic
models so they serialize to JSON without extra plumbing.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

DEFAULT_WRITER_ID = "default"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MalformedMode(str, Enum):
    """How records whose payload could not be parsed are routed."""

    PERMISSIVE = "PERMISSIVE"  # keep, all fields null, flagged
    DROPMALFORMED = "DROPMALFORMED"  # drop from every sink


@dataclass(frozen=True)
class RawRecord:
    """Opaque payload at a source-assigned, monotonically increasing offset."""

    offset: int
    payload: bytes
    arrival_time: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class DecodedRecord:
    """
    Field name -> typed value, projected from a RawRecord through a Schema.

    Missing or mismatched fields hold None. When the payload itself was
    malformed every value is None, `decode_failed` is set and the raw text is
    kept in `corrupt_record`.
    """

    offset: int
    values: Mapping[str, Any]
    decode_failed: bool = False
    corrupt_record: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.values, MappingProxyType):
            object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self.values[name]

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.values)


@dataclass(frozen=True)
class Batch:
    """Decoded records covering the source range [start_offset, end_offset).

    `writer_id` names the stream and checkpoint that planned the batch. Sinks
    shared between streams key their replay detection by it, so batch ids
    only need to be unique per writer.
    """

    batch_id: int
    start_offset: int
    end_offset: int
    records: Tuple[DecodedRecord, ...] = ()
    writer_id: str = DEFAULT_WRITER_ID

    def __len__(self) -> int:
        return len(self.records)

    @property
    def num_malformed(self) -> int:
        return sum(1 for r in self.records if r.decode_failed)


class PlannedBatch(BaseModel):
    """
    Write-ahead entry: the offset range a batch id was assigned before sinking.
    """

    batch_id: int = Field(..., ge=0)
    start_offset: int = Field(..., ge=0)
    end_offset: int = Field(..., ge=0)
    planned_at: datetime = Field(default_factory=_utcnow)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_range(self) -> "PlannedBatch":
        if self.end_offset < self.start_offset:
            raise ValueError("end_offset must be >= start_offset")
        return self


class CheckpointMetadata(BaseModel):
    """Identity of a checkpoint directory, written once when it is first used."""

    stream_id: str
    checkpoint_id: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = {"frozen": True}


class CheckpointRecord(BaseModel):
    """
    Durable progress of one stream: the last committed batch and, per sink,
    whether it accepted that batch.
    """

    stream_id: str
    batch_id: int = Field(..., ge=0)
    start_offset: int = Field(..., ge=0)
    end_offset: int = Field(..., ge=0)
    sinks: Dict[str, bool] = Field(default_factory=dict)
    committed_at: datetime = Field(default_factory=_utcnow)

    model_config = {"frozen": True}


class StreamProgress(BaseModel):
    """Metrics of one committed micro-batch."""

    stream_id: str
    batch_id: int
    start_offset: int
    end_offset: int
    num_input_rows: int = 0
    num_malformed_rows: int = 0
    sink_rows: Dict[str, int] = Field(default_factory=dict)
    durations_ms: Dict[str, float] = Field(default_factory=dict)
    processed_rows_per_second: float = 0.0
    peak_rss_bytes: Optional[int] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = {"frozen": True}


__all__ = [
    "DEFAULT_WRITER_ID",
    "Batch",
    "CheckpointMetadata",
    "CheckpointRecord",
    "DecodedRecord",
    "MalformedMode",
    "PlannedBatch",
    "RawRecord",
    "StreamProgress",
]
