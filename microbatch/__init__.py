"""
microbatch - a micro-batch streaming engine for JSON payloads.

Polls a source for new raw records, decodes them against a declared schema,
and delivers each micro-batch to:

- an in-memory materialized view that ad-hoc queries read while it grows
- partitioned, append-only JSON output with staging-then-publish writes

Progress is checkpointed after every batch so that a restarted stream resumes
from the last committed offset with exactly-once effect on durable output.
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from microbatch.checkpoint import CheckpointStore
from microbatch.config import Settings, StreamConfig, get_settings
from microbatch.decoding import decode, decode_batch
from microbatch.domain import (
    Batch,
    CheckpointRecord,
    DecodedRecord,
    FieldType,
    MalformedMode,
    RawRecord,
    Schema,
    SchemaField,
    StreamProgress,
)
from microbatch.errors import (
    CheckpointWriteFailure,
    DecodeFailure,
    SchemaError,
    SinkFailure,
    StreamError,
    StreamFailedError,
    TransientSourceError,
)
from microbatch.partitioning import PartitionRule, PartitionSpec, extract_key, partition_path
from microbatch.query import Query
from microbatch.scheduler import Scheduler, StreamState
from microbatch.sinks import (
    MaterializedView,
    MaterializedViewSink,
    PartitionedFileSink,
    read_partitioned,
)
from microbatch.sources import FileSource, MemorySource
from microbatch.stream import StreamHandle, start_stream
from microbatch.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "StreamConfig",
    "get_settings",
    # Domain
    "Batch",
    "CheckpointRecord",
    "DecodedRecord",
    "FieldType",
    "MalformedMode",
    "RawRecord",
    "Schema",
    "SchemaField",
    "StreamProgress",
    # Errors
    "CheckpointWriteFailure",
    "DecodeFailure",
    "SchemaError",
    "SinkFailure",
    "StreamError",
    "StreamFailedError",
    "TransientSourceError",
    # Decoding and partitioning
    "decode",
    "decode_batch",
    "PartitionRule",
    "PartitionSpec",
    "extract_key",
    "partition_path",
    # Engine
    "CheckpointStore",
    "Scheduler",
    "StreamState",
    "StreamHandle",
    "start_stream",
    # Sources and sinks
    "FileSource",
    "MemorySource",
    "MaterializedView",
    "MaterializedViewSink",
    "PartitionedFileSink",
    "read_partitioned",
    "Query",
    # Logging
    "configure_logging",
    "get_logger",
]
