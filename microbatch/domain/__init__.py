"""
Domain package for the microbatch streaming engine.

Exports the records, batches, schema and checkpoint models shared by the
decoder, sinks, checkpoint store and scheduler. Keep this package focused on
data definitions and validation concerns.
"""

from microbatch.domain.models import (
    Batch,
    DEFAULT_WRITER_ID,
    CheckpointMetadata,
    CheckpointRecord,
    DecodedRecord,
    MalformedMode,
    PlannedBatch,
    RawRecord,
    StreamProgress,
)
from microbatch.domain.schema import FieldType, Schema, SchemaField

__all__ = [
    "DEFAULT_WRITER_ID",
    "Batch",
    "CheckpointMetadata",
    "CheckpointRecord",
    "DecodedRecord",
    "FieldType",
    "MalformedMode",
    "PlannedBatch",
    "RawRecord",
    "Schema",
    "SchemaField",
    "StreamProgress",
]
