"""
Sinks package for the microbatch streaming engine.

Re-exports the sink interface and the concrete sinks so downstream code can
import from `microbatch.sinks` directly.
"""

from microbatch.sinks.abstract import AbstractSink, Sink, SinkResult
from microbatch.sinks.files import PartitionedFileSink, read_partitioned
from microbatch.sinks.memory import MaterializedView, MaterializedViewSink

__all__ = [
    # Abstracts
    "AbstractSink",
    "Sink",
    "SinkResult",
    # Concrete sinks
    "MaterializedView",
    "MaterializedViewSink",
    "PartitionedFileSink",
    "read_partitioned",
]
