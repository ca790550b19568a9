"""
Materialized view sink: an in-memory, append-only table queried while it grows.

The view has exactly one writer (the stream's scheduler) and any number of
readers. Appending extends the row list first and only then advances the
published visible length, so a reader that takes a snapshot sees whole
batches or nothing of them and never waits on ingestion.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Tuple

from microbatch.domain.models import Batch, DecodedRecord
from microbatch.domain.schema import Schema
from microbatch.errors import SinkFailure
from microbatch.query import Query
from microbatch.sinks.abstract import AbstractSink, SinkResult
from microbatch.utils.logging import get_logger

log = get_logger(__name__)


class MaterializedView:
    """
    Append-only sequence of decoded records with a published visible length.
    """

    def __init__(self, name: str, schema: Optional[Schema] = None) -> None:
        self.name = name
        self.schema = schema
        self._rows: List[DecodedRecord] = []
        self._visible = 0
        self._writer_lock = threading.Lock()

    def append(self, records: Iterable[DecodedRecord]) -> int:
        """Append records and publish them together. Returns the new visible length."""
        with self._writer_lock:
            start = len(self._rows)
            try:
                self._rows.extend(records)
            except MemoryError:
                del self._rows[start:]
                raise
            self._visible = len(self._rows)
            return self._visible

    def snapshot(self) -> Tuple[DecodedRecord, ...]:
        """Consistent copy of every published row, taken without locking."""
        visible = self._visible
        return tuple(self._rows[:visible])

    def __len__(self) -> int:
        return self._visible

    def query(self) -> Query:
        """Start a query over a snapshot taken now."""
        columns = self.schema.names if self.schema is not None else None
        return Query(self.snapshot(), columns=columns)


class MaterializedViewSink(AbstractSink):
    """
    Sink appending every record of a batch to a named MaterializedView.

    Replayed batches (id not newer than the last one appended by the same
    writer) are ignored.
    """

    def __init__(self, name: str, schema: Optional[Schema] = None) -> None:
        self.sink_id = f"memory:{name}"
        self.view = MaterializedView(name, schema=schema)
        self.last_batch_ids: Dict[str, int] = {}

    @property
    def name(self) -> str:
        return self.view.name

    def append(self, batch: Batch) -> SinkResult:
        last = self.last_batch_ids.get(batch.writer_id)
        if last is not None and batch.batch_id <= last:
            log.info(
                "Skipping replayed batch",
                extra={
                    "sink_id": self.sink_id,
                    "batch_id": batch.batch_id,
                    "writer_id": batch.writer_id,
                },
            )
            return SinkResult(rows=0, replayed=True)
        try:
            self.view.append(batch.records)
        except MemoryError as exc:
            raise SinkFailure(self.sink_id, batch.batch_id, "out of memory", fatal=True) from exc
        self.last_batch_ids[batch.writer_id] = batch.batch_id
        return SinkResult(rows=len(batch.records), replayed=False)

    def write(self, batch: Batch) -> SinkResult:
        return self.append(batch)


__all__ = ["MaterializedView", "MaterializedViewSink"]
