"""
Checkpoint store: the durable ledger of what a stream has applied.

Layout under `<checkpoint_root>/<stream_id>/`:

    metadata.json             CheckpointMetadata, the identity of this checkpoint
    offsets/<batch_id>.json   planned range of a batch, written before sinking
    commits/<batch_id>.json   CheckpointRecord, written after every sink accepted it

A batch id with an offsets entry but no commit entry was interrupted between
planning and committing; the scheduler replays exactly that range with the
same id on restart. Entries are never deleted during normal operation.

Writes are atomic (temp file + rename) and retried with tenacity; a commit
that still fails raises `CheckpointWriteFailure`.
"""

from __future__ import annotations

import threading
import uuid
from pathlib import Path
from typing import List, Optional, TypeVar

from pydantic import BaseModel
from tenacity import RetryError

from microbatch.domain.models import CheckpointMetadata, CheckpointRecord, PlannedBatch
from microbatch.errors import CheckpointWriteFailure
from microbatch.infrastructure.storage import atomic_write_json, durable_retry, read_json
from microbatch.utils.logging import get_logger

log = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _batch_ids(directory: Path) -> List[int]:
    if not directory.is_dir():
        return []
    ids = []
    for path in directory.glob("*.json"):
        if path.stem.isdigit():
            ids.append(int(path.stem))
    return sorted(ids)


class CheckpointStore:
    """
    File-backed checkpoint ledger for one stream.

    Parameters
    ----------
    directory : Path
        Stream checkpoint directory (`StreamConfig.checkpoint_dir`).
    stream_id : str
        Identifier recorded in every commit.
    max_retries : int
        Retries after the first failed write attempt.
    backoff_seconds : float
        Initial exponential backoff between attempts.
    """

    def __init__(
        self,
        directory: Path | str,
        stream_id: str,
        max_retries: int = 5,
        backoff_seconds: float = 0.5,
    ) -> None:
        self.directory = Path(directory)
        self.stream_id = stream_id
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._lock = threading.Lock()
        self._latest: Optional[CheckpointRecord] = None
        self._loaded = False
        self._metadata: Optional[CheckpointMetadata] = None

    @property
    def offsets_dir(self) -> Path:
        return self.directory / "offsets"

    @property
    def commits_dir(self) -> Path:
        return self.directory / "commits"

    @property
    def metadata_path(self) -> Path:
        return self.directory / "metadata.json"

    def _read(self, path: Path, model: type[ModelT]) -> Optional[ModelT]:
        payload = read_json(path)
        if payload is None:
            return None
        return model.model_validate(payload)

    def latest(self) -> Optional[CheckpointRecord]:
        """Return the last committed record, reading it from disk on first use."""
        with self._lock:
            if not self._loaded:
                ids = _batch_ids(self.commits_dir)
                if ids:
                    self._latest = self._read(
                        self.commits_dir / f"{ids[-1]}.json", CheckpointRecord
                    )
                self._loaded = True
            return self._latest

    def committed_offset(self) -> int:
        latest = self.latest()
        return latest.end_offset if latest is not None else 0

    def next_batch_id(self) -> int:
        latest = self.latest()
        return latest.batch_id + 1 if latest is not None else 0

    def pending(self) -> Optional[PlannedBatch]:
        """
        Return the planned batch that was never committed, if any.
        """
        next_id = self.next_batch_id()
        planned = self._read(self.offsets_dir / f"{next_id}.json", PlannedBatch)
        if planned is not None:
            log.info(
                "Found uncommitted batch in checkpoint",
                extra={
                    "stream_id": self.stream_id,
                    "batch_id": planned.batch_id,
                    "start_offset": planned.start_offset,
                    "end_offset": planned.end_offset,
                },
            )
        return planned

    def history(self) -> List[CheckpointRecord]:
        """All committed records, oldest first."""
        records = []
        for batch_id in _batch_ids(self.commits_dir):
            record = self._read(self.commits_dir / f"{batch_id}.json", CheckpointRecord)
            if record is not None:
                records.append(record)
        return records

    def _write(self, path: Path, model: BaseModel) -> None:
        writer = durable_retry(self.max_retries + 1, self.backoff_seconds)(atomic_write_json)
        try:
            writer(path, model.model_dump(mode="json"))
        except (OSError, RetryError) as exc:
            raise CheckpointWriteFailure(f"could not write {path}: {exc}") from exc

    def metadata(self) -> CheckpointMetadata:
        """
        Return the identity of this checkpoint, creating it on first use.

        A fresh `checkpoint_id` is drawn whenever the directory starts out
        empty, so a reset checkpoint never shares identity with its
        predecessor.
        """
        with self._lock:
            if self._metadata is None:
                metadata = self._read(self.metadata_path, CheckpointMetadata)
                if metadata is None:
                    metadata = CheckpointMetadata(
                        stream_id=self.stream_id, checkpoint_id=uuid.uuid4().hex
                    )
                    self._write(self.metadata_path, metadata)
                self._metadata = metadata
            return self._metadata

    def plan(self, planned: PlannedBatch) -> None:
        """
        Record the offset range of a batch before any sink sees it.
        """
        expected = self.next_batch_id()
        if planned.batch_id != expected:
            raise ValueError(f"planned batch id {planned.batch_id} != expected {expected}")
        if planned.start_offset < self.committed_offset():
            raise ValueError(
                f"planned start {planned.start_offset} is before committed "
                f"offset {self.committed_offset()}"
            )
        self._write(self.offsets_dir / f"{planned.batch_id}.json", planned)

    def commit(self, record: CheckpointRecord) -> None:
        """
        Durably record that every sink accepted `record.batch_id`.

        Commits are strictly ordered and the end offset never decreases.
        Re-committing an identical record (retry after an ambiguous failure)
        is a no-op.
        """
        latest = self.latest()
        if latest is not None:
            if record.batch_id == latest.batch_id and record.end_offset == latest.end_offset:
                return
            if record.batch_id != latest.batch_id + 1:
                raise ValueError(
                    f"commit of batch {record.batch_id} out of order (last {latest.batch_id})"
                )
            if record.end_offset < latest.end_offset:
                raise ValueError(
                    f"end offset {record.end_offset} < committed {latest.end_offset}"
                )
        elif record.batch_id != 0:
            raise ValueError(f"first commit must be batch 0, got {record.batch_id}")

        self._write(self.commits_dir / f"{record.batch_id}.json", record)
        with self._lock:
            self._latest = record
            self._loaded = True
        log.debug(
            "Checkpoint committed",
            extra={
                "stream_id": self.stream_id,
                "batch_id": record.batch_id,
                "end_offset": record.end_offset,
            },
        )


__all__ = ["CheckpointStore"]
