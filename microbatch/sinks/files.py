"""
Partitioned file sink: append-only, newline-delimited JSON output.

Output layout for `PartitionSpec.parse(["zipcode", "hour=hour(timestamp)"])`:

    <root>/
        zipcode=12345/hour=14/part-<writer>-00000-0000.json
        zipcode=12345/hour=15/part-<writer>-00000-0001.json
        zipcode=22334/hour=14/part-<writer>-00001-0000.json
        _sink_log/<writer>/00000.json   manifest of batch 0 (publish marker)
        _staging/                       in-progress batches, never read

`<writer>` is the batch's `writer_id`. Batch ids restart at 0 for every
stream and every fresh checkpoint, so manifests and file names are scoped by
writer: several streams can share one root, and a stream whose checkpoint
was reset writes its batches again instead of skipping them.

A batch is written in two steps. Every partition group is first written and
fsynced under `_staging/<writer>/<batch_id>/`; the files are then moved into
place and the batch manifest is written last, atomically. The manifest marks
the batch as published: a batch that already has one is skipped on replay,
and readers going through `read_partitioned` only see files listed in
manifests. File names are deterministic per (writer, batch id, partition),
so replaying an interrupted publish overwrites its own files instead of
duplicating rows.
"""

from __future__ import annotations

import json
import shutil
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from microbatch.domain.models import DEFAULT_WRITER_ID, Batch, DecodedRecord
from microbatch.errors import SinkFailure
from microbatch.infrastructure.storage import atomic_write_json, publish, read_json, write_lines
from microbatch.partitioning import (
    PartitionKey,
    PartitionSpec,
    extract_key,
    partition_path,
    unescape_path_name,
)
from microbatch.query import parse_literal
from microbatch.sinks.abstract import AbstractSink, SinkResult
from microbatch.utils.logging import get_logger

log = get_logger(__name__)

SINK_LOG_DIR = "_sink_log"
STAGING_DIR = "_staging"


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize_record(record: DecodedRecord) -> str:
    row: Dict[str, Any] = record.as_dict()
    if record.decode_failed:
        row["_corrupt_record"] = record.corrupt_record
    return json.dumps(row, default=_json_default, ensure_ascii=False, allow_nan=True)


class PartitionedFileSink(AbstractSink):
    """
    Write each batch's keyed records into `<column>=<value>` directories.

    Parameters
    ----------
    root : Path | str
        Output root directory.
    partition_spec : PartitionSpec
        Ordered partition rules; records without a key are not written.
    mode : str
        Only "append" is supported; prior output is never overwritten.
    sink_id : str | None
        Identifier in checkpoints; defaults to `files:<root>`.
    """

    def __init__(
        self,
        root: Path | str,
        partition_spec: Optional[PartitionSpec] = None,
        mode: str = "append",
        sink_id: Optional[str] = None,
    ) -> None:
        if mode != "append":
            raise ValueError(f"Unsupported output mode '{mode}'; only 'append' is supported")
        self.root = Path(root)
        self.partition_spec = partition_spec or PartitionSpec()
        self.mode = mode
        self.sink_id = sink_id or f"files:{self.root}"

    def _manifest_path(self, batch_id: int, writer_id: str) -> Path:
        return self.root / SINK_LOG_DIR / writer_id / f"{batch_id:05d}.json"

    def is_published(self, batch_id: int, writer_id: str = DEFAULT_WRITER_ID) -> bool:
        return self._manifest_path(batch_id, writer_id).exists()

    def _group(self, batch: Batch) -> tuple[Dict[PartitionKey, List[DecodedRecord]], int]:
        groups: Dict[PartitionKey, List[DecodedRecord]] = {}
        skipped = 0
        for record in batch.records:
            key = extract_key(record, self.partition_spec)
            if key is None:
                skipped += 1
                continue
            groups.setdefault(key, []).append(record)
        return groups, skipped

    def write(self, batch: Batch) -> SinkResult:
        if self.is_published(batch.batch_id, batch.writer_id):
            log.info(
                "Batch already published, skipping",
                extra={
                    "sink_id": self.sink_id,
                    "batch_id": batch.batch_id,
                    "writer_id": batch.writer_id,
                },
            )
            return SinkResult(rows=0, skipped_rows=0, files=[], replayed=True)

        groups, skipped = self._group(batch)
        ordered = sorted(groups.items(), key=lambda item: partition_path(item[0]))
        staging = self.root / STAGING_DIR / batch.writer_id / f"{batch.batch_id:05d}"
        shutil.rmtree(staging, ignore_errors=True)

        relative_files: List[str] = []
        rows = 0
        try:
            for seq, (key, records) in enumerate(ordered):
                name = f"part-{batch.writer_id}-{batch.batch_id:05d}-{seq:04d}.json"
                relative = Path(partition_path(key)) / name
                rows += write_lines(staging / relative, (serialize_record(r) for r in records))
                relative_files.append(relative.as_posix())

            for relative in relative_files:
                publish(staging / relative, self.root / relative)

            atomic_write_json(
                self._manifest_path(batch.batch_id, batch.writer_id),
                {
                    "writer_id": batch.writer_id,
                    "batch_id": batch.batch_id,
                    "start_offset": batch.start_offset,
                    "end_offset": batch.end_offset,
                    "rows": rows,
                    "files": relative_files,
                },
            )
        except OSError as exc:
            raise SinkFailure(self.sink_id, batch.batch_id, f"write failed: {exc}") from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        if skipped:
            log.debug(
                "Records without partition key were not written",
                extra={"sink_id": self.sink_id, "batch_id": batch.batch_id, "skipped": skipped},
            )
        return SinkResult(rows=rows, skipped_rows=skipped, files=relative_files, replayed=False)

    def manifests(self) -> List[Dict[str, Any]]:
        return list(_manifests(self.root))

    def committed_files(self) -> List[Path]:
        """Every published data file, in (writer, batch) order."""
        return [self.root / f for m in _manifests(self.root) for f in m["files"]]


def _manifests(root: Path) -> Iterator[Dict[str, Any]]:
    log_dir = Path(root) / SINK_LOG_DIR
    if not log_dir.is_dir():
        return
    paths = sorted(
        log_dir.glob("*/*.json"),
        key=lambda p: (p.parent.name, int(p.stem) if p.stem.isdigit() else -1),
    )
    for path in paths:
        manifest = read_json(path)
        if manifest is not None:
            yield manifest


def partition_values(relative: str) -> Dict[str, Any]:
    """Parse `col=value` directory segments of a relative file path."""
    values: Dict[str, Any] = {}
    for segment in Path(relative).parent.parts:
        column, sep, raw = segment.partition("=")
        if sep:
            values[unescape_path_name(column)] = parse_literal(unescape_path_name(raw))
    return values


def read_partitioned(root: Path | str) -> Iterator[Dict[str, Any]]:
    """
    Yield every committed row under `root`, with partition columns added.

    Partition values come from the directory names, typed like query literals
    (`hour=14` -> 14). A data field of the same name takes precedence.
    Unpublished files are ignored.
    """
    root = Path(root)
    for manifest in _manifests(root):
        for relative in manifest["files"]:
            partitions = partition_values(relative)
            with (root / relative).open("r", encoding="utf-8") as f:
                for line in f:
                    if not line.strip():
                        continue
                    row = json.loads(line)
                    for column, value in partitions.items():
                        row.setdefault(column, value)
                    yield row


__all__ = [
    "PartitionedFileSink",
    "partition_values",
    "read_partitioned",
    "serialize_record",
]
