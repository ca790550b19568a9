"""
Directory source: discovers newline-delimited JSON files as they appear.

Every non-blank line of a discovered file is one raw record. Files are
assumed immutable once they show up (write them elsewhere and move them
in). Each newly discovered file is appended to a file log that assigns it a
stable offset range; with `log_path` set the log is persisted, so after a
restart the same offset maps to the same record and polls stay idempotent.

Layout of the persisted log:

    {"files": [{"name": "weatherdata-12345.json", "start_offset": 0, "num_records": 24}, ...]}
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from microbatch.domain.models import RawRecord
from microbatch.errors import TransientSourceError
from microbatch.infrastructure.storage import atomic_write_json, read_json
from microbatch.sources.abstract import AbstractSource, PollResult
from microbatch.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class FileEntry:
    name: str
    start_offset: int
    num_records: int

    @property
    def end_offset(self) -> int:
        return self.start_offset + self.num_records


def _payload_lines(path: Path) -> Iterator[bytes]:
    with path.open("rb") as f:
        for line in f:
            stripped = line.strip()
            if stripped:
                yield stripped


class FileSource(AbstractSource):
    """
    Poll a directory for new files matching `pattern`, in file-name order.
    """

    name: str = "files"

    def __init__(
        self,
        path: Path | str,
        pattern: str = "*.json",
        log_path: Optional[Path | str] = None,
        max_records_per_poll: Optional[int] = None,
    ) -> None:
        self.path = Path(path)
        self.pattern = pattern
        self.log_path = Path(log_path) if log_path is not None else None
        self.max_records_per_poll = max_records_per_poll
        self._lock = threading.Lock()
        self._entries: List[FileEntry] = self._load_log()

    def _load_log(self) -> List[FileEntry]:
        if self.log_path is None:
            return []
        payload = read_json(self.log_path)
        if not payload:
            return []
        return [FileEntry(**item) for item in payload.get("files", [])]

    def _save_log(self, entries: List[FileEntry]) -> None:
        if self.log_path is None:
            return
        atomic_write_json(self.log_path, {"files": [asdict(e) for e in entries]})

    @property
    def entries(self) -> List[FileEntry]:
        with self._lock:
            return list(self._entries)

    @property
    def latest_offset(self) -> int:
        with self._lock:
            return self._entries[-1].end_offset if self._entries else 0

    def _discover(self) -> None:
        if not self.path.exists():
            log.debug("Input path does not exist yet", extra={"path": str(self.path)})
            return
        known = {e.name for e in self._entries}
        try:
            candidates = sorted(
                p for p in self.path.glob(self.pattern) if p.is_file() and p.name not in known
            )
        except OSError as exc:
            raise TransientSourceError(f"cannot list {self.path}: {exc}") from exc
        if not candidates:
            return

        next_offset = self._entries[-1].end_offset if self._entries else 0
        discovered: List[FileEntry] = []
        for candidate in candidates:
            try:
                count = sum(1 for _ in _payload_lines(candidate))
            except OSError as exc:
                raise TransientSourceError(f"cannot read {candidate}: {exc}") from exc
            discovered.append(
                FileEntry(name=candidate.name, start_offset=next_offset, num_records=count)
            )
            next_offset += count

        # offsets become visible only once the log that assigns them is durable
        try:
            self._save_log(self._entries + discovered)
        except OSError as exc:
            raise TransientSourceError(f"cannot persist file log {self.log_path}: {exc}") from exc
        self._entries.extend(discovered)
        for entry in discovered:
            log.info(
                "Discovered input file",
                extra={
                    "file": entry.name,
                    "records": entry.num_records,
                    "start_offset": entry.start_offset,
                },
            )

    def poll(self, since_offset: int) -> PollResult:
        with self._lock:
            self._discover()
            latest = self._entries[-1].end_offset if self._entries else 0
            end = latest
            if self.max_records_per_poll is not None:
                end = min(end, since_offset + self.max_records_per_poll)
            if since_offset >= end:
                return [], since_offset

            records: List[RawRecord] = []
            for entry in self._entries:
                if entry.end_offset <= since_offset or entry.start_offset >= end:
                    continue
                try:
                    for index, payload in enumerate(_payload_lines(self.path / entry.name)):
                        offset = entry.start_offset + index
                        if offset >= end:
                            break
                        if offset >= since_offset:
                            records.append(RawRecord(offset=offset, payload=payload))
                except OSError as exc:
                    raise TransientSourceError(f"cannot read {entry.name}: {exc}") from exc
            return records, end


__all__ = ["FileEntry", "FileSource"]
