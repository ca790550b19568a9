"""
Micro-batch scheduler: the control loop of one stream.

Each trigger walks the state machine

    IDLE -> POLLING -> DECODING -> SINKING -> COMMITTING -> IDLE

and any unrecoverable error moves the stream to FAILED. A stop request is
observed only in IDLE, so a batch that started polling always finishes
committing before the stream reaches STOPPED.

Exactly-once effect for durable sinks comes from the ordering of writes:

1. the planned offset range is written to the checkpoint's offset log;
2. every sink accepts the batch (sinks are idempotent per writer and batch
   id, where the writer id names this stream and checkpoint);
3. the commit record is written.

A crash between 1 and 3 leaves a planned batch without commit; on restart the
scheduler replays exactly that range under the same batch id.

Usage (normally through `microbatch.stream.start_stream`):
    scheduler = Scheduler(config, source, [sink])
    scheduler.run_once()
"""

from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from enum import Enum
from typing import Deque, Dict, List, Optional, Sequence

from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from microbatch.checkpoint import CheckpointStore
from microbatch.config import StreamConfig
from microbatch.decoding import decode_batch
from microbatch.domain.models import (
    Batch,
    CheckpointRecord,
    PlannedBatch,
    RawRecord,
    StreamProgress,
)
from microbatch.errors import SinkFailure, TransientSourceError
from microbatch.sinks.abstract import Sink, SinkResult
from microbatch.sources.abstract import Source
from microbatch.utils.logging import get_logger
from microbatch.utils.profiler import PhaseTimer, profile_block

log = get_logger(__name__)


class StreamState(str, Enum):
    IDLE = "IDLE"
    POLLING = "POLLING"
    DECODING = "DECODING"
    SINKING = "SINKING"
    COMMITTING = "COMMITTING"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


TERMINAL_STATES = frozenset({StreamState.FAILED, StreamState.STOPPED})


class TriggerOutcome(str, Enum):
    COMMITTED = "committed"
    NO_DATA = "no_data"
    SOURCE_UNAVAILABLE = "source_unavailable"


def _retryable_sink_error(exc: BaseException) -> bool:
    return isinstance(exc, SinkFailure) and not exc.fatal


class Scheduler:
    """
    Drive one stream: poll, decode, sink and commit, one batch at a time.

    Parameters
    ----------
    config : StreamConfig
        Immutable stream configuration.
    source : Source
        Where raw records come from.
    sinks : Sequence[Sink]
        Every batch goes to all of them; ids must be unique.
        Partitioned sinks must only read top-level, non-nested fields of
        `config.schema`; temporal transforms need a timestamp field.
    checkpoint : CheckpointStore | None
        Defaults to a store under `config.checkpoint_dir`.
    """

    def __init__(
        self,
        config: StreamConfig,
        source: Source,
        sinks: Sequence[Sink],
        checkpoint: Optional[CheckpointStore] = None,
    ) -> None:
        if not sinks:
            raise ValueError("A stream needs at least one sink")
        sink_ids = [s.sink_id for s in sinks]
        if len(sink_ids) != len(set(sink_ids)):
            raise ValueError(f"Sink ids must be unique, got {sink_ids}")
        for sink in sinks:
            partition_spec = getattr(sink, "partition_spec", None)
            if partition_spec is not None:
                partition_spec.check_schema(config.schema)

        self.config = config
        self.source = source
        self.sinks: List[Sink] = list(sinks)
        self.checkpoint = checkpoint or CheckpointStore(
            config.checkpoint_dir,
            config.stream_id,
            max_retries=config.max_commit_retries,
            backoff_seconds=config.retry_backoff_seconds,
        )

        self._state = StreamState.IDLE
        self._cond = threading.Condition()
        self._stop_requested = threading.Event()
        self._wakeup = threading.Event()
        self._error: Optional[BaseException] = None
        self._progress: Deque[StreamProgress] = deque(maxlen=config.progress_history)
        self._empty_polls = 0
        self._polls_started = 0
        self._last_empty_poll = 0
        self._replay: Optional[PlannedBatch] = None
        self._recovered = False
        self._writer_id: Optional[str] = None
        self._poll_executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"{config.stream_id}-poll"
        )

    # ------------------------------------------------------------------ state

    @property
    def stream_id(self) -> str:
        return self.config.stream_id

    @property
    def state(self) -> StreamState:
        with self._cond:
            return self._state

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    @property
    def recent_progress(self) -> List[StreamProgress]:
        with self._cond:
            return list(self._progress)

    @property
    def last_progress(self) -> Optional[StreamProgress]:
        with self._cond:
            return self._progress[-1] if self._progress else None

    @property
    def empty_polls(self) -> int:
        with self._cond:
            return self._empty_polls

    @property
    def polls_started(self) -> int:
        with self._cond:
            return self._polls_started

    @property
    def last_empty_poll(self) -> int:
        """Sequence number of the latest trigger whose poll found nothing new."""
        with self._cond:
            return self._last_empty_poll

    def _transition(self, new_state: StreamState) -> None:
        with self._cond:
            old_state = self._state
            if old_state in TERMINAL_STATES:
                raise RuntimeError(f"stream '{self.stream_id}' is already {old_state.value}")
            self._state = new_state
            self._cond.notify_all()
        log.debug(
            f"[{self.stream_id}] {old_state.value} -> {new_state.value}",
            extra={"stream_id": self.stream_id, "from": old_state.value, "to": new_state.value},
        )

    def request_stop(self) -> None:
        """Ask the loop to stop at the next IDLE boundary."""
        self._stop_requested.set()
        self._wakeup.set()

    def wake(self) -> None:
        """Cut the current trigger wait short."""
        self._wakeup.set()

    def wait_for(self, predicate, timeout: Optional[float] = None) -> bool:
        """Block until `predicate()` holds; re-evaluated on every state or progress change."""
        with self._cond:
            return self._cond.wait_for(predicate, timeout=timeout)

    # ---------------------------------------------------------------- polling

    def recover(self) -> None:
        """Load the planned-but-uncommitted batch, if any, for replay."""
        if self._recovered:
            return
        metadata = self.checkpoint.metadata()
        self._writer_id = f"{self.stream_id}-{metadata.checkpoint_id[:8]}"
        self._replay = self.checkpoint.pending()
        self._recovered = True

    def _poll(self, since_offset: int) -> tuple[List[RawRecord], int]:
        future = self._poll_executor.submit(self.source.poll, since_offset)
        try:
            return future.result(timeout=self.config.poll_timeout_seconds)
        except FuturesTimeoutError as exc:
            future.cancel()
            raise TransientSourceError(
                f"poll did not return within {self.config.poll_timeout_seconds}s"
            ) from exc
        except (ConnectionError, TimeoutError) as exc:
            raise TransientSourceError(str(exc)) from exc

    def _poll_planned(
        self, planned: PlannedBatch, since_offset: int
    ) -> tuple[List[RawRecord], int]:
        """
        Poll until the whole planned range of a replayed batch is in hand.

        Raises
        ------
        TransientSourceError
            If the source stops short of `planned.end_offset`; nothing is
            committed and the replay is attempted again on the next trigger.
        """
        raws: List[RawRecord] = []
        offset = since_offset
        while offset < planned.end_offset:
            polled, next_offset = self._poll(offset)
            if next_offset <= offset:
                raise TransientSourceError(
                    f"source has no records past offset {offset}; batch "
                    f"{planned.batch_id} needs [{planned.start_offset}, {planned.end_offset})"
                )
            raws.extend(r for r in polled if offset <= r.offset < planned.end_offset)
            offset = next_offset
        return raws, planned.end_offset

    # ---------------------------------------------------------------- sinking

    def _write_sink(self, sink: Sink, batch: Batch) -> SinkResult:
        try:
            return sink.write(batch)
        except SinkFailure:
            raise
        except MemoryError as exc:
            raise SinkFailure(sink.sink_id, batch.batch_id, "out of memory", fatal=True) from exc
        except Exception as exc:  # noqa: BLE001 - any sink error rejects the whole batch
            raise SinkFailure(sink.sink_id, batch.batch_id, f"{type(exc).__name__}: {exc}") from exc

    def _sink_all(self, batch: Batch) -> Dict[str, SinkResult]:
        """
        Write the batch to every sink, retrying only the sinks that have not accepted it yet.
        """
        accepted: Dict[str, SinkResult] = {}
        backoff = self.config.retry_backoff_seconds
        retrying = Retrying(
            stop=stop_after_attempt(self.config.max_sink_retries + 1),
            wait=wait_exponential(multiplier=backoff, min=backoff, max=backoff * 10),
            retry=retry_if_exception(_retryable_sink_error),
            reraise=True,
            before_sleep=lambda state: log.warning(
                f"[{self.stream_id}] Sink failed, retrying batch {batch.batch_id}",
                extra={
                    "stream_id": self.stream_id,
                    "batch_id": batch.batch_id,
                    "attempt": state.attempt_number,
                    "error": str(state.outcome.exception()) if state.outcome else None,
                },
            ),
        )
        for attempt in retrying:
            with attempt:
                for sink in self.sinks:
                    if sink.sink_id in accepted:
                        continue
                    accepted[sink.sink_id] = self._write_sink(sink, batch)
        return accepted

    # ---------------------------------------------------------------- trigger

    def run_once(self) -> TriggerOutcome:
        """
        Execute one trigger from IDLE back to IDLE.

        Raises
        ------
        SinkFailure
            A sink still rejected the batch after the retry bound.
        CheckpointWriteFailure
            Progress could not be made durable.
        """
        self.recover()
        timer = PhaseTimer()

        with profile_block(f"{self.stream_id}-trigger") as stats:
            self._transition(StreamState.POLLING)
            with self._cond:
                self._polls_started += 1
                poll_seq = self._polls_started
            start_offset = self.checkpoint.committed_offset()
            replay = self._replay
            with timer.phase("poll"):
                try:
                    if replay is not None:
                        raws, new_offset = self._poll_planned(replay, start_offset)
                    else:
                        raws, new_offset = self._poll(start_offset)
                except TransientSourceError as exc:
                    log.warning(
                        f"[{self.stream_id}] Source unavailable, will retry",
                        extra={"stream_id": self.stream_id, "offset": start_offset, "error": str(exc)},
                    )
                    self._transition(StreamState.IDLE)
                    return TriggerOutcome.SOURCE_UNAVAILABLE

            if replay is not None:
                batch_id, end_offset = replay.batch_id, replay.end_offset
            else:
                batch_id, end_offset = self.checkpoint.next_batch_id(), new_offset
            raws = [r for r in raws if start_offset <= r.offset < end_offset]

            if not raws and replay is None:
                with self._cond:
                    self._empty_polls += 1
                    self._last_empty_poll = poll_seq
                    self._cond.notify_all()
                self._transition(StreamState.IDLE)
                return TriggerOutcome.NO_DATA

            if replay is None:
                with timer.phase("plan"):
                    self.checkpoint.plan(
                        PlannedBatch(
                            batch_id=batch_id, start_offset=start_offset, end_offset=end_offset
                        )
                    )
            else:
                log.info(
                    f"[{self.stream_id}] Replaying uncommitted batch {batch_id}",
                    extra={
                        "stream_id": self.stream_id,
                        "batch_id": batch_id,
                        "start_offset": start_offset,
                        "end_offset": end_offset,
                        "records": len(raws),
                    },
                )

            self._transition(StreamState.DECODING)
            with timer.phase("decode"):
                records = decode_batch(raws, self.config.schema, self.config.malformed_mode)
            batch = Batch(
                batch_id=batch_id,
                start_offset=start_offset,
                end_offset=end_offset,
                records=tuple(records),
                writer_id=self._writer_id,
            )
            # dropped (DROPMALFORMED) plus retained-and-flagged (PERMISSIVE)
            num_malformed = len(raws) - len(records) + batch.num_malformed

            self._transition(StreamState.SINKING)
            with timer.phase("sink"):
                results = self._sink_all(batch)

            self._transition(StreamState.COMMITTING)
            with timer.phase("commit"):
                self.checkpoint.commit(
                    CheckpointRecord(
                        stream_id=self.stream_id,
                        batch_id=batch_id,
                        start_offset=start_offset,
                        end_offset=end_offset,
                        sinks={sink_id: True for sink_id in results},
                    )
                )
            self._replay = None

        durations = timer.durations_ms
        progress = StreamProgress(
            stream_id=self.stream_id,
            batch_id=batch_id,
            start_offset=start_offset,
            end_offset=end_offset,
            num_input_rows=len(raws),
            num_malformed_rows=num_malformed,
            sink_rows={sink_id: result.get("rows", 0) for sink_id, result in results.items()},
            durations_ms={**durations, "total": round(stats.duration_seconds * 1000.0, 3)},
            processed_rows_per_second=(
                round(len(raws) / stats.duration_seconds, 2) if stats.duration_seconds else 0.0
            ),
            peak_rss_bytes=stats.peak_rss_bytes,
        )
        with self._cond:
            self._progress.append(progress)
            self._cond.notify_all()
        log.info(
            f"[{self.stream_id}] Batch {batch_id} committed",
            extra={
                "stream_id": self.stream_id,
                "batch_id": batch_id,
                "start_offset": start_offset,
                "end_offset": end_offset,
                "rows": len(raws),
                "malformed": num_malformed,
            },
        )
        self._transition(StreamState.IDLE)
        return TriggerOutcome.COMMITTED

    # ------------------------------------------------------------------- loop

    def run(self) -> None:
        """
        Loop until stopped, failed or (with `available_now`) caught up.
        """
        log.info(
            f"[STREAM START] {self.stream_id}",
            extra={
                "stream_id": self.stream_id,
                "source": getattr(self.source, "name", type(self.source).__name__),
                "sinks": [s.sink_id for s in self.sinks],
            },
        )
        try:
            self.recover()
            while not self._stop_requested.is_set():
                outcome = self.run_once()
                if outcome is TriggerOutcome.COMMITTED:
                    continue
                if outcome is TriggerOutcome.NO_DATA and self.config.available_now:
                    log.info(
                        f"[{self.stream_id}] All available data processed",
                        extra={"stream_id": self.stream_id},
                    )
                    break
                self._wakeup.wait(self.config.trigger_interval_seconds)
                self._wakeup.clear()
        except Exception as exc:  # noqa: BLE001 - any escape from a trigger fails the stream
            self._error = exc
            log.exception(
                f"[STREAM FAILED] {self.stream_id}",
                extra={"stream_id": self.stream_id, "state": self.state.value},
            )
            self._transition(StreamState.FAILED)
        else:
            self._transition(StreamState.STOPPED)
            log.info(f"[STREAM STOPPED] {self.stream_id}", extra={"stream_id": self.stream_id})
        finally:
            self._shutdown()

    def _shutdown(self) -> None:
        self._poll_executor.shutdown(wait=False, cancel_futures=True)
        for resource in [self.source, *self.sinks]:
            close = getattr(resource, "close", None)
            if callable(close):
                try:
                    close()
                except Exception:  # noqa: BLE001 - cleanup must not mask the stream outcome
                    log.warning(
                        f"[{self.stream_id}] Failed to close {resource!r}",
                        exc_info=True,
                        extra={"stream_id": self.stream_id},
                    )


__all__ = ["Scheduler", "StreamState", "TERMINAL_STATES", "TriggerOutcome"]
