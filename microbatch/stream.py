"""
Stream lifecycle: `start_stream` returns a StreamHandle owning one scheduler thread.

There is no global registry of running streams. Whoever starts a stream holds
its handle and is responsible for stopping it:

    handle = start_stream(config, MemorySource(), [MaterializedViewSink("weatherdata")])
    ...
    handle.view("weatherdata").query().where("temperature > 65").collect()
    handle.stop()
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Sequence

from microbatch.config import StreamConfig
from microbatch.domain.models import StreamProgress
from microbatch.errors import StreamFailedError
from microbatch.scheduler import TERMINAL_STATES, Scheduler, StreamState
from microbatch.sinks.abstract import Sink
from microbatch.sinks.memory import MaterializedView, MaterializedViewSink
from microbatch.sources.abstract import Source


class StreamHandle:
    """
    Handle to a running stream: status, progress, named views and lifecycle.
    """

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler
        self._thread = threading.Thread(
            target=scheduler.run,
            name=f"stream-{scheduler.stream_id}",
            daemon=True,
        )

    def _start(self) -> "StreamHandle":
        self._thread.start()
        return self

    @property
    def stream_id(self) -> str:
        return self._scheduler.stream_id

    @property
    def status(self) -> StreamState:
        return self._scheduler.state

    @property
    def is_active(self) -> bool:
        return self._thread.is_alive() and self.status not in TERMINAL_STATES

    @property
    def exception(self) -> Optional[BaseException]:
        return self._scheduler.error

    @property
    def last_progress(self) -> Optional[StreamProgress]:
        return self._scheduler.last_progress

    @property
    def recent_progress(self) -> List[StreamProgress]:
        return self._scheduler.recent_progress

    @property
    def committed_offset(self) -> int:
        return self._scheduler.checkpoint.committed_offset()

    @property
    def views(self) -> Dict[str, MaterializedView]:
        return {
            sink.view.name: sink.view
            for sink in self._scheduler.sinks
            if isinstance(sink, MaterializedViewSink)
        }

    def view(self, name: str) -> MaterializedView:
        views = self.views
        if name not in views:
            raise KeyError(f"Stream '{self.stream_id}' has no in-memory view '{name}'")
        return views[name]

    def _raise_if_failed(self) -> None:
        if self.status is StreamState.FAILED:
            raise StreamFailedError(self.stream_id, self.exception) from self.exception

    def await_termination(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the stream to stop. Returns False on timeout.

        Raises
        ------
        StreamFailedError
            If the stream terminated in FAILED.
        """
        self._thread.join(timeout)
        if self._thread.is_alive():
            return False
        self._raise_if_failed()
        return True

    def process_all_available(self, timeout: Optional[float] = None) -> None:
        """
        Block until every record the source had when called is committed.

        Waits for a poll that started after this call and found nothing new,
        which can only happen after everything before it was committed.
        """
        started = self._scheduler.polls_started
        self._scheduler.wake()
        done = self._scheduler.wait_for(
            lambda: self._scheduler.last_empty_poll > started
            or self._scheduler.state in TERMINAL_STATES,
            timeout=timeout,
        )
        self._raise_if_failed()
        if not done:
            raise TimeoutError(
                f"stream '{self.stream_id}' did not catch up within {timeout}s"
            )

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Request a stop and wait for the in-flight batch to commit.

        Idempotent. Does not raise if the stream had failed; use
        `await_termination` or `exception` for that.
        """
        self._scheduler.request_stop()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def __enter__(self) -> "StreamHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"StreamHandle(stream_id={self.stream_id!r}, status={self.status.value})"


def start_stream(
    config: StreamConfig,
    source: Source,
    sinks: Sequence[Sink],
) -> StreamHandle:
    """
    Start a stream on its own thread and return its handle.
    """
    return StreamHandle(Scheduler(config, source, sinks))._start()


__all__ = ["StreamHandle", "start_stream"]
