from __future__ import annotations

import time
from typing import Callable

import pytest

from microbatch.config import StreamConfig
from microbatch.domain.models import Batch
from microbatch.errors import SinkFailure, StreamFailedError
from microbatch.scheduler import StreamState
from microbatch.sinks.abstract import AbstractSink, SinkResult
from microbatch.sinks.memory import MaterializedViewSink
from microbatch.sources.memory import MemorySource
from microbatch.stream import start_stream


class RejectingSink(AbstractSink):
    sink_id = "rejecting"

    def write(self, batch: Batch) -> SinkResult:
        raise SinkFailure(self.sink_id, batch.batch_id, "always", fatal=True)


def test_process_all_available_and_query(
    make_config: Callable[..., StreamConfig], weather_schema
) -> None:
    source = MemorySource()
    sink = MaterializedViewSink("weatherdata", schema=weather_schema)

    with start_stream(make_config(), source, [sink]) as handle:
        source.add_data(
            {"timestamp": "2018-10-01T14:05:00", "zipcode": "22334", "temperature": 70},
            {"timestamp": "2018-10-01T15:05:00", "zipcode": "22334", "temperature": 60},
        )
        handle.process_all_available(timeout=10)

        assert handle.is_active
        assert handle.status not in (StreamState.FAILED, StreamState.STOPPED)
        assert handle.committed_offset == 2
        rows = handle.view("weatherdata").query().where("temperature > 65").collect()
        assert [r["temperature"] for r in rows] == [70]

        source.add_data({"zipcode": "12345", "temperature": 80})
        handle.process_all_available(timeout=10)
        assert len(handle.view("weatherdata")) == 3

    assert handle.status is StreamState.STOPPED
    assert not handle.is_active
    assert handle.await_termination(timeout=1)


def test_unknown_view_raises_key_error(make_config: Callable[..., StreamConfig]) -> None:
    with start_stream(make_config(), MemorySource(), [MaterializedViewSink("a")]) as handle:
        assert set(handle.views) == {"a"}
        with pytest.raises(KeyError):
            handle.view("b")


def test_failed_stream_surfaces_error(make_config: Callable[..., StreamConfig]) -> None:
    source = MemorySource()
    source.add_data({"zipcode": "1"})
    handle = start_stream(make_config(), source, [RejectingSink()])

    with pytest.raises(StreamFailedError) as excinfo:
        handle.await_termination(timeout=10)

    assert handle.status is StreamState.FAILED
    assert isinstance(handle.exception, SinkFailure)
    assert excinfo.value.cause is handle.exception
    with pytest.raises(StreamFailedError):
        handle.process_all_available(timeout=1)
    handle.stop()


def test_available_now_terminates_on_its_own(make_config: Callable[..., StreamConfig]) -> None:
    source = MemorySource()
    source.add_data({"zipcode": "1"}, {"zipcode": "2"})
    sink = MaterializedViewSink("weatherdata")

    handle = start_stream(make_config(available_now=True), source, [sink])

    assert handle.await_termination(timeout=10)
    assert handle.status is StreamState.STOPPED
    assert handle.last_progress.end_offset == 2
    assert len(handle.recent_progress) == 1
    assert "weather" in repr(handle)


def test_process_all_available_returns_after_one_empty_poll(
    make_config: Callable[..., StreamConfig],
) -> None:
    source = MemorySource()
    source.add_data({"zipcode": "12345", "temperature": 80})
    sink = MaterializedViewSink("weatherdata")

    with start_stream(make_config(trigger_interval_seconds=30), source, [sink]) as handle:
        handle.process_all_available(timeout=10)
        assert len(handle.view("weatherdata")) == 1

        started = time.monotonic()
        handle.process_all_available(timeout=10)

        assert time.monotonic() - started < 5
        assert handle.committed_offset == 1
