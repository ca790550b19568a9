from __future__ import annotations

import threading
from typing import Callable

import pytest

from microbatch.domain.models import Batch
from microbatch.errors import SinkFailure
from microbatch.sinks.memory import MaterializedView, MaterializedViewSink


def test_append_publishes_whole_batch(make_batch: Callable[..., Batch], weather_schema) -> None:
    sink = MaterializedViewSink("weatherdata", schema=weather_schema)

    result = sink.write(make_batch(0, [{"zipcode": "1"}, {"zipcode": "2"}]))

    assert sink.sink_id == "memory:weatherdata"
    assert result["rows"] == 2
    assert not result["replayed"]
    assert len(sink.view) == 2
    assert [r["zipcode"] for r in sink.view.snapshot()] == ["1", "2"]


def test_replayed_batch_is_skipped(make_batch: Callable[..., Batch]) -> None:
    sink = MaterializedViewSink("weatherdata")
    sink.write(make_batch(0, [{"zipcode": "1"}]))
    sink.write(make_batch(1, [{"zipcode": "2"}], start_offset=1))

    result = sink.write(make_batch(1, [{"zipcode": "2"}], start_offset=1))

    assert result["replayed"]
    assert result["rows"] == 0
    assert len(sink.view) == 2


def test_snapshot_is_stable_while_view_grows(make_batch: Callable[..., Batch]) -> None:
    sink = MaterializedViewSink("weatherdata")
    sink.write(make_batch(0, [{"zipcode": "1"}]))
    before = sink.view.snapshot()

    sink.write(make_batch(1, [{"zipcode": "2"}, {"zipcode": "3"}], start_offset=1))

    assert len(before) == 1
    assert len(sink.view.snapshot()) == 3


def test_malformed_records_are_kept_flagged(make_batch: Callable[..., Batch]) -> None:
    sink = MaterializedViewSink("weatherdata")
    sink.write(make_batch(0, [b"{oops", {"zipcode": "1"}]))

    rows = sink.view.snapshot()

    assert rows[0].decode_failed
    assert rows[0].corrupt_record == "{oops"
    assert not rows[1].decode_failed


def test_out_of_memory_is_fatal(
    make_batch: Callable[..., Batch], monkeypatch: pytest.MonkeyPatch
) -> None:
    sink = MaterializedViewSink("weatherdata")

    def exhausted(records):
        raise MemoryError

    monkeypatch.setattr(sink.view, "append", exhausted)

    with pytest.raises(SinkFailure) as excinfo:
        sink.write(make_batch(0, [{"zipcode": "1"}]))

    assert excinfo.value.fatal
    assert sink.last_batch_ids == {}


def test_readers_only_see_complete_batches(make_batch: Callable[..., Batch]) -> None:
    view = MaterializedView("weatherdata")
    batch = make_batch(0, [{"zipcode": str(i)} for i in range(50)])
    seen = []
    done = threading.Event()

    def reader() -> None:
        while not done.is_set():
            seen.append(len(view.snapshot()))

    thread = threading.Thread(target=reader)
    thread.start()
    for _ in range(20):
        view.append(batch.records)
    done.set()
    thread.join()

    assert all(n % 50 == 0 for n in seen)
    assert len(view) == 1000


def test_batch_ids_are_tracked_per_writer(make_batch: Callable[..., Batch]) -> None:
    sink = MaterializedViewSink("weatherdata")
    sink.write(make_batch(0, [{"zipcode": "1"}], writer_id="a-0001"))

    result = sink.write(make_batch(0, [{"zipcode": "2"}], writer_id="b-0002"))

    assert not result["replayed"]
    assert sink.last_batch_ids == {"a-0001": 0, "b-0002": 0}
    assert [r["zipcode"] for r in sink.view.snapshot()] == ["1", "2"]
