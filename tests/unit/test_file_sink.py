from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

import pytest

from microbatch.domain.models import Batch
from microbatch.errors import SinkFailure
from microbatch.partitioning import PartitionSpec
from microbatch.sinks import files as files_module
from microbatch.sinks.files import (
    SINK_LOG_DIR,
    STAGING_DIR,
    PartitionedFileSink,
    partition_values,
    read_partitioned,
)

READINGS = [
    {"timestamp": "2018-10-01T14:05:00", "zipcode": "12345", "temperature": 75},
    {"timestamp": "2018-10-01T14:35:00", "zipcode": "12345", "temperature": 77},
    {"timestamp": "2018-10-01T15:05:00", "zipcode": "12345", "temperature": 79},
    {"timestamp": "2018-10-01T14:10:00", "zipcode": "22334", "temperature": 70},
]


def _data_files(root: Path) -> list[str]:
    return sorted(
        p.relative_to(root).as_posix()
        for p in root.rglob("part-*.json")
        if STAGING_DIR not in p.parts
    )


def test_writes_partition_directories(
    tmp_path: Path, make_batch: Callable[..., Batch], weather_partitions: PartitionSpec
) -> None:
    sink = PartitionedFileSink(tmp_path / "out", weather_partitions)

    result = sink.write(make_batch(0, READINGS))

    assert result["rows"] == 4
    assert result["skipped_rows"] == 0
    assert result["files"] == [
        "zipcode=12345/hour=14/part-default-00000-0000.json",
        "zipcode=12345/hour=15/part-default-00000-0001.json",
        "zipcode=22334/hour=14/part-default-00000-0002.json",
    ]
    assert _data_files(tmp_path / "out") == sorted(result["files"])
    assert not (tmp_path / "out" / STAGING_DIR / "default" / "00000").exists()

    lines = (tmp_path / "out" / result["files"][0]).read_text().splitlines()
    assert [json.loads(line)["temperature"] for line in lines] == [75, 77]
    assert json.loads(lines[0])["timestamp"] == "2018-10-01T14:05:00+00:00"


def test_records_without_key_are_excluded(
    tmp_path: Path, make_batch: Callable[..., Batch], weather_partitions: PartitionSpec
) -> None:
    sink = PartitionedFileSink(tmp_path / "out", weather_partitions)

    result = sink.write(
        make_batch(
            0,
            [
                READINGS[0],
                {"timestamp": None, "zipcode": "12345", "temperature": 60},
                {"zipcode": "12345"},
                b"not json",
            ],
        )
    )

    assert result["rows"] == 1
    assert result["skipped_rows"] == 3
    assert [r["temperature"] for r in read_partitioned(tmp_path / "out")] == [75]


def test_manifest_marks_batch_published(
    tmp_path: Path, make_batch: Callable[..., Batch], weather_partitions: PartitionSpec
) -> None:
    sink = PartitionedFileSink(tmp_path / "out", weather_partitions)
    sink.write(make_batch(0, READINGS[:2]))

    assert sink.is_published(0)
    assert not sink.is_published(1)
    manifest_path = tmp_path / "out" / SINK_LOG_DIR / "default" / "00000.json"
    manifest = json.loads(manifest_path.read_text())
    assert manifest["batch_id"] == 0
    assert (manifest["start_offset"], manifest["end_offset"]) == (0, 2)
    assert manifest["rows"] == 2
    assert manifest["files"] == ["zipcode=12345/hour=14/part-default-00000-0000.json"]


def test_replayed_batch_is_not_duplicated(
    tmp_path: Path, make_batch: Callable[..., Batch], weather_partitions: PartitionSpec
) -> None:
    sink = PartitionedFileSink(tmp_path / "out", weather_partitions)
    batch = make_batch(0, READINGS)
    sink.write(batch)

    replay = sink.write(batch)

    assert replay["replayed"]
    assert len(list(read_partitioned(tmp_path / "out"))) == 4


def test_later_batches_append_new_files(
    tmp_path: Path, make_batch: Callable[..., Batch], weather_partitions: PartitionSpec
) -> None:
    sink = PartitionedFileSink(tmp_path / "out", weather_partitions)
    sink.write(make_batch(0, READINGS[:1]))
    sink.write(make_batch(1, READINGS[1:2], start_offset=1))

    assert _data_files(tmp_path / "out") == [
        "zipcode=12345/hour=14/part-default-00000-0000.json",
        "zipcode=12345/hour=14/part-default-00001-0000.json",
    ]
    assert [m["batch_id"] for m in sink.manifests()] == [0, 1]
    assert len(sink.committed_files()) == 2


def test_failed_publish_is_invisible_and_retry_is_exact(
    tmp_path: Path,
    make_batch: Callable[..., Batch],
    weather_partitions: PartitionSpec,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    sink = PartitionedFileSink(tmp_path / "out", weather_partitions)
    real_publish = files_module.publish
    calls = []

    def failing_publish(staged, final):
        calls.append(final)
        if len(calls) == 2:
            raise OSError("disk full")
        real_publish(staged, final)

    monkeypatch.setattr(files_module, "publish", failing_publish)
    batch = make_batch(0, READINGS)

    with pytest.raises(SinkFailure) as excinfo:
        sink.write(batch)

    assert not excinfo.value.fatal
    assert not sink.is_published(0)
    assert list(read_partitioned(tmp_path / "out")) == []
    assert not (tmp_path / "out" / STAGING_DIR / "default" / "00000").exists()

    sink.write(batch)

    rows = list(read_partitioned(tmp_path / "out"))
    assert sorted(r["temperature"] for r in rows) == [70, 75, 77, 79]
    assert len(_data_files(tmp_path / "out")) == 3


def test_read_partitioned_adds_partition_columns(
    tmp_path: Path, make_batch: Callable[..., Batch], weather_partitions: PartitionSpec
) -> None:
    sink = PartitionedFileSink(tmp_path / "out", weather_partitions)
    sink.write(make_batch(0, READINGS[3:]))

    rows = list(read_partitioned(tmp_path / "out"))

    assert rows == [
        {
            "timestamp": "2018-10-01T14:10:00+00:00",
            "zipcode": "22334",
            "temperature": 70,
            "hour": 14,
        }
    ]


def test_unpartitioned_sink_keeps_malformed_records(
    tmp_path: Path, make_batch: Callable[..., Batch]
) -> None:
    sink = PartitionedFileSink(tmp_path / "out")

    result = sink.write(make_batch(0, [READINGS[0], b"{broken"]))

    assert result["files"] == ["part-default-00000-0000.json"]
    rows = list(read_partitioned(tmp_path / "out"))
    assert rows[1]["_corrupt_record"] == "{broken"
    assert rows[1]["zipcode"] is None


def test_only_append_mode_supported(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        PartitionedFileSink(tmp_path, mode="overwrite")


def test_partition_values_are_typed() -> None:
    assert partition_values("zipcode=12345/hour=14/part-default-00000-0000.json") == {
        "zipcode": 12345,
        "hour": 14,
    }


def test_sink_id_defaults_to_root(tmp_path: Path) -> None:
    assert PartitionedFileSink(tmp_path).sink_id == f"files:{tmp_path}"


def test_writers_sharing_a_root_do_not_collide(
    tmp_path: Path, make_batch: Callable[..., Batch], weather_partitions: PartitionSpec
) -> None:
    sink = PartitionedFileSink(tmp_path / "out", weather_partitions)
    sink.write(make_batch(0, READINGS[:1], writer_id="a-0001"))

    result = sink.write(make_batch(0, READINGS[1:2], writer_id="b-0002"))

    assert not result["replayed"]
    assert result["files"] == ["zipcode=12345/hour=14/part-b-0002-00000-0000.json"]
    assert sink.is_published(0, "a-0001")
    assert sink.is_published(0, "b-0002")
    assert not sink.is_published(0)
    assert [(m["writer_id"], m["batch_id"]) for m in sink.manifests()] == [
        ("a-0001", 0),
        ("b-0002", 0),
    ]
    assert sorted(r["temperature"] for r in read_partitioned(tmp_path / "out")) == [75, 77]
