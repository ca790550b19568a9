from __future__ import annotations

import json
from pathlib import Path

import pytest

from microbatch.errors import TransientSourceError
from microbatch.sources import FileSource, MemorySource, Source
from microbatch.sources import files as files_module


def _write(path: Path, lines: list) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")


def test_memory_source_offsets_and_payloads() -> None:
    source = MemorySource()

    assert source.poll(0) == ([], 0)
    assert source.add_data({"zipcode": "1"}, "raw text", b"\x00bytes") == 3

    records, end = source.poll(0)

    assert end == 3
    assert [r.offset for r in records] == [0, 1, 2]
    assert json.loads(records[0].payload) == {"zipcode": "1"}
    assert records[1].payload == b"raw text"
    assert records[2].payload == b"\x00bytes"


def test_memory_source_repolls_same_range_and_caps() -> None:
    source = MemorySource(max_records_per_poll=2)
    source.add_data(*({"n": i} for i in range(5)))

    first, end = source.poll(0)
    again, again_end = source.poll(0)
    rest, rest_end = source.poll(end)

    assert end == again_end == 2
    assert first == again
    assert (len(rest), rest_end) == (2, 4)
    assert source.poll(5) == ([], 5)


def test_sources_satisfy_protocol(tmp_path: Path) -> None:
    assert isinstance(MemorySource(), Source)
    assert isinstance(FileSource(tmp_path), Source)


def test_file_source_missing_directory_means_no_data(tmp_path: Path) -> None:
    source = FileSource(tmp_path / "nowhere")

    assert source.poll(0) == ([], 0)


def test_file_source_assigns_offsets_in_name_order(tmp_path: Path) -> None:
    _write(tmp_path / "in" / "weatherdata-22334.json", ['{"n": 3}', "", '{"n": 4}'])
    _write(tmp_path / "in" / "weatherdata-12345.json", ['{"n": 0}', '{"n": 1}', '{"n": 2}'])
    _write(tmp_path / "in" / "notes.txt", ["ignored"])
    source = FileSource(tmp_path / "in")

    records, end = source.poll(0)

    assert end == 5
    assert [json.loads(r.payload)["n"] for r in records] == [0, 1, 2, 3, 4]
    assert [r.offset for r in records] == [0, 1, 2, 3, 4]
    assert [(e.name, e.start_offset, e.end_offset) for e in source.entries] == [
        ("weatherdata-12345.json", 0, 3),
        ("weatherdata-22334.json", 3, 5),
    ]


def test_file_source_picks_up_new_files(tmp_path: Path) -> None:
    _write(tmp_path / "in" / "a.json", ['{"n": 0}'])
    source = FileSource(tmp_path / "in")
    _, end = source.poll(0)

    _write(tmp_path / "in" / "b.json", ['{"n": 1}', '{"n": 2}'])
    records, new_end = source.poll(end)

    assert new_end == 3
    assert [r.offset for r in records] == [1, 2]


def test_file_source_polls_mid_file_with_cap(tmp_path: Path) -> None:
    _write(tmp_path / "in" / "a.json", [json.dumps({"n": i}) for i in range(6)])
    source = FileSource(tmp_path / "in", max_records_per_poll=4)

    records, end = source.poll(3)

    assert end == 6
    assert [json.loads(r.payload)["n"] for r in records] == [3, 4, 5]
    assert source.poll(0)[1] == 4


def test_file_log_keeps_offsets_stable_across_restarts(tmp_path: Path) -> None:
    log_path = tmp_path / "checkpoint" / "sources" / "files.json"
    _write(tmp_path / "in" / "b.json", ['{"n": "b"}'])
    FileSource(tmp_path / "in", log_path=log_path).poll(0)

    # a file that sorts first arrives while the stream is down
    _write(tmp_path / "in" / "a.json", ['{"n": "a"}'])
    restarted = FileSource(tmp_path / "in", log_path=log_path)
    records, end = restarted.poll(0)

    assert end == 2
    assert [json.loads(r.payload)["n"] for r in records] == ["b", "a"]
    assert json.loads(log_path.read_text())["files"][0]["name"] == "b.json"


def test_file_source_read_error_is_transient(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write(tmp_path / "in" / "a.json", ['{"n": 0}'])
    source = FileSource(tmp_path / "in")

    def broken_glob(self, pattern):
        raise PermissionError("denied")

    monkeypatch.setattr(Path, "glob", broken_glob)

    with pytest.raises(TransientSourceError):
        source.poll(0)


def test_file_log_failure_keeps_offsets_hidden(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    log_path = tmp_path / "checkpoint" / "sources" / "files.json"
    _write(tmp_path / "in" / "a.json", ['{"n": 0}', '{"n": 1}'])
    source = FileSource(tmp_path / "in", log_path=log_path)
    real_write = files_module.atomic_write_json
    calls = []

    def failing_once(path, payload):
        calls.append(path)
        if len(calls) == 1:
            raise OSError("disk full")
        real_write(path, payload)

    monkeypatch.setattr(files_module, "atomic_write_json", failing_once)

    with pytest.raises(TransientSourceError):
        source.poll(0)
    assert source.entries == []
    assert source.latest_offset == 0
    assert not log_path.exists()

    records, end = source.poll(0)

    assert end == 2
    assert [json.loads(r.payload)["n"] for r in records] == [0, 1]
    assert json.loads(log_path.read_text())["files"][0]["num_records"] == 2
