import json
from pathlib import Path
from time import sleep

import pytest

from microbatch import config
from microbatch.config import StreamConfig
from microbatch.domain.models import MalformedMode
from microbatch.utils import profiler
from scripts import generate_data


def test_get_settings_defaults():
    settings = config.get_settings()
    assert settings.log_level == "INFO"
    assert settings.trigger_interval_seconds > 0
    assert settings.poll_timeout_seconds > 0
    assert settings.max_sink_retries >= 0
    assert settings.max_records_per_trigger > 0
    assert settings.checkpoint_root == Path("data/checkpoints")


def test_stream_config_from_settings_applies_overrides(test_settings, weather_schema, tmp_path):
    cfg = StreamConfig.from_settings(
        "weather",
        weather_schema,
        settings=test_settings,
        checkpoint_root=tmp_path,
        malformed_mode=MalformedMode.DROPMALFORMED,
    )
    assert cfg.schema == weather_schema
    assert cfg.trigger_interval_seconds == test_settings.trigger_interval_seconds
    assert cfg.malformed_mode is MalformedMode.DROPMALFORMED
    assert cfg.checkpoint_dir == tmp_path / "weather"


def test_stream_config_is_immutable(make_config):
    cfg = make_config()
    with pytest.raises(Exception):
        cfg.stream_id = "other"


def test_stream_config_rejects_path_like_stream_id(make_config):
    with pytest.raises(ValueError):
        make_config(stream_id="../escape")


def test_profile_block_measures_time():
    with profiler.profile_block("sleep") as stats:
        sleep(0.05)
    assert stats.duration_seconds >= 0.05
    assert stats.peak_rss_bytes is None or stats.peak_rss_bytes > 0


def test_phase_timer_accumulates_phases():
    timer = profiler.PhaseTimer()
    with timer.phase("poll"):
        sleep(0.01)
    with timer.phase("poll"):
        sleep(0.01)
    with timer.phase("sink"):
        pass
    assert timer.durations_ms["poll"] >= 20.0
    assert set(timer.durations_ms) == {"poll", "sink"}


def test_generate_data_writes_one_file_per_zipcode(tmp_path: Path):
    generate_data.main(
        output=tmp_path,
        zipcodes=["12345", "22334"],
        readings=5,
        day="2018-10-01",
        noise=0.0,
        seed=123,
    )
    files = sorted(p.name for p in tmp_path.iterdir())
    assert files == ["weatherdata-12345.json", "weatherdata-22334.json"]

    lines = (tmp_path / "weatherdata-22334.json").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 5
    first = json.loads(lines[0])
    assert first["zipcode"] == "22334"
    assert first["timestamp"].startswith("2018-10-01T")
    assert isinstance(first["temperature"], int)
