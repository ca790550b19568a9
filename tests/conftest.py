"""
Pytest configuration for the microbatch streaming engine.

Provides fixtures for:
- The weather schema and partition spec used throughout the tests
- Fast stream configurations rooted in a per-test temporary directory
- Helpers to build raw records and batches
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, List

import pytest

from microbatch.config import Settings, StreamConfig
from microbatch.decoding import decode
from microbatch.domain.models import DEFAULT_WRITER_ID, Batch, RawRecord
from microbatch.domain.schema import Schema
from microbatch.partitioning import PartitionSpec

WEATHER_DDL = "timestamp TIMESTAMP, zipcode STRING, temperature INT"


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings with fast triggers and no retry backoff.
    """
    return Settings(
        log_level="DEBUG",
        trigger_interval_seconds=0.01,
        poll_timeout_seconds=5.0,
        max_sink_retries=2,
        max_commit_retries=2,
        retry_backoff_seconds=0.0,
    )


@pytest.fixture(scope="session")
def weather_schema() -> Schema:
    return Schema.from_ddl(WEATHER_DDL)


@pytest.fixture(scope="session")
def weather_partitions() -> PartitionSpec:
    return PartitionSpec.parse(["zipcode", "hour=hour(timestamp)"])


@pytest.fixture
def make_config(
    tmp_path: Path, weather_schema: Schema, test_settings: Settings
) -> Callable[..., StreamConfig]:
    """
    Factory for stream configs checkpointing under `tmp_path/checkpoints`.
    """

    def factory(stream_id: str = "weather", **overrides: Any) -> StreamConfig:
        overrides.setdefault("checkpoint_root", tmp_path / "checkpoints")
        schema = overrides.pop("schema", weather_schema)
        return StreamConfig.from_settings(stream_id, schema, settings=test_settings, **overrides)

    return factory


def _raw(payload: Any, offset: int = 0) -> RawRecord:
    data = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return RawRecord(offset=offset, payload=data)


@pytest.fixture
def make_batch(weather_schema: Schema) -> Callable[..., Batch]:
    """
    Factory decoding payloads into a batch with consecutive offsets.
    """

    def factory(
        batch_id: int,
        payloads: List[Any],
        start_offset: int = 0,
        writer_id: str = DEFAULT_WRITER_ID,
    ) -> Batch:
        records = tuple(
            decode(_raw(p, start_offset + i), weather_schema) for i, p in enumerate(payloads)
        )
        return Batch(
            batch_id=batch_id,
            start_offset=start_offset,
            end_offset=start_offset + len(payloads),
            records=records,
            writer_id=writer_id,
        )

    return factory
