"""
Configuration settings for the microbatch streaming engine.

`Settings` uses Pydantic Settings to load process-wide defaults (logging,
trigger cadence, retry bounds, default paths) from the environment or a
`.env` file. `StreamConfig` is the immutable per-stream configuration handed
to `start_stream`; it is fixed for the lifetime of the stream.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from microbatch.domain.models import MalformedMode
from microbatch.domain.schema import Schema


class Settings(BaseSettings):
    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Scheduler defaults
    trigger_interval_seconds: float = Field(1.0, ge=0, alias="STREAM_TRIGGER_INTERVAL_SECONDS")
    poll_timeout_seconds: float = Field(30.0, gt=0, alias="STREAM_POLL_TIMEOUT_SECONDS")
    max_sink_retries: int = Field(3, ge=0, alias="STREAM_MAX_SINK_RETRIES")
    max_commit_retries: int = Field(5, ge=0, alias="STREAM_MAX_COMMIT_RETRIES")
    retry_backoff_seconds: float = Field(0.5, ge=0, alias="STREAM_RETRY_BACKOFF_SECONDS")
    max_records_per_trigger: int = Field(10_000, gt=0, alias="STREAM_MAX_RECORDS_PER_TRIGGER")
    progress_history: int = Field(100, gt=0, alias="STREAM_PROGRESS_HISTORY")

    # Default locations
    input_path: Path = Field(Path("data/input"), alias="STREAM_INPUT_PATH")
    output_root: Path = Field(Path("data/output"), alias="STREAM_OUTPUT_ROOT")
    checkpoint_root: Path = Field(Path("data/checkpoints"), alias="STREAM_CHECKPOINT_ROOT")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


class StreamConfig(BaseModel):
    """
    Immutable configuration of a single stream.

    `stream_id` keys the checkpoint directory, so restarting with the same id
    and checkpoint root resumes from the last committed offset.
    """

    stream_id: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    schema_: Schema = Field(..., alias="schema")
    checkpoint_root: Path
    trigger_interval_seconds: float = Field(1.0, ge=0)
    poll_timeout_seconds: float = Field(30.0, gt=0)
    max_sink_retries: int = Field(3, ge=0)
    max_commit_retries: int = Field(5, ge=0)
    retry_backoff_seconds: float = Field(0.5, ge=0)
    malformed_mode: MalformedMode = MalformedMode.PERMISSIVE
    available_now: bool = False
    progress_history: int = Field(100, gt=0)

    model_config = {"frozen": True, "populate_by_name": True}

    @property
    def schema(self) -> Schema:  # type: ignore[override]
        return self.schema_

    @property
    def checkpoint_dir(self) -> Path:
        return Path(self.checkpoint_root) / self.stream_id

    @classmethod
    def from_settings(
        cls,
        stream_id: str,
        schema: Schema,
        settings: Settings | None = None,
        **overrides: Any,
    ) -> "StreamConfig":
        """Build a config with defaults taken from `Settings`."""
        settings = settings or get_settings()
        values: dict[str, Any] = {
            "stream_id": stream_id,
            "schema": schema,
            "checkpoint_root": settings.checkpoint_root,
            "trigger_interval_seconds": settings.trigger_interval_seconds,
            "poll_timeout_seconds": settings.poll_timeout_seconds,
            "max_sink_retries": settings.max_sink_retries,
            "max_commit_retries": settings.max_commit_retries,
            "retry_backoff_seconds": settings.retry_backoff_seconds,
            "progress_history": settings.progress_history,
        }
        values.update(overrides)
        return cls(**values)


__all__ = ["Settings", "StreamConfig", "get_settings"]
