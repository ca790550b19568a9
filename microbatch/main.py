from __future__ import annotations

import sys
import tempfile
from pathlib import Path
from typing import List, Optional

import typer

from microbatch.config import StreamConfig, get_settings
from microbatch.domain.models import MalformedMode
from microbatch.domain.schema import Schema
from microbatch.partitioning import PartitionSpec
from microbatch.reporter import print_progress, print_rows
from microbatch.sinks.files import PartitionedFileSink
from microbatch.sinks.memory import MaterializedViewSink
from microbatch.sources.files import FileSource
from microbatch.stream import StreamHandle, start_stream
from microbatch.utils.logging import configure_logging

app = typer.Typer(help="Micro-batch JSON streaming engine CLI.")

DEFAULT_SCHEMA = "timestamp TIMESTAMP, zipcode STRING, temperature INT"
DEFAULT_PARTITIONS = ["zipcode", "hour=hour(timestamp)"]


def _wait(handle: StreamHandle) -> None:
    """Wait for the stream while staying responsive to Ctrl-C."""
    try:
        while not handle.await_termination(timeout=0.5):
            pass
    except KeyboardInterrupt:
        typer.echo("Stopping stream (finishing in-flight batch)...", err=True)
        handle.stop()
        raise typer.Exit(code=130)


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"env={settings.app_env} log_level={settings.log_level} | "
        f"input={settings.input_path} output={settings.output_root} "
        f"checkpoints={settings.checkpoint_root} | "
        f"trigger={settings.trigger_interval_seconds}s poll_timeout={settings.poll_timeout_seconds}s "
        f"sink_retries={settings.max_sink_retries} commit_retries={settings.max_commit_retries} "
        f"max_records={settings.max_records_per_trigger}"
    )


@app.command()
def run(
    stream_id: str = typer.Option("archive", "--stream-id", help="Stream id; keys the checkpoint."),
    input_path: Optional[Path] = typer.Option(
        None, "--input", "-i", help="Directory of JSON-lines files (default from settings)."
    ),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Output root directory (default from settings)."
    ),
    checkpoint: Optional[Path] = typer.Option(
        None, "--checkpoint", "-c", help="Checkpoint root directory (default from settings)."
    ),
    schema: str = typer.Option(DEFAULT_SCHEMA, "--schema", help="Schema as 'name TYPE, ...'."),
    partition_by: Optional[List[str]] = typer.Option(
        None,
        "--partition-by",
        "-p",
        help="Partition rule, repeatable (e.g. zipcode, hour=hour(timestamp)).",
    ),
    pattern: str = typer.Option("*.json", "--pattern", help="Input file glob."),
    once: bool = typer.Option(
        True, "--once/--continuous", help="Stop when caught up, or keep polling until Ctrl-C."
    ),
    drop_malformed: bool = typer.Option(
        False, "--drop-malformed", help="Drop unparseable records instead of keeping them flagged."
    ),
) -> None:
    """
    Stream JSON files into partitioned, checkpointed output.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)

    config = StreamConfig.from_settings(
        stream_id,
        Schema.from_ddl(schema),
        settings=settings,
        checkpoint_root=checkpoint or settings.checkpoint_root,
        available_now=once,
        malformed_mode=MalformedMode.DROPMALFORMED if drop_malformed else MalformedMode.PERMISSIVE,
    )
    source = FileSource(
        input_path or settings.input_path,
        pattern=pattern,
        log_path=config.checkpoint_dir / "sources" / "files.json",
        max_records_per_poll=settings.max_records_per_trigger,
    )
    sink = PartitionedFileSink(
        output or settings.output_root,
        PartitionSpec.parse(partition_by or DEFAULT_PARTITIONS),
    )

    typer.echo(
        f"Starting stream '{stream_id}' -> {sink.root} "
        f"(partitioned by {', '.join(sink.partition_spec.columns) or 'nothing'})."
    )
    handle = start_stream(config, source, [sink])
    _wait(handle)
    print_progress(handle.recent_progress)


@app.command()
def query(
    input_path: Optional[Path] = typer.Option(
        None, "--input", "-i", help="Directory of JSON-lines files (default from settings)."
    ),
    schema: str = typer.Option(DEFAULT_SCHEMA, "--schema", help="Schema as 'name TYPE, ...'."),
    name: str = typer.Option("weatherdata", "--name", help="In-memory table name."),
    pattern: str = typer.Option("*.json", "--pattern", help="Input file glob."),
    select: Optional[str] = typer.Option(
        None, "--select", "-s", help="Comma-separated columns (default: all)."
    ),
    where: Optional[List[str]] = typer.Option(
        None, "--where", "-w", help="Condition, repeatable (e.g. 'temperature > 65')."
    ),
    order_by: Optional[str] = typer.Option(None, "--order-by", help="Column to sort by."),
    descending: bool = typer.Option(False, "--desc", help="Sort descending."),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum rows to show."),
) -> None:
    """
    Load JSON files into an in-memory table and query it.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)

    with tempfile.TemporaryDirectory(prefix="microbatch-query-") as scratch:
        config = StreamConfig.from_settings(
            name,
            Schema.from_ddl(schema),
            settings=settings,
            checkpoint_root=Path(scratch),
            available_now=True,
        )
        sink = MaterializedViewSink(name, schema=config.schema)
        source = FileSource(
            input_path or settings.input_path,
            pattern=pattern,
            max_records_per_poll=settings.max_records_per_trigger,
        )
        handle = start_stream(config, source, [sink])
        _wait(handle)

    q = handle.view(name).query()
    for condition in where or []:
        q = q.where(condition)
    if select:
        q = q.select(*(c.strip() for c in select.split(",") if c.strip()))
    if order_by:
        q = q.order_by(order_by, descending=descending)
    if limit is not None:
        q = q.limit(limit)
    print_rows(q.collect(), q.output_columns(), title=f"{name}")


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
