from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from microbatch.domain.models import StreamProgress


def _cell(value: Any) -> str:
    if value is None:
        return "[dim]null[/dim]"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def print_rows(
    rows: List[Dict[str, Any]],
    columns: Optional[Sequence[str]] = None,
    title: str = "Query Results",
    console: Optional[Console] = None,
) -> None:
    """
    Render query rows as a rich table.
    """
    console = console or Console()

    if not rows:
        console.print("[yellow]No rows matched.[/yellow]")
        return

    columns = list(columns) if columns is not None else list(rows[0].keys())
    table = Table(title=title, box=box.ROUNDED, caption=f"{len(rows):,} row(s)")
    for column in columns:
        table.add_column(column, style="cyan" if column == columns[0] else None, overflow="fold")
    for row in rows:
        table.add_row(*(_cell(row.get(column)) for column in columns))

    console.print(table)


def print_progress(
    progress: List[StreamProgress],
    title: str = "Stream Progress",
    console: Optional[Console] = None,
) -> None:
    """
    Render per-batch progress as a rich table, one line per committed batch.
    """
    console = console or Console()

    if not progress:
        console.print("[yellow]No batches committed.[/yellow]")
        return

    table = Table(title=title, box=box.ROUNDED, caption=f"Stream: {progress[0].stream_id}")
    table.add_column("Batch", justify="right", style="cyan", no_wrap=True)
    table.add_column("Offsets", justify="right", style="blue")
    table.add_column("Input Rows", justify="right", style="magenta")
    table.add_column("Malformed", justify="right", style="red")
    table.add_column("Rows per Sink", style="green")
    table.add_column("Duration (ms)", justify="right", style="yellow")
    table.add_column("Rows/s", justify="right", style="bold green")
    table.add_column("Peak Memory (MB)", justify="right", style="yellow")

    for p in progress:
        sink_rows = ", ".join(f"{sink}={rows:,}" for sink, rows in p.sink_rows.items())
        mem_mb = (p.peak_rss_bytes or 0) / (1024 * 1024)
        table.add_row(
            str(p.batch_id),
            f"[{p.start_offset}, {p.end_offset})",
            f"{p.num_input_rows:,}",
            f"{p.num_malformed_rows:,}",
            sink_rows,
            f"{p.durations_ms.get('total', 0.0):.1f}",
            f"{p.processed_rows_per_second:,.2f}",
            f"{mem_mb:.2f}",
        )

    console.print(table)


__all__ = ["print_progress", "print_rows"]
