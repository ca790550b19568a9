"""
Sample data generator for the microbatch streaming engine.

Writes deterministic pseudo-random weather readings as newline-delimited JSON,
one file per zip code (`weatherdata-<zipcode>.json`), e.g.

    {"timestamp": "2018-10-01T14:05:00", "zipcode": "12345", "temperature": 75}

Files are written to a temporary name and renamed into the input directory,
so a running stream never sees a half-written file.
"""

from __future__ import annotations

import json
import os
import random
import sys
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import List

import typer

app = typer.Typer(help="Generate sample weather JSON-lines files for streaming.")

DEFAULT_ZIPCODES = ["12345", "22334", "98052"]


def _generate_readings(
    zipcode: str, readings: int, rng: random.Random, day: datetime, noise: float
) -> List[str]:
    lines: List[str] = []
    step = timedelta(minutes=max(1, (24 * 60) // max(readings, 1)))
    for i in range(readings):
        if noise and rng.random() < noise:
            lines.append(rng.choice(["{not json", "[1, 2, 3]", '"just a string"']))
            continue
        ts = day + step * i + timedelta(minutes=rng.randint(0, 4))
        lines.append(
            json.dumps(
                {
                    "timestamp": ts.strftime("%Y-%m-%dT%H:%M:%S"),
                    "zipcode": zipcode,
                    "temperature": rng.randint(40, 95),
                }
            )
        )
    return lines


def _write_file(output_dir: Path, zipcode: str, lines: List[str]) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    final = output_dir / f"weatherdata-{zipcode}.json"
    tmp = output_dir / f".weatherdata-{zipcode}.json.tmp"
    with tmp.open("w", encoding="utf-8", newline="\n") as f:
        for line in lines:
            f.write(line)
            f.write("\n")
    os.replace(tmp, final)
    return final


@app.command()
def main(
    output: Path = typer.Option(
        Path("data/input"),
        "--output",
        "-o",
        help="Directory to write the JSON-lines files into.",
    ),
    zipcodes: List[str] = typer.Option(
        DEFAULT_ZIPCODES,
        "--zipcode",
        "-z",
        help="Zip code to generate a file for (repeatable).",
    ),
    readings: int = typer.Option(
        24,
        "--readings",
        "-r",
        help="Readings per zip code, spread over one day.",
    ),
    day: str = typer.Option("2018-10-01", "--day", help="Day of the readings (YYYY-MM-DD)."),
    noise: float = typer.Option(
        0.0,
        "--noise",
        min=0.0,
        max=1.0,
        help="Fraction of lines replaced by malformed payloads.",
    ),
    seed: int = typer.Option(
        42,
        "--seed",
        help="Deterministic RNG seed.",
    ),
) -> None:
    """
    Generate one weather data file per zip code.
    """
    start = time.perf_counter()
    rng = random.Random(seed)
    base_day = datetime.fromisoformat(day)

    total = 0
    for zipcode in zipcodes:
        lines = _generate_readings(zipcode, readings, rng, base_day, noise)
        path = _write_file(output, zipcode, lines)
        total += len(lines)
        typer.echo(f"Wrote {len(lines):,} readings -> {path}")

    duration = time.perf_counter() - start
    typer.echo(f"Generated {total:,} readings in {duration:.2f}s.")


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
