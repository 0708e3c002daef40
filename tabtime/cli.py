"""CLI entry point for tabtime."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import click
from pydantic import ValidationError

from tabtime.db import RETAIN_DAYS, ObjectStore, StateStore, TimeStore, day_key_for, epoch_ms, export_csv, export_json
from tabtime.environment import InMemoryBrowser
from tabtime.models import ReplayEvent
from tabtime.replay import Replayer
from tabtime.tracker import SessionTracker
from tabtime.urls import format_duration, split_url

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "tabtime" / "tabtime.db"


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def entries_from_bucket(bucket: dict[str, int]) -> list[tuple[str, int]]:
    """Positive (url, ms) entries of a bucket, longest first.

    Args:
        bucket: Mapping of URL to milliseconds.

    Returns:
        List of (url, ms) tuples sorted by ms descending, then URL.
    """
    entries = [
        (url, int(ms))
        for url, ms in bucket.items()
        if isinstance(ms, (int, float)) and not isinstance(ms, bool) and ms > 0
    ]
    entries.sort(key=lambda item: (-item[1], item[0]))
    return entries


def filter_entries(entries: list[tuple[str, int]], query: str | None) -> list[tuple[str, int]]:
    """Keep entries whose URL contains ``query`` (case-insensitive)."""
    needle = (query or "").strip().lower()
    if not needle:
        return entries
    return [(url, ms) for url, ms in entries if needle in url.lower()]


def _parse_timezone(ctx: click.Context, param: click.Parameter, value: str | None) -> ZoneInfo | None:
    if not value:
        return None
    try:
        return ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise click.BadParameter(f"Unknown timezone: {value}") from exc


def _resolve_day(day: str | None, tz: ZoneInfo | None) -> str:
    if day is None or day == "today":
        return day_key_for(epoch_ms(), tz)
    try:
        return datetime.strptime(day, "%Y-%m-%d").date().isoformat()
    except ValueError:
        click.echo(f"Invalid date format: {day}. Use YYYY-MM-DD.", err=True)
        sys.exit(1)


def _require_db(db: Path) -> None:
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)


db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    envvar="TABTIME_DB",
    help="Path to SQLite database",
)
day_option = click.option(
    "--day",
    type=str,
    default=None,
    help="Day to show (YYYY-MM-DD, default: today)",
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--tz",
    callback=_parse_timezone,
    envvar="TABTIME_TZ",
    help="IANA timezone defining the local day (default: system timezone)",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, tz: ZoneInfo | None):
    """Per-URL browsing time tracker."""
    configure_logging(verbose)
    ctx.obj = {"tz": tz}


@main.command("days")
@db_option
@click.option("--limit", type=int, default=30, help="Maximum number of days to list")
@click.pass_obj
def days_command(obj: dict, db: Path, limit: int) -> None:
    """List days with recorded time, most recent first."""
    _require_db(db)
    today = day_key_for(epoch_ms(), obj["tz"])

    with ObjectStore.open(db) as objects:
        keys = TimeStore(objects, tz=obj["tz"]).list_day_keys(limit)

    if today not in keys:
        keys = [today, *keys]
    for key in keys:
        click.echo(f"{key} (today)" if key == today else key)


@main.command("show")
@db_option
@day_option
@click.option("--search", help="Only list URLs containing this text")
@click.option("--live", is_flag=True, help="Include the running session's time so far")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def show_command(
    obj: dict, db: Path, day: str | None, search: str | None, live: bool, output_json: bool
) -> None:
    """Show time per URL for one day.

    The summary always covers the whole day; --search only narrows the list.
    """
    _require_db(db)
    day_key = _resolve_day(day, obj["tz"])

    with ObjectStore.open(db) as objects:
        tracker = SessionTracker(objects, InMemoryBrowser(), tz=obj["tz"])
        bucket = tracker.get_totals_for_day(day_key, include_live=live)

    entries = entries_from_bucket(bucket)
    shown = filter_entries(entries, search)
    total_ms = sum(ms for _, ms in entries)

    if output_json:
        output = {
            "day": day_key,
            "total_ms": total_ms,
            "url_count": len(entries),
            "entries": [{"url": url, "ms": ms} for url, ms in shown],
        }
        click.echo(json.dumps(output, indent=2))
        return

    top_ms = entries[0][1] if entries else 0
    click.echo(f"Day: {day_key}")
    click.echo(f"Total: {format_duration(total_ms)}  URLs: {len(entries)}  Top: {format_duration(top_ms)}")
    click.echo()

    if not shown:
        click.echo("No time tracked for this day." if not entries else "No URLs match the search.")
        return

    for url, ms in shown:
        host, sub = split_url(url)
        click.echo(f"  {format_duration(ms)}  {host}  {sub}".rstrip())


@main.command("export")
@db_option
@day_option
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["json", "csv"]),
    default="json",
    help="Export format",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="File or directory to write to (default: stdout)",
)
@click.pass_obj
def export_command(obj: dict, db: Path, day: str | None, fmt: str, output: Path | None) -> None:
    """Export one day's totals as JSON or CSV."""
    _require_db(db)
    day_key = _resolve_day(day, obj["tz"])

    with ObjectStore.open(db) as objects:
        bucket = TimeStore(objects, tz=obj["tz"]).get_bucket(day_key)

    text = export_json(day_key, bucket) if fmt == "json" else export_csv(day_key, bucket)

    if output is None:
        click.echo(text, nl=fmt == "json")
        return

    if output.is_dir():
        output = output / f"time-tracker_{day_key}.{fmt}"
    with open(output, "w", encoding="utf-8", newline="") as f:
        f.write(text)
    click.echo(f"Wrote {output}", err=True)


@main.command("status")
@db_option
@click.pass_obj
def status_command(obj: dict, db: Path) -> None:
    """Show the current session state."""
    _require_db(db)

    with ObjectStore.open(db) as objects:
        state = StateStore(objects).get_state()

    click.echo(f"Database: {db}")
    click.echo(f"Window focused: {'yes' if state.window_focused else 'no'}")

    if state.running:
        elapsed = max(0, epoch_ms() - state.started_at)
        click.echo(f"Tracking: {state.active_url} (running {format_duration(elapsed)})")
    elif state.active_url:
        click.echo(f"Paused: {state.active_url}")
    else:
        click.echo("Not tracking")


@main.command("replay")
@click.argument("events", type=click.File("r"), default="-")
@db_option
@click.option(
    "--retain-days",
    type=click.IntRange(min=0),
    default=RETAIN_DAYS,
    help="Delete days older than this many days",
)
@click.pass_obj
def replay_command(obj: dict, events, db: Path, retain_days: int) -> None:
    """Replay a JSONL browser event log into the database.

    Each line is one event, for example:

        {"type": "tab_activated", "timestamp": "2025-01-25T10:00:00Z", "tab_id": 1, "window_id": 1}
    """
    db.parent.mkdir(parents=True, exist_ok=True)

    applied = 0
    has_input = False

    with ObjectStore.open(db) as objects:
        replayer = Replayer(objects, tz=obj["tz"], retain_days=retain_days)
        for line_number, line in enumerate(events, 1):
            stripped = line.strip()
            if not stripped:
                continue

            has_input = True

            try:
                data = json.loads(stripped)
                event = ReplayEvent.model_validate(data)
                replayer.apply(event)
                applied += 1
            except json.JSONDecodeError as e:
                click.echo(f"Warning: line {line_number}: invalid JSON: {e}", err=True)
            except ValidationError as e:
                click.echo(f"Warning: line {line_number}: validation error: {e}", err=True)
            except ValueError as e:
                click.echo(f"Warning: line {line_number}: {e}", err=True)

    click.echo(f"Replayed {applied} events")

    # Exit code 1 if we had input but no valid events (all lines were errors)
    if has_input and applied == 0:
        sys.exit(1)


if __name__ == "__main__":
    main()
