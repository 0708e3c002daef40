"""SQLite-backed durable storage for session state and daily URL totals."""

from __future__ import annotations

import csv
import io
import json
import logging
import math
import sqlite3
import threading
import time as _time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, time, timezone, tzinfo
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from tabtime.models import SessionState

SCHEMA = """
CREATE TABLE IF NOT EXISTS objects (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

# Storage keys for the two persisted objects
STATE_KEY = "tt_state_v1"
DATA_KEY = "tt_data_v1"

RETAIN_DAYS = 31

logger = logging.getLogger(__name__)


def epoch_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return _time.time_ns() // 1_000_000


def day_key_for(timestamp_ms: int, tz: tzinfo | None = None) -> str:
    """Local calendar day (YYYY-MM-DD) containing an epoch-ms timestamp.

    Args:
        timestamp_ms: Epoch milliseconds.
        tz: Timezone defining "local"; None uses the system timezone.
    """
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=tz).date().isoformat()


def day_start_ms(day_key: str, tz: tzinfo | None = None) -> int:
    """Epoch milliseconds of local midnight at the start of ``day_key``."""
    midnight = datetime.combine(date.fromisoformat(day_key), time.min, tzinfo=tz)
    return round(midnight.timestamp() * 1000)


def days_between(day_a: str, day_b: str) -> int:
    """Calendar days from day_a to day_b (positive when day_a is earlier)."""
    return (date.fromisoformat(day_b) - date.fromisoformat(day_a)).days


class ObjectStore:
    """Durable named-object store: JSON values keyed by name.

    Read-modify-write cycles go through :meth:`transaction`, which holds an
    in-process lock and an immediate SQLite write transaction.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.RLock()
        self._depth = 0
        self._init_schema()

    def __enter__(self) -> "ObjectStore":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path) -> ObjectStore:
        """Open or create a database at the given path."""
        conn = sqlite3.connect(path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> ObjectStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed reads and writes atomically. Nested calls join the outer one."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
            except BaseException:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()
            finally:
                self._depth = 0

    def read_object(self, key: str, default: Any = None) -> Any:
        """Return the stored value for ``key``, or ``default`` when absent or unreadable."""
        row = self._conn.execute("SELECT value FROM objects WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning("Ignoring undecodable stored value for %s", key)
            return default

    def write_object(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        updated_at = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO objects (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key)
                DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), updated_at),
            )


class TimeStore:
    """Day-bucketed accumulation of milliseconds per URL.

    The whole root mapping ``{day_key: {url: ms}}`` is one stored object.
    :meth:`add_time` is the only way time gets recorded, and callers must never
    pass a duration spanning more than one local day.
    """

    def __init__(self, objects: ObjectStore, tz: tzinfo | None = None) -> None:
        self.objects = objects
        self.tz = tz

    def _load(self) -> dict[str, dict[str, int]]:
        data = self.objects.read_object(DATA_KEY, {})
        if not isinstance(data, dict):
            logger.warning("Stored time data is not a mapping; starting empty")
            return {}
        return data

    def add_time(self, day_key: str, url: str, delta_ms: int | float) -> None:
        """Add ``delta_ms`` to ``url`` in the bucket for ``day_key``.

        Empty keys and non-finite or non-positive deltas are ignored.
        """
        if not day_key or not url:
            return
        if isinstance(delta_ms, bool) or not isinstance(delta_ms, (int, float)):
            return
        if not math.isfinite(delta_ms) or delta_ms <= 0:
            return
        delta = int(delta_ms)
        if delta <= 0:
            return

        with self.objects.transaction():
            data = self._load()
            bucket = data.get(day_key)
            if not isinstance(bucket, dict):
                if bucket is not None:
                    logger.warning("Replacing non-mapping bucket for %s", day_key)
                bucket = data[day_key] = {}
            bucket[url] = int(bucket.get(url, 0)) + delta
            self.objects.write_object(DATA_KEY, data)
        logger.debug("Added %dms to %s on %s", delta, url, day_key)

    def cleanup_old_days(self, retain_days: int = RETAIN_DAYS, *, now_ms: int | None = None) -> list[str]:
        """Delete buckets older than ``retain_days`` calendar days.

        Age is a whole-day difference between day keys, independent of the
        time of day. Returns the removed day keys.
        """
        today = day_key_for(epoch_ms() if now_ms is None else now_ms, self.tz)
        removed: list[str] = []

        with self.objects.transaction():
            data = self._load()
            for key in list(data):
                try:
                    age = days_between(key, today)
                except ValueError:
                    logger.warning("Skipping malformed day key %r during cleanup", key)
                    continue
                if age > retain_days:
                    del data[key]
                    removed.append(key)
            if removed:
                self.objects.write_object(DATA_KEY, data)

        if removed:
            logger.info("Pruned %d day(s) older than %d days", len(removed), retain_days)
        return sorted(removed)

    def list_day_keys(self, limit: int = 30) -> list[str]:
        """Day keys with a bucket, most recent first."""
        if limit <= 0:
            return []
        return sorted(self._load(), reverse=True)[:limit]

    def get_bucket(self, day_key: str) -> dict[str, int]:
        """Copy of the bucket for ``day_key``; empty when the day has none."""
        bucket = self._load().get(day_key)
        if not isinstance(bucket, dict):
            return {}
        return dict(bucket)


class StateStore:
    """Persistence for the single :class:`SessionState` record."""

    def __init__(self, objects: ObjectStore) -> None:
        self.objects = objects

    def get_state(self) -> SessionState:
        raw = self.objects.read_object(STATE_KEY)
        if raw is None:
            return SessionState()
        try:
            return SessionState.model_validate(raw)
        except ValidationError as e:
            logger.warning("Discarding invalid stored session state: %s", e)
            return SessionState()

    def set_state(self, state: SessionState) -> None:
        self.objects.write_object(STATE_KEY, state.to_storage())


def export_json(day_key: str, bucket: dict[str, int]) -> str:
    """Serialize one day's bucket as pretty-printed JSON."""
    return json.dumps({"day": day_key, "entries": bucket}, indent=2)


def export_csv(day_key: str, bucket: dict[str, int]) -> str:
    """Serialize one day's bucket as CSV with a ``day,url,ms`` header.

    Fields containing a comma, quote or line break are quoted with doubled
    inner quotes (RFC 4180).
    """
    out = io.StringIO()
    writer = csv.writer(out, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
    writer.writerow(["day", "url", "ms"])
    for url, ms in bucket.items():
        writer.writerow([day_key, url, str(ms)])
    return out.getvalue()
