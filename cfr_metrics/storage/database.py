"""SQLite persistence for titles, agencies, snapshot pointers, metrics and state.

Tables:
  titles          -- one row per CFR title, upserted wholesale each refresh
  agencies        -- flattened agency tree, one row per slug
  snapshots       -- pointer rows, UNIQUE(title_number, issue_date)
  agency_metrics  -- UNIQUE(agency_slug, issue_date, metric), upserted
  state           -- small key/value store (e.g. ``last_refresh``)

The connection is used only from the event loop thread. Every write runs
inside ``with self._conn:`` so it commits atomically or rolls back.
``sqlite3.Error`` is wrapped in ``StorageError`` at this boundary.
"""

import contextlib
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from cfr_metrics.errors import StorageError
from cfr_metrics.schemas.models import METRIC_NAMES, Agency, AgencyMetric, Title, flatten_agencies

logger = logging.getLogger(__name__)

MAX_HISTORY_POINTS = 3650

_DDL = """
PRAGMA journal_mode=WAL;
PRAGMA busy_timeout=5000;

CREATE TABLE IF NOT EXISTS titles (
  number INTEGER PRIMARY KEY,
  name TEXT NOT NULL,
  up_to_date_as_of TEXT NOT NULL,
  reserved INTEGER NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agencies (
  slug TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  json TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS snapshots (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  title_number INTEGER NOT NULL,
  issue_date TEXT NOT NULL,
  file_path TEXT NOT NULL,
  created_at TEXT NOT NULL,
  UNIQUE(title_number, issue_date)
);

CREATE TABLE IF NOT EXISTS agency_metrics (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  agency_slug TEXT NOT NULL,
  issue_date TEXT NOT NULL,
  metric TEXT NOT NULL,
  value_num REAL,
  value_text TEXT,
  created_at TEXT NOT NULL,
  UNIQUE(agency_slug, issue_date, metric)
);

CREATE TABLE IF NOT EXISTS state (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _row_value(row: sqlite3.Row):
    if row["value_num"] is not None:
        return row["value_num"]
    return row["value_text"]


def _metric_row(record: AgencyMetric, created_at: str) -> tuple:
    if isinstance(record.value, str):
        return (record.slug, record.issue_date, record.metric, None, record.value, created_at)
    num = None if record.value is None else float(record.value)
    return (record.slug, record.issue_date, record.metric, num, None, created_at)


class Database:
    """Thin repository over a single SQLite connection.

    Args:
        path: Database file, or ``":memory:"``. Parent directories are
              created as needed.
    """

    def __init__(self, path: Path | str):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(self.path)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_DDL)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.path}: {e}") from e

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @contextlib.contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except sqlite3.Error as e:
            raise StorageError(f"{operation} failed: {e}") from e

    # ── Titles ──

    def upsert_titles(self, titles: list[Title]) -> None:
        now = _now()
        with self._guard("upsert_titles"), self._conn:
            self._conn.executemany(
                """
                INSERT INTO titles(number, name, up_to_date_as_of, reserved, updated_at)
                VALUES(?,?,?,?,?)
                ON CONFLICT(number) DO UPDATE SET
                  name=excluded.name, up_to_date_as_of=excluded.up_to_date_as_of,
                  reserved=excluded.reserved, updated_at=excluded.updated_at
                """,
                [
                    (t.number, t.name, t.up_to_date_as_of or "", int(t.reserved), now)
                    for t in titles
                ],
            )
        logger.info("Stored %d titles", len(titles))

    def list_titles(self) -> list[Title]:
        with self._guard("list_titles"):
            rows = self._conn.execute(
                "SELECT number, name, up_to_date_as_of, reserved FROM titles ORDER BY number"
            ).fetchall()
        return [
            Title(
                number=r["number"],
                name=r["name"],
                up_to_date_as_of=r["up_to_date_as_of"] or None,
                reserved=bool(r["reserved"]),
            )
            for r in rows
        ]

    # ── Agencies ──

    def upsert_agencies(self, agencies: list[Agency]) -> int:
        """Flatten the agency tree and upsert one row per slug.

        Returns:
            Number of distinct agencies stored.
        """
        flat = flatten_agencies(agencies)
        now = _now()
        with self._guard("upsert_agencies"), self._conn:
            self._conn.executemany(
                """
                INSERT INTO agencies(slug, name, json, updated_at)
                VALUES(?,?,?,?)
                ON CONFLICT(slug) DO UPDATE SET
                  name=excluded.name, json=excluded.json, updated_at=excluded.updated_at
                """,
                [
                    (slug, a.name, a.model_dump_json(exclude={"children"}), now)
                    for slug, a in flat.items()
                ],
            )
        logger.info("Stored %d agencies (%d top-level)", len(flat), len(agencies))
        return len(flat)

    def list_agencies(self) -> list[dict]:
        with self._guard("list_agencies"):
            rows = self._conn.execute("SELECT slug, name FROM agencies ORDER BY name").fetchall()
        return [{"slug": r["slug"], "name": r["name"]} for r in rows]

    def load_agencies(self) -> dict[str, Agency]:
        """Return stored agencies keyed by slug (children are not nested)."""
        with self._guard("load_agencies"):
            rows = self._conn.execute("SELECT slug, json FROM agencies ORDER BY name").fetchall()
        out: dict[str, Agency] = {}
        for r in rows:
            out[r["slug"]] = Agency.model_validate(json.loads(r["json"]))
        return out

    # ── Snapshot pointers ──

    def snapshot_exists(self, title: int, issue_date: str) -> bool:
        with self._guard("snapshot_exists"):
            row = self._conn.execute(
                "SELECT 1 FROM snapshots WHERE title_number=? AND issue_date=? LIMIT 1",
                (title, issue_date),
            ).fetchone()
        return row is not None

    def insert_snapshot(self, title: int, issue_date: str, file_path: str) -> None:
        with self._guard("insert_snapshot"), self._conn:
            self._conn.execute(
                """
                INSERT INTO snapshots(title_number, issue_date, file_path, created_at)
                VALUES(?,?,?,?)
                """,
                (title, issue_date, file_path, _now()),
            )

    def snapshot_path(self, title: int, issue_date: str) -> str | None:
        with self._guard("snapshot_path"):
            row = self._conn.execute(
                "SELECT file_path FROM snapshots WHERE title_number=? AND issue_date=?",
                (title, issue_date),
            ).fetchone()
        return row["file_path"] if row else None

    def previous_snapshot_date(self, title: int, before: str) -> str | None:
        with self._guard("previous_snapshot_date"):
            row = self._conn.execute(
                """
                SELECT issue_date FROM snapshots
                WHERE title_number=? AND issue_date < ?
                ORDER BY issue_date DESC LIMIT 1
                """,
                (title, before),
            ).fetchone()
        return row["issue_date"] if row else None

    def count_snapshots(self) -> int:
        with self._guard("count_snapshots"):
            return self._conn.execute("SELECT COUNT(*) FROM snapshots").fetchone()[0]

    # ── Agency metrics ──

    def put_metrics(self, slug: str, issue_date: str, values: dict[str, float | str]) -> None:
        """Upsert several metrics for one agency/date in a single transaction.

        Raises:
            ValueError: An unknown metric name or a malformed date (nothing
                        is written).
        """
        now = _now()
        rows = []
        for metric, value in values.items():
            record = AgencyMetric(slug=slug, issue_date=issue_date, metric=metric, value=value)
            rows.append(_metric_row(record, now))
        with self._guard("put_metrics"), self._conn:
            self._conn.executemany(
                """
                INSERT INTO agency_metrics(agency_slug, issue_date, metric, value_num, value_text, created_at)
                VALUES(?,?,?,?,?,?)
                ON CONFLICT(agency_slug, issue_date, metric) DO UPDATE SET
                  value_num=excluded.value_num, value_text=excluded.value_text
                """,
                rows,
            )

    def latest_metric(self, metric: str) -> list[dict]:
        """Latest value of ``metric`` per agency, ordered by agency name.

        Returns:
            List of {"slug", "name", "date", "value"} dicts.
        """
        if metric not in METRIC_NAMES:
            raise ValueError(f"Unknown metric '{metric}'. Must be one of: {sorted(METRIC_NAMES)}")
        with self._guard("latest_metric"):
            rows = self._conn.execute(
                """
                SELECT m.agency_slug, a.name, m.issue_date, m.value_num, m.value_text
                FROM agency_metrics m
                JOIN agencies a ON a.slug = m.agency_slug
                WHERE m.metric = ?
                  AND m.issue_date = (
                    SELECT MAX(issue_date) FROM agency_metrics m2
                    WHERE m2.agency_slug = m.agency_slug AND m2.metric = m.metric
                  )
                ORDER BY a.name
                """,
                (metric,),
            ).fetchall()
        return [
            {"slug": r["agency_slug"], "name": r["name"], "date": r["issue_date"], "value": _row_value(r)}
            for r in rows
        ]

    def metric_history(self, slug: str, metric: str, max_points: int = 180) -> list[dict]:
        """History of one agency metric, newest first.

        Args:
            slug: Agency slug.
            metric: Metric name.
            max_points: Maximum rows returned, clamped to 1..3650.

        Returns:
            List of {"date", "value"} dicts.
        """
        if metric not in METRIC_NAMES:
            raise ValueError(f"Unknown metric '{metric}'. Must be one of: {sorted(METRIC_NAMES)}")
        limit = max(1, min(int(max_points), MAX_HISTORY_POINTS))
        with self._guard("metric_history"):
            rows = self._conn.execute(
                """
                SELECT issue_date, value_num, value_text
                FROM agency_metrics
                WHERE agency_slug=? AND metric=?
                ORDER BY issue_date DESC
                LIMIT ?
                """,
                (slug, metric, limit),
            ).fetchall()
        return [{"date": r["issue_date"], "value": _row_value(r)} for r in rows]

    # ── Process state ──

    def get_state(self, key: str) -> str | None:
        with self._guard("get_state"):
            row = self._conn.execute("SELECT value FROM state WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        with self._guard("set_state"), self._conn:
            self._conn.execute(
                "INSERT INTO state(key, value) VALUES(?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )
