"""Record store for monitored targets — SQLite implementation.

The monitoring engine talks to the store only through the ``TargetStore``
protocol:

    find_eligible_targets(filter) -> list[Target]
    find_target_by_id(id)         -> Target
    update_target(id, patch, *, expected_status=None) -> Target
    find_global_settings()        -> GlobalSettings

``SQLiteTargetStore`` is the bundled implementation. Every ``update_target``
call is one transaction, and writes are serialised under a single lock.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from ..errors import StatusConflictError, StoreError, TargetNotFoundError
from .models import GlobalSettings, MonitoringSettings, ServiceStatus, Target

logger = logging.getLogger(__name__)

DB_PATH = Path(__file__).parent.parent.parent / "data" / "statuswatch.db"

# Record-mutation hooks get (before, after). They run synchronously after the
# commit and must only enqueue work.
ChangeHook = Callable[[Target, Target], None]

_MONITORING_COLUMNS = {
    "type": "monitoring_type",
    "enabled": "monitoring_enabled",
    "interval": "monitoring_interval",
    "timeout": "monitoring_timeout",
    "failure_threshold": "monitoring_failure_threshold",
    "url": "monitoring_url",
    "method": "monitoring_method",
    "expected_status_code": "monitoring_expected_status_code",
    "host": "monitoring_host",
    "port": "monitoring_port",
    "game_type": "monitoring_game_type",
    "last_checked_at": "monitoring_last_checked_at",
    "last_check_status": "monitoring_last_check_status",
    "consecutive_failures": "monitoring_consecutive_failures",
}


@dataclass
class EligibilityFilter:
    """Combined filter for ``find_eligible_targets``."""

    monitoring_enabled: bool | None = None
    status: ServiceStatus | None = None
    exclude_status: ServiceStatus | None = None


class TargetStore(Protocol):
    def find_eligible_targets(self, flt: EligibilityFilter) -> list[Target]: ...

    def find_target_by_id(self, target_id: int) -> Target: ...

    def update_target(
        self, target_id: int, patch: dict[str, Any], *, expected_status: ServiceStatus | None = None,
    ) -> Target: ...

    def find_global_settings(self) -> GlobalSettings: ...


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Enum):
        return value.value
    return value


class SQLiteTargetStore:
    """SQLite-backed storage for target records + the settings global."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path) if db_path else DB_PATH
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._write_lock = threading.Lock()
        self._hooks: list[ChangeHook] = []
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS targets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                slug TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL DEFAULT 'operational',
                monitoring_type TEXT NOT NULL DEFAULT 'http',
                monitoring_enabled INTEGER NOT NULL DEFAULT 0,
                monitoring_interval INTEGER NOT NULL DEFAULT 60,
                monitoring_timeout INTEGER NOT NULL DEFAULT 10,
                monitoring_failure_threshold INTEGER NOT NULL DEFAULT 3,
                monitoring_url TEXT,
                monitoring_method TEXT NOT NULL DEFAULT 'GET',
                monitoring_expected_status_code INTEGER NOT NULL DEFAULT 200,
                monitoring_host TEXT,
                monitoring_port INTEGER,
                monitoring_game_type TEXT,
                monitoring_last_checked_at TEXT,
                monitoring_last_check_status TEXT,
                monitoring_consecutive_failures INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_targets_monitoring
                ON targets (monitoring_enabled, status);

            CREATE TABLE IF NOT EXISTS settings (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                monitoring_enabled INTEGER NOT NULL DEFAULT 1,
                monitoring_schedule_cron TEXT
            );

            INSERT OR IGNORE INTO settings (id, monitoring_enabled) VALUES (1, 1);
        """)
        conn.commit()

    # -- hooks -----------------------------------------------------------------

    def add_change_hook(self, hook: ChangeHook) -> None:
        self._hooks.append(hook)

    def _run_hooks(self, before: Target, after: Target) -> None:
        for hook in self._hooks:
            try:
                hook(before, after)
            except Exception:
                logger.exception("Target change hook failed for %s", after.slug)

    # -- row mapping -----------------------------------------------------------

    @staticmethod
    def _row_to_target(row: sqlite3.Row) -> Target:
        d = dict(row)
        monitoring = {field: d[col] for field, col in _MONITORING_COLUMNS.items()}
        monitoring["enabled"] = bool(monitoring["enabled"])
        return Target(
            id=d["id"],
            name=d["name"],
            slug=d["slug"],
            status=d["status"],
            monitoring=MonitoringSettings.model_validate(monitoring),
            updated_at=d["updated_at"],
        )

    # -- writes ----------------------------------------------------------------

    def create_target(self, target: Target) -> Target:
        """Insert a new record; ``id`` is assigned by the database."""
        m = target.monitoring
        slug = target.slug or target.name.lower().replace(" ", "-")
        columns = ["name", "slug", "status", "updated_at"]
        values: list[Any] = [target.name, slug, target.status.value, _now_iso()]
        for field, col in _MONITORING_COLUMNS.items():
            columns.append(col)
            values.append(_to_db(getattr(m, field)))

        placeholders = ", ".join("?" for _ in columns)
        try:
            with self._write_lock:
                conn = self._get_conn()
                cursor = conn.execute(
                    f"INSERT INTO targets ({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to create target {slug}: {e}") from e
        return self.find_target_by_id(cursor.lastrowid)

    def update_target(
        self,
        target_id: int,
        patch: dict[str, Any],
        *,
        expected_status: ServiceStatus | None = None,
    ) -> Target:
        """Apply ``patch`` in a single transaction and return the new record.

        ``patch`` may contain top-level ``name``/``status`` and a nested
        ``monitoring`` dict with any subset of the monitoring fields.

        With ``expected_status`` the write only lands if the stored status
        still equals it; otherwise nothing changes and
        ``StatusConflictError`` is raised.
        """
        assignments: dict[str, Any] = {}
        for key in ("name", "status"):
            if key in patch:
                assignments[key] = _to_db(patch[key])
        for field, value in (patch.get("monitoring") or {}).items():
            col = _MONITORING_COLUMNS.get(field)
            if col is None:
                raise StoreError(f"Unknown monitoring field: {field}")
            assignments[col] = _to_db(value)
        assignments["updated_at"] = _now_iso()

        sql = "UPDATE targets SET " + ", ".join(f"{c} = ?" for c in assignments) + " WHERE id = ?"
        params = [*assignments.values(), target_id]
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(_to_db(expected_status))

        with self._write_lock:
            before = self.find_target_by_id(target_id)
            try:
                conn = self._get_conn()
                cursor = conn.execute(sql, params)
                conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to update target {target_id}: {e}") from e
            if cursor.rowcount == 0:
                raise StatusConflictError(target_id, _to_db(expected_status))
            after = self.find_target_by_id(target_id)

        self._run_hooks(before, after)
        return after

    def update_global_settings(
        self, monitoring_enabled: bool | None = None, monitoring_schedule_cron: str | None = None,
    ) -> GlobalSettings:
        with self._write_lock:
            conn = self._get_conn()
            if monitoring_enabled is not None:
                conn.execute("UPDATE settings SET monitoring_enabled = ? WHERE id = 1", (int(monitoring_enabled),))
            if monitoring_schedule_cron is not None:
                conn.execute(
                    "UPDATE settings SET monitoring_schedule_cron = ? WHERE id = 1", (monitoring_schedule_cron,),
                )
            conn.commit()
        return self.find_global_settings()

    # -- reads -----------------------------------------------------------------

    def find_target_by_id(self, target_id: int) -> Target:
        try:
            row = self._get_conn().execute(
                "SELECT * FROM targets WHERE id = ?", (target_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read target {target_id}: {e}") from e
        if row is None:
            raise TargetNotFoundError(target_id)
        return self._row_to_target(row)

    def find_target_by_slug(self, slug: str) -> Target | None:
        row = self._get_conn().execute("SELECT * FROM targets WHERE slug = ?", (slug,)).fetchone()
        return self._row_to_target(row) if row else None

    def find_eligible_targets(self, flt: EligibilityFilter) -> list[Target]:
        """Single combined query over monitoring flag and status."""
        clauses: list[str] = []
        params: list[Any] = []
        if flt.monitoring_enabled is not None:
            clauses.append("monitoring_enabled = ?")
            params.append(int(flt.monitoring_enabled))
        if flt.status is not None:
            clauses.append("status = ?")
            params.append(flt.status.value)
        if flt.exclude_status is not None:
            clauses.append("status != ?")
            params.append(flt.exclude_status.value)

        sql = "SELECT * FROM targets"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        try:
            rows = self._get_conn().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to query targets: {e}") from e
        return [self._row_to_target(r) for r in rows]

    def list_targets(self) -> list[Target]:
        return self.find_eligible_targets(EligibilityFilter())

    def find_global_settings(self) -> GlobalSettings:
        try:
            row = self._get_conn().execute("SELECT * FROM settings WHERE id = 1").fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read settings: {e}") from e
        if row is None:
            return GlobalSettings()
        return GlobalSettings(
            monitoring_enabled=bool(row["monitoring_enabled"]),
            monitoring_schedule_cron=row["monitoring_schedule_cron"],
        )

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
