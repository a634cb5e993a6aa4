"""
SQLite-backed persistence for jobs, execution records, alerts and notification
history.

Thread-safe via connection-per-operation; WAL mode lets the CLI read while the
daemon writes. Every sqlite3 error surfaces as PersistenceError.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence
from zoneinfo import ZoneInfo

from .errors import PersistenceError
from .models import (
    ALERT_RESOLVED,
    EXECUTION_SUCCESS,
    UNRESOLVED_ALERT_STATUSES,
    UTC,
    VALID_ALERT_STATUSES,
    Alert,
    ExecutionRecord,
    MailPattern,
    MonitoredJob,
    utc_now,
)

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS jobs (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  schedule TEXT NOT NULL,
  subject_pattern TEXT NOT NULL,
  tolerance_s INTEGER NOT NULL CHECK(tolerance_s >= 0),
  lookback_s INTEGER,
  timezone TEXT NOT NULL DEFAULT 'UTC',
  active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0, 1)),
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS mail_patterns (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  job_id TEXT NOT NULL,
  position INTEGER NOT NULL,
  name TEXT NOT NULL,
  kind TEXT NOT NULL CHECK(kind IN ('regex', 'keyword', 'json_path')),
  target TEXT NOT NULL CHECK(target IN ('subject', 'body', 'from', 'to', 'headers')),
  value TEXT NOT NULL,
  extraction_name TEXT NOT NULL,
  priority INTEGER NOT NULL DEFAULT 0,
  required INTEGER NOT NULL DEFAULT 0 CHECK(required IN (0, 1)),
  FOREIGN KEY(job_id) REFERENCES jobs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_patterns_job ON mail_patterns(job_id, position);

CREATE TABLE IF NOT EXISTS job_executions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  job_id TEXT NOT NULL,
  checked_at TEXT NOT NULL,
  deadline TEXT NOT NULL,
  status TEXT NOT NULL CHECK(status IN ('success', 'failure', 'partial')),
  extracted_json TEXT NOT NULL DEFAULT '{}',
  duration_s REAL,
  message_id TEXT,
  notes TEXT,
  FOREIGN KEY(job_id) REFERENCES jobs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_exec_job_time ON job_executions(job_id, checked_at);

CREATE TABLE IF NOT EXISTS alerts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  job_id TEXT NOT NULL,
  detected_at TEXT NOT NULL,
  deadline TEXT NOT NULL,
  severity TEXT NOT NULL,
  message TEXT NOT NULL,
  status TEXT NOT NULL CHECK(status IN ('open', 'acknowledged', 'resolved')),
  consecutive_failures INTEGER NOT NULL DEFAULT 1,
  notes TEXT,
  resolved_at TEXT,
  resolved_by TEXT,
  updated_at TEXT NOT NULL,
  FOREIGN KEY(job_id) REFERENCES jobs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_alerts_job_status ON alerts(job_id, status);

CREATE TABLE IF NOT EXISTS notification_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  alert_id INTEGER NOT NULL,
  notified_at TEXT NOT NULL,
  channel TEXT NOT NULL,
  target TEXT NOT NULL DEFAULT '',
  status TEXT NOT NULL CHECK(status IN ('sent', 'failed')),
  detail TEXT,
  FOREIGN KEY(alert_id) REFERENCES alerts(id) ON DELETE CASCADE
);
"""


def _ts(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class Store:
    """SQLite store for cronsentinel."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = str(db_path)

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=30,
                check_same_thread=False,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def init_db(self) -> None:
        with self._conn() as conn:
            conn.executescript(SCHEMA)

    # === Jobs ===

    def upsert_job(self, job: MonitoredJob) -> None:
        now = _ts(utc_now())
        lookback_s = int(job.lookback.total_seconds()) if job.lookback is not None else None
        with self._tx() as conn:
            conn.execute(
                """INSERT INTO jobs
                   (id, name, description, schedule, subject_pattern, tolerance_s,
                    lookback_s, timezone, active, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                     name = excluded.name,
                     description = excluded.description,
                     schedule = excluded.schedule,
                     subject_pattern = excluded.subject_pattern,
                     tolerance_s = excluded.tolerance_s,
                     lookback_s = excluded.lookback_s,
                     timezone = excluded.timezone,
                     active = excluded.active,
                     updated_at = excluded.updated_at""",
                (
                    job.id,
                    job.name,
                    job.description,
                    job.schedule,
                    job.subject_pattern,
                    int(job.tolerance.total_seconds()),
                    lookback_s,
                    job.timezone.key,
                    1 if job.active else 0,
                    now,
                    now,
                ),
            )
            conn.execute("DELETE FROM mail_patterns WHERE job_id = ?", (job.id,))
            conn.executemany(
                """INSERT INTO mail_patterns
                   (job_id, position, name, kind, target, value, extraction_name, priority, required)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        job.id,
                        position,
                        pattern.name,
                        pattern.kind,
                        pattern.target,
                        pattern.value,
                        pattern.extraction_name,
                        pattern.priority,
                        1 if pattern.required else 0,
                    )
                    for position, pattern in enumerate(job.patterns)
                ],
            )

    def _job_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> MonitoredJob:
        pattern_rows = conn.execute(
            "SELECT * FROM mail_patterns WHERE job_id = ? ORDER BY position", (row["id"],)
        ).fetchall()
        patterns = tuple(
            MailPattern(
                name=p["name"],
                kind=p["kind"],
                target=p["target"],
                value=p["value"],
                extraction_name=p["extraction_name"],
                priority=p["priority"],
                required=bool(p["required"]),
            )
            for p in pattern_rows
        )
        return MonitoredJob(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            schedule=row["schedule"],
            subject_pattern=row["subject_pattern"],
            tolerance=timedelta(seconds=row["tolerance_s"]),
            lookback=timedelta(seconds=row["lookback_s"]) if row["lookback_s"] is not None else None,
            timezone=ZoneInfo(row["timezone"]),
            active=bool(row["active"]),
            patterns=patterns,
        )

    def get_job(self, job_id: str) -> Optional[MonitoredJob]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._job_from_row(conn, row) if row else None

    def list_jobs(self, active_only: bool = False) -> List[MonitoredJob]:
        query = "SELECT * FROM jobs"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY id"
        with self._conn() as conn:
            rows = conn.execute(query).fetchall()
            return [self._job_from_row(conn, row) for row in rows]

    def list_active_jobs(self) -> List[MonitoredJob]:
        return self.list_jobs(active_only=True)

    def set_active(self, job_id: str, active: bool) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE jobs SET active = ?, updated_at = ? WHERE id = ?",
                (1 if active else 0, _ts(utc_now()), job_id),
            )
            return cur.rowcount > 0

    def delete_job(self, job_id: str) -> bool:
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cur.rowcount > 0

    def sync_jobs(self, jobs: Sequence[MonitoredJob]) -> List[str]:
        """Upsert configured jobs and deactivate stored ones no longer configured."""
        for job in jobs:
            self.upsert_job(job)
        configured = {job.id for job in jobs}
        deactivated: List[str] = []
        for stored in self.list_active_jobs():
            if stored.id not in configured:
                self.set_active(stored.id, False)
                deactivated.append(stored.id)
        return deactivated

    # === Executions ===

    def record_execution(self, record: ExecutionRecord) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                """INSERT INTO job_executions
                   (job_id, checked_at, deadline, status, extracted_json, duration_s, message_id, notes)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.job_id,
                    _ts(record.checked_at),
                    _ts(record.deadline),
                    record.status,
                    json.dumps(record.fields, default=str),
                    record.duration_seconds,
                    record.message_id,
                    record.notes,
                ),
            )
            return int(cur.lastrowid)

    def _execution_from_row(self, row: sqlite3.Row) -> ExecutionRecord:
        return ExecutionRecord(
            job_id=row["job_id"],
            checked_at=_parse_ts(row["checked_at"]),
            deadline=_parse_ts(row["deadline"]),
            status=row["status"],
            fields=json.loads(row["extracted_json"]),
            duration_seconds=row["duration_s"],
            message_id=row["message_id"],
            notes=row["notes"],
        )

    def latest_execution(self, job_id: str) -> Optional[ExecutionRecord]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM job_executions WHERE job_id = ? ORDER BY checked_at DESC, id DESC LIMIT 1",
                (job_id,),
            ).fetchone()
            return self._execution_from_row(row) if row else None

    def execution_history(self, job_id: str, days: int = 7, now: Optional[datetime] = None) -> List[ExecutionRecord]:
        since = (now or utc_now()) - timedelta(days=days)
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT * FROM job_executions
                   WHERE job_id = ? AND checked_at > ?
                   ORDER BY checked_at DESC, id DESC""",
                (job_id, _ts(since)),
            ).fetchall()
            return [self._execution_from_row(row) for row in rows]

    def has_execution(self, job_id: str, deadline: datetime) -> bool:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT 1 FROM job_executions WHERE job_id = ? AND deadline = ? LIMIT 1",
                (job_id, _ts(deadline)),
            ).fetchone()
            return row is not None

    def consecutive_failures(self, job_id: str) -> int:
        """Failed or partial executions recorded since the last success."""
        with self._conn() as conn:
            last_success = conn.execute(
                """SELECT MAX(id) AS id FROM job_executions
                   WHERE job_id = ? AND status = ?""",
                (job_id, EXECUTION_SUCCESS),
            ).fetchone()["id"]
            row = conn.execute(
                """SELECT COUNT(*) AS n FROM job_executions
                   WHERE job_id = ? AND status != ? AND id > ?""",
                (job_id, EXECUTION_SUCCESS, last_success or 0),
            ).fetchone()
            return int(row["n"])

    # === Alerts ===

    def _alert_from_row(self, row: sqlite3.Row) -> Alert:
        return Alert(
            id=row["id"],
            job_id=row["job_id"],
            detected_at=_parse_ts(row["detected_at"]),
            deadline=_parse_ts(row["deadline"]),
            severity=row["severity"],
            message=row["message"],
            status=row["status"],
            consecutive_failures=row["consecutive_failures"],
        )

    def create_alert(self, alert: Alert) -> Alert:
        with self._conn() as conn:
            cur = conn.execute(
                """INSERT INTO alerts
                   (job_id, detected_at, deadline, severity, message, status, consecutive_failures, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    alert.job_id,
                    _ts(alert.detected_at),
                    _ts(alert.deadline),
                    alert.severity,
                    alert.message,
                    alert.status,
                    alert.consecutive_failures,
                    _ts(utc_now()),
                ),
            )
            alert.id = int(cur.lastrowid)
        return alert

    def get_alert(self, alert_id: int) -> Optional[Alert]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
            return self._alert_from_row(row) if row else None

    def find_unresolved_alert(self, job_id: str, deadline: datetime) -> Optional[Alert]:
        with self._conn() as conn:
            row = conn.execute(
                """SELECT * FROM alerts
                   WHERE job_id = ? AND deadline = ? AND status IN (?, ?)
                   ORDER BY id DESC LIMIT 1""",
                (job_id, _ts(deadline), *UNRESOLVED_ALERT_STATUSES),
            ).fetchone()
            return self._alert_from_row(row) if row else None

    def unresolved_alerts(self, job_id: Optional[str] = None, limit: int = 100) -> List[Alert]:
        query = "SELECT * FROM alerts WHERE status IN (?, ?)"
        params: List[Any] = list(UNRESOLVED_ALERT_STATUSES)
        if job_id:
            query += " AND job_id = ?"
            params.append(job_id)
        query += " ORDER BY detected_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._conn() as conn:
            return [self._alert_from_row(row) for row in conn.execute(query, params).fetchall()]

    def update_alert_status(
        self,
        alert_id: int,
        status: str,
        notes: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> Optional[Alert]:
        if status not in VALID_ALERT_STATUSES:
            raise PersistenceError(f'Invalid alert status "{status}".')
        now = _ts(utc_now())
        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [status, now]
        if notes:
            assignments.append("notes = ?")
            params.append(notes)
        if status == ALERT_RESOLVED:
            assignments.append("resolved_at = ?")
            params.append(now)
            if resolved_by:
                assignments.append("resolved_by = ?")
                params.append(resolved_by)
        params.append(alert_id)
        with self._conn() as conn:
            cur = conn.execute(f"UPDATE alerts SET {', '.join(assignments)} WHERE id = ?", params)
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
            return self._alert_from_row(row)

    def record_notification(
        self,
        alert_id: int,
        channel: str,
        target: str,
        success: bool,
        detail: Optional[str] = None,
    ) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                """INSERT INTO notification_history
                   (alert_id, notified_at, channel, target, status, detail)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (alert_id, _ts(utc_now()), channel, target, "sent" if success else "failed", detail),
            )
            return int(cur.lastrowid)

    def notification_history(self, alert_id: int) -> List[Dict[str, Any]]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM notification_history WHERE alert_id = ? ORDER BY notified_at DESC, id DESC",
                (alert_id,),
            ).fetchall()
            return [dict(row) for row in rows]

    def alert_stats(self, days: int = 7, now: Optional[datetime] = None) -> Dict[str, int]:
        since = (now or utc_now()) - timedelta(days=days)
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT status, severity, COUNT(*) AS n FROM alerts WHERE detected_at > ? GROUP BY status, severity",
                (_ts(since),),
            ).fetchall()
        stats: Dict[str, int] = {"total": 0}
        for row in rows:
            stats["total"] += row["n"]
            stats[row["status"]] = stats.get(row["status"], 0) + row["n"]
            stats[row["severity"]] = stats.get(row["severity"], 0) + row["n"]
        return stats
