from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from cronsentinel.errors import PersistenceError
from cronsentinel.models import (
    ALERT_ACKNOWLEDGED,
    ALERT_RESOLVED,
    EXECUTION_FAILURE,
    EXECUTION_PARTIAL,
    EXECUTION_SUCCESS,
    SEVERITY_CRITICAL,
    SEVERITY_WARNING,
    Alert,
    ExecutionRecord,
    MailPattern,
    MonitoredJob,
)
from cronsentinel.store import Store

UTC = timezone.utc
DEADLINE = datetime(2024, 1, 15, 11, 10, tzinfo=UTC)


def _job(job_id: str = "nightly-backup", **overrides: object) -> MonitoredJob:
    fields = {
        "id": job_id,
        "name": job_id,
        "schedule": "0 2 * * *",
        "tolerance": timedelta(minutes=30),
        "subject_pattern": "Backup finished",
        "timezone": ZoneInfo("Europe/Berlin"),
        "lookback": timedelta(hours=36),
        "patterns": (
            MailPattern("count", "regex", "body", r"processed (\d+)", "items", priority=10, required=True),
            MailPattern("clean", "keyword", "body", "exit code 0", "clean"),
        ),
    }
    fields.update(overrides)
    return MonitoredJob(**fields)  # type: ignore[arg-type]


def _record(status: str, job_id: str = "nightly-backup", deadline: datetime = DEADLINE) -> ExecutionRecord:
    return ExecutionRecord(job_id=job_id, checked_at=deadline, status=status, deadline=deadline)


def test_job_round_trip_with_patterns(store: Store) -> None:
    job = _job()
    store.upsert_job(job)
    assert store.get_job(job.id) == job
    assert store.get_job("missing") is None


def test_upsert_replaces_patterns(store: Store) -> None:
    store.upsert_job(_job())
    edited = _job(schedule="30 3 * * *", patterns=(MailPattern("ok", "keyword", "subject", "OK", "ok"),))
    store.upsert_job(edited)
    loaded = store.get_job("nightly-backup")
    assert loaded is not None
    assert loaded.schedule == "30 3 * * *"
    assert loaded.patterns == edited.patterns


def test_sync_jobs_deactivates_removed(store: Store) -> None:
    store.upsert_job(_job("a"))
    store.upsert_job(_job("b"))
    deactivated = store.sync_jobs([_job("a"), _job("c")])
    assert deactivated == ["b"]
    assert [job.id for job in store.list_active_jobs()] == ["a", "c"]
    assert [job.id for job in store.list_jobs()] == ["a", "b", "c"]


def test_set_active_and_delete(store: Store) -> None:
    store.upsert_job(_job())
    assert store.set_active("nightly-backup", False) is True
    assert store.list_active_jobs() == []
    assert store.delete_job("nightly-backup") is True
    assert store.delete_job("nightly-backup") is False


def test_execution_history_and_latest(store: Store) -> None:
    store.upsert_job(_job())
    record = ExecutionRecord(
        job_id="nightly-backup",
        checked_at=DEADLINE,
        status=EXECUTION_SUCCESS,
        deadline=DEADLINE,
        fields={"items": "42", "clean": True},
        duration_seconds=12.5,
        message_id="<m1>",
    )
    store.record_execution(record)
    assert store.latest_execution("nightly-backup") == record
    assert store.execution_history("nightly-backup", days=7, now=DEADLINE + timedelta(days=1)) == [record]
    assert store.execution_history("nightly-backup", days=7, now=DEADLINE + timedelta(days=8)) == []
    assert store.has_execution("nightly-backup", DEADLINE) is True
    assert store.has_execution("nightly-backup", DEADLINE + timedelta(days=1)) is False


def test_consecutive_failures_reset_by_success(store: Store) -> None:
    store.upsert_job(_job())
    assert store.consecutive_failures("nightly-backup") == 0
    store.record_execution(_record(EXECUTION_FAILURE))
    store.record_execution(_record(EXECUTION_PARTIAL))
    assert store.consecutive_failures("nightly-backup") == 2
    store.record_execution(_record(EXECUTION_SUCCESS))
    store.record_execution(_record(EXECUTION_FAILURE))
    assert store.consecutive_failures("nightly-backup") == 1


def test_alert_lifecycle(store: Store) -> None:
    store.upsert_job(_job())
    alert = store.create_alert(
        Alert(job_id="nightly-backup", detected_at=DEADLINE, severity=SEVERITY_WARNING, message="missing", deadline=DEADLINE)
    )
    assert alert.id is not None
    assert store.find_unresolved_alert("nightly-backup", DEADLINE) == alert
    assert store.find_unresolved_alert("nightly-backup", DEADLINE + timedelta(days=1)) is None

    acked = store.update_alert_status(alert.id, ALERT_ACKNOWLEDGED)
    assert acked is not None and acked.status == ALERT_ACKNOWLEDGED
    assert [a.id for a in store.unresolved_alerts()] == [alert.id]

    resolved = store.update_alert_status(alert.id, ALERT_RESOLVED, notes="rerun by hand", resolved_by="ops")
    assert resolved is not None and resolved.status == ALERT_RESOLVED
    assert store.unresolved_alerts() == []
    assert store.find_unresolved_alert("nightly-backup", DEADLINE) is None
    assert store.update_alert_status(9999, ALERT_RESOLVED) is None


def test_invalid_alert_status_rejected(store: Store) -> None:
    with pytest.raises(PersistenceError, match="Invalid alert status"):
        store.update_alert_status(1, "closed")


def test_notification_history_and_stats(store: Store) -> None:
    store.upsert_job(_job())
    warning = store.create_alert(
        Alert(job_id="nightly-backup", detected_at=DEADLINE, severity=SEVERITY_WARNING, message="m", deadline=DEADLINE)
    )
    critical = store.create_alert(
        Alert(
            job_id="nightly-backup",
            detected_at=DEADLINE,
            severity=SEVERITY_CRITICAL,
            message="m",
            deadline=DEADLINE + timedelta(days=1),
            consecutive_failures=3,
        )
    )
    assert warning.id is not None and critical.id is not None
    store.record_notification(warning.id, "email", "ops@example.com", True)
    store.record_notification(warning.id, "webhook", "https://hooks.example.com", False, "HTTP 500")
    history = store.notification_history(warning.id)
    assert {(row["channel"], row["status"]) for row in history} == {("email", "sent"), ("webhook", "failed")}

    stats = store.alert_stats(days=7, now=DEADLINE + timedelta(hours=1))
    assert stats == {"total": 2, "open": 2, "warning": 1, "critical": 1}


def test_deleting_job_cascades(store: Store) -> None:
    store.upsert_job(_job())
    store.record_execution(_record(EXECUTION_FAILURE))
    store.delete_job("nightly-backup")
    assert store.latest_execution("nightly-backup") is None


def test_unopenable_database_raises_persistence_error(tmp_path: Path) -> None:
    store = Store(tmp_path / "missing-dir" / "db.sqlite")
    with pytest.raises(PersistenceError):
        store.init_db()
