from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Tuple

import pytest

from conftest import FakeClock, FakeTimerFactory
from cronsentinel.models import MonitoredJob
from cronsentinel.timers import TimerRegistry

UTC = timezone.utc


def _job(schedule: str = "*/5 * * * *", job_id: str = "job-1") -> MonitoredJob:
    return MonitoredJob(
        id=job_id,
        name=job_id,
        schedule=schedule,
        tolerance=timedelta(minutes=10),
        subject_pattern="done",
    )


def _registry(
    timers: FakeTimerFactory, now: datetime
) -> Tuple[TimerRegistry, List[Tuple[MonitoredJob, datetime]]]:
    fired: List[Tuple[MonitoredJob, datetime]] = []
    registry = TimerRegistry(
        on_fire=lambda job, at: fired.append((job, at)),
        clock=FakeClock(now),
        timer_factory=timers,
    )
    return registry, fired


NOW = datetime(2024, 1, 15, 10, 2, tzinfo=UTC)


def test_schedule_arms_daemon_timer_for_next_deadline(timers: FakeTimerFactory) -> None:
    registry, _ = _registry(timers, NOW)
    assert registry.schedule(_job()) is True
    # 09:55 run is still inside its tolerance window.
    assert registry.next_fire("job-1") == datetime(2024, 1, 15, 10, 5, tzinfo=UTC)
    (timer,) = timers.live()
    assert timer.interval == pytest.approx(180.0)
    assert timer.daemon is True


def test_scheduling_twice_leaves_one_pending_timer(timers: FakeTimerFactory) -> None:
    registry, _ = _registry(timers, NOW)
    registry.schedule(_job())
    registry.schedule(_job())
    assert registry.pending_count() == 1
    assert len(timers.live()) == 1
    assert timers.created[0].cancelled is True


def test_invalid_schedule_is_flagged_not_armed(timers: FakeTimerFactory) -> None:
    registry, _ = _registry(timers, NOW)
    registry.schedule(_job())
    assert registry.schedule(_job("61 * * * *")) is False
    assert "job-1" in registry.unschedulable
    assert registry.pending("job-1") is False
    assert timers.live() == []

    assert registry.schedule(_job()) is True
    assert "job-1" not in registry.unschedulable


def test_fire_hands_off_and_rearms(timers: FakeTimerFactory) -> None:
    registry, fired = _registry(timers, NOW)
    job = _job()
    registry.schedule(job)
    timers.live()[0].fire()

    assert fired == [(job, datetime(2024, 1, 15, 10, 5, tzinfo=UTC))]
    # Re-armed strictly after the deadline that just fired.
    assert registry.next_fire("job-1") == datetime(2024, 1, 15, 10, 10, tzinfo=UTC)
    assert registry.pending_count() == 1


def test_stale_timer_is_dropped(timers: FakeTimerFactory) -> None:
    registry, fired = _registry(timers, NOW)
    registry.schedule(_job())
    stale = timers.created[0]
    registry.schedule(_job())
    stale.fire()
    assert fired == []
    assert registry.pending_count() == 1


def test_unschedule_during_fire_prevents_rearm(timers: FakeTimerFactory) -> None:
    registry = TimerRegistry(
        on_fire=lambda job, at: registry.unschedule(job.id),
        clock=FakeClock(NOW),
        timer_factory=timers,
    )
    registry.schedule(_job())
    timers.live()[0].fire()
    assert registry.pending("job-1") is False


def test_callback_error_still_rearms(timers: FakeTimerFactory) -> None:
    def boom(job: MonitoredJob, at: datetime) -> None:
        raise RuntimeError("check dispatch failed")

    registry = TimerRegistry(on_fire=boom, clock=FakeClock(NOW), timer_factory=timers)
    registry.schedule(_job())
    timers.live()[0].fire()
    assert registry.pending("job-1") is True


def test_unschedule_is_idempotent(timers: FakeTimerFactory) -> None:
    registry, _ = _registry(timers, NOW)
    registry.schedule(_job())
    registry.unschedule("job-1")
    registry.unschedule("job-1")
    registry.unschedule("unknown")
    assert registry.pending_count() == 0
    assert timers.live() == []


def test_stop_all_then_schedule_rearms(timers: FakeTimerFactory) -> None:
    registry, _ = _registry(timers, NOW)
    registry.schedule(_job("*/5 * * * *", "a"))
    registry.schedule(_job("0 * * * *", "b"))
    registry.start_sweep(timedelta(hours=1), lambda: None)
    registry.stop_all()
    assert registry.pending_count() == 0
    assert registry.sweep_active() is False
    assert timers.live() == []

    assert registry.schedule(_job("*/5 * * * *", "a")) is True
    assert registry.scheduled_ids() == ["a"]


def test_reschedule_after_stop_all_is_a_noop(timers: FakeTimerFactory) -> None:
    registry, _ = _registry(timers, NOW)
    assert registry.reschedule(_job()) is True
    registry.stop_all()

    assert registry.reschedule(_job()) is False
    assert registry.pending_count() == 0
    assert timers.live() == []

    registry.schedule(_job("0 * * * *", "b"))
    assert registry.reschedule(_job()) is True
    assert registry.scheduled_ids() == ["b", "job-1"]


def test_sweep_runs_and_rearms(timers: FakeTimerFactory) -> None:
    registry, _ = _registry(timers, NOW)
    calls: List[int] = []
    registry.start_sweep(timedelta(minutes=30), lambda: calls.append(1))
    (first,) = timers.live()
    assert first.interval == 1800
    first.fire()
    assert calls == [1]
    assert registry.sweep_active() is True
    (second,) = timers.live()
    assert second is not first


def test_sweep_survives_exceptions(timers: FakeTimerFactory) -> None:
    registry, _ = _registry(timers, NOW)

    def failing_sweep() -> None:
        raise RuntimeError("store offline")

    registry.start_sweep(timedelta(minutes=30), failing_sweep)
    timers.live()[0].fire()
    assert registry.sweep_active() is True


def test_stopped_sweep_does_not_run(timers: FakeTimerFactory) -> None:
    registry, _ = _registry(timers, NOW)
    calls: List[int] = []
    registry.start_sweep(timedelta(minutes=30), lambda: calls.append(1))
    handle = timers.created[0]
    registry.stop_sweep()
    handle.fire()
    assert calls == []
    assert registry.sweep_active() is False


def test_sweep_interval_must_be_positive(timers: FakeTimerFactory) -> None:
    registry, _ = _registry(timers, NOW)
    with pytest.raises(ValueError):
        registry.start_sweep(timedelta(0), lambda: None)
