"""
TimerRegistry: one cancellable deadline timer per monitored job, plus the
recurring sweep timer.

All reads and replacements of the timer map happen under ``_lock``. A timer
that fires after it was replaced or cancelled finds a different entry (or none)
registered for its job id and drops itself, so a stale timer never reaches the
fire callback.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .errors import InvalidScheduleError
from .models import MonitoredJob, utc_now
from .schedule import next_deadline, validate_cron_expression

logger = logging.getLogger(__name__)

FireCallback = Callable[[MonitoredJob, datetime], None]
TimerFactory = Callable[..., Any]


@dataclass
class ScheduledTimer:
    job: MonitoredJob
    fire_at: datetime
    handle: Any = None


class TimerRegistry:
    def __init__(
        self,
        on_fire: FireCallback,
        clock: Callable[[], datetime] = utc_now,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self._on_fire = on_fire
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timers: Dict[str, ScheduledTimer] = {}
        self._firing: Dict[str, ScheduledTimer] = {}
        self._sweep_handle: Any = None
        self._sweep_generation = 0
        self._sweep_interval: Optional[timedelta] = None
        self._sweep_fn: Optional[Callable[[], None]] = None
        self._stopped = False
        self.unschedulable: Dict[str, str] = {}

    def schedule(self, job: MonitoredJob) -> bool:
        """Arm (or re-arm) the job's deadline timer. False when the schedule is invalid."""
        with self._lock:
            self._stopped = False
        return self._arm(job, only_if_absent=False)

    def reschedule(self, job: MonitoredJob) -> bool:
        """Like schedule(), but a no-op once stop_all() has run."""
        return self._arm(job, only_if_absent=False, unless_stopped=True)

    def unschedule(self, job_id: str) -> None:
        with self._lock:
            entry = self._timers.pop(job_id, None)
            self._firing.pop(job_id, None)
        if entry is not None:
            entry.handle.cancel()
            logger.info("[%s] Unscheduled", job_id)

    def start_sweep(self, interval: timedelta, sweep_fn: Callable[[], None]) -> None:
        if interval.total_seconds() <= 0:
            raise ValueError("sweep interval must be positive")
        with self._lock:
            self._sweep_interval = interval
            self._sweep_fn = sweep_fn
            self._arm_sweep_locked()
        logger.info("Sweep armed every %ss", int(interval.total_seconds()))

    def stop_sweep(self) -> None:
        with self._lock:
            self._cancel_sweep_locked()
            self._sweep_fn = None
            self._sweep_interval = None

    def stop_all(self) -> None:
        """Cancel every pending timer. Checks already handed off keep running."""
        with self._lock:
            self._stopped = True
            entries = list(self._timers.values())
            self._timers.clear()
            self._firing.clear()
            self._cancel_sweep_locked()
            self._sweep_fn = None
            self._sweep_interval = None
        for entry in entries:
            entry.handle.cancel()
        logger.info("Stopped %s job timer(s) and the sweep", len(entries))

    def pending(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._timers

    def pending_count(self) -> int:
        with self._lock:
            return len(self._timers)

    def scheduled_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._timers)

    def next_fire(self, job_id: str) -> Optional[datetime]:
        with self._lock:
            entry = self._timers.get(job_id)
            return entry.fire_at if entry else None

    def sweep_active(self) -> bool:
        with self._lock:
            return self._sweep_handle is not None

    def _arm(
        self,
        job: MonitoredJob,
        only_if_absent: bool,
        not_before: Optional[datetime] = None,
        unless_stopped: bool = False,
    ) -> bool:
        try:
            validate_cron_expression(job.schedule)
            now = self._clock()
            reference = max(now, not_before) if not_before is not None else now
            fire_at = next_deadline(job, reference)
        except InvalidScheduleError as exc:
            logger.error("[%s] Unschedulable: %s", job.id, exc)
            with self._lock:
                self.unschedulable[job.id] = str(exc)
                stale = self._timers.pop(job.id, None)
                self._firing.pop(job.id, None)
            if stale is not None:
                stale.handle.cancel()
            return False

        delay = max(0.0, (fire_at - now).total_seconds())
        with self._lock:
            if unless_stopped and self._stopped:
                logger.debug("[%s] Registry stopped; not re-arming", job.id)
                return False
            if only_if_absent and job.id in self._timers:
                return True
            entry = ScheduledTimer(job=job, fire_at=fire_at)
            entry.handle = self._timer_factory(delay, self._fire, args=(job.id, entry))
            entry.handle.daemon = True
            previous = self._timers.get(job.id)
            self._timers[job.id] = entry
            if not only_if_absent:
                self._firing.pop(job.id, None)
            self.unschedulable.pop(job.id, None)
            if previous is not None:
                previous.handle.cancel()
            entry.handle.start()
        logger.info("[%s] Next check at %s (in %.0fs)", job.id, fire_at.isoformat(), delay)
        return True

    def _fire(self, job_id: str, entry: ScheduledTimer) -> None:
        with self._lock:
            if self._timers.get(job_id) is not entry:
                logger.debug("[%s] Dropping stale timer for %s", job_id, entry.fire_at.isoformat())
                return
            del self._timers[job_id]
            self._firing[job_id] = entry

        logger.info("[%s] Deadline %s reached", job_id, entry.fire_at.isoformat())
        try:
            self._on_fire(entry.job, entry.fire_at)
        except Exception:  # pragma: no cover - callback must not kill the timer thread
            logger.exception("[%s] Fire callback failed", job_id)

        with self._lock:
            rearm = self._firing.get(job_id) is entry
            if rearm:
                del self._firing[job_id]
        if rearm:
            self._arm(entry.job, only_if_absent=True, not_before=entry.fire_at, unless_stopped=True)

    def _arm_sweep_locked(self) -> None:
        self._cancel_sweep_locked()
        assert self._sweep_interval is not None
        generation = self._sweep_generation
        handle = self._timer_factory(self._sweep_interval.total_seconds(), self._run_sweep, args=(generation,))
        handle.daemon = True
        self._sweep_handle = handle
        handle.start()

    def _cancel_sweep_locked(self) -> None:
        self._sweep_generation += 1
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None

    def _run_sweep(self, generation: int) -> None:
        with self._lock:
            if generation != self._sweep_generation or self._sweep_fn is None:
                return
            sweep_fn = self._sweep_fn
            self._sweep_handle = None

        logger.info("Running sweep")
        try:
            sweep_fn()
        except Exception:
            logger.exception("Sweep failed; re-arming")

        with self._lock:
            if generation == self._sweep_generation and self._sweep_fn is sweep_fn:
                self._arm_sweep_locked()
