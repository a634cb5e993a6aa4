"""
JobMonitor: per-job evidence checks driven by deadline timers and the sweep.

Checks for different jobs run concurrently on worker threads. Checks for the
same job never overlap: a trigger that arrives while one is in flight is
coalesced into a single pending re-check, run when the current one finishes.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from .errors import InvalidScheduleError, MailboxUnavailableError, PersistenceError, SentinelError
from .extractor import evaluate_pool
from .mailbox import Mailbox
from .models import (
    EXECUTION_FAILURE,
    EXECUTION_PARTIAL,
    EXECUTION_SUCCESS,
    SEVERITY_CRITICAL,
    SEVERITY_WARNING,
    VERDICT_NONE,
    Alert,
    CandidateMessage,
    CheckOutcome,
    EvidenceResult,
    ExecutionRecord,
    MonitoredJob,
    utc_now,
)
from .notify import NotifierGroup
from .schedule import last_deadline, next_deadline, next_run, schedule_period
from .store import Store
from .timers import TimerFactory, TimerRegistry

logger = logging.getLogger(__name__)

DECISION_PASS = "pass"
DECISION_FAIL = "fail"
DECISION_PENDING = "pending"
DECISION_SKIPPED = "skipped"
DECISION_ERROR = "error"

TRIGGER_TIMER = "timer"
TRIGGER_SWEEP = "sweep"
TRIGGER_MANUAL = "manual"


@dataclass(frozen=True)
class MonitorSettings:
    sweep_interval: timedelta = timedelta(hours=1)
    lookback: timedelta = timedelta(hours=24)
    escalate_after: int = 3
    drain_seconds: float = 10.0
    sweep_on_start: bool = True


@dataclass
class JobRunState:
    running: bool = False
    pending_deadline: Optional[datetime] = None
    pending_reason: str = ""


class JobMonitor:
    def __init__(
        self,
        store: Store,
        mailbox: Mailbox,
        notifier: NotifierGroup,
        settings: Optional[MonitorSettings] = None,
        clock: Callable[[], datetime] = utc_now,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self.store = store
        self.mailbox = mailbox
        self.notifier = notifier
        self.settings = settings or MonitorSettings()
        self._clock = clock
        self.registry = TimerRegistry(on_fire=self._on_timer_fire, clock=clock, timer_factory=timer_factory)
        self._lock = threading.Lock()
        self._states: Dict[str, JobRunState] = {}
        self._workers: Set[threading.Thread] = set()

    # === Lifecycle ===

    def start(self) -> Dict[str, bool]:
        """Arm every active job and the sweep. Returns job id -> scheduled."""
        results: Dict[str, bool] = {}
        for job in self.store.list_active_jobs():
            results[job.id] = self.registry.schedule(job)
        self.registry.start_sweep(self.settings.sweep_interval, self.sweep)
        scheduled = sum(1 for ok in results.values() if ok)
        logger.info("Monitoring %s job(s); %s unschedulable", scheduled, len(results) - scheduled)
        if self.settings.sweep_on_start:
            self.sweep()
        return results

    def stop(self, drain_seconds: Optional[float] = None) -> bool:
        """Cancel timers, then wait up to the drain window for in-flight checks."""
        self.registry.stop_all()
        drain = self.settings.drain_seconds if drain_seconds is None else drain_seconds
        return self.wait_idle(drain)

    def wait_idle(self, timeout: float) -> bool:
        give_up_at = time.monotonic() + timeout
        while True:
            with self._lock:
                workers = list(self._workers)
            if not workers:
                return True
            remaining = give_up_at - time.monotonic()
            if remaining <= 0:
                logger.warning("%s check(s) still running after drain window", len(workers))
                return False
            workers[0].join(remaining)

    @property
    def unschedulable(self) -> Dict[str, str]:
        return dict(self.registry.unschedulable)

    def schedule_job(self, job: MonitoredJob) -> bool:
        return self.registry.schedule(job)

    def remove_job(self, job_id: str) -> None:
        self.registry.unschedule(job_id)

    # === Triggers ===

    def sweep(self) -> int:
        """Trigger a check of every active job against its most recent deadline."""
        now = self._clock()
        try:
            jobs = self.store.list_active_jobs()
        except PersistenceError as exc:
            logger.error("Sweep could not list jobs: %s", exc)
            return 0
        dispatched = 0
        for job in jobs:
            try:
                armed = last_deadline(job, now)
            except InvalidScheduleError as exc:
                logger.error("[%s] Sweep skipped, unschedulable: %s", job.id, exc)
                self.registry.reschedule(job)
                continue
            if not self.registry.pending(job.id):
                logger.warning("[%s] No pending timer found by sweep; re-arming", job.id)
                self.registry.reschedule(job)
            if self.trigger(job.id, armed, TRIGGER_SWEEP):
                dispatched += 1
        logger.info("Sweep dispatched %s of %s job check(s)", dispatched, len(jobs))
        return dispatched

    def _on_timer_fire(self, job: MonitoredJob, fire_at: datetime) -> None:
        self.trigger(job.id, fire_at, TRIGGER_TIMER)

    def trigger(self, job_id: str, armed_deadline: datetime, reason: str) -> bool:
        """Start a check on a worker thread. False when coalesced into a pending re-check."""
        with self._lock:
            state = self._states.setdefault(job_id, JobRunState())
            if state.running:
                if state.pending_deadline is None or armed_deadline >= state.pending_deadline:
                    state.pending_deadline = armed_deadline
                    state.pending_reason = reason
                logger.info(
                    "[%s] Check in flight; queued %s re-check for %s",
                    job_id,
                    reason,
                    state.pending_deadline.isoformat(),
                )
                return False
            state.running = True
            worker = threading.Thread(
                target=self._worker,
                args=(job_id, armed_deadline, reason),
                daemon=True,
                name=f"cronsentinel-check-{job_id}",
            )
            # Only started threads go into _workers; wait_idle joins them.
            worker.start()
            self._workers.add(worker)
        return True

    def _worker(self, job_id: str, armed_deadline: datetime, reason: str) -> None:
        try:
            while True:
                try:
                    self.check_job(job_id, armed_deadline, reason)
                except Exception:  # pragma: no cover - defensive
                    logger.exception("[%s] Check crashed", job_id)
                with self._lock:
                    state = self._states[job_id]
                    if state.pending_deadline is None:
                        state.running = False
                        break
                    armed_deadline = state.pending_deadline
                    reason = state.pending_reason
                    state.pending_deadline = None
        finally:
            with self._lock:
                self._workers.discard(threading.current_thread())

    def run_check_now(self, job_id: str) -> CheckOutcome:
        """Synchronous check against the job's most recent deadline."""
        job = self.store.get_job(job_id)
        if job is None:
            raise SentinelError(f'Unknown job "{job_id}".')
        armed = last_deadline(job, self._clock())
        with self._lock:
            state = self._states.setdefault(job_id, JobRunState())
            if state.running:
                return CheckOutcome(job_id, DECISION_SKIPPED, armed, reason="check already in flight")
            state.running = True
        try:
            return self.check_job(job_id, armed, TRIGGER_MANUAL, reschedule=False)
        finally:
            with self._lock:
                state.running = False
                pending = state.pending_deadline
                pending_reason = state.pending_reason
                state.pending_deadline = None
            if pending is not None:
                self.trigger(job_id, pending, pending_reason)

    # === The check ===

    def check_job(
        self,
        job_id: str,
        armed_deadline: datetime,
        reason: str = TRIGGER_MANUAL,
        reschedule: bool = True,
    ) -> CheckOutcome:
        now = self._clock()
        try:
            job = self.store.get_job(job_id)
        except PersistenceError as exc:
            logger.error("[%s] Cannot load job definition: %s", job_id, exc)
            return CheckOutcome(job_id, DECISION_ERROR, armed_deadline, reason=str(exc))
        if job is None or not job.active:
            logger.info("[%s] Job deleted or deactivated; unscheduling", job_id)
            self.registry.unschedule(job_id)
            return CheckOutcome(job_id, DECISION_SKIPPED, armed_deadline, reason="inactive")

        try:
            return self._evaluate(job, armed_deadline, reason, now)
        finally:
            if reschedule:
                # Picks up edits made since this cycle was armed.
                self.registry.reschedule(job)

    def _evaluate(self, job: MonitoredJob, armed: datetime, reason: str, now: datetime) -> CheckOutcome:
        if reason == TRIGGER_SWEEP and self._already_evaluated(job, armed):
            logger.debug("[%s] Deadline %s already evaluated", job.id, armed.isoformat())
            return CheckOutcome(job.id, DECISION_SKIPPED, armed, reason="already evaluated")
        try:
            upcoming = next_deadline(job, now)
            run_at = armed - job.tolerance
            lookback = max(job.lookback or self.settings.lookback, schedule_period(job, run_at))
            cycle_end = max(next_run(job.schedule, run_at, job.timezone), armed)
        except InvalidScheduleError as exc:
            logger.error("[%s] Invalid schedule: %s", job.id, exc)
            return CheckOutcome(job.id, DECISION_ERROR, armed, reason=str(exc))
        logger.info(
            "[%s] Checking deadline %s (%s trigger); next deadline %s",
            job.id,
            armed.isoformat(),
            reason,
            upcoming.isoformat(),
        )

        try:
            messages = self.mailbox.find_messages(job.subject_pattern, armed - lookback)
        except MailboxUnavailableError as exc:
            logger.error("[%s] Mailbox unavailable; abandoning this cycle: %s", job.id, exc)
            return CheckOutcome(job.id, DECISION_ERROR, armed, reason=str(exc))

        pool = self._cycle_pool(messages, run_at, cycle_end)
        evidence = evaluate_pool(pool, job.patterns)
        logger.info(
            "[%s] %s candidate message(s); verdict=%s fields=%s",
            job.id,
            len(pool),
            evidence.verdict,
            evidence.fields,
        )

        if evidence.complete and evidence.received_at is not None and evidence.received_at <= armed:
            self._record(job, armed, EXECUTION_SUCCESS, evidence, now)
            logger.info(
                "[%s] Pass: confirmation %s received %s",
                job.id,
                evidence.message_id,
                evidence.received_at.isoformat(),
            )
            return CheckOutcome(job.id, DECISION_PASS, armed, evidence=evidence)
        if now < armed:
            logger.info("[%s] Pending: deadline %s not reached", job.id, armed.isoformat())
            return CheckOutcome(job.id, DECISION_PENDING, armed, evidence=evidence)
        return self._fail(job, armed, evidence, now)

    @staticmethod
    def _cycle_pool(
        messages: List[CandidateMessage], run_at: datetime, cycle_end: datetime
    ) -> List[CandidateMessage]:
        # Confirmations sent before this run answer an earlier cycle; ones after
        # the next run answer a later one.
        return [message for message in messages if run_at <= message.received_at <= cycle_end]

    def _already_evaluated(self, job: MonitoredJob, armed: datetime) -> bool:
        try:
            return self.store.has_execution(job.id, armed)
        except PersistenceError as exc:
            logger.warning("[%s] Cannot read execution history: %s", job.id, exc)
            return False

    def _fail(self, job: MonitoredJob, armed: datetime, evidence: EvidenceResult, now: datetime) -> CheckOutcome:
        status = EXECUTION_FAILURE
        if evidence.verdict == VERDICT_NONE:
            message = f'No confirmation email matching "{job.subject_pattern}" by {armed.isoformat()}.'
        elif evidence.complete:
            received = evidence.received_at.isoformat() if evidence.received_at else "unknown"
            message = f"Confirmation {evidence.message_id} arrived late at {received} (deadline {armed.isoformat()})."
        else:
            status = EXECUTION_PARTIAL
            missing = [p.extraction_name for p in job.patterns if p.required and p.extraction_name not in evidence.fields]
            message = f"Confirmation {evidence.message_id} is missing required field(s): {', '.join(missing)}."
        logger.warning("[%s] Fail: %s", job.id, message)

        self._record(job, armed, status, evidence, now, notes=message)
        failures = self._consecutive_failures(job)

        try:
            existing = self.store.find_unresolved_alert(job.id, armed)
        except PersistenceError as exc:
            logger.error("[%s] Cannot read open alerts: %s", job.id, exc)
            existing = None
        if existing is not None:
            logger.info("[%s] Alert %s already open for deadline %s", job.id, existing.id, armed.isoformat())
            return CheckOutcome(job.id, DECISION_FAIL, armed, evidence=evidence, reason=message)

        severity = SEVERITY_CRITICAL if failures >= self.settings.escalate_after else SEVERITY_WARNING
        alert = Alert(
            job_id=job.id,
            detected_at=now,
            severity=severity,
            message=message,
            deadline=armed,
            consecutive_failures=failures,
        )
        try:
            alert = self.store.create_alert(alert)
        except PersistenceError as exc:
            logger.error("[%s] Cannot persist alert: %s", job.id, exc)

        for outcome in self.notifier.notify(alert, job):
            if alert.id is None:
                continue
            try:
                self.store.record_notification(alert.id, outcome.channel, outcome.target, outcome.success, outcome.detail)
            except PersistenceError as exc:
                logger.error("[%s] Cannot record notification: %s", job.id, exc)
        return CheckOutcome(job.id, DECISION_FAIL, armed, evidence=evidence, alert=alert, reason=message)

    def _record(
        self,
        job: MonitoredJob,
        armed: datetime,
        status: str,
        evidence: EvidenceResult,
        now: datetime,
        notes: Optional[str] = None,
    ) -> None:
        record = ExecutionRecord(
            job_id=job.id,
            checked_at=now,
            status=status,
            deadline=armed,
            fields=dict(evidence.fields),
            duration_seconds=evidence.duration_seconds,
            message_id=evidence.message_id,
            notes=notes,
        )
        try:
            self.store.record_execution(record)
        except PersistenceError as exc:
            logger.error("[%s] Cannot record execution: %s", job.id, exc)

    def _consecutive_failures(self, job: MonitoredJob) -> int:
        try:
            return max(1, self.store.consecutive_failures(job.id))
        except PersistenceError as exc:
            logger.error("[%s] Cannot count failures: %s", job.id, exc)
            return 1
