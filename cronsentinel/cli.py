from __future__ import annotations

import argparse
import signal
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from .config import DEFAULT_CONFIG_FILE, SentinelSettings, load_config
from .errors import ConfigError, SentinelError
from .log import setup_logging
from .mailbox import ImapMailbox, Mailbox
from .models import ALERT_ACKNOWLEDGED, ALERT_RESOLVED, MonitoredJob, utc_now
from .monitor import DECISION_ERROR, DECISION_FAIL, JobMonitor
from .notify import EmailNotifier, Notifier, NotifierGroup, WebhookNotifier
from .schedule import next_runs
from .store import Store

DEFAULT_PREVIEW_COUNT = 5
DEFAULT_HISTORY_DAYS = 7

logger = setup_logging()


def open_store(settings: SentinelSettings) -> Store:
    store = Store(settings.database)
    store.init_db()
    return store


def build_notifiers(settings: SentinelSettings) -> NotifierGroup:
    notifiers: List[Notifier] = []
    if settings.smtp is not None:
        notifiers.append(EmailNotifier(settings.smtp))
    for hook in settings.webhooks:
        notifiers.append(WebhookNotifier(hook))
    if not notifiers:
        logger.warning("No notification channel configured; alerts go to the log only")
    return NotifierGroup(notifiers)


def build_monitor(
    settings: SentinelSettings,
    store: Store,
    mailbox: Optional[Mailbox] = None,
    notifier: Optional[NotifierGroup] = None,
) -> JobMonitor:
    if mailbox is None:
        if settings.mailbox is None:
            raise ConfigError("Error: mailbox section is required to check jobs.")
        mailbox = ImapMailbox(settings.mailbox)
    return JobMonitor(
        store=store,
        mailbox=mailbox,
        notifier=notifier or build_notifiers(settings),
        settings=settings.monitor,
    )


def select_jobs(settings: SentinelSettings, job_name: Optional[str]) -> List[MonitoredJob]:
    if job_name is None:
        return list(settings.jobs)
    job = settings.job(job_name)
    if job is None:
        raise SentinelError(f'Error: Job "{job_name}" not found in config.')
    return [job]


def _load(config_path: Path, resolve_secrets: bool = True) -> SentinelSettings:
    settings = load_config(config_path, resolve_secrets=resolve_secrets)
    setup_logging(settings.log_file)
    return settings


def command_validate(config_path: Path) -> int:
    settings = _load(config_path, resolve_secrets=False)
    active = sum(1 for job in settings.jobs if job.active)
    print(f"Config valid: {config_path}")
    print(f"Total jobs: {len(settings.jobs)}")
    print(f"Active jobs: {active}")
    for job in settings.jobs:
        flag = "" if job.id not in settings.unschedulable else "  UNSCHEDULABLE"
        print(f"- {job.id}: {job.schedule} ({job.timezone.key}), tolerance={job.tolerance}{flag}")
    if settings.unschedulable:
        for name, reason in sorted(settings.unschedulable.items()):
            logger.error("[%s] %s", name, reason)
        return 1
    return 0


def command_preview(config_path: Path, job_name: Optional[str], count: int) -> int:
    settings = _load(config_path, resolve_secrets=False)
    now = utc_now()
    for job in select_jobs(settings, job_name):
        print("=" * 80)
        print(f"Job: {job.id} (active={job.active})")
        print(f"Schedule: {job.schedule} ({job.timezone.key})")
        print(f"Subject: {job.subject_pattern}")
        if job.id in settings.unschedulable:
            print(f"Unschedulable: {settings.unschedulable[job.id]}")
            continue
        print(f"Next {count} run(s) and deadline(s):")
        for run in next_runs(job.schedule, count, now, job.timezone):
            local_run = run.astimezone(job.timezone)
            local_deadline = (run + job.tolerance).astimezone(job.timezone)
            print(f"- {local_run.isoformat()} -> deadline {local_deadline.isoformat()}")
    print("=" * 80)
    return 0


def command_check(config_path: Path, job_name: str, mailbox: Optional[Mailbox] = None) -> int:
    settings = _load(config_path)
    select_jobs(settings, job_name)
    store = open_store(settings)
    store.sync_jobs(settings.jobs)
    monitor = build_monitor(settings, store, mailbox=mailbox)
    outcome = monitor.run_check_now(job_name)
    print(f"{outcome.job_id}: {outcome.decision} (deadline {outcome.deadline.isoformat()})")
    if outcome.evidence is not None and outcome.evidence.fields:
        for key, value in sorted(outcome.evidence.fields.items()):
            print(f"  {key} = {value!r}")
    if outcome.reason:
        print(f"  {outcome.reason}")
    if outcome.alert is not None and outcome.alert.id is not None:
        print(f"  alert #{outcome.alert.id} ({outcome.alert.severity})")
    return 1 if outcome.decision in (DECISION_FAIL, DECISION_ERROR) else 0


def command_daemon(
    config_path: Path,
    drain_seconds: Optional[float],
    stop_event: Optional[threading.Event] = None,
) -> int:
    settings = _load(config_path)
    store = open_store(settings)
    deactivated = store.sync_jobs(settings.jobs)
    for job_id in deactivated:
        logger.info("[%s] No longer configured; deactivated", job_id)
    monitor = build_monitor(settings, store)

    stop_event = stop_event or threading.Event()

    def handle_sigterm(signum: int, frame: object) -> None:
        logger.info("Received signal %s; shutting down", signum)
        stop_event.set()

    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(signal.SIGTERM, handle_sigterm)

    monitor.start()
    for name, reason in sorted(monitor.unschedulable.items()):
        logger.error("[%s] Not monitored: %s", name, reason)
    logger.info("Daemon started with %s scheduled job(s)", monitor.registry.pending_count())
    code = 0
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        code = 130
    finally:
        drained = monitor.stop(drain_seconds)
        logger.info("Daemon stopped (drained=%s)", drained)
        if previous_handler is not None:
            signal.signal(signal.SIGTERM, previous_handler)
    return code


def command_alerts(config_path: Path, job_name: Optional[str]) -> int:
    settings = _load(config_path, resolve_secrets=False)
    store = open_store(settings)
    alerts = store.unresolved_alerts(job_id=job_name)
    if not alerts:
        print("No unresolved alerts.")
        return 0
    for alert in alerts:
        print(
            f"#{alert.id} [{alert.severity}] {alert.job_id} {alert.status} "
            f"deadline={alert.deadline.isoformat()} failures={alert.consecutive_failures}"
        )
        print(f"    {alert.message}")
    return 0


def command_set_alert_status(config_path: Path, alert_id: int, status: str, notes: Optional[str] = None) -> int:
    settings = _load(config_path, resolve_secrets=False)
    store = open_store(settings)
    alert = store.update_alert_status(alert_id, status, notes=notes, resolved_by="cli")
    if alert is None:
        raise SentinelError(f"Error: Alert {alert_id} not found.")
    print(f"Alert #{alert.id} is now {alert.status}")
    return 0


def command_history(config_path: Path, job_name: str, days: int) -> int:
    settings = _load(config_path, resolve_secrets=False)
    store = open_store(settings)
    records = store.execution_history(job_name, days=days)
    print(f"{len(records)} execution(s) for {job_name} in the last {days} day(s)")
    for record in records:
        duration = f" duration={record.duration_seconds}s" if record.duration_seconds is not None else ""
        print(f"- {record.checked_at.isoformat()} {record.status} deadline={record.deadline.isoformat()}{duration}")
        if record.fields:
            print(f"    fields={record.fields}")
        if record.notes:
            print(f"    {record.notes}")
    return 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="cronsentinel: cron job liveness monitor driven by confirmation emails",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_FILE,
        help=f"Path to cronsentinel YAML config (default: {DEFAULT_CONFIG_FILE})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    config_help = f"Path to config (default: {DEFAULT_CONFIG_FILE})"

    validate_parser = subparsers.add_parser("validate", help="Validate config and cron expressions")
    validate_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)

    preview_parser = subparsers.add_parser("preview", help="Show upcoming runs and deadlines")
    preview_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    preview_parser.add_argument("--job", help="Preview a single job by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    check_parser = subparsers.add_parser("check", help="Check one job against its last deadline now")
    check_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    check_parser.add_argument("--job", required=True, help="Job name")

    daemon_parser = subparsers.add_parser("daemon", help="Run the monitor until SIGINT/SIGTERM")
    daemon_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    daemon_parser.add_argument(
        "--drain-seconds",
        type=float,
        default=None,
        help="Seconds to wait for in-flight checks on shutdown (default: 10)",
    )

    alerts_parser = subparsers.add_parser("alerts", help="List unresolved alerts")
    alerts_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    alerts_parser.add_argument("--job", help="Only alerts for this job")

    ack_parser = subparsers.add_parser("ack", help="Acknowledge an alert")
    ack_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    ack_parser.add_argument("alert_id", type=int)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve an alert")
    resolve_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    resolve_parser.add_argument("alert_id", type=int)
    resolve_parser.add_argument("--notes", help="Resolution notes")

    history_parser = subparsers.add_parser("history", help="Show recent execution records for a job")
    history_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    history_parser.add_argument("--job", required=True, help="Job name")
    history_parser.add_argument("--days", type=int, default=DEFAULT_HISTORY_DAYS, help="Days of history")

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise SentinelError("--count must be >= 1")
            return command_preview(config_path, job_name=args.job, count=args.count)
        if args.command == "check":
            return command_check(config_path, job_name=args.job)
        if args.command == "daemon":
            if args.drain_seconds is not None and args.drain_seconds < 0:
                raise SentinelError("--drain-seconds must be >= 0")
            return command_daemon(config_path, drain_seconds=args.drain_seconds)
        if args.command == "alerts":
            return command_alerts(config_path, job_name=args.job)
        if args.command == "ack":
            return command_set_alert_status(config_path, args.alert_id, ALERT_ACKNOWLEDGED)
        if args.command == "resolve":
            return command_set_alert_status(config_path, args.alert_id, ALERT_RESOLVED, notes=args.notes)
        if args.command == "history":
            if args.days <= 0:
                raise SentinelError("--days must be >= 1")
            return command_history(config_path, job_name=args.job, days=args.days)
        raise SentinelError(f"Unsupported command: {args.command}")
    except SentinelError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
