"""
YAML configuration: monitored jobs, mailbox, notification channels and daemon
settings. Validation is eager and every error names the offending field path.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .errors import ConfigError, ExtractionPatternError, InvalidScheduleError
from .extractor import compile_pattern
from .mailbox import MailboxSettings, subject_regex
from .models import PATTERN_REGEX, VALID_PATTERN_KINDS, VALID_TARGETS, MailPattern, MonitoredJob
from .monitor import MonitorSettings
from .notify import SMTPSettings, WebhookSettings
from .schedule import validate_cron_expression

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "cronsentinel.yaml"
DEFAULT_DATABASE_FILE = "cronsentinel.db"
DEFAULT_TOLERANCE_MINUTES = 10
DEFAULT_LOOKBACK = "24h"
DEFAULT_SWEEP_INTERVAL = "1h"
DEFAULT_ESCALATE_AFTER = 3

DURATION_RE = re.compile(r"^(\d+)\s*([smhd])$")
DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

TOP_LEVEL_KEYS = {"version", "defaults", "database", "log_file", "sweep", "alerts", "mailbox", "notify", "jobs"}
JOB_KEYS = {
    "name",
    "description",
    "enabled",
    "schedule",
    "timezone",
    "tolerance_minutes",
    "lookback",
    "subject",
    "patterns",
}
PATTERN_KEYS = {"name", "kind", "target", "value", "extract", "priority", "required"}


@dataclass(frozen=True)
class SentinelSettings:
    config_path: Path
    database: Path
    log_file: Optional[Path]
    monitor: MonitorSettings
    mailbox: Optional[MailboxSettings]
    smtp: Optional[SMTPSettings]
    webhooks: Tuple[WebhookSettings, ...]
    jobs: Tuple[MonitoredJob, ...]
    unschedulable: Dict[str, str] = field(default_factory=dict)

    def job(self, name: str) -> Optional[MonitoredJob]:
        for job in self.jobs:
            if job.id == name:
                return job
        return None


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: Optional[int] = 1) -> int:
    if value is None:
        return default
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if minimum is not None and value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str, allowed: Set[str]) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def parse_timezone(name: Any, field_path: str) -> ZoneInfo:
    name = ensure_str(name, field_path)
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def parse_duration(value: Any, field_path: str) -> timedelta:
    if not isinstance(value, str):
        raise ConfigError(f'Error: {field_path} must be a duration string like "30m" or "24h".')
    match = DURATION_RE.match(value.strip().lower())
    if not match:
        raise ConfigError(f'Error: {field_path} must be <number><s|m|h|d>, got "{value}".')
    return timedelta(seconds=int(match.group(1)) * DURATION_UNITS[match.group(2)])


def resolve_secret(env_name: Optional[str], field_path: str, required: bool = True) -> Optional[str]:
    """Read a secret from the environment variable named in a ``*_env`` key."""
    if env_name is None:
        return None
    value = os.environ.get(env_name)
    if value is None and required:
        raise ConfigError(f"Error: Environment variable {env_name} (from {field_path}) is not set.")
    return value


def _resolve_path(value: Any, config_dir: Path, field_path: str) -> Path:
    path = Path(ensure_str(value, field_path)).expanduser()
    if not path.is_absolute():
        path = (config_dir / path).resolve()
    return path


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_mailbox(raw: Any, field_path: str = "mailbox", resolve_secrets: bool = True) -> Optional[MailboxSettings]:
    if raw is None:
        return None
    raw = ensure_mapping(
        raw, field_path, {"host", "port", "ssl", "starttls", "user", "password_env", "folder", "timeout_seconds"}
    )
    ssl = ensure_bool(raw.get("ssl"), f"{field_path}.ssl", True)
    password = resolve_secret(
        ensure_str(raw.get("password_env"), f"{field_path}.password_env"),
        f"{field_path}.password_env",
        resolve_secrets,
    )
    return MailboxSettings(
        host=ensure_str(raw.get("host"), f"{field_path}.host"),
        port=ensure_int(raw.get("port"), f"{field_path}.port", 993 if ssl else 143),
        user=ensure_str(raw.get("user"), f"{field_path}.user"),
        password=password or "",
        folder=ensure_str(raw.get("folder", "INBOX"), f"{field_path}.folder"),
        ssl=ssl,
        starttls=ensure_bool(raw.get("starttls"), f"{field_path}.starttls", False),
        timeout_seconds=ensure_int(raw.get("timeout_seconds"), f"{field_path}.timeout_seconds", 30),
    )


def _parse_recipients(value: Any, field_path: str) -> Tuple[str, ...]:
    if isinstance(value, str):
        return (ensure_str(value, field_path),)
    if not isinstance(value, list) or not value:
        raise ConfigError(f"Error: {field_path} must be an address or a non-empty list of addresses.")
    return tuple(ensure_str(item, f"{field_path}[{idx}]") for idx, item in enumerate(value))


def parse_smtp(raw: Any, field_path: str = "notify.email", resolve_secrets: bool = True) -> Optional[SMTPSettings]:
    if raw is None:
        return None
    raw = ensure_mapping(
        raw, field_path, {"host", "port", "user", "password_env", "from", "to", "starttls", "timeout_seconds"}
    )
    password_env = raw.get("password_env")
    if password_env is not None:
        password_env = ensure_str(password_env, f"{field_path}.password_env")
    user = raw.get("user")
    if user is not None:
        user = ensure_str(user, f"{field_path}.user")
    return SMTPSettings(
        host=ensure_str(raw.get("host"), f"{field_path}.host"),
        port=ensure_int(raw.get("port"), f"{field_path}.port", 587),
        from_email=ensure_str(raw.get("from"), f"{field_path}.from"),
        recipients=_parse_recipients(raw.get("to"), f"{field_path}.to"),
        user=user,
        password=resolve_secret(password_env, f"{field_path}.password_env", resolve_secrets),
        starttls=ensure_bool(raw.get("starttls"), f"{field_path}.starttls", True),
        timeout_seconds=ensure_int(raw.get("timeout_seconds"), f"{field_path}.timeout_seconds", 20),
    )


def parse_webhooks(raw: Any, field_path: str = "notify.webhooks") -> Tuple[WebhookSettings, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError(f"Error: {field_path} must be a list.")
    hooks: List[WebhookSettings] = []
    for idx, item in enumerate(raw):
        path = f"{field_path}[{idx}]"
        item = ensure_mapping(item, path, {"url", "headers", "timeout_seconds"})
        url = ensure_str(item.get("url"), f"{path}.url")
        if not (url.startswith("http://") or url.startswith("https://")):
            raise ConfigError(f"Error: {path}.url must be an HTTP URL.")
        headers_raw = item.get("headers", {}) or {}
        if not isinstance(headers_raw, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in headers_raw.items()
        ):
            raise ConfigError(f"Error: {path}.headers must be a mapping of strings.")
        hooks.append(
            WebhookSettings(
                url=url,
                headers=dict(headers_raw),
                timeout_seconds=ensure_int(item.get("timeout_seconds"), f"{path}.timeout_seconds", 10),
            )
        )
    return tuple(hooks)


def parse_patterns(raw: Any, field_path: str) -> Tuple[MailPattern, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError(f"Error: {field_path} must be a list.")
    patterns: List[MailPattern] = []
    seen_names: Set[str] = set()
    seen_extracts: Set[str] = set()
    for idx, item in enumerate(raw):
        path = f"{field_path}[{idx}]"
        item = ensure_mapping(item, path, PATTERN_KEYS)
        name = ensure_str(item.get("name"), f"{path}.name")
        if name in seen_names:
            raise ConfigError(f'Error: Duplicate pattern name "{name}" in {field_path}.')
        seen_names.add(name)

        kind = ensure_str(item.get("kind"), f"{path}.kind")
        if kind not in VALID_PATTERN_KINDS:
            raise ConfigError(f'Error: {path}.kind must be one of {sorted(VALID_PATTERN_KINDS)}, got "{kind}".')
        target = ensure_str(item.get("target", "body"), f"{path}.target")
        if target not in VALID_TARGETS:
            raise ConfigError(f'Error: {path}.target must be one of {sorted(VALID_TARGETS)}, got "{target}".')
        value = item.get("value")
        if not isinstance(value, str) or not value:
            raise ConfigError(f"Error: {path}.value must be a non-empty string.")
        if kind == PATTERN_REGEX:
            try:
                compile_pattern(value)
            except ExtractionPatternError as exc:
                raise ConfigError(f"Error: {path}.value: {exc}") from exc

        extract = ensure_str(item.get("extract", name), f"{path}.extract")
        if extract in seen_extracts:
            # Last write wins: the lowest-priority pattern that resolves sets the value.
            logger.warning("%s.extract %r is produced by more than one pattern", path, extract)
        seen_extracts.add(extract)

        patterns.append(
            MailPattern(
                name=name,
                kind=kind,
                target=target,
                value=value,
                extraction_name=extract,
                priority=ensure_int(item.get("priority"), f"{path}.priority", 0, minimum=None),
                required=ensure_bool(item.get("required"), f"{path}.required", False),
            )
        )
    return tuple(patterns)


def _parse_subject(value: Any, field_path: str) -> str:
    subject = ensure_str(value, field_path)
    try:
        subject_regex(subject)
    except re.error as exc:
        raise ConfigError(f'Error: {field_path} has an invalid regular expression "{subject}": {exc}') from exc
    return subject


def parse_jobs(
    raw: Any,
    default_timezone: ZoneInfo,
    default_tolerance: int,
    unschedulable: Dict[str, str],
) -> Tuple[MonitoredJob, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError("Error: jobs must be a non-empty list.")

    seen_names: Set[str] = set()
    jobs: List[MonitoredJob] = []
    for idx, job_raw in enumerate(raw):
        path = f"jobs[{idx}]"
        if not isinstance(job_raw, dict):
            raise ConfigError(f"Error: {path} must be a mapping.")
        job_raw = ensure_mapping(job_raw, path, JOB_KEYS)

        name = ensure_str(job_raw.get("name"), f"{path}.name")
        if name in seen_names:
            raise ConfigError(f'Error: Duplicate job name "{name}".')
        seen_names.add(name)

        schedule = ensure_str(job_raw.get("schedule"), f"{path}.schedule")
        try:
            validate_cron_expression(schedule)
        except InvalidScheduleError as exc:
            # Kept and flagged: the job stays visible in the store and reports.
            unschedulable[name] = f"{path}.schedule: {exc}"
            logger.error("[%s] Unschedulable: %s", name, exc)

        timezone = default_timezone
        if job_raw.get("timezone") is not None:
            timezone = parse_timezone(job_raw.get("timezone"), f"{path}.timezone")
        lookback = None
        if job_raw.get("lookback") is not None:
            lookback = parse_duration(job_raw.get("lookback"), f"{path}.lookback")
        tolerance = ensure_int(job_raw.get("tolerance_minutes"), f"{path}.tolerance_minutes", default_tolerance, 0)
        description = job_raw.get("description", "") or ""
        if not isinstance(description, str):
            raise ConfigError(f"Error: {path}.description must be a string.")

        jobs.append(
            MonitoredJob(
                id=name,
                name=name,
                description=description,
                schedule=schedule,
                tolerance=timedelta(minutes=tolerance),
                subject_pattern=_parse_subject(job_raw.get("subject"), f"{path}.subject"),
                patterns=parse_patterns(job_raw.get("patterns"), f"{path}.patterns"),
                active=ensure_bool(job_raw.get("enabled"), f"{path}.enabled", True),
                timezone=timezone,
                lookback=lookback,
            )
        )
    return tuple(jobs)


def load_config(config_path: Path, resolve_secrets: bool = True) -> SentinelSettings:
    """Parse and validate the YAML config.

    With ``resolve_secrets=False`` unset password variables are tolerated, for
    commands that never connect to the mailbox or SMTP server.
    """
    payload = _load_config_payload(config_path)
    config_dir = config_path.parent

    unknown_top = set(payload.keys()) - TOP_LEVEL_KEYS
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")
    version = payload.get("version", 1)
    if version != 1:
        raise ConfigError(f"Error: Unsupported config version {version!r}; expected 1.")

    defaults = ensure_mapping(payload.get("defaults"), "defaults", {"timezone", "tolerance_minutes", "lookback"})
    default_timezone = parse_timezone(defaults.get("timezone", "UTC"), "defaults.timezone")
    default_tolerance = ensure_int(
        defaults.get("tolerance_minutes"), "defaults.tolerance_minutes", DEFAULT_TOLERANCE_MINUTES, 0
    )
    default_lookback = parse_duration(defaults.get("lookback", DEFAULT_LOOKBACK), "defaults.lookback")

    sweep = ensure_mapping(payload.get("sweep"), "sweep", {"interval", "on_start"})
    sweep_interval = parse_duration(sweep.get("interval", DEFAULT_SWEEP_INTERVAL), "sweep.interval")
    if sweep_interval.total_seconds() <= 0:
        raise ConfigError("Error: sweep.interval must be positive.")
    alerts = ensure_mapping(payload.get("alerts"), "alerts", {"escalate_after"})

    monitor = MonitorSettings(
        sweep_interval=sweep_interval,
        lookback=default_lookback,
        escalate_after=ensure_int(alerts.get("escalate_after"), "alerts.escalate_after", DEFAULT_ESCALATE_AFTER),
        sweep_on_start=ensure_bool(sweep.get("on_start"), "sweep.on_start", True),
    )

    notify = ensure_mapping(payload.get("notify"), "notify", {"email", "webhooks"})
    log_file = payload.get("log_file")

    unschedulable: Dict[str, str] = {}
    jobs = parse_jobs(payload.get("jobs"), default_timezone, default_tolerance, unschedulable)

    return SentinelSettings(
        config_path=config_path,
        database=_resolve_path(payload.get("database", DEFAULT_DATABASE_FILE), config_dir, "database"),
        log_file=_resolve_path(log_file, config_dir, "log_file") if log_file is not None else None,
        monitor=monitor,
        mailbox=parse_mailbox(payload.get("mailbox"), resolve_secrets=resolve_secrets),
        smtp=parse_smtp(notify.get("email"), resolve_secrets=resolve_secrets),
        webhooks=parse_webhooks(notify.get("webhooks")),
        jobs=jobs,
        unschedulable=unschedulable,
    )
