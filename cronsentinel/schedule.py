"""
Cron expression evaluation and deadline arithmetic.

Expressions are validated field by field before they reach croniter, so a bad
schedule is rejected when a job is loaded or armed rather than when it fires.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from croniter import croniter

from .errors import InvalidScheduleError
from .models import UTC, MonitoredJob

CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")
SPAN_RE = re.compile(r"^([0-9]+)(?:-([0-9]+))?$")

FIELD_NAMES = ("minute", "hour", "day-of-month", "month", "day-of-week")
FIELD_BOUNDS: Tuple[Tuple[int, int], ...] = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 7))

MONTH_ABBREVIATIONS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
DAY_ABBREVIATIONS = {
    "sun": 0,
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
}
NAMED_TOKENS: Dict[int, Dict[str, int]] = {3: MONTH_ABBREVIATIONS, 4: DAY_ABBREVIATIONS}


def _replace_named_tokens(raw: str, mapping: Dict[str, int], field_name: str, expression: str) -> str:
    def repl(match: re.Match[str]) -> str:
        token = match.group(0).lower()
        if token not in mapping:
            raise InvalidScheduleError(
                f'Invalid token "{match.group(0)}" in {field_name} field of "{expression}".'
            )
        return str(mapping[token])

    return re.sub(r"[A-Za-z]+", repl, raw)


def _field_error(detail: str, field_name: str, expression: str) -> InvalidScheduleError:
    return InvalidScheduleError(f'{detail} in the {field_name} field of "{expression}".')


def _check_span(span: str, field_name: str, bounds: Tuple[int, int], expression: str) -> None:
    """Accept ``*``, ``n`` or ``a-b`` within the field's bounds."""
    if span == "*":
        return
    match = SPAN_RE.match(span)
    if not match:
        raise _field_error(f'Unreadable value "{span}"', field_name, expression)
    low = int(match.group(1))
    high = low if match.group(2) is None else int(match.group(2))
    if low > high:
        raise _field_error(f'Descending range "{span}"', field_name, expression)
    lowest, highest = bounds
    if low < lowest or high > highest:
        raise _field_error(f'"{span}" is outside {lowest}-{highest}', field_name, expression)


def _validate_field(raw: str, index: int, expression: str) -> str:
    field_name = FIELD_NAMES[index]
    bounds = FIELD_BOUNDS[index]
    token = raw
    if index in NAMED_TOKENS:
        token = _replace_named_tokens(token, NAMED_TOKENS[index], field_name, expression)
    if not CRON_FIELD_RE.match(token):
        raise InvalidScheduleError(f'Invalid {field_name} field "{raw}" in "{expression}".')

    width = bounds[1] - bounds[0] + 1
    for item in token.split(","):
        if not item:
            raise _field_error("Empty list item", field_name, expression)
        span, has_step, step = item.partition("/")
        if has_step and not (step.isdigit() and 0 < int(step) <= width):
            raise _field_error(f'Step in "{item}" must be 1-{width}', field_name, expression)
        _check_span(span, field_name, bounds, expression)
    return token


def validate_cron_expression(expression: str) -> str:
    """Return the normalized expression or raise InvalidScheduleError."""
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidScheduleError("Cron expression must be a non-empty string.")
    fields = expression.split()
    if len(fields) != 5:
        raise InvalidScheduleError(
            f'Cron expression "{expression}" must have 5 fields (minute hour day-of-month month day-of-week), '
            f"got {len(fields)}."
        )
    normalized = [_validate_field(raw, idx, expression) for idx, raw in enumerate(fields)]
    return " ".join(normalized)


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _localize(value: datetime, tz: ZoneInfo) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def next_run(expression: str, after: datetime, tz: Optional[ZoneInfo] = None) -> datetime:
    """Earliest scheduled instant strictly after ``after``, in UTC."""
    normalized = validate_cron_expression(expression)
    zone = tz or ZoneInfo("UTC")
    local_after = _ensure_aware_utc(after).astimezone(zone)
    nxt = croniter(normalized, local_after).get_next(datetime)
    return _localize(nxt, zone).astimezone(UTC)


def previous_run(expression: str, before: datetime, tz: Optional[ZoneInfo] = None) -> datetime:
    """Latest scheduled instant at or before ``before``, in UTC."""
    normalized = validate_cron_expression(expression)
    zone = tz or ZoneInfo("UTC")
    # Cron instants fall on whole seconds, so starting one second past the
    # truncated reference makes get_prev inclusive of ``before`` itself.
    start = _ensure_aware_utc(before).replace(microsecond=0) + timedelta(seconds=1)
    prev = croniter(normalized, start.astimezone(zone)).get_prev(datetime)
    return _localize(prev, zone).astimezone(UTC)


def next_runs(expression: str, count: int, after: datetime, tz: Optional[ZoneInfo] = None) -> List[datetime]:
    runs: List[datetime] = []
    cursor = after
    while len(runs) < count:
        cursor = next_run(expression, cursor, tz)
        runs.append(cursor)
    return runs


def deadline(job: MonitoredJob, reference: datetime) -> datetime:
    """Instant after which a missing confirmation for the next run is alertable."""
    return next_run(job.schedule, reference, job.timezone) + job.tolerance


def last_deadline(job: MonitoredJob, now: datetime) -> datetime:
    """Most recent deadline that is at or before ``now``."""
    run = previous_run(job.schedule, _ensure_aware_utc(now) - job.tolerance, job.timezone)
    return run + job.tolerance


def schedule_period(job: MonitoredJob, around: datetime) -> timedelta:
    """Gap between the run at or before ``around`` and the one after it."""
    prev = previous_run(job.schedule, around, job.timezone)
    return next_run(job.schedule, prev, job.timezone) - prev


def next_deadline(job: MonitoredJob, now: datetime) -> datetime:
    """Earliest deadline strictly after ``now``.

    Equivalent to ``deadline(job, now - tolerance)``: a run that already
    happened but whose tolerance window is still open keeps its deadline.
    """
    return deadline(job, _ensure_aware_utc(now) - job.tolerance)
