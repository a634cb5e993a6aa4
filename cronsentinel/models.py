"""
Data model shared by the scheduler, the extractor and the collaborators.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

UTC = timezone.utc

PATTERN_REGEX = "regex"
PATTERN_KEYWORD = "keyword"
PATTERN_JSON_PATH = "json_path"
VALID_PATTERN_KINDS = {PATTERN_REGEX, PATTERN_KEYWORD, PATTERN_JSON_PATH}

VALID_TARGETS = {"subject", "body", "from", "to", "headers"}

VERDICT_COMPLETE = "complete"
VERDICT_PARTIAL = "partial"
VERDICT_NONE = "none"

EXECUTION_SUCCESS = "success"
EXECUTION_FAILURE = "failure"
EXECUTION_PARTIAL = "partial"

SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

ALERT_OPEN = "open"
ALERT_ACKNOWLEDGED = "acknowledged"
ALERT_RESOLVED = "resolved"
VALID_ALERT_STATUSES = {ALERT_OPEN, ALERT_ACKNOWLEDGED, ALERT_RESOLVED}
UNRESOLVED_ALERT_STATUSES = (ALERT_OPEN, ALERT_ACKNOWLEDGED)


@dataclass(frozen=True)
class MailPattern:
    name: str
    kind: str
    target: str
    value: str
    extraction_name: str
    priority: int = 0
    required: bool = False


@dataclass(frozen=True)
class MonitoredJob:
    id: str
    name: str
    schedule: str
    tolerance: timedelta
    subject_pattern: str
    patterns: Tuple[MailPattern, ...] = ()
    active: bool = True
    timezone: ZoneInfo = field(default_factory=lambda: ZoneInfo("UTC"))
    lookback: Optional[timedelta] = None
    description: str = ""


@dataclass(frozen=True)
class CandidateMessage:
    message_id: str
    subject: str
    body: str
    received_at: datetime
    from_addr: str = ""
    to_addr: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    html: str = ""


@dataclass(frozen=True)
class EvidenceResult:
    fields: Dict[str, Any]
    verdict: str
    message_id: Optional[str] = None
    received_at: Optional[datetime] = None
    errors: Tuple[str, ...] = ()
    duration_seconds: Optional[float] = None

    @property
    def complete(self) -> bool:
        return self.verdict == VERDICT_COMPLETE


@dataclass
class Alert:
    job_id: str
    detected_at: datetime
    severity: str
    message: str
    deadline: datetime
    consecutive_failures: int = 1
    status: str = ALERT_OPEN
    id: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "jobId": self.job_id,
            "detectedAt": self.detected_at.astimezone(UTC).isoformat(),
            "severity": self.severity,
            "message": self.message,
            "deadline": self.deadline.astimezone(UTC).isoformat(),
            "consecutiveFailures": self.consecutive_failures,
            "status": self.status,
        }
        if self.id is not None:
            payload["id"] = self.id
        return payload


@dataclass
class ExecutionRecord:
    job_id: str
    checked_at: datetime
    status: str
    deadline: datetime
    fields: Dict[str, Any] = field(default_factory=dict)
    duration_seconds: Optional[float] = None
    message_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class CheckOutcome:
    """Result of one per-job check, returned to callers and tests."""

    job_id: str
    decision: str  # pass | fail | pending | skipped | error
    deadline: datetime
    evidence: Optional[EvidenceResult] = None
    alert: Optional[Alert] = None
    reason: str = ""


def ordered_patterns(patterns: Iterable[MailPattern]) -> List[MailPattern]:
    """Descending priority; ties keep declaration order."""
    return sorted(patterns, key=lambda pattern: -pattern.priority)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)
