"""
Alert delivery: SMTP email, JSON webhooks, and a log-only fallback.

Each channel raises NotifierError on delivery failure; NotifierGroup turns
those into failed outcomes so one broken channel never blocks the others.
"""

from __future__ import annotations

import json
import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Dict, List, Optional, Sequence, Tuple
from urllib import error as urllib_error
from urllib import request as urllib_request

from .errors import NotifierError
from .models import UTC, Alert, MonitoredJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationOutcome:
    channel: str
    target: str
    success: bool
    detail: str = ""


@dataclass(frozen=True)
class SMTPSettings:
    host: str
    port: int
    from_email: str
    recipients: Tuple[str, ...]
    user: Optional[str] = None
    password: Optional[str] = None
    starttls: bool = True
    timeout_seconds: int = 20


@dataclass(frozen=True)
class WebhookSettings:
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    timeout_seconds: int = 10


def alert_subject(alert: Alert, job: MonitoredJob) -> str:
    return f"[{alert.severity.upper()}] cron job alert: {job.name}"


def alert_body(alert: Alert, job: MonitoredJob) -> str:
    lines = [
        f"Job: {job.name} ({job.id})",
        f"Schedule: {job.schedule} ({job.timezone.key})",
        f"Deadline: {alert.deadline.astimezone(UTC).isoformat()}",
        f"Detected: {alert.detected_at.astimezone(UTC).isoformat()}",
        f"Consecutive failures: {alert.consecutive_failures}",
        "",
        alert.message,
    ]
    return "\n".join(lines)


class Notifier:
    channel = "base"

    def target(self) -> str:
        return ""

    def notify(self, alert: Alert, job: MonitoredJob) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Dev mode: write alerts to the log when no channel is configured."""

    channel = "log"

    def notify(self, alert: Alert, job: MonitoredJob) -> None:
        logger.warning("ALERT %s | %s", alert_subject(alert, job), alert.message)


class EmailNotifier(Notifier):
    channel = "email"

    def __init__(self, settings: SMTPSettings) -> None:
        self.settings = settings

    def target(self) -> str:
        return ",".join(self.settings.recipients)

    def notify(self, alert: Alert, job: MonitoredJob) -> None:
        settings = self.settings
        msg = EmailMessage()
        msg["From"] = settings.from_email
        msg["To"] = ", ".join(settings.recipients)
        msg["Subject"] = alert_subject(alert, job)
        msg.set_content(alert_body(alert, job))
        try:
            with smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout_seconds) as smtp:
                smtp.ehlo()
                if settings.starttls:
                    smtp.starttls(context=ssl.create_default_context())
                    smtp.ehlo()
                if settings.user and settings.password:
                    smtp.login(settings.user, settings.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotifierError(f"SMTP {settings.host}:{settings.port}: {exc}") from exc


class WebhookNotifier(Notifier):
    channel = "webhook"

    def __init__(self, settings: WebhookSettings) -> None:
        self.settings = settings

    def target(self) -> str:
        return self.settings.url

    def payload(self, alert: Alert, job: MonitoredJob) -> Dict[str, object]:
        return {
            "event": "alert.opened",
            "alert": alert.to_payload(),
            "job": {
                "id": job.id,
                "name": job.name,
                "schedule": job.schedule,
                "timezone": job.timezone.key,
                "toleranceSeconds": int(job.tolerance.total_seconds()),
            },
        }

    def notify(self, alert: Alert, job: MonitoredJob) -> None:
        body = json.dumps(self.payload(alert, job)).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        headers.update(self.settings.headers)
        req = urllib_request.Request(url=self.settings.url, data=body, method="POST", headers=headers)
        try:
            with urllib_request.urlopen(req, timeout=max(0.1, float(self.settings.timeout_seconds))) as response:
                if not 200 <= response.status < 300:
                    raise NotifierError(f"Webhook {self.settings.url} returned HTTP {response.status}")
        except urllib_error.URLError as exc:
            raise NotifierError(f"Webhook {self.settings.url}: {exc}") from exc
        except OSError as exc:
            raise NotifierError(f"Webhook {self.settings.url}: {exc}") from exc


class NotifierGroup:
    def __init__(self, notifiers: Sequence[Notifier]) -> None:
        self.notifiers: List[Notifier] = list(notifiers) or [LogNotifier()]

    def notify(self, alert: Alert, job: MonitoredJob) -> List[NotificationOutcome]:
        outcomes: List[NotificationOutcome] = []
        for notifier in self.notifiers:
            try:
                notifier.notify(alert, job)
            except NotifierError as exc:
                logger.error("[%s] %s notification failed: %s", job.id, notifier.channel, exc)
                outcomes.append(NotificationOutcome(notifier.channel, notifier.target(), False, str(exc)))
                continue
            logger.info("[%s] Alert sent via %s", job.id, notifier.channel)
            outcomes.append(NotificationOutcome(notifier.channel, notifier.target(), True))
        return outcomes
