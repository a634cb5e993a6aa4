from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple

import pytest

from cronsentinel.errors import NotifierError
from cronsentinel.mailbox import Mailbox, subject_matches
from cronsentinel.models import Alert, CandidateMessage, MonitoredJob
from cronsentinel.notify import Notifier
from cronsentinel.store import Store

UTC = timezone.utc


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class FakeTimer:
    """threading.Timer stand-in that only fires when a test says so."""

    def __init__(self, interval: float, function: Callable[..., Any], args: Any = None, kwargs: Any = None) -> None:
        self.interval = interval
        self.function = function
        self.args = tuple(args or ())
        self.kwargs = dict(kwargs or {})
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.finished = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.finished = True
        self.function(*self.args, **self.kwargs)


class FakeTimerFactory:
    def __init__(self) -> None:
        self.created: List[FakeTimer] = []

    def __call__(self, interval: float, function: Callable[..., Any], args: Any = None, kwargs: Any = None) -> FakeTimer:
        timer = FakeTimer(interval, function, args=args, kwargs=kwargs)
        self.created.append(timer)
        return timer

    def live(self) -> List[FakeTimer]:
        return [timer for timer in self.created if timer.started and not timer.cancelled and not timer.finished]


class StaticMailbox(Mailbox):
    """In-memory mailbox with the same subject and window semantics as IMAP."""

    def __init__(self, messages: Sequence[CandidateMessage] = (), error: Optional[Exception] = None) -> None:
        self.messages = list(messages)
        self.error = error
        self.calls: List[Tuple[str, datetime]] = []
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    def find_messages(self, subject_pattern: str, since: datetime) -> List[CandidateMessage]:
        self.calls.append((subject_pattern, since))
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        found = [
            message
            for message in self.messages
            if message.received_at >= since and subject_matches(subject_pattern, message.subject)
        ]
        return sorted(found, key=lambda message: message.received_at, reverse=True)


class RecordingNotifier(Notifier):
    channel = "recording"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[Tuple[Alert, MonitoredJob]] = []

    def target(self) -> str:
        return "test"

    def notify(self, alert: Alert, job: MonitoredJob) -> None:
        if self.fail:
            raise NotifierError("channel down")
        self.sent.append((alert, job))


def make_message(
    body: str,
    received_at: datetime,
    subject: str = "Backup finished",
    message_id: str = "<m1@example.com>",
    **kwargs: Any,
) -> CandidateMessage:
    return CandidateMessage(message_id=message_id, subject=subject, body=body, received_at=received_at, **kwargs)


@pytest.fixture
def store(tmp_path: Path) -> Store:
    db = Store(tmp_path / "cronsentinel.db")
    db.init_db()
    return db


@pytest.fixture
def timers() -> FakeTimerFactory:
    return FakeTimerFactory()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 15, 11, 10, tzinfo=UTC))
