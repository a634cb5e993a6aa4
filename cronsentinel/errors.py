"""Error hierarchy for cronsentinel."""

from __future__ import annotations


class SentinelError(Exception):
    """Base error for cronsentinel."""


class ConfigError(SentinelError):
    """Config validation error."""


class InvalidScheduleError(ConfigError):
    """Cron expression is malformed or out of range."""


class ExtractionPatternError(SentinelError):
    """A single mail pattern could not be applied (bad regex, bad JSON)."""


class MailboxUnavailableError(SentinelError):
    """Mailbox transport failed; the current check cycle is abandoned."""


class PersistenceError(SentinelError):
    """Store operation failed."""


class NotifierError(SentinelError):
    """Alert notification could not be delivered."""
