from __future__ import annotations


class RunnerNotifyError(Exception):
    """Base error for runnernotify."""


class ResolverError(RunnerNotifyError):
    """Storage failure while reserving an idempotency key; the entry may not exist."""


class DuplicateKeyError(RunnerNotifyError):
    """An entry with the same idempotency key is already stored."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"Idempotency key already queued: {idempotency_key}")
        self.idempotency_key = idempotency_key


class InvalidTransitionError(RunnerNotifyError):
    """Attempted to move a notification entry out of a terminal status."""


class TransportError(RunnerNotifyError):
    """Notification endpoint unreachable, timed out, rejected the batch or replied with garbage."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedEventError(RunnerNotifyError):
    """Webhook envelope could not be decoded into a lifecycle event."""


class ManualTriggerForbiddenError(RunnerNotifyError):
    """Manual producer/dispatch triggers are disabled in production."""
