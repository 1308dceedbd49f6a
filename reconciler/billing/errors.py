"""Billing error taxonomy.

Event handlers never raise for expected failures: they return a
:class:`HandlerResult` whose :class:`BillingError` says whether the retry
queue should try again. The admin path raises :class:`AdminActionError`
subclasses because its caller is a person who can resubmit.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_PAYLOAD = "invalid_payload"
    DUPLICATE_EVENT = "duplicate_event"
    STALE_EVENT = "stale_event"
    UNKNOWN_EVENT_TYPE = "unknown_event_type"
    HANDLER_TRANSIENT = "handler_transient"
    BUSINESS_RULE = "business_rule"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    TIMEOUT = "timeout"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    REMOTE_COMMAND_FAILURE = "remote_command_failure"
    EXHAUSTED_RETRIES = "exhausted_retries"


@dataclass(frozen=True)
class BillingError:
    """A failure as data: what went wrong and whether retrying can help."""

    kind: ErrorKind
    message: str
    retryable: bool

    @classmethod
    def transient(cls, message: str) -> "BillingError":
        return cls(ErrorKind.HANDLER_TRANSIENT, message, retryable=True)

    @classmethod
    def business_rule(cls, message: str) -> "BillingError":
        return cls(ErrorKind.BUSINESS_RULE, message, retryable=False)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of processing one remote event."""

    outcome: str | None = None
    error: BillingError | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, outcome: str) -> "HandlerResult":
        return cls(outcome=outcome)

    @classmethod
    def failure(cls, error: BillingError) -> "HandlerResult":
        return cls(error=error)

    @classmethod
    def already_done(cls) -> "HandlerResult":
        return cls(skipped=True)


class AdminActionError(Exception):
    """Base class for admin override failures surfaced to the caller."""

    kind: ErrorKind = ErrorKind.BUSINESS_RULE


class AdminValidationError(AdminActionError):
    """The request itself is invalid (reason too short, unknown plan, ...)."""


class SubscriptionNotFound(AdminActionError):
    kind = ErrorKind.SUBSCRIPTION_NOT_FOUND


class AdminActionRejected(AdminActionError):
    """The action does not apply to the subscription's current state."""


class ConcurrentModification(AdminActionError):
    """The subscription changed since the caller read it; re-read and resubmit."""

    kind = ErrorKind.CONCURRENT_MODIFICATION

    def __init__(self, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"Subscription was modified concurrently (expected version {expected_version}, "
            f"found {actual_version})"
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class RemoteCommandFailure(AdminActionError):
    """The provider rejected or timed out a command; local state was left unchanged."""

    kind = ErrorKind.REMOTE_COMMAND_FAILURE
