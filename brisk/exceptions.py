"""Exception hierarchy for brokers, the wire protocol, tasks and beat."""

from __future__ import annotations

from datetime import datetime


class BriskError(Exception):
    """Base class for all brisk errors."""


# =============================================================================
# Broker errors
# =============================================================================


class BrokerError(BriskError):
    """Any broker-level failure."""


class BrokerConnectionError(BrokerError):
    """Raised when the broker transport cannot be established or was lost.

    Transient: callers retry with backoff (see
    :func:`brisk.broker.base.connect_with_retry`).
    """


class NotConnected(BrokerConnectionError):
    """Raised when a broker operation is attempted before connect()."""

    def __init__(self, message: str = "broker not connected") -> None:
        super().__init__(message)


class InvalidBrokerUrl(BrokerError):
    """Raised when a broker URL can't be parsed or has an unknown scheme."""

    def __init__(self, url: str) -> None:
        super().__init__(f"invalid broker URL '{url}'")
        self.url = url


class PublishError(BrokerError):
    """Raised when a message could not be handed to the broker.

    Attributes:
        retryable: True for transport failures (the publish path retries
            these, reconnecting between attempts); False when the broker
            itself refused the message.
    """

    def __init__(self, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.retryable = retryable


# =============================================================================
# Protocol errors
# =============================================================================


class ProtocolError(BriskError):
    """A message does not conform to the wire protocol."""


class UnsupportedContentType(ProtocolError):
    """Raised when encoding or decoding an unknown or unaccepted content type."""

    def __init__(self, content_type: str | None) -> None:
        super().__init__(f"unsupported content type '{content_type}'")
        self.content_type = content_type


class MalformedPayload(ProtocolError):
    """Raised when a message body or its headers can't be decoded."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"malformed payload: {reason}")
        self.reason = reason


# =============================================================================
# Task errors and handler outcome signals
# =============================================================================


class TaskRegistrationError(BriskError):
    """Raised when a task name is registered twice."""

    def __init__(self, name: str) -> None:
        super().__init__(f"there is already a task registered as '{name}'")
        self.name = name


class UnregisteredTask(BriskError):
    """Raised when a delivery names a task the registry doesn't know."""

    def __init__(self, name: str) -> None:
        super().__init__(f"received unregistered task '{name}'")
        self.name = name


class Retry(BriskError):
    """Raised by a handler to request a retry.

    A retry is a new message with the same id and ``retries + 1``. The
    delay comes from the task's retry policy unless ``countdown`` (seconds)
    or ``eta`` overrides it.
    """

    def __init__(
        self,
        reason: str | None = None,
        *,
        countdown: float | None = None,
        eta: datetime | None = None,
    ) -> None:
        if countdown is not None and eta is not None:
            raise ValueError("countdown and eta are mutually exclusive")
        super().__init__(reason or "task retry requested")
        self.reason = reason
        self.countdown = countdown
        self.eta = eta


class TaskFatal(BriskError):
    """Raised by a handler for a failure that must never be retried."""


class TaskTimeLimitExceeded(BriskError):
    """Raised when a handler runs past its hard time limit. Retryable."""

    def __init__(self, time_limit: float) -> None:
        super().__init__(f"task exceeded time limit of {time_limit}s")
        self.time_limit = time_limit


# Names used by the rest of the ecosystem for the two handler signals
HandlerRetryable = Retry
HandlerFatal = TaskFatal


# =============================================================================
# Beat and worker lifecycle
# =============================================================================


class ScheduleEntryInvalid(BriskError):
    """Raised when beat is given an entry it cannot schedule."""

    def __init__(self, entry: str, reason: str) -> None:
        super().__init__(f"invalid schedule entry '{entry}': {reason}")
        self.entry = entry
        self.reason = reason


class ForcedShutdown(BriskError):
    """Raised out of Worker.run() when in-flight work was abandoned."""

    def __init__(self, abandoned: int) -> None:
        super().__init__(f"forced shutdown abandoned {abandoned} in-flight deliveries")
        self.abandoned = abandoned
