"""Task message types.

A :class:`TaskMessage` is the logical unit of work a producer publishes and
a worker executes. An :class:`Envelope` is its wire form: body bytes plus
AMQP-style properties and headers, identical for every broker backend.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from brisk.config import DEFAULT_CONTENT_TYPE


def _as_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class TaskMessage:
    """One invocation of a registered task.

    Attributes:
        task_name: Name the handler is registered under
        id: Task UUID string, fixed for the lifetime of the logical task
            (retries keep it)
        args: Positional arguments
        kwargs: Keyword arguments
        content_type: Serialization format of the body
        eta: Not to be executed before this time
        expires: Discarded unexecuted after this time
        retries: Prior execution attempts. Only the worker increments it.
        queue: Destination queue (routing key)
        time_limit: Hard time limit for the handler, in seconds
        root_id: Id of the task that started the workflow
        parent_id: Id of the task that published this one
        origin: Producer identifier (hostname/pid)
        reply_to: Reply queue, if the producer wants one
    """

    task_name: str
    id: str = field(default_factory=lambda: str(uuid4()))
    args: list[Any] = field(default_factory=list)
    kwargs: dict[str, Any] = field(default_factory=dict)
    content_type: str = DEFAULT_CONTENT_TYPE
    eta: datetime | None = None
    expires: datetime | None = None
    retries: int = 0
    queue: str | None = None
    time_limit: float | None = None
    root_id: str | None = None
    parent_id: str | None = None
    origin: str | None = None
    reply_to: str | None = None

    def __post_init__(self) -> None:
        if not self.task_name:
            raise ValueError("task_name is required")
        if self.retries < 0:
            raise ValueError("retries must be non-negative")
        object.__setattr__(self, "args", list(self.args))
        object.__setattr__(self, "kwargs", dict(self.kwargs))
        object.__setattr__(self, "eta", _as_utc(self.eta))
        object.__setattr__(self, "expires", _as_utc(self.expires))
        if self.eta is not None and self.expires is not None:
            if self.eta >= self.expires:
                raise ValueError("eta must be earlier than expires")

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the message must be discarded unexecuted."""
        if self.expires is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires

    def is_delayed(self, now: datetime | None = None) -> bool:
        """Whether the message's eta is still in the future."""
        if self.eta is None:
            return False
        return self.eta > (now or datetime.now(UTC))

    def retry(self, eta: datetime) -> TaskMessage:
        """Build the message for the next attempt.

        Same id, ``retries + 1``, a fresh eta. An eta at or past the expiry
        is clamped just before it, so the retry is discarded as expired on
        receipt.
        """
        expires = self.expires
        if expires is not None and _as_utc(eta) >= expires:
            eta = expires - timedelta(microseconds=1)
        return dataclasses.replace(self, retries=self.retries + 1, eta=eta)


@dataclass
class Envelope:
    """Wire form of a task message.

    Attributes:
        body: Serialized ``[args, kwargs, embed]``
        content_type: MIME type of ``body``
        content_encoding: "utf-8" for text codecs, "binary" otherwise
        headers: Protocol v2 task headers (task, id, eta, expires, retries, ...)
        properties: Message properties (correlation_id, reply_to, delivery_mode, ...)
        routing_key: Queue the message was published to / received from
    """

    body: bytes
    content_type: str
    content_encoding: str
    headers: dict[str, Any] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)
    routing_key: str | None = None

    @property
    def task_id(self) -> str | None:
        return self.headers.get("id") or self.properties.get("correlation_id")

    @property
    def task_name(self) -> str | None:
        return self.headers.get("task")
