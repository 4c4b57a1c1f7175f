"""Broker abstraction shared by the Redis and AMQP backends.

Every backend offers the same capability set and the same caller-visible
delivery guarantee:

- ``connect()`` / ``close()`` own the transport connection.
- ``publish(queue, message)`` durably enqueues a message. Transport
  failures are retried here with exponential backoff; broker rejections
  are raised immediately.
- ``consume(queue)`` waits at most one poll interval and returns the next
  :class:`Delivery` or None. A returned delivery is invisible to every other
  consumer until it is acked, rejected, or its visibility timeout lapses.
- ``ack(handle)`` removes the message. Acking a handle that was already
  resolved or has expired is a no-op.
- ``reject(handle, requeue)`` discards the message or makes it visible
  again. A requeued message whose eta is still in the future is parked on
  the broker until then.
- ``purge(queue)`` discards every ready message and returns the count.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, ClassVar

import structlog

import brisk.metrics
from brisk.config import Settings, get_settings
from brisk.exceptions import BrokerConnectionError, PublishError
from brisk.protocol import codec
from brisk.protocol.message import Envelope, TaskMessage
from brisk.retry import backoff_delay

logger = structlog.get_logger()


@dataclass(eq=False)
class DeliveryHandle:
    """Opaque token needed to ack or reject one received message.

    Owned by the worker for one execution attempt; never serialized.

    Attributes:
        queue: Queue the message was consumed from
        tag: Backend delivery tag
        eta: Epoch seconds of the message's eta header, if any
        generation: Broker connection generation the delivery belongs to
    """

    queue: str
    tag: str
    eta: float | None = None
    generation: int = 0


@dataclass
class Delivery:
    """A message handed to a consumer, together with its handle."""

    envelope: Envelope
    handle: DeliveryHandle
    redelivered: bool = False

    @property
    def queue(self) -> str:
        return self.handle.queue


def eta_timestamp(envelope: Envelope) -> float | None:
    """Epoch seconds of an envelope's eta header, or None if absent/unparsable."""
    raw = envelope.headers.get("eta")
    if not raw:
        return None
    try:
        eta = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    except ValueError:
        return None
    if eta.tzinfo is None:
        eta = eta.replace(tzinfo=UTC)
    return eta.timestamp()


class Broker(ABC):
    """Connection to a message broker.

    One instance is owned by one worker or beat process; it is not shared
    across processes. Subclasses implement the underscore-free abstract
    methods plus ``_publish``.
    """

    scheme: ClassVar[str] = ""

    def __init__(self, url: str, settings: Settings | None = None) -> None:
        self.url = url
        self.settings = settings or get_settings()
        self._generation = 0
        self._reconnect_lock = asyncio.Lock()

    @property
    def generation(self) -> int:
        """Incremented on every successful connect."""
        return self._generation

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Whether the transport is currently usable."""

    @abstractmethod
    async def connect(self) -> None:
        """Establish the transport.

        Raises:
            BrokerConnectionError: network or authentication failure
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the transport. Safe to call when not connected."""

    @abstractmethod
    async def _publish(self, queue: str, envelope: Envelope) -> None:
        """Hand one envelope to the broker, without retrying.

        Raises:
            PublishError: retryable=True for transport failures
        """

    @abstractmethod
    async def consume(
        self,
        queue: str,
        visibility_timeout: float | None = None,
        timeout: float | None = None,
    ) -> Delivery | None:
        """Wait up to ``timeout`` seconds for the next message.

        Args:
            queue: Queue to consume from
            visibility_timeout: Seconds the delivery stays invisible to
                other consumers (defaults to settings.visibility_timeout)
            timeout: Poll bound (defaults to settings.worker_poll_interval)

        Raises:
            BrokerConnectionError: the connection was lost
        """

    @abstractmethod
    async def ack(self, handle: DeliveryHandle) -> None:
        """Permanently remove the delivered message. Idempotent."""

    @abstractmethod
    async def reject(self, handle: DeliveryHandle, requeue: bool) -> None:
        """Discard the message, or make it visible again if ``requeue``."""

    @abstractmethod
    async def purge(self, queue: str) -> int:
        """Discard all ready messages in ``queue`` and return how many."""

    async def set_prefetch(self, count: int) -> None:
        """Cap the unresolved deliveries the broker pushes to this connection.

        Only meaningful for brokers that push messages. Kept across
        reconnects.
        """

    async def sweep(self) -> int:
        """Return expired in-flight deliveries to their queues.

        Only meaningful for brokers that emulate visibility. Returns the
        number of restored deliveries.
        """
        return 0

    async def publish(self, queue: str, message: TaskMessage | Envelope) -> None:
        """Publish a message, retrying transport failures with backoff.

        Raises:
            PublishError: the broker rejected the message (retryable=False)
                or the transport kept failing (retryable=True)
        """
        envelope = codec.encode(message) if isinstance(message, TaskMessage) else message
        envelope.routing_key = queue
        max_retries = self.settings.publish_max_retries
        attempt = 0

        while True:
            try:
                if not self.connected:
                    await self.connect()
                await self._publish(queue, envelope)
                return
            except BrokerConnectionError as e:
                error = PublishError(str(e), retryable=True)
                error.__cause__ = e
            except PublishError as e:
                if not e.retryable:
                    raise
                error = e

            if attempt >= max_retries:
                raise error

            delay = backoff_delay(
                attempt,
                self.settings.broker_connection_retry_delay,
                self.settings.broker_connection_retry_max_delay,
            )
            logger.warning(
                "publish_retrying",
                queue=queue,
                task_id=envelope.task_id,
                attempt=attempt + 1,
                delay_seconds=delay,
                error=str(error),
            )
            await asyncio.sleep(delay)
            attempt += 1

    async def reconnect(self, generation: int | None = None) -> None:
        """Tear down and re-establish the connection.

        Concurrent callers that observed a failure on the same generation
        share one reconnect.

        Args:
            generation: Generation the caller saw fail. If the broker has
                already moved past it, nothing is done.
        """
        async with self._reconnect_lock:
            if generation is not None and generation != self._generation:
                return
            brisk.metrics.inc_broker_reconnects(self.scheme)
            logger.warning("broker_reconnecting", scheme=self.scheme)
            await self.close()
            await connect_with_retry(self)

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    async def __aenter__(self) -> Broker:
        await connect_with_retry(self)
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


async def connect_with_retry(broker: Broker) -> None:
    """Connect, retrying BrokerConnectionError with exponential backoff.

    Uses settings.broker_connection_max_retries (0 retries forever).

    Raises:
        BrokerConnectionError: the last failure once retries are exhausted
    """
    settings = broker.settings
    max_retries = settings.broker_connection_max_retries
    attempt = 0

    while True:
        try:
            await broker.connect()
            if attempt:
                logger.info("broker_connected", scheme=broker.scheme, attempts=attempt + 1)
            return
        except BrokerConnectionError as e:
            if max_retries and attempt >= max_retries:
                logger.error(
                    "broker_connect_gave_up",
                    scheme=broker.scheme,
                    attempts=attempt + 1,
                    error=str(e),
                )
                raise
            delay = backoff_delay(
                attempt,
                settings.broker_connection_retry_delay,
                settings.broker_connection_retry_max_delay,
                jitter=True,
            )
            logger.warning(
                "broker_connect_failed",
                scheme=broker.scheme,
                attempt=attempt + 1,
                retry_in_seconds=round(delay, 2),
                error=str(e),
            )
            await asyncio.sleep(delay)
            attempt += 1
