"""AMQP 0-9-1 broker (RabbitMQ) built on aio-pika.

Visibility is native: a consumed message stays unacknowledged on the
broker until it is acked or rejected, and every unacked message returns to
the ready state when the connection drops. Any delivery in flight during a
reconnect may therefore be delivered again.

Queues are declared durable and messages published persistent through the
default exchange, with the queue name as routing key. The channel's QoS
prefetch count (worker concurrency + prefetch buffer) bounds how many
messages the broker pushes to this connection before they are resolved.
The limit is channel-wide, so it is shared by every consumed queue.

Requeued messages whose eta is still in the future are parked in a delay
queue (``{queue}.delay.{bucket}``) with a per-message TTL; on expiry the
broker dead-letters them back onto ``{queue}``. Buckets are powers of two
seconds so a short delay never waits behind a much longer one.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass

import aio_pika
import structlog
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import (
    AMQPConnectionError,
    AMQPError,
    ChannelInvalidStateError,
    DeliveryError,
    MessageProcessError,
)

from brisk.broker.base import Broker, Delivery, DeliveryHandle, eta_timestamp
from brisk.config import Settings
from brisk.exceptions import BrokerConnectionError, NotConnected, PublishError
from brisk.protocol.message import Envelope

logger = structlog.get_logger()

CONNECT_TIMEOUT_SECONDS = 10.0
MAX_DELAY_BUCKET_EXPONENT = 31  # ~68 years

_TRANSPORT_ERRORS = (
    AMQPConnectionError,
    ChannelInvalidStateError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


@dataclass(eq=False)
class AMQPDeliveryHandle(DeliveryHandle):
    """Handle holding the aio-pika message needed to ack or reject."""

    message: AbstractIncomingMessage | None = None


def delay_bucket(seconds: float) -> int:
    """Smallest power-of-two exponent whose bucket covers ``seconds``."""
    if seconds <= 1:
        return 0
    return min(math.ceil(math.log2(seconds)), MAX_DELAY_BUCKET_EXPONENT)


def delay_queue_name(queue: str, bucket: int) -> str:
    return f"{queue}.delay.{bucket}"


def to_amqp_message(envelope: Envelope, expiration: float | None = None) -> aio_pika.Message:
    return aio_pika.Message(
        body=envelope.body,
        headers=envelope.headers,
        content_type=envelope.content_type,
        content_encoding=envelope.content_encoding,
        correlation_id=envelope.properties.get("correlation_id"),
        reply_to=envelope.properties.get("reply_to"),
        priority=envelope.properties.get("priority"),
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        expiration=expiration,
    )


def from_amqp_message(message: AbstractIncomingMessage, queue: str) -> Envelope:
    return Envelope(
        body=message.body,
        content_type=message.content_type or "application/json",
        content_encoding=message.content_encoding or "utf-8",
        headers=dict(message.headers or {}),
        properties={
            "correlation_id": message.correlation_id,
            "reply_to": message.reply_to,
            "delivery_mode": 2,
            "priority": message.priority,
        },
        routing_key=queue,
    )


class AMQPBroker(Broker):
    """Broker backed by an AMQP 0-9-1 server."""

    scheme = "amqp"

    def __init__(self, url: str, settings: Settings | None = None) -> None:
        super().__init__(url, settings)
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._queues: dict[str, AbstractQueue] = {}
        self._buffers: dict[str, asyncio.Queue[AbstractIncomingMessage]] = {}
        self._consumer_tags: dict[str, str] = {}
        self._prefetch_count: int | None = None

    @property
    def prefetch_count(self) -> int:
        if self._prefetch_count is not None:
            return self._prefetch_count
        return self.settings.worker_concurrency + self.settings.worker_prefetch_buffer

    @property
    def connected(self) -> bool:
        return (
            self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
            and not self._channel.is_closed
        )

    @property
    def channel(self) -> AbstractChannel:
        if self._channel is None:
            raise NotConnected()
        return self._channel

    async def connect(self) -> None:
        try:
            # Not connect_robust: the worker drives reconnects
            connection = await aio_pika.connect(self.url, timeout=CONNECT_TIMEOUT_SECONDS)
            channel = await connection.channel(publisher_confirms=True)
            await channel.set_qos(prefetch_count=self.prefetch_count, global_=True)
        except (*_TRANSPORT_ERRORS, AMQPError) as e:
            raise BrokerConnectionError(f"cannot connect to AMQP broker: {e}") from e
        self._connection = connection
        self._channel = channel
        self._queues.clear()
        self._buffers.clear()
        self._consumer_tags.clear()
        generation = self._next_generation()
        logger.info(
            "broker_connected",
            scheme=self.scheme,
            generation=generation,
            prefetch_count=self.prefetch_count,
        )

    async def close(self) -> None:
        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None
        self._queues.clear()
        self._buffers.clear()
        self._consumer_tags.clear()
        # Unacked and buffered messages go back to the queue with the connection
        for resource in (channel, connection):
            if resource is None or resource.is_closed:
                continue
            try:
                await resource.close()
            except (*_TRANSPORT_ERRORS, AMQPError) as e:
                logger.debug("amqp_close_failed", error=str(e))

    async def set_prefetch(self, count: int) -> None:
        self._prefetch_count = count
        if not self.connected:
            return
        try:
            await self.channel.set_qos(prefetch_count=count, global_=True)
        except (*_TRANSPORT_ERRORS, AMQPError) as e:
            raise BrokerConnectionError(f"AMQP set_qos failed: {e}") from e
        logger.debug("amqp_prefetch_set", prefetch_count=count)

    async def _declare(self, queue: str) -> AbstractQueue:
        declared = self._queues.get(queue)
        if declared is None:
            declared = await self.channel.declare_queue(queue, durable=True)
            self._queues[queue] = declared
        return declared

    async def _publish(self, queue: str, envelope: Envelope) -> None:
        try:
            await self._declare(queue)
            await self.channel.default_exchange.publish(
                to_amqp_message(envelope), routing_key=queue
            )
        except DeliveryError as e:
            raise PublishError(f"broker rejected message: {e}", retryable=False) from e
        except (*_TRANSPORT_ERRORS, NotConnected) as e:
            raise PublishError(f"AMQP transport error: {e}", retryable=True) from e
        logger.debug("message_published", queue=queue, task_id=envelope.task_id)

    async def _ensure_consumer(self, queue: str) -> asyncio.Queue:
        buffer = self._buffers.get(queue)
        if buffer is not None:
            return buffer
        buffer = asyncio.Queue()
        self._buffers[queue] = buffer
        try:
            amqp_queue = await self._declare(queue)
            self._consumer_tags[queue] = await amqp_queue.consume(buffer.put, no_ack=False)
        except BaseException:
            self._buffers.pop(queue, None)
            raise
        logger.debug("amqp_consumer_started", queue=queue)
        return buffer

    async def consume(
        self,
        queue: str,
        visibility_timeout: float | None = None,
        timeout: float | None = None,
    ) -> Delivery | None:
        wait = timeout if timeout is not None else self.settings.worker_poll_interval
        if not self.connected:
            raise BrokerConnectionError("AMQP connection is closed")
        try:
            buffer = await self._ensure_consumer(queue)
        except (*_TRANSPORT_ERRORS, AMQPError) as e:
            raise BrokerConnectionError(f"AMQP consume failed: {e}") from e

        try:
            message = await asyncio.wait_for(buffer.get(), timeout=wait)
        except asyncio.TimeoutError:
            if not self.connected:
                raise BrokerConnectionError("AMQP connection lost while polling") from None
            return None

        envelope = from_amqp_message(message, queue)
        return Delivery(
            envelope=envelope,
            handle=AMQPDeliveryHandle(
                queue=queue,
                tag=str(message.delivery_tag),
                eta=eta_timestamp(envelope),
                generation=self._generation,
                message=message,
            ),
            redelivered=bool(message.redelivered),
        )

    def _is_stale(self, handle: DeliveryHandle) -> bool:
        """Handles from a previous connection can't be resolved any more; the
        broker already returned their messages to the queue."""
        return handle.generation != self._generation or not self.connected

    async def ack(self, handle: DeliveryHandle) -> None:
        message = getattr(handle, "message", None)
        if message is None or self._is_stale(handle):
            logger.debug("ack_skipped_stale_handle", queue=handle.queue, tag=handle.tag)
            return
        try:
            await message.ack()
        except MessageProcessError:
            logger.debug("ack_skipped_already_resolved", queue=handle.queue, tag=handle.tag)
        except (*_TRANSPORT_ERRORS, AMQPError) as e:
            raise BrokerConnectionError(f"AMQP ack failed: {e}") from e

    async def reject(self, handle: DeliveryHandle, requeue: bool) -> None:
        message = getattr(handle, "message", None)
        if message is None or self._is_stale(handle):
            logger.debug("reject_skipped_stale_handle", queue=handle.queue, tag=handle.tag)
            return

        if requeue and handle.eta is not None and handle.eta > time.time():
            await self._defer(handle, message)
            return

        try:
            await message.reject(requeue=requeue)
        except MessageProcessError:
            logger.debug("reject_skipped_already_resolved", queue=handle.queue, tag=handle.tag)
        except (*_TRANSPORT_ERRORS, AMQPError) as e:
            raise BrokerConnectionError(f"AMQP reject failed: {e}") from e

    async def _defer(self, handle: DeliveryHandle, message: AbstractIncomingMessage) -> None:
        """Park an early message in a TTL delay queue, then ack the original."""
        delay = max(handle.eta - time.time(), 0.001)
        bucket = delay_bucket(delay)
        name = delay_queue_name(handle.queue, bucket)
        bucket_seconds = 2**bucket
        try:
            # Redeclared on every park: publishing does not renew x-expires
            self._queues[name] = await self.channel.declare_queue(
                name,
                durable=True,
                arguments={
                    "x-dead-letter-exchange": "",
                    "x-dead-letter-routing-key": handle.queue,
                    # Outlives any message it can hold, then disappears
                    "x-expires": int((2 * bucket_seconds + 60) * 1000),
                },
            )
            await self.channel.default_exchange.publish(
                to_amqp_message(from_amqp_message(message, handle.queue), expiration=delay),
                routing_key=name,
            )
            await message.ack()
        except MessageProcessError:
            logger.debug("defer_skipped_already_resolved", queue=handle.queue, tag=handle.tag)
            return
        except (*_TRANSPORT_ERRORS, AMQPError, NotConnected) as e:
            raise BrokerConnectionError(f"AMQP defer failed: {e}") from e
        logger.debug(
            "delivery_deferred",
            queue=handle.queue,
            delay_queue=name,
            delay_seconds=round(delay, 3),
        )

    async def purge(self, queue: str) -> int:
        """Purge ``queue`` and the delay queues this connection parked messages in.

        Delay queues declared by other connections are left to expire.
        """
        prefix = delay_queue_name(queue, 0)[:-1]
        count = 0
        try:
            targets = [await self._declare(queue)]
            targets += [
                declared
                for name, declared in self._queues.items()
                if name.startswith(prefix) and name[len(prefix) :].isdigit()
            ]
            for amqp_queue in targets:
                result = await amqp_queue.purge()
                count += int(getattr(result, "message_count", 0) or 0)
        except (*_TRANSPORT_ERRORS, AMQPError, NotConnected) as e:
            raise BrokerConnectionError(f"AMQP purge failed: {e}") from e
        logger.info("queue_purged", queue=queue, count=count)
        return count
