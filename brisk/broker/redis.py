"""Redis broker with emulated visibility.

Key layout (compatible with the ecosystem's Redis transport):

    {queue}                  list of ready payloads; LPUSH to publish,
                             consumed from the right
    unacked                  hash  delivery_tag -> [payload, exchange, queue]
    unacked_index            zset  delivery_tag -> visibility deadline
    brisk:delayed:{queue}    zset  payload -> eta, for requeued early messages

Each payload is a JSON object carrying the base64 body, headers and
properties of one envelope.

Taking a message and recording it as in-flight happens in one Lua script,
as does returning expired in-flight entries to their queue, so concurrent
workers can never both restore the same delivery.

Example usage:
    broker = RedisBroker("redis://localhost:6379/0")
    await broker.connect()
    await broker.publish("celery", TaskMessage("reports.build", args=[42]))
    delivery = await broker.consume("celery")
    if delivery:
        await broker.ack(delivery.handle)
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import time
from typing import Any
from uuid import uuid4

import redis
import structlog
from redis.asyncio import Redis
from redis.asyncio import from_url as redis_from_url

import brisk.metrics
from brisk.broker.base import Broker, Delivery, DeliveryHandle, eta_timestamp
from brisk.config import Settings
from brisk.exceptions import (
    BrokerConnectionError,
    MalformedPayload,
    NotConnected,
    PublishError,
)
from brisk.protocol.message import Envelope

logger = structlog.get_logger()

UNACKED_KEY = "unacked"
UNACKED_INDEX_KEY = "unacked_index"
DELAYED_KEY_PREFIX = "brisk:delayed:"

# Sleep between empty polls within one consume() call
POLL_STEP_SECONDS = 0.2
# Upper bound on entries restored by one sweep
RESTORE_BATCH_SIZE = 1000

# KEYS: queue, delayed, unacked, unacked_index
# ARGV: now, deadline, delivery_tag
_CONSUME_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, payload in ipairs(due) do
    redis.call('RPUSH', KEYS[1], payload)
end
if #due > 0 then
    redis.call('ZREMRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
end
local payload = redis.call('RPOP', KEYS[1])
if not payload then
    return false
end
redis.call('HSET', KEYS[3], ARGV[3], cjson.encode({payload, '', KEYS[1]}))
redis.call('ZADD', KEYS[4], ARGV[2], ARGV[3])
return payload
"""

# KEYS: unacked, unacked_index
# ARGV: now, limit
_RESTORE_SCRIPT = """
local tags = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1], 'LIMIT', 0, ARGV[2])
local restored = 0
for _, tag in ipairs(tags) do
    local entry = redis.call('HGET', KEYS[1], tag)
    if entry then
        local decoded = cjson.decode(entry)
        redis.call('RPUSH', decoded[3], decoded[1])
        restored = restored + 1
    end
    redis.call('HDEL', KEYS[1], tag)
    redis.call('ZREM', KEYS[2], tag)
end
return restored
"""

# KEYS: unacked, unacked_index, queue, delayed
# ARGV: delivery_tag, now, eta ("" when none)
_REQUEUE_SCRIPT = """
local entry = redis.call('HGET', KEYS[1], ARGV[1])
if not entry then
    return 0
end
redis.call('HDEL', KEYS[1], ARGV[1])
redis.call('ZREM', KEYS[2], ARGV[1])
local payload = cjson.decode(entry)[1]
if ARGV[3] ~= '' and tonumber(ARGV[3]) > tonumber(ARGV[2]) then
    redis.call('ZADD', KEYS[4], ARGV[3], payload)
    return 2
end
redis.call('RPUSH', KEYS[3], payload)
return 1
"""

_TRANSIENT_ERRORS = (redis.ConnectionError, redis.TimeoutError, OSError)


def delayed_key(queue: str) -> str:
    return f"{DELAYED_KEY_PREFIX}{queue}"


def envelope_to_payload(envelope: Envelope, queue: str) -> str:
    """Serialize an envelope into the transport's JSON payload."""
    properties = {
        "correlation_id": envelope.properties.get("correlation_id"),
        "reply_to": envelope.properties.get("reply_to"),
        "delivery_mode": envelope.properties.get("delivery_mode", 2),
        "delivery_info": {"exchange": "", "routing_key": queue},
        "priority": envelope.properties.get("priority", 0),
        "body_encoding": "base64",
        "delivery_tag": str(uuid4()),
    }
    return json.dumps(
        {
            "body": base64.b64encode(envelope.body).decode("ascii"),
            "content-encoding": envelope.content_encoding,
            "content-type": envelope.content_type,
            "headers": envelope.headers,
            "properties": properties,
        }
    )


def payload_to_envelope(payload: str, queue: str) -> Envelope:
    """Parse a transport payload back into an envelope.

    Raises:
        MalformedPayload: not JSON, or the body is not valid base64
    """
    try:
        data = json.loads(payload)
        properties = dict(data.get("properties") or {})
        body = data.get("body", "")
        if properties.get("body_encoding") == "base64":
            body = base64.b64decode(body, validate=True)
        elif isinstance(body, str):
            body = body.encode("utf-8")
        return Envelope(
            body=body,
            content_type=data.get("content-type") or "application/json",
            content_encoding=data.get("content-encoding") or "utf-8",
            headers=dict(data.get("headers") or {}),
            properties=properties,
            routing_key=queue,
        )
    except (ValueError, TypeError, AttributeError, binascii.Error) as e:
        raise MalformedPayload(f"invalid transport payload: {e}") from e


class RedisBroker(Broker):
    """Broker backed by Redis lists with an in-flight hash and index."""

    scheme = "redis"

    def __init__(
        self,
        url: str,
        settings: Settings | None = None,
        client: Redis | None = None,
    ) -> None:
        super().__init__(url, settings)
        self._redis: Redis | None = client
        self._owns_client = client is None
        self._last_restore = 0.0
        if client is not None:
            self._next_generation()

    @property
    def connected(self) -> bool:
        return self._redis is not None

    @property
    def client(self) -> Redis:
        if self._redis is None:
            raise NotConnected()
        return self._redis

    async def connect(self) -> None:
        client = redis_from_url(self.url, encoding="utf-8", decode_responses=True)
        try:
            await client.ping()
        except (*_TRANSIENT_ERRORS, redis.AuthenticationError) as e:
            await client.aclose()
            raise BrokerConnectionError(f"cannot connect to Redis: {e}") from e
        self._redis = client
        self._owns_client = True
        generation = self._next_generation()
        logger.info("broker_connected", scheme=self.scheme, generation=generation)

    async def close(self) -> None:
        if self._redis is not None and self._owns_client:
            try:
                await self._redis.aclose()
            except _TRANSIENT_ERRORS as e:
                logger.debug("redis_close_failed", error=str(e))
        self._redis = None

    async def _publish(self, queue: str, envelope: Envelope) -> None:
        payload = envelope_to_payload(envelope, queue)
        try:
            await self.client.lpush(queue, payload)
        except _TRANSIENT_ERRORS as e:
            raise PublishError(f"Redis transport error: {e}", retryable=True) from e
        except redis.ResponseError as e:
            raise PublishError(f"Redis rejected message: {e}", retryable=False) from e
        logger.debug("message_published", queue=queue, task_id=envelope.task_id)

    async def consume(
        self,
        queue: str,
        visibility_timeout: float | None = None,
        timeout: float | None = None,
    ) -> Delivery | None:
        visibility = (
            visibility_timeout
            if visibility_timeout is not None
            else self.settings.visibility_timeout
        )
        wait = timeout if timeout is not None else self.settings.worker_poll_interval
        deadline = time.monotonic() + wait
        generation = self._generation

        await self._maybe_restore()

        while True:
            tag = str(uuid4())
            now = time.time()
            try:
                payload = await self.client.eval(
                    _CONSUME_SCRIPT,
                    4,
                    queue,
                    delayed_key(queue),
                    UNACKED_KEY,
                    UNACKED_INDEX_KEY,
                    now,
                    now + visibility,
                    tag,
                )
            except _TRANSIENT_ERRORS as e:
                raise BrokerConnectionError(f"Redis consume failed: {e}") from e

            if payload:
                envelope = _safe_envelope(payload, queue)
                return Delivery(
                    envelope=envelope,
                    handle=DeliveryHandle(
                        queue=queue,
                        tag=tag,
                        eta=eta_timestamp(envelope),
                        generation=generation,
                    ),
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(POLL_STEP_SECONDS, remaining))

    async def ack(self, handle: DeliveryHandle) -> None:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hdel(UNACKED_KEY, handle.tag)
                pipe.zrem(UNACKED_INDEX_KEY, handle.tag)
                await pipe.execute()
        except _TRANSIENT_ERRORS as e:
            raise BrokerConnectionError(f"Redis ack failed: {e}") from e
        logger.debug("delivery_acked", queue=handle.queue, tag=handle.tag)

    async def reject(self, handle: DeliveryHandle, requeue: bool) -> None:
        if not requeue:
            await self.ack(handle)
            return
        try:
            result = await self.client.eval(
                _REQUEUE_SCRIPT,
                4,
                UNACKED_KEY,
                UNACKED_INDEX_KEY,
                handle.queue,
                delayed_key(handle.queue),
                handle.tag,
                time.time(),
                "" if handle.eta is None else handle.eta,
            )
        except _TRANSIENT_ERRORS as e:
            raise BrokerConnectionError(f"Redis requeue failed: {e}") from e
        logger.debug(
            "delivery_requeued",
            queue=handle.queue,
            tag=handle.tag,
            deferred=result == 2,
            found=bool(result),
        )

    async def purge(self, queue: str) -> int:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.llen(queue)
                pipe.zcard(delayed_key(queue))
                pipe.delete(queue, delayed_key(queue))
                ready, delayed, _ = await pipe.execute()
        except _TRANSIENT_ERRORS as e:
            raise BrokerConnectionError(f"Redis purge failed: {e}") from e
        count = int(ready) + int(delayed)
        logger.info("queue_purged", queue=queue, count=count)
        return count

    async def sweep(self) -> int:
        try:
            restored = await self.client.eval(
                _RESTORE_SCRIPT,
                2,
                UNACKED_KEY,
                UNACKED_INDEX_KEY,
                time.time(),
                RESTORE_BATCH_SIZE,
            )
        except _TRANSIENT_ERRORS as e:
            raise BrokerConnectionError(f"Redis restore failed: {e}") from e
        restored = int(restored or 0)
        if restored:
            brisk.metrics.inc_broker_restored(restored)
            logger.info("unacked_deliveries_restored", count=restored)
        return restored

    async def _maybe_restore(self) -> None:
        now = time.monotonic()
        if now - self._last_restore < self.settings.restore_interval:
            return
        self._last_restore = now
        await self.sweep()


def _safe_envelope(payload: Any, queue: str) -> Envelope:
    """Parse a payload, turning an unreadable one into an envelope the worker
    will fail to decode (and reject) instead of crashing the consume loop."""
    try:
        return payload_to_envelope(payload, queue)
    except MalformedPayload as e:
        logger.error("transport_payload_invalid", queue=queue, error=str(e))
        return Envelope(
            body=b"",
            content_type="application/octet-stream",
            content_encoding="binary",
            routing_key=queue,
        )
