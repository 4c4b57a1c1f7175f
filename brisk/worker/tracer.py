"""Per-delivery state machine.

Every delivery is resolved to exactly one terminal broker action:

    Received --decode error / unknown task----------------> reject (discard)
    Received --eta in the future--------------------------> reject (requeue, deferred)
    Dispatched --expired----------------------------------> reject (discard)
    Dispatched --handler returned-------------------------> ack
    Dispatched --retryable failure, retries < max---------> publish retry, ack
    Dispatched --fatal failure, or retries exhausted------> reject (discard)

Retries are new messages (same id, retries + 1, fresh eta), so they are not
ordered relative to any other pending work.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import structlog

import brisk.logging
import brisk.metrics
from brisk.backends.base import ResultBackend, TaskOutcome, TaskState
from brisk.broker.base import Broker, Delivery
from brisk.config import Settings
from brisk.exceptions import (
    BrokerError,
    ProtocolError,
    Retry,
    TaskFatal,
    TaskTimeLimitExceeded,
    UnregisteredTask,
)
from brisk.protocol import codec
from brisk.protocol.message import TaskMessage
from brisk.retry import RetryPolicy
from brisk.task import Task, TaskRegistry

logger = structlog.get_logger()


class Outcome(str, Enum):
    """How a delivery was resolved."""

    SUCCEEDED = "succeeded"
    RETRIED = "retried"
    FAILED = "failed"
    EXPIRED = "expired"
    DEFERRED = "deferred"
    REJECTED = "rejected"
    REQUEUED = "requeued"


class _Failure(Exception):
    """Internal: a handler failure classified as retryable or fatal."""

    def __init__(
        self,
        error: BaseException,
        retryable: bool,
        eta: datetime | None = None,
    ) -> None:
        super().__init__(str(error))
        self.error = error
        self.retryable = retryable
        self.eta = eta


class DeliveryTracer:
    """Drives one delivery from receipt to its terminal broker action."""

    def __init__(
        self,
        broker: Broker,
        registry: TaskRegistry,
        settings: Settings,
        slots: asyncio.Semaphore,
        result_backend: ResultBackend | None = None,
        accept: Iterable[str] | None = None,
    ) -> None:
        self.broker = broker
        self.registry = registry
        self.settings = settings
        self.slots = slots
        self.result_backend = result_backend
        self.accept = list(accept if accept is not None else settings.accept_content)
        self.default_policy = RetryPolicy.from_settings(settings)

    async def trace(self, delivery: Delivery) -> Outcome:
        """Resolve a delivery. Never raises except on cancellation."""
        brisk.logging.reset_context(queue=delivery.queue)

        # Received
        try:
            message = codec.decode(delivery.envelope, accept=self.accept)
        except ProtocolError as e:
            logger.error(
                "task_payload_rejected",
                task_id=delivery.envelope.task_id,
                task_name=delivery.envelope.task_name,
                error=str(e),
            )
            await self._reject(delivery, requeue=False)
            brisk.metrics.inc_worker_tasks("unknown", Outcome.REJECTED.value)
            return Outcome.REJECTED

        brisk.logging.reset_context(
            queue=delivery.queue,
            task_id=message.id,
            task_name=message.task_name,
            retries=message.retries,
        )

        try:
            task = self.registry.get(message.task_name)
        except UnregisteredTask as e:
            logger.error("task_unregistered", error=str(e))
            await self._reject(delivery, requeue=False)
            return self._count(message, Outcome.REJECTED)

        if message.is_delayed():
            logger.debug("task_deferred", eta=message.eta.isoformat())
            await self._reject(delivery, requeue=True)
            return self._count(message, Outcome.DEFERRED)

        logger.info("task_received", redelivered=delivery.redelivered)

        acks_late = self._acks_late(task)
        if not acks_late:
            await self._ack(delivery)

        async with self.slots:
            # Dispatched
            if message.is_expired():
                logger.warning("task_expired", expires=message.expires.isoformat())
                if acks_late:
                    await self._reject(delivery, requeue=False)
                await self._store(message, TaskOutcome(TaskState.REVOKED, retries=message.retries))
                return self._count(message, Outcome.EXPIRED)

            if message.eta is not None:
                wait = (datetime.now(UTC) - message.eta).total_seconds()
                brisk.metrics.observe_queue_wait(delivery.queue, max(wait, 0.0))

            try:
                result = await self._execute(task, message)
            except _Failure as failure:
                return await self._on_failure(delivery, task, message, failure, acks_late)

        # Succeeded
        if acks_late:
            await self._ack(delivery)
        logger.info("task_succeeded")
        await self._store(
            message, TaskOutcome(TaskState.SUCCESS, result=result, retries=message.retries)
        )
        return self._count(message, Outcome.SUCCEEDED)

    def _acks_late(self, task: Task) -> bool:
        if task.options.acks_late is not None:
            return task.options.acks_late
        return self.settings.task_acks_late

    def _time_limit(self, task: Task, message: TaskMessage) -> float | None:
        for limit in (message.time_limit, task.options.time_limit, self.settings.task_time_limit):
            if limit:
                return float(limit)
        return None

    async def _execute(self, task: Task, message: TaskMessage) -> Any:
        """Invoke the handler, classifying any failure as a _Failure."""
        time_limit = self._time_limit(task, message)
        started = time.monotonic()
        try:
            if time_limit is None:
                return await task.invoke(message.args, message.kwargs)
            try:
                return await asyncio.wait_for(
                    task.invoke(message.args, message.kwargs), timeout=time_limit
                )
            except asyncio.TimeoutError:
                raise TaskTimeLimitExceeded(time_limit) from None
        except Retry as e:
            raise _Failure(e, retryable=True, eta=self._retry_override(e)) from e
        except TaskFatal as e:
            raise _Failure(e, retryable=False) from e
        except TaskTimeLimitExceeded as e:
            raise _Failure(e, retryable=True) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise _Failure(e, retryable=task.is_retryable(e)) from e
        finally:
            brisk.metrics.observe_task_duration(task.name, time.monotonic() - started)

    @staticmethod
    def _retry_override(request: Retry) -> datetime | None:
        if request.eta is not None:
            return request.eta
        if request.countdown is not None:
            return datetime.now(UTC) + timedelta(seconds=request.countdown)
        return None

    async def _on_failure(
        self,
        delivery: Delivery,
        task: Task,
        message: TaskMessage,
        failure: _Failure,
        acks_late: bool,
    ) -> Outcome:
        policy = task.retry_policy(self.default_policy)
        error = failure.error

        if failure.retryable and policy.can_retry(message.retries):
            eta = failure.eta or policy.next_eta(message.retries)
            retry = message.retry(eta)
            try:
                await self.broker.publish(delivery.queue, retry)
            except BrokerError as e:
                if not acks_late:
                    # Acked on dispatch, nothing left to redeliver
                    logger.error("task_dropped_retry_publish_failed", error=str(e))
                    await self._store(
                        message,
                        TaskOutcome(
                            TaskState.FAILURE,
                            result=f"retry not published: {e}",
                            retries=message.retries,
                        ),
                    )
                    return self._count(message, Outcome.FAILED)
                logger.error("task_retry_publish_failed", error=str(e))
                await self._reject(delivery, requeue=True)
                return self._count(message, Outcome.REQUEUED)

            if acks_late:
                await self._ack(delivery)
            log = logger.warning if isinstance(error, Retry) else logger.error
            log(
                "task_retry_scheduled",
                retries=retry.retries,
                max_retries=policy.max_retries,
                eta=retry.eta.isoformat() if retry.eta else None,
                error=str(error),
                error_type=type(error).__name__,
            )
            await self._store(
                message,
                TaskOutcome(TaskState.RETRY, result=str(error), retries=retry.retries),
            )
            return self._count(message, Outcome.RETRIED)

        # Failed-Fatal
        if acks_late:
            await self._reject(delivery, requeue=False)
        logger.error(
            "task_failed",
            retries_exhausted=failure.retryable,
            error=str(error),
            error_type=type(error).__name__,
            exc_info=error,
        )
        await self._store(
            message,
            TaskOutcome(
                TaskState.FAILURE,
                result=f"{type(error).__name__}: {error}",
                traceback="".join(traceback.format_exception(error)),
                retries=message.retries,
            ),
        )
        return self._count(message, Outcome.FAILED)

    async def _ack(self, delivery: Delivery) -> None:
        try:
            await self.broker.ack(delivery.handle)
        except BrokerError as e:
            # The broker will redeliver after reconnect / visibility timeout
            logger.warning("task_ack_failed", error=str(e))

    async def _reject(self, delivery: Delivery, requeue: bool) -> None:
        try:
            await self.broker.reject(delivery.handle, requeue=requeue)
        except BrokerError as e:
            logger.warning("task_reject_failed", requeue=requeue, error=str(e))

    async def _store(self, message: TaskMessage, outcome: TaskOutcome) -> None:
        if self.result_backend is None:
            return
        try:
            await self.result_backend.store_result(message.id, outcome)
        except Exception as e:  # result storage must not change the delivery outcome
            logger.warning("result_store_failed", state=outcome.state.value, error=str(e))

    @staticmethod
    def _count(message: TaskMessage, outcome: Outcome) -> Outcome:
        brisk.metrics.inc_worker_tasks(message.task_name, outcome.value)
        return outcome
