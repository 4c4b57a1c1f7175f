"""Worker: consumes queues and runs handlers on a bounded pool.

At most ``worker_concurrency`` handlers execute at once, and at most
``worker_concurrency + worker_prefetch_buffer`` deliveries are held
(executing or waiting for a slot). Consumers stop pulling from the broker
while that bound is reached.

Shutdown is two-stage: the first SIGINT/SIGTERM stops consuming and waits
up to ``worker_shutdown_grace`` seconds for in-flight handlers; a second
signal (or the grace deadline) abandons them unacknowledged so the broker
redelivers them.
"""

from __future__ import annotations

import asyncio
import os
import signal
import socket
from collections.abc import Iterable

import structlog
from aiohttp import web

import brisk.logging
import brisk.metrics
from brisk.backends.base import ResultBackend
from brisk.broker.base import Broker, Delivery, connect_with_retry
from brisk.config import Settings, get_settings
from brisk.exceptions import BrokerConnectionError, ForcedShutdown
from brisk.task import TaskRegistry
from brisk.worker.tracer import DeliveryTracer

logger = structlog.get_logger()


class Worker:
    """Consumes one or more queues from a broker and dispatches deliveries.

    Example usage:
        worker = Worker(broker, registry, queues=["celery"])
        await worker.run()
    """

    def __init__(
        self,
        broker: Broker,
        registry: TaskRegistry,
        queues: Iterable[str] | None = None,
        settings: Settings | None = None,
        result_backend: ResultBackend | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.broker = broker
        self.registry = registry
        self.queues = list(queues) if queues else [self.settings.default_queue]
        self.result_backend = result_backend
        self.install_signal_handlers = install_signal_handlers
        self.hostname = f"{os.getpid()}@{socket.gethostname()}"

        self.concurrency = self.settings.worker_concurrency
        self.capacity = self.concurrency + self.settings.worker_prefetch_buffer
        self._held = asyncio.Semaphore(self.capacity)
        self._slots = asyncio.Semaphore(self.concurrency)
        self._tracer = DeliveryTracer(
            broker,
            registry,
            self.settings,
            self._slots,
            result_backend=result_backend,
        )

        self._in_flight: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self._force = asyncio.Event()
        self._fatal_error: BaseException | None = None
        self._metrics_runner: web.AppRunner | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        """Deliveries held by this worker and not yet resolved."""
        return len(self._in_flight)

    async def run(self) -> None:
        """Consume until stopped, then drain.

        Raises:
            BrokerConnectionError: the broker stayed unreachable past
                broker_connection_max_retries
            ForcedShutdown: in-flight handlers were abandoned at shutdown
        """
        brisk.metrics.configure_metrics("worker", enabled=self.settings.metrics_enabled)
        if not self.broker.connected:
            await connect_with_retry(self.broker)
        await self.broker.set_prefetch(self.capacity)

        self._running = True
        if self.install_signal_handlers:
            self._setup_signal_handlers()
        await self._start_metrics_server()

        logger.info(
            "worker_started",
            hostname=self.hostname,
            queues=self.queues,
            concurrency=self.concurrency,
            prefetch=self.capacity,
            tasks=self.registry.names(),
        )

        consumers = [
            asyncio.create_task(self._consume_loop(queue), name=f"brisk-consume-{queue}")
            for queue in self.queues
        ]
        try:
            await self._stopping.wait()
            await asyncio.gather(*consumers, return_exceptions=True)
            await self._drain()
        finally:
            for consumer in consumers:
                consumer.cancel()
            self._running = False
            if self.install_signal_handlers:
                self._remove_signal_handlers()
            await self._stop_metrics_server()
            await self.broker.close()
            if self.result_backend is not None:
                await self.result_backend.close()
            logger.info("worker_stopped", hostname=self.hostname)

        if self._fatal_error is not None:
            raise self._fatal_error

    def stop(self) -> None:
        """Begin graceful shutdown. Calling again forces it."""
        if self._stopping.is_set():
            if not self._force.is_set():
                logger.warning("worker_forced_shutdown_requested", in_flight=self.in_flight)
                self._force.set()
            return
        logger.info("worker_stopping", in_flight=self.in_flight)
        self._stopping.set()

    def _setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        self.stop()

    async def _consume_loop(self, queue: str) -> None:
        """Pull deliveries from one queue while capacity allows."""
        poll_interval = self.settings.worker_poll_interval
        visibility_timeout = self.settings.visibility_timeout

        while not self._stopping.is_set():
            if not await self._acquire_capacity():
                break

            generation = self.broker.generation
            try:
                delivery = await self.broker.consume(
                    queue, visibility_timeout=visibility_timeout, timeout=poll_interval
                )
            except BrokerConnectionError as e:
                self._held.release()
                logger.error("broker_connection_error", queue=queue, error=str(e))
                await self._reconnect(generation)
                continue
            except Exception as e:
                self._held.release()
                logger.exception("consume_loop_error", queue=queue, error=str(e))
                await asyncio.sleep(1)
                continue

            if delivery is None:
                self._held.release()
                continue

            task = asyncio.create_task(self._process(delivery))
            self._in_flight.add(task)
            task.add_done_callback(self._on_done)
            brisk.metrics.set_tasks_in_flight(len(self._in_flight))

        logger.debug("consume_loop_stopped", queue=queue)

    async def _acquire_capacity(self) -> bool:
        """Wait for room to hold another delivery. False once stopping."""
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(
                    self._held.acquire(), timeout=self.settings.worker_poll_interval
                )
            except asyncio.TimeoutError:
                continue
            if self._stopping.is_set():
                self._held.release()
                return False
            return True
        return False

    async def _reconnect(self, generation: int) -> None:
        try:
            await self.broker.reconnect(generation)
        except BrokerConnectionError as e:
            logger.error("broker_unavailable", error=str(e))
            if self._fatal_error is None:
                self._fatal_error = e
            self.stop()

    async def _process(self, delivery: Delivery) -> None:
        try:
            await self._tracer.trace(delivery)
        finally:
            self._held.release()

    def _on_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        brisk.metrics.set_tasks_in_flight(len(self._in_flight))
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("delivery_processing_error", error=str(error), exc_info=error)

    async def _drain(self) -> None:
        """Wait for in-flight deliveries, abandoning them on force or deadline."""
        if not self._in_flight:
            return

        grace = self.settings.worker_shutdown_grace
        logger.info("worker_draining", in_flight=self.in_flight, grace_seconds=grace)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace
        force_waiter = asyncio.create_task(self._force.wait())
        try:
            while self._in_flight and not self._force.is_set():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.wait(
                    {*self._in_flight, force_waiter},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
        finally:
            force_waiter.cancel()

        abandoned = list(self._in_flight)
        if not abandoned:
            return

        # Unacknowledged deliveries are redelivered by the broker
        for task in abandoned:
            task.cancel()
        await asyncio.gather(*abandoned, return_exceptions=True)
        logger.warning("worker_abandoned_in_flight", count=len(abandoned))
        raise ForcedShutdown(len(abandoned))

    async def _start_metrics_server(self) -> None:
        """Start lightweight HTTP server for /metrics and /health."""
        if not brisk.metrics.is_metrics_enabled():
            logger.debug("metrics_disabled_skipping_server")
            return

        try:
            app = web.Application()
            app.router.add_get("/metrics", self._handle_metrics)
            app.router.add_get("/health", self._handle_health)

            self._metrics_runner = web.AppRunner(app)
            await self._metrics_runner.setup()
            site = web.TCPSite(self._metrics_runner, "0.0.0.0", self.settings.metrics_port)
            await site.start()
            logger.info("metrics_server_started", port=self.settings.metrics_port)
        except Exception as e:
            logger.warning("metrics_server_failed", error=str(e))

    async def _stop_metrics_server(self) -> None:
        """Stop the metrics HTTP server."""
        if self._metrics_runner:
            await self._metrics_runner.cleanup()
            self._metrics_runner = None
            logger.debug("metrics_server_stopped")

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        """Handle /metrics endpoint for Prometheus scraping."""
        from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

        return web.Response(
            body=generate_latest(),
            headers={"Content-Type": CONTENT_TYPE_LATEST},
        )

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(self.health_check())

    def health_check(self) -> dict:
        return {
            "status": "healthy" if self._running and self.broker.connected else "unhealthy",
            "hostname": self.hostname,
            "queues": self.queues,
            "in_flight": self.in_flight,
            "concurrency": self.concurrency,
        }
