"""Unit tests for the Worker consume loop, pool and shutdown."""

import asyncio
import time
from datetime import UTC, datetime, timedelta

import pytest

from brisk.app import App
from brisk.exceptions import BrokerConnectionError, ForcedShutdown, Retry
from brisk.protocol import codec
from brisk.protocol.message import TaskMessage
from brisk.worker import Worker
from tests.broker_helpers import (
    InMemoryBroker,
    RecordingResultBackend,
    fast_settings,
    wait_for_condition,
)


def _app(**overrides) -> tuple[App, InMemoryBroker]:
    settings = fast_settings(**overrides)
    broker = InMemoryBroker(settings)
    app = App("test", broker=broker, settings=settings, result_backend=RecordingResultBackend())
    return app, broker


class BrokenAfterFirstConnect(InMemoryBroker):
    """Broker that cannot be reconnected once its first connection drops."""

    async def connect(self) -> None:
        if self.generation >= 1:
            raise BrokerConnectionError("simulated outage")
        await super().connect()


async def _run_until(worker: Worker, predicate, timeout: float = 5.0) -> None:
    """Run the worker until ``predicate()`` holds, then shut it down."""
    runner = asyncio.create_task(worker.run())
    try:
        await wait_for_condition(lambda: predicate() or runner.done(), timeout=timeout)
    finally:
        worker.stop()
        await runner


@pytest.mark.asyncio
class TestDispatch:
    """Tests for end-to-end dispatch through the worker."""

    async def test_executes_published_tasks(self):
        app, broker = _app()
        results = []

        @app.task(name="math.add")
        def add(x, y):
            results.append(x + y)

        for i in range(5):
            await app.send_task("math.add", args=[i, i])

        await _run_until(app.worker(install_signal_handlers=False), lambda: len(results) == 5)

        assert sorted(results) == [0, 2, 4, 6, 8]
        assert len(broker.log.acked) == 5
        assert broker.unacked == {}

    async def test_consumes_several_queues(self):
        app, broker = _app()
        seen = []

        @app.task(name="record")
        async def record(tag):
            seen.append(tag)

        await app.send_task("record", args=["a"], queue="alpha")
        await app.send_task("record", args=["b"], queue="beta")

        worker = app.worker(queues=["alpha", "beta"], install_signal_handlers=False)
        await _run_until(worker, lambda: len(seen) == 2)
        assert sorted(seen) == ["a", "b"]

    async def test_retries_then_succeeds(self):
        """k retryable failures then success: k republished retries, one final ack."""
        app, broker = _app(task_max_retries=5)
        attempts = []
        k = 3

        @app.task(name="flaky")
        def flaky():
            attempts.append(time.time())
            if len(attempts) <= k:
                raise Retry("not yet")
            return "done"

        task_id = await app.send_task("flaky")
        await _run_until(
            app.worker(install_signal_handlers=False),
            lambda: broker.log.acked.count(task_id) == k + 1,
        )

        published = [m for m in broker.published_messages() if m.id == task_id]
        retries = published[1:]
        assert len(retries) == k
        assert [m.retries for m in retries] == [1, 2, 3]
        etas = [m.eta for m in retries]
        assert etas == sorted(etas)
        assert len(attempts) == k + 1
        assert broker.log.rejected == []
        assert app.result_backend.states(task_id)[-1].value == "SUCCESS"

    async def test_future_eta_not_dispatched_early(self):
        app, broker = _app()
        executed_at = []

        @app.task(name="later")
        def later():
            executed_at.append(datetime.now(UTC))

        eta = datetime.now(UTC) + timedelta(seconds=0.3)
        await app.send_task("later", eta=eta)

        await _run_until(app.worker(install_signal_handlers=False), lambda: executed_at)
        assert executed_at[0] >= eta

    async def test_expired_never_dispatched(self):
        app, broker = _app()
        calls = []
        app.task(name="stale")(lambda: calls.append(1))

        message = TaskMessage("stale", expires=datetime.now(UTC) - timedelta(seconds=1))
        await broker.publish("celery", message)

        await _run_until(
            app.worker(install_signal_handlers=False), lambda: broker.log.rejected
        )
        assert calls == []
        assert broker.log.rejected == [(message.id, False)]

    async def test_malformed_payload_does_not_stop_worker(self):
        app, broker = _app()
        done = []
        app.task(name="ok")(lambda: done.append(1))

        bad = codec.encode(TaskMessage("ok"))
        bad.body = b"\x00garbage"
        await broker.publish("celery", bad)
        await app.send_task("ok")

        await _run_until(app.worker(install_signal_handlers=False), lambda: done)
        assert broker.log.rejected == [(bad.task_id, False)]

    async def test_two_workers_never_share_a_delivery(self):
        app, broker = _app()
        executions: dict[int, int] = {}

        @app.task(name="count")
        async def count(n):
            executions[n] = executions.get(n, 0) + 1
            await asyncio.sleep(0.01)

        for n in range(20):
            await app.send_task("count", args=[n])

        first = app.worker(install_signal_handlers=False)
        second = app.worker(install_signal_handlers=False)
        runners = [asyncio.create_task(first.run()), asyncio.create_task(second.run())]
        await wait_for_condition(lambda: len(broker.log.acked) == 20)
        first.stop()
        second.stop()
        await asyncio.gather(*runners)

        assert executions == {n: 1 for n in range(20)}


@pytest.mark.asyncio
class TestConcurrency:
    """Tests for the concurrency bound and backpressure."""

    async def test_bounded_execution_and_prefetch(self):
        app, broker = _app(worker_concurrency=2, worker_prefetch_buffer=1)
        running = 0
        peak_running = 0
        peak_held = 0

        @app.task(name="work")
        async def work():
            nonlocal running, peak_running, peak_held
            running += 1
            peak_running = max(peak_running, running)
            peak_held = max(peak_held, len(broker.unacked))
            await asyncio.sleep(0.03)
            running -= 1

        for _ in range(10):
            await app.send_task("work")

        await _run_until(
            app.worker(install_signal_handlers=False), lambda: len(broker.log.acked) == 10
        )
        assert peak_running == 2
        assert peak_held <= 3

    async def test_sync_handlers_do_not_block_loop(self):
        app, broker = _app(worker_concurrency=3)

        @app.task(name="blocking")
        def blocking():
            time.sleep(0.2)

        for _ in range(3):
            await app.send_task("blocking")

        started = time.monotonic()
        await _run_until(
            app.worker(install_signal_handlers=False), lambda: len(broker.log.acked) == 3
        )
        assert time.monotonic() - started < 0.55


@pytest.mark.asyncio
class TestShutdown:
    """Tests for graceful and forced shutdown."""

    async def test_in_flight_finishes_before_stop(self):
        app, broker = _app(worker_shutdown_grace=5.0)
        started = asyncio.Event()
        finished = []

        @app.task(name="slow")
        async def slow():
            started.set()
            await asyncio.sleep(0.2)
            finished.append(1)

        task_id = await app.send_task("slow")
        worker = app.worker(install_signal_handlers=False)
        runner = asyncio.create_task(worker.run())
        await asyncio.wait_for(started.wait(), timeout=5)
        worker.stop()
        await runner

        assert finished == [1]
        assert broker.log.acked == [task_id]
        assert not broker.connected
        assert app.result_backend.closed

    async def test_stops_pulling_after_stop(self):
        app, broker = _app(worker_concurrency=1, worker_prefetch_buffer=0)
        started = asyncio.Event()

        @app.task(name="slow")
        async def slow():
            started.set()
            await asyncio.sleep(0.1)

        await app.send_task("slow")
        await app.send_task("slow")
        worker = app.worker(install_signal_handlers=False)
        runner = asyncio.create_task(worker.run())
        await asyncio.wait_for(started.wait(), timeout=5)
        worker.stop()
        await runner

        assert len(broker.log.acked) == 1
        assert broker.pending("celery") == 1

    async def test_grace_deadline_abandons_work(self):
        app, broker = _app(worker_shutdown_grace=0.1)
        started = asyncio.Event()

        @app.task(name="hang")
        async def hang():
            started.set()
            await asyncio.sleep(60)

        task_id = await app.send_task("hang")
        worker = app.worker(install_signal_handlers=False)
        runner = asyncio.create_task(worker.run())
        await asyncio.wait_for(started.wait(), timeout=5)
        worker.stop()

        with pytest.raises(ForcedShutdown) as exc_info:
            await runner
        assert exc_info.value.abandoned == 1
        assert task_id not in broker.log.acked
        # Left in flight for the broker to redeliver
        assert len(broker.unacked) == 1

    async def test_second_stop_forces(self):
        app, broker = _app(worker_shutdown_grace=60.0)
        started = asyncio.Event()

        @app.task(name="hang")
        async def hang():
            started.set()
            await asyncio.sleep(60)

        await app.send_task("hang")
        worker = app.worker(install_signal_handlers=False)
        runner = asyncio.create_task(worker.run())
        await asyncio.wait_for(started.wait(), timeout=5)
        worker.stop()
        await asyncio.sleep(0.05)
        worker.stop()

        with pytest.raises(ForcedShutdown):
            await asyncio.wait_for(runner, timeout=5)


@pytest.mark.asyncio
class TestConnectionLoss:
    """Tests for reconnecting after the broker connection drops."""

    async def test_reconnects_and_resumes(self):
        app, broker = _app()
        done = []
        app.task(name="ok")(lambda: done.append(1))

        await app.send_task("ok")
        broker.fail_consume = 1

        await _run_until(app.worker(install_signal_handlers=False), lambda: done)
        assert broker.generation == 2

    async def test_gives_up_when_broker_stays_down(self):
        settings = fast_settings(broker_connection_max_retries=1)
        broker = BrokenAfterFirstConnect(settings)
        app = App("test", broker=broker, settings=settings)
        broker.fail_consume = 1

        with pytest.raises(BrokerConnectionError):
            await asyncio.wait_for(app.worker(install_signal_handlers=False).run(), timeout=5)
        assert not broker.connected


@pytest.mark.asyncio
async def test_run_applies_worker_capacity_to_broker():
    """Concurrency overrides reach the broker's prefetch limit."""
    app, broker = _app(worker_concurrency=2, worker_prefetch_buffer=1)
    worker = app.worker(worker_concurrency=8, install_signal_handlers=False)

    await _run_until(worker, lambda: broker.prefetch is not None)

    assert broker.prefetch == worker.capacity == 9


class TestWorkerSetup:
    """Tests for Worker construction."""

    def test_defaults_to_default_queue(self):
        app, _ = _app(default_queue="jobs")
        assert app.worker(install_signal_handlers=False).queues == ["jobs"]

    def test_overrides(self):
        app, _ = _app()
        worker = app.worker(queues=["a"], worker_concurrency=7, install_signal_handlers=False)
        assert worker.concurrency == 7
        assert worker.capacity == 7 + worker.settings.worker_prefetch_buffer

    def test_health_check_before_start(self):
        app, _ = _app()
        health = app.worker(install_signal_handlers=False).health_check()
        assert health["status"] == "unhealthy"
        assert health["in_flight"] == 0
