"""Unit tests for the beat scheduler loop."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from brisk.app import App
from brisk.beat import Beat, InMemoryScheduleStore, IntervalSchedule, ScheduleEntry
from brisk.exceptions import ScheduleEntryInvalid
from tests.broker_helpers import InMemoryBroker, fast_settings, wait_for_condition

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _app(**overrides) -> tuple[App, InMemoryBroker]:
    settings = fast_settings(**overrides)
    broker = InMemoryBroker(settings)
    return App("test", broker=broker, settings=settings), broker


def _beat(app: App, clock: FakeClock, *entries: ScheduleEntry) -> Beat:
    beat = Beat(app, clock=clock, install_signal_handlers=False)
    for entry in entries:
        beat.add(entry)
    return beat


@pytest.mark.asyncio
class TestTick:
    """Tests for Beat.tick()."""

    async def test_five_second_interval_over_21_seconds(self):
        app, broker = _app()
        clock = FakeClock()
        beat = _beat(app, clock, ScheduleEntry("heartbeat", "health.ping", 5.0))
        end = T0 + timedelta(seconds=21)

        while True:
            delay = await beat.tick()
            if clock.now + timedelta(seconds=delay) > end:
                break
            clock.advance(delay)

        fired = len(broker.log.published)
        assert 4 <= fired <= 5
        assert beat.entries["heartbeat"].total_run_count == fired

    async def test_sleeps_until_earliest_entry(self):
        app, _ = _app()
        clock = FakeClock()
        beat = _beat(
            app,
            clock,
            ScheduleEntry("slow", "a", 60.0),
            ScheduleEntry("fast", "b", 7.0),
        )
        assert await beat.tick() == 7.0

    async def test_sleep_is_capped(self):
        app, _ = _app(beat_max_sleep=10.0)
        beat = _beat(app, FakeClock(), ScheduleEntry("daily", "a", "0 0 * * *"))
        assert await beat.tick() == 10.0

    async def test_publishes_with_entry_options(self):
        app, broker = _app()
        clock = FakeClock()
        beat = _beat(
            app,
            clock,
            ScheduleEntry(
                "report",
                "reports.build",
                1.0,
                args=[1],
                kwargs={"kind": "daily"},
                queue="reports",
                options={"expires": 30},
            ),
        )
        clock.advance(1)
        await beat.tick()

        (message,) = broker.published_messages("reports")
        assert message.task_name == "reports.build"
        assert message.args == [1]
        assert message.kwargs == {"kind": "daily"}
        assert message.expires is not None

    async def test_failed_publish_does_not_advance(self):
        app, broker = _app()
        clock = FakeClock()
        entry = ScheduleEntry("heartbeat", "health.ping", 5.0)
        beat = _beat(app, clock, entry)

        clock.advance(5)
        broker.reject_publish = True
        await beat.tick()
        assert entry.last_run_at is None
        assert entry.total_run_count == 0

        broker.reject_publish = False
        clock.advance(1)
        await beat.tick()
        assert entry.last_run_at == T0 + timedelta(seconds=5)
        assert entry.total_run_count == 1

    async def test_failed_publish_backs_off(self):
        app, broker = _app(broker_connection_retry_delay=2.0, publish_max_retries=0)
        clock = FakeClock()
        beat = _beat(app, clock, ScheduleEntry("heartbeat", "health.ping", 5.0))
        clock.advance(5)
        broker.reject_publish = True
        assert await beat.tick() == 2.0

    async def test_late_firing_stays_anchored(self):
        """Firing late does not shift later due times."""
        app, _ = _app()
        clock = FakeClock()
        entry = ScheduleEntry("heartbeat", "health.ping", 5.0)
        beat = _beat(app, clock, entry)

        clock.advance(5.7)
        delay = await beat.tick()
        assert entry.last_run_at == T0 + timedelta(seconds=5)
        assert delay == pytest.approx(4.3)

    async def test_missed_firings_are_not_replayed(self):
        app, broker = _app()
        clock = FakeClock()
        entry = ScheduleEntry("heartbeat", "health.ping", 5.0)
        beat = _beat(app, clock, entry)

        clock.advance(23)
        await beat.tick()
        assert len(broker.log.published) == 1
        assert entry.last_run_at == T0 + timedelta(seconds=23)

    async def test_saves_store_after_firing(self):
        app, _ = _app()
        clock = FakeClock()
        store = InMemoryScheduleStore([ScheduleEntry("heartbeat", "health.ping", 5.0)])
        beat = Beat(app, store=store, clock=clock, install_signal_handlers=False)
        await beat.load()

        clock.advance(5)
        await beat.tick()

        (saved,) = await store.load()
        assert saved.total_run_count == 1
        assert saved.last_run_at == T0 + timedelta(seconds=5)


class TestScheduleEntry:
    """Tests for entry validation."""

    def test_coerces_schedule(self):
        entry = ScheduleEntry("e", "t", 30)
        assert entry.schedule == IntervalSchedule(30)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"name": "", "task_name": "t", "schedule": 5},
            {"name": "e", "task_name": "", "schedule": 5},
            {"name": "e", "task_name": "t", "schedule": -5},
            {"name": "e", "task_name": "t", "schedule": "not a crontab"},
            {"name": "e", "task_name": "t", "schedule": 5, "args": "oops"},
            {"name": "e", "task_name": "t", "schedule": 5, "kwargs": [1]},
            {"name": "e", "task_name": "t", "schedule": 5, "args": [object()]},
            {"name": "e", "task_name": "t", "schedule": 5, "options": {"priority": 1}},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ScheduleEntryInvalid):
            ScheduleEntry(**kwargs)


@pytest.mark.asyncio
class TestLoadAndRun:
    """Tests for loading entries and the run loop."""

    async def test_duplicate_names_rejected_at_load(self):
        app, _ = _app()
        store = InMemoryScheduleStore(
            [ScheduleEntry("dup", "a", 5), ScheduleEntry("dup", "b", 5)]
        )
        beat = Beat(app, store=store, install_signal_handlers=False)
        with pytest.raises(ScheduleEntryInvalid):
            await beat.load()

    async def test_app_periodic_tasks_are_loaded(self):
        app, _ = _app()
        app.add_periodic_task(10.0, "health.ping", name="heartbeat")
        beat = app.beat(install_signal_handlers=False)
        await beat.load()
        assert list(beat.entries) == ["heartbeat"]

    async def test_run_publishes_until_stopped(self):
        app, broker = _app()
        app.add_periodic_task(0.05, "health.ping")
        beat = app.beat(install_signal_handlers=False)

        runner = asyncio.create_task(beat.run())
        await wait_for_condition(lambda: len(broker.log.published) >= 2)
        beat.stop()
        await asyncio.wait_for(runner, timeout=5)

        assert not beat.running
        assert not broker.connected
