"""Beat: publishes due schedule entries on a single timing loop.

Beat only publishes; it never consumes. It sleeps until the earliest due
time across all entries instead of ticking at a fixed rate, and advances
an entry's ``last_run_at`` only after its publish succeeded, so a broker
outage delays firings instead of skipping them.

Run exactly one beat per schedule. Beat has no coordination between
instances: two beats publishing the same schedule fire every entry twice.
"""

from __future__ import annotations

import asyncio
import dataclasses
import signal
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

import brisk.metrics
from brisk.beat.schedule import Schedule, schedule_from
from brisk.broker.base import connect_with_retry
from brisk.config import Settings
from brisk.exceptions import BrokerError, ProtocolError, ScheduleEntryInvalid
from brisk.protocol import codec
from brisk.protocol.message import TaskMessage

if TYPE_CHECKING:
    from brisk.app import App

logger = structlog.get_logger()

# send_task keyword arguments an entry may carry in ``options``
_ENTRY_OPTIONS = frozenset({"expires", "content_type", "time_limit", "countdown"})


@dataclass
class ScheduleEntry:
    """One recurring task.

    Attributes:
        name: Unique entry name
        task_name: Task to publish
        schedule: Seconds, a timedelta, a crontab string or a Schedule
        args: Positional arguments for every firing
        kwargs: Keyword arguments for every firing
        queue: Destination queue (routing applies when None)
        options: Extra send_task options (expires, content_type, time_limit,
            countdown)
        last_run_at: Due time of the last successful publish
        total_run_count: Successful publishes so far
    """

    name: str
    task_name: str
    schedule: Any
    args: list[Any] = field(default_factory=list)
    kwargs: dict[str, Any] = field(default_factory=dict)
    queue: str | None = None
    options: dict[str, Any] = field(default_factory=dict)
    last_run_at: datetime | None = None
    total_run_count: int = 0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check the entry can be published.

        Raises:
            ScheduleEntryInvalid: the entry is malformed
        """
        name = self.name or "<unnamed>"
        if not self.name:
            raise ScheduleEntryInvalid(name, "entry name is required")
        if not self.task_name:
            raise ScheduleEntryInvalid(name, "task_name is required")
        try:
            self.schedule = schedule_from(self.schedule)
        except ValueError as e:
            raise ScheduleEntryInvalid(name, str(e)) from None
        if not isinstance(self.args, (list, tuple)):
            raise ScheduleEntryInvalid(name, "args must be a list")
        if not isinstance(self.kwargs, dict):
            raise ScheduleEntryInvalid(name, "kwargs must be a dict")
        self.args = list(self.args)
        unknown = set(self.options) - _ENTRY_OPTIONS
        if unknown:
            raise ScheduleEntryInvalid(name, f"unknown options {sorted(unknown)}")
        if self.total_run_count < 0:
            raise ScheduleEntryInvalid(name, "total_run_count must be non-negative")

        content_type = self.options.get("content_type") or codec.JSON
        try:
            codec.encode(
                TaskMessage(
                    task_name=self.task_name,
                    args=self.args,
                    kwargs=self.kwargs,
                    content_type=content_type,
                )
            )
        except ProtocolError as e:
            raise ScheduleEntryInvalid(name, f"arguments not serializable: {e}") from None

    def due_at(self, started_at: datetime) -> datetime:
        """Next due time. An entry that never ran is anchored on beat start."""
        return self.schedule.next_due(self.last_run_at or started_at)

    def mark_run(self, due: datetime, now: datetime) -> None:
        """Record a successful publish of the firing due at ``due``.

        Anchoring on the due time keeps intervals drift-free. When beat
        fell so far behind that the following firing is also past, missed
        firings are skipped rather than replayed in a burst.
        """
        self.last_run_at = due
        if self.schedule.next_due(due) <= now:
            self.last_run_at = now
        self.total_run_count += 1


class ScheduleStore(ABC):
    """Where beat loads its entries from and saves progress to."""

    @abstractmethod
    async def load(self) -> list[ScheduleEntry]:
        """Return the entries to schedule."""

    @abstractmethod
    async def save(self, entries: list[ScheduleEntry]) -> None:
        """Persist entry progress (last_run_at, total_run_count)."""


class InMemoryScheduleStore(ScheduleStore):
    """Keeps entries in process memory; progress is lost on restart."""

    def __init__(self, entries: Iterable[ScheduleEntry] = ()) -> None:
        self._entries = [dataclasses.replace(entry) for entry in entries]

    async def load(self) -> list[ScheduleEntry]:
        return [dataclasses.replace(entry) for entry in self._entries]

    async def save(self, entries: list[ScheduleEntry]) -> None:
        self._entries = [dataclasses.replace(entry) for entry in entries]


class Beat:
    """Single-threaded periodic publisher.

    Example usage:
        app.add_periodic_task(30.0, "reports.refresh")
        await app.beat().run()
    """

    def __init__(
        self,
        app: App,
        settings: Settings | None = None,
        store: ScheduleStore | None = None,
        clock: Callable[[], datetime] | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self.app = app
        self.settings = settings or app.settings
        self.store = store or InMemoryScheduleStore(app.beat_schedule)
        self.clock = clock or (lambda: datetime.now(UTC))
        self.install_signal_handlers = install_signal_handlers

        self.entries: dict[str, ScheduleEntry] = {}
        self.started_at = self.clock()
        self._stopping = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def add(self, entry: ScheduleEntry) -> None:
        """Add or replace an entry.

        Raises:
            ScheduleEntryInvalid: the entry is malformed
        """
        entry.validate()
        self.entries[entry.name] = entry

    async def load(self) -> None:
        """Replace the entries with the store's, validating every one."""
        entries = await self.store.load()
        self.entries = {}
        for entry in entries:
            if entry.name in self.entries:
                raise ScheduleEntryInvalid(entry.name, "duplicate entry name")
            self.add(entry)
        logger.info("beat_entries_loaded", entries=sorted(self.entries))

    def next_wake(self, now: datetime) -> float:
        """Seconds to sleep until the earliest due entry, capped."""
        max_sleep = self.settings.beat_max_sleep
        if not self.entries:
            return max_sleep
        earliest = min(entry.due_at(self.started_at) for entry in self.entries.values())
        return min(max(0.0, (earliest - now).total_seconds()), max_sleep)

    async def tick(self) -> float:
        """Publish every due entry once. Returns seconds until the next wake."""
        now = self.clock()
        fired = 0
        failed = 0

        for entry in self.entries.values():
            due = entry.due_at(self.started_at)
            if due > now:
                continue
            try:
                task_id = await self.app.send_task(
                    entry.task_name,
                    args=entry.args,
                    kwargs=entry.kwargs,
                    queue=entry.queue,
                    **entry.options,
                )
            except (BrokerError, ProtocolError, ValueError) as e:
                # last_run_at stays put so the entry fires on the next tick
                failed += 1
                brisk.metrics.inc_beat_publishes(entry.name, "failure")
                logger.error(
                    "beat_entry_publish_failed",
                    entry=entry.name,
                    task_name=entry.task_name,
                    due=due.isoformat(),
                    error=str(e),
                )
                continue

            entry.mark_run(due, self.clock())
            fired += 1
            brisk.metrics.inc_beat_publishes(entry.name, "success")
            logger.info(
                "beat_entry_fired",
                entry=entry.name,
                task_name=entry.task_name,
                task_id=task_id,
                due=due.isoformat(),
                total_run_count=entry.total_run_count,
            )

        if fired:
            await self.store.save(list(self.entries.values()))

        delay = self.next_wake(self.clock())
        if failed:
            delay = max(delay, self.settings.broker_connection_retry_delay)
        return delay

    async def run(self) -> None:
        """Load entries and publish them until stopped."""
        brisk.metrics.configure_metrics("beat", enabled=self.settings.metrics_enabled)
        await self.load()
        if not self.app.broker.connected:
            await connect_with_retry(self.app.broker)

        self._running = True
        self.started_at = self.clock()
        if self.install_signal_handlers:
            self._setup_signal_handlers()
        logger.info(
            "beat_started",
            entries=len(self.entries),
            max_sleep=self.settings.beat_max_sleep,
        )

        try:
            while not self._stopping.is_set():
                delay = await self.tick()
                logger.debug("beat_sleeping", seconds=delay)
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            if self.install_signal_handlers:
                self._remove_signal_handlers()
            await self.store.save(list(self.entries.values()))
            await self.app.broker.close()
            logger.info("beat_stopped")

    def stop(self) -> None:
        """Stop the loop after the current tick."""
        self._stopping.set()

    def _setup_signal_handlers(self) -> None:
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
