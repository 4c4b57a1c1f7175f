"""Application object: owns the task registry, the broker and the routes.

Example usage:
    app = App("reports", broker_url="redis://localhost:6379/0",
              routes={"reports.*": "reports"})

    @app.task(name="reports.build", max_retries=5)
    async def build_report(report_id: int) -> str:
        ...

    task_id = await app.send_task("reports.build", args=[42], countdown=10)
"""

from __future__ import annotations

import os
import socket
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog

from brisk.backends import ResultBackend, TaskOutcome, backend_from_url
from brisk.broker import Broker, broker_from_url
from brisk.config import Settings, get_settings
from brisk.protocol.message import TaskMessage
from brisk.routing import Router
from brisk.task import Task, TaskRegistry

if TYPE_CHECKING:
    from brisk.beat import Beat, ScheduleEntry
    from brisk.worker import Worker

logger = structlog.get_logger()


class App:
    """Producer entry point and factory for workers and beat."""

    def __init__(
        self,
        name: str = "brisk",
        broker: Broker | None = None,
        settings: Settings | None = None,
        registry: TaskRegistry | None = None,
        result_backend: ResultBackend | None = None,
        routes: Mapping[str, str] | None = None,
        broker_url: str | None = None,
    ) -> None:
        self.name = name
        self.settings = settings or get_settings()
        if broker_url is not None:
            self.settings = self.settings.model_copy(update={"broker_url": broker_url})
        self.broker = broker or broker_from_url(self.settings.broker_url, self.settings)
        self.registry = registry or TaskRegistry()
        self.result_backend = result_backend or backend_from_url(
            self.settings.result_backend_url, self.settings.result_expires
        )
        self.router = Router(routes)
        self.beat_schedule: list[ScheduleEntry] = []
        self.origin = f"{os.getpid()}@{socket.gethostname()}"

    def __repr__(self) -> str:
        return f"<App {self.name} broker={self.broker.scheme}>"

    def task(self, name: str | None = None, **options: Any) -> Callable[[Callable[..., Any]], Task]:
        """Register a handler. See :class:`~brisk.task.TaskOptions` for options."""
        return self.registry.task(name=name, **options)

    def route(self, task_name: str, queue: str | None = None) -> str:
        """Resolve the destination queue for a task."""
        if queue:
            return queue
        routed = self.router.route(task_name)
        if routed:
            return routed
        if task_name in self.registry:
            task_queue = self.registry.get(task_name).options.queue
            if task_queue:
                return task_queue
        return self.settings.default_queue

    async def send_task(
        self,
        name: str,
        args: Sequence[Any] = (),
        kwargs: Mapping[str, Any] | None = None,
        *,
        countdown: float | None = None,
        eta: datetime | None = None,
        expires: float | datetime | None = None,
        queue: str | None = None,
        task_id: str | None = None,
        content_type: str | None = None,
        time_limit: float | None = None,
        parent_id: str | None = None,
        root_id: str | None = None,
    ) -> str:
        """Publish one task and return its id.

        The task does not need to be registered in this process.

        Args:
            name: Registered task name
            args: Positional arguments
            kwargs: Keyword arguments
            countdown: Seconds from now before the task may run
            eta: Absolute time before which the task may not run
            expires: Seconds from now, or an absolute time, after which the
                task is discarded unexecuted
            queue: Destination queue, bypassing routing
            task_id: Explicit id (a UUID4 is generated otherwise)

        Raises:
            ValueError: countdown and eta both given, or eta >= expires
            PublishError: the broker rejected the message or stayed
                unreachable
            ProtocolError: the arguments cannot be serialized
        """
        if countdown is not None and eta is not None:
            raise ValueError("countdown and eta are mutually exclusive")

        task = self.registry.get(name) if name in self.registry else None
        now = datetime.now(UTC)
        if countdown is not None:
            eta = now + timedelta(seconds=countdown)
        if expires is None and task is not None and task.options.expires is not None:
            expires = task.options.expires
        if isinstance(expires, (int, float)):
            expires = now + timedelta(seconds=expires)
        if content_type is None and task is not None:
            content_type = task.options.content_type
        if time_limit is None and task is not None:
            time_limit = task.options.time_limit

        task_id = task_id or str(uuid4())
        destination = self.route(name, queue)
        message = TaskMessage(
            task_name=name,
            id=task_id,
            args=list(args),
            kwargs=dict(kwargs or {}),
            content_type=content_type or self.settings.task_content_type,
            eta=eta,
            expires=expires,
            queue=destination,
            time_limit=time_limit,
            root_id=root_id or task_id,
            parent_id=parent_id,
            origin=self.origin,
        )
        await self.broker.publish(destination, message)
        logger.debug(
            "task_sent",
            task_id=task_id,
            task_name=name,
            queue=destination,
            eta=message.eta.isoformat() if message.eta else None,
        )
        return task_id

    async def get_result(self, task_id: str) -> TaskOutcome | None:
        """Stored outcome of a task, or None (also when no backend is set)."""
        if self.result_backend is None:
            return None
        return await self.result_backend.get_result(task_id)

    def add_periodic_task(
        self,
        schedule: Any,
        task_name: str,
        *,
        name: str | None = None,
        args: Sequence[Any] = (),
        kwargs: Mapping[str, Any] | None = None,
        queue: str | None = None,
        **options: Any,
    ) -> ScheduleEntry:
        """Add a beat schedule entry.

        Args:
            schedule: Seconds, a timedelta, a crontab expression string, or
                a Schedule instance

        Raises:
            ScheduleEntryInvalid: malformed entry
        """
        from brisk.beat import ScheduleEntry

        entry = ScheduleEntry(
            name=name or task_name,
            task_name=task_name,
            schedule=schedule,
            args=list(args),
            kwargs=dict(kwargs or {}),
            queue=queue,
            options=options,
        )
        self.beat_schedule.append(entry)
        return entry

    def worker(self, queues: Iterable[str] | None = None, **overrides: Any) -> Worker:
        """Build a Worker bound to this app. Keyword arguments override settings."""
        from brisk.worker import Worker

        install_signal_handlers = overrides.pop("install_signal_handlers", True)
        return Worker(
            self.broker,
            self.registry,
            queues=queues,
            settings=self._settings_with(overrides),
            result_backend=self.result_backend,
            install_signal_handlers=install_signal_handlers,
        )

    def beat(self, **overrides: Any) -> Beat:
        """Build a Beat bound to this app. Keyword arguments override settings."""
        from brisk.beat import Beat

        install_signal_handlers = overrides.pop("install_signal_handlers", True)
        return Beat(
            self,
            settings=self._settings_with(overrides),
            install_signal_handlers=install_signal_handlers,
        )

    def _settings_with(self, overrides: dict[str, Any]) -> Settings:
        if not overrides:
            return self.settings
        return self.settings.model_copy(update=overrides)

    async def close(self) -> None:
        await self.broker.close()
        if self.result_backend is not None:
            await self.result_backend.close()

    async def __aenter__(self) -> App:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
