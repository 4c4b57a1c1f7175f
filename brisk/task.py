"""Task registry: maps task names to executable handlers.

A handler is any callable (plain or ``async def``) taking the message's
args and kwargs. It signals its outcome by returning a value (success),
raising :class:`~brisk.exceptions.Retry` (retryable, optionally with a
delay override), raising :class:`~brisk.exceptions.TaskFatal` (never
retried), or raising anything else (retried when the task allows it).

Example usage:
    registry = TaskRegistry()

    @registry.task(name="reports.build", max_retries=5, time_limit=60)
    async def build_report(report_id: int) -> str:
        ...
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from brisk.exceptions import TaskRegistrationError, UnregisteredTask
from brisk.retry import RetryPolicy


@dataclass(frozen=True)
class TaskOptions:
    """Per-task execution options. None means "use the worker default".

    Attributes:
        max_retries: Overrides retry_policy.max_retries
        retry_policy: Backoff curve for this task
        time_limit: Hard time limit in seconds
        retry_for_unexpected: Retry exceptions that are neither Retry nor
            TaskFatal
        autoretry_for: Exception classes always treated as retryable
        acks_late: Ack after execution (True) or on dispatch (False)
        queue: Queue used when no route matches
        content_type: Serialization used when sending this task
        expires: Default expiry, in seconds after publishing
    """

    max_retries: int | None = None
    retry_policy: RetryPolicy | None = None
    time_limit: float | None = None
    retry_for_unexpected: bool = True
    autoretry_for: tuple[type[BaseException], ...] = ()
    acks_late: bool | None = None
    queue: str | None = None
    content_type: str | None = None
    expires: float | None = None


class Task:
    """A registered handler and its options."""

    def __init__(
        self,
        name: str,
        func: Callable[..., Any],
        options: TaskOptions | None = None,
    ) -> None:
        self.name = name
        self.func = func
        self.options = options or TaskOptions()
        self.is_async = inspect.iscoroutinefunction(func)

    def __repr__(self) -> str:
        return f"<Task {self.name}>"

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        """Call the handler directly, bypassing the broker."""
        return self.func(*args, **kwargs)

    async def invoke(self, args: list[Any], kwargs: dict[str, Any]) -> Any:
        """Run the handler. Plain functions run in a worker thread."""
        if self.is_async:
            return await self.func(*args, **kwargs)
        return await asyncio.to_thread(self.func, *args, **kwargs)

    def retry_policy(self, default: RetryPolicy) -> RetryPolicy:
        """Effective retry policy given the worker default."""
        policy = self.options.retry_policy or default
        if self.options.max_retries is not None:
            policy = dataclasses.replace(policy, max_retries=self.options.max_retries)
        return policy

    def is_retryable(self, error: BaseException) -> bool:
        """Whether an unexpected handler exception warrants a retry."""
        if self.options.autoretry_for and isinstance(error, self.options.autoretry_for):
            return True
        return self.options.retry_for_unexpected


class TaskRegistry:
    """Name -> Task mapping consumed by workers."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    def register(
        self,
        func: Callable[..., Any],
        name: str | None = None,
        options: TaskOptions | None = None,
    ) -> Task:
        """Register a handler.

        Raises:
            TaskRegistrationError: the name is already taken
        """
        task_name = name or f"{func.__module__}.{func.__qualname__}"
        if task_name in self._tasks:
            raise TaskRegistrationError(task_name)
        task = Task(task_name, func, options)
        self._tasks[task_name] = task
        return task

    def task(
        self, name: str | None = None, **options: Any
    ) -> Callable[[Callable[..., Any]], Task]:
        """Decorator form of :meth:`register`. Keyword arguments are
        :class:`TaskOptions` fields."""
        task_options = TaskOptions(**options)

        def decorator(func: Callable[..., Any]) -> Task:
            return self.register(func, name=name, options=task_options)

        return decorator

    def get(self, name: str) -> Task:
        """Look up a task.

        Raises:
            UnregisteredTask: no task has that name
        """
        try:
            return self._tasks[name]
        except KeyError:
            raise UnregisteredTask(name) from None

    def names(self) -> list[str]:
        return sorted(self._tasks)

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)
