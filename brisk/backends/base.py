"""Result backend interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class TaskState(str, Enum):
    """Outcome states, named as the rest of the ecosystem names them."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    RETRY = "RETRY"
    REVOKED = "REVOKED"


@dataclass
class TaskOutcome:
    """What a worker records after resolving a delivery.

    Attributes:
        state: Final (or retry) state
        result: Return value on success, error description otherwise
        traceback: Formatted traceback for failures
        retries: Attempts made before this outcome
        date_done: When the outcome was produced
    """

    state: TaskState
    result: Any = None
    traceback: str | None = None
    retries: int = 0
    date_done: datetime = field(default_factory=lambda: datetime.now(UTC))


class ResultBackend(ABC):
    """Optional sink for task outcomes. A worker without one stores nothing."""

    @abstractmethod
    async def store_result(self, task_id: str, outcome: TaskOutcome) -> None:
        """Persist an outcome for ``task_id``."""

    @abstractmethod
    async def get_result(self, task_id: str) -> TaskOutcome | None:
        """Fetch the latest outcome for ``task_id``, if any."""

    async def close(self) -> None:
        """Release connections."""
