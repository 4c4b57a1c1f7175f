"""Backoff curves for task retries and broker reconnects."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal

from brisk.config import Settings

BackoffKind = Literal["fixed", "exponential"]


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    kind: BackoffKind = "exponential",
    jitter: bool = False,
) -> float:
    """Delay in seconds before attempt number ``attempt + 1``.

    Exponential backoff is ``base * 2**attempt`` capped at ``cap``. With
    jitter the delay is drawn uniformly from ``[delay / 2, delay]`` so the
    curve never collapses to zero and retries of a failing batch spread out.
    """
    if attempt < 0:
        raise ValueError("attempt must be non-negative")
    if kind == "fixed":
        delay = base
    else:
        # 2**attempt overflows floats for very large attempt counts
        delay = base * (2 ** min(attempt, 63))
    delay = min(delay, cap)
    if jitter and delay > 0:
        delay = random.uniform(delay / 2, delay)
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how quickly a task is retried.

    Attributes:
        max_retries: Retries allowed after the first attempt (0 disables)
        backoff: "fixed" or "exponential"
        min_delay: Base delay in seconds
        max_delay: Cap on any single delay in seconds
        jitter: Randomize each delay within [delay / 2, delay]
    """

    max_retries: int = 3
    backoff: BackoffKind = "exponential"
    min_delay: float = 1.0
    max_delay: float = 3600.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.min_delay < 0 or self.max_delay < self.min_delay:
            raise ValueError("require 0 <= min_delay <= max_delay")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_retries=settings.task_max_retries,
            backoff=settings.task_retry_backoff,
            min_delay=settings.task_retry_min_delay,
            max_delay=settings.task_retry_max_delay,
            jitter=settings.task_retry_jitter,
        )

    def can_retry(self, retries: int) -> bool:
        return retries < self.max_retries

    def delay(self, retries: int) -> float:
        """Seconds to wait before the retry following attempt ``retries``."""
        return backoff_delay(
            retries, self.min_delay, self.max_delay, self.backoff, self.jitter
        )

    def next_eta(self, retries: int, now: datetime | None = None) -> datetime:
        return (now or datetime.now(UTC)) + timedelta(seconds=self.delay(retries))
