"""Glob routing rules mapping task names to queues."""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class Rule:
    pattern: str
    queue: str
    regex: re.Pattern[str]

    def matches(self, task_name: str) -> bool:
        return self.regex.fullmatch(task_name) is not None


class Router:
    """Ordered list of glob rules; the first match wins.

    Example:
        router = Router({"reports.*": "reports", "*.email": "mail"})
        router.route("reports.build")  # "reports"
    """

    def __init__(self, routes: Mapping[str, str] | None = None) -> None:
        self.rules: list[Rule] = []
        for pattern, queue in (routes or {}).items():
            self.add(pattern, queue)

    def add(self, pattern: str, queue: str) -> None:
        """Append a rule.

        Raises:
            ValueError: empty pattern or queue
        """
        if not pattern or not queue:
            raise ValueError(f"invalid routing rule {pattern!r} -> {queue!r}")
        self.rules.append(Rule(pattern, queue, re.compile(fnmatch.translate(pattern))))

    def route(self, task_name: str) -> str | None:
        for rule in self.rules:
            if rule.matches(task_name):
                return rule.queue
        return None
