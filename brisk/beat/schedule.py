"""Recurring schedules for beat entries.

A schedule answers one question: given when an entry last fired, when is
it next due? All times are aware UTC datetimes.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable


@runtime_checkable
class Schedule(Protocol):
    def next_due(self, last_run_at: datetime) -> datetime:
        """First due time strictly after ``last_run_at``."""
        ...


class IntervalSchedule:
    """Fires every ``every`` seconds, anchored on the previous firing."""

    def __init__(self, every: float | timedelta) -> None:
        if isinstance(every, timedelta):
            every = every.total_seconds()
        if every <= 0:
            raise ValueError(f"interval must be positive, got {every}")
        self.every = timedelta(seconds=every)

    def __repr__(self) -> str:
        return f"<IntervalSchedule every={self.every.total_seconds()}s>"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, IntervalSchedule) and other.every == self.every

    def next_due(self, last_run_at: datetime) -> datetime:
        return last_run_at + self.every


_MONTH_NAMES = {
    name: i
    for i, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}
_DAY_NAMES = {
    name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])
}

# (name, low, high, aliases)
_FIELDS = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day_of_month", 1, 31, {}),
    ("month", 1, 12, _MONTH_NAMES),
    ("day_of_week", 0, 7, _DAY_NAMES),
)

# Upper bound on the search for the next match (covers leap days)
_SEARCH_YEARS = 5


def _parse_value(token: str, low: int, high: int, aliases: dict[str, int]) -> int:
    token = token.strip().lower()
    value = aliases[token] if token in aliases else int(token)
    if not low <= value <= high:
        raise ValueError(f"{value} out of range {low}-{high}")
    return value


def _parse_field(expr: str, low: int, high: int, aliases: dict[str, int]) -> frozenset[int]:
    """Parse one crontab field (``*``, ``a``, ``a-b``, ``*/n``, ``a-b/n``, lists)."""
    values: set[int] = set()
    for part in expr.split(","):
        if not part:
            raise ValueError(f"empty list item in '{expr}'")
        base, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step <= 0:
            raise ValueError(f"step must be positive in '{part}'")
        if base == "*":
            start, stop = low, high
        elif "-" in base:
            first, _, last = base.partition("-")
            start = _parse_value(first, low, high, aliases)
            stop = _parse_value(last, low, high, aliases)
            if start > stop:
                raise ValueError(f"descending range '{base}'")
        else:
            start = _parse_value(base, low, high, aliases)
            stop = high if step_text else start
        values.update(range(start, stop + 1, step))
    return frozenset(values)


class CrontabSchedule:
    """Five-field crontab expression evaluated in UTC.

    ``minute hour day-of-month month day-of-week``; day-of-week 0 and 7 are
    Sunday. When both day fields are restricted a day matches if either
    does, as in cron.

    Example:
        CrontabSchedule("*/15 9-17 * * mon-fri")
    """

    def __init__(self, expression: str) -> None:
        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(f"crontab needs 5 fields, got {len(fields)}: '{expression}'")
        self.expression = " ".join(fields)

        parsed = []
        for text, (name, low, high, aliases) in zip(fields, _FIELDS):
            try:
                parsed.append(_parse_field(text, low, high, aliases))
            except ValueError as e:
                raise ValueError(f"invalid {name} field '{text}': {e}") from None
        self.minutes, self.hours, self.days_of_month, self.months, days_of_week = parsed
        self.days_of_week = frozenset(d % 7 for d in days_of_week)
        # A field starting with "*" counts as unrestricted, even with a step
        self._dom_restricted = not fields[2].startswith("*")
        self._dow_restricted = not fields[4].startswith("*")

        # Reject expressions that can never fire (e.g. "0 0 31 2 *")
        self.next_due(datetime(2000, 1, 1, tzinfo=UTC))

    def __repr__(self) -> str:
        return f"<CrontabSchedule '{self.expression}'>"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, CrontabSchedule) and other.expression == self.expression

    def _day_matches(self, moment: datetime) -> bool:
        dom = moment.day in self.days_of_month
        dow = (moment.weekday() + 1) % 7 in self.days_of_week
        if self._dom_restricted and self._dow_restricted:
            return dom or dow
        return dom and dow

    def next_due(self, last_run_at: datetime) -> datetime:
        """First matching minute strictly after ``last_run_at``.

        Raises:
            ValueError: the expression never matches
        """
        moment = last_run_at.astimezone(UTC).replace(second=0, microsecond=0)
        moment += timedelta(minutes=1)
        limit = moment.replace(year=moment.year + _SEARCH_YEARS, month=1, day=1)

        while moment < limit:
            if moment.month not in self.months:
                if moment.month == 12:
                    moment = moment.replace(year=moment.year + 1, month=1, day=1, hour=0, minute=0)
                else:
                    moment = moment.replace(month=moment.month + 1, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(moment):
                moment = (moment + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if moment.hour not in self.hours:
                moment = (moment + timedelta(hours=1)).replace(minute=0)
                continue
            if moment.minute not in self.minutes:
                moment += timedelta(minutes=1)
                continue
            return moment

        raise ValueError(f"crontab '{self.expression}' never matches")


def schedule_from(value: Schedule | float | timedelta | str) -> Schedule:
    """Coerce seconds, a timedelta or a crontab string into a Schedule.

    Raises:
        ValueError: the value cannot be turned into a schedule
    """
    if isinstance(value, str):
        return CrontabSchedule(value)
    if isinstance(value, (int, float, timedelta)) and not isinstance(value, bool):
        return IntervalSchedule(value)
    if isinstance(value, Schedule):
        return value
    raise ValueError(f"unsupported schedule {value!r}")
