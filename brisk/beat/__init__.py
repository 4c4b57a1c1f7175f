"""Periodic task scheduler."""

from brisk.beat.schedule import CrontabSchedule, IntervalSchedule, Schedule, schedule_from
from brisk.beat.scheduler import Beat, InMemoryScheduleStore, ScheduleEntry, ScheduleStore

__all__ = [
    "Beat",
    "CrontabSchedule",
    "InMemoryScheduleStore",
    "IntervalSchedule",
    "Schedule",
    "ScheduleEntry",
    "ScheduleStore",
    "schedule_from",
]
