"""Redis result backend.

Stores one JSON document per task under ``celery-task-meta-{task_id}``, the
key and field layout other consumers of the ecosystem read:

    {"task_id", "status", "result", "traceback", "children", "date_done"}
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.asyncio import from_url as redis_from_url

from brisk.backends.base import ResultBackend, TaskOutcome, TaskState

logger = structlog.get_logger()

RESULT_KEY_PREFIX = "celery-task-meta-"


def result_key(task_id: str) -> str:
    return f"{RESULT_KEY_PREFIX}{task_id}"


def _jsonable(value: Any) -> Any:
    """Return ``value`` if JSON can represent it, else its repr."""
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)
    return value


class RedisResultBackend(ResultBackend):
    """Result backend writing to Redis with a per-result expiry."""

    def __init__(
        self,
        url: str,
        expires: int | None = 86400,
        client: Redis | None = None,
    ) -> None:
        self.url = url
        self.expires = expires
        self._redis = client

    @property
    def client(self) -> Redis:
        if self._redis is None:
            self._redis = redis_from_url(self.url, encoding="utf-8", decode_responses=True)
        return self._redis

    async def store_result(self, task_id: str, outcome: TaskOutcome) -> None:
        document = {
            "task_id": task_id,
            "status": outcome.state.value,
            "result": _jsonable(outcome.result),
            "traceback": outcome.traceback,
            "children": [],
            "date_done": outcome.date_done.isoformat(),
            "retries": outcome.retries,
        }
        await self.client.set(result_key(task_id), json.dumps(document), ex=self.expires)
        logger.debug("result_stored", task_id=task_id, status=outcome.state.value)

    async def get_result(self, task_id: str) -> TaskOutcome | None:
        raw = await self.client.get(result_key(task_id))
        if raw is None:
            return None
        document = json.loads(raw)
        return TaskOutcome(
            state=TaskState(document["status"]),
            result=document.get("result"),
            traceback=document.get("traceback"),
            retries=int(document.get("retries") or 0),
            date_done=datetime.fromisoformat(document["date_done"]),
        )

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
