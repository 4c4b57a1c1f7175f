"""Result backends."""

from urllib.parse import urlsplit

from brisk.backends.base import ResultBackend, TaskOutcome, TaskState


def backend_from_url(url: str | None, expires: int | None = 86400) -> ResultBackend | None:
    """Build a result backend, or None when ``url`` is unset.

    Raises:
        ValueError: unsupported scheme
    """
    if not url:
        return None
    scheme = urlsplit(url).scheme.lower()
    if scheme in ("redis", "rediss"):
        from brisk.backends.redis import RedisResultBackend

        return RedisResultBackend(url, expires=expires)
    raise ValueError(f"unsupported result backend '{url}'")


__all__ = ["ResultBackend", "TaskOutcome", "TaskState", "backend_from_url"]
