"""Content-type registry and the TaskMessage <-> Envelope mapping.

Messages follow version 2 of the task message protocol so that other
producers and consumers sharing the broker can read them:

    properties: correlation_id, content_type, content_encoding, reply_to
    headers:    lang, task, id, root_id, parent_id, group, shadow, eta,
                expires, retries, timelimit, argsrepr, kwargsrepr, origin
    body:       [args, kwargs, {"callbacks", "errbacks", "chain", "chord"}]

Example usage:
    envelope = encode(TaskMessage("reports.build", args=[42]))
    message = decode(envelope, accept=["application/json"])
"""

from __future__ import annotations

import json
import pickle
import reprlib
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import msgpack
import yaml

from brisk.exceptions import MalformedPayload, ProtocolError, UnsupportedContentType
from brisk.protocol.message import Envelope, TaskMessage

JSON = "application/json"
YAML = "application/x-yaml"
PICKLE = "application/x-python-serialize"
MSGPACK = "application/x-msgpack"

PROTOCOL_LANG = "py"
REPR_MAX_LENGTH = 1024

_EMPTY_EMBED = {"callbacks": None, "errbacks": None, "chain": None, "chord": None}

_repr = reprlib.Repr()
_repr.maxstring = REPR_MAX_LENGTH
_repr.maxother = REPR_MAX_LENGTH


@dataclass(frozen=True)
class ContentType:
    """A registered serialization format."""

    name: str
    encoding: str
    dumps: Callable[[Any], bytes]
    loads: Callable[[bytes], Any]


_registry: dict[str, ContentType] = {}


def register_content_type(
    name: str,
    dumps: Callable[[Any], bytes],
    loads: Callable[[bytes], Any],
    encoding: str = "utf-8",
) -> None:
    """Register (or replace) a content type."""
    _registry[name] = ContentType(name=name, encoding=encoding, dumps=dumps, loads=loads)


def supported_content_types() -> list[str]:
    return list(_registry)


def _json_dumps(body: Any) -> bytes:
    return json.dumps(body, separators=(",", ":")).encode("utf-8")


def _json_loads(raw: bytes) -> Any:
    return json.loads(raw.decode("utf-8"))


def _yaml_dumps(body: Any) -> bytes:
    return yaml.safe_dump(body, default_flow_style=True).encode("utf-8")


def _yaml_loads(raw: bytes) -> Any:
    return yaml.safe_load(raw.decode("utf-8"))


def _msgpack_dumps(body: Any) -> bytes:
    return msgpack.packb(body, use_bin_type=True)


def _msgpack_loads(raw: bytes) -> Any:
    return msgpack.unpackb(raw, raw=False)


register_content_type(JSON, _json_dumps, _json_loads)
register_content_type(YAML, _yaml_dumps, _yaml_loads)
register_content_type(MSGPACK, _msgpack_dumps, _msgpack_loads, encoding="binary")
register_content_type(PICKLE, pickle.dumps, pickle.loads, encoding="binary")


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_datetime(headers: dict[str, Any], key: str) -> datetime | None:
    raw = headers.get(key)
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        raise MalformedPayload(f"header '{key}' is not an ISO-8601 time: {raw!r}") from None


def _parse_time_limit(headers: dict[str, Any]) -> float | None:
    """Hard limit from the ``[soft, hard]`` timelimit header."""
    timelimit = headers.get("timelimit")
    if timelimit is None:
        return None
    if not isinstance(timelimit, (list, tuple)) or len(timelimit) != 2:
        raise MalformedPayload(f"timelimit must be [soft, hard], got {timelimit!r}")
    hard = timelimit[1]
    if hard is None:
        return None
    if isinstance(hard, bool) or not isinstance(hard, (int, float)) or hard < 0:
        raise MalformedPayload(f"invalid hard time limit {hard!r}")
    return float(hard)


def _content_type(name: str) -> ContentType:
    try:
        return _registry[name]
    except KeyError:
        raise UnsupportedContentType(name) from None


def encode(message: TaskMessage) -> Envelope:
    """Serialize a task message into its wire envelope.

    Raises:
        UnsupportedContentType: message.content_type is not registered
        ProtocolError: args/kwargs can't be represented in the content type
    """
    codec = _content_type(message.content_type)
    try:
        body = codec.dumps([message.args, message.kwargs, _EMPTY_EMBED])
    except (TypeError, ValueError, OverflowError, yaml.YAMLError, pickle.PicklingError) as e:
        raise ProtocolError(
            f"cannot serialize arguments of '{message.task_name}' as "
            f"{message.content_type}: {e}"
        ) from e

    headers: dict[str, Any] = {
        "lang": PROTOCOL_LANG,
        "task": message.task_name,
        "id": message.id,
        "root_id": message.root_id,
        "parent_id": message.parent_id,
        "group": None,
        "shadow": None,
        "eta": _format_datetime(message.eta),
        "expires": _format_datetime(message.expires),
        "retries": message.retries,
        "timelimit": [None, message.time_limit],
        "argsrepr": _repr.repr(message.args),
        "kwargsrepr": _repr.repr(message.kwargs),
        "origin": message.origin,
    }
    properties: dict[str, Any] = {
        "correlation_id": message.id,
        "reply_to": message.reply_to,
        "delivery_mode": 2,
    }
    return Envelope(
        body=body,
        content_type=codec.name,
        content_encoding=codec.encoding,
        headers=headers,
        properties=properties,
        routing_key=message.queue,
    )


def decode(envelope: Envelope, accept: Iterable[str] | None = None) -> TaskMessage:
    """Rebuild a task message from its wire envelope.

    Args:
        envelope: Envelope received from a broker
        accept: Content types the caller is willing to decode. None accepts
            every registered type.

    Raises:
        UnsupportedContentType: content type unknown or not accepted
        MalformedPayload: undecodable body, wrong body shape, or missing
            required headers
    """
    if accept is not None and envelope.content_type not in set(accept):
        raise UnsupportedContentType(envelope.content_type)
    codec = _content_type(envelope.content_type)

    try:
        body = codec.loads(envelope.body)
    except Exception as e:  # any codec failure is a bad payload
        raise MalformedPayload(f"cannot decode {codec.name} body: {e}") from e

    if not isinstance(body, (list, tuple)) or len(body) < 2:
        raise MalformedPayload("body must be [args, kwargs, embed]")
    args, kwargs = body[0], body[1]
    if not isinstance(args, (list, tuple)) or not isinstance(kwargs, dict):
        raise MalformedPayload("args must be a list and kwargs a mapping")

    headers = envelope.headers or {}
    task_name = headers.get("task")
    if not task_name:
        raise MalformedPayload("missing required header 'task'")
    task_id = envelope.task_id
    if not task_id:
        raise MalformedPayload("missing required header 'id'")

    try:
        retries = int(headers.get("retries") or 0)
    except (TypeError, ValueError):
        raise MalformedPayload(f"invalid retries header {headers.get('retries')!r}") from None

    time_limit = _parse_time_limit(headers)

    try:
        return TaskMessage(
            task_name=task_name,
            id=task_id,
            args=list(args),
            kwargs=dict(kwargs),
            content_type=codec.name,
            eta=_parse_datetime(headers, "eta"),
            expires=_parse_datetime(headers, "expires"),
            retries=retries,
            queue=envelope.routing_key,
            time_limit=time_limit,
            root_id=headers.get("root_id"),
            parent_id=headers.get("parent_id"),
            origin=headers.get("origin"),
            reply_to=envelope.properties.get("reply_to"),
        )
    except ValueError as e:
        raise MalformedPayload(str(e)) from e
