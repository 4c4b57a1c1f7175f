"""Unit tests for the task message codec."""

import json
from datetime import UTC, datetime, timedelta

import pytest

from brisk.exceptions import MalformedPayload, ProtocolError, UnsupportedContentType
from brisk.protocol import codec
from brisk.protocol.message import Envelope, TaskMessage


def _message(**overrides) -> TaskMessage:
    values = {
        "task_name": "reports.build",
        "args": [42, "weekly", [1, 2]],
        "kwargs": {"notify": True, "owner": {"id": 7}},
        "eta": datetime(2030, 1, 1, 12, 0, tzinfo=UTC),
        "expires": datetime(2030, 1, 2, 12, 0, tzinfo=UTC),
        "retries": 2,
        "queue": "reports",
        "time_limit": 30.0,
        "root_id": "root-1",
        "parent_id": "parent-1",
        "origin": "1234@host",
    }
    values.update(overrides)
    return TaskMessage(**values)


class TestRoundTrip:
    """decode(encode(x)) == x for every declared content type."""

    @pytest.mark.parametrize(
        "content_type", [codec.JSON, codec.YAML, codec.PICKLE, codec.MSGPACK]
    )
    def test_round_trip(self, content_type):
        message = _message(content_type=content_type)
        assert codec.decode(codec.encode(message)) == message

    def test_round_trip_minimal_message(self):
        message = TaskMessage("ping", queue="celery")
        assert codec.decode(codec.encode(message)) == message

    def test_round_trip_unicode_arguments(self):
        message = _message(args=["héllo", "日本"], kwargs={"emoji": "✓"})
        assert codec.decode(codec.encode(message)) == message


class TestEncode:
    """Tests for the protocol v2 envelope layout."""

    def test_headers(self):
        envelope = codec.encode(_message())
        headers = envelope.headers
        assert headers["lang"] == "py"
        assert headers["task"] == "reports.build"
        assert headers["retries"] == 2
        assert headers["eta"] == "2030-01-01T12:00:00+00:00"
        assert headers["expires"] == "2030-01-02T12:00:00+00:00"
        assert headers["timelimit"] == [None, 30.0]
        assert headers["root_id"] == "root-1"
        assert headers["parent_id"] == "parent-1"
        assert headers["argsrepr"] == "[42, 'weekly', [1, 2]]"

    def test_properties_carry_task_id(self):
        message = _message()
        envelope = codec.encode(message)
        assert envelope.properties["correlation_id"] == message.id
        assert envelope.properties["delivery_mode"] == 2
        assert envelope.task_id == message.id

    def test_json_body_layout(self):
        envelope = codec.encode(_message())
        body = json.loads(envelope.body)
        assert body[0] == [42, "weekly", [1, 2]]
        assert body[1] == {"notify": True, "owner": {"id": 7}}
        assert body[2] == {"callbacks": None, "errbacks": None, "chain": None, "chord": None}
        assert envelope.content_encoding == "utf-8"

    def test_pickle_is_binary(self):
        envelope = codec.encode(_message(content_type=codec.PICKLE))
        assert envelope.content_encoding == "binary"

    def test_msgpack_is_binary(self):
        envelope = codec.encode(_message(content_type=codec.MSGPACK))
        assert envelope.content_encoding == "binary"

    def test_unserializable_argument(self):
        with pytest.raises(ProtocolError):
            codec.encode(_message(args=[object()]))

    def test_unknown_content_type(self):
        with pytest.raises(UnsupportedContentType):
            codec.encode(_message(content_type="application/x-protobuf"))


class TestDecode:
    """Tests for decode failures, which must never raise anything else."""

    def test_accept_list_rejects_pickle(self):
        envelope = codec.encode(_message(content_type=codec.PICKLE))
        with pytest.raises(UnsupportedContentType):
            codec.decode(envelope, accept=[codec.JSON])

    def test_unknown_content_type(self):
        envelope = Envelope(body=b"[]", content_type="text/plain", content_encoding="utf-8")
        with pytest.raises(UnsupportedContentType):
            codec.decode(envelope)

    def test_garbage_body(self):
        envelope = codec.encode(_message())
        envelope.body = b"\xff\xfe not json"
        with pytest.raises(MalformedPayload):
            codec.decode(envelope)

    def test_wrong_body_shape(self):
        envelope = codec.encode(_message())
        envelope.body = b'{"args": []}'
        with pytest.raises(MalformedPayload):
            codec.decode(envelope)

    def test_kwargs_not_a_mapping(self):
        envelope = codec.encode(_message())
        envelope.body = b"[[1], [2], {}]"
        with pytest.raises(MalformedPayload):
            codec.decode(envelope)

    def test_missing_task_header(self):
        envelope = codec.encode(_message())
        del envelope.headers["task"]
        with pytest.raises(MalformedPayload, match="task"):
            codec.decode(envelope)

    def test_missing_id(self):
        envelope = codec.encode(_message())
        del envelope.headers["id"]
        envelope.properties.pop("correlation_id")
        with pytest.raises(MalformedPayload, match="id"):
            codec.decode(envelope)

    def test_bad_eta(self):
        envelope = codec.encode(_message())
        envelope.headers["eta"] = "next tuesday"
        with pytest.raises(MalformedPayload):
            codec.decode(envelope)

    @pytest.mark.parametrize(
        "timelimit", [[None, "soon"], [None, -1], [None, True], "30", [30]]
    )
    def test_bad_timelimit(self, timelimit):
        envelope = codec.encode(_message())
        envelope.headers["timelimit"] = timelimit
        with pytest.raises(MalformedPayload):
            codec.decode(envelope)

    def test_timelimit_hard_value(self):
        envelope = codec.encode(_message(time_limit=None))
        envelope.headers["timelimit"] = [10, 45]
        assert codec.decode(envelope).time_limit == 45.0

    def test_eta_after_expires(self):
        envelope = codec.encode(_message())
        envelope.headers["eta"] = "2031-01-01T00:00:00+00:00"
        with pytest.raises(MalformedPayload):
            codec.decode(envelope)

    def test_id_from_correlation_id(self):
        """Producers that omit the id header still decode."""
        message = _message()
        envelope = codec.encode(message)
        del envelope.headers["id"]
        assert codec.decode(envelope).id == message.id

    def test_decodes_foreign_producer_headers(self):
        """Messages written by other protocol v2 producers are accepted."""
        eta = datetime.now(UTC) + timedelta(minutes=5)
        envelope = Envelope(
            body=json.dumps([[1, 2], {}, {"callbacks": None}]).encode(),
            content_type="application/json",
            content_encoding="utf-8",
            headers={
                "lang": "py",
                "task": "tasks.add",
                "id": "4f1c8d2e-0000-4000-8000-000000000000",
                "eta": eta.isoformat(),
                "expires": None,
                "retries": 0,
                "timelimit": [None, None],
                "group": None,
            },
            properties={"correlation_id": "4f1c8d2e-0000-4000-8000-000000000000"},
            routing_key="celery",
        )
        message = codec.decode(envelope)
        assert message.task_name == "tasks.add"
        assert message.args == [1, 2]
        assert message.eta == eta
        assert message.queue == "celery"


class TestRegistry:
    """Tests for content type registration."""

    def test_builtin_types(self):
        builtin = {codec.JSON, codec.YAML, codec.PICKLE, codec.MSGPACK}
        assert builtin <= set(codec.supported_content_types())

    def test_register_custom_type(self):
        codec.register_content_type(
            "application/x-test",
            lambda body: repr(body).encode(),
            lambda raw: eval(raw.decode()),  # noqa: S307
        )
        message = _message(content_type="application/x-test", eta=None, expires=None)
        assert codec.decode(codec.encode(message)) == message
