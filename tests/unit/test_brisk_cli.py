"""Unit tests for the brisk command line."""

import sys
import types

import pytest
import typer
from typer.testing import CliRunner

from brisk import __version__
from brisk.app import App
from brisk.cli import app, load_app
from brisk.protocol import codec
from tests.broker_helpers import InMemoryBroker

runner = CliRunner()


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def app_module(monkeypatch, broker):
    """Register an importable module exposing a brisk App as ``cli_test_app:app``."""
    module = types.ModuleType("cli_test_app")
    module.app = App("cli", broker=broker, settings=broker.settings)
    module.not_an_app = object()
    monkeypatch.setitem(sys.modules, "cli_test_app", module)
    return module


class TestLoadApp:
    """Tests for load_app()."""

    def test_loads(self, app_module):
        assert load_app("cli_test_app:app") is app_module.app

    @pytest.mark.parametrize(
        "path",
        [
            "cli_test_app",
            ":app",
            "cli_test_app:missing",
            "cli_test_app:not_an_app",
            "no_such_module_xyz:app",
        ],
    )
    def test_rejects(self, app_module, path):
        with pytest.raises(typer.BadParameter):
            load_app(path)


class TestCommands:
    """Tests for CLI commands."""

    def test_help(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("worker", "beat", "purge", "send"):
            assert command in result.output

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_bad_app_path(self):
        result = runner.invoke(app, ["send", "nonsense", "users.create"])
        assert result.exit_code != 0

    def test_send(self, app_module, broker):
        result = runner.invoke(
            app,
            [
                "send",
                "cli_test_app:app",
                "users.create",
                "--args",
                "[1, 2]",
                "--kwargs",
                '{"admin": true}',
                "-Q",
                "users",
            ],
        )
        assert result.exit_code == 0, result.output

        [(queue, envelope)] = broker.log.published
        message = codec.decode(envelope)
        assert queue == "users"
        assert message.args == [1, 2]
        assert message.kwargs == {"admin": True}
        assert message.id in result.output

    def test_send_rejects_bad_json(self, app_module, broker):
        result = runner.invoke(app, ["send", "cli_test_app:app", "users.create", "--args", "{"])
        assert result.exit_code != 0
        assert broker.log.published == []

    def test_send_rejects_wrong_json_type(self, app_module, broker):
        result = runner.invoke(
            app, ["send", "cli_test_app:app", "users.create", "--kwargs", "[1]"]
        )
        assert result.exit_code != 0
        assert broker.log.published == []

    def test_send_broker_failure(self, app_module, broker):
        broker.reject_publish = True
        result = runner.invoke(app, ["send", "cli_test_app:app", "users.create"])
        assert result.exit_code == 1

    def test_purge(self, app_module, broker):
        runner.invoke(app, ["send", "cli_test_app:app", "users.create"])
        runner.invoke(app, ["send", "cli_test_app:app", "users.create"])

        result = runner.invoke(app, ["purge", "cli_test_app:app", "celery", "-y"])
        assert result.exit_code == 0, result.output
        assert "Purged 2" in result.output
        assert broker.pending("celery") == 0

    def test_purge_aborts_without_confirmation(self, app_module, broker):
        runner.invoke(app, ["send", "cli_test_app:app", "users.create"])

        result = runner.invoke(app, ["purge", "cli_test_app:app", "celery"], input="n\n")
        assert result.exit_code != 0
        assert broker.pending("celery") == 1
