"""Tests for the medsafe command line."""

from cryptography.fernet import Fernet
from typer.testing import CliRunner

from medsafe.cli import app

runner = CliRunner()


def command_names():
    return {
        command.name or command.callback.__name__.replace("_", "-")
        for command in app.registered_commands
    }


class TestCommands:
    """Tests for the registered command set."""

    def test_expected_commands(self):
        assert command_names() == {
            "init-db",
            "generate-key",
            "process",
            "retry-commit",
            "add-medication",
            "record-dose",
            "adherence",
            "reap",
        }

    def test_no_circuit_state_command(self):
        """Breaker state is per process, so nothing offers to show it."""
        result = runner.invoke(app, ["circuits"])

        assert result.exit_code != 0

    def test_generate_key(self):
        """The printed key is usable as a Fernet key."""
        result = runner.invoke(app, ["generate-key"])

        assert result.exit_code == 0
        Fernet(result.output.strip().encode())
