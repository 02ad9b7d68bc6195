"""Tests for CLI commands functionality."""

import pytest
from typer.testing import CliRunner

from sonar_migrate import cli
from sonar_migrate.cli import app
from sonar_migrate.state import StateTracker


@pytest.fixture
def cli_runner():
    """Create CLI runner instance."""
    return CliRunner()


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / "output"


@pytest.fixture
def config_file(tmp_path, output_dir):
    """Create temporary config file."""
    path = tmp_path / "migrate.yaml"
    path.write_text(
        "source:\n"
        "  url: https://sonarqube.example.com\n"
        "  token: sq-token\n"
        "organizations:\n"
        "  - key: alpha\n"
        "    token: alpha-token\n"
        "migrate:\n"
        f"  output_dir: {output_dir}\n"
    )
    return path


@pytest.fixture
def webapp_state(output_dir):
    """State file of ``webapp`` with two completed branches."""
    tracker = StateTracker(output_dir / "state" / ".state.webapp.json")
    tracker.initialize()
    tracker.mark_branch_completed("main")
    tracker.mark_branch_completed("legacy")
    tracker.save()
    return tracker


class TestStateCommands:
    """Test the ``state`` sub-commands."""

    def test_show(self, cli_runner, config_file, webapp_state):
        """Test showing completed branches of a project."""
        result = cli_runner.invoke(app, ["state", "show", "webapp", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "legacy, main" in result.output

    def test_show_unknown_project_is_empty(self, cli_runner, config_file):
        result = cli_runner.invoke(app, ["state", "show", "api", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "never" in result.output

    def test_show_corrupt_state_fails(self, cli_runner, config_file, output_dir):
        state_file = output_dir / "state" / ".state.webapp.json"
        state_file.parent.mkdir(parents=True)
        state_file.write_text("{not json")

        result = cli_runner.invoke(
            app, ["state", "show", "webapp", "--config", str(config_file)]
        )

        assert result.exit_code == 1
        assert "Failed to read state" in result.output

    def test_reset_with_confirmation_flag(
        self, cli_runner, config_file, webapp_state
    ):
        """Test that reset forgets completed branches."""
        result = cli_runner.invoke(
            app, ["state", "reset", "webapp", "--config", str(config_file), "--yes"]
        )

        assert result.exit_code == 0
        reloaded = StateTracker(webapp_state.storage.path)
        reloaded.initialize()
        assert not reloaded.is_branch_completed("main")

    def test_reset_aborted(self, cli_runner, config_file, webapp_state):
        result = cli_runner.invoke(
            app, ["state", "reset", "webapp", "--config", str(config_file)], input="n\n"
        )

        assert result.exit_code == 1
        reloaded = StateTracker(webapp_state.storage.path)
        reloaded.initialize()
        assert reloaded.is_branch_completed("main")


def test_version(cli_runner):
    result = cli_runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert "sonar-migrate version" in result.output


class TestLoggingSetup:
    """Test where the log level and format come from."""

    @pytest.fixture
    def logging_calls(self, monkeypatch):
        calls = []
        monkeypatch.setattr(
            cli, "setup_logging", lambda level, fmt: calls.append((level, fmt))
        )
        return calls

    @pytest.fixture
    def logging_config_file(self, config_file):
        config_file.write_text(
            config_file.read_text() + "logging:\n  level: debug\n  format: text\n"
        )
        return config_file

    def test_configured_logging_used_without_options(
        self, cli_runner, logging_config_file, logging_calls
    ):
        # No report pipeline is configured, so the command stops after loading
        result = cli_runner.invoke(
            app, ["transfer", "webapp", "--config", str(logging_config_file)]
        )

        assert result.exit_code == 1
        assert logging_calls == [("DEBUG", "text")]

    def test_options_override_configured_logging(
        self, cli_runner, logging_config_file, logging_calls
    ):
        result = cli_runner.invoke(
            app,
            [
                "transfer",
                "webapp",
                "--config",
                str(logging_config_file),
                "--log-level",
                "ERROR",
            ],
        )

        assert result.exit_code == 1
        assert logging_calls == [("ERROR", "text")]

    def test_defaults_used_when_config_fails_to_load(
        self, cli_runner, tmp_path, logging_calls
    ):
        result = cli_runner.invoke(
            app, ["transfer", "webapp", "--config", str(tmp_path / "missing.yaml")]
        )

        assert result.exit_code == 1
        assert logging_calls == [("INFO", "json")]
