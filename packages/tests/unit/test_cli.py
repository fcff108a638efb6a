"""Tests for smarther_bridge._cli — the Typer command line.

Test Techniques Used:
    - Specification-based Testing: CLI flag parsing and defaults
    - State-based Testing: Settings overrides reaching the app
    - Error Condition Testing: Invalid flag values, config errors
    - Behavioural Testing: Exit codes and output text
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from smarther_bridge._app import BridgeApp
from smarther_bridge._cli import EXIT_CONFIG_ERROR, EXIT_OK, EXIT_RUNTIME_ERROR, build_cli
from smarther_bridge._errors import StateFileError
from smarther_bridge._settings import Settings
from smarther_bridge.testing import make_topology

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's ``.env`` out of the tests."""
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def app() -> BridgeApp:
    return BridgeApp(name="smarther-bridge", version="1.0.0")


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _settings_passed(run_mock: object) -> Settings:
    settings = run_mock.call_args.kwargs["settings"]  # type: ignore[attr-defined]
    assert isinstance(settings, Settings)
    return settings


class TestGlobalOptions:
    """Technique: Specification-based Testing."""

    def test_version(self, app: BridgeApp, runner: CliRunner) -> None:
        result = runner.invoke(build_cli(app), ["--version"])
        assert result.exit_code == EXIT_OK
        assert "smarther-bridge v1.0.0" in result.output

    def test_help_lists_commands(self, app: BridgeApp, runner: CliRunner) -> None:
        result = runner.invoke(build_cli(app), ["--help"])
        assert result.exit_code == EXIT_OK
        assert "run" in result.output
        assert "discover" in result.output

    def test_overrides_reach_settings(
        self,
        app: BridgeApp,
        runner: CliRunner,
        tmp_path: Path,
    ) -> None:
        """Technique: State-based Testing."""
        with patch.object(app, "run") as run:
            result = runner.invoke(
                build_cli(app),
                [
                    "--log-level",
                    "debug",
                    "--log-format",
                    "JSON",
                    "--config-dir",
                    str(tmp_path / "state"),
                    "run",
                ],
            )

        assert result.exit_code == EXIT_OK
        settings = _settings_passed(run)
        assert settings.logging.level == "DEBUG"
        assert settings.logging.format == "json"
        assert settings.config_dir == tmp_path / "state"

    def test_env_file_read(self, app: BridgeApp, runner: CliRunner, tmp_path: Path) -> None:
        env_file = tmp_path / "bridge.env"
        env_file.write_text("SMARTHER_WEBHOOK__RECONCILE=snapshot\n", encoding="utf-8")

        with patch.object(app, "run") as run:
            result = runner.invoke(build_cli(app), ["--env-file", str(env_file), "run"])

        assert result.exit_code == EXIT_OK
        assert _settings_passed(run).webhook.reconcile == "snapshot"

    @pytest.mark.parametrize(
        "args",
        [["--log-level", "LOUD", "run"], ["--log-format", "yaml", "run"]],
        ids=["level", "format"],
    )
    def test_invalid_logging_option(
        self,
        app: BridgeApp,
        runner: CliRunner,
        args: list[str],
    ) -> None:
        with patch.object(app, "run") as run:
            result = runner.invoke(build_cli(app), args)
        assert result.exit_code != EXIT_OK
        run.assert_not_called()


class TestExitCodes:
    """Technique: Behavioural Testing."""

    def test_exit_code_constants(self) -> None:
        assert (EXIT_OK, EXIT_CONFIG_ERROR, EXIT_RUNTIME_ERROR) == (0, 1, 3)

    def test_config_error_exits_one(
        self,
        app: BridgeApp,
        runner: CliRunner,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("SMARTHER_API__ATTEMPTS", "0")
        with patch.object(app, "run") as run:
            result = runner.invoke(build_cli(app), ["run"])
        assert result.exit_code == EXIT_CONFIG_ERROR
        run.assert_not_called()

    def test_runtime_error_exits_three(self, app: BridgeApp, runner: CliRunner) -> None:
        with patch.object(app, "run", side_effect=RuntimeError("kaboom")):
            result = runner.invoke(build_cli(app), ["run"])
        assert result.exit_code == EXIT_RUNTIME_ERROR


class TestDiscover:
    def test_reports_plants(self, app: BridgeApp, runner: CliRunner) -> None:
        topology = make_topology({"p1": ["m1"], "p2": ["m2"]})
        with patch.object(app, "discover", return_value=topology):
            result = runner.invoke(build_cli(app), ["discover"])

        assert result.exit_code == EXIT_OK
        assert "Discovered 2 plant(s): p1, p2" in result.output

    def test_failure_exits_three(self, app: BridgeApp, runner: CliRunner) -> None:
        with patch.object(app, "discover", side_effect=StateFileError("tokens.json missing")):
            result = runner.invoke(build_cli(app), ["discover"])

        assert result.exit_code == EXIT_RUNTIME_ERROR
        assert "tokens.json missing" in result.output
