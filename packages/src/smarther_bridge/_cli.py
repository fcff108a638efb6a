"""Command-line interface (Typer-based).

:func:`build_cli` constructs the ``smarther-bridge`` Typer app::

    smarther-bridge [--version] [--log-level L] [--log-format F]
                    [--config-dir DIR] [--env-file FILE] COMMAND

Commands:

- ``run`` — bridge MQTT and the cloud until SIGINT/SIGTERM.
- ``discover`` — refresh ``plant_topology.json`` from the cloud.
"""

from __future__ import annotations

import contextlib
import logging
import sys
from pathlib import Path
from typing import Annotated, get_args

import typer
from pydantic import ValidationError

from smarther_bridge._app import BridgeApp
from smarther_bridge._errors import BridgeError
from smarther_bridge._settings import LoggingSettings, Settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

# ---------------------------------------------------------------------------
# Allowed values (extracted from LoggingSettings Literal types)
# ---------------------------------------------------------------------------

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)


def _settings(ctx: typer.Context) -> Settings:
    settings = ctx.obj
    assert isinstance(settings, Settings)
    return settings


def build_cli(app: BridgeApp) -> typer.Typer:
    """Construct the Typer CLI for *app*."""
    cli = typer.Typer(
        help=f"{app.name} v{app.version} — bridge Smarther thermostats to MQTT",
        no_args_is_help=True,
    )

    @cli.callback(invoke_without_command=True)
    def main(
        ctx: typer.Context,
        version_flag: Annotated[
            bool | None,
            typer.Option(
                "--version",
                is_eager=True,
                help="Show version and exit.",
            ),
        ] = None,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format."),
        ] = None,
        config_dir: Annotated[
            Path | None,
            typer.Option("--config-dir", help="Directory holding the JSON state files."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
    ) -> None:
        if version_flag:
            typer.echo(f"{app.name} v{app.version}")
            raise typer.Exit()

        if ctx.invoked_subcommand is None:
            typer.echo(ctx.get_help())
            raise typer.Exit()

        if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
            raise typer.BadParameter(
                f"Invalid log level '{log_level}'. "
                f"Choose from: {', '.join(_VALID_LOG_LEVELS)}",
                param_hint="'--log-level'",
            )

        if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
            raise typer.BadParameter(
                f"Invalid log format '{log_format}'. "
                f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
                param_hint="'--log-format'",
            )

        try:
            settings = Settings(_env_file=env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            typer.echo(f"Configuration error: {exc}", err=True)
            raise SystemExit(EXIT_CONFIG_ERROR) from exc

        if log_level is not None:
            settings.logging = settings.logging.model_copy(
                update={"level": log_level.upper()},
            )
        if log_format is not None:
            settings.logging = settings.logging.model_copy(
                update={"format": log_format.lower()},
            )
        if config_dir is not None:
            settings.config_dir = config_dir

        ctx.obj = settings

    @cli.command()
    def run(ctx: typer.Context) -> None:
        """Bridge MQTT and the cloud until interrupted."""
        try:
            app.run(settings=_settings(ctx))
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)

    @cli.command()
    def discover(ctx: typer.Context) -> None:
        """Fetch plants and modules and write plant_topology.json."""
        try:
            with contextlib.suppress(KeyboardInterrupt):
                topology = app.discover(settings=_settings(ctx))
                typer.echo(
                    f"Discovered {len(topology.plants)} plant(s): "
                    + ", ".join(plant.id for plant in topology.plants),
                )
        except BridgeError as exc:
            logger.error("Discovery failed: %s", exc)
            typer.echo(f"Discovery failed: {exc}", err=True)
            sys.exit(EXIT_RUNTIME_ERROR)

    return cli


def main() -> None:
    """Console-script entry point."""
    from smarther_bridge import __version__

    build_cli(BridgeApp(version=__version__))()
