from __future__ import annotations

import json
import signal
from types import FrameType

import typer

from ..config.loader import load_settings
from ..emulator.coordinator import LifecycleCoordinator
from ..emulator.factory import build_context, build_coordinator, build_instances
from ..emulator.java import JavaEmulator
from ..errors import ConfigError, EmulatorError
from ..kinds import DEFAULT_PORTS, EmulatorKind, parse_kinds
from ..utils.logging import bind_context, get_logger, setup_logging

# Create a CLI application using Typer
app = typer.Typer(add_completion=False, help="Run local cloud service emulators.")


def _parse_only(only: str | None) -> list[EmulatorKind] | None:
    try:
        return parse_kinds(only)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from None


def _install_signal_handlers(coordinator: LifecycleCoordinator) -> None:
    """SIGINT/SIGTERM ask the session to shut down instead of killing the CLI mid-teardown."""

    def handler(signum: int, frame: FrameType | None) -> None:
        coordinator.request_shutdown()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


@app.command()
def start(
    config: str = typer.Option(None, help="Path to the YAML configuration file"),
    only: str = typer.Option(None, help="Comma-separated emulators to run, e.g. functions,firestore"),
    log_level: str = typer.Option(None, help="TRACE|DEBUG|INFO|WARNING|ERROR"),
) -> None:
    """
    Start the emulators and keep them running until interrupted (Ctrl+C / SIGTERM).

    Example usage:
        devemu start --config devemu.yaml --only database,functions
    """
    settings = load_settings(config)
    setup_logging(level=log_level, directory=settings.log_dir)
    log = get_logger(__name__)
    kinds = _parse_only(only)

    try:
        coordinator = build_coordinator(settings, kinds)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(2) from e

    bind_context(session=coordinator.context.session_id)
    _install_signal_handlers(coordinator)

    try:
        registry = coordinator.start()
    except EmulatorError as e:
        typer.echo(f"Emulators failed to start: {e}", err=True)
        for stop_error in getattr(e, "stop_errors", []):
            typer.echo(f"  stop error: {stop_error}", err=True)
        raise typer.Exit(1) from e

    typer.echo(json.dumps(registry.as_dict(), indent=2))
    typer.echo("All emulators ready. Press Ctrl+C to stop.")
    coordinator.wait_for_shutdown()

    errors = coordinator.stop()
    for stop_error in errors:
        typer.echo(f"Stop error: {stop_error}", err=True)
    log.info("Session finished", stop_errors=len(errors))
    if errors:
        raise typer.Exit(1)


@app.command()
def fetch(
    config: str = typer.Option(None, help="Path to the YAML configuration file"),
    only: str = typer.Option(None, help="Comma-separated emulators to fetch"),
) -> None:
    """
    Download and verify the jars of the Java-based emulators into the cache.
    """
    settings = load_settings(config)
    context = build_context(settings)
    try:
        instances = build_instances(settings, context, _parse_only(only))
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(2) from e

    failed = False
    for instance in instances:
        if not isinstance(instance, JavaEmulator):
            continue
        try:
            jar = instance.resolve_jar()
        except EmulatorError as e:
            typer.echo(f"Fetch failed: {e}", err=True)
            failed = True
            continue
        typer.echo(f"{instance.kind.value}: {jar}")
    if failed:
        raise typer.Exit(1)


@app.command()
def kinds() -> None:
    """List the emulators devemu knows about and their default ports."""
    for kind in EmulatorKind:
        typer.echo(f"{kind.value}\t{DEFAULT_PORTS[kind]}")


if __name__ == "__main__":
    app()
