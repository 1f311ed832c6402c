from __future__ import annotations

from collections.abc import Generator

import pytest

from ..config.loader import load_settings
from ..config.models import Settings
from ..emulator.coordinator import LifecycleCoordinator
from ..emulator.factory import build_coordinator
from ..emulator.registry import EmulatorRegistry
from ..kinds import EmulatorKind, parse_kinds
from ..utils.logging import bind_context, clear_contextvars, get_logger

_logger = get_logger(__name__)


def _only_from_option(raw: str | None) -> list[EmulatorKind] | None:
    try:
        return parse_kinds(raw)
    except ValueError as e:
        raise pytest.UsageError(f"--devemu-only: {e}") from None


@pytest.fixture(scope="session")
def devemu_settings(pytestconfig: pytest.Config) -> Settings:
    """
    Load the emulator configuration once per session.

    Override this fixture in a conftest.py to build Settings in code instead.
    """
    cfg_path: str | None = pytestconfig.getoption("--devemu-config")
    return load_settings(cfg_path)


@pytest.fixture(scope="session")
def emulator_session(
    devemu_settings: Settings, pytestconfig: pytest.Config
) -> Generator[EmulatorRegistry, None, None]:
    """
    Run an emulator session for the whole test session.

    Yields the registry of running emulators; every emulator is stopped in
    reverse start order when the session finishes. A failing start fails every
    test that requests this fixture.
    """
    only_raw: str | None = pytestconfig.getoption("--devemu-only")
    yield from _run_session(build_coordinator(devemu_settings, _only_from_option(only_raw)))


def _run_session(coordinator: LifecycleCoordinator) -> Generator[EmulatorRegistry, None, None]:
    bind_context(session=coordinator.context.session_id)
    try:
        registry = coordinator.start()
        try:
            yield registry
        finally:
            errors = coordinator.stop()
            if errors:
                _logger.warning("Emulators did not stop cleanly", errors=[str(e) for e in errors])
    finally:
        clear_contextvars()
