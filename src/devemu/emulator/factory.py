from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from ..artifacts import ArtifactFetcher
from ..config.models import Settings
from ..errors import ConfigError
from ..kinds import EmulatorKind
from .base import EmulatorContext, EmulatorInstance
from .coordinator import LifecycleCoordinator
from .functions import FunctionsEmulator
from .hosting import HostingEmulator
from .java import DatabaseEmulator, FirestoreEmulator

# The closed set of emulator variants
EMULATOR_CLASSES: dict[EmulatorKind, type[EmulatorInstance]] = {
    EmulatorKind.FUNCTIONS: FunctionsEmulator,
    EmulatorKind.FIRESTORE: FirestoreEmulator,
    EmulatorKind.DATABASE: DatabaseEmulator,
    EmulatorKind.HOSTING: HostingEmulator,
}


def build_context(settings: Settings) -> EmulatorContext:
    return EmulatorContext(
        fetcher=ArtifactFetcher(settings.download),
        connect_timeout=settings.connect_timeout,
        stop_timeout=settings.stop_timeout,
        log_dir=Path(settings.log_dir),
    )


def build_instances(
    settings: Settings,
    context: EmulatorContext,
    only: Iterable[EmulatorKind] | None = None,
) -> list[EmulatorInstance]:
    """
    Create an instance for every enabled emulator, in EmulatorKind declaration order.

    Args:
        only: Restrict the session to these emulators (each must be enabled).
    """
    enabled = settings.enabled_kinds()
    if only is not None:
        selected = set(only)
        disabled = sorted(k.value for k in selected if k not in enabled)
        if disabled:
            raise ConfigError(f"Emulators disabled in the configuration: {', '.join(disabled)}")
        enabled = [k for k in enabled if k in selected]
    return [EMULATOR_CLASSES[kind](settings.emulator(kind), context) for kind in enabled]


def build_coordinator(
    settings: Settings, only: Iterable[EmulatorKind] | None = None
) -> LifecycleCoordinator:
    """Build the lifecycle coordinator of a session from settings."""
    context = build_context(settings)
    return LifecycleCoordinator(build_instances(settings, context, only), context)
