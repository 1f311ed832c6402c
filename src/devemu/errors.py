from __future__ import annotations

from .kinds import EmulatorKind


class EmulatorError(Exception):
    """Base class for every error raised by devemu."""


class ConfigError(EmulatorError):
    """The session cannot be built from the given configuration."""


class DownloadError(EmulatorError):
    """An emulator artifact could not be fetched or stored."""

    def __init__(self, message: str, *, url: str | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class IntegrityError(EmulatorError):
    """A downloaded artifact does not match its expected size or checksum."""

    def __init__(self, message: str, *, expected: object = None, actual: object = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class _LifecycleError(EmulatorError):
    def __init__(
        self,
        message: str,
        *,
        kind: EmulatorKind | None = None,
        stop_errors: list[StopError] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        # Filled by the coordinator with whatever went wrong during rollback
        self.stop_errors: list[StopError] = list(stop_errors or [])


class StartError(_LifecycleError):
    """An emulator failed to start: bind conflict, missing binary or artifact, launch failure."""


class ConnectError(_LifecycleError):
    """A required peer emulator did not become reachable within the bounded wait."""


class ShutdownRequested(_LifecycleError):
    """Start or connect was interrupted by a teardown request."""


class StopError(EmulatorError):
    """
    An emulator did not release its resources cleanly.

    Never raised out of a teardown: instances return it and the coordinator
    collects it so that the remaining emulators still get stopped.
    """

    def __init__(self, kind: EmulatorKind, message: str) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind


__all__ = [
    "ConfigError",
    "ConnectError",
    "DownloadError",
    "EmulatorError",
    "IntegrityError",
    "ShutdownRequested",
    "StartError",
    "StopError",
]
