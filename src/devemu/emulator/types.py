from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..kinds import EmulatorKind

if TYPE_CHECKING:
    from .base import EmulatorInstance


@dataclass(frozen=True, slots=True)
class EndpointBinding:
    """Host/port pair an emulator listens on (or will listen on)."""

    host: str
    port: int

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("host must not be empty")
        if not 0 < int(self.port) < 65536:
            raise ValueError(f"port must be within 1..65535, got {self.port}")

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def url(self) -> str:
        return f"http://{self.address}"


@dataclass(slots=True)
class ExternalProcessCommand:
    """How to invoke an external-process emulator. Owned by a single instance."""

    binary: str
    args: list[str] = field(default_factory=list)

    @property
    def argv(self) -> list[str]:
        return [self.binary, *self.args]

    def __str__(self) -> str:
        return shlex.join(self.argv)


@dataclass(frozen=True, slots=True)
class EmulatorInfo:
    """A running emulator bound to the address it negotiated."""

    instance: EmulatorInstance
    binding: EndpointBinding

    @property
    def kind(self) -> EmulatorKind:
        return self.instance.kind

    @property
    def host(self) -> str:
        return self.binding.host

    @property
    def port(self) -> int:
        return self.binding.port
