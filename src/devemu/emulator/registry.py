from __future__ import annotations

import threading

from ..errors import ConnectError
from ..kinds import EmulatorKind
from .types import EmulatorInfo


class EmulatorRegistry:
    """Thread-safe lookup of the running emulators of a session, keyed by kind."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._infos: dict[EmulatorKind, EmulatorInfo] = {}

    def register(self, info: EmulatorInfo) -> None:
        with self._lock:
            self._infos[info.kind] = info

    def unregister(self, kind: EmulatorKind) -> None:
        with self._lock:
            self._infos.pop(kind, None)

    def get(self, kind: EmulatorKind) -> EmulatorInfo | None:
        with self._lock:
            return self._infos.get(kind)

    def require(self, kind: EmulatorKind) -> EmulatorInfo:
        """Return the emulator of the given kind or raise ConnectError if it is not running."""
        info = self.get(kind)
        if info is None:
            raise ConnectError(f"{kind.value} emulator is not running", kind=kind)
        return info

    def infos(self) -> list[EmulatorInfo]:
        """Registered emulators in EmulatorKind declaration order."""
        with self._lock:
            return [self._infos[k] for k in EmulatorKind if k in self._infos]

    def as_dict(self) -> dict[str, dict[str, str | int]]:
        """JSON-ready view: {"firestore": {"host": "127.0.0.1", "port": 8080}, ...}."""
        return {info.kind.value: {"host": info.host, "port": info.port} for info in self.infos()}

    def __contains__(self, kind: object) -> bool:
        with self._lock:
            return kind in self._infos

    def __len__(self) -> int:
        with self._lock:
            return len(self._infos)
