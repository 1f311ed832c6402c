from __future__ import annotations

from collections.abc import Callable
from http.server import BaseHTTPRequestHandler
from typing import Any
from urllib.parse import urlsplit

from ..errors import ConnectError, ShutdownRequested
from ..kinds import EmulatorKind
from ..utils.net import wait_for_listen
from .http import EmulatorRequestHandler, HttpEmulator

# Environment variables function workers read to find the emulated services
WORKER_ENV_VARS: dict[EmulatorKind, str] = {
    EmulatorKind.FIRESTORE: "FIRESTORE_EMULATOR_HOST",
    EmulatorKind.DATABASE: "FIREBASE_DATABASE_EMULATOR_HOST",
}


class _FunctionsHandler(EmulatorRequestHandler):
    def do_GET(self) -> None:  # noqa: N802 - method name defined by base class
        path = urlsplit(self.path).path
        emulator = self.server.emulator
        assert isinstance(emulator, FunctionsEmulator)
        if path == "/__/health":
            self.send_text(200, "OK")
        elif path == "/__/env":
            self.send_json(200, emulator.worker_environment())
        else:
            self.send_text(404, "Not Found")


class FunctionsEmulator(HttpEmulator):
    """
    Functions emulator: hosts function workers and points them at the other emulators.

    On connect it waits for the firestore and database emulators of the session
    (when present) and exposes their addresses as worker environment variables.
    """

    kind = EmulatorKind.FUNCTIONS

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._worker_env: dict[str, str] = {}

    def handler(self) -> Callable[..., BaseHTTPRequestHandler]:
        return _FunctionsHandler

    def worker_environment(self) -> dict[str, str]:
        """Environment variables a function worker gets, e.g. FIRESTORE_EMULATOR_HOST."""
        return dict(self._worker_env)

    def _connect(self) -> None:
        env: dict[str, str] = {}
        timeout = self.context.connect_timeout
        for peer, var in WORKER_ENV_VARS.items():
            info = self.context.registry.get(peer)
            if info is None:
                continue
            if not wait_for_listen(info.host, info.port, timeout, cancel=self.context.cancel):
                if self.context.cancel.is_set():
                    raise ShutdownRequested(
                        f"{self.kind.value} connect interrupted by shutdown", kind=self.kind
                    )
                raise ConnectError(
                    f"{peer.value} emulator at {info.binding.address} "
                    f"is unreachable after {timeout} seconds",
                    kind=self.kind,
                )
            env[var] = info.binding.address
            self._log.info("Peer registered", peer=peer.value, variable=var, address=env[var])
        self._worker_env = env

    def _stop(self) -> None:
        self._worker_env = {}
        super()._stop()
