from __future__ import annotations

import functools
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, SimpleHTTPRequestHandler
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from ..config.models import HostingConfig
from ..errors import StartError
from ..kinds import EmulatorKind
from .http import EmulatorRequestHandler, HttpEmulator

EMULATORS_PATH = "/__/emulators.json"


class _HostingHandler(EmulatorRequestHandler, SimpleHTTPRequestHandler):
    """Static file handler that also answers the emulator discovery endpoint."""

    def do_GET(self) -> None:  # noqa: N802 - method name defined by base class
        if urlsplit(self.path).path == EMULATORS_PATH:
            emulator = self.server.emulator
            assert isinstance(emulator, HostingEmulator)
            self.send_json(200, emulator.emulators())
            return
        super().do_GET()


class HostingEmulator(HttpEmulator):
    """
    Hosting emulator: serves a static site from public_dir.

    After connect, GET /__/emulators.json lists the host/port of every emulator
    in the session so that client code can route requests to them.
    """

    kind = EmulatorKind.HOSTING
    config: HostingConfig

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._emulators: dict[str, dict[str, str | int]] = {}

    @property
    def public_dir(self) -> Path:
        return Path(self.config.public_dir).expanduser().resolve()

    def handler(self) -> Callable[..., BaseHTTPRequestHandler]:
        return functools.partial(_HostingHandler, directory=str(self.public_dir))

    def emulators(self) -> dict[str, dict[str, str | int]]:
        return dict(self._emulators)

    def _start(self) -> None:
        if not self.public_dir.is_dir():
            raise StartError(
                f"hosting public directory {self.public_dir} does not exist", kind=self.kind
            )
        super()._start()

    def _connect(self) -> None:
        self._emulators = self.context.registry.as_dict()
        self._log.info("Emulator discovery published", emulators=sorted(self._emulators))

    def _stop(self) -> None:
        self._emulators = {}
        super()._stop()
