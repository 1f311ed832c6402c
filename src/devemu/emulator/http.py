from __future__ import annotations

import json
import threading
from abc import abstractmethod
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from ..utils.logging import get_logger
from .base import EmulatorInstance

logger = get_logger(__name__)


class EmulatorHTTPServer(ThreadingHTTPServer):
    """ThreadingHTTPServer with a typed reference back to the emulator it serves."""

    daemon_threads = True

    def __init__(
        self,
        server_address: tuple[str, int],
        RequestHandlerClass: Callable[..., BaseHTTPRequestHandler],  # noqa: N803 (arg name from base)
        emulator: HttpEmulator,
    ) -> None:
        super().__init__(server_address, RequestHandlerClass)
        self.emulator = emulator


class EmulatorRequestHandler(BaseHTTPRequestHandler):
    """Request handler helpers shared by the in-process emulators."""

    server: EmulatorHTTPServer

    # Disable verbose http.server logging; use our structured logger instead
    def log_message(self, fmt: str, *args: Any) -> None:  # noqa: A003 - compatibility with base class
        logger.debug(
            "http_access_log", emulator=self.server.emulator.kind.value, message=fmt % args
        )

    def send_text(self, code: int, text: str) -> None:
        self._send(code, text.encode("utf-8"), "text/plain; charset=utf-8")

    def send_json(self, code: int, payload: object) -> None:
        self._send(code, json.dumps(payload).encode("utf-8"), "application/json")

    def _send(self, code: int, data: bytes, content_type: str) -> None:
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


class HttpEmulator(EmulatorInstance):
    """
    In-process emulator variant: an HTTP server running on a daemon thread.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._server: EmulatorHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @abstractmethod
    def handler(self) -> Callable[..., BaseHTTPRequestHandler]:
        """Request handler class (or factory) for this emulator's server."""
        ...

    def _start(self) -> None:
        assert self.binding is not None
        self._server = EmulatorHTTPServer(
            (self.binding.host, self.binding.port), self.handler(), self
        )
        self._thread = threading.Thread(
            target=self._server.serve_forever, name=f"{self.kind.value}-emulator", daemon=True
        )
        self._thread.start()
        self.wait_until_listening(self.config.start_timeout)

    def _stop(self) -> None:
        server, thread = self._server, self._thread
        self._server, self._thread = None, None
        if server is None:
            return
        try:
            # shutdown() blocks until serve_forever returns, so only call it on a live loop
            if thread is not None and thread.is_alive():
                server.shutdown()
        finally:
            server.server_close()
            if thread is not None:
                thread.join(timeout=self.context.stop_timeout)
        if thread is not None and thread.is_alive():
            raise RuntimeError(f"{self.kind.value} server thread did not exit")
