from __future__ import annotations

import threading

from ..errors import StartError
from ..kinds import EmulatorKind
from ..utils.logging import get_logger
from ..utils.net import get_free_port, is_listening, owner_info
from .types import EndpointBinding

_log = get_logger(__name__)


class PortAllocator:
    """
    Hands out the ports of one emulator session.

    Reservations are serialized, so two emulators starting concurrently never
    end up with the same port. A port is held until released, whatever host
    it was reserved on.
    """

    # Attempts at finding an ephemeral port no other emulator in the session holds
    FREE_PORT_ATTEMPTS = 20

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._held: dict[EmulatorKind, EndpointBinding] = {}

    def reserve(self, kind: EmulatorKind, host: str, port: int | None = None) -> EndpointBinding:
        """
        Reserve a port for the given emulator.

        Args:
            kind: Emulator the port is reserved for.
            host: Interface the emulator will bind.
            port: Explicit port, or None to pick a free one.

        Raises:
            StartError: The emulator already holds a port, or the explicit port is
                held by another emulator in the session or is already in use on the host.
        """
        with self._lock:
            if kind in self._held:
                raise StartError(
                    f"{kind.value} already holds {self._held[kind].address}", kind=kind
                )
            taken = {b.port: k for k, b in self._held.items()}

            if port is None:
                for _ in range(self.FREE_PORT_ATTEMPTS):
                    candidate = get_free_port(host)
                    if candidate not in taken:
                        port = candidate
                        break
                else:
                    raise StartError(f"No free port found for {kind.value} on {host}", kind=kind)
            else:
                if port in taken:
                    raise StartError(
                        f"Port {port} is already reserved for {taken[port].value}", kind=kind
                    )
                if is_listening(host, port):
                    raise StartError(
                        f"Port {host}:{port} is in use ({owner_info(port)})", kind=kind
                    )

            binding = EndpointBinding(host, port)
            self._held[kind] = binding
            _log.debug("Port reserved", emulator=kind.value, host=host, port=port)
            return binding

    def release(self, kind: EmulatorKind) -> None:
        """Free the port held by the emulator. Releasing twice is a no-op."""
        with self._lock:
            binding = self._held.pop(kind, None)
        if binding is not None:
            _log.debug("Port released", emulator=kind.value, port=binding.port)

    def held(self) -> dict[EmulatorKind, EndpointBinding]:
        with self._lock:
            return dict(self._held)
