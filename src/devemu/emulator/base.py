from __future__ import annotations

import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import ClassVar

from ..artifacts import ArtifactFetcher
from ..config.models import EmulatorConfig
from ..errors import ConnectError, ShutdownRequested, StartError, StopError
from ..kinds import EmulatorKind
from ..utils.logging import get_logger
from ..utils.net import is_listening
from .ports import PortAllocator
from .registry import EmulatorRegistry
from .types import EmulatorInfo, EndpointBinding


class InstanceState(str, Enum):
    CONFIGURED = "configured"
    STARTED = "started"
    CONNECTED = "connected"
    STOPPED = "stopped"


@dataclass(slots=True)
class EmulatorContext:
    """Resources shared by all emulators of one session."""

    ports: PortAllocator = field(default_factory=PortAllocator)
    registry: EmulatorRegistry = field(default_factory=EmulatorRegistry)
    cancel: threading.Event = field(default_factory=threading.Event)
    fetcher: ArtifactFetcher = field(default_factory=ArtifactFetcher)
    connect_timeout: float = 10.0
    stop_timeout: float = 5.0
    log_dir: Path = Path(".devemu/logs")
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])


class EmulatorInstance(ABC):
    """
    Abstract base class for emulators.

    Lifecycle: configured -> started -> connected -> stopped.

    - start() reserves a port and launches the process or server; it returns once
      the emulator listens and never waits for sibling emulators.
    - connect() runs once every emulator of the session has started and performs
      cross-registration with peers.
    - stop() releases everything start() acquired; it is safe to call at any
      point, any number of times, and never raises.

    Subclasses implement _start, _connect and _stop; the public methods enforce
    the ordering and turn failures into the matching lifecycle errors.
    """

    kind: ClassVar[EmulatorKind]

    # Interval between readiness checks (seconds)
    POLL_INTERVAL_SEC = 0.15

    def __init__(self, config: EmulatorConfig, context: EmulatorContext) -> None:
        self.config = config
        self.context = context
        self.depends_on: tuple[EmulatorKind, ...] = tuple(dict.fromkeys(config.depends_on))
        self.binding: EndpointBinding | None = None
        self.state = InstanceState.CONFIGURED
        self._lock = threading.RLock()
        # Guards _starting so stop() can abort a start without taking _lock
        self._guard = threading.Lock()
        self._starting = False
        self._abort = threading.Event()
        self._log = get_logger(__name__).bind(emulator=self.kind.value, session=context.session_id)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.state.value} {self.binding.address if self.binding else '-'}>"

    # ------------------------
    # Public API
    # ------------------------
    def start(self) -> None:
        """
        Reserve an endpoint and launch the emulator.

        Raises:
            StartError: Bind conflict, missing binary or artifact, launch failure,
                or the emulator did not start listening in time.
            ShutdownRequested: The session was asked to shut down meanwhile.
        """
        with self._lock:
            if self.state in (InstanceState.STARTED, InstanceState.CONNECTED):
                raise StartError(f"{self.kind.value} is already running", kind=self.kind)

            with self._guard:
                self._starting = True
                self._abort.clear()
            self._log.info("Starting emulator", action="emulator_start")
            try:
                self.binding = self.context.ports.reserve(
                    self.kind, self.config.host, self.config.port
                )
                self._start()
                self._finish_starting()
            except (StartError, ShutdownRequested):
                self._release()
                raise
            except Exception as e:
                self._release()
                raise StartError(f"{self.kind.value} failed to start: {e}", kind=self.kind) from e
            finally:
                with self._guard:
                    self._starting = False

            self.state = InstanceState.STARTED
            self._log.info(
                "Emulator started",
                action="emulator_started",
                host=self.binding.host,
                port=self.binding.port,
            )

    def connect(self) -> None:
        """
        Register with the peer emulators of the session.

        Raises:
            ConnectError: The emulator is not started, or a required peer is unreachable.
            ShutdownRequested: The session was asked to shut down meanwhile.
        """
        with self._lock:
            if self.state is not InstanceState.STARTED:
                raise ConnectError(
                    f"{self.kind.value} cannot connect while {self.state.value}", kind=self.kind
                )
            try:
                self._connect()
            except (ConnectError, ShutdownRequested):
                raise
            except Exception as e:
                raise ConnectError(f"{self.kind.value} failed to connect: {e}", kind=self.kind) from e
            self.state = InstanceState.CONNECTED
            self._log.info("Emulator connected", action="emulator_connected")

    def stop(self) -> StopError | None:
        """
        Release the process or server and the port.

        Returns:
            StopError | None: What went wrong while releasing resources, if anything.

        A start still in progress is told to abort instead; it then releases its
        own resources and raises ShutdownRequested.
        """
        with self._guard:
            if self._starting:
                self._abort.set()
                self._log.info("Aborting emulator start", action="emulator_abort")
                return None
        with self._lock:
            if self.state not in (InstanceState.STARTED, InstanceState.CONNECTED):
                return None

            self._log.info("Stopping emulator", action="emulator_stop")
            error: StopError | None = None
            try:
                self._stop()
            except Exception as e:
                error = StopError(self.kind, str(e))
                self._log.warning("Emulator did not stop cleanly", error=str(e))
            finally:
                self.context.ports.release(self.kind)
                self.binding = None
                self.state = InstanceState.STOPPED
            return error

    def info(self) -> EmulatorInfo:
        if self.binding is None:
            raise StartError(f"{self.kind.value} has no endpoint yet", kind=self.kind)
        return EmulatorInfo(instance=self, binding=self.binding)

    def wait_until_listening(
        self,
        timeout: float,
        *,
        alive: Callable[[], bool] | None = None,
        hint: str = "",
    ) -> None:
        """
        Wait until the emulator accepts TCP connections on its endpoint.

        Args:
            timeout: Maximum wait time in seconds.
            alive: Optional liveness check; returning False aborts the wait.
            hint: Appended to error messages (e.g. where to find the process log).

        Raises:
            StartError: The emulator died or did not listen within the timeout.
            ShutdownRequested: The session cancel event was set.
        """
        binding = self.binding
        assert binding is not None, "wait_until_listening() requires a reserved endpoint"
        suffix = f" ({hint})" if hint else ""
        deadline = time.monotonic() + timeout
        while True:
            if self.context.cancel.is_set() or self._abort.is_set():
                raise ShutdownRequested(
                    f"{self.kind.value} start interrupted by shutdown", kind=self.kind
                )
            if is_listening(binding.host, binding.port):
                return
            if alive is not None and not alive():
                raise StartError(
                    f"{self.kind.value} exited before listening on {binding.address}{suffix}",
                    kind=self.kind,
                )
            if time.monotonic() >= deadline:
                raise StartError(
                    f"{self.kind.value} did not listen on {binding.address} "
                    f"within {timeout} seconds{suffix}",
                    kind=self.kind,
                )
            self._abort.wait(self.POLL_INTERVAL_SEC)

    # ------------------------
    # Variant hooks
    # ------------------------
    @abstractmethod
    def _start(self) -> None:
        """Launch the emulator on self.binding and return once it listens."""
        ...

    def _connect(self) -> None:
        """Cross-register with peers. Emulators without peers have nothing to do."""
        return None

    @abstractmethod
    def _stop(self) -> None:
        """
        Release what _start acquired.

        Called after a successful start and after a failed one, so it must cope
        with resources that were never acquired.
        """
        ...

    def _finish_starting(self) -> None:
        with self._guard:
            self._starting = False
            if self._abort.is_set():
                raise ShutdownRequested(f"{self.kind.value} stopped while starting", kind=self.kind)

    def _release(self) -> None:
        try:
            self._stop()
        except Exception as e:
            self._log.warning("Cleanup after failed start did not complete", error=str(e))
        self.context.ports.release(self.kind)
        self.binding = None
