"""
Session lifecycle orchestration for configured emulators.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator, Sequence
from concurrent.futures import FIRST_COMPLETED, FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from enum import Enum

from ..errors import (
    ConfigError,
    ConnectError,
    EmulatorError,
    ShutdownRequested,
    StartError,
    StopError,
)
from ..kinds import EmulatorKind
from ..utils.logging import get_logger
from .base import EmulatorContext, EmulatorInstance
from .registry import EmulatorRegistry


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    CONNECTING = "connecting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.STARTING},
    SessionState.STARTING: {SessionState.CONNECTING, SessionState.FAILED},
    SessionState.CONNECTING: {SessionState.RUNNING, SessionState.FAILED},
    SessionState.RUNNING: {SessionState.STOPPING},
    SessionState.FAILED: {SessionState.STOPPING},
    SessionState.STOPPING: {SessionState.STOPPED},
    SessionState.STOPPED: {SessionState.STARTING},
}


class LifecycleCoordinator:
    """
    Starts, connects and stops the emulators of one session.

    Two-phase protocol:
    1. start() every emulator as soon as the emulators it depends on have started;
       independent emulators start concurrently.
    2. connect() every emulator, only once all of them have started.

    Emulators are stopped in the exact reverse of the start order. The start
    order is derived from the dependency graph (dependency depth, then
    declaration order), so it is the same on every run with the same
    configuration, however the concurrent starts interleave.
    """

    def __init__(
        self, instances: Sequence[EmulatorInstance], context: EmulatorContext | None = None
    ) -> None:
        self.context = context or EmulatorContext()
        self.instances: list[EmulatorInstance] = list(instances)
        self._log = get_logger(__name__).bind(session=self.context.session_id)

        kinds = [i.kind for i in self.instances]
        duplicates = sorted({k.value for k in kinds if kinds.count(k) > 1})
        if duplicates:
            raise ConfigError(f"Emulators declared more than once: {', '.join(duplicates)}")

        self._deps = self._resolve_dependencies()
        self._order = self._deterministic_order()

        self._state = SessionState.IDLE
        self._state_lock = threading.Lock()
        # Held for the whole of start() and stop(); stop() waits for a rollback in progress
        self._lifecycle_lock = threading.RLock()
        self._started: list[EmulatorInstance] = []
        self._stop_errors: list[StopError] = []

    # ------------------------
    # Properties
    # ------------------------
    @property
    def state(self) -> SessionState:
        with self._state_lock:
            return self._state

    @property
    def registry(self) -> EmulatorRegistry:
        return self.context.registry

    @property
    def start_order(self) -> list[EmulatorKind]:
        """Emulators that are started, in the order teardown will reverse."""
        return [i.kind for i in self._started]

    @property
    def planned_order(self) -> list[EmulatorKind]:
        """Deterministic start order of the full session."""
        return [i.kind for i in self._order]

    def dependencies(self, kind: EmulatorKind) -> frozenset[EmulatorKind]:
        return self._deps[kind]

    # ------------------------
    # Public API
    # ------------------------
    def start(self) -> EmulatorRegistry:
        """
        Start and connect every emulator of the session.

        Returns:
            EmulatorRegistry: The running emulators.

        Raises:
            StartError: An emulator failed to start. Everything that did start has
                been stopped; the error carries the collected stop errors.
            ConnectError: An emulator failed to connect; rolled back the same way.
            ShutdownRequested: request_shutdown() interrupted the start.
        """
        with self._lifecycle_lock:
            if self.state is SessionState.STOPPED:
                # Restarting a stopped session: forget the previous shutdown request
                self.context.cancel.clear()
            self._transition(SessionState.STARTING)
            self._started = []
            self._stop_errors = []
            try:
                self._start_all()
                self._transition(SessionState.CONNECTING)
                self._connect_all()
            except (StartError, ConnectError, ShutdownRequested) as e:
                self._transition(SessionState.FAILED)
                self._log.error(
                    "Emulator session failed - rolling back",
                    error=str(e),
                    emulator=e.kind.value if e.kind else None,
                )
                e.stop_errors = self._teardown()
                raise

            self._transition(SessionState.RUNNING)
            self._log.info("Emulator session running", emulators=self.registry.as_dict())
            return self.registry

    def stop(self) -> list[StopError]:
        """
        Stop every started emulator in strict reverse start order.

        Individual failures never interrupt the sequence; they are logged and
        returned. Calling stop() while start() is in progress interrupts it and
        returns the errors of its rollback. Idempotent.
        """
        if self.state in (SessionState.STARTING, SessionState.CONNECTING):
            self.request_shutdown()
        with self._lifecycle_lock:
            if self.state in (SessionState.IDLE, SessionState.STOPPED):
                return list(self._stop_errors)
            return self._teardown()

    def request_shutdown(self) -> None:
        """
        Ask the session to shut down. Safe to call from signal handlers and other threads.

        In-flight starts and connects notice it and abort; the owner of the session
        is expected to call stop() (wait_for_shutdown() returns once this is called).
        """
        if not self.context.cancel.is_set():
            self._log.info("Shutdown requested")
        self.context.cancel.set()

    def wait_for_shutdown(self, timeout: float | None = None) -> bool:
        """Block until request_shutdown() is called. Returns False on timeout."""
        return self.context.cancel.wait(timeout)

    @contextmanager
    def session(self) -> Iterator[EmulatorRegistry]:
        """Run the session for the duration of a with-block."""
        registry = self.start()
        try:
            yield registry
        finally:
            self.stop()

    # ------------------------
    # Start phase
    # ------------------------
    def _start_all(self) -> None:
        cancel = self.context.cancel
        pending = list(self._order)
        started: set[EmulatorKind] = set()
        failures: dict[EmulatorKind, BaseException] = {}
        in_flight: dict[Future[None], EmulatorInstance] = {}

        with ThreadPoolExecutor(
            max_workers=max(len(pending), 1), thread_name_prefix="devemu-start"
        ) as pool:

            def submit_ready() -> None:
                for instance in list(pending):
                    if self._deps[instance.kind] <= started:
                        pending.remove(instance)
                        in_flight[pool.submit(self._start_one, instance)] = instance

            if not cancel.is_set():
                submit_ready()
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    instance = in_flight.pop(future)
                    exc = future.exception()
                    if exc is None:
                        started.add(instance.kind)
                    else:
                        failures[instance.kind] = exc
                if failures:
                    # Abort the starts still in flight; nothing new gets submitted
                    cancel.set()
                elif not cancel.is_set():
                    submit_ready()

        # Record what is running in the deterministic order teardown relies on
        self._started = [i for i in self._order if i.kind in started]

        if failures:
            raise self._primary_error(failures, StartError)
        if cancel.is_set():
            raise ShutdownRequested("Shutdown requested while starting emulators")

    def _start_one(self, instance: EmulatorInstance) -> None:
        instance.start()
        self.registry.register(instance.info())

    # ------------------------
    # Connect phase
    # ------------------------
    def _connect_all(self) -> None:
        if self.context.cancel.is_set():
            raise ShutdownRequested("Shutdown requested before connecting emulators")
        failures: dict[EmulatorKind, BaseException] = {}
        with ThreadPoolExecutor(
            max_workers=max(len(self._started), 1), thread_name_prefix="devemu-connect"
        ) as pool:
            futures = {pool.submit(i.connect): i for i in self._started}
            done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            if any(f.exception() is not None for f in done):
                self.context.cancel.set()
            for future, instance in futures.items():
                exc = future.exception()
                if exc is not None:
                    failures[instance.kind] = exc
        if failures:
            raise self._primary_error(failures, ConnectError)

    def _primary_error(
        self,
        failures: dict[EmulatorKind, BaseException],
        error_type: type[StartError] | type[ConnectError],
    ) -> EmulatorError:
        """
        Pick the error to surface: the first real failure in declaration order.

        Emulators interrupted because a sibling failed report ShutdownRequested;
        those only surface when nothing else failed.
        """
        ordered = [(i.kind, failures[i.kind]) for i in self.instances if i.kind in failures]
        for kind, exc in ordered:
            if not isinstance(exc, ShutdownRequested):
                break
        else:
            kind, exc = ordered[0]

        for other, other_exc in ordered:
            if other is not kind:
                self._log.warning(
                    "Additional emulator failure", emulator=other.value, error=str(other_exc)
                )

        if isinstance(exc, StartError | ConnectError | ShutdownRequested):
            return exc
        error = error_type(f"{kind.value}: {exc}", kind=kind)
        error.__cause__ = exc
        return error

    # ------------------------
    # Stop phase
    # ------------------------
    def _teardown(self) -> list[StopError]:
        self._transition(SessionState.STOPPING)
        errors: list[StopError] = []
        for instance in reversed(self._started):
            try:
                error = instance.stop()
            except Exception as e:
                # stop() must not raise; keep tearing down if an emulator does anyway
                error = StopError(instance.kind, str(e))
            self.registry.unregister(instance.kind)
            if error is not None:
                errors.append(error)
                self._log.error("Emulator stop failed", emulator=instance.kind.value, error=str(error))
        self._started = []
        self._stop_errors = errors
        self._transition(SessionState.STOPPED)
        self._log.info("Emulator session stopped", stop_errors=len(errors))
        return list(errors)

    # ------------------------
    # Helpers
    # ------------------------
    def _transition(self, target: SessionState) -> None:
        with self._state_lock:
            if target not in _TRANSITIONS[self._state]:
                raise RuntimeError(
                    f"Illegal session transition {self._state.value} -> {target.value}"
                )
            self._log.debug("Session state", previous=self._state.value, state=target.value)
            self._state = target

    def _resolve_dependencies(self) -> dict[EmulatorKind, frozenset[EmulatorKind]]:
        present = {i.kind for i in self.instances}
        deps: dict[EmulatorKind, frozenset[EmulatorKind]] = {}
        for instance in self.instances:
            if instance.kind in instance.depends_on:
                raise ConfigError(f"{instance.kind.value} cannot depend on itself")
            missing = [d.value for d in instance.depends_on if d not in present]
            if missing:
                self._log.debug(
                    "Ignoring dependencies outside the session",
                    emulator=instance.kind.value,
                    missing=missing,
                )
            deps[instance.kind] = frozenset(d for d in instance.depends_on if d in present)
        return deps

    def _deterministic_order(self) -> list[EmulatorInstance]:
        """Order by dependency depth, then declaration order. Raises ConfigError on cycles."""
        depth: dict[EmulatorKind, int] = {}
        remaining = list(self.instances)
        level = 0
        while remaining:
            ready = [i for i in remaining if self._deps[i.kind] <= set(depth)]
            if not ready:
                cycle = ", ".join(i.kind.value for i in remaining)
                raise ConfigError(f"Dependency cycle between emulators: {cycle}")
            for instance in ready:
                depth[instance.kind] = level
                remaining.remove(instance)
            level += 1
        position = {i.kind: n for n, i in enumerate(self.instances)}
        return sorted(self.instances, key=lambda i: (depth[i.kind], position[i.kind]))
