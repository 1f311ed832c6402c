from __future__ import annotations

import hashlib
import io
import json
import signal
import socket
import subprocess
import threading
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from urllib.error import HTTPError
from urllib.request import urlopen

import pytest

from devemu.artifacts import ArtifactFetcher
from devemu.config.models import (
    ArtifactConfig,
    DatabaseConfig,
    DownloadSettings,
    FirestoreConfig,
    FunctionsConfig,
    HostingConfig,
)
from devemu.emulator import (
    DatabaseEmulator,
    EmulatorContext,
    EmulatorInfo,
    EndpointBinding,
    FirestoreEmulator,
    FunctionsEmulator,
    HostingEmulator,
    InstanceState,
)
from devemu.emulator.coordinator import LifecycleCoordinator
from devemu.errors import ConnectError, IntegrityError, ShutdownRequested, StartError
from devemu.kinds import EmulatorKind
from devemu.utils.net import get_free_port, is_listening


def _get(url: str) -> tuple[int, bytes]:
    with urlopen(url, timeout=5) as resp:  # nosec - local test server
        return resp.status, resp.read()


@pytest.fixture
def context(tmp_path: Path) -> EmulatorContext:
    return EmulatorContext(
        log_dir=tmp_path / "logs",
        connect_timeout=0.5,
        stop_timeout=0.2,
        fetcher=ArtifactFetcher(DownloadSettings(cache_dir=str(tmp_path / "cache"))),
    )


@pytest.fixture
def peer_socket() -> Iterator[int]:
    """Something listening where a database emulator would be."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as srv:
        srv.bind(("127.0.0.1", 0))
        srv.listen()
        yield srv.getsockname()[1]


def _register_peer(context: EmulatorContext, port: int) -> None:
    peer = DatabaseEmulator(DatabaseConfig(), context)
    context.registry.register(EmulatorInfo(peer, EndpointBinding("127.0.0.1", port)))


# ------------------------
# Functions
# ------------------------
def test_functions_exposes_peer_addresses(context: EmulatorContext, peer_socket: int) -> None:
    functions = FunctionsEmulator(FunctionsConfig(port=None), context)
    functions.start()
    try:
        assert functions.state is InstanceState.STARTED
        url = functions.info().binding.url
        assert _get(f"{url}/__/health") == (200, b"OK")

        _register_peer(context, peer_socket)
        functions.connect()

        expected = {"FIREBASE_DATABASE_EMULATOR_HOST": f"127.0.0.1:{peer_socket}"}
        assert functions.worker_environment() == expected
        status, body = _get(f"{url}/__/env")
        assert status == 200
        assert json.loads(body) == expected

        with pytest.raises(HTTPError) as ei:
            _get(f"{url}/nope")
        assert ei.value.code == 404
    finally:
        assert functions.stop() is None

    assert functions.state is InstanceState.STOPPED
    assert functions.worker_environment() == {}
    assert not is_listening("127.0.0.1", int(url.rsplit(":", 1)[1]))
    assert context.ports.held() == {}


def test_functions_connect_fails_for_unreachable_peer(context: EmulatorContext) -> None:
    functions = FunctionsEmulator(FunctionsConfig(port=None), context)
    functions.start()
    try:
        _register_peer(context, get_free_port())
        with pytest.raises(ConnectError, match="unreachable after 0.5 seconds") as ei:
            functions.connect()
        assert ei.value.kind is EmulatorKind.FUNCTIONS
        assert functions.state is InstanceState.STARTED
    finally:
        functions.stop()


def test_connect_requires_started(context: EmulatorContext) -> None:
    functions = FunctionsEmulator(FunctionsConfig(port=None), context)
    with pytest.raises(ConnectError, match="cannot connect while configured"):
        functions.connect()


def test_start_twice_is_rejected(context: EmulatorContext) -> None:
    functions = FunctionsEmulator(FunctionsConfig(port=None), context)
    functions.start()
    try:
        with pytest.raises(StartError, match="already running"):
            functions.start()
    finally:
        functions.stop()
    # Stopping again is a no-op
    assert functions.stop() is None


# ------------------------
# Hosting
# ------------------------
def test_hosting_serves_site_and_discovery(context: EmulatorContext, tmp_path: Path) -> None:
    public = tmp_path / "public"
    public.mkdir()
    (public / "index.html").write_text("<h1>hello</h1>", encoding="utf-8")

    hosting = HostingEmulator(HostingConfig(port=None, public_dir=str(public)), context)
    hosting.start()
    try:
        context.registry.register(hosting.info())
        hosting.connect()
        url = hosting.info().binding.url

        assert _get(f"{url}/index.html") == (200, b"<h1>hello</h1>")
        status, body = _get(f"{url}/__/emulators.json")
        assert status == 200
        assert json.loads(body) == {
            "hosting": {"host": "127.0.0.1", "port": hosting.info().port}
        }
    finally:
        hosting.stop()
    assert hosting.emulators() == {}


def test_hosting_without_public_dir(context: EmulatorContext, tmp_path: Path) -> None:
    hosting = HostingEmulator(
        HostingConfig(port=None, public_dir=str(tmp_path / "missing")), context
    )
    with pytest.raises(StartError, match="does not exist"):
        hosting.start()
    assert hosting.state is InstanceState.CONFIGURED
    assert hosting.binding is None
    assert context.ports.held() == {}


def test_hosting_port_in_use(context: EmulatorContext, tmp_path: Path, peer_socket: int) -> None:
    hosting = HostingEmulator(HostingConfig(port=peer_socket, public_dir=str(tmp_path)), context)
    with pytest.raises(StartError, match="in use"):
        hosting.start()
    assert context.ports.held() == {}


# ------------------------
# Java process emulators
# ------------------------
class FakeProc:
    """
    Stand-in for the java child process: listens on the --port it was given.

    - exits_early: never listens and reports an exit code
    - ignores_sigterm: only SIGKILL ends it
    - never_listens: stays alive without ever opening its port
    """

    def __init__(
        self,
        port: int,
        *,
        exits_early: bool = False,
        ignores_sigterm: bool = False,
        never_listens: bool = False,
    ) -> None:
        self.pid = 424242
        self.signals: list[int] = []
        self.returncode: int | None = 1 if exits_early else None
        self.ignores_sigterm = ignores_sigterm
        self._sock: socket.socket | None = None
        if not exits_early and not never_listens:
            self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self._sock.bind(("127.0.0.1", port))
            self._sock.listen()

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        if self.returncode is None:
            raise subprocess.TimeoutExpired("java", timeout or 0)
        return self.returncode

    def deliver(self, sig: int) -> None:
        self.signals.append(sig)
        if sig == signal.SIGTERM and self.ignores_sigterm:
            return
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self.returncode = -sig


class FakeJava:
    """Patches java discovery, process spawning and group signalling."""

    def __init__(self, monkeypatch: pytest.MonkeyPatch, **proc_options: Any) -> None:
        self.calls: list[tuple[list[str], dict[str, Any]]] = []
        self.procs: list[FakeProc] = []
        self.proc_options = proc_options
        self.launched = threading.Event()
        monkeypatch.setattr("devemu.emulator.java.shutil.which", lambda name: f"/usr/bin/{name}")
        monkeypatch.setattr("devemu.emulator.java.run_cmd", self.run_cmd)
        monkeypatch.setattr("devemu.emulator.java.os.killpg", self.killpg)

    def run_cmd(self, args: list[str], **kw: Any) -> Any:
        self.calls.append((list(args), kw))
        if not kw.get("spawn"):

            class R:
                returncode = 0
                output = 'openjdk version "17.0.9"'

            return R()
        proc = FakeProc(int(args[args.index("--port") + 1]), **self.proc_options)
        self.procs.append(proc)
        self.launched.set()
        return proc

    def killpg(self, pid: int, sig: int) -> None:
        for proc in self.procs:
            if proc.pid == pid and proc.returncode is None:
                proc.deliver(sig)
                return
        raise ProcessLookupError(pid)

    @property
    def spawned(self) -> tuple[list[str], dict[str, Any]]:
        return next(c for c in self.calls if c[1].get("spawn"))


@pytest.fixture
def jar(tmp_path: Path) -> Path:
    path = tmp_path / "cloud-firestore-emulator.jar"
    path.write_bytes(b"PK\x03\x04")
    return path


def test_java_emulator_lifecycle(
    monkeypatch: pytest.MonkeyPatch, context: EmulatorContext, jar: Path
) -> None:
    java = FakeJava(monkeypatch)
    firestore = FirestoreEmulator(
        FirestoreConfig(port=None, jar_path=str(jar), extra_args=["--single_project_mode"]),
        context,
    )

    firestore.start()
    port = firestore.info().port
    argv, kw = java.spawned

    assert argv == [
        "/usr/bin/java",
        "-Duser.language=en",
        "-jar",
        str(jar),
        "--host",
        "127.0.0.1",
        "--port",
        str(port),
        "--single_project_mode",
    ]
    assert kw["new_session"] is True
    assert Path(kw["stdout"].name) == firestore.log_path
    assert firestore.log_path == context.log_dir / "firestore.log"
    assert firestore.log_path.exists()
    assert firestore.pid == 424242
    assert str(firestore.command).startswith("/usr/bin/java -Duser.language=en -jar")

    assert firestore.stop() is None
    assert java.procs[0].signals == [signal.SIGTERM]
    assert firestore.pid is None
    assert not is_listening("127.0.0.1", port)


def test_java_stop_escalates_to_sigkill(
    monkeypatch: pytest.MonkeyPatch, context: EmulatorContext, jar: Path
) -> None:
    java = FakeJava(monkeypatch, ignores_sigterm=True)
    database = DatabaseEmulator(DatabaseConfig(port=None, jar_path=str(jar)), context)
    database.start()

    assert database.stop() is None
    assert java.procs[0].signals == [signal.SIGTERM, signal.SIGKILL]


def test_java_process_exiting_early(
    monkeypatch: pytest.MonkeyPatch, context: EmulatorContext, jar: Path
) -> None:
    FakeJava(monkeypatch, exits_early=True)
    database = DatabaseEmulator(DatabaseConfig(port=None, jar_path=str(jar)), context)

    with pytest.raises(StartError, match="exited before listening") as ei:
        database.start()

    assert "database.log" in str(ei.value)
    assert database.state is InstanceState.CONFIGURED
    assert context.ports.held() == {}


def test_java_runtime_missing(
    monkeypatch: pytest.MonkeyPatch, context: EmulatorContext, jar: Path
) -> None:
    java = FakeJava(monkeypatch)
    monkeypatch.setattr("devemu.emulator.java.shutil.which", lambda name: None)
    firestore = FirestoreEmulator(FirestoreConfig(port=None, jar_path=str(jar)), context)

    with pytest.raises(StartError, match="requires a Java runtime"):
        firestore.start()
    assert java.calls == []


def test_java_jar_must_be_configured(
    monkeypatch: pytest.MonkeyPatch, context: EmulatorContext, tmp_path: Path
) -> None:
    FakeJava(monkeypatch)
    with pytest.raises(StartError, match="configure either jar_path or artifact"):
        FirestoreEmulator(FirestoreConfig(port=None), context).start()
    with pytest.raises(StartError, match="jar not found"):
        FirestoreEmulator(
            FirestoreConfig(port=None, jar_path=str(tmp_path / "absent.jar")), context
        ).start()


def _artifact(payload: bytes) -> ArtifactConfig:
    return ArtifactConfig(
        version="4.11.2",
        remote_url="https://downloads.example.test/firebase-database-emulator-v4.11.2.jar",
        expected_size=len(payload),
        expected_checksum=hashlib.sha256(payload).hexdigest(),
    )


def test_java_emulator_downloads_its_artifact(
    monkeypatch: pytest.MonkeyPatch, context: EmulatorContext
) -> None:
    payload = b"PK\x03\x04 database emulator"
    java = FakeJava(monkeypatch)
    monkeypatch.setattr("devemu.artifacts.urlopen", lambda req, timeout=None: io.BytesIO(payload))
    database = DatabaseEmulator(DatabaseConfig(port=None, artifact=_artifact(payload)), context)

    assert database.descriptor() is not None
    assert database.descriptor().name == "firebase-database-emulator-4.11.2"

    database.start()
    try:
        jar = Path(java.spawned[0][3])
        assert jar.parent == Path(context.fetcher.settings.cache_dir)
        assert jar.read_bytes() == payload
    finally:
        database.stop()


def test_java_emulator_rejects_tampered_artifact(
    monkeypatch: pytest.MonkeyPatch, context: EmulatorContext
) -> None:
    java = FakeJava(monkeypatch)
    monkeypatch.setattr(
        "devemu.artifacts.urlopen", lambda req, timeout=None: io.BytesIO(b"tampered bytes!!")
    )
    database = DatabaseEmulator(
        DatabaseConfig(port=None, artifact=_artifact(b"original bytes!!")), context
    )

    with pytest.raises(StartError) as ei:
        database.start()

    assert isinstance(ei.value.__cause__, IntegrityError)
    assert java.procs == []
    assert list(Path(context.fetcher.settings.cache_dir).iterdir()) == []


def test_stop_aborts_a_start_in_progress(
    monkeypatch: pytest.MonkeyPatch, context: EmulatorContext, jar: Path
) -> None:
    java = FakeJava(monkeypatch, never_listens=True)
    database = DatabaseEmulator(DatabaseConfig(port=None, jar_path=str(jar)), context)
    outcome: list[BaseException] = []

    def run() -> None:
        try:
            database.start()
        except BaseException as e:
            outcome.append(e)

    starter = threading.Thread(target=run)
    starter.start()
    assert java.launched.wait(5)

    began = time.monotonic()
    assert database.stop() is None
    # Returns right away instead of waiting out the 60 second start timeout
    assert time.monotonic() - began < 0.5

    starter.join(5)
    assert not starter.is_alive()
    assert len(outcome) == 1 and isinstance(outcome[0], ShutdownRequested)
    assert java.procs[0].signals == [signal.SIGTERM]
    assert database.state is InstanceState.CONFIGURED
    assert context.ports.held() == {}


@pytest.fixture
def silent_server() -> Iterator[tuple[int, threading.Event]]:
    """Accepts HTTP connections and never answers them."""
    connected = threading.Event()
    conns: list[socket.socket] = []
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.bind(("127.0.0.1", 0))
    srv.listen()

    def accept() -> None:
        while True:
            try:
                conn, _ = srv.accept()
            except OSError:
                return
            conns.append(conn)
            connected.set()

    threading.Thread(target=accept, daemon=True).start()
    try:
        yield srv.getsockname()[1], connected
    finally:
        srv.close()
        for conn in conns:
            conn.close()


def test_session_stop_interrupts_artifact_download(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    silent_server: tuple[int, threading.Event],
) -> None:
    port, connected = silent_server
    java = FakeJava(monkeypatch)
    cache = tmp_path / "cache"
    context = EmulatorContext(
        log_dir=tmp_path / "logs",
        fetcher=ArtifactFetcher(
            DownloadSettings(cache_dir=str(cache), retries=3, backoff_initial=1.0, timeout=30.0)
        ),
    )
    artifact = ArtifactConfig(
        version="4.11.2",
        remote_url=f"http://127.0.0.1:{port}/firebase-database-emulator-v4.11.2.jar",
        expected_size=4,
        expected_checksum=hashlib.sha256(b"PK\x03\x04").hexdigest(),
    )
    database = DatabaseEmulator(DatabaseConfig(port=None, artifact=artifact), context)
    coordinator = LifecycleCoordinator([database], context)
    outcome: list[BaseException] = []

    def run() -> None:
        try:
            coordinator.start()
        except BaseException as e:
            outcome.append(e)

    starter = threading.Thread(target=run)
    starter.start()
    assert connected.wait(5)

    began = time.monotonic()
    assert coordinator.stop() == []
    assert time.monotonic() - began < 2.0

    starter.join(5)
    assert not starter.is_alive()
    assert len(outcome) == 1 and isinstance(outcome[0], ShutdownRequested)
    assert java.procs == []
    assert list(cache.iterdir()) == []
    assert context.ports.held() == {}
