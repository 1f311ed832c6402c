"""
Emulators that run as a separate Java process from a downloaded jar.
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
from pathlib import Path
from typing import IO, Any, ClassVar, cast

from ..artifacts import ArtifactDescriptor
from ..config.models import JavaEmulatorConfig
from ..errors import StartError
from ..kinds import EmulatorKind
from ..utils.cli import run_cmd
from .base import EmulatorInstance
from .types import ExternalProcessCommand


class JavaEmulator(EmulatorInstance):
    """
    External-process emulator variant.

    - Resolves the jar (local jar_path, or the configured artifact from the cache)
    - Launches `java -jar` as a process group leader with output in <log_dir>/<kind>.log
    - Stops the whole process group: SIGTERM, then SIGKILL after the grace period
    """

    artifact_name: ClassVar[str]
    config: JavaEmulatorConfig

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.command: ExternalProcessCommand | None = None
        self.pid: int | None = None
        self._proc: subprocess.Popen | None = None
        self._log_file: IO[str] | None = None

    @property
    def log_path(self) -> Path:
        return Path(self.context.log_dir) / f"{self.kind.value}.log"

    def descriptor(self) -> ArtifactDescriptor | None:
        """Descriptor of the configured downloadable jar, if any."""
        artifact = self.config.artifact
        if artifact is None:
            return None
        return ArtifactDescriptor.from_config(
            f"{self.artifact_name}-{artifact.version}",
            artifact,
            self.context.fetcher.settings.cache_dir,
        )

    def resolve_jar(self) -> Path:
        """
        Return the jar to run, downloading it into the cache when needed.

        Raises:
            StartError: Neither jar_path nor artifact is configured, or jar_path is missing.
            DownloadError, IntegrityError: The artifact could not be fetched or verified.
        """
        if self.config.jar_path:
            jar = Path(self.config.jar_path).expanduser()
            if not jar.is_file():
                raise StartError(f"{self.kind.value} jar not found: {jar}", kind=self.kind)
            return jar
        descriptor = self.descriptor()
        if descriptor is None:
            raise StartError(
                f"{self.kind.value}: configure either jar_path or artifact", kind=self.kind
            )
        return self.context.fetcher.ensure_available(descriptor, cancel=self.context.cancel)

    def build_command(self, java: str, jar: Path) -> ExternalProcessCommand:
        assert self.binding is not None
        return ExternalProcessCommand(
            binary=java,
            args=[
                "-Duser.language=en",
                "-jar",
                str(jar),
                "--host",
                self.binding.host,
                "--port",
                str(self.binding.port),
                *self.config.extra_args,
            ],
        )

    def _find_java(self) -> str:
        java = shutil.which(self.config.java_bin)
        if java is None:
            raise StartError(
                f"{self.config.java_bin} not found in PATH. "
                f"The {self.kind.value} emulator requires a Java runtime.",
                kind=self.kind,
            )
        out = run_cmd([java, "-version"], check=False, timeout=15)
        if out.returncode != 0:
            raise StartError(
                f"{java} -version exited with {out.returncode}: {out.output.strip()}",
                kind=self.kind,
            )
        self._log.debug("Java runtime found", java=java, version=out.output.splitlines()[:1])
        return java

    def _start(self) -> None:
        jar = self.resolve_jar()
        java = self._find_java()
        self.command = self.build_command(java, jar)

        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._log_file = open(self.log_path, "a", encoding="utf-8")
        self._log.info(
            "Launching emulator process", cmd=str(self.command), log=str(self.log_path)
        )
        self._proc = cast(
            subprocess.Popen,
            run_cmd(self.command.argv, spawn=True, stdout=self._log_file, new_session=True),
        )
        self.pid = self._proc.pid
        self._log.info("Emulator process started", action="emulator_process_started", pid=self.pid)

        proc = self._proc
        self.wait_until_listening(
            self.config.start_timeout,
            alive=lambda: proc.poll() is None,
            hint=f"see log: {self.log_path}",
        )

    def _stop(self) -> None:
        proc, self._proc = self._proc, None
        try:
            if proc is not None and proc.poll() is None:
                self._terminate(proc)
        finally:
            if self._log_file is not None:
                self._log_file.close()
                self._log_file = None
            self.pid = None

    def _terminate(self, proc: subprocess.Popen) -> None:
        grace = self.context.stop_timeout
        self._log.info("Terminating emulator process", pid=proc.pid)
        if not self._signal_group(proc, signal.SIGTERM):
            return
        try:
            proc.wait(timeout=grace)
            return
        except subprocess.TimeoutExpired:
            self._log.warning("Emulator did not exit in time - forcing process kill", pid=proc.pid)

        if not self._signal_group(proc, signal.SIGKILL):
            return
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired as e:
            raise RuntimeError(f"process {proc.pid} survived SIGKILL") from e

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: signal.Signals) -> bool:
        """Signal the process group of proc. Returns False if it is already gone."""
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Not allowed to signal the group - fall back to the process itself
            proc.send_signal(sig)
        return True


class FirestoreEmulator(JavaEmulator):
    kind = EmulatorKind.FIRESTORE
    artifact_name = "cloud-firestore-emulator"


class DatabaseEmulator(JavaEmulator):
    kind = EmulatorKind.DATABASE
    artifact_name = "firebase-database-emulator"
