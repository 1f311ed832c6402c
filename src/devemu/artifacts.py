"""
Downloadable emulator binaries and their integrity checks.
"""

from __future__ import annotations

import hashlib
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from http.client import HTTPException
from pathlib import Path
from typing import IO
from urllib.error import URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from .config.models import ArtifactConfig, DownloadSettings
from .errors import DownloadError, IntegrityError, ShutdownRequested
from .utils.logging import get_logger

_log = get_logger(__name__)

_CHUNK = 1024 * 1024


@dataclass(frozen=True, slots=True)
class ArtifactDescriptor:
    """
    A specific version of a downloadable emulator binary.

    local_path is only usable while the file there matches expected_size and
    expected_checksum (hex SHA-256); anything else counts as absent.
    """

    name: str
    cache_dir: Path
    remote_url: str
    expected_size: int
    expected_checksum: str
    local_path: Path = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        object.__setattr__(self, "cache_dir", Path(self.cache_dir).expanduser())
        if self.local_path is None:
            filename = Path(urlparse(self.remote_url).path).name or self.name
            object.__setattr__(self, "local_path", self.cache_dir / filename)
        else:
            object.__setattr__(self, "local_path", Path(self.local_path).expanduser())
        object.__setattr__(self, "expected_checksum", self.expected_checksum.lower())

    @classmethod
    def from_config(cls, name: str, config: ArtifactConfig, cache_dir: str | Path) -> ArtifactDescriptor:
        return cls(
            name=name,
            cache_dir=Path(cache_dir),
            remote_url=str(config.remote_url),
            expected_size=config.expected_size,
            expected_checksum=config.expected_checksum,
        )


def sha256_file(path: Path) -> str:
    """Hex SHA-256 digest of a file, read in chunks."""
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def _verify(path: Path, descriptor: ArtifactDescriptor) -> None:
    size = path.stat().st_size
    if size != descriptor.expected_size:
        raise IntegrityError(
            f"{descriptor.name}: expected {descriptor.expected_size} bytes, got {size}",
            expected=descriptor.expected_size,
            actual=size,
        )
    checksum = sha256_file(path)
    if checksum != descriptor.expected_checksum:
        raise IntegrityError(
            f"{descriptor.name}: checksum mismatch",
            expected=descriptor.expected_checksum,
            actual=checksum,
        )


def is_valid(descriptor: ArtifactDescriptor) -> bool:
    """Whether local_path holds exactly the expected artifact. Never touches the network."""
    path = descriptor.local_path
    if not path.is_file():
        return False
    try:
        _verify(path, descriptor)
    except IntegrityError:
        return False
    return True


class ArtifactFetcher:
    """
    Ensures emulator artifacts are present in the local cache.

    - Warm cache: a valid local file is returned without any network access.
    - Cold or corrupt cache: the artifact is downloaded into a temporary file next
      to its final location, verified, then moved into place with os.replace.
    - Network and storage failures are retried with exponential backoff;
      integrity failures are not.
    - A set cancel event abandons the download and any backoff with ShutdownRequested.
    """

    # How often a running download checks the cancel event (seconds)
    CANCEL_POLL_SEC = 0.1

    def __init__(self, settings: DownloadSettings | None = None) -> None:
        self.settings = settings or DownloadSettings()
        self._locks: dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(path, threading.Lock())

    def ensure_available(
        self, descriptor: ArtifactDescriptor, cancel: threading.Event | None = None
    ) -> Path:
        """
        Return the path of a verified local copy of the artifact.

        Args:
            descriptor: Artifact to make available.
            cancel: Session cancel event; once set, an in-flight download or
                backoff is abandoned.

        Raises:
            DownloadError: The artifact could not be fetched or stored after all attempts.
            IntegrityError: The downloaded file has the wrong size or checksum.
            ShutdownRequested: cancel was set before the artifact became available.
        """
        with self._lock_for(descriptor.local_path):
            if is_valid(descriptor):
                _log.debug("Artifact cache hit", artifact=descriptor.name, path=str(descriptor.local_path))
                return descriptor.local_path

            if descriptor.local_path.exists():
                _log.warning(
                    "Cached artifact does not match its checksum - fetching again",
                    artifact=descriptor.name,
                    path=str(descriptor.local_path),
                )
                descriptor.local_path.unlink()
            return self._fetch_with_retries(descriptor, cancel)

    def _fetch_with_retries(
        self, descriptor: ArtifactDescriptor, cancel: threading.Event | None
    ) -> Path:
        attempts = self.settings.retries
        delay = self.settings.backoff_initial
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            _check_cancel(descriptor, cancel)
            try:
                return self._fetch(descriptor, cancel)
            except (URLError, OSError, HTTPException) as e:
                last_error = e
                _log.warning(
                    "Artifact download failed",
                    artifact=descriptor.name,
                    url=descriptor.remote_url,
                    attempt=attempt,
                    attempts=attempts,
                    error=repr(e),
                )
                if attempt < attempts:
                    _pause(descriptor, delay, cancel)
                    delay = min(delay * 2, self.settings.backoff_max)
        raise DownloadError(
            f"Failed to download {descriptor.name} from {descriptor.remote_url} "
            f"after {attempts} attempts: {last_error!r}",
            url=descriptor.remote_url,
            attempts=attempts,
        ) from last_error

    def _fetch(self, descriptor: ArtifactDescriptor, cancel: threading.Event | None) -> Path:
        descriptor.local_path.parent.mkdir(parents=True, exist_ok=True)
        # Same directory as the target so that os.replace stays on one filesystem
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{descriptor.local_path.name}.", suffix=".part", dir=descriptor.local_path.parent
        )
        tmp = Path(tmp_name)
        try:
            _log.info("Downloading artifact", artifact=descriptor.name, url=descriptor.remote_url)
            self._download(descriptor, os.fdopen(fd, "wb"), cancel)
            _verify(tmp, descriptor)
            os.replace(tmp, descriptor.local_path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        _log.info(
            "Artifact downloaded",
            artifact=descriptor.name,
            path=str(descriptor.local_path),
            size=descriptor.expected_size,
        )
        return descriptor.local_path

    def _download(
        self, descriptor: ArtifactDescriptor, out: IO[bytes], cancel: threading.Event | None
    ) -> None:
        """
        Stream remote_url into out, which is closed afterwards.

        The transfer runs on a daemon thread so that cancel is noticed within
        CANCEL_POLL_SEC even while a socket read blocks. An abandoned transfer
        stops at its next chunk, or once its socket times out.
        """
        abort = threading.Event()
        finished = threading.Event()
        errors: list[BaseException] = []

        def transfer() -> None:
            try:
                with out:
                    req = Request(descriptor.remote_url, headers={"Accept": "application/octet-stream"})
                    with urlopen(req, timeout=self.settings.timeout) as resp:  # nosec - configured URL
                        while not abort.is_set():
                            chunk = resp.read(_CHUNK)
                            if not chunk:
                                break
                            out.write(chunk)
            except BaseException as e:
                errors.append(e)
            finally:
                finished.set()

        threading.Thread(target=transfer, name=f"download-{descriptor.name}", daemon=True).start()
        while not finished.wait(self.CANCEL_POLL_SEC):
            if cancel is not None and cancel.is_set():
                abort.set()
                _log.info("Artifact download abandoned", artifact=descriptor.name)
                raise ShutdownRequested(f"Download of {descriptor.name} interrupted by shutdown")
        if errors:
            raise errors[0]


def _check_cancel(descriptor: ArtifactDescriptor, cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise ShutdownRequested(f"Download of {descriptor.name} interrupted by shutdown")


def _pause(descriptor: ArtifactDescriptor, delay: float, cancel: threading.Event | None) -> None:
    """Back off before the next attempt; a set cancel event cuts the wait short."""
    if cancel is None:
        time.sleep(delay)
    elif cancel.wait(delay):
        _check_cancel(descriptor, cancel)


__all__ = ["ArtifactDescriptor", "ArtifactFetcher", "is_valid", "sha256_file"]
