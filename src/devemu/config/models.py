from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from devemu.kinds import DEFAULT_PORTS, EmulatorKind


class EmulatorConfig(BaseModel):
    """
    Settings shared by every emulator.

    Fields:
    - enabled: include the emulator in the session
    - host: interface to bind
    - port: port to listen on; None picks a free port for this session
    - depends_on: emulators that must be started before this one
    - start_timeout: seconds to wait for the emulator to start listening
    """

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int | None = None
    depends_on: list[EmulatorKind] = Field(default_factory=list)
    start_timeout: float = 30.0

    @field_validator("port")
    @classmethod
    def _port_in_tcp_range(cls, value: int | None) -> int | None:
        if value is not None and not 0 < value < 65536:
            raise ValueError(f"port must be within 1..65535, got {value}")
        return value


class ArtifactConfig(BaseModel):
    """A versioned emulator jar published at remote_url."""

    version: str
    remote_url: HttpUrl
    expected_size: int = Field(gt=0)  # Size in bytes
    expected_checksum: str  # Hex SHA-256 digest

    @field_validator("expected_checksum")
    @classmethod
    def _hex_sha256(cls, value: str) -> str:
        value = value.strip().lower()
        if len(value) != 64 or any(c not in "0123456789abcdef" for c in value):
            raise ValueError("expected_checksum must be a hex SHA-256 digest")
        return value


class JavaEmulatorConfig(EmulatorConfig):
    """Emulators shipped as a jar and run as a separate Java process."""

    java_bin: str = "java"
    jar_path: str | None = None  # Use a local jar instead of the downloadable artifact
    artifact: ArtifactConfig | None = None
    extra_args: list[str] = Field(default_factory=list)
    start_timeout: float = 60.0  # The JVM is slower to come up than in-process servers


class FirestoreConfig(JavaEmulatorConfig):
    port: int | None = DEFAULT_PORTS[EmulatorKind.FIRESTORE]


class DatabaseConfig(JavaEmulatorConfig):
    port: int | None = DEFAULT_PORTS[EmulatorKind.DATABASE]


class FunctionsConfig(EmulatorConfig):
    port: int | None = DEFAULT_PORTS[EmulatorKind.FUNCTIONS]
    # Dependencies on emulators that are not part of the session are ignored
    depends_on: list[EmulatorKind] = Field(
        default_factory=lambda: [EmulatorKind.DATABASE, EmulatorKind.FIRESTORE]
    )


class HostingConfig(EmulatorConfig):
    port: int | None = DEFAULT_PORTS[EmulatorKind.HOSTING]
    public_dir: str = "public"  # Directory with the static site to serve


class DownloadSettings(BaseModel):
    """
    Artifact cache and download retry settings.

    Download attempts back off exponentially: backoff_initial, doubled after every
    failed attempt, never longer than backoff_max.
    """

    cache_dir: str = str(Path.home() / ".cache" / "devemu" / "emulators")
    retries: int = Field(default=3, ge=1)  # Total attempts, including the first one
    backoff_initial: float = Field(default=0.5, ge=0)
    backoff_max: float = Field(default=8.0, ge=0)
    timeout: float = Field(default=60.0, gt=0)  # Socket timeout per attempt (seconds)


class Settings(BaseSettings):
    """
    Main configuration of an emulator session.

    Loads values from the following sources:
    - Environment variables (with prefix DEVEMU_)
    - Initialization values (e.g., from YAML)
    - .env file
    - Secret files
    """

    model_config = SettingsConfigDict(env_prefix="DEVEMU_", env_nested_delimiter="__")

    functions: FunctionsConfig = Field(default_factory=FunctionsConfig)
    firestore: FirestoreConfig = Field(default_factory=FirestoreConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    hosting: HostingConfig = Field(default_factory=HostingConfig)
    download: DownloadSettings = Field(default_factory=DownloadSettings)
    connect_timeout: float = 10.0  # Max wait for a peer to become reachable on connect
    stop_timeout: float = 5.0  # Grace period before a child process gets SIGKILL
    log_dir: str = ".devemu/logs"  # devemu.log and <kind>.log process output

    def emulator(self, kind: EmulatorKind) -> EmulatorConfig:
        """Return the configuration section of the given emulator."""
        return getattr(self, kind.value)

    def enabled_kinds(self) -> list[EmulatorKind]:
        return [kind for kind in EmulatorKind if self.emulator(kind).enabled]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,  # type: type[BaseSettings]
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """
        Configure the order of configuration sources.

        Loading priority:
        1. Environment variables
        2. Initialization values (e.g., from YAML)
        3. .env file
        4. Secret files
        """
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)
