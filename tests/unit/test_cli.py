from __future__ import annotations

import hashlib
import io
from pathlib import Path
from typing import Any

import pytest
import yaml
from typer.testing import CliRunner

from devemu.emulator.coordinator import LifecycleCoordinator
from devemu.runner.main import app

runner = CliRunner()


def _write_config(tmp_path: Path, **overrides: Any) -> Path:
    public = tmp_path / "public"
    public.mkdir(exist_ok=True)
    data: dict[str, Any] = {
        "functions": {"port": None},
        "firestore": {"enabled": False},
        "database": {"enabled": False},
        "hosting": {"port": None, "public_dir": str(public)},
        "download": {"cache_dir": str(tmp_path / "cache"), "retries": 1},
        "log_dir": str(tmp_path / "logs"),
    }
    for section, values in overrides.items():
        if isinstance(values, dict):
            data.setdefault(section, {}).update(values)
        else:
            data[section] = values
    path = tmp_path / "devemu.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def no_signal_handlers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("devemu.runner.main._install_signal_handlers", lambda coordinator: None)


def test_kinds_lists_default_ports() -> None:
    result = runner.invoke(app, ["kinds"])
    assert result.exit_code == 0
    assert "functions\t5001" in result.output
    assert "hosting\t5000" in result.output


def test_start_runs_until_shutdown(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # Return from the wait as if Ctrl+C had been pressed
    monkeypatch.setattr(LifecycleCoordinator, "wait_for_shutdown", lambda self, timeout=None: True)
    cfg = _write_config(tmp_path)

    result = runner.invoke(app, ["start", "--config", str(cfg)])

    assert result.exit_code == 0, result.output
    assert "All emulators ready" in result.output
    assert '"functions": {' in result.output
    assert '"hosting": {' in result.output
    assert (tmp_path / "logs" / "devemu.log").exists()


def test_start_failure_exits_nonzero(tmp_path: Path) -> None:
    cfg = _write_config(tmp_path, hosting={"public_dir": str(tmp_path / "missing")})

    result = runner.invoke(app, ["start", "--config", str(cfg)])

    assert result.exit_code == 1
    assert "Emulators failed to start" in result.output
    assert "does not exist" in result.output


def test_start_rejects_disabled_emulator(tmp_path: Path) -> None:
    cfg = _write_config(tmp_path)
    result = runner.invoke(app, ["start", "--config", str(cfg), "--only", "firestore"])
    assert result.exit_code == 2
    assert "disabled in the configuration" in result.output


def test_start_rejects_unknown_emulator(tmp_path: Path) -> None:
    cfg = _write_config(tmp_path)
    result = runner.invoke(app, ["start", "--config", str(cfg), "--only", "storage"])
    assert result.exit_code == 2
    assert "storage" in result.output


def test_fetch_downloads_java_artifacts(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    payload = b"PK\x03\x04 database emulator"
    monkeypatch.setattr("devemu.artifacts.urlopen", lambda req, timeout=None: io.BytesIO(payload))
    cfg = _write_config(
        tmp_path,
        database={
            "enabled": True,
            "artifact": {
                "version": "4.11.2",
                "remote_url": "https://downloads.example.test/firebase-database-emulator-v4.11.2.jar",
                "expected_size": len(payload),
                "expected_checksum": hashlib.sha256(payload).hexdigest(),
            },
        },
        firestore={"enabled": True},
    )

    result = runner.invoke(app, ["fetch", "--config", str(cfg)])

    # Firestore has neither jar_path nor artifact configured
    assert result.exit_code == 1
    assert "Fetch failed: firestore: configure either jar_path or artifact" in result.output
    jar = tmp_path / "cache" / "firebase-database-emulator-v4.11.2.jar"
    assert f"database: {jar}" in result.output
    assert jar.read_bytes() == payload

    result = runner.invoke(app, ["fetch", "--config", str(cfg), "--only", "database"])
    assert result.exit_code == 0
    assert f"database: {jar}" in result.output
