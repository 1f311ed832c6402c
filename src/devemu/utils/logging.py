from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Mapping, MutableMapping
from pathlib import Path
from typing import Any

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars

_DEFAULT_LOG_DIR = ".devemu/logs"

# Level below DEBUG accepted by DEVEMU_LOG_LEVEL=TRACE
TRACE = 5

_file_lock = threading.RLock()
_log_dir = Path(os.getenv("DEVEMU_LOG_DIR", _DEFAULT_LOG_DIR))


def _ensure_log_dir() -> None:
    try:
        _log_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass


def _level_from_env() -> int:
    """Get log level from DEVEMU_LOG_LEVEL (TRACE|DEBUG|INFO|WARNING|ERROR)."""
    return parse_level(os.getenv("DEVEMU_LOG_LEVEL", "INFO"))


def parse_level(raw: str | int) -> int:
    if isinstance(raw, int):
        return raw
    name = raw.strip().upper()
    if name == "TRACE":
        return TRACE
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def _copy_event_to_message(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> Mapping[str, Any]:
    if "event" in event_dict and "message" not in event_dict:
        event_dict["message"] = event_dict["event"]
    return event_dict


def _drop_none_values(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> Mapping[str, Any]:
    return {k: v for k, v in event_dict.items() if v is not None}


def _file_sink_processor(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """
    Duplicate every record as a JSON line into <log dir>/devemu.log.

    The emulator child processes write their own output next to it (<kind>.log).
    """
    _ensure_log_dir()
    line = json.dumps(event_dict, ensure_ascii=False, default=str)
    try:
        with _file_lock:
            with (_log_dir / "devemu.log").open("a", encoding="utf-8") as f:
                f.write(line + "\n")
    except OSError:
        # Never break execution because of log write issues
        pass
    return event_dict


def log_dir() -> Path:
    """Directory that holds devemu.log and the per-emulator process logs."""
    return _log_dir


def bind_context(*, session: str | None = None, emulator: Any | None = None) -> None:
    """
    Bind session/emulator info into the logging context.

    This data is then automatically included in all structured log records
    emitted from the current thread or task.
    """
    bind_contextvars(session=session, emulator=getattr(emulator, "value", emulator))


_CONFIGURED = False


def setup_logging(level: str | int | None = None, directory: str | Path | None = None) -> None:
    """
    Centralized setup of structured logging with JSON output and file duplication.

    Includes:
    - Log level from the argument or DEVEMU_LOG_LEVEL
    - ISO 8601 timestamp (key: "timestamp")
    - Context (session, emulator) via contextvars
    - Duplication of each record into <log dir>/devemu.log
    - JSON lines printed to stdout

    Calling it again with explicit arguments reconfigures the pipeline.
    """
    global _CONFIGURED, _log_dir
    if _CONFIGURED and level is None and directory is None:
        return

    if directory is not None:
        _log_dir = Path(directory)
    _ensure_log_dir()

    resolved = parse_level(level) if level is not None else _level_from_env()

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.CallsiteParameterAdder(
                [structlog.processors.CallsiteParameter.MODULE]
            ),
            _copy_event_to_message,
            _drop_none_values,
            _file_sink_processor,
            structlog.processors.JSONRenderer(default=str),
        ],
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(resolved),
        # Resolve sys.stdout on every call: CLI runners and test capture swap it
        cache_logger_on_first_use=False,
    )

    # Sync root logging level (for third-party libraries)
    logging.getLogger().setLevel(resolved)

    _CONFIGURED = True


def get_logger(name: str | None = None) -> Any:
    """
    Get a structlog logger instance.

    Ensures logging is configured even in plain unit-test runs without the CLI.
    """
    if not _CONFIGURED:
        setup_logging()
    return structlog.get_logger(name or __name__)


__all__ = [
    "TRACE",
    "bind_context",
    "clear_contextvars",
    "get_logger",
    "log_dir",
    "parse_level",
    "setup_logging",
]
