from __future__ import annotations

import socket
import threading
import time
from typing import cast

import psutil


def is_listening(host: str, port: int, timeout: float = 0.6) -> bool:
    """
    Check that (host, port) is accepting connections (port is open and listening).

    Args:
        host: Address to check, for example "127.0.0.1".
        port: Port to check.
        timeout: Connection timeout in seconds.

    Returns:
        True if a TCP connection can be established (port is listening), otherwise False.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def wait_for_listen(
    host: str,
    port: int,
    timeout: float,
    *,
    interval: float = 0.15,
    cancel: threading.Event | None = None,
) -> bool:
    """
    Poll (host, port) until it accepts connections.

    Returns True once listening, False on timeout or when `cancel` gets set.
    """
    deadline = time.monotonic() + timeout
    while True:
        if cancel is not None and cancel.is_set():
            return False
        if is_listening(host, port):
            return True
        if time.monotonic() >= deadline:
            return False
        if cancel is not None:
            cancel.wait(interval)
        else:
            time.sleep(interval)


def get_free_port(host: str = "127.0.0.1") -> int:
    """
    Find a free TCP port on the given interface.

    Opens a temporary socket bound to (host, 0) to obtain an available port.
    Note: a race condition is possible between returning the value and actual use.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        addr_port = cast(tuple[str, int], s.getsockname())
        return addr_port[1]


def owner_info(port: int) -> str:
    """
    Return information about the process that is listening on the given TCP port.

    Iterates over `psutil.net_connections(kind="inet")` looking for a LISTEN entry on
    the port and returns "PID <pid>, name '<name>', user '<user>'". On access errors
    or if the process has already exited, returns "PID <pid>"; "unknown" otherwise.
    """
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        return "unknown"
    for c in connections:
        if c.laddr and c.laddr.port == port and c.status == psutil.CONN_LISTEN:
            try:
                p = psutil.Process(c.pid or 0)
                return f"PID {p.pid}, name '{p.name()}', user '{p.username()}'"
            except (psutil.Error, ValueError):
                return f"PID {c.pid}"
    return "unknown"
