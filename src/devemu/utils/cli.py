from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from typing import IO, Any


class Completed:
    """
    Wrapper around subprocess.CompletedProcess that decodes stdout and stderr into strings.
    """

    def __init__(self, proc: subprocess.CompletedProcess):
        self.returncode = proc.returncode
        self.stdout = _decode(proc.stdout)
        self.stderr = _decode(proc.stderr)

    @property
    def output(self) -> str:
        """Combined stdout and stderr (java prints its version banner to stderr)."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def _decode(data: Any) -> str:
    if isinstance(data, bytes | bytearray):
        return data.decode(errors="ignore")
    return data or ""


def run_cmd(
    args: Sequence[str],
    *,
    check: bool = True,
    spawn: bool = False,
    timeout: int | None = None,
    stdout: IO[Any] | None = None,
    env: Mapping[str, str] | None = None,
    new_session: bool = False,
) -> Completed | subprocess.Popen:
    """
    Execute a command as a subprocess.

    Args:
        args (Sequence[str]): Command and arguments to execute.
        check (bool): If True, raise CalledProcessError on failure.
        spawn (bool): If True, start the process asynchronously and return a Popen object.
        timeout (int | None): Optional timeout in seconds for waiting for completion.
        stdout (IO | None): Spawn only. File that receives both stdout and stderr.
        env (Mapping | None): Spawn only. Environment for the child process.
        new_session (bool): Spawn only. Start the child as a process group leader
            so the whole group can be signalled on stop.

    Returns:
        Completed | subprocess.Popen:
            - Completed: Result with stdout/stderr as strings (if `spawn=False`)
            - subprocess.Popen: Process object (if `spawn=True`)

    Raises:
        subprocess.CalledProcessError: If `check=True` and process exits with a nonzero code.
        FileNotFoundError: If the executable does not exist.
    """
    if spawn:
        return subprocess.Popen(
            list(args),
            stdout=stdout,
            stderr=subprocess.STDOUT if stdout is not None else None,
            env=dict(env) if env is not None else None,
            start_new_session=new_session,
        )

    proc = subprocess.run(args, capture_output=True, timeout=timeout, check=False)

    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, args, proc.stdout, proc.stderr)

    return Completed(proc)
