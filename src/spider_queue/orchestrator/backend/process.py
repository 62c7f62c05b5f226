"""Worker command rendering and subprocess termination helpers."""

from __future__ import annotations

import os
import shlex
import subprocess

DEFAULT_KILL_WAIT_SECONDS = 2.0


def build_worker_argv(
    command: str,
    *extra_args: str,
    os_name: str | None = None,
) -> list[str]:
    """Split the configured worker command and append extra arguments.

    Raises ValueError for an empty command.
    """

    stripped = command.strip()
    if not stripped:
        raise ValueError("Worker command is empty.")
    current_os_name = os_name or os.name
    argv = shlex.split(stripped, posix=current_os_name != "nt")
    if not argv:
        raise ValueError("Worker command rendered empty argv.")
    return [*argv, *extra_args]


def terminate_process(
    process: subprocess.Popen[str],
    *,
    grace_seconds: float = DEFAULT_KILL_WAIT_SECONDS,
) -> int | None:
    """SIGTERM, wait up to `grace_seconds`, then SIGKILL. Returns the exit code."""

    if process.poll() is not None:
        return process.returncode
    try:
        process.terminate()
    except OSError:
        return process.poll()
    try:
        return process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return process.poll()
        return process.wait(timeout=DEFAULT_KILL_WAIT_SECONDS)
