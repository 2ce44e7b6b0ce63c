from __future__ import annotations

import os
import signal
import subprocess
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

_IS_WINDOWS = os.name == "nt"


def new_process_group_kwargs() -> dict[str, Any]:
    """Return Popen keyword arguments that root the child in its own process group.

    Example:
        ```python
        proc = subprocess.Popen(cmd, **new_process_group_kwargs())
        ```
    """
    if _IS_WINDOWS:
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _signal_group(pid: int, sig: int) -> bool:
    """Send `sig` to the process group led by `pid`; False if the group is gone.

    Example:
        ```python
        alive = _signal_group(proc.pid, signal.SIGTERM)
        ```
    """
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        return False
    except PermissionError as exc:
        logger.warning("process_group_signal_denied", pid=pid, signal=sig, error=str(exc))
        return False
    return True


def _terminate_posix(process: subprocess.Popen[Any], grace_seconds: float) -> None:
    """Terminate a POSIX process group: SIGTERM, grace period, then SIGKILL.

    Example:
        ```python
        _terminate_posix(proc, grace_seconds=1.0)
        ```
    """
    if process.poll() is None:
        _signal_group(process.pid, signal.SIGTERM)
        try:
            process.wait(timeout=max(0.0, grace_seconds))
        except subprocess.TimeoutExpired:
            logger.info("process_ignored_sigterm", pid=process.pid)
    # The leader may be gone while descendants still hold the group.
    _signal_group(process.pid, signal.SIGKILL)


def _terminate_windows(process: subprocess.Popen[Any]) -> None:
    """Kill a Windows process and every descendant via `taskkill /T`.

    Example:
        ```python
        _terminate_windows(proc)
        ```
    """
    if process.poll() is None:
        subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(process.pid)],
            capture_output=True,
            text=True,
            check=False,
        )
    if process.poll() is None:
        process.kill()


def terminate_process_tree(process: subprocess.Popen[Any], grace_seconds: float = 1.0) -> int | None:
    """Terminate `process` together with all of its descendants and reap it.

    The process must have been started with `new_process_group_kwargs()`.
    Killing only the parent is not enough: script compilers such as
    `kotlinc` spawn a child runtime that would otherwise keep running.

    Example:
        ```python
        returncode = terminate_process_tree(proc, grace_seconds=0.5)
        ```
    """
    if _IS_WINDOWS:
        _terminate_windows(process)
    else:
        _terminate_posix(process, grace_seconds)
    try:
        returncode = process.wait(timeout=max(1.0, grace_seconds))
    except subprocess.TimeoutExpired:
        logger.error("process_survived_termination", pid=process.pid)
        return None
    logger.debug("process_tree_terminated", pid=process.pid, returncode=returncode)
    return returncode
