from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable

from .execution.cancellation import CancellationController
from .execution.config import InterpreterProfile
from .execution.supervisor import ProcessSupervisor, RunHandle
from .execution.types import Cancelled, CompilationFailed, ExitCode, RunResult


def _resolve_profile(profile: InterpreterProfile | None, profile_file: str | None) -> InterpreterProfile:
    """Resolve the effective interpreter profile for a run.

    Example:
        ```python
        profile = _resolve_profile(None, "/tmp/profiles.toml")
        ```
    """
    if profile is not None and profile_file is not None:
        raise ValueError("Provide either 'profile' or 'profile_file', not both")
    if profile is not None:
        return profile
    return InterpreterProfile.from_file(profile_file)


@dataclass(slots=True)
class CollectedRun:
    """Terminal result of a run plus all forwarded output text.

    Example:
        ```python
        run = CollectedRun(result=ExitCode(0), output="Hello world!\\n")
        ```
    """

    result: RunResult
    output: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        """Return True when the script exited with code 0.

        Example:
            ```python
            assert run_code('println("hi")').ok
            ```
        """
        return isinstance(self.result, ExitCode) and self.result.code == 0

    @property
    def exit_code(self) -> int | None:
        """Return the interpreter exit code, when the run produced one.

        Example:
            ```python
            code = run_code("exitProcess(123)").exit_code
            ```
        """
        return self.result.code if isinstance(self.result, ExitCode) else None

    @property
    def compilation_failed(self) -> bool:
        """Return True when the result carries compiler diagnostics.

        Example:
            ```python
            if run.compilation_failed:
                show(run.result.errors)
            ```
        """
        return isinstance(self.result, CompilationFailed)


def _expire(handle: RunHandle, expired: threading.Event) -> None:
    """Cancel a run whose time budget ran out, remembering that the timer fired.

    Example:
        ```python
        threading.Timer(5, _expire, args=(handle, expired)).start()
        ```
    """
    if handle.cancel():
        expired.set()


def run_code(
    code: str,
    *,
    supervisor: ProcessSupervisor | None = None,
    profile: InterpreterProfile | None = None,
    profile_file: str | None = None,
    on_output: Callable[[str], None] | None = None,
    cancellation: CancellationController | None = None,
    timeout_seconds: float | None = None,
) -> CollectedRun:
    """Run `code`, consume its output channel and return the collected run.

    `on_output` sees every chunk as soon as it arrives. When
    `timeout_seconds` elapses the run is cancelled and reported as timed out.

    Example:
        ```python
        from script_runner import run_code
        run = run_code('println("Hello world!")')
        print(run.output, run.result)
        ```
    """
    if supervisor is not None and (profile is not None or profile_file is not None):
        raise ValueError("Provide either 'supervisor' or a profile, not both")
    supervisor = supervisor or ProcessSupervisor(_resolve_profile(profile, profile_file))
    handle = supervisor.start(code, cancellation=cancellation)

    expired = threading.Event()
    timer: threading.Timer | None = None
    if timeout_seconds is not None:
        timer = threading.Timer(timeout_seconds, _expire, args=(handle, expired))
        timer.daemon = True
        timer.start()

    parts: list[str] = []
    try:
        for chunk in handle.output:
            parts.append(chunk)
            if on_output is not None:
                on_output(chunk)
    except BaseException:
        # Interrupted consumer: stop the script and wait for cleanup before propagating.
        handle.cancel()
        for _ in handle.output:
            pass
        handle.result()
        raise
    finally:
        if timer is not None:
            timer.cancel()

    result = handle.result()
    timed_out = expired.is_set() and isinstance(result, Cancelled)
    return CollectedRun(result=result, output="".join(parts), timed_out=timed_out)
