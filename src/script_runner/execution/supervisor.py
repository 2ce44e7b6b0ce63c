from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import Any, Callable

import structlog

from .cancellation import CancellationController
from .config import InterpreterProfile, default_profile
from .diagnostics import DiagnosticsParser
from .process_tree import new_process_group_kwargs, terminate_process_tree
from .staging import SourceStaging
from .streaming import OutputChannel, OutputStreamer
from .types import (
    AlreadyRunningError,
    Cancelled,
    ChannelClosedError,
    CompilationFailed,
    ExitCode,
    LaunchFailed,
    RunResult,
    ScriptRunnerError,
)

logger = structlog.get_logger(__name__)

_DRAIN_JOIN_TIMEOUT_SECONDS = 5.0


class RunSlot:
    """Single-run guard: acquiring is an atomic, non-blocking test-and-set.

    Example:
        ```python
        slot = RunSlot()
        if slot.try_acquire():
            slot.release()
        ```
    """

    def __init__(self) -> None:
        """Create an idle slot.

        Example:
            ```python
            slot = RunSlot()
            ```
        """
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        """Move the slot to running; False if it already was.

        Example:
            ```python
            accepted = slot.try_acquire()
            ```
        """
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        """Return the slot to idle.

        Example:
            ```python
            slot.release()
            ```
        """
        self._lock.release()

    @property
    def is_running(self) -> bool:
        """Return True while a run holds the slot.

        Example:
            ```python
            busy = slot.is_running
            ```
        """
        return self._lock.locked()


# Shared by every ProcessSupervisor: at most one run per process.
_RUN_SLOT = RunSlot()


class _TextBuffer:
    """Thread-safe accumulator for captured stderr text."""

    def __init__(self) -> None:
        """Create an empty buffer.

        Example:
            ```python
            buffer = _TextBuffer()
            ```
        """
        self._lock = threading.Lock()
        self._parts: list[str] = []

    def append(self, text: str) -> None:
        """Append one decoded chunk.

        Example:
            ```python
            buffer.append("error: x\\n")
            ```
        """
        with self._lock:
            self._parts.append(text)

    def text(self) -> str:
        """Return everything appended so far.

        Example:
            ```python
            captured = buffer.text()
            ```
        """
        with self._lock:
            return "".join(self._parts)


class RunHandle:
    """Caller-side view of a run started in the background.

    Example:
        ```python
        handle = supervisor.start('println("hi")')
        for chunk in handle.output:
            print(chunk, end="")
        result = handle.result()
        ```
    """

    def __init__(self, output: OutputChannel, cancellation: CancellationController) -> None:
        """Bind the run's output channel and cancellation controller.

        Example:
            ```python
            handle = RunHandle(OutputChannel(), CancellationController())
            ```
        """
        self.output = output
        self.cancellation = cancellation
        self._done = threading.Event()
        self._result: RunResult | None = None
        self._error: Exception | None = None

    def cancel(self) -> bool:
        """Request cancellation; no-op once the run has completed.

        Example:
            ```python
            handle.cancel()
            ```
        """
        return self.cancellation.cancel()

    def done(self) -> bool:
        """Return True once the terminal result is available.

        Example:
            ```python
            finished = handle.done()
            ```
        """
        return self._done.is_set()

    def result(self, timeout: float | None = None) -> RunResult:
        """Wait for and return the terminal result.

        Re-raises any unexpected error the run hit.

        Example:
            ```python
            result = handle.result(timeout=30)
            ```
        """
        if not self._done.wait(timeout):
            raise TimeoutError("Run did not finish in time")
        if self._error is not None:
            raise self._error
        if self._result is None:
            raise ScriptRunnerError("Run finished without a result")
        return self._result

    def _complete(self, target: Callable[[], RunResult]) -> None:
        """Run `target` and store its result or error for `result()`.

        Example:
            ```python
            threading.Thread(target=handle._complete, args=(run,)).start()
            ```
        """
        try:
            self._result = target()
        except Exception as exc:
            logger.exception("run_crashed")
            self._error = exc
        finally:
            self._done.set()


class ProcessSupervisor:
    """Run one script at a time through an external interpreter.

    Example:
        ```python
        supervisor = ProcessSupervisor(InterpreterProfile.from_file(name="kotlin"))
        channel = supervisor.new_channel()
        result = supervisor.execute('println("Hello world!")', channel)
        ```
    """

    def __init__(self, profile: InterpreterProfile | None = None) -> None:
        """Prepare staging and diagnostics for `profile` (default: bundled default).

        Example:
            ```python
            supervisor = ProcessSupervisor()
            ```
        """
        self._profile = profile or default_profile()
        self._slot = _RUN_SLOT
        self._staging = SourceStaging(self._profile.script_path)
        self._parser = DiagnosticsParser(
            self._staging.path,
            match=self._profile.diagnostic_match,
            delimiter=self._profile.diagnostic_delimiter,
            compile_failure_exit_code=self._profile.compile_failure_exit_code,
        )

    @property
    def profile(self) -> InterpreterProfile:
        """Return the interpreter profile this supervisor runs with.

        Example:
            ```python
            print(supervisor.profile.name)
            ```
        """
        return self._profile

    @property
    def is_running(self) -> bool:
        """Return True while any run is in flight in this process.

        Example:
            ```python
            if not supervisor.is_running:
                supervisor.start(code)
            ```
        """
        return self._slot.is_running

    @property
    def staged_path(self) -> Path:
        """Return the fixed path source text is staged to.

        Example:
            ```python
            path = supervisor.staged_path
            ```
        """
        return self._staging.path

    def new_channel(self) -> OutputChannel:
        """Create an output channel sized by the profile.

        Example:
            ```python
            channel = supervisor.new_channel()
            ```
        """
        return OutputChannel(capacity=self._profile.channel_capacity)

    def execute(
        self,
        code: str,
        output: OutputChannel,
        cancellation: CancellationController | None = None,
    ) -> RunResult:
        """Run `code` to completion on the calling thread.

        Stdout chunks are sent to `output` as they arrive; the channel is
        closed exactly once when the run ends. Raises `AlreadyRunningError`
        without touching `output` when another run is active.

        Example:
            ```python
            result = supervisor.execute("exitProcess(123)", channel)
            ```
        """
        if not self._slot.try_acquire():
            logger.warning("run_rejected_already_running")
            raise AlreadyRunningError()
        return self._run_acquired(code, output, cancellation or CancellationController())

    def start(
        self,
        code: str,
        output: OutputChannel | None = None,
        cancellation: CancellationController | None = None,
    ) -> RunHandle:
        """Start `code` on a background thread and return its handle.

        The slot is taken on the calling thread, so `AlreadyRunningError`
        is raised synchronously.

        Example:
            ```python
            handle = supervisor.start(code)
            handle.cancel()
            ```
        """
        if not self._slot.try_acquire():
            logger.warning("run_rejected_already_running")
            raise AlreadyRunningError()
        handle = RunHandle(output or self.new_channel(), cancellation or CancellationController())
        thread = threading.Thread(
            target=handle._complete,
            args=(lambda: self._run_acquired(code, handle.output, handle.cancellation),),
            name="script-runner-supervisor",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError:
            self._slot.release()
            raise
        return handle

    def _run_acquired(
        self,
        code: str,
        output: OutputChannel,
        cancellation: CancellationController,
    ) -> RunResult:
        """Run `code` while holding the slot; always releases it.

        Example:
            ```python
            result = supervisor._run_acquired(code, channel, CancellationController())
            ```
        """
        run = _ActiveRun()
        result: RunResult | None = None
        try:
            result = self._drive(code, output, cancellation, run)
            return result
        finally:
            if not isinstance(result, (ExitCode, CompilationFailed)):
                run.stop.set()
            self._reap(run)
            output.close()
            self._slot.release()
            logger.info("run_finished", outcome=type(result).__name__ if result is not None else "error")

    def _drive(
        self,
        code: str,
        output: OutputChannel,
        cancellation: CancellationController,
        run: "_ActiveRun",
    ) -> RunResult:
        """Stage, spawn, drain, wait and classify one run.

        Example:
            ```python
            result = supervisor._drive(code, channel, CancellationController(), _ActiveRun())
            ```
        """
        if cancellation.cancelled:
            return Cancelled()
        try:
            script_path = self._staging.stage(code)
        except OSError as exc:
            logger.error("staging_failed", path=str(self._staging.path), error=str(exc))
            return LaunchFailed(f"Could not write {self._staging.path}: {exc}")

        argv = self._profile.build_command(script_path)
        if cancellation.cancelled:
            return Cancelled()
        try:
            run.process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(script_path.parent),
                **new_process_group_kwargs(),
            )
        except OSError as exc:
            logger.error("launch_failed", argv=argv, error=str(exc))
            return LaunchFailed(f"Could not start '{argv[0]}': {exc}")
        logger.info("process_started", pid=run.process.pid, argv=argv)

        stdout = self._spawn_drain(
            run,
            run.process.stdout,
            lambda text: self._forward(output, text, run.stop),
            "stdout",
        )
        self._spawn_drain(run, run.process.stderr, run.stderr.append, "stderr")

        exit_code = self._wait_for_exit(run.process, cancellation)
        if exit_code is None:
            logger.info("run_cancelled", pid=run.process.pid)
            run.stop.set()
            return Cancelled()

        # Reap lingering descendants; whatever they already wrote stays readable.
        self._reap(run)
        stderr_text = run.stderr.text()
        result = self._parser.classify(exit_code, stderr_text, stdout.had_output, code)
        logger.info(
            "process_exited",
            exit_code=exit_code,
            had_stdout=stdout.had_output,
            outcome=type(result).__name__,
        )
        if isinstance(result, ExitCode) and stderr_text and self._profile.forward_stderr:
            self._forward(output, stderr_text, run.stop)
        return result

    def _forward(self, output: OutputChannel, text: str, abort: threading.Event) -> None:
        """Send `text` to the caller's channel unless the caller already closed it.

        Example:
            ```python
            supervisor._forward(channel, "Hello\\n", run.stop)
            ```
        """
        try:
            output.send(text, abort=abort)
        except ChannelClosedError:
            logger.warning("output_channel_closed_by_caller", dropped_chars=len(text))

    def _spawn_drain(
        self,
        run: "_ActiveRun",
        pipe: Any,
        sink: Callable[[str], object],
        name: str,
    ) -> OutputStreamer:
        """Start a daemon thread draining `pipe` into `sink`.

        Example:
            ```python
            streamer = supervisor._spawn_drain(run, proc.stdout, chunks.append, "stdout")
            ```
        """
        process = run.process
        streamer = OutputStreamer(
            pipe.fileno(),
            sink,
            lambda: process is not None and process.poll() is None,
            chunk_size=self._profile.chunk_size,
            poll_interval=self._profile.poll_interval_seconds,
            stop=run.stop,
            name=name,
        )
        thread = threading.Thread(target=streamer.run, name=f"script-runner-{name}", daemon=True)
        thread.start()
        run.drains.append((thread, pipe))
        return streamer

    def _wait_for_exit(self, process: subprocess.Popen[bytes], cancellation: CancellationController) -> int | None:
        """Wait for the interpreter to exit; None when cancellation wins.

        Example:
            ```python
            exit_code = supervisor._wait_for_exit(proc, controller)
            ```
        """
        poll_interval = self._profile.poll_interval_seconds
        while True:
            try:
                exit_code = process.wait(timeout=poll_interval)
            except subprocess.TimeoutExpired:
                if cancellation.cancelled:
                    return None
                continue
            return exit_code if cancellation.complete() else None

    def _reap(self, run: "_ActiveRun") -> None:
        """Terminate the process tree, join the drains and close the pipes once.

        Example:
            ```python
            supervisor._reap(run)
            ```
        """
        process = run.process
        if process is None or run.reaped:
            return
        run.reaped = True
        terminate_process_tree(process, self._profile.termination_grace_seconds)
        for thread, _ in run.drains:
            thread.join(timeout=_DRAIN_JOIN_TIMEOUT_SECONDS)
            if thread.is_alive():
                logger.warning("drain_still_running", thread=thread.name)
                run.stop.set()
                thread.join(timeout=_DRAIN_JOIN_TIMEOUT_SECONDS)
        for thread, pipe in run.drains:
            # Still reading: its descriptor stays open.
            if thread.is_alive():
                logger.error("drain_abandoned", pid=process.pid, thread=thread.name)
                continue
            pipe.close()


class _ActiveRun:
    """Per-run state owned by the supervisor thread."""

    def __init__(self) -> None:
        """Create empty run state.

        Example:
            ```python
            run = _ActiveRun()
            ```
        """
        self.process: subprocess.Popen[bytes] | None = None
        self.stop = threading.Event()
        self.drains: list[tuple[threading.Thread, Any]] = []
        self.stderr = _TextBuffer()
        self.reaped = False
