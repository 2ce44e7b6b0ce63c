from __future__ import annotations

import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

from script_runner import (
    AlreadyRunningError,
    Cancelled,
    CancellationController,
    CompilationFailed,
    ExitCode,
    LaunchFailed,
    OutputChannel,
    ProcessSupervisor,
    RunHandle,
)
from script_runner.execution import ScriptRunnerError, supervisor as supervisor_module
from script_runner.execution.process_tree import new_process_group_kwargs

from conftest import ScriptSamples, fake_kotlinc_profile, posix_only, wait_until_dead


def _collect(handle) -> str:
    return "".join(handle.output)


def test_hello_world(supervisor: ProcessSupervisor) -> None:
    handle = supervisor.start(ScriptSamples.hello_world)

    assert _collect(handle) == "Hello world!\n"
    assert handle.result(timeout=30) == ExitCode(0)
    assert not supervisor.is_running


def test_execute_on_calling_thread(supervisor: ProcessSupervisor) -> None:
    channel = supervisor.new_channel()

    result = supervisor.execute(ScriptSamples.hello_world_without_newline, channel)

    assert result == ExitCode(0)
    assert channel.closed
    assert "".join(channel) == "Hello world!"


def test_source_is_staged_at_fixed_path(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    handle = supervisor.start(ScriptSamples.hello_world)
    _collect(handle)
    handle.result(timeout=30)

    assert supervisor.staged_path == (tmp_path / "staging" / "test.kts").resolve()
    assert supervisor.staged_path.read_text(encoding="utf-8") == ScriptSamples.hello_world


def test_exit_code_is_reported(supervisor: ProcessSupervisor) -> None:
    handle = supervisor.start(ScriptSamples.return_code_123)

    assert _collect(handle) == ""
    assert handle.result(timeout=30) == ExitCode(123)


def test_compilation_error(supervisor: ProcessSupervisor) -> None:
    handle = supervisor.start(ScriptSamples.compilation_error)

    assert _collect(handle) == ""
    result = handle.result(timeout=30)
    assert isinstance(result, CompilationFailed)
    first, second = result.errors
    assert (first.source_line, first.source_offset) == (0, 0)
    assert (second.source_line, second.source_offset) == (1, 8)
    assert "hello" in first.error_text and "world" not in first.error_text
    assert "world" in second.error_text and "hello" not in second.error_text


def test_runtime_failure_after_output_is_an_exit_code(supervisor: ProcessSupervisor) -> None:
    handle = supervisor.start('print("before")\nraise RuntimeError("boom")')

    output = _collect(handle)
    assert output.startswith("before\n")
    assert "RuntimeError: boom" in output
    assert handle.result(timeout=30) == ExitCode(1)


def test_stderr_is_not_forwarded_when_disabled(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(fake_kotlinc_profile(tmp_path, forward_stderr=False))
    handle = supervisor.start('print("before")\nraise RuntimeError("boom")')

    assert _collect(handle) == "before\n"
    assert handle.result(timeout=30) == ExitCode(1)


def test_second_run_is_rejected_while_running(supervisor: ProcessSupervisor) -> None:
    handle = supervisor.start(ScriptSamples.hello_world_pause)
    try:
        assert handle.output.receive(timeout=30) == "Hello\n"
        assert supervisor.is_running

        other = OutputChannel()
        with pytest.raises(AlreadyRunningError, match="A script is already running"):
            supervisor.execute(ScriptSamples.hello_world, other)
        with pytest.raises(AlreadyRunningError):
            supervisor.start(ScriptSamples.hello_world, other)
        assert not other.closed
    finally:
        handle.cancel()
        _collect(handle)

    assert handle.result(timeout=30) == Cancelled()


def test_cancel_stops_a_sleeping_script_promptly(supervisor: ProcessSupervisor) -> None:
    handle = supervisor.start(ScriptSamples.hello_world_pause)
    assert handle.output.receive(timeout=30) == "Hello\n"

    started = time.monotonic()
    assert handle.cancel() is True
    result = handle.result(timeout=10)
    elapsed = time.monotonic() - started

    assert result == Cancelled()
    assert elapsed < 5
    assert "world" not in _collect(handle)
    assert handle.output.closed
    assert not supervisor.is_running

    again = supervisor.start(ScriptSamples.hello_world)
    assert _collect(again) == "Hello world!\n"
    assert again.result(timeout=30) == ExitCode(0)


@posix_only
def test_cancel_kills_the_child_runtime(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    pid_file = tmp_path / "runtime.pid"
    code = (
        "import os, time\n"
        f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))\n"
        "print('ready')\n"
        "time.sleep(60)\n"
    )
    handle = supervisor.start(code)
    assert handle.output.receive(timeout=30) == "ready\n"
    runtime_pid = int(pid_file.read_text())

    handle.cancel()
    assert handle.result(timeout=10) == Cancelled()
    assert wait_until_dead(runtime_pid)


def test_cancel_before_start_never_launches(supervisor: ProcessSupervisor) -> None:
    controller = CancellationController()
    controller.cancel()
    channel = supervisor.new_channel()

    assert supervisor.execute(ScriptSamples.hello_world, channel, controller) == Cancelled()
    assert channel.closed
    assert list(channel) == []
    assert not supervisor.staged_path.exists()


def test_cancel_after_completion_is_a_no_op(supervisor: ProcessSupervisor) -> None:
    handle = supervisor.start(ScriptSamples.hello_world)
    _collect(handle)
    assert handle.result(timeout=30) == ExitCode(0)

    assert handle.cancel() is False
    assert handle.result() == ExitCode(0)


def test_missing_interpreter_is_a_launch_failure(tmp_path: Path) -> None:
    profile = fake_kotlinc_profile(tmp_path, command=["script-runner-no-such-interpreter"])
    supervisor = ProcessSupervisor(profile)
    channel = supervisor.new_channel()

    result = supervisor.execute(ScriptSamples.hello_world, channel)

    assert isinstance(result, LaunchFailed)
    assert "script-runner-no-such-interpreter" in result.reason
    assert channel.closed
    assert not supervisor.is_running


def test_unwritable_staging_dir_is_a_launch_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    supervisor = ProcessSupervisor(fake_kotlinc_profile(blocker))

    result = supervisor.execute(ScriptSamples.hello_world, supervisor.new_channel())

    assert isinstance(result, LaunchFailed)
    assert not supervisor.is_running


def test_caller_closing_the_channel_does_not_break_the_run(supervisor: ProcessSupervisor) -> None:
    channel = OutputChannel()
    channel.close()

    assert supervisor.execute(ScriptSamples.hello_world, channel) == ExitCode(0)


def test_large_output_is_streamed_in_bounded_chunks(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(fake_kotlinc_profile(tmp_path, chunk_size=1024, channel_capacity=2))
    handle = supervisor.start('import sys\nsys.stdout.write("x" * 100000)')

    chunks = list(handle.output)

    assert handle.result(timeout=30) == ExitCode(0)
    assert "".join(chunks) == "x" * 100000
    assert max(len(chunk) for chunk in chunks) <= 1024


def test_separate_supervisors_share_the_run_slot(supervisor: ProcessSupervisor, tmp_path: Path) -> None:
    other = ProcessSupervisor(fake_kotlinc_profile(tmp_path / "other"))
    handle = supervisor.start(ScriptSamples.hello_world_pause)
    try:
        assert handle.output.receive(timeout=30) == "Hello\n"
        assert other.is_running
        with pytest.raises(AlreadyRunningError):
            other.execute(ScriptSamples.hello_world, other.new_channel())
    finally:
        handle.cancel()
        _collect(handle)

    assert handle.result(timeout=30) == Cancelled()
    assert other.execute(ScriptSamples.hello_world, OutputChannel()) == ExitCode(0)


def test_run_handle_without_result_raises() -> None:
    handle = RunHandle(OutputChannel(), CancellationController())
    handle._complete(lambda: None)

    with pytest.raises(ScriptRunnerError, match="without a result"):
        handle.result(timeout=1)


def test_reap_closes_pipes_of_finished_drains_only(
    supervisor: ProcessSupervisor, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(supervisor_module, "_DRAIN_JOIN_TIMEOUT_SECONDS", 0.05)
    process = subprocess.Popen(
        [sys.executable, "-c", "pass"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        **new_process_group_kwargs(),
    )
    process.wait(timeout=30)
    finished = threading.Thread(target=lambda: None)
    finished.start()
    finished.join()
    release = threading.Event()
    stuck = threading.Thread(target=release.wait, daemon=True)
    stuck.start()

    run = supervisor_module._ActiveRun()
    run.process = process
    run.drains = [(finished, process.stdout), (stuck, process.stderr)]
    try:
        supervisor._reap(run)

        assert process.stdout.closed
        assert not process.stderr.closed
    finally:
        release.set()
        stuck.join(timeout=5)
        process.stderr.close()
