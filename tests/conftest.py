from __future__ import annotations

import os
import sys
import time
from pathlib import Path

import pytest
import structlog

from script_runner import InterpreterProfile, ProcessSupervisor

FAKE_KOTLINC = Path(__file__).resolve().parent / "fixtures" / "fake_kotlinc.py"
CODE_FILENAME = "test.kts"

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX process groups required")


class ScriptSamples:
    hello_world = 'print("Hello world!")'
    hello_world_without_newline = 'print("Hello world!", end="")'
    compilation_error = "hello()\nworld()"
    return_code_123 = "raise SystemExit(123)"
    hello_world_pause = 'import time\nprint("Hello")\ntime.sleep(10)\nprint("world")'


def fake_kotlinc_profile(staging_dir: Path, **overrides) -> InterpreterProfile:
    profile = InterpreterProfile(
        name="fake-kotlin",
        command=[sys.executable, str(FAKE_KOTLINC)],
        script_name=CODE_FILENAME,
        staging_dir=staging_dir,
        termination_grace_seconds=0.5,
    )
    return profile.with_overrides(**overrides) if overrides else profile


def pid_alive(pid: int) -> bool:
    stat = Path(f"/proc/{pid}/stat")
    if Path("/proc/self").exists():
        try:
            state = stat.read_text().rsplit(")", 1)[1].split()[0]
        except OSError:
            return False
        # Zombies are dead for our purposes; reaping is up to their new parent.
        return state not in {"Z", "X"}
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def wait_until_dead(pid: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    return not pid_alive(pid)


@pytest.fixture
def profile(tmp_path: Path) -> InterpreterProfile:
    return fake_kotlinc_profile(tmp_path / "staging")


@pytest.fixture
def supervisor(profile: InterpreterProfile) -> ProcessSupervisor:
    return ProcessSupervisor(profile)


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()
