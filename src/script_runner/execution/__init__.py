from .types import (
    AlreadyRunningError,
    Cancelled,
    ChannelClosedError,
    CompilationError,
    CompilationFailed,
    ExitCode,
    LaunchFailed,
    RunResult,
    ScriptRunnerError,
)
from .cancellation import CancellationController
from .config import InterpreterProfile, ProfileError, default_profile, load_profiles
from .diagnostics import DiagnosticsParser, line_start_positions, parse_diagnostics
from .streaming import OutputChannel, OutputStreamer
from .supervisor import ProcessSupervisor, RunHandle, RunSlot

__all__ = [
    "AlreadyRunningError",
    "Cancelled",
    "CancellationController",
    "ChannelClosedError",
    "CompilationError",
    "CompilationFailed",
    "DiagnosticsParser",
    "ExitCode",
    "InterpreterProfile",
    "LaunchFailed",
    "OutputChannel",
    "OutputStreamer",
    "ProcessSupervisor",
    "ProfileError",
    "RunHandle",
    "RunResult",
    "RunSlot",
    "ScriptRunnerError",
    "default_profile",
    "line_start_positions",
    "load_profiles",
    "parse_diagnostics",
]
