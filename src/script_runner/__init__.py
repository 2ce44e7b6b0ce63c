from .execution import (
    AlreadyRunningError,
    Cancelled,
    CancellationController,
    CompilationError,
    CompilationFailed,
    DiagnosticsParser,
    ExitCode,
    InterpreterProfile,
    LaunchFailed,
    OutputChannel,
    ProcessSupervisor,
    ProfileError,
    RunHandle,
    RunResult,
    line_start_positions,
    parse_diagnostics,
)
from .runner import CollectedRun, run_code

__all__ = [
    "AlreadyRunningError",
    "Cancelled",
    "CancellationController",
    "CollectedRun",
    "CompilationError",
    "CompilationFailed",
    "DiagnosticsParser",
    "ExitCode",
    "InterpreterProfile",
    "LaunchFailed",
    "OutputChannel",
    "ProcessSupervisor",
    "ProfileError",
    "RunHandle",
    "RunResult",
    "line_start_positions",
    "parse_diagnostics",
    "run_code",
]
