from __future__ import annotations

from dataclasses import dataclass
from typing import Union

NO_POSITION = None


class ScriptRunnerError(RuntimeError):
    """Base class for script-runner failures raised to the caller."""


class AlreadyRunningError(ScriptRunnerError):
    """Raised when a run is requested while another run holds the slot.

    Example:
        ```python
        try:
            supervisor.execute("println(1)", OutputChannel())
        except AlreadyRunningError:
            ...
        ```
    """

    def __init__(self) -> None:
        """Build the error with a fixed message.

        Example:
            ```python
            raise AlreadyRunningError()
            ```
        """
        super().__init__("A script is already running")


class ChannelClosedError(ScriptRunnerError):
    """Raised when sending to an output channel that was already closed."""


@dataclass(frozen=True, slots=True)
class CompilationError:
    """One compiler diagnostic, optionally linked to a position in the source.

    `source_line` and `source_offset` are 0-indexed and are either both set or
    both `None`.

    Example:
        ```python
        err = CompilationError("script.kts:1:1: error: unresolved reference: hello", 0, 0)
        ```
    """

    error_text: str
    source_line: int | None = NO_POSITION
    source_offset: int | None = NO_POSITION

    @property
    def has_position(self) -> bool:
        """Return True when the diagnostic resolved to a source offset.

        Example:
            ```python
            if err.has_position:
                editor.move_caret(err.source_offset)
            ```
        """
        return self.source_offset is not None


@dataclass(frozen=True, slots=True)
class ExitCode:
    """Terminal result of a run that the interpreter finished on its own.

    Example:
        ```python
        result = ExitCode(0)
        ```
    """

    code: int


@dataclass(frozen=True, slots=True)
class CompilationFailed:
    """Terminal result carrying the parsed compiler diagnostics.

    Example:
        ```python
        result = CompilationFailed((CompilationError("boom"),))
        ```
    """

    errors: tuple[CompilationError, ...]

    def __post_init__(self) -> None:
        """Reject an empty diagnostics list.

        Example:
            ```python
            CompilationFailed(())  # raises ValueError
            ```
        """
        if not self.errors:
            raise ValueError("CompilationFailed requires at least one error")


@dataclass(frozen=True, slots=True)
class LaunchFailed:
    """Terminal result of a run whose interpreter could not be started.

    Example:
        ```python
        result = LaunchFailed("kotlinc: not found")
        ```
    """

    reason: str


@dataclass(frozen=True, slots=True)
class Cancelled:
    """Terminal result of a run stopped by its caller.

    Example:
        ```python
        result = Cancelled()
        ```
    """


RunResult = Union[ExitCode, CompilationFailed, LaunchFailed, Cancelled]
