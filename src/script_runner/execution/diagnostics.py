from __future__ import annotations

from pathlib import Path

import structlog

from .types import NO_POSITION, CompilationError, CompilationFailed, ExitCode, RunResult

logger = structlog.get_logger(__name__)

MATCH_CONTAINS = "contains"
MATCH_PREFIX = "prefix"
MATCH_RULES = (MATCH_CONTAINS, MATCH_PREFIX)


def line_start_positions(source: str) -> list[int]:
    """Return the character offset at which each line of `source` starts.

    Example:
        ```python
        assert line_start_positions("ab\\ncd") == [0, 3]
        ```
    """
    starts = [0]
    for index, char in enumerate(source):
        if char == "\n":
            starts.append(index + 1)
    return starts


def _line_end(source: str, starts: list[int], line: int) -> int:
    """Return the offset one past the last character of `line` (excluding the newline).

    Example:
        ```python
        end = _line_end("ab\\ncd", [0, 3], 0)  # 2
        ```
    """
    if line + 1 < len(starts):
        return starts[line + 1] - 1
    return len(source)


def _to_index(field: str) -> int | None:
    """Convert a 1-based numeric field to a 0-based index, or None.

    Example:
        ```python
        assert _to_index("3") == 2
        ```
    """
    text = field.strip()
    if not (text.isascii() and text.isdigit()):
        return None
    index = int(text) - 1
    return index if index >= 0 else None


class DiagnosticsParser:
    """Turn interpreter stderr into structured compilation errors.

    Compiler diagnostics are expected as `<file>:<line>:<column>: <message>`,
    optionally followed by continuation lines (source excerpt, caret).

    Example:
        ```python
        parser = DiagnosticsParser(Path("/tmp/script.kts"))
        result = parser.classify(1, stderr_text, had_stdout=False, source_text=code)
        ```
    """

    def __init__(
        self,
        script_path: Path,
        *,
        match: str = MATCH_CONTAINS,
        delimiter: str = ":",
        compile_failure_exit_code: int | None = 1,
    ) -> None:
        """Configure how diagnostic header lines are recognized.

        Example:
            ```python
            parser = DiagnosticsParser(Path("/tmp/script.kts"), match="prefix")
            ```
        """
        if match not in MATCH_RULES:
            raise ValueError(f"match must be one of {MATCH_RULES}, got {match!r}")
        if not delimiter:
            raise ValueError("delimiter must be a non-empty string")
        self._script_path = str(script_path)
        self._file_token = f"{Path(script_path).name}{delimiter}"
        self._match = match
        self._delimiter = delimiter
        self._compile_failure_exit_code = compile_failure_exit_code

    def classify(self, exit_code: int, stderr_text: str, had_stdout: bool, source_text: str) -> RunResult:
        """Decide between a plain exit code and a compilation failure.

        Example:
            ```python
            result = parser.classify(1, "script.kts:1:1: error: x", False, "x")
            ```
        """
        if (
            self._compile_failure_exit_code is None
            or exit_code != self._compile_failure_exit_code
            or had_stdout
            or not stderr_text
        ):
            return ExitCode(exit_code)
        errors = self.parse(stderr_text, source_text)
        if not errors:
            return ExitCode(exit_code)
        logger.info("compilation_failed", errors=len(errors))
        return CompilationFailed(tuple(errors))

    def parse(self, stderr_text: str, source_text: str) -> list[CompilationError]:
        """Split stderr into diagnostic entries in order of appearance.

        Example:
            ```python
            errors = parser.parse("script.kts:2:1: error: boom", "a\\nb")
            ```
        """
        starts = line_start_positions(source_text)
        errors: list[CompilationError] = []
        current: list[str] = []
        position: tuple[int | None, int | None] = (NO_POSITION, NO_POSITION)

        for line in stderr_text.splitlines():
            header = self._header_remainder(line)
            if current and header is not None:
                errors.append(CompilationError("\n".join(current), *position))
                current = []
            if not current:
                position = self._resolve(header, source_text, starts)
            current.append(line)

        if current:
            errors.append(CompilationError("\n".join(current), *position))
        return errors

    def _header_remainder(self, line: str) -> str | None:
        """Return the text after the file token when `line` opens a diagnostic.

        Example:
            ```python
            rest = parser._header_remainder("/tmp/script.kts:1:2: error: x")  # ":1:2: error: x"
            ```
        """
        if self._match == MATCH_PREFIX:
            if line.startswith(self._script_path):
                return line[len(self._script_path):]
            return None
        index = line.find(self._file_token)
        if index < 0:
            return None
        return line[index + len(self._file_token) - len(self._delimiter):]

    def _resolve(
        self, remainder: str | None, source_text: str, starts: list[int]
    ) -> tuple[int | None, int | None]:
        """Resolve `:<line>:<column>` into a (line, offset) pair or (None, None).

        Example:
            ```python
            line, offset = parser._resolve(":2:1: error", "a\\nb", [0, 2])  # (1, 2)
            ```
        """
        if remainder is None or not remainder.startswith(self._delimiter):
            return NO_POSITION, NO_POSITION
        fields = remainder[len(self._delimiter):].split(self._delimiter, 2)
        if len(fields) < 2:
            return NO_POSITION, NO_POSITION
        line, column = _to_index(fields[0]), _to_index(fields[1])
        if line is None or column is None or line >= len(starts):
            return NO_POSITION, NO_POSITION
        offset = starts[line] + column
        # Must index the source text: a newline counts, the end of the text does not.
        if offset > _line_end(source_text, starts, line) or offset >= len(source_text):
            return NO_POSITION, NO_POSITION
        return line, offset


def parse_diagnostics(
    stderr_text: str,
    source_text: str,
    script_path: Path,
    *,
    match: str = MATCH_CONTAINS,
    delimiter: str = ":",
) -> list[CompilationError]:
    """Parse compiler stderr without any exit-code gating.

    Example:
        ```python
        errors = parse_diagnostics(stderr, code, Path("/tmp/script.kts"))
        ```
    """
    parser = DiagnosticsParser(script_path, match=match, delimiter=delimiter)
    return parser.parse(stderr_text, source_text)
