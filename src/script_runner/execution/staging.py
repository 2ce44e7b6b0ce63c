from __future__ import annotations

from pathlib import Path


class SourceStaging:
    """Persist source text to one reusable file the interpreter is pointed at.

    Example:
        ```python
        staging = SourceStaging(Path("/tmp/script-runner/script.kts"))
        path = staging.stage('println("hi")')
        ```
    """

    def __init__(self, path: Path) -> None:
        """Remember the fixed staging location.

        Example:
            ```python
            staging = SourceStaging(Path("/tmp/script.kts"))
            ```
        """
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        """Return the absolute staged file path.

        Example:
            ```python
            print(staging.path)
            ```
        """
        return self._path.resolve()

    def stage(self, code: str) -> Path:
        """Overwrite the staged file with `code` verbatim and return its path.

        Newlines are written untranslated so that diagnostic positions line up
        with the caller's text.

        Example:
            ```python
            path = staging.stage("hello()\\nworld()")
            ```
        """
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="") as handle:
            handle.write(code)
        return path
