from __future__ import annotations

import os
import tempfile
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .diagnostics import MATCH_RULES
from .streaming import DEFAULT_CHANNEL_CAPACITY, DEFAULT_CHUNK_SIZE, DEFAULT_POLL_INTERVAL_SECONDS


class ProfileError(ValueError):
    """Raised when an interpreter profile is missing or malformed."""


def _default_profiles_path() -> Path:
    """Return bundled default interpreter profiles TOML path.

    Example:
        ```python
        path = _default_profiles_path()
        ```
    """
    return Path(__file__).with_name("default_profiles.toml")


def _default_staging_dir() -> Path:
    """Return the per-user directory that holds the staged script.

    Example:
        ```python
        staging_dir = _default_staging_dir()
        ```
    """
    return Path(tempfile.gettempdir()) / "script-runner"


def _read_profiles_toml(path: Path) -> dict[str, Any]:
    """Read a profiles TOML file and return its raw table.

    Example:
        ```python
        raw = _read_profiles_toml(Path("/tmp/profiles.toml"))
        ```
    """
    if not path.exists():
        return {
            "default": "kotlin",
            "profiles": {
                "kotlin": {
                    "command": ["kotlinc", "-script"],
                    "script_name": "script.kts",
                    "shell_on_windows": True,
                },
            },
        }
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ProfileError(f"Invalid profiles file {path}: {exc}") from exc
    return raw


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings profile field.

    Example:
        ```python
        command = _list_of_str(["kotlinc", "-script"], "command")
        ```
    """
    if not isinstance(value, list):
        raise ProfileError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ProfileError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


def _profile_tables(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Collect named profile tables from a raw TOML document.

    A single `[profile]` table is accepted as a profile named after its
    `name` key (or "custom").

    Example:
        ```python
        tables = _profile_tables({"profiles": {"kotlin": {"command": ["kotlinc"]}}})
        ```
    """
    tables: dict[str, dict[str, Any]] = {}
    profiles = raw.get("profiles", {})
    if not isinstance(profiles, dict):
        raise ProfileError("'profiles' must be a TOML table of tables")
    for name, table in profiles.items():
        if not isinstance(table, dict):
            raise ProfileError(f"Profile '{name}' must be a TOML table")
        tables[str(name)] = table
    single = raw.get("profile")
    if single is not None:
        if not isinstance(single, dict):
            raise ProfileError("'profile' must be a TOML table")
        tables[str(single.get("name", "custom"))] = single
    return tables


_DEFAULT_PROFILES_RAW = _read_profiles_toml(_default_profiles_path())
DEFAULT_PROFILE_NAME = str(_DEFAULT_PROFILES_RAW.get("default", "kotlin"))
DEFAULT_COMPILE_FAILURE_EXIT_CODE = 1
DEFAULT_TERMINATION_GRACE_SECONDS = 1.0


@dataclass(slots=True)
class InterpreterProfile:
    """How to invoke one script interpreter and read its diagnostics.

    Example:
        ```python
        profile = InterpreterProfile(command=["kotlinc", "-script"], script_name="script.kts")
        ```
    """

    command: list[str]
    script_name: str
    name: str = "custom"
    staging_dir: Path = field(default_factory=_default_staging_dir)
    compile_failure_exit_code: int | None = DEFAULT_COMPILE_FAILURE_EXIT_CODE
    diagnostic_match: str = "contains"
    diagnostic_delimiter: str = ":"
    chunk_size: int = DEFAULT_CHUNK_SIZE
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    channel_capacity: int = DEFAULT_CHANNEL_CAPACITY
    termination_grace_seconds: float = DEFAULT_TERMINATION_GRACE_SECONDS
    forward_stderr: bool = True
    shell_on_windows: bool = False

    def __post_init__(self) -> None:
        """Validate field values after dataclass initialization.

        Example:
            ```python
            InterpreterProfile(command=["kotlinc", "-script"], script_name="script.kts")
            ```
        """
        if not self.command or not all(isinstance(part, str) and part for part in self.command):
            raise ProfileError("'command' must be a non-empty list of non-empty strings")
        if not self.script_name or Path(self.script_name).name != self.script_name:
            raise ProfileError("'script_name' must be a bare file name")
        if self.diagnostic_match not in MATCH_RULES:
            raise ProfileError(f"'diagnostic_match' must be one of {MATCH_RULES}")
        if not self.diagnostic_delimiter:
            raise ProfileError("'diagnostic_delimiter' must not be empty")
        if self.chunk_size < 1:
            raise ProfileError("'chunk_size' must be positive")
        if self.poll_interval_seconds <= 0:
            raise ProfileError("'poll_interval_seconds' must be positive")
        if self.channel_capacity < 1:
            raise ProfileError("'channel_capacity' must be positive")
        if self.termination_grace_seconds < 0:
            raise ProfileError("'termination_grace_seconds' must not be negative")
        self.staging_dir = Path(self.staging_dir).expanduser()

    @property
    def script_path(self) -> Path:
        """Return the fixed path the source text is staged to.

        Example:
            ```python
            path = profile.script_path
            ```
        """
        return self.staging_dir / self.script_name

    def build_command(self, script_path: Path) -> list[str]:
        """Return the argv that runs `script_path` as a script.

        Example:
            ```python
            argv = profile.build_command(Path("/tmp/script.kts"))
            ```
        """
        argv = [*self.command, str(script_path)]
        if self.shell_on_windows and os.name == "nt":
            return ["cmd", "/c", *argv]
        return argv

    def with_overrides(self, **changes: Any) -> "InterpreterProfile":
        """Return a copy with some fields replaced.

        Example:
            ```python
            fast = profile.with_overrides(poll_interval_seconds=0.005)
            ```
        """
        return replace(self, **changes)

    @classmethod
    def from_table(cls, name: str, table: dict[str, Any]) -> "InterpreterProfile":
        """Create a profile from one TOML table.

        Example:
            ```python
            profile = InterpreterProfile.from_table("kotlin", {"command": ["kotlinc", "-script"], "script_name": "a.kts"})
            ```
        """
        if "command" not in table or "script_name" not in table:
            raise ProfileError(f"Profile '{name}' needs 'command' and 'script_name'")
        staging_dir = table.get("staging_dir")
        try:
            compile_failure_exit_code: int | None = int(
                table.get("compile_failure_exit_code", DEFAULT_COMPILE_FAILURE_EXIT_CODE)
            )
            if not bool(table.get("diagnostics", True)):
                compile_failure_exit_code = None
            return cls(
                name=name,
                command=_list_of_str(table["command"], "command"),
                script_name=str(table["script_name"]),
                staging_dir=Path(staging_dir) if staging_dir else _default_staging_dir(),
                compile_failure_exit_code=compile_failure_exit_code,
                diagnostic_match=str(table.get("diagnostic_match", "contains")),
                diagnostic_delimiter=str(table.get("diagnostic_delimiter", ":")),
                chunk_size=int(table.get("chunk_size", DEFAULT_CHUNK_SIZE)),
                poll_interval_seconds=float(
                    table.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)
                ),
                channel_capacity=int(table.get("channel_capacity", DEFAULT_CHANNEL_CAPACITY)),
                termination_grace_seconds=float(
                    table.get("termination_grace_seconds", DEFAULT_TERMINATION_GRACE_SECONDS)
                ),
                forward_stderr=bool(table.get("forward_stderr", True)),
                shell_on_windows=bool(table.get("shell_on_windows", False)),
            )
        except ProfileError:
            raise
        except (TypeError, ValueError) as exc:
            raise ProfileError(f"Profile '{name}' is invalid: {exc}") from exc

    @classmethod
    def from_file(cls, config_path: str | None = None, name: str | None = None) -> "InterpreterProfile":
        """Load a named profile from a TOML file (or the bundled defaults).

        Without `name`, the file's `default` key is used; a file holding a
        single profile needs no `default`.

        Example:
            ```python
            profile = InterpreterProfile.from_file("/tmp/profiles.toml", name="kotlin")
            ```
        """
        raw = _load_raw(config_path)
        profiles = _build_profiles(raw)
        chosen = name or raw.get("default")
        if chosen is None and len(profiles) == 1:
            return next(iter(profiles.values()))
        chosen = str(chosen or DEFAULT_PROFILE_NAME)
        if chosen not in profiles:
            available = ", ".join(sorted(profiles)) or "none"
            raise ProfileError(f"Unknown profile '{chosen}'. Available: {available}")
        return profiles[chosen]


def _load_raw(config_path: str | None) -> dict[str, Any]:
    """Return the raw TOML document for `config_path`, or the bundled defaults.

    Example:
        ```python
        raw = _load_raw("/tmp/profiles.toml")
        ```
    """
    if config_path is None:
        return _DEFAULT_PROFILES_RAW
    path = Path(config_path).expanduser()
    if not path.exists():
        raise ProfileError(f"Profiles file not found: {config_path}")
    return _read_profiles_toml(path)


def _build_profiles(raw: dict[str, Any]) -> dict[str, InterpreterProfile]:
    """Build profile objects for every table in a raw TOML document.

    Example:
        ```python
        profiles = _build_profiles(_DEFAULT_PROFILES_RAW)
        ```
    """
    return {
        name: InterpreterProfile.from_table(name, table)
        for name, table in _profile_tables(raw).items()
    }


def load_profiles(config_path: str | None = None) -> dict[str, InterpreterProfile]:
    """Load every profile defined in a TOML file (or the bundled defaults).

    Example:
        ```python
        profiles = load_profiles()
        kotlin = profiles["kotlin"]
        ```
    """
    return _build_profiles(_load_raw(config_path))


def default_profile() -> InterpreterProfile:
    """Return the bundled default interpreter profile.

    Example:
        ```python
        profile = default_profile()
        ```
    """
    return InterpreterProfile.from_file(None)
