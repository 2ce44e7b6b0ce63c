from __future__ import annotations

import argparse
import shlex
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich_argparse import RawTextRichHelpFormatter
from script_runner import (
    Cancelled,
    CompilationFailed,
    ExitCode,
    InterpreterProfile,
    LaunchFailed,
    ProcessSupervisor,
    ProfileError,
    line_start_positions,
    run_code,
)
from script_runner.execution.config import load_profiles
from script_runner.log import setup_logging

_CONSOLE = Console(no_color=False)

EXIT_LAUNCH_FAILED = 127
EXIT_TIMED_OUT = 124
EXIT_INTERRUPTED = 130


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m scr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for running scripts and inspecting interpreter profiles.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m scr",
        description=(
            "script-runner CLI\n"
            "Run a script through an external interpreter, stream its output,\n"
            "and list compiler diagnostics with their source positions."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m scr run hello.kts\n"
            "  python -m scr run hello.py --profile python\n"
            "  python -m scr run slow.kts --timeout-seconds 10\n"
            "  python -m scr profiles\n\n"
            "Custom Interpreters:\n"
            "  python -m scr --config profiles.toml run job.kts --profile nightly\n"
            "  python -m scr run job.kts --interpreter \"kotlinc -script\""
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help=(
            "Path to a profiles TOML file.\n"
            "Default: the bundled kotlin/python profiles."
        ),
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Log level for runner diagnostics on stderr (default: WARNING).",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Render runner logs as JSON lines.",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Run one script file and stream its output.",
        description=(
            "Stage the file, run it with the selected interpreter and stream stdout.\n"
            "Compile failures are shown as a table of diagnostics."
        ),
        epilog=(
            "Exit status:\n"
            "  the script's own exit code, 1 on compile failure,\n"
            f"  {EXIT_LAUNCH_FAILED} when the interpreter cannot start, {EXIT_TIMED_OUT} on timeout,\n"
            f"  {EXIT_INTERRUPTED} when interrupted with Ctrl-C."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("file", help="Script file to run.")
    run_cmd.add_argument(
        "--profile",
        help="Interpreter profile name (default: the config's default profile).",
    )
    run_cmd.add_argument(
        "--interpreter",
        help=(
            "Override the profile's interpreter command.\n"
            "Example: --interpreter \"python3 -u\""
        ),
    )
    run_cmd.add_argument(
        "--staging-dir",
        help="Directory that holds the staged copy of the script.",
    )
    run_cmd.add_argument(
        "--timeout-seconds",
        type=float,
        help="Cancel the run after this many seconds.",
    )

    sub.add_parser(
        "profiles",
        help="List available interpreter profiles.",
        description="Show every interpreter profile from the bundled defaults or --config.",
        formatter_class=_HELP_FORMATTER,
    )
    return parser


def build_profile(args: argparse.Namespace) -> InterpreterProfile:
    """Resolve the interpreter profile from CLI flags.

    Example:
        ```python
        profile = build_profile(args)
        ```
    """
    profile = InterpreterProfile.from_file(args.config, name=args.profile)
    overrides: dict[str, Any] = {}
    if args.interpreter:
        overrides["command"] = shlex.split(args.interpreter)
    if args.staging_dir:
        overrides["staging_dir"] = Path(args.staging_dir)
    return profile.with_overrides(**overrides) if overrides else profile


def build_supervisor(args: argparse.Namespace) -> ProcessSupervisor:
    """Create the ProcessSupervisor for a `run` invocation.

    Example:
        ```python
        supervisor = build_supervisor(args)
        ```
    """
    return ProcessSupervisor(build_profile(args))


def _write_chunk(chunk: str) -> None:
    """Write one output chunk verbatim.

    Example:
        ```python
        _write_chunk("Hello world!\\n")
        ```
    """
    _CONSOLE.file.write(chunk)
    _CONSOLE.file.flush()


def _print_diagnostics(errors: Sequence[Any], source: str) -> None:
    """Render compiler diagnostics in a rich table with 1-based positions.

    Example:
        ```python
        _print_diagnostics(result.errors, source)
        ```
    """
    starts = line_start_positions(source)
    table = Table(title="Compilation Errors")
    table.add_column("#", style="cyan")
    table.add_column("Line", style="magenta")
    table.add_column("Column")
    table.add_column("Message")
    for index, error in enumerate(errors, start=1):
        if error.source_line is None or error.source_offset is None:
            line, column = "-", "-"
        else:
            line = str(error.source_line + 1)
            column = str(error.source_offset - starts[error.source_line] + 1)
        table.add_row(str(index), line, column, Text(error.error_text))
    _CONSOLE.print(table)


def _print_profiles(profiles: dict[str, InterpreterProfile]) -> None:
    """Render interpreter profiles in a rich table.

    Example:
        ```python
        _print_profiles(load_profiles())
        ```
    """
    table = Table(title="Interpreter Profiles")
    table.add_column("Name", style="cyan")
    table.add_column("Command", style="magenta")
    table.add_column("Script")
    table.add_column("Diagnostics")
    for name in sorted(profiles):
        profile = profiles[name]
        diagnostics = (
            "off"
            if profile.compile_failure_exit_code is None
            else f"exit {profile.compile_failure_exit_code}, {profile.diagnostic_match}"
        )
        table.add_row(name, shlex.join(profile.command), profile.script_name, diagnostics)
    _CONSOLE.print(table)


def _run(args: argparse.Namespace) -> int:
    """Handle the `run` command.

    Example:
        ```python
        code = _run(build_parser().parse_args(["run", "hello.kts"]))
        ```
    """
    path = Path(args.file)
    try:
        source = path.read_text(encoding="utf-8")
    except OSError as exc:
        _CONSOLE.print(Panel.fit(f"Cannot read {path}: {exc}", style="bold red"))
        return 2

    supervisor = build_supervisor(args)
    try:
        collected = run_code(
            source,
            supervisor=supervisor,
            on_output=_write_chunk,
            timeout_seconds=args.timeout_seconds,
        )
    except KeyboardInterrupt:
        _CONSOLE.print(Panel.fit("Interrupted; script stopped.", style="bold yellow"))
        return EXIT_INTERRUPTED

    result = collected.result
    if isinstance(result, ExitCode):
        return result.code
    if isinstance(result, CompilationFailed):
        _print_diagnostics(result.errors, source)
        return 1
    if isinstance(result, LaunchFailed):
        _CONSOLE.print(Panel.fit(result.reason, title="Launch Failed", border_style="red"))
        return EXIT_LAUNCH_FAILED
    if isinstance(result, Cancelled) and collected.timed_out:
        _CONSOLE.print(
            Panel.fit(f"Timed out after {args.timeout_seconds}s; script stopped.", style="bold yellow")
        )
        return EXIT_TIMED_OUT
    _CONSOLE.print(Panel.fit("Script cancelled.", style="bold yellow"))
    return EXIT_INTERRUPTED


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `scr` CLI command handler.

    Example:
        ```python
        code = main(["run", "hello.kts"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    setup_logging(args.log_level, json=args.json_logs)

    try:
        if args.command == "profiles":
            _print_profiles(load_profiles(args.config))
            return 0
        if args.command == "run":
            return _run(args)
    except ProfileError as exc:
        _CONSOLE.print(Panel.fit(f"[bold red]Profile error:[/bold red] {exc}", border_style="red"))
        return 2

    parser.error("Unhandled command")
    return 2
