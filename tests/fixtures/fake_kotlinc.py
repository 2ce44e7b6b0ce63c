"""Stand-in for `kotlinc -script` used by the process-level tests.

Scripts are Python. Calls to names that are neither builtins nor defined in the
script are reported the way the Kotlin compiler reports unresolved references
(`<path>:<line>:<column>: error: ...`, then the source line and a caret), and
the compiler exits with 1. Otherwise the script runs in a child interpreter,
the way kotlinc hands a compiled script to a separate JVM.
"""

from __future__ import annotations

import ast
import builtins
import subprocess
import sys


def _defined_names(tree: ast.AST) -> set[str]:
    names = set(dir(builtins))
    for node in ast.walk(tree):
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(node.name)
        elif isinstance(node, ast.Name) and isinstance(node.ctx, ast.Store):
            names.add(node.id)
        elif isinstance(node, ast.alias):
            names.add((node.asname or node.name).split(".")[0])
        elif isinstance(node, ast.arg):
            names.add(node.arg)
    return names


def _unresolved_calls(tree: ast.AST) -> list[ast.Call]:
    defined = _defined_names(tree)
    calls = [
        node
        for node in ast.walk(tree)
        if isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id not in defined
    ]
    return sorted(calls, key=lambda node: (node.lineno, node.col_offset))


def _report(path: str, line: int, column: int, message: str, lines: list[str]) -> None:
    sys.stderr.write(f"{path}:{line}:{column}: error: {message}\n")
    if 0 < line <= len(lines):
        sys.stderr.write(lines[line - 1] + "\n")
        sys.stderr.write(" " * max(0, column - 1) + "^\n")


def main(argv: list[str]) -> int:
    path = argv[1]
    with open(path, encoding="utf-8") as handle:
        source = handle.read()
    lines = source.splitlines()
    try:
        tree = ast.parse(source, filename=path)
    except SyntaxError as exc:
        _report(path, exc.lineno or 1, exc.offset or 1, f"syntax error: {exc.msg}", lines)
        return 1
    unresolved = _unresolved_calls(tree)
    for call in unresolved:
        _report(
            path,
            call.lineno,
            call.col_offset + 1,
            f"unresolved reference: {call.func.id}",
            lines,
        )
    if unresolved:
        return 1
    return subprocess.call([sys.executable, "-u", path])


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
