"""Contract tests for the AMGe restriction build.

These tests are lightweight and fast. They enforce structural invariants of
the package: documented modules, printing confined to the stats module, and
no process-wide communicator outside the distributed context.
"""

from __future__ import annotations

import ast
import re
from pathlib import Path

import pytest


def _pyamge_dir() -> Path:
    # .../pyamge/tests/amge/test_*.py -> parents[2] is .../pyamge
    return Path(__file__).resolve().parents[2]


def _amge_files() -> list[Path]:
    pyamge_dir = _pyamge_dir()
    files = sorted((pyamge_dir / "amge").glob("*.py"))
    files.append(pyamge_dir / "restrictor.py")
    return files


def _parse(path: Path) -> ast.Module:
    return ast.parse(path.read_text(encoding="utf-8"), filename=str(path))


def _has_module_docstring_as_first_stmt(tree: ast.Module) -> bool:
    if not tree.body:
        return False
    first = tree.body[0]
    if isinstance(first, ast.Expr):
        val = first.value
        return isinstance(val, ast.Constant) and isinstance(val.value, str)
    return False


def _top_level_defs(tree: ast.Module):
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            yield node


def _find_print_calls(tree: ast.Module) -> list[ast.Call]:
    calls: list[ast.Call] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id == "print":
            calls.append(node)
    return calls


def _top_level_imports(tree: ast.Module) -> list[str]:
    names: list[str] = []
    for node in tree.body:
        if isinstance(node, ast.Import):
            names.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom) and node.module:
            names.append(node.module)
    return names


def test_file_list_is_complete() -> None:
    names = {p.name for p in _amge_files()}
    for expected in ("collector.py", "weights.py", "assembly.py", "restrictor.py", "stats.py"):
        assert expected in names


@pytest.mark.parametrize("path", _amge_files(), ids=lambda p: p.name)
def test_module_docstring_first_statement(path: Path) -> None:
    tree = _parse(path)
    assert _has_module_docstring_as_first_stmt(tree), (
        f"{path} must start with a module docstring as the first statement"
    )


@pytest.mark.parametrize("path", _amge_files(), ids=lambda p: p.name)
def test_top_level_definitions_have_docstrings(path: Path) -> None:
    tree = _parse(path)
    missing: list[str] = []
    for node in _top_level_defs(tree):
        if ast.get_docstring(node) is None:
            missing.append(f"{node.name} (line {node.lineno})")
    assert not missing, f"{path} missing docstrings for: {', '.join(missing)}"


@pytest.mark.parametrize("path", _amge_files(), ids=lambda p: p.name)
def test_print_policy(path: Path) -> None:
    tree = _parse(path)
    prints = _find_print_calls(tree)
    if path.name == "stats.py":
        return
    assert not prints, f"{path} has print() calls; printing must be confined to amge/stats.py"


@pytest.mark.parametrize("path", _amge_files(), ids=lambda p: p.name)
def test_no_global_communicator(path: Path) -> None:
    tree = _parse(path)
    assert not any(m.startswith("mpi4py") for m in _top_level_imports(tree)), (
        f"{path} imports mpi4py at module level; mpi4py is an optional dependency"
    )
    if path.name == "distributed.py":
        return
    text = path.read_text(encoding="utf-8")
    assert not re.search(r"\bCOMM_WORLD\b", text), (
        f"{path} uses COMM_WORLD; components take an explicit DistributedContext"
    )
