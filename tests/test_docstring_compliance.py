from __future__ import annotations

import ast
from pathlib import Path
from typing import List, Tuple

_PACKAGE_ROOT = Path(__file__).resolve().parents[1] / "src" / "execstream"


def _missing_docstrings(py_path: Path) -> List[Tuple[int, str]]:
    """返回 (lineno, qualname) 列表：没有 docstring 的 class/def/async def（含嵌套定义）。"""

    tree = ast.parse(py_path.read_text(encoding="utf-8"), filename=str(py_path))
    missing: List[Tuple[int, str]] = []

    def _walk(node: ast.AST, prefix: str) -> None:
        for child in ast.iter_child_nodes(node):
            if isinstance(child, (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)):
                qualname = f"{prefix}{child.name}"
                if ast.get_docstring(child) is None:
                    missing.append((child.lineno, qualname))
                _walk(child, qualname + ".")
            else:
                _walk(child, prefix)

    _walk(tree, "")
    return missing


def test_every_definition_in_package_has_docstring() -> None:
    """
    Docstring 合规护栏。

    规则：
    - 扫描 `src/execstream` 下所有 `.py` 文件；
    - 每个 `class/def/async def` 必须有 docstring（一行即可）。
    """

    assert _PACKAGE_ROOT.is_dir()
    lines = []
    for py_path in sorted(_PACKAGE_ROOT.rglob("*.py")):
        rel = py_path.relative_to(_PACKAGE_ROOT.parent)
        lines.extend(f"- {rel}:{lineno} {qualname}" for lineno, qualname in _missing_docstrings(py_path))

    assert not lines, "missing docstrings:\n" + "\n".join(lines)
