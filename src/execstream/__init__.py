"""
execstream：单执行槽位的命令执行服务（HTTP 提交 + WebSocket 实时输出）。

对外入口：
- `execstream.app.create_app`：构造 FastAPI 应用
- `execstream.cli.main`：`serve` / `run` 命令行
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
