"""
execstream CLI（serve / run）。

约束：
- 使用 argparse；
- `main()` 返回 exit code 而不直接 sys.exit，便于测试。
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from execstream.config import ExecStreamSettings, load_settings
from execstream.errors import ExecStreamError

TOKEN_ENV_VAR = "EXECSTREAM_TOKEN"


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="execstream",
        description="Single-flight command execution service with live output streaming.",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """serve/run 共用的配置参数。"""

        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--host", default=None, help="Override server.host.")
        p.add_argument("--port", type=int, default=None, help="Override server.port.")

    serve = root_sub.add_parser("serve", help="Start the execution service")
    _add_common_flags(serve)

    run = root_sub.add_parser("run", help="Submit a command and follow its output")
    _add_common_flags(run)
    run.add_argument("--token-file", default=None, help="Token file path (default: server token path).")
    run.add_argument("argv", nargs=argparse.REMAINDER, help="Command to execute; use `--` before it if needed.")

    return parser


def _load(args: argparse.Namespace) -> ExecStreamSettings:
    """加载配置并应用 `--host/--port` 覆盖。"""

    settings = load_settings(config_paths=[Path(p) for p in args.config])
    updates = {}
    if args.host:
        updates["host"] = args.host
    if args.port:
        updates["port"] = args.port
    if updates:
        settings = settings.model_copy(update={"server": settings.server.model_copy(update=updates)})
    return settings


def _read_token(settings: ExecStreamSettings, token_file: Optional[str]) -> str:
    """读取 token：`EXECSTREAM_TOKEN` > `--token-file` > 服务端 token 文件。"""

    from_env = str(os.environ.get(TOKEN_ENV_VAR) or "").strip()
    if from_env:
        return from_env
    path = Path(token_file).expanduser() if token_file else settings.server.token_path
    return path.read_text(encoding="utf-8").strip()


def _handle_serve(args: argparse.Namespace) -> int:
    """启动服务（阻塞直到进程退出）。"""

    import uvicorn

    from execstream.app import create_app

    try:
        settings = _load(args)
        app = create_app(settings)
    except ExecStreamError as e:
        print(f"execstream failed to start: {e}", file=sys.stderr)
        return 1
    uvicorn.run(app, host=settings.server.host, port=settings.server.port, log_config=None)
    return 0


def _handle_run(args: argparse.Namespace) -> int:
    """提交命令并跟随输出，返回远端命令的 exit code。"""

    from execstream.client import SUBMIT_FAILED_EXIT_CODE, ExecStreamClient

    argv = list(args.argv)
    if argv[:1] == ["--"]:
        argv = argv[1:]
    command = " ".join(argv)
    try:
        settings = _load(args)
        token = _read_token(settings, args.token_file)
    except (ExecStreamError, OSError) as e:
        print(f"Error starting execution: {e}", file=sys.stderr)
        return SUBMIT_FAILED_EXIT_CODE

    client = ExecStreamClient(
        base_url=f"http://{settings.server.host}:{settings.server.port}",
        token=token,
        token_header=settings.server.token_header,
        submit_path=settings.stream.submit_path,
        stream_path=settings.stream.stream_path,
    )
    return client.run(command)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]

    返回：
    - int：exit code
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    if args.command == "serve":
        return _handle_serve(args)
    if args.command == "run":
        return _handle_run(args)
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
