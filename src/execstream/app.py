from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect

from execstream import __version__
from execstream.auth import TokenAuthenticator, TokenGateMiddleware
from execstream.broadcast import LogBroadcast
from execstream.completion import CompletionRegistry
from execstream.config import ExecStreamSettings, load_settings
from execstream.connection import CANNOT_ACCEPT, WebSocketConnection
from execstream.coordinator import ExecutionCoordinator
from execstream.errors import BusyError, ValidationError, http_error
from execstream.logsink import (
    BroadcastLogHandler,
    configure_logging,
    install_output_handler,
    uninstall_output_handler,
)
from execstream.runner import CommandRunner, SubprocessRunner

logger = logging.getLogger(__name__)

STOP_MESSAGE = "STOP"


@dataclass
class Services:
    """
    进程级组件装配（显式构造，生命周期由 `create_app` 的 lifespan 管理）。

    说明：
    - 所有组件共享同一份实例；测试可通过 `app.state.services` 访问。
    """

    settings: ExecStreamSettings
    authenticator: TokenAuthenticator
    broadcast: LogBroadcast
    completion: CompletionRegistry
    runner: CommandRunner
    coordinator: ExecutionCoordinator
    output_handler: Optional[BroadcastLogHandler] = None

    def close(self) -> None:
        """关闭：卸载 output handler，并等待进行中的执行结束（有上限）。"""

        if self.output_handler is not None:
            uninstall_output_handler(self.output_handler, self.settings.logging)
            self.output_handler = None
        self.coordinator.shutdown()


def build_services(settings: ExecStreamSettings, *, runner: Optional[CommandRunner] = None) -> Services:
    """
    按配置构造全部组件（不做 I/O；token 初始化由调用方负责）。

    参数：
    - settings：已校验的配置
    - runner：可选的自定义 runner（默认 `SubprocessRunner`）
    """

    if runner is None:
        runner = SubprocessRunner(
            output_logger=settings.logging.output_logger,
            cwd=settings.runner.cwd,
            shell=settings.runner.shell,
            stop_grace_sec=settings.runner.stop_grace_sec,
            encoding=settings.runner.encoding,
        )
    broadcast = LogBroadcast()
    completion = CompletionRegistry()
    return Services(
        settings=settings,
        authenticator=TokenAuthenticator(settings.server.token_path),
        broadcast=broadcast,
        completion=completion,
        runner=runner,
        coordinator=ExecutionCoordinator(runner=runner, broadcast=broadcast, completion=completion),
    )


async def _consume_control(websocket: WebSocket, connection: WebSocketConnection, services: Services) -> bool:
    """
    读取客户端控制消息。

    返回：
    - True：客户端已断开
    - False：收到非法消息，已请求以 1003 关闭（需等待 pump 发出 close 帧）
    """

    while True:
        try:
            message = await websocket.receive_text()
        except WebSocketDisconnect:
            return True
        if message == STOP_MESSAGE:
            services.coordinator.stop()
            continue
        logger.warning("invalid message received on %s: %r", connection.connection_id, message)
        connection.close(CANNOT_ACCEPT, f"Invalid message received: {message}")
        return False


def create_app(settings: Optional[ExecStreamSettings] = None, *, runner: Optional[CommandRunner] = None) -> FastAPI:
    """
    构造 FastAPI 应用。

    参数：
    - settings：配置（默认 `load_settings()`）
    - runner：可选的自定义 runner（测试注入）

    异常：
    - InitializationError：token 文件无法初始化（不得对外提供服务）
    """

    settings = settings or load_settings()
    configure_logging(settings.logging)
    services = build_services(settings, runner=runner)
    services.authenticator.initialize()
    services.output_handler = install_output_handler(services.broadcast, settings.logging)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        """退出时关闭 services。"""

        try:
            yield
        finally:
            services.close()

    app = FastAPI(title="execstream", version=__version__, lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        TokenGateMiddleware,
        authenticator=services.authenticator,
        header_name=settings.server.token_header,
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        """健康检查（附带当前执行状态）。"""

        return {
            "ok": True,
            "busy": services.coordinator.is_busy,
            "state": services.coordinator.state.value,
            "history_size": services.broadcast.history_size,
        }

    @app.post(settings.stream.submit_path, status_code=202)
    async def submit(request: Request) -> Response:
        """
        提交一条命令（body 为原始 text/plain，UTF-8）。

        说明：
        - 202：已受理（输出与结束状态通过 WebSocket 获取）
        - 400：body 为空/全空白/非 UTF-8
        - 429：已有执行在进行中
        """

        raw = await request.body()
        try:
            command = raw.decode("utf-8")
            services.coordinator.execute(command)
        except UnicodeDecodeError:
            raise http_error("validation", "command must be UTF-8 text", status_code=400)
        except ValidationError as e:
            raise http_error("validation", e.message, status_code=400)
        except BusyError as e:
            raise http_error("busy", e.message, status_code=429)
        except Exception as e:
            logger.exception("failed to submit command for execution")
            raise http_error("internal", f"failed to submit command for execution: {e}", status_code=500)
        return Response(status_code=202)

    @app.websocket(settings.stream.stream_path)
    async def stream(websocket: WebSocket) -> None:
        """
        输出流：回放 backlog -> 实时日志 -> 以 close reason 携带 exit code 结束。

        客户端只允许发送 `STOP`；其它文本会以 1003 关闭该连接。
        """

        connection = WebSocketConnection(websocket)
        # 先注册再 accept：客户端握手完成时已能收到之后的全部输出与结束状态
        services.broadcast.subscribe(connection)
        services.completion.add_observer(connection)
        sender: Optional[asyncio.Task[Any]] = None
        receiver: Optional[asyncio.Task[Any]] = None
        try:
            await websocket.accept()
            logger.debug("websocket open: %s", connection.connection_id)
            sender = asyncio.create_task(connection.pump())
            receiver = asyncio.create_task(_consume_control(websocket, connection, services))
            done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done and not receiver.cancelled() and receiver.exception() is None and not receiver.result():
                # 非法消息：等待 close 帧发出
                await asyncio.gather(sender, return_exceptions=True)
            for task in pending:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in (sender, receiver):
                if task.done() and not task.cancelled():
                    exc = task.exception()
                    if exc is not None and not isinstance(exc, WebSocketDisconnect):
                        logger.warning("websocket %s failed: %s", connection.connection_id, exc)
        finally:
            services.broadcast.unsubscribe(connection)
            services.completion.remove_observer(connection)
            connection.detach()
            for task in (sender, receiver):
                if task is not None and not task.done():
                    task.cancel()
            logger.debug("websocket closed: %s", connection.connection_id)

    return app
