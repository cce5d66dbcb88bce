"""
连接抽象（registry 只依赖“发送文本 / 关闭 / 是否可用”三个能力）。

说明：
- `LogBroadcast` 与 `CompletionRegistry` 只操作 `Connection` 协议，不感知具体传输；
- `WebSocketConnection` 把任意线程的发送请求桥接到 event loop：
  出站帧进入 asyncio.Queue，由单个 `pump()` 协程串行发送（同一 socket 同时最多一个 send）。
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from starlette.websockets import WebSocket, WebSocketState

from execstream.errors import DeliveryError

logger = logging.getLogger(__name__)

_ids = itertools.count(1)

NORMAL_CLOSURE = 1000
CANNOT_ACCEPT = 1003
POLICY_VIOLATION = 1008


@runtime_checkable
class Connection(Protocol):
    """一个客户端长连接的最小能力集合。"""

    @property
    def connection_id(self) -> str:
        """连接标识（用于日志）。"""

    @property
    def is_open(self) -> bool:
        """连接是否仍可发送。"""

    def send_text(self, text: str) -> None:
        """发送一条文本消息；连接不可用时抛 `DeliveryError`。"""

    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        """关闭连接（reason 随 close 帧送达客户端）；重复调用为 no-op。"""


@dataclass(frozen=True)
class _Frame:
    """出站帧（text / close / stop）。"""

    kind: str  # text | close | stop
    text: str = ""
    code: int = NORMAL_CLOSURE


class WebSocketConnection:
    """
    基于 Starlette WebSocket 的 `Connection` 实现。

    约束：
    - `close()` 立即把连接标记为不可用（之后的 `send_text` 抛 `DeliveryError`），
      close 帧排在已入队的文本之后，因此 close 总是客户端收到的最后一帧；
    - `detach()` 在客户端断开时调用，停止 pump 并丢弃未发送的帧。
    """

    def __init__(self, websocket: WebSocket, *, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """绑定 websocket 与当前 event loop。"""

        self._ws = websocket
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[_Frame] = asyncio.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._id = f"ws-{next(_ids)}"

    @property
    def connection_id(self) -> str:
        """连接标识（`ws-N`，用于日志）。"""

        return self._id

    @property
    def is_open(self) -> bool:
        """`close()` / `detach()` 之后为 False。"""

        with self._lock:
            return not self._closed

    def _enqueue(self, frame: _Frame) -> None:
        """线程安全地把帧投递到 event loop 的队列。"""

        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, frame)
        except RuntimeError as e:
            # event loop 已关闭
            raise DeliveryError("event loop is closed", details={"connection_id": self._id}) from e

    def send_text(self, text: str) -> None:
        """排队一条文本帧；连接已关闭时抛 `DeliveryError`。"""

        with self._lock:
            if self._closed:
                raise DeliveryError("connection is closed", details={"connection_id": self._id})
            self._enqueue(_Frame(kind="text", text=str(text)))

    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        """排队 close 帧；重复调用为 no-op。"""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._enqueue(_Frame(kind="close", text=str(reason), code=int(code)))

    def detach(self) -> None:
        """客户端已断开：标记关闭并让 pump 退出（不再发送任何帧）。"""

        with self._lock:
            self._closed = True
        try:
            self._enqueue(_Frame(kind="stop"))
        except DeliveryError:
            pass

    async def pump(self) -> None:
        """
        串行发送出站帧，直到发送 close 帧或被 detach。

        说明：
        - 由 WebSocket handler 作为独立 task 运行；
        - 发送 close 帧后返回，handler 据此结束连接。
        """

        while True:
            frame = await self._queue.get()
            if frame.kind == "stop":
                return
            if self._ws.application_state == WebSocketState.DISCONNECTED:
                return
            if frame.kind == "text":
                await self._ws.send_text(frame.text)
                continue
            logger.debug("closing %s (code=%s reason=%r)", self._id, frame.code, frame.text)
            await self._ws.close(code=frame.code, reason=frame.text)
            return

    def __repr__(self) -> str:
        """调试用表示。"""

        return f"WebSocketConnection(id={self._id!r}, open={self.is_open})"
