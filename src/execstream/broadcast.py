"""
日志广播（当前 run 的可回放日志 + 实时扇出）。

约束：
- history 只属于本模块：publish 追加、subscribe 回放、clear 清空；
- subscribe 的“回放 + 注册”与 publish 的“追加 + 扇出”共用同一把顺序锁，
  因此订阅者不会漏行、不会重复、也不会先收到新行再收到回放；
- 同一连接的发送通过 per-connection lock 串行化（懒创建，unsubscribe 时移除）；
- 单个连接发送失败只记录日志，不影响 publisher 与其它订阅者。
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Protocol

from execstream.connection import Connection

logger = logging.getLogger(__name__)


class LogHistory(Protocol):
    """当前 run 的有序日志存储。"""

    def append(self, line: str) -> None:
        """追加一行。"""

    def snapshot(self) -> List[str]:
        """按追加顺序返回全部行。"""

    def clear(self) -> None:
        """清空全部行。"""

    def size(self) -> int:
        """当前行数。"""


class InMemoryLogHistory:
    """进程内 history（进程重启即丢失；不做持久化）。"""

    def __init__(self) -> None:
        """创建空 history。"""

        self._lock = threading.Lock()
        self._lines: List[str] = []

    def append(self, line: str) -> None:
        """追加一行。"""

        with self._lock:
            self._lines.append(line)

    def snapshot(self) -> List[str]:
        """返回当前全部行的副本。"""

        with self._lock:
            return list(self._lines)

    def clear(self) -> None:
        """清空。"""

        with self._lock:
            self._lines.clear()

    def size(self) -> int:
        """当前行数。"""

        with self._lock:
            return len(self._lines)


class LogBroadcast:
    """
    日志广播中枢。

    说明：
    - 订阅关系跨 run 保留（clear 只清空 history，不影响订阅者）；
    - key 为连接对象本身（身份语义），允许同一连接同时注册到 `CompletionRegistry`。
    """

    def __init__(self, history: LogHistory | None = None) -> None:
        """创建广播器（history 默认为 `InMemoryLogHistory`）。"""

        self._history: LogHistory = history if history is not None else InMemoryLogHistory()
        self._order_lock = threading.Lock()
        self._subscribers: Dict[Connection, None] = {}
        self._locks_guard = threading.Lock()
        self._send_locks: Dict[Connection, threading.Lock] = {}

    @property
    def history_size(self) -> int:
        """history 当前行数。"""

        return self._history.size()

    @property
    def subscriber_count(self) -> int:
        """当前订阅者数量。"""

        with self._order_lock:
            return len(self._subscribers)

    def history(self) -> List[str]:
        """返回当前 history 的快照（只读副本）。"""

        return self._history.snapshot()

    def subscribe(self, connection: Connection) -> None:
        """
        订阅：先按原顺序回放 history，再注册为实时订阅者。

        参数：
        - connection：订阅的连接（重复订阅不会重复回放）
        """

        with self._order_lock:
            if connection in self._subscribers:
                return
            backlog = self._history.snapshot()
            for line in backlog:
                self._deliver(connection, line)
            self._subscribers[connection] = None
        logger.debug("subscribed %s (replayed %d lines)", getattr(connection, "connection_id", connection), len(backlog))

    def unsubscribe(self, connection: Connection) -> None:
        """取消订阅（幂等）。"""

        with self._order_lock:
            self._subscribers.pop(connection, None)
        with self._locks_guard:
            self._send_locks.pop(connection, None)

    def publish(self, line: str) -> None:
        """
        追加一行到 history，并投递给所有当前订阅者（按 publish 顺序）。

        说明：
        - 已关闭的连接会被跳过；发送异常不会抛给调用方。
        """

        text = str(line)
        with self._order_lock:
            self._history.append(text)
            for connection in list(self._subscribers):
                self._deliver(connection, text)

    def clear(self) -> None:
        """清空 history（不影响订阅关系）。"""

        with self._order_lock:
            self._history.clear()

    def _send_lock(self, connection: Connection) -> threading.Lock:
        """取得（或惰性创建）连接的发送锁。"""

        with self._locks_guard:
            lock = self._send_locks.get(connection)
            if lock is None:
                lock = threading.Lock()
                self._send_locks[connection] = lock
            return lock

    def _deliver(self, connection: Connection, line: str) -> None:
        """向单个连接发送一行；失败只记 debug 日志，不影响其它订阅者。"""

        if not connection.is_open:
            return
        with self._send_lock(connection):
            try:
                connection.send_text(line)
            except Exception:
                # best-effort：单连接失败不影响其它订阅者
                logger.debug(
                    "unable to deliver line to %s", getattr(connection, "connection_id", connection), exc_info=True
                )
