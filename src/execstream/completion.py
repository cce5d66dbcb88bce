from __future__ import annotations

import logging
import threading
from typing import Dict, List

from execstream.connection import NORMAL_CLOSURE, Connection

logger = logging.getLogger(__name__)


class CompletionRegistry:
    """
    等待 run 结束状态的连接集合。

    约束：
    - notify 先在锁内整体摘下当前 observers，再逐个投递，因此每个 observer 恰好收到一次；
    - 投递方式为关闭连接，close reason 为 exit code 文本；
    - 单个 observer 失败（例如连接已断开）不影响其它 observer。
    """

    def __init__(self) -> None:
        """创建空 registry。"""

        self._lock = threading.Lock()
        self._observers: Dict[Connection, None] = {}

    @property
    def observer_count(self) -> int:
        """当前等待结束状态的连接数量。"""

        with self._lock:
            return len(self._observers)

    def add_observer(self, connection: Connection) -> None:
        """登记连接（重复登记为 no-op）。"""

        with self._lock:
            self._observers[connection] = None

    def remove_observer(self, connection: Connection) -> None:
        """移除连接（不存在时为 no-op）。"""

        with self._lock:
            self._observers.pop(connection, None)

    def notify(self, status: int) -> int:
        """
        把结束状态投递给所有已注册 observer，并关闭其连接。

        参数：
        - status：exit code（0 成功；非 0 失败；-1 表示被取消）

        返回：
        - 成功投递的 observer 数量
        """

        with self._lock:
            targets: List[Connection] = list(self._observers)
            self._observers.clear()

        delivered = 0
        reason = str(int(status))
        for connection in targets:
            try:
                if connection.is_open:
                    connection.close(NORMAL_CLOSURE, reason)
                    delivered += 1
            except Exception:
                logger.warning(
                    "unable to notify %s of status %s",
                    getattr(connection, "connection_id", connection),
                    reason,
                    exc_info=True,
                )
        return delivered
