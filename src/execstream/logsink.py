"""
日志配置与 output logger -> LogBroadcast 的桥接。

约定：
- 服务自身诊断日志使用 `execstream.*`（output logger 除外），只进控制台；
- runner 的输出行写入 output logger（默认 `execstream.output`），
  `BroadcastLogHandler` 把达到阈值的记录逐条 publish 给订阅者（DEBUG 不外发）。
"""

from __future__ import annotations

import logging

from execstream.broadcast import LogBroadcast
from execstream.config import LoggingSettings

_configured = False


def configure_logging(settings: LoggingSettings) -> None:
    """设置根 logger 的级别与格式（重复调用只更新级别）。"""

    global _configured
    if not _configured:
        logging.basicConfig(level=settings.level, format=settings.format)
        _configured = True
    logging.getLogger("execstream").setLevel(settings.level)


class BroadcastLogHandler(logging.Handler):
    """把日志记录转发到 `LogBroadcast`（消息正文即一行输出）。"""

    def __init__(self, broadcast: LogBroadcast, *, level: int | str = logging.INFO) -> None:
        """创建 handler（level 为最低转发级别）。"""

        super().__init__(level=level)
        self._broadcast = broadcast
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        """把格式化后的消息 publish 为一行输出。"""

        try:
            line = self.format(record)
            self._broadcast.publish(line)
        except Exception:
            self.handleError(record)


def install_output_handler(broadcast: LogBroadcast, settings: LoggingSettings) -> BroadcastLogHandler:
    """
    在 output logger 上挂载 `BroadcastLogHandler`。

    返回：
    - 已挂载的 handler（关闭时交给 `uninstall_output_handler`）
    """

    handler = BroadcastLogHandler(broadcast, level=settings.output_level)
    out = logging.getLogger(settings.output_logger)
    if out.level == logging.NOTSET or out.level > handler.level:
        out.setLevel(handler.level)
    out.addHandler(handler)
    return handler


def uninstall_output_handler(handler: BroadcastLogHandler, settings: LoggingSettings) -> None:
    """从 output logger 上移除 handler 并关闭。"""

    logging.getLogger(settings.output_logger).removeHandler(handler)
    handler.close()
