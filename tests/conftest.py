from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import pytest

from execstream.config import ExecStreamSettings, load_default_config_dict, load_settings_dicts
from execstream.errors import DeliveryError


class FakeConnection:
    """记录所有出站帧的内存连接（`Connection` 协议）。"""

    def __init__(self, name: str = "fake", *, fail_sends: bool = False, fail_close: bool = False) -> None:
        self._name = name
        self._open = True
        self._lock = threading.Lock()
        self.fail_sends = fail_sends
        self.fail_close = fail_close
        self.events: List[Tuple] = []

    @property
    def connection_id(self) -> str:
        return self._name

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._open

    def send_text(self, text: str) -> None:
        if self.fail_sends:
            raise DeliveryError("boom")
        with self._lock:
            if not self._open:
                raise DeliveryError("closed")
            self.events.append(("text", text))

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self.fail_close:
            raise DeliveryError("close failed")
        with self._lock:
            if not self._open:
                return
            self._open = False
            self.events.append(("close", code, reason))

    def texts(self) -> List[str]:
        with self._lock:
            return [e[1] for e in self.events if e[0] == "text"]


class GatedRunner:
    """
    可控 runner：输出 `before` 行后阻塞在 gate 上，放行后输出 `after` 行并返回 exit_code。

    - `stop()` 会放行 gate，并让 run 返回 -1。
    - 输出行写入 output logger（与真实 runner 相同的路径）。
    """

    def __init__(
        self,
        *,
        before: Sequence[str] = (),
        after: Sequence[str] = (),
        exit_code: int = 0,
        raises: Optional[BaseException] = None,
        output_logger: str = "execstream.output",
    ) -> None:
        self.before = list(before)
        self.after = list(after)
        self.exit_code = exit_code
        self.raises = raises
        self.gate = threading.Event()
        self.started = threading.Event()
        self.commands: List[str] = []
        self.stop_calls = 0
        self._stopped = False
        self._log = logging.getLogger(output_logger)

    def run(self, command: str) -> int:
        self.commands.append(command)
        for line in self.before:
            self._log.info(line)
        self.started.set()
        self.gate.wait(timeout=10)
        if self._stopped:
            return -1
        if self.raises is not None:
            raise self.raises
        for line in self.after:
            self._log.info(line)
        return self.exit_code

    def stop(self) -> None:
        self.stop_calls += 1
        self._stopped = True
        self.gate.set()


def wait_until(predicate: Callable[[], bool], *, timeout_sec: float = 5.0) -> None:
    deadline = time.time() + timeout_sec
    while time.time() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met within timeout")


@pytest.fixture
def settings(tmp_path: Path) -> ExecStreamSettings:
    return load_settings_dicts(
        [
            load_default_config_dict(),
            {"server": {"system_path": str(tmp_path / "system")}},
        ]
    )
