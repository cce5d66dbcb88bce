"""
命令 runner（阻塞执行外部命令，并把输出逐行写入 output logger）。

说明：
- coordinator 只依赖 `CommandRunner` 协议：`run(command) -> exit_code`（阻塞）与 `stop()`；
- `SubprocessRunner` 以新进程组启动命令，stderr 合流到 stdout；
- 输出行通过 logging 转发（由 `BroadcastLogHandler` 推送到 `LogBroadcast`），runner 不直接依赖广播。
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

CANCELLED_EXIT_CODE = -1


@runtime_checkable
class CommandRunner(Protocol):
    """外部命令执行器协议。"""

    def run(self, command: str) -> int:
        """阻塞执行 command，返回 exit code。"""

    def stop(self) -> None:
        """请求终止当前执行（best-effort，不阻塞）。"""


class SubprocessRunner:
    """
    基于 subprocess 的 runner。

    参数：
    - output_logger：输出行写入的 logger 名（INFO 级别）
    - cwd：工作目录（None 表示继承当前进程）
    - shell：是否经由 shell 执行（False 时用 shlex 切分）
    - stop_grace_sec：SIGTERM 之后等待多久再 SIGKILL
    - encoding：输出解码编码（无法解码的字节以替换字符呈现）
    """

    def __init__(
        self,
        *,
        output_logger: str = "execstream.output",
        cwd: Optional[Path] = None,
        shell: bool = False,
        stop_grace_sec: float = 2.0,
        encoding: str = "utf-8",
    ) -> None:
        """保存 runner 配置（不启动子进程）。"""

        self._out = logging.getLogger(output_logger)
        self._cwd = Path(cwd).expanduser() if cwd is not None else None
        self._shell = bool(shell)
        self._grace = float(stop_grace_sec)
        self._encoding = str(encoding)
        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen[bytes]] = None
        self._stopped = False

    def _spawn(self, command: str) -> subprocess.Popen[bytes]:
        """按 shell 配置启动子进程（新进程组，stderr 合流到 stdout）。"""

        if self._shell:
            args: str | list[str] = command
        else:
            args = shlex.split(command)
            if not args:
                raise ValueError("command must not be empty")
        return subprocess.Popen(  # noqa: S603
            args,
            shell=self._shell,
            cwd=str(self._cwd) if self._cwd is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )

    def run(self, command: str) -> int:
        """
        执行命令直到结束。

        返回：
        - 子进程 exit code；被 `stop()` 终止时返回 `CANCELLED_EXIT_CODE`

        说明：
        - 在进程启动之前收到的 `stop()` 同样生效（进程启动后立即终止）；
        - 停止标记在本次执行结束时复位。

        异常：
        - ValueError / OSError：命令无法切分或无法启动（由 coordinator 统一转为失败状态）
        """

        try:
            proc = self._spawn(command)
            with self._lock:
                self._proc = proc
                stop_requested = self._stopped
            if stop_requested:
                threading.Thread(target=self._terminate, args=(proc,), daemon=True).start()

            stdout = proc.stdout
            if stdout is None:
                raise RuntimeError("child process stdout is not captured")
            for raw in stdout:
                line = raw.decode(self._encoding, errors="replace").rstrip("\r\n")
                self._out.info("%s", line)
            code = proc.wait()
        finally:
            with self._lock:
                self._proc = None
                stopped = self._stopped
                self._stopped = False

        if stopped:
            logger.info("command stopped (pid=%s, returncode=%s)", proc.pid, code)
            return CANCELLED_EXIT_CODE
        return int(code)

    def stop(self) -> None:
        """请求终止：后台线程发送 SIGTERM，超过 grace 后 SIGKILL（不阻塞调用方）。"""

        with self._lock:
            proc = self._proc
            self._stopped = True
        if proc is None or proc.poll() is not None:
            return
        threading.Thread(target=self._terminate, args=(proc,), daemon=True).start()

    def _terminate(self, proc: subprocess.Popen[bytes]) -> None:
        """SIGTERM 进程组，超过 grace 仍存活则 SIGKILL。"""

        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            return
        except OSError:
            proc.terminate()

        deadline = time.monotonic() + self._grace
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                return
            time.sleep(0.05)

        logger.warning("command did not exit after SIGTERM; killing process group %s", proc.pid)
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            proc.kill()
