"""
执行协调器（single-flight 执行槽位 + run 生命周期）。

状态机：`IDLE -> RUNNING -> COMPLETING -> IDLE`
- IDLE -> RUNNING：`execute()` 成功抢占槽位；
- RUNNING -> COMPLETING：runner 返回或抛异常；
- COMPLETING -> IDLE：notify 结束状态 -> 清空 history -> 释放槽位（固定顺序）。

约束：
- 没有队列：槽位被占用时 `execute()` 直接抛 `BusyError`；
- `execute()` 不阻塞：run 在后台 daemon 线程执行；
- 只有完成路径会释放槽位；`stop()` 只把取消请求转交给 runner。
"""

from __future__ import annotations

import enum
import logging
import threading
from typing import Optional

from execstream.broadcast import LogBroadcast
from execstream.completion import CompletionRegistry
from execstream.errors import BusyError, ValidationError
from execstream.runner import CommandRunner

logger = logging.getLogger(__name__)

FAILURE_EXIT_CODE = 1


class ExecutionState(str, enum.Enum):
    """执行槽位的状态。"""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETING = "completing"


class ExecutionCoordinator:
    """
    single-flight 执行协调器。

    参数：
    - runner：外部命令执行器（阻塞 `run` + `stop`）
    - broadcast：当前 run 的日志广播（完成后清空 history）
    - completion：结束状态 observers
    """

    def __init__(self, *, runner: CommandRunner, broadcast: LogBroadcast, completion: CompletionRegistry) -> None:
        """装配 runner 与两个 registry（不启动线程）。"""

        self._runner = runner
        self._broadcast = broadcast
        self._completion = completion
        # 非阻塞 acquire 即 compare-and-set；由完成路径（另一线程）release
        self._slot = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = ExecutionState.IDLE
        self._worker: Optional[threading.Thread] = None

    @property
    def is_busy(self) -> bool:
        """是否有执行占用槽位（含 COMPLETING 阶段）。"""

        return self._slot.locked()

    @property
    def state(self) -> ExecutionState:
        """当前状态（仅用于观测）。"""

        with self._state_lock:
            return self._state

    def _set_state(self, state: ExecutionState) -> None:
        """更新状态（线程安全）。"""

        with self._state_lock:
            self._state = state

    def execute(self, command: Optional[str]) -> None:
        """
        提交一次执行（立即返回）。

        异常：
        - ValidationError：command 为 None/空/全空白
        - BusyError：已有执行在进行中
        """

        if command is None or not str(command).strip():
            raise ValidationError("command cannot be null or empty")
        if not self._slot.acquire(blocking=False):
            raise BusyError("an execution is already in progress, please wait for it to finish")

        command = str(command)
        try:
            self._set_state(ExecutionState.RUNNING)
            logger.info("starting command execution: %s", command)
            worker = threading.Thread(target=self._run, args=(command,), name="execstream-run", daemon=True)
            self._worker = worker
            worker.start()
        except BaseException:
            # 线程无法启动：槽位必须归还
            self._set_state(ExecutionState.IDLE)
            self._slot.release()
            raise

    def _run(self, command: str) -> None:
        """worker 线程入口：执行命令并折算结束状态。"""

        try:
            status = int(self._runner.run(command))
            logger.info("command finished with result: %s", status)
        except Exception:
            logger.exception("error during command execution: %s", command)
            status = FAILURE_EXIT_CODE
        self._complete(status)

    def _complete(self, status: int) -> None:
        """收尾：notify -> 清空 history -> 释放槽位（前一步失败不影响后续步骤）。"""

        self._set_state(ExecutionState.COMPLETING)
        try:
            self._completion.notify(status)
        except Exception:
            logger.exception("completion notify failed (status=%s)", status)
        finally:
            try:
                self._broadcast.clear()
            finally:
                self._set_state(ExecutionState.IDLE)
                self._slot.release()

    def stop(self) -> None:
        """请求取消当前执行（不阻塞；仅 RUNNING 时转交给 runner，其它状态为 no-op）。"""

        with self._state_lock:
            if self._state is not ExecutionState.RUNNING:
                logger.debug("stop requested while %s; ignoring", self._state.value)
                return
            logger.info("requested stop of current command")
            # 与 RUNNING -> COMPLETING 的状态切换互斥
            self._runner.stop()

    def shutdown(self, timeout: float = 5.0) -> None:
        """进程退出前调用：请求 runner 停止并等待后台线程结束（有上限）。"""

        worker = self._worker
        if worker is None or not worker.is_alive():
            return
        self._runner.stop()
        worker.join(timeout=timeout)
        if worker.is_alive():
            logger.warning("execution worker still running after %.1fs", timeout)
