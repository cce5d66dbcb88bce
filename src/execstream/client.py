"""
execstream 客户端（提交命令 + 跟随输出流直到拿到 exit code）。

流程：
1) 先连接 WebSocket 输出流（保证不会错过结束状态）；
2) 再 POST 命令（非 2xx 视为提交失败）；
3) 逐行打印输出；Ctrl+C 发送 `STOP`；服务端关闭连接时从 close reason 解析 exit code。
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Callable, Optional, TextIO, Tuple

import httpx
from websockets.exceptions import ConnectionClosed
from websockets.sync.client import ClientConnection, connect

SUBMIT_FAILED_EXIT_CODE = 255
STREAM_FAILED_EXIT_CODE = 3
UNKNOWN_CLOSE_EXIT_CODE = 1


class SubmitError(Exception):
    """POST 提交失败（网络错误或非 2xx）。"""


def parse_close_reason(reason: Optional[str]) -> Tuple[int, Optional[str]]:
    """
    解析服务端 close reason。

    返回：
    - (exit_code, None)：reason 为整数文本
    - (1, error)：reason 为其它文本（空 reason 使用默认错误信息）
    """

    text = str(reason or "").strip()
    try:
        return int(text), None
    except ValueError:
        pass
    return UNKNOWN_CLOSE_EXIT_CODE, text or "websocket closed by unknown reason"


@dataclass
class ExecStreamClient:
    """
    参数：
    - base_url：服务地址（例如 `http://127.0.0.1:8765`）
    - token：共享 secret
    - token_header：携带 token 的 header 名
    """

    base_url: str
    token: str
    token_header: str = "X-Execstream-Token"
    submit_path: str = "/exec"
    stream_path: str = "/exec/out"
    timeout_sec: float = 15.0

    def _headers(self) -> dict[str, str]:
        """携带 token 的请求 header。"""

        return {self.token_header: self.token}

    @property
    def ws_url(self) -> str:
        """由 base_url 推导的输出流地址（http -> ws，https -> wss）。"""

        base = self.base_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return base + self.stream_path

    def submit(self, command: str) -> None:
        """POST 命令文本；失败抛 `SubmitError`。"""

        url = self.base_url.rstrip("/") + self.submit_path
        headers = {**self._headers(), "Content-Type": "text/plain; charset=utf-8"}
        try:
            resp = httpx.post(url, content=command.encode("utf-8"), headers=headers, timeout=self.timeout_sec)
        except httpx.HTTPError as e:
            raise SubmitError(f"request failed: {e}") from e
        if resp.status_code < 200 or resp.status_code >= 300:
            raise SubmitError(f"service returned status {resp.status_code}: {resp.text.strip()}")

    def open_stream(self) -> ClientConnection:
        """连接输出流（握手失败时由 websockets 抛出异常）。"""

        return connect(self.ws_url, additional_headers=self._headers(), open_timeout=10)

    def follow(
        self,
        ws: ClientConnection,
        *,
        on_line: Callable[[str], None],
        err: TextIO = sys.stderr,
    ) -> Tuple[int, Optional[str]]:
        """
        读取输出直到服务端关闭连接。

        返回：
        - (exit_code, error)：见 `parse_close_reason`
        """

        stop_sent = False
        while True:
            try:
                message = ws.recv()
            except KeyboardInterrupt:
                if not stop_sent:
                    print("> Stop request sent. Waiting for the server to close the session.", file=err)
                    stop_sent = True
                ws.send("STOP")
                continue
            except ConnectionClosed as e:
                reason = e.rcvd.reason if e.rcvd is not None else ""
                return parse_close_reason(reason)
            text = message.decode("utf-8", errors="replace") if isinstance(message, bytes) else message
            text = text.strip()
            if text:
                on_line(text)

    def run(self, command: str, *, out: TextIO = sys.stdout, err: TextIO = sys.stderr) -> int:
        """提交并跟随一次执行，返回进程应使用的 exit code。"""

        try:
            ws = self.open_stream()
        except Exception as e:
            print(f"Stream error: {e}", file=err)
            return STREAM_FAILED_EXIT_CODE

        with ws:
            try:
                self.submit(command)
            except SubmitError as e:
                print(f"Error starting execution: {e}", file=err)
                return SUBMIT_FAILED_EXIT_CODE
            try:
                code, error = self.follow(ws, on_line=lambda line: print(line, file=out, flush=True), err=err)
            except Exception as e:
                print(f"Stream error: {e}", file=err)
                return STREAM_FAILED_EXIT_CODE
        if error is not None:
            print(f"Stream error: {error}", file=err)
        return code
