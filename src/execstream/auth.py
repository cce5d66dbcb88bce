"""
共享 secret 鉴权。

行为：
- 启动时 `initialize()`：token 文件不存在则生成（url-safe，32 字节熵），原子写入并尽力设置 0600；
  已存在则原样读取（去掉首尾空白）；
- `TokenGateMiddleware` 在所有路由之前检查固定 header，HTTP 与 WebSocket 统一拒绝。
"""

from __future__ import annotations

import hmac
import logging
import os
import secrets
import stat
import tempfile
import threading
from pathlib import Path
from typing import Optional

from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocket

from execstream.connection import POLICY_VIOLATION
from execstream.errors import AuthError, InitializationError, error_body

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


def generate_token(nbytes: int = TOKEN_BYTES) -> str:
    """生成 url-safe 随机 token（无 padding）。"""

    return secrets.token_urlsafe(int(nbytes))


def _write_atomically(path: Path, content: str) -> None:
    """
    同目录临时文件 + rename 原子写入（读者不会看到半个文件）。

    说明：
    - mkstemp 创建的临时文件本身即为 0600；
    - rename 失败时清理临时文件。
    """

    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    logger.debug("file '%s' created", path)


def _restrict_to_owner(path: Path) -> None:
    """best-effort 设置 0600；平台不支持时忽略。"""

    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except (OSError, NotImplementedError):
        logger.debug("unable to restrict permissions of %s", path, exc_info=True)


class TokenAuthenticator:
    """
    token 持有者（进程生命周期内不可变）。

    参数：
    - token_path：token 文件路径（父目录不存在时自动创建）
    """

    def __init__(self, token_path: Path) -> None:
        """创建 authenticator（不做 I/O，需显式调用 `initialize()`）。"""

        self._path = Path(token_path)
        self._lock = threading.Lock()
        self._token: Optional[str] = None

    @property
    def token_path(self) -> Path:
        """token 文件路径。"""

        return self._path

    @property
    def token(self) -> Optional[str]:
        """已加载的 token（未初始化时为 None）。"""

        return self._token

    def initialize(self) -> None:
        """
        初始化 token（幂等）。

        异常：
        - InitializationError：token 文件无法创建/读取，或内容为空（服务不得启动）
        """

        with self._lock:
            if self._token is not None:
                return
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                if not self._path.exists():
                    _write_atomically(self._path, generate_token() + "\n")
                    _restrict_to_owner(self._path)
                    logger.info("generated new token file at %s", self._path)
                token = self._path.read_text(encoding="utf-8").strip()
            except OSError as e:
                raise InitializationError(
                    f"cannot init token file '{self._path}'",
                    details={"path": str(self._path), "reason": str(e)},
                ) from e
            if not token:
                raise InitializationError(f"token file '{self._path}' is empty", details={"path": str(self._path)})
            self._token = token

    def validate_token(self, candidate: Optional[str]) -> bool:
        """
        校验 token（常量时间比较）。

        返回：
        - True：candidate 与已加载 token 逐字节相等
        - False：None/空串/不相等/尚未初始化
        """

        token = self._token
        if candidate is None or token is None:
            return False
        return hmac.compare_digest(str(candidate).encode("utf-8"), token.encode("utf-8"))


class TokenGateMiddleware:
    """
    纯 ASGI middleware：在任何路由之前校验 token header。

    说明：
    - HTTP：返回 401 + 统一错误结构；
    - WebSocket：在 accept 之前以 1008 关闭；
    - lifespan 等其它 scope 直接放行。
    """

    def __init__(self, app: ASGIApp, *, authenticator: TokenAuthenticator, header_name: str) -> None:
        """包装下游 ASGI app。"""

        self.app = app
        self._auth = authenticator
        self._header = str(header_name)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """按 scope 类型放行或拒绝请求。"""

        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        candidate = Headers(scope=scope).get(self._header)
        if self._auth.validate_token(candidate):
            await self.app(scope, receive, send)
            return

        err = AuthError("missing or invalid token", details={"header": self._header})
        logger.warning("rejected %s request to %s: %s", scope["type"], scope.get("path"), err)
        if scope["type"] == "websocket":
            websocket = WebSocket(scope, receive=receive, send=send)
            await websocket.close(code=POLICY_VIOLATION, reason="unauthorized")
            return

        response = JSONResponse(
            status_code=401,
            content={"detail": error_body("unauthorized", err.message, details=err.details)},
        )
        await response(scope, receive, send)
