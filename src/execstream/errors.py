"""
execstream 错误分类（异常类型）。

说明：
- 所有领域异常都携带稳定的英文 `code/message/details`，便于日志与 HTTP 映射；
- 执行期错误（runner 抛异常）不会以异常形式对外暴露，而是转化为非零 exit code；
- HTTP 层统一通过 `http_error` 构造错误响应。
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException


class ExecStreamError(Exception):
    """execstream 结构化错误基类（`code/message/details`）。"""

    code = "EXECSTREAM_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Dict[str, Any] | None = None) -> None:
        """创建结构化错误。

        参数：
        - `message`：英文错误消息
        - `code`：稳定错误码（默认取类属性）
        - `details`：结构化上下文信息（不得包含 secrets）
        """

        super().__init__(message)
        self.code = code or type(self).code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回 `code: message` 形式的文本。"""

        return f"{self.code}: {self.message}"


class ValidationError(ExecStreamError):
    """输入为空/格式错误（调用方本地错误，不重试）。"""

    code = "VALIDATION_ERROR"


class BusyError(ExecStreamError):
    """执行槽位已被占用（调用方稍后重试；内部不排队、不重试）。"""

    code = "EXECUTION_BUSY"


class AuthError(ExecStreamError):
    """token 缺失或不匹配。"""

    code = "UNAUTHORIZED"


class DeliveryError(ExecStreamError):
    """单个连接发送失败（按连接隔离，只记录日志）。"""

    code = "DELIVERY_FAILED"


class InitializationError(ExecStreamError):
    """启动期致命错误（例如 token 文件不可读/不可创建）。"""

    code = "INITIALIZATION_FAILED"


def http_error(
    kind: str,
    message: str,
    *,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """
    构造统一的 HTTP 错误响应。

    参数：
    - kind：错误类型（validation/busy/unauthorized/internal）
    - message：人类可读的错误信息
    - status_code：HTTP 状态码
    - details：结构化详情（用于排障；不得包含 secrets）
    """

    return HTTPException(
        status_code=int(status_code),
        detail=error_body(kind, message, details=details),
    )


def error_body(kind: str, message: str, *, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """返回错误响应的 `detail` 结构（供 middleware 等无法抛 HTTPException 的位置复用）。"""

    return {
        "kind": str(kind),
        "message": str(message),
        "details": details or {},
    }
