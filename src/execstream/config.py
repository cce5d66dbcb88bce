"""
配置加载器（YAML + 环境变量覆盖）。

设计目标：
- 内置默认配置随 package 分发（`execstream/assets/default.yaml`）；
- 支持加载多个 YAML overlay，并按顺序做深度合并（后者覆盖前者）；
- 环境变量覆盖优先级最高（便于容器/CI 注入）；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误被静默吞掉）。
"""

from __future__ import annotations

import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from execstream.errors import ValidationError

CONFIG_ENV_VAR = "EXECSTREAM_CONFIG"

# 环境变量 -> 配置路径（点分）
ENV_OVERRIDES: Dict[str, str] = {
    "EXECSTREAM_HOST": "server.host",
    "EXECSTREAM_PORT": "server.port",
    "EXECSTREAM_SYSTEM_PATH": "server.system_path",
    "EXECSTREAM_TOKEN_HEADER": "server.token_header",
    "EXECSTREAM_LOG_LEVEL": "logging.level",
    "EXECSTREAM_RUNNER_CWD": "runner.cwd",
}


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（含 list）：overlay 直接覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ServerSettings(BaseModel):
    """监听地址与鉴权配置。"""

    model_config = ConfigDict(extra="forbid")

    host: str = "127.0.0.1"
    port: int = Field(default=8765, ge=1, le=65535)
    system_path: Path = Path("~/.execstream")
    token_file: str = Field(default="head.token", min_length=1)
    token_header: str = Field(default="X-Execstream-Token", min_length=1)

    @property
    def token_path(self) -> Path:
        """token 文件的绝对路径（`~` 已展开）。"""

        return (self.system_path.expanduser() / self.token_file).resolve()


class StreamSettings(BaseModel):
    """提交与输出流的路由路径。"""

    model_config = ConfigDict(extra="forbid")

    submit_path: str = "/exec"
    stream_path: str = "/exec/out"

    @field_validator("submit_path", "stream_path")
    @classmethod
    def _must_be_absolute(cls, v: str) -> str:
        """路由路径必须以 `/` 开头。"""

        if not v.startswith("/"):
            raise ValueError("route path must start with '/'")
        return v


class RunnerSettings(BaseModel):
    """子进程 runner 配置。"""

    model_config = ConfigDict(extra="forbid")

    cwd: Optional[Path] = None
    shell: bool = False
    stop_grace_sec: float = Field(default=2.0, ge=0.0)
    encoding: str = "utf-8"


class LoggingSettings(BaseModel):
    """日志配置（服务日志 + 转发到 WebSocket 的 output logger）。"""

    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    output_logger: str = Field(default="execstream.output", min_length=1)
    output_level: str = "INFO"

    @field_validator("level", "output_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        """日志级别名校验（统一转为大写）。"""

        name = str(v or "").strip().upper()
        if name not in ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"):
            raise ValueError(f"unknown log level: {v}")
        return name


class ExecStreamSettings(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    server: ServerSettings = Field(default_factory=ServerSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    runner: RunnerSettings = Field(default_factory=RunnerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_default_config_dict() -> Dict[str, Any]:
    """
    读取内置默认配置（YAML）并返回 dict。

    异常：
    - RuntimeError：内容不是 mapping(dict)
    """

    from importlib.resources import files

    text = files("execstream").joinpath("assets/default.yaml").read_text(encoding="utf-8")
    obj = yaml.safe_load(text) or {}
    if not isinstance(obj, dict):
        raise RuntimeError("embedded default config root must be a mapping(dict)")
    return obj


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise ValidationError("config file not found", details={"path": str(path)})
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("config file root must be a mapping", details={"path": str(path)})
    return data


def _set_dotted(target: MutableMapping[str, Any], dotted: str, value: Any) -> None:
    """按 `a.b.c` 路径写入嵌套 dict（中间节点不存在时创建）。"""

    parts = dotted.split(".")
    cur = target
    for p in parts[:-1]:
        nxt = cur.get(p)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[p] = nxt
        cur = nxt
    cur[parts[-1]] = value


def env_overrides(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    从环境变量提取配置覆盖（空白值视为未设置）。

    返回：
    - dict：可直接作为最后一层 overlay 参与合并
    """

    src = env if env is not None else os.environ
    out: Dict[str, Any] = {}
    for key, dotted in ENV_OVERRIDES.items():
        raw = src.get(key)
        if raw is None or not str(raw).strip():
            continue
        _set_dotted(out, dotted, str(raw).strip())
    return out


def load_settings_dicts(config_dicts: Iterable[Mapping[str, Any]]) -> ExecStreamSettings:
    """
    按顺序深度合并多个 dict 配置，返回校验后的 `ExecStreamSettings`。

    异常：
    - ValidationError：schema 校验失败（details 含 pydantic errors）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    try:
        return ExecStreamSettings.model_validate(merged)
    except PydanticValidationError as e:
        raise ValidationError(
            "invalid configuration",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


def load_settings(
    *,
    config_paths: Iterable[Path] = (),
    env: Optional[Mapping[str, str]] = None,
) -> ExecStreamSettings:
    """
    加载完整配置：内置默认 -> `EXECSTREAM_CONFIG` -> config_paths -> 环境变量。

    参数：
    - config_paths：YAML overlay 路径列表（按顺序合并）
    - env：环境变量映射（默认 os.environ；测试可注入）
    """

    src = env if env is not None else os.environ
    overlays: list[Dict[str, Any]] = [load_default_config_dict()]

    from_env = str(src.get(CONFIG_ENV_VAR) or "").strip()
    if from_env:
        overlays.append(_load_yaml_file(Path(from_env).expanduser()))
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path).expanduser()))

    overlays.append(env_overrides(src))
    return load_settings_dicts(overlays)
