"""
CLI 模块。

说明：
- 对外入口为 `execstream ...`（由 `pyproject.toml` 的 `[project.scripts]` 注册）；
- CLI 只做“配置加载 + 启动服务/调用客户端”，不复制核心逻辑。
"""
