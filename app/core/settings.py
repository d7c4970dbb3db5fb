"""
app.core.settings
~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Duo Chat Backend", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 聊天室 ────────────────────────────────────────────────────────
    ROOM_ID: str = Field(default="chatroom", description="唯一聊天室的标识")
    ROOM_CAPACITY: int = Field(default=2, ge=1, description="房间最大同时在线人数")
    DISPLAY_NAME_MAX_LENGTH: int = Field(default=32, ge=1, description="昵称最大长度")
    MESSAGE_MAX_LENGTH: int = Field(default=2000, ge=1, description="单条消息最大长度")
    TYPING_TIMEOUT_SECONDS: float = Field(
        default=3.0,
        gt=0,
        description="最后一次输入事件后自动清除“正在输入”状态的秒数",
    )
    IDLE_TIMEOUT_SECONDS: Annotated[float, Field(gt=0)] | None = Field(
        default=None,
        description="连接空闲超时秒数，None 表示不限制（交给部署层处理）",
    )

    # ── WebSocket ─────────────────────────────────────────────────────
    WS_OUTBOX_SIZE: int = Field(
        default=256,
        ge=1,
        description="每个连接的待发送队列上限，溢出即断开该连接",
    )
    WS_RATE_LIMIT_INTERVAL: float = Field(
        default=0.2,
        ge=0,
        description="同一连接两次发送消息的最小间隔（秒）",
    )
    WS_PING_INTERVAL: float = Field(default=20.0, description="协议层 ping 间隔（秒）")
    WS_PING_TIMEOUT: float = Field(default=20.0, description="协议层 pong 超时（秒）")

    # ── REST ──────────────────────────────────────────────────────────
    REST_RATE_LIMIT: str = Field(default="10/second", description="REST 接口限流规则")

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=8000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
