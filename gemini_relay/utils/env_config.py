"""
环境变量配置
使用 pydantic-settings 从环境变量 / .env 加载进程级配置，其他模块通过 env_config 单例访问
"""
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALLOWED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class EnvConfig(BaseSettings):
    """进程级环境配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
    )

    # 日志
    log_level: str = Field(default="INFO", description="基础日志级别")
    console_log_level: Optional[str] = Field(default=None, description="控制台日志级别，缺省跟随 LOG_LEVEL")
    file_log_level: Optional[str] = Field(default=None, description="文件日志级别，缺省跟随 LOG_LEVEL")
    log_file: str = Field(default="logs/gemini_relay.log", description="日志文件路径")
    log_max_days: int = Field(default=7, description="轮转日志保留天数")
    debug: bool = Field(default=False, description="启动时开启调试日志")

    # 存储
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis 连接 URL")

    # 上游请求
    request_timeout: float = Field(default=600.0, description="上游请求超时（秒）")
    http_proxy_url: Optional[str] = Field(default=None, description="账户未配置代理时使用的默认代理")

    # 服务监听
    host: str = Field(default="0.0.0.0", description="监听地址")
    port: int = Field(default=3000, description="监听端口")

    @field_validator("log_level", "console_log_level", "file_log_level")
    @classmethod
    def validate_log_level(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v_upper = v.upper()
        if v_upper not in ALLOWED_LOG_LEVELS:
            raise ValueError(f"log level must be one of {list(ALLOWED_LOG_LEVELS)}")
        return v_upper

    @field_validator("log_max_days", "port")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("request_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("request_timeout must be positive")
        return v


# 全局配置实例；需要重新读取环境时重新实例化 EnvConfig()
env_config = EnvConfig()
