"""
Relay 静态配置
模型映射、重试/心跳参数、粘性会话 TTL，以及模型能力表（thinking 配置形态）
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from gemini_relay.utils.env_config import env_config
from gemini_relay.utils.logger import setup_logger

logger = setup_logger("relay_config")

GEMINI_PUBLIC_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_CODE_ASSIST_BASE = "https://cloudcode-pa.googleapis.com/v1internal"

THINKING_STYLE_LEVEL = "level"    # thinkingLevel: LOW/MEDIUM/HIGH
THINKING_STYLE_BUDGET = "budget"  # thinkingBudget: token 数
SUPPORTED_THINKING_STYLES = (THINKING_STYLE_LEVEL, THINKING_STYLE_BUDGET)


@dataclass
class ModelCapability:
    """按模型名前缀匹配的能力声明"""
    prefix: str
    thinking_style: Optional[str] = None
    requires_thinking: bool = False

    def __post_init__(self):
        if not self.prefix:
            raise ValueError("Model capability prefix is required")
        if self.thinking_style is not None and self.thinking_style not in SUPPORTED_THINKING_STYLES:
            raise ValueError(f"Unsupported thinking style: {self.thinking_style}")
        if self.requires_thinking and self.thinking_style is None:
            raise ValueError(f"Model {self.prefix} requires thinking but declares no thinking style")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prefix": self.prefix,
            "thinking_style": self.thinking_style,
            "requires_thinking": self.requires_thinking,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelCapability":
        return cls(
            prefix=data["prefix"],
            thinking_style=data.get("thinking_style"),
            requires_thinking=bool(data.get("requires_thinking", False)),
        )


def default_model_capabilities() -> List[ModelCapability]:
    return [
        ModelCapability("gemini-3", THINKING_STYLE_LEVEL, requires_thinking=False),
        ModelCapability("gemini-2.5", THINKING_STYLE_BUDGET, requires_thinking=True),
    ]


@dataclass
class RelayConfig:
    """Relay 全局配置"""
    default_gemini_model: str = "gemini-2.5-pro"
    model_mapping: Dict[str, str] = field(default_factory=dict)
    max_retries: int = 3
    heartbeat_interval: float = 15.0
    request_timeout: float = 600.0
    sticky_ttl_hours: float = 1.0
    renewal_threshold_minutes: float = 0.0
    rate_limit_duration_minutes: int = 60
    gemini_api_base: str = GEMINI_PUBLIC_API_BASE
    code_assist_base: str = GEMINI_CODE_ASSIST_BASE
    model_capabilities: List[ModelCapability] = field(default_factory=default_model_capabilities)

    def __post_init__(self):
        if not self.default_gemini_model:
            raise ValueError("default_gemini_model is required")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.sticky_ttl_hours <= 0:
            raise ValueError("sticky_ttl_hours must be positive")
        if self.renewal_threshold_minutes < 0:
            raise ValueError("renewal_threshold_minutes must be >= 0")
        if self.rate_limit_duration_minutes <= 0:
            raise ValueError("rate_limit_duration_minutes must be positive")
        if self.model_mapping is None:
            self.model_mapping = {}
        # 最长前缀优先
        self.model_capabilities = sorted(
            self.model_capabilities, key=lambda cap: len(cap.prefix), reverse=True
        )

    @property
    def sticky_ttl_seconds(self) -> int:
        return max(1, int(self.sticky_ttl_hours * 3600))

    @property
    def renewal_threshold_seconds(self) -> int:
        return int(self.renewal_threshold_minutes * 60)

    def capability_for(self, model: str) -> Optional[ModelCapability]:
        """按前缀查找模型能力，忽略 models/ 前缀"""
        name = (model or "").lower()
        if name.startswith("models/"):
            name = name[len("models/"):]
        for cap in self.model_capabilities:
            if name.startswith(cap.prefix.lower()):
                return cap
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default_gemini_model": self.default_gemini_model,
            "model_mapping": self.model_mapping or {},
            "max_retries": self.max_retries,
            "heartbeat_interval": self.heartbeat_interval,
            "request_timeout": self.request_timeout,
            "sticky_ttl_hours": self.sticky_ttl_hours,
            "renewal_threshold_minutes": self.renewal_threshold_minutes,
            "rate_limit_duration_minutes": self.rate_limit_duration_minutes,
            "gemini_api_base": self.gemini_api_base,
            "code_assist_base": self.code_assist_base,
            "model_capabilities": [cap.to_dict() for cap in self.model_capabilities],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelayConfig":
        if not data:
            raise ValueError("Empty relay config data")
        kwargs: Dict[str, Any] = {}
        for name in ("default_gemini_model", "gemini_api_base", "code_assist_base"):
            if data.get(name):
                kwargs[name] = data[name]
        for name in ("heartbeat_interval", "request_timeout", "sticky_ttl_hours", "renewal_threshold_minutes"):
            if data.get(name) is not None:
                kwargs[name] = float(data[name])
        for name in ("max_retries", "rate_limit_duration_minutes"):
            if data.get(name) is not None:
                kwargs[name] = int(data[name])
        if data.get("model_mapping"):
            kwargs["model_mapping"] = dict(data["model_mapping"])
        if data.get("model_capabilities"):
            kwargs["model_capabilities"] = [
                ModelCapability.from_dict(item) for item in data["model_capabilities"]
            ]
        return cls(**kwargs)


class RelaySettings(BaseSettings):
    """Relay 相关环境变量；未设置的字段保持 None，由 RelayConfig 默认值兜底

    GEMINI_MODEL_MAPPING / GEMINI_MODEL_CAPABILITIES 以 JSON 形式给出。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
    )

    gemini_default_model: Optional[str] = Field(default=None, description="未命中映射时的目标模型")
    gemini_api_base: Optional[str] = Field(default=None, description="公网 API 基础 URL")
    gemini_code_assist_base: Optional[str] = Field(default=None, description="Code Assist 基础 URL")
    relay_max_retries: Optional[int] = Field(default=None, description="单次请求最多尝试的账户数")
    relay_heartbeat_interval: Optional[float] = Field(default=None, description="SSE 心跳间隔（秒）")
    sticky_session_ttl_hours: Optional[float] = Field(default=None, description="会话粘性 TTL（小时）")
    sticky_session_renewal_threshold_minutes: Optional[float] = Field(
        default=None, description="剩余时间低于该值才续期；0 表示每次命中都续期"
    )
    rate_limit_duration_minutes: Optional[int] = Field(default=None, description="限流退避时长（分钟）")
    gemini_model_mapping: Optional[Dict[str, str]] = Field(default=None, description="静态模型映射")
    gemini_model_capabilities: Optional[List[Dict[str, Any]]] = Field(default=None, description="模型能力表")


def load_relay_config() -> RelayConfig:
    """从环境变量构建配置

    Raises:
        ValueError: 环境变量无法解析（包括 JSON 表格式错误）或取值不合法
    """
    settings = RelaySettings()
    config = RelayConfig.from_dict({
        "default_gemini_model": settings.gemini_default_model,
        "gemini_api_base": settings.gemini_api_base,
        "code_assist_base": settings.gemini_code_assist_base,
        "max_retries": settings.relay_max_retries,
        "heartbeat_interval": settings.relay_heartbeat_interval,
        "request_timeout": env_config.request_timeout,
        "sticky_ttl_hours": settings.sticky_session_ttl_hours,
        "renewal_threshold_minutes": settings.sticky_session_renewal_threshold_minutes,
        "rate_limit_duration_minutes": settings.rate_limit_duration_minutes,
        "model_mapping": settings.gemini_model_mapping,
        "model_capabilities": settings.gemini_model_capabilities,
    })
    logger.info(
        f"Relay config loaded: default_model={config.default_gemini_model}, "
        f"mappings={len(config.model_mapping)}, max_retries={config.max_retries}"
    )
    return config
