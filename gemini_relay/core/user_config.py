"""
用户级 / 全局动态配置
- user_config:{userId}:model_mapping         {claude 模型名: gemini 模型名}
- user_config:{userId}:system_prompt         {prompt, position}
- relay_config:global                        {geminiDirectGlobalMapping, geminiDirectGlobalSystemPrompt}
"""
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from gemini_relay.cache.redis_client import RedisClient
from gemini_relay.utils.exceptions import InvalidRequestError
from gemini_relay.utils.logger import setup_logger

logger = setup_logger("user_config")

GLOBAL_CONFIG_KEY = "relay_config:global"


class SystemPromptConfig(BaseModel):
    """自定义 system prompt 及拼接位置"""
    prompt: str = ""
    position: Literal["prepend", "append"] = "append"

    @property
    def is_effective(self) -> bool:
        return bool(self.prompt)


class ModelMapping(BaseModel):
    mapping: Dict[str, str] = Field(default_factory=dict)


class GlobalRelayConfig(BaseModel):
    geminiDirectGlobalMapping: Dict[str, str] = Field(default_factory=dict)
    geminiDirectGlobalSystemPrompt: Optional[SystemPromptConfig] = None


class UserConfigService:
    """按调用方保存的模型映射、system prompt 和 gemini 直连开关"""

    def __init__(self, redis_client: RedisClient):
        self.redis = redis_client

    @staticmethod
    def _key(user_id: str, config_type: str) -> str:
        return f"user_config:{user_id}:{config_type}"

    async def get_model_mapping(self, user_id: str) -> Dict[str, str]:
        data = await self.redis.get_json(self._key(user_id, "model_mapping"))
        try:
            return ModelMapping(mapping=data or {}).mapping
        except ValidationError as e:
            logger.error(f"Invalid model mapping stored for user {user_id}: {e}")
            return {}

    async def set_model_mapping(self, user_id: str, mapping: Dict[str, str]) -> None:
        try:
            validated = ModelMapping(mapping=mapping)
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid model mapping: {e}")
        await self.redis.set_json(self._key(user_id, "model_mapping"), validated.mapping)

    async def get_system_prompt(self, user_id: str) -> SystemPromptConfig:
        data = await self.redis.get_json(self._key(user_id, "system_prompt"))
        if not isinstance(data, dict):
            return SystemPromptConfig()
        try:
            return SystemPromptConfig.model_validate(data)
        except ValidationError as e:
            logger.error(f"Invalid system prompt stored for user {user_id}: {e}")
            return SystemPromptConfig()

    async def set_system_prompt(self, user_id: str, prompt: str, position: str = "append") -> None:
        try:
            config = SystemPromptConfig(prompt=prompt, position=position)
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid system prompt config: {e}")
        await self.redis.set_json(self._key(user_id, "system_prompt"), config.model_dump())

    # ---------- 全局配置 ----------

    async def get_global_config(self) -> GlobalRelayConfig:
        """读取失败时返回空配置，不影响请求"""
        data = await self.redis.get_json(GLOBAL_CONFIG_KEY)
        if not isinstance(data, dict):
            return GlobalRelayConfig()
        try:
            return GlobalRelayConfig.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Failed to load global relay config: {e}")
            return GlobalRelayConfig()

    async def set_global_config(self, config: GlobalRelayConfig) -> None:
        await self.redis.set_json(GLOBAL_CONFIG_KEY, config.model_dump(exclude_none=True))
