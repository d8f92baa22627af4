"""
API Key 存储
api_key:{sha256(raw_key)} -> {id, name, userId, claudeAccountId, geminiAccountId, isActive}
"""
import hashlib
from typing import Any, Dict, Optional

from gemini_relay.cache.redis_client import RedisClient
from gemini_relay.utils.exceptions import AuthenticationError
from gemini_relay.utils.logger import setup_logger
from gemini_relay.utils.security import mask_api_key

logger = setup_logger("api_keys")


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


class ApiKeyStore:
    def __init__(self, redis_client: RedisClient):
        self.redis = redis_client

    async def get(self, raw_key: str) -> Optional[Dict[str, Any]]:
        record = await self.redis.get_json(f"api_key:{hash_api_key(raw_key)}")
        return record if isinstance(record, dict) else None

    async def save(self, raw_key: str, record: Dict[str, Any]) -> None:
        await self.redis.set_json(f"api_key:{hash_api_key(raw_key)}", record)

    async def validate(self, raw_key: Optional[str]) -> Dict[str, Any]:
        """返回 key 记录；缺失、未知或已停用都抛 AuthenticationError"""
        if not raw_key:
            raise AuthenticationError("Missing API key")
        record = await self.get(raw_key)
        if record is None:
            logger.warning(f"Unknown API key: {mask_api_key(raw_key)}")
            raise AuthenticationError("Invalid API key")
        if record.get("isActive") in (False, "false"):
            logger.warning(f"Inactive API key: {mask_api_key(raw_key)}")
            raise AuthenticationError("API key is disabled")
        return record
