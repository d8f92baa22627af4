"""
会话粘性映射
sessionHash -> {accountId, accountType}，带滑动过期时间
"""
from typing import Optional

from gemini_relay.cache.redis_client import RedisClient
from gemini_relay.utils.logger import setup_logger
from .account_types import AccountSelection

logger = setup_logger("scheduler.session")

SESSION_MAPPING_PREFIX = "unified_mixed_session_mapping:"


class SessionAffinityStore:
    def __init__(self, redis_client: RedisClient, ttl_seconds: int, renewal_threshold_seconds: int = 0):
        self.redis = redis_client
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.renewal_threshold_seconds = max(0, int(renewal_threshold_seconds))

    @staticmethod
    def _key(session_hash: str) -> str:
        return f"{SESSION_MAPPING_PREFIX}{session_hash}"

    async def get(self, session_hash: str) -> Optional[AccountSelection]:
        data = await self.redis.get_json(self._key(session_hash))
        if data is None:
            return None
        selection = AccountSelection.from_dict(data)
        if selection is None:
            logger.warning(f"Discarding unreadable session mapping for {session_hash}")
            await self.delete(session_hash)
        return selection

    async def set(self, session_hash: str, selection: AccountSelection) -> None:
        await self.redis.set_json(self._key(session_hash), selection.to_dict(), expire=self.ttl_seconds)

    async def delete(self, session_hash: str) -> None:
        await self.redis.delete(self._key(session_hash))

    async def extend(self, session_hash: str) -> bool:
        """续期映射

        阈值为 0 时每次命中都滑动到完整 TTL；否则剩余时间低于阈值才续期。
        映射已不存在返回 False。
        """
        key = self._key(session_hash)
        remaining = await self.redis.ttl(key)
        if remaining == -2:
            return False
        if remaining == -1:
            return True

        if not self.renewal_threshold_seconds or remaining < self.renewal_threshold_seconds:
            await self.redis.expire(key, self.ttl_seconds)
            logger.debug(f"Renewed session TTL: {session_hash} (was {remaining}s, now {self.ttl_seconds}s)")
        return True
