"""
Redis 客户端管理
调度状态、会话映射、用户配置、用量统计共用的异步 KV 存储
"""
import json
from typing import Any, Optional, Set

from redis import asyncio as aioredis
from redis.asyncio import Redis

from gemini_relay.utils.env_config import env_config


class RedisClient:
    """
    Redis 客户端封装
    首次使用时惰性连接，所有方法都是协程
    """

    def __init__(self, url: Optional[str] = None):
        self._client: Optional[Redis] = None
        self._url = url or env_config.redis_url

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=50,
                socket_timeout=5.0,
                health_check_interval=30,
            )

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _conn(self) -> Redis:
        if self._client is None:
            await self.connect()
        return self._client

    async def ping(self) -> bool:
        """连接正常返回 True"""
        try:
            return bool(await (await self._conn()).ping())
        except aioredis.RedisError:
            return False

    async def get(self, key: str) -> Optional[str]:
        return await (await self._conn()).get(key)

    async def set(self, key: str, value: str, expire: Optional[int] = None) -> bool:
        """设置键值，expire 为秒，None 表示不过期"""
        return bool(await (await self._conn()).set(key, value, ex=expire))

    async def delete(self, key: str) -> int:
        return await (await self._conn()).delete(key)

    async def exists(self, key: str) -> bool:
        return await (await self._conn()).exists(key) > 0

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await (await self._conn()).expire(key, seconds))

    async def ttl(self, key: str) -> int:
        """剩余秒数；-1 无过期，-2 不存在"""
        return await (await self._conn()).ttl(key)

    async def incr(self, key: str, amount: int = 1) -> int:
        return await (await self._conn()).incrby(key, amount)

    async def decr(self, key: str, amount: int = 1) -> int:
        return await (await self._conn()).decrby(key, amount)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return await (await self._conn()).hincrby(key, field, amount)

    async def sadd(self, key: str, *members: str) -> int:
        return await (await self._conn()).sadd(key, *members)

    async def smembers(self, key: str) -> Set[str]:
        return await (await self._conn()).smembers(key)

    async def get_json(self, key: str) -> Optional[Any]:
        """读取 JSON 值，解析失败返回 None"""
        value = await self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return None

    async def set_json(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        return await self.set(key, json.dumps(value, ensure_ascii=False), expire=expire)


_redis_client: Optional[RedisClient] = None


def get_redis_client() -> RedisClient:
    """进程级单例"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
