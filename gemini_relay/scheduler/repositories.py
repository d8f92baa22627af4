"""
账户存储
调度器只通过这里定义的接口读取账户状态，每种账户类型一个仓库实例
"""
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from gemini_relay.cache.redis_client import RedisClient
from gemini_relay.utils.exceptions import AuthenticationError
from gemini_relay.utils.logger import setup_logger
from .account_types import AccountKind, parse_timestamp, utc_now_iso

logger = setup_logger("scheduler.repositories")

# 刷新回调：接收账户记录，返回 {accessToken, expiresAt, ...} 需要合并回记录的字段
TokenRefresher = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]

DEFAULT_RATE_LIMIT_MINUTES = 60


class AccountRepository(Protocol):
    kind: AccountKind

    async def get_all_accounts(self) -> List[Dict[str, Any]]: ...

    async def get_account(self, account_id: str) -> Optional[Dict[str, Any]]: ...

    async def is_rate_limited(self, account_id: str) -> bool: ...

    async def mark_rate_limited(self, account_id: str, duration_minutes: int) -> None: ...

    async def remove_rate_limit(self, account_id: str) -> None: ...

    async def is_overloaded(self, account_id: str) -> bool: ...

    def is_quota_exceeded(self, account: Dict[str, Any]) -> bool: ...

    def is_subscription_expired(self, account: Dict[str, Any]) -> bool: ...

    async def get_concurrency(self, account_id: str) -> int: ...

    async def increment_concurrency(self, account_id: str) -> int: ...

    async def decrement_concurrency(self, account_id: str) -> int: ...

    async def mark_used(self, account_id: str) -> None: ...

    def is_token_expired(self, account: Dict[str, Any]) -> bool: ...

    async def refresh_token(self, account_id: str) -> Dict[str, Any]: ...


class RedisAccountRepository:
    """
    基于 KV 存储的账户仓库
    - 记录: {kind}_account:{id} (JSON)
    - 索引: {kind}_accounts (set)
    - 过载标记: overload:{kind}:{id} (带 TTL)
    - 并发计数: concurrency:{kind}:{id}
    限流状态直接写在账户记录里（rateLimitStatus / rateLimitedAt / rateLimitDuration）
    """

    def __init__(
        self,
        kind: AccountKind,
        redis_client: RedisClient,
        token_refresher: Optional[TokenRefresher] = None,
    ):
        self.kind = kind
        self.redis = redis_client
        self.token_refresher = token_refresher

    def _account_key(self, account_id: str) -> str:
        return f"{self.kind.value}_account:{account_id}"

    @property
    def _index_key(self) -> str:
        return f"{self.kind.value}_accounts"

    def _overload_key(self, account_id: str) -> str:
        return f"overload:{self.kind.value}:{account_id}"

    def _concurrency_key(self, account_id: str) -> str:
        return f"concurrency:{self.kind.value}:{account_id}"

    # ---------- 记录读写 ----------

    async def get_all_accounts(self) -> List[Dict[str, Any]]:
        accounts = []
        for account_id in sorted(await self.redis.smembers(self._index_key)):
            account = await self.get_account(account_id)
            if account:
                accounts.append(account)
        return accounts

    async def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        account = await self.redis.get_json(self._account_key(account_id))
        return account if isinstance(account, dict) else None

    async def save_account(self, account: Dict[str, Any]) -> None:
        account_id = str(account["id"])
        await self.redis.set_json(self._account_key(account_id), account)
        await self.redis.sadd(self._index_key, account_id)

    async def update_account(self, account_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
        """合并字段后写回；账户不存在返回 None"""
        account = await self.get_account(account_id)
        if account is None:
            logger.warning(f"Cannot update missing {self.kind.value} account: {account_id}")
            return None
        for key, value in fields.items():
            if value is None:
                account.pop(key, None)
            else:
                account[key] = value
        await self.redis.set_json(self._account_key(account_id), account)
        return account

    # ---------- 限流 / 过载 ----------

    async def is_rate_limited(self, account_id: str) -> bool:
        account = await self.get_account(account_id)
        if not account or account.get("rateLimitStatus") != "limited":
            return False
        limited_at = parse_timestamp(account.get("rateLimitedAt"))
        if not limited_at:
            return False
        try:
            duration = int(account.get("rateLimitDuration") or DEFAULT_RATE_LIMIT_MINUTES)
        except (TypeError, ValueError):
            duration = DEFAULT_RATE_LIMIT_MINUTES
        return time.time() < limited_at + duration * 60

    async def mark_rate_limited(self, account_id: str, duration_minutes: int = DEFAULT_RATE_LIMIT_MINUTES) -> None:
        await self.update_account(
            account_id,
            rateLimitStatus="limited",
            rateLimitedAt=utc_now_iso(),
            rateLimitDuration=int(duration_minutes),
        )

    async def remove_rate_limit(self, account_id: str) -> None:
        await self.update_account(account_id, rateLimitStatus=None, rateLimitedAt=None, rateLimitDuration=None)

    async def is_overloaded(self, account_id: str) -> bool:
        return await self.redis.exists(self._overload_key(account_id))

    def is_quota_exceeded(self, account: Dict[str, Any]) -> bool:
        """dailyQuota > 0 且当日用量已达上限"""
        try:
            quota = float(account.get("dailyQuota") or 0)
            usage = float(account.get("dailyUsage") or 0)
        except (TypeError, ValueError):
            return False
        return quota > 0 and usage >= quota

    def is_subscription_expired(self, account: Dict[str, Any]) -> bool:
        expires_at = parse_timestamp(account.get("subscriptionExpiresAt"))
        return bool(expires_at) and expires_at <= time.time()

    # ---------- 并发 ----------

    async def get_concurrency(self, account_id: str) -> int:
        value = await self.redis.get(self._concurrency_key(account_id))
        try:
            return max(0, int(value or 0))
        except (TypeError, ValueError):
            return 0

    async def increment_concurrency(self, account_id: str) -> int:
        return await self.redis.incr(self._concurrency_key(account_id))

    async def decrement_concurrency(self, account_id: str) -> int:
        count = await self.redis.decr(self._concurrency_key(account_id))
        if count < 0:
            await self.redis.set(self._concurrency_key(account_id), "0")
            count = 0
        return count

    # ---------- 使用时间 / token ----------

    async def mark_used(self, account_id: str) -> None:
        await self.update_account(account_id, lastUsedAt=utc_now_iso())

    def is_token_expired(self, account: Dict[str, Any]) -> bool:
        """没有过期时间的账户视为未过期"""
        expires_at = parse_timestamp(account.get("expiresAt") or account.get("expiryDate"))
        return bool(expires_at) and expires_at <= time.time()

    async def refresh_token(self, account_id: str) -> Dict[str, Any]:
        account = await self.get_account(account_id)
        if account is None:
            raise AuthenticationError(f"Account not found: {account_id}")
        if self.token_refresher is None or not account.get("refreshToken"):
            raise AuthenticationError(f"Token refresh not available for account {account_id}")

        refreshed = await self.token_refresher(account)
        logger.info(f"Refreshed access token for {self.kind.value} account {account_id}")
        return await self.update_account(account_id, **refreshed) or account


class GroupRepository:
    """账户分组：account_group:{id} -> {id, name, platform, members}"""

    def __init__(self, redis_client: RedisClient):
        self.redis = redis_client

    async def get_group(self, group_id: str) -> Optional[Dict[str, Any]]:
        group = await self.redis.get_json(f"account_group:{group_id}")
        return group if isinstance(group, dict) else None

    async def get_group_members(self, group_id: str) -> List[str]:
        group = await self.get_group(group_id)
        if not group:
            return []
        return [str(m) for m in group.get("members") or []]

    async def save_group(self, group: Dict[str, Any]) -> None:
        await self.redis.set_json(f"account_group:{group['id']}", group)
