"""Shared fixtures: an in-memory key-value double and account builders."""

import json
import time
from typing import Any, Dict, Optional

import pytest

from gemini_relay.core.relay_config import RelayConfig
from gemini_relay.scheduler import (
    AccountKind,
    GroupRepository,
    RedisAccountRepository,
    SessionAffinityStore,
    UnifiedScheduler,
)


class FakeRedis:
    """Implements the RedisClient coroutine surface over plain dicts."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.sets: Dict[str, set] = {}
        self.expiry: Dict[str, float] = {}
        self.disconnected = False

    def _purge(self, key: str) -> None:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.time():
            self.values.pop(key, None)
            self.hashes.pop(key, None)
            self.sets.pop(key, None)
            self.expiry.pop(key, None)

    def _exists(self, key: str) -> bool:
        self._purge(key)
        return key in self.values or key in self.hashes or key in self.sets

    async def disconnect(self) -> None:
        self.disconnected = True

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        self._purge(key)
        return self.values.get(key)

    async def set(self, key: str, value: str, expire: Optional[int] = None) -> bool:
        self.values[key] = str(value)
        if expire:
            self.expiry[key] = time.time() + expire
        else:
            self.expiry.pop(key, None)
        return True

    async def delete(self, key: str) -> int:
        existed = self._exists(key)
        for store in (self.values, self.hashes, self.sets, self.expiry):
            store.pop(key, None)
        return int(existed)

    async def exists(self, key: str) -> bool:
        return self._exists(key)

    async def expire(self, key: str, seconds: int) -> bool:
        if not self._exists(key):
            return False
        self.expiry[key] = time.time() + seconds
        return True

    async def ttl(self, key: str) -> int:
        if not self._exists(key):
            return -2
        deadline = self.expiry.get(key)
        if deadline is None:
            return -1
        return int(deadline - time.time())

    async def incr(self, key: str, amount: int = 1) -> int:
        value = int(self.values.get(key, "0")) + amount
        self.values[key] = str(value)
        return value

    async def decr(self, key: str, amount: int = 1) -> int:
        return await self.incr(key, -amount)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        bucket = self.hashes.setdefault(key, {})
        bucket[field] = str(int(bucket.get(field, "0")) + amount)
        return int(bucket[field])

    async def sadd(self, key: str, *members: str) -> int:
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def smembers(self, key: str) -> set:
        return set(self.sets.get(key, set()))

    async def get_json(self, key: str) -> Optional[Any]:
        value = await self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except ValueError:
            return None

    async def set_json(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        return await self.set(key, json.dumps(value), expire=expire)


def make_account(account_id: str, **overrides) -> Dict[str, Any]:
    """A schedulable shared account record; override any field."""
    account = {
        "id": account_id,
        "name": f"account-{account_id}",
        "isActive": True,
        "status": "active",
        "accountType": "shared",
        "priority": 50,
        "schedulable": True,
    }
    account.update(overrides)
    return account


def build_scheduler(redis: FakeRedis, config: Optional[RelayConfig] = None, kinds=None) -> UnifiedScheduler:
    config = config or RelayConfig()
    kinds = kinds or list(AccountKind)
    repositories = {kind: RedisAccountRepository(kind, redis) for kind in kinds}
    return UnifiedScheduler(
        repositories,
        SessionAffinityStore(redis, config.sticky_ttl_seconds, config.renewal_threshold_seconds),
        GroupRepository(redis),
        rate_limit_duration_minutes=config.rate_limit_duration_minutes,
    )


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def relay_config():
    return RelayConfig(max_retries=3, heartbeat_interval=5.0)
