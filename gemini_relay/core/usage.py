"""
用量记录
按 key / 账户 + 日期累加 hash 计数，失败只记日志
"""
from datetime import datetime, timezone
from typing import Optional

from redis.exceptions import RedisError

from gemini_relay.cache.redis_client import RedisClient
from gemini_relay.formats.unified import UnifiedUsage
from gemini_relay.utils.logger import setup_logger

logger = setup_logger("usage")


class UsageRecorder:
    def __init__(self, redis_client: RedisClient):
        self.redis = redis_client

    async def record_usage(
        self,
        key_id: str,
        usage: UnifiedUsage,
        model: str,
        account_id: Optional[str] = None,
        source_kind: Optional[str] = None,
    ) -> bool:
        """记录一次请求的用量；输入输出都为 0 时跳过。返回是否写入"""
        if not usage.input_tokens and not usage.output_tokens:
            return False

        date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        keys = [f"usage:{key_id}:{date}"]
        if account_id:
            keys.append(f"usage:account:{account_id}:{date}")

        try:
            for key in keys:
                await self.redis.hincrby(key, "inputTokens", usage.input_tokens)
                await self.redis.hincrby(key, "outputTokens", usage.output_tokens)
                await self.redis.hincrby(key, "cacheReadTokens", usage.cache_read_input_tokens)
                await self.redis.hincrby(key, "requests", 1)
        except (RedisError, OSError) as e:
            logger.error(f"Failed to record usage for key {key_id} ({model}, {source_kind}): {e}")
            return False

        logger.debug(
            f"Recorded usage: key={key_id} model={model} account={account_id} kind={source_kind} "
            f"input={usage.input_tokens} output={usage.output_tokens}"
        )
        return True
