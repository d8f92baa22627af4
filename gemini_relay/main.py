"""
应用入口
组装 KV 存储、调度器、配置服务与转发服务，挂载路由
"""
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from gemini_relay.api.relay_service import ClaudeRelayDelegate, GeminiDirectRelayService
from gemini_relay.api.routes import relay_error_handler, router
from gemini_relay.cache.redis_client import RedisClient, get_redis_client
from gemini_relay.core.api_keys import ApiKeyStore
from gemini_relay.core.relay_config import RelayConfig, load_relay_config
from gemini_relay.core.usage import UsageRecorder
from gemini_relay.core.user_config import UserConfigService
from gemini_relay.scheduler import (
    AccountKind,
    GroupRepository,
    RedisAccountRepository,
    SessionAffinityStore,
    UnifiedScheduler,
)
from gemini_relay.scheduler.repositories import TokenRefresher
from gemini_relay.utils.env_config import env_config
from gemini_relay.utils.exceptions import RelayError
from gemini_relay.utils.logger import cleanup_old_logs, enable_debug, setup_logger

logger = setup_logger("main")


def build_scheduler(
    redis_client: RedisClient,
    relay_config: RelayConfig,
    token_refresher: Optional[TokenRefresher] = None,
) -> UnifiedScheduler:
    repositories = {
        kind: RedisAccountRepository(
            kind,
            redis_client,
            token_refresher=token_refresher if kind == AccountKind.GEMINI else None,
        )
        for kind in AccountKind
    }
    return UnifiedScheduler(
        repositories,
        SessionAffinityStore(
            redis_client,
            relay_config.sticky_ttl_seconds,
            relay_config.renewal_threshold_seconds,
        ),
        GroupRepository(redis_client),
        rate_limit_duration_minutes=relay_config.rate_limit_duration_minutes,
    )


def create_app(
    redis_client: Optional[RedisClient] = None,
    relay_config: Optional[RelayConfig] = None,
    claude_delegate: Optional[ClaudeRelayDelegate] = None,
    token_refresher: Optional[TokenRefresher] = None,
) -> FastAPI:
    redis_client = redis_client or get_redis_client()
    relay_config = relay_config or load_relay_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if env_config.debug:
            enable_debug()
        removed = cleanup_old_logs()
        if removed:
            logger.info(f"Removed {removed} expired log files")
        logger.info("Gemini direct relay starting")
        yield
        await redis_client.disconnect()
        logger.info("Gemini direct relay stopped")

    app = FastAPI(title="Gemini Direct Relay", lifespan=lifespan)

    scheduler = build_scheduler(redis_client, relay_config, token_refresher)
    app.state.redis = redis_client
    app.state.relay_config = relay_config
    app.state.scheduler = scheduler
    app.state.api_key_store = ApiKeyStore(redis_client)
    app.state.relay_service = GeminiDirectRelayService(
        relay_config,
        scheduler,
        UserConfigService(redis_client),
        UsageRecorder(redis_client),
        claude_delegate=claude_delegate,
    )

    app.add_exception_handler(RelayError, relay_error_handler)
    app.include_router(router)
    return app


def run() -> None:
    uvicorn.run(create_app(), host=env_config.host, port=env_config.port, log_level=env_config.log_level.lower())


if __name__ == "__main__":
    run()
