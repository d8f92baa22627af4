"""
Gemini 直连转发编排
一次请求的完整流程：解析目标模型和 system prompt -> 转换请求 ->
选择账户（带重试）-> 调用上游 -> 转换响应 / 重建流 -> 记录用量
"""
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Protocol, Union

import httpx

from gemini_relay.core.relay_config import RelayConfig
from gemini_relay.core.usage import UsageRecorder
from gemini_relay.core.user_config import SystemPromptConfig, UserConfigService
from gemini_relay.formats.claude_to_gemini import (
    ClaudeToGeminiConverter,
    new_message_id,
    unwrap_response_envelope,
)
from gemini_relay.formats.sse_framer import iter_sse_json
from gemini_relay.formats.stream_reconstructor import StreamReconstructor
from gemini_relay.formats.unified import StreamState, UnifiedConversionError, UnifiedUsage
from gemini_relay.formats.unified.stream_events import (
    create_error_event,
    create_message_start,
    format_sse,
)
from gemini_relay.scheduler import AccountSelection, UnifiedScheduler
from gemini_relay.utils.exceptions import (
    ClaudeRelayNotConfiguredError,
    ConversionError,
    InvalidRequestError,
    NoAvailableAccountsError,
    RelayError,
    TimeoutError,
    UpstreamHTTPError,
)
from gemini_relay.utils.logger import setup_logger, log_request_entry, log_structured_error, ERROR_TYPE_UPSTREAM_API
from gemini_relay.utils.session import generate_session_hash
from gemini_relay.utils.token_estimator import estimate_input_tokens
from .gemini_upstream import GeminiUpstreamClient
from .heartbeat import with_heartbeat

logger = setup_logger("relay_service")

GEMINI_MODEL_PREFIX = "gemini-"


class ClaudeRelayDelegate(Protocol):
    """Claude 系账户的转发实现（由外部注入）

    stream=True 时返回 SSE 帧的异步迭代器，否则返回 Claude 响应 dict。
    """

    async def relay(
        self,
        body: Dict[str, Any],
        api_key: Dict[str, Any],
        selection: AccountSelection,
        session_hash: Optional[str],
        stream: bool,
    ) -> Union[Dict[str, Any], AsyncIterator[str]]: ...


@dataclass
class RelayContext:
    """一次请求在重试之间共享的上下文"""
    request_id: str
    body: Dict[str, Any]
    api_key: Dict[str, Any]
    original_model: str
    target_model: str
    gemini_body: Dict[str, Any]
    session_hash: Optional[str]
    stream: bool

    @property
    def key_id(self) -> str:
        return str(self.api_key.get("id") or "")


class GeminiDirectRelayService:
    def __init__(
        self,
        relay_config: RelayConfig,
        scheduler: UnifiedScheduler,
        user_config: UserConfigService,
        usage_recorder: UsageRecorder,
        upstream: Optional[GeminiUpstreamClient] = None,
        claude_delegate: Optional[ClaudeRelayDelegate] = None,
    ):
        self.config = relay_config
        self.scheduler = scheduler
        self.user_config = user_config
        self.usage_recorder = usage_recorder
        self.upstream = upstream or GeminiUpstreamClient(relay_config, scheduler)
        self.claude_delegate = claude_delegate
        self.converter = ClaudeToGeminiConverter(relay_config)
        self.reconstructor = StreamReconstructor()

    # ------------------------------------------------------------------
    # 模型与 system prompt 解析
    # ------------------------------------------------------------------

    async def resolve_target_model(self, model: str, user_id: Optional[str]) -> str:
        """gemini- 开头直接透传；否则 用户映射 > 全局映射 > 静态映射 > 默认模型"""
        if model.startswith(GEMINI_MODEL_PREFIX):
            return model

        if user_id:
            target = (await self.user_config.get_model_mapping(user_id)).get(model)
            if target:
                return target

        global_config = await self.user_config.get_global_config()
        target = global_config.geminiDirectGlobalMapping.get(model)
        if target:
            return target

        return self.config.model_mapping.get(model) or self.config.default_gemini_model

    async def resolve_system_prompt(self, user_id: Optional[str]) -> Optional[SystemPromptConfig]:
        """用户配置优先，其次全局配置；prompt 为空视为未配置"""
        if user_id:
            user_prompt = await self.user_config.get_system_prompt(user_id)
            if user_prompt.is_effective:
                return user_prompt

        global_prompt = (await self.user_config.get_global_config()).geminiDirectGlobalSystemPrompt
        if global_prompt is not None and global_prompt.is_effective:
            return global_prompt
        return None

    async def build_context(self, body: Dict[str, Any], api_key: Dict[str, Any], request_id: Optional[str] = None) -> RelayContext:
        original_model = body.get("model") or ""
        user_id = api_key.get("userId")
        target_model = await self.resolve_target_model(original_model, user_id)
        system_prompt = await self.resolve_system_prompt(user_id)

        result = self.converter.convert_request(body, system_prompt, target_model)
        if not result.success:
            raise InvalidRequestError(f"Request conversion failed: {result.error}")

        logger.info(f"Relaying {original_model} -> {target_model}")
        return RelayContext(
            request_id=request_id or uuid.uuid4().hex[:16],
            body=body,
            api_key=api_key,
            original_model=original_model,
            target_model=target_model,
            gemini_body=result.data,
            session_hash=generate_session_hash(body),
            stream=bool(body.get("stream")),
        )

    # ------------------------------------------------------------------
    # 重试循环
    # ------------------------------------------------------------------

    async def _run_with_retries(
        self,
        ctx: RelayContext,
        attempt_fn: Callable[[AccountSelection], Awaitable[Any]],
    ) -> Any:
        last_error: Optional[RelayError] = None

        for attempt in range(self.config.max_retries):
            try:
                selection = await self.scheduler.select_account(
                    ctx.api_key, ctx.session_hash, ctx.target_model, allow_api_accounts=True
                )
            except NoAvailableAccountsError:
                # 首次即无账户：直接 503；重试中则返回上一次的上游错误
                if last_error is None:
                    raise
                logger.warning(f"No account left for retry {attempt + 1}, surfacing last upstream error")
                raise last_error

            log_request_entry(
                logger,
                request_id=ctx.request_id,
                model=ctx.original_model,
                target_model=ctx.target_model,
                is_streaming=ctx.stream,
                api_key_id=ctx.key_id,
                session_hash=ctx.session_hash,
                extra={
                    "account_id": selection.account_id,
                    "account_kind": selection.kind.value,
                    "attempt": attempt + 1,
                },
            )

            try:
                return await attempt_fn(selection)
            except (UpstreamHTTPError, TimeoutError) as e:
                if not e.retryable:
                    raise
                last_error = e
                if isinstance(e, UpstreamHTTPError) and e.rate_limited:
                    await self.scheduler.mark_rate_limited(selection.account_id, selection.kind, ctx.session_hash)
                elif ctx.session_hash:
                    await self.scheduler.clear_session(ctx.session_hash)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.config.max_retries} failed on account "
                    f"{selection.account_id} ({selection.kind.value}): {e.message}"
                )

        raise last_error

    async def _delegate(self, ctx: RelayContext, selection: AccountSelection) -> Any:
        if self.claude_delegate is None:
            raise ClaudeRelayNotConfiguredError(
                f"Selected {selection.kind.value} account {selection.account_id} but no Claude relay is configured"
            )
        logger.info(f"Delegating to Claude relay: {selection.account_id} ({selection.kind.value})")
        return await self.claude_delegate.relay(
            ctx.body, ctx.api_key, selection, ctx.session_hash, ctx.stream
        )

    async def _record_usage(self, ctx: RelayContext, selection: AccountSelection, usage: UnifiedUsage) -> None:
        await self.usage_recorder.record_usage(
            ctx.key_id, usage, ctx.original_model, selection.account_id, selection.kind.value
        )

    # ------------------------------------------------------------------
    # 非流式
    # ------------------------------------------------------------------

    async def relay_messages(self, body: Dict[str, Any], api_key: Dict[str, Any]) -> Dict[str, Any]:
        ctx = await self.build_context(body, api_key)
        return await self._run_with_retries(ctx, lambda selection: self._attempt_once(ctx, selection))

    async def _attempt_once(self, ctx: RelayContext, selection: AccountSelection) -> Dict[str, Any]:
        if not selection.kind.is_gemini:
            return await self._delegate(ctx, selection)

        target = await self.upstream.prepare(selection, ctx.target_model, ctx.gemini_body, stream=False)
        repository = self.scheduler.repository_for(selection.kind)
        await repository.increment_concurrency(selection.account_id)
        try:
            data = await self.upstream.generate(target)
        finally:
            await repository.decrement_concurrency(selection.account_id)

        result = self.converter.convert_response(data, ctx.original_model)
        if not result.success:
            raise ConversionError(f"Response conversion failed: {result.error}", 502)

        usage = result.data["usage"]
        await self._record_usage(ctx, selection, UnifiedUsage(
            input_tokens=usage["input_tokens"],
            output_tokens=usage["output_tokens"],
            cache_read_input_tokens=usage["cache_read_input_tokens"],
        ))
        return result.data

    # ------------------------------------------------------------------
    # 流式
    # ------------------------------------------------------------------

    async def open_message_stream(self, body: Dict[str, Any], api_key: Dict[str, Any]) -> AsyncIterator[str]:
        """建立上游流后返回 SSE 帧迭代器（带心跳）

        建立连接前的失败（无账户、重试耗尽）直接抛出，由路由返回错误信封；
        之后的失败以 error 事件写进流里。
        """
        ctx = await self.build_context(body, api_key)
        frames = await self._run_with_retries(ctx, lambda selection: self._open_stream_once(ctx, selection))
        return with_heartbeat(frames, self.config.heartbeat_interval)

    async def _open_stream_once(self, ctx: RelayContext, selection: AccountSelection) -> AsyncIterator[str]:
        if not selection.kind.is_gemini:
            return await self._delegate(ctx, selection)

        target = await self.upstream.prepare(selection, ctx.target_model, ctx.gemini_body, stream=True)
        repository = self.scheduler.repository_for(selection.kind)

        stack = AsyncExitStack()
        await repository.increment_concurrency(selection.account_id)
        stack.push_async_callback(repository.decrement_concurrency, selection.account_id)
        try:
            byte_stream = await stack.enter_async_context(self.upstream.open_stream(target))
        except BaseException:
            await stack.aclose()
            raise
        return self._stream_frames(ctx, selection, byte_stream, stack)

    async def _stream_frames(
        self,
        ctx: RelayContext,
        selection: AccountSelection,
        byte_stream: AsyncIterator[bytes],
        stack: AsyncExitStack,
    ) -> AsyncIterator[str]:
        state = StreamState()
        usage_metadata: Optional[Dict[str, Any]] = None
        finished = False

        try:
            yield format_sse(create_message_start(new_message_id(), ctx.original_model))

            async for chunk in iter_sse_json(byte_stream):
                payload = unwrap_response_envelope(chunk)
                if isinstance(payload.get("usageMetadata"), dict):
                    usage_metadata = payload["usageMetadata"]

                for event in self.reconstructor.convert_chunk(payload, state):
                    yield format_sse(event)
                    if event["type"] == "message_stop":
                        finished = True
                if finished:
                    # 终止事件之后不再消费上游
                    break

            if not finished:
                logger.warning(f"Upstream stream ended without finishReason (request {ctx.request_id})")
                for event in self.reconstructor.close_stream(state, usage_metadata):
                    yield format_sse(event)
        except (RelayError, UnifiedConversionError, httpx.HTTPError) as e:
            log_structured_error(
                logger,
                error_type=ERROR_TYPE_UPSTREAM_API,
                exc=e,
                request_id=ctx.request_id,
                extra={
                    "stage": "stream",
                    "account_id": selection.account_id,
                    "account_kind": selection.kind.value,
                },
            )
            yield format_sse(create_error_event("api_error", str(e)))
        else:
            await self._record_usage(ctx, selection, UnifiedUsage.from_gemini(usage_metadata))
        finally:
            await stack.aclose()

    # ------------------------------------------------------------------
    # token 计数
    # ------------------------------------------------------------------

    def count_tokens(self, body: Dict[str, Any]) -> int:
        return estimate_input_tokens(body)
