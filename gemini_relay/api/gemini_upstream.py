"""
Gemini 上游调用
- API Key 账户：{baseUrl}/models/{model}:generateContent，key 走查询参数
- OAuth 账户：Code Assist 接口，请求体包一层 {model, project, user_prompt_id, request}
"""
import json
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from gemini_relay.core.relay_config import RelayConfig
from gemini_relay.formats.claude_to_gemini import sanitize_for_api_key
from gemini_relay.scheduler import AccountKind, AccountSelection, UnifiedScheduler
from gemini_relay.utils.exceptions import (
    APIError,
    RETRYABLE_STATUS_CODES,
    TimeoutError,
    UpstreamHTTPError,
)
from gemini_relay.utils.http_client import get_http_client
from gemini_relay.utils.logger import (
    setup_logger,
    log_structured_error,
    ERROR_TYPE_AUTH,
    ERROR_TYPE_NETWORK,
    ERROR_TYPE_RATE_LIMIT,
    ERROR_TYPE_UPSTREAM_API,
)

logger = setup_logger("gemini_upstream")


@dataclass
class UpstreamTarget:
    """一次上游调用需要的全部信息"""
    account_id: str
    kind: AccountKind
    url: str
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)
    proxy: Any = None


def _parse_upstream_error(status_code: int, body: str) -> str:
    """从 Gemini 错误体中提取可读信息"""
    message = ""
    try:
        data = json.loads(body) if body else {}
        if isinstance(data, list) and data:
            data = data[0]
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                message = error.get("message") or error.get("status") or ""
            elif isinstance(error, str):
                message = error
    except ValueError:
        message = body[:500] if body else ""
    prefix = f"Gemini API error ({status_code})"
    return f"{prefix}: {message}" if message else prefix


class GeminiUpstreamClient:
    def __init__(self, relay_config: RelayConfig, scheduler: UnifiedScheduler):
        self.config = relay_config
        self.scheduler = scheduler

    async def prepare(
        self,
        selection: AccountSelection,
        model: str,
        body: Dict[str, Any],
        stream: bool,
    ) -> UpstreamTarget:
        """按账户类型构建 URL / 头 / 请求体；OAuth token 过期时先刷新"""
        repository = self.scheduler.repository_for(selection.kind)
        account = await repository.get_account(selection.account_id) if repository else None
        if account is None:
            raise APIError(f"Selected account {selection.account_id} no longer exists", 500)

        method = "streamGenerateContent" if stream else "generateContent"
        params: Dict[str, str] = {"alt": "sse"} if stream else {}
        headers = {"Content-Type": "application/json"}
        if stream:
            headers["Accept"] = "text/event-stream"

        if selection.kind == AccountKind.GEMINI_API:
            base = (account.get("baseUrl") or self.config.gemini_api_base).rstrip("/")
            params["key"] = account.get("apiKey") or ""
            return UpstreamTarget(
                account_id=selection.account_id,
                kind=selection.kind,
                url=f"{base}/models/{model}:{method}",
                body=sanitize_for_api_key(body),
                headers=headers,
                params=params,
                proxy=account.get("proxy"),
            )

        if repository.is_token_expired(account):
            logger.info(f"Access token expired for account {selection.account_id}, refreshing")
            account = await repository.refresh_token(selection.account_id)

        headers["Authorization"] = f"Bearer {account.get('accessToken') or ''}"
        return UpstreamTarget(
            account_id=selection.account_id,
            kind=selection.kind,
            url=f"{self.config.code_assist_base.rstrip('/')}:{method}",
            body={
                "model": model,
                "project": account.get("projectId") or account.get("tempProjectId"),
                "user_prompt_id": f"{uuid.uuid4()}########0",
                "request": body,
            },
            headers=headers,
            params=params,
            proxy=account.get("proxy"),
        )

    async def generate(self, target: UpstreamTarget, timeout: Optional[float] = None) -> Any:
        """非流式调用，返回解析后的 JSON（无法解析时返回原始文本）"""
        timeout = timeout or self.config.request_timeout
        try:
            async with get_http_client(target.proxy, timeout=timeout) as client:
                response = await client.post(
                    target.url, params=target.params, json=target.body, headers=target.headers
                )
        except httpx.TimeoutException as e:
            self._log_network_error(target, e, stream=False)
            raise TimeoutError(f"Non-streaming request timeout after {timeout} seconds")
        except httpx.HTTPError as e:
            self._log_network_error(target, e, stream=False)
            raise APIError(f"Non-streaming request failed: {e}", 502)

        if response.status_code != 200:
            self._raise_for_status(target, response.status_code, response.text)

        try:
            return response.json()
        except ValueError:
            return response.text

    @asynccontextmanager
    async def open_stream(
        self, target: UpstreamTarget, timeout: Optional[float] = None
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """打开流式连接，上下文内产出原始字节流；非 2xx 在进入前抛出"""
        timeout = timeout or self.config.request_timeout
        try:
            async with get_http_client(target.proxy, timeout=timeout) as client:
                async with client.stream(
                    "POST", target.url, params=target.params, json=target.body, headers=target.headers
                ) as response:
                    if response.status_code != 200:
                        raw = await response.aread()
                        self._raise_for_status(target, response.status_code, raw.decode("utf-8", errors="replace"))
                    logger.debug(f"Upstream stream opened for account {target.account_id}")
                    yield response.aiter_bytes()
        except httpx.TimeoutException as e:
            self._log_network_error(target, e, stream=True)
            raise TimeoutError(f"Streaming request timeout after {timeout} seconds")
        except httpx.HTTPError as e:
            self._log_network_error(target, e, stream=True)
            raise APIError(f"Streaming request failed: {e}", 502)

    def _raise_for_status(self, target: UpstreamTarget, status_code: int, body: str) -> None:
        if status_code in RETRYABLE_STATUS_CODES:
            error_type = ERROR_TYPE_RATE_LIMIT
        elif status_code in (401, 403):
            error_type = ERROR_TYPE_AUTH
        else:
            error_type = ERROR_TYPE_UPSTREAM_API

        log_structured_error(
            logger,
            error_type=error_type,
            request_method="POST",
            request_url=target.url,
            request_headers=target.headers,
            request_body=target.body,
            response_status=status_code,
            response_body=body,
            extra={"account_id": target.account_id, "account_kind": target.kind.value},
        )
        raise UpstreamHTTPError(status_code, body, _parse_upstream_error(status_code, body))

    def _log_network_error(self, target: UpstreamTarget, exc: Exception, stream: bool) -> None:
        log_structured_error(
            logger,
            error_type=ERROR_TYPE_NETWORK,
            exc=exc,
            request_method="POST",
            request_url=target.url,
            request_headers=target.headers,
            request_body=target.body,
            extra={
                "account_id": target.account_id,
                "account_kind": target.kind.value,
                "is_streaming": stream,
            },
        )
