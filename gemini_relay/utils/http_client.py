"""
HTTP 客户端工厂
为每个上游账户创建带代理/超时配置的 httpx.AsyncClient
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from gemini_relay.utils.env_config import env_config

# 测试中注入 httpx.MockTransport
_transport_override: Optional[httpx.AsyncBaseTransport] = None


def set_transport_override(transport: Optional[httpx.AsyncBaseTransport]) -> None:
    global _transport_override
    _transport_override = transport


def _proxy_url(proxy: Any) -> Optional[str]:
    """账户 proxy 字段可以是 URL 字符串或 {type, host, port, username, password}"""
    if not proxy:
        return env_config.http_proxy_url
    if isinstance(proxy, str):
        return proxy
    if isinstance(proxy, dict) and proxy.get("host"):
        scheme = proxy.get("type") or "http"
        auth = ""
        if proxy.get("username"):
            auth = f"{proxy['username']}:{proxy.get('password', '')}@"
        port = f":{proxy['port']}" if proxy.get("port") else ""
        return f"{scheme}://{auth}{proxy['host']}{port}"
    return env_config.http_proxy_url


@asynccontextmanager
async def get_http_client(
    proxy: Any = None,
    timeout: Optional[float] = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """创建一次性的异步客户端，退出时关闭连接"""
    kwargs: Dict[str, Any] = {
        "timeout": httpx.Timeout(timeout or env_config.request_timeout, connect=10.0),
    }
    if _transport_override is not None:
        kwargs["transport"] = _transport_override
    else:
        proxy_url = _proxy_url(proxy)
        if proxy_url:
            kwargs["proxy"] = proxy_url

    async with httpx.AsyncClient(**kwargs) as client:
        yield client
