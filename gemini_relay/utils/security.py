"""
日志安全工具
对 API Key、Bearer Token 等敏感字段做掩码，生成安全的日志预览
"""
import json
import re
from typing import Any, Optional

SENSITIVE_KEYS = {
    "authorization",
    "x-api-key",
    "x-goog-api-key",
    "api_key",
    "apikey",
    "key",
    "access_token",
    "accesstoken",
    "refresh_token",
    "refreshtoken",
    "password",
    "secret",
}

# URL 中的 ?key=xxx / &key=xxx
_QUERY_KEY_PATTERN = re.compile(r"([?&]key=)[^&\s]+")
_BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+")


def mask_api_key(api_key: Optional[str], visible: int = 4) -> str:
    """只保留首尾少量字符"""
    if not api_key:
        return ""
    if len(api_key) <= visible * 2:
        return "*" * len(api_key)
    return f"{api_key[:visible]}...{api_key[-visible:]}"


def mask_url(url: str) -> str:
    """掩码 URL 查询参数中的 key"""
    if not url:
        return url
    return _QUERY_KEY_PATTERN.sub(r"\1***", url)


def mask_sensitive_data(data: Any) -> Any:
    """递归掩码 dict/list 中的敏感字段，返回新对象"""
    if isinstance(data, dict):
        masked = {}
        for key, value in data.items():
            if str(key).lower() in SENSITIVE_KEYS and isinstance(value, str):
                if value.startswith("Bearer "):
                    masked[key] = "Bearer " + mask_api_key(value[7:])
                else:
                    masked[key] = mask_api_key(value)
            else:
                masked[key] = mask_sensitive_data(value)
        return masked
    if isinstance(data, list):
        return [mask_sensitive_data(item) for item in data]
    if isinstance(data, str):
        return _BEARER_PATTERN.sub(r"\1***", mask_url(data))
    return data


def safe_log_data(data: Any, max_length: int = 2000) -> str:
    """生成截断后的安全日志字符串"""
    masked = mask_sensitive_data(data)
    if isinstance(masked, (dict, list)):
        text = json.dumps(masked, ensure_ascii=False, default=str)
    else:
        text = str(masked)
    if len(text) > max_length:
        return text[:max_length] + f"...[truncated {len(text) - max_length} chars]"
    return text
