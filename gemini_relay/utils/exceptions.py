"""
Relay 异常定义
传输层 / 调度层的错误类型，路由层统一转换为 Claude 错误信封
"""
from typing import Any, Optional

RETRYABLE_STATUS_CODES = (429, 503)


class RelayError(Exception):
    """所有 relay 错误的基类"""

    status_code: int = 500
    error_type: str = "api_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return False

    def to_envelope(self) -> dict:
        """Claude 协议的错误信封"""
        return {
            "type": "error",
            "error": {"type": self.error_type, "message": self.message},
        }


class APIError(RelayError):
    """通用 API 错误"""


class UpstreamHTTPError(APIError):
    """上游返回非 2xx"""

    def __init__(self, status_code: int, body: Any = None, message: Optional[str] = None):
        super().__init__(message or f"Upstream returned HTTP {status_code}", status_code)
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUS_CODES

    @property
    def rate_limited(self) -> bool:
        return self.status_code in RETRYABLE_STATUS_CODES


class TimeoutError(APIError):
    """上游请求超时"""

    status_code = 504

    @property
    def retryable(self) -> bool:
        return True


class ConversionError(RelayError):
    """格式转换失败"""

    status_code = 500


class NoAvailableAccountsError(RelayError):
    """调度器没有找到可用账户"""

    status_code = 503
    error_type = "service_unavailable"


class AuthenticationError(RelayError):
    """调用方凭证无效，或账户 token 无法刷新"""

    status_code = 401
    error_type = "authentication_error"


class InvalidRequestError(RelayError):
    """请求体不合法"""

    status_code = 400
    error_type = "invalid_request_error"


class ClaudeRelayNotConfiguredError(RelayError):
    """选中了 Claude 系账户但没有注入对应的转发实现"""

    status_code = 502
