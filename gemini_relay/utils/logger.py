"""
日志配置
统一日志管理：控制台 + 按天轮转的文件日志，以及结构化错误日志
"""
import json
import logging
import logging.handlers
import sys
import time
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from gemini_relay.utils.env_config import env_config
from gemini_relay.utils.security import mask_sensitive_data, mask_url, safe_log_data

# 全局日志器缓存，避免重复创建
_loggers: Dict[str, logging.Logger] = {}

# 全局调试模式开关
_debug_mode = False

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _lvl(name: str) -> int:
    return int(getattr(logging, name, logging.INFO))


def _resolve_levels(level: Optional[str] = None):
    """返回 (console_level, file_level)

    CONSOLE_LOG_LEVEL / FILE_LOG_LEVEL 未设置时都跟随 LOG_LEVEL；
    调试模式下文件日志强制 DEBUG，控制台默认 INFO。
    """
    base_level = (level or env_config.log_level).upper()
    console_level = env_config.console_log_level or base_level
    file_level = env_config.file_log_level or base_level
    if _debug_mode:
        file_level = "DEBUG"
        if env_config.console_log_level is None:
            console_level = "INFO"
    return console_level, file_level


def enable_debug(enabled: bool = True) -> None:
    """启用或禁用调试模式，并刷新已创建 logger 的 handler 等级"""
    global _debug_mode
    _debug_mode = enabled

    for logger in _loggers.values():
        console_level, file_level = _resolve_levels()
        logger.setLevel(min(_lvl(console_level), _lvl(file_level)))
        for handler in logger.handlers:
            role = getattr(handler, "_handler_role", None)
            if role == "console":
                handler.setLevel(_lvl(console_level))
            elif role == "file":
                handler.setLevel(_lvl(file_level))


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """设置日志器"""
    if name in _loggers:
        return _loggers[name]

    console_level, file_level = _resolve_levels(level)

    logger = logging.getLogger(name)
    # logger 自身等级必须不高于任一 handler
    logger.setLevel(min(_lvl(console_level), _lvl(file_level)))
    logger.handlers.clear()

    formatter = logging.Formatter(_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(_lvl(console_level))
    console_handler.setFormatter(formatter)
    console_handler._handler_role = "console"  # type: ignore[attr-defined]
    logger.addHandler(console_handler)

    try:
        log_path = Path(env_config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.TimedRotatingFileHandler(
            filename=str(log_path),
            when="midnight",
            interval=1,
            backupCount=env_config.log_max_days,
            encoding="utf-8",
            utc=False,
        )
        file_handler.suffix = "%Y-%m-%d"
        file_handler.setLevel(_lvl(file_level))
        file_handler.setFormatter(formatter)
        file_handler._handler_role = "file"  # type: ignore[attr-defined]
        logger.addHandler(file_handler)
    except OSError as e:
        # 文件日志不可用时只保留控制台
        logger.warning(f"Failed to initialize file log handler: {e}")

    logger.propagate = False
    _loggers[name] = logger
    return logger


def cleanup_old_logs() -> int:
    """清理超过保留天数的轮转日志，返回删除的文件数"""
    log_path = Path(env_config.log_file)
    log_dir = log_path.parent
    if not log_dir.exists():
        return 0

    max_age = env_config.log_max_days * 24 * 60 * 60
    cutoff = time.time() - max_age
    removed = 0
    for file_path in log_dir.glob(f"{log_path.name}.*"):
        try:
            if file_path.stat().st_mtime < cutoff:
                file_path.unlink()
                removed += 1
        except OSError:
            continue
    return removed


# ===================== 结构化错误日志 =====================

ERROR_TYPE_NETWORK = "network"           # 超时、连接失败、代理错误
ERROR_TYPE_AUTH = "auth"                 # 401/403，token 刷新失败
ERROR_TYPE_RATE_LIMIT = "rate_limit"     # 429/503
ERROR_TYPE_CONVERSION = "conversion"     # 格式转换错误
ERROR_TYPE_UPSTREAM_API = "upstream_api" # 其他非 2xx、流式解析失败


def _envelope(logger: logging.Logger, level: str, request_id: str) -> Dict[str, Any]:
    """两类日志共用的字段"""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "logger": logger.name,
        "level": level,
        "request_id": request_id,
    }


def _extract_request_id(
    headers: Optional[Mapping[str, Any]] = None,
    explicit_request_id: Optional[str] = None,
) -> str:
    """从请求头或显式参数中提取/生成 request_id"""
    if explicit_request_id:
        return str(explicit_request_id)

    if headers:
        lower_map = {str(k).lower(): v for k, v in headers.items()}
        for key in ("x-request-id", "x-correlation-id", "x-trace-id"):
            if lower_map.get(key):
                return str(lower_map[key])

    return uuid.uuid4().hex[:16]


def _summarize_headers(
    headers: Optional[Mapping[str, Any]],
    max_headers: int = 20,
    max_value_length: int = 200,
) -> Optional[Dict[str, Any]]:
    """对请求/响应头做掩码和长度控制"""
    if not headers:
        return None

    masked = mask_sensitive_data(dict(headers))
    summary: Dict[str, Any] = {}
    items = list(masked.items())
    for idx, (key, value) in enumerate(items):
        if idx >= max_headers:
            summary["_truncated"] = f"{len(items) - max_headers} more headers"
            break
        if isinstance(value, str) and len(value) > max_value_length:
            summary[key] = value[:max_value_length] + "...[truncated]"
        else:
            summary[key] = value
    return summary


def _preview_body(body: Any, max_length: int = 2000) -> Optional[str]:
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    return safe_log_data(body, max_length=max_length)


def log_structured_error(
    logger: logging.Logger,
    *,
    error_type: str,
    exc: Optional[BaseException] = None,
    request_id: Optional[str] = None,
    request_method: Optional[str] = None,
    request_url: Optional[str] = None,
    request_headers: Optional[Mapping[str, Any]] = None,
    request_body: Any = None,
    response_status: Optional[int] = None,
    response_body: Any = None,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    """
    统一的结构化错误日志入口，输出单行 JSON。

    Args:
        logger: 日志器实例
        error_type: network/auth/rate_limit/conversion/upstream_api
        exc: 异常对象（为空时记录当前调用栈）
        request_id: 请求ID（缺省时从 headers 提取或生成）
        request_method / request_url / request_headers / request_body: 发往上游的请求
        response_status / response_body: 上游响应
        extra: 额外上下文（账户、重试次数等）

    Returns:
        request_id
    """
    effective_request_id = _extract_request_id(request_headers, request_id)

    exception_block: Dict[str, Any] = {}
    if exc is not None:
        exception_block["type"] = exc.__class__.__name__
        exception_block["message"] = str(exc)
        exception_block["traceback"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    else:
        exception_block["traceback"] = "".join(traceback.format_stack()[:-1])

    payload = _envelope(logger, "ERROR", effective_request_id)
    payload.update({
        "error_type": error_type,
        "request": {
            "method": request_method,
            "url": mask_url(request_url) if request_url else None,
            "headers": _summarize_headers(request_headers),
            "body": _preview_body(request_body),
        },
        "response": {
            "status": response_status,
            "body": _preview_body(response_body),
        },
        "exception": exception_block,
    })
    if extra:
        payload["extra"] = extra

    try:
        serialized = json.dumps(payload, ensure_ascii=False, default=str)
    except (TypeError, ValueError) as serialize_exc:
        fallback = _envelope(logger, "ERROR", effective_request_id)
        fallback["error_type"] = error_type
        fallback["serialization_error"] = str(serialize_exc)
        serialized = json.dumps(fallback, ensure_ascii=False)

    logger.error(f"[structured_error] {serialized}")
    return effective_request_id


def log_request_entry(
    logger: logging.Logger,
    *,
    request_id: Optional[str] = None,
    request_headers: Optional[Mapping[str, Any]] = None,
    model: Optional[str] = None,
    target_model: Optional[str] = None,
    is_streaming: bool = False,
    api_key_id: Optional[str] = None,
    session_hash: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    """记录请求入口日志（INFO）"""
    effective_request_id = _extract_request_id(request_headers, request_id)

    payload = _envelope(logger, "INFO", effective_request_id)
    payload.update({
        "type": "request_entry",
        "model": model,
        "target_model": target_model,
        "is_streaming": is_streaming,
        "api_key_id": api_key_id,
        "session_hash": session_hash,
    })
    if extra:
        payload["extra"] = extra

    logger.info(f"[request_entry] {json.dumps(payload, ensure_ascii=False, default=str)}")
    return effective_request_id
