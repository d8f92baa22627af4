"""
转换器基类
统一的转换结果类型与日志器
"""
from dataclasses import dataclass
from typing import Any, Optional

from gemini_relay.utils.logger import setup_logger


@dataclass
class ConversionResult:
    """转换结果"""
    success: bool
    data: Any = None
    error: Optional[str] = None


class BaseConverter:
    """转换器基类"""

    def __init__(self):
        self.logger = setup_logger(f"converter.{self.__class__.__name__}")


__all__ = ["BaseConverter", "ConversionResult"]
