"""
Unified Conversion Exceptions

Exception hierarchy for Claude <-> Gemini conversion errors.
"""

from typing import Any, Optional


class UnifiedConversionError(Exception):
    """Base exception for conversion errors."""

    def __init__(
        self,
        message: str,
        source_format: Optional[str] = None,
        target_format: Optional[str] = None,
    ):
        super().__init__(message)
        self.source_format = source_format
        self.target_format = target_format


class MissingRequiredFieldError(UnifiedConversionError):
    """Raised when a required field is missing."""

    def __init__(self, field_name: str, **kwargs):
        super().__init__(f"Missing required field: {field_name}", **kwargs)
        self.field_name = field_name


class UpstreamShapeError(UnifiedConversionError):
    """Raised when an upstream payload cannot be interpreted at all.

    The raw payload is kept for structured logging.
    """

    def __init__(self, message: str, payload: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.payload = payload
