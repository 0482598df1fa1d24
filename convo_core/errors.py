"""Exceptions raised by the conversation engine."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    CONFIG = "CONFIG_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    API_ERROR = "API_ERROR"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    STREAM_ERROR = "STREAM_ERROR"
    TOOL_EXECUTION_ERROR = "TOOL_EXECUTION_ERROR"
    BACKGROUND_TASK_TIMEOUT = "BACKGROUND_TASK_TIMEOUT"
    BACKGROUND_TASK_ERROR = "BACKGROUND_TASK_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    VERSION_ERROR = "VERSION_ERROR"


# Substrings that mark a failure message as transient.
TRANSIENT_MARKERS = ("timeout", "network", "rate limit", "temporary")


class ConvoError(Exception):
    """Base exception for conversation engine errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.API_ERROR,
        retryable: bool = False,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.status_code = status_code
        self.details = details or {}

    def __str__(self):
        parts = [self.message]
        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")
        parts.append(f"[{self.code.value}]")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code.value,
            "retryable": self.retryable,
            "status_code": self.status_code,
        }


class ConfigError(ConvoError):
    """Raised when required configuration is missing."""

    def __init__(self, message: str = "Missing endpoint or API key configuration"):
        super().__init__(message, code=ErrorCode.CONFIG, retryable=False)


class RateLimitError(ConvoError):
    """Raised when the completion endpoint answers 429."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
    ):
        super().__init__(
            message,
            code=ErrorCode.RATE_LIMIT,
            retryable=True,
            status_code=429,
        )
        self.retry_after = retry_after


class QuotaExceededError(ConvoError):
    """Raised when the account quota is exhausted."""

    def __init__(self, message: str = "Quota exceeded"):
        super().__init__(
            message,
            code=ErrorCode.QUOTA_EXCEEDED,
            retryable=False,
            status_code=429,
        )


class APIError(ConvoError):
    """Raised for unsuccessful HTTP responses.

    Server-side failures (5xx) are retryable, client errors are not.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: ErrorCode = ErrorCode.API_ERROR,
        retryable: Optional[bool] = None,
    ):
        if retryable is None:
            retryable = status_code is not None and status_code >= 500
        super().__init__(
            message,
            code=code,
            retryable=retryable,
            status_code=status_code,
        )


class VersionError(APIError):
    """Raised when the endpoint rejects the configured API version."""

    def __init__(self, message: str = "Invalid API version"):
        super().__init__(
            message,
            status_code=400,
            code=ErrorCode.VERSION_ERROR,
            retryable=False,
        )


class NetworkError(ConvoError):
    """Raised when the transport fails before a response arrives."""

    def __init__(self, message: str = "Network error"):
        super().__init__(message, code=ErrorCode.NETWORK_ERROR, retryable=True)


class EmptyResponseError(ConvoError):
    """Raised when the model returns neither content nor tool calls."""

    def __init__(self, message: str = "Empty response from model"):
        super().__init__(message, code=ErrorCode.EMPTY_RESPONSE, retryable=True)


class StreamError(ConvoError):
    """Raised when a streamed response fails."""

    def __init__(self, message: str = "Stream failed", retryable: bool = False):
        super().__init__(message, code=ErrorCode.STREAM_ERROR, retryable=retryable)


class ToolExecutionError(ConvoError):
    """Raised inside tool execution; always captured into a result."""

    def __init__(self, message: str, tool_name: str, retryable: bool = False):
        super().__init__(
            message,
            code=ErrorCode.TOOL_EXECUTION_ERROR,
            retryable=retryable,
        )
        self.tool_name = tool_name


class BackgroundTaskTimeoutError(ConvoError):
    """Raised when a background completion does not finish in time."""

    def __init__(self, message: str = "Background task timed out"):
        super().__init__(
            message,
            code=ErrorCode.BACKGROUND_TASK_TIMEOUT,
            retryable=False,
            status_code=504,
        )


class BackgroundTaskError(ConvoError):
    """Raised when a background completion ends in a failed state."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(
            message,
            code=ErrorCode.BACKGROUND_TASK_ERROR,
            retryable=retryable,
            status_code=status_code,
        )


def is_rate_limit_error(error: BaseException) -> bool:
    """Check whether an error signals server-side rate limiting."""
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, ConvoError):
        return error.code == ErrorCode.RATE_LIMIT or (
            error.status_code == 429 and error.code != ErrorCode.QUOTA_EXCEEDED
        )
    return False


def is_transient_message(message: str) -> bool:
    """Check whether a failure message looks transient."""
    lowered = (message or "").lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


__all__ = [
    "ErrorCode",
    "TRANSIENT_MARKERS",
    "ConvoError",
    "ConfigError",
    "RateLimitError",
    "QuotaExceededError",
    "APIError",
    "VersionError",
    "NetworkError",
    "EmptyResponseError",
    "StreamError",
    "ToolExecutionError",
    "BackgroundTaskTimeoutError",
    "BackgroundTaskError",
    "is_rate_limit_error",
    "is_transient_message",
]
