"""
Error taxonomy for delivery runs.

Provides:
- DeliveryError: structured, serializable failure carried by runs, callbacks and HTTP
- with_retry: retry decorator with exponential backoff for transport-level calls
- is_transient_error: text heuristic used for the final attempt of save/deliver
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps
from typing import Any

from .http_client import HttpClientError

AUTH_REQUIRED = "AuthRequired"
NAVIGATION_FAILED = "NavigationFailed"
TIMEOUT = "Timeout"
ACTION_FAILED = "ActionFailed"
INVALID_MANIFEST = "InvalidManifest"
INTERNAL_ERROR = "InternalError"
CONTENT_REJECTED = "ContentRejected"
ASSET_VALIDATION_FAILED = "AssetValidationFailed"
ASSET_TYPE_MISMATCH = "AssetTypeMismatch"
UNAUTHORIZED = "Unauthorized"
HOST_NOT_ALLOWED = "HostNotAllowed"
RUN_NOT_FOUND = "RunNotFound"
RATE_LIMITED = "RateLimited"

_DEFAULT_RETRYABLE: dict[str, bool] = {
    AUTH_REQUIRED: False,
    NAVIGATION_FAILED: True,
    TIMEOUT: True,
    ACTION_FAILED: True,
    INVALID_MANIFEST: False,
    INTERNAL_ERROR: True,
    CONTENT_REJECTED: False,
    ASSET_VALIDATION_FAILED: True,
    ASSET_TYPE_MISMATCH: False,
    UNAUTHORIZED: False,
    HOST_NOT_ALLOWED: False,
    RUN_NOT_FOUND: False,
    RATE_LIMITED: True,
}

ERROR_CODES = frozenset(_DEFAULT_RETRYABLE)

_TRANSIENT_MARKERS = ("timeout", "timed out", "navigation", "net::", "network", "connection reset")


def default_retryable(code: str) -> bool:
    return _DEFAULT_RETRYABLE.get(code, True)


def is_transient_error(message: str | None) -> bool:
    text = (message or "").lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


@dataclass
class DeliveryError(Exception):
    """Structured failure surfaced via run status and the signed callback."""

    code: str
    message: str
    retryable: bool | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.retryable is None:
            self.retryable = default_retryable(self.code)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message, "retryable": bool(self.retryable)}
        if self.details:
            out["details"] = self.details
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DeliveryError | None:
        if not isinstance(data, dict) or not data.get("code"):
            return None
        details = data.get("details")
        return cls(
            code=str(data["code"]),
            message=str(data.get("message") or ""),
            retryable=bool(data.get("retryable")),
            details=details if isinstance(details, dict) else {},
        )


class AuthRequired(DeliveryError):
    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(AUTH_REQUIRED, message, False, dict(details))


class InvalidManifest(DeliveryError):
    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(INVALID_MANIFEST, message, False, dict(details))


def with_retry(
    max_attempts: int = 3,
    delay: float = 0.3,
    backoff: float = 1.5,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> Callable:
    """Decorator for automatic retry with exponential backoff."""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_error: Exception | None = None
            current_delay = delay
            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except (HttpClientError, TimeoutError) as e:
                    last_error = e
                    if attempt < max_attempts - 1:
                        sleep(current_delay)
                        current_delay *= backoff
            if last_error:
                raise last_error
            raise RuntimeError("Retry exhausted without error")

        return wrapper

    return decorator


__all__ = [
    "ACTION_FAILED",
    "ASSET_TYPE_MISMATCH",
    "ASSET_VALIDATION_FAILED",
    "AUTH_REQUIRED",
    "CONTENT_REJECTED",
    "ERROR_CODES",
    "HOST_NOT_ALLOWED",
    "INTERNAL_ERROR",
    "INVALID_MANIFEST",
    "NAVIGATION_FAILED",
    "RATE_LIMITED",
    "RUN_NOT_FOUND",
    "TIMEOUT",
    "UNAUTHORIZED",
    "AuthRequired",
    "DeliveryError",
    "InvalidManifest",
    "default_retryable",
    "is_transient_error",
    "with_retry",
]
