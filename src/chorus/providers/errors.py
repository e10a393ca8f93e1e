"""Provider error hierarchy and failure classification.

Provider failures are never propagated out of a stage. They are classified
into a ProviderFailure record and stored on the provider response, so the
presentation layer can decide whether to offer a retry or a re-login.
"""

import re
import time
from enum import Enum
from typing import Any

import orjson
from pydantic import BaseModel

DEFAULT_RETRY_AFTER_MS = 60_000


class FailureKind(str, Enum):
    """Classified provider failure kinds."""

    AUTH_REQUIRED = "auth_required"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    CONTEXT_MISSING = "context_missing"
    CONTENT_FILTER = "content_filter"
    INPUT_TOO_LONG = "input_too_long"
    UNKNOWN = "unknown"


class ProviderFailure(BaseModel):
    """Structured description of a failed provider call."""

    kind: FailureKind
    message: str
    retryable: bool = True
    retry_after_ms: int | None = None
    requires_reauth: bool = False


# Error hierarchy


class ProviderError(Exception):
    """Base exception for provider client errors.

    Attributes:
        status: HTTP status reported by the backend, if any.
        code: Backend or transport error code, if any.
        headers: Response headers, used for Retry-After.
    """

    def __init__(
        self,
        message: str = "",
        *,
        status: int | None = None,
        code: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.headers = headers or {}


class ProviderAuthRequired(ProviderError):
    """Raised when the provider session cookie or token has expired."""


class ProviderRateLimited(ProviderError):
    """Raised when the provider throttles the session."""


class ProviderNetworkError(ProviderError):
    """Raised when the provider cannot be reached."""


class ProviderContextMissing(ProviderError):
    """Raised when stored continuation metadata no longer resolves upstream."""


_NETWORK_CODES = {"ECONNREFUSED", "ENOTFOUND", "ENETUNREACH", "ECONNRESET"}
_TIMEOUT_CODES = {"ETIMEDOUT", "ESOCKETTIMEDOUT"}


def _parse_retry_after(headers: dict[str, Any]) -> int | None:
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return int(str(raw).strip()) * 1000
    except ValueError:
        return None


def _parse_reset_from_message(message: str) -> int | None:
    """Read a ``resets_at`` epoch (seconds) from a JSON error body, as ms from now."""
    trimmed = message.strip()
    if not trimmed.startswith("{"):
        return None
    try:
        body = orjson.loads(trimmed)
    except orjson.JSONDecodeError:
        return None
    if not isinstance(body, dict):
        return None

    reset = body.get("resetsAt", body.get("resets_at"))
    windows = body.get("windows")
    if reset is None and isinstance(windows, dict):
        window = windows.get("5h") or windows.get("1h") or {}
        reset = window.get("resets_at", window.get("resetsAt"))
    if isinstance(reset, (int, float)):
        remaining = int(reset * 1000 - time.time() * 1000)
        if remaining > 0:
            return remaining
    return None


def _rate_limited(message: str, headers: dict[str, Any]) -> ProviderFailure:
    retry_after = (
        _parse_retry_after(headers) or _parse_reset_from_message(message) or DEFAULT_RETRY_AFTER_MS
    )
    return ProviderFailure(
        kind=FailureKind.RATE_LIMIT,
        message="Rate limit reached. Please wait before retrying.",
        retryable=True,
        retry_after_ms=retry_after,
    )


def classify_error(error: BaseException) -> ProviderFailure:
    """Classify an exception raised during a provider call.

    Args:
        error: Anything raised by a provider client or the call timeout.

    Returns:
        ProviderFailure describing the kind, retryability, and retry hint.
    """
    message = str(error)
    lowered = message.lower()
    status = getattr(error, "status", None)
    code = getattr(error, "code", None)
    headers = getattr(error, "headers", None) or {}

    if isinstance(error, ProviderAuthRequired):
        return ProviderFailure(
            kind=FailureKind.AUTH_REQUIRED,
            message="Authentication expired. Please log in again.",
            retryable=False,
            requires_reauth=True,
        )
    if isinstance(error, ProviderRateLimited) or code == "RATE_LIMITED":
        return _rate_limited(message, headers)
    if isinstance(error, ProviderContextMissing):
        return ProviderFailure(
            kind=FailureKind.CONTEXT_MISSING,
            message="Conversation context is no longer available upstream.",
            retryable=True,
        )

    if isinstance(status, int):
        if status == 429:
            return _rate_limited(message, headers)
        if status in (401, 403):
            return ProviderFailure(
                kind=FailureKind.AUTH_REQUIRED,
                message="Authentication expired. Please log in again.",
                retryable=False,
                requires_reauth=True,
            )
        if status == 413:
            return ProviderFailure(
                kind=FailureKind.INPUT_TOO_LONG,
                message="Input exceeds this provider's limit.",
                retryable=False,
            )
        if status >= 500:
            return ProviderFailure(
                kind=FailureKind.UNKNOWN,
                message="Provider server error. Will retry automatically.",
                retryable=True,
            )

    if re.search(r"rate[_\s-]?limit", lowered):
        return _rate_limited(message, headers)

    if (
        isinstance(error, TimeoutError)
        or code in _TIMEOUT_CODES
        or "timeout" in lowered
        or "timed out" in lowered
    ):
        return ProviderFailure(
            kind=FailureKind.TIMEOUT,
            message="Request timed out. Retrying may help.",
            retryable=True,
        )

    if (
        isinstance(error, (ProviderNetworkError, ConnectionError))
        or code in _NETWORK_CODES
        or "network" in lowered
    ):
        return ProviderFailure(
            kind=FailureKind.NETWORK, message="Network connection failed.", retryable=True
        )

    if any(marker in lowered for marker in ("content filter", "safety", "blocked")):
        return ProviderFailure(
            kind=FailureKind.CONTENT_FILTER,
            message="Response blocked by provider safety filters.",
            retryable=False,
        )

    return ProviderFailure(
        kind=FailureKind.UNKNOWN,
        message=message or "An unexpected error occurred.",
        retryable=True,
    )
