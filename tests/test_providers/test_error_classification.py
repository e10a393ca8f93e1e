"""Tests for provider failure classification and error sanitization."""

import time

import orjson
import pytest

from chorus.providers import (
    FailureKind,
    ProviderAuthRequired,
    ProviderContextMissing,
    ProviderError,
    ProviderNetworkError,
    ProviderRateLimited,
    classify_error,
)
from chorus.providers.errors import DEFAULT_RETRY_AFTER_MS
from chorus.security import sanitize_error_message


class TestTypedErrors:
    def test_auth_required(self) -> None:
        failure = classify_error(ProviderAuthRequired("session cookie expired"))
        assert failure.kind == FailureKind.AUTH_REQUIRED
        assert failure.requires_reauth
        assert not failure.retryable

    def test_context_missing(self) -> None:
        failure = classify_error(ProviderContextMissing("conversation 42 gone"))
        assert failure.kind == FailureKind.CONTEXT_MISSING
        assert failure.retryable

    def test_network(self) -> None:
        assert classify_error(ProviderNetworkError("reset")).kind == FailureKind.NETWORK
        assert classify_error(ConnectionResetError()).kind == FailureKind.NETWORK

    def test_timeout(self) -> None:
        assert classify_error(TimeoutError()).kind == FailureKind.TIMEOUT
        assert classify_error(ProviderError("x", code="ETIMEDOUT")).kind == FailureKind.TIMEOUT


class TestRateLimit:
    def test_retry_after_header(self) -> None:
        failure = classify_error(ProviderRateLimited("slow", headers={"Retry-After": "45"}))
        assert failure.kind == FailureKind.RATE_LIMIT
        assert failure.retry_after_ms == 45_000

    def test_reset_in_json_body(self) -> None:
        body = orjson.dumps({"error": "rate_limited", "resets_at": time.time() + 120}).decode()
        failure = classify_error(ProviderRateLimited(body))
        assert 100_000 < failure.retry_after_ms <= 120_000

    def test_reset_in_windows(self) -> None:
        body = orjson.dumps({"windows": {"5h": {"resetsAt": time.time() + 30}}}).decode()
        failure = classify_error(ProviderError(body, code="RATE_LIMITED"))
        assert failure.kind == FailureKind.RATE_LIMIT
        assert 10_000 < failure.retry_after_ms <= 30_000

    def test_default_hint(self) -> None:
        failure = classify_error(ProviderError("upstream said no", status=429))
        assert failure.retry_after_ms == DEFAULT_RETRY_AFTER_MS

    def test_message_pattern(self) -> None:
        assert classify_error(RuntimeError("Rate-limit exceeded")).kind == FailureKind.RATE_LIMIT


class TestStatusCodes:
    @pytest.mark.parametrize(
        ("status", "kind", "retryable"),
        [
            (401, FailureKind.AUTH_REQUIRED, False),
            (403, FailureKind.AUTH_REQUIRED, False),
            (413, FailureKind.INPUT_TOO_LONG, False),
            (502, FailureKind.UNKNOWN, True),
        ],
    )
    def test_status(self, status: int, kind: FailureKind, retryable: bool) -> None:
        failure = classify_error(ProviderError("boom", status=status))
        assert failure.kind == kind
        assert failure.retryable is retryable


class TestMessageHeuristics:
    def test_content_filter(self) -> None:
        failure = classify_error(RuntimeError("Response blocked by safety system"))
        assert failure.kind == FailureKind.CONTENT_FILTER
        assert not failure.retryable

    def test_unknown_keeps_message(self) -> None:
        failure = classify_error(ValueError("odd payload"))
        assert failure.kind == FailureKind.UNKNOWN
        assert failure.message == "odd payload"

    def test_unknown_without_message(self) -> None:
        assert classify_error(ValueError()).message == "An unexpected error occurred."


class TestSanitizeErrorMessage:
    def test_paths_and_addresses(self) -> None:
        message = sanitize_error_message("failed at /srv/app/client.py line 88 object 0x7f3a2b")
        assert message == "failed at [path] [line] object [address]"

    def test_credentials(self) -> None:
        message = sanitize_error_message("bad cookie=sess-123; token: abc987")
        assert "sess-123" not in message
        assert "abc987" not in message
        assert message.startswith("bad cookie=[redacted]")

    def test_empty_falls_back_to_type(self) -> None:
        assert sanitize_error_message(KeyError()) == "KeyError"
