"""Security utilities for preventing information disclosure."""

import re


def sanitize_error_message(error: Exception | str) -> str:
    """Strip internal details from an error before it reaches an observer.

    Filters out file paths, memory addresses, line numbers, and anything that
    looks like a session cookie or bearer token, since provider clients embed
    those in their exception text.

    Args:
        error: The exception (or raw message) that occurred.

    Returns:
        A sanitized message safe to surface in a step-update event.
    """
    error_str = str(error)

    error_str = re.sub(r"(?i)(bearer|token|cookie|authorization)[=:\s]+[^\s,;]+", r"\1=[redacted]", error_str)
    error_str = re.sub(r"/[^\s]+", "[path]", error_str)
    error_str = re.sub(r"0x[0-9a-fA-F]+", "[address]", error_str)
    error_str = re.sub(r"line \d+", "[line]", error_str)

    return error_str.strip() or type(error).__name__
