"""Custom Pydantic validators for configuration.

This module provides validators for cross-field validation and
custom type conversions.
"""

from pathlib import Path


def validate_log_level(value: str) -> str:
    """Validate log level is one of the standard levels.

    Args:
        value: Log level string.

    Returns:
        Validated log level.

    Raises:
        ValueError: If log level is not valid.
    """
    valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if value.upper() not in valid_levels:
        raise ValueError(f"log_level must be one of {valid_levels}, got {value}")
    return value.upper()


def validate_log_format(value: str) -> str:
    """Validate log format is 'json' or 'console'.

    Args:
        value: Log format string.

    Returns:
        Validated log format.

    Raises:
        ValueError: If log format is not valid.
    """
    valid_formats = {"json", "console"}
    if value.lower() not in valid_formats:
        raise ValueError(f"log_format must be one of {valid_formats}, got {value}")
    return value.lower()


def validate_ratio(value: float) -> float:
    """Validate a threshold expressed as a fraction of a length.

    Args:
        value: Ratio between 0 and 1 inclusive.

    Returns:
        The validated ratio.

    Raises:
        ValueError: If the ratio is outside [0, 1].
    """
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"ratio must be within [0, 1], got {value}")
    return value


def normalize_provider_list(value: str | list[str]) -> list[str]:
    """Normalize a provider list given as CSV or list.

    Args:
        value: "claude,gemini" or ["claude", "gemini"].

    Returns:
        Lowercased provider ids with blanks removed, order preserved.
    """
    items = value.split(",") if isinstance(value, str) else list(value)
    seen: list[str] = []
    for item in items:
        pid = str(item).strip().lower()
        if pid and pid not in seen:
            seen.append(pid)
    return seen


def resolve_path(value: Path | str) -> Path:
    """Resolve relative paths to absolute paths.

    Args:
        value: Path value (can be string or Path).

    Returns:
        Resolved Path object.
    """
    path = Path(value) if isinstance(value, str) else value

    # If relative, resolve relative to project root
    if not path.is_absolute():
        # Assume we're in src/chorus/config, go up to project root
        project_root = Path(__file__).parent.parent.parent.parent
        path = (project_root / path).resolve()
    else:
        path = path.resolve()

    return path
