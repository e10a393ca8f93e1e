"""`.env` cascade for the orchestrator.

Which files apply depends on ``APP_ENV``; they are read into ``os.environ``
before ``AppConfig`` is built, so values from the process environment always
beat values from any file.
"""

import os
from enum import Enum
from pathlib import Path

from dotenv import load_dotenv

from chorus.telemetry import get_logger

log = get_logger(__name__)

# Repository root when running from a source checkout (src/chorus/config/..).
_DEFAULT_ROOT = Path(__file__).resolve().parents[3]


class Environment(str, Enum):
    """Deployment environment named by ``APP_ENV``."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


_ALIASES = {
    "prod": Environment.PRODUCTION,
    "stage": Environment.STAGING,
}


def get_environment() -> Environment:
    """Environment from ``APP_ENV``; unset or unrecognised values mean development.

    ``prod`` and ``stage`` are accepted as short forms. Read straight from the
    process environment because it decides which files feed the settings.
    """
    raw = os.getenv("APP_ENV", "").strip().lower()
    if raw in _ALIASES:
        return _ALIASES[raw]
    try:
        return Environment(raw)
    except ValueError:
        return Environment.DEVELOPMENT


def env_file_candidates(project_root: Path, environment: Environment) -> list[Path]:
    """Files to try, most specific first.

    ``load_dotenv`` never overwrites a key that is already set, so the first
    file to define a key wins and later, more general files only fill gaps.
    """
    name = environment.value
    return [
        project_root / f".env.{name}.local",
        project_root / f".env.{name}",
        project_root / ".env.local",
        project_root / ".env",
    ]


def load_env_files(project_root: Path | None = None) -> list[str]:
    """Read every existing candidate file into the process environment.

    Args:
        project_root: Directory holding the files; the source checkout root
            by default.

    Returns:
        Names of the files read, most specific first.
    """
    root = project_root or _DEFAULT_ROOT
    environment = get_environment()

    loaded = [path for path in env_file_candidates(root, environment) if path.is_file()]
    for path in loaded:
        load_dotenv(path, override=False)

    names = [path.name for path in loaded]
    if names:
        log.info("env_files_loaded", environment=environment.value, files=names, project_root=str(root))
    else:
        log.debug("no_env_files_found", environment=environment.value, project_root=str(root))
    return names
