"""Unified configuration management for chorus.

A single source of truth for configuration, integrating environment
variables, .env files, and defaults.
"""

from chorus.config.env_loader import Environment, get_environment
from chorus.config.settings import AppConfig, get_settings, load_app_config

# Singleton instance
settings = get_settings()

__all__ = [
    "settings",
    "AppConfig",
    "get_settings",
    "load_app_config",
    "Environment",
    "get_environment",
]
