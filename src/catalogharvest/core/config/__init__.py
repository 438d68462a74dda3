"""Configuration loading and validation."""

from .models import (
    # Enums
    BackendType,
    # Config models
    AppConfig,
    ScraperConfig,
    PackagerConfig,
    ServerConfig,
    DatabaseConfig,
    LoggingConfig,
    ReplacementMap,
    # Constants
    MAX_LABEL_LENGTH,
)
from .loader import ConfigError, load_app_config
from .replacements import ReplacementStore

__all__ = [
    # Enums
    "BackendType",
    # Config models
    "AppConfig",
    "ScraperConfig",
    "PackagerConfig",
    "ServerConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "ReplacementMap",
    "MAX_LABEL_LENGTH",
    # Loaders
    "ConfigError",
    "load_app_config",
    "ReplacementStore",
]
