"""Configuration package for runtime settings, logging and startup validation."""

from .logging_setup import JsonLogFormatter, config_configure_logging
from .resolution import ConfigResolution, ResolvedConfig, UnavailableConfig, config_require, config_resolve_settings
from .settings import AppSettings, SettingsLoadError, config_load_database_url, config_load_settings

__all__ = [
    "AppSettings",
    "ConfigResolution",
    "JsonLogFormatter",
    "ResolvedConfig",
    "SettingsLoadError",
    "UnavailableConfig",
    "config_configure_logging",
    "config_load_database_url",
    "config_load_settings",
    "config_require",
    "config_resolve_settings",
]
