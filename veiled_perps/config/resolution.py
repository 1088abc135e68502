"""Explicit configuration-resolution results.

Callers branch on `ResolvedConfig` or `UnavailableConfig` instead of receiving
placeholder values when configuration cannot be loaded.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from .settings import AppSettings, SettingsLoadError, config_load_settings

ConfigT = TypeVar("ConfigT")


@dataclass(frozen=True)
class ResolvedConfig(Generic[ConfigT]):
    """Configuration loaded successfully."""

    config: ConfigT


@dataclass(frozen=True)
class UnavailableConfig:
    """Configuration could not be loaded.

    Attributes:
        reason: Human-readable failure reason.
    """

    reason: str


ConfigResolution = Union[ResolvedConfig[ConfigT], UnavailableConfig]


def config_resolve_settings() -> ConfigResolution[AppSettings]:
    """Resolve runtime settings without raising on invalid configuration.

    Returns:
        ConfigResolution[AppSettings]: Resolved settings or the failure reason.
    """

    try:
        return ResolvedConfig(config=config_load_settings())
    except SettingsLoadError as error:
        return UnavailableConfig(reason=str(error))


def config_require(resolution: ConfigResolution[ConfigT]) -> ConfigT:
    """Return the resolved configuration or raise with the recorded reason.

    Args:
        resolution: Resolution result.

    Returns:
        ConfigT: Resolved configuration value.

    Raises:
        SettingsLoadError: Raised when configuration is unavailable.
    """

    if isinstance(resolution, UnavailableConfig):
        raise SettingsLoadError(resolution.reason)
    return resolution.config
