"""
Strata Config - Configuration management.
"""

from strata.config.loader import load_config
from strata.config.models import (
    ApplyConfig,
    GeneralConfig,
    LoggingConfig,
    ProviderConfig,
    StrataConfig,
)

__all__ = [
    "ApplyConfig",
    "GeneralConfig",
    "LoggingConfig",
    "ProviderConfig",
    "StrataConfig",
    "load_config",
]
