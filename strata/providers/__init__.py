"""
Strata Providers - Remote resource backends.
"""

from __future__ import annotations

from strata.config.models import ProviderConfig
from strata.core.exceptions import ConfigurationError
from strata.providers.base import Provider, RemoteResource
from strata.providers.local import LocalProvider


def build_provider(config: ProviderConfig) -> Provider:
    """
    Create the provider named in the configuration.

    The AWS provider is imported lazily so boto3 is only loaded when used.
    """
    if config.name == "local":
        return LocalProvider(path=config.local_path, region=config.region)
    if config.name == "aws":
        from strata.providers.aws import AwsProvider

        return AwsProvider(region=config.region, profile=config.profile)
    raise ConfigurationError(f"Unknown provider: {config.name}")


__all__ = [
    "LocalProvider",
    "Provider",
    "RemoteResource",
    "build_provider",
]
