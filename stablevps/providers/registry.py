"""
StableVPS Provider Registry
===========================

Central registry of VPS provider adapters. The active provider is chosen
by configuration (`VPS_PROVIDER`), so callers never import a specific
vendor module directly.
"""

import logging
from typing import Dict, List, Optional, Type

from .base import VPSProviderInterface, ConfigurationError

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Registry of available VPS providers.

    Manages provider registration and instantiation so the rest of the
    application only ever sees `VPSProviderInterface`.
    """

    _providers: Dict[str, Type[VPSProviderInterface]] = {}

    @classmethod
    def register(cls, provider_class: Type[VPSProviderInterface]) -> None:
        """
        Register a provider adapter class.

        Args:
            provider_class: Provider class implementing VPSProviderInterface
        """
        cls._providers[provider_class.PROVIDER_ID] = provider_class

    @classmethod
    def get_provider_class(cls, provider_id: str) -> Optional[Type[VPSProviderInterface]]:
        """
        Get a registered provider class by ID.

        Args:
            provider_id: Provider identifier (e.g., 'zomro', 'aeza')

        Returns:
            Provider class or None if not found
        """
        return cls._providers.get(provider_id)

    @classmethod
    def list_providers(cls) -> List[Dict[str, str]]:
        """
        List all registered providers.

        Returns:
            List of provider metadata dicts
        """
        return [
            {
                "id": provider_class.PROVIDER_ID,
                "name": provider_class.PROVIDER_NAME,
                "website": provider_class.PROVIDER_WEBSITE,
            }
            for provider_class in cls._providers.values()
        ]

    @classmethod
    def create(cls, provider_id: str, config, **kwargs) -> VPSProviderInterface:
        """
        Create a provider adapter from application config.

        Args:
            provider_id: Provider identifier
            config: StableVPSConfig carrying the credentials
            **kwargs: Adapter-specific overrides (client, token_cache, ...)

        Raises:
            ConfigurationError: If the provider is not registered
        """
        provider_class = cls.get_provider_class(provider_id)
        if not provider_class:
            raise ConfigurationError(
                provider_id,
                f"Provider not found: {provider_id}. "
                f"Available: {list(cls._providers.keys())}"
            )
        return provider_class.from_config(config, **kwargs)


def register_provider(provider_class: Type[VPSProviderInterface]) -> Type[VPSProviderInterface]:
    """
    Decorator to register a provider class.

    Usage:
        @register_provider
        class MyProvider(VPSProviderInterface):
            ...
    """
    ProviderRegistry.register(provider_class)
    return provider_class


def get_provider(config, **kwargs) -> VPSProviderInterface:
    """
    Return the adapter selected by configuration.

    `USE_ZOMRO_MOCK` swaps in the in-process mock regardless of the
    configured vendor.
    """
    if config.credentials.use_zomro_mock:
        logger.warning(f"USE_ZOMRO_MOCK is set, using mock provider instead of {config.vps_provider}")
        return ProviderRegistry.create("mock", config, **kwargs)

    logger.info(f"Using VPS provider: {config.vps_provider}")
    return ProviderRegistry.create(config.vps_provider, config, **kwargs)
