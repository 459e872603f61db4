"""
StableVPS Provider Abstraction Layer
====================================

One interface, many hosting vendors. Importing this package registers
every adapter with the ProviderRegistry.

Supported Providers:
- Zomro (Cloud Forex, default)
- Aeza
- Cloudzy
- Contabo
- Mock (local development)
"""

from .base import (
    VPSProviderInterface,
    InstanceStatus,
    InstanceDetails,
    CreateResult,
    ControlAction,
    ProviderError,
    ConfigurationError,
    MappingError,
    ProviderRequestError,
    ProviderAuthError,
    sanitize_hostname,
    classify_foreign_id,
    generate_password,
)
from .credentials import AccessToken, TokenCache
from .registry import ProviderRegistry, register_provider, get_provider
from .aeza import AezaProvider
from .cloudzy import CloudzyProvider
from .contabo import ContaboProvider
from .zomro import ZomroProvider
from .mock import MockProvider

__all__ = [
    "VPSProviderInterface",
    "InstanceStatus",
    "InstanceDetails",
    "CreateResult",
    "ControlAction",
    "ProviderError",
    "ConfigurationError",
    "MappingError",
    "ProviderRequestError",
    "ProviderAuthError",
    "sanitize_hostname",
    "classify_foreign_id",
    "generate_password",
    "AccessToken",
    "TokenCache",
    "ProviderRegistry",
    "register_provider",
    "get_provider",
    "AezaProvider",
    "CloudzyProvider",
    "ContaboProvider",
    "ZomroProvider",
    "MockProvider",
]
