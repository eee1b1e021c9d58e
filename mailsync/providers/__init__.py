"""
OAuth provider adapters.

Importing the registry registers every built-in adapter.
"""

from mailsync.providers.base import (
    OAuthTokens,
    ProviderAuthAdapter,
    ProviderConfig,
    UserInfo,
    generate_pkce_pair,
    generate_state,
)
from mailsync.providers.registry import (
    create_adapter,
    detect_provider,
    get_adapter_class,
    get_provider_config,
    list_providers,
    register_adapter,
)

__all__ = [
    "OAuthTokens",
    "ProviderAuthAdapter",
    "ProviderConfig",
    "UserInfo",
    "generate_pkce_pair",
    "generate_state",
    "create_adapter",
    "detect_provider",
    "get_adapter_class",
    "get_provider_config",
    "list_providers",
    "register_adapter",
]
