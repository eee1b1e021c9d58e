"""
Provider Adapter Registry

Maps provider ids to adapter classes and loads the provider capability
table. Providers without a registered adapter use the generic one.
"""

import logging
from dataclasses import replace
from functools import lru_cache
from typing import Dict, List, Optional, Type

import httpx
import yaml

from mailsync.core.config import settings
from mailsync.core.errors import ProviderError
from mailsync.providers.base import ProviderAuthAdapter, ProviderConfig

logger = logging.getLogger(__name__)

_adapter_registry: Dict[str, Type[ProviderAuthAdapter]] = {}

GENERIC_PROVIDER = "generic"


def register_adapter(provider_id: str):
    """
    Decorator to register an adapter implementation.

    Usage:
        @register_adapter("google")
        class GoogleAuthAdapter(ProviderAuthAdapter):
            ...
    """
    def decorator(cls: Type[ProviderAuthAdapter]):
        _adapter_registry[provider_id] = cls
        logger.debug(f"Registered auth adapter: {provider_id} -> {cls.__name__}")
        return cls
    return decorator


def get_adapter_class(provider_id: str) -> Type[ProviderAuthAdapter]:
    """Adapter class for a provider, falling back to the generic adapter."""
    return _adapter_registry.get(provider_id) or _adapter_registry[GENERIC_PROVIDER]


def list_registered_adapters() -> List[str]:
    return list(_adapter_registry.keys())


@lru_cache(maxsize=4)
def load_capability_table(path: Optional[str] = None) -> Dict[str, ProviderConfig]:
    """Read the provider capability table (YAML)."""
    path = path or settings.providers_file
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    table = {provider_id: ProviderConfig.from_dict(provider_id, data) for provider_id, data in raw.items()}
    logger.info(f"Loaded {len(table)} providers from {path}")
    return table


def get_provider_config(provider_id: str, path: Optional[str] = None) -> Optional[ProviderConfig]:
    """Capability-table entry with client credentials filled in from settings."""
    config = load_capability_table(path).get(provider_id)
    if config is None:
        return None
    client_id, client_secret = settings.client_credentials(provider_id)
    return replace(
        config,
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=settings.redirect_uri(provider_id),
    )


def list_providers(path: Optional[str] = None) -> List[ProviderConfig]:
    return list(load_capability_table(path).values())


def detect_provider(email_or_host: str, path: Optional[str] = None) -> Optional[str]:
    """Provider id for an email address or IMAP host, if known."""
    value = email_or_host.lower().strip()
    domain = value.rsplit("@", 1)[-1]
    for config in load_capability_table(path).values():
        if domain in config.domains:
            return config.id
        if config.imap and config.imap.host.lower() == value:
            return config.id
    return None


def create_adapter(
    provider_id: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    config: Optional[ProviderConfig] = None,
) -> ProviderAuthAdapter:
    """
    Create the auth adapter for a provider.

    Raises:
        ProviderError: If the provider is unknown or has no OAuth support
    """
    config = config or get_provider_config(provider_id)
    if config is None:
        raise ProviderError(f"Unknown provider: {provider_id}")
    if not config.features.oauth:
        raise ProviderError(f"Provider {provider_id} does not support OAuth")
    return get_adapter_class(provider_id)(config, transport=transport)


def _load_adapters():
    """Import adapter modules so their decorators run."""
    from mailsync.providers import generic, google, microsoft, yahoo  # noqa: F401


_load_adapters()
