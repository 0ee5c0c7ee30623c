"""
Sync Engine Factory and Registry

Central registry for the provider sync engine implementations.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Type

from mailsync.providers.base import ProviderType

if TYPE_CHECKING:
    from mailsync.providers.email.base import BaseEmailSync, EmailSyncConfig, SyncContext

logger = logging.getLogger(__name__)

# Engine registry - maps provider types to implementation classes
_provider_registry: dict[ProviderType, Type[BaseEmailSync]] = {}


def register_provider(provider_type: ProviderType):
    """
    Decorator to register a sync engine implementation.

    Usage:
        @register_provider(ProviderType.GMAIL)
        class DirectGmailSync(BaseEmailSync):
            ...
    """
    def decorator(cls: Type[BaseEmailSync]):
        _provider_registry[provider_type] = cls
        logger.debug(f"Registered provider: {provider_type.value} -> {cls.__name__}")
        return cls
    return decorator


def get_provider_class(provider_type: ProviderType) -> Optional[Type[BaseEmailSync]]:
    """Get the engine class for a given type."""
    return _provider_registry.get(provider_type)


def create_provider(
    provider_type: ProviderType,
    context: SyncContext,
    config: Optional[EmailSyncConfig] = None,
    **kwargs,
) -> BaseEmailSync:
    """
    Create a sync engine instance.

    Args:
        provider_type: The type of provider to create
        context: Shared sync collaborators
        config: Optional engine configuration

    Returns:
        Initialized engine instance

    Raises:
        ValueError: If provider type is not registered
    """
    cls = get_provider_class(provider_type)
    if not cls:
        raise ValueError(f"No provider registered for type: {provider_type}")

    return cls(context, config, **kwargs)


def list_registered_providers() -> list[ProviderType]:
    """List all registered provider types."""
    return list(_provider_registry.keys())


def is_provider_available(provider_type: ProviderType) -> bool:
    """Check if a provider implementation is available."""
    return provider_type in _provider_registry
