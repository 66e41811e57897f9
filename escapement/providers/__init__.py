"""
Provider adapters for Escapement.

Each resource type is registered once in a ProviderRegistry together with
its ResourceTypeSpec (force-replace attributes, create-before-destroy,
retryable error classes) and the adapter that performs its API calls.
"""

from .base import (
    ProviderAdapter,
    ProviderRegistry,
    ProviderResource,
    ProviderResult,
    ResourceTypeRegistration,
    ResourceTypeSpec,
    load_registry,
)
from .local import LocalDirectoryAdapter, LocalFileAdapter, register_local_types
from .memory import InMemoryProvider


def default_registry() -> ProviderRegistry:
    """Registry with the built-in local adapters."""
    return register_local_types(ProviderRegistry())


__all__ = [
    "ProviderAdapter",
    "ProviderRegistry",
    "ProviderResource",
    "ProviderResult",
    "ResourceTypeRegistration",
    "ResourceTypeSpec",
    "load_registry",
    "LocalDirectoryAdapter",
    "LocalFileAdapter",
    "register_local_types",
    "InMemoryProvider",
    "default_registry",
]
