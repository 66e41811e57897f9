"""Provider adapter interface and resource type registry."""

import importlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ..errors import EscapementError, ValidationError
from ..models import ResourceKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderResource:
    """What an adapter sees of a resource: key, resolved attributes and remote id."""

    key: ResourceKey
    attributes: dict[str, Any] = field(default_factory=dict)
    provider_id: str | None = None

    @property
    def type(self) -> str:
        return self.key.type

    @property
    def name(self) -> str:
        return self.key.name

    @property
    def address(self) -> str:
        return str(self.key)


@dataclass(frozen=True)
class ProviderResult:
    """Result of a successful create."""

    provider_id: str
    attributes: dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(ABC):
    """Performs create/update/delete/read calls against one infrastructure API.

    Failures are raised as ``ProviderError``; set ``indeterminate=True`` when
    the remote object may have been left half-changed.
    """

    @abstractmethod
    async def create(self, resource: ProviderResource) -> ProviderResult:
        """Create the remote object and return its id and attributes."""

    @abstractmethod
    async def update(
        self,
        resource: ProviderResource,
        old_attributes: dict[str, Any],
        new_attributes: dict[str, Any],
    ) -> dict[str, Any]:
        """Update in place; the adapter derives the minimal change set from old/new."""

    @abstractmethod
    async def delete(self, resource: ProviderResource) -> None:
        """Delete the remote object identified by ``resource.provider_id``."""

    @abstractmethod
    async def read(self, provider_id: str) -> dict[str, Any] | None:
        """Current remote attributes, or None if the object no longer exists."""


@dataclass(frozen=True)
class ResourceTypeSpec:
    """Per-type behaviour the engine needs from configuration.

    Attributes:
        name: Resource type name as used in documents
        force_replace: Attributes whose change requires destroy and re-create
        create_before_destroy: Create the replacement before deleting the old object
        retry_on: Exception classes treated as transient (retried with backoff)
    """

    name: str
    force_replace: frozenset[str] = frozenset()
    create_before_destroy: bool = False
    retry_on: tuple[type[BaseException], ...] = ()

    def is_retryable(self, error: BaseException) -> bool:
        return bool(self.retry_on) and isinstance(error, self.retry_on)


@dataclass(frozen=True)
class ResourceTypeRegistration:
    spec: ResourceTypeSpec
    adapter: ProviderAdapter


class ProviderRegistry:
    """Closed set of resource types, each dispatching to one adapter."""

    def __init__(self):
        self._types: dict[str, ResourceTypeRegistration] = {}

    def register(
        self,
        resource_type: str | ResourceTypeSpec,
        adapter: ProviderAdapter,
        *,
        force_replace: Iterable[str] = (),
        create_before_destroy: bool = False,
        retry_on: Iterable[type[BaseException]] = (),
    ) -> "ProviderRegistry":
        """Register a resource type; chainable.

        Raises:
            EscapementError: If the type is already registered
        """
        if isinstance(resource_type, ResourceTypeSpec):
            spec = resource_type
        else:
            spec = ResourceTypeSpec(
                name=resource_type,
                force_replace=frozenset(force_replace),
                create_before_destroy=create_before_destroy,
                retry_on=tuple(retry_on),
            )

        if spec.name in self._types:
            raise EscapementError(f"Resource type '{spec.name}' is already registered")

        self._types[spec.name] = ResourceTypeRegistration(spec=spec, adapter=adapter)
        logger.debug(f"Registered resource type '{spec.name}' -> {type(adapter).__name__}")
        return self

    @property
    def types(self) -> list[str]:
        return sorted(self._types)

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._types

    def get(self, resource_type: str) -> ResourceTypeRegistration:
        try:
            return self._types[resource_type]
        except KeyError:
            raise ValidationError(f"unknown resource type '{resource_type}'") from None

    def spec_for(self, resource_type: str) -> ResourceTypeSpec:
        """Spec of a type; unregistered types get an empty spec (used for planning only)."""
        registration = self._types.get(resource_type)
        return registration.spec if registration else ResourceTypeSpec(name=resource_type)

    def adapter_for(self, resource_type: str) -> ProviderAdapter:
        return self.get(resource_type).adapter


def load_registry(factory_path: str) -> ProviderRegistry:
    """
    Build a registry from a ``module:callable`` factory path.

    Args:
        factory_path: e.g. ``mycompany.infra.providers:build_registry``

    Returns:
        The ProviderRegistry returned by the factory

    Raises:
        EscapementError: If the factory cannot be imported or returns something else
    """
    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise EscapementError(f"Invalid provider factory '{factory_path}', expected 'module:callable'")

    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise EscapementError(f"Could not load provider factory '{factory_path}': {e}") from e

    registry = factory()
    if not isinstance(registry, ProviderRegistry):
        raise EscapementError(
            f"Provider factory '{factory_path}' returned {type(registry).__name__}, expected ProviderRegistry"
        )

    logger.info(f"Loaded provider registry from {factory_path}: {', '.join(registry.types)}")
    return registry
