"""In-memory provider adapter.

Simulates a remote API: objects live in a dict keyed by provider id. Used for
local dry runs and as the adapter behind the test suite, with hooks for
injecting failures, latency and out-of-band (drift) changes.
"""

import asyncio
import itertools
import logging
from collections.abc import Callable
from typing import Any

from ..errors import ProviderError
from .base import ProviderAdapter, ProviderResource, ProviderResult

logger = logging.getLogger(__name__)


class InMemoryProvider(ProviderAdapter):
    """Adapter whose remote objects are plain dicts.

    Args:
        delay: Seconds each call waits, to simulate I/O
        computed: Optional callable returning extra provider-computed attributes
    """

    def __init__(
        self,
        delay: float = 0.0,
        computed: Callable[[ProviderResource, str], dict[str, Any]] | None = None,
    ):
        self.delay = delay
        self.computed = computed
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], list[BaseException]] = {}
        self._ids = itertools.count(1)
        self._running = 0
        self.max_concurrency = 0

    # =========================================================================
    # Test hooks
    # =========================================================================

    def fail(self, operation: str, address: str, *errors: BaseException) -> None:
        """Raise ``errors`` (one per call, in order) for ``operation`` on ``address``."""
        self._failures.setdefault((operation, address), []).extend(errors)

    def set_remote(self, provider_id: str, **attributes: Any) -> None:
        """Change a remote object behind the engine's back."""
        self.objects[provider_id].update(attributes)

    def remove_remote(self, provider_id: str) -> None:
        self.objects.pop(provider_id, None)

    def calls_for(self, operation: str) -> list[str]:
        return [address for op, address in self.calls if op == operation]

    # =========================================================================
    # Adapter interface
    # =========================================================================

    async def _enter(self, operation: str, resource: ProviderResource) -> None:
        self.calls.append((operation, resource.address))
        self._running += 1
        self.max_concurrency = max(self.max_concurrency, self._running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            pending = self._failures.get((operation, resource.address))
            if pending:
                raise pending.pop(0)
        finally:
            self._running -= 1

    async def create(self, resource: ProviderResource) -> ProviderResult:
        await self._enter("create", resource)
        provider_id = f"{resource.type}-{next(self._ids):04d}"
        attributes = dict(resource.attributes)
        if self.computed:
            attributes.update(self.computed(resource, provider_id))
        self.objects[provider_id] = attributes
        logger.debug(f"Created {resource.address} as {provider_id}")
        return ProviderResult(provider_id=provider_id, attributes=dict(attributes))

    async def update(
        self,
        resource: ProviderResource,
        old_attributes: dict[str, Any],
        new_attributes: dict[str, Any],
    ) -> dict[str, Any]:
        await self._enter("update", resource)
        if resource.provider_id not in self.objects:
            raise ProviderError(f"{resource.address}: remote object {resource.provider_id} not found")
        current = self.objects[resource.provider_id]
        changed = {k: v for k, v in new_attributes.items() if old_attributes.get(k) != v}
        current.update(changed)
        for removed in set(old_attributes) - set(new_attributes):
            current.pop(removed, None)
        return dict(current)

    async def delete(self, resource: ProviderResource) -> None:
        await self._enter("delete", resource)
        if resource.provider_id is not None:
            self.objects.pop(resource.provider_id, None)

    async def read(self, provider_id: str) -> dict[str, Any] | None:
        attributes = self.objects.get(provider_id)
        return dict(attributes) if attributes is not None else None
