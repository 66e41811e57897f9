"""
Escapement Core - reconciliation pipeline coordinator.

Plan Pipeline: Load resources → Validate → Build graph → Diff against state → Plan
Apply Pipeline: Lock → Backup state → (Refresh) → Plan or check saved plan → Execute
Destroy Pipeline: Apply a plan computed against an empty Resource Model
Refresh Pipeline: Lock → Read remote objects → Record drift
"""

import asyncio
import logging
import os
import socket
from collections.abc import Callable
from pathlib import Path

from .assembly import create_plan, validate_plan
from .errors import ConflictError, DriftError, PlanConsumedError, StalePlanError, ValidationError
from .forge import LockManager, Scheduler, StateStore, refresh
from .intake import Parser, validate_resources
from .models import ActionOutcome, ApplyReport, LockRecord, Plan, ResourceKey, ResourceSet, StateRecord
from .providers import ProviderRegistry, default_registry, load_registry
from .settings import EscapementSettings, get_settings

logger = logging.getLogger(__name__)


def default_owner_id() -> str:
    """``user@host:pid`` identity used for locks."""
    user = os.environ.get("USER") or os.environ.get("USERNAME") or "escapement"
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


class EscapementCore:
    """Main coordinator for the Escapement pipeline."""

    def __init__(
        self,
        settings: EscapementSettings | None = None,
        registry: ProviderRegistry | None = None,
        store: StateStore | None = None,
        lock: LockManager | None = None,
        owner_id: str | None = None,
    ):
        """
        Initialize EscapementCore.

        Args:
            settings: Configuration (defaults to the global settings)
            registry: Provider registry (defaults to ``settings.provider_factory`` or the built-in adapters)
            store: State Store (defaults to ``settings.state_file``)
            lock: Lock manager (defaults to a lock file next to the state file)
            owner_id: Lock owner identity (defaults to ``settings.owner_id`` or user@host:pid)
        """
        self.settings = settings or get_settings()

        if registry is None:
            if self.settings.provider_factory:
                registry = load_registry(self.settings.provider_factory)
            else:
                registry = default_registry()
        self.registry = registry

        self.store = store or StateStore(self.settings.state_file, self.settings.resolved_backup_dir)

        if lock is None:
            if self.store.state_file is None:
                lock_file = None
            elif store is None:
                lock_file = self.settings.resolved_lock_file
            else:
                lock_file = self.store.state_file.with_name(self.store.state_file.name + ".lock")
            lock = LockManager(lock_file, stale_after=self.settings.lock_stale_after)
        self.lock = lock

        self.owner_id = owner_id or self.settings.owner_id or default_owner_id()
        self.parser = Parser()
        self._scheduler: Scheduler | None = None

        logger.info(f"EscapementCore initialized (types: {', '.join(self.registry.types) or 'none'})")

    # =========================================================================
    # Loading
    # =========================================================================

    def load(self, path: Path) -> ResourceSet:
        """
        Load and validate resource definitions from a file or directory.

        Raises:
            ValidationError: If the definitions are malformed or reference unknown types
        """
        resources = self.parser.load(path)
        validate_resources(resources, self.registry.types)
        logger.info(f"Loaded {len(resources)} resources from {path}")
        return resources

    def _resolve_resources(self, source: Path | ResourceSet | None) -> ResourceSet:
        if source is None:
            return ResourceSet()
        if isinstance(source, ResourceSet):
            validate_resources(source, self.registry.types)
            return source
        return self.load(Path(source))

    # =========================================================================
    # Plan
    # =========================================================================

    async def plan(self, source: Path | ResourceSet | None = None, destroy: bool = False) -> Plan:
        """
        Plan mode: compute the changes without touching any provider.

        Holds a shared lock while reading state.

        Args:
            source: Resource definitions (path or ResourceSet)
            destroy: Plan the deletion of everything in state

        Returns:
            The Plan
        """
        resources = ResourceSet() if destroy else self._resolve_resources(source)
        with self.lock.shared(self.owner_id):
            snapshot = self.store.snapshot()
        return create_plan(resources, snapshot, self.registry, destroy=destroy)

    # =========================================================================
    # Apply
    # =========================================================================

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            try:
                self.lock.heartbeat(self.owner_id)
            except ConflictError as e:
                logger.error(f"Lost the state lock: {e}")
                self.cancel()
                return

    def _check_saved_plan(self, plan: Plan) -> None:
        if plan.consumed:
            raise PlanConsumedError("Plan has already been applied")
        validate_plan(plan)

        # An empty state that was never written gets a new lineage on every load
        never_written = plan.metadata.state_serial == 0 and self.store.serial == 0 and len(self.store) == 0
        if not never_written and plan.metadata.state_lineage != self.store.lineage:
            raise StalePlanError(
                f"Plan was created for state lineage {plan.metadata.state_lineage}, "
                f"current lineage is {self.store.lineage}"
            )
        if plan.metadata.state_serial != self.store.serial:
            raise StalePlanError(
                f"State changed since the plan was created (serial {plan.metadata.state_serial} -> "
                f"{self.store.serial}); create a new plan"
            )

        unknown = sorted({a.key.type for a in plan.changes if a.key.type not in self.registry})
        if unknown:
            raise ValidationError(f"plan uses unregistered resource types: {', '.join(unknown)}")

    async def apply(
        self,
        source: Path | ResourceSet | Plan | None = None,
        *,
        destroy: bool = False,
        refresh_first: bool | None = None,
        approve: Callable[[Plan], bool] | None = None,
        on_transition: Callable[[ActionOutcome], None] | None = None,
    ) -> ApplyReport:
        """
        Full pipeline: lock → backup → (refresh) → plan → execute.

        Args:
            source: Resource definitions, or a saved Plan to execute as-is
            destroy: Delete everything in state (``source`` is ignored)
            refresh_first: Refresh before planning (defaults to ``settings.refresh_before_apply``)
            approve: Called with the plan before execution; returning False aborts
            on_transition: Called whenever an action changes status

        Returns:
            ApplyReport with per-action outcomes

        Raises:
            ValidationError: If the resources or the saved plan are invalid
            LockHeld: If another owner holds the state lock
            StalePlanError: If a saved plan no longer matches the state
            PlanConsumedError: If a saved plan was already applied
        """
        saved_plan = source if isinstance(source, Plan) else None
        resources = None
        if saved_plan is None:
            resources = ResourceSet() if destroy else self._resolve_resources(source)

        if refresh_first is None:
            refresh_first = self.settings.refresh_before_apply

        with self.lock.exclusive(self.owner_id, operation="destroy" if destroy else "apply"):
            heartbeat = asyncio.create_task(self._heartbeat())
            try:
                if saved_plan is not None:
                    self._check_saved_plan(saved_plan)
                    plan = saved_plan
                else:
                    if refresh_first:
                        await refresh(self.store, self.registry, self.lock, self.owner_id, self.settings.provider_timeout)
                    plan = create_plan(resources, self.store.snapshot(), self.registry, destroy=destroy)

                plan.consume()

                if plan.is_empty:
                    logger.info("No changes. Infrastructure matches the configuration.")
                    return ApplyReport(finished_at=plan.metadata.created_at)

                if approve is not None and not approve(plan):
                    logger.info("Apply not approved")
                    return ApplyReport(cancelled=True, finished_at=plan.metadata.created_at)

                self.store.create_backup()

                self._scheduler = Scheduler.from_settings(
                    plan,
                    self.registry,
                    self.store,
                    self.settings,
                    lock=self.lock,
                    owner_id=self.owner_id,
                    on_transition=on_transition,
                )
                return await self._scheduler.run()
            finally:
                self._scheduler = None
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

    async def destroy(
        self,
        approve: Callable[[Plan], bool] | None = None,
        on_transition: Callable[[ActionOutcome], None] | None = None,
    ) -> ApplyReport:
        """Destroy pipeline: delete every resource recorded in state, dependents first."""
        return await self.apply(destroy=True, approve=approve, on_transition=on_transition)

    def cancel(self) -> None:
        """Stop a running apply after the actions in flight finish."""
        if self._scheduler is not None:
            self._scheduler.cancel()

    # =========================================================================
    # State operations
    # =========================================================================

    async def refresh(self) -> list[DriftError]:
        """Refresh pipeline: record drift and vanished objects in state."""
        with self.lock.exclusive(self.owner_id, operation="refresh"):
            return await refresh(self.store, self.registry, self.lock, self.owner_id, self.settings.provider_timeout)

    def force_unlock(self) -> LockRecord | None:
        """Remove the state lock regardless of owner."""
        return self.lock.force_unlock()

    def state_records(self) -> dict[ResourceKey, StateRecord]:
        return self.store.records()
