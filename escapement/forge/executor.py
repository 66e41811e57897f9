"""
Execution scheduler for applying a Plan.

A fixed pool of asyncio worker tasks drains a ready queue. An action becomes
ready when every action it requires has succeeded; the only thing that orders
actions is the plan's dependency edges.

Per action: pending -> running -> succeeded | failed. Dependents of a failed
action are skipped. After the first failure (or an external ``cancel()``) no
new action starts: running actions finish, the rest end cancelled. State is
written for each success before it is reported, so the State Store always
reflects exactly the succeeded subset.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ..errors import EscapementError, ProviderError
from ..models import (
    ActionOutcome,
    ActionStatus,
    ActionType,
    ApplyReport,
    LiteralValue,
    PlanAction,
    Plan,
    Resource,
    StateRecord,
    compute_attributes_hash,
    utcnow,
)
from ..providers.base import ProviderRegistry, ProviderResource, ResourceTypeSpec
from .lock import LockManager
from .state import StateStore

logger = logging.getLogger(__name__)


class ActionTimeoutError(ProviderError):
    """A provider call did not finish within the timeout; the outcome is unknown."""

    def __init__(self, message: str):
        super().__init__(message, indeterminate=True)


class UnresolvedReferenceError(EscapementError):
    """A reference could not be resolved from state at apply time."""
    pass


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff: ``base * 2^(attempt-1)``, capped at ``max_delay``."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def resolve_attributes(resource: Resource, store: StateStore) -> dict[str, Any]:
    """
    Substitute references with values recorded in state.

    Raises:
        UnresolvedReferenceError: If a referenced resource or attribute is not in state
    """
    resolved: dict[str, Any] = {}
    for name, value in resource.attributes.items():
        if isinstance(value, LiteralValue):
            resolved[name] = value.value
            continue
        record = store.get(value.key)
        if record is None or not record.has_attribute(value.attribute):
            raise UnresolvedReferenceError(
                f"{resource.address}: cannot resolve '{value}', "
                f"'{value.key}' has no recorded '{value.attribute}'"
            )
        resolved[name] = record.attribute(value.attribute)
    return resolved


class Scheduler:
    """
    Executes the changes of a Plan with bounded concurrency.

    Args:
        plan: The plan to execute
        registry: Provider registry dispatching each resource type to its adapter
        store: State Store updated after every successful action
        lock: Lock manager verified before every state write (optional)
        owner_id: Holder of the exclusive lock
        max_workers: Maximum number of concurrent provider calls
        timeout: Seconds allowed for each provider call
        retry_max_attempts: Attempts per call for retryable errors
        retry_base_delay: First backoff delay in seconds
        retry_max_delay: Maximum backoff delay in seconds
        on_transition: Called with the outcome whenever an action changes status
    """

    def __init__(
        self,
        plan: Plan,
        registry: ProviderRegistry,
        store: StateStore,
        lock: LockManager | None = None,
        owner_id: str | None = None,
        *,
        max_workers: int = 4,
        timeout: float = 300.0,
        retry_max_attempts: int = 5,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        on_transition: Callable[[ActionOutcome], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.plan = plan
        self.registry = registry
        self.store = store
        self.lock = lock
        self.owner_id = owner_id
        self.max_workers = max(1, max_workers)
        self.timeout = timeout
        self.retry_max_attempts = max(1, retry_max_attempts)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.on_transition = on_transition
        self._sleep = sleep

        self.actions: dict[str, PlanAction] = {a.id: a for a in plan.changes}
        self.outcomes: dict[str, ActionOutcome] = {
            a.id: ActionOutcome(action_id=a.id, key=a.key, action=a.action) for a in plan.changes
        }

        # Dependency counting over changes only; no-ops never run
        self._remaining: dict[str, int] = {}
        self._dependents: dict[str, list[str]] = {action_id: [] for action_id in self.actions}
        for action in plan.changes:
            requires = [r for r in action.requires if r in self.actions]
            self._remaining[action.id] = len(requires)
            for required in requires:
                self._dependents[required].append(action.id)

        self._queue: asyncio.Queue[str | None] | None = None
        self._done: asyncio.Event | None = None
        self._outstanding = len(self.actions)
        self._running = 0
        self._stopping = False
        self._cancel_requested = False

    @classmethod
    def from_settings(cls, plan: Plan, registry: ProviderRegistry, store: StateStore, settings, **kwargs) -> "Scheduler":
        return cls(
            plan,
            registry,
            store,
            max_workers=settings.max_workers,
            timeout=settings.provider_timeout,
            retry_max_attempts=settings.retry_max_attempts,
            retry_base_delay=settings.retry_base_delay,
            retry_max_delay=settings.retry_max_delay,
            **kwargs,
        )

    # =========================================================================
    # Public interface
    # =========================================================================

    async def run(self) -> ApplyReport:
        """
        Execute every change in the plan.

        Returns:
            ApplyReport with one outcome per change, in plan order
        """
        report = ApplyReport()
        if not self.actions:
            logger.info("No changes to apply")
            report.finished_at = utcnow()
            return report

        self._queue = asyncio.Queue()
        self._done = asyncio.Event()

        if self._stopping:
            self._cancel_pending()
        if self._outstanding == 0:
            self._done.set()

        for action in self.plan.changes:
            if self._remaining[action.id] == 0:
                self._queue.put_nowait(action.id)

        worker_count = min(self.max_workers, len(self.actions))
        logger.info(f"Applying {len(self.actions)} changes with {worker_count} workers")
        workers = [asyncio.create_task(self._worker(i)) for i in range(worker_count)]

        try:
            await self._done.wait()
        finally:
            for _ in workers:
                self._queue.put_nowait(None)
            await asyncio.gather(*workers)

        report.outcomes = [self.outcomes[action.id] for action in self.plan.changes]
        report.cancelled = self._cancel_requested
        report.finished_at = utcnow()

        summary = report.summary()
        logger.info(
            f"Apply finished: {summary['succeeded']} succeeded, {summary['failed']} failed, "
            f"{summary['skipped']} skipped, {summary['cancelled']} cancelled"
        )
        return report

    def cancel(self) -> None:
        """Stop scheduling new actions; running actions finish."""
        if self._cancel_requested:
            return
        logger.warning("Apply cancelled; waiting for running actions to finish")
        self._cancel_requested = True
        self._stop()

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def _worker(self, number: int) -> None:
        while True:
            action_id = await self._queue.get()
            if action_id is None:
                return
            if self.outcomes[action_id].status.terminal:
                continue
            if self._stopping:
                self._finish(action_id, ActionStatus.CANCELLED)
                continue
            await self._execute(self.actions[action_id])

    def _stop(self) -> None:
        self._stopping = True
        if self._running == 0:
            self._cancel_pending()

    def _cancel_pending(self) -> None:
        for action_id, outcome in self.outcomes.items():
            if outcome.status == ActionStatus.PENDING:
                self._finish(action_id, ActionStatus.CANCELLED)

    def _set_status(self, outcome: ActionOutcome, status: ActionStatus, error: str | None = None) -> None:
        outcome.status = status
        if error is not None:
            outcome.error = error
        if status == ActionStatus.RUNNING:
            outcome.started_at = utcnow()
        elif status.terminal:
            outcome.finished_at = utcnow()
        if self.on_transition is not None:
            self.on_transition(outcome)

    def _finish(self, action_id: str, status: ActionStatus, error: str | None = None) -> None:
        outcome = self.outcomes[action_id]
        if outcome.status.terminal:
            return
        self._set_status(outcome, status, error)
        self._outstanding -= 1

        if status == ActionStatus.SUCCEEDED:
            for dependent in self._dependents[action_id]:
                self._remaining[dependent] -= 1
                if self._remaining[dependent] == 0:
                    self._queue.put_nowait(dependent)
        elif status in (ActionStatus.FAILED, ActionStatus.SKIPPED):
            for dependent in self._dependents[action_id]:
                if not self.outcomes[dependent].status.terminal:
                    logger.info(f"{dependent}: skipped because {action_id} {status.value}")
                    self._finish(dependent, ActionStatus.SKIPPED, f"dependency {action_id} {status.value}")

        if self._outstanding == 0 and self._done is not None:
            self._done.set()

    # =========================================================================
    # Execution
    # =========================================================================

    async def _execute(self, action: PlanAction) -> None:
        outcome = self.outcomes[action.id]
        self._running += 1
        self._set_status(outcome, ActionStatus.RUNNING)
        logger.info(f"{action.id}: running")

        status, error = ActionStatus.SUCCEEDED, None
        try:
            await self._perform(action, outcome)
        except Exception as e:  # adapter bugs fail the action, not the apply loop
            status, error = ActionStatus.FAILED, str(e) or type(e).__name__
            logger.error(f"{action.id}: failed after {outcome.attempts} attempt(s): {error}")
            if isinstance(e, ProviderError) and e.indeterminate and not action.deposed:
                outcome.tainted = True
                try:
                    self._write(lambda: self.store.mark_tainted(action.key, e.provider_id))
                except EscapementError as write_error:
                    logger.error(f"{action.id}: could not record taint: {write_error}")
        else:
            logger.info(f"{action.id}: succeeded")
        finally:
            self._running -= 1

        self._finish(action.id, status, error)
        if status == ActionStatus.FAILED:
            self._stop()
        elif self._stopping and self._running == 0:
            self._cancel_pending()

    def _write(self, change: Callable[[], Any]) -> Any:
        """Run a State Store write after confirming the lock is still ours."""
        if self.lock is not None and self.owner_id is not None:
            self.lock.verify(self.owner_id)
        return change()

    async def _call(
        self,
        action: PlanAction,
        outcome: ActionOutcome,
        spec: ResourceTypeSpec,
        make_call: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Provider call with a timeout and backoff for the type's retryable errors."""
        attempt = 0
        while True:
            attempt += 1
            outcome.attempts = attempt
            try:
                return await asyncio.wait_for(make_call(), timeout=self.timeout)
            except TimeoutError as e:
                raise ActionTimeoutError(f"{action.address}: {action.action.value} timed out after {self.timeout}s") from e
            except Exception as e:
                if attempt >= self.retry_max_attempts or not spec.is_retryable(e):
                    raise
                delay = backoff_delay(attempt, self.retry_base_delay, self.retry_max_delay)
                logger.warning(
                    f"{action.id}: attempt {attempt}/{self.retry_max_attempts} failed ({e}); "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

    async def _perform(self, action: PlanAction, outcome: ActionOutcome) -> None:
        registration = self.registry.get(action.key.type)
        adapter, spec = registration.adapter, registration.spec

        if action.action == ActionType.DELETE:
            target = ProviderResource(key=action.key, attributes=dict(action.old or {}), provider_id=action.provider_id)
            await self._call(action, outcome, spec, lambda: adapter.delete(target))
            if action.deposed:
                self._write(lambda: self.store.remove_deposed(action.key, action.provider_id))
            else:
                self._write(lambda: self.store.remove(action.key, provider_id=action.provider_id))
            return

        attributes = resolve_attributes(action.resource, self.store)
        attribute_hash = compute_attributes_hash(attributes)
        dependencies = sorted(action.resource.dependency_keys())

        if action.action == ActionType.CREATE:
            target = ProviderResource(key=action.key, attributes=attributes)
            result = await self._call(action, outcome, spec, lambda: adapter.create(target))
            record = StateRecord(
                type=action.key.type,
                name=action.key.name,
                provider_id=result.provider_id,
                attribute_hash=attribute_hash,
                attributes=dict(result.attributes or attributes),
                dependencies=dependencies,
            )
            self._write(lambda: self.store.save_applied(record, depose_previous=action.create_before_destroy))
            return

        current = self.store.get(action.key)
        if current is None or current.provider_id is None:
            raise ProviderError(f"{action.address}: no recorded remote object to update")

        if attribute_hash == current.attribute_hash and not (current.drifted or current.tainted):
            # Pending values resolved to what is already applied
            logger.info(f"{action.id}: inputs unchanged after resolution, nothing to do")
            return

        old = dict(current.observed if current.drifted and current.observed is not None else current.attributes)
        target = ProviderResource(key=action.key, attributes=attributes, provider_id=current.provider_id)
        applied = await self._call(action, outcome, spec, lambda: adapter.update(target, old, attributes))
        record = current.model_copy(
            update={
                "attribute_hash": attribute_hash,
                "attributes": dict(applied if applied is not None else attributes),
                "tainted": False,
                "drifted": False,
                "observed": None,
                "dependencies": dependencies,
            }
        )
        self._write(lambda: self.store.save_applied(record))
