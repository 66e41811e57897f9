"""
Planner module for converting resource diffs into an ordered Plan.

Each ResourceDiff expands into one or more PlanActions. The actions form their
own dependency graph:

- create/update actions follow the resource DAG
- delete actions follow the reverse DAG, using the dependencies stored in
  state for resources that are no longer declared
- a replacement orders the delete and create of the same key (delete first,
  or create first for create-before-destroy types)
- with create-before-destroy, dependents move to the new object before the
  old (deposed) object is deleted

The graph is flattened with Kahn's algorithm, ties broken by
``(resource key, action rank)`` so that the same inputs always give the same plan.
"""

import logging
from dataclasses import dataclass, field

from ..errors import ValidationError
from ..intake.validator import validate_resources
from ..models import (
    ActionType,
    Plan,
    PlanAction,
    PlanMetadata,
    ResourceKey,
    ResourceSet,
    StateDocument,
    StateRecord,
)
from ..providers.base import ProviderRegistry
from .differ import DiffType, ResourceDiff, compute_state_diff
from .graph import DependencyGraph, topological_sort

logger = logging.getLogger(__name__)

# Deletes sort ahead of creates for the same key when nothing else orders them
ACTION_RANK = {
    ActionType.DELETE: 0,
    ActionType.CREATE: 1,
    ActionType.UPDATE: 1,
    ActionType.NOOP: 2,
}


def action_id(action: ActionType, key: ResourceKey, deposed: str | None = None) -> str:
    """Stable identifier, e.g. ``create:network.vpc1`` or ``delete:network.vpc1:deposed:net-0001``."""
    base = f"{action.value}:{key}"
    return f"{base}:deposed:{deposed}" if deposed is not None else base


def records_by_key(document: StateDocument) -> dict[ResourceKey, StateRecord]:
    """Index a state document's records by ResourceKey."""
    return {record.key: record for record in document.resources.values()}


@dataclass
class _ActionDraft:
    """Mutable action under construction; frozen into a PlanAction once ordered."""

    fields: dict
    requires: set[str] = field(default_factory=set)

    @property
    def id(self) -> str:
        return self.fields["id"]


class PlanBuilder:
    """Expands diffs into actions and wires the action graph."""

    def __init__(self, diffs: list[ResourceDiff]):
        self.diffs = {diff.key: diff for diff in diffs}
        self.drafts: dict[str, _ActionDraft] = {}

        # key -> create/update action id (the "forward" action)
        self.forward: dict[ResourceKey, str] = {}
        # key -> delete action ids (regular, replacement and deposed)
        self.deletes: dict[ResourceKey, list[str]] = {}
        # key -> deposed delete action ids only
        self.deposed_deletes: dict[ResourceKey, list[str]] = {}

        # key -> keys whose stored record lists it as a dependency
        self.state_dependents: dict[ResourceKey, set[ResourceKey]] = {}
        for key, diff in self.diffs.items():
            for dependency in diff.record.dependencies if diff.record else ():
                self.state_dependents.setdefault(dependency, set()).add(key)

    # =========================================================================
    # Expansion
    # =========================================================================

    def _add(self, **fields) -> str:
        draft = _ActionDraft(fields=fields)
        if draft.id in self.drafts:
            raise ValidationError(f"duplicate plan action '{draft.id}'")
        self.drafts[draft.id] = draft
        return draft.id

    def _add_delete(self, key: ResourceKey, **fields) -> str:
        deposed = fields.get("deposed", False)
        label = fields.pop("deposed_label", None)
        suffix = label if deposed else None
        delete_id = self._add(id=action_id(ActionType.DELETE, key, suffix), action=ActionType.DELETE, key=key, **fields)
        self.deletes.setdefault(key, []).append(delete_id)
        if deposed:
            self.deposed_deletes.setdefault(key, []).append(delete_id)
        return delete_id

    def _dependents_of(self, key: ResourceKey, graph: DependencyGraph | None) -> set[ResourceKey]:
        """Declared dependents plus dependents recorded in state."""
        dependents = set(self.state_dependents.get(key, ()))
        if graph is not None and key in graph:
            dependents |= graph.dependents(key)
        return dependents

    def _promote_create_before_destroy(self, graph: DependencyGraph | None) -> set[ResourceKey]:
        """Replacements that must create first.

        A replaced resource with any (transitive) dependent replaced
        create-before-destroy is itself replaced create-before-destroy;
        otherwise the old dependent would have to outlive the dependency it
        references.
        """
        cbd = {key for key, diff in self.diffs.items() if diff.create_before_destroy}
        replaced = {key for key, diff in self.diffs.items() if diff.diff_type == DiffType.REPLACE}

        # Keys with a create-before-destroy replacement somewhere downstream
        upstream: set[ResourceKey] = set()
        frontier = set(cbd)
        while frontier:
            key = frontier.pop()
            for dependency in self.diffs:
                if dependency in upstream:
                    continue
                if key in self._dependents_of(dependency, graph):
                    upstream.add(dependency)
                    frontier.add(dependency)

        for key in sorted(replaced & upstream - cbd):
            logger.debug(f"{key}: replaced create-before-destroy because a dependent is")
            cbd.add(key)
        return cbd

    def expand(self, graph: DependencyGraph | None) -> None:
        cbd = self._promote_create_before_destroy(graph)

        for key in sorted(self.diffs):
            diff = self.diffs[key]
            record = diff.record
            provider_id = record.provider_id if record else None

            if diff.diff_type == DiffType.CREATE:
                self.forward[key] = self._add(
                    id=action_id(ActionType.CREATE, key), action=ActionType.CREATE, key=key,
                    new=diff.new, resource=diff.resource, reason=diff.reason,
                )

            elif diff.diff_type == DiffType.UPDATE:
                self.forward[key] = self._add(
                    id=action_id(ActionType.UPDATE, key), action=ActionType.UPDATE, key=key,
                    old=diff.old, new=diff.new, resource=diff.resource,
                    provider_id=provider_id, reason=diff.reason,
                )

            elif diff.diff_type == DiffType.NO_CHANGE:
                if diff.resource is not None:
                    self._add(
                        id=action_id(ActionType.NOOP, key), action=ActionType.NOOP, key=key,
                        old=dict(record.attributes), new=diff.new, resource=diff.resource,
                        provider_id=provider_id,
                    )

            elif diff.diff_type == DiffType.DELETE:
                self._add_delete(key, old=diff.old, provider_id=provider_id, reason=diff.reason)

            elif key in cbd:
                create_id = self._add(
                    id=action_id(ActionType.CREATE, key), action=ActionType.CREATE, key=key,
                    old=diff.old, new=diff.new, resource=diff.resource, replace=True,
                    create_before_destroy=True, reason=diff.reason,
                )
                self.forward[key] = create_id
                delete_id = self._add_delete(
                    key, old=dict(record.attributes), provider_id=provider_id, replace=True,
                    create_before_destroy=True, deposed=True, deposed_label=provider_id or "current",
                    reason=diff.reason,
                )
                self.drafts[delete_id].requires.add(create_id)

            else:
                delete_id = self._add_delete(
                    key, old=dict(record.attributes), provider_id=provider_id, replace=True,
                    reason=diff.reason,
                )
                create_id = self._add(
                    id=action_id(ActionType.CREATE, key), action=ActionType.CREATE, key=key,
                    old=diff.old, new=diff.new, resource=diff.resource, replace=True,
                    reason=diff.reason,
                )
                self.forward[key] = create_id
                self.drafts[create_id].requires.add(delete_id)

            for position, deposed in enumerate(diff.deposed):
                self._add_delete(
                    key, old=dict(deposed.attributes), provider_id=deposed.provider_id,
                    deposed=True, deposed_label=deposed.provider_id or f"#{position}",
                    reason="deposed object",
                )

    # =========================================================================
    # Edges
    # =========================================================================

    def wire(self, graph: DependencyGraph | None) -> None:
        for key, forward_id in self.forward.items():
            # Create/update after the create/update of everything referenced
            for dependency in self.diffs[key].dependencies:
                if dependency in self.forward:
                    self.drafts[forward_id].requires.add(self.forward[dependency])

        for key, delete_ids in self.deletes.items():
            dependents = self._dependents_of(key, graph)

            for delete_id in delete_ids:
                draft = self.drafts[delete_id]

                # Delete after everything that pointed at it has been deleted
                for dependent in dependents:
                    draft.requires.update(self.deletes.get(dependent, ()))

                if not draft.fields.get("deposed"):
                    # Leftover deposed objects go before the current object
                    draft.requires.update(self.deposed_deletes.get(key, ()))
                elif draft.fields.get("create_before_destroy") and graph is not None and key in graph:
                    # Dependents switch to the replacement before the old object goes
                    for dependent in graph.dependents(key):
                        if dependent in self.forward:
                            draft.requires.add(self.forward[dependent])

    # =========================================================================
    # Ordering
    # =========================================================================

    def order(self) -> list[PlanAction]:
        """
        Flatten the action graph into a total order.

        Raises:
            GraphError: If the action graph has a cycle
        """
        requires = {draft_id: draft.requires for draft_id, draft in self.drafts.items()}

        def sort_key(draft_id: str):
            draft = self.drafts[draft_id]
            return (draft.fields["key"], ACTION_RANK[draft.fields["action"]], draft_id)

        ordered = topological_sort(sorted(self.drafts), requires, sort_key=sort_key)
        return [
            PlanAction(index=index, requires=tuple(sorted(self.drafts[draft_id].requires)), **self.drafts[draft_id].fields)
            for index, draft_id in enumerate(ordered)
        ]


def order_actions(diffs: list[ResourceDiff], graph: DependencyGraph | None = None) -> list[PlanAction]:
    """Expand diffs into plan actions in execution order."""
    builder = PlanBuilder(diffs)
    builder.expand(graph)
    builder.wire(graph)
    return builder.order()


def create_plan(
    resources: ResourceSet,
    state: StateDocument,
    registry: ProviderRegistry | None = None,
    *,
    destroy: bool = False,
) -> Plan:
    """
    Generate a plan that converges ``state`` to ``resources``.

    Args:
        resources: Desired Resource Model (ignored when ``destroy`` is set)
        state: Snapshot of the State Store
        registry: Provider registry; when given, unknown resource types are rejected
        destroy: Plan the deletion of everything in state

    Returns:
        An ordered Plan stamped with the state serial and lineage it was computed against

    Raises:
        ValidationError: If the resources are invalid
        GraphError: If the resource references form a cycle
    """
    from .. import __version__

    if destroy:
        resources = ResourceSet()

    validate_resources(resources, registry.types if registry is not None else None)
    graph = DependencyGraph.build(resources)

    diffs = compute_state_diff(resources, records_by_key(state), registry, graph)
    actions = order_actions(diffs, graph)

    plan = Plan(
        metadata=PlanMetadata(
            state_serial=state.serial,
            state_lineage=state.lineage,
            config_digest=resources.digest(),
            engine_version=__version__,
            destroy=destroy,
        ),
        actions=tuple(actions),
    )

    summary = plan.summary()
    logger.info(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete, {summary['no-op']} unchanged"
    )
    return plan


def validate_plan(plan: Plan) -> None:
    """
    Check that a (possibly deserialized) plan is internally consistent.

    Raises:
        ValidationError: On duplicate ids, bad indexes or forward requirements
    """
    seen: set[str] = set()
    for position, action in enumerate(plan.actions):
        if action.index != position:
            raise ValidationError(f"action '{action.id}' has index {action.index}, expected {position}")
        if action.id in seen:
            raise ValidationError(f"duplicate plan action '{action.id}'")
        for required in action.requires:
            if required not in seen:
                raise ValidationError(f"action '{action.id}' requires '{required}' which does not precede it")
        if action.action in (ActionType.CREATE, ActionType.UPDATE) and action.resource is None:
            raise ValidationError(f"action '{action.id}' carries no resource")
        seen.add(action.id)



__all__ = [
    "ACTION_RANK",
    "PlanBuilder",
    "action_id",
    "create_plan",
    "order_actions",
    "records_by_key",
    "validate_plan",
]
