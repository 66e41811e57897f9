"""
Differ module for computing state differences.

Compares the desired Resource Model against the State Store snapshot and
classifies every resource as create, update, replace, delete or no change.

Desired attributes are resolved in one pass over the dependency graph's
topological order. A reference to a resource that is not changing resolves to
its stored value; a reference to a value that will only exist after a pending
action runs resolves to the ``UNKNOWN`` placeholder, never to a stale value.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..models import (
    UNKNOWN,
    DeposedObject,
    LiteralValue,
    Resource,
    ResourceKey,
    ResourceSet,
    StateRecord,
    compute_attributes_hash,
)
from ..providers.base import ProviderRegistry, ResourceTypeSpec
from .graph import DependencyGraph

logger = logging.getLogger(__name__)


class DiffType(Enum):
    """Enumeration of types of differences that can be detected."""

    CREATE = "create"        # Resource needs to be created
    UPDATE = "update"        # Resource needs to be updated in place
    REPLACE = "replace"      # Resource needs to be destroyed and re-created
    DELETE = "delete"        # Resource needs to be deleted
    NO_CHANGE = "no_change"  # No changes needed


@dataclass(frozen=True)
class ResourceDiff:
    """Classification of one resource."""

    key: ResourceKey
    diff_type: DiffType
    resource: Resource | None = None
    record: StateRecord | None = None
    old: dict[str, Any] | None = None
    new: dict[str, Any] | None = None
    reason: str | None = None
    create_before_destroy: bool = False
    deposed: tuple[DeposedObject, ...] = ()
    dependencies: frozenset[ResourceKey] = field(default_factory=frozenset)

    @property
    def changed(self) -> bool:
        return self.diff_type != DiffType.NO_CHANGE or bool(self.deposed)


def _spec_for(registry: ProviderRegistry | None, resource_type: str) -> ResourceTypeSpec:
    if registry is None:
        return ResourceTypeSpec(name=resource_type)
    return registry.spec_for(resource_type)


def resolve_planned_attributes(
    resource: Resource,
    resources: ResourceSet,
    state: Mapping[ResourceKey, StateRecord],
    planned: Mapping[ResourceKey, dict[str, Any]],
    diff_types: Mapping[ResourceKey, DiffType],
) -> dict[str, Any]:
    """
    Substitute references with the best value known at plan time.

    Args:
        resource: Resource whose attributes are resolved
        resources: Full declaration set
        state: Stored records by key
        planned: Already-resolved attributes of dependencies
        diff_types: Classification of dependencies

    Returns:
        Attribute mapping where unknowable values are ``UNKNOWN``
    """
    resolved: dict[str, Any] = {}

    for name, value in resource.attributes.items():
        if isinstance(value, LiteralValue):
            resolved[name] = value.value
            continue

        ref_key, attr = value.key, value.attribute
        ref_type = diff_types[ref_key]
        record = state.get(ref_key)
        declared = attr in resources[ref_key].attributes

        if ref_type == DiffType.NO_CHANGE:
            resolved[name] = record.attribute(attr) if record and record.has_attribute(attr) else UNKNOWN
        elif ref_type == DiffType.UPDATE and attr == "id" and record is not None:
            # In-place updates keep the remote identity
            resolved[name] = record.provider_id
        elif declared:
            resolved[name] = planned[ref_key][attr]
        else:
            resolved[name] = UNKNOWN

    return resolved


def _forced_replacements(spec: ResourceTypeSpec, old: dict[str, Any], new: dict[str, Any]) -> list[str]:
    forced = []
    for attr in sorted(spec.force_replace):
        if attr not in old and attr not in new:
            continue
        if new.get(attr) == UNKNOWN or old.get(attr) != new.get(attr):
            forced.append(attr)
    return forced


def compute_state_diff(
    resources: ResourceSet,
    state: Mapping[ResourceKey, StateRecord],
    registry: ProviderRegistry | None = None,
    graph: DependencyGraph | None = None,
) -> list[ResourceDiff]:
    """
    Compute the difference between desired resources and stored state.

    Rules, in priority order:
    1. Declared but not stored: create.
    2. Stored but not declared: delete.
    3. Both: equal input hash is no change, otherwise update. A tainted record
       is always replaced; a drifted record is always at least updated.
    4. A changed force-replace attribute turns an update into a replace.

    Args:
        resources: Desired Resource Model
        state: Stored records by key
        registry: Provider registry supplying per-type specs
        graph: Prebuilt dependency graph (built from ``resources`` if omitted)

    Returns:
        One ResourceDiff per declared or stored resource, sorted by key

    Raises:
        ValidationError: If a reference is dangling
        GraphError: If the references form a cycle
    """
    graph = graph or DependencyGraph.build(resources)

    diffs: dict[ResourceKey, ResourceDiff] = {}
    planned: dict[ResourceKey, dict[str, Any]] = {}
    diff_types: dict[ResourceKey, DiffType] = {}

    for key in graph.topological_order():
        resource = resources[key]
        record = state.get(key)
        spec = _spec_for(registry, resource.type)

        new = resolve_planned_attributes(resource, resources, state, planned, diff_types)
        planned[key] = new
        dependencies = frozenset(graph.dependencies(key))
        deposed = tuple(record.deposed) if record else ()

        if record is None or (record.provider_id is None and not record.tainted):
            # No current remote object (at most deposed leftovers)
            diff_type, reason, old = DiffType.CREATE, None, None
        else:
            old = dict(record.observed if record.drifted and record.observed is not None else record.attributes)

            if record.tainted:
                diff_type, reason = DiffType.REPLACE, "tainted"
            elif compute_attributes_hash(new) == record.attribute_hash and not record.drifted:
                diff_type, reason = DiffType.NO_CHANGE, None
            else:
                forced = set(_forced_replacements(spec, record.attributes, new))
                if record.drifted and record.observed:
                    # Drift on a force-replace attribute cannot be updated back in place
                    forced |= {a for a in spec.force_replace if a in record.observed and record.observed[a] != new.get(a)}
                if forced:
                    diff_type = DiffType.REPLACE
                    reason = f"forces replacement: {', '.join(sorted(forced))}"
                elif record.drifted:
                    diff_type, reason = DiffType.UPDATE, "drift detected"
                else:
                    diff_type, reason = DiffType.UPDATE, None

        diff_types[key] = diff_type
        diffs[key] = ResourceDiff(
            key=key,
            diff_type=diff_type,
            resource=resource,
            record=record,
            old=old,
            new=new,
            reason=reason,
            create_before_destroy=spec.create_before_destroy and diff_type == DiffType.REPLACE,
            deposed=deposed,
            dependencies=dependencies,
        )
        logger.debug(f"{key}: {diff_type.value}{f' ({reason})' if reason else ''}")

    for key in sorted(state):
        if key in resources:
            continue
        record = state[key]
        current = record.provider_id is not None or record.tainted
        diffs[key] = ResourceDiff(
            key=key,
            diff_type=DiffType.DELETE if current else DiffType.NO_CHANGE,
            record=record,
            old=dict(record.attributes),
            reason="tainted" if record.tainted else None,
            deposed=tuple(record.deposed),
            dependencies=frozenset(record.dependencies),
        )
        logger.debug(f"{key}: {diffs[key].diff_type.value} (not declared)")

    return [diffs[key] for key in sorted(diffs)]


def summarize_diffs(diffs: list[ResourceDiff]) -> dict[str, int]:
    """Count diffs by type."""
    counts = {t.value: 0 for t in DiffType}
    for diff in diffs:
        counts[diff.diff_type.value] += 1
    return counts
