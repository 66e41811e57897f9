"""Builders shared by the test modules."""

from typing import Any

from escapement.assembly import create_plan
from escapement.forge import Scheduler, StateStore
from escapement.models import (
    LiteralValue,
    Plan,
    Reference,
    Resource,
    ResourceKey,
    ResourceSet,
    StateRecord,
    compute_attributes_hash,
)
from escapement.providers import ProviderRegistry


def ref(address: str, attribute: str = "id") -> Reference:
    return Reference(key=ResourceKey.parse(address), attribute=attribute)


def resource(address: str, depends_on: tuple[str, ...] = (), **attributes: Any) -> Resource:
    """Resource from ``type.name``; plain values become literals."""
    key = ResourceKey.parse(address)
    return Resource(
        type=key.type,
        name=key.name,
        attributes={
            name: value if isinstance(value, Reference) else LiteralValue(value=value)
            for name, value in attributes.items()
        },
        depends_on=[ResourceKey.parse(d) for d in depends_on],
    )


def record(address: str, provider_id: str | None, attributes: dict[str, Any], **fields: Any) -> StateRecord:
    """State record whose hash matches ``attributes`` unless given."""
    key = ResourceKey.parse(address)
    fields.setdefault("attribute_hash", compute_attributes_hash(attributes))
    return StateRecord(type=key.type, name=key.name, provider_id=provider_id, attributes=attributes, **fields)


def vpc_and_subnet(cidr: str = "10.0.0.0/16") -> ResourceSet:
    return ResourceSet([
        resource("network.vpc1", cidr=cidr),
        resource("subnet.sub1", vpc_id=ref("network.vpc1"), cidr="10.0.1.0/24"),
    ])


def action_ids(plan: Plan) -> list[str]:
    return [action.id for action in plan.changes]


async def converge(resources: ResourceSet, store: StateStore, registry: ProviderRegistry, **kwargs):
    """Plan against the store and run the plan; returns (plan, report)."""
    plan = create_plan(resources, store.snapshot(), registry)
    kwargs.setdefault("retry_base_delay", 0.0)
    report = await Scheduler(plan, registry, store, **kwargs).run()
    return plan, report
