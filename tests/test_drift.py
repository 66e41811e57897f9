"""Tests for drift detection."""

import pytest

from escapement.assembly import create_plan
from escapement.errors import ConflictError
from escapement.forge import LockManager, compare_attributes, refresh
from escapement.models import ResourceKey, ResourceSet

from tests.helpers import action_ids, converge, resource, vpc_and_subnet

VPC = ResourceKey("network", "vpc1")


def _network(description="managed"):
    return ResourceSet([resource("network.vpc1", cidr="10.0.0.0/16", description=description)])


def test_compare_attributes_only_checks_shared_keys():
    stored = {"cidr": "a", "description": "x", "local": 1}
    remote = {"cidr": "a", "description": "y", "computed": 2}
    assert compare_attributes(stored, remote) == {"description": ("x", "y")}


@pytest.mark.asyncio
async def test_no_drift(registry, store):
    await converge(vpc_and_subnet(), store, registry)
    serial = store.serial

    assert await refresh(store, registry) == []
    assert store.serial == serial


@pytest.mark.asyncio
async def test_changed_attribute_is_reported_and_reverted(registry, store, provider):
    await converge(_network(), store, registry)
    vpc_id = store.get(VPC).provider_id
    provider.set_remote(vpc_id, description="edited in console")

    findings = await refresh(store, registry)

    assert len(findings) == 1
    assert findings[0].key == "network.vpc1"
    assert findings[0].differences == {"description": ("managed", "edited in console")}
    stored = store.get(VPC)
    assert stored.drifted
    # Drift is reported, never accepted into the applied attributes
    assert stored.attributes["description"] == "managed"

    plan, report = await converge(_network(), store, registry)

    assert action_ids(plan) == ["update:network.vpc1"]
    assert plan.get("update:network.vpc1").reason == "drift detected"
    assert provider.objects[vpc_id]["description"] == "managed"
    assert not store.get(VPC).drifted

    assert create_plan(_network(), store.snapshot(), registry).is_empty


@pytest.mark.asyncio
async def test_drift_on_force_replace_attribute_replaces(registry, store, provider):
    await converge(_network(), store, registry)
    vpc_id = store.get(VPC).provider_id
    provider.set_remote(vpc_id, cidr="10.9.0.0/16")

    await refresh(store, registry)
    plan = create_plan(_network(), store.snapshot(), registry)

    assert [a.action.value for a in plan.changes] == ["delete", "create"]
    assert "cidr" in plan.get("create:network.vpc1").reason

    _, report = await converge(_network(), store, registry)
    assert not report.has_failures
    assert vpc_id not in provider.objects
    assert provider.objects[store.get(VPC).provider_id]["cidr"] == "10.0.0.0/16"


@pytest.mark.asyncio
async def test_vanished_object_is_tainted_and_recreated(registry, store, provider):
    await converge(_network(), store, registry)
    vpc_id = store.get(VPC).provider_id
    provider.remove_remote(vpc_id)

    findings = await refresh(store, registry)

    assert findings[0].missing
    assert store.get(VPC).tainted

    _, report = await converge(_network(), store, registry)
    assert not report.has_failures
    assert store.get(VPC).provider_id in provider.objects
    assert not store.get(VPC).tainted


@pytest.mark.asyncio
async def test_refresh_requires_lock_for_writes(registry, store, provider):
    await converge(_network(), store, registry)
    provider.set_remote(store.get(VPC).provider_id, description="edited")
    lock = LockManager(None)
    lock.acquire("someone-else")

    with pytest.raises(ConflictError):
        await refresh(store, registry, lock=lock, owner_id="me")
    assert not store.get(VPC).drifted


@pytest.mark.asyncio
async def test_adapter_bug_skips_only_that_resource(registry, store, provider, monkeypatch):
    await converge(vpc_and_subnet(), store, registry)
    vpc_id = store.get(VPC).provider_id
    subnet = ResourceKey("subnet", "sub1")
    provider.set_remote(store.get(subnet).provider_id, cidr="10.0.9.0/24")
    read = provider.read

    async def broken_read(provider_id):
        if provider_id == vpc_id:
            raise KeyError(provider_id)
        return await read(provider_id)

    monkeypatch.setattr(provider, "read", broken_read)

    findings = await refresh(store, registry)

    assert [finding.key for finding in findings] == ["subnet.sub1"]
    assert not store.get(VPC).drifted
    assert store.get(subnet).drifted
