"""Tests for the Escapement data models."""

from datetime import timedelta

import pytest

from escapement.errors import PlanConsumedError, ValidationError
from escapement.models import (
    ActionOutcome,
    ActionStatus,
    ActionType,
    ApplyReport,
    LockRecord,
    Plan,
    PlanAction,
    PlanMetadata,
    ResourceKey,
    ResourceSet,
    compute_attributes_hash,
    utcnow,
)

from tests.helpers import record, ref, resource


class TestResourceKey:
    def test_parse_and_render(self):
        key = ResourceKey.parse("network.vpc1")
        assert key == ResourceKey("network", "vpc1")
        assert str(key) == "network.vpc1"

    @pytest.mark.parametrize("address", ["network", "network.vpc1.id", ".vpc1", "network."])
    def test_parse_rejects_malformed_address(self, address):
        with pytest.raises(ValidationError):
            ResourceKey.parse(address)

    def test_keys_sort_by_type_then_name(self):
        keys = [ResourceKey("subnet", "a"), ResourceKey("network", "b"), ResourceKey("network", "a")]
        assert [str(k) for k in sorted(keys)] == ["network.a", "network.b", "subnet.a"]


class TestResource:
    def test_dependency_keys_combine_references_and_depends_on(self):
        subnet = resource(
            "subnet.sub1",
            depends_on=("gateway.gw1",),
            vpc_id=ref("network.vpc1"),
            cidr="10.0.1.0/24",
        )
        assert subnet.dependency_keys() == {ResourceKey("network", "vpc1"), ResourceKey("gateway", "gw1")}
        assert subnet.literal_attributes() == {"cidr": "10.0.1.0/24"}
        assert subnet.display_attributes()["vpc_id"] == "${network.vpc1.id}"

    def test_resource_set_rejects_duplicate_keys(self):
        resources = ResourceSet([resource("network.vpc1", cidr="10.0.0.0/16")])
        with pytest.raises(ValidationError, match="duplicate resource"):
            resources.add(resource("network.vpc1", cidr="10.1.0.0/16"))

    def test_resource_set_iterates_in_key_order(self):
        resources = ResourceSet([resource("subnet.b"), resource("network.a")])
        assert [str(k) for k in resources] == ["network.a", "subnet.b"]

    def test_digest_changes_with_attributes(self):
        first = ResourceSet([resource("network.vpc1", cidr="10.0.0.0/16")])
        second = ResourceSet([resource("network.vpc1", cidr="10.1.0.0/16")])
        assert first.digest() != second.digest()
        assert first.digest() == ResourceSet([resource("network.vpc1", cidr="10.0.0.0/16")]).digest()


def test_attribute_hash_ignores_key_order():
    assert compute_attributes_hash({"a": 1, "b": [1, 2]}) == compute_attributes_hash({"b": [1, 2], "a": 1})
    assert compute_attributes_hash({"a": 1}) != compute_attributes_hash({"a": 2})


def test_state_record_id_is_provider_id():
    stored = record("network.vpc1", "net-1", {"cidr": "10.0.0.0/16"})
    assert stored.has_attribute("id")
    assert stored.attribute("id") == "net-1"
    assert stored.attribute("cidr") == "10.0.0.0/16"
    assert not stored.has_attribute("missing")

    pending = record("network.vpc2", None, {})
    assert not pending.has_attribute("id")


def _plan(*actions: PlanAction) -> Plan:
    metadata = PlanMetadata(state_serial=0, state_lineage="lineage", config_digest="digest", engine_version="test")
    return Plan(metadata=metadata, actions=actions)


class TestPlan:
    def test_changes_leave_out_noops(self):
        key = ResourceKey("network", "vpc1")
        plan = _plan(
            PlanAction(id="no-op:network.vpc1", action=ActionType.NOOP, key=key, index=0),
            PlanAction(id="delete:subnet.sub1", action=ActionType.DELETE, key=ResourceKey("subnet", "sub1"), index=1),
        )
        assert [a.id for a in plan.changes] == ["delete:subnet.sub1"]
        assert not plan.is_empty
        assert plan.summary() == {"create": 0, "update": 0, "delete": 1, "no-op": 1}

    def test_plan_can_only_be_consumed_once(self):
        plan = _plan()
        assert plan.is_empty
        plan.consume()
        assert plan.consumed
        with pytest.raises(PlanConsumedError):
            plan.consume()

    def test_save_and_load(self, temp_dir):
        key = ResourceKey("network", "vpc1")
        plan = _plan(
            PlanAction(
                id="create:network.vpc1",
                action=ActionType.CREATE,
                key=key,
                new={"cidr": "10.0.0.0/16"},
                resource=resource("network.vpc1", cidr="10.0.0.0/16"),
            )
        )
        path = temp_dir / "plans" / "plan.json"
        plan.save(path)

        loaded = Plan.load(path)
        assert loaded.actions == plan.actions
        assert loaded.metadata == plan.metadata
        assert loaded.actions[0].key == key
        assert not loaded.consumed

    def test_changed_attributes(self):
        action = PlanAction(
            id="update:network.vpc1",
            action=ActionType.UPDATE,
            key=ResourceKey("network", "vpc1"),
            old={"cidr": "a", "name": "x", "gone": 1},
            new={"cidr": "b", "name": "x", "added": 2},
        )
        assert action.changed_attributes() == ["added", "cidr", "gone"]


def test_apply_report_summary():
    key = ResourceKey("network", "vpc1")
    report = ApplyReport(outcomes=[
        ActionOutcome(action_id="create:network.vpc1", key=key, action=ActionType.CREATE, status=ActionStatus.SUCCEEDED),
        ActionOutcome(action_id="create:subnet.sub1", key=ResourceKey("subnet", "sub1"), action=ActionType.CREATE,
                      status=ActionStatus.FAILED, error="boom"),
    ])
    assert report.has_failures
    assert report.summary()["succeeded"] == 1
    assert report.summary()["failed"] == 1
    assert report.outcome("create:subnet.sub1").error == "boom"
    assert [o.action_id for o in report.outcomes_for(key)] == ["create:network.vpc1"]
    with pytest.raises(KeyError):
        report.outcome("delete:network.vpc1")


def test_lock_record_staleness():
    now = utcnow()
    record_ = LockRecord(owner_id="alice", acquired_at=now, heartbeat_at=now - timedelta(seconds=30))
    assert record_.is_stale(10, now=now)
    assert not record_.is_stale(60, now=now)
