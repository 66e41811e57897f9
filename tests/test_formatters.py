"""Tests for Terraform-style output formatting."""

from datetime import timedelta

import pytest

from escapement.assembly import create_plan
from escapement.errors import DriftError
from escapement.formatters import TerraformStyleFormatter
from escapement.models import (
    UNKNOWN,
    ActionOutcome,
    ActionStatus,
    ActionType,
    ApplyReport,
    ResourceKey,
    ResourceSet,
    StateDocument,
    utcnow,
)

from tests.helpers import record, resource, vpc_and_subnet

VPC = ResourceKey("network", "vpc1")


@pytest.fixture
def formatter():
    return TerraformStyleFormatter()


def _state(*records):
    return StateDocument(resources={str(r.key): r for r in records})


class TestPlan:
    def test_creates(self, formatter, registry):
        text = formatter.format_plan(create_plan(vpc_and_subnet(), StateDocument(), registry)).plain

        assert "# network.vpc1 will be created" in text
        assert '+ resource "network" "vpc1" {' in text
        assert '"10.0.0.0/16"' in text
        assert f"vpc_id = {UNKNOWN}" in text
        assert text.rstrip().endswith("Plan: 2 to add, 0 to change, 0 to destroy.")

    def test_no_changes(self, formatter, registry):
        state = _state(record("network.vpc1", "net-1", {"cidr": "10.0.0.0/16"}))
        plan = create_plan(ResourceSet([resource("network.vpc1", cidr="10.0.0.0/16")]), state, registry)

        assert formatter.format_plan(plan).plain.startswith("No changes.")

    def test_update_shows_only_changed_attributes(self, formatter, registry):
        state = _state(record("network.vpc1", "net-1", {"cidr": "10.0.0.0/16", "description": "a", "owner": "x"}))
        resources = ResourceSet([resource("network.vpc1", cidr="10.0.0.0/16", description="b", owner="x")])

        text = formatter.format_plan(create_plan(resources, state, registry)).plain

        assert "# network.vpc1 will be updated in-place" in text
        assert '~ description = "a" -> "b"' in text
        assert "# (2 unchanged attributes hidden)" in text
        assert "Plan: 0 to add, 1 to change, 0 to destroy." in text

    def test_replacements(self, formatter, registry):
        state = _state(
            record("network.vpc1", "net-1", {"cidr": "10.0.0.0/16"}),
            record("gateway.gw1", "gw-1", {"zone": "a"}),
        )
        resources = ResourceSet([
            resource("network.vpc1", cidr="10.9.0.0/16"),
            resource("gateway.gw1", zone="b"),
        ])

        text = formatter.format_plan(create_plan(resources, state, registry)).plain

        assert "# network.vpc1 must be replaced (forces replacement: cidr)" in text
        assert '-/+ resource "network" "vpc1"' in text
        assert '+/- resource "gateway" "gw1"' in text
        # Each replacement is shown once, counted as one add and one destroy
        assert text.count("must be replaced") == 2
        assert "Plan: 2 to add, 0 to change, 2 to destroy." in text

    def test_delete(self, formatter, registry):
        state = _state(record("network.vpc1", "net-1", {"cidr": "10.0.0.0/16"}))
        text = formatter.format_plan(create_plan(ResourceSet(), state, registry)).plain

        assert "# network.vpc1 will be destroyed" in text
        assert '- resource "network" "vpc1"' in text


class TestApply:
    def test_transition_lines(self, formatter):
        started = utcnow()
        outcome = ActionOutcome(action_id="create:network.vpc1", key=VPC, action=ActionType.CREATE,
                                status=ActionStatus.RUNNING, started_at=started)
        assert formatter.format_transition(outcome).plain == "network.vpc1: Creating..."

        outcome.status = ActionStatus.SUCCEEDED
        outcome.finished_at = started + timedelta(seconds=2)
        assert formatter.format_transition(outcome).plain == "network.vpc1: Creation complete after 2.0s"

        outcome.status = ActionStatus.FAILED
        outcome.error = "quota exceeded"
        outcome.tainted = True
        assert formatter.format_transition(outcome).plain == "network.vpc1: failed: quota exceeded (tainted)"

    def test_report_summary(self, formatter):
        report = ApplyReport(outcomes=[
            ActionOutcome(action_id="create:network.vpc1", key=VPC, action=ActionType.CREATE,
                          status=ActionStatus.SUCCEEDED),
            ActionOutcome(action_id="delete:subnet.sub1", key=ResourceKey("subnet", "sub1"),
                          action=ActionType.DELETE, status=ActionStatus.SUCCEEDED),
        ])
        text = formatter.format_apply_report(report).plain
        assert "Apply complete! Resources: 1 added, 0 changed, 1 destroyed." in text

    def test_failed_report_lists_problems(self, formatter):
        report = ApplyReport(outcomes=[
            ActionOutcome(action_id="create:network.vpc1", key=VPC, action=ActionType.CREATE,
                          status=ActionStatus.FAILED, error="boom"),
            ActionOutcome(action_id="create:subnet.sub1", key=ResourceKey("subnet", "sub1"),
                          action=ActionType.CREATE, status=ActionStatus.SKIPPED,
                          error="dependency create:network.vpc1 failed"),
        ])
        text = formatter.format_apply_report(report).plain
        assert "network.vpc1: failed: boom" in text
        assert "subnet.sub1: skipped" in text
        assert "Apply failed!" in text


def test_drift(formatter):
    findings = [
        DriftError("network.vpc1", differences={"cidr": ("10.0.0.0/16", "10.7.0.0/16")}),
        DriftError("subnet.sub1", missing=True),
    ]
    text = formatter.format_drift(findings).plain

    assert "# network.vpc1 was changed outside of Escapement" in text
    assert '~ cidr = "10.0.0.0/16" -> "10.7.0.0/16"' in text
    assert "# subnet.sub1 no longer exists" in text
    assert formatter.format_drift([]).plain == "No drift detected.\n"


def test_state_listing(formatter):
    records = {
        VPC: record("network.vpc1", "net-1", {}, tainted=True),
        ResourceKey("subnet", "sub1"): record("subnet.sub1", "sub-1", {}),
    }
    lines = formatter.format_state(records).plain.splitlines()

    assert lines == ["network.vpc1  net-1  (tainted)", "subnet.sub1  sub-1"]
    assert formatter.format_state({}).plain == "No resources in state.\n"
