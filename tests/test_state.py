"""Tests for the State Store."""

import json
from pathlib import Path

import pytest

from escapement.errors import StateStoreError
from escapement.forge import Migration, StateStore, get_migrations_between, migrate_document
from escapement.models import STATE_SCHEMA_VERSION, ResourceKey

from tests.helpers import record

VPC = ResourceKey("network", "vpc1")


@pytest.fixture
def state_file(temp_dir):
    return temp_dir / ".escapement" / "state.json"


class TestPersistence:
    def test_empty_store(self, state_file):
        store = StateStore(state_file)
        assert len(store) == 0
        assert store.serial == 0
        assert not state_file.exists()

    def test_put_persists_and_bumps_serial(self, state_file):
        store = StateStore(state_file)
        store.put(record("network.vpc1", "net-1", {"cidr": "10.0.0.0/16"}))

        assert store.serial == 1
        assert VPC in store
        data = json.loads(state_file.read_text())
        assert data["version"] == STATE_SCHEMA_VERSION
        assert data["serial"] == 1
        assert data["resources"]["network.vpc1"]["provider_id"] == "net-1"
        assert not state_file.with_suffix(".json.tmp").exists()

        reloaded = StateStore(state_file)
        assert reloaded.serial == 1
        assert reloaded.lineage == store.lineage
        assert reloaded.get(VPC).attributes == {"cidr": "10.0.0.0/16"}

    def test_reads_return_copies(self, state_file):
        store = StateStore(state_file)
        store.put(record("network.vpc1", "net-1", {"cidr": "10.0.0.0/16"}))

        snapshot = store.snapshot()
        fetched = store.get(VPC)
        fetched.attributes["cidr"] = "changed"
        assert store.get(VPC).attributes == {"cidr": "10.0.0.0/16"}

        store.remove(VPC)

        assert "network.vpc1" in snapshot.resources
        assert snapshot.serial == 1

    def test_failed_change_leaves_store_untouched(self, state_file):
        store = StateStore(state_file)
        store.put(record("network.vpc1", "net-1", {"cidr": "10.0.0.0/16"}))

        def change(document):
            document.resources.clear()
            raise RuntimeError("interrupted")

        with pytest.raises(RuntimeError):
            store.mutate(change)

        assert store.serial == 1
        assert VPC in store

    def test_corrupt_file(self, state_file):
        state_file.parent.mkdir(parents=True)
        state_file.write_text("{not json")
        with pytest.raises(StateStoreError, match="Could not read state file"):
            StateStore(state_file)

    def test_in_memory_store(self):
        store = StateStore(None)
        store.put(record("network.vpc1", "net-1", {}))
        assert store.serial == 1
        assert store.backup_dir is None
        assert store.create_backup() == ""


class TestMigrations:
    def test_v1_document_is_upgraded(self, state_file):
        state_file.parent.mkdir(parents=True)
        state_file.write_text(json.dumps({
            "version": 1,
            "serial": 7,
            "resources": [
                {"type": "network", "name": "vpc1", "id": "net-1", "hash": "sha256:abc", "attributes": {"cidr": "x"}},
            ],
        }))

        store = StateStore(state_file)

        stored = store.get(VPC)
        assert stored.provider_id == "net-1"
        assert stored.attribute_hash == "sha256:abc"
        assert store.serial == 7
        assert json.loads(state_file.read_text())["version"] == STATE_SCHEMA_VERSION

    def test_newer_version_is_refused(self, state_file):
        state_file.parent.mkdir(parents=True)
        state_file.write_text(json.dumps({"version": STATE_SCHEMA_VERSION + 1, "resources": {}}))
        with pytest.raises(StateStoreError, match="newer than supported"):
            StateStore(state_file)

    def test_migrations_between(self):
        migrations = get_migrations_between(1, STATE_SCHEMA_VERSION)
        assert [m.version for m in migrations] == list(range(2, STATE_SCHEMA_VERSION + 1))
        assert all(isinstance(m, Migration) for m in migrations)
        assert get_migrations_between(STATE_SCHEMA_VERSION, STATE_SCHEMA_VERSION) == []

    def test_current_document_is_unchanged(self):
        data = {"version": STATE_SCHEMA_VERSION, "serial": 1, "lineage": "x", "resources": {}}
        assert migrate_document(data) is data


class TestRecords:
    def test_save_applied_deposes_previous_object(self):
        store = StateStore(None)
        store.put(record("gateway.gw1", "gw-1", {"zone": "a"}))

        store.save_applied(record("gateway.gw1", "gw-2", {"zone": "b"}), depose_previous=True)

        stored = store.get(ResourceKey("gateway", "gw1"))
        assert stored.provider_id == "gw-2"
        assert [(d.provider_id, d.attributes) for d in stored.deposed] == [("gw-1", {"zone": "a"})]

        assert store.remove_deposed(ResourceKey("gateway", "gw1"), "gw-1")
        assert store.get(ResourceKey("gateway", "gw1")).deposed == []

    def test_remove_keeps_record_with_deposed_objects(self):
        store = StateStore(None)
        key = ResourceKey("gateway", "gw1")
        store.put(record("gateway.gw1", "gw-1", {"zone": "a"}))
        store.save_applied(record("gateway.gw1", "gw-2", {"zone": "b"}), depose_previous=True)

        assert store.remove(key, provider_id="gw-2")
        shell = store.get(key)
        assert shell.provider_id is None
        assert [d.provider_id for d in shell.deposed] == ["gw-1"]

        store.remove_deposed(key, "gw-1")
        assert key not in store

    def test_remove_checks_provider_id(self):
        store = StateStore(None)
        store.put(record("network.vpc1", "net-2", {}))
        assert not store.remove(VPC, provider_id="net-1")
        assert VPC in store
        assert store.remove(VPC)
        assert VPC not in store

    def test_mark_tainted_creates_stub(self):
        store = StateStore(None)
        store.mark_tainted(VPC)
        stub = store.get(VPC)
        assert stub.tainted
        assert stub.provider_id is None

    def test_mark_drifted_keeps_observed_attributes(self):
        store = StateStore(None)
        store.put(record("network.vpc1", "net-1", {"cidr": "a"}))
        store.mark_drifted(VPC, {"cidr": "b"})
        stored = store.get(VPC)
        assert stored.drifted
        assert stored.observed == {"cidr": "b"}
        assert stored.attributes == {"cidr": "a"}


class TestBackups:
    def test_backup_and_restore(self, state_file):
        store = StateStore(state_file)
        store.put(record("network.vpc1", "net-1", {"cidr": "10.0.0.0/16"}))

        backup = store.create_backup()
        assert backup.endswith(".joblib")
        assert store.list_backups() == [Path(backup)]

        store.remove(VPC)
        assert VPC not in store

        document = store.restore_from_backup(backup)
        assert "network.vpc1" in document.resources
        assert store.get(VPC).provider_id == "net-1"
        # Restoring is a write like any other
        assert store.serial == 3

    def test_restore_missing_backup(self, state_file, temp_dir):
        store = StateStore(state_file)
        with pytest.raises(StateStoreError):
            store.restore_from_backup(temp_dir / "missing.joblib")
