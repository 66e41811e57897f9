"""
State management module for tracking last-applied resource state.

The state document is versioned JSON written with an atomic temp-file rename.
Every write bumps the document serial, which plans record so that a plan
computed against an older state is refused at apply time. Before each apply a
joblib snapshot of the document is written to the backup directory.
"""

import json
import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

import joblib

from ..errors import StateStoreError
from ..models import (
    STATE_SCHEMA_VERSION,
    DeposedObject,
    ResourceKey,
    StateDocument,
    StateRecord,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Schema migrations
# =============================================================================


@dataclass
class Migration:
    """Upgrade of the raw state document by one schema version."""

    version: int  # Target schema version
    description: str
    migrate: Callable[[dict[str, Any]], dict[str, Any]]


_MIGRATIONS: list[Migration] = []


def register_migration(migration: Migration) -> None:
    """Register a migration in the global registry."""
    _MIGRATIONS.append(migration)
    _MIGRATIONS.sort(key=lambda m: m.version)


def get_migrations_between(from_version: int, to_version: int) -> list[Migration]:
    return [m for m in _MIGRATIONS if from_version < m.version <= to_version]


def migrate_document(data: dict[str, Any]) -> dict[str, Any]:
    """
    Bring a raw state document up to the current schema version.

    Raises:
        StateStoreError: If the document is newer than this engine understands
    """
    version = int(data.get("version", 1))
    if version > STATE_SCHEMA_VERSION:
        raise StateStoreError(
            f"State schema version {version} is newer than supported version {STATE_SCHEMA_VERSION}; "
            "upgrade escapement"
        )

    for migration in get_migrations_between(version, STATE_SCHEMA_VERSION):
        logger.info(f"Migrating state to schema v{migration.version}: {migration.description}")
        data = migration.migrate(data)
        data["version"] = migration.version

    return data


def _v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    # v1 kept a list of records with "id"/"hash" and no lineage
    resources = {}
    for entry in data.get("resources", []):
        record = {
            "type": entry["type"],
            "name": entry["name"],
            "provider_id": entry.get("id"),
            "attribute_hash": entry.get("hash", ""),
            "attributes": entry.get("attributes", {}),
            "tainted": entry.get("tainted", False),
        }
        resources[f"{entry['type']}.{entry['name']}"] = record

    return {
        "serial": data.get("serial", 0),
        "lineage": data.get("lineage") or str(uuid4()),
        "resources": resources,
    }


register_migration(Migration(version=2, description="records keyed by address, lineage", migrate=_v1_to_v2))


# =============================================================================
# State store
# =============================================================================


class StateStore:
    """
    Persistent mapping of ResourceKey -> StateRecord.

    Features:
    - Versioned JSON document with forward migration
    - Atomic writes (temp file + rename), serial bumped on every write
    - Thread-safe operations; every mutation is one short critical section
    - joblib backups before apply
    - In-memory mode when ``state_file`` is None
    """

    def __init__(self, state_file: Path | None, backup_dir: Path | None = None):
        """
        Initialize StateStore.

        Args:
            state_file: Path to the JSON state file, or None to keep state in memory
            backup_dir: Optional directory for state backups
        """
        self.state_file = Path(state_file) if state_file is not None else None

        if backup_dir:
            self.backup_dir = Path(backup_dir)
        elif self.state_file is not None:
            self.backup_dir = self.state_file.parent / "backups"
        else:
            self.backup_dir = None

        self._lock = threading.RLock()
        self._document = self._load()
        logger.debug(f"StateStore initialized with state file: {self.state_file or '<memory>'}")

    def _load(self) -> StateDocument:
        if self.state_file is None or not self.state_file.exists():
            logger.info("State file does not exist, starting with empty state")
            return StateDocument()

        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StateStoreError(f"Could not read state file {self.state_file}: {e}") from e

        migrated = migrate_document(data)
        try:
            document = StateDocument.model_validate(migrated)
        except ValueError as e:
            raise StateStoreError(f"Invalid state file {self.state_file}: {e}") from e

        if migrated is not data:
            # Persist the upgrade without counting it as a state change
            self._write(document)

        logger.info(f"Loaded state serial {document.serial} with {len(document.resources)} resources")
        return document

    def _write(self, document: StateDocument) -> None:
        if self.state_file is None:
            return
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)

            # Write to temporary file first, then rename (atomic operation)
            temp_file = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
            with open(temp_file, "w", encoding="utf-8") as f:
                f.write(document.model_dump_json(indent=2))
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_file, self.state_file)
            logger.debug(f"Saved state serial {document.serial}")
        except OSError as e:
            logger.error(f"Failed to save state: {e}")
            raise StateStoreError(f"Could not save state file: {e}") from e

    # =========================================================================
    # Reads
    # =========================================================================

    @property
    def serial(self) -> int:
        with self._lock:
            return self._document.serial

    @property
    def lineage(self) -> str:
        with self._lock:
            return self._document.lineage

    def snapshot(self) -> StateDocument:
        """Deep copy of the current document; later writes do not affect it."""
        with self._lock:
            return self._document.model_copy(deep=True)

    def get(self, key: ResourceKey) -> StateRecord | None:
        with self._lock:
            record = self._document.resources.get(str(key))
            return record.model_copy(deep=True) if record else None

    def records(self) -> dict[ResourceKey, StateRecord]:
        with self._lock:
            return {record.key: record.model_copy(deep=True) for record in self._document.resources.values()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._document.resources)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return str(key) in self._document.resources

    # =========================================================================
    # Writes
    # =========================================================================

    def mutate(self, change: Callable[[StateDocument], None]) -> StateDocument:
        """
        Apply ``change`` to a copy of the document and persist it.

        The in-memory document is only replaced once the write succeeded, so a
        failed write leaves the store as it was.

        Returns:
            A copy of the new document
        """
        with self._lock:
            document = self._document.model_copy(deep=True)
            change(document)
            document.serial = self._document.serial + 1
            document.updated_at = utcnow()
            self._write(document)
            self._document = document
            return document.model_copy(deep=True)

    def put(self, record: StateRecord) -> None:
        """Insert or replace a record."""
        record = record.model_copy(update={"updated_at": utcnow()})

        def change(document: StateDocument) -> None:
            document.resources[str(record.key)] = record

        self.mutate(change)
        logger.debug(f"Stored state for {record.key}")

    def remove(self, key: ResourceKey, provider_id: str | None = None) -> bool:
        """
        Remove a record.

        Args:
            key: Resource key
            provider_id: Only remove when the stored record still has this id

        Returns:
            True if a record was removed
        """
        removed = False

        def change(document: StateDocument) -> None:
            nonlocal removed
            record = document.resources.get(str(key))
            if record is None:
                return
            if provider_id is not None and record.provider_id != provider_id:
                return
            if record.deposed:
                # Keep the record while deposed objects still need deleting
                document.resources[str(key)] = record.model_copy(
                    update={"provider_id": None, "attributes": {}, "attribute_hash": "", "tainted": False}
                )
            else:
                del document.resources[str(key)]
            removed = True

        self.mutate(change)
        return removed

    def save_applied(self, record: StateRecord, depose_previous: bool = False) -> None:
        """
        Store the result of a successful create or update.

        Deposed objects of the previous record are carried over. With
        ``depose_previous`` the previous current object joins them
        (create-before-destroy replacement).
        """
        record = record.model_copy(update={"updated_at": utcnow()})

        def change(document: StateDocument) -> None:
            previous = document.resources.get(str(record.key))
            deposed = list(previous.deposed) if previous else []
            if depose_previous and previous is not None and previous.provider_id is not None:
                deposed.append(DeposedObject(provider_id=previous.provider_id, attributes=dict(previous.attributes)))
            document.resources[str(record.key)] = record.model_copy(update={"deposed": deposed})

        self.mutate(change)
        logger.debug(f"Stored state for {record.key}")

    def remove_deposed(self, key: ResourceKey, provider_id: str | None) -> bool:
        """Forget a deposed object once it has been deleted."""
        removed = False

        def change(document: StateDocument) -> None:
            nonlocal removed
            record = document.resources.get(str(key))
            if record is None:
                return
            remaining = [d for d in record.deposed if d.provider_id != provider_id]
            removed = len(remaining) != len(record.deposed)
            if record.provider_id is None and not remaining:
                del document.resources[str(key)]
            else:
                document.resources[str(key)] = record.model_copy(update={"deposed": remaining})

        self.mutate(change)
        return removed

    def mark_tainted(self, key: ResourceKey, provider_id: str | None = None) -> None:
        """Flag a resource for replacement; creates a stub record if none exists yet."""

        def change(document: StateDocument) -> None:
            record = document.resources.get(str(key))
            if record is None:
                record = StateRecord(type=key.type, name=key.name)
            update: dict[str, Any] = {"tainted": True, "updated_at": utcnow()}
            if provider_id is not None:
                update["provider_id"] = provider_id
            document.resources[str(key)] = record.model_copy(update=update)

        self.mutate(change)
        logger.warning(f"{key} marked as tainted; it will be replaced on the next apply")

    def mark_drifted(self, key: ResourceKey, observed: dict[str, Any]) -> None:
        def change(document: StateDocument) -> None:
            record = document.resources.get(str(key))
            if record is not None:
                document.resources[str(key)] = record.model_copy(
                    update={"drifted": True, "observed": dict(observed), "updated_at": utcnow()}
                )

        self.mutate(change)

    # =========================================================================
    # Backups
    # =========================================================================

    def create_backup(self) -> str:
        """
        Create a backup of the current state.

        Returns:
            Path to the backup file, or "" when there is nothing to back up
        """
        with self._lock:
            if self.backup_dir is None or not self._document.resources:
                logger.debug("No state to backup")
                return ""

            self.backup_dir.mkdir(parents=True, exist_ok=True)

            # Create timestamped backup
            timestamp = time.strftime("%Y%m%d_%H%M%S")
            backup_file = self.backup_dir / f"state_backup_{timestamp}_s{self._document.serial}.joblib"

            data = {
                "state": self._document.model_dump(mode="json"),
                "backup_timestamp": time.time(),
            }
            try:
                joblib.dump(data, backup_file)
            except OSError as e:
                raise StateStoreError(f"Failed to create backup {backup_file}: {e}") from e

            logger.info(f"Created backup: {backup_file}")
            return str(backup_file)

    def list_backups(self) -> list[Path]:
        if self.backup_dir is None or not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob("state_backup_*.joblib"))

    def restore_from_backup(self, backup_file: Path) -> StateDocument:
        """
        Restore state from a backup file. The serial keeps increasing.

        Raises:
            StateStoreError: If the backup cannot be read
        """
        try:
            backup_data = joblib.load(backup_file)
        except (OSError, ValueError, EOFError) as e:
            raise StateStoreError(f"Failed to read backup {backup_file}: {e}") from e

        if "state" not in backup_data:
            raise StateStoreError(f"Invalid backup file format: {backup_file}")

        restored = StateDocument.model_validate(migrate_document(backup_data["state"]))

        def change(document: StateDocument) -> None:
            document.resources = restored.resources

        document = self.mutate(change)
        logger.info(f"Restored state from backup: {backup_file}")
        return document
