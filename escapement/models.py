"""
Centralized Pydantic models for the Escapement reconciliation engine.

This module contains the core data models used throughout the pipeline:
- Resource Model (resources, tagged attribute values) from intake
- State records and the versioned state document from forge
- Plan actions and plans from assembly
- Lock records and apply reports
"""

import hashlib
import json
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, NamedTuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from .errors import PlanConsumedError, ValidationError

STATE_SCHEMA_VERSION = 2

# Stand-in for values that only exist once a pending action has run.
UNKNOWN = "(known after apply)"


def utcnow() -> datetime:
    return datetime.now(UTC)


def compute_attributes_hash(attributes: Mapping[str, Any]) -> str:
    """Structural hash of an attribute mapping, stable across key order."""
    payload = json.dumps(attributes, sort_keys=True, separators=(",", ":"), default=str)
    return f"sha256:{hashlib.sha256(payload.encode()).hexdigest()}"


# =============================================================================
# Resource Model
# =============================================================================


class ResourceKey(NamedTuple):
    """Unique ``(type, name)`` identity of a resource."""

    type: str
    name: str

    def __str__(self) -> str:
        return f"{self.type}.{self.name}"

    @classmethod
    def parse(cls, address: str) -> "ResourceKey":
        """Parse ``type.name``."""
        parts = address.split(".")
        if len(parts) != 2 or not all(parts):
            raise ValidationError(f"Invalid resource address '{address}', expected 'type.name'")
        return cls(parts[0], parts[1])


class LiteralValue(BaseModel):
    """A plain attribute value."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["literal"] = "literal"
    value: Any = None


class Reference(BaseModel):
    """A reference to another resource's attribute (``type.name.attribute``).

    The ``id`` attribute is the provider-assigned identifier.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["reference"] = "reference"
    key: ResourceKey
    attribute: str

    def __str__(self) -> str:
        return f"{self.key}.{self.attribute}"


AttributeValue = Annotated[LiteralValue | Reference, Field(discriminator="kind")]


class Resource(BaseModel):
    """A declared resource: type, name and an attribute mapping."""

    model_config = ConfigDict(frozen=True)

    type: str
    name: str
    attributes: dict[str, AttributeValue] = Field(default_factory=dict)
    depends_on: list[ResourceKey] = Field(default_factory=list)
    source: str | None = None

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.type, self.name)

    @property
    def address(self) -> str:
        return str(self.key)

    def references(self) -> list[Reference]:
        """All reference-valued attributes, in attribute-name order."""
        return [
            self.attributes[name]
            for name in sorted(self.attributes)
            if isinstance(self.attributes[name], Reference)
        ]

    def dependency_keys(self) -> set[ResourceKey]:
        """Keys this resource must come after: references plus explicit depends_on."""
        keys = {ref.key for ref in self.references()}
        keys.update(self.depends_on)
        return keys

    def literal_attributes(self) -> dict[str, Any]:
        """Literal attribute values; references are left out."""
        return {
            name: value.value
            for name, value in self.attributes.items()
            if isinstance(value, LiteralValue)
        }

    def display_attributes(self) -> dict[str, Any]:
        """Attributes with references rendered as their expression."""
        return {
            name: value.value if isinstance(value, LiteralValue) else f"${{{value}}}"
            for name, value in self.attributes.items()
        }


class ResourceSet(Mapping):
    """Read-only mapping of ResourceKey -> Resource for one declaration set.

    Duplicate keys are rejected when resources are added.
    """

    def __init__(self, resources: list[Resource] | None = None):
        self._resources: dict[ResourceKey, Resource] = {}
        for resource in resources or []:
            self.add(resource)

    def add(self, resource: Resource) -> "ResourceSet":
        if resource.key in self._resources:
            existing = self._resources[resource.key]
            raise ValidationError(
                f"duplicate resource (also declared in '{existing.source or '<input>'}')",
                key=resource.address,
                file_path=resource.source,
            )
        self._resources[resource.key] = resource
        return self

    def __getitem__(self, key: ResourceKey) -> Resource:
        return self._resources[key]

    def __iter__(self) -> Iterator[ResourceKey]:
        return iter(sorted(self._resources))

    def __len__(self) -> int:
        return len(self._resources)

    def __repr__(self) -> str:
        return f"ResourceSet({[str(k) for k in self]})"

    def digest(self) -> str:
        """Hash of the whole declaration set, recorded in plan metadata."""
        payload = {
            str(key): resource.model_dump(mode="json", exclude={"source"})
            for key, resource in self.items()
        }
        return compute_attributes_hash(payload)


# =============================================================================
# State Models
# =============================================================================


class DeposedObject(BaseModel):
    """Old remote object kept after a create-before-destroy replacement."""

    provider_id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class StateRecord(BaseModel):
    """Last-applied snapshot of one resource."""

    type: str
    name: str
    provider_id: str | None = None
    attribute_hash: str = ""
    attributes: dict[str, Any] = Field(default_factory=dict)
    tainted: bool = False
    drifted: bool = False
    # Remote attributes seen by the last refresh that found drift
    observed: dict[str, Any] | None = None
    dependencies: list[ResourceKey] = Field(default_factory=list)
    deposed: list[DeposedObject] = Field(default_factory=list)
    updated_at: datetime | None = None

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.type, self.name)

    def has_attribute(self, name: str) -> bool:
        if name == "id":
            return self.provider_id is not None
        return name in self.attributes

    def attribute(self, name: str) -> Any:
        """Value of an attribute; ``id`` is the provider identifier."""
        if name == "id":
            return self.provider_id
        return self.attributes[name]


class StateDocument(BaseModel):
    """Versioned persisted state, keyed by resource address."""

    version: int = STATE_SCHEMA_VERSION
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid4()))
    resources: dict[str, StateRecord] = Field(default_factory=dict)
    updated_at: datetime | None = None


class LockRecord(BaseModel):
    """Holder of the state lock."""

    owner_id: str
    acquired_at: datetime = Field(default_factory=utcnow)
    heartbeat_at: datetime = Field(default_factory=utcnow)
    operation: str | None = None

    def is_stale(self, stale_after: float, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return (now - self.heartbeat_at).total_seconds() > stale_after


# =============================================================================
# Plan Models
# =============================================================================


class ActionType(str, Enum):
    """Kinds of plan actions."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "no-op"


class ActionStatus(str, Enum):
    """Execution status of a plan action."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (ActionStatus.PENDING, ActionStatus.RUNNING)


class PlanAction(BaseModel):
    """One immutable step of a plan."""

    model_config = ConfigDict(frozen=True)

    id: str
    action: ActionType
    key: ResourceKey
    index: int = 0
    requires: tuple[str, ...] = ()
    old: dict[str, Any] | None = None
    new: dict[str, Any] | None = None
    resource: Resource | None = None
    provider_id: str | None = None
    replace: bool = False
    create_before_destroy: bool = False
    deposed: bool = False
    reason: str | None = None

    @property
    def address(self) -> str:
        return str(self.key)

    def changed_attributes(self) -> list[str]:
        old = self.old or {}
        new = self.new or {}
        return sorted(name for name in set(old) | set(new) if old.get(name) != new.get(name))


class PlanMetadata(BaseModel):
    created_at: datetime = Field(default_factory=utcnow)
    state_serial: int
    state_lineage: str
    config_digest: str
    engine_version: str
    destroy: bool = False


class Plan(BaseModel):
    """Read-only ordered sequence of actions, applied at most once."""

    model_config = ConfigDict(frozen=True)

    metadata: PlanMetadata
    actions: tuple[PlanAction, ...] = ()

    _consumed: bool = PrivateAttr(default=False)

    @property
    def changes(self) -> list[PlanAction]:
        """Actions that do something; no-ops are left out."""
        return [a for a in self.actions if a.action != ActionType.NOOP]

    @property
    def is_empty(self) -> bool:
        return not self.changes

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> None:
        if self._consumed:
            raise PlanConsumedError("Plan has already been applied")
        self._consumed = True

    def get(self, action_id: str) -> PlanAction:
        for action in self.actions:
            if action.id == action_id:
                return action
        raise KeyError(action_id)

    def actions_for(self, key: ResourceKey) -> list[PlanAction]:
        return [a for a in self.actions if a.key == key]

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in ActionType}
        for action in self.actions:
            counts[action.action.value] += 1
        return counts

    def to_json(self) -> str:
        """Convert to JSON string for serialization."""
        return json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, json_str: str) -> "Plan":
        """Create from JSON string."""
        return cls.model_validate_json(json_str)

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json() + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> "Plan":
        return cls.from_json(Path(path).read_text(encoding="utf-8"))


# =============================================================================
# Apply Report
# =============================================================================


class ActionOutcome(BaseModel):
    """Final status of one executed plan action."""

    action_id: str
    key: ResourceKey
    action: ActionType
    status: ActionStatus = ActionStatus.PENDING
    error: str | None = None
    attempts: int = 0
    tainted: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def address(self) -> str:
        return str(self.key)


class ApplyReport(BaseModel):
    """Per-action outcomes of one apply; callers inspect it to know what changed."""

    outcomes: list[ActionOutcome] = Field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None

    def by_status(self, status: ActionStatus) -> list[ActionOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> list[ActionOutcome]:
        return self.by_status(ActionStatus.SUCCEEDED)

    @property
    def failed(self) -> list[ActionOutcome]:
        return self.by_status(ActionStatus.FAILED)

    @property
    def skipped(self) -> list[ActionOutcome]:
        return self.by_status(ActionStatus.SKIPPED)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    def outcome(self, action_id: str) -> ActionOutcome:
        for outcome in self.outcomes:
            if outcome.action_id == action_id:
                return outcome
        raise KeyError(action_id)

    def outcomes_for(self, key: ResourceKey) -> list[ActionOutcome]:
        return [o for o in self.outcomes if o.key == key]

    def summary(self) -> dict[str, int]:
        counts = {s.value: 0 for s in ActionStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        return counts


__all__ = [
    "STATE_SCHEMA_VERSION", "UNKNOWN", "utcnow", "compute_attributes_hash",
    # Resource Model
    "ResourceKey", "LiteralValue", "Reference", "AttributeValue", "Resource", "ResourceSet",
    # State Models
    "DeposedObject", "StateRecord", "StateDocument", "LockRecord",
    # Plan Models
    "ActionType", "ActionStatus", "PlanAction", "PlanMetadata", "Plan",
    # Apply Report
    "ActionOutcome", "ApplyReport",
]
