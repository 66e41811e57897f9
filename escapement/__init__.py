"""
Escapement - Declarative Infrastructure Reconciliation.

Describe resources in HCL, and Escapement converges real infrastructure to
match: it diffs the declared Resource Model against the recorded state,
orders the changes by dependency into a Plan, and executes the Plan
concurrently through provider adapters.

- Plan: see what would change, optionally save it for a later apply
- Apply: lock the state, execute the plan, record every outcome
- Refresh: detect drift between state and the real infrastructure
"""

__version__ = "0.1.0"

from .core import EscapementCore
from .errors import (
    ConflictError,
    DriftError,
    EscapementError,
    GraphError,
    LockHeld,
    PlanConsumedError,
    ProviderError,
    StalePlanError,
    StateStoreError,
    ValidationError,
)
from .models import ActionStatus, ActionType, ApplyReport, Plan, Resource, ResourceKey, ResourceSet
from .providers import ProviderAdapter, ProviderRegistry, ResourceTypeSpec
from .settings import EscapementSettings, get_settings, reload_settings

__all__ = [
    "EscapementCore",
    "EscapementSettings",
    "get_settings",
    "reload_settings",
    "ActionStatus",
    "ActionType",
    "ApplyReport",
    "Plan",
    "Resource",
    "ResourceKey",
    "ResourceSet",
    "ProviderAdapter",
    "ProviderRegistry",
    "ResourceTypeSpec",
    "ConflictError",
    "DriftError",
    "EscapementError",
    "GraphError",
    "LockHeld",
    "PlanConsumedError",
    "ProviderError",
    "StalePlanError",
    "StateStoreError",
    "ValidationError",
]
