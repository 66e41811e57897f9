"""
Forge module for the escapement project.

This module applies plans: the execution scheduler, the State Store, the
state lock and drift detection.
"""

from .drift import compare_attributes, refresh
from .executor import (
    ActionTimeoutError,
    Scheduler,
    UnresolvedReferenceError,
    backoff_delay,
    resolve_attributes,
)
from .lock import LockManager
from .state import Migration, StateStore, get_migrations_between, migrate_document, register_migration

__all__ = [
    "compare_attributes",
    "refresh",
    "ActionTimeoutError",
    "Scheduler",
    "UnresolvedReferenceError",
    "backoff_delay",
    "resolve_attributes",
    "LockManager",
    "Migration",
    "StateStore",
    "get_migrations_between",
    "migrate_document",
    "register_migration",
]
