"""
Assembly module for the escapement project.

This module contains the dependency graph builder, the diff engine and the
plan generator that turn a Resource Model plus a state snapshot into an
ordered Plan.
"""

from .graph import DependencyGraph, find_cycle, topological_sort

from .differ import (
    DiffType,
    ResourceDiff,
    compute_state_diff,
    resolve_planned_attributes,
    summarize_diffs,
)

from .planner import (
    PlanBuilder,
    action_id,
    create_plan,
    order_actions,
    records_by_key,
    validate_plan,
)

__all__ = [
    # Graph exports
    "DependencyGraph",
    "find_cycle",
    "topological_sort",
    # Differ exports
    "DiffType",
    "ResourceDiff",
    "compute_state_diff",
    "resolve_planned_attributes",
    "summarize_diffs",
    # Planner exports
    "PlanBuilder",
    "action_id",
    "create_plan",
    "order_actions",
    "records_by_key",
    "validate_plan",
]
