"""
Dependency graph builder.

Derives a DAG over resource keys from attribute references and explicit
``depends_on`` declarations. An edge ``A → B`` means A must be created or
updated before B (and B destroyed before A).
"""

import logging
from collections.abc import Callable, Hashable, Iterable, Mapping
from typing import Any, TypeVar

import networkx as nx

from ..errors import GraphError, ValidationError
from ..models import Reference, ResourceKey, ResourceSet

logger = logging.getLogger(__name__)

N = TypeVar("N", bound=Hashable)


def _digraph(nodes: Iterable[N], dependencies: Mapping[N, Iterable[N]]) -> nx.DiGraph:
    """Edges point from a dependency to the node that needs it."""
    graph = nx.DiGraph()
    graph.add_nodes_from(nodes)
    for node in list(graph.nodes):
        for dependency in sorted(set(dependencies.get(node, ()))):
            if dependency in graph:
                graph.add_edge(dependency, node)
    return graph


def find_cycle(nodes: Iterable[N], dependencies: Mapping[N, Iterable[N]]) -> list[N] | None:
    """Look for a dependency cycle.

    Returns:
        The cycle as a path that starts and ends on the same node, or None
    """
    graph = _digraph(sorted(nodes), dependencies)
    try:
        edges = nx.find_cycle(graph)
    except nx.NetworkXNoCycle:
        return None
    return [edges[0][0]] + [v for _, v in edges]


def topological_sort(
    nodes: Iterable[N],
    dependencies: Mapping[N, Iterable[N]],
    sort_key: Callable[[N], Any] | None = None,
) -> list[N]:
    """Dependencies first; ready nodes are taken in ``sort_key`` order for reproducible output.

    Raises:
        GraphError: If the dependencies contain a cycle
    """
    nodes = list(nodes)
    graph = _digraph(nodes, dependencies)
    try:
        return list(nx.lexicographical_topological_sort(graph, key=sort_key))
    except nx.NetworkXUnfeasible:
        cycle = find_cycle(nodes, dependencies)
        raise GraphError([str(n) for n in (cycle or nodes)])


class DependencyGraph:
    """DAG of resource keys with the resolved reference set of every resource."""

    def __init__(self):
        self._graph = nx.DiGraph()
        self._references: dict[ResourceKey, list[Reference]] = {}

    @classmethod
    def build(cls, resources: ResourceSet) -> "DependencyGraph":
        """
        Build and validate the graph for a declaration set.

        Args:
            resources: The full Resource Model

        Returns:
            An acyclic DependencyGraph

        Raises:
            ValidationError: If a reference points at an undeclared resource
            GraphError: If the references form a cycle
        """
        graph = cls()
        graph._graph.add_nodes_from(sorted(resources))

        for key, resource in resources.items():
            graph._references[key] = resource.references()
            for dependency in resource.dependency_keys():
                if dependency not in resources:
                    raise ValidationError(f"reference to undeclared resource '{dependency}'", key=str(key))
                # referenced must exist first
                graph._graph.add_edge(dependency, key)

        try:
            edges = nx.find_cycle(graph._graph)
        except nx.NetworkXNoCycle:
            edges = None
        if edges:
            cycle = [edges[0][0]] + [v for _, v in edges]
            logger.error(f"Dependency cycle detected: {' → '.join(str(k) for k in cycle)}")
            raise GraphError([str(k) for k in cycle])

        logger.debug(f"Built dependency graph: {len(graph)} resources, {graph.edge_count} edges")
        return graph

    def __len__(self) -> int:
        return self._graph.number_of_nodes()

    def __contains__(self, key: object) -> bool:
        return key in self._graph

    @property
    def keys(self) -> list[ResourceKey]:
        return sorted(self._graph.nodes)

    @property
    def edge_count(self) -> int:
        return self._graph.number_of_edges()

    def edges(self) -> list[tuple[ResourceKey, ResourceKey]]:
        """All ``(referenced, referencing)`` pairs."""
        return sorted(self._graph.edges)

    def dependencies(self, key: ResourceKey) -> set[ResourceKey]:
        if key not in self._graph:
            return set()
        return set(self._graph.predecessors(key))

    def dependents(self, key: ResourceKey) -> set[ResourceKey]:
        if key not in self._graph:
            return set()
        return set(self._graph.successors(key))

    def references(self, key: ResourceKey) -> list[Reference]:
        return list(self._references.get(key, ()))

    def roots(self) -> list[ResourceKey]:
        """Resources with no dependencies, eligible for immediate scheduling."""
        return sorted(k for k, degree in self._graph.in_degree() if degree == 0)

    def topological_order(self) -> list[ResourceKey]:
        """Dependencies first, ties broken by key."""
        return list(nx.lexicographical_topological_sort(self._graph))
