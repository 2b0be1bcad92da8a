"""
reconciler/graph.py

Dependency graph over resource identities.

An edge A → B means "A references B", so B must be applied before A. The
edge set is exactly the set of reference relationships — nothing is inferred
from names or from input order.
"""

import heapq
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Set

from reconciler.errors import CyclicDependency
from reconciler.model import Identity, ResourceSpec

logger = logging.getLogger(__name__)


class DependencyGraph:
    """
    Directed acyclic graph of identities.

    `_deps[a]`       — identities a depends on (its references)
    `_dependents[b]` — identities that depend on b
    """

    def __init__(self):
        self._deps: Dict[Identity, Set[Identity]] = {}
        self._dependents: Dict[Identity, Set[Identity]] = {}

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------

    def add_node(self, identity: Identity) -> None:
        self._deps.setdefault(identity, set())
        self._dependents.setdefault(identity, set())

    def add_edge(self, source: Identity, target: Identity) -> None:
        """source depends on target."""
        self.add_node(source)
        self.add_node(target)
        self._deps[source].add(target)
        self._dependents[target].add(source)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> List[Identity]:
        return sorted(self._deps)

    @property
    def edges(self) -> List[tuple]:
        return sorted((s, t) for s, targets in self._deps.items() for t in targets)

    def __contains__(self, identity: Identity) -> bool:
        return identity in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    def dependencies_of(self, identity: Identity) -> List[Identity]:
        return sorted(self._deps.get(identity, ()))

    def dependents_of(self, identity: Identity) -> List[Identity]:
        return sorted(self._dependents.get(identity, ()))

    def transitive_dependents(self, identity: Identity) -> Set[Identity]:
        """Everything that depends on `identity`, directly or through others."""
        seen: Set[Identity] = set()
        stack = list(self._dependents.get(identity, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents.get(current, ()))
        return seen

    # ------------------------------------------------------------------
    # cycles + ordering
    # ------------------------------------------------------------------

    def find_cycle(self) -> Optional[List[Identity]]:
        """
        Depth-first search with an explicit recursion stack.
        Returns the identities forming the first cycle found, or None.
        """
        visited: Set[Identity] = set()
        on_stack: Set[Identity] = set()
        path: List[Identity] = []

        def visit(node: Identity) -> Optional[List[Identity]]:
            visited.add(node)
            on_stack.add(node)
            path.append(node)
            for dep in sorted(self._deps[node]):
                if dep in on_stack:
                    return path[path.index(dep):]
                if dep not in visited:
                    cycle = visit(dep)
                    if cycle:
                        return cycle
            on_stack.discard(node)
            path.pop()
            return None

        for node in sorted(self._deps):
            if node not in visited:
                cycle = visit(node)
                if cycle:
                    return cycle
        return None

    def check_acyclic(self) -> None:
        cycle = self.find_cycle()
        if cycle:
            names = " → ".join(str(i) for i in cycle + [cycle[0]])
            raise CyclicDependency(f"Dependency cycle: {names}", cycle)

    def topological_order(self) -> List[Identity]:
        """
        Dependencies first. Ties are broken by identity (kind, then name),
        so identical input always yields the identical order.
        """
        self.check_acyclic()
        remaining = {node: len(deps) for node, deps in self._deps.items()}
        ready = [node for node, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        order: List[Identity] = []
        while ready:
            node = heapq.heappop(ready)
            order.append(node)
            for dependent in self._dependents[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)
        return order


def build_graph(specs: Mapping[Identity, ResourceSpec]) -> DependencyGraph:
    """Graph of the desired set; raises CyclicDependency if it has a cycle."""
    graph = DependencyGraph()
    for identity in sorted(specs):
        graph.add_node(identity)
        for reference in specs[identity].references():
            graph.add_edge(identity, reference.target)
    graph.check_acyclic()
    logger.debug("built graph: %d nodes, %d edges", len(graph), len(graph.edges))
    return graph


def graph_from_dependencies(dependencies: Mapping[Identity, Iterable[Identity]]) -> DependencyGraph:
    """
    Graph from recorded dependency lists (StateRecord.dependencies).
    Targets missing from the mapping are ignored — they were already removed.
    """
    graph = DependencyGraph()
    for identity in sorted(dependencies):
        graph.add_node(identity)
    for identity in sorted(dependencies):
        for target in dependencies[identity]:
            if target in dependencies:
                graph.add_edge(identity, target)
    return graph
