"""
Resource graph construction and cycle detection.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Mapping, Sequence, Tuple

from ..errors import CyclicDependency, DuplicateResource, UnresolvedReference
from .models import KIND_OUTPUTS, DataRef, Reference, ResourceNode, map_leaves, walk_leaves

logger = logging.getLogger(__name__)

WHITE, GRAY, BLACK = 0, 1, 2


class ResourceGraph:
    """Directed acyclic graph of resource nodes; edges run consumer -> producer."""

    def __init__(self, nodes: Sequence[ResourceNode], edges: Mapping[str, Sequence[str]]):
        self._nodes: Dict[str, ResourceNode] = {node.node_id: node for node in nodes}
        self._order = [node.node_id for node in nodes]
        self._index = {node_id: i for i, node_id in enumerate(self._order)}
        self._dependencies = {node_id: list(edges.get(node_id, ())) for node_id in self._order}
        self._dependents: Dict[str, List[str]] = {node_id: [] for node_id in self._order}
        for node_id, deps in self._dependencies.items():
            for dep in deps:
                self._dependents[dep].append(node_id)

    @property
    def nodes(self) -> List[ResourceNode]:
        return [self._nodes[node_id] for node_id in self._order]

    @property
    def node_ids(self) -> List[str]:
        return list(self._order)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._order)

    def node(self, node_id: str) -> ResourceNode:
        return self._nodes[node_id]

    def dependencies(self, node_id: str) -> List[str]:
        return list(self._dependencies[node_id])

    def dependents(self, node_id: str) -> List[str]:
        return sorted(self._dependents[node_id], key=self._index.__getitem__)

    def declaration_index(self, node_id: str) -> int:
        return self._index[node_id]

    def references(self, node_id: str) -> Iterator[Tuple[str, Reference]]:
        """Yield ``(attribute_path, Reference)`` for every reference in a node."""
        for path, leaf in walk_leaves(self._nodes[node_id].attributes):
            if isinstance(leaf, Reference):
                yield path, leaf


def _substitute_data(node: ResourceNode, data: Mapping[str, Any]) -> ResourceNode:
    def resolve(leaf):
        if isinstance(leaf, DataRef):
            return data[leaf.key]
        return leaf

    for path, leaf in walk_leaves(node.attributes):
        if isinstance(leaf, DataRef) and leaf.key not in data:
            raise UnresolvedReference(node.node_id, path, f"data.{leaf.key}")

    return replace(node, attributes=map_leaves(node.attributes, resolve))


def _find_cycle(order: List[str], edges: Dict[str, List[str]]) -> List[str]:
    """Three-color DFS; returns the cycle chain, or [] when the graph is acyclic."""
    color = {node_id: WHITE for node_id in order}
    stack: List[str] = []

    def visit(node_id: str) -> List[str]:
        color[node_id] = GRAY
        stack.append(node_id)
        for dep in edges[node_id]:
            if color[dep] == GRAY:
                start = stack.index(dep)
                return stack[start:] + [dep]
            if color[dep] == WHITE:
                chain = visit(dep)
                if chain:
                    return chain
        stack.pop()
        color[node_id] = BLACK
        return []

    for node_id in order:
        if color[node_id] == WHITE:
            chain = visit(node_id)
            if chain:
                return chain
    return []


def build_graph(nodes: Sequence[ResourceNode], data: Mapping[str, Any] = None) -> ResourceGraph:
    """
    Build the dependency graph for a set of declared nodes.

    Data-source references are substituted with their resolved values;
    node references become edges from the referencing node to the
    referenced node.

    Args:
        nodes: Declared resource nodes, in declaration order
        data: Resolved data-source values

    Returns:
        ResourceGraph

    Raises:
        DuplicateResource: Two nodes share an id
        UnresolvedReference: A reference points at a missing node, output or data key
        CyclicDependency: The references form a cycle
    """
    data = data or {}
    seen = set()
    for node in nodes:
        if node.node_id in seen:
            raise DuplicateResource(node.node_id)
        seen.add(node.node_id)

    resolved = [_substitute_data(node, data) for node in nodes]

    kinds = {node.node_id: node.kind for node in resolved}
    edges: Dict[str, List[str]] = {}
    for node in resolved:
        deps: List[str] = []
        for path, leaf in walk_leaves(node.attributes):
            if not isinstance(leaf, Reference):
                continue
            if leaf.node_id not in kinds or leaf.output not in KIND_OUTPUTS[kinds[leaf.node_id]]:
                raise UnresolvedReference(node.node_id, path, leaf.symbol())
            if leaf.node_id not in deps:
                deps.append(leaf.node_id)
        edges[node.node_id] = deps

    order = [node.node_id for node in resolved]
    chain = _find_cycle(order, edges)
    if chain:
        raise CyclicDependency(chain)

    logger.debug(f"Built graph with {len(resolved)} nodes and {sum(len(d) for d in edges.values())} edges")
    return ResourceGraph(resolved, edges)
