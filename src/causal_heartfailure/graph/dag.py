"""
Immutable causal DAG.

Every edit returns a new graph; the node order given at construction is kept so that
enumerations over the graph are reproducible.
"""

import logging
from typing import FrozenSet, Iterable, List, Optional, Set, Tuple

import networkx as nx


logger = logging.getLogger(__name__)

Edge = Tuple[str, str]


class GraphError(ValueError):
    """Base class for invalid graph edits."""


class UnknownNodeError(GraphError):
    def __init__(self, node: str, context: str = ""):
        self.node = node
        suffix = f" ({context})" if context else ""
        super().__init__(f"Node '{node}' is not declared in the graph{suffix}")


class DuplicateNodeError(GraphError):
    def __init__(self, node: str):
        self.node = node
        super().__init__(f"Node '{node}' is declared more than once")


class CycleError(GraphError):
    def __init__(self, edge: Edge, path: List[str]):
        self.edge = edge
        self.path = path
        super().__init__(
            f"Edge {edge[0]} -> {edge[1]} would create a cycle through existing path "
            f"{' -> '.join(path)}"
        )


class CausalDAG:
    """A directed acyclic graph over named variables."""

    __slots__ = ('_nodes', '_edges', '_graph')

    def __init__(self, nodes: Iterable[str], edges: Iterable[Edge] = ()):
        nodes = tuple(nodes)
        seen: Set[str] = set()
        for node in nodes:
            if node in seen:
                raise DuplicateNodeError(node)
            seen.add(node)

        graph = nx.DiGraph()
        graph.add_nodes_from(nodes)
        for parent, child in edges:
            for node in (parent, child):
                if node not in seen:
                    raise UnknownNodeError(node, context=f"edge {parent} -> {child}")
            if parent == child:
                raise CycleError((parent, child), [parent])
            if nx.has_path(graph, child, parent):
                raise CycleError((parent, child), nx.shortest_path(graph, child, parent))
            graph.add_edge(parent, child)

        self._nodes = nodes
        self._edges = frozenset(graph.edges())
        self._graph = nx.freeze(graph)

    # -- accessors -------------------------------------------------------

    @property
    def nodes(self) -> Tuple[str, ...]:
        return self._nodes

    @property
    def edges(self) -> List[Edge]:
        """Edges sorted by the declared node order."""
        order = {node: i for i, node in enumerate(self._nodes)}
        return sorted(self._edges, key=lambda e: (order[e[0]], order[e[1]]))

    def __contains__(self, node: str) -> bool:
        return node in self._graph

    def __len__(self) -> int:
        return len(self._nodes)

    def __eq__(self, other) -> bool:
        if not isinstance(other, CausalDAG):
            return NotImplemented
        return set(self._nodes) == set(other._nodes) and self._edges == other._edges

    def __hash__(self) -> int:
        return hash((frozenset(self._nodes), self._edges))

    def __repr__(self) -> str:
        return f"CausalDAG(nodes={len(self._nodes)}, edges={len(self._edges)})"

    def has_edge(self, parent: str, child: str) -> bool:
        return (parent, child) in self._edges

    def adjacent(self, a: str, b: str) -> bool:
        return self.has_edge(a, b) or self.has_edge(b, a)

    def _check(self, node: str) -> None:
        if node not in self._graph:
            raise UnknownNodeError(node)

    def _sorted(self, nodes: Iterable[str]) -> List[str]:
        members = set(nodes)
        return [node for node in self._nodes if node in members]

    def parents(self, node: str) -> List[str]:
        self._check(node)
        return self._sorted(self._graph.predecessors(node))

    def children(self, node: str) -> List[str]:
        self._check(node)
        return self._sorted(self._graph.successors(node))

    def ancestors(self, node: str) -> Set[str]:
        self._check(node)
        return set(nx.ancestors(self._graph, node))

    def descendants(self, node: str) -> Set[str]:
        self._check(node)
        return set(nx.descendants(self._graph, node))

    def roots(self) -> List[str]:
        return [node for node in self._nodes if self._graph.in_degree(node) == 0]

    def topological_order(self) -> List[str]:
        """Topological order that breaks ties by declaration order."""
        order = {node: i for i, node in enumerate(self._nodes)}
        return list(nx.lexicographical_topological_sort(self._graph, key=order.get))

    def to_networkx(self) -> nx.DiGraph:
        """Mutable copy for algorithms and plotting."""
        return nx.DiGraph(self._graph)

    # -- edits (each returns a new graph) ----------------------------------

    def add_edge(self, parent: str, child: str) -> "CausalDAG":
        if self.has_edge(parent, child):
            return self
        return CausalDAG(self._nodes, list(self._edges) + [(parent, child)])

    def add_edges(self, edges: Iterable[Edge]) -> "CausalDAG":
        return CausalDAG(self._nodes, list(self._edges) + list(edges))

    def remove_edge(self, parent: str, child: str) -> "CausalDAG":
        self._check(parent)
        self._check(child)
        if not self.has_edge(parent, child):
            raise GraphError(f"Edge {parent} -> {child} is not in the graph")
        return CausalDAG(self._nodes, [e for e in self._edges if e != (parent, child)])

    def remove_node(self, node: str) -> "CausalDAG":
        self._check(node)
        return CausalDAG(
            [n for n in self._nodes if n != node],
            [e for e in self._edges if node not in e]
        )

    def subgraph(self, nodes: Iterable[str]) -> "CausalDAG":
        keep = set(nodes)
        for node in keep:
            self._check(node)
        return CausalDAG(
            [n for n in self._nodes if n in keep],
            [e for e in self._edges if e[0] in keep and e[1] in keep]
        )

    def without_outgoing(self, node: str) -> "CausalDAG":
        self._check(node)
        return CausalDAG(self._nodes, [e for e in self._edges if e[0] != node])

    @classmethod
    def from_edges(cls, edges: Iterable[Edge], nodes: Optional[Iterable[str]] = None) -> "CausalDAG":
        """Build a graph whose node order follows first appearance in ``nodes`` then ``edges``."""
        edges = list(edges)
        ordered: List[str] = list(nodes) if nodes is not None else []
        if nodes is None:
            for parent, child in edges:
                for node in (parent, child):
                    if node not in ordered:
                        ordered.append(node)
        return cls(ordered, edges)

    def edge_set(self) -> FrozenSet[Edge]:
        return self._edges
