"""
Data-driven structure learning as a cross-check on the literature graph.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Set, Tuple

import pandas as pd
from causallearn.graph.Endpoint import Endpoint
from causallearn.graph.GraphNode import GraphNode
from causallearn.search.ConstraintBased.PC import pc
from causallearn.utils.cit import chisq, fisherz
from causallearn.utils.PCUtils.BackgroundKnowledge import BackgroundKnowledge

from ..graph.dag import CausalDAG, Edge


logger = logging.getLogger(__name__)


@dataclass
class LearnedStructure:
    """A (partially) oriented graph returned by structure learning."""
    nodes: List[str]
    directed: List[Edge] = field(default_factory=list)
    undirected: List[Edge] = field(default_factory=list)

    def adjacencies(self) -> Set[frozenset]:
        return {frozenset(e) for e in self.directed + self.undirected}


@dataclass
class StructureComparison:
    """Edge-level agreement between a learned structure and a reference DAG."""
    shared: List[Edge]
    reversed: List[Edge]
    unoriented: List[Edge]
    extra: List[Edge]
    missing: List[Edge]

    def summary(self) -> Dict[str, int]:
        return {
            'shared': len(self.shared),
            'reversed': len(self.reversed),
            'unoriented': len(self.unoriented),
            'extra': len(self.extra),
            'missing': len(self.missing),
        }


class StructureLearner:
    """PC algorithm with background knowledge on required and forbidden edges."""

    def __init__(self, alpha: float = 0.05, indep_test: str = 'chisq', stable: bool = True):
        """
        Args:
            alpha: Significance level of the conditional-independence tests
            indep_test: 'chisq' for discretized data, 'fisherz' for continuous data
            stable: Use the order-independent skeleton search
        """
        tests = {'chisq': chisq, 'fisherz': fisherz}
        if indep_test not in tests:
            raise ValueError(f"Unknown independence test '{indep_test}' (use {sorted(tests)})")
        self.alpha = alpha
        self.indep_test = tests[indep_test]
        self.stable = stable

    @staticmethod
    def outcome_is_sink(outcome: str, nodes: Sequence[str]) -> List[Edge]:
        """Forbidden edges expressing that the outcome causes nothing."""
        return [(outcome, node) for node in nodes if node != outcome]

    @staticmethod
    def no_causes_of(target: str, nodes: Sequence[str]) -> List[Edge]:
        """Forbidden edges expressing that nothing in the data causes ``target``."""
        return [(node, target) for node in nodes if node != target]

    def _background_knowledge(
        self,
        names: List[str],
        required: Iterable[Edge],
        forbidden: Iterable[Edge]
    ) -> Tuple[BackgroundKnowledge, List[GraphNode]]:
        graph_nodes = [GraphNode(f"X{i + 1}") for i in range(len(names))]
        lookup = dict(zip(names, graph_nodes))
        bk = BackgroundKnowledge()

        for kind, edges in (('required', required), ('forbidden', forbidden)):
            for parent, child in edges:
                for node in (parent, child):
                    if node not in lookup:
                        raise KeyError(f"{kind.capitalize()} edge {parent} -> {child} "
                                       f"references unknown variable '{node}'")
                if kind == 'required':
                    bk.add_required_by_node(lookup[parent], lookup[child])
                else:
                    bk.add_forbidden_by_node(lookup[parent], lookup[child])
        return bk, graph_nodes

    def learn(
        self,
        data: pd.DataFrame,
        required: Iterable[Edge] = (),
        forbidden: Iterable[Edge] = ()
    ) -> LearnedStructure:
        """
        Run PC over every column of ``data``.

        Args:
            data: Dataset, discretized into integer buckets when using the chi-square test
            required: Edges that must appear with this orientation
            forbidden: Edges that must not appear with this orientation

        Returns:
            Directed and undirected edges of the learned pattern
        """
        names = list(data.columns)
        bk, _ = self._background_knowledge(names, required, forbidden)

        values = data.to_numpy(dtype=int if self.indep_test == chisq else float)
        logger.info(f"Running PC on {len(names)} variables, {len(data)} patients "
                    f"(test={self.indep_test}, alpha={self.alpha})")
        cg = pc(values, self.alpha, self.indep_test, self.stable,
                background_knowledge=bk, show_progress=False)

        def name_of(node) -> str:
            return names[int(node.get_name().lstrip('X')) - 1]

        structure = LearnedStructure(nodes=names)
        for edge in cg.G.get_graph_edges():
            a, b = name_of(edge.get_node1()), name_of(edge.get_node2())
            end1, end2 = edge.get_endpoint1(), edge.get_endpoint2()
            if end1 == Endpoint.TAIL and end2 == Endpoint.ARROW:
                structure.directed.append((a, b))
            elif end1 == Endpoint.ARROW and end2 == Endpoint.TAIL:
                structure.directed.append((b, a))
            else:
                structure.undirected.append(tuple(sorted((a, b), key=names.index)))

        logger.info(f"PC found {len(structure.directed)} directed and "
                    f"{len(structure.undirected)} undirected edges")
        return structure

    @staticmethod
    def compare(learned: LearnedStructure, reference: CausalDAG) -> StructureComparison:
        """Classify learned and reference edges by agreement."""
        ref_edges = reference.edge_set()
        ref_adjacent = {frozenset(e) for e in ref_edges}

        shared = [e for e in learned.directed if e in ref_edges]
        reversed_ = [e for e in learned.directed if (e[1], e[0]) in ref_edges]
        unoriented = [e for e in learned.undirected if frozenset(e) in ref_adjacent]
        extra = [e for e in learned.directed + learned.undirected if frozenset(e) not in ref_adjacent]

        learned_adjacent = learned.adjacencies()
        missing = [e for e in reference.edges if frozenset(e) not in learned_adjacent]

        return StructureComparison(shared, reversed_, unoriented, extra, missing)
