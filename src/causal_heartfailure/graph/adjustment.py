"""
Back-door adjustment sets.
"""

import logging
from typing import Iterable, List, Set

import networkx as nx

from .dag import CausalDAG, UnknownNodeError


logger = logging.getLogger(__name__)


class NoAdjustmentSetError(ValueError):
    """Raised when no covariate set satisfies the back-door criterion."""


def d_separated(dag: CausalDAG, xs: Iterable[str], ys: Iterable[str], zs: Iterable[str]) -> bool:
    """
    Test whether ``zs`` d-separates ``xs`` from ``ys``.

    Uses the moralized ancestral graph: X and Y are d-separated by Z iff they are
    disconnected in the moral graph of An(X | Y | Z) once Z is removed.
    """
    xs, ys, zs = set(xs), set(ys), set(zs)
    for node in xs | ys | zs:
        if node not in dag:
            raise UnknownNodeError(node, context='d-separation query')
    if (xs & ys) or (xs & zs) or (ys & zs):
        raise ValueError("Node sets passed to d_separated must be disjoint")

    relevant = set(xs | ys | zs)
    for node in list(relevant):
        relevant |= dag.ancestors(node)

    moral = nx.moral_graph(dag.to_networkx().subgraph(relevant))
    moral.remove_nodes_from(zs)
    for x in xs:
        reachable = nx.node_connected_component(moral, x)
        if reachable & ys:
            return False
    return True


def is_backdoor_adjustment_set(dag: CausalDAG, exposure: str, outcome: str, adjustment: Iterable[str]) -> bool:
    """Back-door criterion: no descendants of the exposure, and all back-door paths blocked."""
    adjustment = set(adjustment)
    if exposure in adjustment or outcome in adjustment:
        return False
    if adjustment & dag.descendants(exposure):
        return False
    return d_separated(dag.without_outgoing(exposure), {exposure}, {outcome}, adjustment)


def backdoor_paths(dag: CausalDAG, exposure: str, outcome: str) -> List[List[str]]:
    """Paths from exposure to outcome that start with an edge into the exposure."""
    skeleton = dag.to_networkx().to_undirected()
    paths = []
    for path in nx.all_simple_paths(skeleton, exposure, outcome):
        if len(path) > 1 and dag.has_edge(path[1], exposure):
            paths.append(path)
    return sorted(paths, key=lambda p: (len(p), p))


def backdoor_adjustment_set(dag: CausalDAG, exposure: str, outcome: str, minimal: bool = True) -> Set[str]:
    """
    Compute a covariate set satisfying the back-door criterion.

    Starts from the ancestors of exposure and outcome that are not descendants of the
    exposure, which is valid whenever any valid set exists, then drops members one at
    a time (declaration order) while the set stays valid.

    Raises:
        NoAdjustmentSetError: If the exposure's effect is not identifiable by adjustment
        UnknownNodeError: If the exposure or outcome is not a node of ``dag``
    """
    for node in (exposure, outcome):
        if node not in dag:
            raise UnknownNodeError(node, context='back-door adjustment')
    if exposure == outcome:
        raise ValueError("Exposure and outcome must differ")

    candidate = (dag.ancestors(exposure) | dag.ancestors(outcome)) - dag.descendants(exposure)
    candidate -= {exposure, outcome}

    if not is_backdoor_adjustment_set(dag, exposure, outcome, candidate):
        raise NoAdjustmentSetError(
            f"No back-door adjustment set exists for {exposure} -> {outcome}"
        )

    if minimal:
        for node in [n for n in dag.nodes if n in candidate]:
            reduced = candidate - {node}
            if is_backdoor_adjustment_set(dag, exposure, outcome, reduced):
                candidate = reduced

    logger.info(f"Adjustment set for {exposure} -> {outcome}: {sorted(candidate) or '(empty)'}")
    return candidate
