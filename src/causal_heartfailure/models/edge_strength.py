"""
Edge-strength estimation for a causal DAG.

Two interchangeable strategies are provided. ``partial_correlations`` estimates each
edge P -> C separately as the residual correlation of P and C given C's other parents.
``fit_sem`` treats the graph as a recursive linear structural equation model: one OLS
equation per non-root node on its parents. With uncorrelated disturbances the
equation-wise least-squares fit is the joint maximum-likelihood solution, so the
coefficients form one self-consistent set. Edges into the survival outcome are then
re-estimated with a Cox model on the outcome's full parent set.
"""

import logging
from dataclasses import dataclass, asdict, field
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm

from ..data.variables import VariableSchema
from ..graph.dag import CausalDAG, Edge
from ..graph.independence import ConditionalIndependenceTester
from .survival import SurvivalAnalyzer


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EdgeStrength:
    """Estimated strength of one direct edge."""
    parent: str
    child: str
    coefficient: float
    std_error: float
    p_value: float
    method: str
    residual_variance: Optional[float] = None

    @property
    def edge(self) -> Edge:
        return (self.parent, self.child)


@dataclass
class SEMResult:
    """Joint fit of the graph as a recursive structural equation model."""
    edges: List[EdgeStrength]
    residual_variances: Dict[str, float]
    r_squared: Dict[str, float]
    log_likelihood: float
    n_parameters: int
    n_obs: int

    @property
    def aic(self) -> float:
        return -2 * self.log_likelihood + 2 * self.n_parameters

    @property
    def bic(self) -> float:
        return -2 * self.log_likelihood + self.n_parameters * np.log(self.n_obs)


@dataclass
class PruningResult:
    dag: CausalDAG
    removed_edges: List[Edge] = field(default_factory=list)
    removed_nodes: List[str] = field(default_factory=list)


def strengths_frame(strengths: Iterable[EdgeStrength]) -> pd.DataFrame:
    columns = ['parent', 'child', 'coefficient', 'std_error', 'p_value', 'method', 'residual_variance']
    return pd.DataFrame([asdict(s) for s in strengths], columns=columns)


class EdgeStrengthEstimator:
    """Estimates, and prunes on, the strength of every edge in a DAG."""

    def __init__(
        self,
        schema: VariableSchema,
        outcome: str = 'Event',
        duration_col: str = 'TIME',
        alpha: float = 0.05
    ):
        """
        Args:
            schema: Declared kind of each variable
            outcome: Survival outcome node; edges into it get hazard-ratio estimates
            duration_col: Follow-up duration paired with the outcome indicator
            alpha: Significance threshold used by ``prune``
        """
        self.schema = schema
        self.outcome = outcome
        self.duration_col = duration_col
        self.alpha = alpha
        self.tester = ConditionalIndependenceTester(schema, alpha=alpha)
        self.survival = SurvivalAnalyzer(duration_col=duration_col, event_col=outcome)

    def partial_correlations(self, dag: CausalDAG, data: pd.DataFrame) -> List[EdgeStrength]:
        """Per-edge residual correlation of parent and child given the child's other parents."""
        strengths = []
        for parent, child in dag.edges:
            others = [p for p in dag.parents(child) if p != parent]
            result = self.tester.test_pair(data, parent, child, others)
            se = np.sqrt(max(1 - result.estimate ** 2, 0.0) / result.df2) if result.df2 > 0 else np.nan
            strengths.append(EdgeStrength(
                parent=parent,
                child=child,
                coefficient=result.estimate,
                std_error=float(se),
                p_value=result.p_value,
                method=result.method
            ))
        return strengths

    def fit_sem(self, dag: CausalDAG, data: pd.DataFrame) -> SEMResult:
        """Fit one linear equation per node on its parents."""
        missing = [node for node in dag.nodes if node not in data.columns]
        if missing:
            raise KeyError(f"Graph nodes {missing} are not columns of the data")

        n = len(data)
        edges = []
        residual_variances = {}
        r_squared = {}
        log_likelihood = 0.0
        n_parameters = 0

        for node in dag.topological_order():
            parents = dag.parents(node)
            y = data[node].astype(float)
            if parents:
                X = sm.add_constant(data[parents].astype(float), has_constant='add')
            else:
                X = pd.DataFrame({'const': np.ones(n)}, index=data.index)

            try:
                fit = sm.OLS(y, X).fit()
            except Exception:
                logger.error(f"Structural equation for '{node}' on {parents} failed")
                raise

            residual_variances[node] = float(fit.ssr / n)
            r_squared[node] = float(fit.rsquared) if parents else 0.0
            log_likelihood += float(fit.llf)
            n_parameters += len(parents) + 2

            for parent in parents:
                edges.append(EdgeStrength(
                    parent=parent,
                    child=node,
                    coefficient=float(fit.params[parent]),
                    std_error=float(fit.bse[parent]),
                    p_value=float(fit.pvalues[parent]),
                    method='sem',
                    residual_variance=residual_variances[node]
                ))

        logger.info(f"Structural equation model: {len(edges)} edges, log-likelihood {log_likelihood:.2f}")
        return SEMResult(edges, residual_variances, r_squared, log_likelihood, n_parameters, n)

    def fit_outcome_hazards(
        self,
        dag: CausalDAG,
        data: pd.DataFrame,
        residual_variance: Optional[float] = None
    ) -> List[EdgeStrength]:
        """Cox log hazard ratios for every edge into the outcome, fitted jointly."""
        parents = dag.parents(self.outcome)
        if not parents:
            return []
        model = self.survival.fit_cox(data, parents)
        estimates = self.survival.estimates(model)
        return [
            EdgeStrength(
                parent=parent,
                child=self.outcome,
                coefficient=estimates[parent].coefficient,
                std_error=estimates[parent].std_error,
                p_value=estimates[parent].p_value,
                method='cox',
                residual_variance=residual_variance
            )
            for parent in parents
        ]

    def estimate(
        self,
        dag: CausalDAG,
        data: pd.DataFrame,
        method: str = 'sem',
        sem: Optional[SEMResult] = None
    ) -> List[EdgeStrength]:
        """
        One strength record per edge, with Cox estimates for edges into the outcome.

        Args:
            dag: Graph whose edges are estimated
            data: Standardized dataset including the duration column
            method: 'sem' for the joint fit, 'partial' for per-edge partial correlations
            sem: Already fitted structural equations for ``dag``, reused instead of refitting
        """
        if method == 'sem':
            sem = sem if sem is not None else self.fit_sem(dag, data)
            base = sem.edges
            outcome_variance = sem.residual_variances.get(self.outcome)
        elif method == 'partial':
            base = self.partial_correlations(dag, data)
            outcome_variance = None
        else:
            raise ValueError(f"Unknown edge-strength method '{method}' (use 'sem' or 'partial')")

        if self.outcome not in dag or self.duration_col not in data.columns:
            return base

        hazards = {s.edge: s for s in self.fit_outcome_hazards(dag, data, outcome_variance)}
        return [hazards.get(s.edge, s) for s in base]

    def prune(
        self,
        dag: CausalDAG,
        strengths: Sequence[EdgeStrength],
        protected: Iterable[str] = ()
    ) -> PruningResult:
        """
        Remove edges whose p-value exceeds alpha, then drop nodes left without children.

        A node is dropped only if it had outgoing edges before pruning and has none
        after; dropping it can in turn strip its parents of their last child. Nodes in
        ``protected`` (and the outcome) are always kept.
        """
        protected = set(protected) | {self.outcome}
        weak = [s.edge for s in strengths if s.p_value > self.alpha]
        had_children = {node for node in dag.nodes if dag.children(node)}

        result = PruningResult(dag=dag)
        for parent, child in weak:
            if result.dag.has_edge(parent, child):
                result.dag = result.dag.remove_edge(parent, child)
                result.removed_edges.append((parent, child))

        changed = True
        while changed:
            changed = False
            for node in result.dag.nodes:
                if node in protected or node not in had_children:
                    continue
                if not result.dag.children(node):
                    result.removed_edges.extend((p, node) for p in result.dag.parents(node))
                    result.dag = result.dag.remove_node(node)
                    result.removed_nodes.append(node)
                    changed = True
                    break

        if result.removed_edges:
            logger.info(f"Pruned {len(result.removed_edges)} edges with p > {self.alpha}")
        if result.removed_nodes:
            logger.warning(f"Dropped nodes without remaining outgoing edges: {result.removed_nodes}")
        return result
