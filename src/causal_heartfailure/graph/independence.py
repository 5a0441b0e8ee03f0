"""
Testing the conditional independencies implied by a causal DAG.

For every pair of non-adjacent nodes the DAG implies X _||_ Y | Z with Z the union of
both nodes' parents. Each claim is checked by residualizing the encodings of X and Y on
Z and testing the canonical correlation of the residuals with Pillai's trace. With two
single-column variables this reduces to the partial correlation t-test.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from .dag import CausalDAG, CycleError, Edge
from ..data.variables import VariableSchema


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndependenceClaim:
    """X is independent of Y given the conditioning set."""
    x: str
    y: str
    given: Tuple[str, ...] = ()

    def __str__(self) -> str:
        given = f" | {', '.join(self.given)}" if self.given else ""
        return f"{self.x} _||_ {self.y}{given}"


@dataclass(frozen=True)
class TestResult:
    """Residual association for one independence claim."""
    __test__ = False

    claim: IndependenceClaim
    estimate: float
    pillai: float
    statistic: float
    df1: float
    df2: float
    p_value: float
    method: str

    def is_violation(self, alpha: float = 0.05) -> bool:
        return self.p_value < alpha


def implied_independencies(dag: CausalDAG) -> List[IndependenceClaim]:
    """
    Enumerate one independence claim per non-adjacent pair.

    Pairs are visited in the graph's deterministic topological order; X precedes Y, so
    Y is not an ancestor of X and pa(X) | pa(Y) separates them.
    """
    order = dag.topological_order()
    claims = []
    for i, x in enumerate(order):
        for y in order[i + 1:]:
            if dag.adjacent(x, y):
                continue
            given = (set(dag.parents(x)) | set(dag.parents(y))) - {x, y}
            claims.append(IndependenceClaim(x, y, tuple(n for n in dag.nodes if n in given)))
    return claims


def _residualize(target: np.ndarray, design: np.ndarray) -> np.ndarray:
    if design.shape[1] == 0:
        return target
    coef, *_ = np.linalg.lstsq(design, target, rcond=None)
    return target - design @ coef


def _orthonormal_basis(matrix: np.ndarray, tol: float = 1e-10) -> np.ndarray:
    """Orthonormal basis of the column space, dropping numerically null directions."""
    if matrix.shape[1] == 0:
        return matrix
    u, s, _ = np.linalg.svd(matrix, full_matrices=False)
    if s.size == 0 or s[0] <= tol:
        return u[:, :0]
    return u[:, s > tol * s[0]]


def pillai_test(rx: np.ndarray, ry: np.ndarray, n_conditioning: int) -> Tuple[np.ndarray, float, float, float, float, float]:
    """
    Pillai's trace test of association between two residual matrices.

    Args:
        rx, ry: Residuals of X and Y after regressing on the conditioning design
        n_conditioning: Rank of the conditioning design (intercept included)

    Returns:
        (canonical correlations, Pillai trace, F, df1, df2, p-value)
    """
    n = rx.shape[0]
    qx = _orthonormal_basis(rx)
    qy = _orthonormal_basis(ry)
    p, q = qx.shape[1], qy.shape[1]
    s = min(p, q)
    if s == 0:
        return np.zeros(0), 0.0, 0.0, 0.0, 0.0, 1.0

    canonical = np.clip(np.linalg.svd(qx.T @ qy, compute_uv=False), 0.0, 1.0)
    pillai = float(np.sum(canonical ** 2))

    df_error = n - n_conditioning - q
    m = 0.5 * (abs(p - q) - 1)
    nn = 0.5 * (df_error - p - 1)
    df1 = s * (2 * m + s + 1)
    df2 = s * (2 * nn + s + 1)
    if df2 <= 0:
        raise ValueError(
            f"Too few observations ({n}) for a test with {n_conditioning} conditioning columns"
        )

    if pillai >= s:
        return canonical, pillai, np.inf, df1, df2, 0.0
    f_stat = (df2 / df1) * pillai / (s - pillai)
    p_value = float(stats.f.sf(f_stat, df1, df2))
    return canonical, pillai, float(f_stat), float(df1), float(df2), p_value


class ConditionalIndependenceTester:
    """Tests independence claims with variable-kind aware residual correlation."""

    def __init__(self, schema: VariableSchema, alpha: float = 0.05):
        """
        Args:
            schema: Declared kind of each variable
            alpha: Significance threshold for flagging violations
        """
        self.schema = schema
        self.alpha = alpha

    def _check_columns(self, data: pd.DataFrame, names: Iterable[str]) -> None:
        missing = [name for name in names if name not in data.columns]
        if missing:
            raise KeyError(f"Variables {missing} are graph nodes but not columns of the data")

    def test(self, data: pd.DataFrame, claim: IndependenceClaim) -> TestResult:
        """Test a single claim."""
        self._check_columns(data, (claim.x, claim.y) + claim.given)

        design = self.schema.design_matrix(data, claim.given, intercept=True)
        rank = np.linalg.matrix_rank(design) if design.shape[1] else 0

        x_cols = self.schema[claim.x].encode(data[claim.x])
        y_cols = self.schema[claim.y].encode(data[claim.y])
        rx = _residualize(x_cols, design)
        ry = _residualize(y_cols, design)

        canonical, pillai, f_stat, df1, df2, p_value = pillai_test(rx, ry, rank)

        if x_cols.shape[1] == 1 and y_cols.shape[1] == 1:
            method = 'partial_correlation'
            sx, sy = rx[:, 0].std(), ry[:, 0].std()
            estimate = 0.0 if sx == 0 or sy == 0 else float(np.corrcoef(rx[:, 0], ry[:, 0])[0, 1])
        else:
            method = 'canonical_correlation'
            estimate = float(canonical[0]) if canonical.size else 0.0

        return TestResult(claim, estimate, pillai, f_stat, df1, df2, p_value, method)

    def test_pair(self, data: pd.DataFrame, x: str, y: str, given: Sequence[str] = ()) -> TestResult:
        return self.test(data, IndependenceClaim(x, y, tuple(given)))

    def test_all(self, data: pd.DataFrame, claims: Iterable[IndependenceClaim]) -> List[TestResult]:
        return [self.test(data, claim) for claim in claims]


def results_frame(results: Sequence[TestResult], alpha: float = 0.05) -> pd.DataFrame:
    """Tabulate test results, one row per claim."""
    rows = [{
        'claim': str(r.claim),
        'x': r.claim.x,
        'y': r.claim.y,
        'given': ', '.join(r.claim.given),
        'estimate': r.estimate,
        'pillai': r.pillai,
        'statistic': r.statistic,
        'p_value': r.p_value,
        'method': r.method,
        'violation': r.is_violation(alpha),
    } for r in results]
    return pd.DataFrame(rows, columns=[
        'claim', 'x', 'y', 'given', 'estimate', 'pillai', 'statistic', 'p_value', 'method', 'violation'
    ])


@dataclass(frozen=True)
class RefinementReport:
    """Outcome of testing one graph against the data."""
    dag: CausalDAG
    results: Tuple[TestResult, ...]
    alpha: float = 0.05

    @property
    def violations(self) -> List[TestResult]:
        """Failed claims, strongest evidence first."""
        failed = [r for r in self.results if r.is_violation(self.alpha)]
        return sorted(failed, key=lambda r: (r.p_value, -abs(r.estimate)))

    @property
    def is_consistent(self) -> bool:
        return not self.violations

    def to_frame(self) -> pd.DataFrame:
        return results_frame(self.results, self.alpha)


EdgeChooser = Callable[[TestResult], Optional[Edge]]


class GraphRefiner:
    """
    Step-wise refinement of a DAG against data.

    ``evaluate`` is the pure test-graph primitive; which edge (and which direction)
    resolves a violation is decided by the caller.
    """

    def __init__(self, tester: ConditionalIndependenceTester):
        self.tester = tester

    def evaluate(self, dag: CausalDAG, data: pd.DataFrame) -> RefinementReport:
        claims = implied_independencies(dag)
        results = tuple(self.tester.test_all(data, claims))
        report = RefinementReport(dag, results, self.tester.alpha)
        logger.info(f"Tested {len(results)} implied independencies: "
                    f"{len(report.violations)} violations at alpha={self.tester.alpha}")
        return report

    @staticmethod
    def apply(dag: CausalDAG, edits: Iterable[Edge]) -> CausalDAG:
        """Add caller-chosen directed edges; a cycle-creating edit raises CycleError."""
        for parent, child in edits:
            dag = dag.add_edge(parent, child)
            logger.info(f"Added edge {parent} -> {child}")
        return dag

    def refine(
        self,
        dag: CausalDAG,
        data: pd.DataFrame,
        choose_edge: EdgeChooser,
        max_iterations: int = 10
    ) -> Tuple[CausalDAG, List[RefinementReport]]:
        """
        Alternate evaluation and caller edits until the graph passes.

        Args:
            dag: Starting graph
            data: Dataset with one column per node
            choose_edge: Maps a violation to the directed edge to add, or None to skip it.
                Edits that would close a cycle are skipped with a warning
            max_iterations: Upper bound on evaluate/edit rounds

        Returns:
            The final graph and the report of every evaluation
        """
        history = []
        for iteration in range(max_iterations):
            report = self.evaluate(dag, data)
            history.append(report)
            if report.is_consistent:
                logger.info(f"Graph consistent with data after {iteration} refinement rounds")
                return dag, history

            edited = dag
            for violation in report.violations:
                edge = choose_edge(violation)
                if edge is None or edited.has_edge(*edge):
                    continue
                try:
                    edited = self.apply(edited, [edge])
                except CycleError as e:
                    logger.warning(f"Skipping proposed edit for {violation.claim}: {e}")
            if edited == dag:
                logger.warning(f"{len(report.violations)} violations remain but no edits were proposed")
                return dag, history
            dag = edited

        final = self.evaluate(dag, data)
        history.append(final)
        if not final.is_consistent:
            logger.warning(f"Stopped after {max_iterations} rounds with "
                           f"{len(final.violations)} violations remaining")
        return dag, history
