"""
Visualization module for the heart-failure causal analysis.
"""

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import seaborn as sns
import networkx as nx
import pandas as pd
import numpy as np
from typing import Dict, Optional, Sequence, Tuple
import logging

from ..graph.dag import CausalDAG
from ..models.causal_models import CausalEstimate
from ..models.edge_strength import EdgeStrength
from ..models.structure_learning import LearnedStructure


logger = logging.getLogger(__name__)


class CausalVisualization:
    """Creates the figures of the analysis; vector output when saved as .svg or .pdf."""

    def __init__(self, figsize: Tuple[int, int] = (10, 6)):
        """
        Initialize visualization settings.

        Args:
            figsize: Default figure size
        """
        plt.style.use('default')
        sns.set_palette("husl")
        self.figsize = figsize
        self.colors = {
            'primary': '#2E86AB',
            'secondary': '#A23B72',
            'accent': '#F18F01',
            'neutral': '#C73E1D',
            'light_gray': '#F5F5F5',
            'dark_gray': '#333333'
        }

    def _finish(self, fig, save_path: Optional[str], label: str) -> None:
        fig.tight_layout()
        if save_path:
            fig.savefig(save_path, bbox_inches='tight')
            logger.info(f"{label} saved to {save_path}")
        plt.close(fig)

    @staticmethod
    def _layered_layout(graph: nx.DiGraph) -> Dict[str, np.ndarray]:
        for layer, nodes in enumerate(nx.topological_generations(graph)):
            for node in nodes:
                graph.nodes[node]['layer'] = layer
        return nx.multipartite_layout(graph, subset_key='layer', align='horizontal', scale=2)

    def plot_causal_dag(
        self,
        dag: CausalDAG,
        strengths: Optional[Sequence[EdgeStrength]] = None,
        highlight: Sequence[str] = (),
        title: str = 'Causal DAG',
        save_path: Optional[str] = None
    ) -> None:
        """
        Draw the DAG in topological layers, labelling edges with their strength.

        Args:
            dag: Graph to draw
            strengths: Optional edge-strength records; edge width follows |coefficient|
            highlight: Nodes drawn in the accent colour (e.g. exposure and outcome)
            title: Figure title
            save_path: Path to save the figure
        """
        graph = dag.to_networkx()
        pos = self._layered_layout(graph)
        fig, ax = plt.subplots(figsize=(12, 8))

        node_colors = [self.colors['accent'] if n in highlight else self.colors['primary']
                       for n in graph.nodes]
        nx.draw_networkx_nodes(graph, pos, ax=ax, node_color=node_colors, node_size=1800, alpha=0.9)
        nx.draw_networkx_labels(graph, pos, ax=ax, font_size=9, font_color='white', font_weight='bold')

        widths = 1.5
        if strengths:
            lookup = {s.edge: s for s in strengths}
            widths = [1 + 4 * min(abs(lookup[e].coefficient), 1.0) if e in lookup else 1.0
                      for e in graph.edges]
            labels = {e: f"{lookup[e].coefficient:.2f}" for e in graph.edges if e in lookup}
            nx.draw_networkx_edge_labels(graph, pos, edge_labels=labels, ax=ax, font_size=7)

        nx.draw_networkx_edges(graph, pos, ax=ax, width=widths, arrowsize=18,
                               edge_color=self.colors['dark_gray'], node_size=1800)
        ax.set_title(title, fontweight='bold')
        ax.axis('off')
        self._finish(fig, save_path, 'DAG plot')

    def plot_learned_structure(
        self,
        structure: LearnedStructure,
        title: str = 'Learned structure',
        save_path: Optional[str] = None
    ) -> None:
        """Draw a PC result: directed edges as arrows, undirected edges dashed."""
        graph = nx.DiGraph()
        graph.add_nodes_from(structure.nodes)
        graph.add_edges_from(structure.directed)
        pos = nx.circular_layout(graph)

        fig, ax = plt.subplots(figsize=(10, 10))
        nx.draw_networkx_nodes(graph, pos, ax=ax, node_color=self.colors['secondary'], node_size=1600)
        nx.draw_networkx_labels(graph, pos, ax=ax, font_size=9, font_color='white')
        nx.draw_networkx_edges(graph, pos, ax=ax, arrowsize=18, node_size=1600,
                               edge_color=self.colors['dark_gray'])
        nx.draw_networkx_edges(nx.Graph(structure.undirected), pos, ax=ax, style='dashed',
                               edge_color=self.colors['neutral'])
        ax.set_title(title, fontweight='bold')
        ax.axis('off')
        self._finish(fig, save_path, 'Learned structure plot')

    def plot_censoring_curve(
        self,
        curve: pd.DataFrame,
        cutoff: Optional[int] = None,
        save_path: Optional[str] = None
    ) -> None:
        """Censored, deceased and at-risk counts over candidate cutoff times."""
        fig, ax = plt.subplots(figsize=self.figsize)
        ax.step(curve.index, curve['censored'], where='post', label='Censored before t',
                color=self.colors['primary'])
        ax.step(curve.index, curve['deceased'], where='post', label='Deceased before t',
                color=self.colors['neutral'])
        ax.step(curve.index, curve['at_risk'], where='post', label='At risk at t',
                color=self.colors['accent'])
        if cutoff is not None:
            ax.axvline(cutoff, color=self.colors['dark_gray'], linestyle='--', alpha=0.7,
                       label=f'Cutoff t={cutoff}')
        ax.set_xlabel('Days since enrolment')
        ax.set_ylabel('Patients')
        ax.set_title('Censoring curve', fontweight='bold')
        ax.legend()
        ax.grid(True, alpha=0.3)
        self._finish(fig, save_path, 'Censoring curve')

    def plot_survival_curves(
        self,
        curves: pd.DataFrame,
        exposure: str,
        title: str = 'Predicted survival',
        save_path: Optional[str] = None
    ) -> None:
        """Predicted survival curves at exposure quantiles."""
        fig, ax = plt.subplots(figsize=self.figsize)
        values = curves.attrs.get('exposure_values', {})
        for column in curves.columns:
            label = f"{exposure} {column}"
            if column in values:
                label += f" ({values[column]:.2f})"
            ax.step(curves.index, curves[column], where='post', label=label)
        ax.set_xlabel('Days')
        ax.set_ylabel('Survival probability')
        ax.set_ylim(0, 1.02)
        ax.set_title(title, fontweight='bold')
        ax.legend()
        ax.grid(True, alpha=0.3)
        self._finish(fig, save_path, 'Survival curves')

    def plot_kaplan_meier(self, fitters: Dict, save_path: Optional[str] = None) -> None:
        """Kaplan-Meier curves with confidence bands."""
        fig, ax = plt.subplots(figsize=self.figsize)
        for kmf in fitters.values():
            kmf.plot_survival_function(ax=ax)
        ax.set_xlabel('Days')
        ax.set_ylabel('Survival probability')
        ax.set_title('Kaplan-Meier estimate', fontweight='bold')
        ax.grid(True, alpha=0.3)
        self._finish(fig, save_path, 'Kaplan-Meier plot')

    def plot_effect_estimates(
        self,
        estimates: Dict[str, CausalEstimate],
        title: str = 'Exposure effect estimates',
        save_path: Optional[str] = None
    ) -> None:
        """
        Plot effect estimates with confidence intervals.

        Args:
            estimates: Dictionary of causal estimates
            title: Figure title
            save_path: Path to save the figure
        """
        fig, ax = plt.subplots(figsize=self.figsize)

        methods = list(estimates.keys())
        coefficients = [est.coefficient for est in estimates.values()]
        errors_lower = [est.coefficient - est.ci_lower for est in estimates.values()]
        errors_upper = [est.ci_upper - est.coefficient for est in estimates.values()]

        y_pos = np.arange(len(methods))
        ax.errorbar(coefficients, y_pos, xerr=[errors_lower, errors_upper],
                    fmt='o', markersize=8, capsize=5, capthick=2,
                    color=self.colors['primary'], ecolor=self.colors['dark_gray'])
        ax.axvline(x=0, color=self.colors['neutral'], linestyle='--', alpha=0.7)

        ax.set_yticks(y_pos)
        ax.set_yticklabels(methods)
        ax.set_xlabel('Effect (log hazard ratio or linear coefficient)')
        ax.set_title(title, fontweight='bold')
        ax.grid(True, alpha=0.3)

        for i, est in enumerate(estimates.values()):
            if est.is_significant:
                ax.text(est.coefficient, i + 0.15, '*', fontsize=16,
                        color=self.colors['neutral'], fontweight='bold')

        self._finish(fig, save_path, 'Effect estimates plot')

    def plot_balance(
        self,
        before: pd.DataFrame,
        after: pd.DataFrame,
        save_path: Optional[str] = None
    ) -> None:
        """Standardized mean differences before and after matching (love plot)."""
        fig, ax = plt.subplots(figsize=self.figsize)
        y_pos = np.arange(len(before))

        for table, color, label, offset in ((before, self.colors['neutral'], 'Before matching', -0.1),
                                            (after, self.colors['primary'], 'After matching', 0.1)):
            smd = table['standardized_mean_diff'].to_numpy()
            err = [smd - table['ci_lower'].to_numpy(), table['ci_upper'].to_numpy() - smd]
            ax.errorbar(smd, y_pos + offset, xerr=err, fmt='o', color=color, capsize=3, label=label)

        ax.axvline(0, color=self.colors['dark_gray'], linewidth=1)
        for bound in (-0.1, 0.1):
            ax.axvline(bound, color=self.colors['dark_gray'], linestyle=':', alpha=0.6)
        ax.set_yticks(y_pos)
        ax.set_yticklabels(before['covariate'])
        ax.set_xlabel('Standardized mean difference')
        ax.set_title('Covariate balance', fontweight='bold')
        ax.legend()
        ax.grid(True, alpha=0.3)
        self._finish(fig, save_path, 'Balance plot')
