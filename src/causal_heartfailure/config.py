"""
Analysis configuration.
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class AnalysisConfig:
    """Tunable constants for the heart-failure causal analysis pipeline."""

    # Input / output
    data_path: str = "data/raw/heart_failure.csv"
    fetch_from_uci: bool = False
    checkpoint_path: str = "data/processed/heart_failure_clean.pkl"
    figures_dir: str = "figures"
    results_dir: str = "results"

    # Variables
    exposure: str = "Creatinine"
    outcome: str = "Event"
    duration_col: str = "TIME"

    # Censoring cutoff
    cutoff_range: Tuple[int, int] = (0, 200)
    min_jump: Optional[int] = None
    cutoff: Optional[int] = None

    # Testing and pruning
    alpha: float = 0.05
    max_refinement_iterations: int = 10

    # Propensity scores
    matching_threshold: Optional[float] = None
    caliper: Optional[float] = 0.2
    max_weight: float = 20.0

    # Structure learning
    n_bins: int = 3

    # Debiased estimation
    n_folds: int = 5
    dml_methods: List[str] = field(default_factory=lambda: ['linear', 'random_forest', 'xgboost'])

    random_state: int = 42

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "AnalysisConfig":
        """Build a config from a plain mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in values.items() if k in known}
        if 'cutoff_range' in kwargs:
            kwargs['cutoff_range'] = tuple(kwargs['cutoff_range'])
        return cls(**kwargs)
