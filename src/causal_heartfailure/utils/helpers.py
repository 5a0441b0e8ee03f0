"""
Utility functions for the heart-failure analysis: logging, result files and reporting.
"""

import pandas as pd
import numpy as np
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import json


logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Set up logging configuration.

    Args:
        level: Logging level name
        log_file: Optional file that receives a copy of the log
    """
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def _to_serializable(value: Any) -> Any:
    """Convert numpy / pandas values and result objects into JSON-compatible objects."""
    if hasattr(value, 'to_dict') and not isinstance(value, (pd.DataFrame, pd.Series)):
        return _to_serializable(value.to_dict())
    if isinstance(value, dict):
        return {str(k): _to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_serializable(v) for v in value]
    if isinstance(value, pd.DataFrame):
        return _to_serializable(value.to_dict(orient='records'))
    if isinstance(value, pd.Series):
        return _to_serializable(value.to_dict())
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and not np.isfinite(value):
        return None
    return value


def save_results(results: Dict[str, Any], filepath) -> Path:
    """
    Write analysis results as JSON.

    Args:
        results: Nested dictionary of results; estimates, frames and numpy scalars are converted
        filepath: Destination ``.json`` path

    Returns:
        The path written
    """
    filepath = Path(filepath)
    if filepath.suffix != '.json':
        raise ValueError(f"Unsupported file format: {filepath.suffix}")

    with open(filepath, 'w') as f:
        # Anything still unknown after conversion is stored by its repr
        json.dump(_to_serializable(results), f, indent=2, default=str)

    logger.info(f"Results saved to {filepath}")
    return filepath


def load_json(filepath) -> Dict[str, Any]:
    """Read a JSON results or configuration file."""
    filepath = Path(filepath)
    with open(filepath, 'r') as f:
        content = json.load(f)
    logger.info(f"Loaded {filepath}")
    return content


def describe_by_outcome(df: pd.DataFrame, outcome: str) -> pd.DataFrame:
    """
    Cohort description split by the outcome indicator.

    Binary columns are reported as prevalence, other numeric columns as mean and
    standard deviation.

    Args:
        df: Cohort data
        outcome: Name of the 0/1 outcome column

    Returns:
        DataFrame indexed by variable with one column block per outcome group
    """
    numeric_cols = [c for c in df.select_dtypes(include=[np.number]).columns if c != outcome]
    binary_cols = [c for c in numeric_cols if set(df[c].dropna().unique()) <= {0, 1}]

    blocks = {}
    for group, frame in df.groupby(outcome):
        stats = pd.DataFrame({
            'mean': frame[numeric_cols].mean(),
            'std': frame[numeric_cols].std(),
        })
        stats.loc[binary_cols, 'std'] = np.nan
        stats.loc['n', 'mean'] = len(frame)
        blocks[f"{outcome}={int(group)}"] = stats

    return pd.concat(blocks, axis=1)


def format_results_table(estimates: Dict[str, Any], title: str = "Effect Estimates",
                         hazard_scale: bool = False) -> str:
    """
    Format estimates as a fixed-width table for the console report.

    Args:
        estimates: Mapping of label to an object with coefficient / ci / p_value fields
        title: Table title
        hazard_scale: Report exp(coefficient) and its interval instead of the raw scale

    Returns:
        Formatted table string
    """
    headers = ["Method", "HR" if hazard_scale else "Estimate", "95% CI", "P-value", "Significant"]
    widths = [22, 10, 22, 10, 11]

    def line(cells):
        return " | ".join(f"{cell:>{w}}" for cell, w in zip(cells, widths))

    rows = [f"\n{title}", "=" * len(title), line(headers), "-" * (sum(widths) + 3 * (len(widths) - 1))]

    for label, est in estimates.items():
        if not hasattr(est, 'coefficient'):
            continue
        point, lower, upper = est.coefficient, est.ci_lower, est.ci_upper
        if hazard_scale:
            point, lower, upper = np.exp([point, lower, upper])
        rows.append(line([
            label[:22],
            f"{point:.4f}",
            f"[{lower:.4f}, {upper:.4f}]",
            f"{est.p_value:.4f}",
            "Yes" if est.is_significant else "No",
        ]))

    return "\n".join(rows)


def ensure_directory(path) -> Path:
    """Create ``path`` (and parents) if needed and return it."""
    path_obj = Path(path)
    path_obj.mkdir(parents=True, exist_ok=True)
    return path_obj
