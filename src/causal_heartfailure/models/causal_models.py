"""
Effect estimate container and Double Machine Learning cross-check.
"""

import numpy as np
import pandas as pd
from typing import Dict, List, Optional, Any, Tuple
import logging
from dataclasses import dataclass
from contextlib import contextmanager

import doubleml as dml
from doubleml import DoubleMLData
from sklearn.ensemble import RandomForestRegressor
from sklearn.linear_model import LinearRegression
from sklearn.model_selection import KFold
from xgboost import XGBRegressor


logger = logging.getLogger(__name__)


@dataclass
class CausalEstimate:
    """Container for causal effect estimates."""
    coefficient: float
    std_error: float
    ci_lower: float
    ci_upper: float
    p_value: float
    method: str

    @property
    def is_significant(self) -> bool:
        """Check if effect is statistically significant at the 5% level."""
        return self.p_value < 0.05

    @property
    def hazard_ratio(self) -> float:
        """exp(coefficient); meaningful for proportional-hazards estimates."""
        return float(np.exp(self.coefficient))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'coefficient': self.coefficient,
            'std_error': self.std_error,
            'ci_lower': self.ci_lower,
            'ci_upper': self.ci_upper,
            'p_value': self.p_value,
            'method': self.method,
            'significant': self.is_significant,
        }


@contextmanager
def _scoped_numpy_seed(seed: int):
    """Seed numpy's global generator inside the block and restore the previous state after."""
    state = np.random.get_state()
    np.random.seed(seed)
    try:
        yield
    finally:
        np.random.set_state(state)


class DebiasedEffectEstimator:
    """
    Partially linear Double Machine Learning estimate of an exposure effect.

    The exposure and outcome are both residualized on the adjustment covariates with
    flexible learners and cross-fitting; the effect is the residual-on-residual slope.
    """

    def __init__(self, n_folds: int = 5, random_state: int = 42):
        """
        Initialize the estimator.

        Args:
            n_folds: Number of folds for cross-fitting
            random_state: Random seed for sample splitting and learners
        """
        self.n_folds = n_folds
        self.random_state = random_state
        self.models = {}
        self.results = {}

    def prepare_data(
        self,
        df: pd.DataFrame,
        treatment_col: str = 'Creatinine',
        outcome_col: str = 'Event',
        covariates: Optional[List[str]] = None
    ) -> DoubleMLData:
        """
        Prepare data for Double ML analysis.

        Args:
            df: Preprocessed dataset
            treatment_col: Name of exposure variable
            outcome_col: Name of outcome variable
            covariates: Adjustment covariates; defaults to every other column except TIME

        Returns:
            DoubleMLData object ready for analysis
        """
        if covariates is None:
            covariates = [col for col in df.columns if col not in (treatment_col, outcome_col, 'TIME')]
        covariates = list(covariates)
        if not covariates:
            raise ValueError("Double ML needs at least one adjustment covariate")

        logger.info(f"Prepared data with {len(covariates)} covariates, treatment: {treatment_col}, "
                    f"outcome: {outcome_col}")

        columns = [outcome_col, treatment_col] + covariates
        return DoubleMLData(
            df[columns].astype(float),
            y_col=outcome_col,
            d_cols=treatment_col,
            x_cols=covariates
        )

    def sample_splits(self, dml_data: DoubleMLData) -> List[Tuple[np.ndarray, np.ndarray]]:
        """Seeded K-fold (train, test) index pairs shared by every learner."""
        kfold = KFold(n_splits=self.n_folds, shuffle=True, random_state=self.random_state)
        return list(kfold.split(np.zeros((dml_data.n_obs, 1))))

    def _get_base_learners(self) -> Dict[str, Dict[str, Any]]:
        """Get base learners for the outcome (ml_l) and exposure (ml_m) nuisance models."""
        return {
            'linear': {
                'ml_l': LinearRegression(),
                'ml_m': LinearRegression()
            },
            'random_forest': {
                'ml_l': RandomForestRegressor(n_estimators=200, min_samples_leaf=5,
                                              random_state=self.random_state),
                'ml_m': RandomForestRegressor(n_estimators=200, min_samples_leaf=5,
                                              random_state=self.random_state)
            },
            'xgboost': {
                'ml_l': XGBRegressor(random_state=self.random_state, n_estimators=200,
                                     max_depth=3, learning_rate=0.05, n_jobs=1),
                'ml_m': XGBRegressor(random_state=self.random_state, n_estimators=200,
                                     max_depth=3, learning_rate=0.05, n_jobs=1)
            }
        }

    def _get_hyperparameter_grids(self) -> Dict[str, Dict[str, Any]]:
        """Get hyperparameter grids for learner tuning."""
        forest_grid = {
            'max_depth': [3, 6],
            'min_samples_leaf': [5, 10],
        }
        boosting_grid = {
            'n_estimators': [100, 300],
            'max_depth': [2, 4],
            'learning_rate': [0.01, 0.1],
        }
        return {
            'random_forest': {'ml_l': forest_grid, 'ml_m': forest_grid},
            'xgboost': {'ml_l': boosting_grid, 'ml_m': boosting_grid},
        }

    def estimate_effects(
        self,
        dml_data: DoubleMLData,
        methods: Optional[List[str]] = None,
        tune_hyperparameters: bool = False
    ) -> Dict[str, CausalEstimate]:
        """
        Estimate the exposure effect with each nuisance learner.

        Args:
            dml_data: Prepared DoubleML data
            methods: Learners to use. If None, uses all available learners
            tune_hyperparameters: Whether to grid-search learner hyperparameters

        Returns:
            Dictionary mapping learner names to causal estimates
        """
        learners = self._get_base_learners()
        if methods is None:
            methods = list(learners)
        unknown = [m for m in methods if m not in learners]
        if unknown:
            raise ValueError(f"Unknown Double ML learners: {unknown}")

        param_grids = self._get_hyperparameter_grids()
        folds = self.sample_splits(dml_data)
        estimates = {}

        for method in methods:
            logger.info(f"Estimating debiased effect using {method}")

            dml_model = dml.DoubleMLPLR(
                dml_data,
                ml_l=learners[method]['ml_l'],
                ml_m=learners[method]['ml_m'],
                n_folds=self.n_folds,
                draw_sample_splitting=False
            )
            dml_model.set_sample_splitting(folds)

            if tune_hyperparameters and method in param_grids:
                logger.info(f"Tuning hyperparameters for {method}")
                # Tuning folds are drawn from numpy's global generator
                with _scoped_numpy_seed(self.random_state):
                    dml_model.tune(param_grids[method], search_mode='grid_search')

            dml_model.fit(store_predictions=True)
            self.models[method] = dml_model

            summary = dml_model.summary
            estimates[method] = CausalEstimate(
                coefficient=float(summary['coef'].iloc[0]),
                std_error=float(summary['std err'].iloc[0]),
                ci_lower=float(summary['2.5 %'].iloc[0]),
                ci_upper=float(summary['97.5 %'].iloc[0]),
                p_value=float(summary['P>|t|'].iloc[0]),
                method=f"dml_{method}"
            )

            logger.info(f"{method} - Coefficient: {estimates[method].coefficient:.6f}, "
                        f"P-value: {estimates[method].p_value:.6f}")

        self.results = estimates
        return estimates

    def evaluate_learner_performance(self) -> Dict[str, Dict[str, float]]:
        """
        Cross-fitted RMSE of the nuisance learners.

        Returns:
            Dictionary with performance metrics for each method
        """
        performance = {}

        for method, model in self.models.items():
            metrics = model.evaluate_learners()
            performance[method] = {
                'ml_l_rmse': float(np.asarray(metrics['ml_l']).ravel()[0]),
                'ml_m_rmse': float(np.asarray(metrics['ml_m']).ravel()[0])
            }

        return performance
