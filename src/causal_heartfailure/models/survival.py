"""
Proportional-hazards models for the heart-failure outcome.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter, KaplanMeierFitter
from lifelines.statistics import proportional_hazard_test
from scipy import stats

from .causal_models import CausalEstimate


logger = logging.getLogger(__name__)


@dataclass
class AdjustmentComparison:
    """Unadjusted versus back-door adjusted hazard estimates for one exposure."""
    exposure: str
    adjustment_set: List[str]
    unadjusted: CausalEstimate
    adjusted: CausalEstimate
    models: Dict[str, CoxPHFitter] = field(default_factory=dict, repr=False)

    @property
    def difference(self) -> float:
        return self.unadjusted.coefficient - self.adjusted.coefficient

    @property
    def differs_materially(self) -> bool:
        """True when the estimates differ by more than both standard errors."""
        return abs(self.difference) > max(self.unadjusted.std_error, self.adjusted.std_error)

    def to_dict(self) -> Dict:
        return {
            'exposure': self.exposure,
            'adjustment_set': list(self.adjustment_set),
            'unadjusted': self.unadjusted.to_dict(),
            'adjusted': self.adjusted.to_dict(),
            'unadjusted_hazard_ratio': self.unadjusted.hazard_ratio,
            'adjusted_hazard_ratio': self.adjusted.hazard_ratio,
            'difference': self.difference,
            'differs_materially': self.differs_materially,
        }


class SurvivalAnalyzer:
    """Fits Cox proportional-hazards models on the (duration, event) pair."""

    def __init__(self, duration_col: str = 'TIME', event_col: str = 'Event', penalizer: float = 0.0):
        """
        Args:
            duration_col: Follow-up duration column
            event_col: Event indicator column
            penalizer: Ridge penalty passed to lifelines (0 for the plain partial likelihood)
        """
        self.duration_col = duration_col
        self.event_col = event_col
        self.penalizer = penalizer

    def fit_cox(
        self,
        df: pd.DataFrame,
        covariates: Sequence[str],
        weights: Optional[np.ndarray] = None
    ) -> CoxPHFitter:
        """
        Fit a Cox model of the outcome on ``covariates``.

        Args:
            df: Dataset containing the duration, event and covariate columns
            covariates: Regressors
            weights: Optional per-patient weights; the fit then uses robust variance

        Returns:
            Fitted lifelines model
        """
        covariates = list(covariates)
        if not covariates:
            raise ValueError("Cox model needs at least one covariate")

        data = df[[self.duration_col, self.event_col] + covariates].copy()
        cph = CoxPHFitter(penalizer=self.penalizer)

        try:
            if weights is None:
                cph.fit(data, duration_col=self.duration_col, event_col=self.event_col)
            else:
                data['_weight'] = np.asarray(weights, dtype=float)
                cph.fit(data, duration_col=self.duration_col, event_col=self.event_col,
                        weights_col='_weight', robust=True)
        except Exception:
            logger.error(f"Cox fit failed for covariates {covariates} (n={len(data)})")
            raise

        logger.info(f"Fitted Cox model on {covariates} (n={len(data)}, "
                    f"events={int(data[self.event_col].sum())})")
        return cph

    @staticmethod
    def estimates(model: CoxPHFitter, method: str = 'cox') -> Dict[str, CausalEstimate]:
        """Per-covariate log hazard ratios with Wald 95% intervals."""
        z = stats.norm.ppf(0.975)
        summary = model.summary
        return {
            covariate: CausalEstimate(
                coefficient=float(row['coef']),
                std_error=float(row['se(coef)']),
                ci_lower=float(row['coef'] - z * row['se(coef)']),
                ci_upper=float(row['coef'] + z * row['se(coef)']),
                p_value=float(row['p']),
                method=method
            )
            for covariate, row in summary.iterrows()
        }

    def exposure_effect(
        self,
        df: pd.DataFrame,
        exposure: str,
        covariates: Sequence[str] = (),
        weights: Optional[np.ndarray] = None,
        method: str = 'cox'
    ) -> Tuple[CausalEstimate, CoxPHFitter]:
        """Log hazard ratio of the exposure in a model with ``covariates``."""
        regressors = [exposure] + [c for c in covariates if c != exposure]
        model = self.fit_cox(df, regressors, weights=weights)
        return self.estimates(model, method)[exposure], model

    def compare_adjustment(
        self,
        df: pd.DataFrame,
        exposure: str,
        adjustment_set: Sequence[str]
    ) -> AdjustmentComparison:
        """
        Fit the exposure alone and with the adjustment set on the same patients.
        """
        adjustment = [c for c in adjustment_set if c != exposure]
        unadjusted, model_u = self.exposure_effect(df, exposure, method='cox_unadjusted')
        if adjustment:
            adjusted, model_a = self.exposure_effect(df, exposure, adjustment, method='cox_adjusted')
        else:
            logger.warning(f"Empty adjustment set for {exposure}; adjusted model equals unadjusted")
            adjusted = replace(unadjusted, method='cox_adjusted')
            model_a = model_u

        comparison = AdjustmentComparison(
            exposure=exposure,
            adjustment_set=adjustment,
            unadjusted=unadjusted,
            adjusted=adjusted,
            models={'unadjusted': model_u, 'adjusted': model_a}
        )
        logger.info(f"{exposure}: unadjusted HR={unadjusted.hazard_ratio:.3f}, "
                    f"adjusted HR={adjusted.hazard_ratio:.3f} (adjusting for {adjustment})")
        return comparison

    def predict_survival_curves(
        self,
        model: CoxPHFitter,
        df: pd.DataFrame,
        exposure: str,
        quantiles: Sequence[float] = (0.1, 0.5, 0.9),
        times: Optional[Sequence[float]] = None
    ) -> pd.DataFrame:
        """
        Predicted survival at exposure quantiles, other covariates held at their means.

        Returns:
            DataFrame indexed by time with one column per quantile, labelled ``q50`` etc.
        """
        covariates = list(model.params_.index)
        means = df[covariates].mean()
        values = df[exposure].quantile(list(quantiles))

        profiles = pd.DataFrame([means] * len(quantiles)).reset_index(drop=True)
        profiles[exposure] = values.to_numpy()
        profiles.index = [f"q{int(round(q * 100))}" for q in quantiles]

        curves = model.predict_survival_function(profiles, times=times)
        curves.columns = profiles.index
        curves.attrs['exposure_values'] = dict(zip(profiles.index, values.to_numpy()))
        return curves

    def kaplan_meier(
        self,
        df: pd.DataFrame,
        group_col: Optional[str] = None,
        threshold: Optional[float] = None
    ) -> Dict[str, KaplanMeierFitter]:
        """
        Kaplan-Meier estimates for the cohort, or per group.

        A continuous ``group_col`` is split at ``threshold`` (default: its median).
        """
        durations = df[self.duration_col]
        events = df[self.event_col]

        if group_col is None:
            kmf = KaplanMeierFitter()
            kmf.fit(durations, events, label='All patients')
            return {'All patients': kmf}

        groups = df[group_col]
        if groups.nunique() > 2:
            threshold = groups.median() if threshold is None else threshold
            groups = (groups > threshold).map({True: f"{group_col} > {threshold:.2f}",
                                               False: f"{group_col} <= {threshold:.2f}"})

        fitters = {}
        for label in sorted(groups.unique(), key=str):
            mask = groups == label
            kmf = KaplanMeierFitter()
            kmf.fit(durations[mask], events[mask], label=str(label))
            fitters[str(label)] = kmf
        return fitters

    def check_proportional_hazards(self, model: CoxPHFitter, df: pd.DataFrame) -> pd.DataFrame:
        """Schoenfeld-residual test of the proportional-hazards assumption per covariate."""
        covariates = list(model.params_.index)
        data = df[[self.duration_col, self.event_col] + covariates]
        result = proportional_hazard_test(model, data, time_transform='rank')
        summary = result.summary.copy()
        violated = summary.index[summary['p'] < 0.05].tolist()
        if violated:
            logger.warning(f"Proportional-hazards assumption questionable for {violated}")
        return summary
