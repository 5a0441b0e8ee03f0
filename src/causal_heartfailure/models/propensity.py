"""
Propensity-score analyses of an exposure's effect on survival.

The score is the conditional density (continuous exposure) or probability (binary
exposure) of the observed exposure value given the adjustment covariates. It is used
three ways: as an extra regressor, for 1:1 matching, and for stabilized inverse
probability weights.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from sklearn.neighbors import NearestNeighbors

from .causal_models import CausalEstimate
from .survival import SurvivalAnalyzer


logger = logging.getLogger(__name__)


@dataclass
class PropensityModel:
    """Fitted nuisance regression of the exposure on its adjustment covariates."""
    exposure: str
    covariates: List[str]
    is_binary: bool
    result: object = field(repr=False)
    sigma: Optional[float] = None

    def _design(self, df: pd.DataFrame) -> pd.DataFrame:
        return sm.add_constant(df[self.covariates].astype(float), has_constant='add')

    def predict_mean(self, df: pd.DataFrame) -> np.ndarray:
        """Conditional mean of the exposure (a probability for a binary exposure)."""
        return np.asarray(self.result.predict(self._design(df)), dtype=float)


@dataclass
class WeightDiagnostics:
    """Stabilized weights with degeneracy flags."""
    weights: pd.Series
    degenerate: pd.Series
    extreme: pd.Series

    @property
    def usable(self) -> pd.Series:
        return ~self.degenerate

    def summary(self) -> Dict[str, float]:
        w = self.weights[self.usable]
        return {
            'n_degenerate': int(self.degenerate.sum()),
            'n_extreme': int(self.extreme.sum()),
            'min': float(w.min()) if len(w) else np.nan,
            'max': float(w.max()) if len(w) else np.nan,
            'mean': float(w.mean()) if len(w) else np.nan,
        }


@dataclass
class MatchResult:
    matched: pd.DataFrame
    pairs: List[tuple]
    n_treated: int
    n_unmatched: int


@dataclass
class MatchingAnalysis:
    treatment: str
    match: MatchResult
    balance_before: pd.DataFrame
    balance_after: pd.DataFrame
    estimate: CausalEstimate


class PropensityScoreAnalyzer:
    """Propensity-score adjustment, matching and weighting for one exposure."""

    def __init__(
        self,
        duration_col: str = 'TIME',
        event_col: str = 'Event',
        caliper: Optional[float] = 0.2,
        max_weight: float = 20.0,
        random_state: int = 42
    ):
        """
        Args:
            duration_col: Follow-up duration column
            event_col: Event indicator column
            caliper: Maximum match distance in standard deviations of the logit score
            max_weight: Finite weights above this bound are flagged as extreme
            random_state: Seed for the order in which treated patients are matched
        """
        self.duration_col = duration_col
        self.event_col = event_col
        self.caliper = caliper
        self.max_weight = max_weight
        self.random_state = random_state
        self.survival = SurvivalAnalyzer(duration_col=duration_col, event_col=event_col)

    @staticmethod
    def _is_binary(values: pd.Series) -> bool:
        return set(pd.unique(values.dropna())).issubset({0, 1})

    def fit_nuisance(self, df: pd.DataFrame, exposure: str, covariates: Sequence[str]) -> PropensityModel:
        """
        Regress the exposure on the covariates: logit if binary, OLS otherwise.
        """
        covariates = [c for c in covariates if c != exposure]
        if not covariates:
            raise ValueError(f"Propensity model for '{exposure}' needs at least one covariate")

        X = sm.add_constant(df[covariates].astype(float), has_constant='add')
        y = df[exposure].astype(float)
        is_binary = self._is_binary(df[exposure])

        try:
            if is_binary:
                result = sm.Logit(y, X).fit(disp=0)
                sigma = None
            else:
                result = sm.OLS(y, X).fit()
                sigma = float(np.sqrt(result.scale))
        except Exception:
            logger.error(f"Propensity model for '{exposure}' on {covariates} failed")
            raise

        logger.info(f"Fitted {'logit' if is_binary else 'linear'} propensity model for "
                    f"'{exposure}' on {covariates}")
        return PropensityModel(exposure, covariates, is_binary, result, sigma)

    def propensity_scores(self, model: PropensityModel, df: pd.DataFrame) -> pd.Series:
        """Density (continuous) or probability (binary) of each patient's observed exposure."""
        mean = model.predict_mean(df)
        observed = df[model.exposure].to_numpy(dtype=float)
        if model.is_binary:
            scores = np.where(observed == 1, mean, 1 - mean)
        else:
            scores = stats.norm.pdf(observed, loc=mean, scale=model.sigma)
        return pd.Series(scores, index=df.index, name='propensity_score')

    def marginal_density(self, df: pd.DataFrame, exposure: str) -> pd.Series:
        """Numerator of the stabilized weight: the exposure's marginal density or probability."""
        observed = df[exposure].to_numpy(dtype=float)
        if self._is_binary(df[exposure]):
            p = observed.mean()
            values = np.where(observed == 1, p, 1 - p)
        else:
            values = stats.norm.pdf(observed, loc=observed.mean(), scale=observed.std(ddof=1))
        return pd.Series(values, index=df.index, name='marginal_density')

    # -- 1. score as a regressor ------------------------------------------------

    def adjusted_by_score(self, df: pd.DataFrame, exposure: str, scores: pd.Series) -> CausalEstimate:
        """Cox model of the outcome on the exposure and the propensity score."""
        data = df.copy()
        data['propensity_score'] = scores
        estimate, _ = self.survival.exposure_effect(
            data, exposure, ['propensity_score'], method='cox_score_adjusted'
        )
        return estimate

    # -- 2. matching -----------------------------------------------------------

    @staticmethod
    def _logit(p: np.ndarray) -> np.ndarray:
        p = np.clip(p, 1e-12, 1 - 1e-12)
        return np.log(p / (1 - p))

    def match(
        self,
        df: pd.DataFrame,
        treatment: str,
        probability: pd.Series,
        replace: bool = False
    ) -> MatchResult:
        """
        1:1 nearest-neighbour matching on the logit of the treatment probability.

        Args:
            df: Dataset with a 0/1 treatment column
            treatment: Treatment column
            probability: P(treatment = 1 | covariates) per patient
            replace: Allow a control to be matched to several treated patients

        Returns:
            Matched patients (treated then their controls) and the index pairs

        Raises:
            ValueError: If no treated patient has a control within the caliper
        """
        score = pd.Series(self._logit(probability.to_numpy(dtype=float)), index=df.index)
        treated_idx = df.index[df[treatment] == 1].to_numpy()
        control_idx = df.index[df[treatment] == 0].to_numpy()
        if len(treated_idx) == 0 or len(control_idx) == 0:
            raise ValueError(f"Matching on '{treatment}' needs both treated and control patients")

        max_distance = np.inf
        if self.caliper is not None:
            max_distance = self.caliper * float(score.std(ddof=1))

        pairs = []
        if replace:
            nn = NearestNeighbors(n_neighbors=1).fit(score.loc[control_idx].to_numpy().reshape(-1, 1))
            distances, indices = nn.kneighbors(score.loc[treated_idx].to_numpy().reshape(-1, 1))
            for t, d, i in zip(treated_idx, distances[:, 0], indices[:, 0]):
                if d <= max_distance:
                    pairs.append((t, control_idx[i]))
        else:
            rng = np.random.default_rng(self.random_state)
            available = dict.fromkeys(control_idx.tolist())
            for t in rng.permutation(treated_idx):
                if not available:
                    break
                candidates = np.fromiter(available, dtype=control_idx.dtype)
                distances = np.abs(score.loc[candidates].to_numpy() - score.loc[t])
                best = int(np.argmin(distances))
                if distances[best] <= max_distance:
                    c = candidates[best]
                    pairs.append((t, c))
                    del available[c]

        if not pairs:
            raise ValueError(
                f"Matching on '{treatment}' found no control within the caliper "
                f"(caliper={self.caliper} SD of the score logit) for any of {len(treated_idx)} treated patients"
            )

        matched_rows = [t for t, _ in pairs] + [c for _, c in pairs]
        matched = df.loc[matched_rows].reset_index(drop=True)
        n_unmatched = len(treated_idx) - len(pairs)
        logger.info(f"Matched {len(pairs)} of {len(treated_idx)} treated patients "
                    f"(caliper={self.caliper}, replace={replace})")
        return MatchResult(matched, pairs, len(treated_idx), n_unmatched)

    @staticmethod
    def balance_table(df: pd.DataFrame, treatment: str, covariates: Sequence[str]) -> pd.DataFrame:
        """
        Standardized mean differences with approximate 95% confidence intervals.
        """
        treated = df[df[treatment] == 1]
        control = df[df[treatment] == 0]
        n1, n0 = len(treated), len(control)
        if n1 == 0 or n0 == 0:
            raise ValueError(f"Balance on '{treatment}' needs both groups (treated={n1}, control={n0})")
        z = stats.norm.ppf(0.975)

        rows = []
        for covariate in covariates:
            t, c = treated[covariate].astype(float), control[covariate].astype(float)
            pooled = np.sqrt((t.var() + c.var()) / 2)
            smd = (t.mean() - c.mean()) / pooled if pooled > 0 else 0.0
            se = np.sqrt((n1 + n0) / (n1 * n0) + smd ** 2 / (2 * (n1 + n0)))
            rows.append({
                'covariate': covariate,
                'treated_mean': t.mean(),
                'control_mean': c.mean(),
                'standardized_mean_diff': smd,
                'ci_lower': smd - z * se,
                'ci_upper': smd + z * se,
            })
        return pd.DataFrame(rows)

    def matching_analysis(
        self,
        df: pd.DataFrame,
        exposure: str,
        covariates: Sequence[str],
        threshold: Optional[float] = None,
        replace: bool = False
    ) -> MatchingAnalysis:
        """
        Match high- to low-exposure patients and refit the outcome model on the matched set.

        A continuous exposure is dichotomized at ``threshold`` (default: its median).
        """
        data = df.copy()
        if self._is_binary(data[exposure]):
            treatment = exposure
        else:
            threshold = float(data[exposure].median()) if threshold is None else threshold
            treatment = f"{exposure}_high"
            data[treatment] = (data[exposure] > threshold).astype(int)
            logger.info(f"Dichotomized '{exposure}' at {threshold:.3f} for matching")

        covariates = [c for c in covariates if c not in (exposure, treatment)]
        model = self.fit_nuisance(data, treatment, covariates)
        probability = pd.Series(model.predict_mean(data), index=data.index)

        result = self.match(data, treatment, probability, replace=replace)
        balance_before = self.balance_table(data, treatment, covariates)
        balance_after = self.balance_table(result.matched, treatment, covariates)

        estimate, _ = self.survival.exposure_effect(result.matched, treatment, method='cox_matched')
        return MatchingAnalysis(treatment, result, balance_before, balance_after, estimate)

    # -- 3. inverse probability weighting -----------------------------------------

    def stabilized_weights(self, df: pd.DataFrame, exposure: str, scores: pd.Series) -> WeightDiagnostics:
        """
        Marginal exposure density divided by the propensity score.

        Zero, negative or non-finite weights are flagged as degenerate; finite weights
        above ``max_weight`` are flagged as extreme. Both are logged.
        """
        numerator = self.marginal_density(df, exposure)
        with np.errstate(divide='ignore', invalid='ignore'):
            weights = numerator / scores
        weights.name = 'weight'

        degenerate = ~np.isfinite(weights) | (weights <= 0)
        extreme = ~degenerate & (weights > self.max_weight)

        if degenerate.any():
            logger.warning(f"{int(degenerate.sum())} patients have zero or non-finite weights for "
                           f"'{exposure}' and are excluded from the weighted fit")
        if extreme.any():
            logger.warning(f"{int(extreme.sum())} patients have weights above {self.max_weight} "
                           f"(max {weights[extreme].max():.1f}) for '{exposure}'")
        return WeightDiagnostics(weights, degenerate, extreme)

    def weighted_fit(self, df: pd.DataFrame, exposure: str, diagnostics: WeightDiagnostics) -> CausalEstimate:
        """Weighted Cox model of the outcome on the exposure, robust variance."""
        usable = diagnostics.usable
        estimate, _ = self.survival.exposure_effect(
            df.loc[usable], exposure,
            weights=diagnostics.weights[usable].to_numpy(),
            method='cox_ipw'
        )
        return estimate
