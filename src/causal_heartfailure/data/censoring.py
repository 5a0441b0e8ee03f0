"""
Right-censoring cutoff selection.

Follow-up in the heart-failure cohort ends in batches: at a few dates a group of
patients is censored at once because the study stopped following them. The cutoff is
the day just before the first such jump in the cumulative censoring count. Patients
censored before it are dropped, everyone else is followed to an event or past the
cutoff.
"""

import math
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd


logger = logging.getLogger(__name__)


class AmbiguousCutoffError(ValueError):
    """Raised when no censoring jump reaches the detection threshold."""


@dataclass(frozen=True)
class CensoringPartition:
    """Patients split by status at a candidate cutoff time."""
    time: int
    censored: int
    deceased: int
    at_risk: int

    @property
    def total(self) -> int:
        return self.censored + self.deceased + self.at_risk


class CutoffSelector:
    """Chooses the censoring cutoff from the empirical censoring curve."""

    def __init__(
        self,
        duration_col: str = 'TIME',
        event_col: str = 'Event',
        time_range: Tuple[int, int] = (0, 200),
        min_jump: Optional[int] = None
    ):
        """
        Args:
            duration_col: Follow-up duration column
            event_col: Event indicator column
            time_range: Inclusive range of integer times to scan
            min_jump: Number of patients censored within one day that counts as a jump.
                Defaults to max(3, 2% of the cohort).
        """
        self.duration_col = duration_col
        self.event_col = event_col
        self.time_range = time_range
        self.min_jump = min_jump

    @staticmethod
    def partition_counts(durations: np.ndarray, events: np.ndarray, t: int) -> CensoringPartition:
        """Count censored-before-t, deceased-before-t and still-at-risk-at-t patients."""
        durations = np.asarray(durations, dtype=float)
        events = np.asarray(events).astype(bool)
        before = durations < t
        return CensoringPartition(
            time=int(t),
            censored=int(np.sum(before & ~events)),
            deceased=int(np.sum(before & events)),
            at_risk=int(np.sum(~before))
        )

    def censoring_curve(self, df: pd.DataFrame) -> pd.DataFrame:
        """Partition counts for every integer time in the scan range."""
        durations = df[self.duration_col].to_numpy()
        events = df[self.event_col].to_numpy()
        start, stop = self.time_range

        rows = [self.partition_counts(durations, events, t) for t in range(start, stop + 1)]
        curve = pd.DataFrame(
            [(p.time, p.censored, p.deceased, p.at_risk) for p in rows],
            columns=['time', 'censored', 'deceased', 'at_risk']
        ).set_index('time')
        return curve

    def jump_threshold(self, n_patients: int) -> int:
        if self.min_jump is not None:
            return self.min_jump
        return max(3, math.ceil(0.02 * n_patients))

    def select_cutoff(self, curve: pd.DataFrame, n_patients: Optional[int] = None) -> int:
        """
        Return the first time whose next-day censoring increment reaches the threshold.

        Args:
            curve: Output of ``censoring_curve``
            n_patients: Cohort size used for the default threshold

        Returns:
            The cutoff time t; censored(t + 1) - censored(t) >= threshold.
        """
        if n_patients is None:
            n_patients = int(curve.iloc[0][['censored', 'deceased', 'at_risk']].sum())
        threshold = self.jump_threshold(n_patients)

        increments = curve['censored'].diff().shift(-1)
        jumps = increments[increments >= threshold]
        if jumps.empty:
            raise AmbiguousCutoffError(
                f"No censoring jump of at least {threshold} patients between "
                f"t={curve.index.min()} and t={curve.index.max()}; pass an explicit cutoff"
            )

        cutoff = int(jumps.index[0])
        logger.info(f"Selected censoring cutoff t={cutoff} "
                    f"({int(jumps.iloc[0])} patients censored at t={cutoff}, threshold {threshold})")
        return cutoff

    def apply_cutoff(self, df: pd.DataFrame, cutoff: int) -> pd.DataFrame:
        """Drop patients censored before the cutoff."""
        censored_early = (df[self.duration_col] < cutoff) & (df[self.event_col] == 0)
        logger.info(f"Dropping {int(censored_early.sum())} patients censored before t={cutoff}")
        return df.loc[~censored_early].reset_index(drop=True)

    def fit_transform(self, df: pd.DataFrame, cutoff: Optional[int] = None) -> Tuple[pd.DataFrame, int]:
        """Select (unless given) and apply the cutoff."""
        if cutoff is None:
            curve = self.censoring_curve(df)
            cutoff = self.select_cutoff(curve, n_patients=len(df))
        else:
            logger.info(f"Using operator-supplied censoring cutoff t={cutoff}")
        return self.apply_cutoff(df, cutoff), cutoff
