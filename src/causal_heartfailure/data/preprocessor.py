"""
Data preprocessing module for causal inference analysis.
"""

import pandas as pd
import numpy as np
from typing import Dict, List, Optional, Sequence
import logging
from sklearn.preprocessing import StandardScaler

from .variables import Binary, Continuous, VariableSchema


logger = logging.getLogger(__name__)


class HeartFailurePreprocessor:
    """Prepares the heart-failure records for graph testing and effect estimation."""

    def __init__(
        self,
        duration_col: str = 'TIME',
        outcome_col: str = 'Event',
        log_columns: Optional[Sequence[str]] = None
    ):
        """
        Args:
            duration_col: Follow-up duration column, excluded from the DAG variables
            outcome_col: Event indicator column
            log_columns: Right-skewed measurements to log-transform before scaling
        """
        self.duration_col = duration_col
        self.outcome_col = outcome_col
        self.log_columns = list(log_columns) if log_columns else []
        self.scaler: Optional[StandardScaler] = None
        self.scaled_columns: List[str] = []

        self.continuous_columns = ['Age', 'EF', 'Sodium', 'Creatinine', 'Platelets', 'CPK']
        self.binary_columns = ['Sex', 'Smoking', 'Diabetes', 'BP', 'Anaemia', outcome_col]

    def schema(self) -> VariableSchema:
        """Declared statistical kind of every modeling variable."""
        kinds = {col: Continuous() for col in self.continuous_columns}
        kinds.update({col: Binary() for col in self.binary_columns})
        return VariableSchema(kinds)

    def modeling_variables(self, df: pd.DataFrame) -> List[str]:
        """Columns that become DAG nodes (everything except the duration)."""
        return [col for col in df.columns if col != self.duration_col]

    def preprocess(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Apply cleaning transformations to the loaded dataset.

        Args:
            df: Dataset returned by the loader

        Returns:
            Dataset with modeling columns in a fixed order
        """
        logger.info("Starting data preprocessing")
        df_processed = df.copy()

        for col in self.log_columns:
            if (df_processed[col] <= 0).any():
                raise ValueError(f"Cannot log-transform '{col}': non-positive values present")
            df_processed[col] = np.log(df_processed[col])

        ordered = [self.duration_col] + self.continuous_columns + self.binary_columns
        df_processed = df_processed[[col for col in ordered if col in df_processed.columns]]

        logger.info(f"Preprocessing complete. Final dataset shape: {df_processed.shape}")
        return df_processed

    def standardize(self, df: pd.DataFrame, columns: Optional[List[str]] = None) -> pd.DataFrame:
        """
        Center and scale continuous columns with a single fitted scaler.

        Every model downstream consumes this frame so coefficients are comparable.
        """
        columns = columns or [col for col in self.continuous_columns if col in df.columns]
        df_scaled = df.copy()
        self.scaler = StandardScaler()
        df_scaled[columns] = self.scaler.fit_transform(df[columns])
        self.scaled_columns = list(columns)
        logger.info(f"Standardized {len(columns)} continuous columns")
        return df_scaled

    def inverse_standardize(self, df: pd.DataFrame) -> pd.DataFrame:
        """Map standardized columns back to clinical units."""
        if self.scaler is None:
            raise RuntimeError("standardize() must be called before inverse_standardize()")
        df_original = df.copy()
        df_original[self.scaled_columns] = self.scaler.inverse_transform(df[self.scaled_columns])
        return df_original

    def discretize(self, df: pd.DataFrame, n_bins: int = 3, columns: Optional[List[str]] = None) -> pd.DataFrame:
        """
        Coarsen continuous columns into ordinal quantile buckets for structure learning.
        """
        columns = columns or [col for col in self.continuous_columns if col in df.columns]
        df_binned = df.copy()
        for col in columns:
            try:
                df_binned[col] = pd.qcut(df[col], q=n_bins, labels=False, duplicates='drop')
            except ValueError:
                df_binned[col] = pd.cut(df[col], bins=n_bins, labels=False)
            df_binned[col] = df_binned[col].fillna(0).astype(int)
        return df_binned

    def get_feature_groups(self, df: pd.DataFrame) -> Dict[str, List[str]]:
        """
        Categorize features into groups for analysis.

        Args:
            df: Preprocessed dataset

        Returns:
            Dictionary mapping feature group names to column lists
        """
        groups = {
            'demographics': ['Age', 'Sex'],
            'lifestyle': ['Smoking'],
            'comorbidities': ['Diabetes', 'BP', 'Anaemia'],
            'laboratory': ['Creatinine', 'Sodium', 'Platelets', 'CPK'],
            'cardiac_function': ['EF'],
            'outcome': [self.outcome_col, self.duration_col],
        }
        return {name: [col for col in cols if col in df.columns] for name, cols in groups.items()}
