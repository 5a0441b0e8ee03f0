"""
Data loading module for the heart-failure survival dataset.
"""

import pandas as pd
from pathlib import Path
from ucimlrepo import fetch_ucirepo
from typing import Dict, Optional, Union
import logging


logger = logging.getLogger(__name__)


class DataValidationError(ValueError):
    """Raised when the raw records violate the expected schema."""

    def __init__(self, column: str, message: str):
        self.column = column
        super().__init__(f"Column '{column}': {message}")


# Raw CSV column -> analysis name. 'Pletelets' is misspelled in the source file.
COLUMN_MAPPING = {
    'TIME': 'TIME',
    'Event': 'Event',
    'Gender': 'Sex',
    'Smoking': 'Smoking',
    'Diabetes': 'Diabetes',
    'BP': 'BP',
    'Anaemia': 'Anaemia',
    'Age': 'Age',
    'Ejection.Fraction': 'EF',
    'Sodium': 'Sodium',
    'Creatinine': 'Creatinine',
    'Pletelets': 'Platelets',
    'CPK': 'CPK',
}

# UCI "Heart failure clinical records" (id 519) column -> analysis name
UCI_COLUMN_MAPPING = {
    'time': 'TIME',
    'death_event': 'Event',
    'sex': 'Sex',
    'smoking': 'Smoking',
    'diabetes': 'Diabetes',
    'high_blood_pressure': 'BP',
    'anaemia': 'Anaemia',
    'age': 'Age',
    'ejection_fraction': 'EF',
    'serum_sodium': 'Sodium',
    'serum_creatinine': 'Creatinine',
    'platelets': 'Platelets',
    'creatinine_phosphokinase': 'CPK',
}

BINARY_COLUMNS = ['Event', 'Sex', 'Smoking', 'Diabetes', 'BP', 'Anaemia']
NUMERIC_COLUMNS = ['TIME', 'Age', 'EF', 'Sodium', 'Creatinine', 'Platelets', 'CPK']


class HeartFailureDataLoader:
    """Loads the heart-failure clinical records and normalizes the schema."""

    def __init__(self, dataset_id: int = 519):
        """
        Initialize the data loader.

        Args:
            dataset_id: UCI ML Repository dataset ID used when fetching remotely
        """
        self.dataset_id = dataset_id
        self._raw_data = None
        self._metadata = None

    def load_csv(self, path: Union[str, Path]) -> pd.DataFrame:
        """
        Load the comma-separated patient table.

        Args:
            path: Path to the CSV file

        Returns:
            Dataset with analysis column names and validated types
        """
        logger.info(f"Loading heart failure records from {path}")
        df = pd.read_csv(path)
        df = self._normalize(df, COLUMN_MAPPING)
        self._raw_data = df
        logger.info(f"Loaded dataset with {len(df)} patients and {len(df.columns)} columns")
        return df

    def load_uci(self) -> pd.DataFrame:
        """
        Load the dataset from the UCI ML Repository.

        Returns:
            Dataset with analysis column names and validated types
        """
        logger.info(f"Fetching heart failure dataset (ID: {self.dataset_id})")
        uci_data = fetch_ucirepo(id=self.dataset_id)
        self._metadata = uci_data.metadata

        df = pd.concat([uci_data.data.features, uci_data.data.targets], axis=1)
        df.columns = [col.lower() for col in df.columns]
        df = self._normalize(df, UCI_COLUMN_MAPPING)

        self._raw_data = df
        logger.info(f"Loaded dataset with {len(df)} patients and {len(df.columns)} columns")
        return df

    def _normalize(self, df: pd.DataFrame, mapping: Dict[str, str]) -> pd.DataFrame:
        """Rename, coerce and validate the raw columns."""
        missing = [col for col in mapping if col not in df.columns]
        if missing:
            message = "missing from input" if len(missing) == 1 else f"missing from input, along with {', '.join(missing[1:])}"
            raise DataValidationError(missing[0], message)

        df = df[list(mapping)].rename(columns=mapping)

        for col in NUMERIC_COLUMNS:
            try:
                df[col] = pd.to_numeric(df[col], errors='raise').astype(float)
            except (ValueError, TypeError) as e:
                raise DataValidationError(col, f"not numeric ({e})") from e

        for col in BINARY_COLUMNS:
            invalid = ~df[col].isin([0, 1])
            if invalid.any():
                raise DataValidationError(col, f"{int(invalid.sum())} rows are not 0/1")
            df[col] = df[col].astype(int)

        negative = df['TIME'] < 0
        if negative.any():
            raise DataValidationError('TIME', f"{int(negative.sum())} rows have a negative duration")

        nulls = df.isnull().sum()
        if nulls.sum() > 0:
            col = nulls.idxmax()
            raise DataValidationError(col, f"{int(nulls[col])} missing values")

        return df.reset_index(drop=True)

    def save_checkpoint(self, df: pd.DataFrame, path: Union[str, Path]) -> Path:
        """Serialize the cleaned dataset so later stages can skip the cutoff step."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_pickle(path)
        logger.info(f"Checkpoint with {len(df)} patients saved to {path}")
        return path

    @staticmethod
    def load_checkpoint(path: Union[str, Path]) -> pd.DataFrame:
        """Reload a dataset saved with ``save_checkpoint``."""
        df = pd.read_pickle(path)
        logger.info(f"Checkpoint with {len(df)} patients loaded from {path}")
        return df

    def get_metadata(self) -> Optional[dict]:
        """Get dataset metadata (only available after a UCI fetch)."""
        return self._metadata

    def describe_dataset(self) -> None:
        """Print dataset description and basic statistics."""
        if self._raw_data is None:
            logger.error("No data loaded. Call load_csv() or load_uci() first.")
            return

        print("Dataset Overview:")
        print("=" * 50)
        print(f"Shape: {self._raw_data.shape}")
        print(f"Median follow-up: {self._raw_data['TIME'].median():.0f} days")

        print("\nEvent distribution:")
        event_dist = self._raw_data['Event'].value_counts(normalize=True)
        for category, proportion in event_dist.items():
            print(f"  {category}: {proportion:.3f}")
