"""
Unit tests for data loading, preprocessing and cutoff selection.
"""

import unittest
import tempfile
import pandas as pd
import numpy as np
from unittest.mock import Mock, patch
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from causal_heartfailure.config import AnalysisConfig
from causal_heartfailure.data.loader import HeartFailureDataLoader, DataValidationError
from causal_heartfailure.data.preprocessor import HeartFailurePreprocessor
from causal_heartfailure.data.censoring import (
    CutoffSelector, AmbiguousCutoffError, CensoringPartition
)
from causal_heartfailure.data.variables import (
    Binary, Continuous, OrdinalCategorical, VariableSchema
)
from causal_heartfailure.models.causal_models import CausalEstimate
from causal_heartfailure.utils.helpers import (
    describe_by_outcome, save_results, load_json, format_results_table
)


def make_raw_records(n=50, seed=0):
    """Synthetic records with the raw CSV header."""
    rng = np.random.default_rng(seed)
    return pd.DataFrame({
        'TIME': rng.integers(4, 285, n),
        'Event': rng.binomial(1, 0.3, n),
        'Gender': rng.binomial(1, 0.6, n),
        'Smoking': rng.binomial(1, 0.3, n),
        'Diabetes': rng.binomial(1, 0.4, n),
        'BP': rng.binomial(1, 0.35, n),
        'Anaemia': rng.binomial(1, 0.4, n),
        'Age': rng.integers(40, 95, n),
        'Ejection.Fraction': rng.integers(14, 80, n),
        'Sodium': rng.integers(113, 148, n),
        'Creatinine': rng.uniform(0.5, 9.4, n).round(2),
        'Pletelets': rng.uniform(25000, 850000, n).round(0),
        'CPK': rng.integers(23, 7861, n),
    })


class TestHeartFailureDataLoader(unittest.TestCase):
    """Test cases for HeartFailureDataLoader."""

    def setUp(self):
        """Set up test fixtures."""
        self.loader = HeartFailureDataLoader()
        self.tmpdir = tempfile.TemporaryDirectory()
        self.csv_path = Path(self.tmpdir.name) / "heart_failure.csv"

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_initialization(self):
        """Test loader initialization."""
        self.assertEqual(self.loader.dataset_id, 519)
        self.assertIsNone(self.loader._raw_data)
        self.assertIsNone(self.loader.get_metadata())

    def test_load_csv_renames_columns(self):
        """Raw headers are mapped to analysis names, including the misspelled platelets."""
        make_raw_records().to_csv(self.csv_path, index=False)

        df = self.loader.load_csv(self.csv_path)

        self.assertEqual(len(df), 50)
        for col in ['Sex', 'EF', 'Platelets', 'TIME', 'Event']:
            self.assertIn(col, df.columns)
        self.assertNotIn('Pletelets', df.columns)
        self.assertNotIn('Gender', df.columns)
        self.assertEqual(df['Event'].dtype, int)
        self.assertEqual(df['Age'].dtype, float)

    def test_invalid_binary_column(self):
        """A non 0/1 event flag raises and names the column."""
        raw = make_raw_records()
        raw.loc[3, 'Event'] = 2
        raw.to_csv(self.csv_path, index=False)

        with self.assertRaises(DataValidationError) as ctx:
            self.loader.load_csv(self.csv_path)
        self.assertEqual(ctx.exception.column, 'Event')

    def test_missing_column(self):
        """A missing raw column raises."""
        make_raw_records().drop(columns=['CPK']).to_csv(self.csv_path, index=False)

        with self.assertRaises(DataValidationError) as ctx:
            self.loader.load_csv(self.csv_path)
        self.assertEqual(ctx.exception.column, 'CPK')
        self.assertEqual(str(ctx.exception), "Column 'CPK': missing from input")

    def test_several_missing_columns_named_together(self):
        make_raw_records().drop(columns=['Sodium', 'CPK']).to_csv(self.csv_path, index=False)

        with self.assertRaises(DataValidationError) as ctx:
            self.loader.load_csv(self.csv_path)
        self.assertEqual(str(ctx.exception), "Column 'Sodium': missing from input, along with CPK")

    def test_negative_duration(self):
        """Negative follow-up time is rejected."""
        raw = make_raw_records()
        raw.loc[0, 'TIME'] = -1
        raw.to_csv(self.csv_path, index=False)

        with self.assertRaises(DataValidationError):
            self.loader.load_csv(self.csv_path)

    def test_non_numeric_measurement(self):
        """Unparseable measurements are rejected."""
        raw = make_raw_records().astype({'Sodium': object})
        raw.loc[5, 'Sodium'] = 'high'
        raw.to_csv(self.csv_path, index=False)

        with self.assertRaises(DataValidationError) as ctx:
            self.loader.load_csv(self.csv_path)
        self.assertEqual(ctx.exception.column, 'Sodium')

    @patch('causal_heartfailure.data.loader.fetch_ucirepo')
    def test_load_uci(self, mock_fetch):
        """Test loading from the UCI repository."""
        raw = make_raw_records(n=10)
        mock_features = pd.DataFrame({
            'age': raw['Age'],
            'anaemia': raw['Anaemia'],
            'creatinine_phosphokinase': raw['CPK'],
            'diabetes': raw['Diabetes'],
            'ejection_fraction': raw['Ejection.Fraction'],
            'high_blood_pressure': raw['BP'],
            'platelets': raw['Pletelets'],
            'serum_creatinine': raw['Creatinine'],
            'serum_sodium': raw['Sodium'],
            'sex': raw['Gender'],
            'smoking': raw['Smoking'],
            'time': raw['TIME'],
        })
        mock_targets = pd.DataFrame({'DEATH_EVENT': raw['Event']})

        mock_data = Mock()
        mock_data.data.features = mock_features
        mock_data.data.targets = mock_targets
        mock_data.metadata = {'name': 'Heart Failure Clinical Records'}
        mock_fetch.return_value = mock_data

        df = self.loader.load_uci()

        mock_fetch.assert_called_once_with(id=519)
        self.assertEqual(len(df), 10)
        self.assertIn('Event', df.columns)
        self.assertIn('Platelets', df.columns)
        self.assertEqual(self.loader.get_metadata()['name'], 'Heart Failure Clinical Records')

    def test_checkpoint_round_trip(self):
        """A saved checkpoint reloads unchanged."""
        make_raw_records().to_csv(self.csv_path, index=False)
        df = self.loader.load_csv(self.csv_path)

        path = self.loader.save_checkpoint(df, Path(self.tmpdir.name) / "processed" / "clean.pkl")
        reloaded = HeartFailureDataLoader.load_checkpoint(path)

        pd.testing.assert_frame_equal(df, reloaded)


class TestHeartFailurePreprocessor(unittest.TestCase):
    """Test cases for HeartFailurePreprocessor."""

    def setUp(self):
        """Set up test fixtures."""
        self.preprocessor = HeartFailurePreprocessor()
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "records.csv"
        make_raw_records(n=80, seed=1).to_csv(path, index=False)
        self.data = HeartFailureDataLoader().load_csv(path)

    def test_preprocess_orders_columns(self):
        """Duration first, then continuous, then binary columns."""
        processed = self.preprocessor.preprocess(self.data)

        self.assertEqual(processed.columns[0], 'TIME')
        self.assertEqual(list(processed.columns[1:7]), self.preprocessor.continuous_columns)
        self.assertEqual(processed.columns[-1], 'Event')

    def test_modeling_variables_exclude_duration(self):
        """TIME is kept in the frame but is not a graph variable."""
        processed = self.preprocessor.preprocess(self.data)
        variables = self.preprocessor.modeling_variables(processed)

        self.assertNotIn('TIME', variables)
        self.assertIn('Event', variables)
        self.assertEqual(len(variables), 12)

    def test_log_transform_rejects_non_positive(self):
        """Log transform requires positive values."""
        data = self.data.copy()
        data.loc[0, 'CPK'] = 0
        preprocessor = HeartFailurePreprocessor(log_columns=['CPK'])

        with self.assertRaises(ValueError):
            preprocessor.preprocess(data)

    def test_standardize(self):
        """Continuous columns are centered and scaled; binaries and TIME are untouched."""
        processed = self.preprocessor.preprocess(self.data)
        scaled = self.preprocessor.standardize(processed)

        for col in self.preprocessor.continuous_columns:
            self.assertAlmostEqual(scaled[col].mean(), 0.0, places=10)
            self.assertAlmostEqual(scaled[col].std(ddof=0), 1.0, places=10)
        pd.testing.assert_series_equal(scaled['TIME'], processed['TIME'])
        pd.testing.assert_series_equal(scaled['Event'], processed['Event'])

        restored = self.preprocessor.inverse_standardize(scaled)
        np.testing.assert_allclose(restored['Creatinine'], processed['Creatinine'])

    def test_inverse_standardize_requires_fit(self):
        with self.assertRaises(RuntimeError):
            self.preprocessor.inverse_standardize(self.data)

    def test_discretize(self):
        """Continuous columns become integer quantile buckets."""
        processed = self.preprocessor.preprocess(self.data)
        binned = self.preprocessor.discretize(processed, n_bins=3)

        for col in self.preprocessor.continuous_columns:
            self.assertTrue(set(binned[col].unique()).issubset({0, 1, 2}))
        pd.testing.assert_series_equal(binned['Smoking'], processed['Smoking'])

    def test_schema(self):
        """Declared kinds follow the column groups."""
        schema = self.preprocessor.schema()

        self.assertEqual(schema['Age'], Continuous())
        self.assertEqual(schema['Event'], Binary())
        self.assertEqual(set(schema.continuous()), set(self.preprocessor.continuous_columns))

    def test_feature_groups(self):
        groups = self.preprocessor.get_feature_groups(self.data)

        self.assertEqual(groups['laboratory'], ['Creatinine', 'Sodium', 'Platelets', 'CPK'])
        self.assertIn('Event', groups['outcome'])


class TestVariableSchema(unittest.TestCase):
    """Test cases for variable kinds and the design matrix."""

    def test_ordinal_encoding_drops_lowest_level(self):
        encoded = OrdinalCategorical().encode(pd.Series([0, 1, 2, 2, 1]))

        self.assertEqual(encoded.shape, (5, 2))
        np.testing.assert_array_equal(encoded[:, 0], [0, 1, 0, 0, 1])
        np.testing.assert_array_equal(encoded[:, 1], [0, 0, 1, 1, 0])

    def test_design_matrix(self):
        schema = VariableSchema({'a': Continuous(), 'b': Binary(), 'c': OrdinalCategorical()})
        df = pd.DataFrame({'a': [0.5, 1.5, 2.5], 'b': [0, 1, 1], 'c': [0, 1, 2]})

        design = schema.design_matrix(df, ['a', 'b', 'c'])

        self.assertEqual(design.shape, (3, 5))
        np.testing.assert_array_equal(design[:, 0], [1, 1, 1])

    def test_unknown_variable(self):
        with self.assertRaises(KeyError):
            VariableSchema({})['missing']

    def test_infer(self):
        df = pd.DataFrame({
            'flag': [0, 1, 0, 1, 1, 0],
            'level': [0, 1, 2, 0, 1, 2],
            'value': [0.1, 2.3, 4.5, 1.2, 3.3, 0.7],
        })
        schema = VariableSchema.infer(df)

        self.assertEqual(schema['flag'], Binary())
        self.assertEqual(schema['level'], OrdinalCategorical())
        self.assertEqual(schema['value'], Continuous())


def make_censoring_cohort(batch_time=50, batch_size=8):
    """100 patients: scattered early censoring, one censoring batch, later follow-up."""
    scattered = [5, 15, 25, 35, 45]
    deaths = list(range(2, 42, 2))
    survivors = list(range(101, 101 + 100 - len(scattered) - batch_size - len(deaths)))
    durations = scattered + [batch_time] * batch_size + deaths + survivors
    events = [0] * len(scattered) + [0] * batch_size + [1] * len(deaths) + [0] * len(survivors)
    return pd.DataFrame({'TIME': durations, 'Event': events})


class TestCutoffSelector(unittest.TestCase):
    """Test cases for the censoring cutoff."""

    def setUp(self):
        self.selector = CutoffSelector()

    def test_partition_sums_to_cohort(self):
        """Censored, deceased and at-risk counts always sum to n."""
        rng = np.random.default_rng(7)
        durations = rng.integers(0, 250, 120)
        events = rng.binomial(1, 0.3, 120)

        for t in [0, 1, 17, 73, 150, 200, 300]:
            partition = CutoffSelector.partition_counts(durations, events, t)
            self.assertIsInstance(partition, CensoringPartition)
            self.assertEqual(partition.total, 120)

    def test_partition_counts(self):
        durations = np.array([1, 2, 3, 10])
        events = np.array([0, 1, 0, 1])

        partition = CutoffSelector.partition_counts(durations, events, 3)

        self.assertEqual((partition.censored, partition.deceased, partition.at_risk), (1, 1, 2))

    def test_curve_covers_range(self):
        curve = self.selector.censoring_curve(make_censoring_cohort())

        self.assertEqual(curve.index.min(), 0)
        self.assertEqual(curve.index.max(), 200)
        self.assertTrue((curve.sum(axis=1) == 100).all())

    def test_injected_jump_is_detected(self):
        """A censoring batch at day T yields cutoff T."""
        for batch_time in (50, 73, 90):
            cohort = make_censoring_cohort(batch_time=batch_time)
            curve = self.selector.censoring_curve(cohort)
            self.assertEqual(self.selector.select_cutoff(curve, n_patients=len(cohort)), batch_time)

    def test_default_threshold(self):
        self.assertEqual(self.selector.jump_threshold(100), 3)
        self.assertEqual(self.selector.jump_threshold(299), 6)
        self.assertEqual(CutoffSelector(min_jump=10).jump_threshold(299), 10)

    def test_no_jump_raises(self):
        """Without a qualifying jump the cutoff is ambiguous."""
        cohort = make_censoring_cohort(batch_size=2)
        curve = self.selector.censoring_curve(cohort)

        with self.assertRaises(AmbiguousCutoffError):
            self.selector.select_cutoff(curve, n_patients=len(cohort))

    def test_apply_cutoff(self):
        """Only patients censored strictly before the cutoff are dropped."""
        cohort = make_censoring_cohort()
        filtered = self.selector.apply_cutoff(cohort, 50)

        self.assertEqual(len(filtered), 95)
        self.assertFalse(((filtered['TIME'] < 50) & (filtered['Event'] == 0)).any())
        self.assertEqual(int((filtered['TIME'] == 50).sum()), 8)

    def test_operator_override(self):
        """An explicit cutoff bypasses detection."""
        cohort = make_censoring_cohort(batch_size=2)
        filtered, cutoff = self.selector.fit_transform(cohort, cutoff=30)

        self.assertEqual(cutoff, 30)
        self.assertEqual(len(filtered), 97)


class TestAnalysisConfig(unittest.TestCase):

    def test_defaults(self):
        config = AnalysisConfig()

        self.assertEqual(config.exposure, 'Creatinine')
        self.assertEqual(config.alpha, 0.05)
        self.assertEqual(config.cutoff_range, (0, 200))

    def test_from_dict_ignores_unknown_keys(self):
        config = AnalysisConfig.from_dict({'alpha': 0.01, 'cutoff_range': [10, 120], 'unused': 1})

        self.assertEqual(config.alpha, 0.01)
        self.assertEqual(config.cutoff_range, (10, 120))


class TestHelpers(unittest.TestCase):

    def test_describe_by_outcome(self):
        df = pd.DataFrame({
            'Age': [50.0, 60.0, 70.0, 80.0],
            'Sex': [1, 0, 1, 1],
            'Event': [0, 0, 1, 1],
        })

        summary = describe_by_outcome(df, 'Event')

        self.assertEqual(summary.loc['Age', ('Event=0', 'mean')], 55.0)
        self.assertEqual(summary.loc['Sex', ('Event=1', 'mean')], 1.0)
        self.assertTrue(np.isnan(summary.loc['Sex', ('Event=1', 'std')]))
        self.assertEqual(summary.loc['n', ('Event=1', 'mean')], 2)

    def test_save_and_load_json(self):
        estimate = CausalEstimate(0.5, 0.1, 0.3, 0.7, 0.001, 'cox')
        results = {'estimate': estimate, 'count': np.int64(3), 'missing': float('nan')}

        with tempfile.TemporaryDirectory() as tmp:
            path = save_results(results, Path(tmp) / "results.json")
            loaded = load_json(path)

        self.assertEqual(loaded['count'], 3)
        self.assertIsNone(loaded['missing'])
        self.assertEqual(loaded['estimate']['method'], 'cox')
        self.assertTrue(loaded['estimate']['significant'])

    def test_save_rejects_other_formats(self):
        with self.assertRaises(ValueError):
            save_results({}, "results.pkl")

    def test_format_results_table_hazard_scale(self):
        estimate = CausalEstimate(0.0, 0.1, -0.2, 0.2, 0.5, 'cox')

        table = format_results_table({'adjusted': estimate}, "HR", hazard_scale=True)

        self.assertIn("1.0000", table)
        self.assertIn("adjusted", table)
        self.assertIn("No", table)


if __name__ == '__main__':
    unittest.main()
