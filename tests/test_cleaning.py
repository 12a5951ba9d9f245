"""
Test Suite for Cleaning and Data Loading
========================================

Tests for clean_basic, clean_ml, near_zero_columns and the table loader.
"""

import pytest
import numpy as np
import pandas as pd

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from flutune.cleaning import (
    clean_basic, clean_ml, near_zero_columns, is_forbidden,
    ORDINAL_COLUMNS, REDUNDANT_BINARY, SEVERITY_LEVELS
)
from flutune.data_loader import load_table, read_csv, save_table, validate_table, get_data_summary
from flutune.exceptions import InputSchemaError


class TestCleanBasic:
    """Tests for column pruning and complete-case filtering."""

    def test_shape(self, raw_flu):
        """Test that 5 incomplete rows and all forbidden columns are dropped."""
        basic = clean_basic(raw_flu)
        assert basic.shape == (730, 32)

    def test_no_forbidden_columns(self, basic_flu):
        """Test no remaining column matches a forbidden pattern."""
        assert not any(is_forbidden(col) for col in basic_flu.columns)

    def test_gaps_in_dropped_columns_cost_no_rows(self, raw_flu):
        """Test pruning happens before the complete-case filter."""
        assert raw_flu['PCRFluA'].isnull().sum() > 0
        assert len(clean_basic(raw_flu)) == len(raw_flu) - 5

    def test_complete_and_reindexed(self, basic_flu):
        """Test the result has no missing values and a fresh index."""
        assert not basic_flu.isnull().any().any()
        assert list(basic_flu.index) == list(range(len(basic_flu)))

    def test_input_not_modified(self, raw_flu):
        """Test that the raw table is left untouched."""
        before = raw_flu.copy()
        clean_basic(raw_flu)
        pd.testing.assert_frame_equal(raw_flu, before)

    def test_case_insensitive_patterns(self):
        """Test lower-case spellings of forbidden names are dropped too."""
        raw = pd.DataFrame({
            'dxname9': ['a', 'b', 'c'],
            'flua_titer': [1, 2, 3],
            'Headache': ['Yes', 'No', 'Yes'],
            'BodyTemp': [98.1, 99.0, 100.2]
        })
        assert list(clean_basic(raw).columns) == ['Headache', 'BodyTemp']

    def test_empty_table(self):
        """Test that an empty table raises InputSchemaError."""
        with pytest.raises(InputSchemaError, match="empty"):
            clean_basic(pd.DataFrame())

    def test_missing_outcome(self, raw_flu):
        """Test that a missing outcome column raises InputSchemaError."""
        with pytest.raises(InputSchemaError, match="BodyTemp"):
            clean_basic(raw_flu.drop(columns=['BodyTemp']))

    def test_non_numeric_outcome(self, raw_flu):
        """Test that a text outcome raises InputSchemaError."""
        raw = raw_flu.assign(BodyTemp=raw_flu['BodyTemp'].astype(str))
        with pytest.raises(InputSchemaError, match="numeric"):
            clean_basic(raw)


class TestCleanML:
    """Tests for the ML-ready cleaning step."""

    def test_shape(self, ml_flu):
        """Test final column count after redundant and near-zero removal."""
        assert ml_flu.shape == (730, 26)

    def test_redundant_columns_removed(self, ml_flu):
        """Test yes/no duplicates of the severity symptoms are gone."""
        for col in REDUNDANT_BINARY:
            assert col not in ml_flu.columns

    def test_rare_columns_removed(self, ml_flu):
        """Test binary predictors with fewer than 50 minority rows are gone."""
        assert 'Hearing' not in ml_flu.columns
        assert 'Vision' not in ml_flu.columns

    def test_ordinal_typing(self, ml_flu):
        """Test severity columns become ordered categoricals."""
        for col in ORDINAL_COLUMNS:
            dtype = ml_flu[col].dtype
            assert isinstance(dtype, pd.CategoricalDtype)
            assert dtype.ordered
            assert list(dtype.categories) == list(SEVERITY_LEVELS)
        assert ml_flu['Myalgia'].cat.codes.min() >= 0

    def test_idempotent(self, ml_flu):
        """Test that cleaning an already clean table changes nothing."""
        pd.testing.assert_frame_equal(clean_ml(ml_flu), ml_flu)

    def test_threshold_zero_keeps_rare_columns(self, basic_flu):
        """Test a zero threshold keeps every binary predictor."""
        ml = clean_ml(basic_flu, near_zero_threshold=0)
        assert 'Hearing' in ml.columns
        assert ml.shape[1] == 28

    def test_unexpected_severity_level(self, basic_flu):
        """Test an unknown severity level raises InputSchemaError."""
        basic = basic_flu.copy()
        basic.loc[0, 'Weakness'] = 'Extreme'
        with pytest.raises(InputSchemaError, match="Weakness"):
            clean_ml(basic)

    def test_missing_severity_column(self, basic_flu):
        """Test a missing severity column is skipped rather than fatal."""
        ml = clean_ml(basic_flu.drop(columns=['CoughIntensity']))
        assert 'CoughIntensity' not in ml.columns
        assert isinstance(ml['Myalgia'].dtype, pd.CategoricalDtype)


class TestNearZeroColumns:
    """Tests for the rare-level detector."""

    def test_constant_column_is_flagged(self):
        df = pd.DataFrame({'a': ['No'] * 10, 'b': ['Yes'] * 5 + ['No'] * 5})
        assert near_zero_columns(df, threshold=3) == ['a']

    def test_multi_level_column_is_ignored(self):
        df = pd.DataFrame({'c': ['x', 'y', 'z', 'x']})
        assert near_zero_columns(df, threshold=10) == []

    def test_excluded_columns(self):
        df = pd.DataFrame({'a': ['No'] * 9 + ['Yes'], 'y': [1.0] * 10})
        assert near_zero_columns(df, threshold=5, exclude=['a', 'y']) == []


class TestDataLoader:
    """Tests for table loading, saving and validation."""

    def test_pickle_keeps_ordinal_types(self, ml_flu, tmp_path):
        """Test the pickle copy preserves ordered categories and a CSV is written."""
        path = save_table(ml_flu, str(tmp_path / "cleaned_ml.csv"))
        assert path.endswith(".pkl")
        assert (tmp_path / "cleaned_ml.csv").exists()

        loaded = load_table(path)
        assert loaded['Weakness'].dtype == ml_flu['Weakness'].dtype

    def test_csv_loading(self, raw_flu, tmp_path):
        """Test that a CSV round trip feeds the cleaner unchanged."""
        path = tmp_path / "raw.csv"
        raw_flu.to_csv(path, index=False)
        assert clean_basic(load_table(str(path))).shape == (730, 32)

    def test_csv_keeps_none_severity(self, raw_flu, tmp_path):
        """Test the severity level "None" is read as a level, not as missing."""
        path = tmp_path / "raw.csv"
        raw_flu.to_csv(path, index=False)
        loaded = load_table(str(path))
        for col in ('Myalgia', 'Weakness', 'CoughIntensity'):
            assert (loaded[col] == 'None').sum() == (raw_flu[col] == 'None').sum()
            assert loaded[col].isna().sum() == raw_flu[col].isna().sum()

    def test_read_csv_missing_markers(self, tmp_path):
        path = tmp_path / "cells.csv"
        path.write_text("learner,severity,value\nnull,None,\nlasso,NA,1.5\n")
        table = read_csv(path)
        assert table['learner'].tolist() == ['null', 'lasso']
        assert table['severity'].iloc[0] == 'None'
        assert pd.isna(table['severity'].iloc[1])
        assert pd.isna(table['value'].iloc[0])

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_table(str(tmp_path / "absent.csv"))

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "raw.xlsx"
        path.write_text("not a table")
        with pytest.raises(InputSchemaError, match="Unsupported"):
            load_table(str(path))

    def test_validate_reports_missing_values(self, raw_flu):
        is_valid, report = validate_table(raw_flu)
        assert not is_valid
        assert any("Missing values" in issue for issue in report['issues'])
        assert report['missing_by_column']['Headache'] == 5

    def test_validate_missing_outcome(self, raw_flu):
        is_valid, report = validate_table(raw_flu.drop(columns=['BodyTemp']))
        assert not is_valid
        assert any("BodyTemp" in issue for issue in report['issues'])

    def test_summary_levels(self, ml_flu):
        summary = get_data_summary(ml_flu)
        assert 'BodyTemp' in summary['statistics']
        assert set(summary['levels']['Myalgia']) == set(SEVERITY_LEVELS)
        assert sum(summary['levels']['Myalgia'].values()) == len(ml_flu)
