"""
Shared fixtures: a synthetic influenza symptom table shaped like the clinic data.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from flutune.config import HarnessConfig


FORBIDDEN_COLUMNS = (
    'DxName1', 'DxName2', 'DxName3', 'Unique.Visit', 'ActivityLevel', 'ActivityLevelF',
    'RapidFluA', 'RapidFluB', 'PCRFluA', 'PCRFluB', 'TransScore1', 'TransScore1F',
    'TotalSymp1', 'TotalSymp1F'
)

BINARY_SYMPTOMS = (
    'SwollenLymphNodes', 'ChestCongestion', 'ChillsSweats', 'NasalCongestion', 'CoughYN',
    'Sneeze', 'Fatigue', 'SubjectiveFever', 'Headache', 'WeaknessYN', 'CoughYN2',
    'MyalgiaYN', 'RunnyNose', 'AbPain', 'ChestPain', 'Diarrhea', 'EyePn', 'Insomnia',
    'ItchyEye', 'Nausea', 'EarPn', 'Hearing', 'Pharyngitis', 'Breathless', 'ToothPn',
    'Vision', 'Vomit', 'Wheeze'
)

ORDINAL_SYMPTOMS = ('Weakness', 'CoughIntensity', 'Myalgia')

# exact "Yes" counts for the rare symptoms
RARE_SYMPTOMS = {'Hearing': 30, 'Vision': 19}

YES_SHARES = (0.30, 0.45, 0.60, 0.35, 0.70, 0.50, 0.40)
SEVERITY_SHARES = (0.15, 0.35, 0.35, 0.15)


def make_flu_table(n_rows: int = 735, n_incomplete: int = 5, seed: int = 2024) -> pd.DataFrame:
    """
    Raw symptom table with the clinic data's column layout.

    Yes/no symptoms carry exact "Yes" counts, so the near-zero pruning is
    deterministic; `n_incomplete` rows miss their Headache value, and the
    forbidden columns carry extra gaps that must not cost any rows.
    """
    rng = np.random.default_rng(seed)
    data = {}

    data['DxName1'] = rng.choice(['Influenza', 'Acute bronchitis', 'Fever'], n_rows)
    data['DxName2'] = rng.choice(['Cough', 'Myalgia', 'None'], n_rows)
    data['DxName3'] = rng.choice(['Headache', 'None'], n_rows)
    data['Unique.Visit'] = [f"{340 + i}_1" for i in range(n_rows)]
    data['ActivityLevel'] = rng.integers(0, 11, n_rows)
    data['ActivityLevelF'] = data['ActivityLevel'].astype(str)

    for i, col in enumerate(BINARY_SYMPTOMS):
        n_yes = RARE_SYMPTOMS.get(col, int(round(n_rows * YES_SHARES[i % len(YES_SHARES)])))
        values = np.array(['No'] * n_rows, dtype=object)
        values[rng.choice(n_rows, n_yes, replace=False)] = 'Yes'
        data[col] = values

    for col in ORDINAL_SYMPTOMS:
        data[col] = rng.choice(['None', 'Mild', 'Moderate', 'Severe'], n_rows, p=SEVERITY_SHARES)

    fever = (data['SubjectiveFever'] == 'Yes').astype(float)
    chills = (data['ChillsSweats'] == 'Yes').astype(float)
    severity = pd.Series(data['Myalgia']).map(
        {'None': 0.0, 'Mild': 0.1, 'Moderate': 0.2, 'Severe': 0.35}
    ).to_numpy()
    body_temp = 98.3 + 0.55 * fever + 0.3 * chills + severity + rng.normal(0, 1.0, n_rows)
    data['BodyTemp'] = np.round(np.clip(body_temp, 97.2, 103.1), 1)

    for col in ('RapidFluA', 'RapidFluB', 'PCRFluA', 'PCRFluB'):
        values = rng.choice(['Presumptive Negative', 'Presumptive Positive'], n_rows).astype(object)
        values[rng.choice(n_rows, 40, replace=False)] = np.nan
        data[col] = values
    data['TransScore1'] = rng.integers(0, 5, n_rows)
    data['TransScore1F'] = data['TransScore1'].astype(str)
    data['TotalSymp1'] = rng.integers(0, 18, n_rows)
    data['TotalSymp1F'] = data['TotalSymp1'].astype(str)

    table = pd.DataFrame(data)
    incomplete = rng.choice(n_rows, n_incomplete, replace=False)
    table.loc[incomplete, 'Headache'] = np.nan
    return table


SMALL_GRIDS = {
    'null': {'type': 'regular', 'levels': 1},
    'tree': {
        'type': 'explicit',
        'tuples': [
            {'cost_complexity': 1e-10, 'tree_depth': 1, 'min_n': 2},
            {'cost_complexity': 0.01, 'tree_depth': 3, 'min_n': 20}
        ]
    },
    'lasso': {'type': 'regular', 'levels': 3, 'ranges': {'penalty': [1e-3, 1.0]}},
    'forest': {
        'type': 'crossed',
        'values': {'mtry': [3], 'min_n': [40], 'trees': [20]}
    }
}


def small_config_dict(output_dir: str, **harness) -> dict:
    """Configuration mapping with a fast 3-fold, single-repeat plan."""
    options = {'master_seed': 123, 'cv_folds': 3, 'cv_repeats': 1, 'workers': 1}
    options.update(harness)
    return {
        'data': {'output_dir': str(output_dir)},
        'harness': options,
        'grids': SMALL_GRIDS,
        'logging': {'level': 'WARNING'}
    }


@pytest.fixture
def raw_flu():
    """Full-size raw table: 735 rows, 5 of them incomplete."""
    return make_flu_table()


@pytest.fixture
def small_raw_flu():
    """Smaller raw table for end-to-end runs."""
    return make_flu_table(n_rows=300)


@pytest.fixture
def basic_flu(raw_flu):
    from flutune.cleaning import clean_basic
    return clean_basic(raw_flu)


@pytest.fixture
def ml_flu(basic_flu):
    from flutune.cleaning import clean_ml
    return clean_ml(basic_flu)


@pytest.fixture
def small_config(tmp_path):
    """HarnessConfig writing to a temporary directory."""
    return HarnessConfig.from_dict(small_config_dict(tmp_path / "outputs"))
