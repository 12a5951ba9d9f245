"""
Feature Recipe Module
=====================

Maps a cleaned table to a numeric design matrix.

Every non-numeric predictor is one-hot encoded with one indicator per
non-reference level; numeric predictors pass through. The encoding is learned
from training rows only, and the learned recipe is a pure function of the table
it is applied to, so assessment and test rows never influence it.

Classes:
    - DummyRecipe: Declarative recipe (what to encode, which outcome)
    - LearnedRecipe: Frozen encoding produced by DummyRecipe.learned_on
"""

import logging
from typing import Dict, Any, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .exceptions import InputSchemaError

logger = logging.getLogger(__name__)


def _is_categorical(series: pd.Series) -> bool:
    if pd.api.types.is_bool_dtype(series):
        return True
    return not pd.api.types.is_numeric_dtype(series)


def _as_labels(series: pd.Series) -> np.ndarray:
    return series.astype(object).map(str).to_numpy()


class LearnedRecipe:
    """
    Encoding learned from a set of training rows.

    Instances are never mutated after construction.
    """

    def __init__(
        self,
        outcome: str,
        predictors: List[str],
        numeric_columns: List[str],
        reference_levels: Dict[str, str],
        indicator_levels: Dict[str, List[str]],
        n_training_rows: int
    ):
        self.outcome = outcome
        self.predictors = tuple(predictors)
        self.numeric_columns = tuple(numeric_columns)
        self.reference_levels = dict(reference_levels)
        self.indicator_levels = {col: tuple(levels) for col, levels in indicator_levels.items()}
        self.n_training_rows = n_training_rows

        names = []
        for col in self.predictors:
            if col in self.indicator_levels:
                names.extend(f"{col}_{level}" for level in self.indicator_levels[col])
            else:
                names.append(col)
        self.feature_names = tuple(names)

    @property
    def n_features(self) -> int:
        return len(self.feature_names)

    def encoding_map(self) -> Dict[str, Any]:
        """Reference and indicator levels per categorical predictor."""
        return {
            col: {
                'reference': self.reference_levels[col],
                'indicators': list(self.indicator_levels[col])
            }
            for col in self.indicator_levels
        }

    def transform(self, table: pd.DataFrame) -> pd.DataFrame:
        """
        Apply the learned encoding.

        Levels not seen while learning are encoded as the reference level.

        Args:
            table: Table with at least the learned predictor columns

        Returns:
            Design matrix as a float DataFrame; the outcome column is appended
            unchanged when the table has it

        Raises:
            InputSchemaError: If a learned predictor column is missing, or a
                column learned as numeric now holds labels
        """
        missing = [col for col in self.predictors if col not in table.columns]
        if missing:
            raise InputSchemaError(f"Columns required by the recipe are missing: {missing}")
        not_numeric = [col for col in self.numeric_columns if _is_categorical(table[col])]
        if not_numeric:
            raise InputSchemaError(f"Columns learned as numeric are no longer numeric: {not_numeric}")

        columns: Dict[str, np.ndarray] = {}
        for col in self.predictors:
            if col in self.indicator_levels:
                labels = _as_labels(table[col])
                for level in self.indicator_levels[col]:
                    columns[f"{col}_{level}"] = (labels == level).astype(float)
            else:
                columns[col] = table[col].to_numpy(dtype=float)

        design = pd.DataFrame(columns, index=table.index, columns=list(self.feature_names))
        if self.outcome in table.columns:
            design[self.outcome] = table[self.outcome]
        return design

    def xy(self, table: pd.DataFrame) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """Design matrix and outcome vector as arrays (outcome None if absent)."""
        design = self.transform(table)
        X = design[list(self.feature_names)].to_numpy(dtype=float)
        y = None
        if self.outcome in design.columns:
            y = design[self.outcome].to_numpy(dtype=float)
        return X, y

    def __repr__(self) -> str:
        return (f"LearnedRecipe(outcome={self.outcome!r}, predictors={len(self.predictors)}, "
                f"features={self.n_features}, trained_on={self.n_training_rows} rows)")


class DummyRecipe:
    """
    One-hot encoding recipe for a given outcome.

    Args:
        outcome: Outcome column, passed through unchanged
        exclude: Further columns to leave out of the design matrix
    """

    def __init__(self, outcome: str = "BodyTemp", exclude: Sequence[str] = ()):
        self.outcome = outcome
        self.exclude = tuple(exclude)

    def learned_on(self, training: pd.DataFrame) -> LearnedRecipe:
        """
        Learn the encoding from training rows.

        The reference level of a categorical predictor is the lexicographically
        first level observed in `training`; each further observed level gets an
        indicator column.

        Raises:
            InputSchemaError: If the outcome is missing or there are no rows
        """
        if self.outcome not in training.columns:
            raise InputSchemaError(f"Outcome column '{self.outcome}' is missing")
        if len(training) == 0:
            raise InputSchemaError("Cannot learn a recipe from zero rows")

        skip = {self.outcome, *self.exclude}
        predictors = [col for col in training.columns if col not in skip]

        numeric_columns = []
        reference_levels = {}
        indicator_levels = {}
        for col in predictors:
            series = training[col]
            if _is_categorical(series):
                levels = sorted(set(_as_labels(series.dropna())))
                if not levels:
                    raise InputSchemaError(f"Column '{col}' has no observed levels")
                reference_levels[col] = levels[0]
                indicator_levels[col] = levels[1:]
            else:
                numeric_columns.append(col)

        return LearnedRecipe(
            outcome=self.outcome,
            predictors=predictors,
            numeric_columns=numeric_columns,
            reference_levels=reference_levels,
            indicator_levels=indicator_levels,
            n_training_rows=len(training)
        )

    def __repr__(self) -> str:
        return f"DummyRecipe(outcome={self.outcome!r})"


def prepare(
    table: pd.DataFrame,
    training_indices: Sequence[int],
    outcome: str = "BodyTemp"
) -> Tuple[LearnedRecipe, pd.DataFrame]:
    """
    Learn the encoding on the training rows and encode them.

    Args:
        table: Cleaned table
        training_indices: Positional indices of the training rows
        outcome: Outcome column name

    Returns:
        Tuple of (learned recipe, training design matrix)
    """
    training = table.iloc[np.asarray(training_indices)]
    learned = DummyRecipe(outcome).learned_on(training)
    design = learned.transform(training)
    logger.info(
        f"Recipe learned on {len(training)} rows: {len(learned.predictors)} predictors "
        f"-> {learned.n_features} design columns"
    )
    return learned, design
