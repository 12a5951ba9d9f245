"""
Data Cleaning Module
====================

Turns the raw influenza symptom table into the analysis tables.

Functions:
    - clean_basic: Column-pattern pruning and complete-case filtering
    - clean_ml: Redundant-column removal, ordinal typing, near-zero pruning
    - near_zero_columns: Binary predictors with a rare level
"""

import logging
from typing import Iterable, List, Sequence

import numpy as np
import pandas as pd

from .exceptions import InputSchemaError

logger = logging.getLogger(__name__)

# Matched case-insensitively: the raw table spells the diagnosis columns 'DxName1'...
FORBIDDEN_SUBSTRINGS = ('Score', 'Total', 'FluA', 'FluB', 'Dxname', 'Activity', 'Unique.Visit')

# Yes/no columns duplicated by a severity column for the same symptom
REDUNDANT_BINARY = ('WeaknessYN', 'MyalgiaYN', 'CoughYN', 'CoughYN2')

ORDINAL_COLUMNS = ('Myalgia', 'Weakness', 'CoughIntensity')
SEVERITY_LEVELS = ('None', 'Mild', 'Moderate', 'Severe')

DEFAULT_NEAR_ZERO_THRESHOLD = 50


def is_forbidden(column: str, patterns: Sequence[str] = FORBIDDEN_SUBSTRINGS) -> bool:
    name = column.lower()
    return any(pattern.lower() in name for pattern in patterns)


def _check_outcome(df: pd.DataFrame, outcome: str) -> None:
    if outcome not in df.columns:
        raise InputSchemaError(f"Outcome column '{outcome}' is missing")
    if not pd.api.types.is_numeric_dtype(df[outcome]) or pd.api.types.is_bool_dtype(df[outcome]):
        raise InputSchemaError(
            f"Outcome column '{outcome}' must be numeric, found {df[outcome].dtype}"
        )


def clean_basic(raw: pd.DataFrame, outcome: str = "BodyTemp") -> pd.DataFrame:
    """
    Prune unwanted columns and keep complete rows only.

    Drops every column whose name contains one of FORBIDDEN_SUBSTRINGS, then
    every row with a missing value in the remaining columns.

    Args:
        raw: Raw symptom table
        outcome: Name of the outcome column

    Returns:
        New DataFrame with a fresh RangeIndex

    Raises:
        InputSchemaError: If the table is empty or the outcome is missing or non-numeric
    """
    if raw.shape[0] == 0 or raw.shape[1] == 0:
        raise InputSchemaError("Input table is empty")

    dropped = [col for col in raw.columns if is_forbidden(str(col))]
    kept = [col for col in raw.columns if col not in dropped]
    df = raw[kept]

    _check_outcome(df, outcome)

    n_before = len(df)
    df = df.dropna(axis=0, how='any').reset_index(drop=True)

    if df.empty:
        raise InputSchemaError("No complete rows remain after pruning columns")

    logger.info(
        f"Basic cleaning: dropped {len(dropped)} columns and {n_before - len(df)} "
        f"incomplete rows -> {df.shape[0]} rows × {df.shape[1]} columns"
    )
    return df


def _to_severity(series: pd.Series) -> pd.Series:
    dtype = pd.CategoricalDtype(categories=list(SEVERITY_LEVELS), ordered=True)
    observed = set(series.dropna().astype(str).unique())
    unexpected = observed - set(SEVERITY_LEVELS)
    if unexpected:
        raise InputSchemaError(
            f"Column '{series.name}' has levels {sorted(unexpected)} "
            f"outside {list(SEVERITY_LEVELS)}"
        )
    return series.astype(str).astype(dtype)


def near_zero_columns(
    df: pd.DataFrame,
    threshold: int,
    exclude: Iterable[str] = ()
) -> List[str]:
    """
    Find binary columns whose minority level occurs fewer than `threshold` times.

    A column with a single observed value counts as binary with a minority
    count of zero.

    Args:
        df: Table to inspect
        threshold: Minimum acceptable count of the rarer level
        exclude: Columns never considered (outcome, ordinal columns)

    Returns:
        Column names in table order
    """
    exclude = set(exclude)
    flagged = []
    for col in df.columns:
        if col in exclude:
            continue
        counts = df[col].value_counts(dropna=True)
        counts = counts[counts > 0]
        if len(counts) > 2:
            continue
        minority = int(counts.min()) if len(counts) == 2 else 0
        if minority < threshold:
            flagged.append(col)
    return flagged


def clean_ml(
    basic: pd.DataFrame,
    outcome: str = "BodyTemp",
    near_zero_threshold: int = DEFAULT_NEAR_ZERO_THRESHOLD
) -> pd.DataFrame:
    """
    Prepare the basic table for the machine-learning harness.

    Steps:
        1. Drop the yes/no duplicates of the severity symptoms
        2. Type Myalgia, Weakness and CoughIntensity as ordered categories
        3. Drop binary predictors with a minority level below the threshold

    Running it on its own output changes nothing.

    Args:
        basic: Output of clean_basic
        outcome: Name of the outcome column
        near_zero_threshold: Minority-level cutoff for binary predictors

    Returns:
        New DataFrame

    Raises:
        InputSchemaError: On a missing outcome or unexpected severity levels
    """
    _check_outcome(basic, outcome)
    if basic.empty:
        raise InputSchemaError("Input table is empty")

    redundant = [col for col in REDUNDANT_BINARY if col in basic.columns]
    df = basic.drop(columns=redundant)

    ordinal = [col for col in ORDINAL_COLUMNS if col in df.columns]
    missing = sorted(set(ORDINAL_COLUMNS) - set(ordinal))
    if missing:
        logger.warning(f"Severity columns not found, left untyped: {missing}")
    if ordinal:
        df = df.assign(**{col: _to_severity(df[col]) for col in ordinal})

    rare = near_zero_columns(df, near_zero_threshold, exclude=[outcome, *ordinal])
    df = df.drop(columns=rare)

    logger.info(f"Removed redundant yes/no columns: {redundant}")
    logger.info(f"Removed near-zero binary columns (< {near_zero_threshold}): {rare}")
    logger.info(f"ML cleaning result: {df.shape[0]} rows × {df.shape[1]} columns")
    return df


def outcome_values(df: pd.DataFrame, outcome: str) -> np.ndarray:
    """Outcome column as a float array, checking presence and type."""
    _check_outcome(df, outcome)
    return df[outcome].to_numpy(dtype=float)
