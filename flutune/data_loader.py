"""
Data Loader Module
==================

Handles table ingestion, serialization, and basic data quality checks.

Functions:
    - read_csv: Read a CSV keeping "None" and "null" as values
    - load_table: Load a serialized table (CSV or pandas pickle)
    - save_table: Write a table as pickle (types preserved) plus a CSV copy
    - validate_table: Report data quality issues
    - get_data_summary: Generate basic statistics
    - print_data_summary: Console summary of a table
"""

import logging
from pathlib import Path
from typing import Dict, Any, Tuple

import pandas as pd
import numpy as np

from .exceptions import InputSchemaError

logger = logging.getLogger(__name__)

PICKLE_SUFFIXES = ('.pkl', '.pickle')

# "None" is a severity level, so pandas' default NA strings cannot be used
NA_STRINGS = ['', 'NA', 'NaN', 'nan']


def read_csv(file_path, **kwargs) -> pd.DataFrame:
    """
    Read a CSV written by this package or holding the raw symptom table.

    Only empty cells and NA/NaN markers are treated as missing, so the
    severity level "None" and the learner name "null" survive the read.

    Args:
        file_path: Path to the CSV file
        **kwargs: Passed through to pandas.read_csv

    Returns:
        Loaded DataFrame
    """
    return pd.read_csv(file_path, keep_default_na=False, na_values=NA_STRINGS, **kwargs)


def load_table(file_path: str) -> pd.DataFrame:
    """
    Load a serialized table with named columns.

    CSV files come back with yes/no and severity columns as strings; pickles
    keep whatever dtypes (ordered categories included) they were written with.

    Args:
        file_path: Path to a .csv, .pkl or .pickle file

    Returns:
        DataFrame containing the loaded data

    Raises:
        FileNotFoundError: If data file doesn't exist
        InputSchemaError: If the format is unsupported or the file holds no table
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {file_path}")

    suffix = file_path.suffix.lower()
    if suffix == '.csv':
        df = read_csv(file_path)
    elif suffix in PICKLE_SUFFIXES:
        df = pd.read_pickle(file_path)
    else:
        raise InputSchemaError(
            f"Unsupported table format '{suffix}' for {file_path}; use .csv or .pkl"
        )

    if not isinstance(df, pd.DataFrame):
        raise InputSchemaError(f"{file_path} does not contain a table")

    logger.info(f"Loaded data from {file_path}: {df.shape[0]} rows × {df.shape[1]} columns")
    return df


def save_table(df: pd.DataFrame, file_path: str, csv_copy: bool = True) -> str:
    """
    Serialize a table, preserving column types.

    Args:
        df: Table to write
        file_path: Destination path; the suffix is forced to .pkl
        csv_copy: Also write a human-readable CSV next to the pickle

    Returns:
        Path of the pickle file
    """
    file_path = Path(file_path).with_suffix('.pkl')
    file_path.parent.mkdir(parents=True, exist_ok=True)

    df.to_pickle(file_path)
    if csv_copy:
        df.to_csv(file_path.with_suffix('.csv'), index=False)

    logger.info(f"Table saved to {file_path} ({df.shape[0]} rows × {df.shape[1]} columns)")
    return str(file_path)


def validate_table(df: pd.DataFrame, outcome: str = "BodyTemp") -> Tuple[bool, Dict[str, Any]]:
    """
    Validate data quality constraints for the modelling table.

    Checks:
        - Table is not empty
        - Outcome column is present and numeric
        - Missing values per column
        - Duplicate rows

    Args:
        df: DataFrame to validate
        outcome: Name of the outcome column

    Returns:
        Tuple of (is_valid, validation_report)
    """
    report = {
        "total_rows": len(df),
        "total_columns": len(df.columns),
        "column_names": list(df.columns),
        "issues": []
    }

    if df.empty:
        report["issues"].append("Table is empty")

    if outcome not in df.columns:
        report["issues"].append(f"Outcome column '{outcome}' is missing")
    elif not pd.api.types.is_numeric_dtype(df[outcome]):
        report["issues"].append(f"Outcome column '{outcome}' is not numeric ({df[outcome].dtype})")

    missing_counts = df.isnull().sum()
    total_missing = int(missing_counts.sum())
    if total_missing > 0:
        incomplete_rows = int(df.isnull().any(axis=1).sum())
        issue = f"Missing values: {total_missing} cells in {incomplete_rows} rows"
        report["issues"].append(issue)
        report["missing_by_column"] = missing_counts[missing_counts > 0].to_dict()
        logger.warning(issue)

    duplicates = int(df.duplicated().sum())
    if duplicates > 0:
        issue = f"Duplicate rows found: {duplicates}"
        report["issues"].append(issue)
        logger.warning(issue)

    is_valid = len(report["issues"]) == 0
    report["is_valid"] = is_valid
    return is_valid, report


def get_data_summary(df: pd.DataFrame) -> Dict[str, Any]:
    """
    Generate summary statistics for the dataset.

    Numeric columns get moments and quantiles; every other column gets its
    level counts.

    Args:
        df: DataFrame to summarize

    Returns:
        Dictionary containing summary statistics
    """
    summary = {
        "shape": df.shape,
        "columns": list(df.columns),
        "dtypes": df.dtypes.astype(str).to_dict(),
        "memory_usage_mb": df.memory_usage(deep=True).sum() / 1024 / 1024,
        "statistics": {},
        "levels": {}
    }

    for col in df.select_dtypes(include=[np.number]).columns:
        summary["statistics"][col] = {
            "count": int(df[col].count()),
            "mean": float(df[col].mean()),
            "std": float(df[col].std()),
            "min": float(df[col].min()),
            "50%": float(df[col].quantile(0.50)),
            "max": float(df[col].max())
        }

    for col in df.select_dtypes(exclude=[np.number]).columns:
        counts = df[col].value_counts(dropna=True, sort=False)
        summary["levels"][col] = {str(level): int(n) for level, n in counts.items()}

    return summary


def print_data_summary(df: pd.DataFrame) -> None:
    """
    Print a formatted summary of the dataset to console.

    Args:
        df: DataFrame to summarize
    """
    print("\n" + "=" * 60)
    print("DATASET SUMMARY")
    print("=" * 60)
    print(f"Shape: {df.shape[0]} rows × {df.shape[1]} columns")
    print(f"Complete rows: {int((~df.isnull().any(axis=1)).sum())}")
    print("\nColumn Information:")
    print("-" * 40)

    for col in df.columns:
        dtype = df[col].dtype
        non_null = df[col].count()
        null_pct = (1 - non_null / len(df)) * 100 if len(df) else 0.0
        print(f"  {col}: {dtype} | {non_null} non-null ({null_pct:.1f}% missing)")

    numeric = df.select_dtypes(include=[np.number])
    if not numeric.empty:
        print("\nNumeric Statistics:")
        print("-" * 40)
        print(numeric.describe().round(4).to_string())
    print("=" * 60 + "\n")
