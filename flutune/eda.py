"""
Exploratory Data Analysis (EDA) Module
======================================

Descriptive analysis of the cleaned symptom table.

Functions:
    - summarize_outcome: Moments and normality test of the outcome
    - outcome_by_level: Outcome mean per level of each categorical predictor, with a test
    - plot_outcome_distribution: Histogram + KDE of the outcome
    - plot_outcome_by_level: Box plots of the outcome for the strongest predictors
    - generate_eda_report: Full EDA report with all figures
"""

import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

import pandas as pd
import numpy as np
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats

logger = logging.getLogger(__name__)

sns.set_palette("husl")


def summarize_outcome(df: pd.DataFrame, outcome: str = "BodyTemp") -> Dict[str, float]:
    """
    Summary statistics for the outcome column.

    Args:
        df: Cleaned table
        outcome: Outcome column name

    Returns:
        Dictionary of moments, quantiles and the D'Agostino-Pearson p-value
    """
    y = df[outcome].astype(float)
    summary = {
        "n": int(y.count()),
        "mean": float(y.mean()),
        "std": float(y.std()),
        "population_std": float(y.std(ddof=0)),
        "min": float(y.min()),
        "median": float(y.median()),
        "max": float(y.max()),
        "skew": float(y.skew()),
        "kurtosis": float(y.kurtosis())
    }
    if len(y) >= 8:
        _, p_value = stats.normaltest(y)
        summary["normality_p"] = float(p_value)
    return summary


def outcome_by_level(df: pd.DataFrame, outcome: str = "BodyTemp") -> pd.DataFrame:
    """
    Compare the outcome across the levels of each categorical predictor.

    Binary predictors get a Welch t-test, predictors with more levels a
    Kruskal-Wallis test.

    Args:
        df: Cleaned table
        outcome: Outcome column name

    Returns:
        DataFrame with one row per predictor: levels, per-level means,
        test name and p-value, sorted by p-value
    """
    rows = []
    categorical = [col for col in df.columns
                   if col != outcome and not pd.api.types.is_numeric_dtype(df[col])]

    for col in categorical:
        groups = {str(level): grp[outcome].to_numpy(dtype=float)
                  for level, grp in df.groupby(col, observed=True)}
        groups = {level: values for level, values in groups.items() if len(values) > 1}
        if len(groups) < 2:
            continue

        if len(groups) == 2:
            a, b = groups.values()
            _, p_value = stats.ttest_ind(a, b, equal_var=False)
            test = "welch_t"
        else:
            _, p_value = stats.kruskal(*groups.values())
            test = "kruskal"

        rows.append({
            "predictor": col,
            "n_levels": len(groups),
            "means": {level: round(float(values.mean()), 4) for level, values in groups.items()},
            "test": test,
            "p_value": float(p_value)
        })

    result = pd.DataFrame(rows, columns=["predictor", "n_levels", "means", "test", "p_value"])
    return result.sort_values("p_value", kind="mergesort").reset_index(drop=True)


def plot_outcome_distribution(
    df: pd.DataFrame,
    outcome: str = "BodyTemp",
    figsize: Tuple[int, int] = (8, 5),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Histogram with KDE of the outcome, marking mean and median.

    Args:
        df: Cleaned table
        outcome: Outcome column name
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    fig, ax = plt.subplots(figsize=figsize)
    sns.histplot(df[outcome], kde=True, ax=ax, bins=30, alpha=0.7)

    mean_val = df[outcome].mean()
    median_val = df[outcome].median()
    ax.axvline(mean_val, color='red', linestyle='--', label=f'Mean: {mean_val:.2f}')
    ax.axvline(median_val, color='green', linestyle='--', label=f'Median: {median_val:.2f}')
    ax.set_title(f'{outcome} Distribution', fontsize=12, fontweight='bold')
    ax.legend(fontsize=8)
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Outcome distribution saved to {save_path}")
    return fig


def plot_outcome_by_level(
    df: pd.DataFrame,
    predictors: List[str],
    outcome: str = "BodyTemp",
    figsize: Tuple[int, int] = (14, 10),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Box plots of the outcome per level of the given predictors.

    Args:
        df: Cleaned table
        predictors: Categorical columns to plot
        outcome: Outcome column name
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    n_cols = max(len(predictors), 1)
    n_rows = (n_cols + 1) // 2

    fig, axes = plt.subplots(n_rows, 2, figsize=figsize, squeeze=False)
    axes = axes.flatten()

    for idx, col in enumerate(predictors):
        ax = axes[idx]
        sns.boxplot(data=df, x=col, y=outcome, ax=ax)
        ax.set_title(col, fontsize=10, fontweight='bold')
        ax.set_xlabel('')

    for idx in range(len(predictors), len(axes)):
        axes[idx].set_visible(False)

    plt.suptitle(f'{outcome} by Symptom Level', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Outcome-by-level plots saved to {save_path}")
    return fig


def generate_eda_report(
    df: pd.DataFrame,
    outcome: str = "BodyTemp",
    output_dir: str = "outputs/figures/",
    top_n: int = 6
) -> Dict[str, Any]:
    """
    Generate the EDA report with its figures.

    Args:
        df: Cleaned table
        outcome: Outcome column name
        output_dir: Directory to save figures
        top_n: Number of most outcome-related predictors to plot

    Returns:
        Dictionary containing outcome summary, per-predictor comparisons and figure names
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    logger.info("=" * 60)
    logger.info("STARTING EXPLORATORY DATA ANALYSIS")
    logger.info("=" * 60)

    report = {
        "data_shape": df.shape,
        "outcome": summarize_outcome(df, outcome),
        "by_level": outcome_by_level(df, outcome),
        "figures": []
    }

    plot_outcome_distribution(df, outcome, save_path=str(output_dir / "eda_outcome_distribution.png"))
    report["figures"].append("eda_outcome_distribution.png")

    strongest = report["by_level"]["predictor"].head(top_n).tolist()
    if strongest:
        plot_outcome_by_level(df, strongest, outcome,
                              save_path=str(output_dir / "eda_outcome_by_level.png"))
        report["figures"].append("eda_outcome_by_level.png")

    plt.close('all')

    logger.info("EDA COMPLETE - figures saved to: %s", output_dir)
    return report


def print_eda_insights(report: Dict[str, Any], alpha: float = 0.05) -> None:
    """
    Print the outcome summary and predictors associated with the outcome.

    Args:
        report: Dictionary from generate_eda_report
        alpha: Significance level for listing predictors
    """
    summary = report["outcome"]
    print("\n" + "=" * 50)
    print("EDA INSIGHTS")
    print("=" * 50)
    print(f"Outcome: n={summary['n']}, mean={summary['mean']:.3f}, sd={summary['std']:.3f}, "
          f"range=[{summary['min']:.1f}, {summary['max']:.1f}]")

    by_level = report["by_level"]
    significant = by_level[by_level["p_value"] < alpha]
    if significant.empty:
        print(f"\nNo predictor is associated with the outcome at p < {alpha}")
    else:
        print(f"\nPredictors associated with the outcome (p < {alpha}):")
        for _, row in significant.iterrows():
            print(f"  • {row['predictor']}: {row['test']} p={row['p_value']:.2e} means={row['means']}")
    print("=" * 50 + "\n")
