"""
Model Evaluation Module
=======================

Held-out evaluation of the selected model and diagnostic figures.

Features:
    - evaluate: One-shot test-set RMSE and residuals
    - RMSE, MAE, R² calculation
    - Observed vs predicted and residual plots
    - Permutation-importance bars, tree diagram, tuning profiles
    - Evaluation report printing
"""

import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import seaborn as sns
from sklearn.metrics import mean_absolute_error, r2_score
from sklearn.tree import plot_tree as sk_plot_tree

from .exceptions import InputSchemaError
from .selection import EvaluationToken, FinalizedModel
from .tuning import TuningRecord, rmse

logger = logging.getLogger(__name__)


def calculate_metrics(y_true: np.ndarray, y_pred: np.ndarray) -> Dict[str, float]:
    """
    Calculate regression metrics.

    Args:
        y_true: Observed outcome
        y_pred: Predicted outcome

    Returns:
        Dictionary with rmse, mae, r2, mean_error and max_error
    """
    errors = np.asarray(y_true) - np.asarray(y_pred)
    return {
        'rmse': rmse(y_true, y_pred),
        'mae': float(mean_absolute_error(y_true, y_pred)),
        'r2': float(r2_score(y_true, y_pred)),
        'mean_error': float(np.mean(errors)),
        'max_error': float(np.max(np.abs(errors)))
    }


def evaluate(
    final: FinalizedModel,
    test_table: pd.DataFrame,
    token: Optional[EvaluationToken] = None
) -> Tuple[float, pd.DataFrame]:
    """
    Score a finalized model on the test half.

    The model's evaluation token is consumed, so a second call for the same
    model raises EvaluatorReuse. The recipe learned on the training half is
    applied as-is.

    Args:
        final: Finalized model
        test_table: Testing half of the cleaned table
        token: Token issued by finalize (defaults to the model's own token)

    Returns:
        Tuple of (test RMSE, residual DataFrame with observed/predicted/residual)

    Raises:
        InputSchemaError: If the test table lacks the outcome or a predictor;
            the token is left unused
        EvaluatorReuse: If the model was already evaluated
    """
    token = final.token if token is None else token
    if token is not final.token:
        raise ValueError(f"Token {token.model_id} was not issued for model {final.model_id}")
    if final.recipe.outcome not in test_table.columns:
        raise InputSchemaError(
            f"Outcome column '{final.recipe.outcome}' is missing from the test table",
            learner=final.learner
        )

    X, y = final.recipe.xy(test_table)
    token.consume()
    predicted = final.fitted.predict(X)
    residuals = pd.DataFrame({
        'observed': y,
        'predicted': predicted,
        'residual': y - predicted
    }, index=test_table.index)
    test_rmse = rmse(y, predicted)

    logger.info("=" * 60)
    logger.info(f"TEST EVALUATION: {final.learner}")
    logger.info(f"  Test RMSE: {test_rmse:.4f} on {len(y)} rows")
    if final.cv_rmse is not None:
        logger.info(f"  CV RMSE:   {final.cv_rmse:.4f}")
    logger.info("=" * 60)
    return test_rmse, residuals


def plot_observed_vs_predicted(
    residuals: pd.DataFrame,
    title: str = "Observed vs Predicted",
    figsize: Tuple[int, int] = (6, 6),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Scatter of observed against predicted outcome with the identity line.

    Args:
        residuals: DataFrame with 'observed' and 'predicted' columns
        title: Plot title
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    fig, ax = plt.subplots(figsize=figsize)
    ax.scatter(residuals['observed'], residuals['predicted'], alpha=0.5, s=20)

    low = min(residuals['observed'].min(), residuals['predicted'].min())
    high = max(residuals['observed'].max(), residuals['predicted'].max())
    ax.plot([low, high], [low, high], 'r--', linewidth=2, label='Perfect')

    score = rmse(residuals['observed'], residuals['predicted'])
    ax.set_xlabel('Observed')
    ax.set_ylabel('Predicted')
    ax.set_title(f'{title}\nRMSE={score:.4f}', fontsize=11, fontweight='bold')
    ax.legend(loc='upper left', fontsize=8)
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Observed vs predicted plot saved to {save_path}")
    return fig


def plot_residuals(
    residuals: pd.DataFrame,
    title: str = "Residuals",
    figsize: Tuple[int, int] = (12, 5),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Residual-vs-predicted scatter next to the residual distribution.

    Args:
        residuals: DataFrame with 'predicted' and 'residual' columns
        title: Plot title
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    fig, axes = plt.subplots(1, 2, figsize=figsize)

    axes[0].scatter(residuals['predicted'], residuals['residual'], alpha=0.5, s=20)
    axes[0].axhline(0, color='red', linestyle='--', linewidth=2)
    axes[0].set_xlabel('Predicted')
    axes[0].set_ylabel('Residual (Observed - Predicted)')
    axes[0].set_title('Residuals vs Predicted', fontsize=10, fontweight='bold')

    sns.histplot(residuals['residual'], kde=True, ax=axes[1], bins=30, alpha=0.7)
    axes[1].axvline(0, color='red', linestyle='--', linewidth=2)
    axes[1].set_xlabel('Residual')
    axes[1].set_title(f"Std: {np.std(residuals['residual']):.4f}", fontsize=10, fontweight='bold')

    plt.suptitle(title, fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Residuals plot saved to {save_path}")
    return fig


def plot_importance(
    importance: pd.Series,
    top_n: int = 15,
    figsize: Tuple[int, int] = (8, 6),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Horizontal bar chart of the largest permutation importances.

    Args:
        importance: Importance per design column, any order
        top_n: Number of bars
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    top = importance.sort_values(ascending=False, kind='mergesort').head(top_n)
    fig, ax = plt.subplots(figsize=figsize)
    sns.barplot(x=top.values, y=list(top.index), ax=ax, color='steelblue')
    ax.set_xlabel('Increase in RMSE when permuted')
    ax.set_ylabel('')
    ax.set_title('Permutation Importance', fontsize=12, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Importance plot saved to {save_path}")
    return fig


def plot_tree_diagram(
    final: FinalizedModel,
    figsize: Tuple[int, int] = (14, 8),
    save_path: Optional[str] = None
) -> plt.Figure:
    """Draw a finalized regression tree."""
    fig, ax = plt.subplots(figsize=figsize)
    sk_plot_tree(
        final.fitted.estimator,
        feature_names=list(final.fitted.feature_names),
        filled=True,
        rounded=True,
        precision=2,
        ax=ax
    )
    ax.set_title(f"Regression tree {final.params}", fontsize=12, fontweight='bold')

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Tree diagram saved to {save_path}")
    return fig


def plot_tuning_profile(
    record: TuningRecord,
    figsize: Tuple[int, int] = (14, 4),
    save_path: Optional[str] = None
) -> Optional[plt.Figure]:
    """
    Mean RMSE ± one standard error against each hyperparameter axis.

    Returns None for learners without hyperparameters.
    """
    axes_names = record.param_names
    if not axes_names:
        return None

    summary = record.summary()
    fig, axes = plt.subplots(1, len(axes_names), figsize=figsize, squeeze=False)
    for ax, name in zip(axes[0], axes_names):
        ax.errorbar(
            summary[name], summary['mean_rmse'], yerr=summary['se_rmse'].fillna(0),
            fmt='o', alpha=0.6, markersize=4, capsize=2
        )
        if record.learner.axis(name).log:
            ax.set_xscale('log')
        ax.set_xlabel(name)
        ax.set_ylabel('Mean RMSE')
        ax.set_title(name, fontsize=10, fontweight='bold')

    plt.suptitle(f'Tuning Profile - {record.learner.display_name}', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Tuning profile saved to {save_path}")
    return fig


def generate_model_figures(
    finals: Dict[str, FinalizedModel],
    records: Dict[str, TuningRecord],
    output_dir: str
) -> List[str]:
    """
    Write diagnostic figures for every finalized learner.

    Args:
        finals: Finalized model per learner
        records: Tuning record per learner
        output_dir: Directory for the PNG files

    Returns:
        List of written file names
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    figures = []

    for name, record in records.items():
        fig = plot_tuning_profile(record, save_path=str(output_dir / f"tuning_{name}.png"))
        if fig is not None:
            figures.append(f"tuning_{name}.png")

    for name, final in finals.items():
        plot_observed_vs_predicted(
            final.train_residuals, title=f"{name}: training half",
            save_path=str(output_dir / f"train_observed_vs_predicted_{name}.png")
        )
        plot_residuals(
            final.train_residuals, title=f"{name}: training residuals",
            save_path=str(output_dir / f"train_residuals_{name}.png")
        )
        figures.extend([f"train_observed_vs_predicted_{name}.png", f"train_residuals_{name}.png"])

        if 'importance' in final.artifacts:
            plot_importance(final.artifacts['importance'],
                            save_path=str(output_dir / f"importance_{name}.png"))
            figures.append(f"importance_{name}.png")
        if 'tree_text' in final.artifacts:
            plot_tree_diagram(final, save_path=str(output_dir / f"tree_{name}.png"))
            figures.append(f"tree_{name}.png")

    plt.close('all')
    return figures


def print_evaluation_report(results: Dict[str, Any]) -> None:
    """
    Print a formatted test-set report to console.

    Args:
        results: Dictionary with 'selected' learner name and 'models', a list of
            per-model dicts holding learner, cv_rmse, test_rmse and metrics
    """
    print("\n" + "=" * 70)
    print("TEST SET EVALUATION")
    print("=" * 70)
    print(f"{'Learner':<12} {'CV RMSE':<12} {'Test RMSE':<12} {'MAE':<12} {'R²':<12}")
    print("-" * 70)

    for row in results['models']:
        marker = " *" if row['learner'] == results['selected'] else ""
        cv = f"{row['cv_rmse']:.4f}" if row.get('cv_rmse') is not None else "N/A"
        print(f"{row['learner'] + marker:<12} {cv:<12} {row['test_rmse']:<12.4f} "
              f"{row['metrics']['mae']:<12.4f} {row['metrics']['r2']:<12.4f}")

    print("-" * 70)
    selected = next(r for r in results['models'] if r['learner'] == results['selected'])
    if selected.get('cv_rmse') is not None:
        gap = selected['test_rmse'] - selected['cv_rmse']
        print(f"\nSelected model: {results['selected']} (test - CV RMSE gap: {gap:+.4f})")
    print("=" * 70 + "\n")
