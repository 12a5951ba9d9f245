"""
Model Selection Module
======================

Picks the best tuple from a tuning record, refits it on the full training
half, and compares the finalized candidates across learners.

Features:
    - select_best: Best tuple of one learner (mean RMSE, SE, simpler model)
    - select_overall: Best learner among finalized candidates
    - finalize: Refit at a tuple, with training residuals and artifacts
    - One-shot evaluation token issued with every finalized model
    - Model persistence (joblib blob with a format version)
"""

import logging
import threading
import uuid
from pathlib import Path
from typing import Dict, Any, List, Optional

import joblib
import numpy as np
import pandas as pd

from . import __version__
from .exceptions import EvaluatorReuse, InputSchemaError, TuneExhausted
from .learners import FittedModel, Learner, LEARNERS
from .recipe import DummyRecipe, LearnedRecipe
from .resampling import derive_seed
from .tuning import TuningRecord, rmse

logger = logging.getLogger(__name__)

MODEL_FORMAT_VERSION = 1


class EvaluationToken:
    """Permission to evaluate one finalized model on the test half, exactly once."""

    def __init__(self, model_id: str):
        self.model_id = model_id
        self._consumed = False
        self._lock = threading.Lock()

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> None:
        with self._lock:
            if self._consumed:
                raise EvaluatorReuse(
                    f"Model {self.model_id} has already been evaluated on the test set"
                )
            self._consumed = True

    def __repr__(self) -> str:
        state = "consumed" if self._consumed else "unused"
        return f"EvaluationToken({self.model_id}, {state})"


class FinalizedModel:
    """
    A learner refitted on the full training half at its selected tuple.

    Attributes:
        learner: Learner name
        params: Selected hyperparameters
        fitted: FittedModel
        recipe: LearnedRecipe learned on the training half
        train_residuals: DataFrame with observed, predicted and residual columns
        train_rmse: RMSE on the training half
        cv_rmse, cv_se: Resampled estimate of the selected tuple
        token: One-shot EvaluationToken
    """

    def __init__(
        self,
        learner: str,
        params: Dict[str, Any],
        fitted: FittedModel,
        recipe: LearnedRecipe,
        train_residuals: pd.DataFrame,
        cv_rmse: Optional[float] = None,
        cv_se: Optional[float] = None
    ):
        self.model_id = f"{learner}-{uuid.uuid4().hex[:8]}"
        self.learner = learner
        self.params = dict(params)
        self.fitted = fitted
        self.recipe = recipe
        self.train_residuals = train_residuals
        self.train_rmse = rmse(train_residuals['observed'], train_residuals['predicted'])
        self.cv_rmse = cv_rmse
        self.cv_se = cv_se
        self.token = EvaluationToken(self.model_id)

    @property
    def artifacts(self) -> Dict[str, Any]:
        return self.fitted.artifacts

    def predict(self, table: pd.DataFrame) -> np.ndarray:
        """Encode a table with the learned recipe and predict."""
        X, _ = self.recipe.xy(table)
        return self.fitted.predict(X)

    def save(self, filepath: str) -> None:
        """
        Save the finalized model to disk.

        The blob carries a format version and the hyperparameters used; the
        evaluation token is not persisted.
        """
        state = {
            'format_version': MODEL_FORMAT_VERSION,
            'package_version': __version__,
            'learner': self.learner,
            'hyperparameters': self.params,
            'feature_names': list(self.fitted.feature_names),
            'recipe': self.recipe,
            'estimator': self.fitted.estimator,
            'artifacts': self.fitted.artifacts,
            'train_rmse': self.train_rmse,
            'cv_rmse': self.cv_rmse,
            'cv_se': self.cv_se
        }
        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(state, filepath)
        logger.info(f"Model saved to {filepath}")

    def __repr__(self) -> str:
        return f"FinalizedModel({self.learner}, params={self.params}, train_rmse={self.train_rmse:.4f})"


def select_best(record: TuningRecord) -> Dict[str, Any]:
    """
    Select the tuple with the lowest mean RMSE.

    Ties go to the smaller standard error, then to the simpler model as
    declared by the learner.

    Args:
        record: Tuning record of one learner

    Returns:
        Dictionary with learner, tuple_id, params, mean_rmse, se_rmse, n_resamples

    Raises:
        TuneExhausted: If no tuple is eligible for ranking
    """
    summary = record.summary()
    if summary.empty:
        raise TuneExhausted("No tuple has enough scored resamples", learner=record.learner.name)

    best = summary.iloc[0]
    tuple_id = int(best['tuple_id'])
    selected = {
        'learner': record.learner.name,
        'tuple_id': tuple_id,
        'params': record.tuple_params(tuple_id),
        'mean_rmse': float(best['mean_rmse']),
        'se_rmse': float(best['se_rmse']),
        'n_resamples': int(best['n_resamples'])
    }
    logger.info(
        f"Selected {selected['learner']} tuple {tuple_id} {selected['params']}: "
        f"mean RMSE {selected['mean_rmse']:.4f}"
    )
    return selected


def select_overall(candidates: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Choose among the per-learner selections.

    Lowest mean RMSE wins; ties go to the smaller standard error, then to the
    learner registered first.
    """
    if not candidates:
        raise ValueError("No candidate models to select from")
    order = list(LEARNERS)

    def key(c):
        se = c['se_rmse'] if not np.isnan(c['se_rmse']) else np.inf
        rank = order.index(c['learner']) if c['learner'] in order else len(order)
        return (c['mean_rmse'], se, rank)

    best = min(candidates, key=key)
    logger.info(f"Overall selection: {best['learner']} (mean CV RMSE {best['mean_rmse']:.4f})")
    return best


def selection_table(candidates: List[Dict[str, Any]]) -> pd.DataFrame:
    """One row per selection: learner, tuple_id, hyperparameters, scores."""
    rows = []
    for c in candidates:
        row = {'learner': c['learner'], 'tuple_id': c['tuple_id']}
        row.update(c['params'])
        row.update({'mean_rmse': c['mean_rmse'], 'se_rmse': c['se_rmse'],
                    'n_resamples': c['n_resamples']})
        rows.append(row)
    return pd.DataFrame(rows)


def finalize(
    learner: Learner,
    recipe: DummyRecipe,
    params: Dict[str, Any],
    train_table: pd.DataFrame,
    outcome: str = "BodyTemp",
    master_seed: int = 123,
    cv_rmse: Optional[float] = None,
    cv_se: Optional[float] = None
) -> FinalizedModel:
    """
    Refit a learner at the selected tuple on the whole training half.

    Args:
        learner: Learner to refit
        recipe: Recipe, learned here on train_table
        params: Selected hyperparameters
        train_table: Training half of the cleaned table
        outcome: Outcome column name
        master_seed: Base of the refit seed
        cv_rmse, cv_se: Resampled estimate carried along for reporting

    Returns:
        FinalizedModel with training residuals and a fresh evaluation token
    """
    if recipe.outcome != outcome:
        raise InputSchemaError(
            f"Recipe predicts '{recipe.outcome}' but the outcome is '{outcome}'"
        )
    params = learner.validate_params(params)
    seed = derive_seed(master_seed, learner.name, "final")

    logger.info("=" * 60)
    logger.info(f"FINALIZING {learner.name.upper()} on {len(train_table)} training rows")
    logger.info("=" * 60)
    logger.info(f"  Hyperparameters: {params}")

    learned = recipe.learned_on(train_table)
    X, y = learned.xy(train_table)
    estimator = learner.build(params, seed)
    fitted = learner.fit(estimator, X, y, params, learned.feature_names)
    fitted.artifacts.update(learner.describe(fitted))

    importance = learner.importance(fitted, X, y, seed)
    if importance is not None:
        fitted.artifacts['importance'] = importance
        logger.info(f"  Top predictors: {list(importance.index[:5])}")

    predicted = fitted.predict(X)
    residuals = pd.DataFrame({
        'observed': y,
        'predicted': predicted,
        'residual': y - predicted
    }, index=train_table.index)

    final = FinalizedModel(learner.name, params, fitted, learned, residuals, cv_rmse, cv_se)
    logger.info(f"  Training RMSE: {final.train_rmse:.4f}")
    return final
