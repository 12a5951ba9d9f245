"""
Learner Registry
================

Regression learners with a uniform build/fit/predict contract and a declared
hyperparameter space.

Learners:
    - null: Predicts the training-outcome mean (DummyRegressor)
    - tree: CART regression tree with cost-complexity pruning (DecisionTreeRegressor)
    - lasso: L1-penalised linear model on the standardized design (StandardScaler + Lasso)
    - forest: Random forest with per-split predictor sampling (RandomForestRegressor)

Adding a learner means subclassing Learner, declaring its axes and calling
register_learner.
"""

import logging
from collections import OrderedDict
from typing import Dict, Any, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.dummy import DummyRegressor
from sklearn.ensemble import RandomForestRegressor
from sklearn.inspection import permutation_importance
from sklearn.linear_model import Lasso
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.tree import DecisionTreeRegressor, export_text

from .exceptions import ConfigError

logger = logging.getLogger(__name__)


class ParamAxis:
    """
    One tunable hyperparameter.

    Args:
        name: Axis name as used in grids and tuning records
        kind: 'int' or 'float'
        low, high: Default range sampled by regular grids
        log: Sample the range on a log10 scale
        minimum: Hard lower bound for any value
        exclusive: Whether the lower bound itself is excluded
    """

    def __init__(
        self,
        name: str,
        kind: str,
        low: float,
        high: float,
        log: bool = False,
        minimum: float = 1,
        exclusive: bool = False
    ):
        if kind not in ('int', 'float'):
            raise ValueError(f"Unknown axis kind: {kind}")
        self.name = name
        self.kind = kind
        self.low = low
        self.high = high
        self.log = log
        self.minimum = minimum
        self.exclusive = exclusive

    def validate(self, value: Any, learner: Optional[str] = None) -> Any:
        """Check a value against the hard bounds and cast it to the axis type."""
        key = f"grids.{learner}.{self.name}" if learner else self.name
        if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
            raise ConfigError(f"expected a number, got {value!r}", key=key)
        if self.kind == 'int':
            if float(value) != int(value):
                raise ConfigError(f"expected an integer, got {value!r}", key=key)
            value = int(value)
        else:
            value = float(value)
        if not np.isfinite(value):
            raise ConfigError(f"must be finite, got {value!r}", key=key)
        too_low = value <= self.minimum if self.exclusive else value < self.minimum
        if too_low:
            relation = ">" if self.exclusive else ">="
            raise ConfigError(f"must be {relation} {self.minimum}, got {value}", key=key)
        return value

    def regular(self, levels: int, low: Optional[float] = None, high: Optional[float] = None) -> List[Any]:
        """
        Evenly spaced values over [low, high] (log-spaced for log axes).

        Integer axes are rounded and de-duplicated, so they may return fewer
        than `levels` values.
        """
        low = self.low if low is None else low
        high = self.high if high is None else high
        if levels == 1:
            raw = np.array([low], dtype=float)
        elif self.log:
            raw = 10 ** np.linspace(np.log10(low), np.log10(high), levels)
        else:
            raw = np.linspace(low, high, levels)

        if self.kind == 'int':
            values = []
            for v in np.round(raw).astype(int):
                if int(v) not in values:
                    values.append(int(v))
            return values
        return [float(v) for v in raw]

    def __repr__(self) -> str:
        scale = ", log" if self.log else ""
        return f"ParamAxis({self.name}: {self.kind} [{self.low}, {self.high}]{scale})"


class FittedModel:
    """
    A learner fitted at one hyperparameter tuple.

    Holds the fitted engine together with the feature names it was trained on
    and any side artifacts (tree text, coefficients, importances).
    """

    def __init__(
        self,
        learner: str,
        params: Dict[str, Any],
        estimator: Any,
        feature_names: Sequence[str],
        n_train: int
    ):
        self.learner = learner
        self.params = dict(params)
        self.estimator = estimator
        self.feature_names = tuple(feature_names)
        self.n_train = n_train
        self.artifacts: Dict[str, Any] = {}

    def predict(self, X: np.ndarray) -> np.ndarray:
        """
        Predict the outcome for each design-matrix row.

        Args:
            X: Array of shape (n_samples, n_features)

        Returns:
            Float array of shape (n_samples,)
        """
        X = np.asarray(X, dtype=float)
        if X.ndim != 2 or X.shape[1] != len(self.feature_names):
            raise ValueError(
                f"Expected {len(self.feature_names)} features, but got shape {X.shape}"
            )
        return np.asarray(self.estimator.predict(X), dtype=float).ravel()

    def __repr__(self) -> str:
        return f"FittedModel({self.learner}, params={self.params}, n_train={self.n_train})"


class Learner:
    """Base class: a display name, hyperparameter axes and build/fit functions."""

    name = ""
    display_name = ""
    axes: Tuple[ParamAxis, ...] = ()
    # (axis, ascending) pairs: earlier entries win ties, ascending=True prefers smaller values
    simplicity: Tuple[Tuple[str, bool], ...] = ()
    # axes whose values cannot exceed the number of design-matrix columns
    width_axes: Tuple[str, ...] = ()

    @property
    def param_names(self) -> List[str]:
        return [axis.name for axis in self.axes]

    def axis(self, name: str) -> ParamAxis:
        for axis in self.axes:
            if axis.name == name:
                return axis
        raise ConfigError(f"unknown hyperparameter '{name}' for learner '{self.name}'")

    def validate_params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Check that `params` sets exactly this learner's axes, with valid values."""
        params = dict(params)
        expected = set(self.param_names)
        if set(params) != expected:
            raise ConfigError(
                f"expected hyperparameters {sorted(expected)}, got {sorted(params)}",
                key=f"grids.{self.name}"
            )
        return {axis.name: axis.validate(params[axis.name], self.name) for axis in self.axes}

    def check_width(self, params: Dict[str, Any], n_features: int) -> None:
        """Raise ConfigError if a width-bounded axis exceeds `n_features`."""
        for name in self.width_axes:
            if params[name] > n_features:
                raise ConfigError(
                    f"must be at most the {n_features} design-matrix columns, got {params[name]}",
                    key=f"grids.{self.name}.{name}"
                )

    def simplicity_key(self, params: Dict[str, Any]) -> Tuple:
        """Sort key ranking simpler models first."""
        key = []
        for name, ascending in self.simplicity:
            value = params[name]
            key.append(value if ascending else -value)
        return tuple(key)

    def build(self, params: Dict[str, Any], seed: int) -> Any:
        raise NotImplementedError

    def fit(
        self,
        estimator: Any,
        X: np.ndarray,
        y: np.ndarray,
        params: Dict[str, Any],
        feature_names: Sequence[str]
    ) -> FittedModel:
        estimator.fit(X, y)
        return FittedModel(self.name, params, estimator, feature_names, len(y))

    def describe(self, fitted: FittedModel) -> Dict[str, Any]:
        """Learner-specific artifacts of a finalized model."""
        return {}

    def importance(
        self,
        fitted: FittedModel,
        X: np.ndarray,
        y: np.ndarray,
        seed: int
    ) -> Optional[pd.Series]:
        """Per-feature importance, or None when the learner does not record one."""
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(axes={self.param_names})"


class NullLearner(Learner):
    """Baseline: the training-outcome mean for every row."""

    name = "null"
    display_name = "Null model (mean)"

    def build(self, params: Dict[str, Any], seed: int) -> DummyRegressor:
        return DummyRegressor(strategy="mean")

    def describe(self, fitted: FittedModel) -> Dict[str, Any]:
        return {'mean': float(np.ravel(fitted.estimator.constant_)[0])}


class TreeLearner(Learner):
    """
    Single regression tree.

    cost_complexity is relative to the root-node error, as in rpart's cp: the
    engine's ccp_alpha is cost_complexity times the training-outcome variance.
    min_n is the smallest node that may still be split.
    """

    name = "tree"
    display_name = "Decision tree"
    axes = (
        ParamAxis('cost_complexity', 'float', 1e-10, 1e-1, log=True, minimum=0, exclusive=True),
        ParamAxis('tree_depth', 'int', 1, 15),
        ParamAxis('min_n', 'int', 2, 40),
    )
    simplicity = (('cost_complexity', False), ('tree_depth', True), ('min_n', False))

    def build(self, params: Dict[str, Any], seed: int) -> DecisionTreeRegressor:
        return DecisionTreeRegressor(
            max_depth=params['tree_depth'],
            min_samples_split=max(2, params['min_n']),
            random_state=seed
        )

    def fit(self, estimator, X, y, params, feature_names) -> FittedModel:
        root_error = float(np.var(y))
        estimator.set_params(ccp_alpha=params['cost_complexity'] * root_error)
        return super().fit(estimator, X, y, params, feature_names)

    def describe(self, fitted: FittedModel) -> Dict[str, Any]:
        tree = fitted.estimator
        return {
            'depth': int(tree.get_depth()),
            'n_leaves': int(tree.get_n_leaves()),
            'distinct_predictions': int(len(np.unique(tree.tree_.value[tree.tree_.children_left == -1]))),
            'tree_text': export_text(tree, feature_names=list(fitted.feature_names), decimals=3)
        }


class LassoLearner(Learner):
    """
    Lasso on the standardized design matrix.

    Columns are centred and scaled with statistics of the fitting rows; the
    intercept is not penalised.
    """

    name = "lasso"
    display_name = "L1-penalised linear regression"
    axes = (
        ParamAxis('penalty', 'float', 1e-10, 1.0, log=True, minimum=0, exclusive=True),
    )
    simplicity = (('penalty', False),)

    max_iter = 10000

    def build(self, params: Dict[str, Any], seed: int) -> Pipeline:
        return Pipeline([
            ('scale', StandardScaler()),
            ('lasso', Lasso(alpha=params['penalty'], max_iter=self.max_iter))
        ])

    def coefficients(self, fitted: FittedModel) -> pd.Series:
        lasso = fitted.estimator.named_steps['lasso']
        return pd.Series(lasso.coef_, index=list(fitted.feature_names), name='coefficient')

    def describe(self, fitted: FittedModel) -> Dict[str, Any]:
        coefs = self.coefficients(fitted)
        nonzero = coefs[coefs != 0]
        return {
            'intercept': float(fitted.estimator.named_steps['lasso'].intercept_),
            'coefficients': coefs.to_dict(),
            'nonzero': nonzero.reindex(nonzero.abs().sort_values(ascending=False).index).to_dict(),
            'n_nonzero': int(len(nonzero))
        }


class ForestLearner(Learner):
    """
    Random forest: `trees` bootstrap trees, `mtry` candidate predictors per split.

    Permutation importance is computed on request for finalized models.
    """

    name = "forest"
    display_name = "Random forest"
    axes = (
        ParamAxis('mtry', 'int', 1, 10),
        ParamAxis('min_n', 'int', 2, 40),
        ParamAxis('trees', 'int', 1, 2000),
    )
    simplicity = (('trees', True), ('mtry', True), ('min_n', False))
    width_axes = ('mtry',)

    importance_repeats = 5

    def build(self, params: Dict[str, Any], seed: int) -> RandomForestRegressor:
        return RandomForestRegressor(
            n_estimators=params['trees'],
            max_features=params['mtry'],
            min_samples_split=max(2, params['min_n']),
            bootstrap=True,
            random_state=seed,
            n_jobs=1
        )

    def fit(self, estimator, X, y, params, feature_names) -> FittedModel:
        if params['mtry'] > X.shape[1]:
            raise ValueError(
                f"mtry={params['mtry']} exceeds the {X.shape[1]} available predictors"
            )
        return super().fit(estimator, X, y, params, feature_names)

    def importance(self, fitted, X, y, seed) -> pd.Series:
        result = permutation_importance(
            fitted.estimator, X, y,
            scoring='neg_root_mean_squared_error',
            n_repeats=self.importance_repeats,
            random_state=seed,
            n_jobs=1
        )
        importance = pd.Series(result.importances_mean, index=list(fitted.feature_names),
                               name='importance')
        return importance.sort_values(ascending=False, kind='mergesort')


LEARNERS: 'OrderedDict[str, Learner]' = OrderedDict()


def register_learner(learner: Learner) -> Learner:
    """Add a learner to the registry under its name."""
    if not learner.name:
        raise ValueError("Learner must declare a name")
    LEARNERS[learner.name] = learner
    return learner


def get_learner(name: str) -> Learner:
    if name not in LEARNERS:
        raise ConfigError(f"unknown learner '{name}'; choose from {list(LEARNERS)}", key="learners")
    return LEARNERS[name]


for _learner in (NullLearner(), TreeLearner(), LassoLearner(), ForestLearner()):
    register_learner(_learner)
