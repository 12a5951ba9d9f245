"""
Hyperparameter Tuning Module
============================

Grid enumeration and resampled scoring of learners.

Every (tuple, resample) pair is an independent work unit: learn the recipe on
the analysis rows, fit the learner, encode and predict the assessment rows,
score RMSE. Units run on a joblib thread pool; each one seeds itself from
(master seed, learner, tuple id, resample index), so results do not depend on
the number of workers or the order units finish in.

Classes:
    - GridSpec: regular, explicit or crossed hyperparameter grids
    - TuningRecord: per-resample scores and their per-tuple aggregate

Functions:
    - tune: Score every grid tuple on every resample
    - fit_resamples: Score a single tuple without search
"""

import itertools
import logging
import time
from pathlib import Path
from threading import Event
from typing import Dict, Any, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import stats
from sklearn.metrics import mean_squared_error

from .data_loader import read_csv
from .exceptions import Cancelled, ConfigError, LearnerFitFailure, TuneExhausted
from .learners import Learner, get_learner
from .recipe import DummyRecipe
from .resampling import ResampleSet, derive_seed

logger = logging.getLogger(__name__)

# A tuple missing scores on at least this share of resamples is not ranked;
# a learner with at least this share of unranked tuples is exhausted.
MISSING_TOLERANCE = 0.5

SUMMARY_METRICS = ['mean_rmse', 'se_rmse', 'n_resamples']


def rmse(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """Root mean squared error."""
    return float(np.sqrt(mean_squared_error(y_true, y_pred)))


class GridSpec:
    """
    The hyperparameter tuples to evaluate for one learner.

    Build with GridSpec.regular, GridSpec.explicit, GridSpec.crossed or
    GridSpec.from_config; all values are validated against the learner's axes.
    """

    def __init__(self, learner: Learner, kind: str, tuples: List[Dict[str, Any]],
                 options: Optional[Dict[str, Any]] = None):
        self.learner = learner
        self.kind = kind
        self.tuples = tuples
        self.options = options or {}

    def __len__(self) -> int:
        return len(self.tuples)

    def __iter__(self):
        return iter(self.tuples)

    @classmethod
    def regular(
        cls,
        learner: Learner,
        levels: Union[int, Dict[str, int]] = 3,
        ranges: Optional[Dict[str, Sequence[float]]] = None
    ) -> 'GridSpec':
        """
        Cartesian product of evenly spaced values along each axis.

        Args:
            learner: Learner whose axes are sampled
            levels: Levels per axis, or a mapping axis -> levels
            ranges: Optional mapping axis -> [low, high] overriding the default range
        """
        key = f"grids.{learner.name}"
        ranges = dict(ranges or {})
        for name in ranges:
            learner.axis(name)
        if isinstance(levels, dict):
            for name in levels:
                learner.axis(name)

        axis_values = []
        for axis in learner.axes:
            n = levels.get(axis.name, 3) if isinstance(levels, dict) else levels
            if isinstance(n, bool) or not isinstance(n, int) or n < 1:
                raise ConfigError(f"levels must be a positive integer, got {n!r}",
                                  key=f"{key}.{axis.name}")
            low, high = ranges.get(axis.name, (axis.low, axis.high))
            low = axis.validate(low, learner.name)
            high = axis.validate(high, learner.name)
            if low > high:
                raise ConfigError(f"range [{low}, {high}] is empty", key=f"{key}.{axis.name}")
            axis_values.append(axis.regular(n, low, high))

        tuples = [dict(zip(learner.param_names, combo)) for combo in itertools.product(*axis_values)]
        return cls(learner, 'regular', tuples, {'levels': levels, 'ranges': ranges})

    @classmethod
    def explicit(cls, learner: Learner, tuples: Sequence[Dict[str, Any]]) -> 'GridSpec':
        """Caller-supplied tuples, evaluated in the given order."""
        if not tuples:
            raise ConfigError("explicit grid needs at least one tuple", key=f"grids.{learner.name}")
        checked = [learner.validate_params(t) for t in tuples]
        return cls(learner, 'explicit', checked)

    @classmethod
    def crossed(cls, learner: Learner, values: Dict[str, Sequence[Any]]) -> 'GridSpec':
        """Cartesian product of explicit per-axis values."""
        key = f"grids.{learner.name}"
        if set(values) != set(learner.param_names):
            raise ConfigError(
                f"crossed grid must list values for {learner.param_names}, got {sorted(values)}",
                key=key
            )
        for name, vals in values.items():
            if isinstance(vals, (str, bytes)) or not isinstance(vals, Sequence) or not vals:
                raise ConfigError("expected a non-empty list of values", key=f"{key}.{name}")
        product = itertools.product(*[values[name] for name in learner.param_names])
        tuples = [dict(zip(learner.param_names, combo)) for combo in product]
        grid = cls.explicit(learner, tuples)
        grid.kind = 'crossed'
        grid.options = {'values': {k: list(v) for k, v in values.items()}}
        return grid

    @classmethod
    def from_config(cls, learner: Learner, spec: Dict[str, Any]) -> 'GridSpec':
        """
        Build a grid from its configuration mapping.

        Accepted forms:
            {type: regular, levels: int | {axis: int}, ranges: {axis: [low, high]}}
            {type: explicit, tuples: [{axis: value, ...}, ...]}
            {type: crossed, values: {axis: [value, ...]}}
        """
        key = f"grids.{learner.name}"
        if not isinstance(spec, dict):
            raise ConfigError(f"expected a mapping, got {spec!r}", key=key)
        kind = spec.get('type', 'regular')
        if not learner.axes:
            return cls(learner, kind, [{}])
        if kind == 'regular':
            return cls.regular(learner, spec.get('levels', 3), spec.get('ranges'))
        if kind == 'explicit':
            return cls.explicit(learner, spec.get('tuples') or [])
        if kind == 'crossed':
            return cls.crossed(learner, spec.get('values') or {})
        raise ConfigError(f"unknown grid type {kind!r}; use regular, explicit or crossed", key=key)

    def describe(self) -> Dict[str, Any]:
        return {'type': self.kind, 'n_tuples': len(self.tuples), **self.options}

    def __repr__(self) -> str:
        return f"GridSpec({self.learner.name}, {self.kind}, {len(self.tuples)} tuples)"


class TuningRecord:
    """
    Append-only table of per-resample scores for one learner.

    `metrics` has one row per (tuple, resample) with columns
    tuple_id, <hyperparameters>, resample_id, rmse, failure. A missing score is
    NaN with the failure reason alongside.
    """

    def __init__(self, learner: Learner, metrics: pd.DataFrame, n_resamples: int):
        self.learner = learner
        self.metrics = metrics
        self.n_resamples = n_resamples

    @property
    def param_names(self) -> List[str]:
        return self.learner.param_names

    @property
    def n_tuples(self) -> int:
        return int(self.metrics['tuple_id'].nunique())

    def aggregate(self) -> pd.DataFrame:
        """
        One row per tuple: hyperparameters, mean and standard error of RMSE
        over the resamples that scored, their count, the number of missing
        cells and whether the tuple is excluded from ranking.
        """
        rows = []
        for tuple_id, cells in self.metrics.groupby('tuple_id', sort=True):
            scores = cells['rmse'].to_numpy(dtype=float)
            scores = scores[~np.isnan(scores)]
            n_missing = len(cells) - len(scores)
            row = {'tuple_id': int(tuple_id)}
            row.update({name: cells[name].iloc[0] for name in self.param_names})
            row['mean_rmse'] = float(np.mean(scores)) if len(scores) else np.nan
            row['se_rmse'] = float(stats.sem(scores, ddof=1)) if len(scores) > 1 else np.nan
            row['n_resamples'] = int(len(scores))
            row['n_missing'] = int(n_missing)
            row['excluded'] = bool(n_missing >= MISSING_TOLERANCE * len(cells))
            rows.append(row)
        return pd.DataFrame(rows, columns=['tuple_id', *self.param_names, *SUMMARY_METRICS,
                                           'n_missing', 'excluded'])

    def summary(self, include_excluded: bool = False) -> pd.DataFrame:
        """
        Aggregated record ranked best first.

        Order: mean RMSE, then standard error, then the learner's preference
        for simpler models, then tuple id.
        """
        agg = self.aggregate()
        if not include_excluded:
            agg = agg[~agg['excluded']]

        def rank_key(i):
            row = agg.loc[i]
            se = row['se_rmse'] if not np.isnan(row['se_rmse']) else np.inf
            params = {name: row[name] for name in self.param_names}
            mean = row['mean_rmse'] if not np.isnan(row['mean_rmse']) else np.inf
            return (mean, se, *self.learner.simplicity_key(params), row['tuple_id'])

        order = sorted(agg.index, key=rank_key)
        return agg.loc[order].reset_index(drop=True)

    def tuple_params(self, tuple_id: int) -> Dict[str, Any]:
        cells = self.metrics[self.metrics['tuple_id'] == tuple_id]
        if cells.empty:
            raise KeyError(f"No tuple {tuple_id} in the {self.learner.name} record")
        first = cells.iloc[0]
        return self.learner.validate_params({name: first[name] for name in self.param_names})

    def save(self, output_dir: str) -> Dict[str, str]:
        """
        Write the ranked summary and the per-resample cells as CSV.

        Returns:
            Mapping with 'summary' and 'resamples' file paths
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        summary_path = output_dir / f"tuning_{self.learner.name}.csv"
        cells_path = output_dir / f"tuning_{self.learner.name}_resamples.csv"

        summary = self.summary()[['tuple_id', *self.param_names, *SUMMARY_METRICS]]
        summary.to_csv(summary_path, index=False)
        self.metrics.to_csv(cells_path, index=False)

        logger.info(f"Tuning record for {self.learner.name} saved to {summary_path}")
        return {'summary': str(summary_path), 'resamples': str(cells_path)}

    @classmethod
    def load(cls, output_dir: str, learner_name: str) -> 'TuningRecord':
        """Rebuild a record from the per-resample file written by save()."""
        learner = get_learner(learner_name)
        cells_path = Path(output_dir) / f"tuning_{learner_name}_resamples.csv"
        if not cells_path.exists():
            raise FileNotFoundError(f"No tuning record at {cells_path}")
        metrics = read_csv(cells_path, float_precision='round_trip',
                           dtype={'resample_id': str, 'failure': str})
        metrics['failure'] = metrics['failure'].fillna('')
        n_resamples = int(metrics['resample_id'].nunique())
        logger.info(f"Loaded tuning record for {learner_name} from {cells_path}")
        return cls(learner, metrics, n_resamples)

    def __repr__(self) -> str:
        return (f"TuningRecord({self.learner.name}, tuples={self.n_tuples}, "
                f"resamples={self.n_resamples})")


def _run_unit(
    learner: Learner,
    recipe: DummyRecipe,
    data: pd.DataFrame,
    params: Dict[str, Any],
    tuple_id: int,
    resample,
    resample_index: int,
    seed: int,
    cancel_event: Optional[Event],
    unit_timeout: Optional[float]
) -> Dict[str, Any]:
    result = {
        'tuple_id': tuple_id,
        'resample_index': resample_index,
        'resample_id': resample.id,
        'rmse': np.nan,
        'failure': '',
        'cancelled': False
    }
    if cancel_event is not None and cancel_event.is_set():
        result['cancelled'] = True
        return result

    start = time.perf_counter()
    try:
        analysis = data.iloc[resample.analysis]
        assessment = data.iloc[resample.assessment]

        learned = recipe.learned_on(analysis)
        X_fit, y_fit = learned.xy(analysis)
        estimator = learner.build(params, seed)
        fitted = learner.fit(estimator, X_fit, y_fit, params, learned.feature_names)

        X_new, y_new = learned.xy(assessment)
        predictions = fitted.predict(X_new)
        if not np.all(np.isfinite(predictions)):
            raise ValueError("non-finite predictions")
        score = rmse(y_new, predictions)
    except Exception as e:
        failure = LearnerFitFailure(
            f"{type(e).__name__}: {e}", cause=e,
            learner=learner.name, tuple_id=tuple_id, resample_id=resample.id
        )
        logger.warning(f"Work unit failed: {failure}")
        result['failure'] = failure.message
        return result

    elapsed = time.perf_counter() - start
    if unit_timeout is not None and elapsed > unit_timeout:
        logger.warning(
            f"Work unit exceeded {unit_timeout:.1f}s ({elapsed:.1f}s) "
            f"[learner={learner.name}, tuple={tuple_id}, resample={resample.id}]"
        )
        result['failure'] = f"timeout after {elapsed:.1f}s"
        return result

    result['rmse'] = score
    return result


def tune(
    learner: Learner,
    recipe: DummyRecipe,
    resamples: ResampleSet,
    grid: Union[GridSpec, Sequence[Dict[str, Any]]],
    master_seed: int = 123,
    workers: int = 1,
    cancel_event: Optional[Event] = None,
    unit_timeout: Optional[float] = None
) -> TuningRecord:
    """
    Score every grid tuple on every resample.

    Args:
        learner: Learner to tune
        recipe: Recipe learned afresh on each analysis set
        resamples: Training table and its resamples
        grid: GridSpec or list of hyperparameter dicts
        master_seed: Base of every per-unit seed
        workers: Size of the thread pool
        cancel_event: Checked before each unit starts; if set, the call fails
        unit_timeout: Seconds; a unit taking longer is recorded as missing

    Returns:
        TuningRecord with one row per (tuple, resample)

    Raises:
        Cancelled: If cancel_event was set during the run
        TuneExhausted: If at least half of the tuples are excluded from ranking
    """
    if not isinstance(grid, GridSpec):
        grid = GridSpec.explicit(learner, list(grid))
    tuples = grid.tuples

    if cancel_event is not None and cancel_event.is_set():
        raise Cancelled("Tuning cancelled before start", learner=learner.name)

    n_units = len(tuples) * len(resamples)
    logger.info("=" * 60)
    logger.info(f"TUNING {learner.display_name.upper()} ({learner.name})")
    logger.info("=" * 60)
    logger.info(f"  Grid: {len(tuples)} tuples × {len(resamples)} resamples = {n_units} work units")
    logger.info(f"  Workers: {workers}")

    start = time.perf_counter()
    data = resamples.data
    jobs = (
        delayed(_run_unit)(
            learner, recipe, data, params, tuple_id, resample, r_index,
            derive_seed(master_seed, learner.name, tuple_id, r_index),
            cancel_event, unit_timeout
        )
        for tuple_id, params in enumerate(tuples, start=1)
        for r_index, resample in enumerate(resamples)
    )
    results = Parallel(n_jobs=workers, prefer="threads")(jobs)

    if cancel_event is not None and cancel_event.is_set():
        done = sum(1 for r in results if not r['cancelled'])
        raise Cancelled(
            f"Tuning cancelled after {done} of {n_units} work units; results discarded",
            learner=learner.name
        )

    results.sort(key=lambda r: (r['tuple_id'], r['resample_index']))
    rows = []
    for r in results:
        row = {'tuple_id': r['tuple_id']}
        row.update(tuples[r['tuple_id'] - 1])
        row.update({'resample_id': r['resample_id'], 'rmse': r['rmse'], 'failure': r['failure']})
        rows.append(row)
    metrics = pd.DataFrame(rows, columns=['tuple_id', *learner.param_names,
                                          'resample_id', 'rmse', 'failure'])
    record = TuningRecord(learner, metrics, len(resamples))

    agg = record.aggregate()
    n_failed = int((metrics['failure'] != '').sum())
    n_excluded = int(agg['excluded'].sum())
    elapsed = time.perf_counter() - start
    logger.info(f"  Completed in {elapsed:.1f}s: {n_failed} failed units, "
                f"{n_excluded} excluded tuples")

    if n_excluded >= MISSING_TOLERANCE * len(agg):
        raise TuneExhausted(
            f"{n_excluded} of {len(agg)} tuples have missing scores on at least "
            f"{MISSING_TOLERANCE:.0%} of resamples",
            learner=learner.name
        )

    best = record.summary().iloc[0]
    logger.info(f"  Best tuple {int(best['tuple_id'])}: mean RMSE {best['mean_rmse']:.4f} "
                f"(SE {best['se_rmse']:.4f})")
    return record


def fit_resamples(
    learner: Learner,
    recipe: DummyRecipe,
    resamples: ResampleSet,
    params: Optional[Dict[str, Any]] = None,
    **kwargs: Any
) -> TuningRecord:
    """
    Resample a single hyperparameter tuple without any search.

    Used for learners without hyperparameters and single-tuple grids; the
    record still carries the CV estimate needed to compare learners.
    """
    params = learner.validate_params(params or {})
    logger.info(f"Single tuple for {learner.name}, skipping search: {params}")
    grid = GridSpec(learner, 'explicit', [params])
    return tune(learner, recipe, resamples, grid, **kwargs)
