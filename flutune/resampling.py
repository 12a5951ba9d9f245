"""
Resampling Module
=================

Stratified train/test splitting and repeated v-fold cross-validation on a
continuous outcome.

The outcome is cut into equal-count quantile bins (20 bins from 40 rows up,
about sqrt(n) bins below that) and rows are sampled within each bin.

Functions:
    - derive_seed: Stable child seed from a master seed and keys
    - stratified_split: Training/testing partition
    - repeated_vfold: Analysis/assessment pairs over the training rows
"""

import logging
import math
import zlib
from typing import List, Tuple, Union

import numpy as np
import pandas as pd

from .cleaning import outcome_values
from .exceptions import ConfigError, DegenerateResampleError

logger = logging.getLogger(__name__)

MIN_ROWS_FOR_FULL_BINNING = 40
FULL_BIN_COUNT = 20


def derive_seed(master_seed: int, *keys: Union[int, str]) -> int:
    """
    Derive a child seed from a master seed and a path of keys.

    String keys are reduced with CRC-32 so the result is identical across
    processes and platforms.
    """
    entropy = [int(master_seed)]
    for key in keys:
        if isinstance(key, str):
            entropy.append(zlib.crc32(key.encode('utf-8')))
        else:
            entropy.append(int(key))
    return int(np.random.SeedSequence(entropy).generate_state(1)[0])


def n_strata(n: int) -> int:
    if n >= MIN_ROWS_FOR_FULL_BINNING:
        return FULL_BIN_COUNT
    return max(1, int(round(math.sqrt(n))))


def quantile_bins(y: np.ndarray) -> np.ndarray:
    """
    Assign each value to one of n_strata(len(y)) equal-count bins by rank.

    Ties are ranked by position so the assignment is deterministic.
    """
    n = len(y)
    order = np.argsort(y, kind='mergesort')
    ranks = np.empty(n, dtype=np.int64)
    ranks[order] = np.arange(n)
    return (ranks * n_strata(n)) // max(n, 1)


def _check_variance(y: np.ndarray, idx: np.ndarray, label: str) -> None:
    if len(idx) == 0:
        raise DegenerateResampleError(f"{label} is empty")
    if np.ptp(y[idx]) == 0:
        raise DegenerateResampleError(
            f"{label} has no variance in the outcome ({len(idx)} rows)"
        )


class Resample:
    """One analysis/assessment pair, as positional indices into the training table."""

    def __init__(self, resample_id: str, repeat: int, fold: int,
                 analysis: np.ndarray, assessment: np.ndarray):
        self.id = resample_id
        self.repeat = repeat
        self.fold = fold
        self.analysis = analysis
        self.assessment = assessment
        self.analysis.setflags(write=False)
        self.assessment.setflags(write=False)

    def __repr__(self) -> str:
        return (f"Resample({self.id}, analysis={len(self.analysis)}, "
                f"assessment={len(self.assessment)})")


class ResampleSet:
    """The training table together with its resamples."""

    def __init__(self, data: pd.DataFrame, outcome: str, resamples: List[Resample],
                 v: int, repeats: int, seed: int):
        self.data = data
        self.outcome = outcome
        self.resamples = resamples
        self.v = v
        self.repeats = repeats
        self.seed = seed

    def __len__(self) -> int:
        return len(self.resamples)

    def __iter__(self):
        return iter(self.resamples)

    def ids(self) -> List[str]:
        return [r.id for r in self.resamples]


def stratified_split(
    table: pd.DataFrame,
    outcome: str,
    prop: float = 0.70,
    seed: int = 123
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Split rows into training and testing sets stratified on the outcome.

    Within each quantile bin the rows are shuffled and the first
    floor(prop * bin_size) go to training.

    Args:
        table: Cleaned table
        outcome: Outcome column name
        prop: Training proportion, strictly between 0 and 1
        seed: Random seed

    Returns:
        Tuple of (train_idx, test_idx), sorted positional indices

    Raises:
        ConfigError: If prop is out of range
        DegenerateResampleError: If either side is empty or has a constant outcome
    """
    if not 0 < prop < 1:
        raise ConfigError(f"must lie strictly between 0 and 1, got {prop}", key="train_prop")

    y = outcome_values(table, outcome)
    bins = quantile_bins(y)
    rng = np.random.default_rng(seed)

    train_parts = []
    test_parts = []
    for b in np.unique(bins):
        members = np.flatnonzero(bins == b)
        shuffled = rng.permutation(members)
        n_train = int(math.floor(prop * len(members)))
        train_parts.append(shuffled[:n_train])
        test_parts.append(shuffled[n_train:])

    train_idx = np.sort(np.concatenate(train_parts))
    test_idx = np.sort(np.concatenate(test_parts))

    _check_variance(y, train_idx, "Training set")
    _check_variance(y, test_idx, "Testing set")

    logger.info(
        f"Stratified split ({n_strata(len(y))} bins, prop={prop}): "
        f"{len(train_idx)} train, {len(test_idx)} test"
    )
    return train_idx, test_idx


def vfold_assignment(y: np.ndarray, v: int, rng: np.random.Generator) -> np.ndarray:
    """
    Assign each row to one of v folds, stratified on the outcome.

    Rows are shuffled inside their bin, the bins are laid end to end, and
    fold labels are dealt round-robin along that sequence.
    """
    bins = quantile_bins(y)
    sequence = np.concatenate([
        rng.permutation(np.flatnonzero(bins == b)) for b in np.unique(bins)
    ])
    folds = np.empty(len(y), dtype=np.int64)
    folds[sequence] = np.arange(len(sequence)) % v
    return folds


def repeated_vfold(
    train_table: pd.DataFrame,
    outcome: str,
    v: int = 5,
    repeats: int = 5,
    seed: int = 123
) -> ResampleSet:
    """
    Build v * repeats stratified analysis/assessment pairs.

    Each repeat draws its own partition with a seed derived from
    (seed, repeat index). Resample ids follow 'Repeat1_Fold1'.

    Args:
        train_table: Training half of the cleaned table
        outcome: Outcome column name
        v: Number of folds (>= 2)
        repeats: Number of repeats (>= 1)
        seed: Base seed

    Returns:
        ResampleSet over train_table

    Raises:
        ConfigError: On invalid v or repeats
        DegenerateResampleError: If any analysis or assessment set lacks outcome variance
    """
    if v < 2:
        raise ConfigError(f"must be >= 2, got {v}", key="cv_folds")
    if repeats < 1:
        raise ConfigError(f"must be >= 1, got {repeats}", key="cv_repeats")

    y = outcome_values(train_table, outcome)
    if len(y) < v:
        raise DegenerateResampleError(f"Cannot make {v} folds from {len(y)} rows")

    all_rows = np.arange(len(y))
    resamples = []
    for r in range(repeats):
        rng = np.random.default_rng(derive_seed(seed, "vfold", r))
        folds = vfold_assignment(y, v, rng)
        for f in range(v):
            resample_id = f"Repeat{r + 1}_Fold{f + 1}"
            assessment = all_rows[folds == f]
            analysis = all_rows[folds != f]
            try:
                _check_variance(y, analysis, "Analysis set")
                _check_variance(y, assessment, "Assessment set")
            except DegenerateResampleError as e:
                raise DegenerateResampleError(e.message, resample_id=resample_id)
            resamples.append(Resample(resample_id, r, f, analysis, assessment))

    logger.info(
        f"Created {len(resamples)} resamples ({v}-fold × {repeats} repeats) "
        f"over {len(y)} training rows"
    )
    return ResampleSet(train_table, outcome, resamples, v, repeats, seed)
