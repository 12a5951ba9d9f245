"""
Configuration Module
====================

Loads the YAML configuration file and validates the harness options.

Sections:
    - data: input table and output locations
    - harness: outcome, seed, split and resampling options, workers, learners
    - grids: per-learner tuning grid specifications
    - logging: log level and optional log file
"""

import logging
from pathlib import Path
from typing import Dict, Any, List, Optional

import yaml
from joblib import cpu_count

from .exceptions import ConfigError
from .learners import LEARNERS, get_learner
from .tuning import GridSpec

logger = logging.getLogger(__name__)


SUPPORTED_METRICS = ('rmse',)

DEFAULT_GRIDS: Dict[str, Dict[str, Any]] = {
    'null': {'type': 'regular', 'levels': 1},
    'tree': {'type': 'regular', 'levels': 5},
    'lasso': {
        'type': 'regular',
        'levels': 30,
        'ranges': {'penalty': [1e-3, 1.0]}
    },
    'forest': {
        'type': 'crossed',
        'values': {
            'mtry': [3, 4, 5, 6],
            'min_n': [40, 50, 60],
            'trees': [500, 1000]
        }
    }
}


def default_workers() -> int:
    """Physical cores minus one, never below one."""
    return max(1, cpu_count(only_physical_cores=True) - 1)


def load_config(config_path: str = "config/config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to the configuration file

    Returns:
        Dictionary containing configuration parameters

    Raises:
        ConfigError: If the file is missing or is not a YAML mapping
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        try:
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Malformed configuration file {config_path}: {e}")

    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ConfigError(f"Configuration file {config_path} must contain a mapping")

    logger.info(f"Loaded configuration from {config_path}")
    return config


def _require_int(value: Any, key: str, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"expected an integer, got {value!r}", key=key)
    if value < minimum:
        raise ConfigError(f"must be >= {minimum}, got {value}", key=key)
    return value


class HarnessConfig:
    """
    Validated harness options.

    Every option has the default of the reference influenza run, so an empty
    mapping yields a usable configuration.
    """

    def __init__(
        self,
        outcome_column: str = "BodyTemp",
        master_seed: int = 123,
        train_prop: float = 0.70,
        cv_folds: int = 5,
        cv_repeats: int = 5,
        near_zero_threshold: int = 50,
        metric: str = "rmse",
        workers: Optional[int] = None,
        learners: Optional[List[str]] = None,
        grids: Optional[Dict[str, Dict[str, Any]]] = None,
        unit_timeout: Optional[float] = None,
        raw_path: Optional[str] = None,
        output_dir: str = "outputs/",
        figures_dir: Optional[str] = None,
        log_level: str = "INFO",
        log_file: Optional[str] = None
    ):
        if not isinstance(outcome_column, str) or not outcome_column:
            raise ConfigError("must be a non-empty string", key="outcome_column")
        self.outcome_column = outcome_column

        self.master_seed = _require_int(master_seed, "master_seed", 0)

        if isinstance(train_prop, bool) or not isinstance(train_prop, (int, float)):
            raise ConfigError(f"expected a number, got {train_prop!r}", key="train_prop")
        if not 0 < train_prop < 1:
            raise ConfigError(f"must lie strictly between 0 and 1, got {train_prop}", key="train_prop")
        self.train_prop = float(train_prop)

        self.cv_folds = _require_int(cv_folds, "cv_folds", 2)
        self.cv_repeats = _require_int(cv_repeats, "cv_repeats", 1)
        self.near_zero_threshold = _require_int(near_zero_threshold, "near_zero_threshold", 0)

        if metric not in SUPPORTED_METRICS:
            raise ConfigError(
                f"unsupported metric {metric!r}; choose from {list(SUPPORTED_METRICS)}",
                key="metric"
            )
        self.metric = metric

        self.workers = default_workers() if workers is None else _require_int(workers, "workers", 1)

        if unit_timeout is not None:
            if isinstance(unit_timeout, bool) or not isinstance(unit_timeout, (int, float)) \
                    or unit_timeout <= 0:
                raise ConfigError(f"must be a positive number, got {unit_timeout!r}", key="unit_timeout")
            unit_timeout = float(unit_timeout)
        self.unit_timeout = unit_timeout

        if learners is None:
            learners = list(LEARNERS)
        if isinstance(learners, str) or not learners:
            raise ConfigError("must be a non-empty list of learner names", key="learners")
        unknown = [name for name in learners if name not in LEARNERS]
        if unknown:
            raise ConfigError(
                f"unknown learner(s) {unknown}; choose from {list(LEARNERS)}",
                key="learners"
            )
        # registry order, duplicates removed
        self.learners = [name for name in LEARNERS if name in learners]

        grids = dict(grids or {})
        unknown = [name for name in grids if name not in LEARNERS]
        if unknown:
            raise ConfigError(f"grid given for unknown learner(s) {unknown}", key="grids")
        self.grid_specs: Dict[str, GridSpec] = {}
        for name in self.learners:
            spec = grids.get(name, DEFAULT_GRIDS[name])
            self.grid_specs[name] = GridSpec.from_config(get_learner(name), spec)

        self.raw_path = raw_path
        self.output_dir = output_dir
        self.figures_dir = figures_dir or str(Path(output_dir) / "figures")

        if not isinstance(log_level, str) or not hasattr(logging, log_level.upper()):
            raise ConfigError(f"unknown log level {log_level!r}", key="logging.level")
        self.log_level = log_level.upper()
        self.log_file = log_file

    @classmethod
    def from_dict(cls, config: Dict[str, Any], **overrides: Any) -> 'HarnessConfig':
        """
        Build a validated configuration from a loaded YAML mapping.

        Args:
            config: Mapping with optional 'data', 'harness', 'grids' and 'logging' sections
            **overrides: Keyword options that win over the file (None values are ignored)

        Returns:
            HarnessConfig instance

        Raises:
            ConfigError: On any invalid value or unknown option
        """
        config = config or {}
        sections = {'data', 'harness', 'grids', 'logging'}
        unknown = set(config) - sections
        if unknown:
            raise ConfigError(f"unknown section(s) {sorted(unknown)}")

        harness = dict(config.get('harness') or {})
        allowed = {
            'outcome_column', 'master_seed', 'train_prop', 'cv_folds', 'cv_repeats',
            'near_zero_threshold', 'metric', 'workers', 'learners', 'unit_timeout'
        }
        unknown = set(harness) - allowed
        if unknown:
            raise ConfigError(f"unknown option(s) {sorted(unknown)}", key="harness")

        data = config.get('data') or {}
        log_config = config.get('logging') or {}

        kwargs: Dict[str, Any] = dict(harness)
        kwargs['grids'] = config.get('grids') or {}
        if 'raw_path' in data:
            kwargs['raw_path'] = data['raw_path']
        if 'output_dir' in data:
            kwargs['output_dir'] = data['output_dir']
        if 'figures_dir' in data:
            kwargs['figures_dir'] = data['figures_dir']
        if 'level' in log_config:
            kwargs['log_level'] = log_config['level']
        if 'log_file' in log_config:
            kwargs['log_file'] = log_config['log_file']

        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Plain mapping of the effective options, for run summaries."""
        return {
            'outcome_column': self.outcome_column,
            'master_seed': self.master_seed,
            'train_prop': self.train_prop,
            'cv_folds': self.cv_folds,
            'cv_repeats': self.cv_repeats,
            'near_zero_threshold': self.near_zero_threshold,
            'metric': self.metric,
            'workers': self.workers,
            'unit_timeout': self.unit_timeout,
            'learners': list(self.learners),
            'grids': {name: spec.describe() for name, spec in self.grid_specs.items()},
            'output_dir': self.output_dir
        }
