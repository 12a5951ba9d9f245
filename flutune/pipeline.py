"""
Modelling Pipeline
==================

Orchestrates the phases of a modelling run.

Phases:
    1. Cleaning - raw table to the basic and ML analysis tables
    2. Splitting - stratified train/test split and repeated v-fold resamples
    3. Tuning - resampled grid search per learner
    4. Finalizing - best tuple per learner, refit, overall selection
    5. Evaluation - one-shot test-set scoring of the selected model
    EDA and diagnostic figures are produced by run_all.

Every phase is a deterministic function of the cleaned table, the master seed
and the configuration; later phases recompute earlier ones in-process.
"""

import json
import logging
from pathlib import Path
from threading import Event
from typing import Dict, Any, Optional

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from .cleaning import clean_basic, clean_ml
from .config import HarnessConfig
from .data_loader import load_table, save_table, validate_table
from .eda import generate_eda_report
from .evaluation import (
    calculate_metrics, evaluate, generate_model_figures, plot_observed_vs_predicted, plot_residuals
)
from .exceptions import ConfigError, TuneExhausted
from .learners import get_learner
from .recipe import DummyRecipe
from .resampling import repeated_vfold, stratified_split
from .selection import FinalizedModel, finalize, select_best, select_overall, selection_table
from .tuning import TuningRecord, fit_resamples, tune

logger = logging.getLogger(__name__)

STAGES = ('clean', 'tune', 'finalize', 'evaluate', 'run-all')


def _output_dir(config: HarnessConfig) -> Path:
    path = Path(config.output_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def run_cleaning(config: HarnessConfig, raw: Optional[pd.DataFrame] = None) -> Dict[str, Any]:
    """
    Phase 1: load the raw table and derive the analysis tables.

    Args:
        config: Harness configuration (data.raw_path is read when raw is None)
        raw: Raw table already in memory (optional)

    Returns:
        Dictionary with 'raw', 'basic' and 'ml' tables and the saved paths
    """
    logger.info("=" * 60)
    logger.info("PHASE 1: DATA CLEANING")
    logger.info("=" * 60)

    if raw is None:
        if not config.raw_path:
            raise ConfigError("no input table configured", key="data.raw_path")
        raw = load_table(config.raw_path)

    is_valid, report = validate_table(raw, config.outcome_column)
    if not is_valid:
        logger.info(f"Raw table issues: {report['issues']}")

    basic = clean_basic(raw, config.outcome_column)
    ml = clean_ml(basic, config.outcome_column, config.near_zero_threshold)

    out = _output_dir(config)
    paths = {
        'basic': save_table(basic, str(out / "cleaned_basic.pkl")),
        'ml': save_table(ml, str(out / "cleaned_ml.pkl"))
    }
    return {'raw': raw, 'basic': basic, 'ml': ml, 'paths': paths}


def run_split(ml: pd.DataFrame, config: HarnessConfig) -> Dict[str, Any]:
    """
    Phase 2: stratified split and resamples of the training half.

    Returns:
        Dictionary with 'train', 'test' tables, their indices and 'resamples'
    """
    logger.info("=" * 60)
    logger.info("PHASE 2: SPLITTING")
    logger.info("=" * 60)

    train_idx, test_idx = stratified_split(
        ml, config.outcome_column, config.train_prop,
        seed=config.master_seed
    )
    train = ml.iloc[train_idx].reset_index(drop=True)
    test = ml.iloc[test_idx].reset_index(drop=True)

    resamples = repeated_vfold(
        train, config.outcome_column, config.cv_folds, config.cv_repeats,
        seed=config.master_seed
    )
    return {
        'train': train,
        'test': test,
        'train_idx': train_idx,
        'test_idx': test_idx,
        'resamples': resamples
    }


def run_tuning(
    split: Dict[str, Any],
    config: HarnessConfig,
    cancel_event: Optional[Event] = None,
    reuse: bool = False
) -> Dict[str, TuningRecord]:
    """
    Phase 3: tune every requested learner.

    Grid values bounded by the design width (forest mtry) are checked against
    the encoding of the full training half before any work unit starts. A
    learner whose tuning is exhausted is dropped with an error log; the run
    fails only if no learner is left.

    Args:
        split: Output of run_split
        config: Harness configuration
        cancel_event: Optional cancellation signal
        reuse: Load tuning records already in the output directory instead of tuning

    Returns:
        Tuning record per learner, in registry order

    Raises:
        ConfigError: If a grid value is wider than the design matrix
    """
    logger.info("=" * 60)
    logger.info("PHASE 3: TUNING")
    logger.info("=" * 60)

    out = _output_dir(config)
    recipe = DummyRecipe(config.outcome_column)
    records: Dict[str, TuningRecord] = {}
    failures: Dict[str, str] = {}

    n_features = recipe.learned_on(split['train']).n_features
    for name in config.learners:
        learner = get_learner(name)
        for params in config.grid_specs[name]:
            learner.check_width(params, n_features)

    for name in config.learners:
        learner = get_learner(name)
        grid = config.grid_specs[name]

        cells_path = out / f"tuning_{name}_resamples.csv"
        if reuse and cells_path.exists():
            records[name] = TuningRecord.load(str(out), name)
            continue

        options = dict(
            master_seed=config.master_seed,
            workers=config.workers,
            cancel_event=cancel_event,
            unit_timeout=config.unit_timeout
        )
        try:
            if len(grid) == 1:
                record = fit_resamples(learner, recipe, split['resamples'], grid.tuples[0], **options)
            else:
                record = tune(learner, recipe, split['resamples'], grid, **options)
        except TuneExhausted as e:
            logger.error(f"Dropping learner: {e}")
            failures[name] = str(e)
            continue

        record.save(str(out))
        records[name] = record

    if not records:
        raise TuneExhausted(f"Every learner failed to tune: {failures}")
    return records


def run_finalize(
    records: Dict[str, TuningRecord],
    split: Dict[str, Any],
    config: HarnessConfig
) -> Dict[str, Any]:
    """
    Phase 4: select per learner, refit on the training half, select overall.

    Returns:
        Dictionary with 'candidates' (per-learner selections), 'selected'
        (overall selection) and 'finals' (FinalizedModel per learner)
    """
    logger.info("=" * 60)
    logger.info("PHASE 4: SELECTION & FINALIZING")
    logger.info("=" * 60)

    out = _output_dir(config)
    recipe = DummyRecipe(config.outcome_column)
    candidates = []
    finals: Dict[str, FinalizedModel] = {}

    for name, record in records.items():
        selected = select_best(record)
        candidates.append(selected)
        final = finalize(
            get_learner(name), recipe, selected['params'], split['train'],
            config.outcome_column, config.master_seed,
            cv_rmse=selected['mean_rmse'], cv_se=selected['se_rmse']
        )
        finals[name] = final
        _save_final(final, out)

    overall = select_overall(candidates)
    selection_table(candidates).to_csv(out / "candidates.csv", index=False)
    selection_table([overall]).to_csv(out / "selected_tuple.csv", index=False)

    return {'candidates': candidates, 'selected': overall, 'finals': finals}


def _save_final(final: FinalizedModel, out: Path) -> None:
    name = final.learner
    final.save(str(out / f"final_model_{name}.joblib"))
    final.train_residuals.to_csv(out / f"train_residuals_{name}.csv", index_label='row')

    artifacts = final.artifacts
    if 'coefficients' in artifacts:
        coefs = pd.Series(artifacts['coefficients'], name='coefficient')
        coefs.to_csv(out / f"coefficients_{name}.csv", index_label='feature')
    if 'importance' in artifacts:
        artifacts['importance'].to_csv(out / f"importance_{name}.csv", index_label='feature')
    if 'tree_text' in artifacts:
        (out / f"tree_{name}.txt").write_text(artifacts['tree_text'])


def run_evaluation(
    finalized: Dict[str, Any],
    split: Dict[str, Any],
    config: HarnessConfig
) -> Dict[str, Any]:
    """
    Phase 5: evaluate the selected model once on the test half.

    The null model, when requested and not itself selected, is evaluated
    alongside as the baseline.

    Returns:
        Dictionary with 'selected', 'test_rmse', 'cv_rmse', 'residuals' and
        'models' (one entry per evaluated model)
    """
    logger.info("=" * 60)
    logger.info("PHASE 5: EVALUATION")
    logger.info("=" * 60)

    out = _output_dir(config)
    selected = finalized['selected']['learner']
    to_evaluate = [selected]
    if 'null' in finalized['finals'] and selected != 'null':
        to_evaluate.append('null')

    models = []
    residuals = None
    for name in to_evaluate:
        final = finalized['finals'][name]
        test_rmse, res = evaluate(final, split['test'])
        models.append({
            'learner': name,
            'cv_rmse': final.cv_rmse,
            'test_rmse': test_rmse,
            'metrics': calculate_metrics(res['observed'], res['predicted'])
        })
        if name == selected:
            residuals = res

    pd.DataFrame([
        {'learner': m['learner'], 'test_rmse': m['test_rmse'], 'cv_rmse': m['cv_rmse'],
         'mae': m['metrics']['mae'], 'r2': m['metrics']['r2']}
        for m in models
    ]).to_csv(out / "test_results.csv", index=False)
    residuals.to_csv(out / "test_residuals.csv", index_label='row')

    return {
        'selected': selected,
        'test_rmse': models[0]['test_rmse'],
        'cv_rmse': models[0]['cv_rmse'],
        'residuals': residuals,
        'models': models
    }


def _test_figures(evaluation: Dict[str, Any], figures_dir: str) -> list:
    out = Path(figures_dir)
    out.mkdir(parents=True, exist_ok=True)
    name = evaluation['selected']
    plot_observed_vs_predicted(
        evaluation['residuals'], title=f"{name}: test half",
        save_path=str(out / "test_observed_vs_predicted.png")
    )
    plot_residuals(
        evaluation['residuals'], title=f"{name}: test residuals",
        save_path=str(out / "test_residuals.png")
    )
    plt.close('all')
    return ["test_observed_vs_predicted.png", "test_residuals.png"]


def write_run_summary(results: Dict[str, Any], config: HarnessConfig) -> str:
    """Write run_summary.json with the headline numbers of a run."""
    summary: Dict[str, Any] = {'config': config.to_dict()}

    cleaning = results.get('cleaning')
    if cleaning is not None:
        summary['cleaned_basic_shape'] = list(cleaning['basic'].shape)
        summary['cleaned_ml_shape'] = list(cleaning['ml'].shape)

    split = results.get('split')
    if split is not None:
        summary['n_train'] = int(len(split['train']))
        summary['n_test'] = int(len(split['test']))
        summary['n_resamples'] = int(len(split['resamples']))

    finalized = results.get('finalized')
    if finalized is not None:
        summary['candidates'] = [
            {'learner': c['learner'], 'tuple_id': c['tuple_id'],
             'params': {k: (v.item() if isinstance(v, np.generic) else v) for k, v in c['params'].items()},
             'mean_rmse': c['mean_rmse'],
             'se_rmse': None if np.isnan(c['se_rmse']) else c['se_rmse']}
            for c in finalized['candidates']
        ]
        summary['selected_learner'] = finalized['selected']['learner']

    evaluation = results.get('evaluation')
    if evaluation is not None:
        summary['test_rmse'] = evaluation['test_rmse']
        summary['cv_rmse'] = evaluation['cv_rmse']
        summary['evaluated'] = [
            {'learner': m['learner'], 'test_rmse': m['test_rmse'], 'cv_rmse': m['cv_rmse']}
            for m in evaluation['models']
        ]

    path = _output_dir(config) / "run_summary.json"
    with open(path, 'w') as f:
        json.dump(summary, f, indent=2)
    logger.info(f"Run summary saved to {path}")
    return str(path)


def run_stage(
    stage: str,
    config: HarnessConfig,
    raw: Optional[pd.DataFrame] = None,
    cancel_event: Optional[Event] = None,
    reuse_tuning: bool = False
) -> Dict[str, Any]:
    """
    Run a pipeline stage and every stage it depends on.

    Args:
        stage: One of STAGES
        config: Harness configuration
        raw: Raw table already in memory (optional)
        cancel_event: Optional cancellation signal for tuning
        reuse_tuning: Load existing tuning records instead of tuning

    Returns:
        Dictionary of phase results keyed by 'cleaning', 'split', 'records',
        'finalized', 'evaluation', 'eda', 'figures' as far as the stage reaches
    """
    if stage not in STAGES:
        raise ConfigError(f"unknown stage {stage!r}; choose from {list(STAGES)}")

    results: Dict[str, Any] = {'config': config}
    results['cleaning'] = run_cleaning(config, raw)
    if stage == 'clean':
        write_run_summary(results, config)
        return results

    ml = results['cleaning']['ml']
    if stage == 'run-all':
        results['eda'] = generate_eda_report(ml, config.outcome_column, config.figures_dir)

    results['split'] = run_split(ml, config)
    results['records'] = run_tuning(results['split'], config, cancel_event, reuse=reuse_tuning)
    if stage == 'tune':
        write_run_summary(results, config)
        return results

    results['finalized'] = run_finalize(results['records'], results['split'], config)
    if stage == 'finalize':
        write_run_summary(results, config)
        return results

    results['evaluation'] = run_evaluation(results['finalized'], results['split'], config)
    if stage == 'run-all':
        results['figures'] = generate_model_figures(
            results['finalized']['finals'], results['records'], config.figures_dir
        )
        results['figures'].extend(_test_figures(results['evaluation'], config.figures_dir))
    write_run_summary(results, config)
    return results


def run_all(
    config: HarnessConfig,
    raw: Optional[pd.DataFrame] = None,
    cancel_event: Optional[Event] = None
) -> Dict[str, Any]:
    """Run every phase including EDA and figures."""
    return run_stage('run-all', config, raw=raw, cancel_event=cancel_event)
