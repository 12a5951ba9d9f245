"""
Test Suite for the Pipeline and CLI
===================================

End-to-end runs on a small synthetic table with a fast resampling plan.
"""

import json

import pytest
import numpy as np
import pandas as pd
import yaml

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import make_flu_table, small_config_dict
from flutune import cli, pipeline
from flutune.config import HarnessConfig
from flutune.data_loader import read_csv
from flutune.exceptions import Cancelled, ConfigError
from flutune.learners import ForestLearner
from flutune.pipeline import run_all, run_stage


def config_for(path, **harness):
    return HarnessConfig.from_dict(small_config_dict(path, **harness))


class TestRunStage:
    """Tests for the phase orchestration."""

    def test_clean_stage(self, small_raw_flu, small_config):
        results = run_stage('clean', small_config, raw=small_raw_flu)
        out = Path(small_config.output_dir)

        assert results['cleaning']['ml'].shape == (295, 26)
        assert 'split' not in results
        for name in ("cleaned_basic.pkl", "cleaned_basic.csv", "cleaned_ml.pkl",
                     "cleaned_ml.csv", "run_summary.json"):
            assert (out / name).exists()

    def test_tune_stage_writes_records(self, small_raw_flu, small_config):
        results = run_stage('tune', small_config, raw=small_raw_flu)
        out = Path(small_config.output_dir)

        assert list(results['records']) == ['null', 'tree', 'lasso', 'forest']
        assert len(results['records']['tree'].metrics) == 2 * 3
        for name in results['records']:
            assert (out / f"tuning_{name}.csv").exists()
            assert (out / f"tuning_{name}_resamples.csv").exists()

    def test_run_all(self, small_raw_flu, small_config):
        results = run_all(small_config, raw=small_raw_flu)
        out = Path(small_config.output_dir)

        selected = results['finalized']['selected']
        assert selected['learner'] in ('null', 'tree', 'lasso', 'forest')

        selected_row = read_csv(out / "selected_tuple.csv")
        assert len(selected_row) == 1
        assert selected_row['learner'].iloc[0] == selected['learner']

        for name in ('null', 'tree', 'lasso', 'forest'):
            assert (out / f"final_model_{name}.joblib").exists()
            assert (out / f"train_residuals_{name}.csv").exists()
        assert (out / "coefficients_lasso.csv").exists()
        assert (out / "importance_forest.csv").exists()

        test_results = read_csv(out / "test_results.csv")
        evaluated = test_results['learner'].tolist()
        assert evaluated[0] == selected['learner']
        assert 'null' in evaluated
        assert len(read_csv(out / "test_residuals.csv")) == len(results['split']['test'])

        figures = Path(small_config.figures_dir)
        assert (figures / "eda_outcome_distribution.png").exists()
        assert (figures / "test_observed_vs_predicted.png").exists()
        assert (figures / "tuning_lasso.png").exists()

    def test_run_summary(self, small_raw_flu, small_config):
        results = run_stage('evaluate', small_config, raw=small_raw_flu)
        with open(Path(small_config.output_dir) / "run_summary.json") as f:
            summary = json.load(f)

        assert summary['cleaned_ml_shape'] == [295, 26]
        assert summary['n_train'] + summary['n_test'] == 295
        assert summary['n_resamples'] == 3
        assert summary['selected_learner'] == results['finalized']['selected']['learner']
        assert summary['test_rmse'] == pytest.approx(results['evaluation']['test_rmse'])
        assert [c['learner'] for c in summary['candidates']] == ['null', 'tree', 'lasso', 'forest']

    def test_finalized_models_are_evaluated_once(self, small_raw_flu, small_config):
        results = run_stage('evaluate', small_config, raw=small_raw_flu)
        finals = results['finalized']['finals']
        selected = results['finalized']['selected']['learner']
        assert finals[selected].token.consumed
        assert finals['null'].token.consumed
        unevaluated = [n for n in finals if n not in (selected, 'null')]
        assert all(not finals[n].token.consumed for n in unevaluated)

    def test_identical_across_worker_counts(self, small_raw_flu, tmp_path):
        """Test one and two workers produce identical records, selection and test RMSE."""
        serial = run_stage('evaluate', config_for(tmp_path / "w1", workers=1), raw=small_raw_flu)
        threaded = run_stage('evaluate', config_for(tmp_path / "w2", workers=2), raw=small_raw_flu)

        for name in serial['records']:
            pd.testing.assert_frame_equal(serial['records'][name].metrics,
                                          threaded['records'][name].metrics)
        assert serial['finalized']['selected']['learner'] == threaded['finalized']['selected']['learner']
        assert serial['finalized']['selected']['params'] == threaded['finalized']['selected']['params']
        assert serial['evaluation']['test_rmse'] == threaded['evaluation']['test_rmse']

    def test_seed_changes_split(self, small_raw_flu, tmp_path):
        a = run_stage('clean', config_for(tmp_path / "a"), raw=small_raw_flu)
        first = pipeline.run_split(a['cleaning']['ml'], config_for(tmp_path / "a"))
        second = pipeline.run_split(a['cleaning']['ml'], config_for(tmp_path / "b", master_seed=999))
        assert not np.array_equal(first['train_idx'], second['train_idx'])

    def test_reuse_tuning(self, small_raw_flu, small_config, monkeypatch):
        """Test finalize can start from tuning records on disk."""
        tuned = run_stage('tune', small_config, raw=small_raw_flu)

        def fail(*args, **kwargs):
            raise AssertionError("tuning should not run")

        monkeypatch.setattr(pipeline, 'tune', fail)
        monkeypatch.setattr(pipeline, 'fit_resamples', fail)
        results = run_stage('finalize', small_config, raw=small_raw_flu, reuse_tuning=True)

        for name, record in tuned['records'].items():
            pd.testing.assert_frame_equal(results['records'][name].summary(), record.summary())
        assert 'evaluation' not in results

    def test_exhausted_learner_is_dropped(self, small_raw_flu, tmp_path, monkeypatch):
        def failing_fit(self, estimator, X, y, params, feature_names):
            raise ValueError("did not converge")

        monkeypatch.setattr(ForestLearner, 'fit', failing_fit)
        config = config_for(tmp_path, learners=['null', 'forest'])
        results = run_stage('finalize', config, raw=small_raw_flu)
        assert list(results['records']) == ['null']
        assert results['finalized']['selected']['learner'] == 'null'
        assert not (tmp_path / "tuning_forest.csv").exists()

    def test_mtry_wider_than_design_is_config_error(self, small_raw_flu, tmp_path):
        """Test an out-of-range mtry fails before any learner is tuned."""
        options = small_config_dict(tmp_path, learners=['null', 'forest'])
        options['grids'] = dict(options['grids'], forest={
            'type': 'crossed', 'values': {'mtry': [3, 500], 'min_n': [10], 'trees': [5]}
        })
        config = HarnessConfig.from_dict(options)

        with pytest.raises(ConfigError) as excinfo:
            run_stage('tune', config, raw=small_raw_flu)
        assert excinfo.value.key == "grids.forest.mtry"
        assert not (tmp_path / "tuning_null_resamples.csv").exists()

    def test_null_only_run(self, small_raw_flu, tmp_path):
        """Test the null learner alone completes with CV RMSE near the outcome's population SD."""
        results = run_all(config_for(tmp_path, learners=['null']), raw=small_raw_flu)

        selected = results['finalized']['selected']
        assert selected['learner'] == 'null'
        train_sd = results['split']['train']['BodyTemp'].std(ddof=0)
        assert selected['mean_rmse'] == pytest.approx(train_sd, rel=0.05)
        assert read_csv(tmp_path / "test_results.csv")['learner'].tolist() == ['null']

    def test_two_folds_one_repeat(self, small_raw_flu, tmp_path):
        results = run_stage('evaluate', config_for(tmp_path, cv_folds=2, cv_repeats=1),
                            raw=small_raw_flu)
        assert len(results['split']['resamples']) == 2
        for record in results['records'].values():
            assert record.n_resamples == 2
            assert (record.summary()['n_resamples'] == 2).all()
        assert np.isfinite(results['evaluation']['test_rmse'])

    def test_missing_raw_path(self, small_config):
        with pytest.raises(ConfigError, match="raw_path"):
            run_stage('clean', small_config)

    def test_unknown_stage(self, small_config):
        with pytest.raises(ConfigError):
            run_stage('predict', small_config)

    def test_cancel_before_tuning(self, small_raw_flu, small_config):
        import threading
        event = threading.Event()
        event.set()
        with pytest.raises(Cancelled):
            run_stage('tune', small_config, raw=small_raw_flu, cancel_event=event)


class TestCLI:
    """Tests for the command-line entry point and its exit codes."""

    @pytest.fixture
    def files(self, tmp_path):
        raw_path = tmp_path / "raw.csv"
        make_flu_table(n_rows=300).to_csv(raw_path, index=False)
        config_path = tmp_path / "config.yaml"
        with open(config_path, 'w') as f:
            yaml.safe_dump(small_config_dict(tmp_path / "outputs"), f)
        return raw_path, config_path, tmp_path / "outputs"

    def test_clean(self, files):
        raw_path, config_path, out = files
        code = cli.main(['--config', str(config_path), '--data', str(raw_path), 'clean'])
        assert code == cli.EXIT_OK
        assert (out / "cleaned_ml.pkl").exists()

    def test_evaluate(self, files, capsys):
        raw_path, config_path, out = files
        code = cli.main(['--config', str(config_path), '--data', str(raw_path),
                         '--workers', '2', 'evaluate'])
        assert code == 0
        assert (out / "test_results.csv").exists()
        assert "TEST SET EVALUATION" in capsys.readouterr().out

    def test_output_override(self, files, tmp_path):
        raw_path, config_path, _ = files
        other = tmp_path / "elsewhere"
        code = cli.main(['--config', str(config_path), '--data', str(raw_path),
                         '--output', str(other), 'clean'])
        assert code == 0
        assert (other / "cleaned_basic.pkl").exists()

    def test_input_schema_error(self, files, tmp_path):
        _, config_path, _ = files
        bad = tmp_path / "no_outcome.csv"
        make_flu_table(n_rows=100).drop(columns=['BodyTemp']).to_csv(bad, index=False)
        code = cli.main(['--config', str(config_path), '--data', str(bad), 'clean'])
        assert code == cli.EXIT_INPUT_SCHEMA == 2

    def test_config_error(self, files, tmp_path):
        raw_path, _, _ = files
        config_path = tmp_path / "bad.yaml"
        config_path.write_text("harness:\n  cv_folds: 1\n")
        code = cli.main(['--config', str(config_path), '--data', str(raw_path), 'clean'])
        assert code == cli.EXIT_CONFIG == 3

    def test_missing_config_file(self, files, tmp_path):
        raw_path, _, _ = files
        code = cli.main(['--config', str(tmp_path / "absent.yaml"), '--data', str(raw_path), 'clean'])
        assert code == 3

    def test_cancelled(self, files, monkeypatch):
        raw_path, config_path, _ = files

        def cancelled(*args, **kwargs):
            raise Cancelled("Tuning cancelled", learner="tree")

        monkeypatch.setattr(cli, 'run_stage', cancelled)
        code = cli.main(['--config', str(config_path), '--data', str(raw_path), 'tune'])
        assert code == cli.EXIT_CANCELLED == 4

    def test_other_failure(self, files, tmp_path):
        _, config_path, _ = files
        code = cli.main(['--config', str(config_path), '--data', str(tmp_path / "absent.csv"), 'clean'])
        assert code == cli.EXIT_FAILURE == 1

    def test_subcommand_required(self):
        assert cli.main([]) == cli.EXIT_CONFIG

    def test_invalid_option_value(self, files):
        raw_path, config_path, _ = files
        code = cli.main(['--config', str(config_path), '--data', str(raw_path),
                         '--workers', 'abc', 'clean'])
        assert code == cli.EXIT_CONFIG

    def test_help(self, capsys):
        assert cli.main(['--help']) == cli.EXIT_OK
        assert "run-all" in capsys.readouterr().out

    def test_mtry_out_of_range(self, files, tmp_path):
        raw_path, _, out = files
        options = small_config_dict(out, learners=['forest'])
        options['grids'] = dict(options['grids'], forest={
            'type': 'crossed', 'values': {'mtry': [500], 'min_n': [10], 'trees': [5]}
        })
        config_path = tmp_path / "wide.yaml"
        with open(config_path, 'w') as f:
            yaml.safe_dump(options, f)
        code = cli.main(['--config', str(config_path), '--data', str(raw_path), 'tune'])
        assert code == cli.EXIT_CONFIG

    def test_source_entry_point(self):
        import main
        assert main.main is cli.main
