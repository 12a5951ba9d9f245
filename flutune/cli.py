"""
Influenza Body Temperature Tuning Harness - Command Line
========================================================

Runs the cleaning, tuning, finalizing and evaluation phases from the command line.

Subcommands:
    clean     - Derive the basic and ML analysis tables
    tune      - Clean, split and tune every configured learner
    finalize  - Tune, then refit the best tuple of each learner and select overall
    evaluate  - Finalize, then score the selected model on the test half
    run-all   - Everything above plus EDA and diagnostic figures

Exit codes:
    0 success, 2 input schema error, 3 configuration or usage error, 4 cancelled,
    1 other failure

Usage:
    # Run complete pipeline
    python main.py --data data/raw/flu.csv run-all

    # Tune with four workers and a custom config
    python main.py --config config/config.yaml --workers 4 tune

    # Finalize from tuning records already in the output directory
    python main.py --data data/raw/flu.csv finalize --reuse-tuning
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from datetime import datetime
from typing import Dict, Any, List, Optional

from .config import HarnessConfig, load_config
from .data_loader import print_data_summary
from .eda import print_eda_insights
from .evaluation import print_evaluation_report
from .exceptions import Cancelled, ConfigError, InputSchemaError
from .pipeline import run_stage
from .tuning import TuningRecord

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INPUT_SCHEMA = 2
EXIT_CONFIG = 3
EXIT_CANCELLED = 4

DEFAULT_CONFIG = "config/config.yaml"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure logging for the pipeline."""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        if log_file == "auto":
            log_file = f'flutune_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log'
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )


def build_parser() -> argparse.ArgumentParser:
    """Argument parser with global options and one subcommand per stage."""
    parser = argparse.ArgumentParser(
        prog="flutune",
        description="Tuning harness for body temperature regression on influenza symptom data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --data data/raw/flu.csv run-all
  python main.py --data data/raw/flu.csv --workers 4 tune
  python main.py --config config/custom.yaml evaluate
        """
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        default=None,
        help=f'Path to configuration file (default: {DEFAULT_CONFIG} if present)'
    )
    parser.add_argument(
        '--data', '-d',
        type=str,
        default=None,
        help='Path to the raw CSV or pickle table (overrides data.raw_path)'
    )
    parser.add_argument(
        '--output', '-o',
        type=str,
        default=None,
        help='Directory for tables, models and the run summary'
    )
    parser.add_argument(
        '--workers', '-w',
        type=int,
        default=None,
        help='Parallel workers for tuning (default: physical cores minus one)'
    )
    parser.add_argument(
        '--seed', '-s',
        type=int,
        default=None,
        help='Master seed (default: 123)'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level'
    )

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True
    subparsers.add_parser('clean', help='Derive the cleaned tables')
    for name, text in (('tune', 'Tune every configured learner'),
                       ('finalize', 'Select and refit per learner, then select overall'),
                       ('evaluate', 'Evaluate the selected model on the test half')):
        sub = subparsers.add_parser(name, help=text)
        sub.add_argument(
            '--reuse-tuning',
            action='store_true',
            help='Load tuning records from the output directory instead of tuning again'
        )
    subparsers.add_parser('run-all', help='Run every phase with EDA and figures')
    return parser


def build_config(args: argparse.Namespace) -> HarnessConfig:
    """Merge the configuration file with command-line overrides."""
    config_path = args.config
    if config_path is None and Path(DEFAULT_CONFIG).exists():
        config_path = DEFAULT_CONFIG
    raw = load_config(config_path) if config_path else {}

    return HarnessConfig.from_dict(
        raw,
        raw_path=args.data,
        output_dir=args.output,
        workers=args.workers,
        master_seed=args.seed,
        log_level=args.log_level
    )


def print_tuning_summary(records: Dict[str, TuningRecord], top_n: int = 5) -> None:
    """
    Print the best tuples of each learner.

    Args:
        records: Tuning record per learner
        top_n: Rows to show per learner
    """
    print("\n" + "=" * 70)
    print("TUNING SUMMARY")
    print("=" * 70)
    for name, record in records.items():
        summary = record.summary()
        print(f"\n{record.learner.display_name}: {record.n_tuples} tuples x "
              f"{record.n_resamples} resamples, {len(summary)} ranked")
        columns = record.param_names + ['mean_rmse', 'se_rmse', 'n_resamples']
        print(summary[columns].head(top_n).to_string(index=False))
    print("=" * 70 + "\n")


def report(command: str, results: Dict[str, Any], config: HarnessConfig) -> None:
    """Console summary of a finished stage."""
    cleaning = results['cleaning']
    print_data_summary(cleaning['ml'])
    if 'eda' in results:
        print_eda_insights(results['eda'])
    if 'records' in results:
        print_tuning_summary(results['records'])
    if 'evaluation' in results:
        print_evaluation_report(results['evaluation'])

    print("\n" + "=" * 70)
    print(f"{command.upper()} COMPLETE")
    print("=" * 70)
    print(f"  • Cleaned table: {cleaning['ml'].shape[0]} rows × {cleaning['ml'].shape[1]} columns")
    if 'finalized' in results:
        selected = results['finalized']['selected']
        print(f"  • Selected: {selected['learner']} {selected['params']} "
              f"(CV RMSE {selected['mean_rmse']:.4f})")
    if 'evaluation' in results:
        print(f"  • Test RMSE: {results['evaluation']['test_rmse']:.4f}")
    print(f"  • Output: {config.output_dir}")
    print(f"Completed at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70 + "\n")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with argument parsing."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # argparse exits 2 on usage errors, which is reserved for input schema errors
        return EXIT_OK if e.code in (0, None) else EXIT_CONFIG

    try:
        config = build_config(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(config.log_level, config.log_file)
    logger = logging.getLogger("flutune")

    cancel_event = threading.Event()
    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        def _on_interrupt(signum, frame):
            logger.warning("Interrupt received, cancelling after in-flight work units")
            cancel_event.set()
        previous_handler = signal.signal(signal.SIGINT, _on_interrupt)

    try:
        results = run_stage(
            args.command, config,
            cancel_event=cancel_event,
            reuse_tuning=getattr(args, 'reuse_tuning', False)
        )
        report(args.command, results, config)
        return EXIT_OK

    except InputSchemaError as e:
        logger.error(f"Input schema error: {e}")
        return EXIT_INPUT_SCHEMA
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    except Cancelled as e:
        logger.error(f"Cancelled: {e}")
        return EXIT_CANCELLED
    except Exception as e:
        logger.error(f"Pipeline failed: {e}", exc_info=True)
        return EXIT_FAILURE
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)


if __name__ == "__main__":
    sys.exit(main())
