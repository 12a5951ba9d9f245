"""
Influenza Body Temperature Tuning Harness
=========================================

Cleans influenza symptom data and tunes, selects and evaluates regression
models of body temperature.

Modules:
    - data_loader: Table ingestion, validation and persistence
    - cleaning: Basic and ML-ready cleaning of the raw symptom table
    - resampling: Stratified train/test split and repeated v-fold resamples
    - recipe: Dummy encoding learned on the analysis rows
    - learners: Null, tree, lasso and random forest learners
    - tuning: Grids, tuning records and the parallel tuner
    - selection: Best-tuple selection and finalizing
    - evaluation: One-shot test evaluation and diagnostic figures
    - eda: Exploratory analysis of the cleaned table
    - pipeline: Phase orchestration used by the CLI
    - cli: Command-line subcommands and exit codes
"""

__version__ = "1.0.0"
__author__ = "Flu Modelling Team"
