#!/usr/bin/env python3
"""
Influenza Body Temperature Tuning Harness - Main Entry Point
============================================================

Runs the harness from a source checkout; see flutune.cli for the subcommands.

Usage:
    python main.py --data data/raw/flu.csv run-all
"""

import sys
from pathlib import Path

# Add package root to path
sys.path.insert(0, str(Path(__file__).parent))

from flutune.cli import main

if __name__ == "__main__":
    sys.exit(main())
