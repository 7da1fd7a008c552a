#!/usr/bin/env python3
"""
run_all.py
==========

Master script to run the age-verification multiverse pipeline.

Usage:
    python estimation/run_all.py                # Panel + multiverse + figures
    python estimation/run_all.py --pull         # Census + Google Trends pulls only
    python estimation/run_all.py --data         # Panel construction only
    python estimation/run_all.py --est          # Multiverse sweep + summary only
    python estimation/run_all.py --figs         # Figures only
    python estimation/run_all.py --all          # Everything including the pulls

Every step skips outputs that already exist, so rerunning is cheap.
"""

import subprocess
import sys
from pathlib import Path

BASE_DIR = Path(__file__).parent.parent
PULL_DIR = BASE_DIR / "scripts"
SCRIPTS_DIR = BASE_DIR / "estimation" / "scripts"


def run_python(script_path: Path, *extra_args):
    """Run a Python script."""
    print(f"\n{'=' * 60}")
    print(f"Running: {script_path.name}")
    print("=" * 60)
    result = subprocess.run([sys.executable, str(script_path), *extra_args], cwd=BASE_DIR)
    if result.returncode != 0:
        print(f"Warning: {script_path.name} exited with code {result.returncode}")
    return result.returncode


def main():
    args = sys.argv[1:]

    run_all_flag = '--all' in args
    run_pull = '--pull' in args or run_all_flag
    run_data = '--data' in args or len(args) == 0 or run_all_flag
    run_est = '--est' in args or len(args) == 0 or run_all_flag
    run_figs = '--figs' in args or len(args) == 0 or run_all_flag

    print("=" * 60)
    print("Age-Verification Multiverse Pipeline")
    print("=" * 60)

    # Step 0: External pulls (network)
    if run_pull:
        print("\n" + "#" * 60)
        print("STEP 0: DATA PULLS")
        print("#" * 60)

        run_python(PULL_DIR / "01_pull_census.py")
        run_python(PULL_DIR / "02_pull_trends.py")

    # Step 1: Panel construction
    if run_data:
        print("\n" + "#" * 60)
        print("STEP 1: PANEL CONSTRUCTION")
        print("#" * 60)

        run_python(SCRIPTS_DIR / "00_build_panel.py")

    # Step 2: Estimation
    if run_est:
        print("\n" + "#" * 60)
        print("STEP 2: MULTIVERSE ESTIMATION")
        print("#" * 60)

        run_python(SCRIPTS_DIR / "01_run_multiverse.py")
        run_python(SCRIPTS_DIR / "02_summarize_multiverse.py")

    # Step 3: Figures
    if run_figs:
        print("\n" + "#" * 60)
        print("STEP 3: FIGURES")
        print("#" * 60)

        run_python(SCRIPTS_DIR / "03_plot_gaps.py")
        if (BASE_DIR / "estimation" / "results" / "multiverse_results.csv").exists():
            run_python(SCRIPTS_DIR / "04_plot_spec_curve.py")
        else:
            print("Skipping 04_plot_spec_curve.py (missing multiverse_results.csv; run --est first).")

    print("\n" + "=" * 60)
    print("Pipeline complete!")
    print("=" * 60)

    print("\nOutputs:")
    print("  Raw:      data/raw/{census,trends}/")
    print("  Panel:    data/panel/{trends_panel,state_covariates}.csv")
    print("  Results:  estimation/results/specs/*.json, estimation/results/multiverse_*.{csv,json}")
    print("  Figures:  estimation/figures/*.pdf")


if __name__ == "__main__":
    main()
