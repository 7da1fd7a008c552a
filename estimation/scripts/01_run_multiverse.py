#!/usr/bin/env python3
"""
01_run_multiverse.py
====================

Run every specification of the multiverse and write one JSON per spec.

Reads:
  - data/panel/trends_panel.csv
  - data/panel/state_covariates.csv
  - data/reference/treatment_dates.csv

Output:
  - estimation/results/specs/{spec_id}.json

Specifications whose JSON already exists with the same options hash are
skipped (use --force to refit). Changing --n-factors, --v-method or
--no-placebo refits the affected specifications.
A specification that fails writes its JSON with status "error" and the
sweep continues.

Usage:
    python estimation/scripts/01_run_multiverse.py
    python estimation/scripts/01_run_multiverse.py --keywords vpn --estimators synth
    python estimation/scripts/01_run_multiverse.py --parallel 8 --no-placebo
    python estimation/scripts/01_run_multiverse.py --dry-run
"""

from __future__ import annotations

import argparse
import json
import sys
import time
import warnings
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path

import pandas as pd

warnings.filterwarnings("ignore")

BASE_DIR = Path(__file__).parent.parent.parent
sys.path.insert(0, str(BASE_DIR / "scripts"))

from multiverse import (  # noqa: E402
    COVARIATE_SETS,
    ESTIMATOR_NAMES,
    SPEC_RESULTS_DIR,
    WINDOWS,
    enumerate_specs,
    run_spec,
    spec_result_path,
    write_spec_result,
)
from pull_utils import (  # noqa: E402
    KEYWORDS,
    STATE_COVARIATES_CSV,
    TREATMENT_DEFINITIONS,
    TRENDS_PANEL_CSV,
    load_treatment_dates,
)


def load_inputs() -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    for path in (TRENDS_PANEL_CSV, STATE_COVARIATES_CSV):
        if not path.exists():
            raise FileNotFoundError(
                f"{path} not found. Run estimation/scripts/00_build_panel.py first."
            )
    panel = pd.read_csv(TRENDS_PANEL_CSV, parse_dates=["date"], dtype={"fips": str})
    covariates = pd.read_csv(STATE_COVARIATES_CSV, dtype={"fips": str})
    treatments = load_treatment_dates()
    return panel, covariates, treatments


def stored_options_hash(path: Path) -> str | None:
    """options_hash of a written spec JSON, or None if it cannot be read."""
    try:
        with open(path) as f:
            return json.load(f).get("options_hash")
    except (OSError, json.JSONDecodeError, AttributeError):
        return None


def pending_specs(specs, force: bool = False, results_dir: Path = SPEC_RESULTS_DIR):
    """Specs with no result yet, or whose result was fitted under other options."""
    if force:
        return list(specs)
    return [
        s for s in specs
        if stored_options_hash(spec_result_path(s, results_dir)) != s.options_hash
    ]


def process_spec(options, panel, covariates, treatments, idx: int, total: int,
                 results_dir: Path = SPEC_RESULTS_DIR) -> dict:
    label = f"[{idx}/{total}] {options.spec_id}"
    start = time.time()
    result = run_spec(options, panel, covariates, treatments)
    result["elapsed_s"] = round(time.time() - start, 2)
    write_spec_result(result, spec_result_path(options, results_dir))

    status = result["status"]
    if status == "success":
        p = result.get("p_value")
        p_str = f"{p:.3f}" if p is not None and p == p else "n/a"
        print(f"{label}: ATT={result['att']:+.3f} p={p_str} "
              f"n_treated={result['n_treated']} ({result['elapsed_s']:.0f}s)")
    elif status == "error":
        print(f"{label}: ERROR {result.get('error', '')}")
    else:
        print(f"{label}: {status}")
    return {"spec_id": options.spec_id, "status": status}


def main():
    parser = argparse.ArgumentParser(description="Run the specification multiverse")
    parser.add_argument("--keywords", nargs="+", default=KEYWORDS)
    parser.add_argument("--covariate-sets", nargs="+", default=list(COVARIATE_SETS),
                        choices=list(COVARIATE_SETS))
    parser.add_argument("--treatments", nargs="+", default=list(TREATMENT_DEFINITIONS),
                        choices=list(TREATMENT_DEFINITIONS))
    parser.add_argument("--estimators", nargs="+", default=ESTIMATOR_NAMES,
                        choices=ESTIMATOR_NAMES)
    parser.add_argument("--parallel", type=int, default=4,
                        help="Number of specifications to fit in parallel (default: 4)")
    parser.add_argument("--no-placebo", action="store_true",
                        help="Skip in-space placebo inference (much faster)")
    parser.add_argument("--n-factors", type=int, default=None,
                        help="Fix the gsynth factor count instead of cross-validating")
    parser.add_argument("--v-method", choices=["nested", "equal"], default="nested",
                        help="Synthetic control predictor weighting (default: nested)")
    parser.add_argument("--force", action="store_true", help="Refit existing specifications")
    parser.add_argument("--dry-run", action="store_true", help="List specifications without fitting")
    args = parser.parse_args()

    specs = enumerate_specs(
        keywords=args.keywords,
        covariate_sets=args.covariate_sets,
        windows=WINDOWS,
        treatment_definitions=args.treatments,
        estimators=args.estimators,
        placebo=not args.no_placebo,
        n_factors=args.n_factors,
        v_method=args.v_method,
    )
    todo = pending_specs(specs, force=args.force)

    print("=" * 60)
    print("Multiverse sweep")
    print("=" * 60)
    print(f"  Specifications: {len(specs)}")
    print(f"  Already done: {len(specs) - len(todo)}")
    print(f"  To fit: {len(todo)}")
    print(f"  Parallel: {args.parallel}")
    print(f"  Placebo inference: {not args.no_placebo}")
    print(f"  Output: {SPEC_RESULTS_DIR}")
    print()

    if args.dry_run:
        for s in todo:
            print(f"  {s.spec_id}")
        return

    panel, covariates, treatments = load_inputs()

    results = []
    batch_start = time.time()
    with ProcessPoolExecutor(max_workers=args.parallel) as executor:
        futures = {}
        for i, options in enumerate(todo, 1):
            future = executor.submit(process_spec, options, panel, covariates, treatments, i, len(todo))
            futures[future] = options.spec_id

        for future in as_completed(futures):
            spec_id = futures[future]
            try:
                results.append(future.result())
            except Exception as e:
                print(f"ERROR processing {spec_id}: {e}")
                results.append({"spec_id": spec_id, "status": "error"})

    elapsed = time.time() - batch_start
    counts = pd.Series([r["status"] for r in results], dtype=object).value_counts()

    print(f"\n{'=' * 60}")
    print("SWEEP COMPLETE")
    print(f"{'=' * 60}")
    for status, n in counts.items():
        print(f"  {status}: {n}")
    print(f"  Wall-clock time: {elapsed:.0f}s ({elapsed / 60:.1f} min)")
    print(f"\nResults in {SPEC_RESULTS_DIR}")


if __name__ == "__main__":
    main()
