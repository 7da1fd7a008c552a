#!/usr/bin/env python3
"""
02_summarize_multiverse.py
==========================

Collect the per-specification JSONs into tables and a robustness summary.

Reads:
  - estimation/results/specs/*.json

Outputs:
  - estimation/results/multiverse_results.csv       (one row per spec)
  - estimation/results/multiverse_unit_results.csv  (one row per spec x treated state)
  - estimation/results/multiverse_summary.json
"""

from __future__ import annotations

import json
from pathlib import Path

import pandas as pd

BASE_DIR = Path(__file__).parent.parent.parent
RESULTS_DIR = BASE_DIR / "estimation" / "results"
SPEC_RESULTS_DIR = RESULTS_DIR / "specs"

OUTPUT_SPECS = RESULTS_DIR / "multiverse_results.csv"
OUTPUT_UNITS = RESULTS_DIR / "multiverse_unit_results.csv"
OUTPUT_SUMMARY = RESULTS_DIR / "multiverse_summary.json"

DIMENSIONS = ["keyword", "covariate_set", "window", "treatment_definition", "estimator"]
ALPHA = 0.05

SPEC_COLUMNS = [
    "spec_id",
    "keyword",
    "covariate_set",
    "n_pre",
    "n_post",
    "window",
    "treatment_definition",
    "estimator",
    "status",
    "att",
    "p_value",
    "ci_lower",
    "ci_upper",
    "n_treated",
    "n_skipped",
    "mean_pre_rmspe",
    "error",
    "options_hash",
]

UNIT_COLUMNS = [
    "spec_id",
    "state_abbr",
    "treatment_date",
    "window_start",
    "window_end",
    "n_donors",
    "att",
    "p_value",
    "pre_rmspe",
    "post_rmspe",
    "rmspe_ratio",
    "pretrend_slope",
    "pretrend_p_value",
    "n_factors",
]


def load_spec_results(spec_dir: Path = SPEC_RESULTS_DIR) -> list[dict]:
    records = []
    for path in sorted(spec_dir.glob("*.json")):
        try:
            with open(path) as f:
                records.append(json.load(f))
        except json.JSONDecodeError as e:
            print(f"  Warning: could not parse {path.name}: {e}")
    return records


def build_spec_table(records: list[dict]) -> pd.DataFrame:
    rows = []
    for r in records:
        row = {c: r.get(c) for c in SPEC_COLUMNS}
        row["window"] = f"{r.get('n_pre')}/{r.get('n_post')}"
        row["n_skipped"] = len(r.get("skipped_units", []))
        rows.append(row)
    df = pd.DataFrame(rows, columns=SPEC_COLUMNS)
    for col in ["att", "p_value", "ci_lower", "ci_upper", "mean_pre_rmspe"]:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    return df.sort_values("spec_id").reset_index(drop=True)


def build_unit_table(records: list[dict]) -> pd.DataFrame:
    rows = []
    for r in records:
        for u in r.get("units", []):
            pretrend = u.get("pretrend") or {}
            row = {c: u.get(c) for c in UNIT_COLUMNS}
            row["spec_id"] = r["spec_id"]
            row["pretrend_slope"] = pretrend.get("slope")
            row["pretrend_p_value"] = pretrend.get("p_value")
            rows.append(row)
    df = pd.DataFrame(rows, columns=UNIT_COLUMNS)
    return df.sort_values(["spec_id", "state_abbr"]).reset_index(drop=True)


def _share(mask: pd.Series) -> float | None:
    return float(mask.mean()) if len(mask) else None


def _significant_share(g: pd.DataFrame, positive_only: bool = False) -> float | None:
    """Share with p < ALPHA among specs that report a p-value (no-placebo runs do not)."""
    g = g[g["p_value"].notna()]
    hit = g["p_value"] < ALPHA
    if positive_only:
        hit &= g["att"] > 0
    return _share(hit)


def _median(x: pd.Series) -> float | None:
    x = x.dropna()
    return float(x.median()) if len(x) else None


def summarize(specs: pd.DataFrame) -> dict:
    ok = specs[specs["status"] == "success"]
    summary = {
        "n_specs": int(len(specs)),
        "by_status": {k: int(v) for k, v in specs["status"].value_counts().items()},
        "n_success": int(len(ok)),
        "share_positive": _share(ok["att"] > 0),
        "n_with_p_value": int(ok["p_value"].notna().sum()),
        "share_significant": _significant_share(ok),
        "share_positive_significant": _significant_share(ok, positive_only=True),
        "median_att": _median(ok["att"]),
        "by_dimension": {},
    }
    for dim in DIMENSIONS:
        block = {}
        for level, g in ok.groupby(dim, sort=True):
            block[str(level)] = {
                "n": int(len(g)),
                "median_att": _median(g["att"]),
                "share_positive": _share(g["att"] > 0),
                "n_with_p_value": int(g["p_value"].notna().sum()),
                "share_significant": _significant_share(g),
            }
        summary["by_dimension"][dim] = block
    return summary


def main():
    print("=" * 60)
    print("Summarize multiverse")
    print("=" * 60)

    records = load_spec_results()
    if not records:
        raise FileNotFoundError(
            f"No specification results in {SPEC_RESULTS_DIR}. "
            "Run estimation/scripts/01_run_multiverse.py first."
        )
    specs = build_spec_table(records)
    units = build_unit_table(records)
    summary = summarize(specs)

    RESULTS_DIR.mkdir(parents=True, exist_ok=True)
    specs.to_csv(OUTPUT_SPECS, index=False)
    units.to_csv(OUTPUT_UNITS, index=False)
    with open(OUTPUT_SUMMARY, "w") as f:
        json.dump(summary, f, indent=2)

    print(f"  Specifications: {summary['n_specs']}")
    for status, n in summary["by_status"].items():
        print(f"    {status}: {n}")
    if summary["n_success"]:
        print(f"  Median ATT: {summary['median_att']:+.3f}")
        print(f"  Share positive: {summary['share_positive']:.1%}")
        if summary["share_significant"] is not None:
            print(f"  Share p < {ALPHA}: {summary['share_significant']:.1%} "
                  f"(of {summary['n_with_p_value']} with a p-value)")
    print(f"  Saved {OUTPUT_SPECS}")
    print(f"  Saved {OUTPUT_UNITS}")
    print(f"  Saved {OUTPUT_SUMMARY}")


if __name__ == "__main__":
    main()
