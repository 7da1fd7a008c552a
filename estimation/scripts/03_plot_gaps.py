#!/usr/bin/env python3
"""
03_plot_gaps.py
===============

Gap plots for one baseline specification per keyword.

For each keyword:
  - fig_gap_{keyword}.pdf        mean event-time gap across treated states,
                                 every in-space placebo gap drawn in grey
  - fig_paths_{keyword}.pdf      per-state actual vs counterfactual paths

Reads:
  - estimation/results/specs/{spec_id}.json

Output:
  - estimation/figures/
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import numpy as np

BASE_DIR = Path(__file__).parent.parent.parent
sys.path.insert(0, str(BASE_DIR / "scripts"))

from multiverse import SPEC_RESULTS_DIR, SpecOptions, spec_result_path  # noqa: E402
from pull_utils import KEYWORDS, keyword_slug  # noqa: E402

FIG_DIR = BASE_DIR / "estimation" / "figures"

BASELINE = {
    "covariate_set": "none",
    "n_pre": 52,
    "n_post": 26,
    "treatment_definition": "effective",
    "estimator": "synth",
}


def load_json(path: Path) -> dict | None:
    """Load a JSON file, returning None if missing."""
    if not path.exists():
        print(f"  Warning: {path} not found.")
        return None
    with open(path, "r") as f:
        return json.load(f)


def mean_event_gap(units: list[dict]) -> tuple[np.ndarray, np.ndarray]:
    """Average gap across treated states, aligned on event time."""
    event_time = np.asarray(units[0]["event_time"])
    gaps = np.vstack([np.asarray(u["gap"], dtype=float) for u in units])
    return event_time, gaps.mean(axis=0)


def _setup_matplotlib():
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    plt.rcParams.update({
        "font.family": "serif",
        "mathtext.fontset": "stix",
        "axes.spines.top": False,
        "axes.spines.right": False,
    })
    return plt


def plot_gap(result: dict, out_path: Path):
    plt = _setup_matplotlib()
    units = [u for u in result["units"] if u.get("gap")]
    event_time, mean_gap = mean_event_gap(units)

    fig, ax = plt.subplots(figsize=(6.0, 4.0), constrained_layout=True)
    n_placebo_lines = 0
    for u in units:
        for g in u.get("placebo_gaps") or []:
            ax.plot(event_time, g, color="0.8", lw=0.5, alpha=0.5, zorder=1)
            n_placebo_lines += 1
    for u in units:
        ax.plot(event_time, u["gap"], color="steelblue", lw=0.7, alpha=0.5, zorder=2)
    ax.plot(event_time, mean_gap, color="black", lw=2.0, zorder=3, label="Mean across treated states")

    ax.axvline(-0.5, color="black", ls="--", lw=1.0)
    ax.axhline(0.0, color="black", lw=0.6)
    ax.set_xlabel("Weeks relative to law")
    ax.set_ylabel("Gap in search interest (treated - counterfactual)")
    ax.set_title(f"{result['keyword']!r}: {result['estimator']}, ATT = {result['att']:+.2f}", fontsize=10)
    ax.legend(frameon=False, fontsize=9, loc="upper left")

    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=300)
    plt.close(fig)
    print(f"  Saved {out_path} ({len(units)} states, {n_placebo_lines} placebo paths)")


def plot_paths(result: dict, out_path: Path):
    plt = _setup_matplotlib()
    units = result["units"]
    n = len(units)
    ncols = min(4, n)
    nrows = int(np.ceil(n / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(2.6 * ncols, 2.0 * nrows),
                             squeeze=False, sharex=True, constrained_layout=True)

    for ax, u in zip(axes.ravel(), units):
        et = np.asarray(u["event_time"])
        ax.plot(et, u["actual"], color="black", lw=1.0, label="Actual")
        ax.plot(et, u["counterfactual"], color="firebrick", lw=1.0, ls="--", label="Counterfactual")
        ax.axvline(-0.5, color="0.5", lw=0.8, ls=":")
        ax.set_title(f"{u['state_abbr']} ({u['treatment_date']})", fontsize=8)
        ax.tick_params(labelsize=7)
    for ax in axes.ravel()[n:]:
        ax.set_visible(False)
    axes.ravel()[0].legend(frameon=False, fontsize=7)

    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=300)
    plt.close(fig)
    print(f"  Saved {out_path}")


def main():
    parser = argparse.ArgumentParser(description="Plot baseline gap figures")
    parser.add_argument("--keywords", nargs="+", default=KEYWORDS)
    parser.add_argument("--estimator", default=BASELINE["estimator"])
    parser.add_argument("--covariate-set", default=BASELINE["covariate_set"])
    parser.add_argument("--treatment", default=BASELINE["treatment_definition"])
    args = parser.parse_args()

    print("=" * 60)
    print("Gap plots")
    print("=" * 60)

    for kw in args.keywords:
        options = SpecOptions(
            keyword=kw,
            covariate_set=args.covariate_set,
            n_pre=BASELINE["n_pre"],
            n_post=BASELINE["n_post"],
            treatment_definition=args.treatment,
            estimator=args.estimator,
        )
        result = load_json(spec_result_path(options, SPEC_RESULTS_DIR))
        if result is None:
            continue
        if result.get("status") != "success":
            print(f"  Skipping {options.spec_id} (status: {result.get('status')})")
            continue
        slug = keyword_slug(kw)
        plot_gap(result, FIG_DIR / f"fig_gap_{slug}.pdf")
        plot_paths(result, FIG_DIR / f"fig_paths_{slug}.pdf")


if __name__ == "__main__":
    main()
