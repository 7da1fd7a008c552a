#!/usr/bin/env python3
"""
04_plot_spec_curve.py
=====================

Specification curve per keyword: successful specifications sorted by ATT,
coloured by p < 0.05, with an indicator panel beneath marking each
specification's analytic choices.

Reads:
  - estimation/results/multiverse_results.csv

Output:
  - estimation/figures/fig_spec_curve_{keyword}.pdf
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd

BASE_DIR = Path(__file__).parent.parent.parent
sys.path.insert(0, str(BASE_DIR / "scripts"))

from pull_utils import keyword_slug  # noqa: E402

RESULTS_DIR = BASE_DIR / "estimation" / "results"
FIG_DIR = BASE_DIR / "estimation" / "figures"
INPUT_FILE = RESULTS_DIR / "multiverse_results.csv"

ALPHA = 0.05
CHOICE_DIMENSIONS = ["covariate_set", "window", "treatment_definition", "estimator"]


def curve_frame(specs: pd.DataFrame, keyword: str) -> pd.DataFrame:
    """Successful specs for one keyword, sorted by ATT, with a rank column."""
    df = specs[(specs["keyword"] == keyword) & (specs["status"] == "success")].copy()
    df = df.dropna(subset=["att"]).sort_values("att").reset_index(drop=True)
    df["rank"] = np.arange(len(df))
    df["significant"] = df["p_value"] < ALPHA
    return df


def indicator_rows(df: pd.DataFrame) -> list[tuple[str, str]]:
    """(dimension, level) rows of the indicator panel, grouped by dimension."""
    rows = []
    for dim in CHOICE_DIMENSIONS:
        for level in sorted(df[dim].astype(str).unique()):
            rows.append((dim, level))
    return rows


def plot_curve(df: pd.DataFrame, keyword: str, out_path: Path):
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    plt.rcParams.update({
        "font.family": "serif",
        "mathtext.fontset": "stix",
        "axes.spines.top": False,
        "axes.spines.right": False,
    })

    rows = indicator_rows(df)
    fig, (ax_top, ax_bot) = plt.subplots(
        2, 1, figsize=(7.0, 3.0 + 0.16 * len(rows)), sharex=True,
        gridspec_kw={"height_ratios": [2.2, 0.18 * len(rows) + 0.4]},
        constrained_layout=True,
    )

    colors = np.where(df["significant"], "firebrick", "0.55")
    has_ci = df["ci_lower"].notna() & df["ci_upper"].notna()
    if has_ci.any():
        ax_top.vlines(df.loc[has_ci, "rank"], df.loc[has_ci, "ci_lower"], df.loc[has_ci, "ci_upper"],
                      color="0.8", lw=0.8, zorder=1)
    ax_top.scatter(df["rank"], df["att"], c=colors, s=10, zorder=2, linewidths=0)
    ax_top.axhline(0.0, color="black", lw=0.8)
    median = float(df["att"].median())
    ax_top.axhline(median, color="steelblue", lw=1.0, ls="--", label=f"Median ATT = {median:+.2f}")
    ax_top.set_ylabel("ATT (search interest)")
    ax_top.set_title(f"Specification curve: {keyword!r} ({len(df)} specifications)", fontsize=10)
    ax_top.legend(frameon=False, fontsize=8, loc="upper left")

    labels = []
    for y, (dim, level) in enumerate(rows):
        on = df[dim].astype(str) == level
        ax_bot.scatter(df.loc[on, "rank"], np.full(on.sum(), y), marker="|", s=30,
                       c=colors[on.to_numpy()], linewidths=1.0)
        labels.append(f"{dim.replace('_', ' ')}: {level}")
    ax_bot.set_yticks(range(len(rows)))
    ax_bot.set_yticklabels(labels, fontsize=7)
    ax_bot.set_ylim(len(rows) - 0.5, -0.5)
    ax_bot.set_xlabel("Specification rank")
    ax_bot.spines["left"].set_visible(False)

    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=300)
    plt.close(fig)
    print(f"  Saved {out_path}")


def main() -> None:
    print("=" * 60)
    print("Specification curves")
    print("=" * 60)

    if not INPUT_FILE.exists():
        raise FileNotFoundError(
            f"{INPUT_FILE} not found. Run estimation/scripts/02_summarize_multiverse.py first."
        )
    specs = pd.read_csv(INPUT_FILE)

    for kw in sorted(specs["keyword"].dropna().unique()):
        df = curve_frame(specs, kw)
        if df.empty:
            print(f"  Skipping {kw!r}: no successful specifications")
            continue
        plot_curve(df, kw, FIG_DIR / f"fig_spec_curve_{keyword_slug(kw)}.pdf")


if __name__ == "__main__":
    main()
