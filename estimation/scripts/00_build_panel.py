#!/usr/bin/env python3
"""
00_build_panel.py
=================

Assemble the analysis panel from the raw pulls.

Reads:
  - data/raw/trends/{keyword_slug}/{STATE}.csv
  - data/raw/census/acs1_{year}.csv

Outputs:
  - data/panel/trends_panel.csv      (state_abbr, fips, date, keyword, hits)
  - data/panel/state_covariates.csv  (state_abbr, fips, year, covariates...)

Partial (still-collecting) weeks are dropped. Header-only trends files
(too little volume) contribute nothing; the state is simply missing for
that keyword.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import numpy as np
import pandas as pd

BASE_DIR = Path(__file__).parent.parent.parent
sys.path.insert(0, str(BASE_DIR / "scripts"))

from pull_utils import (  # noqa: E402
    CENSUS_DIR,
    KEYWORDS,
    STATE_COVARIATES_CSV,
    STATES,
    TRENDS_DIR,
    TRENDS_PANEL_CSV,
    keyword_slug,
)

PANEL_COLUMNS = ["state_abbr", "fips", "date", "keyword", "hits"]

COVARIATE_COLUMNS = [
    "log_population",
    "log_median_income",
    "median_age",
    "pct_ba_plus",
    "broadband_share",
    "pct_white",
]


def load_trends_panel(trends_dir: Path = TRENDS_DIR, keywords: list[str] | None = None) -> pd.DataFrame:
    """Stack every keyword/state CSV into one long frame."""
    keywords = keywords or KEYWORDS
    frames = []
    for kw in keywords:
        kw_dir = trends_dir / keyword_slug(kw)
        if not kw_dir.exists():
            print(f"  Warning: no pulls for {kw!r} ({kw_dir})")
            continue
        for path in sorted(kw_dir.glob("*.csv")):
            abbr = path.stem
            if abbr not in STATES:
                raise ValueError(f"Unknown state abbreviation in file name: {path}")
            df = pd.read_csv(path)
            if df.empty:
                continue
            if "is_partial" in df.columns:
                partial = df["is_partial"].astype(str).str.lower().isin(["true", "1"])
                df = df[~partial]
            df = df.assign(state_abbr=abbr, fips=STATES[abbr][1], keyword=kw)
            frames.append(df)

    if not frames:
        return pd.DataFrame(columns=PANEL_COLUMNS)

    panel = pd.concat(frames, ignore_index=True)
    panel["date"] = pd.to_datetime(panel["date"])
    panel["hits"] = pd.to_numeric(panel["hits"], errors="coerce").clip(0, 100)
    panel = panel.dropna(subset=["hits"])

    dupes = panel.duplicated(subset=["state_abbr", "date", "keyword"])
    if dupes.any():
        sample = panel.loc[dupes, ["state_abbr", "date", "keyword"]].head(3).to_dict("records")
        raise ValueError(f"Duplicate (state, date, keyword) rows, e.g. {sample}")

    panel = panel[PANEL_COLUMNS].sort_values(["keyword", "state_abbr", "date"])
    return panel.reset_index(drop=True)


def derive_covariates(acs: pd.DataFrame) -> pd.DataFrame:
    """Turn raw ACS counts into the covariates used by the estimators."""
    df = acs.copy()
    ba_plus = df[["ba", "masters", "professional", "doctorate"]].sum(axis=1, min_count=1)
    df["log_population"] = np.log(df["population"])
    df["log_median_income"] = np.log(df["median_household_income"])
    df["pct_ba_plus"] = ba_plus / df["pop_25_plus"]
    df["broadband_share"] = df["broadband_households"] / df["households"]
    df["pct_white"] = df["white_alone"] / df["population"]
    return df[["state_abbr", "fips", "year"] + COVARIATE_COLUMNS]


def load_state_covariates(census_dir: Path = CENSUS_DIR) -> pd.DataFrame:
    paths = sorted(census_dir.glob("acs1_*.csv"))
    if not paths:
        raise FileNotFoundError(
            f"No ACS files in {census_dir}. Run scripts/01_pull_census.py first."
        )
    acs = pd.concat(
        [pd.read_csv(p, dtype={"fips": str}) for p in paths], ignore_index=True
    )
    acs["fips"] = acs["fips"].str.zfill(2)
    cov = derive_covariates(acs)
    return cov.sort_values(["state_abbr", "year"]).reset_index(drop=True)


def main():
    parser = argparse.ArgumentParser(description="Build the trends panel and covariate table")
    parser.add_argument("--force", action="store_true", help="Rebuild even if outputs exist")
    args = parser.parse_args()

    print("=" * 60)
    print("Build analysis panel")
    print("=" * 60)

    if TRENDS_PANEL_CSV.exists() and STATE_COVARIATES_CSV.exists() and not args.force:
        print("Outputs exist; skipping (use --force to rebuild)")
        return

    panel = load_trends_panel()
    if panel.empty:
        raise FileNotFoundError(
            f"No trends data under {TRENDS_DIR}. Run scripts/02_pull_trends.py first."
        )
    covariates = load_state_covariates()

    TRENDS_PANEL_CSV.parent.mkdir(parents=True, exist_ok=True)
    panel.to_csv(TRENDS_PANEL_CSV, index=False, date_format="%Y-%m-%d")
    covariates.to_csv(STATE_COVARIATES_CSV, index=False)

    print(f"  Panel: {len(panel):,} rows")
    for kw, g in panel.groupby("keyword"):
        print(f"    {kw!r}: {g['state_abbr'].nunique()} states, "
              f"{g['date'].min():%Y-%m-%d} to {g['date'].max():%Y-%m-%d}")
    print(f"  Covariates: {len(covariates)} state-years, "
          f"years {sorted(covariates['year'].unique().tolist())}")
    print(f"  Saved {TRENDS_PANEL_CSV}")
    print(f"  Saved {STATE_COVARIATES_CSV}")


if __name__ == "__main__":
    main()
