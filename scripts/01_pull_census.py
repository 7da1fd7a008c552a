#!/usr/bin/env python3
"""
01_pull_census.py
=================

Pull state-level ACS 1-year covariates from the Census API.

Output: data/raw/census/acs1_{year}.csv (one file per vintage)

A vintage whose CSV already exists is skipped unless --force is given.
Set CENSUS_API_KEY to avoid the keyless daily quota.

Usage:
    python scripts/01_pull_census.py
    python scripts/01_pull_census.py --years 2022 2023 --force
"""

import argparse
import os
from datetime import datetime, timezone

from census_fetcher import CensusFetcher
from pull_utils import ACS_YEARS, append_pull_log, census_csv_path


def main():
    parser = argparse.ArgumentParser(description="Pull ACS 1-year state covariates")
    parser.add_argument("--years", type=int, nargs="+", default=ACS_YEARS,
                        help=f"ACS vintages to pull (default: {ACS_YEARS})")
    parser.add_argument("--force", action="store_true",
                        help="Re-pull vintages whose CSV already exists")
    args = parser.parse_args()

    print("=" * 60)
    print("Census ACS pull")
    print("=" * 60)

    api_key = os.environ.get("CENSUS_API_KEY")
    if not api_key:
        print("Warning: CENSUS_API_KEY not set; using the keyless quota")

    fetcher = CensusFetcher(api_key=api_key)
    n_written = 0
    for i, year in enumerate(args.years, 1):
        label = f"[{i}/{len(args.years)}] ACS {year}"
        out_path = census_csv_path(year)
        if out_path.exists() and not args.force:
            print(f"{label}: SKIPPED (exists)")
            continue

        df = fetcher.fetch_acs_year(year)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(out_path, index=False)
        n_written += 1
        print(f"{label}: {len(df)} states -> {out_path}")

        append_pull_log({
            "source": "census",
            "year": year,
            "rows": len(df),
            "path": str(out_path),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    print(f"\nWrote {n_written} vintage(s)")


if __name__ == "__main__":
    main()
