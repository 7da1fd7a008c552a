#!/usr/bin/env python3
"""
02_pull_trends.py
=================

Pull weekly Google Trends interest for every keyword x state.

Output: data/raw/trends/{keyword_slug}/{STATE}.csv  (date, hits, is_partial)

Existing CSVs are skipped, so an interrupted pull resumes where it stopped.
A state with too little volume gets a header-only CSV.

Usage:
    python scripts/02_pull_trends.py                        # everything
    python scripts/02_pull_trends.py --keywords vpn         # one keyword
    python scripts/02_pull_trends.py --states TX LA --force
    python scripts/02_pull_trends.py --dry-run
"""

import argparse
import time
from datetime import datetime, timezone

from pull_utils import (
    KEYWORDS,
    STATES,
    TRENDS_TIMEFRAME,
    append_pull_log,
    trends_csv_path,
)
from trends_fetcher import TrendsFetcher


def pending_pulls(keywords: list[str], states: list[str], force: bool = False) -> list[tuple[str, str]]:
    """(keyword, state) pairs whose CSV does not exist yet."""
    pairs = []
    for kw in keywords:
        for abbr in states:
            if force or not trends_csv_path(kw, abbr).exists():
                pairs.append((kw, abbr))
    return pairs


def main():
    parser = argparse.ArgumentParser(description="Pull Google Trends series by state")
    parser.add_argument("--keywords", nargs="+", default=KEYWORDS,
                        help="Keywords to pull (default: all configured)")
    parser.add_argument("--states", nargs="+", default=sorted(STATES),
                        help="State abbreviations (default: 50 states + DC)")
    parser.add_argument("--timeframe", default=TRENDS_TIMEFRAME,
                        help=f"Trends timeframe (default: {TRENDS_TIMEFRAME!r})")
    parser.add_argument("--sleep", type=float, default=2.0,
                        help="Seconds between successful requests (default: 2)")
    parser.add_argument("--force", action="store_true", help="Re-pull existing CSVs")
    parser.add_argument("--dry-run", action="store_true", help="List pulls without running")
    args = parser.parse_args()

    unknown = sorted(set(args.states) - set(STATES))
    if unknown:
        parser.error(f"unknown state abbreviations: {unknown}")

    pairs = pending_pulls(args.keywords, args.states, force=args.force)

    print("=" * 60)
    print("Google Trends pull")
    print("=" * 60)
    print(f"  Keywords: {len(args.keywords)}")
    print(f"  States: {len(args.states)}")
    print(f"  Timeframe: {args.timeframe}")
    print(f"  Pending: {len(pairs)}")

    if args.dry_run:
        for kw, abbr in pairs:
            print(f"  {kw!r} {abbr}")
        return

    fetcher = TrendsFetcher(timeframe=args.timeframe, sleep_seconds=args.sleep)
    start = time.time()
    n_empty = 0
    for i, (kw, abbr) in enumerate(pairs, 1):
        label = f"[{i}/{len(pairs)}] {kw!r} {abbr}"
        df = fetcher.fetch_state_series(kw, abbr)

        out_path = trends_csv_path(kw, abbr)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(out_path, index=False)
        if df.empty:
            n_empty += 1
            print(f"{label}: no data (low volume)")
        else:
            print(f"{label}: {len(df)} points")

        append_pull_log({
            "source": "trends",
            "keyword": kw,
            "state_abbr": abbr,
            "timeframe": args.timeframe,
            "rows": len(df),
            "path": str(out_path),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    elapsed = time.time() - start
    print(f"\n{'=' * 60}")
    print("PULL COMPLETE")
    print(f"{'=' * 60}")
    print(f"  Series written: {len(pairs)}")
    print(f"  Empty series: {n_empty}")
    print(f"  Wall-clock time: {elapsed:.0f}s ({elapsed / 60:.1f} min)")


if __name__ == "__main__":
    main()
