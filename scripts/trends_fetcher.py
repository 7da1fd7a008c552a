"""
Google Trends fetcher for state-level search interest.

Wraps pytrends so each request asks for a single keyword in a single state
(geo "US-XX"). Each series is scaled 0-100 by Google within its own
request, which is what the per-state counterfactual models expect.

Google throttles aggressively; 429s are retried with exponential backoff on
a fresh session.
"""

import time

import pandas as pd
from pytrends.exceptions import ResponseError, TooManyRequestsError
from pytrends.request import TrendReq

from pull_utils import TRENDS_TIMEFRAME

SERIES_COLUMNS = ["date", "hits", "is_partial"]


class TrendsFetcher:
    """Fetches one keyword x state interest-over-time series per call."""

    def __init__(self, timeframe: str = TRENDS_TIMEFRAME, sleep_seconds: float = 2.0,
                 max_attempts: int = 5, backoff_seconds: float = 5.0,
                 hl: str = "en-US", tz: int = 360):
        self.timeframe = timeframe
        self.sleep_seconds = sleep_seconds
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.hl = hl
        self.tz = tz
        self.client = self._new_client()

    def _new_client(self):
        return TrendReq(hl=self.hl, tz=self.tz)

    def _request(self, keyword: str, geo: str) -> pd.DataFrame:
        self.client.build_payload([keyword], cat=0, timeframe=self.timeframe, geo=geo, gprop="")
        return self.client.interest_over_time()

    def fetch_state_series(self, keyword: str, state_abbr: str) -> pd.DataFrame:
        """
        Return `date, hits, is_partial` for one keyword in one state.

        An empty frame (with the standard columns) means Google had too
        little volume to report anything.
        """
        geo = f"US-{state_abbr}"
        last_error = None

        for attempt in range(self.max_attempts):
            if attempt > 0:
                wait = self.backoff_seconds * (2 ** (attempt - 1))
                print(f"  Retrying {keyword!r} {geo} in {wait:.0f}s...")
                time.sleep(wait)
                # Fresh session to drop throttled cookies
                self.client = self._new_client()

            try:
                raw = self._request(keyword, geo)
            except (TooManyRequestsError, ResponseError) as e:
                last_error = e
                print(f"  Warning: {type(e).__name__} for {keyword!r} {geo}")
                continue

            if self.sleep_seconds:
                time.sleep(self.sleep_seconds)
            return self.parse_series(raw, keyword)

        raise RuntimeError(
            f"Google Trends request failed after {self.max_attempts} attempts "
            f"for {keyword!r} {geo}: {last_error}"
        )

    @staticmethod
    def parse_series(raw: pd.DataFrame, keyword: str) -> pd.DataFrame:
        if raw is None or raw.empty or keyword not in raw.columns:
            return pd.DataFrame(columns=SERIES_COLUMNS)

        df = raw.reset_index()
        date_col = "date" if "date" in df.columns else df.columns[0]
        out = pd.DataFrame({
            "date": pd.to_datetime(df[date_col]).dt.strftime("%Y-%m-%d"),
            "hits": pd.to_numeric(df[keyword], errors="coerce"),
            "is_partial": df["isPartial"].astype(bool) if "isPartial" in df.columns else False,
        })
        return out[SERIES_COLUMNS]
