"""
Census ACS Fetcher for State-Level Covariates

Pulls American Community Survey 1-year estimates for every state (and DC)
from the Census Bureau statistics API. The API answers with a JSON array of
arrays whose first row is the header.

Usage:
    from census_fetcher import CensusFetcher

    fetcher = CensusFetcher(api_key=os.environ.get("CENSUS_API_KEY"))
    df = fetcher.fetch_acs_year(2022)
"""

import time
from typing import Optional

import numpy as np
import pandas as pd
import requests

from pull_utils import ACS_VARIABLES, FIPS_TO_ABBR


class CensusFetcher:
    """Fetches ACS 1-year state tables from api.census.gov."""

    BASE_URL = "https://api.census.gov/data/{year}/acs/acs1"

    def __init__(self, api_key: Optional[str] = None, rate_limit_seconds: float = 0.5,
                 variables: Optional[dict] = None, session=None):
        self.api_key = api_key
        self.rate_limit = rate_limit_seconds
        self.variables = dict(variables or ACS_VARIABLES)
        self.session = session or requests.Session()
        self.last_request_time = 0

    def _rate_limit(self):
        """Enforce rate limiting between requests."""
        elapsed = time.time() - self.last_request_time
        if elapsed < self.rate_limit:
            time.sleep(self.rate_limit - elapsed)
        self.last_request_time = time.time()

    def build_params(self) -> dict:
        params = {
            "get": ",".join(["NAME"] + list(self.variables)),
            "for": "state:*",
        }
        if self.api_key:
            params["key"] = self.api_key
        return params

    def _make_request(self, year: int) -> list:
        """Make a rate-limited request for one ACS vintage."""
        self._rate_limit()
        url = self.BASE_URL.format(year=year)
        try:
            response = self.session.get(url, params=self.build_params(), timeout=60)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            print(f"HTTP Error {e.response.status_code}: {url}")
            raise
        except requests.exceptions.RequestException as e:
            print(f"Request Error: {e}")
            raise

        try:
            return response.json()
        except ValueError:
            # The API answers an invalid key with an HTML page and status 200
            raise ValueError(
                f"Census API returned non-JSON for {year} "
                f"(check CENSUS_API_KEY): {response.text[:200]!r}"
            )

    def parse_response(self, rows: list, year: int) -> pd.DataFrame:
        """
        Turn the header-row JSON array into a tidy frame.

        Census encodes suppressed or unavailable estimates as large negative
        sentinels (e.g. -666666666); those become NaN.
        """
        if not rows or len(rows) < 2:
            raise ValueError(f"Census API returned no rows for {year}")

        header, body = rows[0], rows[1:]
        df = pd.DataFrame(body, columns=header)
        df = df.rename(columns={"NAME": "state_name", "state": "fips", **self.variables})
        df["fips"] = df["fips"].astype(str).str.zfill(2)

        # Puerto Rico and anything else outside the 50 states + DC
        df = df[df["fips"].isin(FIPS_TO_ABBR)].copy()
        df["state_abbr"] = df["fips"].map(FIPS_TO_ABBR)

        for col in self.variables.values():
            values = pd.to_numeric(df[col], errors="coerce").astype(float)
            df[col] = values.mask(values < 0, np.nan)

        df["year"] = int(year)
        cols = ["state_abbr", "fips", "state_name", "year"] + list(self.variables.values())
        return df[cols].sort_values("state_abbr").reset_index(drop=True)

    def fetch_acs_year(self, year: int) -> pd.DataFrame:
        """Fetch and parse one ACS 1-year vintage for all states."""
        rows = self._make_request(year)
        return self.parse_response(rows, year)
