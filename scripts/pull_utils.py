"""
Shared constants and helpers for the Census / Google Trends pull scripts
and the panel builder.
"""

import json
import re
from pathlib import Path

import pandas as pd

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
REPO_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = REPO_ROOT / "data"
REFERENCE_DIR = DATA_DIR / "reference"
RAW_DIR = DATA_DIR / "raw"
CENSUS_DIR = RAW_DIR / "census"
TRENDS_DIR = RAW_DIR / "trends"
PANEL_DIR = DATA_DIR / "panel"
PULL_LOG = DATA_DIR / "tracking" / "pull_log.jsonl"

TREATMENT_DATES_CSV = REFERENCE_DIR / "treatment_dates.csv"
TRENDS_PANEL_CSV = PANEL_DIR / "trends_panel.csv"
STATE_COVARIATES_CSV = PANEL_DIR / "state_covariates.csv"

# ---------------------------------------------------------------------------
# States (50 + DC): abbreviation -> (name, FIPS)
# ---------------------------------------------------------------------------
STATES = {
    "AL": ("Alabama", "01"), "AK": ("Alaska", "02"), "AZ": ("Arizona", "04"),
    "AR": ("Arkansas", "05"), "CA": ("California", "06"), "CO": ("Colorado", "08"),
    "CT": ("Connecticut", "09"), "DE": ("Delaware", "10"),
    "DC": ("District of Columbia", "11"), "FL": ("Florida", "12"),
    "GA": ("Georgia", "13"), "HI": ("Hawaii", "15"), "ID": ("Idaho", "16"),
    "IL": ("Illinois", "17"), "IN": ("Indiana", "18"), "IA": ("Iowa", "19"),
    "KS": ("Kansas", "20"), "KY": ("Kentucky", "21"), "LA": ("Louisiana", "22"),
    "ME": ("Maine", "23"), "MD": ("Maryland", "24"), "MA": ("Massachusetts", "25"),
    "MI": ("Michigan", "26"), "MN": ("Minnesota", "27"), "MS": ("Mississippi", "28"),
    "MO": ("Missouri", "29"), "MT": ("Montana", "30"), "NE": ("Nebraska", "31"),
    "NV": ("Nevada", "32"), "NH": ("New Hampshire", "33"), "NJ": ("New Jersey", "34"),
    "NM": ("New Mexico", "35"), "NY": ("New York", "36"),
    "NC": ("North Carolina", "37"), "ND": ("North Dakota", "38"), "OH": ("Ohio", "39"),
    "OK": ("Oklahoma", "40"), "OR": ("Oregon", "41"), "PA": ("Pennsylvania", "42"),
    "RI": ("Rhode Island", "44"), "SC": ("South Carolina", "45"),
    "SD": ("South Dakota", "46"), "TN": ("Tennessee", "47"), "TX": ("Texas", "48"),
    "UT": ("Utah", "49"), "VT": ("Vermont", "50"), "VA": ("Virginia", "51"),
    "WA": ("Washington", "53"), "WV": ("West Virginia", "54"),
    "WI": ("Wisconsin", "55"), "WY": ("Wyoming", "56"),
}

FIPS_TO_ABBR = {fips: abbr for abbr, (_, fips) in STATES.items()}

# ---------------------------------------------------------------------------
# Pull configuration
# ---------------------------------------------------------------------------
KEYWORDS = ["vpn", "pornhub", "xvideos", "porn", "onlyfans", "tor browser"]

# Under five years, so Google Trends returns weekly points.
TRENDS_TIMEFRAME = "2021-01-03 2025-09-27"

ACS_YEARS = [2019, 2021, 2022, 2023]

# ACS 1-year detailed-table variable -> column name
ACS_VARIABLES = {
    "B01003_001E": "population",
    "B19013_001E": "median_household_income",
    "B01002_001E": "median_age",
    "B15003_001E": "pop_25_plus",
    "B15003_022E": "ba",
    "B15003_023E": "masters",
    "B15003_024E": "professional",
    "B15003_025E": "doctorate",
    "B28002_001E": "households",
    "B28002_004E": "broadband_households",
    "B02001_002E": "white_alone",
}

TREATMENT_DEFINITIONS = {
    "effective": "effective_date",
    "block": "block_date",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def keyword_slug(keyword: str) -> str:
    """e.g., 'Tor Browser' -> 'tor_browser'"""
    slug = re.sub(r"[^a-z0-9]+", "_", keyword.strip().lower())
    return slug.strip("_")


def trends_csv_path(keyword: str, state_abbr: str) -> Path:
    return TRENDS_DIR / keyword_slug(keyword) / f"{state_abbr}.csv"


def census_csv_path(year: int) -> Path:
    return CENSUS_DIR / f"acs1_{year}.csv"


def load_treatment_dates(path: Path = TREATMENT_DATES_CSV) -> pd.DataFrame:
    """
    Load the hand-maintained treatment table.

    One row per state. Date columns are parsed; an empty cell means the state
    is never treated under that definition. FIPS codes stay zero-padded strings.
    """
    df = pd.read_csv(path, dtype={"fips": str, "state_abbr": str})
    df["fips"] = df["fips"].str.zfill(2)
    for col in TREATMENT_DEFINITIONS.values():
        df[col] = pd.to_datetime(df[col], errors="coerce")

    unknown = sorted(set(df["state_abbr"]) - set(STATES))
    if unknown:
        raise ValueError(f"Unknown state abbreviations in {path.name}: {unknown}")
    if df["state_abbr"].duplicated().any():
        dupes = sorted(df.loc[df["state_abbr"].duplicated(), "state_abbr"])
        raise ValueError(f"Duplicate states in {path.name}: {dupes}")

    # States missing from the table are never treated
    missing = [abbr for abbr in STATES if abbr not in set(df["state_abbr"])]
    if missing:
        extra = pd.DataFrame({
            "state_abbr": missing,
            "state_name": [STATES[a][0] for a in missing],
            "fips": [STATES[a][1] for a in missing],
        })
        df = pd.concat([df, extra], ignore_index=True)
        for col in TREATMENT_DEFINITIONS.values():
            df[col] = pd.to_datetime(df[col])

    return df.sort_values("state_abbr").reset_index(drop=True)


def treatment_date_map(treatments: pd.DataFrame, definition: str) -> dict:
    """state_abbr -> Timestamp (or NaT) under one treatment definition."""
    if definition not in TREATMENT_DEFINITIONS:
        raise ValueError(
            f"Unknown treatment definition {definition!r}; "
            f"expected one of {sorted(TREATMENT_DEFINITIONS)}"
        )
    col = TREATMENT_DEFINITIONS[definition]
    return dict(zip(treatments["state_abbr"], treatments[col]))


def append_pull_log(record: dict):
    """Append one pull record to the tracking JSONL."""
    PULL_LOG.parent.mkdir(parents=True, exist_ok=True)
    with open(PULL_LOG, "a") as f:
        f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
