"""
Pytest configuration and fixtures
"""
import importlib.util
import multiprocessing
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Worker-process tests run after in-process estimator fits have started native
# thread pools; forking then deadlocks the workers, so start them from a clean server.
multiprocessing.set_start_method("forkserver", force=True)

REPO_ROOT = Path(__file__).resolve().parent.parent
PULL_SCRIPTS_DIR = REPO_ROOT / "scripts"
ESTIMATION_SCRIPTS_DIR = REPO_ROOT / "estimation" / "scripts"

# Script directories hold the importable helper modules
for _p in (PULL_SCRIPTS_DIR, ESTIMATION_SCRIPTS_DIR):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))


def load_script(path: Path):
    """Import a numbered script (not a valid module name) by file path."""
    name = "script_" + path.stem.replace("-", "_")
    spec = importlib.util.spec_from_file_location(name, path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


@pytest.fixture(scope="session")
def build_panel_script():
    return load_script(ESTIMATION_SCRIPTS_DIR / "00_build_panel.py")


@pytest.fixture(scope="session")
def run_multiverse_script():
    return load_script(ESTIMATION_SCRIPTS_DIR / "01_run_multiverse.py")


@pytest.fixture(scope="session")
def summarize_script():
    return load_script(ESTIMATION_SCRIPTS_DIR / "02_summarize_multiverse.py")


@pytest.fixture(scope="session")
def gap_plot_script():
    return load_script(ESTIMATION_SCRIPTS_DIR / "03_plot_gaps.py")


@pytest.fixture(scope="session")
def spec_curve_script():
    return load_script(ESTIMATION_SCRIPTS_DIR / "04_plot_spec_curve.py")


@pytest.fixture(scope="session")
def pull_trends_script():
    return load_script(PULL_SCRIPTS_DIR / "02_pull_trends.py")


# ---------------------------------------------------------------------------
# Synthetic panel: one common factor, treated states inside the donors' hull
# ---------------------------------------------------------------------------

EFFECT = 8.0
N_PERIODS = 80
TREATED = {"TX": 50, "UT": 40}
LATE_TREATED = {"LA": 70}
DONORS = ["CA", "NY", "WA", "OR", "CO", "MA", "IL", "MN", "PA", "OH"]


@pytest.fixture(scope="session")
def dates():
    return pd.date_range("2022-01-02", periods=N_PERIODS, freq="W-SUN")


@pytest.fixture(scope="session")
def synthetic_panel(dates):
    rng = np.random.default_rng(7)
    t = np.arange(N_PERIODS)
    factor = 10.0 * np.sin(t / 8.0) + 0.1 * t

    states = list(TREATED) + list(LATE_TREATED) + DONORS
    loadings = dict(zip(DONORS, np.linspace(0.5, 1.5, len(DONORS))))
    alphas = dict(zip(DONORS, np.linspace(30.0, 50.0, len(DONORS))))
    for abbr in list(TREATED) + list(LATE_TREATED):
        loadings[abbr] = 1.0
        alphas[abbr] = 40.0

    frames = []
    for abbr in states:
        y = alphas[abbr] + loadings[abbr] * factor + rng.normal(0.0, 0.3, N_PERIODS)
        if abbr in TREATED:
            y[TREATED[abbr]:] += EFFECT
        frames.append(pd.DataFrame({
            "state_abbr": abbr,
            "fips": "00",
            "date": dates,
            "keyword": "vpn",
            "hits": y,
        }))
    return pd.concat(frames, ignore_index=True)


@pytest.fixture(scope="session")
def synthetic_covariates(synthetic_panel):
    rng = np.random.default_rng(11)
    rows = []
    for abbr in sorted(synthetic_panel["state_abbr"].unique()):
        base = rng.normal(size=6)
        for year in (2021, 2022, 2023):
            drift = 0.01 * (year - 2021)
            rows.append({
                "state_abbr": abbr,
                "fips": "00",
                "year": year,
                "log_population": 15.0 + base[0] + drift,
                "log_median_income": 11.0 + 0.1 * base[1] + drift,
                "median_age": 38.0 + base[2] + 10 * drift,
                "pct_ba_plus": 0.3 + 0.02 * base[3] + drift,
                "broadband_share": 0.85 + 0.02 * base[4] + drift,
                "pct_white": 0.7 + 0.05 * base[5] - drift,
            })
    return pd.DataFrame(rows)


@pytest.fixture(scope="session")
def synthetic_treatments(synthetic_panel, dates):
    rows = []
    for abbr in sorted(synthetic_panel["state_abbr"].unique()):
        effective = pd.NaT
        if abbr in TREATED:
            effective = dates[TREATED[abbr]]
        elif abbr in LATE_TREATED:
            effective = dates[LATE_TREATED[abbr]]
        block = dates[55] if abbr == "TX" else pd.NaT
        rows.append({
            "state_abbr": abbr,
            "state_name": abbr,
            "fips": "00",
            "effective_date": effective,
            "block_date": block,
        })
    df = pd.DataFrame(rows)
    df["effective_date"] = pd.to_datetime(df["effective_date"])
    df["block_date"] = pd.to_datetime(df["block_date"])
    return df


def one_factor_matrix(T=40, n_donors=12, n_pre=30, effect=5.0, noise=0.05, seed=3):
    """(T, N) outcomes with the treated unit in column 0, plus the true effect."""
    rng = np.random.default_rng(seed)
    t = np.arange(T)
    f = 5.0 * np.sin(t / 4.0) + 0.2 * t
    lam = np.concatenate([[1.0], np.linspace(0.4, 1.6, n_donors)])
    alpha = np.concatenate([[20.0], np.linspace(10.0, 30.0, n_donors)])
    xi = rng.normal(0.0, 1.0, T)
    Y = alpha[None, :] + xi[:, None] + f[:, None] * lam[None, :] + rng.normal(0.0, noise, (T, n_donors + 1))
    Y[n_pre:, 0] += effect
    return Y
