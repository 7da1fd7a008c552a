#!/usr/bin/env python3
"""
multiverse.py
=============

Specification surface for the age-verification multiverse and the runner
for a single specification.

A specification is one point in

    keyword x covariate set x (pre, post) window x treatment definition x estimator

`run_spec` fits every eligible treated state under that specification,
aggregates the unit ATTs and returns a JSON-ready record. Errors inside a
specification are captured into an `error_details` block rather than
raised, so a sweep keeps going.
"""

from __future__ import annotations

import hashlib
import itertools
import json
import math
import platform
import sys
import traceback
from dataclasses import asdict, dataclass
from importlib import metadata
from pathlib import Path

import numpy as np
import pandas as pd

BASE_DIR = Path(__file__).parent.parent.parent
sys.path.insert(0, str(BASE_DIR / "scripts"))

from estimators import (  # noqa: E402
    aggregate_att,
    fit_stacked_did,
    fit_unit,
    placebo_test,
    pretrend_diagnostic,
)
from pull_utils import KEYWORDS, TREATMENT_DEFINITIONS, keyword_slug, treatment_date_map  # noqa: E402

RESULTS_DIR = BASE_DIR / "estimation" / "results"
SPEC_RESULTS_DIR = RESULTS_DIR / "specs"

COVARIATE_SETS = {
    "none": [],
    "demographic": ["median_age", "pct_ba_plus", "log_median_income"],
    "full": [
        "median_age",
        "pct_ba_plus",
        "log_median_income",
        "broadband_share",
        "log_population",
        "pct_white",
    ],
}

# (pre periods, post periods), in weeks
WINDOWS = [(26, 13), (52, 13), (52, 26), (104, 26)]

ESTIMATOR_NAMES = ["synth", "gsynth", "did"]

ESTIMATION_PACKAGES = (
    "numpy",
    "pandas",
    "scipy",
    "statsmodels",
    "pyfixest",
)


# ---------------------------------------------------------------------------
# Options record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SpecOptions:
    keyword: str
    covariate_set: str
    n_pre: int
    n_post: int
    treatment_definition: str
    estimator: str
    placebo: bool = True
    n_factors: int | None = None  # gsynth only; None = cross-validated
    v_method: str = "nested"      # synth only

    def __post_init__(self):
        if self.covariate_set not in COVARIATE_SETS:
            raise ValueError(f"Unknown covariate set {self.covariate_set!r}")
        if self.treatment_definition not in TREATMENT_DEFINITIONS:
            raise ValueError(f"Unknown treatment definition {self.treatment_definition!r}")
        if self.estimator not in ESTIMATOR_NAMES:
            raise ValueError(f"Unknown estimator {self.estimator!r}")
        if self.n_pre < 2 or self.n_post < 1:
            raise ValueError(f"Invalid window ({self.n_pre}, {self.n_post})")

    @property
    def covariates(self) -> list[str]:
        return list(COVARIATE_SETS[self.covariate_set])

    @property
    def spec_id(self) -> str:
        return "__".join([
            keyword_slug(self.keyword),
            self.covariate_set,
            f"pre{self.n_pre}_post{self.n_post}",
            self.treatment_definition,
            self.estimator,
        ])

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def options_hash(self) -> str:
        canon = json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=False, separators=(",", ":"))
        return "sha256:" + hashlib.sha256(canon.encode("utf-8")).hexdigest()


def enumerate_specs(keywords=None, covariate_sets=None, windows=None,
                    treatment_definitions=None, estimators=None, **option_overrides) -> list[SpecOptions]:
    """Cross product of all dimensions, in a stable order."""
    keywords = keywords or KEYWORDS
    covariate_sets = covariate_sets or list(COVARIATE_SETS)
    windows = windows or WINDOWS
    treatment_definitions = treatment_definitions or list(TREATMENT_DEFINITIONS)
    estimators = estimators or ESTIMATOR_NAMES

    specs = []
    for kw, cov, (n_pre, n_post), trt, est in itertools.product(
        keywords, covariate_sets, windows, treatment_definitions, estimators
    ):
        specs.append(SpecOptions(
            keyword=kw,
            covariate_set=cov,
            n_pre=int(n_pre),
            n_post=int(n_post),
            treatment_definition=trt,
            estimator=est,
            **option_overrides,
        ))
    return specs


def spec_result_path(options: SpecOptions, results_dir: Path = SPEC_RESULTS_DIR) -> Path:
    return results_dir / f"{options.spec_id}.json"


# ---------------------------------------------------------------------------
# Output plumbing
# ---------------------------------------------------------------------------

def one_line(text, max_len: int = 240) -> str:
    """Collapse whitespace so a message fits in one CSV cell."""
    text = " ".join(str(text or "").split())
    return text if len(text) <= max_len else text[: max_len - 3] + "..."


def software_versions(packages: tuple[str, ...] = ESTIMATION_PACKAGES) -> dict:
    """Interpreter and estimation-stack versions stored with every spec."""
    found = {}
    for name in packages:
        try:
            found[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            pass
    return {"python": platform.python_version(), "packages": found}


def error_details(e: BaseException, stage: str, n_frames: int = 6) -> dict:
    """Where a spec failed: pipeline stage, exception and the innermost frames."""
    frames = traceback.extract_tb(e.__traceback__)[-n_frames:]
    return {
        "stage": stage,
        "exception_type": type(e).__name__,
        "exception_message": one_line(e, max_len=500),
        "frames": [f"{Path(f.filename).name}:{f.lineno} in {f.name}" for f in frames],
    }


def json_safe(obj):
    """Recursively convert numpy scalars/arrays and NaN to plain JSON values."""
    if isinstance(obj, dict):
        return {str(k): json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [json_safe(v) for v in obj]
    if isinstance(obj, np.ndarray):
        return [json_safe(v) for v in obj.tolist()]
    if isinstance(obj, (pd.Timestamp,)):
        return obj.strftime("%Y-%m-%d")
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (float, np.floating)):
        x = float(obj)
        return x if math.isfinite(x) else None
    if isinstance(obj, np.bool_):
        return bool(obj)
    return obj


def write_spec_result(result: dict, path: Path):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    with open(tmp, "w") as f:
        json.dump(json_safe(result), f, indent=2)
    tmp.replace(path)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

def wide_outcomes(panel: pd.DataFrame, keyword: str) -> pd.DataFrame:
    """Date x state matrix of hits for one keyword."""
    sub = panel[panel["keyword"] == keyword]
    if sub.empty:
        raise ValueError(f"No panel rows for keyword {keyword!r}")
    wide = sub.pivot(index="date", columns="state_abbr", values="hits")
    wide.index = pd.to_datetime(wide.index)
    return wide.sort_index()


def covariate_lookup(covariates: pd.DataFrame, columns: list[str]) -> dict[str, pd.DataFrame]:
    """state -> year-indexed covariate frame, gaps filled from the nearest year."""
    out = {}
    if not columns:
        return out
    for abbr, g in covariates.groupby("state_abbr"):
        g = g.set_index("year")[columns].sort_index()
        years = range(int(g.index.min()), int(g.index.max()) + 1)
        out[abbr] = g.reindex(years).ffill().bfill()
    return out


def _covariate_row(lookup: dict, abbr: str, year: int) -> np.ndarray | None:
    g = lookup.get(abbr)
    if g is None:
        return None
    year = min(max(year, g.index.min()), g.index.max())
    row = g.loc[year].to_numpy(dtype=float)
    return row if np.all(np.isfinite(row)) else None


# ---------------------------------------------------------------------------
# Treated units, donors and windows
# ---------------------------------------------------------------------------

def window_bounds(dates: pd.DatetimeIndex, treatment_date: pd.Timestamp,
                  n_pre: int, n_post: int) -> tuple[int, int, int]:
    """
    (start, first_post, end) row positions. The first post period is the
    first observation dated on or after the treatment date.
    """
    first_post = int(dates.searchsorted(treatment_date, side="left"))
    return first_post - n_pre, first_post, first_post + n_post


def _usable_series(values: np.ndarray) -> bool:
    values = np.asarray(values, dtype=float)
    return bool(np.all(np.isfinite(values)) and np.nanstd(values) > 0)


def treated_units(wide: pd.DataFrame, tmap: dict, n_pre: int, n_post: int):
    """
    States eligible as treated units for this window.

    Returns (eligible, skipped): eligible is a list of (state, date);
    skipped is a list of {state_abbr, treatment_date, reason}.
    """
    dates = wide.index
    eligible, skipped = [], []
    for abbr in sorted(tmap):
        tdate = tmap[abbr]
        if pd.isna(tdate):
            continue
        if abbr not in wide.columns:
            skipped.append({"state_abbr": abbr, "treatment_date": tdate, "reason": "no outcome data"})
            continue
        start, _, end = window_bounds(dates, tdate, n_pre, n_post)
        if start < 0:
            reason = "insufficient pre-period"
        elif end > len(dates):
            reason = "insufficient post-period"
        elif not _usable_series(wide[abbr].iloc[start:end].to_numpy()):
            reason = "missing or constant outcome in window"
        else:
            eligible.append((abbr, tdate))
            continue
        skipped.append({"state_abbr": abbr, "treatment_date": tdate, "reason": reason})
    return eligible, skipped


def donor_pool(wide: pd.DataFrame, tmap: dict, treated: str, start: int, end: int,
               lookup: dict | None = None, year: int | None = None) -> list[str]:
    """
    States untreated through the last period of the window, with a complete,
    non-constant outcome there (and covariates, when a covariate set is used).
    """
    window_end = wide.index[end - 1]
    donors = []
    for abbr in wide.columns:
        if abbr == treated:
            continue
        tdate = tmap.get(abbr, pd.NaT)
        if not pd.isna(tdate) and tdate <= window_end:
            continue
        if not _usable_series(wide[abbr].iloc[start:end].to_numpy()):
            continue
        if lookup and _covariate_row(lookup, abbr, year) is None:
            continue
        donors.append(abbr)
    return sorted(donors)


@dataclass
class UnitWindow:
    state_abbr: str
    treatment_date: pd.Timestamp
    dates: pd.DatetimeIndex
    units: list[str]          # treated first, then donors
    Y: np.ndarray             # (T, N)
    n_pre: int
    Z: np.ndarray | None      # (N, k) pre-period covariate means
    X: np.ndarray | None      # (T, N, p) covariates by calendar year

    @property
    def donors(self) -> list[str]:
        return self.units[1:]

    @property
    def event_time(self) -> np.ndarray:
        return np.arange(len(self.dates)) - self.n_pre


def build_unit_window(wide: pd.DataFrame, tmap: dict, treated: str, n_pre: int, n_post: int,
                      lookup: dict | None = None, covariates: list[str] | None = None) -> UnitWindow:
    tdate = tmap[treated]
    start, first_post, end = window_bounds(wide.index, tdate, n_pre, n_post)
    if start < 0 or end > len(wide.index):
        raise ValueError(f"{treated}: window does not fit the data")

    covariates = covariates or []
    use_cov = bool(covariates) and bool(lookup)
    pre_year = int(wide.index[first_post - 1].year)
    donors = donor_pool(wide, tmap, treated, start, end,
                        lookup=lookup if use_cov else None, year=pre_year)
    units = [treated] + donors
    dates = wide.index[start:end]
    Y = wide[units].iloc[start:end].to_numpy(dtype=float)

    Z = X = None
    if use_cov:
        if _covariate_row(lookup, treated, pre_year) is None:
            raise ValueError(f"{treated}: missing covariates")
        pre_years = sorted(set(int(d.year) for d in dates[:n_pre]))
        Z = np.vstack([
            np.mean([_covariate_row(lookup, u, y) for y in pre_years], axis=0) for u in units
        ])
        years = [int(d.year) for d in dates]
        X = np.stack([
            np.vstack([_covariate_row(lookup, u, y) for u in units]) for y in years
        ], axis=0)

    return UnitWindow(state_abbr=treated, treatment_date=tdate, dates=dates, units=units,
                      Y=Y, n_pre=n_pre, Z=Z, X=X)


def stacked_frame(windows: list[UnitWindow], covariates: list[str]) -> pd.DataFrame:
    """Long stacked panel (one stack per treated state) for the DiD regression."""
    frames = []
    for w in windows:
        T, N = w.Y.shape
        df = pd.DataFrame({
            "hits": w.Y.ravel(order="F"),
            "state_abbr": np.repeat(w.units, T),
            "event_time": np.tile(w.event_time, N),
        })
        df["treat_post"] = ((df["state_abbr"] == w.state_abbr) & (df["event_time"] >= 0)).astype(float)
        df["stack_unit"] = w.state_abbr + ":" + df["state_abbr"]
        df["stack_period"] = w.state_abbr + ":" + df["event_time"].astype(str)
        if w.X is not None:
            for j, col in enumerate(covariates):
                df[col] = w.X[:, :, j].ravel(order="F")
        frames.append(df)
    return pd.concat(frames, ignore_index=True)


# ---------------------------------------------------------------------------
# One specification
# ---------------------------------------------------------------------------

def _unit_record(window: UnitWindow, fit, placebo: dict | None) -> dict:
    record = {
        "state_abbr": window.state_abbr,
        "treatment_date": window.treatment_date,
        "window_start": window.dates[0],
        "window_end": window.dates[-1],
        "n_donors": len(window.donors),
        "att": fit.att,
        "pre_rmspe": fit.pre_rmspe,
        "post_rmspe": fit.post_rmspe,
        "rmspe_ratio": fit.rmspe_ratio,
        "pretrend": pretrend_diagnostic(fit.gap, fit.n_pre),
        "n_factors": fit.n_factors,
        "detail": fit.detail,
        "event_time": window.event_time,
        "actual": fit.actual,
        "counterfactual": fit.counterfactual,
        "gap": fit.gap,
    }
    if fit.weights is not None:
        record["donor_weights"] = {
            u: float(w) for u, w in zip(window.donors, fit.weights) if w > 1e-4
        }
    if placebo is not None:
        record["p_value"] = placebo["p_value"]
        record["n_placebos"] = placebo["n_placebos"]
        record["placebo_atts"] = placebo["placebo_atts"]
        record["placebo_gaps"] = placebo["placebo_gaps"]
    else:
        record["p_value"] = None
    return record


def run_spec(options: SpecOptions, panel: pd.DataFrame, covariates: pd.DataFrame,
             treatments: pd.DataFrame, random_state: int = 42) -> dict:
    """Fit every treated state under one specification."""
    result = {
        "spec_id": options.spec_id,
        "options_hash": options.options_hash,
        **options.to_dict(),
        "status": "pending",
        "units": [],
        "skipped_units": [],
    }
    stage = "inputs"
    try:
        wide = wide_outcomes(panel, options.keyword)
        tmap = treatment_date_map(treatments, options.treatment_definition)
        cov_cols = options.covariates
        lookup = covariate_lookup(covariates, cov_cols)

        stage = "treated_units"
        eligible, skipped = treated_units(wide, tmap, options.n_pre, options.n_post)
        result["skipped_units"].extend(skipped)

        fit_kwargs = {"n_factors": options.n_factors, "v_method": options.v_method}
        windows, placebo_atts = [], []
        for abbr, _ in eligible:
            stage = f"fit:{abbr}"
            try:
                window = build_unit_window(wide, tmap, abbr, options.n_pre, options.n_post,
                                           lookup=lookup, covariates=cov_cols)
                fit = fit_unit(options.estimator, window.Y, window.n_pre,
                               Z=window.Z, X=window.X, **fit_kwargs)
            except (ValueError, np.linalg.LinAlgError) as e:
                result["skipped_units"].append({
                    "state_abbr": abbr,
                    "treatment_date": tmap[abbr],
                    "reason": one_line(str(e)),
                })
                continue

            placebo = None
            if options.placebo and options.estimator != "did":
                stage = f"placebo:{abbr}"
                placebo = placebo_test(options.estimator, window.Y, window.n_pre, fit,
                                       Z=window.Z, X=window.X, **fit_kwargs)
                placebo_atts.append(placebo["placebo_atts"])

            windows.append(window)
            result["units"].append(_unit_record(window, fit, placebo))

        if not result["units"]:
            result["status"] = "no_treated_units"
            return result

        stage = "aggregate"
        agg = aggregate_att(
            [u["att"] for u in result["units"]],
            placebo_atts if options.placebo and options.estimator != "did" else None,
            random_state=random_state,
        )
        result.update({
            "att": agg["att"],
            "p_value": agg["p_value"],
            "n_treated": agg["n_units"],
            "mean_pre_rmspe": float(np.mean([u["pre_rmspe"] for u in result["units"]])),
        })

        if options.estimator == "did":
            stage = "stacked_did"
            did = fit_stacked_did(stacked_frame(windows, cov_cols), cov_cols)
            result["did"] = did
            result["att"] = did["coef"]
            result["p_value"] = did["p_value"]
            result["ci_lower"] = did["ci_lower"]
            result["ci_upper"] = did["ci_upper"]

        result["status"] = "success"
    except Exception as e:
        result["status"] = "error"
        result["error"] = one_line(str(e))
        result["error_details"] = error_details(e, stage)
    finally:
        result["software"] = software_versions()

    return result
