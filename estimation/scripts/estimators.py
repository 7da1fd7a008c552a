#!/usr/bin/env python3
"""
estimators.py
=============

Counterfactual estimators for a single treated state's event window.

Every unit-level estimator takes the same inputs:

  Y      (T, N) outcome matrix; column 0 is the treated state, columns
         1..N-1 are donors. Rows are calendar periods of the window.
  n_pre  number of pre-treatment rows (the first n_pre rows of Y).
  Z      (N, k) time-invariant predictors (pre-period covariate means), or None.
  X      (T, N, p) time-varying covariates, or None.

and returns a `UnitFit` with the counterfactual path, the gap
(actual - counterfactual), the unit ATT (mean post-period gap) and the
pre/post RMSPE.

Estimators:
  synth   Abadie-Diamond-Hainmueller synthetic control. Convex donor
          weights matched on standardized predictors, predictor weights V
          equal or chosen by a nested search on pre-period MSPE.
  gsynth  Xu (2017) generalized synthetic control: two-way fixed effects
          plus r latent factors fitted on donors by alternating least
          squares, treated loadings fitted on the pre-period. r is fixed
          or picked by leave-one-out cross-validation.
  did     Difference-in-differences against the donor mean; pooled
          inference comes from a stacked two-way FE regression (pyfixest).

Inference helpers:
  placebo_test        in-space placebos, RMSPE-ratio rank p-value
  pretrend_diagnostic OLS slope of the pre-period gap on event time
  aggregate_att       mean ATT across treated states with a placebo-average
                      permutation p-value
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.optimize import minimize
from scipy.special import softmax

R_MAX_DEFAULT = 3
V_MAXITER_DEFAULT = 200
N_OUTCOME_BLOCKS = 4


@dataclass
class UnitFit:
    """Result of one estimator on one treated unit's window."""
    estimator: str
    actual: np.ndarray
    counterfactual: np.ndarray
    n_pre: int
    weights: np.ndarray | None = None
    n_factors: int | None = None
    detail: dict = field(default_factory=dict)

    @property
    def gap(self) -> np.ndarray:
        return self.actual - self.counterfactual

    @property
    def att(self) -> float:
        return float(np.mean(self.gap[self.n_pre:]))

    @property
    def pre_rmspe(self) -> float:
        return _rmspe(self.gap[: self.n_pre])

    @property
    def post_rmspe(self) -> float:
        return _rmspe(self.gap[self.n_pre:])

    @property
    def rmspe_ratio(self) -> float:
        return self.post_rmspe / max(self.pre_rmspe, 1e-8)


def _rmspe(x: np.ndarray) -> float:
    x = np.asarray(x, dtype=float)
    if x.size == 0:
        return float("nan")
    return float(np.sqrt(np.mean(np.square(x))))


def _check_window(Y: np.ndarray, n_pre: int, min_units: int = 3) -> np.ndarray:
    Y = np.asarray(Y, dtype=float)
    if Y.ndim != 2:
        raise ValueError(f"Outcome matrix must be 2-D (periods x units), got shape {Y.shape}")
    T, N = Y.shape
    if N < min_units:
        raise ValueError(f"Need at least {min_units - 1} donors, got {N - 1}")
    if not 2 <= n_pre < T:
        raise ValueError(f"n_pre must be in [2, {T - 1}], got {n_pre}")
    if not np.all(np.isfinite(Y)):
        raise ValueError("Outcome matrix contains missing or non-finite values")
    return Y


def subset_units(idx: list[int], Y: np.ndarray, Z: np.ndarray | None = None,
                 X: np.ndarray | None = None):
    """Re-order/select unit columns consistently across Y, Z and X."""
    idx = list(idx)
    Ys = np.asarray(Y)[:, idx]
    Zs = None if Z is None else np.asarray(Z)[idx, :]
    Xs = None if X is None else np.asarray(X)[:, idx, :]
    return Ys, Zs, Xs


# ---------------------------------------------------------------------------
# Synthetic control
# ---------------------------------------------------------------------------

def synth_predictors(Y: np.ndarray, n_pre: int, Z: np.ndarray | None = None,
                     n_blocks: int = N_OUTCOME_BLOCKS) -> np.ndarray:
    """
    Predictor matrix (K, N).

    Without covariates every pre-period outcome is a predictor. With
    covariates, the predictors are the covariates plus pre-period outcome
    means over `n_blocks` consecutive blocks.
    """
    pre = np.asarray(Y, dtype=float)[:n_pre]
    if Z is None or np.asarray(Z).shape[1] == 0:
        return pre
    blocks = np.array_split(np.arange(n_pre), min(n_blocks, n_pre))
    outcome_means = np.vstack([pre[b].mean(axis=0) for b in blocks])
    return np.vstack([np.asarray(Z, dtype=float).T, outcome_means])


def _standardize_rows(P: np.ndarray) -> np.ndarray:
    sd = P.std(axis=1, ddof=1)
    sd = np.where(np.isfinite(sd) & (sd > 0), sd, 1.0)
    return P / sd[:, None]


def solve_synth_weights(x1: np.ndarray, X0: np.ndarray, v: np.ndarray | None = None) -> np.ndarray:
    """
    Donor weights minimizing (x1 - X0 w)' diag(v) (x1 - X0 w)
    subject to w >= 0 and sum(w) = 1.
    """
    x1 = np.asarray(x1, dtype=float)
    X0 = np.asarray(X0, dtype=float)
    K, J = X0.shape
    if J == 1:
        return np.ones(1)
    v = np.ones(K) if v is None else np.asarray(v, dtype=float)
    sv = np.sqrt(np.clip(v, 0.0, None))
    D = X0 * sv[:, None]
    d = x1 * sv

    def obj(w):
        r = d - D @ w
        return float(r @ r)

    def grad(w):
        return -2.0 * D.T @ (d - D @ w)

    w0 = np.full(J, 1.0 / J)
    res = minimize(
        obj,
        w0,
        jac=grad,
        method="SLSQP",
        bounds=[(0.0, 1.0)] * J,
        constraints=[{"type": "eq", "fun": lambda w: np.sum(w) - 1.0,
                      "jac": lambda w: np.ones_like(w)}],
        options={"maxiter": 500, "ftol": 1e-12},
    )
    w = np.clip(res.x, 0.0, None)
    s = float(w.sum())
    return w / s if s > 0 else w0


def _nested_v(P1, P0, y1_pre, Y0_pre, maxiter: int = V_MAXITER_DEFAULT) -> np.ndarray:
    """Predictor weights V minimizing the pre-period outcome MSPE of the implied W."""
    K = len(P1)

    def loss(theta):
        w = solve_synth_weights(P1, P0, softmax(theta))
        r = y1_pre - Y0_pre @ w
        return float(r @ r / len(r))

    theta0 = np.zeros(K)
    base = loss(theta0)
    res = minimize(loss, theta0, method="Nelder-Mead",
                   options={"maxiter": maxiter, "xatol": 1e-4, "fatol": 1e-10})
    if np.isfinite(res.fun) and res.fun < base:
        return softmax(res.x)
    return softmax(theta0)


def fit_synth(Y, n_pre, Z=None, X=None, v_method: str = "nested",
              v_maxiter: int = V_MAXITER_DEFAULT, **_ignored) -> UnitFit:
    """Synthetic control for the unit in column 0."""
    Y = _check_window(Y, n_pre)
    P = _standardize_rows(synth_predictors(Y, n_pre, Z))
    if not np.all(np.isfinite(P)):
        raise ValueError("Predictor matrix contains missing values")
    P1, P0 = P[:, 0], P[:, 1:]

    has_covariates = Z is not None and np.asarray(Z).shape[1] > 0
    if v_method == "nested" and has_covariates:
        v = _nested_v(P1, P0, Y[:n_pre, 0], Y[:n_pre, 1:], maxiter=v_maxiter)
    elif v_method in ("equal", "nested"):
        v = np.ones(len(P1)) / len(P1)
    else:
        raise ValueError(f"Unknown v_method {v_method!r}")

    w = solve_synth_weights(P1, P0, v)
    counterfactual = Y[:, 1:] @ w
    return UnitFit(
        estimator="synth",
        actual=Y[:, 0].copy(),
        counterfactual=counterfactual,
        n_pre=n_pre,
        weights=w,
        detail={"v": v.tolist(), "v_method": v_method},
    )


# ---------------------------------------------------------------------------
# Generalized synthetic control (interactive fixed effects)
# ---------------------------------------------------------------------------

def _twoway_demean(A: np.ndarray) -> np.ndarray:
    return A - A.mean(axis=0, keepdims=True) - A.mean(axis=1, keepdims=True) + A.mean()


@dataclass
class IFEModel:
    """Two-way FE + factor model fitted on the donor panel."""
    mu: float
    alpha: np.ndarray      # (N0,)
    xi: np.ndarray         # (T,)
    factors: np.ndarray    # (T, r)
    loadings: np.ndarray   # (N0, r)
    beta: np.ndarray       # (p,)
    n_iter: int
    converged: bool


def fit_ife(Y0: np.ndarray, X0: np.ndarray | None, r: int,
            tol: float = 1e-7, max_iter: int = 1000) -> IFEModel:
    """
    Alternating least squares for
        Y_it = mu + alpha_i + xi_t + X_it' beta + lambda_i' f_t + e_it.

    The factor step takes the leading r left singular vectors of the
    residual (normalized F'F/T = I); the covariate step is within-OLS.
    """
    Y0 = np.asarray(Y0, dtype=float)
    T, N = Y0.shape
    p = 0 if X0 is None else X0.shape[2]
    if r >= min(T, N):
        raise ValueError(f"Too many factors ({r}) for a {T}x{N} donor panel")

    Xw = None
    beta = np.zeros(p)
    keep = np.zeros(p, dtype=bool)
    if p:
        Xw = np.stack([_twoway_demean(X0[:, :, j]) for j in range(p)], axis=2).reshape(T * N, p)
        # covariates absorbed by the fixed effects carry no within variation
        scale = np.maximum(np.abs(X0).reshape(T * N, p).max(axis=0), 1.0)
        keep = Xw.std(axis=0) > 1e-8 * scale
        Xw = Xw[:, keep]
        if not keep.any():
            p = 0

    FL = np.zeros_like(Y0)
    fit_old = None
    converged = False
    F = np.zeros((T, 0))
    L = np.zeros((N, 0))

    for it in range(1, max_iter + 1):
        if p:
            target = _twoway_demean(Y0 - FL).ravel()
            beta[keep] = np.linalg.lstsq(Xw, target, rcond=None)[0]
            XB = X0 @ beta
        else:
            XB = np.zeros_like(Y0)

        U = Y0 - XB - FL
        mu = float(U.mean())
        alpha = U.mean(axis=0) - mu
        xi = U.mean(axis=1) - mu
        R = Y0 - XB - mu - alpha[None, :] - xi[:, None]

        if r > 0:
            u, _, _ = np.linalg.svd(R, full_matrices=False)
            F = u[:, :r] * np.sqrt(T)
            L = R.T @ F / T
            FL = F @ L.T

        fit = XB + mu + alpha[None, :] + xi[:, None] + FL
        if fit_old is not None:
            change = np.linalg.norm(fit - fit_old) / max(np.linalg.norm(fit_old), 1e-12)
            if change < tol:
                converged = True
                break
        fit_old = fit
        if r == 0 and p == 0:
            converged = True
            break

    return IFEModel(mu=mu, alpha=alpha, xi=xi, factors=F, loadings=L, beta=beta,
                    n_iter=it, converged=converged)


def _impute_unit(model: IFEModel, y1: np.ndarray, x1: np.ndarray | None,
                 fit_rows: np.ndarray) -> np.ndarray:
    """Counterfactual for one unit with intercept and loadings fitted on `fit_rows`."""
    T = len(y1)
    xb = x1 @ model.beta if x1 is not None and model.beta.size else np.zeros(T)
    base = model.mu + model.xi + xb
    A = np.column_stack([np.ones(T), model.factors])
    coef = np.linalg.lstsq(A[fit_rows], (y1 - base)[fit_rows], rcond=None)[0]
    return base + A @ coef


def select_n_factors(Y: np.ndarray, n_pre: int, X: np.ndarray | None = None,
                     r_max: int = R_MAX_DEFAULT) -> tuple[int, dict]:
    """Leave-one-period-out CV over the treated unit's pre-period."""
    y1, Y0 = Y[:, 0], Y[:, 1:]
    x1 = None if X is None else X[:, 0, :]
    X0 = None if X is None else X[:, 1:, :]
    T, N0 = Y0.shape

    scores = {}
    for r in range(0, r_max + 1):
        # need the held-out fit to stay over-determined
        if n_pre - 1 <= r + 1 or r >= min(T, N0):
            break
        model = fit_ife(Y0, X0, r)
        errs = []
        for s in range(n_pre):
            keep = np.array([t for t in range(n_pre) if t != s])
            cf = _impute_unit(model, y1, x1, keep)
            errs.append(y1[s] - cf[s])
        scores[r] = float(np.mean(np.square(errs)))

    if not scores:
        return 0, scores
    best = min(scores, key=lambda k: (scores[k], k))
    return best, scores


def fit_gsynth(Y, n_pre, Z=None, X=None, n_factors: int | None = None,
               r_max: int = R_MAX_DEFAULT, **_ignored) -> UnitFit:
    """Generalized synthetic control for the unit in column 0."""
    Y = _check_window(Y, n_pre)
    if X is not None:
        X = np.asarray(X, dtype=float)
        if X.shape[:2] != Y.shape:
            raise ValueError(f"Covariate array shape {X.shape} does not match outcomes {Y.shape}")
        if X.shape[2] == 0:
            X = None
        elif not np.all(np.isfinite(X)):
            raise ValueError("Covariate array contains missing values")

    cv_scores = {}
    if n_factors is None:
        n_factors, cv_scores = select_n_factors(Y, n_pre, X, r_max=r_max)
    if n_pre <= n_factors + 1:
        raise ValueError(f"{n_pre} pre-periods cannot identify {n_factors} factors")

    model = fit_ife(Y[:, 1:], None if X is None else X[:, 1:, :], n_factors)
    x1 = None if X is None else X[:, 0, :]
    counterfactual = _impute_unit(model, Y[:, 0], x1, np.arange(n_pre))

    return UnitFit(
        estimator="gsynth",
        actual=Y[:, 0].copy(),
        counterfactual=counterfactual,
        n_pre=n_pre,
        n_factors=int(n_factors),
        detail={
            "cv_mspe": {str(k): v for k, v in cv_scores.items()},
            "beta": model.beta.tolist(),
            "ife_iterations": model.n_iter,
            "ife_converged": model.converged,
        },
    )


# ---------------------------------------------------------------------------
# Difference-in-differences benchmark
# ---------------------------------------------------------------------------

def fit_did(Y, n_pre, Z=None, X=None, **_ignored) -> UnitFit:
    """2x2 DiD path: donor mean shifted by the treated unit's pre-period level gap."""
    Y = _check_window(Y, n_pre)
    donor_mean = Y[:, 1:].mean(axis=1)
    shift = float(np.mean(Y[:n_pre, 0] - donor_mean[:n_pre]))
    return UnitFit(
        estimator="did",
        actual=Y[:, 0].copy(),
        counterfactual=donor_mean + shift,
        n_pre=n_pre,
        weights=np.full(Y.shape[1] - 1, 1.0 / (Y.shape[1] - 1)),
    )


def fit_stacked_did(stacked: pd.DataFrame, covariates: list[str] | None = None) -> dict:
    """
    Stacked two-way FE regression:
        hits ~ treat_post [+ covariates] | stack_unit + stack_period
    with standard errors clustered by state.

    `stacked` needs columns hits, treat_post, stack_unit, stack_period,
    state_abbr and any covariates.
    """
    import pyfixest as pf

    covariates = [
        c for c in (covariates or []) if c in stacked.columns and stacked[c].nunique() > 1
    ]
    rhs = " + ".join(["treat_post"] + covariates)
    fml = f"hits ~ {rhs} | stack_unit + stack_period"

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        model = pf.feols(fml, data=stacked, vcov={"CRV1": "state_abbr"})

    ci = model.confint()
    return {
        "formula": fml,
        "coef": float(model.coef()["treat_post"]),
        "se": float(model.se()["treat_post"]),
        "p_value": float(model.pvalue()["treat_post"]),
        "ci_lower": float(ci.loc["treat_post"].iloc[0]),
        "ci_upper": float(ci.loc["treat_post"].iloc[1]),
        "n_obs": int(model._N),
    }


ESTIMATORS = {
    "synth": fit_synth,
    "gsynth": fit_gsynth,
    "did": fit_did,
}


def fit_unit(estimator: str, Y, n_pre, Z=None, X=None, **kwargs) -> UnitFit:
    if estimator not in ESTIMATORS:
        raise ValueError(f"Unknown estimator {estimator!r}; expected one of {sorted(ESTIMATORS)}")
    return ESTIMATORS[estimator](Y, n_pre, Z=Z, X=X, **kwargs)


# ---------------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------------

def placebo_test(estimator: str, Y, n_pre, treated_fit: UnitFit, Z=None, X=None,
                 **kwargs) -> dict:
    """
    In-space placebos: re-run the estimator with each donor as the treated
    unit and the remaining donors as its pool. The p-value is the rank of
    the treated unit's post/pre RMSPE ratio among all units.
    """
    Y = np.asarray(Y, dtype=float)
    N = Y.shape[1]
    gaps, ratios, atts = [], [], []
    n_failed = 0
    for j in range(1, N):
        idx = [j] + [k for k in range(1, N) if k != j]
        Yp, Zp, Xp = subset_units(idx, Y, Z, X)
        try:
            fit = fit_unit(estimator, Yp, n_pre, Z=Zp, X=Xp, **kwargs)
        except (ValueError, np.linalg.LinAlgError):
            n_failed += 1
            continue
        gaps.append(fit.gap)
        ratios.append(fit.rmspe_ratio)
        atts.append(fit.att)

    if not ratios:
        p_value = float("nan")
    else:
        n_ge = int(np.sum(np.asarray(ratios) >= treated_fit.rmspe_ratio))
        p_value = (1 + n_ge) / (1 + len(ratios))

    return {
        "p_value": p_value,
        "n_placebos": len(ratios),
        "n_failed": n_failed,
        "placebo_atts": atts,
        "placebo_ratios": ratios,
        "placebo_gaps": gaps,
    }


def pretrend_diagnostic(gap: np.ndarray, n_pre: int) -> dict:
    """OLS slope of the pre-period gap on event time."""
    pre = np.asarray(gap, dtype=float)[:n_pre]
    if n_pre < 3 or np.allclose(pre, pre[0]):
        return {"slope": float("nan"), "p_value": float("nan")}
    event_time = np.arange(-n_pre, 0, dtype=float)
    res = sm.OLS(pre, sm.add_constant(event_time)).fit()
    return {"slope": float(res.params[1]), "p_value": float(res.pvalues[1])}


def aggregate_att(unit_atts: list[float], placebo_atts: list[list[float]] | None = None,
                  n_draws: int = 1000, random_state: int = 42) -> dict:
    """
    Mean ATT across treated units. The p-value compares it to averages of
    one randomly drawn placebo ATT per treated unit.
    """
    unit_atts = np.asarray(unit_atts, dtype=float)
    if unit_atts.size == 0:
        raise ValueError("No unit ATTs to aggregate")
    att = float(unit_atts.mean())
    out = {"att": att, "n_units": int(unit_atts.size), "p_value": float("nan")}

    if not placebo_atts or any(len(p) == 0 for p in placebo_atts):
        return out

    rng = np.random.default_rng(int(random_state))
    draws = np.column_stack([
        rng.choice(np.asarray(p, dtype=float), size=n_draws, replace=True) for p in placebo_atts
    ]).mean(axis=1)
    n_ge = int(np.sum(np.abs(draws) >= abs(att)))
    out["p_value"] = (1 + n_ge) / (1 + n_draws)
    out["placebo_att_sd"] = float(np.std(draws, ddof=1))
    return out
