"""
Tests for the unit-level counterfactual estimators and inference helpers
"""
import numpy as np
import pandas as pd
import pytest

from conftest import one_factor_matrix
from estimators import (
    UnitFit,
    aggregate_att,
    fit_did,
    fit_gsynth,
    fit_ife,
    fit_synth,
    fit_unit,
    placebo_test,
    pretrend_diagnostic,
    select_n_factors,
    solve_synth_weights,
    subset_units,
    synth_predictors,
)


def test_unit_fit_summary_statistics():
    fit = UnitFit(
        estimator="synth",
        actual=np.array([1.0, 2.0, 5.0, 7.0]),
        counterfactual=np.array([1.0, 1.0, 2.0, 3.0]),
        n_pre=2,
    )
    np.testing.assert_allclose(fit.gap, [0.0, 1.0, 3.0, 4.0])
    assert fit.att == pytest.approx(3.5)
    assert fit.pre_rmspe == pytest.approx(np.sqrt(0.5))
    assert fit.post_rmspe == pytest.approx(np.sqrt(12.5))
    assert fit.rmspe_ratio == pytest.approx(5.0)


def test_solve_synth_weights_recovers_convex_combination():
    rng = np.random.default_rng(0)
    X0 = rng.normal(size=(15, 5))
    true_w = np.array([0.6, 0.4, 0.0, 0.0, 0.0])
    x1 = X0 @ true_w
    w = solve_synth_weights(x1, X0)
    assert w.sum() == pytest.approx(1.0)
    assert np.all(w >= 0)
    np.testing.assert_allclose(w, true_w, atol=1e-3)


def test_solve_synth_weights_single_donor():
    np.testing.assert_allclose(solve_synth_weights(np.ones(3), np.ones((3, 1))), [1.0])


def test_synth_predictors_with_and_without_covariates():
    Y = np.arange(40, dtype=float).reshape(10, 4)
    P = synth_predictors(Y, n_pre=8)
    assert P.shape == (8, 4)

    Z = np.ones((4, 2))
    P = synth_predictors(Y, n_pre=8, Z=Z)
    # 2 covariates + 4 outcome block means
    assert P.shape == (6, 4)
    np.testing.assert_allclose(P[2], Y[:2].mean(axis=0))


def test_fit_synth_recovers_effect():
    Y = one_factor_matrix(effect=5.0)
    fit = fit_synth(Y, n_pre=30, v_method="equal")
    assert fit.estimator == "synth"
    assert fit.weights.sum() == pytest.approx(1.0)
    assert fit.att == pytest.approx(5.0, abs=0.3)
    assert fit.pre_rmspe < 0.3


def test_fit_synth_nested_v_with_covariates():
    Y = one_factor_matrix(effect=5.0)
    rng = np.random.default_rng(1)
    Z = rng.normal(size=(Y.shape[1], 2))
    fit = fit_synth(Y, n_pre=30, Z=Z, v_method="nested", v_maxiter=50)
    assert len(fit.detail["v"]) == 2 + 4
    assert sum(fit.detail["v"]) == pytest.approx(1.0)
    assert np.isfinite(fit.att)


def test_fit_synth_rejects_bad_inputs():
    Y = one_factor_matrix()
    with pytest.raises(ValueError, match="n_pre"):
        fit_synth(Y, n_pre=1)
    with pytest.raises(ValueError, match="n_pre"):
        fit_synth(Y, n_pre=Y.shape[0])
    with pytest.raises(ValueError, match="donors"):
        fit_synth(Y[:, :2], n_pre=30)
    Y_bad = Y.copy()
    Y_bad[3, 2] = np.nan
    with pytest.raises(ValueError, match="non-finite"):
        fit_synth(Y_bad, n_pre=30)
    with pytest.raises(ValueError, match="v_method"):
        fit_synth(Y, n_pre=30, v_method="bogus")


def test_fit_ife_explains_low_rank_panel():
    Y = one_factor_matrix(effect=0.0, noise=0.0)[:, 1:]
    model = fit_ife(Y, None, r=1)
    fitted = (model.mu + model.alpha[None, :] + model.xi[:, None]
              + model.factors @ model.loadings.T)
    assert model.factors.shape == (Y.shape[0], 1)
    assert np.abs(Y - fitted).max() < 1e-6


def test_fit_ife_with_covariates_estimates_beta():
    rng = np.random.default_rng(5)
    T, N = 30, 15
    X = rng.normal(size=(T, N, 1))
    Y = 2.0 * X[:, :, 0] + rng.normal(size=N)[None, :] + rng.normal(size=T)[:, None]
    model = fit_ife(Y, X, r=0)
    assert model.beta[0] == pytest.approx(2.0, abs=1e-6)


def test_fit_ife_rejects_too_many_factors():
    with pytest.raises(ValueError, match="factors"):
        fit_ife(np.zeros((5, 4)), None, r=4)


def test_fit_gsynth_fixed_factors_recovers_effect():
    Y = one_factor_matrix(effect=5.0)
    fit = fit_gsynth(Y, n_pre=30, n_factors=1)
    assert fit.n_factors == 1
    assert fit.att == pytest.approx(5.0, abs=0.2)


def test_fit_gsynth_cross_validates_factor_count():
    Y = one_factor_matrix(effect=5.0)
    r, scores = select_n_factors(Y, n_pre=30, r_max=3)
    assert set(scores) == {0, 1, 2, 3}
    assert r >= 1
    assert scores[r] < scores[0]

    fit = fit_gsynth(Y, n_pre=30, r_max=3)
    assert fit.n_factors == r
    assert fit.att == pytest.approx(5.0, abs=0.5)


def test_fit_gsynth_rejects_underidentified_factors():
    Y = one_factor_matrix()
    with pytest.raises(ValueError, match="identify"):
        fit_gsynth(Y, n_pre=3, n_factors=2)


def test_fit_gsynth_checks_covariate_shape():
    Y = one_factor_matrix()
    with pytest.raises(ValueError, match="shape"):
        fit_gsynth(Y, n_pre=30, X=np.zeros((5, 5, 1)), n_factors=1)


def test_fit_did_shifts_donor_mean():
    rng = np.random.default_rng(2)
    donors = rng.normal(size=(20, 6)) + 10
    treated = donors.mean(axis=1) + 2.0
    treated[15:] += 4.0
    Y = np.column_stack([treated, donors])
    fit = fit_did(Y, n_pre=15)
    assert fit.att == pytest.approx(4.0)
    assert fit.pre_rmspe == pytest.approx(0.0, abs=1e-12)


def test_fit_unit_dispatch_and_unknown_estimator():
    Y = one_factor_matrix()
    assert fit_unit("did", Y, 30).estimator == "did"
    with pytest.raises(ValueError, match="Unknown estimator"):
        fit_unit("lasso", Y, 30)


def test_subset_units_keeps_arrays_aligned():
    Y = np.arange(12, dtype=float).reshape(3, 4)
    Z = np.arange(8, dtype=float).reshape(4, 2)
    X = np.arange(24, dtype=float).reshape(3, 4, 2)
    Ys, Zs, Xs = subset_units([2, 0], Y, Z, X)
    np.testing.assert_array_equal(Ys, Y[:, [2, 0]])
    np.testing.assert_array_equal(Zs, Z[[2, 0]])
    np.testing.assert_array_equal(Xs, X[:, [2, 0], :])
    _, none_z, none_x = subset_units([1], Y)
    assert none_z is None and none_x is None


def test_placebo_test_ranks_treated_unit_first():
    Y = one_factor_matrix(effect=5.0, n_donors=8)
    fit = fit_synth(Y, n_pre=30, v_method="equal")
    placebo = placebo_test("synth", Y, 30, fit, v_method="equal")
    assert placebo["n_placebos"] + placebo["n_failed"] == 8
    assert len(placebo["placebo_gaps"]) == placebo["n_placebos"]
    assert placebo["p_value"] == pytest.approx(1.0 / (1 + placebo["n_placebos"]))


def test_pretrend_diagnostic_recovers_slope():
    gap = np.concatenate([0.5 * np.arange(-10, 0), np.zeros(5)])
    out = pretrend_diagnostic(gap, n_pre=10)
    assert out["slope"] == pytest.approx(0.5)

    flat = pretrend_diagnostic(np.zeros(15), n_pre=10)
    assert np.isnan(flat["slope"])


def test_aggregate_att_without_placebos():
    out = aggregate_att([1.0, 3.0])
    assert out["att"] == pytest.approx(2.0)
    assert out["n_units"] == 2
    assert np.isnan(out["p_value"])


def test_aggregate_att_permutation_p_value():
    small = aggregate_att([5.0, 5.0], [[0.1, -0.1, 0.2], [0.0, 0.1]], n_draws=200)
    assert small["p_value"] == pytest.approx(1.0 / 201)

    large = aggregate_att([0.05, 0.05], [[3.0, -3.0], [2.0, -2.0]], n_draws=200)
    assert large["p_value"] > 0.9


def test_aggregate_att_requires_units():
    with pytest.raises(ValueError):
        aggregate_att([])
