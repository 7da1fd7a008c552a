"""
Tests for collecting specification results into tables and the summary
"""
import json

import pandas as pd
import pytest


def _record(spec_id, keyword="vpn", estimator="synth", status="success", att=1.0, p_value=0.02, units=None):
    rec = {
        "spec_id": spec_id,
        "options_hash": "sha256:" + spec_id,
        "keyword": keyword,
        "covariate_set": "none",
        "n_pre": 52,
        "n_post": 26,
        "treatment_definition": "effective",
        "estimator": estimator,
        "status": status,
        "units": units or [],
        "skipped_units": [{"state_abbr": "AZ", "reason": "insufficient post-period"}],
    }
    if status == "success":
        rec.update({"att": att, "p_value": p_value, "n_treated": len(units or []) or 1,
                    "mean_pre_rmspe": 1.5})
    else:
        rec["error"] = "boom"
    return rec


def _unit(abbr, att):
    return {
        "state_abbr": abbr,
        "treatment_date": "2023-09-19",
        "window_start": "2022-09-18",
        "window_end": "2024-03-10",
        "n_donors": 20,
        "att": att,
        "p_value": 0.05,
        "pre_rmspe": 1.0,
        "post_rmspe": 3.0,
        "rmspe_ratio": 3.0,
        "pretrend": {"slope": 0.01, "p_value": 0.4},
        "n_factors": None,
    }


@pytest.fixture
def records():
    return [
        _record("b", att=2.0, p_value=0.01, units=[_unit("UT", 1.0), _unit("TX", 3.0)]),
        _record("a", att=-1.0, p_value=0.30, estimator="gsynth"),
        _record("c", att=4.0, p_value=None, estimator="did", keyword="porn"),
        _record("d", status="error"),
    ]


def test_load_spec_results_skips_bad_json(tmp_path, summarize_script, capsys):
    (tmp_path / "good.json").write_text(json.dumps({"spec_id": "good"}))
    (tmp_path / "bad.json").write_text("{not json")
    records = summarize_script.load_spec_results(tmp_path)
    assert [r["spec_id"] for r in records] == ["good"]
    assert "bad.json" in capsys.readouterr().out


def test_build_spec_table(records, summarize_script):
    df = summarize_script.build_spec_table(records)
    assert list(df.columns) == summarize_script.SPEC_COLUMNS
    assert list(df["spec_id"]) == ["a", "b", "c", "d"]
    assert (df["window"] == "52/26").all()
    assert (df["n_skipped"] == 1).all()
    assert pd.isna(df.set_index("spec_id").loc["c", "p_value"])
    assert df.set_index("spec_id").loc["d", "error"] == "boom"


def test_build_unit_table_flattens_pretrend(records, summarize_script):
    df = summarize_script.build_unit_table(records)
    assert list(df.columns) == summarize_script.UNIT_COLUMNS
    assert list(df["state_abbr"]) == ["TX", "UT"]
    assert (df["spec_id"] == "b").all()
    assert (df["pretrend_slope"] == 0.01).all()
    assert (df["pretrend_p_value"] == 0.4).all()


def test_summarize_shares(records, summarize_script):
    specs = summarize_script.build_spec_table(records)
    summary = summarize_script.summarize(specs)

    assert summary["n_specs"] == 4
    assert summary["by_status"] == {"success": 3, "error": 1}
    assert summary["n_success"] == 3
    assert summary["share_positive"] == pytest.approx(2 / 3)
    # spec "c" has no p-value and is left out of the significance shares
    assert summary["n_with_p_value"] == 2
    assert summary["share_significant"] == pytest.approx(1 / 2)
    assert summary["share_positive_significant"] == pytest.approx(1 / 2)
    assert summary["median_att"] == pytest.approx(2.0)

    by_est = summary["by_dimension"]["estimator"]
    assert set(by_est) == {"synth", "gsynth", "did"}
    assert by_est["gsynth"]["median_att"] == pytest.approx(-1.0)
    assert by_est["did"]["n_with_p_value"] == 0
    assert by_est["did"]["share_significant"] is None
    assert summary["by_dimension"]["keyword"]["porn"]["n"] == 1
    json.dumps(summary)


def test_summarize_with_no_successes(summarize_script):
    specs = summarize_script.build_spec_table([_record("x", status="error")])
    summary = summarize_script.summarize(specs)
    assert summary["n_success"] == 0
    assert summary["share_positive"] is None
    assert summary["median_att"] is None


def test_summarize_ignores_missing_p_values(summarize_script):
    records = [
        _record("p1", att=2.0, p_value=0.01),
        _record("p2", att=1.0, p_value=None),
        _record("p3", att=3.0, p_value=None),
    ]
    summary = summarize_script.summarize(summarize_script.build_spec_table(records))
    assert summary["share_positive"] == pytest.approx(1.0)
    assert summary["n_with_p_value"] == 1
    assert summary["share_significant"] == pytest.approx(1.0)
