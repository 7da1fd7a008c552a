"""
Tests for panel assembly from the raw pulls
"""
import numpy as np
import pandas as pd
import pytest


def _write_series(trends_dir, slug, abbr, rows):
    path = trends_dir / slug / f"{abbr}.csv"
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows, columns=["date", "hits", "is_partial"]).to_csv(path, index=False)
    return path


def test_load_trends_panel_stacks_and_cleans(tmp_path, build_panel_script):
    _write_series(tmp_path, "vpn", "TX", [
        ["2023-01-01", 40, False],
        ["2023-01-08", 120, False],
        ["2023-01-15", 55, True],
    ])
    _write_series(tmp_path, "vpn", "CA", [["2023-01-01", 30, False], ["2023-01-08", 31, False]])
    _write_series(tmp_path, "tor_browser", "TX", [["2023-01-01", 3, False]])
    # too little volume: header only
    _write_series(tmp_path, "tor_browser", "WY", [])

    panel = build_panel_script.load_trends_panel(tmp_path, ["vpn", "tor browser"])

    assert list(panel.columns) == build_panel_script.PANEL_COLUMNS
    assert len(panel) == 5
    assert set(panel["state_abbr"]) == {"TX", "CA"}
    tx_vpn = panel[(panel["keyword"] == "vpn") & (panel["state_abbr"] == "TX")]
    # partial week dropped, out-of-range value clipped
    assert list(tx_vpn["hits"]) == [40, 100]
    assert (panel["fips"][panel["state_abbr"] == "TX"] == "48").all()
    assert pd.api.types.is_datetime64_any_dtype(panel["date"])


def test_load_trends_panel_missing_keyword_dir(tmp_path, build_panel_script):
    panel = build_panel_script.load_trends_panel(tmp_path, ["vpn"])
    assert panel.empty
    assert list(panel.columns) == build_panel_script.PANEL_COLUMNS


def test_load_trends_panel_rejects_unknown_state_file(tmp_path, build_panel_script):
    _write_series(tmp_path, "vpn", "XX", [["2023-01-01", 1, False]])
    with pytest.raises(ValueError, match="Unknown state"):
        build_panel_script.load_trends_panel(tmp_path, ["vpn"])


def test_load_trends_panel_rejects_duplicate_dates(tmp_path, build_panel_script):
    _write_series(tmp_path, "vpn", "TX", [["2023-01-01", 1, False], ["2023-01-01", 2, False]])
    with pytest.raises(ValueError, match="Duplicate"):
        build_panel_script.load_trends_panel(tmp_path, ["vpn"])


def _acs_rows():
    return pd.DataFrame({
        "state_abbr": ["TX", "VT"],
        "fips": ["48", "50"],
        "state_name": ["Texas", "Vermont"],
        "year": [2022, 2022],
        "population": [30_000_000, 650_000],
        "median_household_income": [70_000, 72_000],
        "median_age": [35.5, 43.0],
        "pop_25_plus": [20_000_000, 460_000],
        "ba": [4_000_000, 100_000],
        "masters": [1_500_000, 50_000],
        "professional": [300_000, 10_000],
        "doctorate": [200_000, 10_000],
        "households": [10_000_000, 270_000],
        "broadband_households": [9_000_000, 240_000],
        "white_alone": [15_000_000, 580_000],
    })


def test_derive_covariates(build_panel_script):
    cov = build_panel_script.derive_covariates(_acs_rows())
    assert list(cov.columns) == ["state_abbr", "fips", "year"] + build_panel_script.COVARIATE_COLUMNS
    tx = cov.set_index("state_abbr").loc["TX"]
    assert tx["pct_ba_plus"] == pytest.approx(6_000_000 / 20_000_000)
    assert tx["broadband_share"] == pytest.approx(0.9)
    assert tx["pct_white"] == pytest.approx(0.5)
    assert tx["log_population"] == pytest.approx(np.log(30_000_000))


def test_load_state_covariates_reads_all_vintages(tmp_path, build_panel_script):
    for year in (2021, 2022):
        acs = _acs_rows().assign(year=year)
        acs["fips"] = acs["fips"].astype(int)
        acs.to_csv(tmp_path / f"acs1_{year}.csv", index=False)

    cov = build_panel_script.load_state_covariates(tmp_path)
    assert len(cov) == 4
    assert list(cov["year"]) == [2021, 2022, 2021, 2022]
    assert set(cov["fips"]) == {"48", "50"}


def test_load_state_covariates_requires_files(tmp_path, build_panel_script):
    with pytest.raises(FileNotFoundError):
        build_panel_script.load_state_covariates(tmp_path)
