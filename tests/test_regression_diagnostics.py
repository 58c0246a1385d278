"""Tests for OLS fitting and Breusch-Pagan diagnostics."""

import numpy as np
import pytest

from psa_functions.regression_diagnostics import (
    breusch_pagan_table,
    breusch_pagan_test,
    compare_standard_errors,
    fit_ols,
    run_heteroskedasticity_diagnostics,
)


class TestBreuschPagan:
    def setup_method(self):
        self.regressors = ["t", "x1", "x2", "x3"]

    def test_single_covariate_result(self, example_df):
        ols = fit_ols(example_df, "y", self.regressors)
        res = breusch_pagan_test(ols, example_df, "x1")
        assert res["variable"] == "x1"
        assert res["chi2"] >= 0
        assert res["df"] == 1
        assert 0 <= res["p_value"] <= 1

    def test_table_one_row_per_covariate(self, example_df):
        ols = fit_ols(example_df, "y", self.regressors)
        table = breusch_pagan_table(ols, example_df, ["x1"])
        assert len(table) == 1
        assert list(table.columns) == ["variable", "chi2", "df", "p_value"]

        table = breusch_pagan_table(ols, example_df, ["x1", "x2", "x3"])
        assert list(table["variable"]) == ["x1", "x2", "x3"]

    def test_detects_variance_growing_with_covariate(self, heteroskedastic_df):
        ols = fit_ols(heteroskedastic_df, "y", ["t", "z", "w"])
        assert breusch_pagan_test(ols, heteroskedastic_df, "z")["p_value"] < 0.01

    def test_constant_covariate_raises(self, example_df):
        df = example_df.assign(const=1.0)
        ols = fit_ols(df, "y", self.regressors)
        with pytest.raises(ValueError, match="constant"):
            breusch_pagan_test(ols, df, "const")

    def test_unknown_covariate_raises(self, example_df):
        ols = fit_ols(example_df, "y", self.regressors)
        with pytest.raises(ValueError, match="not found"):
            breusch_pagan_test(ols, example_df, "x9")

    def test_rows_dropped_for_ols_are_skipped(self, example_df):
        df = example_df.copy()
        df.loc[:9, "x2"] = np.nan
        ols = fit_ols(df, "y", self.regressors)
        assert int(ols.nobs) == len(df) - 10
        res = breusch_pagan_test(ols, df, "x1")
        assert np.isfinite(res["chi2"])


class TestStandardErrors:
    def test_robust_and_classical_side_by_side(self, heteroskedastic_df):
        ols = fit_ols(heteroskedastic_df, "y", ["t", "z"])
        table = compare_standard_errors(ols)
        assert list(table["Parameter"]) == ["Intercept", "t", "z"]
        assert (table["SE_HC1"] > 0).all()
        np.testing.assert_allclose(table["SE_Ratio"], table["SE_HC1"] / table["SE_Classical"])

    def test_no_regressors(self, example_df):
        with pytest.raises(ValueError):
            fit_ols(example_df, "y", [])


class TestRunDiagnostics:
    def test_pipeline_flags_rejections(self, heteroskedastic_df):
        out = run_heteroskedasticity_diagnostics(
            heteroskedastic_df, "y", "t", ["z", "w"], verbose=False
        )
        assert set(out) == {"ols", "bp_table", "se_table"}
        bp = out["bp_table"].set_index("variable")
        assert bool(bp.loc["z", "reject"]) is True
        assert bp["reject"].dtype == bool

    def test_prints_banner(self, example_df, capsys):
        run_heteroskedasticity_diagnostics(example_df, "y", "t", ["x1", "x2"])
        assert "BREUSCH-PAGAN" in capsys.readouterr().out
