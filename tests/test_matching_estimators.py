"""Tests for the nearest-neighbour matching estimators."""

import numpy as np
import pandas as pd
import pytest
from scipy.stats import norm

from psa_functions.matching_estimators import (
    MatchingResult,
    NearestNeighborMatching,
    run_matching_analysis,
)


def _one_covariate_frame(x_treated, x_control, seed=0):
    rng = np.random.default_rng(seed)
    x = np.concatenate([x_treated, x_control]).astype(float)
    t = np.concatenate([np.ones(len(x_treated), dtype=int), np.zeros(len(x_control), dtype=int)])
    y = 1.0 + 2.0 * t + x + rng.normal(0, 0.5, len(x))
    return pd.DataFrame({"y": y, "t": t, "x": x})


class TestNearestNeighborMatching:
    def setup_method(self):
        self.covariates = ["x1", "x2", "x3"]

    def test_six_estimator_rows(self, example_df):
        model = NearestNeighborMatching(verbose=False).fit(example_df, "y", "t", self.covariates)
        table = model.summary_table()
        assert len(table) == 6
        assert list(table["estimand"]) == ["ATE", "ATE", "ATT", "ATT", "ATC", "ATC"]
        assert list(table["sample"]) == ["sample", "population"] * 3

    def test_t_stat_and_p_value(self, example_df):
        model = NearestNeighborMatching(bias_adjust=True, verbose=False)
        model.fit(example_df, "y", "t", self.covariates)
        table = model.summary_table()
        np.testing.assert_allclose(table["t_stat"], table["estimate"] / table["std_error"])
        np.testing.assert_allclose(table["p_value"], 2 * (1 - norm.cdf(table["t_stat"].abs())))
        assert (table["std_error"] > 0).all()

    def test_bias_adjusted_estimate_near_truth(self, example_df):
        model = NearestNeighborMatching(bias_adjust=True, verbose=False)
        model.fit(example_df, "y", "t", self.covariates)
        assert model.bias_covariates == ["x1", "x2"]
        assert abs(model.estimate("ATE").estimate - 2.0) < 0.75

    def test_result_record(self, example_df):
        model = NearestNeighborMatching(verbose=False).fit(example_df, "y", "t", self.covariates)
        res = model.estimate("att", sample=False)
        assert isinstance(res, MatchingResult)
        assert res.estimand == "ATT"
        assert res.sample == "population"
        assert res.n_obs == int(example_df["t"].sum())
        assert res.n_matches == 4

    def test_controls_reused_with_replacement(self):
        df = _one_covariate_frame(
            x_treated=[0.0, 0.11, 0.23, 0.36, 0.48, 0.61],
            x_control=[0.05, 0.17, 0.29, 0.42, 0.55] + [5.0 + 0.7 * k for k in range(10)],
        )
        model = NearestNeighborMatching(n_matches=4, verbose=False).fit(df, "y", "t", ["x"])
        counts = model.match_counts()
        assert counts[df["t"] == 0].max() > 1

        sets = model.matched_sets("treated")
        uses = sets.groupby("match_index")["focal_index"].nunique()
        assert uses.max() > 1
        assert (sets.groupby("focal_index").size() == 4).all()

    def test_ties_join_the_match_set(self):
        df = _one_covariate_frame(
            x_treated=[0.0, 5.0, 6.2, 7.1, 8.3, 9.4],
            x_control=[-1.0, 1.0, 3.3, 4.1, 10.2, 11.6, 12.9],
        )
        with_ties = NearestNeighborMatching(n_matches=1, verbose=False).fit(df, "y", "t", ["x"])
        sets = with_ties.matched_sets("treated")
        assert (sets["focal_index"] == 0).sum() == 2
        np.testing.assert_allclose(sets.loc[sets["focal_index"] == 0, "match_weight"], 0.5)

        no_ties = NearestNeighborMatching(n_matches=1, ties=False, verbose=False)
        no_ties.fit(df, "y", "t", ["x"])
        sets = no_ties.matched_sets("treated")
        assert (sets["focal_index"] == 0).sum() == 1

    def test_att_weights_sum_to_treated_count(self, example_df):
        model = NearestNeighborMatching(verbose=False).fit(example_df, "y", "t", self.covariates)
        w = model.matching_weights("ATT")
        t = example_df["t"].to_numpy()
        assert (w[t == 1] == 1).all()
        assert w[t == 0].sum() == pytest.approx(t.sum())
        assert (model.matching_weights("ATE") >= 1).all()

    def test_without_replacement(self):
        df = _one_covariate_frame(
            x_treated=[0.0, 1.1, 2.3, 3.2, 4.4],
            x_control=[0.2 + 0.41 * k for k in range(12)],
        )
        model = NearestNeighborMatching(n_matches=2, replace=False, verbose=False)
        model.fit(df, "y", "t", ["x"])
        assert model.is_available("ATT")
        assert not model.is_available("ATC")
        assert not model.is_available("ATE")
        assert model.match_counts()[df["t"] == 0].max() == pytest.approx(0.5)
        assert len(model.summary_table()) == 2
        with pytest.raises(ValueError, match="unavailable"):
            model.estimate("ATE")

    def test_without_replacement_bias_adjusted(self):
        # treated units never serve as matches, so only mu_0 is fitted
        df = _one_covariate_frame(
            x_treated=[0.0, 1.1, 2.3, 3.2, 4.4],
            x_control=[0.2 + 0.41 * k for k in range(12)],
        )
        model = NearestNeighborMatching(n_matches=2, replace=False, bias_adjust=True,
                                        verbose=False)
        model.fit(df, "y", "t", ["x"])
        att = model.estimate("ATT")
        assert np.isfinite(att.estimate)
        assert np.isfinite(att.std_error)
        assert set(model.bias_coefficients_) == {0}
        assert not model.is_available("ATC")

    def test_bias_adjustment_needs_enough_matched_units(self):
        # one matched control cannot identify an intercept and a slope
        df = _one_covariate_frame(x_treated=[0.0], x_control=[0.5, 1.5])
        model = NearestNeighborMatching(n_matches=1, replace=False, bias_adjust=True,
                                        verbose=False)
        with pytest.raises(ValueError, match="too few distinct matched units"):
            model.fit(df, "y", "t", ["x"])

    def test_homoskedastic_variance_is_constant(self, example_df):
        model = NearestNeighborMatching(variance="homoskedastic", verbose=False)
        model.fit(example_df, "y", "t", self.covariates)
        assert np.unique(model.sigma2_).size == 1
        assert model.estimate("ATE").std_error > 0

    def test_metrics_give_estimates(self, example_df):
        for metric in ["mahalanobis", "ivar", "euclidean"]:
            model = NearestNeighborMatching(metric=metric, verbose=False)
            model.fit(example_df, "y", "t", self.covariates)
            assert np.isfinite(model.estimate("ATT").estimate)


class TestMatchingErrors:
    def test_singular_covariance(self, example_df):
        df = example_df.assign(x4=2 * example_df["x1"])
        with pytest.raises(ValueError, match="singular"):
            NearestNeighborMatching(verbose=False).fit(df, "y", "t", ["x1", "x4"])

    def test_zero_variance_covariate(self, example_df):
        df = example_df.assign(c=3.0)
        with pytest.raises(ValueError, match="zero variance"):
            NearestNeighborMatching(verbose=False).fit(df, "y", "t", ["x1", "c"])

    def test_non_binary_treatment(self, example_df):
        df = example_df.assign(t=example_df["t"] * 2)
        with pytest.raises(ValueError, match="0/1"):
            NearestNeighborMatching(verbose=False).fit(df, "y", "t", ["x1"])

    def test_estimate_before_fit(self):
        with pytest.raises(ValueError, match="fit"):
            NearestNeighborMatching().estimate("ATE")

    def test_bias_adjust_needs_continuous_covariates(self, example_df):
        model = NearestNeighborMatching(bias_adjust=True, verbose=False)
        with pytest.raises(ValueError, match="bias_covariates"):
            model.fit(example_df, "y", "t", ["x3"])

    @pytest.mark.parametrize("kwargs", [
        {"n_matches": 0},
        {"metric": "cosine"},
        {"variance": "bootstrap"},
        {"n_variance_matches": 0},
    ])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            NearestNeighborMatching(**kwargs)


def test_run_matching_analysis(example_df, capsys):
    out = run_matching_analysis(example_df, "y", "t", ["x1", "x2", "x3"])
    assert set(out) == {"model", "table", "match_counts"}
    assert len(out["table"]) == 6
    assert "sig" in out["table"].columns
    assert "MATCHING ESTIMATORS" in capsys.readouterr().out
