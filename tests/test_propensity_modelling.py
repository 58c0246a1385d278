"""Tests for GBM propensity scores, IPTW weights and weighted outcome models."""

import numpy as np
import pandas as pd
import pytest
from sklearn.exceptions import ConvergenceWarning

from psa_functions.propensity_modelling import (
    GBMPropensityResult,
    PropensityWeightingModel,
    compute_iptw_weights,
)

SMALL_GBM = {"n_trees": 150, "train_fraction": 0.8, "interaction_depth": 2,
             "shrinkage": 0.05, "bag_fraction": 0.5}


class TestComputeIPTWWeights:
    def setup_method(self):
        rng = np.random.default_rng(11)
        self.e = rng.uniform(0.02, 0.98, 200)
        self.t = rng.binomial(1, self.e)

    def test_half_scores(self):
        t = np.array([0, 1, 0, 1])
        e = np.full(4, 0.5)
        np.testing.assert_allclose(compute_iptw_weights(e, t, "ATE"), 2.0)
        np.testing.assert_allclose(compute_iptw_weights(e, t, "ATT"), 1.0)

    def test_att_treated_weight_is_one(self):
        w = compute_iptw_weights(self.e, self.t, "ATT")
        assert (w[self.t == 1] == 1).all()

    def test_ate_control_weight_times_score_is_att_weight(self):
        ate = compute_iptw_weights(self.e, self.t, "ATE")
        att = compute_iptw_weights(self.e, self.t, "ATT")
        controls = self.t == 0
        np.testing.assert_allclose(ate[controls] * self.e[controls], att[controls])

    def test_weights_non_negative_and_finite(self):
        for estimand in ["ATE", "ATT"]:
            w = compute_iptw_weights(self.e, self.t, estimand)
            assert np.isfinite(w).all()
            assert (w >= 0).all()

    def test_accepts_series(self):
        w = compute_iptw_weights(pd.Series([0.2, 0.8]), pd.Series([1, 0]), "ate")
        np.testing.assert_allclose(w, [5.0, 5.0])

    @pytest.mark.parametrize("e,t", [
        ([0.0, 0.5], [1, 0]),
        ([0.5, 1.0], [1, 0]),
        ([0.5, np.nan], [1, 0]),
        ([0.5, 0.5], [1, 2]),
        ([0.5, 0.5, 0.5], [1, 0]),
    ])
    def test_invalid_inputs(self, e, t):
        with pytest.raises(ValueError):
            compute_iptw_weights(np.array(e), np.array(t), "ATE")

    def test_unknown_estimand(self):
        with pytest.raises(ValueError, match="estimand"):
            compute_iptw_weights(self.e, self.t, "ATC")


class TestGBMPropensityScores:
    def setup_method(self):
        self.model = PropensityWeightingModel(seed=42)
        self.covariates = ["x1", "x2", "x3"]

    def test_result_fields(self, example_df):
        res = self.model.estimate_gbm_propensity_scores(
            example_df, "t", self.covariates, verbose=False, **SMALL_GBM)
        assert isinstance(res, GBMPropensityResult)
        assert res.propensity_scores.index.equals(example_df.index)
        assert ((res.propensity_scores > 0) & (res.propensity_scores < 1)).all()
        assert 1 <= res.best_iteration <= SMALL_GBM["n_trees"]
        assert len(res.valid_deviance) == SMALL_GBM["n_trees"]
        assert res.best_iteration == int(np.argmin(res.valid_deviance)) + 1
        assert res.relative_influence.sum() == pytest.approx(100.0)
        assert set(res.relative_influence.index) == set(self.covariates)

    def test_same_seed_same_scores(self, example_df):
        first = self.model.estimate_gbm_propensity_scores(
            example_df, "t", self.covariates, verbose=False, **SMALL_GBM)
        second = PropensityWeightingModel(seed=42).estimate_gbm_propensity_scores(
            example_df, "t", self.covariates, verbose=False, **SMALL_GBM)
        np.testing.assert_array_equal(first.propensity_scores.to_numpy(),
                                      second.propensity_scores.to_numpy())
        assert first.best_iteration == second.best_iteration

    def test_shuffle_is_deterministic(self, example_df):
        a = PropensityWeightingModel.shuffle_rows(example_df, seed=1)
        b = PropensityWeightingModel.shuffle_rows(example_df, seed=1)
        assert a.index.equals(b.index)
        assert sorted(a.index) == sorted(example_df.index)

    def test_last_tree_best_warns(self, example_df):
        with pytest.warns(ConvergenceWarning):
            res = self.model.estimate_gbm_propensity_scores(
                example_df, "t", self.covariates, n_trees=20, train_fraction=1.0,
                bag_fraction=1.0, verbose=False)
        assert res.best_iteration == 20
        assert res.converged is False
        assert res.valid_deviance is None

    def test_out_of_bag_selection_without_holdout(self, example_df):
        res = self.model.estimate_gbm_propensity_scores(
            example_df, "t", self.covariates, n_trees=50, train_fraction=1.0,
            bag_fraction=0.5, interaction_depth=2, shrinkage=0.1, verbose=False)
        assert 1 <= res.best_iteration <= 50

    def test_categorical_covariates_dummy_coded(self, cds_df):
        res = self.model.estimate_gbm_propensity_scores(
            cds_df, "kuse", ["black", "pcged97", "mratio96", "pcg_adc"],
            categorical_vars=["pcg_adc"], verbose=False, **SMALL_GBM)
        assert {"pcg_adc_0", "pcg_adc_1", "pcg_adc_2"} <= set(res.relative_influence.index)

    @pytest.mark.parametrize("kwargs", [
        {"train_fraction": 0.0},
        {"bag_fraction": 1.5},
        {"n_trees": 0},
        {"shrinkage": 0.0},
    ])
    def test_invalid_settings(self, example_df, kwargs):
        with pytest.raises(ValueError):
            self.model.estimate_gbm_propensity_scores(
                example_df, "t", self.covariates, verbose=False, **kwargs)


class TestLogitPropensityScores:
    def setup_method(self):
        self.model = PropensityWeightingModel()
        rng = np.random.default_rng(11)
        t = np.repeat([0, 1], 40)
        # x < 0 exactly for controls
        x = np.where(t == 1, 1.0, -1.0) * rng.uniform(0.5, 2.0, len(t))
        self.separated = pd.DataFrame({"t": t, "x": x, "g": np.arange(len(t)) // 2})

    def test_scores_in_unit_interval(self, example_df):
        ps, fit = self.model.estimate_logit_propensity_scores(example_df, "t", ["x1", "x2", "x3"])
        assert ps.between(0, 1, inclusive="neither").all()
        assert self.model.ps_model is fit

    def test_perfect_separation_raises(self):
        with pytest.raises(ValueError, match="(?i)propensity model"):
            self.model.estimate_logit_propensity_scores(self.separated, "t", ["x"])

    def test_perfect_separation_raises_with_clusters(self):
        with pytest.raises(ValueError, match="(?i)propensity model"):
            self.model.estimate_logit_propensity_scores(self.separated, "t", ["x"],
                                                        cluster_var="g")


class TestPropensityWeights:
    def setup_method(self):
        self.model = PropensityWeightingModel(seed=42)

    def test_logit_ate_weights(self, example_df):
        df, ps_model = self.model.estimate_propensity_weights(
            example_df, "t", ["x1", "x2", "x3"], estimand="ATE", method="logit", verbose=False)
        expected = np.where(df["t"] == 1, 1 / df["propensity_score"],
                            1 / (1 - df["propensity_score"]))
        np.testing.assert_allclose(df["iptw"], expected)
        assert ps_model is not None

    def test_gbm_att_weights(self, example_df):
        df, ps_model = self.model.estimate_propensity_weights(
            example_df, "t", ["x1", "x2", "x3"], estimand="ATT", method="gbm",
            gbm_params=SMALL_GBM, verbose=False)
        assert isinstance(ps_model, GBMPropensityResult)
        assert (df.loc[df["t"] == 1, "iptw"] == 1).all()

    def test_precomputed_scores_are_clipped_with_warning(self, example_df):
        df = example_df.assign(ps=0.4)
        df.loc[df.index[0], "ps"] = 0.0
        with pytest.warns(RuntimeWarning, match="clipped"):
            out, ps_model = self.model.estimate_propensity_weights(
                df, "t", [], propensity_col="ps", verbose=False)
        assert ps_model is None
        assert np.isfinite(out["iptw"]).all()
        assert out["propensity_score"].min() == pytest.approx(1e-6)

    def test_trimming_caps_weights(self, example_df):
        df, _ = self.model.estimate_propensity_weights(
            example_df, "t", ["x1", "x2", "x3"], method="logit", trim_quantile=0.9, verbose=False)
        untrimmed, _ = self.model.estimate_propensity_weights(
            example_df, "t", ["x1", "x2", "x3"], method="logit", verbose=False)
        assert df["iptw"].max() == pytest.approx(untrimmed["iptw"].quantile(0.9))

    def test_stabilized_ate_weights(self, example_df):
        df, _ = self.model.estimate_propensity_weights(
            example_df, "t", ["x1", "x2", "x3"], method="logit", stabilize=True, verbose=False)
        raw, _ = self.model.estimate_propensity_weights(
            example_df, "t", ["x1", "x2", "x3"], method="logit", verbose=False)
        p_t = example_df["t"].mean()
        treated = df["t"] == 1
        np.testing.assert_allclose(df.loc[treated, "iptw"], raw.loc[treated, "iptw"] * p_t)

    def test_unknown_method(self, example_df):
        with pytest.raises(ValueError, match="method"):
            self.model.estimate_propensity_weights(example_df, "t", ["x1"], method="forest")

    def test_weight_diagnostics(self):
        df = pd.DataFrame({"iptw": np.ones(10)})
        diag = self.model.compute_weight_diagnostics(df)
        assert diag["effective_sample_size"] == pytest.approx(10)
        assert diag["max_weight"] == 1
        assert diag["n_zero_weight"] == 0
        with pytest.raises(ValueError):
            self.model.compute_weight_diagnostics(df, "w")

    def test_weight_diagnostics_by_arm(self):
        df = pd.DataFrame({"t": [1, 1, 0, 0, 0, 0], "iptw": [1.0, 1.0, 3.0, 1.0, 0.0, 0.0]})
        diag = self.model.compute_weight_diagnostics(df, treatment_var="t")
        assert diag["ess_treated"] == pytest.approx(2.0)
        assert diag["ess_control"] == pytest.approx(16 / 10)
        assert diag["effective_sample_size"] == pytest.approx(36 / 12)
        assert diag["n_zero_weight"] == 2

    @pytest.mark.parametrize("weights,msg", [
        ([1.0, -0.5, 2.0], "negative"),
        ([0.0, 0.0, 0.0], "sum to zero"),
        ([1.0, np.inf, 2.0], "infinite"),
        ([1.0, np.nan, 2.0], "missing"),
    ])
    def test_weight_diagnostics_rejects_invalid_weights(self, weights, msg):
        df = pd.DataFrame({"iptw": weights})
        with pytest.raises(ValueError, match=msg):
            self.model.compute_weight_diagnostics(df)

    def test_weight_diagnostics_rejects_empty_arm(self):
        df = pd.DataFrame({"t": [1, 1, 0, 0], "iptw": [1.0, 2.0, 0.0, 0.0]})
        with pytest.raises(ValueError, match="control units"):
            self.model.compute_weight_diagnostics(df, treatment_var="t")


class TestWeightedOutcomeModel:
    def setup_method(self):
        self.model = PropensityWeightingModel()

    def test_unit_weights_match_ols(self, example_df):
        df = example_df.assign(iptw=1.0)
        res = self.model.fit_weighted_outcome_model(df, "y", "t", covariates=["x1", "x2"])
        ols = np.linalg.lstsq(
            np.column_stack([np.ones(len(df)), df[["t", "x1", "x2"]].to_numpy()]),
            df["y"].to_numpy(), rcond=None)[0]
        np.testing.assert_allclose(res.params.to_numpy(), ols, rtol=1e-8)
        assert res.cov_type == "HC1"

    def test_cluster_robust(self, cds_df):
        df = cds_df.assign(iptw=1.0)
        res = self.model.fit_weighted_outcome_model(
            df, "pcss97", "kuse", covariates=["age97"], cluster_var="pcgid")
        assert res.cov_type == "cluster"
        assert res.bse["kuse"] > 0

    def test_gee_needs_cluster(self, example_df):
        with pytest.raises(ValueError, match="cluster_var"):
            self.model.fit_weighted_outcome_model(example_df.assign(iptw=1.0), "y", "t", method="gee")

    def test_gee_by_cluster(self, cds_df):
        res = self.model.fit_weighted_outcome_model(
            cds_df.assign(iptw=1.0), "pcss97", "kuse", cluster_var="pcgid", method="gee")
        assert "kuse" in res.params.index

    def test_missing_weight_column(self, example_df):
        with pytest.raises(ValueError, match="Missing required variables"):
            self.model.fit_weighted_outcome_model(example_df, "y", "t")

    def test_constant_predictor(self, example_df):
        with pytest.raises(ValueError, match="No variation"):
            self.model.fit_weighted_outcome_model(
                example_df.assign(iptw=1.0, c=1.0), "y", "t", covariates=["c"])


class TestAnalyzeTreatmentEffect:
    def test_logit_pipeline(self, cds_df, tmp_path):
        model = PropensityWeightingModel()
        res = model.analyze_treatment_effect(
            data=cds_df,
            outcome_var="pcss97",
            treatment_var="kuse",
            categorical_vars=["pcg_adc"],
            binary_vars=["male", "black"],
            continuous_vars=["age97", "pcged97", "mratio96"],
            cluster_var="pcgid",
            estimand="ATE",
            propensity_method="logit",
            plot_propensity=False,
            plot_weights=False,
            project_path=str(tmp_path),
            analysis_name="cds",
            verbose=False,
        )
        assert res["ci_lower"] < res["effect"] < res["ci_upper"]
        assert res["std_error"] > 0
        assert res["estimand"] == "ATE"
        assert {"pcg_adc_1", "pcg_adc_2", "age97"} <= set(res["balance_df"].index)
        assert (tmp_path / "ate_iptw_cds.xlsx").exists()

    def test_gbm_att_pipeline_with_plots(self, cds_df):
        model = PropensityWeightingModel()
        res = model.analyze_treatment_effect(
            data=cds_df,
            outcome_var="pcss97",
            treatment_var="kuse",
            categorical_vars=["pcg_adc"],
            binary_vars=["male", "black"],
            continuous_vars=["age97", "pcged97", "mratio96"],
            estimand="ATT",
            gbm_params=SMALL_GBM,
            show_plots=False,
            verbose=False,
        )
        weighted = res["weighted_df"]
        assert (weighted.loc[weighted["kuse"] == 1, "iptw"] == 1).all()
        assert res["ps_overlap_fig"] is not None
        assert res["weight_dist_fig"] is not None

        table = PropensityWeightingModel.build_summary_table({"GBM_ATT": res})
        assert table.loc[0, "Estimand"] == "ATT"
        assert table.loc[0, "Effect"] == pytest.approx(res["effect"])

    def test_unknown_estimand(self, cds_df):
        with pytest.raises(ValueError, match="estimand"):
            PropensityWeightingModel().analyze_treatment_effect(
                cds_df, "pcss97", "kuse", [], ["male"], ["age97"], estimand="ATC")


@pytest.mark.parametrize("raw,clean", [
    ("pcg_adc_1.0", "pcg_adc_1_0"),
    ("R&D share", "RandD_share"),
    ("age97", "age97"),
])
def test_clean_column_name(raw, clean):
    assert PropensityWeightingModel._clean_column_name(raw) == clean
