"""
Propensity Score Weighting Module

Generalized boosted regression (GBM) propensity scores, inverse probability
of treatment weights (IPTW) for the ATE or ATT, and weighted outcome models
with cluster-robust or heteroskedasticity-robust standard errors.

Classes:
    PropensityWeightingModel: propensity estimation, weighting and the
        weighted outcome model, plus a one-call analysis pipeline
"""

import re
import warnings

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import statsmodels.formula.api as smf
from statsmodels.genmod import cov_struct, families
from statsmodels.tools.sm_exceptions import PerfectSeparationError, PerfectSeparationWarning
from typing import Dict, List, NamedTuple, Optional, Tuple, Union
from sklearn.ensemble import GradientBoostingClassifier
from sklearn.exceptions import ConvergenceWarning
from sklearn.metrics import log_loss

from .causal_diagnostics import CausalDiagnostics
from .data_loading import SEED, drop_missing_rows
from .reporting import export_tables_to_excel, significance_stars

# Settings of the boosted propensity model used in the tutorial
DEFAULT_GBM_PARAMS = {
    "n_trees": 3000,
    "train_fraction": 0.8,
    "interaction_depth": 4,
    "shrinkage": 0.01,
    "bag_fraction": 0.5,
}

# Propensity scores are kept inside [PS_CLIP, 1 - PS_CLIP]
PS_CLIP = 1e-6


def compute_iptw_weights(
    propensity_scores: Union[np.ndarray, pd.Series],
    treatment: Union[np.ndarray, pd.Series],
    estimand: str = "ATE"
) -> np.ndarray:
    """
    Inverse probability of treatment weights.

    - ATE: treated = 1/e, control = 1/(1-e)
    - ATT: treated = 1,   control = e/(1-e)

    Parameters
    ----------
    propensity_scores : array-like
        Scores strictly inside (0, 1).
    treatment : array-like
        Treatment indicator coded 0/1.
    estimand : {"ATE", "ATT"}

    Returns
    -------
    np.ndarray
        Non-negative, finite weights.

    Raises
    ------
    ValueError
        If the estimand is unknown, lengths differ, treatment is not 0/1, or a
        score lies outside the open interval (0, 1).
    """
    estimand = estimand.upper()
    if estimand not in ["ATE", "ATT"]:
        raise ValueError(f"estimand must be 'ATE' or 'ATT', got '{estimand}'")

    e = np.asarray(propensity_scores, dtype=float)
    t = np.asarray(treatment)
    if e.shape != t.shape:
        raise ValueError(
            f"propensity_scores and treatment must have the same length "
            f"({e.shape[0]} vs {t.shape[0]})"
        )
    if not set(np.unique(t).tolist()).issubset({0, 1}):
        raise ValueError(f"Treatment must be coded 0/1, found {sorted(np.unique(t).tolist())}")
    outside = ~np.isfinite(e) | (e <= 0) | (e >= 1)
    if outside.any():
        raise ValueError(
            f"{int(outside.sum())} propensity scores lie outside the open interval (0, 1)"
        )

    if estimand == "ATE":
        return np.where(t == 1, 1 / e, 1 / (1 - e))
    return np.where(t == 1, 1.0, e / (1 - e))


class GBMPropensityResult(NamedTuple):
    propensity_scores: pd.Series
    best_iteration: int
    n_trees: int
    train_deviance: np.ndarray
    valid_deviance: Optional[np.ndarray]
    relative_influence: pd.Series
    model: GradientBoostingClassifier
    converged: bool


class PropensityWeightingModel:
    """
    Propensity score weighting for causal inference.

    Workflow:
    1. Estimate propensity scores with a boosted classifier (GBM) or a
       logistic model, or take them from a precomputed column
    2. Convert them into IPTW weights for the ATE or ATT
    3. Fit a weighted regression of the outcome on treatment (+ covariates)
       with cluster-robust (e.g. siblings) or HC1 standard errors
    4. Check covariate balance before and after weighting

    Note on standard errors:
        The robust standard errors of the weighted outcome model treat the
        weights as known and do not propagate first-stage uncertainty from
        propensity estimation.

    Attributes:
        seed (int): Seed for row shuffling and the boosted model
        weight_col (str): Name of the weight column (default: "iptw")
        ps_model: Last fitted propensity score model
        outcome_model: Last fitted outcome model
    """

    def __init__(self, seed: int = SEED):
        self.seed = seed
        self.weight_col = "iptw"
        self.ps_model = None
        self.outcome_model = None

    # ==================================================================
    # Propensity score estimation
    # ==================================================================

    @staticmethod
    def shuffle_rows(data: pd.DataFrame, seed: int = SEED) -> pd.DataFrame:
        """Deterministic random permutation of rows (index labels are kept)."""
        return data.sample(frac=1.0, random_state=seed)

    def estimate_gbm_propensity_scores(
        self,
        data: pd.DataFrame,
        treatment_var: str,
        covariates: List[str],
        categorical_vars: Optional[List[str]] = None,
        n_trees: int = DEFAULT_GBM_PARAMS["n_trees"],
        train_fraction: float = DEFAULT_GBM_PARAMS["train_fraction"],
        interaction_depth: int = DEFAULT_GBM_PARAMS["interaction_depth"],
        shrinkage: float = DEFAULT_GBM_PARAMS["shrinkage"],
        bag_fraction: float = DEFAULT_GBM_PARAMS["bag_fraction"],
        verbose: bool = True
    ) -> GBMPropensityResult:
        """
        Fit a generalized boosted model of treatment on covariates.

        Rows are shuffled with the model seed first: the first
        ``train_fraction`` of the shuffled rows train the model and the rest
        are held out, so a systematically ordered file would otherwise hold
        out a non-random slice. The number of trees that minimises held-out
        binomial deviance is used for prediction. With ``train_fraction=1``
        the cumulative out-of-bag improvement picks the number of trees
        instead (or all trees are used when ``bag_fraction=1``).

        Parameters
        ----------
        data : pd.DataFrame
            Observation table.
        treatment_var : str
            Binary treatment column (0/1).
        covariates : List[str]
            Predictors of treatment.
        categorical_vars : List[str], optional
            Covariates to dummy code before fitting.
        n_trees : int
            Maximum number of boosting iterations.
        train_fraction : float
            Share of (shuffled) rows used for training, in (0, 1].
        interaction_depth : int
            Number of splits per tree (trees have interaction_depth + 1 leaves).
        shrinkage : float
            Learning rate.
        bag_fraction : float
            Subsample share drawn for each tree.

        Returns
        -------
        GBMPropensityResult
            ``propensity_scores`` are aligned to the rows of ``data`` (after
            dropping rows with missing model values).
        """
        if not 0 < train_fraction <= 1:
            raise ValueError(f"train_fraction must be in (0, 1], got {train_fraction}")
        if not 0 < bag_fraction <= 1:
            raise ValueError(f"bag_fraction must be in (0, 1], got {bag_fraction}")
        if int(n_trees) < 1 or int(interaction_depth) < 1 or shrinkage <= 0:
            raise ValueError("n_trees and interaction_depth must be >= 1 and shrinkage > 0")

        df = drop_missing_rows(data, [treatment_var] + list(covariates), verbose=verbose)
        CausalDiagnostics._validate_binary_treatment(df, treatment_var)

        categorical_vars = [c for c in (categorical_vars or []) if c in covariates]
        X = pd.get_dummies(df[list(covariates)], columns=categorical_vars, dtype=float)
        y = df[treatment_var].astype(int)

        shuffled = self.shuffle_rows(X.assign(_treatment=y), self.seed)
        n_train = int(np.floor(train_fraction * len(shuffled)))
        train = shuffled.iloc[:n_train]
        valid = shuffled.iloc[n_train:]
        if train["_treatment"].nunique() < 2:
            raise ValueError("Training rows contain only one treatment group")

        model = GradientBoostingClassifier(
            n_estimators=int(n_trees),
            learning_rate=shrinkage,
            max_depth=int(interaction_depth),
            max_leaf_nodes=int(interaction_depth) + 1,
            subsample=bag_fraction,
            random_state=self.seed,
        )
        model.fit(train[X.columns], train["_treatment"])

        valid_deviance = None
        if len(valid) > 0:
            valid_deviance = np.array([
                2 * log_loss(valid["_treatment"], proba[:, 1], labels=[0, 1])
                for proba in model.staged_predict_proba(valid[X.columns])
            ])
            best_iteration = int(np.argmin(valid_deviance)) + 1
        elif bag_fraction < 1:
            best_iteration = int(np.argmax(np.cumsum(model.oob_improvement_))) + 1
        else:
            best_iteration = int(n_trees)

        converged = best_iteration < int(n_trees)
        if not converged:
            warnings.warn(
                f"Best GBM iteration equals n_trees ({n_trees}); held-out deviance was "
                "still decreasing. Increase n_trees or shrinkage.",
                ConvergenceWarning,
                stacklevel=2
            )

        ps = None
        for k, proba in enumerate(model.staged_predict_proba(X), start=1):
            if k == best_iteration:
                ps = proba[:, 1]
                break

        trees = [tree for stage in model.estimators_[:best_iteration] for tree in stage]
        influence = np.mean([tree.feature_importances_ for tree in trees], axis=0)
        if influence.sum() > 0:
            influence = 100 * influence / influence.sum()
        relative_influence = pd.Series(influence, index=X.columns,
                                       name="rel_inf").sort_values(ascending=False)

        if verbose:
            print(f"  GBM propensity model: best iteration {best_iteration} of {n_trees} "
                  f"(train fraction {train_fraction}, depth {interaction_depth}, "
                  f"shrinkage {shrinkage})")

        self.ps_model = model
        return GBMPropensityResult(
            propensity_scores=pd.Series(ps, index=df.index, name="propensity_score"),
            best_iteration=best_iteration,
            n_trees=int(n_trees),
            train_deviance=np.asarray(model.train_score_),
            valid_deviance=valid_deviance,
            relative_influence=relative_influence,
            model=model,
            converged=converged,
        )

    def estimate_logit_propensity_scores(
        self,
        data: pd.DataFrame,
        treatment_var: str,
        covariates: List[str],
        categorical_vars: Optional[List[str]] = None,
        cluster_var: Optional[str] = None
    ) -> Tuple[pd.Series, object]:
        """
        Logistic propensity model (binomial GEE by cluster if clustered,
        binomial GLM otherwise).

        Raises
        ------
        ValueError
            On perfect separation or fitting failure.
        """
        categorical_vars = categorical_vars or []
        terms = [f"C({c})" if c in categorical_vars else c for c in covariates]
        formula = f"{treatment_var} ~ " + " + ".join(terms)
        needed = [treatment_var] + list(covariates) + ([cluster_var] if cluster_var else [])
        df = drop_missing_rows(data, needed, verbose=False)

        try:
            with warnings.catch_warnings():
                warnings.simplefilter("error", PerfectSeparationWarning)
                if cluster_var:
                    ps_model = smf.gee(
                        formula=formula,
                        data=df,
                        groups=df[cluster_var],
                        family=families.Binomial()
                    ).fit()
                else:
                    ps_model = smf.glm(
                        formula=formula,
                        data=df,
                        family=families.Binomial()
                    ).fit()
        except (PerfectSeparationError, PerfectSeparationWarning) as e:
            raise ValueError(f"Perfect separation in propensity model '{formula}': {str(e)}")
        except Exception as e:
            raise ValueError(f"Propensity model fitting failed with formula '{formula}': {str(e)}")

        ps = pd.Series(ps_model.predict(df), index=df.index, name="propensity_score")
        # GEE has no separation check; a score that classifies every unit has no finite MLE
        if not np.isfinite(ps).all() or ((ps > 0.5) == (df[treatment_var] == 1)).all():
            raise ValueError(
                f"Perfect separation in propensity model '{formula}': "
                "fitted scores classify every unit"
            )

        self.ps_model = ps_model
        return ps, ps_model

    def estimate_propensity_weights(
        self,
        data: pd.DataFrame,
        treatment_var: str,
        covariates: List[str],
        estimand: str = "ATE",
        method: str = "gbm",
        categorical_vars: Optional[List[str]] = None,
        cluster_var: Optional[str] = None,
        propensity_col: Optional[str] = None,
        stabilize: bool = False,
        trim_quantile: Optional[float] = None,
        weight_col: str = "iptw",
        gbm_params: Optional[Dict] = None,
        verbose: bool = True
    ) -> Tuple[pd.DataFrame, object]:
        """
        Estimate propensity scores and attach IPTW weights for ATE or ATT.

        Parameters
        ----------
        data : pd.DataFrame
            Dataset containing treatment and covariate variables
        treatment_var : str
            Name of the binary treatment variable (0/1)
        covariates : List[str]
            Covariate column names for the propensity model
        estimand : str, default="ATE"
            "ATE" (treated = 1/e, control = 1/(1-e)) or "ATT" (treated = 1,
            control = e/(1-e))
        method : str, default="gbm"
            "gbm" (boosted trees) or "logit"
        categorical_vars : List[str], optional
            Covariates treated as categorical
        cluster_var : str, optional
            Clustering variable, used by the GEE logit propensity model
        propensity_col : str, optional
            Use this precomputed propensity column instead of fitting a model
        stabilize : bool, default=False
            Multiply weights by the marginal treatment probability
        trim_quantile : float, optional
            Cap weights at this quantile (e.g. 0.99)
        weight_col : str, default="iptw"
            Name for the weight column in returned dataframe
        gbm_params : dict, optional
            Overrides for ``DEFAULT_GBM_PARAMS``

        Returns
        -------
        tuple
            (df_with_weights, propensity_score_model); the model is the
            ``GBMPropensityResult`` for GBM, the statsmodels fit for logit and
            None for a precomputed column.
        """
        estimand = estimand.upper()
        if estimand not in ["ATE", "ATT"]:
            raise ValueError(f"estimand must be 'ATE' or 'ATT', got '{estimand}'")
        if method not in ["gbm", "logit"]:
            raise ValueError(f"method must be 'gbm' or 'logit', got '{method}'")

        df = data.copy()
        if propensity_col:
            if propensity_col not in df.columns:
                raise ValueError(f"Propensity column '{propensity_col}' not found in data")
            df = drop_missing_rows(df, [treatment_var, propensity_col], verbose=verbose)
            df["propensity_score"] = df[propensity_col].astype(float)
            ps_model = None
        elif method == "gbm":
            params = dict(DEFAULT_GBM_PARAMS)
            params.update(gbm_params or {})
            ps_model = self.estimate_gbm_propensity_scores(
                df, treatment_var, covariates, categorical_vars=categorical_vars,
                verbose=verbose, **params
            )
            df = df.loc[ps_model.propensity_scores.index].copy()
            df["propensity_score"] = ps_model.propensity_scores
        else:
            scores, ps_model = self.estimate_logit_propensity_scores(
                df, treatment_var, covariates, categorical_vars=categorical_vars,
                cluster_var=cluster_var
            )
            df = df.loc[scores.index].copy()
            df["propensity_score"] = scores

        # --- Scores on the boundary would give infinite weights
        n_outside = int(((df["propensity_score"] < PS_CLIP)
                         | (df["propensity_score"] > 1 - PS_CLIP)).sum())
        if n_outside > 0:
            warnings.warn(
                f"{n_outside} propensity scores outside [{PS_CLIP}, {1 - PS_CLIP}] were "
                "clipped to that range before computing weights",
                RuntimeWarning,
                stacklevel=2
            )
            df["propensity_score"] = df["propensity_score"].clip(lower=PS_CLIP, upper=1 - PS_CLIP)

        df[weight_col] = compute_iptw_weights(df["propensity_score"], df[treatment_var], estimand)

        # --- Stabilization: multiply by marginal treatment probability
        if stabilize:
            p_t = df[treatment_var].mean()
            if estimand == "ATE":
                df[weight_col] = np.where(
                    df[treatment_var] == 1,
                    df[weight_col] * p_t,
                    df[weight_col] * (1 - p_t)
                )
            else:
                # For ATT, only control weights are stabilized
                df[weight_col] = np.where(
                    df[treatment_var] == 1,
                    df[weight_col],
                    df[weight_col] * p_t
                )

        # --- Trimming: cap extreme weights
        if trim_quantile is not None:
            cap = df[weight_col].quantile(trim_quantile)
            df[weight_col] = np.minimum(df[weight_col], cap)

        return df, ps_model

    # ==================================================================
    # Weight diagnostics and outcome model
    # ==================================================================

    def compute_weight_diagnostics(
        self,
        data: pd.DataFrame,
        weight_col: str = "iptw",
        treatment_var: Optional[str] = None
    ) -> Dict[str, Union[int, float]]:
        """
        Kish effective sample size and weight summaries.

        ESS = (sum w)^2 / sum w^2 equals n for constant weights and shrinks as
        a few units carry most of the weight. With ``treatment_var`` the ESS
        is also reported within each arm (``ess_treated``, ``ess_control``).

        Raises
        ------
        ValueError
            If weight_col does not exist, holds missing, infinite or negative
            weights, or the weights sum to zero.
        """
        if weight_col not in data.columns:
            raise ValueError(f"Weight column '{weight_col}' not found in data")

        w = data[weight_col].astype(float)
        if not np.isfinite(w).all():
            raise ValueError(f"Weight column '{weight_col}' has missing or infinite values")
        if (w < 0).any():
            raise ValueError(
                f"Weight column '{weight_col}' has {int((w < 0).sum())} negative weights; "
                "weights must be non-negative"
            )

        def _ess(values: pd.Series, label: str) -> float:
            total = values.sum()
            if total <= 0:
                raise ValueError(
                    f"Weights in '{weight_col}' sum to zero for {label}; "
                    "effective sample size is undefined"
                )
            return float(total ** 2 / (values ** 2).sum())

        stats = {
            "n_observations": len(w),
            "n_zero_weight": int((w == 0).sum()),
            "effective_sample_size": _ess(w, "all units"),
            "mean_weight": w.mean(),
            "std_weight": w.std(),
            "max_weight": w.max(),
            "p95_weight": w.quantile(0.95),
            "p99_weight": w.quantile(0.99)
        }
        if treatment_var is not None:
            treated = data[treatment_var] == 1
            stats["ess_treated"] = _ess(w[treated], "treated units")
            stats["ess_control"] = _ess(w[~treated], "control units")
        return stats

    def fit_weighted_outcome_model(
        self,
        data: pd.DataFrame,
        outcome_var: str,
        treatment_var: str,
        weight_col: str = "iptw",
        covariates: Optional[List[str]] = None,
        cluster_var: Optional[str] = None,
        method: str = "wls",
        family: str = "gaussian"
    ) -> object:
        """
        Weighted regression of the outcome on treatment (+ covariates).

        ``method="wls"`` fits weighted least squares with cluster-robust
        standard errors grouped by ``cluster_var`` (e.g. siblings sharing a
        caregiver), or HC1 robust standard errors when no cluster is given.
        ``method="gee"`` fits a weighted GEE by cluster with an exchangeable
        working correlation; ``family`` then may be "gaussian" or "binomial".

        Returns
        -------
        statsmodels results
            Fitted model with params, bse, pvalues, conf_int() method

        Raises
        ------
        ValueError
            If data validation fails or model fitting fails
        """
        if data.empty:
            raise ValueError("Empty dataset provided to model")
        if method not in ["wls", "gee"]:
            raise ValueError(f"method must be 'wls' or 'gee', got '{method}'")
        if method == "gee" and not cluster_var:
            raise ValueError("method='gee' requires cluster_var")

        required_vars = [outcome_var, treatment_var, weight_col] + ([cluster_var] if cluster_var else [])
        missing_vars = [v for v in required_vars if v not in data.columns]
        if missing_vars:
            raise ValueError(f"Missing required variables: {missing_vars}")

        rhs = [treatment_var]
        if covariates:
            missing_covs = [c for c in covariates if c not in data.columns]
            if missing_covs:
                raise ValueError(f"Missing covariates: {missing_covs}")
            rhs += list(covariates)

        df = drop_missing_rows(data, required_vars + rhs[1:], verbose=False)

        # Check for sufficient variation in predictors
        for var in rhs:
            if df[var].nunique() <= 1:
                raise ValueError(f"No variation in predictor variable: '{var}'")

        if (df[weight_col] < 0).any() or (df[weight_col] <= 0).all():
            raise ValueError("Weights must be non-negative with at least one positive weight")

        formula = f"{outcome_var} ~ " + " + ".join(rhs)

        try:
            if method == "wls":
                if cluster_var:
                    fit_kwargs = {"cov_type": "cluster",
                                  "cov_kwds": {"groups": pd.factorize(df[cluster_var])[0]}}
                else:
                    fit_kwargs = {"cov_type": "HC1"}
                result = smf.wls(formula=formula, data=df, weights=df[weight_col]).fit(**fit_kwargs)
            else:
                fam = families.Gaussian() if family == "gaussian" else families.Binomial()
                result = smf.gee(
                    formula=formula,
                    data=df,
                    groups=df[cluster_var],
                    weights=df[weight_col],
                    family=fam,
                    cov_struct=cov_struct.Exchangeable()
                ).fit()
        except Exception as e:
            raise ValueError(f"Outcome model fitting failed with formula '{formula}': {str(e)}")

        self.outcome_model = result
        return result

    # ==================================================================
    # Plots
    # ==================================================================

    def plot_propensity_overlap(
        self,
        data: pd.DataFrame,
        treatment_var: str,
        title: str = "Propensity Score Overlap",
        show: bool = True
    ) -> object:
        """Propensity score overlap plot via CausalDiagnostics."""
        if "propensity_score" not in data.columns:
            raise ValueError("Column 'propensity_score' is required for overlap plotting")

        diagnostics = CausalDiagnostics()
        return diagnostics.plot_propensity_overlap(
            data=data,
            treatment_var=treatment_var,
            propensity_scores=data["propensity_score"].to_numpy(),
            title=title,
            show=show,
        )

    def plot_weight_distribution(
        self,
        data: pd.DataFrame,
        treatment_var: str,
        weight_col: str = "iptw",
        estimand: str = "ATE",
        title: str = "IPTW Weight Distribution",
        show: bool = True
    ) -> object:
        """
        Histogram of IPTW weights by treatment group.

        Helps diagnose extreme weights that can destabilize estimates.
        """
        fig, axes = plt.subplots(1, 2, figsize=(14, 5))

        for ax, (label, grp) in zip(axes, data.groupby(treatment_var)):
            group_label = "Treated" if label == 1 else "Control"
            ax.hist(grp[weight_col], bins=50, alpha=0.7,
                    color="#e74c3c" if label == 1 else "#3498db",
                    edgecolor="black", linewidth=0.5)
            ax.axvline(grp[weight_col].mean(), color="black", linestyle="--",
                       label=f"Mean = {grp[weight_col].mean():.2f}")
            ax.axvline(grp[weight_col].quantile(0.99), color="orange", linestyle="--",
                       label=f"P99 = {grp[weight_col].quantile(0.99):.2f}")
            ax.set_xlabel("Weight", fontsize=11)
            ax.set_ylabel("Frequency", fontsize=11)
            ax.set_title(f"{group_label} (n={len(grp)})", fontsize=12, fontweight="bold")
            ax.legend(fontsize=9)
            ax.grid(axis="y", alpha=0.3)

        plt.suptitle(title, fontsize=14, fontweight="bold")
        if estimand == "ATT":
            interpretation = (
                "Interpretation (ATT): Treated weights are exactly 1.0. Control weights "
                "are the odds e/(1-e): most near zero, with a right tail for controls "
                "resembling treated units."
            )
        else:
            interpretation = (
                "Interpretation (ATE): Weights are 1/e for treated and 1/(1-e) for controls; "
                "a long right tail signals units with poor overlap."
            )

        fig.text(0.5, 0.01, interpretation, ha="center", va="bottom", fontsize=9, color="dimgray")
        plt.tight_layout(rect=[0, 0.06, 1, 1])

        if show:
            plt.show()
        return fig

    # ==================================================================
    # Pipeline
    # ==================================================================

    def analyze_treatment_effect(
        self,
        data: pd.DataFrame,
        outcome_var: str,
        treatment_var: str,
        categorical_vars: List[str],
        binary_vars: List[str],
        continuous_vars: List[str],
        cluster_var: Optional[str] = None,
        estimand: str = "ATE",
        propensity_method: str = "gbm",
        propensity_col: Optional[str] = None,
        adjust_covariates: bool = True,
        stabilize: bool = False,
        trim_quantile: Optional[float] = None,
        gbm_params: Optional[Dict] = None,
        alpha: float = 0.05,
        plot_propensity: bool = True,
        plot_weights: bool = True,
        show_plots: bool = True,
        project_path: Optional[str] = None,
        analysis_name: Optional[str] = None,
        verbose: bool = True
    ) -> Dict:
        """
        Complete analysis pipeline: propensity scores → IPTW → weighted outcome model.

        1. Data preparation (listwise deletion, dummy coding)
        2. Propensity score estimation (GBM, logit or precomputed) and IPTW
        3. Positivity warning and propensity / weight plots
        4. Weight diagnostics and balance before/after weighting
        5. Weighted outcome regression with robust standard errors
        6. Optional export to Excel workbook

        Parameters
        ----------
        data : pd.DataFrame
            Raw dataset for analysis
        outcome_var, treatment_var : str
            Outcome and binary treatment columns
        categorical_vars, binary_vars, continuous_vars : List[str]
            Covariates by type; categorical ones are dummy coded
        cluster_var : str, optional
            Cluster identifier for cluster-robust standard errors
        estimand : str, default="ATE"
            "ATE" or "ATT"
        propensity_method : str, default="gbm"
            "gbm" or "logit"
        propensity_col : str, optional
            Precomputed propensity column to use instead of fitting
        adjust_covariates : bool, default=True
            Include the covariates in the outcome model as well as the treatment
        project_path, analysis_name : str, optional
            Both required to export the result tables to Excel

        Returns
        -------
        dict
            effect, estimand, std_error, ci_lower, ci_upper, p_value,
            significant, alpha, cohens_d, mean_treatment, mean_control,
            coefficients_df, outcome_model, ps_model, balance_df,
            weight_diagnostics, ps_overlap_fig, weight_dist_fig, weighted_df

        Raises
        ------
        ValueError
            If data preparation, model fitting, or validation fails
        """
        estimand = estimand.upper()
        if estimand not in ["ATE", "ATT"]:
            raise ValueError(f"estimand must be 'ATE' or 'ATT', got '{estimand}'")

        # ------------------------------------------------------------------
        # Step 0: Data prep
        # ------------------------------------------------------------------
        covariates_raw = list(categorical_vars) + list(binary_vars) + list(continuous_vars)
        needed = [outcome_var, treatment_var] + covariates_raw
        if cluster_var:
            needed.append(cluster_var)
        if propensity_col:
            needed.append(propensity_col)
        df = drop_missing_rows(data, list(dict.fromkeys(needed)), verbose=verbose)[
            list(dict.fromkeys(needed))]

        if df[treatment_var].nunique() < 2:
            raise ValueError(f"Only one treatment group present in data: {df[treatment_var].unique()}")
        treatment_counts = df[treatment_var].value_counts()
        if treatment_counts.min() < 5:
            raise ValueError(f"Insufficient observations in treatment groups. Counts: {treatment_counts.to_dict()}")

        cols_before_dummies = set(df.columns)
        df = pd.get_dummies(df, columns=list(categorical_vars), drop_first=True, dtype=float)
        dummy_columns = sorted(set(df.columns) - cols_before_dummies)

        rename_map = {c: self._clean_column_name(c) for c in df.columns}
        df.rename(columns=rename_map, inplace=True)
        dummy_columns = [self._clean_column_name(c) for c in dummy_columns]
        balance_vars = (
            [self._clean_column_name(v) for v in continuous_vars]
            + [self._clean_column_name(v) for v in binary_vars]
            + dummy_columns
        )

        # Constant covariates cannot enter either model
        constant_vars = [v for v in balance_vars if df[v].nunique() <= 1]
        if constant_vars:
            if verbose:
                print(f"  Warning: Removing constant variables: {constant_vars}")
            balance_vars = [v for v in balance_vars if v not in constant_vars]
        if not balance_vars:
            raise ValueError("No valid covariates remaining after removing constant variables")

        # ------------------------------------------------------------------
        # Step 1: Propensity scores and weights
        # ------------------------------------------------------------------
        df, ps_model = self.estimate_propensity_weights(
            df,
            treatment_var,
            balance_vars,
            estimand=estimand,
            method=propensity_method,
            cluster_var=cluster_var,
            propensity_col=self._clean_column_name(propensity_col) if propensity_col else None,
            stabilize=stabilize,
            trim_quantile=trim_quantile,
            weight_col=self.weight_col,
            gbm_params=gbm_params,
            verbose=verbose,
        )

        ps_vals = df["propensity_score"]
        n_near_zero = int((ps_vals < 0.01).sum())
        n_near_one = int((ps_vals > 0.99).sum())
        if verbose and (n_near_zero > 0 or n_near_one > 0):
            print(f"  Warning: Positivity concern: {n_near_zero} observations with PS < 0.01, "
                  f"{n_near_one} with PS > 0.99")

        ps_overlap_fig = None
        if plot_propensity:
            ps_overlap_fig = self.plot_propensity_overlap(
                data=df,
                treatment_var=treatment_var,
                title=f"Propensity Score Overlap — {outcome_var} ({estimand})",
                show=show_plots,
            )

        # ------------------------------------------------------------------
        # Step 2: Weight diagnostics and balance
        # ------------------------------------------------------------------
        weight_stats = self.compute_weight_diagnostics(df, self.weight_col, treatment_var)

        weight_dist_fig = None
        if plot_weights:
            weight_dist_fig = self.plot_weight_distribution(
                data=df,
                treatment_var=treatment_var,
                weight_col=self.weight_col,
                estimand=estimand,
                title=f"IPTW Weight Distribution — {outcome_var} ({estimand})",
                show=show_plots,
            )

        balance_df = CausalDiagnostics().compute_balance_df(
            data=df,
            controls=balance_vars,
            treatment=treatment_var,
            weights=df[self.weight_col],
        )

        # ------------------------------------------------------------------
        # Step 3: Weighted outcome model
        # ------------------------------------------------------------------
        outcome_res = self.fit_weighted_outcome_model(
            df,
            outcome_var,
            treatment_var,
            weight_col=self.weight_col,
            covariates=balance_vars if adjust_covariates else None,
            cluster_var=cluster_var,
        )

        effect = outcome_res.params[treatment_var]
        ci = outcome_res.conf_int(alpha=alpha).loc[treatment_var]
        p_value = outcome_res.pvalues[treatment_var]

        treated_df = df[df[treatment_var] == 1]
        control_df = df[df[treatment_var] == 0]
        mean_treatment = np.average(treated_df[outcome_var], weights=treated_df[self.weight_col])
        mean_control = np.average(control_df[outcome_var], weights=control_df[self.weight_col])
        var_treated = np.average(
            (treated_df[outcome_var] - mean_treatment) ** 2, weights=treated_df[self.weight_col]
        )
        var_control = np.average(
            (control_df[outcome_var] - mean_control) ** 2, weights=control_df[self.weight_col]
        )
        pooled_sd = np.sqrt((var_treated + var_control) / 2)
        if pooled_sd <= 0:
            raise ValueError(f"Outcome '{outcome_var}' has zero weighted variance")
        cohens_d = (mean_treatment - mean_control) / pooled_sd

        all_ci = outcome_res.conf_int(alpha=alpha)
        coefficients_df = pd.DataFrame({
            'Parameter': outcome_res.params.index,
            'Estimate': outcome_res.params.values,
            'Std_Error': outcome_res.bse.values,
            'CI_Lower': all_ci.iloc[:, 0].values,
            'CI_Upper': all_ci.iloc[:, 1].values,
            'P_Value': outcome_res.pvalues.values,
        })

        if verbose:
            ci_pct = int((1 - alpha) * 100)
            se_label = f"cluster-robust by {cluster_var}" if cluster_var else "HC1 robust"
            print(
                f"  [{outcome_var}] {estimand} = {effect:.4f} "
                f"({ci_pct}% CI: [{ci.iloc[0]:.4f}, {ci.iloc[1]:.4f}]), "
                f"p = {p_value:.4f} {significance_stars(p_value)}, "
                f"SE {se_label}, ESS = {weight_stats['effective_sample_size']:.1f}"
            )

        # ------------------------------------------------------------------
        # Step 4: Export (optional)
        # ------------------------------------------------------------------
        if project_path and analysis_name:
            tables = {
                "Covariate_Balance": balance_df.reset_index().rename(columns={"index": "variable"}),
                "Weight_Diagnostics": pd.DataFrame([weight_stats]),
                f"{estimand}_Outcome_Model": coefficients_df,
            }
            if isinstance(ps_model, GBMPropensityResult):
                tables["GBM_Relative_Influence"] = ps_model.relative_influence.reset_index().rename(
                    columns={"index": "variable"})
            export_tables_to_excel(
                tables,
                f"{project_path}/{estimand.lower()}_iptw_{analysis_name}.xlsx",
                title=f"{outcome_var} ({estimand})",
                verbose=verbose,
            )

        return {
            "effect": effect,
            "estimand": estimand,
            "std_error": outcome_res.bse[treatment_var],
            "ci_lower": ci.iloc[0],
            "ci_upper": ci.iloc[1],
            "p_value": p_value,
            "significant": p_value < alpha,
            "alpha": alpha,
            "cohens_d": cohens_d,
            "mean_treatment": mean_treatment,
            "mean_control": mean_control,
            "coefficients_df": coefficients_df,
            "outcome_model": outcome_res,
            "ps_model": ps_model,
            "balance_df": balance_df,
            "weight_diagnostics": weight_stats,
            "ps_overlap_fig": ps_overlap_fig,
            "weight_dist_fig": weight_dist_fig,
            "weighted_df": df,
        }

    @staticmethod
    def build_summary_table(results_dict: Dict[str, Dict]) -> pd.DataFrame:
        """One row per analysis from ``analyze_treatment_effect`` results."""
        rows = []
        for name, res in results_dict.items():
            rows.append({
                "Analysis": name,
                "Estimand": res["estimand"],
                "Effect": res["effect"],
                "Std_Error": res["std_error"],
                "CI_Lower": res["ci_lower"],
                "CI_Upper": res["ci_upper"],
                "P_Value": res["p_value"],
                "Significance": significance_stars(res["p_value"]),
                "ESS": res["weight_diagnostics"]["effective_sample_size"],
            })
        return pd.DataFrame(rows)

    # ==================================================================
    # Helper methods
    # ==================================================================

    @staticmethod
    def _clean_column_name(name: str) -> str:
        """Sanitise a column name for use in statsmodels formulas."""
        semantic = {'&': 'and', '+': 'plus', '%': 'pct', '$': 'dollar',
                    '@': 'at', '<': 'lt', '>': 'gt', '=': 'eq'}
        for char, repl in semantic.items():
            name = name.replace(char, repl)
        name = re.sub(r'[^a-zA-Z0-9_]', '_', str(name))
        name = re.sub(r'_+', '_', name).strip('_')
        return name
