"""
CausalDiagnostics — covariate balance checks and propensity-score plots.

Usage:
    from psa_functions.causal_diagnostics import CausalDiagnostics
    cd = CausalDiagnostics()
    cd.help()
"""

import warnings

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import statsmodels.formula.api as smf
from statsmodels.genmod import families
from statsmodels.tools.sm_exceptions import PerfectSeparationError, PerfectSeparationWarning


class CausalDiagnostics:
    """
    Balance diagnostics for matching and propensity-score weighting.

    Organised into three method groups:

    A) Standardized Mean Differences
       - standardized_mean_difference()
       - smd_table()
       - compute_balance_df()

    B) Regression-Based Balance Checks
       - check_weighted_balance()

    C) Visualisation
       - plot_propensity_overlap()
       - plot_propensity_boxplot()
       - love_plot()

    D) Help
       - help()
    """

    def __init__(self):
        self.balance_thresholds = {
            'smd': 0.1,
            'smd_moderate': 0.25,
            'smd_severe': 0.5,
        }

    @staticmethod
    def _validate_binary_treatment(data, treatment_var):
        """Validate treatment is strictly binary (0/1) and return clean integer series."""
        if treatment_var not in data.columns:
            raise ValueError(f"Treatment variable '{treatment_var}' not found in data.")

        treatment = data[treatment_var]
        if treatment.isna().any():
            raise ValueError(
                f"Treatment variable '{treatment_var}' contains missing values. "
                "Please drop missing treatment values before diagnostics."
            )

        unique_vals = set(pd.Series(treatment).unique().tolist())
        if unique_vals != {0, 1}:
            raise ValueError(
                f"Treatment variable '{treatment_var}' must be strictly coded as 0/1 "
                f"with both groups present. Found values: {sorted(unique_vals)}"
            )

        return treatment.astype(int)

    @staticmethod
    def _safe_weighted_stats(values, weights, label="group"):
        """
        Weighted mean/variance over rows with finite values and non-negative weights.

        Raises ValueError when no such row carries positive weight.
        """
        mask = np.isfinite(values) & np.isfinite(weights) & (weights >= 0)
        if mask.sum() == 0 or weights[mask].sum() <= 0:
            raise ValueError(
                f"Weights sum to zero for {label} ({int(mask.sum())} usable rows); "
                "weighted mean is undefined"
            )

        vals = values[mask]
        w = weights[mask]
        w_mean = np.average(vals, weights=w)
        w_var = np.average((vals - w_mean) ** 2, weights=w)
        return float(w_mean), float(w_var)

    @staticmethod
    def _smd_denominator(treated_vals, control_vals, denominator, variable):
        """Standard deviation used to scale a mean difference; zero is an error."""
        if denominator == 'pooled':
            sd = np.sqrt((treated_vals.var(ddof=1) + control_vals.var(ddof=1)) / 2)
        elif denominator == 'treated':
            sd = treated_vals.std(ddof=1)
        else:
            raise ValueError(f"denominator must be 'pooled' or 'treated', got '{denominator}'")
        if not np.isfinite(sd) or sd <= 0:
            raise ValueError(
                f"Standardized difference undefined for '{variable}': "
                f"{denominator} standard deviation is zero"
            )
        return float(sd)

    # ============================================================================
    # GROUP A — STANDARDIZED MEAN DIFFERENCES
    # ============================================================================

    def standardized_mean_difference(self, data, variable, treatment_var,
                                     denominator='pooled'):
        """
        Absolute standardized mean difference on the unadjusted sample.

        SMD = |mean_treated - mean_control| / sd, where sd is the pooled
        standard deviation sqrt((s_t^2 + s_c^2) / 2) or the treated-group
        standard deviation.

        Raises
        ------
        ValueError
            If the variable is missing or the chosen standard deviation is zero.
        """
        T = self._validate_binary_treatment(data, treatment_var)
        if variable not in data.columns:
            raise ValueError(f"Variable '{variable}' not found in data")

        values = data[variable].astype(float)
        treated_vals = values[T == 1].dropna()
        control_vals = values[T == 0].dropna()
        if len(treated_vals) < 2 or len(control_vals) < 2:
            raise ValueError(f"Too few observed values to compute SMD for '{variable}'")

        sd = self._smd_denominator(treated_vals, control_vals, denominator, variable)
        return abs(treated_vals.mean() - control_vals.mean()) / sd

    def smd_table(self, data, covariates, treatment_var, denominator='pooled',
                  threshold=None):
        """
        Standardized mean differences for several covariates.

        Returns
        -------
        pd.DataFrame with columns: variable, mean_treated, mean_control, sd,
        smd, balanced.
        """
        threshold = self.balance_thresholds['smd'] if threshold is None else threshold
        T = self._validate_binary_treatment(data, treatment_var)

        rows = []
        for var in covariates:
            smd = self.standardized_mean_difference(data, var, treatment_var, denominator)
            treated_vals = data.loc[T == 1, var].dropna().astype(float)
            control_vals = data.loc[T == 0, var].dropna().astype(float)
            rows.append({
                'variable': var,
                'mean_treated': treated_vals.mean(),
                'mean_control': control_vals.mean(),
                'sd': self._smd_denominator(treated_vals, control_vals, denominator, var),
                'smd': smd,
                'balanced': smd < threshold,
            })
        return pd.DataFrame(rows)

    def compute_balance_df(self, data, controls, treatment, weights,
                           already_encoded=True, threshold=None):
        """
        Compute covariate balance DataFrame (unweighted vs weighted).

        Used after weighting or matching to verify that the adjustment has
        improved covariate balance between treatment groups. Both SMDs are
        scaled by the pooled standard deviation of the *unadjusted* sample, so
        a change in SMD reflects a change in the mean difference only.

        Args:
            data (pd.DataFrame): Dataset.
            controls (list): Covariate names.
            treatment (str): Binary treatment column name.
            weights (pd.Series): Adjustment weights (IPTW or matching weights).
            already_encoded (bool): If False, dummy-code the covariates first.
            threshold (float): |SMD| below which a covariate counts as balanced.

        Returns:
            pd.DataFrame indexed by covariate with columns: Unweighted Treated
            Mean, Unweighted Control Mean, Weighted Treated Mean, Weighted
            Control Mean, Unweighted SMD, Weighted SMD, Balanced Before,
            Balanced After.

        Raises:
            ValueError: If weights are negative or non-finite, or sum to zero
                within a treatment group.
        """
        threshold = self.balance_thresholds['smd'] if threshold is None else threshold
        T = self._validate_binary_treatment(data, treatment)
        if already_encoded:
            X = data[controls].copy()
        else:
            X = pd.get_dummies(data[controls], drop_first=True, dtype=float)
        weights = pd.Series(weights).reindex(data.index)

        invalid_weights = (~np.isfinite(weights)) | (weights < 0)
        if invalid_weights.any():
            raise ValueError(
                "Weights must be finite and non-negative for all rows in data index."
            )

        rows = {}
        for col in X.columns:
            treated_vals = X.loc[T == 1, col].astype(float)
            control_vals = X.loc[T == 0, col].astype(float)
            denom = self._smd_denominator(treated_vals.dropna(), control_vals.dropna(),
                                          'pooled', col)

            mean_t = treated_vals.mean()
            mean_c = control_vals.mean()
            w_mean_t, _ = self._safe_weighted_stats(
                treated_vals.to_numpy(), weights.loc[T == 1].to_numpy(dtype=float),
                f"treated units of '{col}'")
            w_mean_c, _ = self._safe_weighted_stats(
                control_vals.to_numpy(), weights.loc[T == 0].to_numpy(dtype=float),
                f"control units of '{col}'")

            smd_uw = (mean_t - mean_c) / denom
            smd_w = (w_mean_t - w_mean_c) / denom
            rows[col] = {
                'Unweighted Treated Mean': mean_t,
                'Unweighted Control Mean': mean_c,
                'Weighted Treated Mean': w_mean_t,
                'Weighted Control Mean': w_mean_c,
                'Unweighted SMD': smd_uw,
                'Weighted SMD': smd_w,
                'Balanced Before': abs(smd_uw) < threshold,
                'Balanced After': abs(smd_w) < threshold,
            }

        return pd.DataFrame.from_dict(rows, orient='index')

    # ============================================================================
    # GROUP B — REGRESSION-BASED BALANCE CHECKS
    # ============================================================================

    @staticmethod
    def _robust_cov_kwargs(df, cluster_var):
        if cluster_var:
            groups = pd.factorize(df[cluster_var])[0]
            return {'cov_type': 'cluster', 'cov_kwds': {'groups': groups}}
        return {'cov_type': 'HC1'}

    def check_weighted_balance(self, data, treatment_var, weights,
                               categorical_vars=None, continuous_vars=None,
                               cluster_var=None, probability_scale=False):
        """
        Regression checks of covariate balance after weighting.

        For each categorical covariate a weighted logistic regression of the
        treatment on the covariate's levels is fitted and odds ratios are
        reported; for each continuous covariate a weighted linear regression
        of the covariate on the treatment is fitted. Standard errors are
        cluster-robust when ``cluster_var`` is given, HC1 otherwise. Under
        good balance no coefficient should be significant.

        With ``probability_scale=True`` the logistic coefficient and its
        standard error are divided by 4, the usual approximation of the
        effect on the probability scale near p = 0.5.

        Returns
        -------
        pd.DataFrame with columns: variable, term, model, estimate, odds_ratio,
        std_error, statistic, p_value.

        Raises
        ------
        ValueError
            On perfect separation, a constant covariate, or fitting failure.
        """
        categorical_vars = list(categorical_vars or [])
        continuous_vars = list(continuous_vars or [])
        if not categorical_vars and not continuous_vars:
            raise ValueError("Provide at least one categorical or continuous covariate")

        self._validate_binary_treatment(data, treatment_var)
        w_all = pd.Series(weights).reindex(data.index)
        if ((~np.isfinite(w_all)) | (w_all < 0)).any():
            raise ValueError("Weights must be finite and non-negative for all rows in data index.")

        rows = []
        for var in categorical_vars + continuous_vars:
            if var not in data.columns:
                raise ValueError(f"Variable '{var}' not found in data")
            cols = [treatment_var, var] + ([cluster_var] if cluster_var else [])
            df = data[cols].dropna()
            w = w_all.loc[df.index]
            if df[var].nunique() <= 1:
                raise ValueError(f"No variation in predictor variable: '{var}'")

            if var in categorical_vars:
                formula = f"{treatment_var} ~ C({var})"
                try:
                    with warnings.catch_warnings():
                        warnings.simplefilter('error', PerfectSeparationWarning)
                        res = smf.glm(formula, data=df, family=families.Binomial(),
                                      var_weights=w).fit(**self._robust_cov_kwargs(df, cluster_var))
                except (PerfectSeparationError, PerfectSeparationWarning) as e:
                    raise ValueError(
                        f"Perfect separation in balance model '{formula}': {str(e)}"
                    )
                except Exception as e:
                    raise ValueError(f"Balance model fitting failed with formula '{formula}': {str(e)}")
                scale = 4.0 if probability_scale else 1.0
                for term in res.params.index.drop('Intercept'):
                    coef = res.params[term]
                    rows.append({
                        'variable': var,
                        'term': term,
                        'model': 'logit',
                        'estimate': coef / scale,
                        'odds_ratio': np.exp(coef),
                        'std_error': res.bse[term] / scale,
                        'statistic': res.tvalues[term],
                        'p_value': res.pvalues[term],
                    })
            else:
                formula = f"{var} ~ {treatment_var}"
                try:
                    res = smf.wls(formula, data=df, weights=w).fit(
                        **self._robust_cov_kwargs(df, cluster_var))
                except Exception as e:
                    raise ValueError(f"Balance model fitting failed with formula '{formula}': {str(e)}")
                rows.append({
                    'variable': var,
                    'term': treatment_var,
                    'model': 'wls',
                    'estimate': res.params[treatment_var],
                    'odds_ratio': np.nan,
                    'std_error': res.bse[treatment_var],
                    'statistic': res.tvalues[treatment_var],
                    'p_value': res.pvalues[treatment_var],
                })

        return pd.DataFrame(rows)

    # ============================================================================
    # GROUP C — VISUALISATION
    # ============================================================================

    def plot_propensity_overlap(self, data, treatment_var, propensity_scores,
                                title='Propensity Score Overlap', show=True):
        """
        Density histograms of propensity scores for treated vs control units,
        with the common-support region shaded.

        Returns
        -------
        matplotlib.figure.Figure
        """
        T = self._validate_binary_treatment(data, treatment_var).to_numpy()
        propensity_scores = np.asarray(propensity_scores, dtype=float)
        ps_treated = propensity_scores[T == 1]
        ps_control = propensity_scores[T == 0]

        fig, ax = plt.subplots(1, 1, figsize=(10, 6))

        ax.hist(ps_control, bins=50, alpha=0.5, label='Control',
                density=True, color='blue', edgecolor='black')
        ax.hist(ps_treated, bins=30, alpha=0.5, label='Treated',
                density=True, color='red', edgecolor='black')

        overlap_min = max(ps_treated.min(), ps_control.min())
        overlap_max = min(ps_treated.max(), ps_control.max())

        ax.axvline(overlap_min, color='green', linestyle='--', linewidth=2,
                   label=f'Common support: [{overlap_min:.3f}, {overlap_max:.3f}]')
        ax.axvline(overlap_max, color='green', linestyle='--', linewidth=2)
        ax.axvspan(overlap_min, overlap_max, alpha=0.1, color='green')

        ax.set_xlabel('Propensity Score', fontsize=12)
        ax.set_ylabel('Density', fontsize=12)
        ax.set_title(title, fontsize=14, fontweight='bold')
        ax.legend(fontsize=10)
        ax.grid(True, alpha=0.3)

        fig.text(
            0.5,
            0.01,
            'Interpretation: better overlap between treated and control score distributions indicates more credible causal comparison.',
            ha='center',
            va='bottom',
            fontsize=9,
            color='dimgray'
        )
        plt.tight_layout(rect=[0, 0.06, 1, 1])

        if show:
            plt.show()
        return fig

    def plot_propensity_boxplot(self, data, treatment_var, propensity_scores,
                                title='Propensity Scores by Treatment Group', show=True):
        """Side-by-side boxplots of propensity scores for control and treated units."""
        T = self._validate_binary_treatment(data, treatment_var).to_numpy()
        propensity_scores = np.asarray(propensity_scores, dtype=float)
        groups = [propensity_scores[T == 0], propensity_scores[T == 1]]

        fig, ax = plt.subplots(1, 1, figsize=(7, 6))
        bp = ax.boxplot(groups, patch_artist=True, widths=0.5)
        for patch, color in zip(bp['boxes'], ['#3498db', '#e74c3c']):
            patch.set_facecolor(color)
            patch.set_alpha(0.6)
        ax.set_xticks([1, 2], [f'Control (n={len(groups[0])})', f'Treated (n={len(groups[1])})'])
        ax.set_ylabel('Propensity Score', fontsize=12)
        ax.set_title(title, fontsize=14, fontweight='bold')
        ax.grid(axis='y', alpha=0.3)
        plt.tight_layout()

        if show:
            plt.show()
        return fig

    def love_plot(self, balance_df, threshold=None, title='Covariate Balance',
                  labels=('Unadjusted', 'Adjusted'), show=True):
        """
        Love plot of absolute standardized differences before and after adjustment.

        Args:
            balance_df (pd.DataFrame): Output of ``compute_balance_df()``.
            threshold (float): Reference line; defaults to ``balance_thresholds['smd']``.
            labels (tuple): Legend labels for the unadjusted/adjusted markers.

        Returns:
            matplotlib.figure.Figure
        """
        threshold = self.balance_thresholds['smd'] if threshold is None else threshold
        required = {'Unweighted SMD', 'Weighted SMD'}
        if not required.issubset(balance_df.columns):
            raise ValueError(f"balance_df must contain columns {sorted(required)}")

        ordered = balance_df.assign(_abs=balance_df['Unweighted SMD'].abs()).sort_values('_abs')
        y_pos = np.arange(len(ordered))

        fig, ax = plt.subplots(1, 1, figsize=(9, max(3, 0.45 * len(ordered) + 1.5)))
        ax.scatter(ordered['Unweighted SMD'].abs(), y_pos, marker='o', s=60,
                   color='#e74c3c', label=labels[0], zorder=3)
        ax.scatter(ordered['Weighted SMD'].abs(), y_pos, marker='D', s=50,
                   color='#2c3e50', label=labels[1], zorder=3)
        for y, (before, after) in enumerate(zip(ordered['Unweighted SMD'].abs(),
                                                ordered['Weighted SMD'].abs())):
            ax.plot([before, after], [y, y], color='gray', linewidth=1, alpha=0.6)

        ax.axvline(threshold, color='black', linestyle='--', linewidth=1,
                   label=f'Threshold = {threshold}')
        ax.set_yticks(y_pos, ordered.index.astype(str))
        ax.set_xlabel('Absolute Standardized Mean Difference', fontsize=12)
        ax.set_title(title, fontsize=14, fontweight='bold')
        ax.legend(fontsize=10, loc='lower right')
        ax.grid(axis='x', alpha=0.3)
        plt.tight_layout()

        if show:
            plt.show()
        return fig

    # ============================================================================
    # GROUP D — HELP
    # ============================================================================

    def help(self):
        print("=" * 80)
        print("CausalDiagnostics — method guide")
        print("=" * 80)
        print("""
A) Standardized Mean Differences
   standardized_mean_difference(data, variable, treatment_var, denominator='pooled')
       |mean_t - mean_c| / sd on the unadjusted sample ('pooled' or 'treated' sd).
   smd_table(data, covariates, treatment_var, denominator='pooled', threshold=None)
       One row per covariate, flagged balanced when SMD < threshold (default 0.1).
   compute_balance_df(data, controls, treatment, weights)
       Unweighted vs weighted means and SMDs after IPTW or matching.

B) Regression-Based Balance Checks
   check_weighted_balance(data, treatment_var, weights, categorical_vars,
                          continuous_vars, cluster_var=None, probability_scale=False)
       Weighted logit (categorical) / WLS (continuous) with robust SEs.

C) Visualisation
   plot_propensity_overlap(data, treatment_var, propensity_scores)
   plot_propensity_boxplot(data, treatment_var, propensity_scores)
   love_plot(balance_df)
""")
        print(f"Current thresholds: {self.balance_thresholds}")
