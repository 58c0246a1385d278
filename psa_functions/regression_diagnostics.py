"""
Regression diagnostics run before matching.

The matching chapter first regresses the outcome on treatment and covariates
and asks, covariate by covariate, whether the residual variance changes with
that covariate (Breusch-Pagan / Cook-Weisberg test, the ``estat hettest
varname`` of the original analyses). Rejections motivate the
heteroskedasticity-robust variance used by the matching estimators.
"""

from typing import Dict, List, Union

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from statsmodels.stats.diagnostic import het_breuschpagan

from .data_loading import drop_missing_rows


def fit_ols(data: pd.DataFrame, outcome: str, regressors: List[str],
            verbose: bool = False):
    """
    Fit an ordinary least squares model of ``outcome`` on ``regressors``.

    Rows with missing values in any model column are dropped first.

    Returns
    -------
    statsmodels RegressionResults
    """
    if not regressors:
        raise ValueError("At least one regressor is required")
    df = drop_missing_rows(data, [outcome] + list(regressors), verbose=verbose)
    formula = f"{outcome} ~ " + " + ".join(regressors)
    try:
        return smf.ols(formula=formula, data=df).fit()
    except Exception as e:
        raise ValueError(f"OLS fitting failed with formula '{formula}': {str(e)}")


def breusch_pagan_test(ols_results, data: pd.DataFrame,
                       covariate: str) -> Dict[str, Union[str, int, float]]:
    """
    Breusch-Pagan test of whether squared residuals move with one covariate.

    Uses the normal-errors form of the statistic (half the explained sum of
    squares from regressing e^2 / mean(e^2) on a constant and the covariate),
    which is chi-squared with one degree of freedom under homoskedasticity.

    Parameters
    ----------
    ols_results : statsmodels RegressionResults
        Fitted model from :func:`fit_ols`.
    data : pd.DataFrame
        Table the model was fitted on (rows are aligned on the index).
    covariate : str
        Column to test against.

    Returns
    -------
    dict
        ``variable``, ``chi2``, ``df``, ``p_value``.

    Raises
    ------
    ValueError
        If the covariate is missing, constant, collinear with the intercept,
        or the statistic is not finite.
    """
    if covariate not in data.columns:
        raise ValueError(f"Variable '{covariate}' not found in data")

    resid = ols_results.resid
    z = data.loc[resid.index, covariate].astype(float)
    if z.isna().any():
        raise ValueError(f"Variable '{covariate}' has missing values in the model sample")
    if z.nunique() <= 1:
        raise ValueError(
            f"Breusch-Pagan test undefined: '{covariate}' is constant in the model sample"
        )

    exog_het = np.column_stack([np.ones(len(z)), z.to_numpy()])
    if np.linalg.matrix_rank(exog_het) < exog_het.shape[1]:
        raise ValueError(
            f"Breusch-Pagan test undefined: '{covariate}' is collinear with the constant"
        )

    lm, lm_pvalue, _, _ = het_breuschpagan(resid.to_numpy(), exog_het, robust=False)
    if not (np.isfinite(lm) and np.isfinite(lm_pvalue)):
        raise ValueError(f"Breusch-Pagan statistic for '{covariate}' is not finite")

    return {
        "variable": covariate,
        "chi2": float(lm),
        "df": exog_het.shape[1] - 1,
        "p_value": float(lm_pvalue),
    }


def breusch_pagan_table(ols_results, data: pd.DataFrame,
                        covariates: List[str]) -> pd.DataFrame:
    """One independent Breusch-Pagan test per covariate, stacked into a table."""
    rows = [breusch_pagan_test(ols_results, data, cov) for cov in covariates]
    return pd.DataFrame(rows, columns=["variable", "chi2", "df", "p_value"])


def compare_standard_errors(ols_results) -> pd.DataFrame:
    """Classical versus HC1 (Huber-White) standard errors for every coefficient."""
    robust = ols_results.get_robustcov_results(cov_type="HC1")
    return pd.DataFrame({
        "Parameter": ols_results.params.index,
        "Estimate": ols_results.params.values,
        "SE_Classical": ols_results.bse.values,
        "SE_HC1": np.asarray(robust.bse),
        "SE_Ratio": np.asarray(robust.bse) / ols_results.bse.values,
    })


def run_heteroskedasticity_diagnostics(
    data: pd.DataFrame,
    outcome: str,
    treatment: str,
    covariates: List[str],
    alpha: float = 0.05,
    verbose: bool = True
) -> Dict:
    """
    Fit OLS of outcome on treatment + covariates and test every covariate.

    Returns
    -------
    dict
        - ols: fitted OLS results
        - bp_table: one row per covariate with a ``reject`` column
        - se_table: classical vs robust standard errors
    """
    ols_results = fit_ols(data, outcome, [treatment] + list(covariates), verbose=verbose)
    model_df = data.loc[ols_results.resid.index]

    bp_table = breusch_pagan_table(ols_results, model_df, covariates)
    bp_table["reject"] = bp_table["p_value"] < alpha
    se_table = compare_standard_errors(ols_results)

    if verbose:
        print("\n" + "=" * 80)
        print(f"BREUSCH-PAGAN TESTS: {outcome} ~ {treatment} + covariates "
              f"(n = {int(ols_results.nobs)})")
        print("=" * 80)
        print(bp_table.round(4).to_string(index=False))
        n_reject = int(bp_table["reject"].sum())
        if n_reject > 0:
            print(f"\n  {n_reject} of {len(bp_table)} covariates reject "
                  f"homoskedasticity at alpha = {alpha}: "
                  f"use the robust variance estimator for matching.")
        else:
            print("\n  No covariate rejects homoskedasticity.")

    return {"ols": ols_results, "bp_table": bp_table, "se_table": se_table}
