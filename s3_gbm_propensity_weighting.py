"""
GBM Propensity Scores and Inverse Probability Weighting
=========================================================

Chapter script: effect of AFDC use (kuse) on letter-word identification
(lwss97), reading the weighting-chapter extract written by s1_generate_data.py.

1. Generalized boosted model of kuse on the covariates (3000 trees,
   80% training rows, interaction depth 4, shrinkage 0.01, bag fraction 0.5)
2. Overlap histogram and box plot of the estimated scores
3. ATE and ATT weights, weighted outcome regressions with standard errors
   clustered by caregiver (siblings share pcgid)
4. Regression-based balance checks and love plots for both weightings
5. The same ATT analysis with the precomputed logistic score ``ps``
6. Excel export
"""

from pathlib import Path

import pandas as pd

from psa_functions.causal_diagnostics import CausalDiagnostics
from psa_functions.data_loading import CDS_WEIGHTING, SEED, load_analysis_data
from psa_functions.propensity_modelling import DEFAULT_GBM_PARAMS, PropensityWeightingModel
from psa_functions.reporting import export_tables_to_excel, print_table

# ============================================================================
# SECTION 1: SETUP
# ============================================================================

DATA_PATH = Path("./data/cds_lwss97.dta")
OUTPUT_DIR = Path("./output")
EXCEL_PATH = OUTPUT_DIR / "s3_gbm_propensity_weighting.xlsx"

OUTCOME = CDS_WEIGHTING.outcome
TREATMENT = CDS_WEIGHTING.treatment
CLUSTER = CDS_WEIGHTING.cluster
COVARIATES = list(CDS_WEIGHTING.covariates)
CATEGORICAL = list(CDS_WEIGHTING.categorical)
BINARY = ["male", "black"]
CONTINUOUS = ["age97", "pcged97", "mratio96"]

print("=" * 80)
print("GBM PROPENSITY SCORES AND IPTW - lwss97")
print("=" * 80)
print(f"\nGBM settings: {DEFAULT_GBM_PARAMS}")

df = load_analysis_data(DATA_PATH, CDS_WEIGHTING)
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

model = PropensityWeightingModel(seed=SEED)
diagnostics = CausalDiagnostics()

# ============================================================================
# SECTION 2: GBM PROPENSITY MODEL
# ============================================================================

print("\n" + "=" * 80)
print("GENERALIZED BOOSTED PROPENSITY MODEL")
print("=" * 80)

gbm = model.estimate_gbm_propensity_scores(
    df, TREATMENT, COVARIATES, categorical_vars=CATEGORICAL, **DEFAULT_GBM_PARAMS
)
if not gbm.converged:
    print("  Warning: best iteration is the last tree; consider more trees")

print("\nRelative influence (%):")
print(gbm.relative_influence.round(2).to_string())

df["ps_gbm"] = gbm.propensity_scores
print(f"\nEstimated scores: min {df['ps_gbm'].min():.4f}, max {df['ps_gbm'].max():.4f}")

fig = diagnostics.plot_propensity_overlap(df, TREATMENT, df["ps_gbm"],
                                          title="GBM Propensity Score Overlap", show=False)
fig.savefig(OUTPUT_DIR / "s3_ps_overlap.png", dpi=150, bbox_inches="tight")
fig = diagnostics.plot_propensity_boxplot(df, TREATMENT, df["ps_gbm"], show=False)
fig.savefig(OUTPUT_DIR / "s3_ps_boxplot.png", dpi=150, bbox_inches="tight")

# ============================================================================
# SECTION 3: ATE AND ATT WEIGHTING
# ============================================================================

results = {}
balance_tables = {}
for estimand in ["ATE", "ATT"]:
    print("\n" + "=" * 80)
    print(f"IPTW ANALYSIS: {estimand}")
    print("=" * 80)

    res = model.analyze_treatment_effect(
        data=df,
        outcome_var=OUTCOME,
        treatment_var=TREATMENT,
        categorical_vars=CATEGORICAL,
        binary_vars=BINARY,
        continuous_vars=CONTINUOUS,
        cluster_var=CLUSTER,
        estimand=estimand,
        propensity_method="gbm",
        plot_propensity=False,
        show_plots=False,
    )
    res["weight_dist_fig"].savefig(OUTPUT_DIR / f"s3_weights_{estimand.lower()}.png",
                                   dpi=150, bbox_inches="tight")
    results[f"GBM_{estimand}"] = res

    weighted = res["weighted_df"]
    reg_balance = diagnostics.check_weighted_balance(
        weighted.assign(pcg_adc=df.loc[weighted.index, "pcg_adc"]),
        TREATMENT,
        weighted[model.weight_col],
        categorical_vars=CATEGORICAL,
        continuous_vars=BINARY + CONTINUOUS,
        cluster_var=CLUSTER,
    )
    print_table(reg_balance, f"REGRESSION BALANCE CHECKS ({estimand} weights)")
    balance_tables[estimand] = reg_balance

    fig = diagnostics.love_plot(res["balance_df"], title=f"Covariate Balance: GBM {estimand} Weights",
                                show=False)
    fig.savefig(OUTPUT_DIR / f"s3_love_plot_{estimand.lower()}.png", dpi=150, bbox_inches="tight")

# ============================================================================
# SECTION 4: PRECOMPUTED LOGISTIC PROPENSITY SCORE
# ============================================================================

if CDS_WEIGHTING.propensity in df.columns:
    print("\n" + "=" * 80)
    print("IPTW ANALYSIS: ATT with precomputed logistic score")
    print("=" * 80)
    results["Logit_ATT"] = model.analyze_treatment_effect(
        data=df,
        outcome_var=OUTCOME,
        treatment_var=TREATMENT,
        categorical_vars=CATEGORICAL,
        binary_vars=BINARY,
        continuous_vars=CONTINUOUS,
        cluster_var=CLUSTER,
        estimand="ATT",
        propensity_col=CDS_WEIGHTING.propensity,
        plot_propensity=False,
        plot_weights=False,
    )
else:
    print(f"\n  Warning: column '{CDS_WEIGHTING.propensity}' not in data; skipping logistic comparison")

# ============================================================================
# SECTION 5: SUMMARY AND EXPORT
# ============================================================================

summary = PropensityWeightingModel.build_summary_table(results)
print_table(summary, f"WEIGHTED OUTCOME MODELS: {OUTCOME} ~ {TREATMENT} + covariates")

tables = {
    "Summary": summary,
    "GBM_Relative_Influence": gbm.relative_influence.reset_index().rename(columns={"index": "variable"}),
}
for name, res in results.items():
    tables[f"{name}_Coefficients"] = res["coefficients_df"]
    tables[f"{name}_Balance"] = res["balance_df"].reset_index().rename(columns={"index": "variable"})
for estimand, table in balance_tables.items():
    tables[f"GBM_{estimand}_Reg_Balance"] = table
tables["Weight_Diagnostics"] = pd.DataFrame(
    [{"Analysis": name, **res["weight_diagnostics"]} for name, res in results.items()]
)

export_tables_to_excel(tables, EXCEL_PATH, title=f"{OUTCOME} propensity weighting")

print(f"\n[DONE] Results saved to: {EXCEL_PATH}")
