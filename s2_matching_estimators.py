"""
Matching Estimators for the Effect of AFDC Use on Passage Comprehension
=========================================================================

Chapter script: reads the matching-chapter extract written by
s1_generate_data.py and runs, top to bottom,

1. OLS of pcss97 on kuse + covariates with one Breusch-Pagan test per
   covariate (is the residual variance constant?)
2. Abadie-Imbens nearest-neighbour matching (M = 4, Mahalanobis metric,
   with replacement, bias-adjusted, robust variance): SATE, PATE, SATT,
   PATT, SATC, PATC
3. The same estimators without bias adjustment, for comparison
4. Covariate balance in the matched sample (ATT matching weights)
5. Excel export of every table
"""

from pathlib import Path

import pandas as pd

from psa_functions.causal_diagnostics import CausalDiagnostics
from psa_functions.data_loading import CDS_PCSS97, load_analysis_data
from psa_functions.matching_estimators import run_matching_analysis
from psa_functions.regression_diagnostics import run_heteroskedasticity_diagnostics
from psa_functions.reporting import export_tables_to_excel, print_table

# ============================================================================
# SECTION 1: SETUP
# ============================================================================

DATA_PATH = Path("./data/cds_pcss97.dta")
OUTPUT_DIR = Path("./output")
EXCEL_PATH = OUTPUT_DIR / "s2_matching_estimators.xlsx"

N_MATCHES = 4
COVARIATES = list(CDS_PCSS97.covariates)
OUTCOME = CDS_PCSS97.outcome
TREATMENT = CDS_PCSS97.treatment

print("=" * 80)
print("MATCHING ESTIMATORS - pcss97")
print("=" * 80)

df = load_analysis_data(DATA_PATH, CDS_PCSS97)

# ============================================================================
# SECTION 2: HETEROSKEDASTICITY DIAGNOSTICS
# ============================================================================

diag = run_heteroskedasticity_diagnostics(df, OUTCOME, TREATMENT, COVARIATES)
print_table(diag["se_table"], "CLASSICAL vs HC1 STANDARD ERRORS")

# ============================================================================
# SECTION 3: BIAS-ADJUSTED MATCHING ESTIMATORS
# ============================================================================

matching = run_matching_analysis(
    df,
    OUTCOME,
    TREATMENT,
    COVARIATES,
    n_matches=N_MATCHES,
    metric="mahalanobis",
    bias_adjust=True,
    variance="robust",
)
matcher = matching["model"]

counts = matching["match_counts"]
print(f"\n  Controls used as a match: {int((counts[matcher.T_ == 0] > 0).sum())} "
      f"of {int((matcher.T_ == 0).sum())}")
print(f"  Largest K_M among controls: {counts[matcher.T_ == 0].max():.2f}")

# ============================================================================
# SECTION 4: WITHOUT BIAS ADJUSTMENT
# ============================================================================

unadjusted = run_matching_analysis(
    df,
    OUTCOME,
    TREATMENT,
    COVARIATES,
    n_matches=N_MATCHES,
    metric="mahalanobis",
    bias_adjust=False,
    variance="robust",
)

comparison = pd.DataFrame({
    "estimand": matching["table"]["estimand"],
    "sample": matching["table"]["sample"],
    "bias_adjusted": matching["table"]["estimate"].values,
    "unadjusted": unadjusted["table"]["estimate"].values,
})
comparison["difference"] = comparison["bias_adjusted"] - comparison["unadjusted"]
print_table(comparison, "BIAS ADJUSTMENT: ESTIMATES WITH AND WITHOUT")

# ============================================================================
# SECTION 5: MATCHED-SAMPLE BALANCE
# ============================================================================

print("\n" + "=" * 80)
print("COVARIATE BALANCE AFTER MATCHING (ATT weights)")
print("=" * 80)

diagnostics = CausalDiagnostics()
model_df = df.loc[matcher.index_]
balance_df = diagnostics.compute_balance_df(
    data=model_df,
    controls=COVARIATES,
    treatment=TREATMENT,
    weights=matcher.matching_weights("ATT"),
)
print(balance_df.round(3).to_string())

OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
fig = diagnostics.love_plot(balance_df, title="Covariate Balance: Nearest-Neighbour Matching (ATT)",
                            labels=("Unmatched", "Matched"), show=False)
fig.savefig(OUTPUT_DIR / "s2_love_plot.png", dpi=150, bbox_inches="tight")
print(f"\n  [OK] Love plot saved to {OUTPUT_DIR / 's2_love_plot.png'}")

# ============================================================================
# SECTION 6: EXCEL EXPORT
# ============================================================================

export_tables_to_excel(
    {
        "Breusch_Pagan": diag["bp_table"],
        "Standard_Errors": diag["se_table"],
        "Matching_Bias_Adjusted": matching["table"],
        "Matching_Unadjusted": unadjusted["table"],
        "Matched_Balance": balance_df.reset_index().rename(columns={"index": "variable"}),
        "Treated_Match_Sets": matcher.matched_sets("treated"),
    },
    EXCEL_PATH,
    title=f"{OUTCOME} matching estimators",
)

print(f"\n[DONE] Results saved to: {EXCEL_PATH}")
