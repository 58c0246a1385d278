"""
Mock Data Generator for the Propensity Score Analysis Tutorial
================================================================

This script writes deterministic look-alikes of the Child Development
Supplement (CDS) extracts used in the tutorial chapters.

Design: observational study, children nested in primary caregivers
- Treatment: kuse = 1 if the child ever used AFDC (self-selected)
- Outcomes: pcss97 (passage comprehension), lwss97 (letter-word identification)
- Confounders: race, caregiver education, income-to-needs ratio, caregiver's
  own AFDC history; residual variance rises with age (heteroskedastic)

Outputs (./data):
- cds_pcss97.dta / .csv   matching chapter (s2)
- cds_lwss97.dta / .csv   GBM / weighting chapter (s3), with a logistic
                          propensity score column ``ps``
- example.csv             small generic worked example
- s1_descriptives.xlsx    descriptives and raw balance report
"""

from pathlib import Path

import pandas as pd
from scipy import stats

from psa_functions.causal_diagnostics import CausalDiagnostics
from psa_functions.data_loading import CDS_PCSS97, CDS_WEIGHTING, EXAMPLE, SEED, validate_analysis_data
from psa_functions.propensity_modelling import PropensityWeightingModel
from psa_functions.reporting import descriptives_by_treatment, export_tables_to_excel, significance_stars
from psa_functions.simulated_data import N_CHILDREN, TRUE_EFFECT, generate_cds_data, generate_example_data

# ============================================================================
# SECTION 1: SETUP AND CONSTANTS
# ============================================================================

DATA_DIR = Path("./data")
EXCEL_PATH = DATA_DIR / "s1_descriptives.xlsx"

print("=" * 80)
print("PROPENSITY SCORE ANALYSIS - MOCK DATA GENERATOR")
print("=" * 80)
print(f"\nSeed: {SEED}")
print(f"Children per dataset: {N_CHILDREN}")
print(f"True effect of kuse on test scores: {TRUE_EFFECT} points")

# ============================================================================
# SECTION 2: GENERATE DATASETS
# ============================================================================

print("\n" + "=" * 80)
print("GENERATING DATASETS")
print("=" * 80)

df_pcss = generate_cds_data(outcome="pcss97", seed=SEED)
# Different seed so the two chapters do not share draws
df_lwss = generate_cds_data(outcome="lwss97", seed=SEED + 1)
df_example = generate_example_data(seed=SEED)

validate_analysis_data(df_pcss, CDS_PCSS97)
validate_analysis_data(df_lwss, CDS_WEIGHTING)
validate_analysis_data(df_example, EXAMPLE)

# The weighting chapter ships a precomputed logistic propensity score
ps_scores, _ = PropensityWeightingModel(seed=SEED).estimate_logit_propensity_scores(
    df_lwss,
    CDS_WEIGHTING.treatment,
    list(CDS_WEIGHTING.covariates),
    categorical_vars=list(CDS_WEIGHTING.categorical),
)
df_lwss[CDS_WEIGHTING.propensity] = ps_scores.round(6)

for name, df in [("cds_pcss97", df_pcss), ("cds_lwss97", df_lwss), ("example", df_example)]:
    treatment = "t" if name == "example" else "kuse"
    print(f"[OK] {name}: {len(df)} rows, "
          f"{int(df[treatment].sum())} treated / {int((df[treatment] == 0).sum())} control")

print(f"     Caregivers (clusters) in cds_pcss97: {df_pcss['pcgid'].nunique()}")

# ============================================================================
# SECTION 3: VERIFICATION - COVARIATE IMBALANCE
# ============================================================================

print("\n" + "=" * 80)
print("VERIFICATION: RAW COVARIATE IMBALANCE (kuse = 1 vs 0)")
print("=" * 80)
print("\nSelection into treatment should leave several covariates imbalanced...")

diagnostics = CausalDiagnostics()
smd_pcss = diagnostics.smd_table(df_pcss, list(CDS_PCSS97.covariates), CDS_PCSS97.treatment)
print(smd_pcss.round(3).to_string(index=False))
n_imbalanced = int((~smd_pcss["balanced"]).sum())
print(f"\n  {n_imbalanced} of {len(smd_pcss)} covariates exceed |SMD| = "
      f"{diagnostics.balance_thresholds['smd']}")

# ============================================================================
# SECTION 4: VERIFICATION - NAIVE COMPARISON
# ============================================================================

print("\n" + "=" * 80)
print("NAIVE OUTCOME COMPARISON (confounded)")
print("=" * 80)

naive_rows = []
for name, df, outcome in [("cds_pcss97", df_pcss, "pcss97"), ("cds_lwss97", df_lwss, "lwss97")]:
    c1 = df[df["kuse"] == 1][outcome]
    c0 = df[df["kuse"] == 0][outcome]
    t_stat, p_value = stats.ttest_ind(c1, c0)
    print(f"\n{outcome}:")
    print(f"  kuse = 1: M = {c1.mean():.2f}, SD = {c1.std():.2f}")
    print(f"  kuse = 0: M = {c0.mean():.2f}, SD = {c0.std():.2f}")
    print(f"  Difference = {c1.mean() - c0.mean():.2f} (true effect {TRUE_EFFECT}), "
          f"t = {t_stat:.2f}, p = {p_value:.3f} {significance_stars(p_value) or 'ns'}")
    naive_rows.append({
        "Dataset": name,
        "Outcome": outcome,
        "Mean_Treated": c1.mean(),
        "Mean_Control": c0.mean(),
        "Difference": c1.mean() - c0.mean(),
        "True_Effect": TRUE_EFFECT,
        "t": t_stat,
        "P_Value": p_value,
    })

print("\nNote: residual spread grows with age97, so OLS standard errors are unreliable "
      "(see s2 Breusch-Pagan tests).")
for lo, hi in [(3, 6), (7, 9), (10, 12)]:
    band = df_pcss[(df_pcss["age97"] >= lo) & (df_pcss["age97"] <= hi)]["pcss97"]
    print(f"  age97 {lo:>2}-{hi:<2}: SD(pcss97) = {band.std():.2f}")

# ============================================================================
# SECTION 5: EXPORT DATA
# ============================================================================

print("\n" + "=" * 80)
print("EXPORTING DATA")
print("=" * 80)

DATA_DIR.mkdir(parents=True, exist_ok=True)
for name, df in [("cds_pcss97", df_pcss), ("cds_lwss97", df_lwss)]:
    df.to_csv(DATA_DIR / f"{name}.csv", index=False)
    df.to_stata(DATA_DIR / f"{name}.dta", write_index=False)
df_example.to_csv(DATA_DIR / "example.csv", index=False)

print("\n[OK] Data exported to:")
print("  - ./data/cds_pcss97.dta, ./data/cds_pcss97.csv")
print("  - ./data/cds_lwss97.dta, ./data/cds_lwss97.csv")
print("  - ./data/example.csv")

# ============================================================================
# SECTION 6: EXCEL REPORT EXPORT
# ============================================================================

print("\n" + "=" * 80)
print("GENERATING EXCEL DESCRIPTIVES REPORT")
print("=" * 80)

variables = [CDS_PCSS97.outcome] + list(CDS_PCSS97.covariates)
cluster_sizes = df_pcss.groupby("pcgid").size().value_counts().sort_index()
tables = {
    "Descriptives_pcss97": descriptives_by_treatment(df_pcss, variables, "kuse"),
    "Descriptives_lwss97": descriptives_by_treatment(
        df_lwss, [CDS_WEIGHTING.outcome] + list(CDS_WEIGHTING.covariates) + ["ps"], "kuse"),
    "Raw_Balance_SMD": smd_pcss,
    "Naive_Comparison": pd.DataFrame(naive_rows),
    "Sibling_Clusters": pd.DataFrame({
        "Children_per_Caregiver": cluster_sizes.index.astype(int),
        "Caregivers": cluster_sizes.values.astype(int),
        "% of Caregivers": (cluster_sizes.values / cluster_sizes.sum() * 100).round(1),
    }),
    "Raw_cds_pcss97": df_pcss,
}
export_tables_to_excel(tables, EXCEL_PATH, title="CDS mock data")

print(f"\n[DONE] Excel report saved to: {EXCEL_PATH}")
