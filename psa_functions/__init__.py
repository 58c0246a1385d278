"""
Helper functions for the propensity score analysis tutorial.

Usage:
    from psa_functions import CausalDiagnostics, NearestNeighborMatching
    from psa_functions import PropensityWeightingModel
"""

from .causal_diagnostics import CausalDiagnostics
from .data_loading import (
    CDS_PCSS97,
    CDS_WEIGHTING,
    EXAMPLE,
    SCHEMAS,
    SEED,
    DatasetSchema,
    drop_missing_rows,
    load_analysis_data,
    validate_analysis_data,
)
from .matching_estimators import MatchingResult, NearestNeighborMatching, run_matching_analysis
from .propensity_modelling import (
    DEFAULT_GBM_PARAMS,
    GBMPropensityResult,
    PropensityWeightingModel,
    compute_iptw_weights,
)
from .regression_diagnostics import (
    breusch_pagan_table,
    breusch_pagan_test,
    compare_standard_errors,
    fit_ols,
    run_heteroskedasticity_diagnostics,
)
