"""
Nearest-neighbour matching estimators (Abadie & Imbens).

Every unit is matched to the ``n_matches`` closest units of the opposite
treatment group; the missing potential outcome is imputed by the average of
its matches (optionally regression bias-adjusted). The same match sets yield
three estimands (ATE, ATT, ATC), each with a sample (conditional) and a
population variance, which is the six-row table the matching chapter reports.

Notation used below:
    M      number of matches per unit
    K_M(i) number of times unit i is used as a match, each use weighted by
           1 / size of the match set it belongs to
    K2_M(i) the same sum with each use weighted by 1 / size squared (equals
           K_M(i) / M when there are no ties)
    sigma2 conditional outcome variance of unit i within its own group
"""

from typing import Dict, List, NamedTuple, Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.spatial.distance import cdist
from scipy.stats import norm

from .data_loading import drop_missing_rows
from .reporting import estimator_table, print_table

METRICS = ("mahalanobis", "ivar", "euclidean")
ESTIMANDS = ("ATE", "ATT", "ATC")
VARIANCE_TYPES = ("robust", "homoskedastic")

# Relative tolerance for treating two distances as tied
TIE_TOLERANCE = 1e-10
BLOCK_SIZE = 500


class MatchingResult(NamedTuple):
    estimand: str
    sample: str
    estimate: float
    std_error: float
    t_stat: float
    p_value: float
    n_obs: int
    n_matches: int


def _distance_weight_matrix(X: np.ndarray, metric: str, names: List[str]) -> np.ndarray:
    """Inverse scaling matrix for the quadratic-form distance."""
    k = X.shape[1]
    if metric == "euclidean":
        return np.eye(k)

    variances = X.var(axis=0, ddof=1)
    zero_var = [n for n, v in zip(names, variances) if not v > 0]
    if zero_var:
        raise ValueError(f"Matching covariates with zero variance: {zero_var}")
    if metric == "ivar":
        return np.diag(1.0 / variances)

    cov = np.atleast_2d(np.cov(X, rowvar=False))
    if np.linalg.matrix_rank(cov) < k:
        raise ValueError(
            "Covariance matrix of the matching covariates is singular; "
            "drop collinear covariates or use metric='ivar'"
        )
    return np.linalg.inv(cov)


def _nearest_sets(X_focal, X_pool, VI, n, ties=True, exclude=None):
    """
    Indices (into the pool) of the ``n`` nearest pool units for each focal row.

    ``exclude`` gives, per focal row, one pool position that may not be chosen
    (the unit itself when matching within a group).
    """
    available = len(X_pool) - (1 if exclude is not None else 0)
    if available < n:
        raise ValueError(
            f"Cannot find {n} matches: only {available} comparison units available"
        )

    sets, dists = [], []
    for start in range(0, len(X_focal), BLOCK_SIZE):
        block = cdist(X_focal[start:start + BLOCK_SIZE], X_pool,
                      metric="mahalanobis", VI=VI)
        if exclude is not None:
            rows = np.arange(len(block))
            block[rows, exclude[start:start + BLOCK_SIZE]] = np.inf
        for row in block:
            order = np.argsort(row, kind="mergesort")
            if ties:
                threshold = row[order[n - 1]]
                chosen = np.flatnonzero(row <= threshold + TIE_TOLERANCE * max(1.0, threshold))
                chosen = chosen[np.argsort(row[chosen], kind="mergesort")]
            else:
                chosen = order[:n]
            sets.append(chosen)
            dists.append(row[chosen])
    return sets, dists


def _sets_without_replacement(X_focal, X_pool, VI, n):
    """Greedy matching in row order; each pool unit is used at most once."""
    if n * len(X_focal) > len(X_pool):
        raise ValueError(
            f"Matching without replacement needs {n * len(X_focal)} comparison units, "
            f"only {len(X_pool)} available"
        )
    free = np.ones(len(X_pool), dtype=bool)
    sets, dists = [], []
    for x in X_focal:
        row = cdist(x[None, :], X_pool, metric="mahalanobis", VI=VI)[0]
        row[~free] = np.inf
        chosen = np.argsort(row, kind="mergesort")[:n]
        free[chosen] = False
        sets.append(chosen)
        dists.append(row[chosen])
    return sets, dists


class NearestNeighborMatching:
    """
    Abadie-Imbens nearest-neighbour matching estimator.

    Parameters
    ----------
    n_matches : int, default=4
        Number of matches M per unit.
    metric : {"mahalanobis", "ivar", "euclidean"}, default="mahalanobis"
        Distance metric. ``ivar`` scales each covariate by its inverse
        variance (a diagonal Mahalanobis metric).
    replace : bool, default=True
        Match with replacement, so a comparison unit can serve several focal
        units. Without replacement, units are matched greedily in row order
        and a group is only matched if the other group is at least M times
        its size.
    ties : bool, default=True
        Include every comparison unit tied with the M-th nearest one.
    bias_adjust : bool, default=False
        Regression-adjust imputed outcomes for remaining covariate
        differences between a unit and its matches.
    variance : {"robust", "homoskedastic"}, default="robust"
        Conditional variance estimator. ``robust`` allows heteroskedasticity
        and uses ``n_variance_matches`` same-group neighbours per unit.
    n_variance_matches : int, default=4
        Number of same-group neighbours J for the robust variance.
    verbose : bool, default=True
        Print progress notes.
    """

    def __init__(self, n_matches=4, metric="mahalanobis", replace=True, ties=True,
                 bias_adjust=False, variance="robust", n_variance_matches=4,
                 verbose=True):
        if int(n_matches) < 1:
            raise ValueError(f"n_matches must be a positive integer, got {n_matches}")
        if metric not in METRICS:
            raise ValueError(f"metric must be one of {METRICS}, got '{metric}'")
        if variance not in VARIANCE_TYPES:
            raise ValueError(f"variance must be one of {VARIANCE_TYPES}, got '{variance}'")
        if int(n_variance_matches) < 1:
            raise ValueError(
                f"n_variance_matches must be a positive integer, got {n_variance_matches}"
            )
        self.n_matches = int(n_matches)
        self.metric = metric
        self.replace = replace
        self.ties = ties
        self.bias_adjust = bias_adjust
        self.variance = variance
        self.n_variance_matches = int(n_variance_matches)
        self.verbose = verbose
        self._fitted = False

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------

    def fit(self, data: pd.DataFrame, outcome: str, treatment: str,
            covariates: List[str], bias_covariates: Optional[List[str]] = None):
        """
        Build match sets, impute potential outcomes and conditional variances.

        Parameters
        ----------
        data : pd.DataFrame
            Observation table.
        outcome, treatment : str
            Outcome and binary (0/1) treatment columns.
        covariates : list of str
            Matching covariates.
        bias_covariates : list of str, optional
            Adjustment set for the bias correction. Defaults to the
            non-binary matching covariates.

        Returns
        -------
        self
        """
        if not covariates:
            raise ValueError("At least one matching covariate is required")
        if bias_covariates is None and self.bias_adjust:
            bias_covariates = [
                c for c in covariates
                if c in data.columns and not set(data[c].dropna().unique()).issubset({0, 1})
            ]
            if not bias_covariates:
                raise ValueError(
                    "bias_adjust=True but no continuous covariates found; "
                    "pass bias_covariates explicitly"
                )
        bias_covariates = list(bias_covariates or [])

        needed = [outcome, treatment] + list(covariates)
        needed += [c for c in bias_covariates if c not in needed]
        df = drop_missing_rows(data, needed, verbose=self.verbose)

        T = df[treatment].to_numpy()
        if not set(np.unique(T).tolist()).issubset({0, 1}):
            raise ValueError(
                f"Treatment variable '{treatment}' must be strictly coded as 0/1. "
                f"Found values: {sorted(np.unique(T).tolist())}"
            )
        T = T.astype(int)
        Y = df[outcome].to_numpy(dtype=float)
        X = df[list(covariates)].to_numpy(dtype=float)

        treated = np.flatnonzero(T == 1)
        control = np.flatnonzero(T == 0)
        if len(treated) == 0 or len(control) == 0:
            raise ValueError(
                f"Both treatment groups are required; found treated={len(treated)}, "
                f"control={len(control)}"
            )

        VI = _distance_weight_matrix(X, self.metric, list(covariates))

        M = self.n_matches
        n = len(T)
        matches = [None] * n
        distances = [None] * n
        for focal, pool, label in ((treated, control, "treated"),
                                   (control, treated, "control")):
            if self.replace:
                sets, dists = _nearest_sets(X[focal], X[pool], VI, M, ties=self.ties)
            elif M * len(focal) > len(pool):
                # Without replacement only the smaller group can be matched
                if self.verbose:
                    print(f"  Warning: {label} units left unmatched: {M * len(focal)} "
                          f"comparison units needed without replacement, "
                          f"{len(pool)} available")
                continue
            else:
                sets, dists = _sets_without_replacement(X[focal], X[pool], VI, M)
            for i, s, d in zip(focal, sets, dists):
                matches[i] = pool[s]
                distances[i] = d

        if all(m is None for m in matches):
            raise ValueError(
                f"No units could be matched without replacement with M = {M}"
            )
        K = np.zeros(n)
        K_sq = np.zeros(n)
        for m in matches:
            if m is not None:
                K[m] += 1.0 / len(m)
                K_sq[m] += 1.0 / len(m) ** 2

        self.outcome = outcome
        self.treatment = treatment
        self.covariates = list(covariates)
        self.bias_covariates = bias_covariates
        self.index_ = df.index
        self.T_ = T
        self.Y_ = Y
        self.X_ = X
        self.VI_ = VI
        self.matches_ = matches
        self.distances_ = distances
        self.K_ = K
        self.K_sq_ = K_sq

        self._impute_potential_outcomes(df)
        self.sigma2_ = self._conditional_variance()
        self._fitted = True

        if self.verbose:
            n_reused = int((K > 1).sum())
            print(f"  Matched {len(treated)} treated and {len(control)} control units "
                  f"(M = {M}, metric = {self.metric}, "
                  f"{'with' if self.replace else 'without'} replacement); "
                  f"{n_reused} units with K_M > 1")
        return self

    def _bias_coefficients(self, Z, group_mask):
        """Slopes of Y on Z among the group's units that served as matches, weighted by K_M."""
        used = group_mask & (self.K_ > 0)
        n_params = Z.shape[1] + 1
        if used.sum() <= n_params:
            raise ValueError(
                "Bias-adjustment regression is singular: too few distinct matched "
                f"units ({int(used.sum())}) for {n_params - 1} adjustment covariates"
            )
        Zg = sm.add_constant(Z[used], has_constant="add")
        if np.linalg.matrix_rank(Zg) < Zg.shape[1]:
            raise ValueError(
                "Bias-adjustment regression is singular: adjustment covariates are "
                f"collinear among the {int(used.sum())} matched units"
            )
        fit = sm.WLS(self.Y_[used], Zg, weights=self.K_[used]).fit()
        return np.asarray(fit.params)[1:]

    def _impute_potential_outcomes(self, df):
        T, Y = self.T_, self.Y_
        y1 = np.where(T == 1, Y, np.nan)
        y0 = np.where(T == 0, Y, np.nan)

        Z = None
        beta = {}
        if self.bias_adjust:
            Z = df[self.bias_covariates].to_numpy(dtype=float)
            # mu_0 is needed to impute Y(0) for matched treated units, mu_1 for
            # matched controls; a direction skipped without replacement needs neither
            matched_groups = {1 - T[i] for i, m in enumerate(self.matches_) if m is not None}
            for group in sorted(matched_groups):
                beta[group] = self._bias_coefficients(Z, T == group)

        for i, m in enumerate(self.matches_):
            if m is None:
                continue
            imputed = Y[m].mean()
            if Z is not None:
                imputed += beta[1 - T[i]] @ (Z[i] - Z[m].mean(axis=0))
            if T[i] == 1:
                y0[i] = imputed
            else:
                y1[i] = imputed

        self.y1_ = y1
        self.y0_ = y0
        self.tau_ = y1 - y0
        self.bias_coefficients_ = beta

    def _conditional_variance(self):
        T, Y = self.T_, self.Y_
        if self.variance == "homoskedastic":
            tau = self.tau_[~np.isnan(self.tau_)]
            s2 = np.sum((tau - tau.mean()) ** 2) / (2 * len(tau))
            return np.full(len(Y), s2)

        J = self.n_variance_matches
        sigma2 = np.empty(len(Y))
        for group in (0, 1):
            pos = np.flatnonzero(T == group)
            if len(pos) <= J:
                raise ValueError(
                    f"Robust variance needs more than {J} units per group; "
                    f"group {group} has {len(pos)}"
                )
            sets, _ = _nearest_sets(self.X_[pos], self.X_[pos], self.VI_, J,
                                    ties=self.ties, exclude=np.arange(len(pos)))
            for i, s in zip(pos, sets):
                j = len(s)
                sigma2[i] = j / (j + 1.0) * (Y[i] - Y[pos[s]].mean()) ** 2
        return sigma2

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def _check_fitted(self):
        if not self._fitted:
            raise ValueError("Call fit() before requesting estimates")

    def estimate(self, estimand: str = "ATE", sample: bool = True) -> MatchingResult:
        """
        Point estimate and standard error for one estimand.

        Parameters
        ----------
        estimand : {"ATE", "ATT", "ATC"}
        sample : bool, default=True
            True for the sample (conditional) variance, False for the
            population variance, which adds the heterogeneity of unit-level
            effects.

        Returns
        -------
        MatchingResult
        """
        self._check_fitted()
        estimand = estimand.upper()
        if estimand not in ESTIMANDS:
            raise ValueError(f"estimand must be one of {ESTIMANDS}, got '{estimand}'")

        if not self.is_available(estimand):
            raise ValueError(
                f"{estimand} unavailable: some units needed for it were left unmatched "
                "(matching without replacement)"
            )

        M = self.n_matches
        W = self.T_.astype(float)
        K = self.K_
        K_sq = self.K_sq_
        tau = self.tau_
        s2 = self.sigma2_

        if estimand == "ATE":
            n_obs = len(W)
            est = tau.mean()
            if sample:
                var = np.sum((1 + K) ** 2 * s2) / n_obs ** 2
            else:
                var = np.sum((tau - est) ** 2
                             + (K ** 2 + 2 * K - K_sq) * s2) / n_obs ** 2
        else:
            # ATC mirrors ATT with the groups swapped
            focal = W if estimand == "ATT" else 1 - W
            n_obs = int(focal.sum())
            est = tau[focal == 1].mean()
            if sample:
                var = np.sum((focal - (1 - focal) * K) ** 2 * s2) / n_obs ** 2
            else:
                var = np.sum(np.where(focal == 1, (tau - est) ** 2, 0.0)
                             + (1 - focal) * (K ** 2 - K_sq) * s2) / n_obs ** 2

        if not np.isfinite(var) or var <= 0:
            raise ValueError(
                f"Non-positive variance estimate for {estimand} "
                f"({'sample' if sample else 'population'}): {var}"
            )
        se = float(np.sqrt(var))
        t_stat = float(est / se)
        p_value = float(2 * (1 - norm.cdf(abs(t_stat))))
        return MatchingResult(
            estimand=estimand,
            sample="sample" if sample else "population",
            estimate=float(est),
            std_error=se,
            t_stat=t_stat,
            p_value=p_value,
            n_obs=n_obs,
            n_matches=M,
        )

    def is_available(self, estimand: str) -> bool:
        """True if every unit the estimand averages over has a match set."""
        self._check_fitted()
        estimand = estimand.upper()
        if estimand == "ATT":
            units = self.T_ == 1
        elif estimand == "ATC":
            units = self.T_ == 0
        else:
            units = np.ones(len(self.T_), dtype=bool)
        return not np.isnan(self.tau_[units]).any()

    def summary_table(self) -> pd.DataFrame:
        """
        All six estimator variants (3 estimands x sample/population variance).

        Estimands that cannot be formed without replacement are left out.
        """
        self._check_fitted()
        results = [self.estimate(estimand, sample)
                   for estimand in ESTIMANDS if self.is_available(estimand)
                   for sample in (True, False)]
        return estimator_table(results)

    def match_counts(self) -> pd.Series:
        """K_M: weighted number of times each unit is used as a match."""
        self._check_fitted()
        return pd.Series(self.K_, index=self.index_, name="match_count")

    def matched_sets(self, group: str = "treated") -> pd.DataFrame:
        """Long table of match sets for treated (or control) focal units."""
        self._check_fitted()
        if group not in ("treated", "control"):
            raise ValueError(f"group must be 'treated' or 'control', got '{group}'")
        focal_value = 1 if group == "treated" else 0
        rows = []
        for i in np.flatnonzero(self.T_ == focal_value):
            m = self.matches_[i]
            if m is None:
                continue
            for rank, (j, d) in enumerate(zip(m, self.distances_[i]), start=1):
                rows.append({
                    "focal_index": self.index_[i],
                    "match_rank": rank,
                    "match_index": self.index_[j],
                    "match_weight": 1.0 / len(m),
                    "distance": float(d),
                })
        return pd.DataFrame(rows)

    def matching_weights(self, estimand: str = "ATT") -> pd.Series:
        """
        Per-unit weights implied by the match sets, for matched balance checks.

        ATT: treated 1, controls K_M. ATC: controls 1, treated K_M.
        ATE: every unit 1 + K_M.
        """
        self._check_fitted()
        estimand = estimand.upper()
        if estimand not in ESTIMANDS:
            raise ValueError(f"estimand must be one of {ESTIMANDS}, got '{estimand}'")
        W = self.T_
        if estimand == "ATT":
            w = np.where(W == 1, 1.0, self.K_)
        elif estimand == "ATC":
            w = np.where(W == 0, 1.0, self.K_)
        else:
            w = 1.0 + self.K_
        return pd.Series(w, index=self.index_, name=f"match_weight_{estimand.lower()}")


def run_matching_analysis(
    data: pd.DataFrame,
    outcome: str,
    treatment: str,
    covariates: List[str],
    bias_covariates: Optional[List[str]] = None,
    n_matches: int = 4,
    metric: str = "mahalanobis",
    bias_adjust: bool = True,
    variance: str = "robust",
    n_variance_matches: int = 4,
    replace: bool = True,
    verbose: bool = True
) -> Dict:
    """
    Fit the matching estimator and report the six estimator variants.

    Returns
    -------
    dict
        - model: fitted NearestNeighborMatching
        - table: six-row estimator table
        - match_counts: K_M per unit
    """
    matcher = NearestNeighborMatching(
        n_matches=n_matches,
        metric=metric,
        replace=replace,
        bias_adjust=bias_adjust,
        variance=variance,
        n_variance_matches=n_variance_matches,
        verbose=verbose,
    )
    matcher.fit(data, outcome, treatment, covariates, bias_covariates=bias_covariates)
    table = matcher.summary_table()

    if verbose:
        adj = f", bias-adjusted on {matcher.bias_covariates}" if bias_adjust else ""
        print_table(
            table,
            f"MATCHING ESTIMATORS: {outcome} (M = {n_matches}, {variance} variance{adj})"
        )

    return {"model": matcher, "table": table, "match_counts": matcher.match_counts()}
