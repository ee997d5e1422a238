"""
Model-Fit Statistics
====================

Fit indices for the one-factor ML fit. The test statistic follows lavaan's
normal-likelihood convention, chi_square = N * F_ML (not N - 1).

    RMSEA = sqrt(max(0, chi2/df - 1) / (N - 1))
    CFI   = 1 - max(chi2 - df, 0) / max(chi2 - df, chi2_0 - df_0, 0)
    TLI   = (chi2_0/df_0 - chi2/df) / (chi2_0/df_0 - 1)
    SRMR  = sqrt(mean_{i<=j} ((s_ij - sigma_ij) / sqrt(s_ii s_jj))^2)

The RMSEA interval inverts the noncentral chi-square CDF in the
noncentrality parameter.
"""

from dataclasses import dataclass, asdict
from typing import Dict, Tuple

import numpy as np
from scipy import stats
from scipy.optimize import brentq

from ..constants import RMSEA_CI_LEVEL


@dataclass(frozen=True)
class FitIndices:
    """Fit statistics of one ML-CFA solution."""
    chi_square: float
    degrees_of_freedom: int
    p_value: float
    rmsea: float
    rmsea_ci_lower: float
    rmsea_ci_upper: float
    cfi: float
    tli: float
    srmr: float
    aic: float
    bic: float
    baseline_chi_square: float
    baseline_degrees_of_freedom: int

    @property
    def rmsea_ci(self) -> Tuple[float, float]:
        return (self.rmsea_ci_lower, self.rmsea_ci_upper)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def _chi2_cdf(x: float, df: int, noncentrality: float) -> float:
    if noncentrality <= 0:
        return float(stats.chi2.cdf(x, df))
    return float(stats.ncx2.cdf(x, df, noncentrality))


def _noncentrality_for(chi_square: float, df: int, probability: float) -> float:
    """Solve P(X <= chi_square; df, nc) = probability for nc >= 0."""
    if _chi2_cdf(chi_square, df, 0.0) < probability:
        return 0.0

    upper = max(chi_square, 1.0)
    while _chi2_cdf(chi_square, df, upper) > probability:
        upper *= 2.0
    return float(brentq(lambda nc: _chi2_cdf(chi_square, df, nc) - probability, 0.0, upper))


def rmsea_point(chi_square: float, df: int, n_subjects: int) -> float:
    if df <= 0:
        return 0.0
    return float(np.sqrt(max(0.0, chi_square / df - 1.0) / (n_subjects - 1)))


def rmsea_confidence_interval(chi_square: float, df: int, n_subjects: int,
                              level: float = RMSEA_CI_LEVEL) -> Tuple[float, float]:
    """
    RMSEA interval by noncentral chi-square inversion.

    Returns (0, 0) for a saturated model (df = 0).
    """
    if df <= 0:
        return 0.0, 0.0

    tail = (1.0 - level) / 2.0
    nc_lower = _noncentrality_for(chi_square, df, 1.0 - tail)
    nc_upper = _noncentrality_for(chi_square, df, tail)
    scale = df * (n_subjects - 1)
    return float(np.sqrt(nc_lower / scale)), float(np.sqrt(nc_upper / scale))


def comparative_fit_index(chi_square: float, df: int,
                          baseline_chi_square: float, baseline_df: int) -> float:
    numerator = max(chi_square - df, 0.0)
    denominator = max(chi_square - df, baseline_chi_square - baseline_df, 0.0)
    if denominator == 0:
        return 1.0
    return float(1.0 - numerator / denominator)


def tucker_lewis_index(chi_square: float, df: int,
                       baseline_chi_square: float, baseline_df: int) -> float:
    if df <= 0 or baseline_df <= 0:
        return 1.0
    baseline_ratio = baseline_chi_square / baseline_df
    if baseline_ratio == 1.0:
        return 1.0
    return float((baseline_ratio - chi_square / df) / (baseline_ratio - 1.0))


def standardized_rmr(sample_covariance: np.ndarray, implied: np.ndarray) -> float:
    sd = np.sqrt(np.diag(sample_covariance))
    standardized = (sample_covariance - implied) / np.outer(sd, sd)
    rows, cols = np.tril_indices(len(sd))
    return float(np.sqrt(np.mean(standardized[rows, cols] ** 2)))


def compute_fit_indices(discrepancy: float, baseline_discrepancy: float,
                        df: int, baseline_df: int, n_subjects: int, n_free: int,
                        log_likelihood: float, sample_covariance: np.ndarray,
                        implied: np.ndarray) -> FitIndices:
    """
    Assemble all fit statistics for one solution.

    Args:
        discrepancy: F_ML at the optimum
        baseline_discrepancy: F_ML of the independence model
        df, baseline_df: Degrees of freedom of the fitted and baseline models
        n_subjects: Sample size N
        n_free: Number of free parameters (for AIC/BIC)
        log_likelihood: Normal log-likelihood at the optimum
        sample_covariance, implied: S and Sigma(theta_hat), for SRMR
    """
    chi_square = max(n_subjects * discrepancy, 0.0)
    baseline_chi_square = n_subjects * baseline_discrepancy

    p_value = float(stats.chi2.sf(chi_square, df)) if df > 0 else 1.0
    lower, upper = rmsea_confidence_interval(chi_square, df, n_subjects)

    return FitIndices(
        chi_square=float(chi_square),
        degrees_of_freedom=int(df),
        p_value=p_value,
        rmsea=rmsea_point(chi_square, df, n_subjects),
        rmsea_ci_lower=lower,
        rmsea_ci_upper=upper,
        cfi=comparative_fit_index(chi_square, df, baseline_chi_square, baseline_df),
        tli=tucker_lewis_index(chi_square, df, baseline_chi_square, baseline_df),
        srmr=standardized_rmr(sample_covariance, implied),
        aic=float(-2.0 * log_likelihood + 2.0 * n_free),
        bic=float(-2.0 * log_likelihood + n_free * np.log(n_subjects)),
        baseline_chi_square=float(baseline_chi_square),
        baseline_degrees_of_freedom=int(baseline_df),
    )
