"""
Covariance-Structure Estimator (ML-CFA)
=======================================

Maximum-likelihood confirmatory factor analysis of the one-factor model
with a mean structure. The factor variance is fixed by the identification
anchor (std.lv-style), so all loadings, intercepts and residual variances
are free: 3M parameters against M(M+3)/2 observed moments.

Estimation minimizes F_ML (see models.covariance_structure) with a
pluggable quasi-Newton optimizer from method-of-moments starting values.

Usage:
    from cfa_mem.estimation.ml_cfa import fit_ml_cfa

    result = fit_ml_cfa(dataset)
    print(result.summary())
    print(result.fit_indices.rmsea, result.fit_indices.rmsea_ci)
"""

from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np
import pandas as pd

from ..config import IdentificationAnchor
from ..constants import (
    ML_TOLERANCE,
    ML_MAX_ITERATIONS,
    ML_GRADIENT_TOLERANCE,
    HESSIAN_STEP,
)
from ..exceptions import ConvergenceFailure
from ..models.covariance_structure import (
    OneFactorStructure,
    baseline_degrees_of_freedom,
    implied_covariance,
)
from ..simulation.one_factor_simulator import Dataset
from ..utils.budget import Deadline
from ..utils.logging_config import EstimationLogger
from .fit_indices import FitIndices, compute_fit_indices
from .optimizers import BFGSOptimizer, Optimizer, get_optimizer


# =============================================================================
# RESULT CONTAINER
# =============================================================================

@dataclass
class MLFitResult:
    """Container for ML-CFA estimation results."""
    loadings: np.ndarray
    intercepts: np.ndarray
    residual_variances: np.ndarray
    factor_variance: float
    log_likelihood: float
    fit_indices: FitIndices

    # Standard errors, same order as the estimates
    loadings_se: np.ndarray = None
    intercepts_se: np.ndarray = None
    residual_variances_se: np.ndarray = None

    factor_scores: np.ndarray = None
    implied_covariance: np.ndarray = None
    discrepancy: float = 0.0
    n_subjects: int = 0
    n_iterations: int = 0
    converged: bool = False
    gradient_norm: float = np.nan
    optimizer: str = ""
    anchor: IdentificationAnchor = field(default_factory=IdentificationAnchor)

    @property
    def n_items(self) -> int:
        return len(self.loadings)

    @property
    def degrees_of_freedom(self) -> int:
        return self.fit_indices.degrees_of_freedom

    @property
    def n_parameters(self) -> int:
        return 3 * self.n_items

    def standardized_loadings(self) -> np.ndarray:
        """Loadings scaled to unit item variance."""
        total = self.factor_variance * self.loadings ** 2 + self.residual_variances
        return self.loadings * np.sqrt(self.factor_variance) / np.sqrt(total)

    def summary(self) -> str:
        """Generate summary string."""
        fi = self.fit_indices
        lines = [
            "=" * 60,
            "One-Factor ML-CFA Results",
            "=" * 60,
            f"Log-likelihood: {self.log_likelihood:.4f}",
            f"N subjects: {self.n_subjects} | N items: {self.n_items}",
            f"N parameters: {self.n_parameters} (factor variance fixed at {self.factor_variance:g})",
            f"Converged: {self.converged} ({self.n_iterations} iterations, |grad| = {self.gradient_norm:.2e})",
            "",
            "Fit Indices:",
            "-" * 40,
            f"  Chi-square:  {fi.chi_square:.3f} (df = {fi.degrees_of_freedom}, p = {fi.p_value:.4f})",
            f"  RMSEA:       {fi.rmsea:.4f} [{fi.rmsea_ci_lower:.4f}, {fi.rmsea_ci_upper:.4f}]",
            f"  CFI / TLI:   {fi.cfi:.4f} / {fi.tli:.4f}",
            f"  SRMR:        {fi.srmr:.4f}",
            f"  AIC / BIC:   {fi.aic:.2f} / {fi.bic:.2f}",
            "",
            "Item Parameters:",
            "-" * 40,
            f"  {'item':>4s} {'loading':>9s} {'(SE)':>8s} {'intercept':>10s} {'(SE)':>8s} {'resid.var':>10s} {'(SE)':>8s}",
        ]

        for i in range(self.n_items):
            lines.append(
                f"  {i:4d} {self.loadings[i]:9.4f} {self.loadings_se[i]:8.4f} "
                f"{self.intercepts[i]:10.4f} {self.intercepts_se[i]:8.4f} "
                f"{self.residual_variances[i]:10.4f} {self.residual_variances_se[i]:8.4f}"
            )

        lines.append("=" * 60)
        return "\n".join(lines)

    def to_dataframe(self) -> pd.DataFrame:
        """Convert estimates to a long DataFrame (one row per parameter)."""
        records = []
        blocks = [
            ('loading', self.loadings, self.loadings_se),
            ('intercept', self.intercepts, self.intercepts_se),
            ('residual_variance', self.residual_variances, self.residual_variances_se),
        ]
        for kind, values, ses in blocks:
            for i, value in enumerate(values):
                se = ses[i] if ses is not None else np.nan
                records.append({
                    'type': kind,
                    'item': i,
                    'estimate': value,
                    'se': se,
                    'z': value / se if se and se > 0 else np.nan,
                })
        return pd.DataFrame(records)


# =============================================================================
# ESTIMATION
# =============================================================================

def factor_scores(values: np.ndarray, intercepts: np.ndarray, loadings: np.ndarray,
                  residual_variances: np.ndarray, factor_variance: float) -> np.ndarray:
    """Regression (Thurstone) factor scores phi * lambda' Sigma^-1 (y - mu)."""
    sigma = implied_covariance(loadings, residual_variances, factor_variance)
    weights = factor_variance * np.linalg.solve(sigma, loadings)
    return (values - intercepts[None, :]) @ weights


def fit_ml_cfa(dataset: Dataset,
               tolerance: float = ML_TOLERANCE,
               max_iterations: int = ML_MAX_ITERATIONS,
               optimizer: Optional[Union[Optimizer, str]] = None,
               anchor: Optional[IdentificationAnchor] = None,
               deadline: Optional[Union[Deadline, float]] = None,
               gradient_tolerance: float = ML_GRADIENT_TOLERANCE,
               verbose: bool = False) -> MLFitResult:
    """
    Fit the one-factor model by maximum likelihood.

    Args:
        dataset: Observed responses
        tolerance: Relative change in F_ML accepted as convergence
        max_iterations: Optimizer iteration budget
        optimizer: Optimizer instance or name ('bfgs', 'scipy'); BFGS by default
        anchor: Identification anchor fixing the factor variance
        deadline: Deadline or budget in seconds, checked between iterations
        gradient_tolerance: Gradient norm accepted when the budget runs out
        verbose: Print progress

    Returns:
        MLFitResult

    Raises:
        UnderidentifiedModel: if df < 0
        SingularCovariance: if the sample covariance is not positive definite
        ConvergenceFailure: if the budget runs out with a large gradient
        BudgetExceeded: if the deadline passes between iterations
    """
    anchor = anchor or IdentificationAnchor()
    deadline = Deadline.coerce(deadline)
    if optimizer is None:
        optimizer = BFGSOptimizer()
    elif isinstance(optimizer, str):
        optimizer = get_optimizer(optimizer)

    log = EstimationLogger("ml_cfa", verbose=verbose)
    log.start(n_subjects=dataset.n_subjects, n_items=dataset.n_items, optimizer=optimizer.name)

    structure = OneFactorStructure.from_dataset(dataset, anchor.factor_variance)
    x0 = structure.start_values()

    def on_iteration(iteration, x, value, gradient_norm):
        log.iteration(iteration, value, grad=gradient_norm)
        if deadline is not None:
            deadline.check(last_estimate=structure.natural(x), last_value=value,
                           iteration=iteration)

    outcome = optimizer.minimize(
        structure.value_and_gradient, x0,
        tolerance=tolerance,
        max_iterations=max_iterations,
        callback=on_iteration,
    )

    if not outcome.converged and not (np.isfinite(outcome.fun)
                                      and outcome.gradient_norm <= gradient_tolerance):
        log.failed(outcome.message)
        raise ConvergenceFailure(
            f"ML-CFA did not converge: {outcome.message}",
            last_estimate=structure.natural(outcome.x),
            last_value=outcome.fun,
            iteration=outcome.n_iterations,
            gradient_norm=outcome.gradient_norm,
        )

    intercepts, loadings, residual_variances = structure.unpack(outcome.x)
    intercepts = intercepts.copy()
    loadings = loadings.copy()

    discrepancy = outcome.fun
    log_likelihood = structure.log_likelihood(discrepancy)
    sigma = implied_covariance(loadings, residual_variances, anchor.factor_variance)

    indices = compute_fit_indices(
        discrepancy=discrepancy,
        baseline_discrepancy=structure.baseline_discrepancy(),
        df=structure.df,
        baseline_df=baseline_degrees_of_freedom(structure.n_items),
        n_subjects=structure.n_subjects,
        n_free=structure.n_free,
        log_likelihood=log_likelihood,
        sample_covariance=structure.S,
        implied=sigma,
    )

    m = structure.n_items
    se = structure.standard_errors(outcome.x, HESSIAN_STEP)

    log.converged(discrepancy, outcome.n_iterations, structure.n_free,
                  aic=indices.aic, bic=indices.bic)

    return MLFitResult(
        loadings=loadings,
        intercepts=intercepts,
        residual_variances=residual_variances,
        factor_variance=anchor.factor_variance,
        log_likelihood=log_likelihood,
        fit_indices=indices,
        intercepts_se=se[:m],
        loadings_se=se[m:2 * m],
        residual_variances_se=se[2 * m:],
        factor_scores=factor_scores(dataset.values, intercepts, loadings,
                                    residual_variances, anchor.factor_variance),
        implied_covariance=sigma,
        discrepancy=discrepancy,
        n_subjects=structure.n_subjects,
        n_iterations=outcome.n_iterations,
        converged=outcome.converged or outcome.gradient_norm <= gradient_tolerance,
        gradient_norm=outcome.gradient_norm,
        optimizer=optimizer.name,
        anchor=anchor,
    )
