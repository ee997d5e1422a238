"""
Convergence Diagnostics Module
==============================

Convergence diagnostics for both estimators.

ML-CFA:
- Gradient norm at the solution
- Hessian eigenvalue analysis of F_ML for identification
- Condition number

Bayesian-MEM (computed with ArviZ):
- Split-chain potential-scale reduction (R-hat) per parameter
- Bulk and tail effective sample size per parameter
- Divergent transitions

Thresholds are the caller's decision; the defaults below are only used
by the convenience ``ok`` properties.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import arviz as az
import numpy as np
import pandas as pd

from ..constants import HESSIAN_STEP
from ..models.covariance_structure import OneFactorStructure
from ..models.hierarchical import HYPERPARAMETER_NAMES

RHAT_THRESHOLD = 1.05
ESS_THRESHOLD = 400


# =============================================================================
# ML-CFA
# =============================================================================

@dataclass
class ConvergenceDiagnostics:
    """Container for ML convergence diagnostic results."""
    converged: bool
    iterations: int
    discrepancy: float
    gradient_norm: float
    hessian_condition_number: float
    min_eigenvalue: float
    max_eigenvalue: float
    problematic_params: List[str] = field(default_factory=list)

    GRADIENT_THRESHOLD: float = 1e-5
    CONDITION_THRESHOLD: float = 1e6
    EIGENVALUE_THRESHOLD: float = 1e-8

    @property
    def is_well_conditioned(self) -> bool:
        return self.hessian_condition_number < self.CONDITION_THRESHOLD

    @property
    def is_identified(self) -> bool:
        """No near-zero Hessian eigenvalues (no flat directions)."""
        return self.min_eigenvalue > self.EIGENVALUE_THRESHOLD

    @property
    def gradient_ok(self) -> bool:
        return self.gradient_norm < self.GRADIENT_THRESHOLD

    @property
    def ok(self) -> bool:
        return (self.converged and
                self.is_well_conditioned and
                self.is_identified and
                self.gradient_ok)

    def summary(self) -> str:
        """Generate summary string."""
        status = "PASS" if self.ok else "FAIL"
        lines = [
            f"Convergence Status: {status}",
            f"  Converged: {self.converged}",
            f"  Iterations: {self.iterations}",
            f"  Final F_ML: {self.discrepancy:.6f}",
            f"  Gradient norm: {self.gradient_norm:.2e} {'OK' if self.gradient_ok else 'HIGH'}",
            f"  Condition number: {self.hessian_condition_number:.2e} {'OK' if self.is_well_conditioned else 'HIGH'}",
            f"  Min eigenvalue: {self.min_eigenvalue:.2e} {'OK' if self.is_identified else 'NEAR-ZERO'}",
        ]
        if self.problematic_params:
            lines.append(f"  Problematic params: {', '.join(self.problematic_params)}")
        return "\n".join(lines)


class ConvergenceChecker:
    """
    Check convergence quality of an ML-CFA solution.

    Example:
        >>> checker = ConvergenceChecker()
        >>> diagnostics = checker.full_diagnostics(ml_result, dataset)
        >>> print(diagnostics.summary())
    """

    def __init__(self,
                 gradient_tol: float = 1e-5,
                 condition_tol: float = 1e6,
                 eigenvalue_tol: float = 1e-8):
        self.gradient_tol = gradient_tol
        self.condition_tol = condition_tol
        self.eigenvalue_tol = eigenvalue_tol

    def hessian(self, result, dataset) -> np.ndarray:
        """Hessian of F_ML in (mu, lambda, psi) at the solution."""
        structure = OneFactorStructure.from_dataset(dataset, result.factor_variance)
        x = structure.pack(result.intercepts, result.loadings, result.residual_variances)
        return structure.natural_hessian(x, HESSIAN_STEP)

    def check_identification(self, hessian: np.ndarray, names: List[str]) -> List[str]:
        """Parameters loading on the flattest Hessian direction, if it is flat."""
        eigenvalues, eigenvectors = np.linalg.eigh(hessian)
        if eigenvalues[0] >= self.eigenvalue_tol:
            return []
        direction = eigenvectors[:, 0]
        return [name for name, weight in zip(names, direction) if abs(weight) > 0.1]

    def full_diagnostics(self, result, dataset) -> ConvergenceDiagnostics:
        """Run all checks on an MLFitResult fitted to ``dataset``."""
        H = self.hessian(result, dataset)
        eigenvalues = np.linalg.eigvalsh(H)
        min_eigenvalue = float(eigenvalues.min())
        max_eigenvalue = float(np.abs(eigenvalues).max())
        condition = max_eigenvalue / min_eigenvalue if min_eigenvalue > 0 else np.inf

        m = result.n_items
        names = ([f'intercept[{i}]' for i in range(m)]
                 + [f'loading[{i}]' for i in range(m)]
                 + [f'residual_variance[{i}]' for i in range(m)])

        diagnostics = ConvergenceDiagnostics(
            converged=result.converged,
            iterations=result.n_iterations,
            discrepancy=result.discrepancy,
            gradient_norm=result.gradient_norm,
            hessian_condition_number=condition,
            min_eigenvalue=min_eigenvalue,
            max_eigenvalue=max_eigenvalue,
            problematic_params=self.check_identification(H, names),
        )
        diagnostics.GRADIENT_THRESHOLD = self.gradient_tol
        diagnostics.CONDITION_THRESHOLD = self.condition_tol
        diagnostics.EIGENVALUE_THRESHOLD = self.eigenvalue_tol
        return diagnostics


# =============================================================================
# BAYESIAN-MEM
# =============================================================================

@dataclass
class PosteriorDiagnostics:
    """Per-parameter R-hat / ESS table plus divergence counts."""
    table: pd.DataFrame
    divergences: Dict[int, int]
    n_chains: int

    @property
    def rhat(self) -> pd.Series:
        return self.table['rhat']

    @property
    def ess_bulk(self) -> pd.Series:
        return self.table['ess_bulk']

    @property
    def ess_tail(self) -> pd.Series:
        return self.table['ess_tail']

    @property
    def max_rhat(self) -> float:
        return float(self.table['rhat'].max())

    @property
    def min_ess_bulk(self) -> float:
        return float(self.table['ess_bulk'].min())

    @property
    def total_divergences(self) -> int:
        return int(sum(self.divergences.values()))

    def ok(self, rhat_threshold: float = RHAT_THRESHOLD,
           ess_threshold: Optional[float] = None) -> bool:
        """True when every R-hat (and optionally every bulk ESS) passes."""
        passed = self.max_rhat <= rhat_threshold
        if ess_threshold is not None:
            passed = passed and self.min_ess_bulk >= ess_threshold
        return passed

    def summary(self) -> str:
        worst = self.table['rhat'].idxmax()
        lines = [
            f"Chains: {self.n_chains}",
            f"  Max R-hat: {self.max_rhat:.4f} ({worst}) {'OK' if self.max_rhat <= RHAT_THRESHOLD else 'WARNING'}",
            f"  Min bulk ESS: {self.min_ess_bulk:.0f}",
            f"  Min tail ESS: {float(self.table['ess_tail'].min()):.0f}",
            f"  Divergences: {self.total_divergences}",
        ]
        return "\n".join(lines)


def to_dataset(result):
    """Pack retained draws into an ArviZ dataset with (chain, draw, ...) dims."""
    blocks = {
        name: result.block(name)
        for name in ['latent', 'loadings', 'intercepts', 'residual_sd'] + HYPERPARAMETER_NAMES
    }
    return az.convert_to_dataset(blocks)


def _flatten(ds) -> np.ndarray:
    """ArviZ per-variable output -> one value per layout position."""
    parts = [np.atleast_1d(ds[name].values)
             for name in ['latent', 'loadings', 'intercepts', 'residual_sd'] + HYPERPARAMETER_NAMES]
    return np.concatenate(parts)


def posterior_diagnostics(result) -> PosteriorDiagnostics:
    """
    Split R-hat and bulk/tail ESS for every sampled parameter.

    Args:
        result: SamplingResult

    Returns:
        PosteriorDiagnostics indexed by parameter name
    """
    ds = to_dataset(result)
    table = pd.DataFrame({
        'rhat': _flatten(az.rhat(ds, method="split")),
        'ess_bulk': _flatten(az.ess(ds, method="bulk")),
        'ess_tail': _flatten(az.ess(ds, method="tail")),
    }, index=pd.Index(result.parameter_names, name='parameter'))

    return PosteriorDiagnostics(
        table=table,
        divergences={c.chain_id: c.n_divergent for c in result.chains},
        n_chains=result.n_successful,
    )
