"""
One-Factor Covariance Structure
===============================

Implied moments, ML discrepancy and analytic gradient of the one-factor
model with mean structure:

    mu    = intercepts
    Sigma = phi * lambda lambda' + diag(psi)

    F_ML = log|Sigma| + tr(S Sigma^-1) - log|S| - M + (ybar - mu)' Sigma^-1 (ybar - mu)

The factor variance phi is fixed by the identification anchor. The
optimizer works on the free vector (mu, lambda, log psi); the residual
variances are kept positive by the log transform.

Gradient (G = Sigma^-1 - Sigma^-1 (S + d d') Sigma^-1, d = ybar - mu):

    dF/dmu     = -2 Sigma^-1 d
    dF/dlambda =  2 phi G lambda
    dF/dpsi_i  =  G_ii
"""

from typing import Optional, Tuple

import numpy as np

from ..constants import MIN_IDENTIFIED_ITEMS, SINGULAR_TOLERANCE, START_RESIDUAL_SHARE
from ..exceptions import SingularCovariance, UnderidentifiedModel


# =============================================================================
# MOMENT COUNTING
# =============================================================================

def n_moments(n_items: int) -> int:
    """Observed means plus unique covariance elements, M(M+3)/2."""
    return n_items * (n_items + 3) // 2


def n_free_parameters(n_items: int) -> int:
    """M intercepts + M loadings + M residual variances."""
    return 3 * n_items


def degrees_of_freedom(n_items: int) -> int:
    return n_moments(n_items) - n_free_parameters(n_items)


def baseline_degrees_of_freedom(n_items: int) -> int:
    """Independence model: M means and M variances free."""
    return n_moments(n_items) - 2 * n_items


def implied_covariance(loadings: np.ndarray, residual_variances: np.ndarray,
                       factor_variance: float = 1.0) -> np.ndarray:
    """Sigma = phi * lambda lambda' + diag(psi)."""
    lam = np.asarray(loadings, dtype=float)
    return factor_variance * np.outer(lam, lam) + np.diag(np.asarray(residual_variances, dtype=float))


def check_positive_definite(S: np.ndarray, tolerance: float = SINGULAR_TOLERANCE) -> np.ndarray:
    """
    Reject a sample covariance whose smallest eigenvalue is not clearly positive.

    Returns:
        Eigenvalues of S in ascending order

    Raises:
        SingularCovariance: if min eigenvalue <= tolerance * max(1, max eigenvalue)
    """
    eigenvalues = np.linalg.eigvalsh(S)
    threshold = tolerance * max(1.0, float(np.abs(eigenvalues).max()))
    if eigenvalues[0] <= threshold:
        raise SingularCovariance(
            "Sample covariance matrix is not positive definite",
            min_eigenvalue=float(eigenvalues[0]),
            threshold=threshold,
        )
    return eigenvalues


# =============================================================================
# MODEL
# =============================================================================

class OneFactorStructure:
    """
    Discrepancy function of the one-factor model for one set of sample moments.

    Args:
        item_means: Sample mean vector ybar (M,)
        sample_covariance: ML (divisor N) sample covariance S (M, M)
        n_subjects: Sample size N
        factor_variance: Fixed factor variance phi
    """

    def __init__(self, item_means: np.ndarray, sample_covariance: np.ndarray,
                 n_subjects: int, factor_variance: float = 1.0):
        self.item_means = np.asarray(item_means, dtype=float)
        self.S = np.asarray(sample_covariance, dtype=float)
        self.n_subjects = int(n_subjects)
        self.n_items = len(self.item_means)
        self.factor_variance = float(factor_variance)

        self.df = degrees_of_freedom(self.n_items)
        if self.df < 0 or self.n_items < MIN_IDENTIFIED_ITEMS:
            raise UnderidentifiedModel(
                f"One-factor model with {self.n_items} items has df = {self.df} < 0",
                n_items=self.n_items,
                degrees_of_freedom=self.df,
            )

        self.eigenvalues = check_positive_definite(self.S)
        self.logdet_S = float(np.sum(np.log(self.eigenvalues)))

    @classmethod
    def from_dataset(cls, dataset, factor_variance: float = 1.0) -> 'OneFactorStructure':
        return cls(dataset.item_means, dataset.sample_covariance(),
                   dataset.n_subjects, factor_variance)

    @property
    def n_free(self) -> int:
        return n_free_parameters(self.n_items)

    # -------------------------------------------------------------------------
    # Parameter packing
    # -------------------------------------------------------------------------

    def pack(self, intercepts, loadings, residual_variances) -> np.ndarray:
        """Natural parameters -> optimizer vector (mu, lambda, log psi)."""
        return np.concatenate([
            np.asarray(intercepts, dtype=float),
            np.asarray(loadings, dtype=float),
            np.log(np.asarray(residual_variances, dtype=float)),
        ])

    def unpack(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Optimizer vector -> (intercepts, loadings, residual_variances)."""
        m = self.n_items
        return x[:m], x[m:2 * m], np.exp(x[2 * m:])

    def natural(self, x: np.ndarray) -> np.ndarray:
        """Optimizer vector -> natural vector (mu, lambda, psi)."""
        mu, lam, psi = self.unpack(x)
        return np.concatenate([mu, lam, psi])

    def start_values(self) -> np.ndarray:
        """
        Method-of-moments starting values in optimizer space.

        Intercepts are the sample means; loadings come from the leading
        eigenpair of S with the remaining eigenvalues' mean as the unique
        variance, signed so the loadings sum to a non-negative number;
        residual variances are diag(S) - lambda^2 floored at a share of diag(S).
        """
        eigenvalues, eigenvectors = np.linalg.eigh(self.S)
        leading_value = eigenvalues[-1]
        leading_vector = eigenvectors[:, -1]
        unique = eigenvalues[:-1].mean() if self.n_items > 1 else 0.0

        common = max(leading_value - unique, 1e-3 * leading_value)
        lam = np.sqrt(common / self.factor_variance) * leading_vector
        if lam.sum() < 0:
            lam = -lam

        diag_s = np.diag(self.S)
        psi = np.maximum(diag_s - self.factor_variance * lam ** 2, START_RESIDUAL_SHARE * diag_s)
        return self.pack(self.item_means, lam, psi)

    # -------------------------------------------------------------------------
    # Objective
    # -------------------------------------------------------------------------

    def _terms(self, mu, lam, psi):
        sigma = implied_covariance(lam, psi, self.factor_variance)
        try:
            chol = np.linalg.cholesky(sigma)
        except np.linalg.LinAlgError:
            return None
        inv_chol = np.linalg.inv(chol)
        sigma_inv = inv_chol.T @ inv_chol
        logdet = 2.0 * np.sum(np.log(np.diag(chol)))
        d = self.item_means - mu
        return sigma, sigma_inv, logdet, d

    def discrepancy_natural(self, mu, lam, psi) -> float:
        terms = self._terms(mu, lam, psi)
        if terms is None:
            return np.inf
        _, sigma_inv, logdet, d = terms
        value = (logdet + np.sum(self.S * sigma_inv) - self.logdet_S - self.n_items
                 + d @ sigma_inv @ d)
        return float(value) if np.isfinite(value) else np.inf

    def gradient_natural(self, mu, lam, psi) -> np.ndarray:
        """Gradient of F_ML with respect to (mu, lambda, psi)."""
        terms = self._terms(mu, lam, psi)
        if terms is None:
            return np.full(3 * self.n_items, np.nan)
        _, sigma_inv, _, d = terms
        inner = self.S + np.outer(d, d)
        G = sigma_inv - sigma_inv @ inner @ sigma_inv
        return np.concatenate([
            -2.0 * sigma_inv @ d,
            2.0 * self.factor_variance * G @ lam,
            np.diag(G).copy(),
        ])

    def discrepancy(self, x: np.ndarray) -> float:
        with np.errstate(over='ignore', invalid='ignore'):
            return self.discrepancy_natural(*self.unpack(x))

    def gradient(self, x: np.ndarray) -> np.ndarray:
        """Gradient in optimizer space; chain rule through psi = exp(log psi)."""
        mu, lam, psi = self.unpack(x)
        with np.errstate(over='ignore', invalid='ignore'):
            grad = self.gradient_natural(mu, lam, psi)
        grad[2 * self.n_items:] *= psi
        return grad

    def value_and_gradient(self, x: np.ndarray) -> Tuple[float, np.ndarray]:
        return self.discrepancy(x), self.gradient(x)

    # -------------------------------------------------------------------------
    # Derived quantities
    # -------------------------------------------------------------------------

    def baseline_discrepancy(self) -> float:
        """F_ML of the independence model Sigma_0 = diag(S), mu_0 = ybar."""
        return float(np.sum(np.log(np.diag(self.S))) - self.logdet_S)

    def saturated_log_likelihood(self) -> float:
        n, m = self.n_subjects, self.n_items
        return -0.5 * n * (m * np.log(2 * np.pi) + self.logdet_S + m)

    def log_likelihood(self, discrepancy: float) -> float:
        """Normal log-likelihood at a point with the given F_ML."""
        return self.saturated_log_likelihood() - 0.5 * self.n_subjects * discrepancy

    def natural_hessian(self, x: np.ndarray, step: float) -> np.ndarray:
        """Central finite differences of the analytic natural-space gradient."""
        theta = self.natural(x)
        m = self.n_items
        k = len(theta)
        H = np.zeros((k, k))
        for j in range(k):
            h = step * max(1.0, abs(theta[j]))
            up = theta.copy()
            down = theta.copy()
            up[j] += h
            down[j] -= h
            g_up = self.gradient_natural(up[:m], up[m:2 * m], up[2 * m:])
            g_down = self.gradient_natural(down[:m], down[m:2 * m], down[2 * m:])
            H[:, j] = (g_up - g_down) / (2 * h)
        return 0.5 * (H + H.T)

    def standard_errors(self, x: np.ndarray, step: float) -> Optional[np.ndarray]:
        """
        Standard errors of (mu, lambda, psi) from the observed information.

        The information of the log-likelihood is (N / 2) * Hessian(F_ML).
        Returns NaN entries where the inverse has a non-positive diagonal.
        """
        H = self.natural_hessian(x, step)
        if not np.all(np.isfinite(H)):
            return np.full(H.shape[0], np.nan)
        information = 0.5 * self.n_subjects * H
        covariance = np.linalg.pinv(information)
        diag = np.diag(covariance)
        with np.errstate(invalid='ignore'):
            return np.where(diag > 0, np.sqrt(np.abs(diag)), np.nan)
