"""
Hierarchical Nonlinear Mixed Model
==================================

The one-factor model re-expressed as a nonlinear mixed model over
(subject, item, value) triples:

    y_si        = intercept_i + loading_i * latent_s + e_si,   e_si ~ N(0, sigma_i)
    latent_s    ~ N(0, latent_sd)                 latent_sd fixed by the anchor
    loading_i   ~ N(loading_mean, loading_sd)
    intercept_i ~ N(intercept_mean, intercept_sd)
    loading_mean   ~ N(m_lambda, s_lambda)        m_lambda > 0
    intercept_mean ~ N(m_eta, s_eta)
    loading_sd, intercept_sd, sigma ~ half-Student-t(nu, 0, scale)

Scales are sampled on the log scale; the log-Jacobian is included in the
density. The unconstrained position vector is laid out as

    [latent (N) | loadings (M) | intercepts (M) | log residual_sd (M or 1) |
     loading_mean | log loading_sd | intercept_mean | log intercept_sd]

The wide N x M response matrix is used directly: every cell is one
(subject, item, value) triple.

Numerical policy: a position with infinite entries (leapfrog overflow) has
log density -inf, which kernels treat as a rejection. A NaN position
raises NonFiniteLikelihood.
"""

from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np

from ..config import PriorConfig
from ..exceptions import NonFiniteLikelihood


HYPERPARAMETER_NAMES = ['loading_mean', 'loading_sd', 'intercept_mean', 'intercept_sd']


# =============================================================================
# PARAMETER LAYOUT
# =============================================================================

@dataclass(frozen=True)
class ParameterLayout:
    """Slices of the unconstrained position vector."""
    n_subjects: int
    n_items: int
    n_residual: int

    @property
    def latent(self) -> slice:
        return slice(0, self.n_subjects)

    @property
    def loadings(self) -> slice:
        start = self.n_subjects
        return slice(start, start + self.n_items)

    @property
    def intercepts(self) -> slice:
        start = self.n_subjects + self.n_items
        return slice(start, start + self.n_items)

    @property
    def log_residual_sd(self) -> slice:
        start = self.n_subjects + 2 * self.n_items
        return slice(start, start + self.n_residual)

    @property
    def hyper_start(self) -> int:
        return self.n_subjects + 2 * self.n_items + self.n_residual

    @property
    def dim(self) -> int:
        return self.hyper_start + 4

    def names(self) -> list:
        """Parameter names in constrained terms, one per position entry."""
        names = [f'latent[{s}]' for s in range(self.n_subjects)]
        names += [f'loading[{i}]' for i in range(self.n_items)]
        names += [f'intercept[{i}]' for i in range(self.n_items)]
        names += [f'residual_sd[{k}]' for k in range(self.n_residual)]
        return names + HYPERPARAMETER_NAMES

    def constrain(self, z: np.ndarray) -> Dict[str, np.ndarray]:
        """Unconstrained vector (or stack of vectors, last axis) -> named blocks."""
        h = self.hyper_start
        return {
            'latent': z[..., self.latent],
            'loadings': z[..., self.loadings],
            'intercepts': z[..., self.intercepts],
            'residual_sd': np.exp(z[..., self.log_residual_sd]),
            'loading_mean': z[..., h],
            'loading_sd': np.exp(z[..., h + 1]),
            'intercept_mean': z[..., h + 2],
            'intercept_sd': np.exp(z[..., h + 3]),
        }

    def constrained_matrix(self, z: np.ndarray) -> np.ndarray:
        """Same layout as ``z`` with scales exponentiated."""
        out = np.array(z, dtype=float, copy=True)
        h = self.hyper_start
        out[..., self.log_residual_sd] = np.exp(out[..., self.log_residual_sd])
        out[..., h + 1] = np.exp(out[..., h + 1])
        out[..., h + 3] = np.exp(out[..., h + 3])
        return out


# =============================================================================
# LOG DENSITY
# =============================================================================

def _half_t_log_density(log_scale: np.ndarray, df: float, scale: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Half-Student-t log density of x = exp(u) plus log-Jacobian u.

    Returns:
        (log density per entry, derivative w.r.t. u per entry)
    """
    x2 = np.exp(2.0 * log_scale)
    denom = df * scale ** 2
    value = -0.5 * (df + 1.0) * np.log1p(x2 / denom) + log_scale
    grad = 1.0 - (df + 1.0) * x2 / (denom + x2)
    return value, grad


class HierarchicalModel:
    """
    Log posterior of the one-factor mixed model and its gradient.

    Args:
        values: N x M response matrix
        priors: Prior configuration, including the identification anchor
    """

    def __init__(self, values: np.ndarray, priors: PriorConfig):
        self.values = np.asarray(values, dtype=float)
        self.priors = priors
        self.n_subjects, self.n_items = self.values.shape
        n_residual = 1 if priors.shared_residual else self.n_items
        self.layout = ParameterLayout(self.n_subjects, self.n_items, n_residual)
        self.latent_sd = priors.latent_sd

    @property
    def dim(self) -> int:
        return self.layout.dim

    def _check_position(self, z: np.ndarray) -> bool:
        """True if z is finite; False on overflow; raises on NaN."""
        if np.all(np.isfinite(z)):
            return True
        if np.any(np.isnan(z)):
            raise NonFiniteLikelihood(
                "Position contains NaN",
                last_estimate=np.array(z, copy=True),
            )
        return False

    def log_density(self, z: np.ndarray) -> float:
        return self.log_density_and_gradient(z)[0]

    def log_density_and_gradient(self, z: np.ndarray) -> Tuple[float, np.ndarray]:
        """
        Unnormalized log posterior and its gradient on the unconstrained space.

        Returns (-inf, NaN gradient) when the position or an intermediate overflows.
        """
        z = np.asarray(z, dtype=float)
        if not self._check_position(z):
            return -np.inf, np.full(self.dim, np.nan)

        p = self.priors
        lay = self.layout
        h = lay.hyper_start
        n, m = self.n_subjects, self.n_items

        theta = z[lay.latent]
        lam = z[lay.loadings]
        eta = z[lay.intercepts]
        log_sigma = z[lay.log_residual_sd]
        mu_lam, log_tau_lam, mu_eta, log_tau_eta = z[h:h + 4]

        with np.errstate(over='ignore', under='ignore', invalid='ignore', divide='ignore'):
            sigma2 = np.exp(2.0 * log_sigma)
            tau_lam2 = np.exp(2.0 * log_tau_lam)
            tau_eta2 = np.exp(2.0 * log_tau_eta)

            resid = self.values - eta[None, :] - np.outer(theta, lam)
            sq = resid ** 2
            if lay.n_residual == 1:
                ss = sq.sum()
                loglik = -n * m * log_sigma[0] - 0.5 * ss / sigma2[0]
                weighted = resid / sigma2[0]
                grad_log_sigma = np.array([-n * m + ss / sigma2[0]])
            else:
                ss = sq.sum(axis=0)
                loglik = -n * np.sum(log_sigma) - 0.5 * np.sum(ss / sigma2)
                weighted = resid / sigma2[None, :]
                grad_log_sigma = -n + ss / sigma2

            lam_dev = lam - mu_lam
            eta_dev = eta - mu_eta
            latent_var = self.latent_sd ** 2

            lp_latent = -0.5 * np.sum(theta ** 2) / latent_var
            lp_lam = -m * log_tau_lam - 0.5 * np.sum(lam_dev ** 2) / tau_lam2
            lp_eta = -m * log_tau_eta - 0.5 * np.sum(eta_dev ** 2) / tau_eta2
            lp_mu_lam = -0.5 * ((mu_lam - p.loading_mean_prior_mean) / p.loading_mean_prior_sd) ** 2
            lp_mu_eta = -0.5 * ((mu_eta - p.intercept_mean_prior_mean) / p.intercept_mean_prior_sd) ** 2

            ht_sigma, ht_sigma_grad = _half_t_log_density(log_sigma, p.half_t_df, p.residual_sd_scale)
            ht_lam, ht_lam_grad = _half_t_log_density(log_tau_lam, p.half_t_df, p.loading_sd_scale)
            ht_eta, ht_eta_grad = _half_t_log_density(log_tau_eta, p.half_t_df, p.intercept_sd_scale)

            value = float(loglik + lp_latent + lp_lam + lp_eta + lp_mu_lam + lp_mu_eta
                          + np.sum(ht_sigma) + ht_lam + ht_eta)

            if np.isnan(value):
                if not (np.all(np.isfinite(resid)) and np.all(np.isfinite(sigma2))
                        and np.isfinite(tau_lam2) and np.isfinite(tau_eta2)):
                    return -np.inf, np.full(self.dim, np.nan)
                raise NonFiniteLikelihood(
                    "Log density is NaN at a finite position",
                    last_estimate=z.copy(),
                    last_value=value,
                )
            if value == np.inf:
                raise NonFiniteLikelihood(
                    "Log density is +inf",
                    last_estimate=z.copy(),
                    last_value=value,
                )

            grad = np.empty(self.dim)
            grad[lay.latent] = weighted @ lam - theta / latent_var
            grad[lay.loadings] = theta @ weighted - lam_dev / tau_lam2
            grad[lay.intercepts] = weighted.sum(axis=0) - eta_dev / tau_eta2
            grad[lay.log_residual_sd] = grad_log_sigma + ht_sigma_grad
            grad[h] = np.sum(lam_dev) / tau_lam2 - (mu_lam - p.loading_mean_prior_mean) / p.loading_mean_prior_sd ** 2
            grad[h + 1] = -m + np.sum(lam_dev ** 2) / tau_lam2 + ht_lam_grad
            grad[h + 2] = np.sum(eta_dev) / tau_eta2 - (mu_eta - p.intercept_mean_prior_mean) / p.intercept_mean_prior_sd ** 2
            grad[h + 3] = -m + np.sum(eta_dev ** 2) / tau_eta2 + ht_eta_grad

        return value, grad

    # -------------------------------------------------------------------------
    # Starting values
    # -------------------------------------------------------------------------

    def initial_position(self) -> np.ndarray:
        """
        Principal-component starting point on the unconstrained space.

        Loadings come from the leading eigenpair of the sample covariance,
        signed to a non-negative sum; latent scores are the matching
        regression scores scaled to the anchor.
        """
        lay = self.layout
        values = self.values
        means = values.mean(axis=0)
        centered = values - means
        S = centered.T @ centered / self.n_subjects
        diag_s = np.diag(S)

        eigenvalues, eigenvectors = np.linalg.eigh(S)
        unique = eigenvalues[:-1].mean() if self.n_items > 1 else 0.0
        common = max(eigenvalues[-1] - unique, 1e-3 * eigenvalues[-1])
        lam = np.sqrt(common) * eigenvectors[:, -1] / self.latent_sd
        if lam.sum() < 0:
            lam = -lam

        psi = np.maximum(diag_s - (self.latent_sd * lam) ** 2, 0.1 * diag_s)
        sigma = self.latent_sd ** 2 * np.outer(lam, lam) + np.diag(psi)
        theta = centered @ (self.latent_sd ** 2 * np.linalg.solve(sigma, lam))

        z = np.empty(self.dim)
        z[lay.latent] = theta
        z[lay.loadings] = lam
        z[lay.intercepts] = means
        if lay.n_residual == 1:
            z[lay.log_residual_sd] = 0.5 * np.log(psi.mean())
        else:
            z[lay.log_residual_sd] = 0.5 * np.log(psi)
        h = lay.hyper_start
        z[h] = lam.mean()
        z[h + 1] = np.log(max(lam.std(), 0.1))
        z[h + 2] = means.mean()
        z[h + 3] = np.log(max(means.std(), 0.1))
        return z
