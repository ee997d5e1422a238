"""
One-Factor Data Simulator
=========================

Synthetic data generation for the one-factor latent-variable model

    y_si = intercept_i + loading_i * latent_s + e_si,
    latent_s ~ N(0, factor_variance),  e_si ~ N(0, residual_variance_i)

The simulation follows a known Data Generating Process (DGP), so both
estimators can be validated by comparing estimated vs. true parameters.
All randomness of one call comes from a single seeded
``numpy.random.Generator``: the same configuration reproduces the same data.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from ..config import SimulationConfig
from ..constants import MIN_RESIDUAL_VARIANCE
from ..exceptions import InvalidParameter


def _frozen_array(values, name: str, ndim: int = 1) -> np.ndarray:
    arr = np.array(values, dtype=float, copy=True)
    if arr.ndim != ndim:
        raise InvalidParameter(f"{name} must be {ndim}-dimensional, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise InvalidParameter(f"{name} contains missing or non-finite entries")
    arr.setflags(write=False)
    return arr


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class GenerativeParameters:
    """True parameters of the one-factor model (ground truth)."""
    loadings: np.ndarray
    intercepts: np.ndarray
    residual_variances: np.ndarray
    factor_variance: float = 1.0

    def __post_init__(self):
        for name in ('loadings', 'intercepts', 'residual_variances'):
            object.__setattr__(self, name, _frozen_array(getattr(self, name), name))

        m = len(self.loadings)
        if m < 1:
            raise InvalidParameter("At least one item is required")
        if len(self.intercepts) != m or len(self.residual_variances) != m:
            raise InvalidParameter(
                "loadings, intercepts and residual_variances must have equal length",
                n_loadings=m,
                n_intercepts=len(self.intercepts),
                n_residual_variances=len(self.residual_variances),
            )
        if np.any(self.residual_variances <= 0):
            raise InvalidParameter("residual_variances must be strictly positive")
        if not np.isfinite(self.factor_variance) or self.factor_variance <= 0:
            raise InvalidParameter(
                "factor_variance must be positive", factor_variance=self.factor_variance
            )
        object.__setattr__(self, 'factor_variance', float(self.factor_variance))

    @property
    def n_items(self) -> int:
        return len(self.loadings)

    def implied_covariance(self) -> np.ndarray:
        """Population covariance phi * lambda lambda' + diag(psi)."""
        lam = self.loadings
        return self.factor_variance * np.outer(lam, lam) + np.diag(self.residual_variances)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({
            'loading': self.loadings,
            'intercept': self.intercepts,
            'residual_variance': self.residual_variances,
        }, index=pd.RangeIndex(self.n_items, name='item'))


@dataclass(frozen=True)
class LatentFactorDraw:
    """True per-subject latent scores. Never passed to an estimator."""
    scores: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, 'scores', _frozen_array(self.scores, 'scores'))

    @property
    def n_subjects(self) -> int:
        return len(self.scores)


@dataclass(frozen=True)
class Dataset:
    """
    Observed N x M response matrix.

    Invariants: every entry is finite and every column has positive
    variance. Violations raise InvalidParameter.
    """
    values: np.ndarray

    def __post_init__(self):
        values = _frozen_array(self.values, 'values', ndim=2)
        n, m = values.shape
        if n < 2 or m < 1:
            raise InvalidParameter(
                "Dataset needs at least 2 subjects and 1 item", shape=values.shape
            )
        variances = values.var(axis=0)
        flat = np.flatnonzero(variances <= 0)
        if flat.size:
            raise InvalidParameter(
                "Every item must have positive variance",
                zero_variance_items=flat.tolist(),
            )
        object.__setattr__(self, 'values', values)

    @classmethod
    def from_array(cls, values) -> 'Dataset':
        """Validate a foreign N x M array (or DataFrame) into a Dataset."""
        if isinstance(values, pd.DataFrame):
            values = values.to_numpy(dtype=float)
        return cls(np.asarray(values, dtype=float))

    @property
    def n_subjects(self) -> int:
        return self.values.shape[0]

    @property
    def n_items(self) -> int:
        return self.values.shape[1]

    @property
    def item_means(self) -> np.ndarray:
        return self.values.mean(axis=0)

    def sample_covariance(self) -> np.ndarray:
        """ML (divisor N) sample covariance."""
        return np.cov(self.values, rowvar=False, bias=True).reshape(self.n_items, self.n_items)

    def to_frame(self) -> pd.DataFrame:
        """Wide frame, one row per subject, columns item_0..item_{M-1}."""
        return pd.DataFrame(
            self.values,
            index=pd.RangeIndex(self.n_subjects, name='subject'),
            columns=[f'item_{i}' for i in range(self.n_items)],
        )


# =============================================================================
# GENERATION
# =============================================================================

def _uniform(rng: np.random.Generator, center: float, spread: float, size: int) -> np.ndarray:
    return rng.uniform(center - spread, center + spread, size=size)


def draw_responses(parameters: GenerativeParameters, latent: LatentFactorDraw,
                   rng: np.random.Generator) -> Dataset:
    """
    Draw the response matrix given parameters and latent scores.

    Args:
        parameters: True item parameters
        latent: True per-subject latent scores
        rng: Generator supplying the residual noise

    Returns:
        Dataset of shape (len(latent.scores), parameters.n_items)
    """
    n = latent.n_subjects
    m = parameters.n_items
    mean = parameters.intercepts[None, :] + np.outer(latent.scores, parameters.loadings)
    noise = rng.standard_normal((n, m)) * np.sqrt(parameters.residual_variances)[None, :]
    return Dataset(mean + noise)


def simulate_from_parameters(parameters: GenerativeParameters, n_subjects: int,
                             seed: Optional[int] = None) -> Tuple[LatentFactorDraw, Dataset]:
    """
    Simulate latent scores and responses for fixed generating parameters.

    Args:
        parameters: True item parameters
        n_subjects: Number of subjects N >= 1
        seed: Seed of the single generator used for all draws

    Returns:
        (LatentFactorDraw, Dataset)
    """
    if int(n_subjects) != n_subjects or n_subjects < 1:
        raise InvalidParameter("n_subjects must be an integer >= 1", n_subjects=n_subjects)

    rng = np.random.default_rng(seed)
    scores = rng.normal(0.0, np.sqrt(parameters.factor_variance), size=int(n_subjects))
    latent = LatentFactorDraw(scores)
    return latent, draw_responses(parameters, latent, rng)


def simulate(config: SimulationConfig) -> Tuple[GenerativeParameters, LatentFactorDraw, Dataset]:
    """
    Draw generating parameters, latent scores and responses.

    Loadings, residual variances and intercepts are uniform on
    [center - spread, center + spread]; residual variances are clamped
    strictly positive.

    Raises:
        InvalidParameter: if the configuration is invalid
    """
    config.validate().raise_if_invalid("simulation configuration")

    rng = np.random.default_rng(config.seed)
    m = int(config.n_items)

    loadings = _uniform(rng, config.loading_center, config.loading_spread, m)
    residual_variances = np.maximum(
        _uniform(rng, config.error_center, config.error_spread, m), MIN_RESIDUAL_VARIANCE
    )
    intercepts = _uniform(rng, config.item_mean_center, config.item_mean_spread, m)

    parameters = GenerativeParameters(
        loadings=loadings,
        intercepts=intercepts,
        residual_variances=residual_variances,
        factor_variance=config.factor_variance,
    )

    scores = rng.normal(0.0, np.sqrt(config.factor_variance), size=int(config.n_subjects))
    latent = LatentFactorDraw(scores)
    return parameters, latent, draw_responses(parameters, latent, rng)
