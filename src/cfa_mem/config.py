"""
Configuration Schema
====================

Configuration structures shared by the simulator and both estimators.

IdentificationAnchor
--------------------
The scale of the latent factor is fixed once, here, and handed to both the
covariance-structure fit (as the fixed factor variance) and the sampler (as
the fixed SD of the per-subject random effect). Two fits are only
comparable when they were run with equal anchors.

PriorConfig
-----------
Weakly-informative priors of the hierarchical model, as data:

    latent_s      ~ Normal(0, anchor.latent_sd)               fixed
    loading_i     ~ Normal(loading_mean, loading_sd)
    intercept_i   ~ Normal(intercept_mean, intercept_sd)
    loading_mean  ~ Normal(loading_mean_prior_mean, loading_mean_prior_sd)
    intercept_mean~ Normal(intercept_mean_prior_mean, intercept_mean_prior_sd)
    loading_sd    ~ Half-Student-t(half_t_df, 0, loading_sd_scale)
    intercept_sd  ~ Half-Student-t(half_t_df, 0, intercept_sd_scale)
    residual_sd   ~ Half-Student-t(half_t_df, 0, residual_sd_scale)

``loading_mean_prior_mean`` must be positive: it is what breaks the joint
sign flip of all loadings and latent scores.

SimulationConfig
----------------
Numeric configuration of the one-factor data-generating process.
"""

from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .constants import (
    FACTOR_VARIANCE,
    LOADING_MEAN_PRIOR_MEAN,
    LOADING_MEAN_PRIOR_SD,
    LOADING_SD_SCALE,
    INTERCEPT_MEAN_PRIOR_MEAN,
    INTERCEPT_MEAN_PRIOR_SD,
    INTERCEPT_SD_SCALE,
    RESIDUAL_SD_SCALE,
    HALF_T_DF,
    LOADING_CENTER,
    LOADING_SPREAD,
    ERROR_CENTER,
    ERROR_SPREAD,
    ITEM_MEAN_CENTER,
    ITEM_MEAN_SPREAD,
)
from .exceptions import InvalidParameter

VALID_RESIDUAL_STRUCTURES = ['per_item', 'shared']


# =============================================================================
# SCHEMA VALIDATION
# =============================================================================

@dataclass
class ValidationResult:
    """Result of configuration validation."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def raise_if_invalid(self, what: str) -> None:
        if not self.is_valid:
            raise InvalidParameter(
                f"Invalid {what}:\n" + "\n".join(self.errors),
                errors=list(self.errors),
            )


# =============================================================================
# IDENTIFICATION ANCHOR
# =============================================================================

@dataclass(frozen=True)
class IdentificationAnchor:
    """Fixed latent-factor variance shared by both estimators."""
    factor_variance: float = FACTOR_VARIANCE

    def __post_init__(self):
        if not np.isfinite(self.factor_variance) or self.factor_variance <= 0:
            raise InvalidParameter(
                "factor_variance must be a positive finite number",
                factor_variance=self.factor_variance,
            )

    @property
    def latent_sd(self) -> float:
        """Fixed SD of the per-subject random effect."""
        return float(np.sqrt(self.factor_variance))


# =============================================================================
# PRIORS
# =============================================================================

_PRIOR_DOCS = {
    'loading_mean_prior_mean': "Mean of the Normal hyperprior on the population loading (must be > 0)",
    'loading_mean_prior_sd': "SD of the Normal hyperprior on the population loading",
    'loading_sd_scale': "Scale of the half-t prior on the SD of item loadings",
    'intercept_mean_prior_mean': "Mean of the Normal hyperprior on the population intercept",
    'intercept_mean_prior_sd': "SD of the Normal hyperprior on the population intercept",
    'intercept_sd_scale': "Scale of the half-t prior on the SD of item intercepts",
    'residual_sd_scale': "Scale of the half-t prior on the residual SD(s)",
    'half_t_df': "Degrees of freedom of every half-t prior",
    'residual_structure': "'per_item' (one residual SD per item) or 'shared'",
    'anchor': "IdentificationAnchor fixing the latent random-effect SD",
}


@dataclass(frozen=True)
class PriorConfig:
    """Enumerated prior hyperparameters with documented defaults."""
    loading_mean_prior_mean: float = LOADING_MEAN_PRIOR_MEAN
    loading_mean_prior_sd: float = LOADING_MEAN_PRIOR_SD
    loading_sd_scale: float = LOADING_SD_SCALE
    intercept_mean_prior_mean: float = INTERCEPT_MEAN_PRIOR_MEAN
    intercept_mean_prior_sd: float = INTERCEPT_MEAN_PRIOR_SD
    intercept_sd_scale: float = INTERCEPT_SD_SCALE
    residual_sd_scale: float = RESIDUAL_SD_SCALE
    half_t_df: float = HALF_T_DF
    residual_structure: str = 'per_item'
    anchor: IdentificationAnchor = field(default_factory=IdentificationAnchor)

    def __post_init__(self):
        self.validate().raise_if_invalid("prior configuration")

    @property
    def latent_sd(self) -> float:
        return self.anchor.latent_sd

    @property
    def shared_residual(self) -> bool:
        return self.residual_structure == 'shared'

    def validate(self) -> ValidationResult:
        """
        Validate hyperparameters.

        Returns:
            ValidationResult with validity status and any errors/warnings
        """
        errors = []
        warnings_list = []

        positive = [
            'loading_mean_prior_sd', 'loading_sd_scale',
            'intercept_mean_prior_sd', 'intercept_sd_scale',
            'residual_sd_scale', 'half_t_df',
        ]
        for name in positive:
            value = getattr(self, name)
            if not np.isfinite(value) or value <= 0:
                errors.append(f"{name} must be positive and finite, got {value}")

        if not np.isfinite(self.loading_mean_prior_mean) or self.loading_mean_prior_mean <= 0:
            errors.append(
                "loading_mean_prior_mean must be positive to break the sign "
                f"indeterminacy, got {self.loading_mean_prior_mean}"
            )

        if not np.isfinite(self.intercept_mean_prior_mean):
            errors.append("intercept_mean_prior_mean must be finite")

        if self.residual_structure not in VALID_RESIDUAL_STRUCTURES:
            errors.append(
                f"Invalid residual_structure: {self.residual_structure}. "
                f"Must be one of {VALID_RESIDUAL_STRUCTURES}"
            )

        if not isinstance(self.anchor, IdentificationAnchor):
            errors.append("anchor must be an IdentificationAnchor")

        if (np.isfinite(self.loading_mean_prior_sd) and self.loading_mean_prior_mean > 0
                and self.loading_mean_prior_mean < self.loading_mean_prior_sd):
            warnings_list.append(
                "loading_mean_prior_mean is within one SD of zero; the sign "
                "flip may only be weakly broken"
            )

        return ValidationResult(len(errors) == 0, errors, warnings_list)

    @classmethod
    def from_dict(cls, overrides: Optional[Dict[str, Any]] = None) -> 'PriorConfig':
        """
        Build a configuration from defaults plus overrides.

        Raises:
            InvalidParameter: on unrecognised keys or invalid values
        """
        overrides = dict(overrides or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise InvalidParameter(
                f"Unrecognised prior fields: {unknown}. Known fields: {sorted(known)}",
                unknown=unknown,
            )
        anchor = overrides.get('anchor')
        if isinstance(anchor, dict):
            overrides['anchor'] = IdentificationAnchor(**anchor)
        elif isinstance(anchor, (int, float)):
            overrides['anchor'] = IdentificationAnchor(float(anchor))
        return cls(**overrides)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def describe(cls) -> Dict[str, Tuple[Any, str]]:
        """Field name -> (default, meaning) for every recognised override."""
        defaults = cls()
        return {
            name: (getattr(defaults, name), doc)
            for name, doc in _PRIOR_DOCS.items()
        }


# =============================================================================
# SIMULATION
# =============================================================================

@dataclass(frozen=True)
class SimulationConfig:
    """Numeric configuration of the one-factor data-generating process."""
    n_subjects: int
    n_items: int
    loading_center: float = LOADING_CENTER
    loading_spread: float = LOADING_SPREAD
    factor_variance: float = FACTOR_VARIANCE
    error_center: float = ERROR_CENTER
    error_spread: float = ERROR_SPREAD
    item_mean_center: float = ITEM_MEAN_CENTER
    item_mean_spread: float = ITEM_MEAN_SPREAD
    seed: Optional[int] = None

    def validate(self) -> ValidationResult:
        errors = []
        warnings_list = []

        for name in ('n_subjects', 'n_items'):
            value = getattr(self, name)
            if int(value) != value or value < 1:
                errors.append(f"{name} must be an integer >= 1, got {value}")

        for name in ('loading_spread', 'error_spread', 'item_mean_spread'):
            value = getattr(self, name)
            if not np.isfinite(value) or value < 0:
                errors.append(f"{name} must be non-negative, got {value}")

        for name in ('loading_center', 'error_center', 'item_mean_center'):
            if not np.isfinite(getattr(self, name)):
                errors.append(f"{name} must be finite")

        if not np.isfinite(self.factor_variance) or self.factor_variance <= 0:
            errors.append(f"factor_variance must be positive, got {self.factor_variance}")

        lower = self.error_center - self.error_spread
        if not lower > 0:
            errors.append(
                "error_center - error_spread must be positive so every residual "
                f"variance is positive, got lower bound {lower}"
            )

        if self.n_items < 3 and not errors:
            warnings_list.append("Fewer than 3 items: the ML-CFA fit will be underidentified")

        return ValidationResult(len(errors) == 0, errors, warnings_list)
