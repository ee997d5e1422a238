"""One-factor model estimation: ML-CFA and an equivalent Bayesian mixed model."""

from .config import IdentificationAnchor, PriorConfig, SimulationConfig, ValidationResult
from .exceptions import (
    CfaMemError,
    InvalidParameter,
    SingularCovariance,
    UnderidentifiedModel,
    ConvergenceFailure,
    NonFiniteLikelihood,
    DegenerateChain,
    BudgetExceeded,
    IncompleteSampling,
)
from .simulation import (
    GenerativeParameters,
    LatentFactorDraw,
    Dataset,
    simulate,
    simulate_from_parameters,
    draw_responses,
)
from .estimation import MLFitResult, fit_ml_cfa, SamplingResult, sample_posterior
from .analysis import ComparisonTable, compare

__version__ = "0.1.0"
