"""Estimation module."""
from .optimizers import Optimizer, BFGSOptimizer, ScipyOptimizer, OptimizationResult
from .fit_indices import FitIndices
from .ml_cfa import MLFitResult, fit_ml_cfa
from .kernels import MCMCKernel, NUTS, RandomWalkMetropolis
from .bayes_mem import Chain, PosteriorSample, PosteriorSummary, SamplingResult, sample_posterior
from .convergence_diagnostics import (
    ConvergenceChecker,
    ConvergenceDiagnostics,
    PosteriorDiagnostics,
    posterior_diagnostics,
)
