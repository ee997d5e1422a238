"""
Monte Carlo Recovery Study
==========================

Repeats simulate -> fit across seeds and sample sizes for fixed generating
parameters, to validate the estimators against a known DGP.

Key metrics per parameter and sample size:
- Bias: E[theta_hat] - theta
- RMSE: sqrt(E[(theta_hat - theta)^2])
- Coverage: P(theta in CI), ML only (posterior draws have no SE column)
- Loading correlation: Pearson r between estimated and true loadings

Each replication fits ML-CFA; the Bayesian fit is optional because it is
much slower.
"""

import time
import warnings
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from ..config import IdentificationAnchor, PriorConfig
from ..exceptions import CfaMemError
from ..simulation.one_factor_simulator import GenerativeParameters, simulate_from_parameters
from ..estimation.ml_cfa import fit_ml_cfa
from ..estimation.bayes_mem import sample_posterior
from ..analysis.comparator import congruence

PARAMETER_BLOCKS = ['loading', 'intercept', 'residual_variance']


@dataclass
class RecoveryResult:
    """Container for recovery study results."""
    n_replications: int
    sample_sizes: List[int]
    true_values: Dict[str, float]

    # {method: {sample_size: (n_rep, n_params)}}
    estimates: Dict[str, Dict[int, np.ndarray]]
    std_errors: Dict[int, np.ndarray]
    convergence: Dict[str, Dict[int, np.ndarray]]
    loading_correlation: Dict[str, Dict[int, np.ndarray]]

    bias: Dict[str, Dict[int, Dict[str, float]]] = field(default_factory=dict)
    rmse: Dict[str, Dict[int, Dict[str, float]]] = field(default_factory=dict)
    coverage: Dict[int, Dict[str, float]] = field(default_factory=dict)

    total_time: float = 0.0
    time_per_rep: float = 0.0

    @property
    def methods(self) -> List[str]:
        return list(self.estimates)

    def summary_table(self) -> pd.DataFrame:
        """Generate summary table of results."""
        records = []
        for method in self.methods:
            for sample_size in self.sample_sizes:
                for param, true_val in self.true_values.items():
                    bias = self.bias.get(method, {}).get(sample_size, {}).get(param, np.nan)
                    records.append({
                        'method': method,
                        'sample_size': sample_size,
                        'parameter': param,
                        'true_value': true_val,
                        'bias': bias,
                        'bias_pct': bias / true_val * 100 if true_val != 0 else np.nan,
                        'rmse': self.rmse.get(method, {}).get(sample_size, {}).get(param, np.nan),
                        'coverage_95': (self.coverage.get(sample_size, {}).get(param, np.nan)
                                        if method == 'ml' else np.nan),
                    })
        return pd.DataFrame(records)

    def correlation_table(self) -> pd.DataFrame:
        """Mean and minimum loading correlation per method and sample size."""
        records = []
        for method, by_size in self.loading_correlation.items():
            for sample_size, values in by_size.items():
                records.append({
                    'method': method,
                    'sample_size': sample_size,
                    'mean_r': float(np.nanmean(values)) if np.any(np.isfinite(values)) else np.nan,
                    'min_r': float(np.nanmin(values)) if np.any(np.isfinite(values)) else np.nan,
                    'convergence_rate': float(self.convergence[method][sample_size].mean()),
                })
        return pd.DataFrame(records)


def compute_bias(estimates: np.ndarray, true_value: float) -> float:
    """
    Compute bias of estimator.

    Bias = E[theta_hat] - theta
    """
    valid_estimates = estimates[~np.isnan(estimates)]
    if len(valid_estimates) == 0:
        return np.nan
    return float(np.mean(valid_estimates) - true_value)


def compute_rmse(estimates: np.ndarray, true_value: float) -> float:
    """
    Compute Root Mean Squared Error.

    RMSE = sqrt(E[(theta_hat - theta)^2])
    """
    valid_estimates = estimates[~np.isnan(estimates)]
    if len(valid_estimates) == 0:
        return np.nan
    return float(np.sqrt(np.mean((valid_estimates - true_value) ** 2)))


def compute_coverage(estimates: np.ndarray,
                     std_errors: np.ndarray,
                     true_value: float,
                     confidence: float = 0.95) -> float:
    """
    Compute Wald confidence interval coverage rate.

    Coverage = P(theta in [theta_hat - z*SE, theta_hat + z*SE])
    """
    valid_mask = ~np.isnan(estimates) & ~np.isnan(std_errors) & (std_errors > 0)

    if valid_mask.sum() == 0:
        return np.nan

    z = stats.norm.ppf((1 + confidence) / 2)

    lower = estimates[valid_mask] - z * std_errors[valid_mask]
    upper = estimates[valid_mask] + z * std_errors[valid_mask]

    covered = (lower <= true_value) & (true_value <= upper)
    return float(covered.mean())


def parameter_names(n_items: int) -> List[str]:
    return [f'{block}[{i}]' for block in PARAMETER_BLOCKS for i in range(n_items)]


def true_vector(parameters: GenerativeParameters) -> np.ndarray:
    return np.concatenate([parameters.loadings, parameters.intercepts,
                           parameters.residual_variances])


# =============================================================================
# REPLICATION
# =============================================================================

@dataclass
class ReplicationTask:
    rep: int
    sample_size: int
    seed: int
    parameters: GenerativeParameters
    run_bayes: bool
    priors: Optional[PriorConfig]
    n_chains: int
    n_warmup: int
    n_draws: int


def _loading_r(estimated: np.ndarray, truth: np.ndarray) -> float:
    if np.std(estimated) == 0 or np.std(truth) == 0:
        return np.nan
    return float(np.corrcoef(estimated, truth)[0, 1])


def run_replication(task: ReplicationTask) -> Dict[str, Tuple[np.ndarray, np.ndarray, bool, float]]:
    """
    One simulate -> fit replication.

    Returns:
        {method: (estimates, std_errors, converged, loading_r)}; failed fits
        report NaN estimates and converged=False
    """
    m = task.parameters.n_items
    truth = task.parameters.loadings
    nan = np.full(3 * m, np.nan)
    out = {}

    _, dataset = simulate_from_parameters(task.parameters, task.sample_size, task.seed)

    try:
        ml = fit_ml_cfa(dataset, anchor=IdentificationAnchor(task.parameters.factor_variance))
        sign = -1.0 if congruence(ml.loadings, truth) < 0 else 1.0
        est = np.concatenate([sign * ml.loadings, ml.intercepts, ml.residual_variances])
        se = np.concatenate([ml.loadings_se, ml.intercepts_se, ml.residual_variances_se])
        out['ml'] = (est, se, ml.converged, _loading_r(sign * ml.loadings, truth))
    except CfaMemError as e:
        warnings.warn(f"Replication {task.rep} (N={task.sample_size}) ML fit failed: {e}")
        out['ml'] = (nan, nan, False, np.nan)

    if task.run_bayes:
        priors = task.priors or PriorConfig(
            anchor=IdentificationAnchor(task.parameters.factor_variance))
        try:
            posterior = sample_posterior(
                dataset, priors=priors, n_chains=task.n_chains,
                n_warmup=task.n_warmup, n_draws=task.n_draws, seed=task.seed,
            )
            pe = posterior.point_estimates()
            est = np.concatenate([pe.loadings, pe.intercepts, pe.residual_variances])
            out['bayes'] = (est, nan, not posterior.is_partial, _loading_r(pe.loadings, truth))
        except CfaMemError as e:
            warnings.warn(f"Replication {task.rep} (N={task.sample_size}) sampling failed: {e}")
            out['bayes'] = (nan, nan, False, np.nan)

    return out


# =============================================================================
# STUDY
# =============================================================================

class RecoveryStudy:
    """
    Monte Carlo recovery study for fixed generating parameters.

    Runs multiple replications of:
    1. Simulate data from the known one-factor DGP
    2. Fit ML-CFA (and optionally Bayesian-MEM)
    3. Record estimates and SEs
    4. Compute summary statistics

    Example:
        >>> study = RecoveryStudy(n_replications=50, sample_sizes=[100, 400])
        >>> result = study.run(parameters)
        >>> print(result.summary_table())
    """

    def __init__(self,
                 n_replications: int = 100,
                 sample_sizes: List[int] = None,
                 seed: int = 42,
                 n_workers: int = 1,
                 run_bayes: bool = False,
                 priors: Optional[PriorConfig] = None,
                 n_chains: int = 2,
                 n_warmup: int = 300,
                 n_draws: int = 300,
                 verbose: bool = True):
        self.n_replications = n_replications
        self.sample_sizes = sample_sizes or [100, 200, 500, 1000]
        self.seed = seed
        self.n_workers = n_workers
        self.run_bayes = run_bayes
        self.priors = priors
        self.n_chains = n_chains
        self.n_warmup = n_warmup
        self.n_draws = n_draws
        self.verbose = verbose

    def _tasks(self, parameters: GenerativeParameters, sample_size: int) -> List[ReplicationTask]:
        return [
            ReplicationTask(
                rep=rep,
                sample_size=sample_size,
                seed=self.seed + rep + sample_size * 1000,
                parameters=parameters,
                run_bayes=self.run_bayes,
                priors=self.priors,
                n_chains=self.n_chains,
                n_warmup=self.n_warmup,
                n_draws=self.n_draws,
            )
            for rep in range(self.n_replications)
        ]

    def run(self, parameters: GenerativeParameters) -> RecoveryResult:
        """
        Run the study.

        Args:
            parameters: True generating parameters, fixed across replications

        Returns:
            RecoveryResult with summary statistics
        """
        start_time = time.time()

        names = parameter_names(parameters.n_items)
        truth = true_vector(parameters)
        methods = ['ml', 'bayes'] if self.run_bayes else ['ml']

        estimates = {method: {} for method in methods}
        convergence = {method: {} for method in methods}
        correlations = {method: {} for method in methods}
        std_errors = {}

        for sample_size in self.sample_sizes:
            if self.verbose:
                print(f"\nSample size: {sample_size}")
                print("-" * 40)

            for method in methods:
                estimates[method][sample_size] = np.zeros((self.n_replications, len(names)))
                convergence[method][sample_size] = np.zeros(self.n_replications, dtype=bool)
                correlations[method][sample_size] = np.zeros(self.n_replications)
            std_errors[sample_size] = np.zeros((self.n_replications, len(names)))

            tasks = self._tasks(parameters, sample_size)
            if self.n_workers > 1:
                with ProcessPoolExecutor(max_workers=self.n_workers) as executor:
                    outputs = list(executor.map(run_replication, tasks))
            else:
                outputs = [run_replication(task) for task in tasks]

            for rep, output in enumerate(outputs):
                for method in methods:
                    est, se, conv, r = output[method]
                    estimates[method][sample_size][rep] = est
                    convergence[method][sample_size][rep] = conv
                    correlations[method][sample_size][rep] = r
                    if method == 'ml':
                        std_errors[sample_size][rep] = se

                if self.verbose and (rep + 1) % 10 == 0:
                    conv_rate = convergence['ml'][sample_size][:rep + 1].mean()
                    print(f"  Rep {rep + 1}/{self.n_replications}, Conv: {conv_rate:.1%}")

        result = RecoveryResult(
            n_replications=self.n_replications,
            sample_sizes=self.sample_sizes,
            true_values=dict(zip(names, truth.tolist())),
            estimates=estimates,
            std_errors=std_errors,
            convergence=convergence,
            loading_correlation=correlations,
        )

        for method in methods:
            result.bias[method] = {}
            result.rmse[method] = {}
            for sample_size in self.sample_sizes:
                result.bias[method][sample_size] = {}
                result.rmse[method][sample_size] = {}
                for i, param in enumerate(names):
                    est = estimates[method][sample_size][:, i]
                    result.bias[method][sample_size][param] = compute_bias(est, truth[i])
                    result.rmse[method][sample_size][param] = compute_rmse(est, truth[i])

        for sample_size in self.sample_sizes:
            result.coverage[sample_size] = {
                param: compute_coverage(estimates['ml'][sample_size][:, i],
                                        std_errors[sample_size][:, i], truth[i])
                for i, param in enumerate(names)
            }

        total_time = time.time() - start_time
        result.total_time = total_time
        result.time_per_rep = total_time / (self.n_replications * len(self.sample_sizes))

        if self.verbose:
            print(f"\n{'='*50}")
            print("Recovery study complete")
            print(f"Total time: {total_time:.1f}s")
            print(f"Time per replication: {result.time_per_rep:.2f}s")

        return result
