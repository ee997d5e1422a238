"""
Hierarchical Sampler (Bayesian-MEM)
===================================

Bayesian estimation of the one-factor model as a nonlinear mixed model
(see models.hierarchical) by Markov-chain Monte Carlo.

Chains are an arena of independent tasks: each gets its own seed, its own
deep copy of the kernel and its own model instance; nothing is shared until
all chains finish and their retained draws are pooled read-only.

Seeding: chain k draws from ``SeedSequence(seed).spawn(n_chains)[k]`` (or
from ``chain_seeds[k]``). Spawned children depend only on their index, so
adding a chain never changes an existing chain's draws, and an identical
configuration reproduces bitwise-identical chains.

Usage:
    from cfa_mem.estimation.bayes_mem import sample_posterior

    result = sample_posterior(dataset, n_chains=4, seed=42)
    estimates = result.point_estimates()
    print(result.summary())
"""

import copy
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from ..config import IdentificationAnchor, PriorConfig
from ..constants import N_CHAINS, N_WARMUP, N_DRAWS, INIT_JITTER
from ..exceptions import (
    CfaMemError,
    DegenerateChain,
    InvalidParameter,
    SAMPLER_ERRORS,
    chain_error,
)
from ..models.hierarchical import HierarchicalModel, ParameterLayout, HYPERPARAMETER_NAMES
from ..simulation.one_factor_simulator import Dataset
from ..utils.budget import Deadline
from ..utils.logging_config import EstimationLogger, get_logger
from .kernels import MCMCKernel, NUTS, get_kernel, initial_state

logger = get_logger(__name__)


# =============================================================================
# DRAWS
# =============================================================================

@dataclass(frozen=True)
class PosteriorSample:
    """One joint draw in constrained terms."""
    latent: np.ndarray
    loadings: np.ndarray
    intercepts: np.ndarray
    residual_sd: np.ndarray
    hyperparameters: Dict[str, float]


SAMPLE_STAT_NAMES = ['log_density', 'accept_stat', 'step_size', 'tree_depth', 'divergent']


@dataclass
class Chain:
    """
    Retained draws of one chain, stored column-wise.

    ``draws`` has shape (n_draws, dim) in constrained terms (scales
    exponentiated), laid out as described by ``layout``. Indexing yields
    PosteriorSample objects.
    """
    chain_id: int
    draws: np.ndarray
    layout: ParameterLayout
    sample_stats: Dict[str, np.ndarray]
    step_size: float
    inv_metric: np.ndarray
    kernel: str = "nuts"

    def __len__(self) -> int:
        return self.draws.shape[0]

    def __getitem__(self, index: int) -> PosteriorSample:
        blocks = self._blocks(self.draws[index])
        return PosteriorSample(
            latent=blocks['latent'],
            loadings=blocks['loadings'],
            intercepts=blocks['intercepts'],
            residual_sd=blocks['residual_sd'],
            hyperparameters={name: float(blocks[name]) for name in HYPERPARAMETER_NAMES},
        )

    def __iter__(self):
        for index in range(len(self)):
            yield self[index]

    def _blocks(self, row: np.ndarray) -> Dict[str, np.ndarray]:
        lay = self.layout
        h = lay.hyper_start
        return {
            'latent': row[..., lay.latent],
            'loadings': row[..., lay.loadings],
            'intercepts': row[..., lay.intercepts],
            'residual_sd': row[..., lay.log_residual_sd],
            'loading_mean': row[..., h],
            'loading_sd': row[..., h + 1],
            'intercept_mean': row[..., h + 2],
            'intercept_sd': row[..., h + 3],
        }

    def block(self, name: str) -> np.ndarray:
        """All retained draws of one named block, shape (n_draws, ...)."""
        return self._blocks(self.draws)[name]

    @property
    def n_divergent(self) -> int:
        return int(np.sum(self.sample_stats['divergent']))

    @property
    def mean_accept_stat(self) -> float:
        return float(np.mean(self.sample_stats['accept_stat']))


@dataclass(frozen=True)
class PosteriorSummary:
    """Posterior means pooled over all retained draws of all successful chains."""
    latent: np.ndarray
    loadings: np.ndarray
    intercepts: np.ndarray
    residual_sd: np.ndarray
    hyperparameters: Dict[str, float]
    residual_variances: np.ndarray
    n_draws: int
    n_chains: int


# =============================================================================
# RESULT CONTAINER
# =============================================================================

@dataclass
class SamplingResult:
    """
    Outcome of one multi-chain run.

    ``chains`` holds the successful chains ordered by chain id; ``failures``
    maps each failed chain id to its typed error.
    """
    chains: List[Chain]
    failures: Dict[int, CfaMemError]
    n_chains_requested: int
    n_warmup: int
    n_draws: int
    priors: PriorConfig
    layout: ParameterLayout
    kernel: str
    seed_entropy: Optional[int] = None
    _diagnostics: object = field(default=None, repr=False)

    @property
    def anchor(self) -> IdentificationAnchor:
        return self.priors.anchor

    @property
    def is_partial(self) -> bool:
        return len(self.failures) > 0

    @property
    def n_successful(self) -> int:
        return len(self.chains)

    @property
    def successful_chain_ids(self) -> List[int]:
        return [c.chain_id for c in self.chains]

    @property
    def parameter_names(self) -> List[str]:
        return self.layout.names()

    @property
    def n_divergent(self) -> int:
        return sum(c.n_divergent for c in self.chains)

    def draws_array(self) -> np.ndarray:
        """Retained draws as (chain, draw, parameter)."""
        return np.stack([c.draws for c in self.chains])

    def block(self, name: str) -> np.ndarray:
        """Named block as (chain, draw, ...)."""
        return np.stack([c.block(name) for c in self.chains])

    def point_estimates(self) -> PosteriorSummary:
        """Posterior means over every retained draw of every successful chain."""
        pooled = np.concatenate([c.draws for c in self.chains], axis=0)
        first = self.chains[0]
        means = first._blocks(pooled.mean(axis=0))
        sigma_draws = np.concatenate([c.block('residual_sd') for c in self.chains], axis=0)
        residual_variances = (sigma_draws ** 2).mean(axis=0)
        if self.layout.n_residual == 1:
            residual_variances = np.repeat(residual_variances, self.layout.n_items)
        return PosteriorSummary(
            latent=means['latent'],
            loadings=means['loadings'],
            intercepts=means['intercepts'],
            residual_sd=means['residual_sd'],
            hyperparameters={name: float(means[name]) for name in HYPERPARAMETER_NAMES},
            residual_variances=residual_variances,
            n_draws=pooled.shape[0],
            n_chains=self.n_successful,
        )

    def diagnostics(self):
        """Split R-hat and bulk/tail ESS per parameter (cached)."""
        if self._diagnostics is None:
            from .convergence_diagnostics import posterior_diagnostics
            self._diagnostics = posterior_diagnostics(self)
        return self._diagnostics

    def summary(self) -> str:
        """Generate summary string."""
        est = self.point_estimates()
        diag = self.diagnostics()
        lines = [
            "=" * 60,
            "One-Factor Bayesian-MEM Results",
            "=" * 60,
            f"Kernel: {self.kernel} | warm-up: {self.n_warmup} | draws/chain: {self.n_draws}",
            f"Chains: {self.n_successful}/{self.n_chains_requested} succeeded",
            f"Divergent transitions: {self.n_divergent}",
            f"Max R-hat: {diag.max_rhat:.4f} | Min bulk ESS: {diag.min_ess_bulk:.0f}",
        ]
        for chain_id, error in sorted(self.failures.items()):
            lines.append(f"  chain {chain_id} FAILED: {type(error).__name__}: {error.message}")
        lines.extend([
            "",
            "Item Parameters (posterior means):",
            "-" * 40,
            f"  {'item':>4s} {'loading':>9s} {'intercept':>10s} {'resid.sd':>9s}",
        ])
        for i in range(self.layout.n_items):
            sd = est.residual_sd[i if self.layout.n_residual > 1 else 0]
            lines.append(f"  {i:4d} {est.loadings[i]:9.4f} {est.intercepts[i]:10.4f} {sd:9.4f}")
        lines.extend(["", "Hyperparameters:", "-" * 40])
        for name, value in est.hyperparameters.items():
            lines.append(f"  {name:20s}: {value:8.4f}")
        lines.append("=" * 60)
        return "\n".join(lines)

    def to_dataframe(self) -> pd.DataFrame:
        """Per-parameter posterior mean, SD and convergence diagnostics."""
        draws = self.draws_array()
        flat = draws.reshape(-1, draws.shape[-1])
        frame = pd.DataFrame({
            'mean': flat.mean(axis=0),
            'sd': flat.std(axis=0, ddof=1) if flat.shape[0] > 1 else np.nan,
        }, index=pd.Index(self.parameter_names, name='parameter'))
        return frame.join(self.diagnostics().table)


# =============================================================================
# CHAIN TASKS
# =============================================================================

@dataclass
class ChainTask:
    """Everything one worker needs to run one chain."""
    chain_id: int
    seed: object
    values: np.ndarray
    priors: PriorConfig
    kernel: MCMCKernel
    n_warmup: int
    n_draws: int
    deadline: Optional[Deadline] = None
    jitter: float = INIT_JITTER


def run_chain(task: ChainTask) -> Chain:
    """
    Run one chain to completion.

    Raises:
        NonFiniteLikelihood, DegenerateChain, BudgetExceeded (with chain_id)
    """
    try:
        return _run_chain(task)
    except SAMPLER_ERRORS as error:
        raise chain_error(error, task.chain_id)


def _run_chain(task: ChainTask) -> Chain:
    rng = np.random.default_rng(task.seed)
    model = HierarchicalModel(task.values, task.priors)
    kernel = task.kernel
    layout = model.layout

    start = model.initial_position() + task.jitter * rng.standard_normal(model.dim)
    state = initial_state(model, start, kernel.uses_gradient)
    kernel.prepare(model, state, task.n_warmup, rng)

    for iteration in range(task.n_warmup):
        if task.deadline is not None:
            task.deadline.check(phase='warmup', iteration=iteration,
                                last_estimate=state.position, last_value=state.log_density)
        state, stats = kernel.transition(model, state, rng)
        kernel.adapt(model, state, stats, iteration, rng)
    kernel.end_warmup()

    positions = np.empty((task.n_draws, model.dim))
    sample_stats = {
        'log_density': np.empty(task.n_draws),
        'accept_stat': np.empty(task.n_draws),
        'step_size': np.empty(task.n_draws),
        'tree_depth': np.empty(task.n_draws, dtype=int),
        'divergent': np.empty(task.n_draws, dtype=bool),
    }
    for draw in range(task.n_draws):
        if task.deadline is not None:
            task.deadline.check(phase='sampling', iteration=draw,
                                last_estimate=state.position, last_value=state.log_density)
        state, stats = kernel.transition(model, state, rng)
        positions[draw] = state.position
        sample_stats['log_density'][draw] = state.log_density
        sample_stats['accept_stat'][draw] = stats.accept_stat
        sample_stats['step_size'][draw] = stats.step_size
        sample_stats['tree_depth'][draw] = stats.tree_depth
        sample_stats['divergent'][draw] = stats.divergent

    stuck = np.flatnonzero(np.ptp(positions, axis=0) == 0) if task.n_draws > 0 else np.array([], dtype=int)
    if stuck.size:
        names = layout.names()
        raise DegenerateChain(
            f"Chain has zero variance in {stuck.size} parameter(s)",
            parameters=[names[j] for j in stuck[:10]],
            last_estimate=state.position,
            last_value=state.log_density,
            iteration=task.n_draws,
        )

    return Chain(
        chain_id=task.chain_id,
        draws=layout.constrained_matrix(positions),
        layout=layout,
        sample_stats=sample_stats,
        step_size=float(getattr(kernel, 'step_size', getattr(kernel, 'scale', np.nan))),
        inv_metric=np.array(kernel.inv_metric, copy=True),
        kernel=kernel.name,
    )


# =============================================================================
# ENTRY POINT
# =============================================================================

def _chain_seeds(n_chains: int, seed: Optional[int],
                 chain_seeds: Optional[Sequence[int]]):
    if chain_seeds is not None:
        if len(chain_seeds) != n_chains:
            raise InvalidParameter(
                "chain_seeds must have one entry per chain",
                n_chains=n_chains, n_seeds=len(chain_seeds),
            )
        return list(chain_seeds), None
    root = np.random.SeedSequence(seed)
    return root.spawn(n_chains), root.entropy


def sample_posterior(dataset: Dataset,
                     priors: Optional[PriorConfig] = None,
                     n_chains: int = N_CHAINS,
                     n_warmup: int = N_WARMUP,
                     n_draws: int = N_DRAWS,
                     seed: Optional[int] = None,
                     chain_seeds: Optional[Sequence[int]] = None,
                     kernel: Optional[Union[MCMCKernel, str]] = None,
                     n_workers: int = 1,
                     deadline: Optional[Union[Deadline, float]] = None,
                     verbose: bool = False) -> SamplingResult:
    """
    Sample the posterior of the one-factor mixed model.

    Args:
        dataset: Observed responses
        priors: Prior configuration (defaults documented in PriorConfig)
        n_chains: Number of independent chains
        n_warmup: Warm-up transitions per chain (discarded)
        n_draws: Retained draws per chain
        seed: Root seed; chain k uses SeedSequence(seed).spawn(n_chains)[k]
        chain_seeds: Explicit per-chain seeds, overriding ``seed``
        kernel: MCMCKernel instance or name ('nuts', 'rwm'); NUTS by default
        n_workers: Worker processes; chains run sequentially when 1
        deadline: Deadline or budget in seconds, checked between transitions
        verbose: Print progress

    Returns:
        SamplingResult; ``is_partial`` when some chains failed

    Raises:
        InvalidParameter: on invalid counts or seeds
        The first chain's error when every chain failed
    """
    priors = priors or PriorConfig()
    if n_chains < 1:
        raise InvalidParameter("n_chains must be >= 1", n_chains=n_chains)
    if n_warmup < 0 or n_draws < 1:
        raise InvalidParameter("n_warmup must be >= 0 and n_draws >= 1",
                               n_warmup=n_warmup, n_draws=n_draws)
    if kernel is None:
        kernel = NUTS()
    elif isinstance(kernel, str):
        kernel = get_kernel(kernel)
    deadline = Deadline.coerce(deadline)

    seeds, entropy = _chain_seeds(n_chains, seed, chain_seeds)

    log = EstimationLogger("bayes_mem", verbose=verbose)
    log.start(n_subjects=dataset.n_subjects, n_items=dataset.n_items,
              kernel=kernel.name, chains=n_chains)

    tasks = [
        ChainTask(
            chain_id=k,
            seed=seeds[k],
            values=dataset.values,
            priors=priors,
            kernel=copy.deepcopy(kernel),
            n_warmup=n_warmup,
            n_draws=n_draws,
            deadline=deadline,
        )
        for k in range(n_chains)
    ]

    chains: Dict[int, Chain] = {}
    failures: Dict[int, CfaMemError] = {}

    if n_workers > 1:
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            futures = {executor.submit(run_chain, task): task.chain_id for task in tasks}
            for future in as_completed(futures):
                chain_id = futures[future]
                try:
                    chains[chain_id] = future.result()
                    log.phase(f"chain {chain_id} finished")
                except SAMPLER_ERRORS as error:
                    failures[chain_id] = chain_error(error, chain_id)
                    log.warning(f"chain {chain_id} failed: {error}")
    else:
        for task in tasks:
            try:
                chains[task.chain_id] = run_chain(task)
                log.phase(f"chain {task.chain_id} finished")
            except SAMPLER_ERRORS as error:
                failures[task.chain_id] = chain_error(error, task.chain_id)
                log.warning(f"chain {task.chain_id} failed: {error}")

    if not chains:
        first = failures[min(failures)]
        log.failed(f"all {n_chains} chains failed")
        raise first

    result = SamplingResult(
        chains=[chains[k] for k in sorted(chains)],
        failures=dict(sorted(failures.items())),
        n_chains_requested=n_chains,
        n_warmup=n_warmup,
        n_draws=n_draws,
        priors=priors,
        layout=next(iter(chains.values())).layout,
        kernel=kernel.name,
        seed_entropy=entropy,
    )
    log.finished(
        f"{result.n_successful}/{n_chains} chains, {result.n_divergent} divergent transitions"
    )
    return result
