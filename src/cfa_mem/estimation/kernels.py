"""
Pluggable MCMC Kernels
======================

Transition kernels for sampling an unnormalized log density on an
unconstrained space. The sampler depends only on the ``MCMCKernel``
interface; each chain works on its own deep copy of the kernel, so the
adaptation state on ``self`` is never shared.

A target exposes:
    dim                              number of unconstrained coordinates
    log_density(z) -> float
    log_density_and_gradient(z) -> (float, ndarray)

Kernels:
    NUTS                  No-U-Turn sampler (Hoffman & Gelman 2014, Algorithm 6)
                          with a diagonal metric, dual-averaging step size and
                          Stan-style windowed metric adaptation.
    RandomWalkMetropolis  Gaussian random walk with the same metric windows
                          and a Robbins-Monro scale tuned to 0.234 acceptance.

A log density of -inf is a rejection (a divergence for NUTS). NaN or +inf
raises NonFiniteLikelihood.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from ..constants import (
    TARGET_ACCEPT,
    MAX_TREE_DEPTH,
    MAX_ENERGY_ERROR,
    DA_GAMMA,
    DA_T0,
    DA_KAPPA,
    ADAPT_INIT_BUFFER,
    ADAPT_TERM_BUFFER,
    ADAPT_BASE_WINDOW,
    RWM_TARGET_ACCEPT,
)
from ..exceptions import NonFiniteLikelihood


# =============================================================================
# STATE
# =============================================================================

@dataclass
class ChainState:
    """Current position with its cached log density and gradient."""
    position: np.ndarray
    log_density: float
    gradient: Optional[np.ndarray] = None


@dataclass
class TransitionStats:
    """Per-transition sampler statistics."""
    accept_stat: float
    step_size: float
    tree_depth: int = 0
    n_steps: int = 0
    divergent: bool = False


def evaluate(target, z: np.ndarray, with_gradient: bool = True) -> Tuple[float, Optional[np.ndarray]]:
    """
    Evaluate the target, enforcing the non-finite density policy.

    Raises:
        NonFiniteLikelihood: if the log density is NaN or +inf
    """
    if with_gradient:
        logp, grad = target.log_density_and_gradient(z)
    else:
        logp, grad = target.log_density(z), None
    logp = float(logp)
    if np.isnan(logp) or logp == np.inf:
        raise NonFiniteLikelihood(
            "Target returned a non-finite log density",
            last_estimate=np.array(z, copy=True),
            last_value=logp,
        )
    if with_gradient and logp > -np.inf and not np.all(np.isfinite(grad)):
        return -np.inf, grad
    return logp, grad


def initial_state(target, position: np.ndarray, with_gradient: bool = True) -> ChainState:
    """Evaluate a starting position; -inf is as fatal as NaN here."""
    logp, grad = evaluate(target, position, with_gradient)
    if not np.isfinite(logp):
        raise NonFiniteLikelihood(
            "Initial position has zero posterior density",
            last_estimate=np.array(position, copy=True),
            last_value=logp,
        )
    return ChainState(np.array(position, dtype=float, copy=True), logp, grad)


# =============================================================================
# ADAPTATION
# =============================================================================

def adaptation_windows(n_warmup: int,
                       init_buffer: int = ADAPT_INIT_BUFFER,
                       term_buffer: int = ADAPT_TERM_BUFFER,
                       base_window: int = ADAPT_BASE_WINDOW) -> List[Tuple[int, int]]:
    """
    Metric-adaptation windows [start, end) within warm-up.

    Windows double in length; the last one is stretched to the terminal
    buffer. Short warm-ups use 15% / 75% / 10% splits; below 20
    iterations no metric is adapted.
    """
    if n_warmup < 20:
        return []
    if init_buffer + base_window + term_buffer > n_warmup:
        init_buffer = int(0.15 * n_warmup)
        term_buffer = int(0.1 * n_warmup)
        base_window = n_warmup - init_buffer - term_buffer

    windows = []
    start = init_buffer
    size = base_window
    last = n_warmup - term_buffer
    while start < last:
        end = start + size
        if end + 2 * size > last:
            end = last
        windows.append((start, end))
        start = end
        size *= 2
    return windows


def regularized_variance(draws: np.ndarray) -> np.ndarray:
    """Sample variance shrunk towards 1e-3 as in Stan's diagonal adaptation."""
    n = draws.shape[0]
    var = draws.var(axis=0, ddof=1) if n > 1 else np.ones(draws.shape[1])
    return (n / (n + 5.0)) * var + 1e-3 * (5.0 / (n + 5.0))


class DualAveraging:
    """Nesterov dual averaging of log step size (Hoffman & Gelman, Algorithm 5)."""

    def __init__(self, initial_step_size: float, target_accept: float = TARGET_ACCEPT,
                 gamma: float = DA_GAMMA, t0: float = DA_T0, kappa: float = DA_KAPPA):
        self.target_accept = target_accept
        self.gamma = gamma
        self.t0 = t0
        self.kappa = kappa
        self.restart(initial_step_size)

    def restart(self, step_size: float) -> None:
        self.mu = np.log(10.0 * step_size)
        self.h_bar = 0.0
        self.log_step = np.log(step_size)
        self.log_step_bar = 0.0
        self.counter = 0

    def update(self, accept_stat: float) -> float:
        self.counter += 1
        m = self.counter
        w = 1.0 / (m + self.t0)
        self.h_bar = (1.0 - w) * self.h_bar + w * (self.target_accept - accept_stat)
        self.log_step = self.mu - np.sqrt(m) / self.gamma * self.h_bar
        eta = m ** (-self.kappa)
        self.log_step_bar = eta * self.log_step + (1.0 - eta) * self.log_step_bar
        return float(np.exp(self.log_step))

    @property
    def final_step_size(self) -> float:
        return float(np.exp(self.log_step_bar))


# =============================================================================
# KERNEL INTERFACE
# =============================================================================

class MCMCKernel(ABC):
    """Interface: one Markov transition plus optional warm-up adaptation."""

    name = "kernel"
    uses_gradient = True

    def __init__(self):
        self._windows: List[Tuple[int, int]] = []
        self._window_draws: List[np.ndarray] = []
        self.inv_metric: Optional[np.ndarray] = None

    @abstractmethod
    def prepare(self, target, state: ChainState, n_warmup: int,
                rng: np.random.Generator) -> None:
        """Reset adaptation for a fresh chain."""

    @abstractmethod
    def transition(self, target, state: ChainState,
                   rng: np.random.Generator) -> Tuple[ChainState, TransitionStats]:
        """Draw the next state."""

    def adapt(self, target, state: ChainState, stats: TransitionStats,
              iteration: int, rng: np.random.Generator) -> None:
        """Warm-up update after transition ``iteration`` (0-based)."""

    def end_warmup(self) -> None:
        """Freeze adapted tuning parameters."""

    def _collect_window(self, state: ChainState, iteration: int) -> bool:
        """Record the draw if inside a window; True when a window just closed."""
        for start, end in self._windows:
            if start <= iteration < end:
                self._window_draws.append(state.position.copy())
                if iteration == end - 1:
                    self.inv_metric = regularized_variance(np.asarray(self._window_draws))
                    self._window_draws = []
                    return True
                return False
        return False


# =============================================================================
# NUTS
# =============================================================================

@dataclass
class _Tree:
    minus_z: np.ndarray
    minus_r: np.ndarray
    minus_grad: np.ndarray
    plus_z: np.ndarray
    plus_r: np.ndarray
    plus_grad: np.ndarray
    proposal: ChainState
    n_valid: int
    keep_going: bool
    sum_accept: float
    n_accept: int
    divergent: bool


class NUTS(MCMCKernel):
    """
    No-U-Turn sampler with slice sampling (Hoffman & Gelman 2014, Algorithm 6).

    Args:
        target_accept: Dual-averaging target for the mean acceptance statistic
        max_tree_depth: Doublings per transition
        max_energy_error: Energy error beyond which a trajectory is divergent
        initial_step_size: Starting step size; found heuristically if None
    """

    name = "nuts"

    def __init__(self, target_accept: float = TARGET_ACCEPT,
                 max_tree_depth: int = MAX_TREE_DEPTH,
                 max_energy_error: float = MAX_ENERGY_ERROR,
                 initial_step_size: Optional[float] = None):
        super().__init__()
        self.target_accept = target_accept
        self.max_tree_depth = max_tree_depth
        self.max_energy_error = max_energy_error
        self.initial_step_size = initial_step_size
        self.step_size = initial_step_size or 1.0
        self._dual: Optional[DualAveraging] = None

    # -------------------------------------------------------------------------
    # Hamiltonian pieces
    # -------------------------------------------------------------------------

    def _kinetic(self, r: np.ndarray) -> float:
        return 0.5 * float(np.sum(self.inv_metric * r * r))

    def _momentum(self, rng: np.random.Generator, dim: int) -> np.ndarray:
        return rng.standard_normal(dim) / np.sqrt(self.inv_metric)

    def _leapfrog(self, target, z, r, grad, step):
        with np.errstate(over='ignore', invalid='ignore'):
            r_half = r + 0.5 * step * grad
            z_new = z + step * self.inv_metric * r_half
        logp, grad_new = evaluate(target, z_new)
        if not np.isfinite(logp):
            return z_new, r_half, grad_new, logp
        r_new = r_half + 0.5 * step * grad_new
        return z_new, r_new, grad_new, logp

    def find_reasonable_step_size(self, target, state: ChainState,
                                  rng: np.random.Generator) -> float:
        """Heuristic initial step size (Hoffman & Gelman, Algorithm 4)."""
        step = 1.0
        r = self._momentum(rng, len(state.position))
        h0 = state.log_density - self._kinetic(r)

        def log_ratio(step):
            _, r_new, _, logp = self._leapfrog(target, state.position, r, state.gradient, step)
            if not np.isfinite(logp):
                return -np.inf
            return logp - self._kinetic(r_new) - h0

        ratio = log_ratio(step)
        direction = 1.0 if ratio > np.log(0.5) else -1.0
        for _ in range(100):
            if not direction * ratio > -direction * np.log(2.0):
                break
            step *= 2.0 ** direction
            if step < 1e-10 or step > 1e5:
                break
            ratio = log_ratio(step)
        return float(np.clip(step, 1e-10, 1e5))

    def _no_u_turn(self, minus_z, plus_z, minus_r, plus_r) -> bool:
        span = plus_z - minus_z
        return (span @ (self.inv_metric * minus_r) >= 0) and (span @ (self.inv_metric * plus_r) >= 0)

    def _build_tree(self, target, z, r, grad, log_slice, direction, depth, step, h0, rng) -> _Tree:
        if depth == 0:
            z_new, r_new, grad_new, logp = self._leapfrog(target, z, r, grad, direction * step)
            if np.isfinite(logp):
                h = logp - self._kinetic(r_new)
            else:
                h = -np.inf
            n_valid = int(log_slice <= h)
            divergent = not (h > log_slice - self.max_energy_error)
            accept = float(min(1.0, np.exp(h - h0))) if np.isfinite(h) else 0.0
            return _Tree(z_new, r_new, grad_new, z_new, r_new, grad_new,
                         ChainState(z_new, logp, grad_new), n_valid, not divergent,
                         accept, 1, divergent)

        tree = self._build_tree(target, z, r, grad, log_slice, direction, depth - 1, step, h0, rng)
        if not tree.keep_going:
            return tree

        if direction == -1:
            other = self._build_tree(target, tree.minus_z, tree.minus_r, tree.minus_grad,
                                     log_slice, direction, depth - 1, step, h0, rng)
            tree.minus_z, tree.minus_r, tree.minus_grad = other.minus_z, other.minus_r, other.minus_grad
        else:
            other = self._build_tree(target, tree.plus_z, tree.plus_r, tree.plus_grad,
                                     log_slice, direction, depth - 1, step, h0, rng)
            tree.plus_z, tree.plus_r, tree.plus_grad = other.plus_z, other.plus_r, other.plus_grad

        total = tree.n_valid + other.n_valid
        if total > 0 and rng.uniform() < other.n_valid / total:
            tree.proposal = other.proposal
        tree.sum_accept += other.sum_accept
        tree.n_accept += other.n_accept
        tree.divergent = tree.divergent or other.divergent
        tree.keep_going = other.keep_going and self._no_u_turn(
            tree.minus_z, tree.plus_z, tree.minus_r, tree.plus_r)
        tree.n_valid = total
        return tree

    # -------------------------------------------------------------------------
    # Kernel interface
    # -------------------------------------------------------------------------

    def prepare(self, target, state, n_warmup, rng):
        self.inv_metric = np.ones(target.dim)
        self._windows = adaptation_windows(n_warmup)
        self._window_draws = []
        if self.initial_step_size is None:
            self.step_size = self.find_reasonable_step_size(target, state, rng)
        else:
            self.step_size = self.initial_step_size
        self._dual = DualAveraging(self.step_size, self.target_accept)

    def transition(self, target, state, rng):
        dim = len(state.position)
        r0 = self._momentum(rng, dim)
        h0 = state.log_density - self._kinetic(r0)
        log_slice = h0 + np.log(rng.uniform())

        minus_z = plus_z = state.position
        minus_r = plus_r = r0
        minus_grad = plus_grad = state.gradient
        current = state
        n_valid = 1
        sum_accept = 0.0
        n_accept = 0
        divergent = False
        depth = 0

        while depth < self.max_tree_depth:
            direction = -1 if rng.uniform() < 0.5 else 1
            if direction == -1:
                tree = self._build_tree(target, minus_z, minus_r, minus_grad, log_slice,
                                        direction, depth, self.step_size, h0, rng)
                minus_z, minus_r, minus_grad = tree.minus_z, tree.minus_r, tree.minus_grad
            else:
                tree = self._build_tree(target, plus_z, plus_r, plus_grad, log_slice,
                                        direction, depth, self.step_size, h0, rng)
                plus_z, plus_r, plus_grad = tree.plus_z, tree.plus_r, tree.plus_grad

            sum_accept += tree.sum_accept
            n_accept += tree.n_accept
            divergent = divergent or tree.divergent
            depth += 1

            if not tree.keep_going:
                break
            if rng.uniform() < tree.n_valid / n_valid:
                current = tree.proposal
            n_valid += tree.n_valid
            if not self._no_u_turn(minus_z, plus_z, minus_r, plus_r):
                break

        stats = TransitionStats(
            accept_stat=sum_accept / max(n_accept, 1),
            step_size=self.step_size,
            tree_depth=depth,
            n_steps=n_accept,
            divergent=divergent,
        )
        return current, stats

    def adapt(self, target, state, stats, iteration, rng):
        self.step_size = self._dual.update(stats.accept_stat)
        if self._collect_window(state, iteration):
            self.step_size = self.find_reasonable_step_size(target, state, rng)
            self._dual.restart(self.step_size)

    def end_warmup(self):
        if self._dual is not None and self._dual.counter > 0:
            self.step_size = self._dual.final_step_size


# =============================================================================
# RANDOM-WALK METROPOLIS
# =============================================================================

class RandomWalkMetropolis(MCMCKernel):
    """
    Gaussian random-walk Metropolis with adaptive scale.

    Proposal: z' = z + scale * sqrt(inv_metric) * N(0, I). During warm-up the
    log scale follows a Robbins-Monro recursion towards ``target_accept``.
    """

    name = "rwm"
    uses_gradient = False

    def __init__(self, target_accept: float = RWM_TARGET_ACCEPT,
                 initial_scale: Optional[float] = None):
        super().__init__()
        self.target_accept = target_accept
        self.initial_scale = initial_scale
        self.scale = initial_scale or 1.0

    def prepare(self, target, state, n_warmup, rng):
        self.inv_metric = np.ones(target.dim)
        self._windows = adaptation_windows(n_warmup)
        self._window_draws = []
        self.scale = self.initial_scale or 2.38 / np.sqrt(target.dim)
        self._counter = 0

    def transition(self, target, state, rng):
        noise = rng.standard_normal(len(state.position))
        proposal = state.position + self.scale * np.sqrt(self.inv_metric) * noise
        logp, _ = evaluate(target, proposal, with_gradient=False)
        log_ratio = logp - state.log_density
        accept_stat = float(np.exp(min(0.0, log_ratio))) if np.isfinite(logp) else 0.0
        if np.log(rng.uniform()) < log_ratio:
            state = ChainState(proposal, logp)
        return state, TransitionStats(accept_stat=accept_stat, step_size=self.scale, n_steps=1)

    def adapt(self, target, state, stats, iteration, rng):
        self._counter += 1
        log_scale = np.log(self.scale) + (stats.accept_stat - self.target_accept) / self._counter ** 0.6
        self.scale = float(np.exp(log_scale))
        if self._collect_window(state, iteration):
            self._counter = 0


KERNELS = {'nuts': NUTS, 'rwm': RandomWalkMetropolis}


def get_kernel(name: str) -> MCMCKernel:
    """Kernel by name: 'nuts' or 'rwm'."""
    if name not in KERNELS:
        raise ValueError(f"Unknown kernel '{name}'. Choose from {sorted(KERNELS)}")
    return KERNELS[name]()
