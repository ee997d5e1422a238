"""
Pluggable Optimizers
====================

Minimizers for a scalar objective with analytic gradient. The ML-CFA
estimator only depends on the ``Optimizer`` interface:

    result = optimizer.minimize(value_and_gradient, x0,
                                tolerance=1e-9, max_iterations=500,
                                callback=on_iteration)

Convergence: |F_k - F_{k-1}| <= tolerance * max(1, |F_k|). The callback runs
between iterations with (iteration, x, value, gradient_norm); it may raise
(e.g. BudgetExceeded) to abort the loop.

Implementations:
    BFGSOptimizer:  quasi-Newton with inverse-Hessian updates and a Wolfe
                    line search (scipy.optimize.line_search), falling back to
                    Armijo backtracking.
    ScipyOptimizer: adapter around scipy.optimize.minimize (L-BFGS-B by
                    default, whose ftol rule is the relative-change rule above).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Tuple
import warnings

import numpy as np
from scipy import optimize

ValueAndGradient = Callable[[np.ndarray], Tuple[float, np.ndarray]]
IterationCallback = Callable[[int, np.ndarray, float, float], None]


@dataclass
class OptimizationResult:
    """Outcome of one minimization."""
    x: np.ndarray
    fun: float
    grad: np.ndarray
    n_iterations: int
    converged: bool
    message: str = ""

    @property
    def gradient_norm(self) -> float:
        return float(np.linalg.norm(self.grad))


class Optimizer(ABC):
    """Interface: minimize a scalar objective given its gradient."""

    name = "optimizer"

    @abstractmethod
    def minimize(self, value_and_gradient: ValueAndGradient, x0: np.ndarray,
                 tolerance: float, max_iterations: int,
                 callback: Optional[IterationCallback] = None) -> OptimizationResult:
        ...


def relative_change_converged(previous: float, current: float, tolerance: float) -> bool:
    return abs(current - previous) <= tolerance * max(1.0, abs(current))


class _Memo:
    """Caches the last (value, gradient) so value and gradient calls share work."""

    def __init__(self, value_and_gradient: ValueAndGradient):
        self._fg = value_and_gradient
        self._x = None
        self._f = None
        self._g = None
        self.n_evaluations = 0

    def _evaluate(self, x):
        if self._x is None or not np.array_equal(x, self._x):
            self._x = np.array(x, dtype=float, copy=True)
            self._f, g = self._fg(self._x)
            self._g = np.asarray(g, dtype=float)
            self.n_evaluations += 1

    def value(self, x) -> float:
        self._evaluate(x)
        return self._f

    def gradient(self, x) -> np.ndarray:
        self._evaluate(x)
        return self._g


# =============================================================================
# BFGS
# =============================================================================

class BFGSOptimizer(Optimizer):
    """
    Quasi-Newton minimizer with BFGS inverse-Hessian updates.

    Args:
        c1, c2: Wolfe constants for the line search
        max_backtracks: Halvings tried when the Wolfe search fails
    """

    name = "bfgs"

    def __init__(self, c1: float = 1e-4, c2: float = 0.9, max_backtracks: int = 50):
        self.c1 = c1
        self.c2 = c2
        self.max_backtracks = max_backtracks

    def _backtrack(self, memo: _Memo, x, f, g, p) -> Optional[float]:
        slope = float(g @ p)
        alpha = 1.0
        for _ in range(self.max_backtracks):
            f_new = memo.value(x + alpha * p)
            if np.isfinite(f_new) and f_new <= f + self.c1 * alpha * slope:
                return alpha
            alpha *= 0.5
        return None

    def _step(self, memo: _Memo, x, f, f_old, g, p) -> Optional[float]:
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', optimize.OptimizeWarning)
            with np.errstate(over='ignore', invalid='ignore'):
                alpha = optimize.line_search(
                    memo.value, memo.gradient, x, p, gfk=g,
                    old_fval=f, old_old_fval=f_old, c1=self.c1, c2=self.c2,
                )[0]
        if alpha is None or not np.isfinite(memo.value(x + alpha * p)):
            alpha = self._backtrack(memo, x, f, g, p)
        return alpha

    def minimize(self, value_and_gradient, x0, tolerance, max_iterations, callback=None):
        memo = _Memo(value_and_gradient)
        x = np.array(x0, dtype=float, copy=True)
        n = len(x)
        identity = np.eye(n)
        H = identity.copy()

        f = memo.value(x)
        g = memo.gradient(x)
        if not np.isfinite(f):
            return OptimizationResult(x, f, g, 0, False, "Objective not finite at start")

        f_old = None
        for iteration in range(1, max_iterations + 1):
            p = -H @ g
            if g @ p >= 0:
                H = identity.copy()
                p = -g

            alpha = self._step(memo, x, f, f_old, g, p)
            if alpha is None:
                return OptimizationResult(x, f, g, iteration - 1, False, "Line search failed")

            s = alpha * p
            x_new = x + s
            f_new = memo.value(x_new)
            g_new = memo.gradient(x_new)
            y = g_new - g

            sy = float(s @ y)
            if sy > 1e-12:
                if iteration == 1:
                    H = (sy / float(y @ y)) * identity
                rho = 1.0 / sy
                V = identity - rho * np.outer(s, y)
                H = V @ H @ V.T + rho * np.outer(s, s)

            converged = relative_change_converged(f, f_new, tolerance)
            f_old, f, g, x = f, f_new, g_new, x_new

            if callback is not None:
                callback(iteration, x, f, float(np.linalg.norm(g)))

            if converged:
                return OptimizationResult(x, f, g, iteration, True, "Relative change below tolerance")

        return OptimizationResult(x, f, g, max_iterations, False, "Maximum iterations reached")


# =============================================================================
# SCIPY ADAPTER
# =============================================================================

class ScipyOptimizer(Optimizer):
    """
    Adapter around scipy.optimize.minimize.

    Args:
        method: Any gradient-based scipy method ('L-BFGS-B', 'BFGS', ...)
        gradient_tolerance: gtol passed to scipy
    """

    name = "scipy"

    def __init__(self, method: str = 'L-BFGS-B', gradient_tolerance: float = 1e-8):
        self.method = method
        self.gradient_tolerance = gradient_tolerance

    def minimize(self, value_and_gradient, x0, tolerance, max_iterations, callback=None):
        memo = _Memo(value_and_gradient)
        state = {'iteration': 0}

        def on_iteration(xk):
            state['iteration'] += 1
            if callback is not None:
                callback(state['iteration'], xk, memo.value(xk),
                         float(np.linalg.norm(memo.gradient(xk))))

        options = {'maxiter': max_iterations, 'gtol': self.gradient_tolerance}
        if self.method == 'L-BFGS-B':
            options['ftol'] = tolerance

        with np.errstate(over='ignore', invalid='ignore'):
            result = optimize.minimize(
                memo.value,
                x0,
                method=self.method,
                jac=memo.gradient,
                callback=on_iteration,
                options=options,
            )

        x = np.asarray(result.x, dtype=float)
        return OptimizationResult(
            x=x,
            fun=float(memo.value(x)),
            grad=memo.gradient(x),
            n_iterations=int(result.nit),
            converged=bool(result.success),
            message=str(result.message),
        )


def get_optimizer(name: str) -> Optimizer:
    """Optimizer by name: 'bfgs' or 'scipy'."""
    registry = {'bfgs': BFGSOptimizer, 'scipy': ScipyOptimizer}
    if name not in registry:
        raise ValueError(f"Unknown optimizer '{name}'. Choose from {sorted(registry)}")
    return registry[name]()
