"""
Error Taxonomy
==============

Typed failures raised by the simulator, the two estimators and the
comparator. Every error carries the diagnostic state at the point of
failure (last estimate, last objective/log-density value, iteration,
chain id) as attributes so callers can decide whether to retry with
other starting values or more iterations.

Errors must survive a round trip through a worker process, so state is
kept in ``__dict__`` and restored by ``__reduce__``.
"""

from typing import Any, Dict, Optional

import numpy as np


class CfaMemError(Exception):
    """Base class for all estimation-engine failures."""

    def __init__(self, message: str, **state: Any):
        super().__init__(message)
        self.message = message
        self.state: Dict[str, Any] = dict(state)

    def __reduce__(self):
        return (self.__class__, (self.message,), self.__dict__)

    def __getattr__(self, name: str) -> Any:
        # Only reached when normal lookup fails
        state = self.__dict__.get('state', {})
        if name in state:
            return state[name]
        raise AttributeError(name)

    def __str__(self) -> str:
        if not self.state:
            return self.message
        details = ", ".join(
            f"{k}={_short(v)}" for k, v in self.state.items()
        )
        return f"{self.message} ({details})"


def _short(value: Any) -> str:
    if isinstance(value, np.ndarray):
        return f"array(shape={value.shape})"
    if isinstance(value, float):
        return f"{value:.6g}"
    return repr(value)


class InvalidParameter(CfaMemError, ValueError):
    """Malformed simulation configuration, prior override or dataset."""


class SingularCovariance(CfaMemError):
    """Sample covariance matrix is not positive definite."""


class UnderidentifiedModel(CfaMemError):
    """Fewer observed moments than free parameters (df < 0)."""


class ConvergenceFailure(CfaMemError):
    """Optimizer exhausted its iteration budget with a large gradient."""


class NonFiniteLikelihood(CfaMemError):
    """A proposed sampler state produced a NaN or +inf log density."""


class DegenerateChain(CfaMemError):
    """A chain's retained draws have zero variance in some parameter."""


class BudgetExceeded(CfaMemError):
    """A caller-imposed wall-clock deadline passed between iterations."""


class IncompleteSampling(CfaMemError):
    """Too few chains succeeded for the caller's requirements."""


SAMPLER_ERRORS = (NonFiniteLikelihood, DegenerateChain, BudgetExceeded)


def chain_error(error: CfaMemError, chain_id: Optional[int]) -> CfaMemError:
    """Attach the chain id to a sampler error raised inside a worker."""
    if chain_id is not None and 'chain_id' not in error.state:
        error.state['chain_id'] = chain_id
    return error
