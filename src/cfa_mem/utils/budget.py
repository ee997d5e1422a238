"""
Wall-Clock Budgets
==================

A ``Deadline`` is checked between optimizer iterations and between sampler
transitions. It never interrupts a single density or gradient evaluation.
"""

import time
from typing import Optional

from ..exceptions import BudgetExceeded


class Deadline:
    """Absolute wall-clock deadline created from a budget in seconds."""

    def __init__(self, seconds: float):
        if seconds <= 0:
            raise ValueError("Budget must be positive")
        self.seconds = float(seconds)
        self.expires_at = time.time() + self.seconds

    @classmethod
    def coerce(cls, value) -> Optional['Deadline']:
        """Accept None, a Deadline, or a number of seconds."""
        if value is None or isinstance(value, Deadline):
            return value
        return cls(float(value))

    @property
    def remaining(self) -> float:
        return self.expires_at - time.time()

    @property
    def expired(self) -> bool:
        return self.remaining <= 0

    def check(self, **state) -> None:
        """Raise BudgetExceeded carrying ``state`` if the deadline passed."""
        if self.expired:
            raise BudgetExceeded(
                f"Wall-clock budget of {self.seconds:.1f}s exceeded",
                **state,
            )

    def __repr__(self) -> str:
        return f"Deadline(seconds={self.seconds}, remaining={self.remaining:.2f})"
