"""Validation module: Monte Carlo recovery studies."""
from .monte_carlo import RecoveryStudy, RecoveryResult
