"""Synthetic data from the one-factor model."""
from .one_factor_simulator import (
    GenerativeParameters,
    LatentFactorDraw,
    Dataset,
    simulate,
    simulate_from_parameters,
    draw_responses,
)
