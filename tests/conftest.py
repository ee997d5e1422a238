"""
Pytest Configuration and Shared Fixtures
=========================================

Common fixtures for the one-factor estimation tests: the reference
scenario, simulated datasets and session-scoped fitted results.
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add src to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / 'src'))

from cfa_mem.config import IdentificationAnchor, PriorConfig, SimulationConfig
from cfa_mem.simulation.one_factor_simulator import (
    GenerativeParameters,
    simulate,
    simulate_from_parameters,
)


# =============================================================================
# Scenario Fixtures
# =============================================================================

SCENARIO_LOADINGS = [0.5, 0.6, 0.7, 0.5, 0.6]
SCENARIO_INTERCEPTS = [1.0, 2.0, 3.0, 2.0, 1.0]
SCENARIO_RESIDUAL_VARIANCE = 0.3
SCENARIO_SEED = 42
SCENARIO_SUBJECTS = 200


@pytest.fixture(scope="session")
def project_root():
    """Return project root path."""
    return PROJECT_ROOT


@pytest.fixture(scope="session")
def anchor():
    return IdentificationAnchor(1.0)


@pytest.fixture(scope="session")
def scenario_parameters():
    """Generating parameters of the reference scenario."""
    return GenerativeParameters(
        loadings=SCENARIO_LOADINGS,
        intercepts=SCENARIO_INTERCEPTS,
        residual_variances=[SCENARIO_RESIDUAL_VARIANCE] * 5,
        factor_variance=1.0,
    )


@pytest.fixture(scope="session")
def scenario_data(scenario_parameters):
    """(LatentFactorDraw, Dataset) for 200 subjects x 5 items, seed 42."""
    return simulate_from_parameters(scenario_parameters, SCENARIO_SUBJECTS, SCENARIO_SEED)


@pytest.fixture(scope="session")
def scenario_dataset(scenario_data):
    return scenario_data[1]


@pytest.fixture(scope="session")
def scenario_latent(scenario_data):
    return scenario_data[0]


@pytest.fixture(scope="session")
def scenario_ml_fit(scenario_dataset, anchor):
    """ML-CFA fit of the reference scenario (fitted once per session)."""
    from cfa_mem.estimation.ml_cfa import fit_ml_cfa
    return fit_ml_cfa(scenario_dataset, anchor=anchor)


@pytest.fixture(scope="session")
def quick_posterior(scenario_dataset, anchor):
    """Short 2-chain NUTS run on the reference scenario."""
    from cfa_mem.estimation.bayes_mem import sample_posterior
    return sample_posterior(
        scenario_dataset,
        priors=PriorConfig(anchor=anchor),
        n_chains=2,
        n_warmup=300,
        n_draws=200,
        seed=7,
    )


# =============================================================================
# Data Fixtures
# =============================================================================

@pytest.fixture
def simulation_config():
    """Small simulator configuration."""
    return SimulationConfig(n_subjects=150, n_items=6, seed=123)


@pytest.fixture
def small_dataset():
    """Small dataset for fast sampler tests (40 subjects x 4 items)."""
    params = GenerativeParameters(
        loadings=[0.8, 0.7, 0.9, 0.6],
        intercepts=[0.0, 1.0, -1.0, 0.5],
        residual_variances=[0.4, 0.5, 0.3, 0.5],
    )
    return simulate_from_parameters(params, 40, seed=11)[1]


@pytest.fixture
def simulated(simulation_config):
    """(GenerativeParameters, LatentFactorDraw, Dataset) from the simulator."""
    return simulate(simulation_config)


# =============================================================================
# Helper Functions
# =============================================================================

class GaussianTarget:
    """Independent normal target for kernel tests."""

    def __init__(self, mean, sd):
        self.mean = np.asarray(mean, dtype=float)
        self.sd = np.asarray(sd, dtype=float)

    @property
    def dim(self):
        return len(self.mean)

    def log_density(self, z):
        return float(-0.5 * np.sum(((z - self.mean) / self.sd) ** 2))

    def log_density_and_gradient(self, z):
        return self.log_density(z), -(z - self.mean) / self.sd ** 2


@pytest.fixture
def gaussian_target():
    return GaussianTarget([1.0, -2.0, 0.5], [1.0, 0.5, 2.0])
