"""
Tests for Simulation Module
===========================

Tests for one-factor data generation and Dataset validation.
"""

import pytest
import pandas as pd
import numpy as np

from cfa_mem.config import SimulationConfig
from cfa_mem.exceptions import InvalidParameter
from cfa_mem.simulation.one_factor_simulator import (
    Dataset,
    GenerativeParameters,
    LatentFactorDraw,
    draw_responses,
    simulate,
    simulate_from_parameters,
)


@pytest.mark.simulation
class TestSimulate:
    """Tests for simulate(config)."""

    def test_shapes(self, simulated, simulation_config):
        params, latent, dataset = simulated
        assert params.n_items == simulation_config.n_items
        assert latent.n_subjects == simulation_config.n_subjects
        assert dataset.values.shape == (150, 6)

    def test_reproducible_with_seed(self, simulation_config):
        p1, l1, d1 = simulate(simulation_config)
        p2, l2, d2 = simulate(simulation_config)
        np.testing.assert_array_equal(p1.loadings, p2.loadings)
        np.testing.assert_array_equal(l1.scores, l2.scores)
        np.testing.assert_array_equal(d1.values, d2.values)

    def test_different_seeds_differ(self):
        _, _, d1 = simulate(SimulationConfig(n_subjects=50, n_items=4, seed=1))
        _, _, d2 = simulate(SimulationConfig(n_subjects=50, n_items=4, seed=2))
        assert not np.allclose(d1.values, d2.values)

    def test_parameters_within_ranges(self, simulated, simulation_config):
        params, _, _ = simulated
        c = simulation_config
        assert np.all(np.abs(params.loadings - c.loading_center) <= c.loading_spread)
        assert np.all(np.abs(params.intercepts - c.item_mean_center) <= c.item_mean_spread)
        assert np.all(params.residual_variances > 0)

    def test_zero_spread_gives_constant_parameters(self):
        config = SimulationConfig(n_subjects=30, n_items=4, loading_spread=0.0,
                                  error_spread=0.0, item_mean_spread=0.0, seed=3)
        params, _, _ = simulate(config)
        np.testing.assert_allclose(params.loadings, config.loading_center)
        np.testing.assert_allclose(params.residual_variances, config.error_center)
        np.testing.assert_allclose(params.intercepts, config.item_mean_center)

    def test_sample_moments_close_to_population(self):
        config = SimulationConfig(n_subjects=20000, n_items=4, seed=5)
        params, _, dataset = simulate(config)
        np.testing.assert_allclose(dataset.item_means, params.intercepts, atol=0.05)
        np.testing.assert_allclose(dataset.sample_covariance(),
                                   params.implied_covariance(), atol=0.05)

    @pytest.mark.parametrize("overrides", [
        {'error_center': 0.2, 'error_spread': 0.2},
        {'error_center': 0.1, 'error_spread': 0.3},
        {'loading_spread': -0.1},
        {'factor_variance': 0.0},
        {'n_subjects': 0},
        {'n_items': 0},
    ])
    def test_invalid_config_raises(self, overrides):
        base = {'n_subjects': 10, 'n_items': 3, 'seed': 0}
        base.update(overrides)
        with pytest.raises(InvalidParameter):
            simulate(SimulationConfig(**base))

    def test_invalid_config_error_lists_problems(self):
        config = SimulationConfig(n_subjects=10, n_items=3, error_center=0.1, error_spread=0.2)
        with pytest.raises(InvalidParameter) as excinfo:
            simulate(config)
        assert any('error_center' in msg for msg in excinfo.value.errors)

    def test_validate_warns_for_two_items(self):
        result = SimulationConfig(n_subjects=10, n_items=2).validate()
        assert result.is_valid
        assert result.warnings


@pytest.mark.simulation
class TestSimulateFromParameters:
    """Tests for simulation with fixed generating parameters."""

    def test_scenario_shapes(self, scenario_data, scenario_parameters):
        latent, dataset = scenario_data
        assert latent.n_subjects == 200
        assert dataset.n_subjects == 200
        assert dataset.n_items == scenario_parameters.n_items

    def test_reproducible(self, scenario_parameters):
        _, d1 = simulate_from_parameters(scenario_parameters, 50, seed=9)
        _, d2 = simulate_from_parameters(scenario_parameters, 50, seed=9)
        np.testing.assert_array_equal(d1.values, d2.values)

    def test_invalid_subject_count(self, scenario_parameters):
        with pytest.raises(InvalidParameter):
            simulate_from_parameters(scenario_parameters, 0, seed=1)

    def test_draw_responses_zero_noise_limit(self):
        params = GenerativeParameters([1.0, 2.0], [0.0, 1.0], [1e-12, 1e-12])
        latent = LatentFactorDraw([-1.0, 0.0, 2.0])
        dataset = draw_responses(params, latent, np.random.default_rng(0))
        expected = np.array([[-1.0, -1.0], [0.0, 1.0], [2.0, 5.0]])
        np.testing.assert_allclose(dataset.values, expected, atol=1e-4)


@pytest.mark.unit
class TestGenerativeParameters:
    """Tests for ground-truth container validation."""

    def test_arrays_are_read_only(self, scenario_parameters):
        with pytest.raises(ValueError):
            scenario_parameters.loadings[0] = 5.0

    def test_input_is_copied(self):
        loadings = np.array([0.5, 0.6, 0.7])
        params = GenerativeParameters(loadings, np.zeros(3), np.ones(3))
        loadings[0] = 9.0
        assert params.loadings[0] == 0.5

    def test_length_mismatch(self):
        with pytest.raises(InvalidParameter):
            GenerativeParameters([0.5, 0.6], [1.0], [0.3, 0.3])

    def test_nonpositive_residual_variance(self):
        with pytest.raises(InvalidParameter):
            GenerativeParameters([0.5, 0.6], [1.0, 1.0], [0.3, 0.0])

    def test_nonpositive_factor_variance(self):
        with pytest.raises(InvalidParameter):
            GenerativeParameters([0.5], [1.0], [0.3], factor_variance=-1.0)

    def test_implied_covariance(self):
        params = GenerativeParameters([1.0, 2.0], [0.0, 0.0], [0.5, 0.5], factor_variance=2.0)
        expected = np.array([[2.5, 4.0], [4.0, 8.5]])
        np.testing.assert_allclose(params.implied_covariance(), expected)

    def test_to_dataframe(self, scenario_parameters):
        frame = scenario_parameters.to_dataframe()
        assert list(frame.columns) == ['loading', 'intercept', 'residual_variance']
        assert len(frame) == 5


@pytest.mark.unit
class TestDataset:
    """Tests for observed-data validation."""

    def test_rejects_nan(self):
        values = np.ones((5, 3))
        values[:, 1] = np.arange(5)
        values[:, 0] = np.arange(5)
        values[:, 2] = np.arange(5)
        values[2, 1] = np.nan
        with pytest.raises(InvalidParameter):
            Dataset(values)

    def test_rejects_infinite(self):
        values = np.arange(12, dtype=float).reshape(4, 3)
        values[0, 0] = np.inf
        with pytest.raises(InvalidParameter):
            Dataset(values)

    def test_rejects_zero_variance_column(self):
        values = np.arange(12, dtype=float).reshape(4, 3)
        values[:, 2] = 1.0
        with pytest.raises(InvalidParameter) as excinfo:
            Dataset(values)
        assert excinfo.value.zero_variance_items == [2]

    def test_rejects_single_subject(self):
        with pytest.raises(InvalidParameter):
            Dataset(np.array([[1.0, 2.0, 3.0]]))

    def test_rejects_wrong_dimension(self):
        with pytest.raises(InvalidParameter):
            Dataset(np.arange(5, dtype=float))

    def test_from_dataframe(self, scenario_dataset):
        frame = scenario_dataset.to_frame()
        rebuilt = Dataset.from_array(frame)
        np.testing.assert_array_equal(rebuilt.values, scenario_dataset.values)

    def test_to_frame_layout(self, scenario_dataset):
        frame = scenario_dataset.to_frame()
        assert isinstance(frame, pd.DataFrame)
        assert list(frame.columns) == [f'item_{i}' for i in range(5)]
        assert frame.index.name == 'subject'
        assert frame.shape == (200, 5)

    def test_sample_covariance_uses_n_divisor(self, scenario_dataset):
        values = scenario_dataset.values
        centered = values - values.mean(axis=0)
        expected = centered.T @ centered / len(values)
        np.testing.assert_allclose(scenario_dataset.sample_covariance(), expected)

    def test_values_read_only(self, scenario_dataset):
        with pytest.raises(ValueError):
            scenario_dataset.values[0, 0] = 0.0
