"""
Tests for the Comparator
========================

Sign alignment, refusals and recovery of the generating parameters by
both estimators.
"""

import dataclasses

import pytest
import numpy as np
import pandas as pd

from cfa_mem.analysis.comparator import ComparisonTable, compare, congruence
from cfa_mem.config import IdentificationAnchor, SimulationConfig
from cfa_mem.estimation.bayes_mem import sample_posterior
from cfa_mem.estimation.ml_cfa import fit_ml_cfa
from cfa_mem.exceptions import IncompleteSampling, InvalidParameter
from cfa_mem.simulation.one_factor_simulator import GenerativeParameters, simulate


@pytest.fixture(scope="module")
def scenario_table(scenario_parameters, scenario_latent, scenario_ml_fit, quick_posterior):
    return compare(scenario_parameters, scenario_latent, scenario_ml_fit, quick_posterior)


@pytest.mark.unit
class TestCongruence:

    def test_identical(self):
        assert congruence(np.array([1.0, 2.0]), np.array([1.0, 2.0])) == pytest.approx(1.0)

    def test_opposite(self):
        assert congruence(np.array([1.0, 2.0]), np.array([-1.0, -2.0])) == pytest.approx(-1.0)

    def test_uncentred(self):
        # Pearson r would be -1; congruence stays positive for same-sign vectors
        assert congruence(np.array([1.0, 2.0]), np.array([2.0, 1.0])) > 0

    def test_zero_vector(self):
        assert congruence(np.zeros(3), np.ones(3)) == 0.0


@pytest.mark.integration
class TestCompare:

    def test_table_layout(self, scenario_table):
        assert isinstance(scenario_table, ComparisonTable)
        assert list(scenario_table.items.columns) == [
            'true_loading', 'true_intercept', 'true_residual_variance',
            'ml_loading', 'ml_intercept', 'ml_residual_variance',
            'bayes_loading', 'bayes_intercept', 'bayes_residual_variance',
        ]
        assert list(scenario_table.subjects.columns) == ['true_latent', 'ml_latent', 'bayes_latent']
        assert len(scenario_table.items) == 5
        assert len(scenario_table.subjects) == 200
        assert scenario_table.n_chains == 2

    def test_ml_and_bayes_agree(self, scenario_table):
        items = scenario_table.items
        np.testing.assert_allclose(items['ml_loading'], items['bayes_loading'], atol=0.1)
        np.testing.assert_allclose(items['ml_intercept'], items['bayes_intercept'], atol=0.05)
        assert scenario_table.correlation('latent', 'ml', 'bayes') > 0.95

    def test_aligned_loadings_positive(self, scenario_table):
        assert np.all(scenario_table.items['ml_loading'] > 0)
        assert np.all(scenario_table.items['bayes_loading'] > 0)

    def test_sign_flip_resolved(self, scenario_parameters, scenario_latent,
                                scenario_ml_fit, quick_posterior, scenario_table):
        flipped_ml = dataclasses.replace(
            scenario_ml_fit,
            loadings=-scenario_ml_fit.loadings,
            factor_scores=-scenario_ml_fit.factor_scores,
        )
        table = compare(scenario_parameters, scenario_latent, flipped_ml, quick_posterior)
        assert table.ml_sign_flipped != scenario_table.ml_sign_flipped
        pd.testing.assert_frame_equal(table.items, scenario_table.items)
        pd.testing.assert_frame_equal(table.subjects, scenario_table.subjects)

    def test_intercepts_and_residuals_never_flipped(self, scenario_table, scenario_ml_fit):
        np.testing.assert_array_equal(scenario_table.items['ml_intercept'], scenario_ml_fit.intercepts)
        np.testing.assert_array_equal(scenario_table.items['ml_residual_variance'],
                                      scenario_ml_fit.residual_variances)

    def test_recovery_frame(self, scenario_table):
        recovery = scenario_table.recovery()
        assert list(recovery.columns) == ['quantity', 'estimate', 'reference', 'pearson_r', 'mae']
        assert len(recovery) == 11
        intercepts = recovery[recovery['quantity'] == 'intercept']
        assert np.all(intercepts['pearson_r'] > 0.99)
        assert np.all(intercepts['mae'] < 0.15)

    def test_too_few_chains(self, scenario_parameters, scenario_latent, scenario_ml_fit, quick_posterior):
        with pytest.raises(IncompleteSampling) as excinfo:
            compare(scenario_parameters, scenario_latent, scenario_ml_fit, quick_posterior, min_chains=3)
        assert excinfo.value.successful_chains == [0, 1]

    def test_anchor_mismatch(self, scenario_parameters, scenario_latent, scenario_ml_fit, quick_posterior):
        other = dataclasses.replace(scenario_ml_fit, anchor=IdentificationAnchor(2.0))
        with pytest.raises(InvalidParameter):
            compare(scenario_parameters, scenario_latent, other, quick_posterior)

    def test_item_count_mismatch(self, scenario_latent, scenario_ml_fit, quick_posterior):
        params = GenerativeParameters([0.5] * 4, [1.0] * 4, [0.3] * 4)
        with pytest.raises(InvalidParameter):
            compare(params, scenario_latent, scenario_ml_fit, quick_posterior)

    def test_to_dict(self, scenario_table):
        assert set(scenario_table.to_dict()) == {'items', 'subjects'}


@pytest.mark.slow
@pytest.mark.integration
class TestRecovery:
    """Both estimators track the truth for independently seeded datasets."""

    @pytest.mark.parametrize("seed", [1, 2])
    def test_loadings_and_intercepts_recovered(self, seed):
        config = SimulationConfig(n_subjects=1000, n_items=8, loading_center=0.8,
                                  loading_spread=0.3, seed=seed)
        parameters, latent, dataset = simulate(config)
        anchor = IdentificationAnchor(config.factor_variance)

        ml = fit_ml_cfa(dataset, anchor=anchor)
        posterior = sample_posterior(dataset, n_chains=2, n_warmup=300, n_draws=300, seed=seed)
        table = compare(parameters, latent, ml, posterior)

        for quantity in ('loading', 'intercept'):
            assert table.correlation(quantity, 'ml') > 0.9
            assert table.correlation(quantity, 'bayes') > 0.9
        assert table.correlation('latent', 'ml') > 0.9
        assert table.correlation('latent', 'bayes') > 0.9
