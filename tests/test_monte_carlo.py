"""
Tests for the Monte Carlo Recovery Study
========================================
"""

import pytest
import numpy as np

from cfa_mem.validation.monte_carlo import (
    RecoveryStudy,
    ReplicationTask,
    compute_bias,
    compute_coverage,
    compute_rmse,
    parameter_names,
    run_replication,
    true_vector,
)


@pytest.mark.unit
class TestMetrics:

    def test_bias_ignores_nan(self):
        assert compute_bias(np.array([1.0, 3.0, np.nan]), 1.5) == pytest.approx(0.5)

    def test_bias_all_nan(self):
        assert np.isnan(compute_bias(np.array([np.nan, np.nan]), 1.0))

    def test_rmse(self):
        assert compute_rmse(np.array([1.0, 3.0]), 2.0) == pytest.approx(1.0)

    def test_coverage(self):
        estimates = np.array([1.0, 1.0, 5.0])
        std_errors = np.array([0.5, 0.5, 0.5])
        assert compute_coverage(estimates, std_errors, 1.2) == pytest.approx(2 / 3)

    def test_coverage_skips_invalid_se(self):
        estimates = np.array([1.0, 1.0])
        std_errors = np.array([np.nan, 0.0])
        assert np.isnan(compute_coverage(estimates, std_errors, 1.0))

    def test_parameter_names(self, scenario_parameters):
        names = parameter_names(5)
        assert len(names) == 15
        assert names[0] == 'loading[0]'
        assert names[-1] == 'residual_variance[4]'
        assert len(true_vector(scenario_parameters)) == 15


@pytest.mark.estimation
class TestReplication:

    def test_ml_only(self, scenario_parameters):
        task = ReplicationTask(rep=0, sample_size=150, seed=3, parameters=scenario_parameters,
                               run_bayes=False, priors=None, n_chains=1, n_warmup=0, n_draws=1)
        out = run_replication(task)
        assert set(out) == {'ml'}
        estimates, std_errors, converged, loading_r = out['ml']
        assert converged
        assert estimates.shape == (15,)
        assert np.all(np.isfinite(std_errors))
        assert np.all(estimates[:5] > 0)

    def test_failed_fit_reports_nan(self):
        from cfa_mem.simulation.one_factor_simulator import GenerativeParameters
        params = GenerativeParameters([0.5, 0.6], [0.0, 0.0], [0.3, 0.3])
        task = ReplicationTask(rep=0, sample_size=50, seed=1, parameters=params,
                               run_bayes=False, priors=None, n_chains=1, n_warmup=0, n_draws=1)
        with pytest.warns(UserWarning):
            out = run_replication(task)
        estimates, _, converged, _ = out['ml']
        assert not converged
        assert np.all(np.isnan(estimates))


@pytest.mark.estimation
class TestRecoveryStudy:

    @pytest.fixture(scope="class")
    def study_result(self, scenario_parameters):
        study = RecoveryStudy(n_replications=4, sample_sizes=[200, 800], seed=7, verbose=False)
        return study.run(scenario_parameters)

    def test_summary_table(self, study_result):
        table = study_result.summary_table()
        assert len(table) == 2 * 15
        assert set(table['method']) == {'ml'}
        assert set(table['sample_size']) == {200, 800}

    def test_all_converged(self, study_result):
        for sample_size in (200, 800):
            assert study_result.convergence['ml'][sample_size].all()

    def test_rmse_shrinks_with_sample_size(self, study_result):
        small = np.mean(list(study_result.rmse['ml'][200].values()))
        large = np.mean(list(study_result.rmse['ml'][800].values()))
        assert large < small

    def test_loading_bias_small(self, study_result):
        bias = study_result.bias['ml'][800]
        assert all(abs(bias[f'loading[{i}]']) < 0.1 for i in range(5))

    def test_coverage_in_range(self, study_result):
        table = study_result.summary_table()
        coverage = table['coverage_95'].dropna()
        assert len(coverage) == 30
        assert coverage.between(0.0, 1.0).all()

    def test_correlation_table(self, study_result):
        table = study_result.correlation_table()
        assert len(table) == 2
        assert (table['convergence_rate'] == 1.0).all()
