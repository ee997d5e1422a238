"""
Tests for the Hierarchical Mixed Model
======================================

Tests for the parameter layout, the log posterior and its gradient.
"""

import pytest
import numpy as np
from scipy import stats

from cfa_mem.config import IdentificationAnchor, PriorConfig
from cfa_mem.exceptions import NonFiniteLikelihood
from cfa_mem.models.hierarchical import (
    HYPERPARAMETER_NAMES,
    HierarchicalModel,
    ParameterLayout,
)


def central_difference(f, x, h=1e-6):
    grad = np.zeros_like(x)
    for j in range(len(x)):
        up = x.copy()
        down = x.copy()
        up[j] += h
        down[j] -= h
        grad[j] = (f(up) - f(down)) / (2 * h)
    return grad


@pytest.fixture
def tiny_values():
    rng = np.random.default_rng(3)
    theta = rng.standard_normal(6)
    return 1.0 + np.outer(theta, [0.8, 0.6, 0.7]) + 0.5 * rng.standard_normal((6, 3))


@pytest.mark.unit
class TestParameterLayout:

    def test_per_item_dim(self):
        layout = ParameterLayout(n_subjects=10, n_items=4, n_residual=4)
        assert layout.dim == 10 + 4 + 4 + 4 + 4
        assert len(layout.names()) == layout.dim

    def test_shared_dim(self):
        layout = ParameterLayout(n_subjects=10, n_items=4, n_residual=1)
        assert layout.dim == 10 + 4 + 4 + 1 + 4
        assert layout.names()[-4:] == HYPERPARAMETER_NAMES

    def test_constrain_exponentiates_scales(self):
        layout = ParameterLayout(2, 2, 2)
        z = np.zeros(layout.dim)
        blocks = layout.constrain(z)
        np.testing.assert_allclose(blocks['residual_sd'], 1.0)
        assert blocks['loading_sd'] == 1.0
        assert blocks['loading_mean'] == 0.0

    def test_constrained_matrix_stack(self):
        layout = ParameterLayout(2, 2, 1)
        z = np.zeros((3, layout.dim))
        out = layout.constrained_matrix(z)
        assert out.shape == z.shape
        np.testing.assert_allclose(out[:, layout.log_residual_sd], 1.0)
        np.testing.assert_allclose(out[:, layout.latent], 0.0)


@pytest.mark.sampler
class TestHierarchicalModel:

    @pytest.mark.parametrize("structure", ['per_item', 'shared'])
    def test_gradient_matches_finite_differences(self, tiny_values, structure):
        model = HierarchicalModel(tiny_values, PriorConfig(residual_structure=structure))
        rng = np.random.default_rng(0)
        z = model.initial_position() + 0.2 * rng.standard_normal(model.dim)
        _, grad = model.log_density_and_gradient(z)
        numeric = central_difference(model.log_density, z)
        np.testing.assert_allclose(grad, numeric, rtol=1e-4, atol=1e-5)

    def test_log_density_matches_direct_computation(self, tiny_values):
        priors = PriorConfig(anchor=IdentificationAnchor(2.0))
        model = HierarchicalModel(tiny_values, priors)
        lay = model.layout
        rng = np.random.default_rng(1)
        z = model.initial_position() + 0.1 * rng.standard_normal(model.dim)
        z_shift = z.copy()
        z_shift[lay.latent] += 0.3

        b = lay.constrain(z)
        b_shift = lay.constrain(z_shift)

        def direct(blocks):
            mean = blocks['intercepts'][None, :] + np.outer(blocks['latent'], blocks['loadings'])
            loglik = stats.norm.logpdf(tiny_values, mean, blocks['residual_sd'][None, :]).sum()
            latent = stats.norm.logpdf(blocks['latent'], 0.0, priors.latent_sd).sum()
            return loglik + latent

        # Only the likelihood and latent prior depend on the latent block,
        # so differences match up to normalizing constants.
        expected = direct(b_shift) - direct(b)
        actual = model.log_density(z_shift) - model.log_density(z)
        assert actual == pytest.approx(expected, rel=1e-8)

    def test_half_t_prior_shape(self, tiny_values):
        model = HierarchicalModel(tiny_values, PriorConfig())
        lay = model.layout
        z = model.initial_position()
        h = lay.hyper_start

        def with_loading_sd(value):
            w = z.copy()
            w[h + 1] = np.log(value)
            return model.log_density(w)

        # Difference in log_sd beyond the Normal term: half-t density + Jacobian
        lam_dev = z[lay.loadings] - z[h]
        priors = model.priors

        def expected(value):
            normal = stats.norm.logpdf(lam_dev, 0.0, value).sum()
            half_t = stats.t.logpdf(value, priors.half_t_df, scale=priors.loading_sd_scale)
            return normal + half_t + np.log(value)

        diff = with_loading_sd(0.7) - with_loading_sd(0.3)
        assert diff == pytest.approx(expected(0.7) - expected(0.3), rel=1e-8)

    def test_infinite_position_is_rejection(self, tiny_values):
        model = HierarchicalModel(tiny_values, PriorConfig())
        z = model.initial_position()
        z[0] = np.inf
        value, grad = model.log_density_and_gradient(z)
        assert value == -np.inf
        assert grad.shape == (model.dim,)

    def test_overflowing_scale_is_rejection(self, tiny_values):
        model = HierarchicalModel(tiny_values, PriorConfig())
        z = model.initial_position()
        z[model.layout.log_residual_sd] = -800.0
        value, _ = model.log_density_and_gradient(z)
        assert value == -np.inf

    def test_nan_position_raises(self, tiny_values):
        model = HierarchicalModel(tiny_values, PriorConfig())
        z = model.initial_position()
        z[3] = np.nan
        with pytest.raises(NonFiniteLikelihood) as excinfo:
            model.log_density(z)
        assert excinfo.value.last_estimate.shape == (model.dim,)

    def test_initial_position_finite(self, tiny_values):
        for structure in ('per_item', 'shared'):
            model = HierarchicalModel(tiny_values, PriorConfig(residual_structure=structure))
            z = model.initial_position()
            assert z.shape == (model.dim,)
            assert np.isfinite(model.log_density(z))
            assert z[model.layout.loadings].sum() >= 0
