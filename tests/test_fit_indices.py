"""
Tests for Fit Indices
=====================
"""

import pytest
import numpy as np
from scipy import stats

from cfa_mem.estimation.fit_indices import (
    comparative_fit_index,
    rmsea_confidence_interval,
    rmsea_point,
    standardized_rmr,
    tucker_lewis_index,
)


@pytest.mark.unit
class TestRMSEA:

    def test_zero_when_chi_square_below_df(self):
        assert rmsea_point(3.0, 5, 200) == 0.0

    def test_point_value(self):
        expected = np.sqrt((20.0 / 5 - 1.0) / 199)
        assert rmsea_point(20.0, 5, 200) == pytest.approx(expected)

    def test_saturated(self):
        assert rmsea_point(0.0, 0, 200) == 0.0
        assert rmsea_confidence_interval(0.0, 0, 200) == (0.0, 0.0)

    @pytest.mark.parametrize("chi_square", [2.0, 8.0, 25.0, 60.0])
    def test_interval_contains_point(self, chi_square):
        lower, upper = rmsea_confidence_interval(chi_square, 5, 200)
        point = rmsea_point(chi_square, 5, 200)
        assert lower <= point <= upper
        assert lower >= 0.0

    def test_interval_bounds_invert_cdf(self):
        chi_square, df, n = 40.0, 5, 300
        lower, upper = rmsea_confidence_interval(chi_square, df, n)
        nc_lower = lower ** 2 * df * (n - 1)
        nc_upper = upper ** 2 * df * (n - 1)
        assert stats.ncx2.cdf(chi_square, df, nc_lower) == pytest.approx(0.95, abs=1e-6)
        assert stats.ncx2.cdf(chi_square, df, nc_upper) == pytest.approx(0.05, abs=1e-6)

    def test_lower_bound_zero_for_good_fit(self):
        lower, upper = rmsea_confidence_interval(3.0, 5, 200)
        assert lower == 0.0
        assert upper > 0.0


@pytest.mark.unit
class TestIncrementalIndices:

    def test_cfi_perfect_fit(self):
        assert comparative_fit_index(3.0, 5, 500.0, 10) == 1.0

    def test_cfi_bounds(self):
        for chi_square in [0.0, 10.0, 100.0, 1000.0]:
            cfi = comparative_fit_index(chi_square, 5, 500.0, 10)
            assert 0.0 <= cfi <= 1.0

    def test_cfi_degenerate_denominator(self):
        assert comparative_fit_index(0.0, 0, 0.0, 0) == 1.0

    def test_tli_value(self):
        expected = (500.0 / 10 - 20.0 / 5) / (500.0 / 10 - 1.0)
        assert tucker_lewis_index(20.0, 5, 500.0, 10) == pytest.approx(expected)

    def test_tli_saturated(self):
        assert tucker_lewis_index(0.0, 0, 500.0, 10) == 1.0


@pytest.mark.unit
class TestSRMR:

    def test_zero_for_exact_fit(self):
        S = np.array([[1.0, 0.5], [0.5, 2.0]])
        assert standardized_rmr(S, S) == 0.0

    def test_value(self):
        S = np.eye(2)
        implied = np.array([[1.0, 0.2], [0.2, 1.0]])
        # three lower-triangle entries, one residual of 0.2
        assert standardized_rmr(S, implied) == pytest.approx(np.sqrt(0.04 / 3))
