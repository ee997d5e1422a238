"""
Tests for the Error Taxonomy
============================
"""

import pickle

import pytest
import numpy as np

from cfa_mem.exceptions import (
    SAMPLER_ERRORS,
    BudgetExceeded,
    CfaMemError,
    ConvergenceFailure,
    DegenerateChain,
    IncompleteSampling,
    InvalidParameter,
    NonFiniteLikelihood,
    SingularCovariance,
    UnderidentifiedModel,
    chain_error,
)


@pytest.mark.unit
class TestErrors:

    @pytest.mark.parametrize("cls", [
        InvalidParameter, SingularCovariance, UnderidentifiedModel, ConvergenceFailure,
        NonFiniteLikelihood, DegenerateChain, BudgetExceeded, IncompleteSampling,
    ])
    def test_hierarchy(self, cls):
        assert issubclass(cls, CfaMemError)

    def test_invalid_parameter_is_value_error(self):
        with pytest.raises(ValueError):
            raise InvalidParameter("bad")

    def test_state_as_attributes(self):
        error = ConvergenceFailure("stuck", iteration=12, last_value=0.5)
        assert error.iteration == 12
        assert error.last_value == 0.5
        with pytest.raises(AttributeError):
            error.chain_id

    def test_str_includes_state(self):
        error = ConvergenceFailure("stuck", iteration=12, last_estimate=np.zeros(3))
        text = str(error)
        assert text.startswith("stuck")
        assert "iteration=12" in text
        assert "shape=(3,)" in text

    def test_pickle_round_trip(self):
        error = NonFiniteLikelihood("nan", last_estimate=np.arange(3.0), chain_id=2)
        restored = pickle.loads(pickle.dumps(error))
        assert type(restored) is NonFiniteLikelihood
        assert restored.message == "nan"
        assert restored.chain_id == 2
        np.testing.assert_array_equal(restored.last_estimate, np.arange(3.0))

    def test_chain_error_sets_id_once(self):
        error = chain_error(DegenerateChain("flat"), 3)
        assert error.chain_id == 3
        chain_error(error, 5)
        assert error.chain_id == 3

    def test_sampler_errors(self):
        assert set(SAMPLER_ERRORS) == {NonFiniteLikelihood, DegenerateChain, BudgetExceeded}
