"""Tests for handing weights to a ranking method."""

import numpy as np
import pandas as pd
import pytest

from spatWeights import RankingMethod, generate_weights, rescale, run_ranking


class _Recorder:
    def __init__(self, accepts_weights):
        self.accepts_weights = accepts_weights
        self.calls = []

    def rank(self, observations, coords, *, weights=None, covariates=None):
        self.calls.append({"observations": observations, "weights": weights, "covariates": covariates})
        names = [f"entity_{i}" for i in range(observations.shape[0])]
        return pd.DataFrame({"score": observations.var(axis=1)}, index=names)


@pytest.fixture
def result(grid_coords, degenerate_matrix):
    return generate_weights(degenerate_matrix, grid_coords, k=5)


class TestRunRanking:
    def test_protocol(self):
        assert isinstance(_Recorder(True), RankingMethod)

    def test_weight_aware_method(self, result, degenerate_matrix, grid_coords):
        method = _Recorder(True)
        ranked = run_ranking(method, result, degenerate_matrix, grid_coords)
        call = method.calls[0]
        np.testing.assert_array_equal(call["observations"], degenerate_matrix)
        assert call["weights"] is result.weights
        assert "weights_converged" in ranked.columns
        assert ranked.loc["entity_2", "weights_converged"] == False  # noqa: E712

    def test_rescaled_inputs(self, result, degenerate_matrix, grid_coords):
        method = _Recorder(False)
        X = np.column_stack([np.ones(20), grid_coords[:, 0]])
        ranked = run_ranking(method, result, degenerate_matrix, grid_coords, covariates=X)
        call = method.calls[0]
        assert call["weights"] is None
        expected_obs, expected_cov = rescale(degenerate_matrix, X, result.weights)
        np.testing.assert_allclose(call["observations"], expected_obs)
        np.testing.assert_allclose(call["covariates"], expected_cov)
        assert list(ranked.columns[:1]) == ["score"]
