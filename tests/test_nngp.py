"""Unit tests for per-entity NNGP fits."""

import numpy as np
import pytest
import torch

from spatWeights import EntityFit, FitDivergence, ShapeMismatch, build_neighbor_index, fit_entity
from spatWeights.nngp import _VecchiaLikelihood
from tests.conftest import make_grid


@pytest.fixture
def index(scattered_coords):
    return build_neighbor_index(scattered_coords, 8)


class TestLikelihood:
    def test_full_conditioning_matches_dense_gaussian(self, grid_coords):
        # with k = n - 1 every location conditions on all earlier ones,
        # so the Vecchia likelihood is the exact Gaussian likelihood
        n = grid_coords.shape[0]
        index = build_neighbor_index(grid_coords, n - 1)
        rng = np.random.default_rng(0)
        y = rng.normal(1.0, 1.0, size=n)
        lik = _VecchiaLikelihood(index.to_ordered(y), index, "cpu")

        sigma2, tau2, phi = 0.8, 0.3, 1.7
        theta = torch.tensor(np.log([sigma2, tau2, phi]), dtype=torch.float64)
        nll, beta = lik.profile(theta)

        ordered = grid_coords[index.order]
        d = np.linalg.norm(ordered[:, None, :] - ordered[None, :, :], axis=2)
        C = sigma2 * np.exp(-d / phi) + tau2 * np.eye(n)
        Cinv = np.linalg.inv(C)
        yo = index.to_ordered(y)
        ones = np.ones(n)
        beta_gls = ones @ Cinv @ yo / (ones @ Cinv @ ones)
        r = yo - beta_gls
        _, logdet = np.linalg.slogdet(C)
        nll_dense = 0.5 * (logdet + r @ Cinv @ r + n * np.log(2 * np.pi))

        assert float(beta) == pytest.approx(beta_gls, rel=1e-8)
        assert float(nll) == pytest.approx(nll_dense, rel=1e-8)

    def test_objective_gradient(self, index, spatial_signal):
        lik = _VecchiaLikelihood(index.to_ordered(spatial_signal), index, "cpu")
        theta = np.log([0.5, 0.1, 2.0])
        f0, grad = lik.objective(theta)
        eps = 1e-6
        for j in range(3):
            step = np.zeros(3)
            step[j] = eps
            fd = (lik.objective(theta + step)[0] - lik.objective(theta - step)[0]) / (2 * eps)
            assert grad[j] == pytest.approx(fd, rel=1e-4, abs=1e-6)
        assert np.isfinite(f0)


class TestFitEntity:
    def test_fit_returns_converged_estimates(self, index, spatial_signal):
        fit = fit_entity(spatial_signal, index)
        assert isinstance(fit, EntityFit)
        assert fit.converged
        assert fit.status == "converged"
        assert fit.mean.shape == spatial_signal.shape
        assert np.all(np.isfinite(fit.mean))
        assert fit.variance > 0
        assert fit.spatial_variance > 0
        assert fit.length_scale > 0
        assert np.corrcoef(fit.mean, spatial_signal)[0, 1] > 0.7
        assert fit.mean_level == pytest.approx(float(np.mean(fit.mean)))

    def test_nugget_tracks_sampling_variance(self):
        # log1p Poisson: Var[log1p(N)] ~= lam / (1 + lam)^2 around a smooth mean
        coords = make_grid(10, 10)
        lam = 30.0 * np.exp(coords[:, 0] / 9.0)
        rng = np.random.default_rng(21)
        y = np.log1p(rng.poisson(lam).astype(float))
        fit = fit_entity(y, build_neighbor_index(coords, 8), stabilize=False)
        expected = float(np.mean(lam / (1.0 + lam) ** 2))
        assert fit.converged
        assert expected / 10.0 < fit.variance < expected * 10.0

    def test_deterministic(self, index, spatial_signal):
        a = fit_entity(spatial_signal, index)
        b = fit_entity(spatial_signal, index)
        np.testing.assert_array_equal(a.mean, b.mean)
        assert a.variance == b.variance
        assert a.length_scale == b.length_scale

    def test_restarts_are_seeded(self, index, spatial_signal):
        a = fit_entity(spatial_signal, index, n_restarts=2, rng=np.random.default_rng([0, 4]))
        b = fit_entity(spatial_signal, index, n_restarts=2, rng=np.random.default_rng([0, 4]))
        np.testing.assert_array_equal(a.mean, b.mean)
        assert a.variance == b.variance

    def test_restarts_need_rng(self, index, spatial_signal):
        with pytest.raises(ValueError):
            fit_entity(spatial_signal, index, n_restarts=1)

    def test_stabilize_clamps_variance(self, index, spatial_signal):
        raw = fit_entity(spatial_signal, index, stabilize=False, variance_floor=1e6)
        clamped = fit_entity(spatial_signal, index, stabilize=True, variance_floor=1e6)
        assert raw.variance < 1e6
        assert clamped.variance == 1e6
        np.testing.assert_array_equal(raw.mean, clamped.mean)

    def test_constant_entity_diverges(self, index):
        with pytest.raises(FitDivergence) as excinfo:
            fit_entity(np.full(index.n_locations, 2.0), index)
        assert "zero variance" in excinfo.value.reason

    def test_non_finite_entity_diverges(self, index, spatial_signal):
        y = spatial_signal.copy()
        y[3] = np.nan
        with pytest.raises(FitDivergence):
            fit_entity(y, index)

    def test_iteration_budget(self, index, spatial_signal):
        with pytest.raises(FitDivergence) as excinfo:
            fit_entity(spatial_signal, index, max_iter=1)
        assert excinfo.value.n_iter >= 1

    def test_length_mismatch(self, index):
        with pytest.raises(ShapeMismatch):
            fit_entity(np.ones(index.n_locations + 1), index)


class TestFlaggedFit:
    def test_flagged_record(self):
        fit = EntityFit.flagged(7, "zero variance", n_iter=3)
        assert not fit.converged
        assert fit.status == "zero variance"
        assert fit.mean.shape == (7,)
        assert np.all(np.isnan(fit.mean))
        assert np.isnan(fit.variance)
        assert fit.n_iter == 3
