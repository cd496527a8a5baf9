"""Per-entity nearest-neighbour Gaussian process (NNGP) fits.

Each entity's transformed observation vector is modelled as

    y(s) = beta + w(s) + eps(s),
    w ~ GP(0, sigma2 * exp(-d / phi)),   eps ~ N(0, tau2)

and the dense covariance is replaced by the Vecchia approximation defined by
a :class:`~spatWeights.neighbors.NeighborIndex`. For ordered location i with
neighbours N(i):

    b_i = C[i, N] C[N, N]^-1,    F_i = C[i, i] - b_i C[N, i]
    -log L = 1/2 sum_i [ log F_i + (r_i - b_i r_N)^2 / F_i ] + n/2 log(2 pi)

with r = y - beta and beta profiled out by generalised least squares.
(sigma2, tau2, phi) are optimised on the log scale with L-BFGS-B; gradients
come from torch autograd. The fit is a pure function of its inputs, so it can
run in any worker without coordination.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import torch
from scipy.optimize import minimize

from .exceptions import FitDivergence, ShapeMismatch
from .neighbors import NeighborIndex
from .utils import as_1d_float_array, choose_device

_LOG_2PI = math.log(2.0 * math.pi)


@dataclass(frozen=True)
class EntityFit:
    """Result of fitting one entity.

    Attributes
    ----------
    mean:
        Fitted (smoothed) value per location, in the original location order.
    variance:
        Residual (nugget) variance tau2.
    spatial_variance:
        Spatial process variance sigma2.
    length_scale:
        Exponential covariance range phi.
    intercept:
        GLS estimate of beta.
    converged:
        False for flagged entities; their estimates are NaN.
    status:
        'converged' or the reason the entity was flagged.
    """

    mean: np.ndarray
    variance: float
    spatial_variance: float
    length_scale: float
    intercept: float
    converged: bool = True
    status: str = "converged"
    n_iter: int = 0
    neg_loglik: float = float("nan")

    @property
    def mean_level(self) -> float:
        return float(np.mean(self.mean))

    @classmethod
    def flagged(cls, n_locations: int, reason: str, n_iter: int = 0) -> "EntityFit":
        nan = float("nan")
        return cls(
            mean=np.full(int(n_locations), nan),
            variance=nan,
            spatial_variance=nan,
            length_scale=nan,
            intercept=nan,
            converged=False,
            status=reason,
            n_iter=int(n_iter),
        )


class _VecchiaLikelihood:
    """Tensors for one entity on one neighbour index."""

    def __init__(self, y_ordered: np.ndarray, index: NeighborIndex, device: str):
        kw = dict(dtype=torch.float64, device=device)
        mask = torch.from_numpy(index.mask).to(device)
        safe = torch.from_numpy(np.where(index.mask, index.neighbors, 0)).to(device)

        self.n = int(y_ordered.shape[0])
        self.k = index.k
        self.mask = mask
        self.pair_mask = mask.unsqueeze(2) & mask.unsqueeze(1)
        self.eye = torch.eye(self.k, **kw).expand(self.n, self.k, self.k)
        self.d_to = torch.from_numpy(index.dist_to_neighbors).to(**kw)
        self.d_nn = torch.from_numpy(index.dist_between_neighbors).to(**kw)
        self.y = torch.from_numpy(np.ascontiguousarray(y_ordered)).to(**kw)
        self.y_nb = torch.where(mask, self.y[safe], torch.zeros((), **kw))
        self.one_nb = mask.to(torch.float64)

    def _blocks(self, sigma2, tau2, phi):
        c = torch.where(self.mask, sigma2 * torch.exp(-self.d_to / phi), torch.zeros_like(self.d_to))
        c_nn = sigma2 * torch.exp(-self.d_nn / phi) + tau2 * self.eye
        c_nn = torch.where(self.pair_mask, c_nn, self.eye)
        return c, c_nn

    def conditionals(self, theta: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        sigma2, tau2, phi = torch.exp(theta[0]), torch.exp(theta[1]), torch.exp(theta[2])
        c, c_nn = self._blocks(sigma2, tau2, phi)
        b = torch.linalg.solve(c_nn, c.unsqueeze(-1)).squeeze(-1)
        F = sigma2 + tau2 - (b * c).sum(dim=1)
        return b, F

    def profile(self, theta: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """Return (negative log-likelihood, GLS beta)."""
        b, F = self.conditionals(theta)
        sqrt_f = torch.sqrt(F)
        ry = (self.y - (b * self.y_nb).sum(dim=1)) / sqrt_f
        rx = (1.0 - (b * self.one_nb).sum(dim=1)) / sqrt_f
        beta = (rx * ry).sum() / (rx * rx).sum()
        resid = ry - beta * rx
        nll = 0.5 * (torch.log(F).sum() + (resid * resid).sum() + self.n * _LOG_2PI)
        return nll, beta

    def objective(self, theta_np: np.ndarray) -> Tuple[float, np.ndarray]:
        theta = torch.tensor(theta_np, dtype=torch.float64, device=self.y.device, requires_grad=True)
        nll, _ = self.profile(theta)
        if not torch.isfinite(nll):
            return float("inf"), np.zeros_like(theta_np)
        nll.backward()
        grad = theta.grad.detach().cpu().numpy()
        if not np.all(np.isfinite(grad)):
            return float("inf"), np.zeros_like(theta_np)
        return float(nll.item()), grad

    @torch.no_grad()
    def smooth(self, theta: torch.Tensor, beta: torch.Tensor) -> torch.Tensor:
        """Kriging smoother E[beta + w(s_i) | y_i, y_N(i)] at every location."""
        sigma2, tau2, phi = torch.exp(theta[0]), torch.exp(theta[1]), torch.exp(theta[2])
        c, c_nn = self._blocks(sigma2, tau2, phi)
        n, k = self.n, self.k

        top = torch.cat([(sigma2 + tau2).expand(n, 1), c], dim=1).unsqueeze(1)
        bottom = torch.cat([c.unsqueeze(2), c_nn], dim=2)
        c_a = torch.cat([top, bottom], dim=1)  # (n, k+1, k+1)

        cross = torch.cat([sigma2.expand(n, 1), c], dim=1)
        r_a = torch.cat([(self.y - beta).unsqueeze(1), torch.where(self.mask, self.y_nb - beta, self.y_nb)], dim=1)

        alpha = torch.linalg.solve(c_a, r_a.unsqueeze(-1)).squeeze(-1)
        return beta + (cross * alpha).sum(dim=1)


def _initial_theta(y: np.ndarray, index: NeighborIndex) -> np.ndarray:
    var = float(np.var(y))
    d = index.dist_to_neighbors[index.mask]
    phi = float(np.median(d)) if d.size else 1.0
    if not phi > 0:
        phi = 1.0
    return np.log([0.5 * var, 0.5 * var, phi])


def _theta_bounds(y: np.ndarray, index: NeighborIndex):
    """Box bounds on (log sigma2, log tau2, log phi).

    The range phi may not drop below the typical nearest-neighbour spacing:
    below it the spatial term is indistinguishable from white noise and can
    absorb the nugget. tau2 is kept above 1e-3 of the sample variance.
    """
    var = float(np.var(y))
    has_nb = index.counts > 0
    nearest = index.dist_to_neighbors[has_nb, 0]
    nearest = nearest[nearest > 0]
    d_lo = float(np.median(nearest)) if nearest.size else 1.0
    d = index.dist_to_neighbors[index.mask]
    d_hi = float(d.max()) if d.size and d.max() > 0 else d_lo
    lv = math.log(var)
    return [
        (lv - math.log(1e6), lv + math.log(1e2)),
        (lv - math.log(1e3), lv + math.log(1e2)),
        (math.log(d_lo), math.log(max(d_hi, d_lo) * 1e2)),
    ]


def fit_entity(
    y: np.ndarray,
    index: NeighborIndex,
    *,
    stabilize: bool = True,
    variance_floor: float = 1e-8,
    max_iter: int = 200,
    n_restarts: int = 0,
    rng: Optional[np.random.Generator] = None,
    device: str | None = None,
) -> EntityFit:
    """Fit the NNGP model to one entity.

    Parameters
    ----------
    y:
        Transformed observations for one entity, in original location order.
    index:
        Shared neighbour index for the locations.
    stabilize:
        Clamp a near-zero residual variance to ``variance_floor``.
    max_iter:
        L-BFGS-B iteration budget per start.
    n_restarts:
        Extra starts jittered around the deterministic initial point.
    rng:
        Generator for the restart jitter. Required when n_restarts > 0.

    Returns
    -------
    EntityFit

    Raises
    ------
    FitDivergence
        When the observations are non-finite or constant, or the optimizer
        does not reach a finite optimum within the iteration budget.
    """
    y = as_1d_float_array(y)
    if y.shape[0] != index.n_locations:
        raise ShapeMismatch(f"Observation vector has {y.shape[0]} values for {index.n_locations} locations.")
    if not np.all(np.isfinite(y)):
        raise FitDivergence("non-finite observations")
    if np.ptp(y) == 0.0 or not np.var(y) > 0.0:
        raise FitDivergence("zero variance")

    device = choose_device(device)
    y_ordered = index.to_ordered(y)
    lik = _VecchiaLikelihood(y_ordered, index, device)

    theta0 = _initial_theta(y, index)
    bounds = _theta_bounds(y, index)
    lower = np.array([b[0] for b in bounds])
    upper = np.array([b[1] for b in bounds])
    starts = [np.clip(theta0, lower, upper)]
    if n_restarts > 0:
        if rng is None:
            raise ValueError("rng is required when n_restarts > 0")
        for _ in range(int(n_restarts)):
            starts.append(np.clip(theta0 + rng.normal(0.0, 0.5, size=3), lower, upper))

    best = None
    n_iter = 0
    last_message = "optimizer did not run"
    for x0 in starts:
        res = minimize(
            lik.objective,
            x0,
            jac=True,
            method="L-BFGS-B",
            bounds=bounds,
            options={"maxiter": int(max_iter)},
        )
        n_iter += int(res.nit)
        last_message = str(res.message)
        # status 1: iteration budget exhausted
        if res.status == 1 or not np.isfinite(res.fun) or not np.all(np.isfinite(res.x)):
            continue
        if best is None or res.fun < best.fun:
            best = res

    if best is None:
        raise FitDivergence(f"optimizer did not converge: {last_message}", n_iter=n_iter)

    theta = torch.tensor(best.x, dtype=torch.float64, device=device)
    with torch.no_grad():
        nll, beta = lik.profile(theta)
        fitted = lik.smooth(theta, beta).cpu().numpy()

    sigma2, tau2, phi = (float(v) for v in np.exp(best.x))
    if not np.all(np.isfinite(fitted)) or not np.isfinite(float(beta)):
        raise FitDivergence("non-finite fitted values", n_iter=n_iter)
    if stabilize and (not np.isfinite(tau2) or tau2 < variance_floor):
        tau2 = float(variance_floor)

    return EntityFit(
        mean=index.to_original(fitted),
        variance=tau2,
        spatial_variance=sigma2,
        length_scale=phi,
        intercept=float(beta),
        converged=True,
        status="converged",
        n_iter=n_iter,
        neg_loglik=float(nll),
    )
