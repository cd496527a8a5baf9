"""Delta-method observation weights from a mean-variance trend.

For an observation with fitted mean ``m`` on the transformed scale and
predicted variance ``v = trend(m)``, the measurement-scale variance is
approximated to first order by

    Var[h(Y)] ~= h'(m)^2 * v

where ``h`` maps the transformed scale back to the measurement scale (for
log1p data h = expm1). The weight is the inverse of that variance.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Sequence, Tuple

import numpy as np

from .exceptions import DegenerateWeight, ShapeMismatch
from .nngp import EntityFit
from .trend import TrendCurve

logger = logging.getLogger(__name__)

_LN2 = float(np.log(2.0))

# derivative of the back-transform, evaluated on the transformed scale
BACK_TRANSFORM_DERIVATIVES: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "log1p": np.exp,
    "log2p1": lambda m: _LN2 * np.exp2(m),
    "sqrt": lambda m: 2.0 * m,
    "identity": np.ones_like,
}


def _back_transform_derivative(transform: str) -> Callable[[np.ndarray], np.ndarray]:
    try:
        return BACK_TRANSFORM_DERIVATIVES[transform]
    except KeyError:
        raise ValueError(f"Unknown transform '{transform}', expected one of {sorted(BACK_TRANSFORM_DERIVATIVES)}") from None


def _raw_weights(mean: np.ndarray, variance: np.ndarray, transform: str) -> Tuple[np.ndarray, np.ndarray]:
    deriv = _back_transform_derivative(transform)
    mean = np.asarray(mean, dtype=float)
    variance = np.asarray(variance, dtype=float)
    with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
        d = deriv(mean)
        w = 1.0 / (d * d * variance)
    bad = ~np.isfinite(w) | ~(w > 0)
    return w, bad


def delta_weights(mean, variance, transform: str = "log1p", floor: Optional[float] = None) -> np.ndarray:
    """Inverse-variance weights on the measurement scale.

    Parameters
    ----------
    mean:
        Fitted means on the transformed scale.
    variance:
        Predicted variances on the transformed scale (broadcast against mean).
    transform:
        Upstream transform: 'log1p', 'log2p1', 'sqrt' or 'identity'.
    floor:
        Weight substituted where the weight is undefined. If None,
        undefined weights raise.

    Raises
    ------
    DegenerateWeight
        If ``floor`` is None and any weight is undefined (zero or non-finite
        variance or derivative).
    """
    w, bad = _raw_weights(mean, variance, transform)
    n_bad = int(np.count_nonzero(bad))
    if n_bad:
        if floor is None:
            raise DegenerateWeight(n_bad)
        w = np.where(bad, float(floor), w)
    return w


def generate_weight_matrix(
    fits: Sequence[EntityFit],
    trend: TrendCurve,
    *,
    transform: str = "log1p",
    stabilize: bool = True,
    floor: float = 1e-4,
    clip_quantiles: Tuple[float, float] = (0.01, 0.99),
    normalize_rows: bool = False,
) -> np.ndarray:
    """Build the entities x locations weight matrix.

    Flagged entities get ``floor`` at every location, as do observations whose
    weight is undefined. With ``stabilize``, the remaining weights are clipped
    to the ``clip_quantiles`` of all converged-entity weights; with
    ``normalize_rows`` each converged row is then rescaled to mean 1.
    """
    if len(fits) == 0:
        raise ValueError("No entity fits given.")
    n_locations = {int(f.mean.shape[0]) for f in fits}
    if len(n_locations) != 1:
        raise ShapeMismatch(f"Entity fits disagree on the number of locations: {sorted(n_locations)}")
    n_loc = n_locations.pop()
    floor = float(floor)

    W = np.full((len(fits), n_loc), floor, dtype=float)
    converged = np.array([f.converged for f in fits], dtype=bool)
    n_flagged = int((~converged).sum())
    if n_flagged:
        logger.warning("%d flagged entities receive the floor weight %g", n_flagged, floor)
    if not converged.any():
        return W

    M = np.vstack([f.mean for f, ok in zip(fits, converged) if ok])
    Wc, bad = _raw_weights(M, trend.evaluate(M), transform)
    n_bad = int(np.count_nonzero(bad))
    if n_bad:
        logger.warning("%d observations have undefined weights, substituting %g", n_bad, floor)
    Wc[bad] = floor

    good = ~bad
    if stabilize and good.any():
        lo, hi = np.quantile(Wc[good], clip_quantiles)
        Wc[good] = np.clip(Wc[good], lo, hi)

    if normalize_rows:
        for i in range(Wc.shape[0]):
            row_good = good[i]
            if row_good.any():
                Wc[i, row_good] = Wc[i, row_good] / Wc[i, row_good].mean()

    W[converged] = Wc
    return W
