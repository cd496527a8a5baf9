"""Mean-variance trend across entities.

The trend is fitted to sqrt(variance) as a function of mean and squared on
evaluation. Predictions are floored at the smallest positive variance seen
during fitting, so a curve that dips through zero between data points still
yields a usable variance. Inputs are clamped to the range of means seen
during fitting: the curve is flat outside the data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.interpolate import BSpline, make_smoothing_spline
from statsmodels.nonparametric.smoothers_lowess import lowess

from .exceptions import InsufficientData, ShapeMismatch
from .utils import as_1d_float_array

logger = logging.getLogger(__name__)

# make_smoothing_spline needs at least this many distinct x values
MIN_SPLINE_POINTS = 5


@dataclass(frozen=True)
class TrendCurve:
    """Fitted variance-vs-mean curve.

    Exactly one of ``spline`` or (``grid_x``, ``grid_y``) is set. ``v_min`` is
    the smallest positive variance the curve was fitted on.
    """

    method: str
    x_min: float
    x_max: float
    n_entities: int
    v_min: float = 0.0
    spline: Optional[BSpline] = None
    grid_x: Optional[np.ndarray] = None
    grid_y: Optional[np.ndarray] = None
    lam: Optional[float] = None

    @property
    def coefficients(self) -> Optional[np.ndarray]:
        return None if self.spline is None else np.asarray(self.spline.c)

    def evaluate(self, mean) -> np.ndarray:
        """Predicted variance at ``mean`` (scalar or array)."""
        x = np.clip(np.asarray(mean, dtype=float), self.x_min, self.x_max)
        if self.spline is not None:
            s = self.spline(x)
        else:
            s = np.interp(x, self.grid_x, self.grid_y)
        return np.maximum(np.square(np.maximum(s, 0.0)), self.v_min)

    __call__ = evaluate


def _collapse_duplicates(x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Sort by x and average y over repeated x. Returns (x, y, counts)."""
    ux, inverse, counts = np.unique(x, return_inverse=True, return_counts=True)
    uy = np.bincount(inverse, weights=y) / counts
    return ux, uy, counts.astype(float)


def _linear_spline(x: np.ndarray, y: np.ndarray, w: np.ndarray) -> BSpline:
    slope, intercept = np.polyfit(x, y, deg=1, w=np.sqrt(w))
    lo, hi = float(x[0]), float(x[-1])
    knots = np.array([lo, lo, hi, hi])
    coefs = np.array([intercept + slope * lo, intercept + slope * hi])
    return BSpline(knots, coefs, 1)


def fit_trend(
    means,
    variances,
    *,
    method: str = "spline",
    min_entities: int = 3,
    lam: Optional[float] = None,
    frac: float = 0.3,
    it: int = 2,
) -> TrendCurve:
    """Fit a smooth curve through (mean, variance) pairs.

    Parameters
    ----------
    means, variances:
        One pair per entity. Non-finite pairs (flagged entities) are skipped.
    method:
        'spline' for a cubic smoothing spline, or 'lowess'.
    min_entities:
        Minimum number of usable pairs.
    lam:
        Spline roughness penalty; None selects it by generalised
        cross-validation.
    frac, it:
        LOWESS span and robustifying iterations.

    Returns
    -------
    TrendCurve

    Raises
    ------
    InsufficientData
        If fewer than ``min_entities`` usable pairs remain.
    """
    means = as_1d_float_array(means)
    variances = as_1d_float_array(variances)
    if means.shape != variances.shape:
        raise ShapeMismatch(f"Got {means.shape[0]} means and {variances.shape[0]} variances.")

    ok = np.isfinite(means) & np.isfinite(variances) & (variances >= 0)
    n_valid = int(ok.sum())
    if n_valid < int(min_entities):
        raise InsufficientData(n_valid, int(min_entities), n_flagged=int(means.shape[0] - n_valid))

    x, y, w = _collapse_duplicates(means[ok], np.sqrt(variances[ok]))
    x_min, x_max = float(x[0]), float(x[-1])
    positive = variances[ok][variances[ok] > 0]
    v_min = float(positive.min()) if positive.size else 0.0
    bounds = dict(x_min=x_min, x_max=x_max, n_entities=n_valid, v_min=v_min)

    if x.shape[0] == 1:
        logger.info("Trend: single distinct mean, using a constant curve")
        return TrendCurve(method="constant", **bounds, grid_x=x, grid_y=y)

    if method == "spline":
        if x.shape[0] < MIN_SPLINE_POINTS:
            logger.info("Trend: %d distinct means, falling back to a linear fit", x.shape[0])
            spline = _linear_spline(x, y, w)
            return TrendCurve(method="linear", **bounds, spline=spline)
        spline = make_smoothing_spline(x, y, w=w, lam=lam)
        logger.info("Trend: smoothing spline through %d entities", n_valid)
        return TrendCurve(method="spline", **bounds, spline=spline, lam=lam)

    if method == "lowess":
        # at least three points per local fit
        frac = min(1.0, max(float(frac), 3.0 / x.shape[0]))
        smooth = lowess(endog=y, exog=x, frac=frac, it=int(it), return_sorted=True)
        gx, gy, _ = _collapse_duplicates(smooth[:, 0], smooth[:, 1])
        logger.info("Trend: LOWESS (frac=%.2f) through %d entities", frac, n_valid)
        return TrendCurve(method="lowess", **bounds, grid_x=gx, grid_y=gy)

    raise ValueError("method must be 'spline' or 'lowess'")
