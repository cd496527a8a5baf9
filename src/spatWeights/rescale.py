"""Rescale observations and covariates for methods without weight support.

Multiplying a response and its design rows by sqrt(w) turns a weighted
least-squares problem into an ordinary one.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

from .exceptions import ShapeMismatch
from .utils import as_2d_float_array


def rescale(
    observations,
    covariates,
    weights,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Scale observations and covariates by the square root of the weights.

    Parameters
    ----------
    observations:
        (n_entities, n_locations) matrix.
    covariates:
        None, a (n_locations, n_covariates) design shared by all entities,
        or a (n_entities, n_locations, n_covariates) array.
    weights:
        (n_entities, n_locations) non-negative finite weights.

    Returns
    -------
    (scaled_observations, scaled_covariates)
        scaled_covariates is (n_entities, n_locations, n_covariates), or None.
    """
    Y = as_2d_float_array(observations, name="observations")
    W = as_2d_float_array(weights, name="weights")
    if Y.shape != W.shape:
        raise ShapeMismatch(f"observations {Y.shape} and weights {W.shape} differ in shape")
    if not np.all(np.isfinite(W)) or np.any(W < 0):
        raise ValueError("weights must be finite and non-negative")

    root = np.sqrt(W)
    Y_scaled = Y * root

    if covariates is None:
        return Y_scaled, None

    X = np.asarray(covariates, dtype=float)
    if X.ndim == 2:
        if X.shape[0] != Y.shape[1]:
            raise ShapeMismatch(f"covariates have {X.shape[0]} rows for {Y.shape[1]} locations")
        X_scaled = root[:, :, None] * X[None, :, :]
    elif X.ndim == 3:
        if X.shape[:2] != Y.shape:
            raise ShapeMismatch(f"covariates {X.shape} do not match observations {Y.shape}")
        X_scaled = root[:, :, None] * X
    else:
        raise ShapeMismatch(f"covariates must be 2D or 3D, got {X.ndim}D")

    return Y_scaled, X_scaled
