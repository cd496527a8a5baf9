"""Hand-off of weights to an external spatial-variability ranking method."""

from __future__ import annotations

import logging
from typing import Optional, Protocol, runtime_checkable

import numpy as np
import pandas as pd

from .rescale import rescale
from .results import WeightResult

logger = logging.getLogger(__name__)


@runtime_checkable
class RankingMethod(Protocol):
    """A ranking method for spatially variable entities.

    Implementations with ``accepts_weights = True`` receive the weight matrix
    directly; others receive square-root-weight rescaled observations and
    covariates. ``rank`` returns a DataFrame indexed by entity name.
    """

    accepts_weights: bool

    def rank(
        self,
        observations: np.ndarray,
        coords: np.ndarray,
        *,
        weights: Optional[np.ndarray] = None,
        covariates: Optional[np.ndarray] = None,
    ) -> pd.DataFrame:
        ...


def run_ranking(
    method: RankingMethod,
    result: WeightResult,
    observations,
    coords,
    *,
    covariates=None,
) -> pd.DataFrame:
    """Run ``method`` on weighted inputs and attach per-entity weight metadata.

    Parameters
    ----------
    method:
        Object following :class:`RankingMethod`.
    result:
        Output of :func:`spatWeights.generate_weights` for ``observations``.
    observations:
        (n_entities, n_locations) matrix the weights were generated for.
    coords:
        (n_locations, n_dim) coordinates.
    covariates:
        Optional design, (n_locations, p) or (n_entities, n_locations, p).

    Returns
    -------
    pandas.DataFrame
        The method's table joined with the weight metadata (``weights_``
        prefixed columns).
    """
    observations = np.asarray(observations, dtype=float)
    if getattr(method, "accepts_weights", False):
        logger.info("Passing weights directly to %s", type(method).__name__)
        ranked = method.rank(observations, coords, weights=result.weights, covariates=covariates)
    else:
        logger.info("Passing rescaled inputs to %s", type(method).__name__)
        scaled_obs, scaled_cov = rescale(observations, covariates, result.weights)
        ranked = method.rank(scaled_obs, coords, covariates=scaled_cov)
    return ranked.join(result.table.add_prefix("weights_"), how="left")
