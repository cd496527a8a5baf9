"""spatWeights: mean-variance weights for spatially variable gene detection.

Main entry points:
    - :func:`spatWeights.generate_weights` (matrix + coordinates)
    - :func:`spatWeights.run_weights` (AnnData)

The library expects log-normalised values for a single section, with:
    - genes x spots values (or ``adata.X`` / a layer for AnnData input)
    - spot coordinates (``adata.obsm['spatial']`` or user-provided key)

Weights are computed by:
    1) Building an ordered nearest-neighbour index over the spots
    2) Fitting an NNGP model per gene (fitted means, residual variance)
    3) Fitting a smooth mean-variance trend across genes
    4) Converting the trend into per-observation weights with the delta method

The weights can be handed to a ranking method that accepts them, or used to
rescale the inputs for one that does not (:func:`spatWeights.run_ranking`).
"""

from .config import WeightConfig
from .exceptions import (
    DegenerateWeight,
    FitDivergence,
    InsufficientData,
    InsufficientLocations,
    PipelineAborted,
    ShapeMismatch,
    SpatWeightsError,
)
from .neighbors import NeighborIndex, build_neighbor_index
from .nngp import EntityFit, fit_entity
from .pipeline import generate_weights, run_weights
from .ranking import RankingMethod, run_ranking
from .rescale import rescale
from .results import WeightResult
from .trend import TrendCurve, fit_trend
from .weights import delta_weights, generate_weight_matrix

__all__ = [
    "generate_weights",
    "run_weights",
    "run_ranking",
    "RankingMethod",
    "WeightConfig",
    "WeightResult",
    "NeighborIndex",
    "build_neighbor_index",
    "EntityFit",
    "fit_entity",
    "TrendCurve",
    "fit_trend",
    "delta_weights",
    "generate_weight_matrix",
    "rescale",
    "SpatWeightsError",
    "InsufficientLocations",
    "FitDivergence",
    "InsufficientData",
    "DegenerateWeight",
    "ShapeMismatch",
    "PipelineAborted",
]
