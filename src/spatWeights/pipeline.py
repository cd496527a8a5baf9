"""Weight generation pipeline: neighbour index, per-entity fits, trend, weights.

Entity fits are independent and run on a joblib worker pool; the trend and
the weight matrix are computed once all fits are back.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

import numpy as np
from joblib import Parallel, delayed

from .config import WeightConfig
from .exceptions import FitDivergence, InsufficientData, PipelineAborted, ShapeMismatch
from .neighbors import NeighborIndex, build_neighbor_index
from .nngp import EntityFit, fit_entity
from .preprocessing import check_inputs, extract_inputs
from .results import WeightResult, fits_to_table
from .trend import fit_trend
from .utils import RNGWrapper
from .weights import generate_weight_matrix

logger = logging.getLogger(__name__)


def _fit_one(i: int, y: np.ndarray, index: NeighborIndex, config: WeightConfig) -> EntityFit:
    rng = RNGWrapper(config.seed).for_entity(i)
    try:
        return fit_entity(
            y,
            index,
            stabilize=config.stabilize,
            variance_floor=config.variance_floor,
            max_iter=config.max_iter,
            n_restarts=config.n_restarts,
            rng=rng,
            device=config.device,
        )
    except FitDivergence as exc:
        return EntityFit.flagged(index.n_locations, exc.reason, exc.n_iter)


def fit_entities(
    matrix: np.ndarray,
    index: NeighborIndex,
    config: WeightConfig,
    *,
    should_abort: Optional[Callable[[], bool]] = None,
) -> List[EntityFit]:
    """Fit every row of ``matrix`` on a worker pool.

    Results come back in row order. ``should_abort`` is polled as each result
    arrives; returning True abandons outstanding fits.
    """
    parallel = Parallel(n_jobs=config.n_jobs, backend=config.backend, return_as="generator")
    tasks = (delayed(_fit_one)(i, matrix[i], index, config) for i in range(matrix.shape[0]))

    fits: List[EntityFit] = []
    for fit in parallel(tasks):
        fits.append(fit)
        if should_abort is not None and should_abort():
            n_valid = sum(f.converged for f in fits)
            raise PipelineAborted(
                f"Cancelled after {len(fits)} of {matrix.shape[0]} entity fits.",
                n_valid=n_valid,
                n_flagged=len(fits) - n_valid,
            )
    return fits


def generate_weights(
    matrix,
    coords,
    *,
    entity_names: Optional[Sequence[str]] = None,
    config: Optional[WeightConfig] = None,
    should_abort: Optional[Callable[[], bool]] = None,
    **overrides,
) -> WeightResult:
    """Compute mean-variance weights for an entities x locations matrix.

    Parameters
    ----------
    matrix:
        (n_entities, n_locations) non-negative transformed values
        (e.g. log-normalised counts).
    coords:
        (n_locations, n_dim) spatial coordinates, rows aligned with the
        matrix columns.
    entity_names:
        Names for the result table; defaults to 'entity_0', 'entity_1', ...
    config:
        Run configuration; keyword overrides are applied on top.
    should_abort:
        Optional callable polled during the per-entity fits.

    Returns
    -------
    WeightResult
        Weight matrix (same shape as ``matrix``), per-entity table, trend
        and run parameters.

    Raises
    ------
    PipelineAborted
        If too few entities converge to fit a trend (the
        :class:`InsufficientData` is chained as the cause), or if
        ``should_abort`` requests cancellation.
    """
    cfg = (config or WeightConfig()).validate().with_overrides(**overrides)
    matrix, coords = check_inputs(matrix, coords)
    n_entities, n_locations = matrix.shape

    if entity_names is None:
        names = [f"entity_{i}" for i in range(n_entities)]
    else:
        names = [str(x) for x in entity_names]
        if len(names) != n_entities:
            raise ShapeMismatch(f"{len(names)} entity names for {n_entities} entities")

    index = build_neighbor_index(coords, cfg.k, ordering=cfg.ordering, seed=cfg.seed)

    logger.info("Fitting %d entities on %d locations (n_jobs=%d)", n_entities, n_locations, cfg.n_jobs)
    fits = fit_entities(matrix, index, cfg, should_abort=should_abort)

    converged = np.array([f.converged for f in fits], dtype=bool)
    n_valid = int(converged.sum())
    n_flagged = n_entities - n_valid
    for name, fit in zip(names, fits):
        if not fit.converged:
            logger.warning("Entity %s flagged: %s", name, fit.status)
    logger.info("%d entities converged, %d flagged", n_valid, n_flagged)

    try:
        trend = fit_trend(
            [f.mean_level if f.converged else np.nan for f in fits],
            [f.variance for f in fits],
            method=cfg.trend_method,
            min_entities=cfg.min_entities,
            lam=cfg.trend_lam,
            frac=cfg.lowess_frac,
        )
    except InsufficientData as exc:
        raise PipelineAborted(
            f"Cannot fit mean-variance trend: {exc}",
            n_valid=n_valid,
            n_flagged=n_flagged,
        ) from exc

    weights = generate_weight_matrix(
        fits,
        trend,
        transform=cfg.transform,
        stabilize=cfg.stabilize,
        floor=cfg.weight_floor,
        clip_quantiles=cfg.clip_quantiles,
        normalize_rows=cfg.normalize_rows,
    )

    params = cfg.as_params()
    params.update(
        {
            "n_entities": int(n_entities),
            "n_locations": int(n_locations),
            "n_converged": n_valid,
            "n_flagged": n_flagged,
            "trend_fit": trend.method,
        }
    )

    return WeightResult(
        weights=weights,
        table=fits_to_table(fits, names),
        trend=trend,
        fits=fits,
        index=index,
        params=params,
    )


def run_weights(
    adata,
    *,
    spatial_key: str = "spatial",
    layer: Optional[str] = None,
    genes: Optional[Sequence[str]] = None,
    key_added: str = "weights",
    config: Optional[WeightConfig] = None,
    should_abort: Optional[Callable[[], bool]] = None,
    **overrides,
) -> WeightResult:
    """Compute weights for the genes of an AnnData and store them on it.

    Writes ``adata.layers[key_added]`` (spots x genes; NaN for genes not
    analysed) and the per-gene columns ``{key_added}_mean``,
    ``{key_added}_variance`` and ``{key_added}_converged`` to ``adata.var``.

    Parameters
    ----------
    adata:
        AnnData (spots x genes) of log-normalised values.
    spatial_key:
        Key in ``adata.obsm`` with spatial coordinates.
    layer:
        Layer to read instead of ``adata.X``.
    genes:
        Genes to analyse. If None, uses all genes.
    key_added:
        Name of the written layer and prefix of the ``adata.var`` columns.

    Returns
    -------
    WeightResult
    """
    matrix, coords, gene_list = extract_inputs(adata, spatial_key=spatial_key, layer=layer, genes=genes)
    result = generate_weights(
        matrix,
        coords,
        entity_names=gene_list,
        config=config,
        should_abort=should_abort,
        **overrides,
    )

    layer_values = np.full(adata.shape, np.nan)
    layer_values[:, adata.var_names.get_indexer(gene_list)] = result.weights.T
    adata.layers[key_added] = layer_values

    table = result.table.reindex(adata.var_names)
    adata.var[f"{key_added}_mean"] = table["mean"].to_numpy(dtype=float)
    adata.var[f"{key_added}_variance"] = table["variance"].to_numpy(dtype=float)
    adata.var[f"{key_added}_converged"] = table["converged"].eq(True).to_numpy()
    return result
