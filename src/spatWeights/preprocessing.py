"""Input extraction and checks.

The weights are computed per gene across the spots of one section: the
AnnData (spots x genes) is turned into a genes x spots matrix plus the
spot coordinates. Normalisation and filtering happen before this point.
"""

from __future__ import annotations

from collections import Counter
from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp
from anndata import AnnData

from .exceptions import ShapeMismatch
from .utils import as_2d_float_array


def _dense_X(adata_X) -> np.ndarray:
    if sp.issparse(adata_X):
        return adata_X.toarray()
    return np.asarray(adata_X)


def extract_inputs(
    adata: AnnData,
    *,
    spatial_key: str = "spatial",
    layer: Optional[str] = None,
    genes: Optional[Sequence[str]] = None,
) -> Tuple[np.ndarray, np.ndarray, List[str]]:
    """Pull the genes x spots matrix and spot coordinates out of an AnnData.

    Parameters
    ----------
    adata:
        AnnData with normalised, transformed values (e.g. log-normalised
        counts) in ``adata.X`` or ``adata.layers[layer]``.
    spatial_key:
        Key in adata.obsm for spatial coordinates.
    layer:
        Layer to read instead of adata.X.
    genes:
        Genes to keep. Defaults to all of adata.var_names.

    Returns
    -------
    (matrix, coords, genes)
        matrix: (n_genes, n_spots); coords: (n_spots, n_dim); genes: names.
    """
    if spatial_key not in adata.obsm:
        raise KeyError(f"spatial_key '{spatial_key}' not found in adata.obsm")
    if layer is not None and layer not in adata.layers:
        raise KeyError(f"layer '{layer}' not found in adata.layers")

    if genes is None:
        gene_list = list(adata.var_names)
    else:
        gene_list = list(genes)
        missing = [g for g in gene_list if g not in adata.var_names]
        if len(missing) > 0:
            raise KeyError(f"{len(missing)} requested genes are missing (e.g. {missing[:5]}).")
    if not adata.var_names.is_unique:
        raise ValueError("adata.var_names must be unique; call adata.var_names_make_unique() first")
    repeated = sorted(g for g, n in Counter(gene_list).items() if n > 1)
    if repeated:
        raise ValueError(f"genes must be distinct (repeated: {repeated[:5]})")

    X = adata.layers[layer] if layer is not None else adata.X
    gene_idx = adata.var_names.get_indexer(gene_list)
    matrix = _dense_X(X[:, gene_idx]).astype(float).T
    coords = np.asarray(adata.obsm[spatial_key], dtype=float)
    return matrix, coords, gene_list


def check_inputs(matrix, coords) -> Tuple[np.ndarray, np.ndarray]:
    """Validate an entities x locations matrix against its coordinates."""
    matrix = as_2d_float_array(matrix, name="matrix")
    coords = as_2d_float_array(coords, name="coords")
    if matrix.shape[1] != coords.shape[0]:
        raise ShapeMismatch(
            f"matrix has {matrix.shape[1]} locations but coords has {coords.shape[0]} rows"
        )
    if matrix.shape[0] == 0:
        raise ValueError("matrix has no entities")
    if not np.all(np.isfinite(matrix)):
        raise ValueError("matrix must be finite")
    if np.any(matrix < 0):
        raise ValueError("matrix must be non-negative")
    zero_cols = int(np.count_nonzero(matrix.sum(axis=0) == 0))
    if zero_cols:
        raise ValueError(f"{zero_cols} locations have zero total signal; remove them before computing weights")
    return matrix, coords
