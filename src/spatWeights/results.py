"""Result containers for spatWeights."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
import pandas as pd

from .neighbors import NeighborIndex
from .nngp import EntityFit
from .trend import TrendCurve

TABLE_COLUMNS = [
    "mean",
    "variance",
    "spatial_variance",
    "length_scale",
    "intercept",
    "converged",
    "status",
    "n_iter",
]


def fits_to_table(fits: Sequence[EntityFit], names: Sequence[str]) -> pd.DataFrame:
    """Per-entity metadata table, one row per fit, indexed by entity name."""
    rows = [
        {
            "Entity": name,
            "mean": fit.mean_level if fit.converged else np.nan,
            "variance": fit.variance,
            "spatial_variance": fit.spatial_variance,
            "length_scale": fit.length_scale,
            "intercept": fit.intercept,
            "converged": bool(fit.converged),
            "status": fit.status,
            "n_iter": int(fit.n_iter),
        }
        for name, fit in zip(names, fits)
    ]
    return pd.DataFrame(rows, columns=["Entity"] + TABLE_COLUMNS).set_index("Entity")


@dataclass
class WeightResult:
    """Results returned by :func:`spatWeights.generate_weights`.

    Attributes
    ----------
    weights:
        (n_entities, n_locations) weight matrix, rows in input order.
    table:
        Per-entity metadata with columns
        ['mean','variance','spatial_variance','length_scale','intercept','converged','status','n_iter'].
    trend:
        Fitted mean-variance curve.
    fits:
        Per-entity fits, in input order.
    index:
        Neighbour index shared by the fits.
    params:
        Dictionary of run parameters for reproducibility.
    """

    weights: np.ndarray
    table: pd.DataFrame
    trend: TrendCurve
    fits: List[EntityFit]
    index: NeighborIndex
    params: dict

    def flagged(self) -> pd.DataFrame:
        return self.table[~self.table["converged"]]

    def top(self, n: int = 20, by: str = "variance") -> pd.DataFrame:
        if by not in self.table.columns:
            raise KeyError(f"'{by}' not in result table")
        return self.table.sort_values(by, ascending=False).head(n)
