"""Utility helpers for spatWeights.

Public functions here are intentionally small and dependency-light.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import scipy.sparse as sp


@dataclass(frozen=True)
class RNGWrapper:
    """Derive independent, reproducible NumPy generators from one run seed.

    Each entity gets its own stream keyed by ``(seed, entity_index)`` so the
    draws an entity sees do not depend on which worker runs it, or when.
    """

    seed: Optional[int] = None

    def generator(self) -> np.random.Generator:
        return np.random.default_rng(self.seed)

    def for_entity(self, index: int) -> np.random.Generator:
        base = 0 if self.seed is None else int(self.seed)
        return np.random.default_rng(np.random.SeedSequence([base, int(index)]))


def as_1d_float_array(x: Sequence[float]) -> np.ndarray:
    arr = np.asarray(x, dtype=float)
    if arr.ndim != 1:
        raise ValueError("Expected a 1D sequence.")
    return arr


def as_2d_float_array(x, name: str = "array") -> np.ndarray:
    if sp.issparse(x):
        x = x.toarray()
    arr = np.asarray(x, dtype=float)
    if arr.ndim != 2:
        raise ValueError(f"{name} must be 2D, got {arr.ndim}D.")
    return arr


def choose_device(device: str | None = None) -> str:
    """Pick torch device string.

    Parameters
    ----------
    device:
        "cuda", "cpu", or None. None selects "cpu", since per-entity fits
        are small and run inside worker processes.

    Returns
    -------
    str
        Device string.
    """
    if device is None:
        return "cpu"
    device = str(device).lower()
    if device not in {"cuda", "cpu"}:
        raise ValueError("device must be 'cuda', 'cpu', or None")
    return device
