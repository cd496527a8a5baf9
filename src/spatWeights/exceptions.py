"""Error types raised by spatWeights.

Per-entity (:class:`FitDivergence`) and per-observation
(:class:`DegenerateWeight`) failures are recovered by the pipeline by
flagging and floor substitution. The remaining errors abort a run.
"""

from __future__ import annotations

from typing import Optional


class SpatWeightsError(Exception):
    """Base class for all spatWeights errors."""


class InsufficientLocations(SpatWeightsError, ValueError):
    """Raised when there are not more locations than requested neighbours."""

    def __init__(self, n_locations: int, k: int):
        self.n_locations = int(n_locations)
        self.k = int(k)
        super().__init__(
            f"Need more than k={self.k} locations to build a neighbour index, got {self.n_locations}."
        )


class FitDivergence(SpatWeightsError):
    """Raised when a single entity's NNGP fit cannot produce usable estimates."""

    def __init__(self, reason: str, n_iter: int = 0):
        self.reason = reason
        self.n_iter = int(n_iter)
        super().__init__(reason)


class InsufficientData(SpatWeightsError, ValueError):
    """Raised when too few converged entities remain to fit a trend."""

    def __init__(self, n_valid: int, n_required: int, n_flagged: Optional[int] = None):
        self.n_valid = int(n_valid)
        self.n_required = int(n_required)
        self.n_flagged = None if n_flagged is None else int(n_flagged)
        msg = f"Need at least {self.n_required} converged entities to fit a trend, got {self.n_valid}"
        if self.n_flagged is not None:
            msg += f" ({self.n_flagged} flagged)"
        super().__init__(msg + ".")


class DegenerateWeight(SpatWeightsError):
    """Raised when a delta-method weight is undefined (zero variance or derivative)."""

    def __init__(self, n_cells: int):
        self.n_cells = int(n_cells)
        super().__init__(f"{self.n_cells} observation(s) have an undefined weight.")


class ShapeMismatch(SpatWeightsError, ValueError):
    """Raised when input arrays disagree in shape."""


class PipelineAborted(SpatWeightsError, RuntimeError):
    """Raised when a weight run stops before producing a weight matrix."""

    def __init__(self, reason: str, *, n_valid: Optional[int] = None, n_flagged: Optional[int] = None):
        self.reason = reason
        self.n_valid = n_valid
        self.n_flagged = n_flagged
        super().__init__(reason)
