"""Run configuration for weight generation."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional, Tuple

ORDERINGS = ("sum_coords", "random")
TREND_METHODS = ("spline", "lowess")
TRANSFORMS = ("log1p", "log2p1", "sqrt", "identity")


@dataclass(frozen=True)
class WeightConfig:
    """Parameters of a weight run.

    Attributes
    ----------
    k:
        Number of earlier-ordered neighbours per location.
    ordering:
        Location ordering rule: 'sum_coords' or 'random' (seeded).
    stabilize:
        Clamp near-zero variance estimates and clip extreme weights.
    n_jobs:
        Worker pool size for per-entity fits.
    backend:
        joblib backend ('loky', 'threading', ...).
    seed:
        Run seed; per-entity streams are derived from it.
    transform:
        Transform applied upstream to the measurements ('log1p', 'log2p1',
        'sqrt' or 'identity').
    trend_method:
        'spline' (smoothing spline, GCV penalty) or 'lowess'.
    trend_lam:
        Fixed spline penalty; None selects it by GCV.
    lowess_frac:
        Span for the LOWESS trend.
    min_entities:
        Minimum converged entities required to fit a trend.
    max_iter:
        Optimizer iteration budget per entity.
    n_restarts:
        Extra jittered optimizer starts per entity.
    variance_floor:
        Floor for stabilized variance estimates.
    weight_floor:
        Weight given to flagged entities and degenerate observations.
    clip_quantiles:
        Lower/upper quantiles used to bound weights when stabilizing.
    normalize_rows:
        Rescale each converged entity's weights to mean 1.
    device:
        Torch device for likelihood evaluation.
    """

    k: int = 10
    ordering: str = "sum_coords"
    stabilize: bool = True
    n_jobs: int = 1
    backend: str = "loky"
    seed: int = 0
    transform: str = "log1p"
    trend_method: str = "spline"
    trend_lam: Optional[float] = None
    lowess_frac: float = 0.3
    min_entities: int = 3
    max_iter: int = 200
    n_restarts: int = 0
    variance_floor: float = 1e-8
    weight_floor: float = 1e-4
    clip_quantiles: Tuple[float, float] = (0.01, 0.99)
    normalize_rows: bool = False
    device: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]] = None) -> "WeightConfig":
        """Build a config from a mapping, ignoring keys set to None."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise KeyError(f"Unknown config keys: {unknown}")
        values = {key: value for key, value in data.items() if value is not None}
        if "clip_quantiles" in values:
            values["clip_quantiles"] = tuple(values["clip_quantiles"])
        return cls(**values).validate()

    def with_overrides(self, **overrides: Any) -> "WeightConfig":
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise KeyError(f"Unknown config keys: {unknown}")
        return replace(self, **overrides).validate()

    def validate(self) -> "WeightConfig":
        if int(self.k) < 1:
            raise ValueError("k must be a positive integer")
        if self.ordering not in ORDERINGS:
            raise ValueError(f"ordering must be one of {ORDERINGS}")
        if self.transform not in TRANSFORMS:
            raise ValueError(f"transform must be one of {TRANSFORMS}")
        if self.trend_method not in TREND_METHODS:
            raise ValueError(f"trend_method must be one of {TREND_METHODS}")
        if int(self.n_jobs) == 0:
            raise ValueError("n_jobs must be non-zero")
        if int(self.min_entities) < 1:
            raise ValueError("min_entities must be >= 1")
        if int(self.max_iter) < 1:
            raise ValueError("max_iter must be >= 1")
        if int(self.n_restarts) < 0:
            raise ValueError("n_restarts must be >= 0")
        if not 0.0 < float(self.lowess_frac) <= 1.0:
            raise ValueError("lowess_frac must be in (0, 1]")
        if self.variance_floor <= 0 or self.weight_floor <= 0:
            raise ValueError("variance_floor and weight_floor must be positive")
        lo, hi = self.clip_quantiles
        if not 0.0 <= lo < hi <= 1.0:
            raise ValueError("clip_quantiles must satisfy 0 <= low < high <= 1")
        return self

    def as_params(self) -> Dict[str, Any]:
        params = asdict(self)
        params["clip_quantiles"] = tuple(self.clip_quantiles)
        return params
