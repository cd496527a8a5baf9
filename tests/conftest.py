"""Pytest configuration and shared fixtures for spatWeights tests."""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add package to path
SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))


def make_grid(nx: int, ny: int) -> np.ndarray:
    xs, ys = np.meshgrid(np.arange(nx, dtype=float), np.arange(ny, dtype=float))
    return np.column_stack([xs.ravel(), ys.ravel()])


def make_log_counts(coords: np.ndarray, n_entities: int, seed: int = 0) -> np.ndarray:
    """log1p Poisson counts with a spatial gradient and varied depth per entity."""
    rng = np.random.default_rng(seed)
    span = np.ptp(coords[:, 0]) or 1.0
    pattern = (coords[:, 0] - coords[:, 0].min()) / span
    base = np.geomspace(2.0, 60.0, n_entities)
    counts = rng.poisson(base[:, None] * np.exp(pattern[None, :]))
    return np.log1p(counts.astype(float))


# ============================================================================
# Mock Data Fixtures
# ============================================================================


@pytest.fixture
def grid_coords() -> np.ndarray:
    """5 x 4 grid: 20 locations."""
    return make_grid(5, 4)


@pytest.fixture
def scattered_coords() -> np.ndarray:
    rng = np.random.default_rng(7)
    return rng.uniform(0.0, 10.0, size=(60, 2))


@pytest.fixture
def log_counts(grid_coords) -> np.ndarray:
    """5 entities x 20 locations."""
    return make_log_counts(grid_coords, 5, seed=1)


@pytest.fixture
def degenerate_matrix(log_counts) -> np.ndarray:
    """Entity 2 is constant at every location."""
    m = log_counts.copy()
    m[2] = 1.5
    return m


@pytest.fixture
def spatial_signal(scattered_coords) -> np.ndarray:
    """Strong smooth pattern plus small noise on the scattered locations."""
    rng = np.random.default_rng(3)
    x, y = scattered_coords[:, 0], scattered_coords[:, 1]
    signal = 2.0 + np.sin(x / 2.0) + np.cos(y / 3.0)
    return signal + rng.normal(0.0, 0.1, size=signal.shape[0])
