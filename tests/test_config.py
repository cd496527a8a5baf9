"""Unit tests for WeightConfig."""

import pytest

from spatWeights import WeightConfig


class TestWeightConfig:
    def test_default_values(self):
        config = WeightConfig()
        assert config.k == 10
        assert config.ordering == "sum_coords"
        assert config.stabilize is True
        assert config.n_jobs == 1
        assert config.seed == 0
        assert config.transform == "log1p"
        assert config.trend_method == "spline"
        assert config.min_entities == 3
        assert config.weight_floor == 1e-4
        assert config.clip_quantiles == (0.01, 0.99)

    def test_from_dict(self):
        config = WeightConfig.from_dict({"k": 6, "seed": 9, "trend_lam": None, "clip_quantiles": [0.05, 0.95]})
        assert config.k == 6
        assert config.seed == 9
        assert config.trend_lam is None
        assert config.clip_quantiles == (0.05, 0.95)

    def test_from_empty_dict(self):
        assert WeightConfig.from_dict(None) == WeightConfig()

    def test_unknown_keys(self):
        with pytest.raises(KeyError):
            WeightConfig.from_dict({"neighbours": 5})
        with pytest.raises(KeyError):
            WeightConfig().with_overrides(neighbours=5)

    def test_overrides(self):
        base = WeightConfig(k=4)
        config = base.with_overrides(n_jobs=2, stabilize=False)
        assert config.k == 4
        assert config.n_jobs == 2
        assert config.stabilize is False
        assert base.n_jobs == 1

    @pytest.mark.parametrize(
        "field,value",
        [
            ("k", 0),
            ("ordering", "hilbert"),
            ("transform", "log10"),
            ("trend_method", "gam"),
            ("n_jobs", 0),
            ("min_entities", 0),
            ("max_iter", 0),
            ("n_restarts", -1),
            ("lowess_frac", 0.0),
            ("weight_floor", 0.0),
            ("variance_floor", -1.0),
            ("clip_quantiles", (0.9, 0.1)),
        ],
    )
    def test_validation(self, field, value):
        with pytest.raises(ValueError):
            WeightConfig().with_overrides(**{field: value})

    def test_as_params(self):
        params = WeightConfig(seed=3).as_params()
        assert params["seed"] == 3
        assert params["clip_quantiles"] == (0.01, 0.99)
