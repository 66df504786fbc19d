"""Unit tests for iecv_survival.summary module."""
import pytest
import numpy as np
import pandas as pd
from iecv_survival.summary import (
    pool_concordance,
    random_effects_pool,
    summarise_performance,
)


class TestRandomEffectsPool:
    """Tests for DerSimonian-Laird pooling."""

    def test_documented_example(self):
        pooled = random_effects_pool([0.70, 0.74, 0.68], [0.02, 0.03, 0.025])
        assert round(pooled.estimate, 3) == 0.703
        assert pooled.n_studies == 3

    def test_homogeneous_estimates(self):
        pooled = random_effects_pool([0.5, 0.5, 0.5], [0.1, 0.2, 0.1])

        assert pooled.estimate == pytest.approx(0.5)
        assert pooled.tau2 == 0.0
        assert pooled.i2 == 0.0
        assert pooled.ci_lower < 0.5 < pooled.ci_upper

    def test_heterogeneity_widens_interval(self):
        effects, ses = [0.1, 0.5, 0.9], [0.05, 0.05, 0.05]
        pooled = random_effects_pool(effects, ses)
        fixed_se = np.sqrt(1.0 / np.sum(1.0 / np.square(ses)))

        assert pooled.tau2 > 0
        assert pooled.i2 > 90
        assert pooled.q_pvalue < 0.001
        assert pooled.se > fixed_se

    def test_single_study(self):
        pooled = random_effects_pool([0.7], [0.02])

        assert pooled.estimate == pytest.approx(0.7)
        assert pooled.se == pytest.approx(0.02)
        assert np.isnan(pooled.q_pvalue)

    def test_unusable_estimates_skipped(self):
        pooled = random_effects_pool([0.7, np.nan, 0.9], [0.02, 0.02, 0.0])
        assert pooled.n_studies == 1
        assert pooled.estimate == pytest.approx(0.7)

    def test_nothing_poolable(self):
        pooled = random_effects_pool([], [])
        assert pooled.n_studies == 0
        assert np.isnan(pooled.estimate)


class TestPoolConcordance:
    """Tests for pooling on the logit scale."""

    def test_back_transformed(self):
        pooled = pool_concordance([0.70, 0.74, 0.68], [0.02, 0.03, 0.025])

        assert 0.68 < pooled.estimate < 0.74
        assert 0.0 < pooled.ci_lower < pooled.estimate < pooled.ci_upper < 1.0

    def test_degenerate_concordance_skipped(self):
        pooled = pool_concordance([1.0, 0.7], [0.0, 0.02])
        assert pooled.n_studies == 1
        assert pooled.estimate == pytest.approx(0.7)


class TestSummarisePerformance:
    """Tests for summarise_performance function."""

    @pytest.fixture
    def external(self):
        return pd.DataFrame({
            "cluster": ["East", "North", "West"],
            "status": ["ok", "ok", "failed"],
            "concordance": [0.70, 0.74, np.nan],
            "concordance_se": [0.02, 0.03, np.nan],
            "calibration_slope": [0.9, 1.1, np.nan],
            "calibration_in_the_large": [0.1, -0.1, np.nan],
            "calibration_slope_horizon": [0.95, 1.05, np.nan],
            "brier_score": [0.10, 0.12, np.nan],
        })

    def test_one_row_per_metric_plus_pooled(self, external):
        summary = summarise_performance(external)

        assert list(summary["metric"]) == [
            "concordance",
            "calibration_in_the_large",
            "calibration_slope",
            "calibration_slope_horizon",
            "brier_score",
            "concordance_pooled",
        ]
        assert list(summary.columns[:6]) == ["metric", "mean", "sd", "min", "max", "n_folds"]

    def test_failed_folds_excluded(self, external):
        summary = summarise_performance(external).set_index("metric")

        assert summary.loc["concordance", "n_folds"] == 2
        assert summary.loc["concordance", "mean"] == pytest.approx(0.72)
        assert summary.loc["brier_score", "max"] == pytest.approx(0.12)
        assert summary.loc["calibration_slope", "sd"] == pytest.approx(np.std([0.9, 1.1], ddof=1))

    def test_pooled_row(self, external):
        summary = summarise_performance(external).set_index("metric")
        pooled = summary.loc["concordance_pooled"]

        assert pooled["n_folds"] == 2
        assert pooled["ci_lower"] < pooled["mean"] < pooled["ci_upper"]
        assert np.isnan(pooled["sd"])
