"""Unit tests for iecv_survival.validation module."""
import pytest
import numpy as np
import pandas as pd
from iecv_survival.errors import DataIntegrityError
from iecv_survival.validation import (
    CVConfig,
    check_fold,
    cluster_folds,
    derive_seed,
    event_balanced_splitter,
    full_data_fold,
)


@pytest.fixture
def subjects():
    return pd.DataFrame({
        "region": ["West", "East", "North", "East", "West", "North", "East"],
        "time_days": np.arange(1.0, 8.0),
    })


class TestEventBalancedSplitter:
    """Tests for event_balanced_splitter function."""

    def test_event_balance(self):
        y = np.array(
            [(i % 4 == 0, float(i + 1)) for i in range(100)],
            dtype=[("event", bool), ("time", float)]
        )
        splits = event_balanced_splitter(y, CVConfig(n_splits=5, random_state=0))

        assert len(splits) == 5
        for _, test_idx in splits:
            assert y["event"][test_idx].sum() == 5

    def test_deterministic(self, sample_structured_y):
        cfg = CVConfig(n_splits=2, random_state=3)
        a = event_balanced_splitter(sample_structured_y, cfg)
        b = event_balanced_splitter(sample_structured_y, cfg)
        for (tr_a, te_a), (tr_b, te_b) in zip(a, b):
            np.testing.assert_array_equal(te_a, te_b)


class TestClusterFolds:
    """Tests for cluster_folds function."""

    def test_one_fold_per_cluster_sorted(self, subjects):
        folds = cluster_folds(subjects, "region")

        assert [f.cluster for f in folds] == ["East", "North", "West"]
        assert [f.index for f in folds] == [0, 1, 2]

    def test_train_is_complement(self, subjects):
        for fold in cluster_folds(subjects, "region"):
            assert len(np.intersect1d(fold.train_idx, fold.test_idx)) == 0
            assert len(fold.train_idx) + len(fold.test_idx) == len(subjects)
            assert (subjects["region"].iloc[fold.test_idx] == fold.cluster).all()
            assert (subjects["region"].iloc[fold.train_idx] != fold.cluster).all()

    def test_held_out_sets_partition_subjects(self, subjects):
        folds = cluster_folds(subjects, "region")
        held_out = np.sort(np.concatenate([f.test_idx for f in folds]))
        np.testing.assert_array_equal(held_out, np.arange(len(subjects)))

    def test_seeds_independent_of_row_order(self, subjects):
        a = cluster_folds(subjects, "region", base_seed=7)
        b = cluster_folds(subjects.iloc[::-1].reset_index(drop=True), "region", base_seed=7)
        assert [f.seed for f in a] == [f.seed for f in b]

    def test_missing_cluster_raises(self, subjects):
        subjects.loc[2, "region"] = None
        with pytest.raises(DataIntegrityError, match="Cluster identifier missing"):
            cluster_folds(subjects, "region")

    def test_single_cluster_raises(self, subjects):
        subjects["region"] = "East"
        with pytest.raises(DataIntegrityError, match="at least two clusters"):
            cluster_folds(subjects, "region")


class TestFullDataFold:
    """Tests for the extra full-data fold."""

    def test_full_data_fold(self):
        fold = full_data_fold(10, n_clusters=3, base_seed=42)

        assert fold.is_final
        assert fold.label == "full_data"
        assert fold.index == 3
        assert len(fold.test_idx) == 0
        np.testing.assert_array_equal(fold.train_idx, np.arange(10))
        assert fold.seed == derive_seed(42, 3)

    def test_derive_seed(self):
        assert derive_seed(42, 0) == derive_seed(42, 0)
        assert derive_seed(42, 0) != derive_seed(42, 1)
        assert derive_seed(42, 0) != derive_seed(43, 0)


class TestCheckFold:
    """Tests for check_fold function."""

    def test_degenerate_fold_raises(self, subjects):
        y = np.array(
            [(region == "East", 1.0) for region in subjects["region"]],
            dtype=[("event", bool), ("time", float)]
        )
        folds = cluster_folds(subjects, "region")

        # holding out East leaves no events in training
        with pytest.raises(DataIntegrityError) as exc:
            check_fold(folds[0], y)
        assert exc.value.context["fold"] == "East"
        assert exc.value.context["n_events"] == 0

        check_fold(folds[1], y)

    def test_all_events_raises(self, subjects):
        y = np.array([(True, 1.0)] * len(subjects), dtype=[("event", bool), ("time", float)])
        with pytest.raises(DataIntegrityError, match="censored"):
            check_fold(full_data_fold(len(subjects), 3), y)
