"""Unit tests for iecv_survival.imputation module."""
import pytest
import numpy as np
import pandas as pd
from iecv_survival.errors import DataIntegrityError
from iecv_survival.imputation import (
    CompleteCaseCheck,
    SimpleImputationAdapter,
    impute_fold,
)


COVARIATES = ["age", "sex"]


@pytest.fixture
def train():
    return pd.DataFrame({
        "region": ["A", "A", "A", "A"],
        "age": [40.0, np.nan, 60.0, 80.0],
        "sex": ["F", "F", np.nan, "M"],
        "time_days": [10.0, 20.0, 30.0, 40.0],
    }, index=[0, 1, 2, 3])


@pytest.fixture
def held_out():
    return pd.DataFrame({
        "region": ["B", "B", "B"],
        "age": [np.nan, 10.0, 20.0],
        "sex": ["M", "M", np.nan],
        "time_days": [5.0, 15.0, 25.0],
    }, index=[4, 5, 6])


@pytest.fixture
def adapter():
    return SimpleImputationAdapter(numeric=["age"], categorical=["sex"])


class TestSimpleImputationAdapter:
    """Tests for the scikit-learn backed adapter."""

    def test_median_and_mode(self, adapter, train):
        out = adapter.complete(train)

        assert out.loc[1, "age"] == 60.0
        assert out.loc[2, "sex"] == "F"
        assert not out[COVARIATES].isna().any().any()

    def test_shape_and_order_preserved(self, adapter, train):
        out = adapter.complete(train)

        assert list(out.columns) == list(train.columns)
        assert out.index.equals(train.index)

    def test_input_not_modified(self, adapter, train):
        before = train.copy()
        adapter.complete(train)
        pd.testing.assert_frame_equal(train, before)

    def test_entirely_missing_column_raises(self, adapter, train):
        train["age"] = np.nan
        with pytest.raises(DataIntegrityError, match="entirely missing"):
            adapter.complete(train)


class TestImputeFold:
    """Tests for impute_fold function."""

    def test_sets_imputed_independently(self, adapter, train, held_out):
        """Held-out values come from held-out subjects only."""
        train_done, test_done = impute_fold(adapter, train, held_out, COVARIATES)

        assert train_done.loc[1, "age"] == 60.0
        assert test_done.loc[4, "age"] == 15.0
        assert test_done.loc[6, "sex"] == "M"

    def test_empty_test_set(self, adapter, train):
        empty = train.iloc[0:0]
        train_done, test_done = impute_fold(adapter, train, empty, COVARIATES)

        assert len(test_done) == 0
        assert not train_done[COVARIATES].isna().any().any()

    def test_complete_case_check_leaves_gaps(self, train, held_out):
        with pytest.raises(DataIntegrityError, match="still incomplete") as exc:
            impute_fold(CompleteCaseCheck(), train, held_out, COVARIATES)
        assert exc.value.context["role"] == "train"

    def test_adapter_dropping_rows_rejected(self, train, held_out):
        class Dropper:
            def complete(self, records):
                return records.dropna()

        with pytest.raises(DataIntegrityError, match="shape or row order"):
            impute_fold(Dropper(), train, held_out, COVARIATES)

    def test_adapter_touching_outcome_rejected(self, adapter, train, held_out):
        class Shifter:
            def complete(self, records):
                out = adapter.complete(records)
                out["time_days"] = out["time_days"] + 1
                return out

        with pytest.raises(DataIntegrityError) as exc:
            impute_fold(Shifter(), train, held_out, COVARIATES)
        assert exc.value.context["column"] == "time_days"
