"""Imputation adapter boundary.

Imputation itself is an external collaborator: anything with a ``complete(records)``
method can be plugged into the pipeline. The pipeline calls it once per record set
(training subjects and held-out subjects separately), so no information flows from
the derivation set into the validation set or back.

Example:
    >>> adapter = SimpleImputationAdapter(numeric=["age"], categorical=["sex"])
    >>> train_c, test_c = impute_fold(adapter, train, test, covariates=["age", "sex"])
"""
from __future__ import annotations
from typing import List, Protocol, Sequence, Tuple
import logging
import pandas as pd
from sklearn.impute import SimpleImputer

from iecv_survival.errors import DataIntegrityError


logger = logging.getLogger("iecv_survival.imputation")


class ImputationAdapter(Protocol):
    """Returns a complete record set of identical shape and row order."""

    def complete(self, records: pd.DataFrame) -> pd.DataFrame:
        ...


class CompleteCaseCheck:
    """Pass-through adapter for data that is already complete."""

    def complete(self, records: pd.DataFrame) -> pd.DataFrame:
        return records.copy()


class SimpleImputationAdapter:
    """Single imputation with scikit-learn's SimpleImputer.

    Numeric covariates get the median, categorical covariates the most frequent
    level, both estimated from the record set being completed.

    Attributes:
        numeric: Numeric covariate names
        categorical: Categorical covariate names
    """

    def __init__(self, numeric: Sequence[str], categorical: Sequence[str]):
        self.numeric = list(numeric)
        self.categorical = list(categorical)

    def complete(self, records: pd.DataFrame) -> pd.DataFrame:
        out = records.copy()
        num_cols = [c for c in self.numeric if out[c].isna().any()]
        cat_cols = [c for c in self.categorical if out[c].isna().any()]

        empty = [c for c in num_cols + cat_cols if out[c].isna().all()]
        if empty:
            raise DataIntegrityError(
                "Covariate entirely missing, nothing to impute from",
                columns=empty, n_rows=len(out)
            )

        if num_cols:
            imputer = SimpleImputer(strategy="median")
            out[num_cols] = imputer.fit_transform(out[num_cols])
        if cat_cols:
            imputer = SimpleImputer(strategy="most_frequent")
            out[cat_cols] = imputer.fit_transform(out[cat_cols].astype(object))
        return out


def _check_completed(
    before: pd.DataFrame,
    after: pd.DataFrame,
    covariates: List[str],
    role: str,
) -> None:
    if list(after.columns) != list(before.columns) or not after.index.equals(before.index):
        raise DataIntegrityError(
            "Imputation changed the shape or row order of the record set",
            role=role, n_rows=len(before), n_rows_after=len(after)
        )
    untouched = [c for c in before.columns if c not in covariates]
    for col in untouched:
        if not before[col].equals(after[col]):
            raise DataIntegrityError(
                "Imputation modified a non-covariate column", role=role, column=col
            )
    remaining = after[covariates].isna().sum()
    remaining = remaining[remaining > 0]
    if len(remaining):
        raise DataIntegrityError(
            "Record set still incomplete after imputation",
            role=role, columns=list(remaining.index), n_rows=len(after)
        )


def impute_fold(
    adapter: ImputationAdapter,
    train: pd.DataFrame,
    test: pd.DataFrame,
    covariates: List[str],
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Complete the training and held-out record sets independently.

    Args:
        adapter: Imputation collaborator
        train: Training subjects of the fold
        test: Held-out subjects of the fold (may be empty for the full-data model)
        covariates: Columns allowed to contain missing values

    Returns:
        Tuple of completed (train, test)

    Raises:
        DataIntegrityError: If the adapter breaks the boundary contract
    """
    train_done = adapter.complete(train)
    _check_completed(train, train_done, covariates, role="train")

    if len(test):
        test_done = adapter.complete(test)
        _check_completed(test, test_done, covariates, role="test")
    else:
        test_done = test.copy()

    logger.debug(
        f"Imputed train ({int(train[covariates].isna().sum().sum())} cells) and "
        f"test ({int(test[covariates].isna().sum().sum())} cells) independently"
    )
    return train_done, test_done
