"""Feature encoding with a schema fixed by the training subjects.

The schema records, for each categorical covariate, the dropped reference level and
the ordered list of indicator levels, plus the continuous columns. It is fitted once
per fold on the training subjects and passed explicitly into every ``transform`` call,
so the held-out subjects can never influence column set, order or reference levels.

Example:
    >>> schema = fit_schema(train, continuous=["age"], categorical=["sex"])
    >>> X_train = transform(schema, train)
    >>> X_test = transform(schema, test)   # same columns, same order
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Sequence, Tuple
import logging
import numpy as np
import pandas as pd
from sklearn.compose import ColumnTransformer
from sklearn.preprocessing import OneHotEncoder

from iecv_survival.errors import DataIntegrityError, EncodingError, SchemaMismatchError


logger = logging.getLogger("iecv_survival.encoding")


@dataclass(frozen=True)
class CategoricalSpec:
    """Encoding of one categorical covariate.

    Attributes:
        column: Covariate name
        reference: Level absorbed into the baseline (no indicator column)
        levels: Non-reference levels, one indicator column each, in column order
    """
    column: str
    reference: str
    levels: Tuple[str, ...]

    @property
    def all_levels(self) -> Tuple[str, ...]:
        return (self.reference,) + self.levels


@dataclass(frozen=True)
class FeatureSchema:
    """Column layout of a design matrix.

    Equality is structural: continuous columns, categorical specs and output columns.
    The fitted encoder is carried along for ``transform`` but never compared.
    """
    continuous: Tuple[str, ...]
    categorical: Tuple[CategoricalSpec, ...]
    columns: Tuple[str, ...]
    encoder: ColumnTransformer = field(compare=False, repr=False)

    @property
    def n_columns(self) -> int:
        return len(self.columns)


def _as_level(value) -> str:
    # 2 and 2.0 are the same level (integer codes come back as floats after imputation)
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return str(int(value))
    return str(value)


def _categorical_frame(records: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    return pd.DataFrame(
        {col: records[col].map(_as_level) for col in columns}, index=records.index
    )


def _check_columns(records: pd.DataFrame, continuous, categorical) -> None:
    missing = [c for c in list(continuous) + list(categorical) if c not in records.columns]
    if missing:
        raise DataIntegrityError(
            "Covariates missing from record set", columns=missing, n_rows=len(records)
        )
    incomplete = [
        c for c in list(continuous) + list(categorical) if records[c].isna().any()
    ]
    if incomplete:
        raise DataIntegrityError(
            "Covariates contain missing values; impute before encoding",
            columns=incomplete, n_rows=len(records)
        )


def _frame_for_encoder(records, continuous, categorical) -> pd.DataFrame:
    frame = _categorical_frame(records, categorical)
    for col in continuous:
        try:
            frame[col] = records[col].astype(float)
        except (TypeError, ValueError) as e:
            raise DataIntegrityError(
                f"Continuous covariate is not numeric: {e}", column=col, n_rows=len(records)
            ) from e
    return frame[list(continuous) + list(categorical)]


def fit_schema(
    records: pd.DataFrame,
    continuous: Sequence[str],
    categorical: Sequence[str],
) -> FeatureSchema:
    """Fix the design-matrix schema from training subjects.

    Reference level of each categorical covariate is its first level in sorted
    order, as with ``OneHotEncoder(drop="first")``.

    Args:
        records: Complete training subjects
        continuous: Continuous covariate names
        categorical: Categorical covariate names

    Returns:
        FeatureSchema to be reused verbatim for every record set of the fold

    Raises:
        DataIntegrityError: If covariates are missing or incomplete
    """
    continuous, categorical = tuple(continuous), tuple(categorical)
    _check_columns(records, continuous, categorical)

    encoder = ColumnTransformer(
        transformers=[
            ("num", "passthrough", list(continuous)),
            ("cat", OneHotEncoder(
                drop="first", handle_unknown="error", sparse_output=False, dtype=float
            ), list(categorical)),
        ],
        verbose_feature_names_out=False,
    )
    encoder.fit(_frame_for_encoder(records, continuous, categorical))

    ohe = encoder.named_transformers_["cat"] if categorical else None
    specs = []
    for i, col in enumerate(categorical):
        cats = [str(c) for c in ohe.categories_[i]]
        ref_idx = 0 if ohe.drop_idx_ is None else int(ohe.drop_idx_[i])
        reference = cats[ref_idx]
        levels = tuple(c for j, c in enumerate(cats) if j != ref_idx)
        if not levels:
            logger.warning(f"Categorical covariate '{col}' has a single level in training data")
        specs.append(CategoricalSpec(column=col, reference=reference, levels=levels))

    columns = tuple(str(c) for c in encoder.get_feature_names_out())
    schema = FeatureSchema(
        continuous=continuous,
        categorical=tuple(specs),
        columns=columns,
        encoder=encoder,
    )
    logger.debug(f"Fitted schema with {schema.n_columns} columns: {list(columns)}")
    return schema


def transform(schema: FeatureSchema, records: pd.DataFrame) -> pd.DataFrame:
    """Encode records with a previously fitted schema.

    Args:
        schema: Schema fitted on the fold's training subjects
        records: Complete record set (training or held-out)

    Returns:
        DataFrame with columns ``schema.columns`` and the index of ``records``

    Raises:
        EncodingError: If a categorical level is absent from the schema
        DataIntegrityError: If covariates are missing or the matrix is not finite
    """
    categorical = [spec.column for spec in schema.categorical]
    _check_columns(records, schema.continuous, categorical)

    cat_frame = _categorical_frame(records, categorical)
    for spec in schema.categorical:
        seen = pd.unique(cat_frame[spec.column])
        unseen = sorted(set(seen) - set(spec.all_levels))
        if unseen:
            n_rows = int(cat_frame[spec.column].isin(unseen).sum())
            raise EncodingError(
                "Categorical level not present in training schema",
                column=spec.column, level=unseen[0],
                unseen_levels=unseen, n_rows=n_rows
            )

    frame = _frame_for_encoder(records, schema.continuous, categorical)
    X = np.asarray(schema.encoder.transform(frame), dtype=float)

    finite = np.isfinite(X)
    if not finite.all():
        bad_cols = [schema.columns[j] for j in np.where(~finite.all(axis=0))[0]]
        raise DataIntegrityError(
            "Design matrix contains NaN or infinite values",
            columns=bad_cols, n_rows=int((~finite.all(axis=1)).sum())
        )

    return pd.DataFrame(X, columns=list(schema.columns), index=records.index)


def assert_same_schema(expected: FeatureSchema, actual: FeatureSchema, **context) -> None:
    """Fail unless two schemas are structurally identical.

    Raises:
        SchemaMismatchError: With the first differing component
    """
    if expected == actual:
        return
    if expected.columns != actual.columns:
        detail = f"columns {list(expected.columns)} != {list(actual.columns)}"
    elif expected.categorical != actual.categorical:
        diffs = [
            f"{a.column}: ref={a.reference}/{b.reference}"
            for a, b in zip(expected.categorical, actual.categorical) if a != b
        ]
        detail = "categorical specs differ: " + "; ".join(diffs)
    else:
        detail = f"continuous {list(expected.continuous)} != {list(actual.continuous)}"
    raise SchemaMismatchError(f"Projection schema differs from training schema: {detail}", **context)
