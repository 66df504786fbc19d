"""Projection of subjects through a fitted model.

The prognostic index of a subject is the dot product of its encoded covariates
with the model coefficients. The held-out cluster of a fold is always projected
with the schema fixed on that fold's training subjects, never with one refitted
on the held-out subjects.
"""
from __future__ import annotations
import os
import logging
import joblib
import numpy as np
import pandas as pd
from typing import List, Optional, Tuple

from iecv_survival.config import IECVConfig
from iecv_survival.data import load_data, RunType
from iecv_survival.encoding import FeatureSchema, assert_same_schema, transform
from iecv_survival.imputation import SimpleImputationAdapter
from iecv_survival.models import FittedModel
from iecv_survival.utils import ensure_dir, get_output_paths, versioned_name


logger = logging.getLogger("iecv_survival.predict")


def project(fitted_model: FittedModel, schema: FeatureSchema, records: pd.DataFrame) -> pd.Series:
    """Compute the prognostic index of every record.

    Args:
        fitted_model: Model of the fold
        schema: Schema the records are encoded with; must equal the model's training schema
        records: Complete record set

    Returns:
        Series named "prognostic_index" aligned with ``records.index``

    Raises:
        SchemaMismatchError: If ``schema`` is not the model's training schema
        EncodingError: If a record carries a categorical level unseen in training

    Example:
        >>> pi = project(model, schema, test_records)
        >>> pi.name
        'prognostic_index'
    """
    assert_same_schema(fitted_model.schema, schema, n_rows=len(records))
    X = transform(schema, records)
    pi = X.to_numpy() @ fitted_model.coefficients
    return pd.Series(pi, index=records.index, name="prognostic_index")


def baseline_cumulative_hazard(fitted_model: FittedModel, horizon: float) -> float:
    """Breslow cumulative baseline hazard H0(horizon) of the training subjects."""
    step = fitted_model.baseline.cum_baseline_hazard_
    idx = np.searchsorted(step.x, horizon, side="right") - 1
    if idx < 0:
        return 0.0
    return float(step.a * step.y[idx] + step.b)


def predict_event_probability(
    fitted_model: FittedModel,
    prognostic_index,
    horizon: float,
) -> np.ndarray:
    """Probability of the event by ``horizon``: 1 - exp(-H0(horizon) * exp(PI)).

    Args:
        fitted_model: Model whose baseline hazard is used
        prognostic_index: Prognostic index from ``project`` with the same model
        horizon: Prediction horizon in days

    Returns:
        Array of probabilities in [0, 1]
    """
    h0 = baseline_cumulative_hazard(fitted_model, horizon)
    pi = np.asarray(prognostic_index, dtype=float)
    # exp overflow only pushes the probability to 1
    with np.errstate(over="ignore"):
        risk = 1.0 - np.exp(-h0 * np.exp(pi))
    return np.clip(risk, 0.0, 1.0)


def coefficient_table(fitted_model: FittedModel) -> pd.DataFrame:
    """Coefficients and hazard ratios of a model, rounded to three decimals.

    Returns:
        DataFrame with columns term, coefficient, hazard_ratio in schema column order

    Example:
        >>> coefficient_table(final_model).head(2)
                   term  coefficient  hazard_ratio
        0           age        0.041         1.042
        1           bmi        0.000         1.000
    """
    coef = np.asarray(fitted_model.coefficients, dtype=float)
    return pd.DataFrame({
        "term": fitted_model.feature_names,
        "coefficient": np.round(coef, 3),
        "hazard_ratio": np.round(np.exp(coef), 3),
    })


def load_final_model(outdir: str) -> Tuple[str, FittedModel]:
    """Load the full-data model written by ``write_outputs``.

    Args:
        outdir: Output directory of a training run

    Returns:
        Tuple of (path, FittedModel)

    Raises:
        FileNotFoundError: If no saved model exists in outdir
    """
    model_path = os.path.join(outdir, "final_model.joblib")
    if not os.path.exists(model_path):
        raise FileNotFoundError(
            f"No saved final model found at {model_path}. Please run training first."
        )
    return model_path, joblib.load(model_path)


def score_subjects(
    fitted_model: FittedModel,
    records: pd.DataFrame,
    config: Optional[IECVConfig] = None,
    horizons: Optional[List[float]] = None,
) -> pd.DataFrame:
    """Prognostic index and event probabilities for new subjects.

    Covariates are completed by imputation on ``records`` alone and encoded with
    the model's own training schema.

    Args:
        fitted_model: Deployable model
        records: New subjects with the covariate columns (outcome columns not needed)
        config: Column layout and default horizon. Defaults to IECVConfig()
        horizons: Horizons in days. Defaults to the configured prediction horizon

    Returns:
        DataFrame with id column (when present), prognostic_index and one
        ``event_prob_<h>d`` column per horizon
    """
    config = config or IECVConfig()
    data = config.data
    horizons = horizons or [config.analysis.prediction_horizon]

    adapter = SimpleImputationAdapter(data.continuous_features, data.categorical_features)
    completed = adapter.complete(records)
    pi = project(fitted_model, fitted_model.schema, completed)

    results = {}
    if data.id_column in records.columns:
        results[data.id_column] = records[data.id_column].to_numpy()
    results["prognostic_index"] = pi.to_numpy()
    for h in horizons:
        results[f"event_prob_{h:g}d"] = predict_event_probability(fitted_model, pi, h)
    return pd.DataFrame(results, index=records.index)


def generate_predictions(
    file_path: str,
    run_type: RunType = "sample",
    config: Optional[IECVConfig] = None,
    horizons: Optional[List[float]] = None,
    output_dir: Optional[str] = None,
) -> str:
    """Score every record of a file with the saved full-data model of a run.

    Args:
        file_path: Path to input file (CSV or pickle)
        run_type: Determines which model and output directory to use
        config: Column layout and default horizon
        horizons: Horizons in days
        output_dir: Base output directory. Defaults to data/outputs/{run_type}

    Returns:
        Path to saved predictions CSV file

    Example:
        >>> pred_path = generate_predictions("data/inputs/sample/cohort.csv", run_type="sample")
    """
    paths = get_output_paths(run_type, base_dir=output_dir)
    model_path, fitted_model = load_final_model(paths["artifacts"])
    logger.info(f"Using final model: {model_path} ({run_type})")

    df = load_data(file_path, run_type=run_type)
    pred_df = score_subjects(fitted_model, df, config=config, horizons=horizons)

    ensure_dir(paths["predictions"])
    output_path = os.path.join(
        paths["predictions"], versioned_name("event_predictions.csv", run_type)
    )
    pred_df.to_csv(output_path, index=False)
    logger.info(f"[{run_type.upper()}] Predictions for {len(pred_df):,} subjects saved to: {output_path}")
    return output_path
