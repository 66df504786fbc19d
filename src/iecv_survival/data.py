from __future__ import annotations
from typing import Literal, Tuple
import logging
import numpy as np
import pandas as pd
from pathlib import Path

from iecv_survival.config import DataConfig, AnalysisConfig
from iecv_survival.errors import DataIntegrityError

# Run type for distinguishing sample vs production runs
RunType = Literal["sample", "production"]

logger = logging.getLogger("iecv_survival.data")


def load_data(
    file_path: str,
    run_type: RunType = "sample"
) -> pd.DataFrame:
    """Load subject records from CSV or pickle file.

    Automatically detects file format based on extension and loads the data.
    Supports both CSV (.csv) and pickle (.pkl, .pickle) formats.

    Args:
        file_path: Path to input file (CSV or pickle)
        run_type: Type of run - "sample" for development, "production" for full data.
            Used for logging only.

    Returns:
        DataFrame with one row per subject

    Raises:
        FileNotFoundError: If file_path does not exist
        ValueError: If file format is not supported

    Example:
        >>> df = load_data("data/inputs/sample/cohort.csv", run_type="sample")
        >>> print(df.shape)
        (1000, 11)
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {file_path}")

    suffix = file_path.suffix.lower()

    if suffix == '.csv':
        logger.info(f"Loading CSV data from {file_path} (run_type={run_type})")
        df = pd.read_csv(file_path)
    elif suffix in ['.pkl', '.pickle']:
        logger.info(f"Loading pickle data from {file_path} (run_type={run_type})")
        df = pd.read_pickle(file_path)
    else:
        raise ValueError(
            f"Unsupported file format: {suffix}. "
            f"Supported formats: .csv, .pkl, .pickle"
        )

    logger.info(f"Loaded {len(df):,} records with {len(df.columns)} columns")
    return df


def prepare_subjects(
    df: pd.DataFrame,
    data_config: DataConfig = None,
    analysis_config: AnalysisConfig = None,
) -> pd.DataFrame:
    """Validate subject records and derive the binary modelling outcome.

    Steps:
    1. Check required columns are present
    2. Check cluster id, event time and event indicator are never missing
    3. Check event times are strictly positive
    4. Merge the event indicator {0, 1, 2} to {0, 1}: competing events become censored
    5. Apply administrative censoring at ``analysis_config.administrative_censoring``

    Args:
        df: Raw subject records
        data_config: Column layout. Defaults to DataConfig()
        analysis_config: Horizons. Defaults to AnalysisConfig()

    Returns:
        Copy of df restricted to id (if present), cluster, outcome and covariate columns,
        with a 0/1 integer event column and censored times

    Raises:
        DataIntegrityError: On missing columns, missing cluster/outcome values,
            non-positive times or unknown event codes
    """
    data_config = data_config or DataConfig()
    analysis_config = analysis_config or AnalysisConfig()
    time_col, event_col = data_config.time_column, data_config.event_column
    cluster_col = data_config.cluster_column

    required = [cluster_col, time_col, event_col] + data_config.covariates
    missing_cols = [c for c in required if c not in df.columns]
    if missing_cols:
        raise DataIntegrityError(
            "Required columns missing from subject records",
            columns=missing_cols, n_rows=len(df)
        )

    for col in (cluster_col, time_col, event_col):
        n_missing = int(df[col].isna().sum())
        if n_missing:
            raise DataIntegrityError(
                "Missing values in a column that is never imputed",
                column=col, n_missing=n_missing, n_rows=len(df)
            )

    n_nonpositive = int((df[time_col] <= 0).sum())
    if n_nonpositive:
        raise DataIntegrityError(
            "Event times must be strictly positive",
            column=time_col, n_invalid=n_nonpositive, n_rows=len(df)
        )

    known_codes = {0, data_config.primary_event_code, data_config.competing_event_code}
    # checked on the raw values so that 1.5 is not truncated to a valid code
    unknown = ~df[event_col].isin(sorted(known_codes))
    if unknown.any():
        raise DataIntegrityError(
            "Unknown event codes",
            column=event_col, codes=sorted(pd.unique(df.loc[unknown, event_col]).tolist())
        )

    keep = [c for c in [data_config.id_column] if c in df.columns] + required
    out = df[keep].copy()

    raw_event = out[event_col].astype(int)
    n_competing = int((raw_event == data_config.competing_event_code).sum())
    event = (raw_event == data_config.primary_event_code).astype(int)
    time = out[time_col].astype(float)

    horizon = analysis_config.administrative_censoring
    beyond = time > horizon
    event[beyond] = 0
    time[beyond] = horizon

    out[event_col] = event
    out[time_col] = time
    out[cluster_col] = out[cluster_col].astype(str)

    logger.info(
        f"Prepared {len(out):,} subjects: {int(event.sum()):,} events, "
        f"{n_competing:,} competing events censored, "
        f"{int(beyond.sum()):,} administratively censored at {horizon:g} days"
    )
    return out


def to_structured_y(df: pd.DataFrame, data_config: DataConfig = None) -> np.ndarray:
    """Create scikit-survival structured array from DataFrame.

    Args:
        df: DataFrame containing the event and time columns
        data_config: Column layout. Defaults to DataConfig()

    Returns:
        Structured numpy array with dtype=[('event', bool), ('time', float)]

    Example:
        >>> df = pd.DataFrame({'event': [1, 0], 'time_days': [120.0, 2190.0]})
        >>> y = to_structured_y(df)
        >>> y.dtype.names
        ('event', 'time')
    """
    data_config = data_config or DataConfig()
    y = np.array(
        list(zip(
            df[data_config.event_column].astype(bool).values,
            df[data_config.time_column].astype(float).values,
        )),
        dtype=[("event", bool), ("time", float)],
    )
    return y


def event_counts(y_struct: np.ndarray) -> Tuple[int, int]:
    """Return (number of subjects, number of events)."""
    return int(len(y_struct)), int(np.sum(y_struct["event"]))
