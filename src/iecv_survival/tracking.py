"""Optional MLflow tracking of IECV runs.

Tracking never decides the outcome of a run: every wrapper returns False and logs a
warning when MLflow is unavailable, and the CSV outputs remain the record of truth.
"""
from __future__ import annotations
import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import mlflow
import mlflow.exceptions


EXPERIMENT_NAME = "iecv_survival"


def start_run(run_name: str, tags: Dict[str, str] | None = None, tracking_dir: Optional[str] = None):
    """Start an MLflow run under the iecv_survival experiment.

    Args:
        run_name: Name identifier for this run
        tags: Optional tags to attach to the run
        tracking_dir: Local directory holding the SQLite store ``mlflow.db`` and
            the run artifacts (e.g. data/outputs/sample/mlruns)

    Returns:
        Active MLflow run context manager

    Raises:
        mlflow.exceptions.MlflowException: If the tracking backend is unusable

    Example:
        >>> with start_run("iecv_sample", tags={"run_type": "sample"}):
        ...     safe_log_metrics({"pooled_concordance": 0.71})
    """
    if tracking_dir:
        root = Path(tracking_dir).absolute()
        root.mkdir(parents=True, exist_ok=True)
        mlflow.set_tracking_uri(f"sqlite:///{(root / 'mlflow.db').as_posix()}")
        if mlflow.get_experiment_by_name(EXPERIMENT_NAME) is None:
            mlflow.create_experiment(EXPERIMENT_NAME, artifact_location=(root / "artifacts").as_uri())
    mlflow.set_experiment(EXPERIMENT_NAME)
    return mlflow.start_run(run_name=run_name, tags=tags)


def _report(logger: Optional[logging.Logger], what: str, e: Exception) -> None:
    if logger is None:
        return
    if isinstance(e, mlflow.exceptions.MlflowException):
        logger.warning(f"MLflow {what} logging failed: {e}", extra={"category": "mlflow_error"})
    else:
        logger.error(f"Unexpected error in MLflow {what} logging: {e}", extra={"category": "mlflow_error"})


def safe_log_metrics(
    metrics: Dict[str, float],
    step: Optional[int] = None,
    logger: Optional[logging.Logger] = None
) -> bool:
    """Log metrics to the active run; NaN values are dropped.

    Returns:
        True if logging succeeded, False if it failed
    """
    finite = {k: float(v) for k, v in metrics.items() if v is not None and v == v}
    try:
        mlflow.log_metrics(finite, step=step)
        return True
    except Exception as e:
        _report(logger, "metrics", e)
        return False


def safe_log_params(
    params: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> bool:
    """Log parameters to the active run, stringifying values MLflow rejects.

    Returns:
        True if logging succeeded, False if it failed
    """
    try:
        mlflow.log_params({k: v if isinstance(v, (int, float, str, bool)) else str(v)
                           for k, v in params.items()})
        return True
    except Exception as e:
        _report(logger, "params", e)
        return False


def safe_log_artifact(
    path: str,
    logger: Optional[logging.Logger] = None
) -> bool:
    """Log a file to the active run.

    Returns:
        True if logging succeeded, False if the file is missing or logging failed
    """
    if not os.path.exists(path):
        if logger:
            logger.warning(f"Artifact not found, skipping: {path}")
        return False
    try:
        mlflow.log_artifact(path)
        return True
    except Exception as e:
        _report(logger, f"artifact ({path})", e)
        return False
