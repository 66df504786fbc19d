"""Configuration for the IECV pipeline.

This module provides the configuration surface of the pipeline:
- DataConfig: covariates, cluster column and outcome columns
- AnalysisConfig: prediction horizon, censoring horizon, threshold grid, seeds
- ModelHyperparameters: elastic-net mixing per context (final vs per-fold)
- ExecutionConfig: sequential or joblib-parallel execution of folds

All sections are dataclasses and the master IECVConfig round-trips through JSON.
"""
from __future__ import annotations
from enum import Enum
from dataclasses import asdict, dataclass, field
from typing import Optional
import os
import multiprocessing
import json
import logging

import numpy as np


logger = logging.getLogger("iecv_survival.config")


class ExecutionMode(str, Enum):
    """How the cluster folds are executed.

    Attributes:
        PANDAS: One fold after another in the calling process (default)
        MULTIPROCESSING: One joblib worker per fold
    """
    PANDAS = "pandas"
    MULTIPROCESSING = "mp"


@dataclass
class ExecutionConfig:
    """Fold execution settings.

    Attributes:
        mode: Sequential (pandas) or joblib process pool (mp)
        n_jobs: Worker count for mp; -1 resolves to the number of CPUs
        verbose: joblib verbosity (0, 10 or 50)
        backend: joblib backend name

    Example:
        >>> ExecutionConfig(mode="mp", n_jobs=4).is_parallel()
        True
    """
    mode: ExecutionMode = ExecutionMode.PANDAS
    n_jobs: int = 1
    verbose: int = 0
    backend: str = "loky"

    def __post_init__(self):
        self.mode = ExecutionMode(self.mode)
        if self.n_jobs == -1:
            self.n_jobs = multiprocessing.cpu_count()
        if self.n_jobs < 1:
            raise ValueError(f"n_jobs must be -1 or a positive integer, got {self.n_jobs}")
        # sequential mode ignores any worker count
        if self.mode is ExecutionMode.PANDAS:
            self.n_jobs = 1

    def is_parallel(self) -> bool:
        return self.mode is ExecutionMode.MULTIPROCESSING and self.n_jobs > 1

    def __str__(self) -> str:
        kind = f"{self.n_jobs} joblib workers" if self.is_parallel() else "sequential"
        return f"{self.mode.value} ({kind})"


def create_execution_config(
    mode: Optional[str] = None,
    n_jobs: int = -1,
    verbose: int = 0
) -> ExecutionConfig:
    """Build an ExecutionConfig from command line values.

    Args:
        mode: 'pandas' or 'mp'; None falls back to sequential execution
        n_jobs: Workers for 'mp' (-1 = all CPUs)
        verbose: joblib verbosity

    Returns:
        ExecutionConfig
    """
    return ExecutionConfig(mode=mode or ExecutionMode.PANDAS, n_jobs=n_jobs, verbose=verbose)


# ============================================================================
# Model Hyperparameters Configuration
# ============================================================================

@dataclass
class ModelHyperparameters:
    """Hyperparameters of the penalized Cox trainer.

    The full-data model is a pure lasso; the per-cluster validation models
    lean towards ridge.

    Attributes:
        final_l1_ratio: Elastic-net mixing of the full-data model (1.0 = lasso)
        fold_l1_ratio: Elastic-net mixing of the per-cluster validation models
        alpha_min_ratio: Ratio of smallest to largest alpha in the regularization path
        n_alphas: Number of candidate strengths on the path
        max_iter: Maximum coordinate descent iterations per fit
    """
    final_l1_ratio: float = 1.0
    """Balance between L1 (1.0) and L2 penalty for the final model.

    Valid range: (0.0, 1.0]
    """

    fold_l1_ratio: float = 0.05
    """Balance between L1 and L2 penalty for the per-fold models.

    scikit-survival rejects l1_ratio == 0, so ridge is approximated by a small value.
    """

    alpha_min_ratio: float = 0.01
    n_alphas: int = 100
    max_iter: int = 100_000

    def __post_init__(self):
        for name in ("final_l1_ratio", "fold_l1_ratio"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ValueError(f"{name} must be in (0, 1], got {value}")

    @classmethod
    def for_environment(cls, run_type: str) -> "ModelHyperparameters":
        """Production runs search a shorter path; sample runs keep the defaults."""
        if run_type == "production":
            return cls(n_alphas=50)
        return cls()


# ============================================================================
# Data Configuration
# ============================================================================

@dataclass
class DataConfig:
    """Configuration of the subject record layout.

    Attributes:
        categorical_features: Unordered nominal covariates
        continuous_features: Real-valued covariates
        cluster_column: Geographic cluster identifier used for partitioning
        time_column: Days to event or censoring
        event_column: 0 = censored, 1 = primary event, 2 = competing event
        id_column: Optional subject identifier
        primary_event_code: Code of the modelled event
        competing_event_code: Code of the competing event (treated as censored)
    """
    categorical_features: tuple[str, ...] = (
        "sex",
        "smoking_status",
        "deprivation_quintile",
    )
    """Categorical covariates, one-hot encoded against a reference level."""

    continuous_features: tuple[str, ...] = (
        "age",
        "bmi",
        "systolic_bp",
        "cholesterol_ratio",
    )
    """Continuous covariates, passed to the design matrix unchanged."""

    cluster_column: str = "region"
    """Column holding the cluster identifier. Never imputed."""

    time_column: str = "time_days"
    """Column containing follow-up time in days."""

    event_column: str = "event"
    """Column containing the event indicator."""

    id_column: str = "patient_id"
    """Column containing unique identifiers for subjects."""

    primary_event_code: int = 1
    competing_event_code: int = 2

    @property
    def covariates(self) -> list[str]:
        return list(self.continuous_features) + list(self.categorical_features)


# ============================================================================
# Analysis Configuration
# ============================================================================

@dataclass
class AnalysisConfig:
    """Configuration for the validation workflow.

    Attributes:
        prediction_horizon: Fixed prediction time in days for Brier, calibration and DCA
        administrative_censoring: Follow-up is truncated at this many days
        threshold_start: First decision threshold
        threshold_stop: Last decision threshold (1.0 itself is always excluded)
        threshold_step: Threshold grid spacing
        inner_cv_folds: Folds of the internal CV selecting the penalty strength
        random_state: Base seed; each fold derives its own seed from it
        abort_on_convergence_failure: Abort the run instead of recording a failed fold
        track_mlflow: Log parameters and metrics to MLflow
    """
    prediction_horizon: float = 2190.0
    """Prediction horizon in days (6 years)."""

    administrative_censoring: float = 2190.0
    """Administrative censoring horizon in days."""

    threshold_start: float = 0.0
    threshold_stop: float = 1.0
    threshold_step: float = 0.01

    inner_cv_folds: int = 5
    """Number of inner folds for regularization-strength selection.

    Valid range: [2, 10]
    """

    random_state: int = 42
    """Base random seed for reproducible runs."""

    abort_on_convergence_failure: bool = False
    track_mlflow: bool = False

    def threshold_grid(self) -> np.ndarray:
        """Decision thresholds in [start, stop), with 1.0 excluded.

        Net benefit divides by (1 - t), so t = 1 is never evaluated.
        """
        n_steps = int(round((self.threshold_stop - self.threshold_start) / self.threshold_step))
        grid = np.round(self.threshold_start + self.threshold_step * np.arange(n_steps + 1), 10)
        grid = grid[(grid >= 0.0) & (grid < 1.0)]
        if len(grid) == 0:
            raise ValueError(
                f"Empty threshold grid for start={self.threshold_start}, "
                f"stop={self.threshold_stop}, step={self.threshold_step}"
            )
        return grid


# ============================================================================
# Master Configuration
# ============================================================================

def _jsonable(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, tuple):
        return list(value)
    return value


@dataclass
class IECVConfig:
    """All settings of one IECV run.

    Attributes:
        hyperparameters: Trainer settings
        data: Subject record layout
        analysis: Horizons, thresholds, inner folds and seeds
        execution: Sequential or parallel fold execution
        run_type: "sample" or "production"
        description: Free text stored with the run outputs

    Example:
        >>> config = IECVConfig.for_run_type("production")
        >>> config.save("data/outputs/production/artifacts/config.json")
        >>> IECVConfig.load("data/outputs/production/artifacts/config.json") == config
        True
    """
    hyperparameters: ModelHyperparameters = field(default_factory=ModelHyperparameters)
    data: DataConfig = field(default_factory=DataConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    run_type: str = "sample"
    description: str = ""

    @classmethod
    def for_run_type(cls, run_type: str) -> "IECVConfig":
        """Preset for a run type: production runs folds in a joblib pool over all CPUs."""
        execution = (
            ExecutionConfig(mode=ExecutionMode.MULTIPROCESSING, n_jobs=-1)
            if run_type == "production" else ExecutionConfig()
        )
        return cls(
            hyperparameters=ModelHyperparameters.for_environment(run_type),
            execution=execution,
            run_type=run_type,
        )

    def to_dict(self) -> dict:
        """Nested plain dictionary (enums as values, tuples as lists)."""
        return asdict(self, dict_factory=lambda items: {k: _jsonable(v) for k, v in items})

    def save(self, path: str) -> None:
        """Write the configuration as indented JSON, creating the parent directory."""
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: str) -> "IECVConfig":
        """Read a configuration written by ``save``.

        Raises:
            FileNotFoundError: If path does not exist
            TypeError: If a section has unknown keys
        """
        with open(path) as f:
            raw = json.load(f)

        data = {
            k: tuple(v) if isinstance(v, list) else v for k, v in raw["data"].items()
        }
        return cls(
            hyperparameters=ModelHyperparameters(**raw["hyperparameters"]),
            data=DataConfig(**data),
            analysis=AnalysisConfig(**raw["analysis"]),
            execution=ExecutionConfig(**raw["execution"]),
            run_type=raw["run_type"],
            description=raw.get("description", ""),
        )
