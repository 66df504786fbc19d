from __future__ import annotations
import os
import joblib
import mlflow.exceptions
import logging
from dataclasses import dataclass, field, asdict
from joblib import Parallel, delayed
import pandas as pd
import numpy as np
from typing import Dict, List, Optional

from iecv_survival.config import IECVConfig
from iecv_survival.data import prepare_subjects, to_structured_y, event_counts
from iecv_survival.decision_curve import decision_curve, plot_decision_curves, pool_decision_curves
from iecv_survival.encoding import fit_schema, transform
from iecv_survival.errors import ConvergenceError, IECVError
from iecv_survival.imputation import ImputationAdapter, SimpleImputationAdapter, impute_fold
from iecv_survival.metrics import PerformanceMetrics, evaluate_performance
from iecv_survival.models import FittedModel, PenalizedCoxTrainer
from iecv_survival.predict import coefficient_table, predict_event_probability, project
from iecv_survival.summary import summarise_performance
from iecv_survival.validation import Fold, check_fold, cluster_folds, full_data_fold
from iecv_survival.utils import ensure_dir, safe_filename, write_table
from iecv_survival.tracking import start_run, safe_log_params, safe_log_metrics, safe_log_artifact
from iecv_survival.logging_config import log_performance, ProgressLogger, capture_warnings
from iecv_survival.timing import Timer, log_execution_time


logger = logging.getLogger("iecv_survival.train")

APPARENT_COLUMNS = [
    "cluster", "status", "concordance", "concordance_se", "calibration_slope",
    "n_train", "n_train_events", "n_test", "n_test_events",
]
EXTERNAL_COLUMNS = APPARENT_COLUMNS + [
    "calibration_in_the_large", "calibration_slope_horizon", "brier_score",
    "alpha", "l1_ratio", "n_nonzero", "error",
]


@dataclass(frozen=True)
class PerformanceRecord:
    """One row of a performance table; immutable once the fold is complete."""
    fold_index: int
    cluster: str
    status: str
    n_train: int
    n_train_events: int
    n_test: int
    n_test_events: int
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    alpha: float = np.nan
    l1_ratio: float = np.nan
    n_nonzero: int = 0
    error: str = ""

    def to_row(self) -> dict:
        row = asdict(self)
        row.update(row.pop("metrics"))
        row.pop("n_subjects")
        row.pop("n_events")
        return row


@dataclass
class FoldResult:
    """Everything one fold produced.

    Attributes:
        fold: The fold
        apparent: Performance of the fold model on its own training subjects
        external: Performance on the held-out cluster (None for the full-data fold)
        decision_curve: Net benefit on the held-out cluster (None for the full-data fold)
        model: Fitted model, None when the fold failed
    """
    fold: Fold
    apparent: PerformanceRecord
    external: Optional[PerformanceRecord] = None
    decision_curve: Optional[pd.DataFrame] = None
    model: Optional[FittedModel] = None

    @property
    def ok(self) -> bool:
        return self.apparent.status == "ok"


@dataclass
class IECVResult:
    """Per-fold results in fold-index order plus the deployable full-data model."""
    folds: List[FoldResult]
    final: FoldResult
    config: IECVConfig

    @property
    def final_model(self) -> FittedModel:
        return self.final.model

    def apparent_table(self) -> pd.DataFrame:
        """Performance of each fold model on its own training subjects.

        The calibration slope here is that of a penalized fit: shrinkage pulls
        the coefficients towards zero, so the apparent slope sits above 1
        (about 1.1 to 1.25 on the default settings). A slope of exactly 1 only
        holds for an unpenalized maximum-likelihood fit.
        """
        rows = [r.apparent.to_row() for r in self.folds]
        return pd.DataFrame(rows).reindex(columns=APPARENT_COLUMNS)

    def external_table(self) -> pd.DataFrame:
        rows = [r.external.to_row() for r in self.folds]
        return pd.DataFrame(rows).reindex(columns=EXTERNAL_COLUMNS)

    def decision_curves(self) -> pd.DataFrame:
        curves = [r.decision_curve for r in self.folds if r.decision_curve is not None]
        if not curves:
            return pd.DataFrame(columns=["cluster", "n_test", "threshold", "net_benefit", "strategy"])
        return pd.concat(curves, ignore_index=True)

    def pooled_decision_curve(self) -> pd.DataFrame:
        return pool_decision_curves(self.decision_curves(), weight_column="n_test")

    def coefficient_table(self) -> pd.DataFrame:
        return coefficient_table(self.final_model)

    def summary_table(self) -> pd.DataFrame:
        return summarise_performance(self.external_table())


def _failed_result(fold: Fold, y_struct: np.ndarray, error: Exception, l1_ratio: float) -> FoldResult:
    n_train, n_train_events = event_counts(y_struct[fold.train_idx])
    n_test, n_test_events = event_counts(y_struct[fold.test_idx])
    record = PerformanceRecord(
        fold_index=fold.index, cluster=fold.label, status="failed",
        n_train=n_train, n_train_events=n_train_events,
        n_test=n_test, n_test_events=n_test_events,
        l1_ratio=l1_ratio, error=str(error),
    )
    return FoldResult(fold=fold, apparent=record, external=record)


def run_fold(
    fold: Fold,
    subjects: pd.DataFrame,
    y_struct: np.ndarray,
    config: IECVConfig,
    imputer: ImputationAdapter,
) -> FoldResult:
    """Impute, encode, fit, project and evaluate one fold.

    Schema and model are created here and never leave the fold except inside the
    returned FoldResult. The held-out cluster is encoded with the training schema.

    Args:
        fold: Fold to run (cluster fold or full-data fold)
        subjects: Prepared subject records (positional indices refer to these rows)
        y_struct: Structured outcome of ``subjects``
        config: Run configuration
        imputer: Imputation collaborator

    Returns:
        FoldResult; status "failed" if the trainer raised ConvergenceError on a
        cluster fold and the configuration does not abort on convergence failure

    Raises:
        DataIntegrityError, EncodingError, SchemaMismatchError: Always, with the fold label added
        ConvergenceError: On the full-data fold, or when abort_on_convergence_failure is set
    """
    data, analysis, hp = config.data, config.analysis, config.hyperparameters
    horizon = analysis.prediction_horizon
    l1_ratio = hp.final_l1_ratio if fold.is_final else hp.fold_l1_ratio
    fold_logger = logging.getLogger(f"iecv_survival.train.{safe_filename(fold.label)}")

    try:
        check_fold(fold, y_struct)
        train = subjects.iloc[fold.train_idx]
        test = subjects.iloc[fold.test_idx]
        y_train, y_test = y_struct[fold.train_idx], y_struct[fold.test_idx]

        train, test = impute_fold(imputer, train, test, data.covariates)
        schema = fit_schema(train, data.continuous_features, data.categorical_features)
        X_train = transform(schema, train)

        trainer = PenalizedCoxTrainer(
            l1_ratio=l1_ratio,
            n_alphas=hp.n_alphas,
            alpha_min_ratio=hp.alpha_min_ratio,
            max_iter=hp.max_iter,
            inner_cv_folds=analysis.inner_cv_folds,
        )
        model = trainer.fit(X_train, y_train, schema, seed=fold.seed)

        pi_train = project(model, schema, train)
        p_train = predict_event_probability(model, pi_train, horizon)
        apparent_metrics = evaluate_performance(y_train, pi_train, p_train, horizon)

        external_metrics, curve = None, None
        if len(test):
            pi_test = project(model, schema, test)
            p_test = predict_event_probability(model, pi_test, horizon)
            external_metrics = evaluate_performance(y_test, pi_test, p_test, horizon)
            curve = decision_curve(y_test, p_test, horizon, analysis.threshold_grid())
            curve.insert(0, "n_test", len(test))
            curve.insert(0, "cluster", fold.label)
    except ConvergenceError as e:
        e.with_context(fold=fold.label)
        if fold.is_final or analysis.abort_on_convergence_failure:
            raise
        fold_logger.error(f"Fold {fold.label} failed: {e}")
        return _failed_result(fold, y_struct, e, l1_ratio)
    except IECVError as e:
        raise e.with_context(fold=fold.label)

    n_train, n_train_events = event_counts(y_train)
    n_test, n_test_events = event_counts(y_test)
    common = dict(
        fold_index=fold.index, cluster=fold.label, status="ok",
        n_train=n_train, n_train_events=n_train_events,
        n_test=n_test, n_test_events=n_test_events,
        alpha=model.alpha, l1_ratio=model.l1_ratio, n_nonzero=model.n_nonzero,
    )
    apparent = PerformanceRecord(metrics=apparent_metrics, **common)
    external = None
    if external_metrics is not None:
        external = PerformanceRecord(metrics=external_metrics, **common)

    log_performance(
        fold_logger, f"Fold {fold.label} completed",
        apparent_c=apparent_metrics.concordance,
        external_c=external_metrics.concordance if external_metrics is not None else np.nan,
        n_test=n_test,
    )
    return FoldResult(fold=fold, apparent=apparent, external=external,
                      decision_curve=curve, model=model)


def fit_final_model(
    subjects: pd.DataFrame,
    y_struct: np.ndarray,
    n_clusters: int,
    config: IECVConfig,
    imputer: ImputationAdapter,
) -> FoldResult:
    """Fit the deployable lasso model on every subject (no held-out set)."""
    fold = full_data_fold(len(subjects), n_clusters, config.analysis.random_state)
    return run_fold(fold, subjects, y_struct, config, imputer)


def track_run(
    result: IECVResult,
    output_paths: Optional[Dict[str, str]] = None,
    tracking_dir: Optional[str] = None,
) -> None:
    """Log parameters, per-fold external metrics and written outputs to MLflow.

    Failed log calls are reported through the logger and do not abort the run.
    An unusable tracking backend skips tracking altogether.
    """
    config = result.config
    n_subjects = result.final.apparent.n_train
    try:
        active = start_run(run_name=f"iecv_{config.run_type}", tags={"run_type": config.run_type},
                           tracking_dir=tracking_dir)
    except (mlflow.exceptions.MlflowException, OSError) as e:
        logger.warning(f"MLflow tracking unavailable, run not tracked: {e}",
                       extra={"category": "mlflow_error"})
        return
    with active:
        safe_log_params({
            "run_type": config.run_type,
            "n_subjects": n_subjects,
            "n_clusters": len(result.folds),
            "final_l1_ratio": config.hyperparameters.final_l1_ratio,
            "fold_l1_ratio": config.hyperparameters.fold_l1_ratio,
            "prediction_horizon": config.analysis.prediction_horizon,
            "random_state": config.analysis.random_state,
            "execution_mode": config.execution.mode.value,
        }, logger=logger)
        for r in result.folds:
            if r.ok:
                safe_log_metrics({
                    "external_concordance": r.external.metrics.concordance,
                    "external_brier": r.external.metrics.brier_score,
                    "external_calibration_slope": r.external.metrics.calibration_slope,
                }, step=r.fold.index, logger=logger)
        pooled = result.summary_table().set_index("metric")
        safe_log_metrics({
            "pooled_concordance": pooled.loc["concordance_pooled", "mean"],
            "final_alpha": result.final_model.alpha,
            "final_n_nonzero": result.final_model.n_nonzero,
        }, logger=logger)
        for path in (output_paths or {}).values():
            safe_log_artifact(path, logger=logger)


def run_iecv(
    df: pd.DataFrame,
    config: Optional[IECVConfig] = None,
    imputer: Optional[ImputationAdapter] = None,
) -> IECVResult:
    """Internal-external cross-validation over the clusters of ``df``.

    Steps:
    1. Validate subjects, merge competing events into censoring, apply administrative censoring
    2. Build one fold per cluster and refuse degenerate folds before any fitting
    3. Run the cluster folds, sequentially or in a joblib process pool
    4. Fit the full-data lasso model

    Args:
        df: Raw subject records
        config: Run configuration. Defaults to IECVConfig()
        imputer: Imputation collaborator. Defaults to SimpleImputationAdapter
            over the configured covariates

    Returns:
        IECVResult with folds ordered by fold index

    Raises:
        DataIntegrityError: Invalid records or a degenerate fold
        EncodingError: A held-out cluster presents a level unseen in its training subjects
        ConvergenceError: Final model failed, or a fold failed with abort_on_convergence_failure

    Example:
        >>> result = run_iecv(df, IECVConfig.for_run_type("sample"))
        >>> result.external_table()[["cluster", "concordance", "n_test"]]
    """
    config = config or IECVConfig()
    data, analysis, execution = config.data, config.analysis, config.execution
    imputer = imputer or SimpleImputationAdapter(data.continuous_features, data.categorical_features)

    with Timer(logger, "Subject preparation"):
        subjects = prepare_subjects(df, data, analysis).reset_index(drop=True)
        y_struct = to_structured_y(subjects, data)

    folds = cluster_folds(subjects, data.cluster_column, analysis.random_state)
    for fold in folds:
        check_fold(fold, y_struct)

    logger.info(
        f"IECV over {len(folds)} clusters ({execution}), "
        f"fold l1_ratio={config.hyperparameters.fold_l1_ratio}, "
        f"final l1_ratio={config.hyperparameters.final_l1_ratio}"
    )

    slots: List[Optional[FoldResult]] = [None] * len(folds)
    progress = ProgressLogger(logger, total=len(folds), desc="IECV folds")

    with Timer(logger, "Cluster folds"):
        with capture_warnings(logger):
            if execution.is_parallel():
                logger.info(f"Parallel folds with {execution.n_jobs} jobs")
                results = Parallel(
                    n_jobs=execution.n_jobs,
                    verbose=execution.verbose,
                    backend=execution.backend,
                )(
                    delayed(run_fold)(fold, subjects, y_struct, config, imputer)
                    for fold in folds
                )
                for res in results:
                    slots[res.fold.index] = res
                    progress.update(1, metrics={"fold": res.fold.label, "status": res.apparent.status})
            else:
                for fold in folds:
                    with Timer(logger, f"Fold {fold.label}"):
                        res = run_fold(fold, subjects, y_struct, config, imputer)
                    slots[fold.index] = res
                    progress.update(1, metrics={"fold": fold.label, "status": res.apparent.status})

    failed = [r.fold.label for r in slots if not r.ok]
    if failed:
        logger.warning(f"{len(failed)} fold(s) failed to converge: {failed}")

    with Timer(logger, "Full-data model"):
        with capture_warnings(logger):
            final = fit_final_model(subjects, y_struct, len(folds), config, imputer)

    result = IECVResult(folds=slots, final=final, config=config)

    return result


@log_execution_time(logger)
def write_outputs(result: IECVResult, outdir: str) -> Dict[str, str]:
    """Persist every table, the fold decision curves, the final model and the config.

    Args:
        result: Output of ``run_iecv``
        outdir: Target directory (created if missing)

    Returns:
        Mapping of output name to written path
    """
    ensure_dir(outdir)
    paths = {
        "coefficients": write_table(result.coefficient_table(), os.path.join(outdir, "coefficients.csv")),
        "apparent_performance": write_table(
            result.apparent_table(), os.path.join(outdir, "apparent_performance.csv")),
        "external_performance": write_table(
            result.external_table(), os.path.join(outdir, "external_performance.csv")),
        "performance_summary": write_table(
            result.summary_table(), os.path.join(outdir, "performance_summary.csv")),
    }

    curve_dir = os.path.join(outdir, "decision_curves")
    for r in result.folds:
        if r.decision_curve is not None:
            name = f"decision_curves/{r.fold.label}"
            paths[name] = write_table(
                r.decision_curve, os.path.join(curve_dir, f"{safe_filename(r.fold.label)}.csv"))
    paths["decision_curves_all"] = write_table(
        result.decision_curves(), os.path.join(outdir, "decision_curves_all.csv"))
    paths["decision_curve_pooled"] = write_table(
        result.pooled_decision_curve(), os.path.join(outdir, "decision_curve_pooled.csv"))
    if len(result.decision_curves()):
        paths["decision_curves_plot"] = plot_decision_curves(
            result.decision_curves(), result.pooled_decision_curve(),
            os.path.join(outdir, "decision_curves.png"))

    model_path = os.path.join(outdir, "final_model.joblib")
    joblib.dump(result.final_model, model_path)
    paths["final_model"] = model_path

    config_path = os.path.join(outdir, "config.json")
    result.config.save(config_path)
    paths["config"] = config_path

    logger.info(f"Wrote {len(paths)} outputs to {outdir}")
    return paths
