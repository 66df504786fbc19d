from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional
import logging
import numpy as np
import pandas as pd

from sklearn.base import clone
from sklearn.model_selection import GridSearchCV
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from sksurv.linear_model import CoxnetSurvivalAnalysis
from sksurv.linear_model.coxph import BreslowEstimator

from iecv_survival.encoding import FeatureSchema
from iecv_survival.errors import ConvergenceError, DataIntegrityError
from iecv_survival.validation import CVConfig, event_balanced_splitter


logger = logging.getLogger("iecv_survival.models")


@dataclass(frozen=True, eq=False)
class FittedModel:
    """Penalized Cox model fitted on one fold.

    Owned by exactly one fold and consumed only by the projector of that fold.
    The coefficient vector is read-only.

    Attributes:
        schema: Training schema the coefficients refer to
        coefficients: One coefficient per design-matrix column, on the original column scale
        alpha: Selected regularization strength
        l1_ratio: Elastic-net mixing the model was fitted with
        baseline: Breslow baseline hazard estimated from the training prognostic index
        cv_results: Inner cross-validation table (alpha, mean_cindex, n_valid_folds)
        seed: Seed used for the inner cross-validation splits
    """
    schema: FeatureSchema
    coefficients: np.ndarray
    alpha: float
    l1_ratio: float
    baseline: BreslowEstimator
    cv_results: pd.DataFrame
    seed: int

    def __post_init__(self):
        coef = np.array(self.coefficients, dtype=float)
        coef.setflags(write=False)
        object.__setattr__(self, "coefficients", coef)

    @property
    def feature_names(self) -> List[str]:
        return list(self.schema.columns)

    @property
    def n_nonzero(self) -> int:
        return int(np.count_nonzero(self.coefficients))

    def coefficient_series(self) -> pd.Series:
        return pd.Series(self.coefficients, index=self.feature_names, name="coefficient")


@dataclass
class PenalizedCoxTrainer:
    """Elastic-net Cox model with cross-validated regularization strength.

    Wraps scikit-survival's CoxnetSurvivalAnalysis. Columns are standardised
    internally so the penalty treats them equally, and coefficients are returned
    on the original column scale.

    Attributes:
        l1_ratio: Balance between L1 (1.0) and L2 penalty
        n_alphas: Number of alphas in regularization path
        alpha_min_ratio: Ratio of smallest to largest alpha in path
        max_iter: Coordinate descent iteration limit
        inner_cv_folds: Folds of the internal cross-validation

    Example:
        >>> trainer = PenalizedCoxTrainer(l1_ratio=1.0)
        >>> model = trainer.fit(X_train, y_train, schema, seed=7)
        >>> model.alpha, model.n_nonzero
        (0.0123, 6)
    """
    l1_ratio: float = 1.0
    n_alphas: int = 100
    alpha_min_ratio: float = 0.01
    max_iter: int = 100_000
    inner_cv_folds: int = 5

    def _pipeline(self) -> Pipeline:
        return Pipeline(
            steps=[
                ("pre", StandardScaler()),
                ("model", CoxnetSurvivalAnalysis(
                    l1_ratio=self.l1_ratio,
                    alpha_min_ratio=self.alpha_min_ratio,
                    n_alphas=self.n_alphas,
                    max_iter=self.max_iter,
                )),
            ]
        )

    def _validate(self, X: np.ndarray, y) -> None:
        if X.shape[0] != len(y):
            raise DataIntegrityError(
                "Design matrix and outcome have different lengths",
                n_rows=X.shape[0], n_outcomes=len(y)
            )
        if X.shape[1] == 0:
            raise DataIntegrityError("Design matrix has no columns", n_rows=X.shape[0])
        if not np.isfinite(X).all():
            raise DataIntegrityError(
                "Non-finite values detected in design matrix before fitting", n_rows=X.shape[0]
            )
        n_events = int(np.sum(y["event"]))
        if n_events == 0 or n_events == len(y):
            raise DataIntegrityError(
                "Outcome needs at least one event and one censored subject",
                n_rows=len(y), n_events=n_events
            )
        constant = np.ptp(X, axis=0) == 0
        if constant.all():
            raise DataIntegrityError(
                "Every design-matrix column is constant; no coefficient is estimable",
                n_rows=X.shape[0], n_columns=X.shape[1]
            )
        if constant.any():
            logger.warning(f"{int(constant.sum())} constant column(s) will get a zero coefficient")

    def regularization_path(self, X: np.ndarray, y) -> np.ndarray:
        """Candidate strengths from a path fit on all provided rows."""
        try:
            path = clone(self._pipeline()).fit(X, y)
        except ArithmeticError as e:
            raise ConvergenceError(f"Regularization path fit failed: {e}", n_rows=len(y)) from e
        return np.asarray(path.named_steps["model"].alphas_, dtype=float)

    def select_alpha(self, X: np.ndarray, y, alphas: np.ndarray, seed: int) -> pd.DataFrame:
        """Score every candidate strength by inner cross-validated concordance.

        Args:
            X: Design matrix
            y: Structured survival array
            alphas: Candidate strengths (descending)
            seed: Seed of the inner splits

        Returns:
            DataFrame with columns alpha, mean_cindex, n_valid_folds, one row per candidate

        Raises:
            ConvergenceError: If fewer than two inner folds are possible or every
                candidate failed on every inner fold
        """
        n_events = int(np.sum(y["event"]))
        n_splits = min(self.inner_cv_folds, n_events, len(y) - n_events)
        if n_splits < 2:
            raise ConvergenceError(
                "Too few events or censored subjects for inner cross-validation",
                n_rows=len(y), n_events=n_events, inner_cv_folds=self.inner_cv_folds
            )
        splits = event_balanced_splitter(y, CVConfig(n_splits=n_splits, random_state=seed))

        gs = GridSearchCV(
            estimator=self._pipeline(),
            param_grid={"model__alphas": [[a] for a in alphas]},
            cv=splits,
            error_score=np.nan,
            refit=False,
            n_jobs=1,
        )
        try:
            gs.fit(X, y)
        except ValueError as e:
            # raised by scikit-learn when every single fit failed
            raise ConvergenceError(
                f"Inner cross-validation failed for every candidate: {e}",
                n_rows=len(y), n_candidates=len(alphas)
            ) from e

        scores = np.column_stack(
            [gs.cv_results_[f"split{i}_test_score"] for i in range(n_splits)]
        ).astype(float)
        valid = np.isfinite(scores)
        n_valid = valid.sum(axis=1)
        totals = np.where(valid, scores, 0.0).sum(axis=1)
        mean_cindex = np.full(len(alphas), np.nan)
        mean_cindex[n_valid > 0] = totals[n_valid > 0] / n_valid[n_valid > 0]

        return pd.DataFrame({
            "alpha": np.asarray(alphas, dtype=float),
            "mean_cindex": mean_cindex,
            "n_valid_folds": n_valid,
        })

    def fit(self, X, y, schema: FeatureSchema, seed: int) -> FittedModel:
        """Select the strength by inner CV, then refit on all rows at that strength.

        Args:
            X: Design matrix (DataFrame or array) with columns ``schema.columns``
            y: Structured array with dtype=[('event', bool), ('time', float)]
            schema: Schema X was encoded with
            seed: Fold-specific seed for the inner splits

        Returns:
            FittedModel

        Raises:
            DataIntegrityError: If the inputs cannot yield any finite estimate
            ConvergenceError: If no strength could be selected or the refit failed
        """
        X = np.asarray(X, dtype=float)
        if X.shape[1] != schema.n_columns:
            raise DataIntegrityError(
                "Design matrix width does not match schema",
                n_columns=X.shape[1], schema_columns=schema.n_columns
            )
        self._validate(X, y)

        alphas = self.regularization_path(X, y)
        cv_results = self.select_alpha(X, y, alphas, seed)
        if not cv_results["mean_cindex"].notna().any():
            raise ConvergenceError(
                "No regularization strength has a non-degenerate inner fold",
                n_rows=len(y), n_candidates=len(alphas)
            )
        # first maximum on a descending path = strongest penalty among ties
        best = int(np.nanargmax(cv_results["mean_cindex"].to_numpy()))
        best_alpha = float(cv_results["alpha"].iloc[best])

        final = clone(self._pipeline()).set_params(model__alphas=[best_alpha])
        try:
            final.fit(X, y)
        except ArithmeticError as e:
            raise ConvergenceError(
                f"Refit at selected strength failed: {e}", alpha=best_alpha, n_rows=len(y)
            ) from e

        scale = final.named_steps["pre"].scale_
        coef = final.named_steps["model"].coef_[:, -1] / scale
        if not np.isfinite(coef).all():
            raise ConvergenceError("Refit produced non-finite coefficients", alpha=best_alpha)

        linear_predictor = X @ coef
        baseline = BreslowEstimator().fit(linear_predictor, y["event"], y["time"])

        model = FittedModel(
            schema=schema,
            coefficients=coef,
            alpha=best_alpha,
            l1_ratio=self.l1_ratio,
            baseline=baseline,
            cv_results=cv_results,
            seed=seed,
        )
        logger.info(
            f"Selected alpha={best_alpha:.5g} (l1_ratio={self.l1_ratio}, "
            f"inner C={cv_results['mean_cindex'].iloc[best]:.4f}), "
            f"{model.n_nonzero}/{len(coef)} non-zero coefficients"
        )
        return model
