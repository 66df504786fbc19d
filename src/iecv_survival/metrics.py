"""Performance measures for a prognostic index on one record set.

Discrimination:
- Harrell's concordance with an infinitesimal-jackknife standard error

Calibration (two independent routines, both kept):
- slope of the prognostic index in a Cox model refitted on the evaluated set
- calibration-in-the-large and slope of the horizon risk in an IPCW logistic model

Accuracy:
- Brier score at the horizon with inverse-probability-of-censoring weights
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Tuple
import logging
import warnings
import numpy as np
import pandas as pd
import statsmodels.api as sm
from lifelines import CoxPHFitter
from lifelines.exceptions import ConvergenceError as LifelinesConvergenceError
from sklearn.metrics import brier_score_loss
from sksurv.metrics import concordance_index_censored
from sksurv.nonparametric import CensoringDistributionEstimator


logger = logging.getLogger("iecv_survival.metrics")

TIED_TOL = 1e-8
_CHUNK = 512


@dataclass
class PerformanceMetrics:
    """Measures of one prognostic index on one record set; NaN where not estimable."""
    concordance: float = np.nan
    concordance_se: float = np.nan
    calibration_slope: float = np.nan
    calibration_in_the_large: float = np.nan
    calibration_slope_horizon: float = np.nan
    brier_score: float = np.nan
    n_subjects: int = 0
    n_events: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _concordance_contributions(event, time, estimate) -> Tuple[np.ndarray, np.ndarray]:
    """Per-subject concordant-pair weight and comparable-pair count.

    A pair (i, j) is comparable when i has an event and t_i < t_j, or t_i == t_j
    and j is censored. Pairs are processed in row blocks to bound memory.
    """
    n = len(time)
    a = np.zeros(n)
    b = np.zeros(n)
    for start in range(0, n, _CHUNK):
        rows = slice(start, min(start + _CHUNK, n))
        t_i = time[rows, None]
        comparable = event[rows, None] & (
            (t_i < time[None, :]) | ((t_i == time[None, :]) & ~event[None, :])
        )
        diff = estimate[rows, None] - estimate[None, :]
        score = np.where(np.abs(diff) <= TIED_TOL, 0.5, (diff > 0).astype(float))
        score = score * comparable

        a[rows] += score.sum(axis=1)
        b[rows] += comparable.sum(axis=1)
        a += score.sum(axis=0)
        b += comparable.sum(axis=0)
    return a, b


def concordance_with_se(y_struct, prognostic_index) -> Tuple[float, float]:
    """Harrell's C and its infinitesimal-jackknife standard error.

    The point estimate comes from scikit-survival. The standard error is the
    square root of sum_k (dC/dw_k)^2, the derivative of C with respect to the
    weight of subject k, evaluated at unit weights.

    Args:
        y_struct: Structured array with dtype=[('event', bool), ('time', float)]
        prognostic_index: Higher value means higher predicted risk

    Returns:
        Tuple of (concordance, standard_error); (nan, nan) when there are no
        comparable pairs

    Example:
        >>> c, se = concordance_with_se(y_test, pi_test)
        >>> 0.0 <= c <= 1.0 and se > 0
        True
    """
    event = np.asarray(y_struct["event"], dtype=bool)
    time = np.asarray(y_struct["time"], dtype=float)
    estimate = np.asarray(prognostic_index, dtype=float)

    if not event.any():
        logger.warning("No events: concordance not estimable")
        return np.nan, np.nan

    a, b = _concordance_contributions(event, time, estimate)
    # each pair is counted once from each side
    n_pairs = b.sum() / 2.0
    if n_pairs == 0:
        logger.warning("No comparable pairs: concordance not estimable")
        return np.nan, np.nan

    c_index = concordance_index_censored(event, time, estimate, tied_tol=TIED_TOL)[0]
    pair_c = a.sum() / 2.0 / n_pairs
    influence = (a - pair_c * b) / n_pairs
    se = float(np.sqrt(np.sum(influence ** 2)))
    return float(c_index), se


def calibration_slope_cox(y_struct, prognostic_index) -> float:
    """Slope of the prognostic index as sole covariate of a Cox model.

    1 means the spread of risk is right; below 1 means predictions are too extreme.

    Returns:
        Estimated slope, or NaN when the index is constant, there are no events
        or the fit does not converge
    """
    event = np.asarray(y_struct["event"], dtype=bool)
    pi = np.asarray(prognostic_index, dtype=float)
    if not event.any() or np.ptp(pi) <= TIED_TOL:
        logger.warning("Cox calibration slope not estimable (no events or constant index)")
        return np.nan

    df = pd.DataFrame({
        "prognostic_index": pi,
        "time": np.asarray(y_struct["time"], dtype=float),
        "event": event.astype(int),
    })
    try:
        cph = CoxPHFitter()
        cph.fit(df, duration_col="time", event_col="event")
    except LifelinesConvergenceError as e:
        logger.warning(f"Cox calibration fit did not converge: {e}")
        return np.nan
    return float(cph.params_["prognostic_index"])


def horizon_outcome(y_struct, horizon: float) -> Tuple[np.ndarray, np.ndarray]:
    """Binary status at the horizon with inverse-probability-of-censoring weights.

    Censoring distribution G is the reverse Kaplan-Meier of the evaluated set.
    Cases (event by the horizon) get weight 1/G(T-), subjects still at risk at the
    horizon get 1/G(horizon-), subjects censored before the horizon get 0.

    Args:
        y_struct: Structured array; must contain at least one event
        horizon: Horizon in days

    Returns:
        Tuple of (observed 0/1 array, weights array)
    """
    event = np.asarray(y_struct["event"], dtype=bool)
    time = np.asarray(y_struct["time"], dtype=float)

    cases = event & (time <= horizon)
    controls = time > horizon
    # still at risk exactly at the horizon without an event counts as a control
    controls |= (time == horizon) & ~event

    cens = CensoringDistributionEstimator().fit(y_struct)
    g_case = cens.predict_proba(np.nextafter(time, -np.inf))
    # beyond the last observed time there are no controls and G is not defined
    query = min(np.nextafter(horizon, -np.inf), time.max())
    g_horizon = float(cens.predict_proba(np.array([query]))[0])

    weights = np.zeros(len(time))
    ok = cases & (g_case > 0)
    weights[ok] = 1.0 / g_case[ok]
    if g_horizon > 0:
        weights[controls] = 1.0 / g_horizon
    return cases.astype(int), weights


def brier_score_at_horizon(y_struct, event_probability, horizon: float) -> float:
    """IPCW Brier score of the predicted event probability at the horizon.

    The IPCW weights enter ``brier_score_loss`` as sample weights, so the score
    is a weighted mean of squared errors and lies in [0, 1].
    """
    observed, weights = horizon_outcome(y_struct, horizon)
    if weights.sum() <= 0:
        return np.nan
    p = np.asarray(event_probability, dtype=float)
    return float(brier_score_loss(observed, p, sample_weight=weights, pos_label=1))


def calibration_at_horizon(y_struct, event_probability, horizon: float) -> Tuple[float, float]:
    """Calibration-in-the-large and slope of horizon risk on the logit scale.

    Both come from IPCW-weighted binomial GLMs (statsmodels): the intercept with
    logit(p) as offset, and the coefficient of logit(p) as sole covariate.

    Returns:
        Tuple of (calibration_in_the_large, calibration_slope); NaN where not estimable
    """
    observed, weights = horizon_outcome(y_struct, horizon)
    keep = weights > 0
    observed, weights = observed[keep], weights[keep]
    if len(observed) == 0 or observed.min() == observed.max():
        logger.warning("Horizon calibration not estimable (one outcome class)")
        return np.nan, np.nan

    p = np.clip(np.asarray(event_probability, dtype=float)[keep], 1e-8, 1 - 1e-8)
    lp = np.log(p / (1 - p))

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        citl_fit = sm.GLM(
            observed, np.ones((len(observed), 1)),
            family=sm.families.Binomial(), offset=lp, var_weights=weights,
        ).fit()
    citl = float(citl_fit.params[0])

    if np.ptp(lp) <= TIED_TOL:
        return citl, np.nan
    slope_fit = sm.GLM(
        observed, sm.add_constant(lp, has_constant="add"),
        family=sm.families.Binomial(), var_weights=weights,
    ).fit()
    return citl, float(slope_fit.params[1])


def evaluate_performance(y_struct, prognostic_index, event_probability, horizon: float) -> PerformanceMetrics:
    """Full set of measures for one record set.

    Args:
        y_struct: Structured outcome array
        prognostic_index: Linear predictor of each subject
        event_probability: Predicted probability of the event by ``horizon``
        horizon: Horizon in days

    Returns:
        PerformanceMetrics; all measures NaN when the set has no events
    """
    n = len(y_struct)
    n_events = int(np.sum(y_struct["event"]))
    if n == 0 or n_events == 0:
        logger.warning(f"No events among {n} subjects: performance not estimable")
        return PerformanceMetrics(n_subjects=n, n_events=n_events)

    c_index, se = concordance_with_se(y_struct, prognostic_index)
    slope = calibration_slope_cox(y_struct, prognostic_index)
    citl, slope_h = calibration_at_horizon(y_struct, event_probability, horizon)
    brier = brier_score_at_horizon(y_struct, event_probability, horizon)
    return PerformanceMetrics(
        concordance=c_index,
        concordance_se=se,
        calibration_slope=slope,
        calibration_in_the_large=citl,
        calibration_slope_horizon=slope_h,
        brier_score=brier,
        n_subjects=n,
        n_events=n_events,
    )
