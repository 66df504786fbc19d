"""Aggregation of per-cluster external performance.

Each held-out cluster is one validation study; heterogeneity between clusters is
the quantity IECV exists to expose, so the concordance is pooled with a
DerSimonian-Laird random-effects model on the logit scale.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Sequence
import logging
import numpy as np
import pandas as pd
from scipy.stats import chi2, norm


logger = logging.getLogger("iecv_survival.summary")

SUMMARY_METRICS = (
    "concordance",
    "calibration_in_the_large",
    "calibration_slope",
    "calibration_slope_horizon",
    "brier_score",
)


@dataclass
class PooledEstimate:
    """Random-effects pooled estimate.

    Attributes:
        estimate: Pooled effect
        se: Standard error of the pooled effect (on the pooling scale)
        ci_lower: Lower 95% bound
        ci_upper: Upper 95% bound
        tau2: Between-cluster variance
        i2: Share of total variability due to heterogeneity, in percent
        q: Cochran's Q
        q_pvalue: p-value of Q against chi-square with k-1 df
        n_studies: Number of estimates pooled
    """
    estimate: float
    se: float
    ci_lower: float
    ci_upper: float
    tau2: float
    i2: float
    q: float
    q_pvalue: float
    n_studies: int

    def to_dict(self) -> dict:
        return asdict(self)


def random_effects_pool(effects: Sequence[float], ses: Sequence[float], level: float = 0.95) -> PooledEstimate:
    """DerSimonian-Laird random-effects pooling.

    Estimates with a missing or non-positive standard error are skipped.

    Args:
        effects: Per-study estimates
        ses: Per-study standard errors
        level: Confidence level

    Returns:
        PooledEstimate; all NaN when nothing is poolable

    Example:
        >>> pooled = random_effects_pool([0.70, 0.74, 0.68], [0.02, 0.03, 0.025])
        >>> round(pooled.estimate, 3)
        0.703
    """
    effects = np.asarray(effects, dtype=float)
    ses = np.asarray(ses, dtype=float)
    keep = np.isfinite(effects) & np.isfinite(ses) & (ses > 0)
    effects, ses = effects[keep], ses[keep]
    k = len(effects)
    if k == 0:
        return PooledEstimate(*([np.nan] * 8), n_studies=0)

    w = 1.0 / ses ** 2
    fixed = np.sum(w * effects) / np.sum(w)
    q = float(np.sum(w * (effects - fixed) ** 2))
    df = k - 1
    c = np.sum(w) - np.sum(w ** 2) / np.sum(w)
    tau2 = max(0.0, (q - df) / c) if df > 0 and c > 0 else 0.0
    i2 = max(0.0, (q - df) / q * 100.0) if q > 0 else 0.0
    q_pvalue = float(chi2.sf(q, df)) if df > 0 else np.nan

    w_re = 1.0 / (ses ** 2 + tau2)
    estimate = float(np.sum(w_re * effects) / np.sum(w_re))
    se = float(np.sqrt(1.0 / np.sum(w_re)))
    z = norm.ppf(0.5 + level / 2.0)
    return PooledEstimate(
        estimate=estimate,
        se=se,
        ci_lower=estimate - z * se,
        ci_upper=estimate + z * se,
        tau2=float(tau2),
        i2=float(i2),
        q=q,
        q_pvalue=q_pvalue,
        n_studies=k,
    )


def pool_concordance(concordance: Sequence[float], ses: Sequence[float]) -> PooledEstimate:
    """Pool C-statistics on the logit scale and back-transform estimate and interval.

    The delta method gives se(logit C) = se(C) / (C (1 - C)). ``se``, ``tau2`` and
    the Q statistics stay on the logit scale.
    """
    c = np.asarray(concordance, dtype=float)
    se = np.asarray(ses, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        logit_c = np.log(c / (1.0 - c))
        logit_se = se / (c * (1.0 - c))
    pooled = random_effects_pool(logit_c, logit_se)
    if pooled.n_studies == 0:
        return pooled

    def expit(x):
        return float(1.0 / (1.0 + np.exp(-x)))

    pooled.estimate = expit(pooled.estimate)
    pooled.ci_lower = expit(pooled.ci_lower)
    pooled.ci_upper = expit(pooled.ci_upper)
    return pooled


def summarise_performance(external: pd.DataFrame) -> pd.DataFrame:
    """Summary of external performance across successful folds.

    Args:
        external: External performance table, one row per held-out cluster

    Returns:
        DataFrame with one row per metric: metric, mean, sd, min, max, n_folds,
        followed by the random-effects pooled concordance row (metric
        "concordance_pooled") with ci_lower, ci_upper, tau2, i2 and q_pvalue
    """
    ok = external[external["status"] == "ok"] if "status" in external else external

    rows = []
    for metric in SUMMARY_METRICS:
        values = ok[metric].dropna() if metric in ok else pd.Series(dtype=float)
        rows.append({
            "metric": metric,
            "mean": float(values.mean()) if len(values) else np.nan,
            "sd": float(values.std(ddof=1)) if len(values) > 1 else np.nan,
            "min": float(values.min()) if len(values) else np.nan,
            "max": float(values.max()) if len(values) else np.nan,
            "n_folds": int(len(values)),
        })

    if "concordance" in ok and "concordance_se" in ok:
        pooled = pool_concordance(ok["concordance"], ok["concordance_se"])
        rows.append({
            "metric": "concordance_pooled",
            "mean": pooled.estimate,
            "n_folds": pooled.n_studies,
            "ci_lower": pooled.ci_lower,
            "ci_upper": pooled.ci_upper,
            "tau2": pooled.tau2,
            "i2": pooled.i2,
            "q_pvalue": pooled.q_pvalue,
        })
        logger.info(
            f"Pooled external C = {pooled.estimate:.3f} "
            f"(95% CI {pooled.ci_lower:.3f}-{pooled.ci_upper:.3f}, I2={pooled.i2:.1f}%)"
        )

    columns = ["metric", "mean", "sd", "min", "max", "n_folds",
               "ci_lower", "ci_upper", "tau2", "i2", "q_pvalue"]
    return pd.DataFrame(rows).reindex(columns=columns)
