"""Decision curve analysis at a fixed horizon.

Net benefit of treating subjects whose predicted risk is at least t:

    NB(t) = TP/n - FP/n * t / (1 - t)

With censored outcomes TP/n and FP/n come from the Kaplan-Meier risk among the
treated subjects: TP/n = risk_high * f_high and FP/n = (1 - risk_high) * f_high,
where f_high is the fraction treated. Reference: Vickers AJ et al. (2008),
Extensions to decision curve analysis. BMC Med Inform Decis Mak.

Thresholds at or above 1 are excluded because t / (1 - t) is unbounded there.
"""
from __future__ import annotations
from typing import Iterable, Sequence
import logging
import matplotlib
import numpy as np
import pandas as pd
from sksurv.nonparametric import kaplan_meier_estimator

matplotlib.use("Agg")  # headless
import matplotlib.pyplot as plt  # noqa: E402


logger = logging.getLogger("iecv_survival.decision_curve")

STRATEGIES = ("model", "treat_all", "treat_none")


def km_risk(event, time, horizon: float) -> float:
    """Kaplan-Meier probability of the event by ``horizon`` (NaN for an empty set)."""
    event = np.asarray(event, dtype=bool)
    time = np.asarray(time, dtype=float)
    if len(time) == 0:
        return np.nan
    km_time, km_surv = kaplan_meier_estimator(event, time)[:2]
    idx = np.searchsorted(km_time, horizon, side="right") - 1
    surv = 1.0 if idx < 0 else float(km_surv[idx])
    return 1.0 - surv


def _net_benefit(risk: float, fraction: float, odds: float) -> float:
    return risk * fraction - (1.0 - risk) * fraction * odds


def decision_curve(
    y_struct,
    event_probability,
    horizon: float,
    thresholds: Iterable[float],
) -> pd.DataFrame:
    """Net benefit of the model, treat-all and treat-none over a threshold grid.

    Args:
        y_struct: Structured array with dtype=[('event', bool), ('time', float)]
        event_probability: Predicted probability of the event by ``horizon``
        horizon: Horizon in days
        thresholds: Threshold probabilities; values outside [0, 1) are dropped

    Returns:
        Long DataFrame with columns threshold, net_benefit, strategy

    Example:
        >>> dca = decision_curve(y_test, p_test, 2190.0, np.arange(0, 1, 0.01))
        >>> dca[dca.threshold == 0].set_index("strategy").net_benefit["treat_all"]
        0.118
    """
    grid = np.asarray(list(thresholds), dtype=float)
    valid = (grid >= 0) & (grid < 1)
    if not valid.all():
        logger.warning(f"Dropping {int((~valid).sum())} threshold(s) outside [0, 1)")
    grid = grid[valid]

    event = np.asarray(y_struct["event"], dtype=bool)
    time = np.asarray(y_struct["time"], dtype=float)
    p = np.asarray(event_probability, dtype=float)
    n = len(time)
    if n == 0:
        return pd.DataFrame(columns=["threshold", "net_benefit", "strategy"])

    risk_all = km_risk(event, time, horizon)

    rows = []
    for t in grid:
        odds = t / (1.0 - t)
        treated = p >= t
        fraction = treated.mean()
        if fraction > 0:
            nb_model = _net_benefit(km_risk(event[treated], time[treated], horizon), fraction, odds)
        else:
            nb_model = 0.0
        rows.append((t, nb_model, "model"))
        rows.append((t, _net_benefit(risk_all, 1.0, odds), "treat_all"))
        rows.append((t, 0.0, "treat_none"))

    return pd.DataFrame(rows, columns=["threshold", "net_benefit", "strategy"])


def pool_decision_curves(curves: pd.DataFrame, weight_column: str = "n_test",
                         by: Sequence[str] = ("threshold", "strategy")) -> pd.DataFrame:
    """Weighted mean net benefit across folds per threshold and strategy.

    Args:
        curves: Concatenated fold curves with a weight column (held-out size)
        weight_column: Column with the weight of each fold's curve
        by: Grouping columns

    Returns:
        DataFrame with the grouping columns, net_benefit and n_folds
    """
    if curves.empty:
        return pd.DataFrame(columns=list(by) + ["net_benefit", "n_folds"])

    df = curves.dropna(subset=["net_benefit"]).copy()
    df["_weighted"] = df["net_benefit"] * df[weight_column]
    grouped = df.groupby(list(by), sort=True)
    pooled = grouped.agg(
        _weighted=("_weighted", "sum"),
        _weight=(weight_column, "sum"),
        n_folds=("net_benefit", "size"),
    ).reset_index()
    pooled["net_benefit"] = pooled["_weighted"] / pooled["_weight"]
    return pooled[list(by) + ["net_benefit", "n_folds"]]


def plot_decision_curves(curves: pd.DataFrame, pooled: pd.DataFrame, out_path: str,
                         title: str = "Decision curves by held-out cluster") -> str:
    """Model net benefit per held-out cluster, pooled curve and both reference strategies.

    Args:
        curves: Concatenated fold curves with a cluster column
        pooled: Output of ``pool_decision_curves``
        out_path: PNG file to write
        title: Figure title

    Returns:
        out_path
    """
    plt.figure(figsize=(8, 5))
    model = curves[curves["strategy"] == "model"]
    for cluster, df in model.groupby("cluster", sort=True):
        plt.plot(df["threshold"], df["net_benefit"], linewidth=1, alpha=0.5, label=str(cluster))

    styles = {"model": ("-", "black"), "treat_all": ("--", "grey"), "treat_none": (":", "grey")}
    for strategy, (linestyle, color) in styles.items():
        df = pooled[pooled["strategy"] == strategy]
        plt.plot(df["threshold"], df["net_benefit"], linestyle=linestyle, color=color,
                 linewidth=2, label=f"pooled {strategy}")

    treat_all = pooled.loc[pooled["strategy"] == "treat_all", "net_benefit"]
    top = max(0.05, float(model["net_benefit"].max()) if len(model) else 0.0,
              float(treat_all.max()) if len(treat_all) else 0.0)
    plt.ylim(-0.05, top * 1.1)
    plt.xlabel("Threshold probability")
    plt.ylabel("Net benefit")
    plt.title(title)
    plt.legend(fontsize=8)
    plt.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.savefig(out_path, dpi=150)
    plt.close()
    return out_path
