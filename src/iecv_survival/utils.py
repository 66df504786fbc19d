from __future__ import annotations
import os
import re
import datetime as dt
import pandas as pd
from typing import Optional

from iecv_survival.data import RunType


def ensure_dir(path: str):
    """``mkdir -p``: make ``path`` and its parents, no-op when present.

    Example:
        >>> ensure_dir("data/outputs/sample/decision_curves")
    """
    os.makedirs(path, exist_ok=True)


def safe_filename(label: str) -> str:
    """Make a cluster label usable as a file name.

    Example:
        >>> safe_filename("North East/1")
        'North_East_1'
    """
    return re.sub(r"[^\w.-]", "_", str(label))


def write_table(df: pd.DataFrame, path: str) -> str:
    """Write a table to CSV without the index, creating the parent directory.

    Returns:
        The path written
    """
    parent = os.path.dirname(path)
    if parent:
        ensure_dir(parent)
    df.to_csv(path, index=False)
    return path


def versioned_name(base: str, run_type: Optional[RunType] = None) -> str:
    """Stamp a file name with the current local time.

    The stamp sits between stem and extension so versions of one file sort
    together; the run type, when given, is prepended.

    Example:
        >>> versioned_name("final_model.joblib", run_type="sample")
        'sample_final_model_20250123_143052.joblib'
    """
    stamp = dt.datetime.now().strftime("%Y%m%d_%H%M%S")
    stem, ext = os.path.splitext(base)
    prefix = f"{run_type}_" if run_type else ""
    return f"{prefix}{stem}_{stamp}{ext}"


def get_output_paths(run_type: RunType = "sample", base_dir: Optional[str] = None) -> dict:
    """Output layout of one run, created on first use.

    Sample and production runs write under separate roots
    (``data/outputs/<run_type>`` unless ``base_dir`` is given):

    - ``base_dir``: the root itself
    - ``artifacts``: performance tables, pooled summaries and decision curves
    - ``predictions``: per-subject risk CSVs from the final model
    - ``mlruns``: local MLflow store

    Example:
        >>> get_output_paths("sample")["artifacts"]
        'data/outputs/sample/artifacts'
    """
    root = base_dir or os.path.join("data", "outputs", run_type)
    paths = {"base_dir": root}
    for sub in ("artifacts", "predictions", "mlruns"):
        paths[sub] = os.path.join(root, sub)

    for path in paths.values():
        ensure_dir(path)
    return paths
