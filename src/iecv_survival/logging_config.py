"""Logging setup for IECV runs.

Every run writes to data/outputs/{run_type}/logs/ (or a chosen directory):
- main_{timestamp}.log: everything, DEBUG and up
- performance_{timestamp}.log: timings and per-fold metrics
- warnings_{timestamp}.log: warnings and errors, including captured library warnings

Example:
    >>> from iecv_survival.logging_config import setup_logging, log_performance
    >>> logger = setup_logging(run_type="sample")
    >>> log_performance(logger, "Fold North completed", concordance=0.71, n_test=340)
"""
import logging
import sys
import warnings
from pathlib import Path
from datetime import datetime
from typing import Optional, Literal
from contextlib import contextmanager


RunType = Literal["sample", "production"]

ROOT_LOGGER = "iecv_survival"


class PerformanceFilter(logging.Filter):
    """Pass only records tagged with ``is_performance``."""

    def filter(self, record):
        return getattr(record, "is_performance", False)


class WarningErrorFilter(logging.Filter):
    def filter(self, record):
        return record.levelno >= logging.WARNING


def _file_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.FileHandler:
    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    run_type: RunType = "sample",
    log_level: int = logging.INFO,
    console_output: bool = True,
    log_dir: Optional[str] = None,
) -> logging.Logger:
    """Configure the package logger with console and file handlers.

    Args:
        run_type: Type of run (sample/production) - determines the default log directory
        log_level: Console log level; files always receive DEBUG (main) or WARNING (warnings)
        console_output: Whether to echo to stdout
        log_dir: Override for the log directory

    Returns:
        The ``iecv_survival`` logger. Module loggers (``iecv_survival.train`` etc.)
        propagate to it.
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_dir = Path(log_dir) if log_dir else Path(f"data/outputs/{run_type}/logs")
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = False

    detailed = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    brief = logging.Formatter(fmt="%(asctime)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    if console_output:
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(log_level)
        console.setFormatter(logging.Formatter(fmt="%(levelname)-8s | %(message)s"))
        logger.addHandler(console)

    logger.addHandler(_file_handler(log_dir / f"main_{timestamp}.log", logging.DEBUG, detailed))

    perf = _file_handler(log_dir / f"performance_{timestamp}.log", logging.INFO, brief)
    perf.addFilter(PerformanceFilter())
    logger.addHandler(perf)

    warn = _file_handler(log_dir / f"warnings_{timestamp}.log", logging.WARNING, detailed)
    warn.addFilter(WarningErrorFilter())
    logger.addHandler(warn)

    logger.info(f"Logging initialized for {run_type} run in {log_dir.absolute()}")
    return logger


def log_performance(logger: logging.Logger, message: str, **kwargs):
    """Log a timing or metric message to the main and performance logs.

    Floats are shown with four decimals.

    Example:
        >>> log_performance(logger, "Fold South completed", concordance=0.7134, n_test=290)
        # "Fold South completed | concordance=0.7134 | n_test=290"
    """
    if kwargs:
        parts = [
            f"{k}={v:.4f}" if isinstance(v, float) else f"{k}={v}" for k, v in kwargs.items()
        ]
        message = f"{message} | " + " | ".join(parts)
    logger.info(message, extra={"is_performance": True})


class WarningLogger:
    """Routes library warnings into the log, tagged and counted by category.

    Categories:
    - convergence: coordinate descent or Newton-Raphson did not converge
    - numerical: overflow, invalid values, division by zero
    - separation: perfect separation in the calibration regressions
    - data: constant columns, single-level categoricals, empty subsets
    - other: anything else
    """

    WARNING_CATEGORIES = {
        "convergence": ["convergencewarning", "did not converge", "maximum number of iterations"],
        "numerical": ["overflow", "invalid value", "divide by zero", "mean of empty slice"],
        "separation": ["perfect separation", "perfectseparation"],
        "data": ["constant", "single level", "all samples are censored"],
    }

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.warning_counts = {cat: 0 for cat in self.WARNING_CATEGORIES}
        self.warning_counts["other"] = 0

    def categorize_warning(self, message: str) -> str:
        lowered = message.lower()
        for category, keywords in self.WARNING_CATEGORIES.items():
            if any(kw in lowered for kw in keywords):
                return category
        return "other"

    def log_warning(self, message: str, category: str = None):
        category = category or self.categorize_warning(message)
        self.warning_counts[category] += 1
        self.logger.warning(f"[{category.upper()}] {message}")

    def summary(self) -> dict:
        return {k: v for k, v in self.warning_counts.items() if v > 0}


@contextmanager
def capture_warnings(logger: logging.Logger):
    """Send Python warnings raised inside the block to ``logger``.

    Yields:
        WarningLogger with per-category counts

    Example:
        >>> with capture_warnings(logger) as captured:
        ...     run_fold(fold, subjects, y, config, imputer)
        >>> captured.summary()
        {'convergence': 2}
    """
    warning_logger = WarningLogger(logger)

    def _show(message, category, filename, lineno, file=None, line=None):
        warning_logger.log_warning(f"{category.__name__}: {message}")

    previous = warnings.showwarning
    warnings.showwarning = _show
    try:
        yield warning_logger
    finally:
        warnings.showwarning = previous
        summary = warning_logger.summary()
        if summary:
            logger.info("Warning summary: " + ", ".join(f"{k}={v}" for k, v in summary.items()))


class ProgressLogger:
    """Logs "desc: i/total (pct%)" after every ``log_interval`` updates.

    Example:
        >>> progress = ProgressLogger(logger, total=3, desc="IECV folds")
        >>> progress.update(1, metrics={"fold": "North", "concordance": 0.71})
        # "IECV folds: 1/3 (33.3%) | fold=North, concordance=0.7100"
    """

    def __init__(self, logger: logging.Logger, total: int, desc: str, log_interval: int = 1):
        self.logger = logger
        self.total = total
        self.desc = desc
        self.log_interval = log_interval
        self.current = 0

    def update(self, n: int = 1, metrics: Optional[dict] = None):
        self.current += n
        if self.current % self.log_interval and self.current != self.total:
            return
        pct = 100.0 * self.current / self.total if self.total else 100.0
        msg = f"{self.desc}: {self.current}/{self.total} ({pct:.1f}%)"
        if metrics:
            msg += " | " + ", ".join(
                f"{k}={v:.4f}" if isinstance(v, float) else f"{k}={v}" for k, v in metrics.items()
            )
        self.logger.info(msg)
