"""Wall-clock timing that reports to the performance log.

Example:
    >>> from iecv_survival.timing import log_execution_time, Timer
    >>> with Timer(logger, "Fold North"):
    ...     result = run_fold(...)
"""
import time
import functools
import logging
from typing import Callable, Optional

from iecv_survival.logging_config import log_performance


def log_execution_time(logger: Optional[logging.Logger] = None):
    """Decorator logging how long each call takes, or how long it ran before failing.

    Args:
        logger: Logger instance (defaults to the decorated function's module logger)
    """
    def decorator(func: Callable) -> Callable:
        log = logger or logging.getLogger(func.__module__)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            log.debug(f"Starting: {func.__name__}")
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                log.error(f"{func.__name__} failed after {time.perf_counter() - start:.2f}s: {e}")
                raise
            log_performance(log, f"Completed: {func.__name__}",
                            duration_sec=round(time.perf_counter() - start, 2))
            return result

        return wrapper
    return decorator


class Timer:
    """Context manager timing a block of code.

    The exception, if any, is logged and re-raised.

    Example:
        >>> with Timer(logger, "Full-data model") as timer:
        ...     fit_final_model(...)
        >>> timer.duration
        4.21
    """

    def __init__(self, logger: logging.Logger, description: str):
        self.logger = logger
        self.description = description
        self.start_time = None
        self.duration = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.info(f"Starting: {self.description}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time
        if exc_type is None:
            log_performance(
                self.logger,
                f"Completed: {self.description}",
                duration_sec=round(self.duration, 2),
                duration_min=round(self.duration / 60, 2),
            )
        else:
            self.logger.error(f"{self.description} failed after {self.duration:.2f}s: {exc_val}")
        return False

    def elapsed(self) -> float:
        """Seconds since entering the block."""
        if self.start_time is None:
            return 0.0
        return time.perf_counter() - self.start_time
