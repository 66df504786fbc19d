"""Error kinds raised by the IECV engine.

Every error carries a ``context`` dictionary (fold, column, level, row count, ...)
that is rendered into the message so a failure can be diagnosed without
re-running the whole pipeline.

Example:
    >>> raise EncodingError("Unseen level", column="smoking", level="unknown", fold="north")
    Traceback (most recent call last):
    ...
    EncodingError: Unseen level [column=smoking, level=unknown, fold=north]
"""
from __future__ import annotations
from typing import Any, Dict


class IECVError(Exception):
    """Base class for all pipeline errors.

    Attributes:
        message: Human readable description
        context: Extra diagnostic fields (fold, column, n_rows, ...)
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(self._render())

    def _render(self) -> str:
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} [{ctx}]"

    def with_context(self, **context: Any) -> "IECVError":
        """Add context fields (e.g. the fold) and refresh the message."""
        for k, v in context.items():
            if v is not None and k not in self.context:
                self.context[k] = v
        self.args = (self._render(),)
        return self

    def __reduce__(self):
        # keep context when the error crosses a joblib process boundary
        return (_rebuild_error, (type(self), self.message, self.context))


def _rebuild_error(cls, message, context):
    return cls(message, **context)


class DataIntegrityError(IECVError, ValueError):
    """Missing cluster id, non-finite design matrix, degenerate fold."""


class EncodingError(IECVError, ValueError):
    """A record presents a categorical level absent from the training schema."""

    def __init__(self, message: str, column: str = None, level: Any = None, **context: Any):
        self.column = column
        self.level = level
        super().__init__(message, column=column, level=level, **context)


class SchemaMismatchError(IECVError, ValueError):
    """Projection attempted with a schema other than the training schema."""


class ConvergenceError(IECVError, ValueError):
    """Regularisation strength could not be selected or the refit failed."""
