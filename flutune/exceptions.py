"""
Error Kinds
===========

Exceptions raised by the modelling harness.

Only ``LearnerFitFailure`` is recoverable: the tuner records it as a missing
cell and carries on. Everything else surfaces to the caller.
"""

from typing import Any, Optional


class HarnessError(Exception):
    """Base class for all harness errors, carrying optional diagnostic context."""

    def __init__(
        self,
        message: str,
        learner: Optional[str] = None,
        tuple_id: Optional[int] = None,
        resample_id: Optional[str] = None
    ):
        self.message = message
        self.learner = learner
        self.tuple_id = tuple_id
        self.resample_id = resample_id
        super().__init__(self._render())

    def _render(self) -> str:
        context = []
        if self.learner is not None:
            context.append(f"learner={self.learner}")
        if self.tuple_id is not None:
            context.append(f"tuple={self.tuple_id}")
        if self.resample_id is not None:
            context.append(f"resample={self.resample_id}")
        if context:
            return f"{self.message} [{', '.join(context)}]"
        return self.message


class InputSchemaError(HarnessError):
    """Missing outcome column, wrong column types or an empty table."""


class ConfigError(HarnessError):
    """Invalid option value or out-of-range grid axis."""

    def __init__(self, message: str, key: Optional[str] = None, **context: Any):
        self.key = key
        if key is not None:
            message = f"{key}: {message}"
        super().__init__(message, **context)


class DegenerateResampleError(HarnessError):
    """An analysis or assessment set has no variance in the outcome."""


class LearnerFitFailure(HarnessError):
    """A learner raised while fitting or predicting one work unit."""

    def __init__(self, message: str, cause: Optional[BaseException] = None, **context: Any):
        self.cause = cause
        super().__init__(message, **context)


class TuneExhausted(HarnessError):
    """Too many tuples of a learner ended without a usable score."""


class Cancelled(HarnessError):
    """The caller signalled cancellation while tuning."""


class EvaluatorReuse(HarnessError):
    """The one-shot evaluation token was presented a second time."""
