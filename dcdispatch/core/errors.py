"""Exceptions raised by the dispatch engine."""


class DispatchError(Exception):
    """Base class for all dcdispatch errors."""


class ConfigurationError(DispatchError, ValueError):
    """Malformed network description or solver settings.

    Raised before the first objective evaluation and never retried.
    """


class DegenerateGeometryError(DispatchError, RuntimeError):
    """The interpolation set cannot be made poised.

    No usable point is available; the caller has to re-seed the run
    (different initial guess or initial radius).
    """

    def __init__(self, message: str, n_evaluations: int | None = None):
        super().__init__(message)
        self.n_evaluations = n_evaluations


class EvaluationError(DispatchError, ArithmeticError):
    """The objective was called with, or produced, a non-finite value."""
