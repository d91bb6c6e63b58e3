"""
Exceptions raised by the radio-source estimators.

Per-subset failures (NotEnoughSamplesError, NumericalInstabilityError) are
absorbed by the sample-consensus loop and only surface when they are
raised directly from a solver call.
"""


class RadioSourceEstimationError(Exception):
    """Base class for all estimation errors in this package."""


class LockedError(RadioSourceEstimationError, RuntimeError):
    """A mutating call was made while an estimation is in progress."""

    def __init__(self, message: str = "Estimator is locked while estimating"):
        super().__init__(message)


class NotReadyError(RadioSourceEstimationError, RuntimeError):
    """estimate() was called without valid readings or required guesses."""


class NotEnoughSamplesError(RadioSourceEstimationError, ValueError):
    """A solver received fewer samples than its free parameters require."""


class NumericalInstabilityError(RadioSourceEstimationError, ArithmeticError):
    """A linear or nonlinear solve was singular or did not produce a finite result."""


class ConsensusFailureError(RadioSourceEstimationError, RuntimeError):
    """The robust loop never produced a usable candidate solution."""
