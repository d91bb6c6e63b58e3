"""Robust radio-source estimation for indoor positioning.

This package estimates the position, equivalent transmitted power and
path-loss exponent of a radio emitter (Wi-Fi access point, BLE beacon, ...)
from ranging and RSSI readings taken at known receiver positions:
- estimators: Least squares, Levenberg-Marquardt and MSAC/RANSAC consensus
- rf: Path-loss measurement models, lateration and power fitting
- locate: Joint estimator, residual model and robust radio-source estimator
"""

from radiosource.exceptions import (
    ConsensusFailureError,
    LockedError,
    NotEnoughSamplesError,
    NotReadyError,
    NumericalInstabilityError,
    RadioSourceEstimationError,
)
from radiosource.types import (
    EstimatorEvent,
    InliersData,
    LocatedRadioSource,
    RadioSource,
    Reading,
    Solution,
)

__version__ = "0.1.0"

__all__ = [
    # Data types
    "RadioSource",
    "Reading",
    "Solution",
    "InliersData",
    "LocatedRadioSource",
    "EstimatorEvent",
    # Errors
    "RadioSourceEstimationError",
    "LockedError",
    "NotReadyError",
    "NotEnoughSamplesError",
    "NumericalInstabilityError",
    "ConsensusFailureError",
]
