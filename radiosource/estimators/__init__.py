"""
Numerical estimators used by the radio-source solvers.

Available estimators:
    - Least Squares (LS, WLS)
    - Nonlinear Least Squares (Levenberg-Marquardt)
    - Sample consensus (MSAC, RANSAC)
"""

from radiosource.estimators.least_squares import (
    linear_least_squares,
    weighted_least_squares,
)
from radiosource.estimators.nonlinear_least_squares import (
    levenberg_marquardt,
    NonlinearLSResult,
)
from radiosource.estimators.robust import (
    MSACRobustEstimator,
    SubsetSampler,
    required_iterations,
)

__all__ = [
    # Linear LS
    "linear_least_squares",
    "weighted_least_squares",
    # Nonlinear LS
    "levenberg_marquardt",
    "NonlinearLSResult",
    # Sample consensus
    "MSACRobustEstimator",
    "SubsetSampler",
    "required_iterations",
]
