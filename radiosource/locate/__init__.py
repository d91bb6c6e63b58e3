"""
Radio-source location.

Submodules:
    residuals: Normalized ranging/RSSI residuals and the stacked joint model
    joint: Deterministic joint estimator (lateration + path-loss fit)
    msac: Robust MSAC radio-source estimator with refinement
"""

from radiosource.locate.joint import JointEstimate, estimate_joint, minimum_readings
from radiosource.locate.msac import DEFAULT_THRESHOLD, MSACRobustRadioSourceEstimator
from radiosource.locate.residuals import (
    JointModel,
    ranging_residual,
    reading_residual,
    rssi_residual,
)

__all__ = [
    "JointEstimate",
    "estimate_joint",
    "minimum_readings",
    "JointModel",
    "ranging_residual",
    "rssi_residual",
    "reading_residual",
    "DEFAULT_THRESHOLD",
    "MSACRobustRadioSourceEstimator",
]
