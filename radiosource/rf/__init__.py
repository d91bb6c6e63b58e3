"""
RF (Radio Frequency) models and solvers.

Submodules:
    measurement_models: Log-distance path loss, RSSI/distance and dBm/mW conversions
    lateration: Homogeneous, inhomogeneous and nonlinear lateration
    pathloss: Transmitted power and path-loss exponent fitting
"""

from radiosource.rf.lateration import (
    LaterationResult,
    homogeneous_lateration,
    inhomogeneous_lateration,
    nonlinear_lateration,
    solve_position,
)
from radiosource.rf.measurement_models import (
    DEFAULT_PATH_LOSS_EXPONENT,
    SPEED_OF_LIGHT,
    dbm_to_power,
    path_loss_db,
    power_to_dbm,
    rss_pathloss,
    rss_to_distance,
    rssi_distance_std,
    wavelength,
)
from radiosource.rf.pathloss import PathLossFit, fit_power

__all__ = [
    # Constants
    "SPEED_OF_LIGHT",
    "DEFAULT_PATH_LOSS_EXPONENT",
    # Measurement models
    "wavelength",
    "path_loss_db",
    "rss_pathloss",
    "rss_to_distance",
    "rssi_distance_std",
    "dbm_to_power",
    "power_to_dbm",
    # Lateration
    "LaterationResult",
    "homogeneous_lateration",
    "inhomogeneous_lateration",
    "nonlinear_lateration",
    "solve_position",
    # Path-loss fit
    "PathLossFit",
    "fit_power",
]
