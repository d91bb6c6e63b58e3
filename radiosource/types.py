"""Data types for radio-source estimation.

This module defines the records exchanged between the lateration and
path-loss solvers, the joint estimator and the robust (MSAC) estimator:
readings taken at known receiver positions, candidate solutions, the inlier
mask produced by the consensus loop and the located radio-source result.

Coordinates are local Cartesian meters, powers are expressed in dBm and
frequencies in Hz.
"""

from dataclasses import dataclass
from typing import Any, Optional

import numpy as np


@dataclass(frozen=True)
class RadioSource:
    """Identity of a radio emitter (Wi-Fi access point, BLE beacon, ...).

    Attributes:
        identifier: Opaque identifier (BSSID, beacon UUID, ...).
        frequency: Carrier frequency in Hz. Used to compute the wavelength
                   in the log-distance path-loss model.
    """

    identifier: str
    frequency: float

    def __post_init__(self) -> None:
        if self.frequency <= 0:
            raise ValueError(f"frequency must be positive, got {self.frequency}")


@dataclass(frozen=True)
class Reading:
    """
    A measurement of one radio source taken at a known receiver position.

    A reading carries a ranging component (distance), an RSSI component or
    both. Readings are owned by the caller and never mutated by the
    estimators.

    Attributes:
        source: Radio source this reading belongs to.
        position: Receiver position, shape (2,) or (3,).
        distance: Measured distance to the emitter in meters.
        distance_std: Standard deviation of the distance in meters.
        rssi: Received signal strength in dBm.
        rssi_std: Standard deviation of the RSSI in dB.
        path_loss_exponent: Exponent used to convert this RSSI into a
                            distance, when known for this reading.
        position_covariance: Covariance of the receiver position, shape (d, d).

    Example:
        >>> ap = RadioSource("00:11:22:33:44:55", 2.4e9)
        >>> reading = Reading(ap, np.array([1.0, 2.0]), distance=5.0, rssi=-60.0)
        >>> reading.dimensions
        2
    """

    source: Any
    position: np.ndarray
    distance: Optional[float] = None
    distance_std: Optional[float] = None
    rssi: Optional[float] = None
    rssi_std: Optional[float] = None
    path_loss_exponent: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        """Validate and normalize the reading."""
        position = np.asarray(self.position, dtype=float)
        if position.ndim != 1 or position.shape[0] not in (2, 3):
            raise ValueError(
                f"position must have shape (2,) or (3,), got {position.shape}"
            )
        object.__setattr__(self, "position", position)

        if self.distance is None and self.rssi is None:
            raise ValueError("A reading needs a distance, an RSSI or both")
        if self.distance is not None and self.distance < 0:
            raise ValueError(f"distance must be non-negative, got {self.distance}")
        if self.distance_std is not None and self.distance_std <= 0:
            raise ValueError(
                f"distance_std must be positive, got {self.distance_std}"
            )
        if self.rssi_std is not None and self.rssi_std <= 0:
            raise ValueError(f"rssi_std must be positive, got {self.rssi_std}")
        if self.path_loss_exponent is not None and self.path_loss_exponent <= 0:
            raise ValueError(
                f"path_loss_exponent must be positive, got {self.path_loss_exponent}"
            )

        if self.position_covariance is not None:
            cov = np.asarray(self.position_covariance, dtype=float)
            d = position.shape[0]
            if cov.shape != (d, d):
                raise ValueError(
                    f"position_covariance must have shape ({d}, {d}), got {cov.shape}"
                )
            object.__setattr__(self, "position_covariance", cov)

    @property
    def dimensions(self) -> int:
        return self.position.shape[0]

    @property
    def has_distance(self) -> bool:
        return self.distance is not None

    @property
    def has_rssi(self) -> bool:
        return self.rssi is not None

    @property
    def frequency(self) -> float:
        """Carrier frequency of the reading's source in Hz."""
        return self.source.frequency


@dataclass(frozen=True)
class Solution:
    """
    Parameters produced by one fit of the emitter model.

    Attributes:
        position: Emitter position, shape (d,).
        power_dbm: Equivalent transmitted power (dBm), or None when it is
                   neither estimated nor known.
        path_loss_exponent: Path-loss exponent, or None when unknown.
    """

    position: np.ndarray
    power_dbm: Optional[float] = None
    path_loss_exponent: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "position", np.asarray(self.position, dtype=float))


@dataclass(frozen=True)
class InliersData:
    """
    Inlier classification produced by the sample-consensus loop.

    Attributes:
        inliers: Boolean mask over the readings, shape (N,).
        residuals: Residual of every reading for the best solution, shape (N,).
        num_inliers: Number of True entries in ``inliers``.
        best_cost: Robust cost of the best solution.
    """

    inliers: np.ndarray
    residuals: np.ndarray
    num_inliers: int
    best_cost: float


@dataclass(frozen=True)
class LocatedRadioSource:
    """Radio source with its estimated position, power and path-loss exponent."""

    source: Any
    position: np.ndarray
    power_dbm: Optional[float]
    path_loss_exponent: Optional[float]
    position_covariance: Optional[np.ndarray] = None
    power_std: Optional[float] = None
    path_loss_exponent_std: Optional[float] = None


@dataclass(frozen=True)
class EstimatorEvent:
    """
    Notification delivered to an estimator listener.

    Attributes:
        kind: One of "start", "end", "iteration", "progress".
        estimator: Estimator emitting the event.
        iteration: Iteration count (for "iteration" events).
        progress: Fraction of the required iterations done, in [0, 1]
                  (for "progress" events).
    """

    kind: str
    estimator: Any
    iteration: Optional[int] = None
    progress: Optional[float] = None
