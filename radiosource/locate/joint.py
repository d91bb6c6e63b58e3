"""
Deterministic joint estimation of emitter position, power and exponent.

Given a set of readings of one radio source (typically a minimal subset
drawn by the robust estimator) this module:

1. Converts ranging readings into distances and, when a transmitted power
   is known, RSSI-only readings into RSSI-derived distances.
2. Laterates the emitter position from those distances, or, when there are
   too few of them, fits position and the enabled path-loss parameters
   directly to the RSSI values.
3. Fits the enabled path-loss parameters (power, exponent) with the
   position held fixed.

Parameters that are not estimated keep the caller's initial values.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
from scipy import linalg

from radiosource.estimators.nonlinear_least_squares import levenberg_marquardt
from radiosource.exceptions import NotEnoughSamplesError, NumericalInstabilityError
from radiosource.locate.residuals import DEFAULT_DISTANCE_STD, JointModel
from radiosource.rf.lateration import solve_position
from radiosource.rf.measurement_models import (
    DEFAULT_PATH_LOSS_EXPONENT,
    rss_to_distance,
    rssi_distance_std,
)
from radiosource.rf.pathloss import DEFAULT_RSSI_STD, fit_power
from radiosource.types import Reading, Solution

logger = logging.getLogger(__name__)


@dataclass
class JointEstimate:
    """Result of a joint estimate.

    Attributes:
        solution: Estimated position, power and exponent.
        covariance: Approximate covariance over the enabled parameters
            (position block, then power, then exponent), or None when a
            stage could not provide one. Cross terms between the position
            and the path-loss parameters are not modelled here.
    """

    solution: Solution
    covariance: Optional[np.ndarray]


def minimum_readings(dims: int, estimate_power: bool, estimate_exponent: bool) -> int:
    """
    Smallest number of readings that determines the enabled parameters.

    Example:
        >>> minimum_readings(2, estimate_power=True, estimate_exponent=False)
        4
    """
    return dims + 1 + int(estimate_power) + int(estimate_exponent)


def effective_distance_std(reading: Reading, use_position_covariance: bool = True) -> float:
    """
    Distance standard deviation of a ranging reading.

    When the receiver position carries a covariance, its average variance is
    added to the ranging variance.
    """
    sigma = reading.distance_std if reading.distance_std is not None else DEFAULT_DISTANCE_STD
    return _inflate(sigma, reading, use_position_covariance)


def _inflate(sigma: float, reading: Reading, use_position_covariance: bool) -> float:
    if not use_position_covariance or reading.position_covariance is None:
        return sigma
    try:
        eigenvalues = linalg.eigvalsh(reading.position_covariance)
    except linalg.LinAlgError:
        return sigma
    position_variance = float(np.mean(np.clip(eigenvalues, 0.0, None)))
    return float(np.sqrt(sigma**2 + position_variance))


def _check_dimensions(readings: Sequence[Reading]) -> int:
    dims = {reading.dimensions for reading in readings}
    if len(dims) != 1:
        raise ValueError(f"All readings must share one dimension, got {sorted(dims)}")
    return dims.pop()


def estimate_joint(
    readings: Sequence[Reading],
    estimate_power: bool = True,
    estimate_exponent: bool = False,
    initial_position: Optional[np.ndarray] = None,
    initial_power_dbm: Optional[float] = None,
    initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    linear_only: bool = False,
    homogeneous: bool = True,
    use_position_covariances: bool = True,
) -> JointEstimate:
    """
    Estimate emitter position and the enabled path-loss parameters.

    Args:
        readings: Readings of a single radio source, all 2D or all 3D.
        estimate_power: Estimate the transmitted power.
        estimate_exponent: Estimate the path-loss exponent.
        initial_position: Optional seed for the nonlinear lateration.
        initial_power_dbm: Power used to turn RSSI into distances, and the
            returned power when it is not estimated.
        initial_path_loss_exponent: Exponent used when it is not estimated
            (and when a reading carries none of its own).
        linear_only: Use only the linear lateration solver.
        homogeneous: Homogeneous (True) or inhomogeneous (False) linear solver.
        use_position_covariances: Inflate distance uncertainties with the
            receiver position covariances.

    Returns:
        JointEstimate.

    Raises:
        NotEnoughSamplesError: If the readings cannot determine the enabled
            parameters.
        NumericalInstabilityError: If a solve is degenerate.
    """
    if not readings:
        raise NotEnoughSamplesError("No readings")
    dims = _check_dimensions(readings)

    needed = minimum_readings(dims, estimate_power, estimate_exponent)
    if len(readings) < needed:
        raise NotEnoughSamplesError(f"Need at least {needed} readings, got {len(readings)}")

    positions: List[np.ndarray] = []
    distances: List[float] = []
    stds: List[float] = []
    for reading in readings:
        if reading.has_distance:
            positions.append(reading.position)
            distances.append(reading.distance)
            stds.append(effective_distance_std(reading, use_position_covariances))
        elif initial_power_dbm is not None:
            exponent = (
                reading.path_loss_exponent
                if reading.path_loss_exponent is not None
                else initial_path_loss_exponent
            )
            distance = rss_to_distance(
                reading.rssi, initial_power_dbm, reading.frequency, exponent
            )
            rssi_std = reading.rssi_std if reading.rssi_std is not None else DEFAULT_RSSI_STD
            sigma = float(rssi_distance_std(distance, rssi_std, exponent))
            positions.append(reading.position)
            distances.append(distance)
            stds.append(_inflate(sigma, reading, use_position_covariances))

    if not np.all(np.isfinite(distances)):
        raise NumericalInstabilityError("RSSI-derived distances are not finite")

    if len(distances) >= dims + 1:
        lateration = solve_position(
            np.array(positions),
            np.array(distances),
            distance_stds=np.array(stds),
            initial_guess=initial_position,
            linear_only=linear_only,
            homogeneous=homogeneous,
        )
        return _fit_path_loss(
            readings,
            lateration.position,
            lateration.covariance,
            estimate_power,
            estimate_exponent,
            initial_power_dbm,
            initial_path_loss_exponent,
        )

    return _fit_rssi(
        readings,
        dims,
        estimate_power,
        estimate_exponent,
        initial_position,
        initial_power_dbm,
        initial_path_loss_exponent,
        use_position_covariances,
    )


def _fit_path_loss(
    readings: Sequence[Reading],
    position: np.ndarray,
    position_covariance: Optional[np.ndarray],
    estimate_power: bool,
    estimate_exponent: bool,
    initial_power_dbm: Optional[float],
    initial_path_loss_exponent: float,
) -> JointEstimate:
    if not estimate_power and not estimate_exponent:
        solution = Solution(position, initial_power_dbm, initial_path_loss_exponent)
        return JointEstimate(solution, position_covariance)

    rssi_readings = [r for r in readings if r.has_rssi]
    if not rssi_readings:
        raise NotEnoughSamplesError("Path-loss parameters need RSSI readings")

    receivers = np.array([r.position for r in rssi_readings])
    fit = fit_power(
        np.linalg.norm(receivers - position, axis=1),
        np.array([r.rssi for r in rssi_readings]),
        rssi_readings[0].frequency,
        rssi_stds=np.array(
            [r.rssi_std if r.rssi_std is not None else DEFAULT_RSSI_STD for r in rssi_readings]
        ),
        path_loss_exponent=initial_path_loss_exponent,
        power_dbm=initial_power_dbm,
        estimate_power=estimate_power,
        estimate_exponent=estimate_exponent,
    )
    solution = Solution(position, fit.power_dbm, fit.path_loss_exponent)

    covariance = None
    if position_covariance is not None and fit.covariance is not None:
        covariance = linalg.block_diag(position_covariance, fit.covariance)
    return JointEstimate(solution, covariance)


def _fit_rssi(
    readings: Sequence[Reading],
    dims: int,
    estimate_power: bool,
    estimate_exponent: bool,
    initial_position: Optional[np.ndarray],
    initial_power_dbm: Optional[float],
    initial_path_loss_exponent: float,
    use_position_covariances: bool,
) -> JointEstimate:
    """Joint nonlinear fit on RSSI values when there are too few distances."""
    rssi_readings = [r for r in readings if r.has_rssi]
    if not estimate_power and initial_power_dbm is None:
        raise NotEnoughSamplesError("RSSI readings need a transmitted power to locate the source")
    if len(rssi_readings) < dims + int(estimate_power) + int(estimate_exponent):
        raise NotEnoughSamplesError(
            f"Not enough distances or RSSI readings: {len(rssi_readings)} RSSI readings"
        )

    if initial_position is not None:
        position = np.asarray(initial_position, dtype=float)
    else:
        # Linear received power pulls the seed towards the strongest receivers
        strengths = np.array([10.0 ** (r.rssi / 10.0) for r in rssi_readings])
        receivers = np.array([r.position for r in rssi_readings])
        position = strengths @ receivers / np.sum(strengths)

    power = initial_power_dbm
    if estimate_power:
        distances = np.linalg.norm(np.array([r.position for r in rssi_readings]) - position, axis=1)
        power = fit_power(
            np.maximum(distances, 1e-3),
            np.array([r.rssi for r in rssi_readings]),
            rssi_readings[0].frequency,
            path_loss_exponent=initial_path_loss_exponent,
        ).power_dbm

    model = JointModel(
        readings,
        [effective_distance_std(r, use_position_covariances) if r.has_distance else None
         for r in readings],
        estimate_power,
        estimate_exponent,
        power_dbm=initial_power_dbm,
        path_loss_exponent=initial_path_loss_exponent,
    )
    seed = Solution(position, power, initial_path_loss_exponent)
    result = levenberg_marquardt(
        model.h, model.jacobian, model.y, model.pack(seed), weights=model.weights
    )
    if not np.all(np.isfinite(result.x)):
        raise NumericalInstabilityError("RSSI fit produced a non-finite solution")

    logger.debug("RSSI-only fit: %d iterations, cost=%.6g", result.iterations, result.cost)
    return JointEstimate(model.unpack(result.x), result.covariance)
