"""
Residual and cost model for heterogeneous readings.

Ranging and RSSI discrepancies are normalized by their standard deviation
so that both live on one dimensionless scale:

    r_range = |‖x - p‖ - d| / σ_d
    r_rssi  = |Pr(x, Pte, n) - rssi| / σ_rssi

A reading carrying both components gets a combined residual; the
combination rule is configurable ("root_sum_square" by default).

This module also builds the stacked measurement model used by the joint
nonlinear refinement over (position, power, exponent).
"""

from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from radiosource.rf.measurement_models import DEFAULT_PATH_LOSS_EXPONENT, wavelength
from radiosource.rf.pathloss import DEFAULT_RSSI_STD
from radiosource.types import Reading, Solution

DEFAULT_DISTANCE_STD = 1.0  # m

_MIN_DISTANCE = 1e-10

COMBINATIONS: Dict[str, Callable[[np.ndarray], float]] = {
    "root_sum_square": lambda r: float(np.sqrt(np.sum(r**2))),
    "max": lambda r: float(np.max(r)),
    "sum": lambda r: float(np.sum(r)),
}


def predicted_rssi(solution: Solution, reading: Reading) -> Optional[float]:
    """
    RSSI expected at the reading's receiver for a candidate solution.

    Returns None when the solution carries no transmitted power.
    """
    if solution.power_dbm is None:
        return None
    exponent = _exponent(solution, reading)
    distance = max(np.linalg.norm(solution.position - reading.position), _MIN_DISTANCE)
    lam = wavelength(reading.frequency)
    return solution.power_dbm - 10.0 * exponent * np.log10(4.0 * np.pi * distance / lam)


def _exponent(solution: Solution, reading: Reading) -> float:
    if solution.path_loss_exponent is not None:
        return solution.path_loss_exponent
    if reading.path_loss_exponent is not None:
        return reading.path_loss_exponent
    return DEFAULT_PATH_LOSS_EXPONENT


def ranging_residual(solution: Solution, reading: Reading) -> float:
    """Normalized ranging residual |‖x - p‖ - d| / σ_d."""
    sigma = reading.distance_std if reading.distance_std is not None else DEFAULT_DISTANCE_STD
    distance = np.linalg.norm(solution.position - reading.position)
    return float(abs(distance - reading.distance) / sigma)


def rssi_residual(solution: Solution, reading: Reading) -> Optional[float]:
    """Normalized RSSI residual, or None when no power is known."""
    expected = predicted_rssi(solution, reading)
    if expected is None:
        return None
    sigma = reading.rssi_std if reading.rssi_std is not None else DEFAULT_RSSI_STD
    return float(abs(expected - reading.rssi) / sigma)


def reading_residual(
    solution: Solution,
    reading: Reading,
    combination: str = "root_sum_square",
) -> float:
    """
    Non-negative residual of one reading for a candidate solution.

    Args:
        solution: Candidate solution.
        reading: Reading to score.
        combination: How the ranging and RSSI residuals of a reading carrying
            both are combined: "root_sum_square", "max" or "sum".

    Returns:
        Residual. Infinite when the reading has no usable component (RSSI
        only and the solution carries no power).

    Example:
        >>> src = RadioSource("ap", 2.4e9)  # doctest: +SKIP
        >>> reading = Reading(src, [0.0, 0.0], distance=5.0)  # doctest: +SKIP
        >>> reading_residual(Solution([3.0, 4.0]), reading)  # doctest: +SKIP
        0.0
    """
    try:
        combine = COMBINATIONS[combination]
    except KeyError:
        raise ValueError(
            f"combination must be one of {sorted(COMBINATIONS)}, got {combination}"
        ) from None

    parts = []
    if reading.has_distance:
        parts.append(ranging_residual(solution, reading))
    if reading.has_rssi:
        r = rssi_residual(solution, reading)
        if r is not None:
            parts.append(r)

    if not parts:
        return np.inf
    return combine(np.asarray(parts))


class JointModel:
    """
    Stacked measurement model over the enabled emitter parameters.

    Parameter vector: [x (d), Pte (if estimated), n (if estimated)].
    Rows: one per ranging component, then one per RSSI component.

    Attributes:
        y: Stacked observations.
        weights: Stacked inverse variances.
        n_params: Length of the parameter vector.
    """

    def __init__(
        self,
        readings: Sequence[Reading],
        distance_stds: Sequence[Optional[float]],
        estimate_power: bool,
        estimate_exponent: bool,
        power_dbm: Optional[float] = None,
        path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    ):
        if not readings:
            raise ValueError("JointModel needs at least one reading")
        self.dim = readings[0].dimensions
        self.estimate_power = estimate_power
        self.estimate_exponent = estimate_exponent
        self.power_dbm = power_dbm
        self.path_loss_exponent = path_loss_exponent
        self.n_params = self.dim + int(estimate_power) + int(estimate_exponent)

        rssi_usable = estimate_power or power_dbm is not None

        range_rows: List[Tuple[np.ndarray, float, float]] = []
        rssi_rows: List[Tuple[np.ndarray, float, float, float]] = []
        for reading, distance_std in zip(readings, distance_stds):
            if reading.has_distance:
                sigma = distance_std if distance_std is not None else DEFAULT_DISTANCE_STD
                range_rows.append((reading.position, reading.distance, sigma))
            if reading.has_rssi and rssi_usable:
                sigma = reading.rssi_std if reading.rssi_std is not None else DEFAULT_RSSI_STD
                rssi_rows.append(
                    (reading.position, reading.rssi, sigma, wavelength(reading.frequency))
                )

        self._range_positions = np.array([r[0] for r in range_rows]).reshape(-1, self.dim)
        self._rssi_positions = np.array([r[0] for r in rssi_rows]).reshape(-1, self.dim)
        self._wavelengths = np.array([r[3] for r in rssi_rows], dtype=float)
        self.n_range = len(range_rows)
        self.n_rssi = len(rssi_rows)

        self.y = np.concatenate(
            [[r[1] for r in range_rows], [r[1] for r in rssi_rows]]
        ).astype(float)
        sigmas = np.concatenate(
            [[r[2] for r in range_rows], [r[2] for r in rssi_rows]]
        ).astype(float)
        self.weights = 1.0 / sigmas**2

    def pack(self, solution: Solution) -> np.ndarray:
        """Parameter vector for a solution."""
        params = list(solution.position)
        if self.estimate_power:
            params.append(solution.power_dbm)
        if self.estimate_exponent:
            params.append(
                solution.path_loss_exponent
                if solution.path_loss_exponent is not None
                else self.path_loss_exponent
            )
        return np.asarray(params, dtype=float)

    def unpack(self, params: np.ndarray) -> Solution:
        """Solution for a parameter vector; disabled parameters keep their fixed values."""
        pos = self.dim
        power = self.power_dbm
        exponent = self.path_loss_exponent
        if self.estimate_power:
            power = float(params[pos])
            pos += 1
        if self.estimate_exponent:
            exponent = float(params[pos])
        return Solution(position=params[: self.dim].copy(), power_dbm=power, path_loss_exponent=exponent)

    def _split(self, params: np.ndarray):
        pos = self.dim
        power = self.power_dbm
        exponent = self.path_loss_exponent
        if self.estimate_power:
            power = params[pos]
            pos += 1
        if self.estimate_exponent:
            exponent = params[pos]
        return params[: self.dim], power, exponent

    def h(self, params: np.ndarray) -> np.ndarray:
        """Predicted observations: ranges then RSSIs."""
        x, power, exponent = self._split(params)
        ranges = np.linalg.norm(x - self._range_positions, axis=1)
        if self.n_rssi == 0:
            return ranges
        d = np.maximum(np.linalg.norm(x - self._rssi_positions, axis=1), _MIN_DISTANCE)
        L = 10.0 * np.log10(4.0 * np.pi * d / self._wavelengths)
        return np.concatenate([ranges, power - exponent * L])

    def jacobian(self, params: np.ndarray) -> np.ndarray:
        """
        Jacobian of h.

        Range rows:  ∂‖x - p‖/∂x = (x - p) / ‖x - p‖
        RSSI rows:   ∂Pr/∂x = -10·n·(x - p) / (ln(10)·‖x - p‖²)
                     ∂Pr/∂Pte = 1,  ∂Pr/∂n = -10·log10(4π·d / λ)
        """
        x, _, exponent = self._split(params)
        J = np.zeros((self.n_range + self.n_rssi, self.n_params))

        diff = x - self._range_positions
        ranges = np.linalg.norm(diff, axis=1, keepdims=True)
        J[: self.n_range, : self.dim] = diff / np.maximum(ranges, _MIN_DISTANCE)

        if self.n_rssi:
            diff = x - self._rssi_positions
            sqr = np.maximum(np.sum(diff**2, axis=1, keepdims=True), _MIN_DISTANCE**2)
            rows = slice(self.n_range, self.n_range + self.n_rssi)
            J[rows, : self.dim] = -10.0 * exponent * diff / (np.log(10.0) * sqr)
            col = self.dim
            if self.estimate_power:
                J[rows, col] = 1.0
                col += 1
            if self.estimate_exponent:
                d = np.sqrt(sqr[:, 0])
                J[rows, col] = -10.0 * np.log10(4.0 * np.pi * d / self._wavelengths)
        return J
