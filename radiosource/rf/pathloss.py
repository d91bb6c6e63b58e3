"""
Path-loss model fitting.

Given RSSI samples at known emitter-receiver distances, recover the
equivalent transmitted power Pte and/or the path-loss exponent n of

    Pr = Pte - n·Lᵢ,    Lᵢ = 10·log10(4π·dᵢ / λ)

The model is linear in (Pte, n), so every case has a closed form:

- power only (n fixed):     Pte = Σ wᵢ(Prᵢ + n·Lᵢ) / Σ wᵢ,   var = 1 / Σ wᵢ
- exponent only (Pte fixed): n = Σ wᵢLᵢ(Pte - Prᵢ) / Σ wᵢLᵢ²,  var = 1 / Σ wᵢLᵢ²
- both: weighted linear regression of Prᵢ on [1, -Lᵢ]

with wᵢ = 1/σᵢ² (σᵢ defaults to 1 dB).
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from radiosource.estimators.least_squares import weighted_least_squares
from radiosource.exceptions import NotEnoughSamplesError, NumericalInstabilityError
from radiosource.rf.measurement_models import DEFAULT_PATH_LOSS_EXPONENT, path_loss_db

DEFAULT_RSSI_STD = 1.0  # dB


@dataclass
class PathLossFit:
    """Result of a path-loss fit.

    Attributes:
        power_dbm: Equivalent transmitted power (estimated or the given value),
            or None when neither is available.
        path_loss_exponent: Path-loss exponent (estimated or the given value).
        covariance: Covariance of the free parameters in the order
            (power, exponent), or None when nothing was estimated.
    """

    power_dbm: Optional[float]
    path_loss_exponent: float
    covariance: Optional[np.ndarray]


def fit_power(
    distances: np.ndarray,
    rssis: np.ndarray,
    frequency: float,
    rssi_stds: Optional[np.ndarray] = None,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    power_dbm: Optional[float] = None,
    estimate_power: bool = True,
    estimate_exponent: bool = False,
) -> PathLossFit:
    """
    Fit the log-distance path-loss model to RSSI samples.

    Args:
        distances: Emitter-receiver distances in meters, shape (N,).
        rssis: RSSI values in dBm, shape (N,).
        frequency: Carrier frequency in Hz.
        rssi_stds: Optional RSSI standard deviations in dB, shape (N,).
        path_loss_exponent: Exponent used when it is not estimated, and
            returned unchanged in that case.
        power_dbm: Transmitted power used when it is not estimated.
        estimate_power: Estimate Pte.
        estimate_exponent: Estimate n.

    Returns:
        PathLossFit.

    Raises:
        NotEnoughSamplesError: If there are fewer samples than free parameters.
        NumericalInstabilityError: If a distance is not positive or the
            regression is degenerate (all samples at the same distance).
        ValueError: If the exponent is estimated alone without a power.

    Example:
        >>> d = np.array([2.0, 5.0, 10.0])
        >>> from radiosource.rf.measurement_models import rss_pathloss
        >>> rssi = rss_pathloss(-10.0, d, 2.4e9, path_loss_exponent=2.5)
        >>> fit = fit_power(d, rssi, 2.4e9, estimate_exponent=True)
        >>> round(fit.power_dbm, 6), round(fit.path_loss_exponent, 6)
        (-10.0, 2.5)
    """
    distances = np.asarray(distances, dtype=float)
    rssis = np.asarray(rssis, dtype=float)
    if distances.ndim != 1 or distances.shape != rssis.shape:
        raise ValueError(
            f"distances and rssis must be 1D arrays of equal length, "
            f"got {distances.shape} and {rssis.shape}"
        )

    if not estimate_power and not estimate_exponent:
        return PathLossFit(power_dbm=power_dbm, path_loss_exponent=path_loss_exponent, covariance=None)

    n_free = int(estimate_power) + int(estimate_exponent)
    if len(rssis) < n_free:
        raise NotEnoughSamplesError(
            f"Need at least {n_free} RSSI samples, got {len(rssis)}"
        )

    if np.any(distances <= 0) or not np.all(np.isfinite(distances)):
        raise NumericalInstabilityError("Path-loss fit needs finite positive distances")

    if rssi_stds is None:
        rssi_stds = np.full(len(rssis), DEFAULT_RSSI_STD)
    else:
        rssi_stds = np.asarray(rssi_stds, dtype=float)
        if rssi_stds.shape != rssis.shape:
            raise ValueError("rssi_stds must match rssis")
    weights = 1.0 / rssi_stds**2

    L = path_loss_db(distances, frequency)

    if estimate_power and not estimate_exponent:
        samples = rssis + path_loss_exponent * L
        total_weight = np.sum(weights)
        power = float(np.sum(weights * samples) / total_weight)
        return PathLossFit(
            power_dbm=power,
            path_loss_exponent=path_loss_exponent,
            covariance=np.array([[1.0 / total_weight]]),
        )

    if estimate_exponent and not estimate_power:
        if power_dbm is None:
            raise ValueError("Estimating the exponent alone requires a transmitted power")
        information = np.sum(weights * L**2)
        if information < 1e-12:
            raise NumericalInstabilityError("Samples at unit path loss cannot fix the exponent")
        exponent = float(np.sum(weights * L * (power_dbm - rssis)) / information)
        return PathLossFit(
            power_dbm=power_dbm,
            path_loss_exponent=exponent,
            covariance=np.array([[1.0 / information]]),
        )

    # Both: Prᵢ = Pte - n·Lᵢ
    A = np.column_stack([np.ones_like(L), -L])
    x_hat, P = weighted_least_squares(A, rssis, weights)
    return PathLossFit(
        power_dbm=float(x_hat[0]),
        path_loss_exponent=float(x_hat[1]),
        covariance=P,
    )
