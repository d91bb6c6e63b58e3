"""
RF measurement models for radio-source estimation.

This module implements the log-distance path-loss model relating the
received signal strength (RSSI) at a receiver to the equivalent transmitted
power of the emitter, the distance between them and the path-loss exponent:

    Pr(d) = Pte - 10·n·log10(4π·d / λ),    λ = c / f

where:
    Pr: received power (dBm)
    Pte: equivalent transmitted power Pt·Gt·Gr (dBm)
    n: path-loss exponent (2.0 in free space)
    d: emitter-receiver distance (m)
    λ: wavelength of the carrier (m)

With n = 2 this is the Friis free-space equation written in dB.
"""

from typing import Union

import numpy as np

# Physical constants
SPEED_OF_LIGHT = 299792458.0  # m/s

DEFAULT_PATH_LOSS_EXPONENT = 2.0

ArrayLike = Union[float, np.ndarray]


def wavelength(frequency: float, c: float = SPEED_OF_LIGHT) -> float:
    """
    Carrier wavelength λ = c / f.

    Args:
        frequency: Carrier frequency in Hz.
        c: Propagation speed in m/s.

    Returns:
        Wavelength in meters.

    Example:
        >>> round(wavelength(2.4e9), 4)
        0.1249
    """
    if frequency <= 0:
        raise ValueError(f"frequency must be positive, got {frequency}")
    return c / frequency


def path_loss_db(distance: ArrayLike, frequency: float) -> ArrayLike:
    """
    Free-space log term 10·log10(4π·d / λ) in dB.

    The path loss for exponent n is n times this value.

    Args:
        distance: Distance(s) in meters, must be positive.
        frequency: Carrier frequency in Hz.

    Returns:
        10·log10(4π·d / λ) for each distance.
    """
    distance = np.asarray(distance, dtype=float)
    if np.any(distance <= 0):
        raise ValueError("Distance must be positive")
    return 10.0 * np.log10(4.0 * np.pi * distance / wavelength(frequency))


def rss_pathloss(
    power_dbm: float,
    distance: ArrayLike,
    frequency: float,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> ArrayLike:
    """
    Compute RSSI using the log-distance path-loss model.

        Pr = Pte - 10·n·log10(4π·d / λ)

    Args:
        power_dbm: Equivalent transmitted power Pte in dBm.
        distance: Emitter-receiver distance(s) in meters.
        frequency: Carrier frequency in Hz.
        path_loss_exponent: Path-loss exponent n. Defaults to 2.0 (free space).

    Returns:
        Received signal strength in dBm.

    Example:
        >>> # 2.4 GHz emitter at 1 mW (0 dBm), receiver 10 m away
        >>> rssi = rss_pathloss(0.0, 10.0, 2.4e9)
        >>> print(f"RSSI: {rssi:.2f} dBm")
        RSSI: -60.05 dBm
    """
    return power_dbm - path_loss_exponent * path_loss_db(distance, frequency)


def rss_to_distance(
    rssi_dbm: ArrayLike,
    power_dbm: float,
    frequency: float,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> ArrayLike:
    """
    Estimate distance from RSSI by inverting the path-loss model.

        d = λ / (4π) · 10^((Pte - Pr) / (10·n))

    Args:
        rssi_dbm: Received signal strength in dBm.
        power_dbm: Equivalent transmitted power in dBm.
        frequency: Carrier frequency in Hz.
        path_loss_exponent: Path-loss exponent n.

    Returns:
        Estimated distance in meters.

    Example:
        >>> d = rss_to_distance(-60.05, 0.0, 2.4e9)
        >>> print(f"Distance: {d:.1f} m")
        Distance: 10.0 m
    """
    if path_loss_exponent <= 0:
        raise ValueError(f"path_loss_exponent must be positive, got {path_loss_exponent}")
    rssi_dbm = np.asarray(rssi_dbm, dtype=float)
    exponent = (power_dbm - rssi_dbm) / (10.0 * path_loss_exponent)
    distance = wavelength(frequency) / (4.0 * np.pi) * 10.0**exponent
    return distance if distance.ndim else float(distance)


def rssi_distance_std(
    distance: ArrayLike,
    rssi_std: ArrayLike,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> ArrayLike:
    """
    Standard deviation of an RSSI-derived distance (first-order propagation).

        ∂d/∂Pr = -d·ln(10) / (10·n)   →   σ_d = d·ln(10)·σ_Pr / (10·n)

    Args:
        distance: RSSI-derived distance(s) in meters.
        rssi_std: RSSI standard deviation(s) in dB.
        path_loss_exponent: Path-loss exponent n.

    Returns:
        Distance standard deviation(s) in meters.
    """
    return np.asarray(distance) * np.log(10.0) * np.asarray(rssi_std) / (
        10.0 * path_loss_exponent
    )


def dbm_to_power(power_dbm: ArrayLike) -> ArrayLike:
    """
    Convert power from dBm to milliwatts.

    Example:
        >>> dbm_to_power(20.0)
        100.0
    """
    power = 10.0 ** (np.asarray(power_dbm, dtype=float) / 10.0)
    return power if power.ndim else float(power)


def power_to_dbm(power_mw: ArrayLike) -> ArrayLike:
    """
    Convert power from milliwatts to dBm.

    Example:
        >>> power_to_dbm(1.0)
        0.0
    """
    power_mw = np.asarray(power_mw, dtype=float)
    if np.any(power_mw <= 0):
        raise ValueError("Power must be positive")
    power_dbm = 10.0 * np.log10(power_mw)
    return power_dbm if power_dbm.ndim else float(power_dbm)
