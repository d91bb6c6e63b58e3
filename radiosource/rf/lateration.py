"""
Lateration solvers.

This module estimates an unknown position from distances to known positions
(receiver locations), generalizing trilateration to N points in 2D or 3D:

- Homogeneous linear solver: null-space (SVD) solution of the squared
  range equations written in homogeneous coordinates.
- Inhomogeneous linear solver: ordinary LS after eliminating the quadratic
  term by subtracting the first range equation from the others.
- Nonlinear solver: weighted Levenberg-Marquardt refinement of
  Σ wᵢ·(‖x - pᵢ‖ - dᵢ)², wᵢ = 1/σᵢ².

Squared range equation for position pᵢ and distance dᵢ:
    ‖x‖² - 2·pᵢᵀx + ‖pᵢ‖² - dᵢ² = 0
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy import linalg

from radiosource.estimators.least_squares import linear_least_squares
from radiosource.estimators.nonlinear_least_squares import levenberg_marquardt
from radiosource.exceptions import NotEnoughSamplesError, NumericalInstabilityError

# Relative singular value below which the design matrix is treated as rank deficient
_RANK_TOLERANCE = 1e-12

# Homogeneous coordinate below which the solution lies at infinity
_SINGULARITY_THRESHOLD = 1e-12


@dataclass
class LaterationResult:
    """Result of a lateration solve.

    Attributes:
        position: Estimated position, shape (d,).
        covariance: Position covariance (d × d) from the nonlinear solver,
            or None for the linear solvers or a singular Jacobian.
        method: Solver that produced the position: "homogeneous",
            "inhomogeneous" or "nonlinear".
    """

    position: np.ndarray
    covariance: Optional[np.ndarray]
    method: str


def _validate(positions: np.ndarray, distances: np.ndarray):
    positions = np.asarray(positions, dtype=float)
    distances = np.asarray(distances, dtype=float)

    if positions.ndim != 2 or positions.shape[1] not in (2, 3):
        raise ValueError(f"positions must have shape (N, 2) or (N, 3), got {positions.shape}")
    if distances.shape != (positions.shape[0],):
        raise ValueError(
            f"Expected {positions.shape[0]} distances, got shape {distances.shape}"
        )

    dim = positions.shape[1]
    if positions.shape[0] < dim + 1:
        raise NotEnoughSamplesError(
            f"Lateration in {dim}D needs at least {dim + 1} positions, got {positions.shape[0]}"
        )
    return positions, distances


def homogeneous_lateration(positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
    """
    Linear lateration in homogeneous coordinates.

    Each range equation becomes a row of A·v = 0 with
        A[i] = [-2·pᵢᵀ, 1, ‖pᵢ‖² - dᵢ²],   v ∝ [x, ‖x‖², 1]
    The solution is the right singular vector of the smallest singular
    value of A, de-homogenized by its last component.

    Args:
        positions: Known positions, shape (N, d) with N ≥ d + 1.
        distances: Distances to the unknown position, shape (N,).

    Returns:
        Estimated position, shape (d,).

    Raises:
        NotEnoughSamplesError: If N < d + 1.
        NumericalInstabilityError: If the positions are degenerate (e.g.
            collinear in 2D) or the solution lies at infinity.

    Example:
        >>> positions = np.array([[0, 0], [10, 0], [0, 10]], dtype=float)
        >>> distances = np.linalg.norm(positions - [3.0, 4.0], axis=1)
        >>> np.round(homogeneous_lateration(positions, distances), 6)
        array([3., 4.])
    """
    positions, distances = _validate(positions, distances)
    n, dim = positions.shape

    A = np.zeros((n, dim + 2))
    A[:, :dim] = -2.0 * positions
    A[:, dim] = 1.0
    A[:, dim + 1] = np.sum(positions**2, axis=1) - distances**2

    try:
        _, s, Vh = linalg.svd(A, full_matrices=True)
    except linalg.LinAlgError as e:
        raise NumericalInstabilityError(f"SVD did not converge: {e}") from e

    # The null space must be one-dimensional
    if s[0] <= 0 or s[dim] / s[0] < _RANK_TOLERANCE:
        raise NumericalInstabilityError("Degenerate positions: null space is not unique")

    v = Vh[-1]
    w = v[-1]
    if abs(w) < _SINGULARITY_THRESHOLD:
        raise NumericalInstabilityError("Homogeneous solution lies at infinity")

    return v[:dim] / w


def inhomogeneous_lateration(positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
    """
    Linear lateration by pairwise subtraction of the range equations.

    Subtracting the first equation removes ‖x‖²:
        2·(pᵢ - p₀)ᵀ x = d₀² - dᵢ² + ‖pᵢ‖² - ‖p₀‖²,   i = 1..N-1
    which is solved by ordinary least squares.

    Args:
        positions: Known positions, shape (N, d) with N ≥ d + 1.
        distances: Distances to the unknown position, shape (N,).

    Returns:
        Estimated position, shape (d,).

    Raises:
        NotEnoughSamplesError: If N < d + 1.
        NumericalInstabilityError: If the positions are degenerate.

    Example:
        >>> positions = np.array([[0, 0], [10, 0], [0, 10]], dtype=float)
        >>> distances = np.linalg.norm(positions - [3.0, 4.0], axis=1)
        >>> np.round(inhomogeneous_lateration(positions, distances), 6)
        array([3., 4.])
    """
    positions, distances = _validate(positions, distances)

    ref = positions[0]
    A = 2.0 * (positions[1:] - ref)
    b = (
        distances[0] ** 2
        - distances[1:] ** 2
        + np.sum(positions[1:] ** 2, axis=1)
        - np.sum(ref**2)
    )

    x_hat, _ = linear_least_squares(A, b, return_covariance=False)
    return x_hat


def nonlinear_lateration(
    positions: np.ndarray,
    distances: np.ndarray,
    initial_guess: np.ndarray,
    distance_stds: Optional[np.ndarray] = None,
    max_iter: int = 50,
) -> LaterationResult:
    """
    Weighted nonlinear least-squares lateration.

    Minimizes Σ wᵢ·(‖x - pᵢ‖ - dᵢ)² with wᵢ = 1/σᵢ² (wᵢ = 1 when no standard
    deviations are given) using Levenberg-Marquardt.

    Args:
        positions: Known positions, shape (N, d) with N ≥ d + 1.
        distances: Measured distances, shape (N,).
        initial_guess: Initial position, shape (d,).
        distance_stds: Optional distance standard deviations, shape (N,).
        max_iter: Maximum LM iterations.

    Returns:
        LaterationResult with the refined position and its covariance (JᵀWJ)⁻¹.

    Raises:
        NotEnoughSamplesError: If N < d + 1.
        NumericalInstabilityError: If the Jacobian is rank deficient at the
            initial guess or the solver diverges.
    """
    positions, distances = _validate(positions, distances)
    x0 = np.asarray(initial_guess, dtype=float)
    if x0.shape != (positions.shape[1],):
        raise ValueError(
            f"initial_guess must have shape ({positions.shape[1]},), got {x0.shape}"
        )

    weights = None
    if distance_stds is not None:
        distance_stds = np.asarray(distance_stds, dtype=float)
        if distance_stds.shape != distances.shape:
            raise ValueError("distance_stds must match distances")
        if np.any(distance_stds <= 0):
            raise ValueError("distance_stds must be positive")
        weights = 1.0 / distance_stds**2

    def h(x):
        return np.linalg.norm(x - positions, axis=1)

    # ∂‖x - pᵢ‖/∂x = (x - pᵢ) / ‖x - pᵢ‖
    def jacobian(x):
        diff = x - positions
        ranges = np.linalg.norm(diff, axis=1, keepdims=True)
        return diff / np.maximum(ranges, 1e-10)

    result = levenberg_marquardt(
        h, jacobian, distances, x0, weights=weights, max_iter=max_iter
    )
    return LaterationResult(position=result.x, covariance=result.covariance, method="nonlinear")


def solve_position(
    positions: np.ndarray,
    distances: np.ndarray,
    distance_stds: Optional[np.ndarray] = None,
    initial_guess: Optional[np.ndarray] = None,
    linear_only: bool = False,
    homogeneous: bool = True,
) -> LaterationResult:
    """
    Estimate a position from distances to known positions.

    When no initial guess is available (or ``linear_only`` is set) a linear
    solver provides the position. Unless ``linear_only`` is set, the
    nonlinear solver then refines the initial guess, or the linear position
    when there is no guess.

    Args:
        positions: Known positions, shape (N, d).
        distances: Distances, shape (N,).
        distance_stds: Optional standard deviations, shape (N,).
        initial_guess: Optional initial position, shape (d,).
        linear_only: Skip the nonlinear refinement.
        homogeneous: Use the homogeneous (True) or inhomogeneous (False)
            linear solver.

    Returns:
        LaterationResult.

    Example:
        >>> positions = np.array([[0, 0], [10, 0], [0, 10], [10, 10]], dtype=float)
        >>> distances = np.linalg.norm(positions - [3.0, 4.0], axis=1)
        >>> result = solve_position(positions, distances)
        >>> np.allclose(result.position, [3.0, 4.0])
        True
    """
    if initial_guess is None or linear_only:
        if homogeneous:
            linear_position = homogeneous_lateration(positions, distances)
            method = "homogeneous"
        else:
            linear_position = inhomogeneous_lateration(positions, distances)
            method = "inhomogeneous"
        if not np.all(np.isfinite(linear_position)):
            raise NumericalInstabilityError("Linear lateration produced a non-finite position")
        if linear_only:
            return LaterationResult(position=linear_position, covariance=None, method=method)
        initial_guess = linear_position

    return nonlinear_lateration(positions, distances, initial_guess, distance_stds)
