"""
Nonlinear Least Squares solver using Levenberg-Marquardt.

This module implements the damped iterative solver used by the nonlinear
lateration stage and by the joint (position, power, path-loss exponent)
refinement.

Mathematical Formulation:
    Given observations y and measurement model h(x), we seek:
        x̂ = argmin ½‖r(x)‖²_W
    where r(x) = y - h(x) is the residual vector.

    Levenberg-Marquardt update:
        (JᵀWJ + μI) Δx = JᵀW r
    where μ is an adaptive damping parameter (small μ behaves like
    Gauss-Newton, large μ like gradient descent).

    At the solution, the first-order covariance of the estimate is
        P ≈ (JᵀWJ)⁻¹
    with W the diagonal matrix of inverse measurement variances.
"""

from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from radiosource.exceptions import NumericalInstabilityError


@dataclass
class NonlinearLSResult:
    """Result container for nonlinear least squares optimization.

    Attributes:
        x: Estimated state vector.
        covariance: Covariance matrix (JᵀWJ)⁻¹ (n × n), or None when it was
            not requested or JᵀWJ is singular at the solution.
        iterations: Number of iterations performed.
        residuals: Final residuals r = y - h(x̂).
        cost: Final cost value ½‖r‖²_W.
        converged: Whether the solver converged within tolerance.
    """

    x: np.ndarray
    covariance: Optional[np.ndarray]
    iterations: int
    residuals: np.ndarray
    cost: float
    converged: bool


def levenberg_marquardt(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 50,
    tol: float = 1e-10,
    mu0: float = 1e-3,
    return_covariance: bool = True,
    check_rank: bool = True,
) -> NonlinearLSResult:
    """
    Levenberg-Marquardt solver for weighted nonlinear least squares.

    Solves: x̂ = argmin ½‖y - h(x)‖²_W

    The damping μ is adapted from the gain ratio between the actual and the
    predicted cost decrease: accepted steps shrink μ, rejected steps grow it.

    Args:
        h: Measurement model function h: Rⁿ → Rᵐ.
        jacobian: Function returning Jacobian matrix J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial state estimate (n,).
        weights: Optional measurement weights (m,), typically 1/σᵢ².
            If None, uses uniform weights.
        max_iter: Maximum number of iterations.
        tol: Convergence tolerance on ‖Δx‖.
        mu0: Initial damping parameter.
        return_covariance: If True, compute (JᵀWJ)⁻¹ at the final estimate.
        check_rank: If True, fail when JᵀWJ is rank deficient at x0.

    Returns:
        NonlinearLSResult containing estimate, covariance, and diagnostics.

    Raises:
        ValueError: If inputs have inconsistent shapes.
        NumericalInstabilityError: If the Jacobian is rank deficient at the
            seed (with check_rank) or the iteration produces non-finite values.

    Example:
        >>> import numpy as np
        >>> anchors = np.array([[0, 0], [10, 0], [0, 10], [10, 10]], dtype=float)
        >>> def h(x):
        ...     return np.linalg.norm(anchors - x, axis=1)
        >>> def jac(x):
        ...     diff = x - anchors
        ...     ranges = np.linalg.norm(diff, axis=1, keepdims=True)
        ...     return diff / np.maximum(ranges, 1e-10)
        >>> y = h(np.array([3.0, 4.0]))
        >>> result = levenberg_marquardt(h, jac, y, x0=np.array([5.0, 5.0]))
    """
    y = np.asarray(y, dtype=float)
    x0 = np.asarray(x0, dtype=float)

    if y.ndim != 1:
        raise ValueError(f"y must be 1D array, got shape {y.shape}")
    if x0.ndim != 1:
        raise ValueError(f"x0 must be 1D array, got shape {x0.shape}")

    m = len(y)
    n = len(x0)
    x = x0.copy()

    if weights is None:
        W = np.eye(m)
    else:
        weights = np.asarray(weights, dtype=float)
        if weights.ndim != 1 or len(weights) != m:
            raise ValueError(f"weights must be 1D array of length {m}")
        if np.any(weights < 0):
            raise ValueError("weights must be non-negative")
        W = np.diag(weights)

    if check_rank:
        J0 = jacobian(x)
        rank = np.linalg.matrix_rank(J0.T @ W @ J0)
        if rank < n:
            raise NumericalInstabilityError(
                f"Jacobian is rank deficient at the initial guess: rank={rank} < n={n}"
            )

    mu = mu0
    nu = 2.0

    converged = False
    iteration = 0

    for iteration in range(max_iter):
        hx = h(x)
        if len(hx) != m:
            raise ValueError(f"h(x) returned {len(hx)} elements, expected {m}")

        J = jacobian(x)
        if J.shape != (m, n):
            raise ValueError(f"Jacobian shape {J.shape}, expected ({m}, {n})")

        r = y - hx

        JtW = J.T @ W
        JtWJ = JtW @ J
        JtWr = JtW @ r

        cost = 0.5 * r @ W @ r
        if not np.isfinite(cost):
            raise NumericalInstabilityError("Cost is not finite")

        # Zero gradient: already at a stationary point
        if np.linalg.norm(JtWr, ord=np.inf) < 1e-14:
            converged = True
            break

        # Solve (JᵀWJ + μI) Δx = JᵀWr until a step is accepted
        while True:
            JtWJ_damped = JtWJ + mu * np.eye(n)

            try:
                delta_x = np.linalg.solve(JtWJ_damped, JtWr)
            except np.linalg.LinAlgError:
                delta_x = np.linalg.lstsq(JtWJ_damped, JtWr, rcond=None)[0]

            x_new = x + delta_x
            r_new = y - h(x_new)
            cost_new = 0.5 * r_new @ W @ r_new

            # Predicted decrease: ½ Δxᵀ(μΔx + JᵀWr)
            predicted_decrease = 0.5 * delta_x @ (mu * delta_x + JtWr)
            actual_decrease = cost - cost_new

            if predicted_decrease > 1e-15 and np.isfinite(cost_new):
                gain_ratio = actual_decrease / predicted_decrease
            else:
                gain_ratio = 0.0

            if gain_ratio > 0:
                x = x_new
                mu = mu * max(1.0 / 3.0, 1.0 - (2.0 * gain_ratio - 1.0) ** 3)
                nu = 2.0
                break

            mu = mu * nu
            nu = 2.0 * nu
            if mu > 1e10:
                delta_x = np.zeros(n)
                break

        if np.linalg.norm(delta_x) < tol * (1.0 + np.linalg.norm(x)):
            converged = True
            break

    if not np.all(np.isfinite(x)):
        raise NumericalInstabilityError("Levenberg-Marquardt diverged")

    r = y - h(x)
    cost = 0.5 * r @ W @ r

    P = None
    if return_covariance:
        J = jacobian(x)
        JtWJ = J.T @ W @ J
        if np.linalg.matrix_rank(JtWJ) == n:
            try:
                P = np.linalg.inv(JtWJ)
            except np.linalg.LinAlgError:
                P = None

    return NonlinearLSResult(
        x=x,
        covariance=P,
        iterations=iteration + 1,
        residuals=r,
        cost=cost,
        converged=converged,
    )
