"""
Linear least squares estimation.

This module implements the linear least squares solvers used by the
inhomogeneous lateration solver and by the path-loss regression.

Functions:
    - linear_least_squares: Ordinary LS, x̂ = (AᵀA)⁻¹Aᵀb
    - weighted_least_squares: Weighted LS, x̂ = (AᵀWA)⁻¹AᵀWb

Both solvers raise NotEnoughSamplesError when the system is
underdetermined and NumericalInstabilityError when the normal equations
are rank deficient, so that callers inside the sample-consensus loop can
treat either as a failed draw.
"""

from typing import Optional, Tuple

import numpy as np

from radiosource.exceptions import NotEnoughSamplesError, NumericalInstabilityError


def linear_least_squares(
    A: np.ndarray, b: np.ndarray, return_covariance: bool = True
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Standard linear least squares estimation.

    Solves: x̂ = argmin ‖Ax - b‖²
    Solution: x̂ = (AᵀA)⁻¹Aᵀb

    Args:
        A: Design matrix (m × n), where m ≥ n.
        b: Observation vector (m,).
        return_covariance: If True, compute covariance matrix.

    Returns:
        Tuple of:
            - x_hat: Estimated state vector (n,).
            - P: Covariance matrix σ̂²(AᵀA)⁻¹ (n × n), or None if
              return_covariance is False.

    Raises:
        ValueError: If A and b dimensions don't match.
        NotEnoughSamplesError: If m < n.
        NumericalInstabilityError: If A is rank deficient.

    Example:
        >>> import numpy as np
        >>> A = np.array([[1, 0], [0, 1], [1, 1], [1, -1]], dtype=float)
        >>> b = np.array([1.0, 2.0, 3.0, -1.0])
        >>> x_hat, P = linear_least_squares(A, b)
    """
    A = np.asarray(A, dtype=float)
    b = np.asarray(b, dtype=float)
    if A.ndim != 2 or b.ndim != 1:
        raise ValueError(f"A must be 2D and b must be 1D. Got A: {A.shape}, b: {b.shape}")

    m, n = A.shape
    if len(b) != m:
        raise ValueError(f"Dimension mismatch: A has {m} rows, b has {len(b)} elements")
    if m < n:
        raise NotEnoughSamplesError(f"Underdetermined system: m={m} < n={n}. Need m ≥ n.")

    rank = np.linalg.matrix_rank(A)
    if rank < n:
        raise NumericalInstabilityError(
            f"A is rank deficient: rank={rank} < n={n}. System has no unique solution."
        )

    # Normal equations: AᵀA x = Aᵀb
    ATA = A.T @ A
    ATb = A.T @ b

    try:
        x_hat = np.linalg.solve(ATA, ATb)
    except np.linalg.LinAlgError as e:
        raise NumericalInstabilityError(f"Failed to solve normal equations: {e}") from e

    P = None
    if return_covariance:
        residuals = b - A @ x_hat
        # Unbiased variance estimate; exact fit has no redundancy
        if m > n:
            sigma2 = np.sum(residuals**2) / (m - n)
        else:
            sigma2 = 1.0
        P = sigma2 * np.linalg.inv(ATA)

    return x_hat, P


def weighted_least_squares(
    A: np.ndarray,
    b: np.ndarray,
    W_or_sigma: np.ndarray,
    is_sigma: bool = False,
    return_covariance: bool = True,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Weighted least squares estimation with measurement weights or sigmas.

    Solves: x̂ = argmin (Ax - b)ᵀ W (Ax - b)
    Solution: x̂ = (AᵀWA)⁻¹AᵀWb

    Setting wᵢ = 1/σᵢ² yields the best linear unbiased estimate, and the
    covariance of the estimate is then (AᵀWA)⁻¹.

    Args:
        A: Design matrix (m × n).
        b: Observation vector (m,).
        W_or_sigma: Weight specification, one of:
            - 2D array (m × m): Full weight matrix W
            - 1D array (m,): Diagonal weights wᵢ (if is_sigma=False)
            - 1D array (m,): Measurement std devs σᵢ (if is_sigma=True)
        is_sigma: If True, interpret 1D W_or_sigma as σᵢ and use wᵢ = 1/σᵢ².
        return_covariance: If True, compute covariance matrix.

    Returns:
        Tuple of:
            - x_hat: Estimated state vector (n,).
            - P: Covariance matrix (AᵀWA)⁻¹ (n × n), or None.

    Raises:
        ValueError: If dimensions don't match or weights are invalid.
        NotEnoughSamplesError: If m < n.
        NumericalInstabilityError: If AᵀWA is rank deficient.

    Example:
        >>> import numpy as np
        >>> A = np.array([[1, 0], [0, 1], [1, 1]], dtype=float)
        >>> b = np.array([1.0, 2.0, 3.2])
        >>> sigma = np.array([0.1, 0.1, 0.5])
        >>> x_hat, P = weighted_least_squares(A, b, sigma, is_sigma=True)
    """
    A = np.asarray(A, dtype=float)
    b = np.asarray(b, dtype=float)
    if A.ndim != 2 or b.ndim != 1:
        raise ValueError(
            f"Invalid dimensions: A must be 2D, b must be 1D. "
            f"Got A={A.shape}, b={b.shape}"
        )

    m, n = A.shape
    if len(b) != m:
        raise ValueError(
            f"Dimension mismatch: A has {m} rows, b has {len(b)} elements"
        )
    if m < n:
        raise NotEnoughSamplesError(f"Underdetermined system: m={m} < n={n}. Need m ≥ n.")

    W_or_sigma = np.asarray(W_or_sigma, dtype=float)

    if W_or_sigma.ndim == 1:
        if len(W_or_sigma) != m:
            raise ValueError(
                f"W_or_sigma length mismatch: expected {m}, got {len(W_or_sigma)}"
            )

        if is_sigma:
            if np.any(W_or_sigma <= 0):
                raise ValueError("Sigma values must be positive")
            weights = 1.0 / (W_or_sigma ** 2)
        else:
            weights = W_or_sigma
            if np.any(weights < 0):
                raise ValueError("Weights must be non-negative")

        W = np.diag(weights)

    elif W_or_sigma.ndim == 2:
        if W_or_sigma.shape != (m, m):
            raise ValueError(
                f"Weight matrix shape mismatch: expected ({m}, {m}), "
                f"got {W_or_sigma.shape}"
            )
        W = W_or_sigma

        if not np.allclose(W, W.T):
            raise ValueError("Weight matrix W must be symmetric")
    else:
        raise ValueError(
            f"W_or_sigma must be 1D or 2D array, got {W_or_sigma.ndim}D"
        )

    # Weighted normal equations: AᵀWA x = AᵀWb
    ATWA = A.T @ W @ A
    ATWb = A.T @ W @ b

    rank = np.linalg.matrix_rank(ATWA)
    if rank < n:
        raise NumericalInstabilityError(f"A'WA is rank deficient: rank={rank} < n={n}")

    try:
        x_hat = np.linalg.solve(ATWA, ATWb)
    except np.linalg.LinAlgError as e:
        raise NumericalInstabilityError(
            f"Failed to solve weighted normal equations: {e}"
        ) from e

    P = None
    if return_covariance:
        P = np.linalg.inv(ATWA)

    return x_hat, P
