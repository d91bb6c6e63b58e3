"""
Sample-consensus robust estimation (MSAC / RANSAC).

The driver repeatedly draws a minimal random subset of the samples, asks a
caller-supplied solver for candidate models fitted to that subset, scores
every candidate against all samples and keeps the best one. The number of
draws adapts to the best inlier fraction seen so far.

MSAC cost (truncated quadratic):
    C = Σᵢ min(rᵢ², t²)

RANSAC cost (outlier count):
    C = #{i : rᵢ > t}

Required number of iterations for confidence p, inlier fraction w and
subset size s:
    k = log(1 - p) / log(1 - wˢ)
"""

import logging
import math
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

import numpy as np

from radiosource.exceptions import ConsensusFailureError, NotReadyError
from radiosource.types import InliersData

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05


class SubsetSampler:
    """
    Draws subsets of sample indices uniformly at random without replacement.

    The sampler owns its own ``numpy.random.Generator`` so that a fixed seed
    reproduces the same sequence of draws.

    Args:
        seed: Seed for a new generator. Ignored when ``rng`` is given.
        rng: Existing generator to draw from.

    Example:
        >>> sampler = SubsetSampler(seed=42)
        >>> subset = sampler.draw(10, 3)
        >>> len(set(subset.tolist()))
        3
    """

    def __init__(self, seed: Optional[int] = None, rng: Optional[np.random.Generator] = None):
        self.rng = rng if rng is not None else np.random.default_rng(seed)

    def draw(self, total: int, size: int) -> np.ndarray:
        """Return ``size`` distinct indices in [0, total), sorted."""
        if size > total:
            raise ValueError(f"Cannot draw {size} samples out of {total}")
        return np.sort(self.rng.choice(total, size=size, replace=False))


def required_iterations(
    inlier_fraction: float,
    subset_size: int,
    confidence: float,
    max_iterations: int,
) -> int:
    """
    Number of draws needed to pick at least one outlier-free subset.

    Args:
        inlier_fraction: Fraction of samples classified inlier, in [0, 1].
        subset_size: Number of samples drawn per iteration.
        confidence: Desired probability of drawing an outlier-free subset.
        max_iterations: Upper bound on the result.

    Returns:
        Required iterations, clamped to [1, max_iterations].

    Example:
        >>> required_iterations(0.5, 3, 0.99, 1000)
        35
    """
    p_good = inlier_fraction ** subset_size
    if p_good >= 1.0:
        return 1
    if p_good <= 0.0:
        return max_iterations

    iterations = math.log(1.0 - confidence) / math.log(1.0 - p_good)
    if not math.isfinite(iterations):
        return max_iterations
    return int(min(max(math.ceil(iterations), 1), max_iterations))


class MSACRobustEstimator(Generic[T]):
    """
    Generic MSAC (M-estimator SAmple Consensus) driver.

    The problem is described by two callables: one that fits candidate
    models to a subset of sample indices and one that returns the residual
    of a sample for a candidate. A solver that cannot fit a subset returns an
    empty list; that draw is simply skipped.

    Status goes from "idle" to "running" and ends in "converged" or
    "failed".

    Attributes:
        total_samples: Number of samples N.
        subset_size: Number of samples drawn per iteration.
        threshold: Residual threshold separating inliers from outliers.
        confidence: Desired confidence in (0, 1).
        max_iterations: Maximum number of iterations.
        progress_delta: Minimum progress change between progress callbacks.
        method: "msac" (truncated quadratic cost) or "ransac" (outlier count).
        inliers_data: InliersData of the best solution after estimate().
        iterations: Iterations performed by the last estimate().
        best_cost: Cost of the best solution.
        status: "idle", "running", "converged" or "failed".

    Example:
        >>> import numpy as np
        >>> data = np.array([1.0, 1.1, 0.9, 1.0, 25.0])
        >>> estimator = MSACRobustEstimator(
        ...     total_samples=5,
        ...     subset_size=1,
        ...     preliminary_solutions=lambda idx: [float(data[idx].mean())],
        ...     residual=lambda model, i: abs(data[i] - model),
        ...     threshold=0.5,
        ...     sampler=SubsetSampler(seed=0),
        ... )
        >>> best = estimator.estimate()
        >>> int(estimator.inliers_data.num_inliers)
        4
    """

    _VALID_METHODS = {"msac", "ransac"}

    def __init__(
        self,
        total_samples: int,
        subset_size: int,
        preliminary_solutions: Callable[[np.ndarray], Sequence[T]],
        residual: Callable[[T, int], float],
        threshold: float,
        confidence: float = DEFAULT_CONFIDENCE,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        progress_delta: float = DEFAULT_PROGRESS_DELTA,
        sampler: Optional[SubsetSampler] = None,
        on_iteration: Optional[Callable[[int], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        method: str = "msac",
    ):
        if threshold <= 0:
            raise ValueError(f"threshold must be positive, got {threshold}")
        if not 0.0 < confidence < 1.0:
            raise ValueError(f"confidence must be in (0, 1), got {confidence}")
        if max_iterations <= 0:
            raise ValueError(f"max_iterations must be positive, got {max_iterations}")
        if not 0.0 <= progress_delta <= 1.0:
            raise ValueError(f"progress_delta must be in [0, 1], got {progress_delta}")
        if subset_size <= 0:
            raise ValueError(f"subset_size must be positive, got {subset_size}")
        method_lower = method.lower()
        if method_lower not in self._VALID_METHODS:
            raise ValueError(f"method must be one of {sorted(self._VALID_METHODS)}, got {method}")

        self.total_samples = total_samples
        self.subset_size = subset_size
        self.preliminary_solutions = preliminary_solutions
        self.residual = residual
        self.threshold = threshold
        self.confidence = confidence
        self.max_iterations = max_iterations
        self.progress_delta = progress_delta
        self.sampler = sampler if sampler is not None else SubsetSampler()
        self.on_iteration = on_iteration
        self.on_progress = on_progress
        self.method = method_lower

        self.inliers_data: Optional[InliersData] = None
        self.iterations = 0
        self.best_cost = np.inf
        self.status = "idle"

    @property
    def is_ready(self) -> bool:
        return self.total_samples >= self.subset_size

    def _residuals(self, candidate: T) -> np.ndarray:
        return np.array(
            [self.residual(candidate, i) for i in range(self.total_samples)],
            dtype=float,
        )

    def _cost(self, residuals: np.ndarray) -> float:
        if self.method == "ransac":
            return float(np.count_nonzero(~(residuals <= self.threshold)))
        # Non-finite residuals saturate like any outlier
        squared = np.where(np.isfinite(residuals), residuals**2, np.inf)
        return float(np.sum(np.minimum(squared, self.threshold**2)))

    def estimate(self) -> T:
        """
        Run the sample-consensus loop.

        Returns:
            Best candidate found.

        Raises:
            NotReadyError: If there are fewer samples than the subset size.
            ConsensusFailureError: If no subset ever produced a candidate.
        """
        if not self.is_ready:
            self.status = "failed"
            raise NotReadyError(
                f"Need at least {self.subset_size} samples, got {self.total_samples}"
            )

        self.status = "running"
        self.inliers_data = None
        self.best_cost = np.inf
        self.iterations = 0

        best: Optional[T] = None
        best_residuals: Optional[np.ndarray] = None
        needed = self.max_iterations
        last_progress = 0.0

        while self.iterations < needed:
            subset = self.sampler.draw(self.total_samples, self.subset_size)
            candidates: List[T] = list(self.preliminary_solutions(subset))

            for candidate in candidates:
                residuals = self._residuals(candidate)
                cost = self._cost(residuals)
                if cost < self.best_cost:
                    best = candidate
                    best_residuals = residuals
                    self.best_cost = cost
                    inlier_fraction = np.count_nonzero(residuals <= self.threshold) / self.total_samples
                    needed = required_iterations(
                        inlier_fraction, self.subset_size, self.confidence, self.max_iterations
                    )
                    logger.debug(
                        "iteration %d: cost=%.6g inliers=%.3f required=%d",
                        self.iterations, cost, inlier_fraction, needed,
                    )

            self.iterations += 1
            if self.on_iteration is not None:
                self.on_iteration(self.iterations)

            progress = min(self.iterations / needed, 1.0)
            if self.on_progress is not None and progress - last_progress >= self.progress_delta:
                last_progress = progress
                self.on_progress(progress)

        if best is None:
            self.status = "failed"
            raise ConsensusFailureError(
                f"No candidate solution after {self.iterations} iterations"
            )

        inliers = best_residuals <= self.threshold
        self.inliers_data = InliersData(
            inliers=inliers,
            residuals=best_residuals,
            num_inliers=int(np.count_nonzero(inliers)),
            best_cost=self.best_cost,
        )
        self.status = "converged"
        logger.info(
            "%s converged after %d iterations with %d/%d inliers",
            self.method.upper(), self.iterations,
            self.inliers_data.num_inliers, self.total_samples,
        )
        return best
