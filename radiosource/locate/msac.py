"""
MSAC robust estimation of a radio source from ranging and RSSI readings.

The estimator wraps the generic sample-consensus driver:

- each iteration draws a minimal subset of readings and solves it with the
  deterministic joint estimator (lateration + path-loss fit);
- every candidate is scored over all readings with the truncated quadratic
  MSAC cost on normalized residuals;
- the best candidate is optionally refined by a weighted joint nonlinear
  fit over its inliers, which also yields the covariance (JᵀWJ)⁻¹ of the
  enabled parameters (position block, then power, then exponent).

Configuration is exposed as properties whose setters raise LockedError while
an estimation is running.
"""

import logging
from typing import Callable, List, Optional, Sequence

import numpy as np

from radiosource.estimators.nonlinear_least_squares import levenberg_marquardt
from radiosource.estimators.robust import (
    DEFAULT_CONFIDENCE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROGRESS_DELTA,
    MSACRobustEstimator,
    SubsetSampler,
)
from radiosource.exceptions import (
    LockedError,
    NotEnoughSamplesError,
    NotReadyError,
    NumericalInstabilityError,
)
from radiosource.locate.joint import effective_distance_std, estimate_joint, minimum_readings
from radiosource.locate.residuals import COMBINATIONS, JointModel, reading_residual
from radiosource.rf.measurement_models import DEFAULT_PATH_LOSS_EXPONENT, dbm_to_power
from radiosource.types import (
    EstimatorEvent,
    InliersData,
    LocatedRadioSource,
    Reading,
    Solution,
)

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.1

Listener = Callable[[EstimatorEvent], None]


class MSACRobustRadioSourceEstimator:
    """
    Robust joint estimator of emitter position, transmitted power and
    path-loss exponent.

    Args:
        readings: Readings of one radio source, all 2D or all 3D.
        threshold: Residual threshold separating inliers from outliers
            (normalized units: 1 means one standard deviation).
        confidence: Desired probability of drawing an outlier-free subset.
        max_iterations: Upper bound on consensus iterations.
        progress_delta: Minimum progress change between progress events.
        estimate_power: Estimate the transmitted power.
        estimate_exponent: Estimate the path-loss exponent.
        initial_position: Optional seed for the nonlinear lateration.
        initial_power_dbm: Power used when it is not estimated, and to turn
            RSSI-only readings into distances.
        initial_path_loss_exponent: Exponent used when it is not estimated.
        preliminary_subset_size: Readings drawn per iteration. Values below
            ``min_readings`` are raised to it.
        refine_result: Refine the consensus solution over its inliers.
        keep_covariance: Keep the covariance of the refined solution.
        use_position_covariances: Inflate distance uncertainties with the
            receiver position covariances.
        use_homogeneous_linear_solver: Homogeneous (True) or inhomogeneous
            (False) linear lateration.
        residual_combination: How the two residuals of a reading carrying
            both ranging and RSSI are combined ("root_sum_square", "max",
            "sum").
        listener: Callable receiving EstimatorEvent notifications.
        seed: Seed for the subset sampler. A fixed seed makes every
            estimate() call reproducible.

    Example:
        >>> estimator = MSACRobustRadioSourceEstimator(  # doctest: +SKIP
        ...     readings, threshold=0.5, estimate_power=False, seed=42)
        >>> solution = estimator.estimate()  # doctest: +SKIP
        >>> estimator.inliers_data.num_inliers  # doctest: +SKIP
        5
    """

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        threshold: float = DEFAULT_THRESHOLD,
        confidence: float = DEFAULT_CONFIDENCE,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        progress_delta: float = DEFAULT_PROGRESS_DELTA,
        estimate_power: bool = True,
        estimate_exponent: bool = False,
        initial_position: Optional[np.ndarray] = None,
        initial_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
        preliminary_subset_size: Optional[int] = None,
        refine_result: bool = True,
        keep_covariance: bool = True,
        use_position_covariances: bool = True,
        use_homogeneous_linear_solver: bool = True,
        residual_combination: str = "root_sum_square",
        listener: Optional[Listener] = None,
        seed: Optional[int] = None,
    ):
        self._locked = False
        self._readings: Optional[List[Reading]] = None

        self.readings = readings
        self.threshold = threshold
        self.confidence = confidence
        self.max_iterations = max_iterations
        self.progress_delta = progress_delta
        self.estimate_power = estimate_power
        self.estimate_exponent = estimate_exponent
        self.initial_position = initial_position
        self.initial_power_dbm = initial_power_dbm
        self.initial_path_loss_exponent = initial_path_loss_exponent
        self.preliminary_subset_size = preliminary_subset_size
        self.refine_result = refine_result
        self.keep_covariance = keep_covariance
        self.use_position_covariances = use_position_covariances
        self.use_homogeneous_linear_solver = use_homogeneous_linear_solver
        self.residual_combination = residual_combination
        self.listener = listener
        self.seed = seed

        self._reset_results()

    def _reset_results(self) -> None:
        self._solution: Optional[Solution] = None
        self._covariance: Optional[np.ndarray] = None
        self._inliers_data: Optional[InliersData] = None
        self._iterations = 0

    def _check_unlocked(self) -> None:
        if self._locked:
            raise LockedError()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def locked(self) -> bool:
        """True while estimate() is running."""
        return self._locked

    @property
    def readings(self) -> Optional[List[Reading]]:
        return self._readings

    @readings.setter
    def readings(self, value: Optional[Sequence[Reading]]) -> None:
        self._check_unlocked()
        if value is None:
            self._readings = None
            return
        readings = list(value)
        if not all(isinstance(r, Reading) for r in readings):
            raise ValueError("readings must be Reading instances")
        if len({r.dimensions for r in readings}) > 1:
            raise ValueError("All readings must share one dimension")
        self._readings = readings

    @property
    def threshold(self) -> float:
        return self._threshold

    @threshold.setter
    def threshold(self, value: float) -> None:
        self._check_unlocked()
        if value <= 0:
            raise ValueError(f"threshold must be positive, got {value}")
        self._threshold = float(value)

    @property
    def confidence(self) -> float:
        return self._confidence

    @confidence.setter
    def confidence(self, value: float) -> None:
        self._check_unlocked()
        if not 0.0 < value < 1.0:
            raise ValueError(f"confidence must be in (0, 1), got {value}")
        self._confidence = float(value)

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, value: int) -> None:
        self._check_unlocked()
        if value < 1:
            raise ValueError(f"max_iterations must be at least 1, got {value}")
        self._max_iterations = int(value)

    @property
    def progress_delta(self) -> float:
        return self._progress_delta

    @progress_delta.setter
    def progress_delta(self, value: float) -> None:
        self._check_unlocked()
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"progress_delta must be in [0, 1], got {value}")
        self._progress_delta = float(value)

    @property
    def estimate_power(self) -> bool:
        return self._estimate_power

    @estimate_power.setter
    def estimate_power(self, value: bool) -> None:
        self._check_unlocked()
        self._estimate_power = bool(value)

    @property
    def estimate_exponent(self) -> bool:
        return self._estimate_exponent

    @estimate_exponent.setter
    def estimate_exponent(self, value: bool) -> None:
        self._check_unlocked()
        self._estimate_exponent = bool(value)

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return self._initial_position

    @initial_position.setter
    def initial_position(self, value: Optional[np.ndarray]) -> None:
        self._check_unlocked()
        if value is None:
            self._initial_position = None
            return
        position = np.asarray(value, dtype=float)
        if position.ndim != 1 or position.shape[0] not in (2, 3):
            raise ValueError(f"initial_position must have shape (2,) or (3,), got {position.shape}")
        self._initial_position = position

    @property
    def initial_power_dbm(self) -> Optional[float]:
        return self._initial_power_dbm

    @initial_power_dbm.setter
    def initial_power_dbm(self, value: Optional[float]) -> None:
        self._check_unlocked()
        self._initial_power_dbm = None if value is None else float(value)

    @property
    def initial_path_loss_exponent(self) -> float:
        return self._initial_path_loss_exponent

    @initial_path_loss_exponent.setter
    def initial_path_loss_exponent(self, value: float) -> None:
        self._check_unlocked()
        if value <= 0:
            raise ValueError(f"initial_path_loss_exponent must be positive, got {value}")
        self._initial_path_loss_exponent = float(value)

    @property
    def preliminary_subset_size(self) -> int:
        """Readings drawn per iteration, never below ``min_readings``."""
        if self._preliminary_subset_size is None:
            return self.min_readings
        return max(self._preliminary_subset_size, self.min_readings)

    @preliminary_subset_size.setter
    def preliminary_subset_size(self, value: Optional[int]) -> None:
        self._check_unlocked()
        if value is not None and value < 1:
            raise ValueError(f"preliminary_subset_size must be positive, got {value}")
        self._preliminary_subset_size = value

    @property
    def refine_result(self) -> bool:
        return self._refine_result

    @refine_result.setter
    def refine_result(self, value: bool) -> None:
        self._check_unlocked()
        self._refine_result = bool(value)

    @property
    def keep_covariance(self) -> bool:
        return self._keep_covariance

    @keep_covariance.setter
    def keep_covariance(self, value: bool) -> None:
        self._check_unlocked()
        self._keep_covariance = bool(value)

    @property
    def use_position_covariances(self) -> bool:
        return self._use_position_covariances

    @use_position_covariances.setter
    def use_position_covariances(self, value: bool) -> None:
        self._check_unlocked()
        self._use_position_covariances = bool(value)

    @property
    def use_homogeneous_linear_solver(self) -> bool:
        return self._use_homogeneous_linear_solver

    @use_homogeneous_linear_solver.setter
    def use_homogeneous_linear_solver(self, value: bool) -> None:
        self._check_unlocked()
        self._use_homogeneous_linear_solver = bool(value)

    @property
    def residual_combination(self) -> str:
        return self._residual_combination

    @residual_combination.setter
    def residual_combination(self, value: str) -> None:
        self._check_unlocked()
        if value not in COMBINATIONS:
            raise ValueError(f"residual_combination must be one of {sorted(COMBINATIONS)}, got {value}")
        self._residual_combination = value

    @property
    def listener(self) -> Optional[Listener]:
        return self._listener

    @listener.setter
    def listener(self, value: Optional[Listener]) -> None:
        self._check_unlocked()
        self._listener = value

    @property
    def seed(self) -> Optional[int]:
        return self._seed

    @seed.setter
    def seed(self, value: Optional[int]) -> None:
        self._check_unlocked()
        self._seed = value

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    @property
    def dimensions(self) -> int:
        """Dimension of the readings (2 until readings are set)."""
        if self._readings:
            return self._readings[0].dimensions
        return 2

    @property
    def min_readings(self) -> int:
        return minimum_readings(self.dimensions, self._estimate_power, self._estimate_exponent)

    @property
    def is_ready(self) -> bool:
        """
        Whether estimate() can run.

        Requires at least ``min_readings`` readings, enough RSSI readings for
        the enabled path-loss parameters, and a transmitted power (estimated
        or given) whenever the exponent is estimated alone or a reading
        carries RSSI only.
        """
        if not self._readings or len(self._readings) < self.min_readings:
            return False

        power_known = self._estimate_power or self._initial_power_dbm is not None
        if self._estimate_exponent and not power_known:
            return False
        if not power_known and any(not r.has_distance for r in self._readings):
            return False

        num_rssi = sum(1 for r in self._readings if r.has_rssi)
        return num_rssi >= int(self._estimate_power) + int(self._estimate_exponent)

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def _notify(self, kind: str, **kwargs) -> None:
        if self._listener is not None:
            self._listener(EstimatorEvent(kind=kind, estimator=self, **kwargs))

    def _solve_preliminary_solutions(self, indices: np.ndarray) -> List[Solution]:
        subset = [self._readings[i] for i in indices]
        try:
            estimate = estimate_joint(
                subset,
                estimate_power=self._estimate_power,
                estimate_exponent=self._estimate_exponent,
                initial_position=self._initial_position,
                initial_power_dbm=self._initial_power_dbm,
                initial_path_loss_exponent=self._initial_path_loss_exponent,
                homogeneous=self._use_homogeneous_linear_solver,
                use_position_covariances=self._use_position_covariances,
            )
        except (NotEnoughSamplesError, NumericalInstabilityError) as e:
            logger.debug("Subset %s rejected: %s", indices.tolist(), e)
            return []
        return [estimate.solution]

    def _residual(self, solution: Solution, index: int) -> float:
        return reading_residual(solution, self._readings[index], self._residual_combination)

    def estimate(self) -> Solution:
        """
        Robustly estimate the radio source.

        Returns:
            The estimated Solution (refined when ``refine_result`` is set).

        Raises:
            LockedError: If an estimation is already running.
            NotReadyError: If ``is_ready`` is False.
            ConsensusFailureError: If no subset produced a candidate.
        """
        self._check_unlocked()
        if not self.is_ready:
            raise NotReadyError(
                f"Estimator is not ready: needs at least {self.min_readings} valid readings"
            )

        self._locked = True
        self._reset_results()
        try:
            self._notify("start")

            consensus = MSACRobustEstimator(
                total_samples=len(self._readings),
                subset_size=self.preliminary_subset_size,
                preliminary_solutions=self._solve_preliminary_solutions,
                residual=self._residual,
                threshold=self._threshold,
                confidence=self._confidence,
                max_iterations=self._max_iterations,
                progress_delta=self._progress_delta,
                sampler=SubsetSampler(seed=self._seed),
                on_iteration=lambda i: self._notify("iteration", iteration=i),
                on_progress=lambda p: self._notify("progress", progress=p),
            )
            best = consensus.estimate()
            self._iterations = consensus.iterations
            self._inliers_data = consensus.inliers_data
            self._solution = best

            if self._refine_result:
                self._refine(best)

            self._notify("end")
            return self._solution
        finally:
            self._locked = False

    def _refine(self, best: Solution) -> None:
        """Weighted joint fit over the inliers; soft failure keeps ``best``."""
        inliers = [r for r, ok in zip(self._readings, self._inliers_data.inliers) if ok]
        try:
            model = JointModel(
                inliers,
                [
                    effective_distance_std(r, self._use_position_covariances)
                    if r.has_distance
                    else None
                    for r in inliers
                ],
                self._estimate_power,
                self._estimate_exponent,
                power_dbm=best.power_dbm,
                path_loss_exponent=(
                    best.path_loss_exponent
                    if best.path_loss_exponent is not None
                    else self._initial_path_loss_exponent
                ),
            )
            if len(model.y) < model.n_params:
                raise NotEnoughSamplesError(
                    f"{len(model.y)} inlier measurements for {model.n_params} parameters"
                )
            result = levenberg_marquardt(
                model.h,
                model.jacobian,
                model.y,
                model.pack(best),
                weights=model.weights,
                return_covariance=self._keep_covariance,
            )
        except (ValueError, NumericalInstabilityError) as e:
            logger.warning("Refinement failed, keeping consensus solution: %s", e)
            return

        self._solution = model.unpack(result.x)
        if self._keep_covariance:
            self._covariance = result.covariance
            if result.covariance is None:
                logger.warning("Refined solution has a singular information matrix; no covariance")

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @property
    def solution(self) -> Optional[Solution]:
        return self._solution

    @property
    def iterations(self) -> int:
        """Consensus iterations performed by the last estimate()."""
        return self._iterations

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return self._inliers_data

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return None if self._solution is None else self._solution.position

    @property
    def estimated_power_dbm(self) -> Optional[float]:
        return None if self._solution is None else self._solution.power_dbm

    @property
    def estimated_power(self) -> Optional[float]:
        """Estimated transmitted power in mW."""
        power_dbm = self.estimated_power_dbm
        return None if power_dbm is None else dbm_to_power(power_dbm)

    @property
    def estimated_path_loss_exponent(self) -> Optional[float]:
        return None if self._solution is None else self._solution.path_loss_exponent

    @property
    def covariance(self) -> Optional[np.ndarray]:
        """Covariance over position, power (if estimated), exponent (if estimated)."""
        return self._covariance

    @property
    def position_covariance(self) -> Optional[np.ndarray]:
        if self._covariance is None:
            return None
        d = self.dimensions
        return self._covariance[:d, :d]

    @property
    def power_variance(self) -> Optional[float]:
        if self._covariance is None or not self._estimate_power:
            return None
        d = self.dimensions
        return float(self._covariance[d, d])

    @property
    def path_loss_exponent_variance(self) -> Optional[float]:
        if self._covariance is None or not self._estimate_exponent:
            return None
        i = self.dimensions + int(self._estimate_power)
        return float(self._covariance[i, i])

    @property
    def estimated_radio_source(self) -> Optional[LocatedRadioSource]:
        """Located radio source built from the last estimate."""
        if self._solution is None:
            return None
        power_variance = self.power_variance
        exponent_variance = self.path_loss_exponent_variance
        return LocatedRadioSource(
            source=self._readings[0].source,
            position=self._solution.position,
            power_dbm=self._solution.power_dbm,
            path_loss_exponent=self._solution.path_loss_exponent,
            position_covariance=self.position_covariance,
            power_std=None if power_variance is None else float(np.sqrt(power_variance)),
            path_loss_exponent_std=(
                None if exponent_variance is None else float(np.sqrt(exponent_variance))
            ),
        )
