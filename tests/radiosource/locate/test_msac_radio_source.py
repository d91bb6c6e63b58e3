"""
Unit tests for the MSAC robust radio-source estimator.

Tests cover:
    - Zero-noise convergence in 2D and 3D, with and without path-loss parameters
    - Outlier rejection, including the 6-reading end-to-end scenario
    - Monotonicity of the inlier mask in the threshold
    - Locking, readiness, listener events and seeded determinism
    - Refinement covariance
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from radiosource.exceptions import LockedError, NotReadyError
from radiosource.locate.msac import DEFAULT_THRESHOLD, MSACRobustRadioSourceEstimator
from radiosource.rf.measurement_models import dbm_to_power, rss_pathloss
from radiosource.types import LocatedRadioSource, RadioSource, Reading

SOURCE = RadioSource("00:11:22:33:44:55", 2.4e9)
TRUE_POSITION_2D = np.array([3.0, 4.0])
TRUE_POWER = -10.0


def _make_readings(receivers, position, distance=True, rssi=False, exponent=2.0, **kwargs):
    readings = []
    for receiver in receivers:
        d = float(np.linalg.norm(receiver - position))
        readings.append(
            Reading(
                SOURCE,
                receiver,
                distance=d if distance else None,
                rssi=float(rss_pathloss(TRUE_POWER, d, SOURCE.frequency, exponent)) if rssi else None,
                **kwargs,
            )
        )
    return readings


@pytest.fixture
def receivers_2d():
    np.random.seed(42)
    return np.random.uniform(-10.0, 10.0, size=(8, 2))


@pytest.fixture
def scenario_readings():
    """5 noise-free ranging readings plus one with its distance inflated 10×."""
    receivers = np.array(
        [[0.0, 0.0], [10.0, 0.0], [0.0, 10.0], [10.0, 10.0], [5.0, -5.0], [-5.0, 5.0]]
    )
    readings = _make_readings(receivers, TRUE_POSITION_2D)
    outlier = readings[2]
    readings[2] = Reading(SOURCE, outlier.position, distance=10.0 * outlier.distance)
    return readings


class TestEndToEndScenario:
    """6 readings in 2D, one of them a gross ranging outlier."""

    def test_outlier_rejected(self, scenario_readings):
        estimator = MSACRobustRadioSourceEstimator(
            scenario_readings,
            threshold=0.5,
            confidence=0.99,
            max_iterations=1000,
            estimate_power=False,
            seed=42,
        )

        estimator.estimate()

        assert np.linalg.norm(estimator.estimated_position - TRUE_POSITION_2D) < 1e-3
        assert estimator.inliers_data.num_inliers == 5
        assert_array_equal(
            estimator.inliers_data.inliers, [True, True, False, True, True, True]
        )
        assert not estimator.locked

    def test_without_refinement(self, scenario_readings):
        estimator = MSACRobustRadioSourceEstimator(
            scenario_readings, threshold=0.5, estimate_power=False, refine_result=False, seed=1
        )

        estimator.estimate()

        assert_allclose(estimator.estimated_position, TRUE_POSITION_2D, atol=1e-6)
        assert estimator.covariance is None

    def test_inhomogeneous_solver(self, scenario_readings):
        estimator = MSACRobustRadioSourceEstimator(
            scenario_readings,
            threshold=0.5,
            estimate_power=False,
            use_homogeneous_linear_solver=False,
            seed=3,
        )

        estimator.estimate()

        assert_allclose(estimator.estimated_position, TRUE_POSITION_2D, atol=1e-6)

    def test_seeded_determinism(self, scenario_readings):
        """Test that two runs with one seed give identical results."""
        first = MSACRobustRadioSourceEstimator(
            scenario_readings, threshold=0.5, estimate_power=False, seed=7
        )
        second = MSACRobustRadioSourceEstimator(
            scenario_readings, threshold=0.5, estimate_power=False, seed=7
        )

        a = first.estimate()
        b = second.estimate()

        assert_array_equal(a.position, b.position)
        assert_array_equal(first.inliers_data.inliers, second.inliers_data.inliers)
        assert_array_equal(first.inliers_data.residuals, second.inliers_data.residuals)
        assert first.inliers_data.best_cost == second.inliers_data.best_cost
        assert first.iterations == second.iterations

    def test_repeated_estimate_same_instance(self, scenario_readings):
        estimator = MSACRobustRadioSourceEstimator(
            scenario_readings, threshold=0.5, estimate_power=False, seed=11
        )

        a = estimator.estimate()
        inliers = estimator.inliers_data.inliers.copy()
        b = estimator.estimate()

        assert_array_equal(a.position, b.position)
        assert_array_equal(inliers, estimator.inliers_data.inliers)


class TestZeroNoiseConvergence:
    """Outlier-free readings converge to the true parameters."""

    def test_ranging_2d(self, receivers_2d):
        readings = _make_readings(receivers_2d, TRUE_POSITION_2D)
        estimator = MSACRobustRadioSourceEstimator(readings, estimate_power=False, seed=0)

        estimator.estimate()

        assert_allclose(estimator.estimated_position, TRUE_POSITION_2D, atol=1e-6)
        assert estimator.inliers_data.num_inliers == len(readings)
        assert estimator.covariance.shape == (2, 2)

    def test_ranging_3d(self):
        np.random.seed(7)
        receivers = np.random.uniform(-10.0, 10.0, size=(8, 3))
        position = np.array([1.0, -2.0, 3.0])
        readings = _make_readings(receivers, position)
        estimator = MSACRobustRadioSourceEstimator(readings, estimate_power=False, seed=0)

        estimator.estimate()

        assert_allclose(estimator.estimated_position, position, atol=1e-6)
        assert estimator.inliers_data.num_inliers == len(readings)
        assert estimator.position_covariance.shape == (3, 3)

    def test_ranging_and_power(self, receivers_2d):
        readings = _make_readings(receivers_2d, TRUE_POSITION_2D, rssi=True)
        estimator = MSACRobustRadioSourceEstimator(readings, seed=0)

        estimator.estimate()

        assert_allclose(estimator.estimated_position, TRUE_POSITION_2D, atol=1e-6)
        assert estimator.estimated_power_dbm == pytest.approx(TRUE_POWER, abs=1e-6)
        assert estimator.estimated_power == pytest.approx(dbm_to_power(TRUE_POWER))
        assert estimator.covariance.shape == (3, 3)
        assert estimator.power_variance > 0
        assert estimator.path_loss_exponent_variance is None

    def test_ranging_power_and_exponent(self, receivers_2d):
        readings = _make_readings(receivers_2d, TRUE_POSITION_2D, rssi=True, exponent=2.8)
        estimator = MSACRobustRadioSourceEstimator(
            readings, estimate_power=True, estimate_exponent=True, seed=0
        )

        estimator.estimate()

        assert_allclose(estimator.estimated_position, TRUE_POSITION_2D, atol=1e-6)
        assert estimator.estimated_power_dbm == pytest.approx(TRUE_POWER, abs=1e-5)
        assert estimator.estimated_path_loss_exponent == pytest.approx(2.8, abs=1e-6)
        assert estimator.covariance.shape == (4, 4)
        assert estimator.path_loss_exponent_variance > 0

    def test_rssi_only_with_known_power(self, receivers_2d):
        readings = _make_readings(receivers_2d, TRUE_POSITION_2D, distance=False, rssi=True)
        estimator = MSACRobustRadioSourceEstimator(
            readings, estimate_power=False, initial_power_dbm=TRUE_POWER, seed=0
        )

        estimator.estimate()

        assert_allclose(estimator.estimated_position, TRUE_POSITION_2D, atol=1e-6)
        assert estimator.estimated_power_dbm == TRUE_POWER
        assert estimator.inliers_data.num_inliers == len(readings)

    def test_located_radio_source(self, receivers_2d):
        readings = _make_readings(receivers_2d, TRUE_POSITION_2D, rssi=True)
        estimator = MSACRobustRadioSourceEstimator(readings, seed=0)
        assert estimator.estimated_radio_source is None

        estimator.estimate()
        located = estimator.estimated_radio_source

        assert isinstance(located, LocatedRadioSource)
        assert located.source == SOURCE
        assert_allclose(located.position, TRUE_POSITION_2D, atol=1e-6)
        assert located.power_std == pytest.approx(np.sqrt(estimator.power_variance))
        assert located.path_loss_exponent_std is None


class TestOutlierRejection:
    """Gross errors are excluded from the inlier mask."""

    def test_power_with_outliers(self, receivers_2d):
        np.random.seed(1)
        readings = _make_readings(
            receivers_2d, TRUE_POSITION_2D, rssi=True, distance_std=0.1, rssi_std=0.5
        )
        noisy = []
        for r in readings:
            noisy.append(
                Reading(
                    SOURCE, r.position,
                    distance=r.distance + 0.01 * np.random.randn(), distance_std=0.1,
                    rssi=r.rssi + 0.05 * np.random.randn(), rssi_std=0.5,
                )
            )
        noisy[1] = Reading(SOURCE, noisy[1].position, distance=noisy[1].distance + 15.0,
                           distance_std=0.1, rssi=noisy[1].rssi, rssi_std=0.5)
        noisy[5] = Reading(SOURCE, noisy[5].position, distance=noisy[5].distance,
                           distance_std=0.1, rssi=noisy[5].rssi - 20.0, rssi_std=0.5)

        estimator = MSACRobustRadioSourceEstimator(noisy, threshold=3.0, seed=5)
        estimator.estimate()

        assert not estimator.inliers_data.inliers[1]
        assert not estimator.inliers_data.inliers[5]
        assert estimator.inliers_data.num_inliers == len(noisy) - 2
        assert np.linalg.norm(estimator.estimated_position - TRUE_POSITION_2D) < 0.05
        assert estimator.estimated_power_dbm == pytest.approx(TRUE_POWER, abs=0.2)

    def test_inlier_count_monotonic_in_threshold(self, receivers_2d):
        """Test that a larger threshold never classifies fewer readings inlier."""
        readings = _make_readings(receivers_2d, TRUE_POSITION_2D)
        for index, error in [(0, 0.3), (3, 3.0), (6, 30.0)]:
            r = readings[index]
            readings[index] = Reading(SOURCE, r.position, distance=r.distance + error)

        counts = []
        for threshold in (0.5, 5.0, 50.0):
            estimator = MSACRobustRadioSourceEstimator(
                readings, threshold=threshold, confidence=0.9999,
                estimate_power=False, seed=2,
            )
            estimator.estimate()
            counts.append(estimator.inliers_data.num_inliers)

        assert counts == sorted(counts)
        assert counts[0] >= 5


class TestConfiguration:
    """Test defaults, validation, locking and readiness."""

    def test_defaults(self):
        estimator = MSACRobustRadioSourceEstimator()

        assert estimator.threshold == DEFAULT_THRESHOLD == 0.1
        assert estimator.confidence == 0.99
        assert estimator.max_iterations == 5000
        assert estimator.progress_delta == 0.05
        assert estimator.estimate_power
        assert not estimator.estimate_exponent
        assert estimator.initial_path_loss_exponent == 2.0
        assert estimator.refine_result
        assert estimator.keep_covariance
        assert estimator.use_position_covariances
        assert estimator.use_homogeneous_linear_solver
        assert estimator.residual_combination == "root_sum_square"
        assert estimator.min_readings == 4
        assert not estimator.is_ready
        assert estimator.solution is None

    @pytest.mark.parametrize(
        "name, value",
        [
            ("threshold", 0.0),
            ("confidence", 1.0),
            ("max_iterations", 0),
            ("progress_delta", -0.1),
            ("initial_path_loss_exponent", 0.0),
            ("preliminary_subset_size", 0),
            ("residual_combination", "median"),
            ("initial_position", [1.0]),
        ],
    )
    def test_invalid_values_leave_configuration_unchanged(self, name, value):
        estimator = MSACRobustRadioSourceEstimator()
        before = getattr(estimator, name)

        with pytest.raises(ValueError):
            setattr(estimator, name, value)
        assert getattr(estimator, name) == before

    def test_mixed_dimension_readings(self):
        readings = [Reading(SOURCE, [0.0, 0.0], distance=1.0),
                    Reading(SOURCE, [0.0, 0.0, 0.0], distance=1.0)]

        with pytest.raises(ValueError):
            MSACRobustRadioSourceEstimator(readings)

    def test_min_readings(self):
        estimator = MSACRobustRadioSourceEstimator(estimate_power=False)
        assert estimator.min_readings == 3

        estimator.estimate_exponent = True
        estimator.estimate_power = True
        assert estimator.min_readings == 5

        estimator.readings = [Reading(SOURCE, [0.0, 0.0, 0.0], distance=1.0)]
        assert estimator.min_readings == 6

    def test_preliminary_subset_size_never_below_minimum(self, receivers_2d):
        estimator = MSACRobustRadioSourceEstimator(
            _make_readings(receivers_2d, TRUE_POSITION_2D), estimate_power=False,
            preliminary_subset_size=2,
        )
        assert estimator.preliminary_subset_size == 3

        estimator.preliminary_subset_size = 5
        assert estimator.preliminary_subset_size == 5

    def test_not_ready_with_too_few_readings(self, receivers_2d):
        readings = _make_readings(receivers_2d[:2], TRUE_POSITION_2D)
        estimator = MSACRobustRadioSourceEstimator(readings, estimate_power=False)

        assert not estimator.is_ready
        with pytest.raises(NotReadyError):
            estimator.estimate()
        assert not estimator.locked

        # Still usable after the failure
        estimator.readings = _make_readings(receivers_2d, TRUE_POSITION_2D)
        estimator.estimate()
        assert_allclose(estimator.estimated_position, TRUE_POSITION_2D, atol=1e-6)

    def test_not_ready_without_rssi_for_power(self, receivers_2d):
        estimator = MSACRobustRadioSourceEstimator(
            _make_readings(receivers_2d, TRUE_POSITION_2D), estimate_power=True
        )

        assert not estimator.is_ready

    def test_not_ready_rssi_only_without_power(self, receivers_2d):
        readings = _make_readings(receivers_2d, TRUE_POSITION_2D, distance=False, rssi=True)
        estimator = MSACRobustRadioSourceEstimator(readings, estimate_power=False)
        assert not estimator.is_ready

        estimator.initial_power_dbm = TRUE_POWER
        assert estimator.is_ready

    def test_not_ready_exponent_without_power(self, receivers_2d):
        readings = _make_readings(receivers_2d, TRUE_POSITION_2D, rssi=True)
        estimator = MSACRobustRadioSourceEstimator(
            readings, estimate_power=False, estimate_exponent=True
        )

        assert not estimator.is_ready


class TestLockingAndEvents:
    """Test the reentrancy guard and listener notifications."""

    def test_setters_locked_during_estimate(self, scenario_readings):
        errors = []

        def listener(event):
            if event.kind == "start":
                assert event.estimator.locked
                for name, value in [("threshold", 1.0), ("readings", []), ("listener", None),
                                    ("confidence", 0.5), ("preliminary_subset_size", 4)]:
                    try:
                        setattr(event.estimator, name, value)
                    except LockedError as e:
                        errors.append(e)

        estimator = MSACRobustRadioSourceEstimator(
            scenario_readings, threshold=0.5, estimate_power=False, listener=listener, seed=0
        )
        estimator.estimate()

        assert len(errors) == 5
        assert estimator.threshold == 0.5
        assert estimator.confidence == 0.99
        assert len(estimator.readings) == 6
        assert estimator.listener is listener
        assert not estimator.locked

    def test_event_sequence(self, scenario_readings):
        events = []
        estimator = MSACRobustRadioSourceEstimator(
            scenario_readings, threshold=0.5, estimate_power=False,
            listener=events.append, progress_delta=0.1, seed=0,
        )

        estimator.estimate()
        kinds = [e.kind for e in events]

        assert kinds[0] == "start"
        assert kinds[-1] == "end"
        assert kinds.count("iteration") == estimator.iterations
        iterations = [e.iteration for e in events if e.kind == "iteration"]
        assert iterations == list(range(1, estimator.iterations + 1))
        progress = [e.progress for e in events if e.kind == "progress"]
        assert progress == sorted(progress)
        assert all(e.estimator is estimator for e in events)

    def test_lock_released_after_listener_error(self, scenario_readings):
        def listener(event):
            if event.kind == "iteration":
                raise RuntimeError("listener failure")

        estimator = MSACRobustRadioSourceEstimator(
            scenario_readings, threshold=0.5, estimate_power=False, listener=listener, seed=0
        )

        with pytest.raises(RuntimeError):
            estimator.estimate()
        assert not estimator.locked
        estimator.threshold = 1.0
        assert estimator.threshold == 1.0


class TestCovariance:
    """Test the refinement covariance."""

    def test_position_covariance_inflation(self, receivers_2d):
        """Test that uncertain receiver positions inflate the position covariance."""
        plain = _make_readings(receivers_2d, TRUE_POSITION_2D, distance_std=0.1)
        uncertain = _make_readings(
            receivers_2d, TRUE_POSITION_2D, distance_std=0.1, position_covariance=0.04 * np.eye(2)
        )

        a = MSACRobustRadioSourceEstimator(plain, threshold=3.0, estimate_power=False, seed=0)
        b = MSACRobustRadioSourceEstimator(uncertain, threshold=3.0, estimate_power=False, seed=0)
        c = MSACRobustRadioSourceEstimator(
            uncertain, threshold=3.0, estimate_power=False, use_position_covariances=False, seed=0
        )
        for estimator in (a, b, c):
            estimator.estimate()

        assert np.trace(b.position_covariance) > np.trace(a.position_covariance)
        assert_allclose(c.position_covariance, a.position_covariance)

    def test_keep_covariance_disabled(self, receivers_2d):
        estimator = MSACRobustRadioSourceEstimator(
            _make_readings(receivers_2d, TRUE_POSITION_2D), estimate_power=False,
            keep_covariance=False, seed=0,
        )

        estimator.estimate()

        assert estimator.covariance is None
        assert estimator.position_covariance is None
        assert_allclose(estimator.estimated_position, TRUE_POSITION_2D, atol=1e-6)
