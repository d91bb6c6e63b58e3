"""
Unit tests for lateration solvers.

Tests the homogeneous and inhomogeneous linear solvers, the weighted
nonlinear solver and the solve_position dispatcher in 2D and 3D.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from radiosource.exceptions import NotEnoughSamplesError, NumericalInstabilityError
from radiosource.rf.lateration import (
    LaterationResult,
    homogeneous_lateration,
    inhomogeneous_lateration,
    nonlinear_lateration,
    solve_position,
)

ANCHORS_2D = np.array([[0, 0], [10, 0], [0, 10], [10, 10]], dtype=float)
ANCHORS_3D = np.array(
    [[0, 0, 0], [10, 0, 0], [0, 10, 0], [0, 0, 10], [10, 10, 5]], dtype=float
)


def _ranges(anchors, position):
    return np.linalg.norm(anchors - position, axis=1)


class TestLinearLateration:
    """Test the linear solvers on exact distances."""

    @pytest.mark.parametrize("solver", [homogeneous_lateration, inhomogeneous_lateration])
    def test_minimal_2d(self, solver):
        """Test exact recovery from the minimal 3 anchors in 2D."""
        true_pos = np.array([3.0, 4.0])

        position = solver(ANCHORS_2D[:3], _ranges(ANCHORS_2D[:3], true_pos))

        assert_allclose(position, true_pos, atol=1e-8)

    @pytest.mark.parametrize("solver", [homogeneous_lateration, inhomogeneous_lateration])
    def test_overdetermined_2d(self, solver):
        true_pos = np.array([7.5, 2.0])

        position = solver(ANCHORS_2D, _ranges(ANCHORS_2D, true_pos))

        assert_allclose(position, true_pos, atol=1e-8)

    @pytest.mark.parametrize("solver", [homogeneous_lateration, inhomogeneous_lateration])
    def test_minimal_3d(self, solver):
        """Test exact recovery from 4 non-coplanar anchors in 3D."""
        true_pos = np.array([2.0, 3.0, 4.0])

        position = solver(ANCHORS_3D[:4], _ranges(ANCHORS_3D[:4], true_pos))

        assert_allclose(position, true_pos, atol=1e-8)

    def test_position_outside_hull(self):
        true_pos = np.array([25.0, -8.0])

        position = homogeneous_lateration(ANCHORS_2D, _ranges(ANCHORS_2D, true_pos))

        assert_allclose(position, true_pos, atol=1e-6)

    @pytest.mark.parametrize("solver", [homogeneous_lateration, inhomogeneous_lateration])
    def test_too_few_anchors(self, solver):
        with pytest.raises(NotEnoughSamplesError):
            solver(ANCHORS_2D[:2], np.array([1.0, 2.0]))

    @pytest.mark.parametrize("solver", [homogeneous_lateration, inhomogeneous_lateration])
    def test_collinear_anchors(self, solver):
        """Test that collinear anchors in 2D are degenerate."""
        anchors = np.array([[0.0, 0.0], [5.0, 0.0], [10.0, 0.0]])

        with pytest.raises(NumericalInstabilityError):
            solver(anchors, _ranges(anchors, np.array([3.0, 4.0])))

    def test_shape_validation(self):
        with pytest.raises(ValueError):
            homogeneous_lateration(ANCHORS_2D, np.ones(3))
        with pytest.raises(ValueError):
            homogeneous_lateration(np.ones((4, 4)), np.ones(4))


class TestNonlinearLateration:
    """Test weighted nonlinear lateration."""

    def test_exact_convergence(self):
        true_pos = np.array([3.0, 4.0])

        result = nonlinear_lateration(
            ANCHORS_2D, _ranges(ANCHORS_2D, true_pos), initial_guess=np.array([5.0, 5.0])
        )

        assert isinstance(result, LaterationResult)
        assert_allclose(result.position, true_pos, atol=1e-6)
        assert result.method == "nonlinear"
        assert result.covariance.shape == (2, 2)

    def test_covariance_scales_with_sigma(self):
        """Test that doubling every σ quadruples the covariance."""
        true_pos = np.array([3.0, 4.0])
        distances = _ranges(ANCHORS_2D, true_pos)

        small = nonlinear_lateration(ANCHORS_2D, distances, true_pos, distance_stds=np.full(4, 0.1))
        large = nonlinear_lateration(ANCHORS_2D, distances, true_pos, distance_stds=np.full(4, 0.2))

        assert_allclose(large.covariance, 4.0 * small.covariance, rtol=1e-6)

    def test_down_weights_noisy_anchor(self):
        """Test that a large σ on a biased distance limits its influence."""
        true_pos = np.array([3.0, 4.0])
        distances = _ranges(ANCHORS_2D, true_pos)
        distances[3] += 2.0
        guess = np.array([5.0, 5.0])

        unweighted = nonlinear_lateration(ANCHORS_2D, distances, guess)
        weighted = nonlinear_lateration(
            ANCHORS_2D, distances, guess, distance_stds=np.array([0.1, 0.1, 0.1, 10.0])
        )

        assert np.linalg.norm(weighted.position - true_pos) < np.linalg.norm(
            unweighted.position - true_pos
        )

    def test_rank_deficient_seed(self):
        """Test that a seed on the line through collinear anchors raises."""
        anchors = np.array([[0.0, 0.0], [5.0, 0.0], [10.0, 0.0]])

        with pytest.raises(NumericalInstabilityError):
            nonlinear_lateration(anchors, np.array([3.0, 2.0, 7.0]), np.array([2.0, 0.0]))

    def test_invalid_stds(self):
        with pytest.raises(ValueError):
            nonlinear_lateration(
                ANCHORS_2D, np.ones(4), np.zeros(2), distance_stds=np.array([1.0, 1.0, 0.0, 1.0])
            )


class TestSolvePosition:
    """Test the lateration dispatcher."""

    def test_linear_only(self):
        true_pos = np.array([3.0, 4.0])

        result = solve_position(ANCHORS_2D, _ranges(ANCHORS_2D, true_pos), linear_only=True)

        assert result.method == "homogeneous"
        assert result.covariance is None
        assert_allclose(result.position, true_pos, atol=1e-8)

    def test_inhomogeneous_linear_only(self):
        true_pos = np.array([3.0, 4.0])

        result = solve_position(
            ANCHORS_2D, _ranges(ANCHORS_2D, true_pos), linear_only=True, homogeneous=False
        )

        assert result.method == "inhomogeneous"

    def test_linear_then_nonlinear(self):
        """Test that the linear solution seeds the nonlinear refinement."""
        np.random.seed(42)
        true_pos = np.array([2.0, 3.0, 4.0])
        distances = _ranges(ANCHORS_3D, true_pos) + 0.01 * np.random.randn(5)

        result = solve_position(ANCHORS_3D, distances, distance_stds=np.full(5, 0.01))

        assert result.method == "nonlinear"
        assert np.linalg.norm(result.position - true_pos) < 0.1
        assert result.covariance.shape == (3, 3)

    def test_initial_guess(self):
        true_pos = np.array([3.0, 4.0])

        result = solve_position(
            ANCHORS_2D, _ranges(ANCHORS_2D, true_pos), initial_guess=np.array([6.0, 6.0])
        )

        assert_allclose(result.position, true_pos, atol=1e-6)
