"""
Robust Radio-Source Estimation Example.

This script demonstrates locating a Wi-Fi access point from readings taken
at known receiver positions, with the MSAC robust estimator rejecting
corrupted readings.

Demonstrates:
    - Ranging-only location with a gross ranging outlier
    - Joint position + transmitted power estimation from ranging and RSSI
    - Joint position + power + path-loss exponent estimation
    - Refinement covariance and inlier classification
"""

import logging

import matplotlib.pyplot as plt
import numpy as np

from radiosource import RadioSource, Reading
from radiosource.locate import MSACRobustRadioSourceEstimator
from radiosource.rf import rss_pathloss

ACCESS_POINT = RadioSource("00:11:22:33:44:55", 2.4e9)


def simulate_readings(receivers, true_pos, power_dbm, path_loss_exponent,
                      distance_std=0.1, rssi_std=1.0, with_rssi=True, seed=0):
    """Noisy ranging (+ RSSI) readings of the access point."""
    rng = np.random.default_rng(seed)
    readings = []
    for receiver in receivers:
        d = np.linalg.norm(receiver - true_pos)
        rssi = None
        if with_rssi:
            rssi = rss_pathloss(power_dbm, d, ACCESS_POINT.frequency, path_loss_exponent)
            rssi += rssi_std * rng.standard_normal()
        readings.append(
            Reading(
                ACCESS_POINT,
                receiver,
                distance=max(d + distance_std * rng.standard_normal(), 0.0),
                distance_std=distance_std,
                rssi=rssi,
                rssi_std=rssi_std if with_rssi else None,
            )
        )
    return readings


def corrupt(readings, indices, distance_error=0.0, rssi_error=0.0):
    """Add gross errors to selected readings."""
    readings = list(readings)
    for i in indices:
        r = readings[i]
        readings[i] = Reading(
            r.source,
            r.position,
            distance=r.distance + distance_error,
            distance_std=r.distance_std,
            rssi=None if r.rssi is None else r.rssi + rssi_error,
            rssi_std=r.rssi_std,
        )
    return readings


def example_ranging_outlier():
    """Example 1: Ranging-only location with one inflated distance."""
    print("=" * 70)
    print("Example 1: Ranging-Only Location with a Gross Outlier")
    print("=" * 70)

    receivers = np.array(
        [[0, 0], [10, 0], [0, 10], [10, 10], [5, -5], [-5, 5]], dtype=float
    )
    true_pos = np.array([3.0, 4.0])

    # Noise-free distances, one inflated 10x
    readings = [
        Reading(ACCESS_POINT, receiver, distance=np.linalg.norm(receiver - true_pos))
        for receiver in receivers
    ]
    readings[2] = Reading(ACCESS_POINT, readings[2].position,
                          distance=10.0 * readings[2].distance)

    estimator = MSACRobustRadioSourceEstimator(
        readings,
        threshold=0.5,
        confidence=0.99,
        max_iterations=1000,
        estimate_power=False,
        seed=42,
    )
    estimator.estimate()

    error = np.linalg.norm(estimator.estimated_position - true_pos)
    print(f"\nTrue position: {true_pos}")
    print(f"Estimated position: {estimator.estimated_position}")
    print(f"Position error: {error:.2e} m")
    print(f"Inliers: {estimator.inliers_data.inliers.astype(int)}")
    print(f"Iterations: {estimator.iterations}")

    return receivers, true_pos, estimator


def example_power_estimation():
    """Example 2: Position + transmitted power from ranging and RSSI."""
    print("\n" + "=" * 70)
    print("Example 2: Position and Transmitted Power (Ranging + RSSI)")
    print("=" * 70)

    rng = np.random.default_rng(1)
    receivers = rng.uniform(-15.0, 15.0, size=(20, 2))
    true_pos = np.array([2.0, -1.0])
    true_power = -5.0

    readings = simulate_readings(receivers, true_pos, true_power, 2.0, seed=2)
    readings = corrupt(readings, [3, 11], distance_error=8.0)
    readings = corrupt(readings, [7], rssi_error=-25.0)

    estimator = MSACRobustRadioSourceEstimator(readings, threshold=3.0, seed=0)
    estimator.estimate()

    print(f"\nTrue position: {true_pos}, true power: {true_power:.1f} dBm")
    print(f"Estimated position: {estimator.estimated_position}")
    print(f"Estimated power: {estimator.estimated_power_dbm:.2f} dBm "
          f"({estimator.estimated_power:.3f} mW)")
    print(f"Power std: {np.sqrt(estimator.power_variance):.3f} dB")
    print(f"Outliers: {np.flatnonzero(~estimator.inliers_data.inliers)}")

    return receivers, true_pos, estimator


def example_exponent_estimation():
    """Example 3: Position + power + path-loss exponent in 3D."""
    print("\n" + "=" * 70)
    print("Example 3: Position, Power and Path-Loss Exponent (3D)")
    print("=" * 70)

    rng = np.random.default_rng(3)
    receivers = rng.uniform(-20.0, 20.0, size=(30, 3))
    true_pos = np.array([1.0, 2.0, 3.0])
    true_power, true_exponent = -8.0, 2.7

    readings = simulate_readings(receivers, true_pos, true_power, true_exponent,
                                 rssi_std=0.5, seed=4)
    readings = corrupt(readings, [0, 5, 9], distance_error=6.0)

    estimator = MSACRobustRadioSourceEstimator(
        readings, threshold=3.0, estimate_exponent=True, seed=0
    )
    estimator.estimate()
    located = estimator.estimated_radio_source

    print(f"\nTrue: position={true_pos}, power={true_power:.1f} dBm, n={true_exponent:.2f}")
    print(f"Estimated: position={np.round(located.position, 3)}, "
          f"power={located.power_dbm:.2f} dBm, n={located.path_loss_exponent:.3f}")
    print(f"Position std: {np.sqrt(np.diag(located.position_covariance))}")
    print(f"Power std: {located.power_std:.3f} dB, exponent std: {located.path_loss_exponent_std:.4f}")
    print(f"Inliers: {estimator.inliers_data.num_inliers}/{len(readings)}")


def plot_radio_source(receivers, true_pos, estimator, title):
    """Plot receivers (inliers/outliers), true and estimated emitter position."""
    plt.figure(figsize=(8, 8))

    inliers = estimator.inliers_data.inliers
    plt.scatter(receivers[inliers, 0], receivers[inliers, 1], s=120, c="tab:blue",
                marker="^", label="Inlier receivers", zorder=3)
    plt.scatter(receivers[~inliers, 0], receivers[~inliers, 1], s=120, c="tab:red",
                marker="x", label="Outlier receivers", zorder=3)
    plt.scatter(*true_pos, s=200, c="green", marker="*", label="True emitter", zorder=4)
    plt.scatter(*estimator.estimated_position, s=120, c="orange", marker="o",
                edgecolors="black", label="Estimated emitter", zorder=5)

    for reading, ok in zip(estimator.readings, inliers):
        circle = plt.Circle(reading.position, reading.distance, fill=False,
                            linestyle="--", alpha=0.3, color="tab:blue" if ok else "tab:red")
        plt.gca().add_patch(circle)

    plt.grid(True, alpha=0.3)
    plt.axis("equal")
    plt.xlabel("East (m)", fontsize=12)
    plt.ylabel("North (m)", fontsize=12)
    plt.title(title, fontsize=14, fontweight="bold")
    plt.legend(loc="best")

    plt.tight_layout()
    return plt.gcf()


def main():
    """Run all robust radio-source examples."""
    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s: %(message)s")

    print("\n" + "=" * 70)
    print("Robust Radio-Source Estimation Examples")
    print("=" * 70)

    receivers1, true_pos1, estimator1 = example_ranging_outlier()
    receivers2, true_pos2, estimator2 = example_power_estimation()
    example_exponent_estimation()

    print("\n" + "=" * 70)
    print("Generating visualization...")
    print("=" * 70)

    plot_radio_source(receivers1, true_pos1, estimator1, "MSAC Ranging-Only Location")
    plt.savefig("examples/msac_ranging_outlier.png", dpi=150, bbox_inches="tight")
    plot_radio_source(receivers2, true_pos2, estimator2, "MSAC Position + Power")
    plt.savefig("examples/msac_power_estimation.png", dpi=150, bbox_inches="tight")
    print("\nFigures saved: msac_ranging_outlier.png, msac_power_estimation.png")

    plt.show()

    print("\n" + "=" * 70)
    print("Examples completed successfully!")
    print("=" * 70)


if __name__ == "__main__":
    main()
