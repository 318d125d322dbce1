"""
Tests for visual-inertial alignment on the synthetic wall scenario.
"""

import dataclasses

import numpy as np
import pytest

from vio_backend.common.config import ImuParams, InitializationParams
from vio_backend.common.data_structures import BiasEstimate, InertialSample, Pose, PreintegratedSummary
from vio_backend.common.errors import InitializationFailed
from vio_backend.estimation.imu_preintegration import PreintegrationManager
from vio_backend.estimation.inertial_buffer import InertialBuffer
from vio_backend.estimation.online_initialization import (
    OnlineGravityAlignment, OnlineInitializer, rotation_between
)
from vio_backend.simulation.synthetic import SyntheticScenarioConfig, SyntheticScenarioGenerator

GYROSCOPE_BIAS = np.array([0.01, -0.02, 0.015])


def collect(frames, samples, num_keyframes=5, params=None, refiner=None):
    """Feed the first keyframes and their zero-bias summaries to an initializer."""
    manager = PreintegrationManager(ImuParams())
    buffer = InertialBuffer()
    buffer.extend(samples)
    initializer = OnlineInitializer(
        params or InitializationParams(num_alignment_keyframes=num_keyframes), ImuParams(), refiner
    )
    previous = None
    for vision_update in frames[:num_keyframes]:
        summary = None
        if previous is not None:
            summary = manager.preintegrate_from_buffer(buffer, previous, vision_update.timestamp)
        initializer.add_keyframe(vision_update, summary)
        previous = vision_update.timestamp
    return initializer


class TruthRefiner:
    """Pose refiner that answers with the ground truth relative to the first pose."""

    def __init__(self, truth):
        self.truth = truth
        self.calls = []

    def refine(self, poses, frames):
        self.calls.append((list(poses), list(frames)))
        return [self.truth[0].between(p) for p in self.truth[:len(poses)]]


@pytest.fixture(scope="module")
def scenario():
    return SyntheticScenarioGenerator(
        SyntheticScenarioConfig(duration=1.0, gyroscope_bias=tuple(GYROSCOPE_BIAS))
    ).generate()


class TestAlignment:
    """Alignment recovers the gyroscope bias, gravity and velocities."""

    def test_recovers_gyroscope_bias(self, scenario):
        result = collect(scenario.keyframes, scenario.imu_samples).initialize()
        np.testing.assert_allclose(result.gyroscope_bias, GYROSCOPE_BIAS, atol=1e-5)

    def test_recovers_gravity(self, scenario):
        result = collect(scenario.keyframes, scenario.imu_samples).initialize()

        assert np.linalg.norm(result.gravity_b0) == pytest.approx(9.81)
        np.testing.assert_allclose(result.gravity_b0 / 9.81, [0.0, 0.0, -1.0], atol=1e-2)
        np.testing.assert_allclose(result.gravity, [0.0, 0.0, -9.81], atol=1e-6)
        np.testing.assert_allclose(result.world_R_b0, np.eye(3), atol=1e-2)

    def test_state_at_latest_keyframe(self, scenario):
        result = collect(scenario.keyframes, scenario.imu_samples).initialize()

        assert len(result.poses) == 5
        np.testing.assert_allclose(result.pose.position, scenario.ground_truth_poses[4].position, atol=1e-2)
        np.testing.assert_allclose(result.velocity, scenario.ground_truth_velocities[4], atol=0.05)
        for velocity, expected in zip(result.velocities, scenario.ground_truth_velocities):
            np.testing.assert_allclose(velocity, expected, atol=0.05)

    def test_unrefined_gravity_close_to_nominal(self, scenario):
        params = InitializationParams(num_alignment_keyframes=5, gravity_refinement_iterations=0)
        result = collect(scenario.keyframes, scenario.imu_samples, params=params).initialize()
        assert np.linalg.norm(result.gravity_b0) == pytest.approx(9.81, abs=0.1)

    def test_inconsistent_gravity_rejected(self, scenario):
        doubled = [
            InertialSample(timestamp=s.timestamp, acceleration=2.0 * s.acceleration, angular_rate=s.angular_rate)
            for s in scenario.imu_samples
        ]
        initializer = collect(scenario.keyframes, doubled)
        with pytest.raises(InitializationFailed):
            initializer.initialize()

    def test_summary_count_must_match(self):
        with pytest.raises(ValueError):
            OnlineGravityAlignment([Pose(), Pose()], [], gravity=[0.0, 0.0, -9.81])


class TestOnlineInitializer:
    """Test keyframe collection and preconditions."""

    def test_ready(self, scenario):
        params = InitializationParams(num_alignment_keyframes=5)
        initializer = collect(scenario.keyframes, scenario.imu_samples, num_keyframes=4, params=params)
        assert len(initializer) == 4
        assert not initializer.ready
        initializer = collect(scenario.keyframes, scenario.imu_samples, num_keyframes=5, params=params)
        assert initializer.ready

        initializer.reset()
        assert len(initializer) == 0

    def test_too_few_keyframes(self, scenario):
        initializer = collect(scenario.keyframes, scenario.imu_samples, num_keyframes=2)
        with pytest.raises(InitializationFailed):
            initializer.initialize()

    def test_summary_required_after_first_keyframe(self, scenario):
        initializer = OnlineInitializer()
        initializer.add_keyframe(scenario.keyframes[0])
        with pytest.raises(ValueError):
            initializer.add_keyframe(scenario.keyframes[1])
        assert len(initializer) == 1

    def test_no_motion_data_rejected(self, scenario):
        initializer = OnlineInitializer()
        initializer.add_keyframe(scenario.keyframes[0])
        for frame in scenario.keyframes[1:3]:
            initializer.add_keyframe(frame, PreintegratedSummary.identity(BiasEstimate.zero(), start_ns=frame.timestamp))
        with pytest.raises(InitializationFailed):
            initializer.initialize()

    def test_missing_relative_pose_without_refiner(self, scenario):
        frames = list(scenario.keyframes)
        frames[2] = dataclasses.replace(frames[2], relative_pose=None)
        initializer = collect(frames, scenario.imu_samples)
        with pytest.raises(InitializationFailed):
            initializer.initialize()

    def test_refiner_fills_missing_relative_pose(self, scenario):
        frames = list(scenario.keyframes)
        frames[2] = dataclasses.replace(frames[2], relative_pose=None)
        refiner = TruthRefiner(scenario.ground_truth_poses)

        result = collect(frames, scenario.imu_samples, refiner=refiner).initialize()

        [(poses, refined_frames)] = refiner.calls
        assert len(poses) == 5
        assert refined_frames[2] is frames[2]
        # The keyframe without a relative pose starts where the previous one ended
        np.testing.assert_allclose(poses[2].position, poses[1].position)
        np.testing.assert_allclose(result.gyroscope_bias, GYROSCOPE_BIAS, atol=1e-5)


class TestRotationBetween:

    def test_maps_direction(self):
        a = np.array([1.0, 0.0, 0.0])
        b = np.array([0.0, 2.0, 0.0])
        R = rotation_between(a, b)
        np.testing.assert_allclose(R @ a, [0.0, 1.0, 0.0], atol=1e-12)
        np.testing.assert_allclose(R @ [0.0, 0.0, 1.0], [0.0, 0.0, 1.0], atol=1e-12)

    def test_same_direction(self):
        np.testing.assert_array_equal(rotation_between(np.array([0.0, 0.0, -9.7]), np.array([0.0, 0.0, -9.81])), np.eye(3))

    def test_opposite_directions(self):
        a = np.array([0.0, 0.0, 1.0])
        R = rotation_between(a, -a)
        np.testing.assert_allclose(R @ a, -a, atol=1e-12)
        np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-12)
        assert np.linalg.det(R) == pytest.approx(1.0)
