"""
Tests for the incremental estimation driver against a recording engine.
"""

import numpy as np
import pytest

from mock_engine import RecordingEngine
from vio_backend.common.config import BackendConfig, BackendModality, RegularityParams, VisionParams
from vio_backend.common.data_structures import (
    BiasEstimate, FactorRepresentation, InertialSample, PlaneRegion, Pose,
    PreintegratedSummary, TrackingStatus, VisionUpdate
)
from vio_backend.common.errors import InsufficientData, OptimizationFailed
from vio_backend.estimation.estimation_driver import IncrementalEstimationDriver
from vio_backend.estimation.factors import (
    B, L, V, X, BetweenPoseFactor, BiasPrior, ImuFactor, PosePrior, SmartStereoFactor, VelocityPrior
)
from vio_backend.estimation.online_initialization import AlignmentResult
from vio_backend.utils.math_utils import so3_exp

KEYFRAME_NS = 200_000_000
IMU_NS = 5_000_000

POINTS = {
    0: np.array([-0.5, -0.3, 5.0]),
    1: np.array([0.5, -0.3, 5.0]),
    2: np.array([0.0, 0.4, 5.0]),
    3: np.array([0.3, 0.1, 5.0]),
}


def rest_summary(driver, keyframe_id):
    """Stationary IMU summary ending at the given keyframe."""
    start, end = (keyframe_id - 1) * KEYFRAME_NS, keyframe_id * KEYFRAME_NS
    samples = [
        InertialSample(timestamp=t, acceleration=np.array([0.0, 0.0, 9.81]), angular_rate=np.zeros(3))
        for t in range(start, end + 1, IMU_NS)
    ]
    return driver.preintegration.preintegrate(start, end, samples)


def make_config(modality=BackendModality.STRUCTURELESS_AND_PROJECTION, **vision):
    return BackendConfig(
        vision=VisionParams(**vision),
        regularity=RegularityParams(modality=modality)
    )


class BiasShiftEngine(RecordingEngine):
    """Recording engine whose estimate replaces every bias."""

    def __init__(self, bias):
        super().__init__()
        self.bias = bias

    def _solve(self, batch, delete_locations, modified_locations):
        outcome = super()._solve(batch, delete_locations, modified_locations)
        for key in outcome.values:
            if key[0] == "b":
                outcome.values[key] = self.bias
        return outcome


class DriverFixture:

    def setup_method(self):
        self.engine = RecordingEngine()
        self.driver = IncrementalEstimationDriver(self.engine, make_config())

    def vision_update(self, keyframe_id, landmark_ids=(0, 1, 2, 3), status=TrackingStatus.NOMINAL,
                      relative_pose=None):
        observations = {
            landmark_id: self.driver.camera.project(POINTS[landmark_id], Pose())
            for landmark_id in landmark_ids
        }
        return VisionUpdate(
            timestamp=keyframe_id * KEYFRAME_NS,
            observations=observations,
            tracking_status=status,
            relative_pose=relative_pose
        )

    def run(self, num_keyframes, **kwargs):
        updates = []
        for _ in range(num_keyframes):
            keyframe_id = self.driver.keyframe_id
            summary = rest_summary(self.driver, keyframe_id) if keyframe_id > 0 else None
            updates.append(self.driver.step(self.vision_update(keyframe_id, **kwargs), summary=summary))
        return updates

    def factor_types(self, batch_index=-1):
        return [type(f) for f in self.engine.batches[batch_index].new_factors]


class TestDriverSteps(DriverFixture):
    """Test the factors and values each step submits."""

    def test_first_keyframe_priors(self):
        [update] = self.run(1)

        types = self.factor_types()
        assert PosePrior in types
        assert VelocityPrior in types
        assert BiasPrior in types
        assert ImuFactor not in types
        assert update.keyframe_id == 0
        assert self.driver.keyframe_id == 1

    def test_initial_state(self):
        pose = Pose(position=[1.0, 2.0, 3.0])
        bias = BiasEstimate(np.full(3, 0.01), np.full(3, 0.001))
        self.driver.initialize(pose, velocity=[0.5, 0.0, 0.0], bias=bias)

        [update] = self.run(1)

        np.testing.assert_allclose(update.pose.position, [1.0, 2.0, 3.0])
        np.testing.assert_allclose(update.velocity, [0.5, 0.0, 0.0])
        assert update.bias.equals(bias)
        with pytest.raises(RuntimeError):
            self.driver.initialize(pose)

    def test_imu_factor_links_keyframes(self):
        self.run(2)

        batch = self.engine.batches[-1]
        [imu] = [f for f in batch.new_factors if isinstance(f, ImuFactor)]
        assert imu.keys() == (X(0), V(0), X(1), V(1), B(0), B(1))
        assert PosePrior not in self.factor_types()
        np.testing.assert_allclose(batch.new_values[X(1)].position, np.zeros(3), atol=1e-9)

    def test_landmarks_enter_after_two_observations(self):
        self.run(1)
        assert SmartStereoFactor not in self.factor_types()

        self.run(1)
        assert self.factor_types().count(SmartStereoFactor) == 4
        assert self.factor_types()[0] is SmartStereoFactor

        self.run(1)
        batch = self.engine.batches[-1]
        assert len(batch.modified_slots) == 4
        assert SmartStereoFactor not in self.factor_types()

    def test_low_parallax_adds_no_motion_factors(self):
        self.run(1)
        self.run(1, status=TrackingStatus.LOW_PARALLAX)

        batch = self.engine.batches[-1]
        [velocity_prior] = [f for f in batch.new_factors if isinstance(f, VelocityPrior)]
        [between] = [f for f in batch.new_factors if isinstance(f, BetweenPoseFactor)]
        np.testing.assert_array_equal(velocity_prior.velocity, np.zeros(3))
        assert velocity_prior.frame_id == 1
        np.testing.assert_allclose(between.relative_pose.rotation, np.eye(3))
        np.testing.assert_allclose(between.relative_pose.position, np.zeros(3))

    def test_between_factor_disabled_by_default(self):
        self.run(1)
        self.run(1, relative_pose=Pose(position=[0.1, 0.0, 0.0]))
        assert BetweenPoseFactor not in self.factor_types()

    def test_between_factor_from_relative_pose(self):
        self.driver = IncrementalEstimationDriver(
            self.engine, make_config(add_between_stereo_factors=True)
        )
        self.run(1)
        self.run(1, relative_pose=Pose(position=[0.1, 0.0, 0.0]))

        [between] = [f for f in self.engine.batches[-1].new_factors if isinstance(f, BetweenPoseFactor)]
        np.testing.assert_allclose(between.relative_pose.position, [0.1, 0.0, 0.0])
        np.testing.assert_allclose(between.sigmas, [0.01] * 3 + [0.1] * 3)

    def test_failed_tracking_is_inertial_only(self):
        self.run(1)
        [update] = self.run(1, status=TrackingStatus.FAILED)

        assert len(self.driver.tracks.track(0)) == 1
        assert self.factor_types() == [ImuFactor]
        assert update.metadata["tracking_status"] == "failed"

    def test_estimate_update_contents(self):
        updates = self.run(3)

        assert [u.keyframe_id for u in updates] == [0, 1, 2]
        assert updates[-1].timestamp == 2 * KEYFRAME_NS
        assert set(updates[-1].landmark_positions) == {0, 1, 2, 3}
        np.testing.assert_allclose(updates[-1].landmark_positions[0], POINTS[0], atol=1e-6)
        assert updates[-1].metadata["num_new_factors"] == 1


class TestDriverInertial(DriverFixture):
    """Test the interaction with the preintegration manager."""

    def test_empty_summary_raises(self):
        self.run(1)
        empty = PreintegratedSummary.identity(BiasEstimate.zero(), start_ns=0)

        with pytest.raises(InsufficientData):
            self.driver.step(self.vision_update(1), summary=empty)
        assert self.driver.keyframe_id == 1
        assert len(self.driver.tracks.track(0)) == 1

    def test_uses_shared_accumulator(self):
        self.run(1)
        with pytest.raises(InsufficientData):
            self.driver.step(self.vision_update(1))

        self.driver.preintegration.extend([
            InertialSample(timestamp=t, acceleration=np.array([0.0, 0.0, 9.81]), angular_rate=np.zeros(3))
            for t in range(IMU_NS, KEYFRAME_NS + 1, IMU_NS)
        ])
        update = self.driver.step(self.vision_update(1))

        assert update.keyframe_id == 1
        [imu] = [f for f in self.engine.batches[-1].new_factors if isinstance(f, ImuFactor)]
        assert imu.summary.end_ns == KEYFRAME_NS

    def test_bias_update_and_rebase(self):
        new_bias = BiasEstimate(np.array([0.02, -0.01, 0.03]), np.array([0.001, 0.0, -0.002]))
        engine = BiasShiftEngine(new_bias)
        self.driver = IncrementalEstimationDriver(engine, make_config())

        [update] = self.run(1)

        assert update.bias.equals(new_bias)
        assert self.driver.preintegration.current_bias().equals(new_bias)
        accumulator = self.driver.preintegration.current_accumulator()
        assert accumulator.is_identity()
        assert accumulator.start_ns == 0
        assert accumulator.bias_hat.equals(new_bias)

    def extend_at_rest(self, start_ns, end_ns):
        self.driver.preintegration.extend([
            InertialSample(timestamp=t, acceleration=np.array([0.0, 0.0, 9.81]), angular_rate=np.zeros(3))
            for t in range(start_ns, end_ns + 1, IMU_NS)
        ])

    def test_accumulator_cut_at_keyframe(self):
        self.run(1)
        self.extend_at_rest(IMU_NS, KEYFRAME_NS + 50_000_000)

        self.driver.step(self.vision_update(1))

        [imu] = [f for f in self.engine.batches[-1].new_factors if isinstance(f, ImuFactor)]
        assert imu.summary.start_ns == 0
        assert imu.summary.end_ns == KEYFRAME_NS
        assert imu.summary.dt == pytest.approx(0.2)
        accumulator = self.driver.preintegration.current_accumulator()
        assert accumulator.start_ns == KEYFRAME_NS
        assert accumulator.end_ns == KEYFRAME_NS + 50_000_000
        assert accumulator.dt == pytest.approx(0.05)
        assert accumulator.num_samples == 10

    def test_readings_after_keyframe_reach_next_factor(self):
        self.run(1)
        self.extend_at_rest(IMU_NS, KEYFRAME_NS + 50_000_000)
        self.driver.step(self.vision_update(1))
        self.extend_at_rest(KEYFRAME_NS + 55_000_000, 2 * KEYFRAME_NS)

        self.driver.step(self.vision_update(2))

        [imu] = [f for f in self.engine.batches[-1].new_factors if isinstance(f, ImuFactor)]
        assert imu.summary.start_ns == KEYFRAME_NS
        assert imu.summary.end_ns == 2 * KEYFRAME_NS
        assert imu.summary.dt == pytest.approx(0.2)
        assert imu.summary.num_samples == 40
        np.testing.assert_allclose(imu.summary.delta_velocity, [0.0, 0.0, 9.81 * 0.2], atol=1e-9)

    def test_alignment_initializes_first_keyframe(self):
        world_R_b0 = so3_exp([0.1, -0.05, 0.0])
        gravity_b0 = world_R_b0.T @ np.array([0.0, 0.0, -9.7])
        result = AlignmentResult(
            gyroscope_bias=np.array([0.01, -0.02, 0.015]),
            gravity_b0=gravity_b0,
            world_R_b0=world_R_b0,
            poses=[Pose(), Pose(position=[1.0, 0.0, 0.0])],
            velocities=[np.zeros(3), np.array([0.5, 0.0, 0.0])]
        )
        accelerometer_bias = self.driver.preintegration.current_bias().accelerometer.copy()

        self.driver.initialize_from_alignment(result)
        [update] = self.run(1)

        np.testing.assert_allclose(update.pose.position, [1.0, 0.0, 0.0])
        np.testing.assert_allclose(update.velocity, [0.5, 0.0, 0.0])
        np.testing.assert_allclose(update.bias.gyroscope, [0.01, -0.02, 0.015])
        np.testing.assert_allclose(update.bias.accelerometer, accelerometer_bias)
        np.testing.assert_allclose(self.driver.preintegration.gravity, [0.0, 0.0, -9.7], atol=1e-12)

    def test_alignment_after_first_keyframe_rejected(self):
        self.run(1)
        result = AlignmentResult(
            gyroscope_bias=np.zeros(3),
            gravity_b0=np.array([0.0, 0.0, -9.0]),
            world_R_b0=np.eye(3),
            poses=[Pose()],
            velocities=[np.zeros(3)]
        )
        with pytest.raises(RuntimeError):
            self.driver.initialize_from_alignment(result)
        np.testing.assert_allclose(self.driver.preintegration.gravity, [0.0, 0.0, -9.81])


class TestDriverAtomicity(DriverFixture):
    """A rejected step changes nothing."""

    def test_engine_failure_rolls_back(self):
        self.run(2)
        tracks_before = {lmk: self.driver.tracks.track(lmk).frame_ids() for lmk in POINTS}
        smart_before = self.driver.lifecycle.factors_for_landmark(0)[0]
        accumulator_before = self.driver.preintegration.current_accumulator()
        bias_before = self.driver.preintegration.current_bias()
        num_batches = len(self.engine.batches)

        self.engine.fail_next = True
        with pytest.raises(OptimizationFailed):
            self.run(1)

        assert self.driver.keyframe_id == 2
        assert len(self.engine.batches) == num_batches
        assert {lmk: self.driver.tracks.track(lmk).frame_ids() for lmk in POINTS} == tracks_before
        [smart] = self.driver.lifecycle.factors_for_landmark(0)
        assert smart.factor_id == smart_before.factor_id
        assert sorted(smart.measurements) == [0, 1]
        assert self.driver.lifecycle.factor_slot(smart) is not None
        assert self.driver.preintegration.current_accumulator() is accumulator_before
        assert self.driver.preintegration.current_bias().equals(bias_before)

        [update] = self.run(1)
        assert update.keyframe_id == 2
        assert len(self.engine.batches[-1].modified_slots) == 4

    def test_non_finite_estimate_rolls_back(self):
        self.run(1)
        self.engine.return_nan = True
        with pytest.raises(OptimizationFailed):
            self.run(1)

        assert self.driver.keyframe_id == 1
        assert self.driver.lifecycle.active_landmark_ids() == []
        assert len(self.driver.tracks.track(0)) == 1

    def test_retry_after_rejection(self):
        self.run(1)
        self.engine.return_nan = True
        with pytest.raises(OptimizationFailed):
            self.run(1)
        assert self.engine.discarded == 1

        [update] = self.run(1)

        assert update.keyframe_id == 1
        assert self.factor_types().count(SmartStereoFactor) == 4
        assert set(self.engine.values) == set(self.engine.batches[0].new_values) | set(self.engine.batches[1].new_values)
        assert len(self.engine.factors) == len(self.engine.batches[0].new_factors) + len(self.engine.batches[1].new_factors)

    def test_rejection_keeps_readings_for_retry(self):
        self.run(1)
        self.driver.preintegration.extend([
            InertialSample(timestamp=t, acceleration=np.array([0.0, 0.0, 9.81]), angular_rate=np.zeros(3))
            for t in range(IMU_NS, KEYFRAME_NS + 50_000_000 + 1, IMU_NS)
        ])
        accumulator_before = self.driver.preintegration.current_accumulator()

        self.engine.fail_next = True
        with pytest.raises(OptimizationFailed):
            self.driver.step(self.vision_update(1))
        assert self.driver.preintegration.current_accumulator() is accumulator_before

        self.driver.step(self.vision_update(1))
        [imu] = [f for f in self.engine.batches[-1].new_factors if isinstance(f, ImuFactor)]
        assert imu.summary.end_ns == KEYFRAME_NS
        assert self.driver.preintegration.current_accumulator().start_ns == KEYFRAME_NS

    def test_concurrent_step_rejected(self):
        self.driver._step_lock.acquire()
        try:
            with pytest.raises(RuntimeError):
                self.driver.step(self.vision_update(0))
        finally:
            self.driver._step_lock.release()
        assert self.driver.keyframe_id == 0


class TestDriverModalities(DriverFixture):
    """Test modality-dependent landmark handling."""

    def test_projection_promotes_landmarks(self):
        self.driver = IncrementalEstimationDriver(
            self.engine, make_config(modality=BackendModality.PROJECTION)
        )
        updates = self.run(3)

        for landmark_id in POINTS:
            assert self.driver.lifecycle.representation(landmark_id) == FactorRepresentation.STRUCTURED
        batch = self.engine.batches[-1]
        assert L(0) in batch.new_values
        np.testing.assert_allclose(updates[-1].landmark_positions[1], POINTS[1], atol=1e-6)

    def test_structureless_never_promotes(self):
        self.run(4)
        for landmark_id in POINTS:
            assert self.driver.lifecycle.representation(landmark_id) == FactorRepresentation.UNSTRUCTURED

    def test_regularity_modality_attaches_plane(self):
        self.driver = IncrementalEstimationDriver(
            self.engine, make_config(modality=BackendModality.STRUCTURELESS_PROJECTION_AND_REGULARITY)
        )
        wall = PlaneRegion(plane_id=0, normal=[0.0, 0.0, 1.0], distance=5.0, landmark_ids=set(POINTS))

        self.run(2)
        update = self.driver.step(self.vision_update(2), plane_regions=[wall], summary=rest_summary(self.driver, 2))

        assert len(update.planes) == 1
        assert update.planes[0].landmark_ids == set(POINTS)
        for landmark_id in POINTS:
            assert self.driver.lifecycle.plane_of(landmark_id) == 0
