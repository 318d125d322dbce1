"""
Unit tests for core data structures.
"""

import numpy as np
import pytest

from vio_backend.common.data_structures import (
    BiasEstimate,
    EstimateUpdate,
    FeatureTrack,
    PlaneRegion,
    Pose,
    PreintegratedSummary,
    StereoObservation
)
from vio_backend.utils.math_utils import so3_exp


class TestBiasEstimate:
    """Test bias vectors."""

    def test_zero(self):
        bias = BiasEstimate.zero()
        np.testing.assert_array_equal(bias.as_vector(), np.zeros(6))

    def test_vector_round_trip(self):
        vector = np.array([0.1, 0.2, 0.3, 0.01, 0.02, 0.03])
        bias = BiasEstimate.from_vector(vector)
        np.testing.assert_allclose(bias.accelerometer, [0.1, 0.2, 0.3])
        np.testing.assert_allclose(bias.as_vector(), vector)

    def test_difference(self):
        a = BiasEstimate(np.ones(3), np.full(3, 0.5))
        delta = a - BiasEstimate.zero()
        assert delta.equals(a)

    def test_immutable(self):
        bias = BiasEstimate.zero()
        with pytest.raises(ValueError):
            bias.gyroscope[0] = 1.0


class TestPreintegratedSummary:
    """Test summary construction and bias correction."""

    def test_identity(self):
        bias = BiasEstimate(np.full(3, 0.1), np.zeros(3))
        summary = PreintegratedSummary.identity(bias, start_ns=500)

        assert summary.is_identity()
        assert summary.start_ns == summary.end_ns == 500
        assert summary.dt == 0.0
        assert summary.num_samples == 0
        assert summary.covariance.shape == (9, 9)
        assert summary.bias_jacobian.shape == (9, 6)

    def test_correction_with_same_bias(self):
        summary = PreintegratedSummary.identity(BiasEstimate.zero())
        rotation, velocity, position = summary.corrected(BiasEstimate.zero())
        np.testing.assert_allclose(rotation, np.eye(3))
        np.testing.assert_allclose(velocity, np.zeros(3))
        np.testing.assert_allclose(position, np.zeros(3))


class TestPose:
    """Test rigid transformations."""

    def test_defaults(self):
        pose = Pose()
        np.testing.assert_array_equal(pose.to_matrix(), np.eye(4))

    def test_inverse(self):
        pose = Pose(rotation=so3_exp([0.1, 0.2, -0.3]), position=[1.0, -2.0, 0.5])
        identity = pose.compose(pose.inverse())
        np.testing.assert_allclose(identity.to_matrix(), np.eye(4), atol=1e-12)

    def test_between(self):
        a = Pose(rotation=so3_exp([0.0, 0.0, 0.5]), position=[1.0, 0.0, 0.0])
        b = Pose(rotation=so3_exp([0.0, 0.0, 0.7]), position=[1.0, 1.0, 0.0])
        np.testing.assert_allclose(a.compose(a.between(b)).to_matrix(), b.to_matrix(), atol=1e-12)

    def test_matrix_round_trip(self):
        pose = Pose(rotation=so3_exp([0.3, 0.0, 0.0]), position=[0.0, 1.0, 2.0])
        restored = Pose.from_matrix(pose.to_matrix())
        np.testing.assert_allclose(restored.rotation, pose.rotation)
        np.testing.assert_allclose(restored.position, pose.position)

    def test_invalid_position(self):
        with pytest.raises(ValueError):
            Pose(position=[1.0, 2.0])


class TestPlaneRegion:
    """Test plane normalization."""

    def test_normalizes(self):
        plane = PlaneRegion(plane_id=1, normal=[0.0, 0.0, 2.0], distance=10.0, landmark_ids=[1, 2])
        np.testing.assert_allclose(plane.normal, [0.0, 0.0, 1.0])
        assert plane.distance == pytest.approx(5.0)
        assert plane.landmark_ids == {1, 2}

    def test_point_distance(self):
        plane = PlaneRegion(plane_id=1, normal=[1.0, 0.0, 0.0], distance=5.0)
        assert plane.point_distance([5.5, 3.0, -1.0]) == pytest.approx(0.5)

    def test_zero_normal(self):
        with pytest.raises(ValueError):
            PlaneRegion(plane_id=1, normal=[0.0, 0.0, 0.0], distance=1.0)


class TestEstimateUpdate:
    """Test serialization of step results."""

    def test_to_dict(self):
        update = EstimateUpdate(
            keyframe_id=3,
            timestamp=600,
            pose=Pose(position=[1.0, 0.0, 0.0]),
            velocity=np.zeros(3),
            bias=BiasEstimate.zero(),
            landmark_positions={7: np.array([1.0, 2.0, 3.0])},
            planes=[PlaneRegion(plane_id=0, normal=[0.0, 1.0, 0.0], distance=2.0)]
        )
        data = update.to_dict()

        assert data["keyframe_id"] == 3
        assert data["timestamp"] == 600
        assert data["pose"]["position"] == [1.0, 0.0, 0.0]
        assert len(data["planes"]) == 1


class TestFeatureTrack:
    """Test track helpers."""

    def test_empty_track(self):
        track = FeatureTrack(landmark_id=1)
        assert len(track) == 0
        assert track.last_frame_id() is None
        assert track.num_valid_stereo() == 0

    def test_last_frame(self):
        track = FeatureTrack(landmark_id=1, observations=[(2, StereoObservation(10.0, 5.0, 3.0))])
        assert track.last_frame_id() == 2
        assert track.frame_ids() == [2]
