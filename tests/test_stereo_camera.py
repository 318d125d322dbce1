"""
Unit tests for stereo projection and triangulation.
"""

import numpy as np
import pytest

from vio_backend.common.config import StereoCameraParams
from vio_backend.common.data_structures import Pose, StereoObservation
from vio_backend.common.errors import DegenerateLandmark
from vio_backend.estimation.stereo_camera import StereoCamera
from vio_backend.utils.math_utils import so3_exp


@pytest.fixture
def camera():
    """Stereo camera looking along the body z axis."""
    return StereoCamera(StereoCameraParams(fx=500.0, fy=500.0, cx=320.0, cy=240.0, baseline=0.1))


@pytest.fixture
def forward_camera():
    """Stereo camera looking along the body x axis."""
    return StereoCamera(StereoCameraParams(quaternion=[0.5, -0.5, 0.5, -0.5]))


class TestStereoProjection:
    """Test stereo camera projection."""

    def test_project_point_in_front(self, camera):
        observation = camera.project(np.array([0.0, 0.0, 5.0]), Pose())

        assert observation.u_left == pytest.approx(320.0)
        assert observation.v == pytest.approx(240.0)
        assert observation.disparity == pytest.approx(0.1 * 500.0 / 5.0)
        assert observation.has_valid_stereo

    def test_project_behind_camera(self, camera):
        assert camera.project(np.array([0.0, 0.0, -5.0]), Pose()) is None

    def test_project_with_body_pose(self, camera):
        pose = Pose(position=[1.0, 0.0, 0.0])
        observation = camera.project(np.array([1.0, 0.0, 5.0]), pose)
        assert observation.u_left == pytest.approx(320.0)

    def test_forward_looking_mount(self, forward_camera):
        observation = forward_camera.project(np.array([5.0, 0.0, 0.0]), Pose())
        assert observation is not None
        assert observation.u_left == pytest.approx(forward_camera.cx)
        assert observation.v == pytest.approx(forward_camera.cy)

    def test_back_project(self, camera):
        point = np.array([0.4, -0.2, 4.0])
        observation = camera.project(point, Pose())
        np.testing.assert_allclose(camera.back_project(observation), point, atol=1e-9)

    def test_back_project_mono(self, camera):
        assert camera.back_project(StereoObservation.mono(320.0, 240.0)) is None

    def test_rays(self, camera):
        observation = camera.project(np.array([0.0, 0.0, 5.0]), Pose())
        rays = camera.rays(observation, Pose())
        assert len(rays) == 2
        np.testing.assert_allclose(rays[1][0], [0.1, 0.0, 0.0])

        mono = StereoObservation.mono(observation.u_left, observation.v)
        assert len(camera.rays(mono, Pose())) == 1


class TestStereoTriangulation:
    """Test multi-view triangulation."""

    def test_single_stereo_view(self, camera):
        point = np.array([0.3, 0.2, 4.0])
        views = [(Pose(), camera.project(point, Pose()))]
        np.testing.assert_allclose(camera.triangulate(0, views), point, atol=1e-6)

    def test_multiple_views_with_rotation(self, camera):
        point = np.array([0.5, -0.4, 6.0])
        poses = [
            Pose(),
            Pose(rotation=so3_exp([0.0, 0.05, 0.0]), position=[0.5, 0.0, 0.0]),
            Pose(rotation=so3_exp([0.02, -0.05, 0.0]), position=[1.0, 0.1, 0.2]),
        ]
        views = [(pose, camera.project(point, pose)) for pose in poses]
        np.testing.assert_allclose(camera.triangulate(0, views), point, atol=1e-6)

    def test_mono_views_with_parallax(self, camera):
        point = np.array([0.0, 0.0, 5.0])
        poses = [Pose(position=[x, 0.0, 0.0]) for x in (-1.0, 0.0, 1.0)]
        views = []
        for pose in poses:
            observation = camera.project(point, pose)
            views.append((pose, StereoObservation.mono(observation.u_left, observation.v)))
        np.testing.assert_allclose(camera.triangulate(0, views), point, atol=1e-6)

    def test_no_views(self, camera):
        with pytest.raises(DegenerateLandmark):
            camera.triangulate(3, [])

    def test_single_mono_view_is_degenerate(self, camera):
        observation = camera.project(np.array([0.0, 0.0, 5.0]), Pose())
        views = [(Pose(), StereoObservation.mono(observation.u_left, observation.v))]
        with pytest.raises(DegenerateLandmark) as exc_info:
            camera.triangulate(3, views)
        assert exc_info.value.landmark_id == 3

    def test_point_too_far(self, camera):
        point = np.array([0.0, 0.0, 4.0])
        views = [(Pose(), camera.project(point, Pose()))]
        with pytest.raises(DegenerateLandmark):
            camera.triangulate(0, views, max_distance=2.0)

    def test_point_behind_camera(self, camera):
        """Diverging mono rays only meet behind the cameras."""
        views = [
            (Pose(position=[-1.0, 0.0, 0.0]), StereoObservation.mono(220.0, 240.0)),
            (Pose(position=[1.0, 0.0, 0.0]), StereoObservation.mono(420.0, 240.0)),
        ]
        with pytest.raises(DegenerateLandmark):
            camera.triangulate(0, views)

    def test_negative_disparity_gives_single_ray(self, camera):
        views = [(Pose(), StereoObservation(u_left=310.0, u_right=320.0, v=240.0))]
        with pytest.raises(DegenerateLandmark):
            camera.triangulate(0, views)
