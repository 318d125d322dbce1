"""
Rectified stereo camera geometry: projection and multi-view triangulation.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from vio_backend.common.config import StereoCameraParams
from vio_backend.common.data_structures import LandmarkId, Pose, StereoObservation
from vio_backend.common.errors import DegenerateLandmark
from vio_backend.utils.math_utils import quaternion_to_rotation_matrix

logger = logging.getLogger(__name__)


class StereoCamera:
    """
    Rectified stereo pair. The left camera is the reference and the right
    camera sits ``baseline`` meters along the left camera's x axis.

    Attributes:
        K: 3x3 intrinsic matrix shared by both cameras
        baseline: Stereo baseline in meters
        body_T_cam: Pose of the left camera in the body frame
    """

    def __init__(self, params: Optional[StereoCameraParams] = None):
        params = params or StereoCameraParams()
        self.params = params
        self.fx, self.fy = params.fx, params.fy
        self.cx, self.cy = params.cx, params.cy
        self.baseline = params.baseline
        self.K = np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0]
        ])
        self.K_inv = np.linalg.inv(self.K)
        self.body_T_cam = Pose(
            rotation=quaternion_to_rotation_matrix(params.quaternion),
            position=np.array(params.translation, dtype=float)
        )

    def camera_pose(self, world_T_body: Pose) -> Pose:
        """World pose of the left camera."""
        return world_T_body.compose(self.body_T_cam)

    def project(self, point_world: np.ndarray, world_T_body: Pose) -> Optional[StereoObservation]:
        """
        Project a world point into both cameras.

        Returns:
            Observation, or None if the point is behind the camera
        """
        cam_T_world = self.camera_pose(world_T_body).inverse()
        p = cam_T_world.transform_point(point_world)
        if p[2] <= 1e-6:
            return None
        u_left = self.fx * p[0] / p[2] + self.cx
        u_right = self.fx * (p[0] - self.baseline) / p[2] + self.cx
        v = self.fy * p[1] / p[2] + self.cy
        return StereoObservation(u_left=u_left, u_right=u_right, v=v)

    def back_project(self, observation: StereoObservation) -> Optional[np.ndarray]:
        """Point in the left camera frame from disparity, or None without stereo."""
        if not observation.has_valid_stereo:
            return None
        depth = self.fx * self.baseline / observation.disparity
        ray = self.K_inv @ np.array([observation.u_left, observation.v, 1.0])
        return ray * depth

    def rays(
        self,
        observation: StereoObservation,
        world_T_body: Pose
    ) -> List[Tuple[np.ndarray, np.ndarray]]:
        """
        World-frame (origin, unit direction) of each ray through the observation.

        The right ray is only included for a valid stereo match.
        """
        world_T_cam = self.camera_pose(world_T_body)
        R = world_T_cam.rotation
        origin = world_T_cam.position

        direction = R @ (self.K_inv @ np.array([observation.u_left, observation.v, 1.0]))
        rays = [(origin, direction / np.linalg.norm(direction))]

        if observation.has_valid_stereo:
            right_origin = origin + R @ np.array([self.baseline, 0.0, 0.0])
            right_direction = R @ (self.K_inv @ np.array([observation.u_right, observation.v, 1.0]))
            rays.append((right_origin, right_direction / np.linalg.norm(right_direction)))
        return rays

    def triangulate(
        self,
        landmark_id: LandmarkId,
        views: Sequence[Tuple[Pose, StereoObservation]],
        rank_tolerance: float = 1e-5,
        max_distance: float = float("inf")
    ) -> np.ndarray:
        """
        Least-squares intersection of all rays of a landmark.

        Args:
            landmark_id: Landmark being triangulated (for error reporting)
            views: (world_T_body, observation) pairs
            rank_tolerance: Minimum ratio of smallest to largest eigenvalue
                of the normal matrix
            max_distance: Maximum distance from the most recent camera

        Returns:
            World-frame point

        Raises:
            DegenerateLandmark: Ill-conditioned rays, a point behind a camera
                or a point beyond ``max_distance``.
        """
        if not views:
            raise DegenerateLandmark(landmark_id, "no views")

        A = np.zeros((3, 3))
        b = np.zeros(3)
        for world_T_body, observation in views:
            for origin, direction in self.rays(observation, world_T_body):
                M = np.eye(3) - np.outer(direction, direction)
                A += M
                b += M @ origin

        eigenvalues = np.linalg.eigvalsh(A)
        condition = eigenvalues[0] / eigenvalues[-1] if eigenvalues[-1] > 0 else 0.0
        if condition < rank_tolerance:
            raise DegenerateLandmark(
                landmark_id, f"ill-conditioned triangulation (ratio {condition:.2e})"
            )

        point = np.linalg.solve(A, b)

        for world_T_body, _ in views:
            p_cam = self.camera_pose(world_T_body).inverse().transform_point(point)
            if p_cam[2] <= 0:
                raise DegenerateLandmark(landmark_id, "point behind camera")

        latest_camera = self.camera_pose(views[-1][0])
        distance = float(np.linalg.norm(point - latest_camera.position))
        if distance > max_distance:
            raise DegenerateLandmark(
                landmark_id, f"point too far ({distance:.1f} m > {max_distance:.1f} m)"
            )

        logger.debug(
            f"Triangulated landmark {landmark_id} from {len(views)} views at "
            f"{distance:.2f} m (ratio {condition:.2e})"
        )
        return point
