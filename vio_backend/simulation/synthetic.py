"""
Synthetic stereo-inertial scenario for demos and end-to-end tests.

A body translates sideways in front of a wall while gently bobbing up and
down. Landmarks lie on the wall (one plane region) and scattered behind it.
IMU samples are computed analytically from the trajectory.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from vio_backend.common.config import StereoCameraParams
from vio_backend.common.data_structures import (
    InertialSample, PlaneRegion, Pose, StereoObservation, TrackingStatus, VisionUpdate
)
from vio_backend.estimation.stereo_camera import StereoCamera

logger = logging.getLogger(__name__)

GRAVITY = np.array([0.0, 0.0, -9.81])

# Left camera looking along body x (camera z = body x, camera y = -body z)
FORWARD_LOOKING_QUATERNION = [0.5, -0.5, 0.5, -0.5]


@dataclass
class SyntheticScenarioConfig:
    """Configuration for the synthetic scenario."""
    duration: float = 4.0  # seconds
    imu_rate: float = 200.0  # Hz
    keyframe_rate: float = 5.0  # Hz
    lateral_speed: float = 0.5  # m/s along world y
    bob_amplitude: float = 0.1  # m along world z
    bob_frequency: float = 0.5  # Hz

    wall_distance: float = 5.0  # wall is the plane x = wall_distance
    num_wall_landmarks: int = 60
    num_background_landmarks: int = 30
    wall_half_height: float = 1.5

    pixel_noise: float = 0.0
    gyroscope_bias: Tuple[float, float, float] = (0.0, 0.0, 0.0)  # rad/s added to every reading
    seed: Optional[int] = 42

    camera: StereoCameraParams = field(default_factory=lambda: StereoCameraParams(
        quaternion=FORWARD_LOOKING_QUATERNION
    ))


@dataclass
class SyntheticScenario:
    """Generated sensor streams and ground truth."""
    imu_samples: List[InertialSample]
    keyframes: List[VisionUpdate]
    plane_regions: List[List[PlaneRegion]]
    ground_truth_poses: List[Pose]
    ground_truth_velocities: List[np.ndarray]
    landmarks: Dict[int, np.ndarray]
    wall_landmark_ids: List[int]
    camera: StereoCameraParams


class SyntheticScenarioGenerator:
    """Generate a wall-facing stereo-inertial scenario."""

    def __init__(self, config: Optional[SyntheticScenarioConfig] = None):
        self.config = config or SyntheticScenarioConfig()
        self.rng = np.random.default_rng(self.config.seed)
        self.camera = StereoCamera(self.config.camera)

    def _state(self, t: float) -> Tuple[Pose, np.ndarray, np.ndarray]:
        """Pose, velocity and acceleration at time ``t`` seconds."""
        c = self.config
        w = 2 * np.pi * c.bob_frequency
        position = np.array([0.0, c.lateral_speed * t, c.bob_amplitude * np.sin(w * t)])
        velocity = np.array([0.0, c.lateral_speed, c.bob_amplitude * w * np.cos(w * t)])
        acceleration = np.array([0.0, 0.0, -c.bob_amplitude * w ** 2 * np.sin(w * t)])
        return Pose(rotation=np.eye(3), position=position), velocity, acceleration

    def _generate_landmarks(self) -> Tuple[Dict[int, np.ndarray], List[int]]:
        c = self.config
        y_min = -2.0
        y_max = c.lateral_speed * c.duration + 2.0

        landmarks = {}
        wall_ids = []
        for i in range(c.num_wall_landmarks):
            landmarks[i] = np.array([
                c.wall_distance,
                self.rng.uniform(y_min, y_max),
                self.rng.uniform(-c.wall_half_height, c.wall_half_height)
            ])
            wall_ids.append(i)
        for j in range(c.num_background_landmarks):
            landmarks[c.num_wall_landmarks + j] = np.array([
                self.rng.uniform(c.wall_distance + 1.0, c.wall_distance + 4.0),
                self.rng.uniform(y_min, y_max),
                self.rng.uniform(-2.0, 2.0)
            ])
        return landmarks, wall_ids

    def _in_image(self, observation: StereoObservation) -> bool:
        width = 2 * self.camera.cx
        height = 2 * self.camera.cy
        return (
            0 <= observation.u_left < width
            and 0 <= observation.u_right < width
            and 0 <= observation.v < height
        )

    def generate(self) -> SyntheticScenario:
        """
        Generate the scenario.

        Returns:
            SyntheticScenario with IMU samples, keyframes and ground truth
        """
        c = self.config
        landmarks, wall_ids = self._generate_landmarks()

        imu_samples = []
        gyroscope_bias = np.array(c.gyroscope_bias, dtype=float)
        num_samples = int(round(c.duration * c.imu_rate)) + 1
        for i in range(num_samples):
            t = i / c.imu_rate
            pose, _, acceleration = self._state(t)
            specific_force = pose.rotation.T @ (acceleration - GRAVITY)
            imu_samples.append(InertialSample(
                timestamp=int(round(t * 1e9)),
                acceleration=specific_force,
                angular_rate=gyroscope_bias.copy()
            ))

        keyframes = []
        plane_regions = []
        poses = []
        velocities = []
        seen_wall = set()
        num_keyframes = int(round(c.duration * c.keyframe_rate)) + 1
        for k in range(num_keyframes):
            t = k / c.keyframe_rate
            pose, velocity, _ = self._state(t)
            observations = {}
            for landmark_id, point in landmarks.items():
                observation = self.camera.project(point, pose)
                if observation is None or not self._in_image(observation):
                    continue
                if c.pixel_noise > 0:
                    noise = self.rng.normal(0.0, c.pixel_noise, size=2)
                    observation = StereoObservation(
                        u_left=observation.u_left + noise[0],
                        u_right=observation.u_right + noise[0],
                        v=observation.v + noise[1]
                    )
                observations[landmark_id] = observation
                if landmark_id in wall_ids:
                    seen_wall.add(landmark_id)

            relative_pose = poses[-1].between(pose) if poses else None
            keyframes.append(VisionUpdate(
                timestamp=int(round(t * 1e9)),
                observations=observations,
                tracking_status=TrackingStatus.NOMINAL,
                relative_pose=relative_pose
            ))
            plane_regions.append([PlaneRegion(
                plane_id=0,
                normal=np.array([1.0, 0.0, 0.0]),
                distance=c.wall_distance,
                landmark_ids=set(seen_wall)
            )])
            poses.append(pose)
            velocities.append(velocity)

        logger.info(
            f"Generated scenario: {len(imu_samples)} IMU samples, "
            f"{len(keyframes)} keyframes, {len(landmarks)} landmarks"
        )
        return SyntheticScenario(
            imu_samples=imu_samples,
            keyframes=keyframes,
            plane_regions=plane_regions,
            ground_truth_poses=poses,
            ground_truth_velocities=velocities,
            landmarks=landmarks,
            wall_landmark_ids=wall_ids,
            camera=c.camera
        )
