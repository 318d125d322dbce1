"""
Online initialization from the first keyframes.

Visual relative poses fix the body trajectory up to the direction of
gravity. Aligning them with the inertial summaries of the same intervals
gives the gyroscope bias, the keyframe velocities and gravity in the first
body frame. Gravity is then refined with its norm held fixed.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from vio_backend.common.config import ImuParams, InitializationParams
from vio_backend.common.data_structures import (
    BiasEstimate, Pose, PreintegratedSummary, VisionUpdate
)
from vio_backend.common.errors import InitializationFailed
from vio_backend.utils.math_utils import so3_exp, so3_log

logger = logging.getLogger(__name__)


@dataclass
class AlignmentResult:
    """
    Initial state estimated from the first keyframes.

    Poses and velocities are in a world frame whose origin is the first
    keyframe and whose z axis is opposite to gravity. Yaw is that of the
    first keyframe.

    Attributes:
        gyroscope_bias: Estimated gyroscope bias
        gravity_b0: Gravity in the first body frame
        world_R_b0: Rotation from the first body frame to the world frame
        poses: World poses of the keyframes
        velocities: World velocities of the keyframes
    """
    gyroscope_bias: np.ndarray
    gravity_b0: np.ndarray
    world_R_b0: np.ndarray
    poses: List[Pose]
    velocities: List[np.ndarray]

    @property
    def pose(self) -> Pose:
        """Pose of the latest keyframe."""
        return self.poses[-1]

    @property
    def velocity(self) -> np.ndarray:
        return self.velocities[-1]

    @property
    def gravity(self) -> np.ndarray:
        """Gravity in the world frame."""
        return self.world_R_b0 @ self.gravity_b0


def _tangent_basis(direction: np.ndarray) -> np.ndarray:
    """3x2 orthonormal basis of the plane orthogonal to ``direction``."""
    direction = direction / np.linalg.norm(direction)
    seed = np.array([1.0, 0.0, 0.0])
    if abs(direction @ seed) > 0.9:
        seed = np.array([0.0, 1.0, 0.0])
    b1 = seed - (seed @ direction) * direction
    b1 /= np.linalg.norm(b1)
    b2 = np.cross(direction, b1)
    return np.column_stack([b1, b2])


def rotation_between(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Smallest rotation taking the direction of ``a`` to the direction of ``b``."""
    a = a / np.linalg.norm(a)
    b = b / np.linalg.norm(b)
    axis = np.cross(a, b)
    sin_angle = np.linalg.norm(axis)
    cos_angle = float(a @ b)
    if sin_angle < 1e-12:
        if cos_angle > 0:
            return np.eye(3)
        # Opposite directions: half turn about any orthogonal axis
        return so3_exp(np.pi * _tangent_basis(a)[:, 0])
    return so3_exp(axis / sin_angle * np.arctan2(sin_angle, cos_angle))


class OnlineGravityAlignment:
    """
    Visual-inertial alignment over a short window of keyframes.

    ``summaries[k]`` must cover the interval from keyframe ``k`` to keyframe
    ``k + 1`` and ``poses`` are body poses relative to the first keyframe.
    """

    def __init__(
        self,
        poses: Sequence[Pose],
        summaries: Sequence[PreintegratedSummary],
        gravity: Sequence[float],
        magnitude_tolerance: float = 0.5,
        refinement_iterations: int = 4
    ):
        if len(summaries) != len(poses) - 1:
            raise ValueError(f"Expected {len(poses) - 1} summaries, got {len(summaries)}")
        self.poses = list(poses)
        self.summaries = list(summaries)
        self.gravity = np.asarray(gravity, dtype=float)
        self.magnitude_tolerance = magnitude_tolerance
        self.refinement_iterations = refinement_iterations

    def _bias(self, summary: PreintegratedSummary, gyroscope_bias: np.ndarray) -> BiasEstimate:
        return BiasEstimate(summary.bias_hat.accelerometer.copy(), gyroscope_bias)

    def estimate_gyroscope_bias(self) -> np.ndarray:
        """
        Least-squares gyroscope bias making the preintegrated rotations
        agree with the visual ones.
        """
        rows, rhs = [], []
        for k, summary in enumerate(self.summaries):
            visual = self.poses[k].rotation.T @ self.poses[k + 1].rotation
            J = summary.bias_jacobian[0:3, 3:6]
            rows.append(J)
            rhs.append(so3_log(summary.delta_rotation.T @ visual) + J @ summary.bias_hat.gyroscope)

        A = np.vstack(rows)
        b = np.concatenate(rhs)
        if np.linalg.matrix_rank(A) < 3:
            raise InitializationFailed("Gyroscope bias is unobservable from the rotations")
        gyroscope_bias, *_ = np.linalg.lstsq(A, b, rcond=None)
        return gyroscope_bias

    def _linear_system(
        self,
        gyroscope_bias: np.ndarray,
        gravity_columns: np.ndarray,
        gravity_offset: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Position and velocity constraints on [v_0 .. v_N, x] where gravity
        is ``gravity_offset + gravity_columns @ x``.
        """
        n = len(self.poses)
        dim = 3 * n + gravity_columns.shape[1]
        A = np.zeros((6 * (n - 1), dim))
        b = np.zeros(6 * (n - 1))
        I = np.eye(3)

        for k, summary in enumerate(self.summaries):
            i, j = k, k + 1
            R_i = self.poses[i].rotation
            dt = summary.dt
            _, delta_v, delta_p = summary.corrected(self._bias(summary, gyroscope_bias))

            # p_j = p_i + v_i dt + 1/2 g dt^2 + R_i dp
            rows = slice(6 * k, 6 * k + 3)
            A[rows, 3 * i:3 * i + 3] = dt * I
            A[rows, 3 * n:] = 0.5 * dt ** 2 * gravity_columns
            b[rows] = (
                self.poses[j].position - self.poses[i].position - R_i @ delta_p
                - 0.5 * dt ** 2 * gravity_offset
            )

            # v_j = v_i + g dt + R_i dv
            rows = slice(6 * k + 3, 6 * k + 6)
            A[rows, 3 * i:3 * i + 3] = -I
            A[rows, 3 * j:3 * j + 3] = I
            A[rows, 3 * n:] = -dt * gravity_columns
            b[rows] = R_i @ delta_v + dt * gravity_offset
        return A, b

    def _solve(self, A: np.ndarray, b: np.ndarray) -> np.ndarray:
        if np.linalg.matrix_rank(A) < A.shape[1]:
            raise InitializationFailed("Velocities and gravity are unobservable from the keyframes")
        x, *_ = np.linalg.lstsq(A, b, rcond=None)
        return x

    def estimate_velocities_and_gravity(
        self,
        gyroscope_bias: np.ndarray
    ) -> Tuple[List[np.ndarray], np.ndarray]:
        """Unconstrained linear estimate of the velocities and gravity in the first body frame."""
        n = len(self.poses)
        A, b = self._linear_system(gyroscope_bias, np.eye(3), np.zeros(3))
        x = self._solve(A, b)
        velocities = [x[3 * k:3 * k + 3] for k in range(n)]
        return velocities, x[3 * n:]

    def refine_gravity(
        self,
        gyroscope_bias: np.ndarray,
        gravity_b0: np.ndarray
    ) -> Tuple[List[np.ndarray], np.ndarray]:
        """Re-estimate velocities with gravity constrained to the nominal norm."""
        n = len(self.poses)
        magnitude = np.linalg.norm(self.gravity)
        gravity_b0 = gravity_b0 / np.linalg.norm(gravity_b0) * magnitude
        velocities, _ = self.estimate_velocities_and_gravity(gyroscope_bias)

        for _ in range(self.refinement_iterations):
            basis = _tangent_basis(gravity_b0)
            A, b = self._linear_system(gyroscope_bias, basis, gravity_b0)
            x = self._solve(A, b)
            velocities = [x[3 * k:3 * k + 3] for k in range(n)]
            gravity_b0 = gravity_b0 + basis @ x[3 * n:]
            gravity_b0 = gravity_b0 / np.linalg.norm(gravity_b0) * magnitude
        return velocities, gravity_b0

    def align(self) -> AlignmentResult:
        """
        Raises:
            InitializationFailed: A quantity is unobservable or the estimated
                gravity norm is off by more than the tolerance.
        """
        gyroscope_bias = self.estimate_gyroscope_bias()
        velocities, gravity_b0 = self.estimate_velocities_and_gravity(gyroscope_bias)

        error = abs(np.linalg.norm(gravity_b0) - np.linalg.norm(self.gravity))
        if error > self.magnitude_tolerance:
            raise InitializationFailed(
                f"Estimated gravity norm {np.linalg.norm(gravity_b0):.3f} is {error:.3f} m/s^2 "
                f"off the nominal {np.linalg.norm(self.gravity):.3f}"
            )

        if self.refinement_iterations > 0:
            velocities, gravity_b0 = self.refine_gravity(gyroscope_bias, gravity_b0)

        world_R_b0 = rotation_between(gravity_b0, self.gravity)
        poses = [
            Pose(rotation=world_R_b0 @ pose.rotation, position=world_R_b0 @ pose.position)
            for pose in self.poses
        ]
        velocities = [world_R_b0 @ v for v in velocities]

        logger.info(
            f"Aligned {len(self.poses)} keyframes: gyro bias {np.round(gyroscope_bias, 5).tolist()}, "
            f"gravity {np.round(gravity_b0, 3).tolist()} in the first body frame"
        )
        return AlignmentResult(
            gyroscope_bias=gyroscope_bias,
            gravity_b0=gravity_b0,
            world_R_b0=world_R_b0,
            poses=poses,
            velocities=velocities
        )


class OnlineInitializer:
    """
    Collects the first keyframes and their inertial summaries.

    Keyframe poses are chained from the visual relative poses. A pose
    refiner (an object with ``refine(poses, frames)``, such as the gtsam
    bundle adjuster) may polish them before the alignment; with a refiner a
    keyframe without a relative pose starts from the previous pose.
    """

    def __init__(
        self,
        params: Optional[InitializationParams] = None,
        imu_params: Optional[ImuParams] = None,
        pose_refiner: Optional[Any] = None
    ):
        self.params = params or InitializationParams()
        self.imu_params = imu_params or ImuParams()
        self.pose_refiner = pose_refiner
        self._frames: List[VisionUpdate] = []
        self._summaries: List[PreintegratedSummary] = []

    @property
    def ready(self) -> bool:
        return len(self._frames) >= self.params.num_alignment_keyframes

    def __len__(self) -> int:
        return len(self._frames)

    def add_keyframe(
        self,
        vision_update: VisionUpdate,
        summary: Optional[PreintegratedSummary] = None
    ) -> None:
        """
        Args:
            vision_update: Keyframe observations and relative pose
            summary: Inertial summary since the previous keyframe; required
                for every keyframe but the first
        """
        if self._frames and summary is None:
            raise ValueError("Every keyframe after the first needs an inertial summary")
        self._frames.append(vision_update)
        if len(self._frames) > 1:
            self._summaries.append(summary)

    def reset(self) -> None:
        self._frames = []
        self._summaries = []

    def initialize(self) -> AlignmentResult:
        """
        Estimate the initial state at the latest collected keyframe.

        Raises:
            InitializationFailed: Too few keyframes, missing motion or an
                inconsistent alignment.
        """
        if len(self._frames) < 3:
            raise InitializationFailed(f"Need at least 3 keyframes, have {len(self._frames)}")
        for summary in self._summaries:
            if summary.num_samples == 0:
                raise InitializationFailed(
                    f"No inertial samples between {summary.start_ns} and {summary.end_ns} ns"
                )

        poses = [Pose()]
        for frame in self._frames[1:]:
            if frame.relative_pose is not None:
                relative = frame.relative_pose
            elif self.pose_refiner is not None:
                relative = Pose()
            else:
                raise InitializationFailed(f"Keyframe at {frame.timestamp} ns has no relative pose")
            poses.append(poses[-1].compose(relative))

        if self.pose_refiner is not None:
            poses = self.pose_refiner.refine(poses, self._frames)

        alignment = OnlineGravityAlignment(
            poses,
            self._summaries,
            gravity=self.imu_params.n_gravity,
            magnitude_tolerance=self.params.gravity_magnitude_tolerance,
            refinement_iterations=self.params.gravity_refinement_iterations
        )
        return alignment.align()
