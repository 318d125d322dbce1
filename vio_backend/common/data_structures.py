"""
Core data structures for the estimation backend.
Following the naming convention: A_X_B means X transforms FROM B TO A.
Timestamps are integer nanoseconds throughout.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

import numpy as np

from vio_backend.utils.math_utils import project_to_so3, so3_exp


LandmarkId = int
FrameId = int
PlaneId = int

NS_TO_SEC = 1e-9


def _frozen_vector(values, name: str, size: int = 3) -> np.ndarray:
    """Copy into a read-only float vector of the given size."""
    vector = np.array(values, dtype=float).flatten()
    if len(vector) != size:
        raise ValueError(f"{name} must be {size}D, got {len(vector)}")
    vector.flags.writeable = False
    return vector


# ============================================================================
# IMU Data Structures
# ============================================================================

@dataclass(frozen=True)
class InertialSample:
    """Single IMU sample containing accelerometer and gyroscope readings."""
    timestamp: int  # Time in nanoseconds
    acceleration: np.ndarray  # 3x1 specific force in m/s² (body frame)
    angular_rate: np.ndarray  # 3x1 angular velocity in rad/s (body frame)

    def __post_init__(self):
        """Validate and freeze the readings."""
        object.__setattr__(self, "timestamp", int(self.timestamp))
        object.__setattr__(self, "acceleration", _frozen_vector(self.acceleration, "Acceleration"))
        object.__setattr__(self, "angular_rate", _frozen_vector(self.angular_rate, "Angular rate"))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp,
            "acceleration": self.acceleration.tolist(),
            "angular_rate": self.angular_rate.tolist()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InertialSample':
        """Create from dictionary."""
        return cls(
            timestamp=data["timestamp"],
            acceleration=data["acceleration"],
            angular_rate=data["angular_rate"]
        )


@dataclass(frozen=True)
class BiasEstimate:
    """Accelerometer and gyroscope bias. Immutable; updates produce a new value."""
    accelerometer: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gyroscope: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        object.__setattr__(self, "accelerometer", _frozen_vector(self.accelerometer, "Accelerometer bias"))
        object.__setattr__(self, "gyroscope", _frozen_vector(self.gyroscope, "Gyroscope bias"))

    @classmethod
    def zero(cls) -> 'BiasEstimate':
        return cls(np.zeros(3), np.zeros(3))

    def as_vector(self) -> np.ndarray:
        """Stack as [accel, gyro]."""
        return np.concatenate([self.accelerometer, self.gyroscope])

    @classmethod
    def from_vector(cls, vector: np.ndarray) -> 'BiasEstimate':
        vector = np.asarray(vector, dtype=float).flatten()
        if len(vector) != 6:
            raise ValueError(f"Bias vector must be 6D, got {len(vector)}")
        return cls(vector[:3], vector[3:])

    def equals(self, other: 'BiasEstimate', tol: float = 1e-9) -> bool:
        return bool(np.allclose(self.as_vector(), other.as_vector(), atol=tol))

    def __sub__(self, other: 'BiasEstimate') -> 'BiasEstimate':
        return BiasEstimate.from_vector(self.as_vector() - other.as_vector())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accelerometer": self.accelerometer.tolist(),
            "gyroscope": self.gyroscope.tolist()
        }


@dataclass(frozen=True)
class PreintegratedSummary:
    """
    Inertial samples between two keyframe times summarized as a relative motion.

    Deltas are expressed in the body frame at ``start_ns`` and exclude gravity.
    The summary is only valid relative to ``bias_hat``; use ``corrected`` for a
    first-order update to a different bias.

    Attributes:
        delta_rotation: Relative rotation (3x3)
        delta_velocity: Velocity change
        delta_position: Position change
        covariance: 9x9 covariance of [rotation, velocity, position]
        bias_jacobian: 9x6 Jacobian of the deltas w.r.t. [accel bias, gyro bias]
        bias_hat: Bias used while integrating
        start_ns: Start of the integrated interval
        end_ns: End of the integrated interval
        num_samples: Number of samples that contributed
        increments: Integrated (acceleration, angular rate, dt seconds) triples
    """
    delta_rotation: np.ndarray
    delta_velocity: np.ndarray
    delta_position: np.ndarray
    covariance: np.ndarray
    bias_jacobian: np.ndarray
    bias_hat: BiasEstimate
    start_ns: int
    end_ns: int
    num_samples: int = 0
    increments: Tuple[Tuple[np.ndarray, np.ndarray, float], ...] = ()

    @classmethod
    def identity(cls, bias: BiasEstimate, start_ns: int = 0) -> 'PreintegratedSummary':
        """Empty summary seeded with ``bias``."""
        return cls(
            delta_rotation=np.eye(3),
            delta_velocity=np.zeros(3),
            delta_position=np.zeros(3),
            covariance=np.zeros((9, 9)),
            bias_jacobian=np.zeros((9, 6)),
            bias_hat=bias,
            start_ns=start_ns,
            end_ns=start_ns,
        )

    @property
    def dt(self) -> float:
        """Integrated time in seconds."""
        return (self.end_ns - self.start_ns) * NS_TO_SEC

    def is_identity(self) -> bool:
        return (
            self.num_samples == 0
            and self.end_ns == self.start_ns
            and np.allclose(self.delta_rotation, np.eye(3))
            and not np.any(self.delta_velocity)
            and not np.any(self.delta_position)
        )

    def corrected(self, bias: BiasEstimate) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """First-order correction of (rotation, velocity, position) to ``bias``."""
        delta_bias = (bias - self.bias_hat).as_vector()
        J = self.bias_jacobian
        rotation = self.delta_rotation @ so3_exp(J[0:3] @ delta_bias)
        velocity = self.delta_velocity + J[3:6] @ delta_bias
        position = self.delta_position + J[6:9] @ delta_bias
        return project_to_so3(rotation), velocity, position

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delta_rotation": self.delta_rotation.tolist(),
            "delta_velocity": self.delta_velocity.tolist(),
            "delta_position": self.delta_position.tolist(),
            "covariance": self.covariance.tolist(),
            "bias_hat": self.bias_hat.to_dict(),
            "start_ns": self.start_ns,
            "end_ns": self.end_ns,
            "num_samples": self.num_samples
        }


# ============================================================================
# Vision Data Structures
# ============================================================================

class TrackingStatus(str, Enum):
    """Stereo tracking quality reported by the vision front end."""
    NOMINAL = "nominal"
    LOW_PARALLAX = "low_parallax"
    FAILED = "failed"


class FactorRepresentation(str, Enum):
    """Which factor type currently represents a landmark in the problem."""
    UNSTRUCTURED = "unstructured"
    STRUCTURED = "structured"
    STRUCTURED_WITH_REGULARITY = "structured_with_regularity"


@dataclass(frozen=True)
class StereoObservation:
    """
    Rectified stereo measurement of a landmark.

    ``u_right`` is NaN when the right image gave no valid match.
    """
    u_left: float
    u_right: float
    v: float

    @classmethod
    def mono(cls, u: float, v: float) -> 'StereoObservation':
        return cls(u_left=u, u_right=float("nan"), v=v)

    @property
    def has_valid_stereo(self) -> bool:
        return bool(np.isfinite(self.u_right)) and self.disparity > 0

    @property
    def disparity(self) -> float:
        return self.u_left - self.u_right

    def to_dict(self) -> Dict[str, Any]:
        return {"u_left": self.u_left, "u_right": self.u_right, "v": self.v}


@dataclass
class FeatureTrack:
    """Observations of one landmark ordered by frame id."""
    landmark_id: LandmarkId
    observations: List[Tuple[FrameId, StereoObservation]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.observations)

    def frame_ids(self) -> List[FrameId]:
        return [frame_id for frame_id, _ in self.observations]

    def last_frame_id(self) -> Optional[FrameId]:
        return self.observations[-1][0] if self.observations else None

    def num_valid_stereo(self, last_n: Optional[int] = None) -> int:
        """Count stereo-valid observations, optionally among the last ``last_n``."""
        observations = self.observations if last_n is None else self.observations[-last_n:]
        return sum(1 for _, obs in observations if obs.has_valid_stereo)


@dataclass
class VisionUpdate:
    """Per-keyframe output of the vision front end."""
    timestamp: int
    observations: Dict[LandmarkId, StereoObservation] = field(default_factory=dict)
    tracking_status: TrackingStatus = TrackingStatus.NOMINAL
    relative_pose: Optional['Pose'] = None  # body motion since the last keyframe


# ============================================================================
# Pose / Plane Data Structures
# ============================================================================

@dataclass
class Pose:
    """6DOF pose W_T_B with rotation matrix and position."""
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.rotation = np.asarray(self.rotation, dtype=float).reshape(3, 3)
        self.position = np.asarray(self.position, dtype=float).flatten()
        if len(self.position) != 3:
            raise ValueError(f"Position must be 3D, got {len(self.position)}")

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> 'Pose':
        T = np.asarray(T, dtype=float)
        return cls(rotation=T[:3, :3], position=T[:3, 3])

    def to_matrix(self) -> np.ndarray:
        T = np.eye(4)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.position
        return T

    def compose(self, other: 'Pose') -> 'Pose':
        return Pose(
            rotation=self.rotation @ other.rotation,
            position=self.position + self.rotation @ other.position
        )

    def inverse(self) -> 'Pose':
        return Pose(rotation=self.rotation.T, position=-self.rotation.T @ self.position)

    def between(self, other: 'Pose') -> 'Pose':
        return self.inverse().compose(other)

    def transform_point(self, point: np.ndarray) -> np.ndarray:
        return self.rotation @ np.asarray(point, dtype=float) + self.position

    def to_dict(self) -> Dict[str, Any]:
        return {"rotation": self.rotation.tolist(), "position": self.position.tolist()}


@dataclass
class PlaneRegion:
    """
    Planar surface supported by a cluster of landmarks.

    Points on the plane satisfy ``normal . p = distance``.
    """
    plane_id: PlaneId
    normal: np.ndarray
    distance: float
    landmark_ids: Set[LandmarkId] = field(default_factory=set)

    def __post_init__(self):
        normal = np.asarray(self.normal, dtype=float).flatten()
        norm = np.linalg.norm(normal)
        if len(normal) != 3 or norm < 1e-9:
            raise ValueError("Plane normal must be a non-zero 3D vector")
        self.normal = normal / norm
        self.distance = float(self.distance) / norm
        self.landmark_ids = set(self.landmark_ids)

    def point_distance(self, point: np.ndarray) -> float:
        """Signed distance of ``point`` to the plane."""
        return float(self.normal @ np.asarray(point, dtype=float) - self.distance)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plane_id": self.plane_id,
            "normal": self.normal.tolist(),
            "distance": self.distance,
            "landmark_ids": sorted(self.landmark_ids)
        }


# ============================================================================
# Estimator output
# ============================================================================

@dataclass
class EstimateUpdate:
    """Result of one estimation step, numbered by keyframe id."""
    keyframe_id: FrameId
    timestamp: int
    pose: Pose
    velocity: np.ndarray
    bias: BiasEstimate
    landmark_positions: Dict[LandmarkId, np.ndarray] = field(default_factory=dict)
    planes: List[PlaneRegion] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "keyframe_id": self.keyframe_id,
            "timestamp": self.timestamp,
            "pose": self.pose.to_dict(),
            "velocity": np.asarray(self.velocity).tolist(),
            "bias": self.bias.to_dict(),
            "landmarks": {
                str(lmk_id): position.tolist()
                for lmk_id, position in self.landmark_positions.items()
            },
            "planes": [plane.to_dict() for plane in self.planes],
            "metadata": self.metadata
        }
