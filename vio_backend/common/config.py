"""
Configuration models using Pydantic for type safety and validation.
"""

from enum import Enum
from pathlib import Path
from typing import List, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class BackendModality(str, Enum):
    """Which landmark representations the backend is allowed to use."""
    STRUCTURELESS = "structureless"
    PROJECTION = "projection"
    STRUCTURELESS_AND_PROJECTION = "structureless_and_projection"
    PROJECTION_AND_REGULARITY = "projection_and_regularity"
    STRUCTURELESS_PROJECTION_AND_REGULARITY = "structureless_projection_and_regularity"

    @property
    def uses_regularities(self) -> bool:
        return self in (
            BackendModality.PROJECTION_AND_REGULARITY,
            BackendModality.STRUCTURELESS_PROJECTION_AND_REGULARITY,
        )

    @property
    def promotes_all_landmarks(self) -> bool:
        """Every landmark becomes an explicit point as soon as it is eligible."""
        return self in (
            BackendModality.PROJECTION,
            BackendModality.PROJECTION_AND_REGULARITY,
        )

    @property
    def promotes_plane_members(self) -> bool:
        """Only landmarks supporting a plane become explicit points."""
        return self == BackendModality.STRUCTURELESS_PROJECTION_AND_REGULARITY


class RobustNormType(str, Enum):
    """Loss applied to regularity factors."""
    L2 = "l2"
    HUBER = "huber"
    TUKEY = "tukey"


class ImuParams(BaseModel):
    """IMU noise parameters used for preintegration."""
    accelerometer_noise_density: float = Field(
        default=0.0016,
        gt=0,
        description="Accelerometer noise density (m/s²/√Hz)"
    )
    gyroscope_noise_density: float = Field(
        default=0.00016,
        gt=0,
        description="Gyroscope noise density (rad/s/√Hz)"
    )
    accelerometer_random_walk: float = Field(
        default=0.0002,
        gt=0,
        description="Accelerometer bias random walk (m/s³/√Hz)"
    )
    gyroscope_random_walk: float = Field(
        default=2.2e-5,
        gt=0,
        description="Gyroscope bias random walk (rad/s²/√Hz)"
    )
    integration_sigma: float = Field(
        default=1e-8,
        ge=0,
        description="Integration uncertainty added to position propagation"
    )
    bias_init_sigma: float = Field(
        default=1e-3,
        gt=0,
        description="Uncertainty of the initial bias between keyframes"
    )
    n_gravity: List[float] = Field(
        default=[0.0, 0.0, -9.81],
        description="Gravity in the navigation frame (m/s²)"
    )
    rate: float = Field(200.0, gt=0, description="Nominal sampling rate (Hz)")

    @field_validator('n_gravity')
    @classmethod
    def validate_gravity(cls, v: List[float]) -> List[float]:
        if len(v) != 3:
            raise ValueError('Gravity must have exactly 3 components')
        return v


class InitializationParams(BaseModel):
    """Priors placed on the first keyframe and online initialization settings."""
    initial_position_sigma: float = Field(1e-5, gt=0, description="Position prior sigma (m)")
    initial_roll_pitch_sigma: float = Field(10.0 / 180.0 * 3.141592653589793, gt=0,
                                            description="Roll/pitch prior sigma (rad)")
    initial_yaw_sigma: float = Field(0.1 / 180.0 * 3.141592653589793, gt=0,
                                     description="Yaw prior sigma (rad)")
    initial_velocity_sigma: float = Field(1e-3, gt=0, description="Velocity prior sigma (m/s)")
    initial_accelerometer_sigma: float = Field(0.1, gt=0, description="Accel bias prior sigma")
    initial_gyroscope_sigma: float = Field(0.01, gt=0, description="Gyro bias prior sigma")
    online_initialization: bool = Field(
        False,
        description="Estimate gravity and gyro bias from the first keyframes"
    )
    num_alignment_keyframes: int = Field(
        5, ge=3,
        description="Keyframes collected before online initialization"
    )
    gravity_magnitude_tolerance: float = Field(
        0.5, gt=0,
        description="Accepted deviation of the estimated gravity norm (m/s^2)"
    )
    gravity_refinement_iterations: int = Field(
        4, ge=0,
        description="Fixed-norm gravity refinement iterations"
    )


class VisionParams(BaseModel):
    """Landmark factor parameters."""
    smart_noise_sigma: float = Field(3.0, gt=0, description="Smart factor pixel sigma")
    stereo_noise_sigma: float = Field(1.0, gt=0, description="Stereo projection pixel sigma")
    mono_noise_sigma: float = Field(1.0, gt=0, description="Mono projection pixel sigma")
    rank_tolerance: float = Field(
        1e-5,
        gt=0,
        description="Minimum eigenvalue ratio of the triangulation system"
    )
    landmark_distance_threshold: float = Field(
        20.0,
        gt=0,
        description="Maximum distance of a triangulated landmark from the camera (m)"
    )
    min_observations_for_unstructured: int = Field(
        2,
        ge=1,
        description="Observations before a landmark enters the problem"
    )
    min_observations_for_promotion: int = Field(
        3,
        ge=2,
        description="Observations before a landmark may become an explicit point"
    )
    degenerate_horizon: int = Field(
        5,
        ge=1,
        description="Drop unstructured tracks with no valid stereo in this many observations"
    )
    max_track_age: int = Field(
        20,
        ge=1,
        description="Drop unstructured tracks not observed for this many keyframes"
    )
    add_between_stereo_factors: bool = Field(
        False,
        description="Add stereo RANSAC relative pose as a between factor"
    )
    between_rotation_precision: float = Field(1e4, gt=0, description="Between factor rotation precision")
    between_translation_precision: float = Field(1e2, gt=0, description="Between factor translation precision")

    @model_validator(mode='after')
    def validate_observation_counts(self):
        """Promotion can never happen before a landmark is in the problem."""
        if self.min_observations_for_promotion < self.min_observations_for_unstructured:
            raise ValueError(
                'min_observations_for_promotion must be >= min_observations_for_unstructured'
            )
        return self


class RegularityParams(BaseModel):
    """Point-on-plane regularity parameters."""
    modality: BackendModality = Field(
        default=BackendModality.STRUCTURELESS_PROJECTION_AND_REGULARITY,
        description="Backend modality"
    )
    point_plane_sigma: float = Field(0.1, gt=0, description="Point-plane distance sigma (m)")
    norm_type: RobustNormType = Field(RobustNormType.HUBER, description="Robust loss")
    norm_parameter: float = Field(1.345, gt=0, description="Robust loss threshold")
    plane_normal_sigma: float = Field(0.1, gt=0, description="Plane prior normal sigma (rad)")
    plane_distance_sigma: float = Field(0.5, gt=0, description="Plane prior distance sigma (m)")
    min_plane_constraints: int = Field(
        3,
        ge=1,
        description="Landmarks needed before a plane without attached landmarks is constrained"
    )
    plane_distance_tolerance: float = Field(
        0.2,
        gt=0,
        description="Detach landmarks estimated farther than this from their plane (m)"
    )


class OptimizationParams(BaseModel):
    """Incremental smoother parameters."""
    relinearize_threshold: float = Field(0.01, gt=0)
    relinearize_skip: int = Field(1, ge=1)
    num_extra_updates: int = Field(0, ge=0, description="Extra iSAM2 iterations per step")
    zero_velocity_sigma: float = Field(1e-3, gt=0, description="Zero-velocity prior sigma (m/s)")
    no_motion_position_sigma: float = Field(1e-3, gt=0, description="No-motion position sigma (m)")
    no_motion_rotation_sigma: float = Field(1e-4, gt=0, description="No-motion rotation sigma (rad)")


class StereoCameraParams(BaseModel):
    """Rectified stereo rig with the left camera as reference."""
    fx: float = Field(458.0, gt=0, description="Focal length in x (pixels)")
    fy: float = Field(457.0, gt=0, description="Focal length in y (pixels)")
    cx: float = Field(367.0, gt=0, description="Principal point x (pixels)")
    cy: float = Field(248.0, gt=0, description="Principal point y (pixels)")
    baseline: float = Field(0.11, gt=0, description="Stereo baseline (m)")
    translation: List[float] = Field(
        default=[0.0, 0.0, 0.0],
        description="body_T_cam translation [x, y, z] in meters"
    )
    quaternion: List[float] = Field(
        default=[1.0, 0.0, 0.0, 0.0],
        description="body_T_cam rotation quaternion [w, x, y, z]"
    )

    @field_validator('translation')
    @classmethod
    def validate_translation(cls, v: List[float]) -> List[float]:
        if len(v) != 3:
            raise ValueError('Translation must have exactly 3 components')
        return v

    @field_validator('quaternion')
    @classmethod
    def validate_quaternion(cls, v: List[float]) -> List[float]:
        if len(v) != 4:
            raise ValueError('Quaternion must have exactly 4 components')
        norm = sum(x**2 for x in v) ** 0.5
        if norm < 1e-6:
            raise ValueError('Quaternion norm is too small')
        return [x / norm for x in v]


class BackendConfig(BaseModel):
    """Complete backend configuration."""
    imu: ImuParams = Field(default_factory=ImuParams)
    initialization: InitializationParams = Field(default_factory=InitializationParams)
    vision: VisionParams = Field(default_factory=VisionParams)
    regularity: RegularityParams = Field(default_factory=RegularityParams)
    optimization: OptimizationParams = Field(default_factory=OptimizationParams)
    camera: StereoCameraParams = Field(default_factory=StereoCameraParams)


def load_backend_config(path: Union[str, Path]) -> BackendConfig:
    """Load backend configuration from YAML file."""
    path = Path(path)
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    return BackendConfig(**data)


def save_config(config: BaseModel, path: Union[str, Path]) -> None:
    """Save configuration to YAML file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Convert to dict and handle enums
    data = config.model_dump(mode='json')

    with open(path, 'w') as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
