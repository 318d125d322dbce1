"""
Engine-agnostic factor descriptors and variable keys.

Descriptors carry everything an optimization engine needs to build the
concrete factor. Each descriptor has a process-unique ``factor_id`` that
survives deep copies, so bookkeeping can refer to a factor independently of
the engine slot it ends up in.
"""

import itertools
from dataclasses import dataclass, field
from typing import Dict, Tuple

import numpy as np

from vio_backend.common.data_structures import (
    BiasEstimate, FrameId, LandmarkId, PlaneId, Pose, PreintegratedSummary, StereoObservation
)


Key = Tuple[str, int]


def X(frame_id: FrameId) -> Key:
    """Pose key."""
    return ("x", frame_id)


def V(frame_id: FrameId) -> Key:
    """Velocity key."""
    return ("v", frame_id)


def B(frame_id: FrameId) -> Key:
    """Bias key."""
    return ("b", frame_id)


def L(landmark_id: LandmarkId) -> Key:
    """Landmark point key."""
    return ("l", landmark_id)


def P(plane_id: PlaneId) -> Key:
    """Plane key."""
    return ("p", plane_id)


_factor_ids = itertools.count()


@dataclass
class OrientedPlane:
    """Plane value ``normal . p = distance`` with a unit normal."""
    normal: np.ndarray
    distance: float

    def __post_init__(self):
        normal = np.asarray(self.normal, dtype=float).flatten()
        norm = np.linalg.norm(normal)
        if norm < 1e-9:
            raise ValueError("Plane normal must be non-zero")
        self.normal = normal / norm
        self.distance = float(self.distance) / norm


class Factor:
    """Base class for factor descriptors."""

    def __post_init__(self):
        self.factor_id = next(_factor_ids)

    def keys(self) -> Tuple[Key, ...]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.factor_id}, keys={list(self.keys())})"


# ============================================================================
# Vision factors
# ============================================================================

@dataclass(repr=False, eq=False)
class SmartStereoFactor(Factor):
    """Structureless landmark factor; the point is eliminated internally."""
    landmark_id: LandmarkId
    measurements: Dict[FrameId, StereoObservation] = field(default_factory=dict)

    def add_measurement(self, frame_id: FrameId, observation: StereoObservation) -> None:
        self.measurements[frame_id] = observation

    def keys(self) -> Tuple[Key, ...]:
        return tuple(X(frame_id) for frame_id in sorted(self.measurements))


@dataclass(repr=False, eq=False)
class StereoProjectionFactor(Factor):
    """
    Reprojection of an explicit point into one keyframe.

    Engines fall back to a mono projection when the observation has no
    valid right match.
    """
    landmark_id: LandmarkId
    frame_id: FrameId
    observation: StereoObservation

    def keys(self) -> Tuple[Key, ...]:
        return (X(self.frame_id), L(self.landmark_id))


# ============================================================================
# Regularity factors
# ============================================================================

@dataclass(repr=False, eq=False)
class PointPlaneFactor(Factor):
    """Point-on-plane constraint, error ``n . p - d``."""
    landmark_id: LandmarkId
    plane_id: PlaneId

    def keys(self) -> Tuple[Key, ...]:
        return (L(self.landmark_id), P(self.plane_id))


@dataclass(repr=False, eq=False)
class PlanePriorFactor(Factor):
    """Prior on a plane variable at the time it entered the problem."""
    plane_id: PlaneId
    plane: OrientedPlane

    def keys(self) -> Tuple[Key, ...]:
        return (P(self.plane_id),)


# ============================================================================
# Inertial and motion factors
# ============================================================================

@dataclass(repr=False, eq=False)
class ImuFactor(Factor):
    """Preintegrated inertial constraint between consecutive keyframes."""
    from_frame: FrameId
    to_frame: FrameId
    summary: PreintegratedSummary

    def keys(self) -> Tuple[Key, ...]:
        return (
            X(self.from_frame), V(self.from_frame),
            X(self.to_frame), V(self.to_frame),
            B(self.from_frame), B(self.to_frame)
        )


@dataclass(repr=False, eq=False)
class PosePrior(Factor):
    """Prior on a pose; sigmas ordered [rotation, translation]."""
    frame_id: FrameId
    pose: Pose
    sigmas: np.ndarray

    def keys(self) -> Tuple[Key, ...]:
        return (X(self.frame_id),)


@dataclass(repr=False, eq=False)
class VelocityPrior(Factor):
    frame_id: FrameId
    velocity: np.ndarray
    sigma: float

    def keys(self) -> Tuple[Key, ...]:
        return (V(self.frame_id),)


@dataclass(repr=False, eq=False)
class BiasPrior(Factor):
    """Prior on a bias; sigmas ordered [accelerometer, gyroscope]."""
    frame_id: FrameId
    bias: BiasEstimate
    sigmas: np.ndarray

    def keys(self) -> Tuple[Key, ...]:
        return (B(self.frame_id),)


@dataclass(repr=False, eq=False)
class BetweenPoseFactor(Factor):
    """Relative pose constraint; sigmas ordered [rotation, translation]."""
    from_frame: FrameId
    to_frame: FrameId
    relative_pose: Pose
    sigmas: np.ndarray

    def keys(self) -> Tuple[Key, ...]:
        return (X(self.from_frame), X(self.to_frame))
