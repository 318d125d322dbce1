"""
Incremental estimation: preintegration, factor lifecycle and engine interface.

The gtsam engine lives in ``vio_backend.estimation.gtsam_engine`` and is
imported explicitly, since it requires gtsam.
"""

from .estimation_driver import IncrementalEstimationDriver
from .factor_lifecycle import FactorLifecycleManager, FactorState, PendingChanges
from .feature_tracks import LandmarkTrackTable
from .imu_preintegration import ImuPreintegrator, PreintegrationManager
from .inertial_buffer import InertialBuffer
from .online_initialization import AlignmentResult, OnlineGravityAlignment, OnlineInitializer
from .optimization_engine import (
    EngineResult,
    FactorSlot,
    OptimizationBatch,
    OptimizationEngine,
    SlotRegistry
)

__all__ = [
    'IncrementalEstimationDriver',
    'FactorLifecycleManager',
    'FactorState',
    'PendingChanges',
    'LandmarkTrackTable',
    'ImuPreintegrator',
    'PreintegrationManager',
    'InertialBuffer',
    'AlignmentResult',
    'OnlineGravityAlignment',
    'OnlineInitializer',
    'EngineResult',
    'FactorSlot',
    'OptimizationBatch',
    'OptimizationEngine',
    'SlotRegistry'
]
