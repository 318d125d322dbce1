"""
Incremental estimation driver.

Runs one estimation step per keyframe: ingests vision observations, lets the
lifecycle manager decide landmark representations, adds the keyframe's
inertial and motion factors, and submits the combined batch to the engine.
A rejected step leaves every component exactly as it was before the step.
"""

import logging
import threading
from typing import Optional, Sequence

import numpy as np

from vio_backend.common.config import BackendConfig
from vio_backend.common.data_structures import (
    BiasEstimate, EstimateUpdate, FactorRepresentation, PlaneRegion, Pose,
    PreintegratedSummary, TrackingStatus, VisionUpdate
)
from vio_backend.common.errors import DegenerateLandmark, InsufficientData
from vio_backend.estimation.factor_lifecycle import FactorLifecycleManager, PendingChanges
from vio_backend.estimation.factors import (
    B, P, V, X, BetweenPoseFactor, BiasPrior, ImuFactor, PosePrior, VelocityPrior
)
from vio_backend.estimation.feature_tracks import LandmarkTrackTable
from vio_backend.estimation.imu_preintegration import PreintegrationManager
from vio_backend.estimation.online_initialization import AlignmentResult
from vio_backend.estimation.optimization_engine import (
    EngineResult, OptimizationBatch, OptimizationEngine
)
from vio_backend.estimation.stereo_camera import StereoCamera

logger = logging.getLogger(__name__)


class IncrementalEstimationDriver:
    """
    Orchestrates estimation steps over a shared engine.

    Keyframe ids are assigned by the driver and only advance when a step
    succeeds. At most one step runs at a time.
    """

    def __init__(
        self,
        engine: OptimizationEngine,
        config: Optional[BackendConfig] = None,
        preintegration: Optional[PreintegrationManager] = None,
        tracks: Optional[LandmarkTrackTable] = None
    ):
        """
        Initialize driver.

        Args:
            engine: Incremental optimization engine
            config: Backend configuration (defaults if None)
            preintegration: Shared preintegration manager; the acquisition
                thread extends its accumulator
            tracks: Landmark track table (a new one if None)
        """
        self.config = config or BackendConfig()
        self.engine = engine
        self.tracks = tracks if tracks is not None else LandmarkTrackTable()
        self.camera = StereoCamera(self.config.camera)
        self.lifecycle = FactorLifecycleManager(
            self.tracks,
            camera=self.camera,
            vision_params=self.config.vision,
            regularity_params=self.config.regularity
        )
        self.preintegration = preintegration or PreintegrationManager(self.config.imu)

        self._step_lock = threading.Lock()
        self._keyframe_id = 0
        self._last_timestamp: Optional[int] = None
        self._pose = Pose()
        self._velocity = np.zeros(3)
        self._bias = self.preintegration.current_bias()

    @property
    def keyframe_id(self) -> int:
        """Id the next successful step will use."""
        return self._keyframe_id

    def initialize(
        self,
        pose: Pose,
        velocity: Optional[np.ndarray] = None,
        bias: Optional[BiasEstimate] = None
    ) -> None:
        """Set the state the first keyframe is anchored to."""
        if self._keyframe_id != 0:
            raise RuntimeError("Driver is already running")
        self._pose = pose
        self._velocity = np.zeros(3) if velocity is None else np.asarray(velocity, dtype=float)
        if bias is not None:
            self._bias = bias
            self.preintegration.update_bias(bias)

    def initialize_from_alignment(self, result: AlignmentResult) -> None:
        """
        Anchor the first keyframe to an online initialization result.

        Gravity is replaced and the gyroscope bias is taken from the
        alignment. The accelerometer bias keeps its current estimate.
        """
        bias = BiasEstimate(self._bias.accelerometer.copy(), np.asarray(result.gyroscope_bias, dtype=float))
        self.initialize(result.pose, result.velocity, bias)
        self.preintegration.reset_gravity(result.gravity)

    # ------------------------------------------------------------------
    # Step
    # ------------------------------------------------------------------

    def step(
        self,
        vision_update: VisionUpdate,
        plane_regions: Sequence[PlaneRegion] = (),
        summary: Optional[PreintegratedSummary] = None
    ) -> EstimateUpdate:
        """
        Run one estimation step for a new keyframe.

        Args:
            vision_update: Observations of the new keyframe
            plane_regions: Plane candidates from the plane detector
            summary: Inertial summary since the previous keyframe; if None
                the preintegration manager's accumulator is cut at the
                keyframe timestamp and later readings are carried forward

        Raises:
            RuntimeError: Another step is in progress.
            InsufficientData: No inertial data covers the keyframe interval.
            OptimizationFailed: The engine rejected the update. All state is
                rolled back.
        """
        if not self._step_lock.acquire(blocking=False):
            raise RuntimeError("An estimation step is already in progress")
        try:
            return self._step(vision_update, plane_regions, summary)
        finally:
            self._step_lock.release()

    def _step(
        self,
        vision_update: VisionUpdate,
        plane_regions: Sequence[PlaneRegion],
        summary: Optional[PreintegratedSummary]
    ) -> EstimateUpdate:
        frame_id = self._keyframe_id
        tracks_snapshot = self.tracks.snapshot()
        lifecycle_snapshot = self.lifecycle.snapshot()

        try:
            if summary is None and frame_id == 0:
                bias, summary = self.preintegration.snapshot()
            elif summary is None:
                bias, summary = self.preintegration.accumulated_until(vision_update.timestamp)
            else:
                bias = self.preintegration.current_bias()

            if frame_id == 0:
                pose, velocity = self._pose, self._velocity
            else:
                if summary.num_samples == 0:
                    raise InsufficientData(summary.start_ns, vision_update.timestamp)
                pose, velocity = self.preintegration.predict(
                    self._pose, self._velocity, summary, bias
                )
            self.lifecycle.set_pose_guess(frame_id, pose)

            self._ingest(frame_id, vision_update)

            planes = []
            if self.config.regularity.modality.uses_regularities:
                planes = self.lifecycle.reconcile_plane_regions(plane_regions)

            changes = self.lifecycle.pending_factors_and_deletions()
            batch = self._assemble(frame_id, vision_update, changes, summary, bias, pose, velocity)
            result = self.engine.update(batch)
        except Exception:
            self.tracks.restore(tracks_snapshot)
            self.lifecycle.restore(lifecycle_snapshot)
            logger.warning(f"Estimation step for keyframe {frame_id} rejected, state rolled back")
            raise

        return self._absorb(frame_id, vision_update, batch, result, planes, pose, velocity, bias)

    def _ingest(self, frame_id: int, vision_update: VisionUpdate) -> None:
        """Feed observations to the track table and the lifecycle manager."""
        vision = self.config.vision
        if vision_update.tracking_status == TrackingStatus.FAILED:
            logger.warning(f"Vision tracking failed at keyframe {frame_id}, inertial-only step")
        else:
            for landmark_id in sorted(vision_update.observations):
                observation = vision_update.observations[landmark_id]
                self.tracks.add_observation(landmark_id, frame_id, observation)
                if self.lifecycle.representation(landmark_id) is not None:
                    self.lifecycle.add_observation(landmark_id, frame_id, observation)
                elif len(self.tracks.track(landmark_id)) >= vision.min_observations_for_unstructured:
                    self.lifecycle.add_landmark(landmark_id)

        self.lifecycle.prune_degenerate(vision.degenerate_horizon)
        self.lifecycle.prune_stale(frame_id, vision.max_track_age)

        if self.config.regularity.modality.promotes_all_landmarks:
            for landmark_id in self.lifecycle.active_landmark_ids():
                if self.lifecycle.representation(landmark_id) != FactorRepresentation.UNSTRUCTURED:
                    continue
                if len(self.tracks.track(landmark_id)) < vision.min_observations_for_promotion:
                    continue
                try:
                    self.lifecycle.promote_to_structured(landmark_id)
                except DegenerateLandmark as exc:
                    logger.debug(f"Promotion skipped: {exc}")

    def _assemble(
        self,
        frame_id: int,
        vision_update: VisionUpdate,
        changes: PendingChanges,
        summary: PreintegratedSummary,
        bias: BiasEstimate,
        pose: Pose,
        velocity: np.ndarray
    ) -> OptimizationBatch:
        """Lifecycle changes first, then the keyframe's own variables and factors."""
        init = self.config.initialization
        opt = self.config.optimization
        vision = self.config.vision

        new_values = dict(changes.new_values)
        new_factors = list(changes.new_factors)

        new_values[X(frame_id)] = pose
        new_values[V(frame_id)] = np.asarray(velocity, dtype=float)
        new_values[B(frame_id)] = bias

        if frame_id == 0:
            new_factors.append(PosePrior(
                frame_id=frame_id,
                pose=pose,
                sigmas=np.array([
                    init.initial_roll_pitch_sigma, init.initial_roll_pitch_sigma, init.initial_yaw_sigma,
                    init.initial_position_sigma, init.initial_position_sigma, init.initial_position_sigma
                ])
            ))
            new_factors.append(VelocityPrior(
                frame_id=frame_id, velocity=np.asarray(velocity, dtype=float),
                sigma=init.initial_velocity_sigma
            ))
            new_factors.append(BiasPrior(
                frame_id=frame_id,
                bias=bias,
                sigmas=np.array([init.initial_accelerometer_sigma] * 3 + [init.initial_gyroscope_sigma] * 3)
            ))
        else:
            previous = frame_id - 1
            new_factors.append(ImuFactor(from_frame=previous, to_frame=frame_id, summary=summary))

            if vision_update.tracking_status == TrackingStatus.LOW_PARALLAX:
                new_factors.append(VelocityPrior(
                    frame_id=frame_id, velocity=np.zeros(3), sigma=opt.zero_velocity_sigma
                ))
                new_factors.append(BetweenPoseFactor(
                    from_frame=previous,
                    to_frame=frame_id,
                    relative_pose=Pose(),
                    sigmas=np.array([opt.no_motion_rotation_sigma] * 3 + [opt.no_motion_position_sigma] * 3)
                ))
            elif (vision_update.tracking_status == TrackingStatus.NOMINAL
                    and vision.add_between_stereo_factors
                    and vision_update.relative_pose is not None):
                new_factors.append(BetweenPoseFactor(
                    from_frame=previous,
                    to_frame=frame_id,
                    relative_pose=vision_update.relative_pose,
                    sigmas=np.array(
                        [vision.between_rotation_precision ** -0.5] * 3
                        + [vision.between_translation_precision ** -0.5] * 3
                    )
                ))

        return OptimizationBatch(
            new_values=new_values,
            new_factors=new_factors,
            delete_slots=list(changes.delete_slots),
            modified_slots=dict(changes.modified_slots)
        )

    def _absorb(
        self,
        frame_id: int,
        vision_update: VisionUpdate,
        batch: OptimizationBatch,
        result: EngineResult,
        planes: Sequence[PlaneRegion],
        pose: Pose,
        velocity: np.ndarray,
        bias: BiasEstimate
    ) -> EstimateUpdate:
        self.lifecycle.absorb_slots(batch.new_factors, result.new_slots)
        self.lifecycle.absorb_estimate(result.values)

        pose = result.values.get(X(frame_id), pose)
        velocity = np.asarray(result.values.get(V(frame_id), velocity), dtype=float)
        bias = result.values.get(B(frame_id), bias)

        refreshed_planes = []
        for plane in planes:
            estimate = result.values.get(P(plane.plane_id))
            if estimate is None:
                refreshed_planes.append(plane)
            else:
                refreshed_planes.append(PlaneRegion(
                    plane_id=plane.plane_id,
                    normal=estimate.normal,
                    distance=estimate.distance,
                    landmark_ids=plane.landmark_ids
                ))

        landmark_positions = self.lifecycle.triangulated_positions()
        landmark_positions.update(self.lifecycle.landmark_positions())

        update = EstimateUpdate(
            keyframe_id=frame_id,
            timestamp=vision_update.timestamp,
            pose=pose,
            velocity=velocity,
            bias=bias,
            landmark_positions=landmark_positions,
            planes=refreshed_planes,
            metadata={
                "iterations": result.iterations,
                "error": result.error,
                "num_new_factors": len(batch.new_factors),
                "num_deleted_factors": len(batch.delete_slots),
                "tracking_status": vision_update.tracking_status.value,
            }
        )

        self.preintegration.update_bias(bias)
        self.preintegration.reset_and_rebase(vision_update.timestamp)

        self._pose = pose
        self._velocity = velocity
        self._bias = bias
        self._last_timestamp = vision_update.timestamp
        self._keyframe_id += 1

        logger.info(
            f"Keyframe {frame_id}: {len(batch.new_factors)} new factors, "
            f"{len(batch.delete_slots)} deleted, {len(landmark_positions)} landmarks, "
            f"{len(refreshed_planes)} planes"
        )
        return update
