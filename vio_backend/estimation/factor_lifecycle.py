"""
Landmark and plane factor lifecycle.

Decides which factor type represents each landmark, queues factor additions
and deletions for the optimization engine, and keeps track of where every
factor is in its life:

    PENDING    created, not yet handed to the engine
    IN_FLIGHT  drained into a batch, engine slot not known yet
    LIVE       engine slot known
    RETIRED    cancelled or scheduled for deletion

Landmark representations only move forward:

    absent -> UNSTRUCTURED -> STRUCTURED <-> STRUCTURED_WITH_REGULARITY

Deleting a factor whose slot is not known yet is deferred until the slot is
absorbed, and the deletion then goes out with the next batch. A factor that
never left the pending set is simply cancelled.

All bookkeeping changes go through an undo log, so ``restore`` reverts a
step in time proportional to what the step changed.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

import numpy as np

from vio_backend.common.config import BackendModality, RegularityParams, VisionParams
from vio_backend.common.data_structures import (
    FactorRepresentation, FrameId, LandmarkId, PlaneId, PlaneRegion, Pose, StereoObservation
)
from vio_backend.common.errors import DegenerateLandmark
from vio_backend.estimation.factors import (
    L, P, Factor, Key, OrientedPlane, PlanePriorFactor, PointPlaneFactor,
    SmartStereoFactor, StereoProjectionFactor
)
from vio_backend.estimation.feature_tracks import LandmarkTrackTable
from vio_backend.estimation.optimization_engine import FactorSlot
from vio_backend.estimation.stereo_camera import StereoCamera
from vio_backend.utils.undo_log import Checkpoint, UndoLog

logger = logging.getLogger(__name__)


class FactorState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    LIVE = "live"
    RETIRED = "retired"


@dataclass(eq=False)
class FactorRecord:
    """Bookkeeping for one factor owned by the lifecycle manager."""
    factor: Factor
    state: FactorState = FactorState.PENDING
    slot: Optional[FactorSlot] = None
    retire_requested: bool = False
    modified: bool = False


@dataclass
class LandmarkRecord:
    """Active representation of one landmark and the factors implementing it."""
    landmark_id: LandmarkId
    representation: FactorRepresentation = FactorRepresentation.UNSTRUCTURED
    smart_factor: Optional[FactorRecord] = None
    projection_factors: List[FactorRecord] = field(default_factory=list)
    regularity_factor: Optional[FactorRecord] = None
    plane_id: Optional[PlaneId] = None


@dataclass
class PlaneRecord:
    """A plane that has entered the problem. Its prior is never removed."""
    plane_id: PlaneId
    prior: FactorRecord
    attached: Set[LandmarkId] = field(default_factory=set)


@dataclass
class PendingChanges:
    """Everything queued since the last drain."""
    new_values: Dict[Key, Any] = field(default_factory=dict)
    new_factors: List[Factor] = field(default_factory=list)
    delete_slots: List[FactorSlot] = field(default_factory=list)
    modified_slots: Dict[FactorSlot, Factor] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.new_values or self.new_factors or self.delete_slots or self.modified_slots)


def _submission_order(record: FactorRecord) -> int:
    factor = record.factor
    if isinstance(factor, SmartStereoFactor):
        return 0
    if isinstance(factor, StereoProjectionFactor):
        return 1
    return 2


class FactorLifecycleManager:
    """
    Owns one record per landmark and per plane in the problem.

    The manager reads observation history from the shared track table and
    consumes the optimized estimate after every step to make the next
    round's representation decisions.
    """

    def __init__(
        self,
        tracks: LandmarkTrackTable,
        camera: Optional[StereoCamera] = None,
        vision_params: Optional[VisionParams] = None,
        regularity_params: Optional[RegularityParams] = None
    ):
        self.tracks = tracks
        self.camera = camera or StereoCamera()
        self.vision_params = vision_params or VisionParams()
        self.regularity_params = regularity_params or RegularityParams()
        self._log = UndoLog()

        self._landmarks: Dict[LandmarkId, LandmarkRecord] = {}
        self._planes: Dict[PlaneId, PlaneRecord] = {}
        self._records: Dict[int, FactorRecord] = {}
        self._pending: List[FactorRecord] = []
        self._pending_values: Dict[Key, Any] = {}
        self._pending_deletions: List[FactorSlot] = []
        self._modified: List[FactorRecord] = []
        self._in_flight: Dict[int, FactorRecord] = {}

        # Latest estimate used for decisions
        self._poses: Dict[FrameId, Pose] = {}
        self._points: Dict[LandmarkId, np.ndarray] = {}
        self._plane_estimates: Dict[PlaneId, OrientedPlane] = {}

    @property
    def modality(self) -> BackendModality:
        return self.regularity_params.modality

    # ------------------------------------------------------------------
    # Factor record helpers
    # ------------------------------------------------------------------

    def _queue(self, factor: Factor) -> FactorRecord:
        record = FactorRecord(factor=factor)
        self._log.setitem(self._records, factor.factor_id, record)
        self._log.append(self._pending, record)
        return record

    def _retire(self, record: Optional[FactorRecord]) -> None:
        if record is None or record.state == FactorState.RETIRED:
            return
        factor_id = record.factor.factor_id
        if record.state == FactorState.PENDING:
            self._log.remove(self._pending, record)
            self._log.setattr(record, "state", FactorState.RETIRED)
            self._log.pop(self._records, factor_id)
            logger.debug(f"Cancelled pending {record.factor!r}")
        elif record.state == FactorState.IN_FLIGHT:
            self._log.setattr(record, "retire_requested", True)
            logger.debug(f"Deferred deletion of in-flight {record.factor!r}")
        else:
            self._log.append(self._pending_deletions, record.slot)
            if record in self._modified:
                self._log.remove(self._modified, record)
            self._log.setattr(record, "state", FactorState.RETIRED)
            self._log.pop(self._records, factor_id)
            logger.debug(f"Scheduled deletion of {record.factor!r} at {record.slot}")

    def _mark_modified(self, record: FactorRecord) -> None:
        if record.state == FactorState.LIVE:
            if record not in self._modified:
                self._log.append(self._modified, record)
        elif record.state == FactorState.IN_FLIGHT:
            self._log.setattr(record, "modified", True)

    def factor_state(self, factor: Factor) -> FactorState:
        """State of a factor; anything no longer tracked is RETIRED."""
        record = self._records.get(factor.factor_id)
        return record.state if record is not None else FactorState.RETIRED

    def factor_slot(self, factor: Factor) -> Optional[FactorSlot]:
        record = self._records.get(factor.factor_id)
        return record.slot if record is not None else None

    # ------------------------------------------------------------------
    # Landmarks
    # ------------------------------------------------------------------

    def _landmark(self, landmark_id: LandmarkId) -> LandmarkRecord:
        try:
            return self._landmarks[landmark_id]
        except KeyError:
            raise KeyError(f"Landmark {landmark_id} is not in the problem") from None

    def add_landmark(self, landmark_id: LandmarkId) -> LandmarkRecord:
        """
        Introduce a landmark as a smart factor over its whole track.

        Raises:
            KeyError: The landmark has no track.
            ValueError: The landmark is already in the problem.
        """
        if landmark_id in self._landmarks:
            raise ValueError(f"Landmark {landmark_id} is already in the problem")
        track = self.tracks.track(landmark_id)

        smart = SmartStereoFactor(landmark_id=landmark_id)
        for frame_id, observation in track.observations:
            smart.add_measurement(frame_id, observation)

        record = LandmarkRecord(landmark_id=landmark_id, smart_factor=self._queue(smart))
        self._log.setitem(self._landmarks, landmark_id, record)
        logger.debug(f"Added landmark {landmark_id} with {len(track)} observations")
        return record

    def add_observation(
        self,
        landmark_id: LandmarkId,
        frame_id: FrameId,
        observation: StereoObservation
    ) -> None:
        """
        Propagate a new observation of a landmark in the problem.

        Unstructured landmarks extend their smart factor in place; a live
        smart factor is then reported as modified. Structured landmarks get a
        new projection factor on their point.
        """
        record = self._landmark(landmark_id)
        if record.representation == FactorRepresentation.UNSTRUCTURED:
            self._log.setitem(record.smart_factor.factor.measurements, frame_id, observation)
            self._mark_modified(record.smart_factor)
        else:
            factor = StereoProjectionFactor(
                landmark_id=landmark_id, frame_id=frame_id, observation=observation
            )
            self._log.append(record.projection_factors, self._queue(factor))

    def promote_to_structured(self, landmark_id: LandmarkId) -> np.ndarray:
        """
        Replace a landmark's smart factor with an explicit point and one
        projection factor per observation.

        Returns:
            Triangulated point

        Raises:
            DegenerateLandmark: Too few posed observations or an unsafe
                triangulation. The landmark is left unchanged.
            ValueError: The landmark is already structured.
        """
        record = self._landmark(landmark_id)
        if record.representation != FactorRepresentation.UNSTRUCTURED:
            raise ValueError(f"Landmark {landmark_id} is already structured")

        track = self.tracks.track(landmark_id)
        views = [
            (self._poses[frame_id], observation)
            for frame_id, observation in track.observations
            if frame_id in self._poses
        ]
        required = self.vision_params.min_observations_for_promotion
        if len(views) < required:
            raise DegenerateLandmark(
                landmark_id, f"{len(views)} posed observations, {required} required"
            )

        point = self.camera.triangulate(
            landmark_id,
            views,
            rank_tolerance=self.vision_params.rank_tolerance,
            max_distance=self.vision_params.landmark_distance_threshold
        )

        self._log.setitem(self._pending_values, L(landmark_id), point.copy())
        self._log.setitem(self._points, landmark_id, point)
        for frame_id, observation in track.observations:
            factor = StereoProjectionFactor(
                landmark_id=landmark_id, frame_id=frame_id, observation=observation
            )
            self._log.append(record.projection_factors, self._queue(factor))

        self._retire(record.smart_factor)
        self._log.setattr(record, "smart_factor", None)
        self._log.setattr(record, "representation", FactorRepresentation.STRUCTURED)
        logger.info(f"Promoted landmark {landmark_id} to structured ({len(track)} projections)")
        return point

    def drop_landmark(self, landmark_id: LandmarkId) -> None:
        """
        Remove a landmark from the problem and the track table.

        Raises:
            ValueError: The landmark is structured; its point must stay
                constrained.
        """
        record = self._landmarks.get(landmark_id)
        if record is not None:
            if record.representation != FactorRepresentation.UNSTRUCTURED:
                raise ValueError(f"Cannot drop structured landmark {landmark_id}")
            self._retire(record.smart_factor)
            self._log.pop(self._landmarks, landmark_id)
        self.tracks.erase(landmark_id)

    def _is_droppable(self, landmark_id: LandmarkId) -> bool:
        record = self._landmarks.get(landmark_id)
        return record is None or record.representation == FactorRepresentation.UNSTRUCTURED

    def prune_degenerate(self, horizon: int) -> List[LandmarkId]:
        """Drop unstructured tracks whose last ``horizon`` observations lack stereo."""
        dropped = []
        for landmark_id in self.tracks.all_landmark_ids():
            if not self._is_droppable(landmark_id):
                continue
            track = self.tracks.track(landmark_id)
            if len(track) >= horizon and track.num_valid_stereo(horizon) == 0:
                self.drop_landmark(landmark_id)
                dropped.append(landmark_id)
        if dropped:
            logger.info(f"Pruned {len(dropped)} landmarks without stereo support")
        return dropped

    def prune_stale(self, current_frame: FrameId, max_age: int) -> List[LandmarkId]:
        """Drop unstructured tracks not observed within ``max_age`` keyframes."""
        dropped = []
        for landmark_id in self.tracks.all_landmark_ids():
            if not self._is_droppable(landmark_id):
                continue
            last_frame = self.tracks.track(landmark_id).last_frame_id()
            if last_frame is not None and current_frame - last_frame > max_age:
                self.drop_landmark(landmark_id)
                dropped.append(landmark_id)
        if dropped:
            logger.debug(f"Pruned {len(dropped)} stale tracks at frame {current_frame}")
        return dropped

    # ------------------------------------------------------------------
    # Regularities
    # ------------------------------------------------------------------

    def _introduce_plane(self, plane: PlaneRegion) -> PlaneRecord:
        value = OrientedPlane(plane.normal, plane.distance)
        self._log.setitem(self._pending_values, P(plane.plane_id), value)
        self._log.setitem(self._plane_estimates, plane.plane_id, value)
        prior = self._queue(PlanePriorFactor(plane_id=plane.plane_id, plane=value))
        plane_record = PlaneRecord(plane_id=plane.plane_id, prior=prior)
        self._log.setitem(self._planes, plane.plane_id, plane_record)
        logger.info(f"Plane {plane.plane_id} entered the problem")
        return plane_record

    def attach_regularity(self, landmark_id: LandmarkId, plane: PlaneRegion) -> None:
        """
        Constrain a structured landmark to lie on ``plane``.

        Raises:
            ValueError: The landmark is unstructured.
        """
        record = self._landmark(landmark_id)
        if record.representation == FactorRepresentation.UNSTRUCTURED:
            raise ValueError(f"Landmark {landmark_id} has no point to attach to a plane")
        if record.plane_id == plane.plane_id:
            return
        if record.plane_id is not None:
            self.detach_regularity(landmark_id)

        plane_record = self._planes.get(plane.plane_id) or self._introduce_plane(plane)
        factor = PointPlaneFactor(landmark_id=landmark_id, plane_id=plane.plane_id)
        self._log.setattr(record, "regularity_factor", self._queue(factor))
        self._log.setattr(record, "plane_id", plane.plane_id)
        self._log.setattr(record, "representation", FactorRepresentation.STRUCTURED_WITH_REGULARITY)
        self._log.add(plane_record.attached, landmark_id)
        logger.debug(f"Attached landmark {landmark_id} to plane {plane.plane_id}")

    def detach_regularity(self, landmark_id: LandmarkId) -> bool:
        """Remove a landmark's point-plane factor. Returns False if it had none."""
        record = self._landmark(landmark_id)
        if record.regularity_factor is None:
            return False
        self._retire(record.regularity_factor)
        plane_record = self._planes.get(record.plane_id)
        if plane_record is not None:
            self._log.discard(plane_record.attached, landmark_id)
        logger.debug(f"Detached landmark {landmark_id} from plane {record.plane_id}")
        self._log.setattr(record, "regularity_factor", None)
        self._log.setattr(record, "plane_id", None)
        self._log.setattr(record, "representation", FactorRepresentation.STRUCTURED)
        return True

    def _plane_estimate(self, plane: PlaneRegion) -> OrientedPlane:
        estimate = self._plane_estimates.get(plane.plane_id)
        return estimate if estimate is not None else OrientedPlane(plane.normal, plane.distance)

    def _within_tolerance(self, landmark_id: LandmarkId, plane: OrientedPlane) -> bool:
        point = self._points.get(landmark_id)
        if point is None:
            return False
        distance = abs(float(plane.normal @ point) - plane.distance)
        return distance <= self.regularity_params.plane_distance_tolerance

    def reconcile_plane_regions(self, planes: Sequence[PlaneRegion]) -> List[PlaneRegion]:
        """
        Bring landmark-plane attachments in line with the detected planes.

        Returns:
            The planes kept this step, with normal and distance taken from
            the latest estimate and their attached landmarks
        """
        if not self.modality.uses_regularities:
            return []

        planes_by_id = {plane.plane_id: plane for plane in planes}

        # Detach landmarks whose plane vanished, which left it or drifted off it
        for landmark_id, record in list(self._landmarks.items()):
            if record.plane_id is None:
                continue
            plane = planes_by_id.get(record.plane_id)
            if plane is None or landmark_id not in plane.landmark_ids:
                self.detach_regularity(landmark_id)
            elif not self._within_tolerance(landmark_id, self._plane_estimate(plane)):
                logger.debug(f"Landmark {landmark_id} is off plane {plane.plane_id}")
                self.detach_regularity(landmark_id)

        kept = []
        for plane in planes:
            estimate = self._plane_estimate(plane)
            members = [lmk for lmk in sorted(plane.landmark_ids) if lmk in self._landmarks]

            if self.modality.promotes_plane_members or self.modality.promotes_all_landmarks:
                for landmark_id in members:
                    record = self._landmarks[landmark_id]
                    if record.representation != FactorRepresentation.UNSTRUCTURED:
                        continue
                    try:
                        self.promote_to_structured(landmark_id)
                    except DegenerateLandmark as exc:
                        logger.debug(f"Skipping plane member: {exc}")

            candidates = [
                lmk for lmk in members
                if self._landmarks[lmk].representation == FactorRepresentation.STRUCTURED
                and self._within_tolerance(lmk, estimate)
            ]
            plane_record = self._planes.get(plane.plane_id)
            attached = len(plane_record.attached) if plane_record is not None else 0
            dormant = plane_record is None or not plane_record.attached
            if dormant and len(candidates) < self.regularity_params.min_plane_constraints:
                logger.debug(
                    f"Plane {plane.plane_id} has {len(candidates)} constraints, "
                    f"{self.regularity_params.min_plane_constraints} required"
                )
                continue

            for landmark_id in candidates:
                self.attach_regularity(landmark_id, plane)

            plane_record = self._planes[plane.plane_id]
            if not plane_record.attached:
                if attached:
                    logger.info(f"Forgetting plane {plane.plane_id}: no supporting landmarks")
                continue
            kept.append(PlaneRegion(
                plane_id=plane.plane_id,
                normal=estimate.normal,
                distance=estimate.distance,
                landmark_ids=set(plane_record.attached)
            ))
        return kept

    # ------------------------------------------------------------------
    # Engine exchange
    # ------------------------------------------------------------------

    def pending_factors_and_deletions(self) -> PendingChanges:
        """
        Drain everything queued since the last drain.

        New factors are ordered smart factors first, then projection
        factors, then plane factors. Drained factors are in flight until
        ``absorb_slots`` reports their slots.
        """
        drained = sorted(self._pending, key=_submission_order)
        for record in drained:
            self._log.setattr(record, "state", FactorState.IN_FLIGHT)
            self._log.setitem(self._in_flight, record.factor.factor_id, record)

        changes = PendingChanges(
            new_values=dict(self._pending_values),
            new_factors=[record.factor for record in drained],
            delete_slots=list(self._pending_deletions),
            modified_slots={record.slot: record.factor for record in self._modified}
        )
        self._log.setattr(self, "_pending", [])
        self._log.setattr(self, "_pending_values", {})
        self._log.setattr(self, "_pending_deletions", [])
        self._log.setattr(self, "_modified", [])
        return changes

    def absorb_slots(self, factors: Iterable[Factor], slots: Iterable[FactorSlot]) -> None:
        """
        Record the engine slots of drained factors.

        Factors retired while in flight have their slot queued for deletion
        in the next batch. Factors not owned by this manager are ignored.
        """
        for factor, slot in zip(factors, slots):
            record = self._log.pop(self._in_flight, factor.factor_id, None)
            if record is None:
                continue
            self._log.setattr(record, "slot", slot)
            self._log.setattr(record, "state", FactorState.LIVE)
            if record.retire_requested:
                self._log.setattr(record, "retire_requested", False)
                self._retire(record)
            elif record.modified:
                self._log.setattr(record, "modified", False)
                self._mark_modified(record)

    def absorb_estimate(self, values: Dict[Key, Any]) -> None:
        """Store optimized poses, points and planes for the next decisions."""
        for (kind, index), value in values.items():
            if kind == "x":
                self._log.setitem(self._poses, index, value)
            elif kind == "l" and index in self._landmarks:
                self._log.setitem(self._points, index, np.asarray(value, dtype=float).copy())
            elif kind == "p":
                self._log.setitem(self._plane_estimates, index, value)

    def set_pose_guess(self, frame_id: FrameId, pose: Pose) -> None:
        """Provide a pose for a keyframe the engine has not estimated yet."""
        if frame_id not in self._poses:
            self._log.setitem(self._poses, frame_id, pose)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def representation(self, landmark_id: LandmarkId) -> Optional[FactorRepresentation]:
        """Active representation, or None for a landmark not in the problem."""
        record = self._landmarks.get(landmark_id)
        return record.representation if record is not None else None

    def plane_of(self, landmark_id: LandmarkId) -> Optional[PlaneId]:
        return self._landmark(landmark_id).plane_id

    def factors_for_landmark(self, landmark_id: LandmarkId) -> List[Factor]:
        """Active (not retired) factors implementing a landmark."""
        record = self._landmark(landmark_id)
        records = [record.smart_factor, *record.projection_factors, record.regularity_factor]
        return [
            r.factor for r in records
            if r is not None and r.state != FactorState.RETIRED and not r.retire_requested
        ]

    def active_landmark_ids(self) -> List[LandmarkId]:
        return list(self._landmarks.keys())

    def plane_ids(self) -> Set[PlaneId]:
        """Planes that have entered the problem."""
        return set(self._planes.keys())

    def landmark_positions(self) -> Dict[LandmarkId, np.ndarray]:
        """Latest points of structured landmarks."""
        return {lmk: point.copy() for lmk, point in self._points.items() if lmk in self._landmarks}

    def triangulated_positions(self) -> Dict[LandmarkId, np.ndarray]:
        """Best-effort points of unstructured landmarks from the latest poses."""
        positions = {}
        for landmark_id, record in self._landmarks.items():
            if record.representation != FactorRepresentation.UNSTRUCTURED:
                continue
            track = self.tracks.track(landmark_id)
            views = [
                (self._poses[frame_id], obs)
                for frame_id, obs in track.observations
                if frame_id in self._poses
            ]
            try:
                positions[landmark_id] = self.camera.triangulate(
                    landmark_id,
                    views,
                    rank_tolerance=self.vision_params.rank_tolerance,
                    max_distance=self.vision_params.landmark_distance_threshold
                )
            except DegenerateLandmark:
                continue
        return positions

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def snapshot(self) -> Checkpoint:
        """Mark the current bookkeeping (the track table is snapshotted separately)."""
        return self._log.checkpoint()

    def restore(self, snapshot: Checkpoint) -> None:
        """
        Revert every change made since ``snapshot``.

        Raises:
            ValueError: A newer snapshot was taken since.
        """
        self._log.rollback(snapshot)
