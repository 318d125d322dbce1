"""
Per-landmark observation history.
"""

import logging
from typing import Dict, Iterator, List, Tuple

from vio_backend.common.data_structures import (
    FeatureTrack, FrameId, LandmarkId, StereoObservation
)
from vio_backend.common.errors import DuplicateObservation
from vio_backend.utils.undo_log import Checkpoint, UndoLog

logger = logging.getLogger(__name__)


class LandmarkIdView:
    """
    Restartable view over the landmark ids present when it was created.

    Every iteration walks the same copy, so the table may be mutated while
    the view is being iterated.
    """

    def __init__(self, landmark_ids: List[LandmarkId]):
        self._landmark_ids = tuple(landmark_ids)

    def __iter__(self) -> Iterator[LandmarkId]:
        return iter(self._landmark_ids)

    def __len__(self) -> int:
        return len(self._landmark_ids)

    def __contains__(self, landmark_id) -> bool:
        return landmark_id in self._landmark_ids


class LandmarkTrackTable:
    """
    Map from landmark id to its feature track.

    Tracks only grow; nothing is evicted implicitly. Callers bound the table
    by erasing landmarks they no longer need. Changes go through an undo
    log so a checkpoint can be restored without copying the table.
    """

    def __init__(self):
        self._tracks: Dict[LandmarkId, FeatureTrack] = {}
        self._log = UndoLog()

    def add_observation(
        self,
        landmark_id: LandmarkId,
        frame_id: FrameId,
        observation: StereoObservation
    ) -> FeatureTrack:
        """
        Append an observation to a landmark's track, creating it if needed.

        Raises:
            DuplicateObservation: The track already has this frame. The track
                is left unchanged.
            ValueError: The frame id is older than the track's last frame.
        """
        track = self._tracks.get(landmark_id)
        if track is None:
            track = FeatureTrack(landmark_id=landmark_id)
            self._log.setitem(self._tracks, landmark_id, track)

        last_frame = track.last_frame_id()
        if last_frame is not None:
            if frame_id == last_frame or frame_id in track.frame_ids():
                raise DuplicateObservation(landmark_id, frame_id)
            if frame_id < last_frame:
                raise ValueError(
                    f"Frame {frame_id} is older than the last observation "
                    f"of landmark {landmark_id} (frame {last_frame})"
                )

        self._log.append(track.observations, (frame_id, observation))
        return track

    def track(self, landmark_id: LandmarkId) -> FeatureTrack:
        """
        Raises:
            KeyError: Unknown landmark.
        """
        return self._tracks[landmark_id]

    def all_landmark_ids(self) -> LandmarkIdView:
        return LandmarkIdView(list(self._tracks.keys()))

    def erase(self, landmark_id: LandmarkId) -> None:
        if self._log.pop(self._tracks, landmark_id, None) is not None:
            logger.debug(f"Erased track of landmark {landmark_id}")

    def __contains__(self, landmark_id) -> bool:
        return landmark_id in self._tracks

    def __len__(self) -> int:
        return len(self._tracks)

    def snapshot(self) -> Checkpoint:
        """Checkpoint the table; only the latest checkpoint can be restored."""
        return self._log.checkpoint()

    def restore(self, snapshot: Checkpoint) -> None:
        """
        Undo every change since ``snapshot``.

        Raises:
            ValueError: A newer snapshot was taken since.
        """
        self._log.rollback(snapshot)

    def observation_pairs(self, landmark_id: LandmarkId) -> List[Tuple[FrameId, StereoObservation]]:
        return list(self._tracks[landmark_id].observations)
