"""
Tracking collaborator interface.

The tracker runs on the caller's thread. It turns each sensor frame into a
camera pose, decides when to spawn keyframes and feeds them to the mapping
stage, and keeps the per-frame bookkeeping needed for trajectory export.
Concrete trackers implement :meth:`Tracker.track`; everything around it
(map-freeze mode, reset, bookkeeping) lives here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional

import cv2
import numpy as np

from world_map import Keyframe, KeyframeDatabase, WorldMap

LOGGER = logging.getLogger(__name__)


class TrackingState(IntEnum):
    """Tracking status reported after each frame."""
    SYSTEM_NOT_READY = -1
    NO_IMAGES_YET = 0
    NOT_INITIALIZED = 1
    OK = 2
    LOST = 3


@dataclass
class FrameInput:
    """One sensor frame handed to the tracker."""

    image: np.ndarray
    timestamp: float
    right_image: Optional[np.ndarray] = None  # Stereo
    depth: Optional[np.ndarray] = None  # RGB-D


@dataclass
class TrackedFrame:
    """Result of tracking a single frame."""

    pose: Optional[np.ndarray] = None  # 4x4 Tcw, None when tracking failed
    state: TrackingState = TrackingState.LOST
    landmark_ids: List[Optional[int]] = field(default_factory=list)
    keypoints_un: List[cv2.KeyPoint] = field(default_factory=list)
    reference_keyframe_id: Optional[int] = None

    # Keyframe spawned on this frame, forwarded to mapping unless the map is frozen
    new_keyframe: Optional[Keyframe] = None


class Tracker:
    """
    Base tracker.

    Subclasses override :meth:`track`. Landmarks referenced by a new
    keyframe must already be registered in the world map.
    """

    def __init__(self):
        self.state = TrackingState.NO_IMAGES_YET
        self.map_frozen = False
        self.current_frame = TrackedFrame(state=TrackingState.NO_IMAGES_YET)

        self.world_map: Optional[WorldMap] = None
        self.keyframe_database: Optional[KeyframeDatabase] = None
        self.local_mapper = None
        self.loop_closer = None
        self.stage_timeout: Optional[float] = None

        # Per-frame trajectory bookkeeping
        self.reference_keyframe_ids: List[int] = []
        self.frame_times: List[float] = []
        self.lost_flags: List[bool] = []
        self.relative_poses: List[np.ndarray] = []  # Tcr per frame

    def attach(
        self,
        world_map: WorldMap,
        keyframe_database: KeyframeDatabase,
        local_mapper,
        loop_closer,
        stage_timeout: Optional[float] = None,
    ):
        self.world_map = world_map
        self.keyframe_database = keyframe_database
        self.local_mapper = local_mapper
        self.loop_closer = loop_closer
        self.stage_timeout = stage_timeout

    # ------------------------------------------------------------------ #
    # Control
    # ------------------------------------------------------------------ #
    def set_map_freeze_mode(self, frozen: bool):
        """Localization-only mode: keep tracking, never change the map."""
        self.map_frozen = frozen
        LOGGER.info("Map freeze mode %s", "on" if frozen else "off")

    def reset(self):
        """Drop the trajectory, the map and every queued keyframe."""
        LOGGER.info("Resetting tracker")
        # Both stages acknowledge before the map is cleared, so a keyframe
        # still being mapped cannot land in the emptied map
        if self.local_mapper is not None:
            self.local_mapper.request_reset(self.stage_timeout)
        if self.loop_closer is not None:
            self.loop_closer.request_reset(self.stage_timeout)
        if self.keyframe_database is not None:
            self.keyframe_database.clear()
        if self.world_map is not None:
            self.world_map.clear()

        self.reference_keyframe_ids.clear()
        self.frame_times.clear()
        self.lost_flags.clear()
        self.relative_poses.clear()
        self.state = TrackingState.NO_IMAGES_YET
        self.current_frame = TrackedFrame(state=TrackingState.NO_IMAGES_YET)

    # ------------------------------------------------------------------ #
    # Frame entry points
    # ------------------------------------------------------------------ #
    def grab_monocular(self, image: np.ndarray, timestamp: float) -> Optional[np.ndarray]:
        return self._grab(FrameInput(image=image, timestamp=timestamp))

    def grab_stereo(self, left: np.ndarray, right: np.ndarray, timestamp: float) -> Optional[np.ndarray]:
        return self._grab(FrameInput(image=left, timestamp=timestamp, right_image=right))

    def grab_rgbd(self, image: np.ndarray, depth: np.ndarray, timestamp: float) -> Optional[np.ndarray]:
        return self._grab(FrameInput(image=image, timestamp=timestamp, depth=depth))

    def track(self, frame: FrameInput) -> TrackedFrame:
        raise NotImplementedError

    def _grab(self, frame: FrameInput) -> Optional[np.ndarray]:
        if self.state == TrackingState.NO_IMAGES_YET:
            self.state = TrackingState.NOT_INITIALIZED

        tracked = self.track(frame)
        self.current_frame = tracked
        self.state = tracked.state

        if tracked.new_keyframe is not None:
            if self.map_frozen:
                LOGGER.debug("Map frozen, dropping keyframe %d", tracked.new_keyframe.id)
            elif self.local_mapper is not None:
                self.local_mapper.insert_keyframe(tracked.new_keyframe)

        self._record_trajectory(tracked, frame.timestamp)
        return tracked.pose

    def _record_trajectory(self, tracked: TrackedFrame, timestamp: float):
        reference = None
        if self.world_map is not None:
            reference = self.world_map.get_keyframe(tracked.reference_keyframe_id)
        if reference is None and tracked.new_keyframe is not None:
            if tracked.new_keyframe.id == tracked.reference_keyframe_id:
                reference = tracked.new_keyframe

        if tracked.pose is not None and reference is not None:
            self.relative_poses.append(tracked.pose @ reference.get_pose_inverse())
            self.reference_keyframe_ids.append(reference.id)
            self.frame_times.append(timestamp)
            self.lost_flags.append(tracked.state == TrackingState.LOST)
        elif self.relative_poses:
            # Repeat the last known values so every frame keeps an entry
            self.relative_poses.append(self.relative_poses[-1])
            self.reference_keyframe_ids.append(self.reference_keyframe_ids[-1])
            self.frame_times.append(timestamp)
            self.lost_flags.append(True)
