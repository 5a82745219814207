"""
Top-level orchestrator of the mapping pipeline.

The System owns the world map and the keyframe database, runs the mapping
and loop-closing stages (plus an optional viewer) on their own threads, and
drives the tracker on the caller's thread once per sensor frame. Mode
changes (localization-only on/off) and resets are requested from any thread
and applied at the start of the next frame, before the frame reaches the
tracker.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

import cv2
import numpy as np

from persistence import MapSaveError, load_map, save_map
from reconstruction import MapReconstructor, ReconstructionReport
from stages import LocalMapping, LoopClosing, StageUnresponsiveError, WorkerStage, wait_until
from tracking import Tracker, TrackingState
from trajectory import save_keyframe_trajectory_tum, save_trajectory_kitti, save_trajectory_tum
from utils import get_config
from viewer import MapViewer
from world_map import KeyframeDatabase, MapConfig, WorldMap

LOGGER = logging.getLogger(__name__)


class Sensor(Enum):
    """Input sensor modality."""
    MONOCULAR = "monocular"
    STEREO = "stereo"
    RGBD = "rgbd"


class System:
    """
    Orchestrates tracking, background stages and map persistence.

    Usage:
        system = System(tracker, Sensor.STEREO, config)
        for left, right, t in frames:
            pose = system.track_stereo(left, right, t)
        system.shutdown()
        system.save_map("map.bin")
    """

    def __init__(
        self,
        tracker: Tracker,
        sensor: Union[Sensor, str] = Sensor.MONOCULAR,
        config: Optional[Dict] = None,
        local_mapper: Optional[LocalMapping] = None,
        loop_closer: Optional[LoopClosing] = None,
        viewer: Optional[WorkerStage] = None,
    ):
        self.config = config or get_config()
        self.sensor = Sensor(sensor)

        self.mode_poll_interval = self.config.get("mode_poll_interval", 0.001)
        self.shutdown_poll_interval = self.config.get("shutdown_poll_interval", 0.005)
        self.stage_timeout = self.config.get("stage_timeout")
        stage_poll = self.config.get("stage_poll_interval", 0.003)

        LOGGER.info("Starting system (sensor: %s)", self.sensor.value)
        self._check_vocabulary(self.config.get("vocabulary_file"))

        self.world_map = WorldMap(MapConfig.from_dict(self.config.get("mapping")))
        self.keyframe_database = KeyframeDatabase()

        self.local_mapper = local_mapper or LocalMapping(self.world_map, poll_interval=stage_poll)
        self.loop_closer = loop_closer or LoopClosing(
            self.world_map, self.keyframe_database, poll_interval=stage_poll
        )
        if viewer is None and self.config.get("use_viewer", False):
            viewer_cfg = self.config.get("viewer", {})
            viewer = MapViewer(
                self.world_map,
                size=tuple(viewer_cfg.get("size", (500, 500))),
                scale=viewer_cfg.get("scale", 50.0),
                refresh_interval=viewer_cfg.get("refresh_interval", 0.1),
                poll_interval=stage_poll,
            )
        self.viewer = viewer

        self.tracker = tracker
        self.tracker.attach(
            self.world_map, self.keyframe_database, self.local_mapper, self.loop_closer, self.stage_timeout
        )
        self.local_mapper.set_loop_closer(self.loop_closer)

        # Pending requests, each group behind its own lock
        self._mode_lock = threading.Lock()
        self._activate_localization = bool(self.config.get("activate_localization_mode", False))
        self._deactivate_localization = bool(self.config.get("deactivate_localization_mode", False))
        self._reset_lock = threading.Lock()
        self._reset_requested = False

        # Published tracking results
        self._state_lock = threading.Lock()
        self._tracking_state = TrackingState.SYSTEM_NOT_READY
        self._tracked_landmarks: List[Optional[int]] = []
        self._tracked_keypoints_un: List[cv2.KeyPoint] = []

        self.localization_mode = False
        self.last_reconstruction: Optional[ReconstructionReport] = None
        self._last_seen_change = 0
        self._shut_down = False

        self.local_mapper.start()
        self.loop_closer.start()

        if self.config.get("only_relocalization", False):
            map_file = self.config.get("map_file")
            LOGGER.info("Loading map from %s", map_file)
            if self.load_map(map_file):
                self.activate_localization_mode()

        if self.viewer is not None:
            self.viewer.start()

    # ------------------------------------------------------------------ #
    # Fatal configuration errors
    # ------------------------------------------------------------------ #
    @staticmethod
    def _fatal(message: str):
        LOGGER.critical(message)
        sys.exit(-1)

    def _check_vocabulary(self, path: Optional[str]):
        if path is None:
            return
        if not os.path.isfile(path) or not os.access(path, os.R_OK):
            self._fatal(f"Wrong path to vocabulary, failed to open: {path}")
        LOGGER.info("Vocabulary found at %s", path)

    def _require_sensor(self, sensor: Sensor, entry_point: str):
        if self.sensor != sensor:
            self._fatal(
                f"{entry_point} called but input sensor was set to {self.sensor.value}, not {sensor.value}"
            )

    # ------------------------------------------------------------------ #
    # Mode and reset requests
    # ------------------------------------------------------------------ #
    def activate_localization_mode(self):
        with self._mode_lock:
            self._activate_localization = True

    def deactivate_localization_mode(self):
        with self._mode_lock:
            self._deactivate_localization = True

    def request_reset(self):
        with self._reset_lock:
            self._reset_requested = True

    def _wait_for(self, predicate: Callable[[], bool], poll_interval: float, description: str):
        wait_until(predicate, poll_interval, self.stage_timeout, description)

    def _apply_mode_change(self):
        with self._mode_lock:
            activate = self._activate_localization
            deactivate = self._deactivate_localization and not activate
            if activate:
                self._activate_localization = False
            elif deactivate:
                self._deactivate_localization = False

        if activate:
            self.local_mapper.request_stop()
            try:
                self._wait_for(self.local_mapper.is_stopped, self.mode_poll_interval, "local mapping to stop")
            except StageUnresponsiveError:
                with self._mode_lock:
                    self._activate_localization = True
                raise
            self.tracker.set_map_freeze_mode(True)
            self.localization_mode = True
            LOGGER.info("Localization mode activated")
        elif deactivate:
            self.tracker.set_map_freeze_mode(False)
            self.local_mapper.release()
            self.localization_mode = False
            LOGGER.info("Localization mode deactivated")

    def _apply_reset(self):
        with self._reset_lock:
            reset = self._reset_requested
            self._reset_requested = False
        if reset:
            self.tracker.reset()

    # ------------------------------------------------------------------ #
    # Per-frame entry points
    # ------------------------------------------------------------------ #
    def track_monocular(self, image: np.ndarray, timestamp: float) -> Optional[np.ndarray]:
        self._require_sensor(Sensor.MONOCULAR, "track_monocular")
        return self._process(lambda: self.tracker.grab_monocular(image, timestamp))

    def track_stereo(self, left: np.ndarray, right: np.ndarray, timestamp: float) -> Optional[np.ndarray]:
        self._require_sensor(Sensor.STEREO, "track_stereo")
        return self._process(lambda: self.tracker.grab_stereo(left, right, timestamp))

    def track_rgbd(self, image: np.ndarray, depth: np.ndarray, timestamp: float) -> Optional[np.ndarray]:
        self._require_sensor(Sensor.RGBD, "track_rgbd")
        return self._process(lambda: self.tracker.grab_rgbd(image, depth, timestamp))

    def _process(self, grab: Callable[[], Optional[np.ndarray]]) -> Optional[np.ndarray]:
        # Mode and reset are fully applied before the tracker sees the frame
        self._apply_mode_change()
        self._apply_reset()

        pose = grab()

        frame = self.tracker.current_frame
        with self._state_lock:
            self._tracking_state = self.tracker.state
            self._tracked_landmarks = list(frame.landmark_ids)
            self._tracked_keypoints_un = list(frame.keypoints_un)
        return pose

    def get_tracking_state(self) -> TrackingState:
        with self._state_lock:
            return self._tracking_state

    def get_tracked_landmarks(self) -> List[Optional[int]]:
        with self._state_lock:
            return list(self._tracked_landmarks)

    def get_tracked_keypoints_un(self) -> List[cv2.KeyPoint]:
        with self._state_lock:
            return list(self._tracked_keypoints_un)

    def map_changed(self) -> bool:
        """True if the map had a structural change since the last call."""
        version = self.world_map.last_structural_change_version()
        if self._last_seen_change < version:
            self._last_seen_change = version
            return True
        return False

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #
    def shutdown(self):
        """Finish every stage and block until none of them is running."""
        if self._shut_down:
            return
        LOGGER.info("Shutting down")

        self.local_mapper.request_finish()
        self.loop_closer.request_finish()
        if self.viewer is not None:
            self.viewer.request_finish()
            self._wait_for(self.viewer.is_finished, self.shutdown_poll_interval, "viewer to finish")

        self._wait_for(
            lambda: (
                self.local_mapper.is_finished()
                and self.loop_closer.is_finished()
                and not self.loop_closer.is_running_global_optimization()
            ),
            self.shutdown_poll_interval,
            "mapping and loop closing to finish",
        )

        for stage in (self.local_mapper, self.loop_closer, self.viewer):
            if stage is not None:
                stage.join()
        self._shut_down = True
        LOGGER.info("All stages finished")

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #
    def save_map(self, filepath: Optional[str] = None):
        """
        Save the current map.

        Raises:
            MapSaveError: If no path is configured or the file cannot be written
        """
        filepath = filepath or self.config.get("map_file")
        if not filepath:
            raise MapSaveError("No map file configured")
        keyframes, landmarks = self.world_map.snapshot()
        LOGGER.info("Saving map to %s", filepath)
        save_map(filepath, keyframes, landmarks)

    def load_map(self, filepath: Optional[str] = None) -> bool:
        """
        Load a saved map, replacing the current one.

        Returns:
            False if there is no map to load (missing path or unreadable file)
        """
        filepath = filepath if filepath is not None else self.config.get("map_file")
        decoded = load_map(filepath)
        if decoded is None:
            return False

        self.world_map.clear()
        self.keyframe_database.clear()
        reconstructor = MapReconstructor(
            self.world_map,
            self.keyframe_database,
            poll_interval=self.config.get("reconstruction_poll_interval", 0.03),
        )
        report = reconstructor.reconstruct(decoded)
        self.last_reconstruction = report

        LOGGER.info("Inserted keyframes %d/%d, landmarks in map %d",
                    report.keyframes_inserted, report.keyframes_total, self.world_map.landmarks_in_map())
        return True

    # ------------------------------------------------------------------ #
    # Trajectory export
    # ------------------------------------------------------------------ #
    def save_trajectory_tum(self, filepath: str) -> bool:
        if self.sensor == Sensor.MONOCULAR:
            LOGGER.error("save_trajectory_tum cannot be used for monocular")
            return False
        return save_trajectory_tum(self.world_map, self.tracker, filepath) > 0

    def save_keyframe_trajectory_tum(self, filepath: str) -> bool:
        return save_keyframe_trajectory_tum(self.world_map, filepath) > 0

    def save_trajectory_kitti(self, filepath: str) -> bool:
        if self.sensor == Sensor.MONOCULAR:
            LOGGER.error("save_trajectory_kitti cannot be used for monocular")
            return False
        return save_trajectory_kitti(self.world_map, self.tracker, filepath) > 0
