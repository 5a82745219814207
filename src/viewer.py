"""
Off-screen map viewer stage.

Renders a top-down view of the world map on its own thread whenever the map
changes. The latest rendering is kept in memory for callers to display or
store; no window is opened here.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional, Tuple

import cv2
import numpy as np

from stages import WorkerStage
from world_map import WorldMap

LOGGER = logging.getLogger(__name__)


def render_top_down(
    world_map: WorldMap,
    size: Tuple[int, int] = (500, 500),
    scale: float = 50.0,
) -> np.ndarray:
    """
    Render top-down view of the map.

    Args:
        world_map: The map to visualize
        size: Output image size
        scale: Pixels per meter

    Returns:
        BGR image
    """
    img = np.zeros((size[1], size[0], 3), dtype=np.uint8) + 30

    center = np.array([size[0] // 2, size[1] // 2])

    # Draw landmarks
    for pt in world_map.get_point_cloud():
        x = int(center[0] + pt[0] * scale)
        y = int(center[1] - pt[2] * scale)  # Z is forward

        if 0 <= x < size[0] and 0 <= y < size[1]:
            cv2.circle(img, (x, y), 2, (200, 200, 200), -1)

    def to_pixel(pos):
        return int(center[0] + pos[0] * scale), int(center[1] - pos[2] * scale)

    positions = {kf_id: twc[:3, 3] for kf_id, twc in world_map.get_keyframe_poses()}

    # Draw spanning tree edges
    for kf_id, pos in positions.items():
        keyframe = world_map.get_keyframe(kf_id)
        parent_pos = positions.get(keyframe.parent_id) if keyframe is not None else None
        if parent_pos is not None:
            cv2.line(img, to_pixel(pos), to_pixel(parent_pos), (0, 120, 0), 1)

    # Draw keyframe positions
    for kf_id, pos in positions.items():
        x, y = to_pixel(pos)
        if 0 <= x < size[0] and 0 <= y < size[1]:
            cv2.circle(img, (x, y), 5, (0, 255, 0), -1)
            cv2.putText(img, str(kf_id), (x + 5, y - 5),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.3, (0, 255, 0), 1)

    # Draw scale bar
    cv2.line(img, (20, size[1] - 20), (20 + int(scale), size[1] - 20), (255, 255, 255), 2)
    cv2.putText(img, "1m", (20, size[1] - 25), cv2.FONT_HERSHEY_SIMPLEX, 0.4, (255, 255, 255), 1)

    # Draw stats
    stats = world_map.get_statistics()
    cv2.putText(img, f"Landmarks: {stats['landmarks_in_map']}", (10, 20),
                cv2.FONT_HERSHEY_SIMPLEX, 0.4, (255, 255, 255), 1)
    cv2.putText(img, f"Keyframes: {stats['keyframes_in_map']}", (10, 40),
                cv2.FONT_HERSHEY_SIMPLEX, 0.4, (255, 255, 255), 1)

    return img


class MapViewer(WorkerStage):
    """Viewer stage keeping an up-to-date top-down rendering of the map."""

    name = "viewer"

    def __init__(
        self,
        world_map: WorldMap,
        size: Tuple[int, int] = (500, 500),
        scale: float = 50.0,
        refresh_interval: float = 0.1,
        poll_interval: float = 0.003,
    ):
        super().__init__(poll_interval)
        self.world_map = world_map
        self.size = tuple(size)
        self.scale = scale
        self.refresh_interval = refresh_interval

        self._image_lock = threading.Lock()
        self._latest: Optional[np.ndarray] = None
        self._rendered_version = -1
        self._last_render = 0.0
        self.frames_rendered = 0

    def step(self) -> bool:
        now = time.monotonic()
        version = self.world_map.last_structural_change_version()
        if version == self._rendered_version and now - self._last_render < self.refresh_interval:
            return False

        image = render_top_down(self.world_map, self.size, self.scale)
        with self._image_lock:
            self._latest = image
        self._rendered_version = version
        self._last_render = now
        self.frames_rendered += 1
        return True

    def latest_image(self) -> Optional[np.ndarray]:
        with self._image_lock:
            return None if self._latest is None else self._latest.copy()
