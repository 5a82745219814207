"""
Demo script for running MAPKEEPER end to end without a camera.

A synthetic stereo rig slides along a wall of points. The demo builds a map
with the live pipeline, switches to localization-only mode halfway through,
saves the map, reloads it into a fresh system and writes the trajectories
and a top-down rendering of the reloaded map.
"""

import argparse
import logging
import os
import sys

import cv2
import numpy as np

# Add src directory to path for imports
sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from stages import wait_until  # type: ignore
from system import Sensor, System  # type: ignore
from tracking import FrameInput, TrackedFrame, Tracker, TrackingState  # type: ignore
from utils import get_config, setup_logging  # type: ignore
from viewer import render_top_down  # type: ignore
from world_map import Keyframe, Landmark  # type: ignore


LOGGER = logging.getLogger(__name__)

FOCAL = 500.0
CX, CY = 320.0, 240.0


class SyntheticTracker(Tracker):
    """
    Tracker following a known straight-line trajectory.

    The world holds a row of points three meters ahead of the rig. Every
    ``keyframe_every`` frames a keyframe observing the points in view is
    spawned, and points seen for the first time are added to the map.
    """

    def __init__(self, step=0.05, keyframe_every=4, num_points=60, seed=0):
        super().__init__()
        self.step = step
        self.keyframe_every = keyframe_every
        rng = np.random.default_rng(seed)
        self.points = np.stack([
            np.linspace(-1.0, 5.0, num_points),
            rng.uniform(-0.5, 0.5, num_points),
            np.full(num_points, 3.0) + rng.uniform(-0.2, 0.2, num_points),
        ], axis=1).astype(np.float32)
        self.descriptors = rng.integers(0, 256, size=(num_points, 32), dtype=np.uint8)
        self.frame_index = 0
        self.next_keyframe_id = 0
        self.last_keyframe_id = None

    def _pose(self):
        pose = np.eye(4, dtype=np.float32)
        pose[0, 3] = -self.step * self.frame_index
        return pose

    def _visible(self, pose):
        cam = (pose[:3, :3] @ self.points.T).T + pose[:3, 3]
        u = FOCAL * cam[:, 0] / cam[:, 2] + CX
        v = FOCAL * cam[:, 1] / cam[:, 2] + CY
        mask = (u >= 0) & (u < 2 * CX) & (v >= 0) & (v < 2 * CY)
        return np.flatnonzero(mask), u, v

    def _spawn_keyframe(self, pose, timestamp):
        indices, u, v = self._visible(pose)
        keypoints = [cv2.KeyPoint(float(u[i]), float(v[i]), 7.0, 0.0, 1.0, 0, -1) for i in indices]
        keyframe = Keyframe(
            id=self.next_keyframe_id,
            timestamp=timestamp,
            pose=pose,
            keypoints=keypoints,
            keypoints_un=list(keypoints),
            descriptors=self.descriptors[indices].copy(),
        )
        for slot, point_index in enumerate(indices):
            landmark_id = int(point_index)
            if self.world_map.get_landmark(landmark_id) is None:
                self.world_map.add_landmark(
                    Landmark(id=landmark_id, position=self.points[point_index].reshape(3, 1).copy())
                )
            keyframe.add_landmark(landmark_id, slot)
        self.next_keyframe_id += 1
        return keyframe

    def track(self, frame: FrameInput) -> TrackedFrame:
        pose = self._pose()
        new_keyframe = None
        if not self.map_frozen and self.frame_index % self.keyframe_every == 0:
            new_keyframe = self._spawn_keyframe(pose, frame.timestamp)
            self.last_keyframe_id = new_keyframe.id

        indices, u, v = self._visible(pose)
        self.frame_index += 1
        return TrackedFrame(
            pose=pose,
            state=TrackingState.OK,
            landmark_ids=[int(i) for i in indices],
            keypoints_un=[cv2.KeyPoint(float(u[i]), float(v[i]), 7.0) for i in indices],
            reference_keyframe_id=self.last_keyframe_id,
            new_keyframe=new_keyframe,
        )


def build_map(config, num_frames, output_dir):
    tracker = SyntheticTracker()
    system = System(tracker, Sensor.STEREO, config)
    image = np.zeros((int(2 * CY), int(2 * CX)), dtype=np.uint8)
    try:
        for i in range(num_frames):
            if i == num_frames // 2:
                LOGGER.info("Switching to localization-only mode")
                system.activate_localization_mode()
            system.track_stereo(image, image, i / 30.0)

        system.deactivate_localization_mode()
        system.track_stereo(image, image, num_frames / 30.0)
        wait_until(lambda: system.local_mapper.pending_keyframes() == 0
                   and system.loop_closer.pending_keyframes() == 0, 0.01, 10.0)
    finally:
        system.shutdown()

    system.save_trajectory_tum(os.path.join(output_dir, "trajectory_tum.txt"))
    system.save_trajectory_kitti(os.path.join(output_dir, "trajectory_kitti.txt"))
    system.save_map()
    LOGGER.info("Built map: %s", system.world_map.get_statistics())


def reload_map(config, output_dir):
    system = System(SyntheticTracker(), Sensor.STEREO, config)
    try:
        if not system.load_map():
            LOGGER.error("Reload failed")
            return
        LOGGER.info("Reloaded map: %s", system.last_reconstruction.summary())
        system.save_keyframe_trajectory_tum(os.path.join(output_dir, "keyframes_tum.txt"))
        cv2.imwrite(os.path.join(output_dir, "map_top_down.png"), render_top_down(system.world_map))
    finally:
        system.shutdown()


def main():
    parser = argparse.ArgumentParser(description="Run the MAPKEEPER synthetic demo")
    parser.add_argument("--frames", type=int, default=80, help="Number of frames to process")
    parser.add_argument("--output", default="demo_output", help="Output directory")
    parser.add_argument("--verbose", "-V", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    os.makedirs(args.output, exist_ok=True)

    config = get_config()
    config["map_file"] = os.path.join(args.output, "map.bin")

    build_map(config, args.frames, args.output)
    reload_map(config, args.output)
    LOGGER.info("Demo output written to %s", args.output)


if __name__ == "__main__":
    main()
