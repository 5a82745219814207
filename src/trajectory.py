"""
Trajectory export.

Writes camera trajectories in the TUM (timestamp, translation, quaternion)
and KITTI (row-major 3x4 pose per line) text formats.
"""

from __future__ import annotations

import logging
from typing import Iterator, Tuple

import numpy as np

from tracking import Tracker
from world_map import WorldMap

LOGGER = logging.getLogger(__name__)


def rotation_to_quaternion(rotation: np.ndarray) -> Tuple[float, float, float, float]:
    """Convert a 3x3 rotation matrix to a unit quaternion (qx, qy, qz, qw)."""
    m = np.asarray(rotation, dtype=np.float64)
    trace = m[0, 0] + m[1, 1] + m[2, 2]

    if trace > 0:
        s = 2.0 * np.sqrt(trace + 1.0)
        qw = 0.25 * s
        qx = (m[2, 1] - m[1, 2]) / s
        qy = (m[0, 2] - m[2, 0]) / s
        qz = (m[1, 0] - m[0, 1]) / s
    elif m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
        s = 2.0 * np.sqrt(1.0 + m[0, 0] - m[1, 1] - m[2, 2])
        qw = (m[2, 1] - m[1, 2]) / s
        qx = 0.25 * s
        qy = (m[0, 1] + m[1, 0]) / s
        qz = (m[0, 2] + m[2, 0]) / s
    elif m[1, 1] > m[2, 2]:
        s = 2.0 * np.sqrt(1.0 + m[1, 1] - m[0, 0] - m[2, 2])
        qw = (m[0, 2] - m[2, 0]) / s
        qx = (m[0, 1] + m[1, 0]) / s
        qy = 0.25 * s
        qz = (m[1, 2] + m[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + m[2, 2] - m[0, 0] - m[1, 1])
        qw = (m[1, 0] - m[0, 1]) / s
        qx = (m[0, 2] + m[2, 0]) / s
        qy = (m[1, 2] + m[2, 1]) / s
        qz = 0.25 * s

    q = np.array([qx, qy, qz, qw])
    q /= np.linalg.norm(q)
    return float(q[0]), float(q[1]), float(q[2]), float(q[3])


def _frame_poses(
    world_map: WorldMap,
    tracker: Tracker,
    skip_lost: bool,
) -> Iterator[Tuple[float, np.ndarray, np.ndarray]]:
    """
    Yield (timestamp, Rwc, twc) per tracked frame.

    Frame poses are stored relative to their reference keyframe. If that
    keyframe was flagged bad, the spanning tree is walked up to a good
    ancestor, chaining the stored relative poses. Everything is expressed
    relative to the first keyframe.
    """
    keyframes = world_map.all_keyframes()
    two = keyframes[0].get_pose_inverse().astype(np.float64)

    for reference_id, timestamp, lost, tcr in zip(
        tracker.reference_keyframe_ids,
        tracker.frame_times,
        tracker.lost_flags,
        tracker.relative_poses,
    ):
        if lost and skip_lost:
            continue

        keyframe = world_map.get_keyframe(reference_id)
        trw = np.eye(4, dtype=np.float64)
        while keyframe is not None and keyframe.bad:
            if keyframe.tcp is not None:
                trw = trw @ keyframe.tcp
            keyframe = world_map.get_keyframe(keyframe.parent_id)
        if keyframe is None:
            LOGGER.debug("Frame at %.6f has no usable reference keyframe", timestamp)
            continue

        trw = trw @ keyframe.pose.astype(np.float64) @ two
        tcw = tcr.astype(np.float64) @ trw
        rwc = tcw[:3, :3].T
        twc = -rwc @ tcw[:3, 3]
        yield timestamp, rwc, twc


def save_trajectory_tum(world_map: WorldMap, tracker: Tracker, filepath: str) -> int:
    """
    Write every successfully tracked frame in TUM format.

    Returns:
        Number of poses written
    """
    if not world_map.all_keyframes():
        LOGGER.warning("No keyframes, trajectory not saved")
        return 0

    LOGGER.info("Saving camera trajectory to %s", filepath)
    count = 0
    with open(filepath, "w") as f:
        for timestamp, rwc, twc in _frame_poses(world_map, tracker, skip_lost=True):
            qx, qy, qz, qw = rotation_to_quaternion(rwc)
            f.write(f"{timestamp:.6f} {twc[0]:.9f} {twc[1]:.9f} {twc[2]:.9f} "
                    f"{qx:.9f} {qy:.9f} {qz:.9f} {qw:.9f}\n")
            count += 1
    LOGGER.info("Trajectory saved (%d poses)", count)
    return count


def save_keyframe_trajectory_tum(world_map: WorldMap, filepath: str) -> int:
    """
    Write the pose of every non-bad keyframe in TUM format, ascending id.

    Returns:
        Number of poses written
    """
    LOGGER.info("Saving keyframe trajectory to %s", filepath)
    count = 0
    with open(filepath, "w") as f:
        for keyframe in world_map.all_keyframes():
            if keyframe.bad:
                continue
            rwc = keyframe.pose[:3, :3].T
            center = keyframe.camera_center().reshape(3)
            qx, qy, qz, qw = rotation_to_quaternion(rwc)
            f.write(f"{keyframe.timestamp:.6f} {center[0]:.7f} {center[1]:.7f} {center[2]:.7f} "
                    f"{qx:.7f} {qy:.7f} {qz:.7f} {qw:.7f}\n")
            count += 1
    LOGGER.info("Keyframe trajectory saved (%d poses)", count)
    return count


def save_trajectory_kitti(world_map: WorldMap, tracker: Tracker, filepath: str) -> int:
    """
    Write every frame as a row-major 3x4 [Rwc | twc] matrix per line.

    Returns:
        Number of poses written
    """
    if not world_map.all_keyframes():
        LOGGER.warning("No keyframes, trajectory not saved")
        return 0

    LOGGER.info("Saving camera trajectory to %s", filepath)
    count = 0
    with open(filepath, "w") as f:
        for _, rwc, twc in _frame_poses(world_map, tracker, skip_lost=False):
            pose = np.hstack((rwc, twc.reshape(3, 1)))
            f.write(" ".join(f"{v:.9f}" for v in pose.reshape(-1)) + "\n")
            count += 1
    LOGGER.info("Trajectory saved (%d poses)", count)
    return count
