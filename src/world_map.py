"""
Shared world map for the mapping pipeline.

Holds the two entity collections the whole pipeline works on:
- Keyframes: pose-tagged snapshots acting as graph nodes
- Landmarks: 3D points referenced by the keyframes that observe them

Derived indices (covisibility graph, spanning tree) live on the keyframes.
All cross-links are ids resolved through the map; entities are never erased,
only flagged bad, so every id stays resolvable for the life of the map.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import cv2
import numpy as np

LOGGER = logging.getLogger(__name__)


@dataclass
class MapConfig:
    """Configuration for landmark depth bounds and descriptor selection."""

    scale_factor: float = 1.2  # Pyramid scale between octaves
    n_levels: int = 8  # Number of pyramid octaves
    descriptor_norm: int = cv2.NORM_HAMMING

    @classmethod
    def from_dict(cls, config: Optional[Dict]) -> "MapConfig":
        config = config or {}
        return cls(
            scale_factor=float(config.get("scale_factor", cls.scale_factor)),
            n_levels=int(config.get("n_levels", cls.n_levels)),
        )


@dataclass(eq=False)
class Keyframe:
    """A keyframe node of the map graph."""

    id: int
    timestamp: float = 0.0
    pose: np.ndarray = field(default_factory=lambda: np.eye(4, dtype=np.float32))  # Tcw

    # Feature data
    keypoints: List[cv2.KeyPoint] = field(default_factory=list)
    keypoints_un: List[cv2.KeyPoint] = field(default_factory=list)
    descriptors: Optional[np.ndarray] = None  # NxD, one row per keypoint

    # Observation slots (keypoint index -> landmark id)
    landmark_ids: List[Optional[int]] = field(default_factory=list)

    # Spanning tree
    parent_id: Optional[int] = None
    children_ids: Set[int] = field(default_factory=set)

    # Covisibility graph (keyframe id -> shared landmark count)
    connected_weights: Dict[int, int] = field(default_factory=dict)

    # Pose relative to the parent, valid once the keyframe is bad
    tcp: Optional[np.ndarray] = None
    bad: bool = False

    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def __post_init__(self):
        if not self.landmark_ids and self.keypoints_un:
            self.landmark_ids = [None] * len(self.keypoints_un)

    @property
    def num_slots(self) -> int:
        return len(self.landmark_ids)

    def get_pose_inverse(self) -> np.ndarray:
        """Return Twc."""
        rotation = self.pose[:3, :3]
        translation = self.pose[:3, 3]
        twc = np.eye(4, dtype=self.pose.dtype)
        twc[:3, :3] = rotation.T
        twc[:3, 3] = -rotation.T @ translation
        return twc

    def camera_center(self) -> np.ndarray:
        """Camera centre in world coordinates as a 3x1 column."""
        return self.get_pose_inverse()[:3, 3].reshape(3, 1)

    def add_landmark(self, landmark_id: int, slot: int):
        with self._lock:
            self.landmark_ids[slot] = landmark_id

    def erase_landmark(self, slot: int):
        with self._lock:
            self.landmark_ids[slot] = None

    def observes(self, landmark_id: int, slot: int) -> bool:
        with self._lock:
            return 0 <= slot < len(self.landmark_ids) and self.landmark_ids[slot] == landmark_id

    def tracked_landmark_ids(self) -> List[Tuple[int, int]]:
        """Return (slot, landmark id) for every occupied slot."""
        with self._lock:
            return [(i, lm_id) for i, lm_id in enumerate(self.landmark_ids) if lm_id is not None]

    def connections(self) -> Dict[int, int]:
        with self._lock:
            return dict(self.connected_weights)

    def add_connection(self, keyframe_id: int, weight: int):
        with self._lock:
            self.connected_weights[keyframe_id] = weight

    def erase_connection(self, keyframe_id: int):
        with self._lock:
            self.connected_weights.pop(keyframe_id, None)

    def best_covisibility_keyframes(self, n: int) -> List[int]:
        """Ids of the n most strongly connected keyframes."""
        with self._lock:
            ordered = sorted(self.connected_weights.items(), key=lambda kv: (-kv[1], kv[0]))
        return [kf_id for kf_id, _ in ordered[:n]]


@dataclass(eq=False)
class Landmark:
    """A 3D map point."""

    id: int
    position: np.ndarray = field(default_factory=lambda: np.zeros((3, 1), dtype=np.float32))

    # Observations (keyframe id -> slot in that keyframe)
    observations: Dict[int, int] = field(default_factory=dict)

    descriptor: Optional[np.ndarray] = None  # 1xD representative descriptor
    normal: Optional[np.ndarray] = None  # Mean viewing direction (3x1)
    min_distance: float = 0.0
    max_distance: float = 0.0
    reference_keyframe_id: Optional[int] = None
    bad: bool = False

    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def add_observation(self, keyframe_id: int, slot: int):
        with self._lock:
            self.observations[keyframe_id] = slot
            if self.reference_keyframe_id is None:
                self.reference_keyframe_id = keyframe_id

    def erase_observation(self, keyframe_id: int):
        with self._lock:
            self.observations.pop(keyframe_id, None)
            if self.reference_keyframe_id == keyframe_id:
                self.reference_keyframe_id = next(iter(self.observations), None)

    def get_observations(self) -> Dict[int, int]:
        with self._lock:
            return dict(self.observations)

    @property
    def num_observations(self) -> int:
        with self._lock:
            return len(self.observations)


class KeyframeDatabase:
    """Keyframe lookup index used by place-recognition queries."""

    def __init__(self):
        self._lock = threading.Lock()
        self._keyframe_ids: Set[int] = set()

    def add(self, keyframe: Keyframe):
        with self._lock:
            self._keyframe_ids.add(keyframe.id)

    def erase(self, keyframe: Keyframe):
        with self._lock:
            self._keyframe_ids.discard(keyframe.id)

    def clear(self):
        with self._lock:
            self._keyframe_ids.clear()

    def keyframe_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._keyframe_ids)

    def __contains__(self, keyframe_id: int) -> bool:
        with self._lock:
            return keyframe_id in self._keyframe_ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._keyframe_ids)


class WorldMap:
    """
    In-memory graph of keyframes and landmarks.

    Maintains:
    - Identity-indexed keyframe and landmark storage
    - Covisibility weights between keyframes
    - Spanning tree over keyframes
    - A structural change counter for observers
    """

    def __init__(self, config: Optional[MapConfig] = None):
        self.config = config or MapConfig()
        self._lock = threading.RLock()

        self.keyframes: Dict[int, Keyframe] = {}
        self.landmarks: Dict[int, Landmark] = {}

        self.max_keyframe_id: int = -1
        self._structural_change_version: int = 0

    # ------------------------------------------------------------------ #
    # Storage
    # ------------------------------------------------------------------ #
    def add_keyframe(self, keyframe: Keyframe):
        with self._lock:
            self.keyframes[keyframe.id] = keyframe
            if keyframe.id > self.max_keyframe_id:
                self.max_keyframe_id = keyframe.id

    def add_landmark(self, landmark: Landmark) -> bool:
        """Register a landmark. Returns False if it was already present."""
        with self._lock:
            if landmark.id in self.landmarks:
                return False
            self.landmarks[landmark.id] = landmark
            return True

    def get_keyframe(self, keyframe_id: Optional[int]) -> Optional[Keyframe]:
        if keyframe_id is None:
            return None
        with self._lock:
            return self.keyframes.get(keyframe_id)

    def get_landmark(self, landmark_id: Optional[int]) -> Optional[Landmark]:
        if landmark_id is None:
            return None
        with self._lock:
            return self.landmarks.get(landmark_id)

    def all_keyframes(self) -> List[Keyframe]:
        """All stored keyframes, bad ones included, by ascending id."""
        with self._lock:
            return [self.keyframes[kf_id] for kf_id in sorted(self.keyframes)]

    def all_landmarks(self) -> List[Landmark]:
        with self._lock:
            return list(self.landmarks.values())

    def snapshot(self) -> Tuple[List[Keyframe], List[Landmark]]:
        """Point-in-time copy of both collections."""
        with self._lock:
            return self.all_keyframes(), self.all_landmarks()

    def keyframes_in_map(self) -> int:
        with self._lock:
            return sum(1 for kf in self.keyframes.values() if not kf.bad)

    def landmarks_in_map(self) -> int:
        with self._lock:
            return sum(1 for lm in self.landmarks.values() if not lm.bad)

    def root_keyframe_id(self) -> Optional[int]:
        with self._lock:
            good = [kf_id for kf_id, kf in self.keyframes.items() if not kf.bad]
        return min(good) if good else None

    def inform_structural_change(self):
        with self._lock:
            self._structural_change_version += 1

    def last_structural_change_version(self) -> int:
        with self._lock:
            return self._structural_change_version

    def clear(self):
        with self._lock:
            self.keyframes.clear()
            self.landmarks.clear()
            self.max_keyframe_id = -1
            self._structural_change_version = 0
        LOGGER.info("WorldMap cleared")

    # ------------------------------------------------------------------ #
    # Graph maintenance
    # ------------------------------------------------------------------ #
    def add_observation(self, keyframe: Keyframe, landmark: Landmark, slot: int):
        """Link a keyframe slot and a landmark in both directions."""
        landmark.add_observation(keyframe.id, slot)
        keyframe.add_landmark(landmark.id, slot)

    def update_connections(self, keyframe: Keyframe) -> Dict[int, int]:
        """
        Recompute covisibility weights of a keyframe.

        Weight is the count of non-bad landmarks observed by both keyframes.
        An observation only counts when the observing keyframe's slot really
        holds the landmark. Both directions are updated so weights stay
        symmetric, and edges that no longer share landmarks are removed on
        both sides.

        Returns:
            The new keyframe id -> weight mapping
        """
        counter: Counter = Counter()
        for slot, landmark_id in keyframe.tracked_landmark_ids():
            landmark = self.get_landmark(landmark_id)
            if landmark is None or landmark.bad:
                continue
            observations = landmark.get_observations()
            if observations.get(keyframe.id) != slot:
                continue
            for other_id, other_slot in observations.items():
                if other_id == keyframe.id:
                    continue
                other = self.get_keyframe(other_id)
                if other is None or other.bad or not other.observes(landmark.id, other_slot):
                    continue
                counter[other_id] += 1

        weights = dict(counter)
        with keyframe._lock:
            stale = set(keyframe.connected_weights) - set(weights)
            keyframe.connected_weights = dict(weights)

        for other_id in stale:
            other = self.get_keyframe(other_id)
            if other is not None:
                other.erase_connection(keyframe.id)
        for other_id, weight in weights.items():
            self.keyframes[other_id].add_connection(keyframe.id, weight)

        return weights

    def covisibility_weight(self, first_id: int, second_id: int) -> int:
        keyframe = self.get_keyframe(first_id)
        if keyframe is None:
            return 0
        return keyframe.connections().get(second_id, 0)

    def change_parent(self, keyframe: Keyframe, parent_id: Optional[int]):
        old_parent = self.get_keyframe(keyframe.parent_id)
        if old_parent is not None:
            with old_parent._lock:
                old_parent.children_ids.discard(keyframe.id)
        keyframe.parent_id = parent_id
        parent = self.get_keyframe(parent_id)
        if parent is not None:
            with parent._lock:
                parent.children_ids.add(keyframe.id)

    def set_keyframe_bad(self, keyframe_id: int) -> bool:
        """
        Flag a keyframe as bad without removing it from storage.

        Observations and covisibility edges are dropped, children move to the
        keyframe's parent and the pose relative to the parent is kept so that
        trajectories can still be chained through it.

        Returns:
            False if the keyframe is unknown, already bad or the root
        """
        keyframe = self.get_keyframe(keyframe_id)
        if keyframe is None or keyframe.bad:
            return False
        if keyframe.parent_id is None:
            LOGGER.debug("Refusing to flag root keyframe %d as bad", keyframe_id)
            return False

        for slot, landmark_id in keyframe.tracked_landmark_ids():
            landmark = self.get_landmark(landmark_id)
            if landmark is not None:
                landmark.erase_observation(keyframe.id)
            keyframe.erase_landmark(slot)

        for other_id in keyframe.connections():
            other = self.get_keyframe(other_id)
            if other is not None:
                other.erase_connection(keyframe.id)
        with keyframe._lock:
            keyframe.connected_weights.clear()

        parent = self.keyframes[keyframe.parent_id]
        for child_id in list(keyframe.children_ids):
            child = self.get_keyframe(child_id)
            if child is not None:
                self.change_parent(child, parent.id)
        keyframe.children_ids.clear()
        with parent._lock:
            parent.children_ids.discard(keyframe.id)

        keyframe.tcp = (keyframe.pose @ parent.get_pose_inverse()).astype(keyframe.pose.dtype)
        keyframe.bad = True
        self.inform_structural_change()
        LOGGER.debug("Keyframe %d flagged bad", keyframe_id)
        return True

    def set_landmark_bad(self, landmark_id: int) -> bool:
        landmark = self.get_landmark(landmark_id)
        if landmark is None or landmark.bad:
            return False
        with landmark._lock:
            observations = dict(landmark.observations)
            landmark.observations.clear()
            landmark.bad = True
        for keyframe_id, slot in observations.items():
            keyframe = self.get_keyframe(keyframe_id)
            if keyframe is not None and slot < keyframe.num_slots:
                keyframe.erase_landmark(slot)
        LOGGER.debug("Landmark %d flagged bad", landmark_id)
        return True

    # ------------------------------------------------------------------ #
    # Landmark finalization
    # ------------------------------------------------------------------ #
    def compute_distinctive_descriptor(self, landmark: Landmark) -> Optional[np.ndarray]:
        """
        Pick the observed descriptor with the least median distance to the
        other observed descriptors.
        """
        descriptors = []
        for keyframe_id, slot in landmark.get_observations().items():
            keyframe = self.get_keyframe(keyframe_id)
            if keyframe is None or keyframe.bad or keyframe.descriptors is None:
                continue
            if slot >= len(keyframe.descriptors):
                continue
            descriptors.append(keyframe.descriptors[slot:slot + 1])

        if not descriptors:
            with landmark._lock:
                landmark.descriptor = None
            return None

        count = len(descriptors)
        distances = np.zeros((count, count), dtype=np.float64)
        for i in range(count):
            for j in range(i + 1, count):
                d = cv2.norm(descriptors[i], descriptors[j], self.config.descriptor_norm)
                distances[i, j] = d
                distances[j, i] = d

        best = int(np.argmin(np.median(distances, axis=1)))
        with landmark._lock:
            landmark.descriptor = descriptors[best].copy()
        return landmark.descriptor

    def update_normal_and_depth(self, landmark: Landmark) -> bool:
        """Recompute mean viewing direction and scale-invariance distances."""
        observations = landmark.get_observations()
        reference = self.get_keyframe(landmark.reference_keyframe_id)
        if not observations or reference is None:
            return False

        position = landmark.position.reshape(3, 1).astype(np.float64)
        normal = np.zeros((3, 1), dtype=np.float64)
        n = 0
        for keyframe_id in observations:
            keyframe = self.get_keyframe(keyframe_id)
            if keyframe is None:
                continue
            ray = position - keyframe.camera_center().astype(np.float64)
            length = np.linalg.norm(ray)
            if length > 0:
                normal += ray / length
                n += 1

        distance = float(np.linalg.norm(position - reference.camera_center().astype(np.float64)))
        slot = observations.get(reference.id)
        level = 0
        if slot is not None and slot < len(reference.keypoints_un):
            level = max(int(reference.keypoints_un[slot].octave), 0)
        level_factor = self.config.scale_factor ** level
        max_level_factor = self.config.scale_factor ** (self.config.n_levels - 1)

        with landmark._lock:
            landmark.max_distance = distance * level_factor
            landmark.min_distance = landmark.max_distance / max_level_factor
            landmark.normal = (normal / max(n, 1)).astype(np.float32)
        return True

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def get_point_cloud(self) -> np.ndarray:
        """Get all non-bad landmark positions as Nx3 array."""
        positions = [lm.position.reshape(3) for lm in self.all_landmarks() if not lm.bad]
        if not positions:
            return np.empty((0, 3), dtype=np.float64)
        return np.array(positions, dtype=np.float64)

    def get_keyframe_poses(self) -> List[Tuple[int, np.ndarray]]:
        """Get all non-bad keyframe poses as (id, Twc) pairs."""
        return [(kf.id, kf.get_pose_inverse()) for kf in self.all_keyframes() if not kf.bad]

    def get_statistics(self) -> Dict:
        with self._lock:
            return {
                "keyframes_stored": len(self.keyframes),
                "keyframes_in_map": self.keyframes_in_map(),
                "landmarks_stored": len(self.landmarks),
                "landmarks_in_map": self.landmarks_in_map(),
                "max_keyframe_id": self.max_keyframe_id,
                "structural_change_version": self._structural_change_version,
            }
