"""
Rebuild a query-ready world map from decoded map data.

Reconstruction runs in three phases:
1. Keyframe insertion (helper thread): register every usable keyframe and
   re-link its observation slots with the landmarks it sees
2. Landmark finalization (helper thread, after phase 1): prune stale
   observations, recompute representative descriptor and depth bounds,
   register the landmark
3. Connection rebuild (calling thread, concurrent with phase 2):
   recompute covisibility weights and repair the spanning tree
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from persistence import DecodedMap
from world_map import Keyframe, KeyframeDatabase, Landmark, WorldMap

LOGGER = logging.getLogger(__name__)


@dataclass
class ReconstructionReport:
    """Counters collected while rebuilding a map."""

    keyframes_total: int = 0
    keyframes_inserted: int = 0
    keyframes_skipped: int = 0
    landmarks_total: int = 0
    landmarks_inserted: int = 0
    landmarks_skipped: int = 0
    observations_pruned: int = 0
    parents_repaired: int = 0

    def summary(self) -> str:
        return (
            f"keyframes {self.keyframes_inserted}/{self.keyframes_total}, "
            f"landmarks {self.landmarks_inserted}/{self.landmarks_total}"
        )


class MapReconstructor:
    """Turns a flat :class:`DecodedMap` into a linked :class:`WorldMap`."""

    def __init__(
        self,
        world_map: WorldMap,
        keyframe_database: Optional[KeyframeDatabase] = None,
        poll_interval: float = 0.03,
    ):
        self.world_map = world_map
        self.keyframe_database = keyframe_database
        self.poll_interval = poll_interval

    def reconstruct(self, decoded: DecodedMap) -> ReconstructionReport:
        """
        Insert decoded entities and rebuild the derived graph indices.

        Blocks until all phases are complete.
        """
        report = ReconstructionReport(
            keyframes_total=len(decoded.keyframes),
            landmarks_total=len(decoded.landmarks),
        )
        inserted: List[Keyframe] = []
        finished = threading.Event()
        errors: List[BaseException] = []

        keyframe_thread = threading.Thread(
            target=self._guarded,
            args=(errors, self._insert_keyframes, decoded, inserted, report, finished),
            name="reload-keyframes",
            daemon=True,
        )
        keyframe_thread.start()
        while not finished.wait(self.poll_interval):
            LOGGER.debug("Inserting keyframes %d/%d", len(inserted), report.keyframes_total)
        keyframe_thread.join()
        self._raise_first(errors)

        report.keyframes_inserted = len(inserted)
        LOGGER.info("Inserted keyframes %d/%d", report.keyframes_inserted, report.keyframes_total)

        inserted_ids = {kf.id for kf in inserted}
        landmark_thread = threading.Thread(
            target=self._guarded,
            args=(errors, self._finalize_landmarks, decoded.landmarks, inserted_ids, report),
            name="reload-landmarks",
            daemon=True,
        )
        landmark_thread.start()
        self.rebuild_connections(inserted, report)
        landmark_thread.join()
        self._raise_first(errors)

        self.world_map.inform_structural_change()
        LOGGER.info("Map reconstructed: %s", report.summary())
        return report

    @staticmethod
    def _guarded(errors: List[BaseException], target, *args):
        try:
            target(*args)
        except Exception as e:  # re-raised on the calling thread
            errors.append(e)

    @staticmethod
    def _raise_first(errors: List[BaseException]):
        if errors:
            raise errors[0]

    # ------------------------------------------------------------------ #
    # Phase 1
    # ------------------------------------------------------------------ #
    def _insert_keyframes(
        self,
        decoded: DecodedMap,
        inserted: List[Keyframe],
        report: ReconstructionReport,
        finished: threading.Event,
    ):
        try:
            for keyframe in decoded.keyframes:
                if keyframe is None or keyframe.bad:
                    LOGGER.debug("Skipping %s keyframe", "null" if keyframe is None else f"bad {keyframe.id}")
                    report.keyframes_skipped += 1
                    continue
                self._add_keyframe(keyframe, decoded.landmark_table, report)
                inserted.append(keyframe)
        finally:
            finished.set()

    def _add_keyframe(
        self,
        keyframe: Keyframe,
        landmark_table: Dict[int, Landmark],
        report: ReconstructionReport,
    ):
        self.world_map.add_keyframe(keyframe)
        if self.keyframe_database is not None:
            self.keyframe_database.add(keyframe)

        for slot, landmark_id in keyframe.tracked_landmark_ids():
            landmark = landmark_table.get(landmark_id)
            if landmark is None or landmark.bad:
                LOGGER.debug("Null/bad landmark %s in slot %d of keyframe %d", landmark_id, slot, keyframe.id)
                keyframe.erase_landmark(slot)
                continue
            self.world_map.add_observation(keyframe, landmark, slot)
            if self.world_map.add_landmark(landmark):
                report.landmarks_inserted += 1

    # ------------------------------------------------------------------ #
    # Phase 2
    # ------------------------------------------------------------------ #
    def _finalize_landmarks(
        self,
        landmarks: List[Optional[Landmark]],
        inserted_ids: Set[int],
        report: ReconstructionReport,
    ):
        for landmark in landmarks:
            if landmark is None or landmark.bad:
                report.landmarks_skipped += 1
                continue

            # Keep only observations backed by a slot of an inserted keyframe
            for keyframe_id, slot in landmark.get_observations().items():
                keyframe = self.world_map.get_keyframe(keyframe_id) if keyframe_id in inserted_ids else None
                if keyframe is None or not keyframe.observes(landmark.id, slot):
                    landmark.erase_observation(keyframe_id)
                    report.observations_pruned += 1

            self.world_map.compute_distinctive_descriptor(landmark)
            self.world_map.update_normal_and_depth(landmark)
            if self.world_map.add_landmark(landmark):
                report.landmarks_inserted += 1

        LOGGER.info("Landmarks in map: %d", self.world_map.landmarks_in_map())

    # ------------------------------------------------------------------ #
    # Phase 3
    # ------------------------------------------------------------------ #
    def rebuild_connections(
        self,
        keyframes: List[Keyframe],
        report: Optional[ReconstructionReport] = None,
    ):
        """
        Recompute covisibility weights and repair the spanning tree.

        Safe to run repeatedly. The lowest-id keyframe is the root; every
        other keyframe keeps a parent with a lower id, so the tree stays
        acyclic.
        """
        ordered = sorted((kf for kf in keyframes if not kf.bad), key=lambda kf: kf.id)
        for keyframe in ordered:
            self.world_map.update_connections(keyframe)

        repaired = self._repair_spanning_tree(ordered)
        if report is not None:
            report.parents_repaired += repaired

    def _repair_spanning_tree(self, ordered: List[Keyframe]) -> int:
        if not ordered:
            return 0

        ids = [kf.id for kf in ordered]
        id_set = set(ids)
        repaired = 0

        root = ordered[0]
        if root.parent_id is not None:
            root.parent_id = None
            repaired += 1

        for index, keyframe in enumerate(ordered[1:], start=1):
            parent_id = keyframe.parent_id
            if parent_id is not None and parent_id in id_set and parent_id < keyframe.id:
                continue
            keyframe.parent_id = self._choose_parent(keyframe, id_set, ids[index - 1])
            repaired += 1
            LOGGER.debug("Keyframe %d re-parented to %d", keyframe.id, keyframe.parent_id)

        children: Dict[int, Set[int]] = {kf_id: set() for kf_id in ids}
        for keyframe in ordered[1:]:
            children[keyframe.parent_id].add(keyframe.id)
        for keyframe in ordered:
            with keyframe._lock:
                keyframe.children_ids = children[keyframe.id]

        return repaired

    @staticmethod
    def _choose_parent(keyframe: Keyframe, candidate_ids: Set[int], previous_id: int) -> int:
        """Best covisible lower-id keyframe, else the previous keyframe."""
        candidates = [
            (weight, -other_id)
            for other_id, weight in keyframe.connections().items()
            if other_id < keyframe.id and other_id in candidate_ids
        ]
        if candidates:
            _, negative_id = max(candidates)
            return -negative_id
        return previous_id
