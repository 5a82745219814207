"""
Tests for rebuilding a world map from saved data.
"""

import io
import os
import sys
import tempfile
import unittest

import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.insert(0, os.path.dirname(__file__))

from map_builders import build_three_keyframe_map, make_keyframe, make_landmark  # type: ignore
from persistence import load_map, read_map, save_map, write_map  # type: ignore
from reconstruction import MapReconstructor  # type: ignore
from world_map import KeyframeDatabase, WorldMap  # type: ignore


def encode_and_decode(keyframes, landmarks):
    buffer = io.BytesIO()
    write_map(buffer, keyframes, landmarks)
    buffer.seek(0)
    return read_map(buffer)


class TestRoundTrip(unittest.TestCase):
    """Save, load and reconstruct the three-keyframe map."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, "map.bin")
        self.original = build_three_keyframe_map()
        save_map(self.path, *self.original.snapshot())

        self.world_map = WorldMap()
        self.database = KeyframeDatabase()
        self.report = MapReconstructor(self.world_map, self.database, poll_interval=0.001).reconstruct(
            load_map(self.path)
        )

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_counts(self):
        self.assertEqual(self.world_map.keyframes_in_map(), 3)
        self.assertEqual(self.world_map.landmarks_in_map(), 2)
        self.assertEqual(self.report.keyframes_inserted, 3)
        self.assertEqual(self.report.keyframes_skipped, 0)
        self.assertEqual(self.report.landmarks_inserted, 2)
        self.assertEqual(self.database.keyframe_ids(), [0, 1, 2])

    def test_covisibility_weights(self):
        self.assertEqual(self.world_map.covisibility_weight(0, 1), 1)
        self.assertEqual(self.world_map.covisibility_weight(1, 0), 1)
        self.assertEqual(self.world_map.covisibility_weight(1, 2), 1)
        self.assertEqual(self.world_map.covisibility_weight(2, 1), 1)
        self.assertEqual(self.world_map.covisibility_weight(0, 2), 0)

    def test_observations(self):
        self.assertEqual(self.world_map.get_landmark(10).get_observations(), {0: 0, 1: 0})
        self.assertEqual(self.world_map.get_landmark(11).get_observations(), {1: 1, 2: 0})
        for landmark in self.world_map.all_landmarks():
            self.assertEqual(landmark.num_observations, 2)

    def test_spanning_tree(self):
        self.assertIsNone(self.world_map.get_keyframe(0).parent_id)
        self.assertEqual(self.world_map.get_keyframe(1).parent_id, 0)
        self.assertEqual(self.world_map.get_keyframe(2).parent_id, 1)
        self.assertEqual(self.world_map.get_keyframe(0).children_ids, {1})
        self.assertEqual(self.report.parents_repaired, 0)

    def test_poses_and_positions(self):
        for keyframe in self.original.all_keyframes():
            np.testing.assert_array_equal(self.world_map.get_keyframe(keyframe.id).pose, keyframe.pose)
        for landmark in self.original.all_landmarks():
            np.testing.assert_array_equal(self.world_map.get_landmark(landmark.id).position, landmark.position)

    def test_depth_bounds_recomputed(self):
        landmark = self.world_map.get_landmark(10)
        self.assertAlmostEqual(landmark.max_distance, 2.0, places=5)
        self.assertAlmostEqual(landmark.min_distance, 2.0 / 1.2 ** 7, places=5)
        self.assertIsNotNone(landmark.descriptor)

    def test_resave_reproduces_file(self):
        path = os.path.join(self.tmpdir.name, "again.bin")
        save_map(path, *self.world_map.snapshot())
        with open(self.path, "rb") as f:
            first = f.read()
        with open(path, "rb") as f:
            self.assertEqual(f.read(), first)


class TestExclusion(unittest.TestCase):
    """Bad and null entries never reach the rebuilt map."""

    def test_bad_keyframe_skipped_and_observations_pruned(self):
        world_map = build_three_keyframe_map()
        keyframes, landmarks = world_map.snapshot()
        # Flag bad without unlinking, as a crash mid-culling could leave it
        keyframes[2].bad = True

        rebuilt = WorldMap()
        report = MapReconstructor(rebuilt, poll_interval=0.001).reconstruct(
            encode_and_decode(keyframes, landmarks)
        )

        self.assertIsNone(rebuilt.get_keyframe(2))
        self.assertEqual(report.keyframes_skipped, 1)
        self.assertEqual(report.observations_pruned, 1)
        self.assertEqual(rebuilt.get_landmark(11).get_observations(), {1: 1})
        self.assertEqual(rebuilt.get_keyframe(1).connections(), {0: 1})
        self.assertEqual(rebuilt.get_keyframe(1).children_ids, set())

    def test_observation_without_slot_pruned(self):
        world_map = build_three_keyframe_map()
        keyframes, landmarks = world_map.snapshot()
        # Landmark 10 still lists keyframe 1, whose slot no longer holds it
        keyframes[1].erase_landmark(0)
        self.assertEqual(landmarks[0].get_observations(), {0: 0, 1: 0})

        rebuilt = WorldMap()
        report = MapReconstructor(rebuilt, poll_interval=0.001).reconstruct(
            encode_and_decode(keyframes, landmarks)
        )

        landmark = rebuilt.get_landmark(10)
        self.assertEqual(landmark.get_observations(), {0: 0})
        self.assertEqual(landmark.num_observations, 1)
        self.assertEqual(landmark.reference_keyframe_id, 0)
        self.assertEqual(report.observations_pruned, 1)
        self.assertEqual(rebuilt.get_keyframe(1).landmark_ids, [None, 11])
        self.assertEqual(rebuilt.covisibility_weight(0, 1), 0)

    def test_bad_landmark_unlinked(self):
        world_map = build_three_keyframe_map()
        keyframes, landmarks = world_map.snapshot()
        landmarks[1].bad = True

        rebuilt = WorldMap()
        report = MapReconstructor(rebuilt, poll_interval=0.001).reconstruct(
            encode_and_decode(keyframes, landmarks)
        )

        self.assertIsNone(rebuilt.get_landmark(11))
        self.assertEqual(report.landmarks_skipped, 1)
        self.assertEqual(rebuilt.get_keyframe(1).landmark_ids, [10, None])
        self.assertEqual(rebuilt.covisibility_weight(1, 2), 0)

    def test_null_entries_skipped(self):
        world_map = build_three_keyframe_map()
        keyframes, landmarks = world_map.snapshot()

        rebuilt = WorldMap()
        report = MapReconstructor(rebuilt, poll_interval=0.001).reconstruct(
            encode_and_decode([None] + keyframes, landmarks + [None])
        )

        self.assertEqual(report.keyframes_total, 4)
        self.assertEqual(report.keyframes_skipped, 1)
        self.assertEqual(report.landmarks_skipped, 1)
        self.assertEqual(rebuilt.keyframes_in_map(), 3)

    def test_saved_after_culling(self):
        """A keyframe culled through the map is dropped on reload."""
        world_map = build_three_keyframe_map()
        self.assertTrue(world_map.set_keyframe_bad(2))

        rebuilt = WorldMap()
        MapReconstructor(rebuilt, poll_interval=0.001).reconstruct(
            encode_and_decode(*world_map.snapshot())
        )

        self.assertEqual([kf.id for kf in rebuilt.all_keyframes()], [0, 1])
        self.assertEqual(rebuilt.get_landmark(11).num_observations, 1)


class TestSpanningTreeRepair(unittest.TestCase):
    """Parent links are rebuilt into a tree over the inserted keyframes."""

    def _chain_map(self):
        """Keyframes 0, 3, 5 and 8 all observing landmark 20."""
        world_map = WorldMap()
        landmark = make_landmark(20, x=0.0)
        world_map.add_landmark(landmark)
        keyframes = []
        for keyframe_id in (0, 3, 5, 8):
            keyframe = make_keyframe(keyframe_id, x=0.05 * keyframe_id)
            world_map.add_keyframe(keyframe)
            world_map.add_observation(keyframe, landmark, 0)
            keyframes.append(keyframe)
        return world_map, keyframes

    def test_missing_parent_replaced(self):
        world_map, keyframes = self._chain_map()
        # Parents 4 and 9 were never saved and the root points at a child
        keyframes[1].parent_id = 0
        keyframes[2].parent_id = 4
        keyframes[3].parent_id = 9
        keyframes[0].parent_id = 3

        MapReconstructor(world_map).rebuild_connections(keyframes)

        self.assertIsNone(keyframes[0].parent_id)
        self.assertEqual(keyframes[1].parent_id, 0)
        # Ties on weight go to the lowest id
        self.assertEqual(keyframes[2].parent_id, 0)
        self.assertEqual(keyframes[3].parent_id, 0)
        self.assertEqual(keyframes[0].children_ids, {3, 5, 8})

    def test_previous_keyframe_fallback(self):
        world_map = WorldMap()
        keyframes = [make_keyframe(i) for i in (1, 2, 4)]
        for keyframe in keyframes:
            world_map.add_keyframe(keyframe)

        MapReconstructor(world_map).rebuild_connections(keyframes)

        self.assertIsNone(keyframes[0].parent_id)
        self.assertEqual(keyframes[1].parent_id, 1)
        self.assertEqual(keyframes[2].parent_id, 2)

    def test_every_keyframe_reaches_root(self):
        world_map, keyframes = self._chain_map()
        for keyframe in keyframes:
            keyframe.parent_id = 8

        MapReconstructor(world_map).rebuild_connections(keyframes)

        by_id = {kf.id: kf for kf in keyframes}
        for keyframe in keyframes:
            seen = set()
            current = keyframe
            while current.parent_id is not None:
                self.assertNotIn(current.id, seen)
                seen.add(current.id)
                current = by_id[current.parent_id]
            self.assertEqual(current.id, 0)

    def test_rebuild_is_idempotent(self):
        world_map, keyframes = self._chain_map()
        reconstructor = MapReconstructor(world_map)
        reconstructor.rebuild_connections(keyframes)
        first = [(kf.parent_id, set(kf.children_ids), kf.connections()) for kf in keyframes]

        reconstructor.rebuild_connections(keyframes)
        second = [(kf.parent_id, set(kf.children_ids), kf.connections()) for kf in keyframes]

        self.assertEqual(first, second)
        self.assertEqual(keyframes[0].connections(), {3: 1, 5: 1, 8: 1})


if __name__ == "__main__":
    unittest.main()
