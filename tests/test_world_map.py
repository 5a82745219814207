"""
Tests for the world map graph.
"""

import os
import sys
import unittest

import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.insert(0, os.path.dirname(__file__))

from map_builders import build_three_keyframe_map, make_keyframe, make_landmark  # type: ignore
from world_map import KeyframeDatabase, MapConfig, WorldMap  # type: ignore


class TestWorldMap(unittest.TestCase):
    """Storage, covisibility and culling."""

    def setUp(self):
        self.world_map = build_three_keyframe_map()

    def test_covisibility_is_symmetric(self):
        for first in range(3):
            for second in range(3):
                if first == second:
                    continue
                self.assertEqual(
                    self.world_map.covisibility_weight(first, second),
                    self.world_map.covisibility_weight(second, first),
                )
        self.assertEqual(self.world_map.get_keyframe(1).best_covisibility_keyframes(1), [0])

    def test_root_and_statistics(self):
        self.assertEqual(self.world_map.root_keyframe_id(), 0)
        stats = self.world_map.get_statistics()
        self.assertEqual(stats["keyframes_in_map"], 3)
        self.assertEqual(stats["landmarks_in_map"], 2)
        self.assertEqual(stats["max_keyframe_id"], 2)

    def test_root_cannot_be_culled(self):
        self.assertFalse(self.world_map.set_keyframe_bad(0))
        self.assertFalse(self.world_map.get_keyframe(0).bad)

    def test_cull_middle_keyframe(self):
        """Children move to the grandparent and the relative pose is kept."""
        version = self.world_map.last_structural_change_version()
        self.assertTrue(self.world_map.set_keyframe_bad(1))

        culled = self.world_map.get_keyframe(1)
        self.assertTrue(culled.bad)
        self.assertEqual(culled.landmark_ids, [None, None])
        self.assertEqual(self.world_map.get_keyframe(2).parent_id, 0)
        self.assertEqual(self.world_map.get_keyframe(0).children_ids, {2})
        self.assertEqual(self.world_map.get_keyframe(0).connections(), {})
        self.assertEqual(self.world_map.get_landmark(10).get_observations(), {0: 0})

        parent = self.world_map.get_keyframe(0)
        np.testing.assert_allclose(culled.tcp @ parent.pose, culled.pose, atol=1e-6)
        self.assertGreater(self.world_map.last_structural_change_version(), version)
        self.assertEqual(self.world_map.keyframes_in_map(), 2)
        self.assertEqual(len(self.world_map.all_keyframes()), 3)

    def test_cull_landmark(self):
        self.assertTrue(self.world_map.set_landmark_bad(11))
        self.assertEqual(self.world_map.get_keyframe(1).landmark_ids, [10, None])
        self.assertEqual(self.world_map.get_keyframe(2).landmark_ids, [None, None])
        self.assertEqual(self.world_map.landmarks_in_map(), 1)

        self.world_map.update_connections(self.world_map.get_keyframe(1))
        self.assertEqual(self.world_map.covisibility_weight(2, 1), 0)

    def test_point_cloud_and_poses(self):
        cloud = self.world_map.get_point_cloud()
        self.assertEqual(cloud.shape, (2, 3))

        poses = dict(self.world_map.get_keyframe_poses())
        np.testing.assert_allclose(poses[2][:3, 3], [0.2, 0.0, 0.0], atol=1e-6)

    def test_clear(self):
        self.world_map.clear()
        self.assertEqual(self.world_map.all_keyframes(), [])
        self.assertIsNone(self.world_map.root_keyframe_id())
        self.assertEqual(self.world_map.get_point_cloud().shape, (0, 3))


class TestLandmarkFinalization(unittest.TestCase):
    """Representative descriptor and depth bounds."""

    def test_distinctive_descriptor_is_the_median(self):
        world_map = WorldMap()
        landmark = make_landmark(1, x=0.0)
        world_map.add_landmark(landmark)

        rows = [
            np.zeros((1, 32), dtype=np.uint8),
            np.zeros((1, 32), dtype=np.uint8),
            np.full((1, 32), 255, dtype=np.uint8),
        ]
        rows[1][0, 0] = 1
        for keyframe_id, row in enumerate(rows):
            keyframe = make_keyframe(keyframe_id, slots=1)
            keyframe.descriptors = row
            world_map.add_keyframe(keyframe)
            world_map.add_observation(keyframe, landmark, 0)

        descriptor = world_map.compute_distinctive_descriptor(landmark)
        np.testing.assert_array_equal(descriptor, rows[0])

    def test_descriptor_cleared_without_observations(self):
        world_map = WorldMap()
        landmark = make_landmark(1, x=0.0)
        landmark.descriptor = np.full((1, 32), 7, dtype=np.uint8)
        world_map.add_landmark(landmark)

        self.assertIsNone(world_map.compute_distinctive_descriptor(landmark))
        self.assertIsNone(landmark.descriptor)

    def test_depth_bounds_follow_octave(self):
        config = MapConfig(scale_factor=2.0, n_levels=3)
        world_map = WorldMap(config)
        landmark = make_landmark(1, x=0.0, z=4.0)
        keyframe = make_keyframe(0, slots=1)
        keyframe.keypoints_un[0].octave = 1
        world_map.add_keyframe(keyframe)
        world_map.add_landmark(landmark)
        world_map.add_observation(keyframe, landmark, 0)

        self.assertTrue(world_map.update_normal_and_depth(landmark))
        self.assertAlmostEqual(landmark.max_distance, 8.0, places=5)
        self.assertAlmostEqual(landmark.min_distance, 2.0, places=5)
        np.testing.assert_allclose(landmark.normal.reshape(3), [0.0, 0.0, 1.0], atol=1e-6)

    def test_map_config_from_dict(self):
        config = MapConfig.from_dict({"n_levels": 4})
        self.assertEqual(config.n_levels, 4)
        self.assertEqual(config.scale_factor, 1.2)
        self.assertEqual(MapConfig.from_dict(None), MapConfig())


class TestKeyframeDatabase(unittest.TestCase):

    def test_add_erase_clear(self):
        database = KeyframeDatabase()
        first, second = make_keyframe(3), make_keyframe(1)
        database.add(first)
        database.add(second)
        self.assertEqual(database.keyframe_ids(), [1, 3])
        self.assertIn(3, database)

        database.erase(first)
        self.assertNotIn(3, database)
        database.clear()
        self.assertEqual(len(database), 0)


if __name__ == "__main__":
    unittest.main()
