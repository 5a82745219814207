"""
Tests for the background worker stages.
"""

import os
import sys
import threading
import time
import unittest

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.insert(0, os.path.dirname(__file__))

from map_builders import make_keyframe, make_landmark  # type: ignore
from stages import (  # type: ignore
    LocalMapping,
    LoopClosing,
    StageUnresponsiveError,
    WorkerStage,
    wait_until,
)
from tracking import Tracker  # type: ignore
from world_map import KeyframeDatabase, WorldMap  # type: ignore

TIMEOUT = 5.0


class SlowWorldMap(WorldMap):
    """World map whose keyframe insertion is slowed down or held at a gate."""

    def __init__(self, delay, gate=None):
        super().__init__()
        self.delay = delay
        self.gate = gate
        self.entered = threading.Event()

    def add_keyframe(self, keyframe):
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(TIMEOUT)
        time.sleep(self.delay)
        super().add_keyframe(keyframe)


class CountingStage(WorkerStage):
    """Stage that counts its steps."""

    name = "counting"

    def __init__(self):
        super().__init__(poll_interval=0.001)
        self.steps = 0

    def step(self):
        self.steps += 1
        time.sleep(0.001)
        return True


class TestWaitUntil(unittest.TestCase):

    def test_returns_when_predicate_holds(self):
        flag = threading.Event()
        threading.Timer(0.02, flag.set).start()
        wait_until(flag.is_set, 0.001, TIMEOUT)
        self.assertTrue(flag.is_set())

    def test_timeout(self):
        with self.assertRaises(StageUnresponsiveError):
            wait_until(lambda: False, 0.001, 0.02, "nothing")


class TestWorkerStage(unittest.TestCase):
    """Cooperative stop / release / finish protocol."""

    def setUp(self):
        self.stage = CountingStage()

    def tearDown(self):
        self.stage.request_finish()
        self.stage.join(TIMEOUT)

    def test_finished_before_start(self):
        self.assertTrue(self.stage.is_finished())

    def test_stop_and_release(self):
        self.stage.start()
        wait_until(lambda: self.stage.steps > 0, 0.001, TIMEOUT)

        self.stage.request_stop()
        wait_until(self.stage.is_stopped, 0.001, TIMEOUT)
        steps = self.stage.steps
        time.sleep(0.02)
        self.assertEqual(self.stage.steps, steps)

        self.stage.release()
        self.assertFalse(self.stage.is_stopped())
        self.assertFalse(self.stage.stop_requested())
        wait_until(lambda: self.stage.steps > steps, 0.001, TIMEOUT)

    def test_finish(self):
        self.stage.start()
        self.assertFalse(self.stage.is_finished())

        self.stage.request_finish()
        wait_until(self.stage.is_finished, 0.001, TIMEOUT)
        self.assertTrue(self.stage.is_stopped())

    def test_finish_while_stopped(self):
        self.stage.start()
        self.stage.request_stop()
        wait_until(self.stage.is_stopped, 0.001, TIMEOUT)

        self.stage.request_finish()
        wait_until(self.stage.is_finished, 0.001, TIMEOUT)

    def test_release_after_finish_is_noop(self):
        self.stage.start()
        self.stage.request_finish()
        wait_until(self.stage.is_finished, 0.001, TIMEOUT)

        self.stage.release()
        self.assertTrue(self.stage.is_stopped())

    def test_stop_vetoed(self):
        self.assertTrue(self.stage.set_accept_stops(False))
        self.stage.start()
        self.stage.request_stop()
        time.sleep(0.02)
        self.assertFalse(self.stage.is_stopped())

        self.stage.set_accept_stops(True)
        wait_until(self.stage.is_stopped, 0.001, TIMEOUT)
        self.assertFalse(self.stage.set_accept_stops(False))


class TestLocalMapping(unittest.TestCase):
    """Keyframe integration."""

    def setUp(self):
        self.world_map = WorldMap()
        self.database = KeyframeDatabase()
        self.mapper = LocalMapping(self.world_map, poll_interval=0.001)
        self.closer = LoopClosing(self.world_map, self.database, poll_interval=0.001)
        self.mapper.set_loop_closer(self.closer)

    def tearDown(self):
        for stage in (self.mapper, self.closer):
            stage.request_finish()
            stage.join(TIMEOUT)

    def test_keyframes_linked_and_indexed(self):
        landmark = make_landmark(7, x=0.0)
        self.world_map.add_landmark(landmark)
        keyframes = [make_keyframe(i, x=0.1 * i) for i in range(3)]
        for keyframe in keyframes:
            keyframe.add_landmark(7, 1)
        # Slot 0 points at an unknown landmark and is dropped
        keyframes[2].add_landmark(99, 0)

        self.mapper.start()
        self.closer.start()
        for keyframe in keyframes:
            self.mapper.insert_keyframe(keyframe)
        wait_until(lambda: len(self.database) == 3, 0.001, TIMEOUT)

        self.assertEqual(landmark.get_observations(), {0: 1, 1: 1, 2: 1})
        self.assertEqual(keyframes[2].landmark_ids, [None, 7])
        self.assertEqual(self.world_map.covisibility_weight(0, 2), 1)
        self.assertIsNone(keyframes[0].parent_id)
        self.assertEqual(keyframes[1].parent_id, 0)
        self.assertEqual(keyframes[2].parent_id, 0)

    def test_reset_drops_queue(self):
        for i in range(4):
            self.mapper.insert_keyframe(make_keyframe(i))
        self.assertEqual(self.mapper.pending_keyframes(), 4)
        self.mapper.request_reset()
        self.assertEqual(self.mapper.pending_keyframes(), 0)
        self.assertFalse(self.mapper.reset_requested())

    def test_reset_waits_for_keyframe_in_flight(self):
        """A keyframe being mapped during a reset never reappears in the map."""
        world_map = SlowWorldMap(delay=0.1)
        mapper = LocalMapping(world_map, poll_interval=0.001)
        closer = LoopClosing(world_map, self.database, poll_interval=0.001)
        mapper.set_loop_closer(closer)
        tracker = Tracker()
        tracker.attach(world_map, self.database, mapper, closer, TIMEOUT)

        mapper.start()
        closer.start()
        try:
            mapper.insert_keyframe(make_keyframe(0))
            self.assertTrue(world_map.entered.wait(TIMEOUT))

            tracker.reset()
            self.assertEqual(world_map.all_keyframes(), [])
            self.assertEqual(len(self.database), 0)
            self.assertEqual(closer.pending_keyframes(), 0)

            time.sleep(0.05)
            self.assertEqual(world_map.all_keyframes(), [])
        finally:
            for stage in (mapper, closer):
                stage.request_finish()
                stage.join(TIMEOUT)

    def test_reset_while_stopped(self):
        self.mapper.start()
        self.mapper.request_stop()
        wait_until(self.mapper.is_stopped, 0.001, TIMEOUT)

        self.mapper.insert_keyframe(make_keyframe(0))
        self.mapper.request_reset(TIMEOUT)
        self.assertEqual(self.mapper.pending_keyframes(), 0)
        wait_until(self.mapper.is_stopped, 0.001, TIMEOUT)
        self.assertEqual(self.world_map.all_keyframes(), [])

    def test_reset_after_finish(self):
        self.mapper.start()
        self.mapper.request_finish()
        wait_until(self.mapper.is_finished, 0.001, TIMEOUT)

        self.mapper.insert_keyframe(make_keyframe(0))
        self.mapper.request_reset(TIMEOUT)
        self.assertEqual(self.mapper.pending_keyframes(), 0)

    def test_reset_times_out_on_busy_stage(self):
        gate = threading.Event()
        world_map = SlowWorldMap(delay=0.0, gate=gate)
        mapper = LocalMapping(world_map, poll_interval=0.001)
        mapper.start()
        try:
            mapper.insert_keyframe(make_keyframe(0))
            self.assertTrue(world_map.entered.wait(TIMEOUT))
            with self.assertRaises(StageUnresponsiveError):
                mapper.request_reset(0.02)
        finally:
            gate.set()
            mapper.request_finish()
            mapper.join(TIMEOUT)

    def test_release_drops_stale_keyframes(self):
        self.mapper.start()
        self.mapper.request_stop()
        wait_until(self.mapper.is_stopped, 0.001, TIMEOUT)
        self.assertFalse(self.mapper.accepts_keyframes())

        self.mapper.insert_keyframe(make_keyframe(0))
        self.mapper.release()
        self.assertEqual(self.mapper.pending_keyframes(), 0)
        self.assertTrue(self.mapper.accepts_keyframes())


class TestLoopClosing(unittest.TestCase):
    """Global optimization bookkeeping."""

    def setUp(self):
        self.world_map = WorldMap()
        self.closer = LoopClosing(self.world_map, KeyframeDatabase(), poll_interval=0.001)

    def test_single_global_optimization_at_a_time(self):
        gate = threading.Event()
        self.assertTrue(self.closer.run_global_optimization(lambda world_map: gate.wait(TIMEOUT)))
        self.assertTrue(self.closer.is_running_global_optimization())
        self.assertFalse(self.closer.run_global_optimization(lambda world_map: None))

        gate.set()
        wait_until(lambda: not self.closer.is_running_global_optimization(), 0.001, TIMEOUT)
        self.assertEqual(self.closer.global_optimizations_completed, 1)
        self.assertEqual(self.world_map.last_structural_change_version(), 1)

    def test_failed_optimization_clears_flag(self):
        def explode(world_map):
            raise RuntimeError("diverged")

        self.assertTrue(self.closer.run_global_optimization(explode))
        wait_until(lambda: not self.closer.is_running_global_optimization(), 0.001, TIMEOUT)
        self.assertEqual(self.closer.global_optimizations_completed, 0)


if __name__ == "__main__":
    unittest.main()
