"""
Background worker stages.

Every stage runs on its own thread and follows the same cooperative
protocol: callers *request* a pause or termination and then poll the
stage's status. A stage always completes its current unit of work before
honouring a request, so nothing is preempted mid-update.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

from world_map import Keyframe, KeyframeDatabase, WorldMap

LOGGER = logging.getLogger(__name__)


class StageUnresponsiveError(TimeoutError):
    """Raised when a stage does not honour a request within the allowed time."""


def wait_until(
    predicate: Callable[[], bool],
    poll_interval: float,
    timeout: Optional[float] = None,
    description: str = "condition",
):
    """
    Sleep-poll until ``predicate`` holds.

    Args:
        predicate: Condition to wait for
        poll_interval: Seconds to sleep between checks
        timeout: Give up after this many seconds (None waits forever)
        description: Used in the timeout error message

    Raises:
        StageUnresponsiveError: If the timeout expires first
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while not predicate():
        if deadline is not None and time.monotonic() >= deadline:
            raise StageUnresponsiveError(f"Timed out after {timeout:.3f}s waiting for {description}")
        time.sleep(poll_interval)


class WorkerStage:
    """
    Base class for a pausable, finishable background stage.

    Subclasses implement :meth:`step`, which performs one unit of work and
    returns True if there was anything to do.
    """

    name = "stage"

    def __init__(self, poll_interval: float = 0.003):
        self.poll_interval = poll_interval
        self._condition = threading.Condition()
        self._stop_requested = False
        self._stopped = False
        self._accept_stops = True
        self._finish_requested = False
        self._finished = True
        self._reset_requested = False
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------ #
    # Thread lifecycle
    # ------------------------------------------------------------------ #
    def start(self) -> threading.Thread:
        with self._condition:
            self._finished = False
            self._finish_requested = False
        self._thread = threading.Thread(target=self.run, name=self.name, daemon=True)
        self._thread.start()
        LOGGER.debug("Stage %s started", self.name)
        return self._thread

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self):
        """Thread body: step until finish is requested, pausing on request."""
        try:
            while not self.finish_requested():
                self._reset_if_requested()
                if self._honour_stop():
                    self._wait_while_stopped()
                    continue
                if not self.step():
                    time.sleep(self.poll_interval)
        except Exception:
            LOGGER.exception("Stage %s failed", self.name)
            raise
        finally:
            self._set_finished()

    def step(self) -> bool:
        return False

    # ------------------------------------------------------------------ #
    # Pause / resume
    # ------------------------------------------------------------------ #
    def request_stop(self):
        with self._condition:
            self._stop_requested = True
        LOGGER.debug("Stage %s: stop requested", self.name)

    def stop_requested(self) -> bool:
        with self._condition:
            return self._stop_requested

    def is_stopped(self) -> bool:
        with self._condition:
            return self._stopped

    def release(self):
        """Resume a stopped stage."""
        with self._condition:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            self._condition.notify_all()
        self.on_release()
        LOGGER.debug("Stage %s released", self.name)

    def on_release(self):
        pass

    def set_accept_stops(self, accept: bool) -> bool:
        """
        Allow or veto stop requests around a critical section.

        Returns:
            False if stops cannot be vetoed because the stage is already stopped
        """
        with self._condition:
            if not accept and self._stopped:
                return False
            self._accept_stops = accept
            return True

    def _honour_stop(self) -> bool:
        with self._condition:
            if self._stop_requested and self._accept_stops:
                self._stopped = True
                LOGGER.debug("Stage %s stopped", self.name)
                return True
            return False

    def _wait_while_stopped(self):
        with self._condition:
            # A reset is serviced even while paused
            while self._stopped and not self._finish_requested and not self._reset_requested:
                self._condition.wait(self.poll_interval)

    # ------------------------------------------------------------------ #
    # Reset
    # ------------------------------------------------------------------ #
    def request_reset(self, timeout: Optional[float] = None):
        """
        Ask the stage to drop its pending work and wait until it has.

        The running thread performs the reset between two units of work, so
        once this returns no keyframe is being processed against the old
        map. A stage that is not running is reset on the caller's thread.

        Raises:
            StageUnresponsiveError: If the stage does not acknowledge in time
        """
        with self._condition:
            self._reset_requested = True
            self._condition.notify_all()
        LOGGER.debug("Stage %s: reset requested", self.name)
        wait_until(
            lambda: not self.reset_requested() or self.is_finished(),
            self.poll_interval,
            timeout,
            f"{self.name} to reset",
        )
        self._reset_if_requested()

    def reset_requested(self) -> bool:
        with self._condition:
            return self._reset_requested

    def on_reset(self):
        pass

    def _reset_if_requested(self):
        with self._condition:
            if not self._reset_requested:
                return
        self.on_reset()
        with self._condition:
            self._reset_requested = False
            self._condition.notify_all()

    # ------------------------------------------------------------------ #
    # Termination
    # ------------------------------------------------------------------ #
    def request_finish(self):
        with self._condition:
            self._finish_requested = True
            self._condition.notify_all()
        LOGGER.debug("Stage %s: finish requested", self.name)

    def finish_requested(self) -> bool:
        with self._condition:
            return self._finish_requested

    def is_finished(self) -> bool:
        with self._condition:
            return self._finished

    def _set_finished(self):
        with self._condition:
            self._finished = True
            self._stopped = True
        LOGGER.debug("Stage %s finished", self.name)


class _KeyframeQueueStage(WorkerStage):
    """Stage fed with keyframes through a FIFO queue."""

    def __init__(self, poll_interval: float = 0.003):
        super().__init__(poll_interval)
        self._queue_lock = threading.Lock()
        self._new_keyframes: Deque[Keyframe] = deque()

    def insert_keyframe(self, keyframe: Keyframe):
        with self._queue_lock:
            self._new_keyframes.append(keyframe)

    def pending_keyframes(self) -> int:
        with self._queue_lock:
            return len(self._new_keyframes)

    def _pop_keyframe(self) -> Optional[Keyframe]:
        with self._queue_lock:
            return self._new_keyframes.popleft() if self._new_keyframes else None

    def on_reset(self):
        with self._queue_lock:
            dropped = len(self._new_keyframes)
            self._new_keyframes.clear()
        LOGGER.info("Stage %s reset (%d queued keyframes dropped)", self.name, dropped)


class LocalMapping(_KeyframeQueueStage):
    """
    Mapping stage: integrates new keyframes into the world map.

    For every queued keyframe the stage registers it, links its observation
    slots with the landmarks already in the map, rebuilds its covisibility
    edges and attaches it to the spanning tree, then hands it to the loop
    closer.
    """

    name = "local-mapping"

    def __init__(self, world_map: WorldMap, poll_interval: float = 0.003):
        super().__init__(poll_interval)
        self.world_map = world_map
        self.loop_closer: Optional["LoopClosing"] = None
        self._busy = False

    def set_loop_closer(self, loop_closer: "LoopClosing"):
        self.loop_closer = loop_closer

    def accepts_keyframes(self) -> bool:
        with self._condition:
            return not self._busy and not self._stopped

    def on_release(self):
        # Keyframes queued before the pause belong to a stale map state
        with self._queue_lock:
            self._new_keyframes.clear()

    def step(self) -> bool:
        keyframe = self._pop_keyframe()
        if keyframe is None:
            return False

        with self._condition:
            self._busy = True
        try:
            self.process_keyframe(keyframe)
        finally:
            with self._condition:
                self._busy = False
        return True

    def process_keyframe(self, keyframe: Keyframe):
        self.world_map.add_keyframe(keyframe)

        for slot, landmark_id in keyframe.tracked_landmark_ids():
            landmark = self.world_map.get_landmark(landmark_id)
            if landmark is None or landmark.bad:
                keyframe.erase_landmark(slot)
                continue
            landmark.add_observation(keyframe.id, slot)

        weights = self.world_map.update_connections(keyframe)

        root_id = self.world_map.root_keyframe_id()
        if keyframe.parent_id is None and keyframe.id != root_id:
            candidates = [(w, -kf_id) for kf_id, w in weights.items() if kf_id < keyframe.id]
            if candidates:
                self.world_map.change_parent(keyframe, -max(candidates)[1])
            elif root_id is not None:
                self.world_map.change_parent(keyframe, root_id)

        LOGGER.debug("Keyframe %d mapped (%d covisible keyframes)", keyframe.id, len(weights))

        if self.loop_closer is not None:
            self.loop_closer.insert_keyframe(keyframe)


class LoopClosing(_KeyframeQueueStage):
    """
    Loop-closing stage.

    Indexes mapped keyframes for place recognition and hosts global
    optimization passes, which run on their own helper thread.
    """

    name = "loop-closing"

    def __init__(
        self,
        world_map: WorldMap,
        keyframe_database: KeyframeDatabase,
        poll_interval: float = 0.003,
    ):
        super().__init__(poll_interval)
        self.world_map = world_map
        self.keyframe_database = keyframe_database
        self._global_lock = threading.Lock()
        self._running_global_optimization = False
        self._global_thread: Optional[threading.Thread] = None
        self.global_optimizations_completed = 0

    def step(self) -> bool:
        keyframe = self._pop_keyframe()
        if keyframe is None:
            return False
        if not keyframe.bad:
            self.keyframe_database.add(keyframe)
        return True

    def run_global_optimization(self, optimize: Callable[[WorldMap], None]) -> bool:
        """
        Launch a full-map pass on a helper thread.

        Returns:
            False if a global optimization is already in flight
        """
        with self._global_lock:
            if self._running_global_optimization:
                return False
            self._running_global_optimization = True
            self._global_thread = threading.Thread(
                target=self._run_global, args=(optimize,), name="global-optimization", daemon=True
            )
        self._global_thread.start()
        return True

    def _run_global(self, optimize: Callable[[WorldMap], None]):
        LOGGER.info("Starting global optimization")
        try:
            optimize(self.world_map)
            self.world_map.inform_structural_change()
            self.global_optimizations_completed += 1
            LOGGER.info("Global optimization finished")
        except Exception:
            LOGGER.exception("Global optimization failed")
        finally:
            with self._global_lock:
                self._running_global_optimization = False

    def is_running_global_optimization(self) -> bool:
        with self._global_lock:
            return self._running_global_optimization
