"""
Tracking subpackage.

Provides the tracking collaborator used by the orchestrator:
- TrackingState: per-frame tracking status
- FrameInput / TrackedFrame: tracker input and output containers
- Tracker: base class handling map-freeze mode, reset and trajectory
  bookkeeping around a concrete ``track`` implementation
"""

from .tracker import (
    FrameInput,
    TrackedFrame,
    Tracker,
    TrackingState,
)

__all__ = [
    "FrameInput",
    "TrackedFrame",
    "Tracker",
    "TrackingState",
]
