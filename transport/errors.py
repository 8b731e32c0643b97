"""
Simulation errors.

Every failure in the simulation is local and recoverable. The model objects
raise these exceptions; the engines catch them where an entity arrives at a
node and turn them into a bounce plus a signal for the UI.

    SimulationError
    ├── RejectedPlacement   wrong destination, kind or capacity
    │   └── FrameOutOfOrder a broadcast frame sent ahead of its turn
    └── InvalidTransition   action impossible in the current phase

Out-of-order buffering and scripted loss are not errors. They are reported as
delivery outcomes and signals.
"""

from typing import Optional


class SimulationError(Exception):
    """Base class for recoverable simulation failures."""

    def __init__(self, message: str, entity_id: Optional[str] = None,
                 node_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id
        self.node_id = node_id


class RejectedPlacement(SimulationError):
    """The entity cannot go here. It bounces back to where it came from."""


class FrameOutOfOrder(RejectedPlacement):
    """A frame was sent before the one that has to go first."""

    def __init__(self, expected: int, **kwargs):
        super().__init__(f"Send Frame {expected} first.", **kwargs)
        self.expected = expected


class InvalidTransition(SimulationError):
    """The action is not possible in the current connection or lesson phase."""

    def __init__(self, message: str, phase: Optional[str] = None,
                 event: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.phase = phase
        self.event = event
