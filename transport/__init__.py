"""
Transport - protocol rules for the packet-flow lessons.

This package holds the pure protocol side of the simulation: what packets are,
how a receiver walks through the handshake, orders fragments, detects
duplicate ACKs and tears down, and how a broadcast fans frames out. Nothing
here knows about time; the simulator package drives these rules on a timeline.
"""

from .errors import SimulationError, RejectedPlacement, InvalidTransition, FrameOutOfOrder
from .packet import (
    Packet, PacketKind, TransitStatus, Frame, FileSpec,
    create_file_packet, create_data_packet, create_control_packet,
    create_frame_packet, fragment_file,
)
from .states import ConnectionPhase, ConnectionStateMachine, LessonPhase, BroadcastPhase
from .buffer import ReorderBuffer, DeliveryOutcome
from .connection import Connection, DuplicateAckTracker, DataResult
from .broadcast import BroadcastSession, DeliveryMatrix
from .hints import HintInputs, derive_hint, status_label

__version__ = "1.0.0"

__all__ = [
    "SimulationError",
    "RejectedPlacement",
    "FrameOutOfOrder",
    "InvalidTransition",
    "Packet",
    "PacketKind",
    "TransitStatus",
    "Frame",
    "FileSpec",
    "create_file_packet",
    "create_data_packet",
    "create_control_packet",
    "create_frame_packet",
    "fragment_file",
    "ConnectionPhase",
    "ConnectionStateMachine",
    "LessonPhase",
    "BroadcastPhase",
    "ReorderBuffer",
    "DeliveryOutcome",
    "Connection",
    "DuplicateAckTracker",
    "DataResult",
    "BroadcastSession",
    "DeliveryMatrix",
    "HintInputs",
    "derive_hint",
    "status_label",
]
