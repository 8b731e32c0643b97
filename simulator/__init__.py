# Packet-flow simulator: timers, node slots and the lesson engines
from .config import SimulationConfig
from .context import SimulationContext
from .events import (
    EventBus, EntityStatus, PhaseChange, HintChanged, Signal, SignalKind,
    Notice, NoticeCleared,
)
from .scheduler import TransitScheduler
from .registry import EntityRegistry
from .nodes import NodeRole, NodeSlot, Topology
from .capture import ExchangeCapture
from .scenarios import Scenario, NodeSpec, BroadcastSpec, message_delivery, video_streaming

__all__ = [
    "SimulationConfig",
    "SimulationContext",
    "EventBus",
    "EntityStatus",
    "PhaseChange",
    "HintChanged",
    "Signal",
    "SignalKind",
    "Notice",
    "NoticeCleared",
    "TransitScheduler",
    "EntityRegistry",
    "NodeRole",
    "NodeSlot",
    "Topology",
    "ExchangeCapture",
    "Scenario",
    "NodeSpec",
    "BroadcastSpec",
    "message_delivery",
    "video_streaming",
]
