"""
Events published to the UI.

The engine never draws anything. It publishes small immutable records and the
UI (or a test) subscribes to them:

    EntityStatus   a packet changed status or moved
    PhaseChange    a lesson, stream or connection phase changed
    HintChanged    the narration text changed
    Signal         something noteworthy happened (loss, retransmit needed, ...)
    Notice         a short-lived message for the learner
    NoticeCleared  that message expired
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type


logger = logging.getLogger(__name__)


class SignalKind(Enum):
    REJECTED_PLACEMENT = "rejected-placement"
    OUT_OF_ORDER_BUFFERED = "out-of-order-buffered"
    SIMULATED_LOSS = "simulated-loss"
    INVALID_TRANSITION = "invalid-transition"
    RETRANSMIT_NEEDED = "retransmit-needed"
    CONNECTION_ESTABLISHED = "connection-established"
    CONNECTION_CLOSED = "connection-closed"
    FILE_COMPLETE = "file-complete"
    FRAME_DELIVERED = "frame-delivered"
    SIMULATION_COMPLETE = "simulation-complete"


@dataclass(frozen=True)
class EntityStatus:
    entity_id: str
    transit_status: str
    sequence_number: Optional[int] = None
    ack_annotation: Optional[int] = None
    node_id: Optional[str] = None
    time_ms: int = 0


@dataclass(frozen=True)
class PhaseChange:
    """scope is "reliable", "broadcast" or "connection:<client>"."""
    scope: str
    phase: str
    time_ms: int = 0


@dataclass(frozen=True)
class HintChanged:
    hint: str
    time_ms: int = 0


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    entity_id: Optional[str] = None
    client_id: Optional[str] = None
    sequence_number: Optional[int] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    time_ms: int = 0


@dataclass(frozen=True)
class Notice:
    """tone is "info", "warning" or "success"."""
    notice_id: int
    message: str
    tone: str = "info"
    time_ms: int = 0


@dataclass(frozen=True)
class NoticeCleared:
    notice_id: int
    time_ms: int = 0


class EventBus:
    """
    Synchronous publish/subscribe with a full history.

    Subscribers run immediately, in subscription order. Subscribing to
    object receives everything.
    """

    def __init__(self, clock: Callable[[], int] = lambda: 0):
        self._clock = clock
        self._subscribers: Dict[type, List[Callable[[Any], None]]] = defaultdict(list)
        self.history: List[Any] = []

    def now(self) -> int:
        return self._clock()

    def subscribe(self, event_type: Type, callback: Callable[[Any], None]):
        self._subscribers[event_type].append(callback)

    def publish(self, event: Any):
        self.history.append(event)
        for callback in self._subscribers.get(type(event), []):
            callback(event)
        for callback in self._subscribers.get(object, []):
            callback(event)

    def of_type(self, event_type: Type) -> List[Any]:
        """Every published event of one type, oldest first."""
        return [e for e in self.history if isinstance(e, event_type)]

    def signals(self, kind: Optional[SignalKind] = None) -> List[Signal]:
        signals = self.of_type(Signal)
        if kind is not None:
            signals = [s for s in signals if s.kind is kind]
        return signals
