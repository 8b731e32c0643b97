"""
Phase engine base - what both lesson engines have in common.

An engine is told about arrivals by the context's membership-diff pass, applies
a protocol rule, and schedules the follow-up on the transit scheduler. Every
scheduled callback captures ids, never objects, and re-checks that its entity
is still where it was left before touching it.
"""

import logging
from typing import TYPE_CHECKING, Callable, Optional

from transport.errors import InvalidTransition, SimulationError
from transport.packet import Packet, TransitStatus

from .events import EntityStatus, SignalKind
from .nodes import NodeSlot

if TYPE_CHECKING:
    from .context import SimulationContext


logger = logging.getLogger(__name__)


class PhaseEngine:
    """
    Base class for the reliable and broadcast engines.

    Subclasses set group (the scheduler group their timers live in) and scope
    (the PhaseChange scope they publish), and implement on_arrival().
    """

    group = "default"
    scope = "default"

    def __init__(self, context: "SimulationContext"):
        self.context = context

    # Shortcuts into the context
    @property
    def config(self):
        return self.context.config

    @property
    def registry(self):
        return self.context.registry

    @property
    def topology(self):
        return self.context.topology

    def on_arrival(self, packet: Packet, slot: NodeSlot):
        raise NotImplementedError

    def on_departure(self, entity_id: str, slot: NodeSlot):
        """An entity left a slot. Most engines don't care."""

    # ========== Timers ==========

    def _schedule(self, delay_ms: int, callback: Callable[[], None],
                  label: Optional[str] = None) -> int:
        return self.context.scheduler.schedule(
            delay_ms, callback, group=self.group, label=label)

    def _live_at(self, entity_id: str, node_id: str,
                 stamp: int) -> Optional[Packet]:
        """
        Re-read an entity for a callback.

        Returns None if it was consumed, moved, or left and came back since
        the callback was scheduled.
        """
        if not self.context.still_at(entity_id, node_id, stamp):
            logger.debug(f"Stale callback for {entity_id} at {node_id}")
            return None
        return self.registry.get(entity_id)

    # ========== Entity updates ==========

    def _set_status(self, packet: Packet, status: TransitStatus,
                    ack: Optional[int] = None):
        packet.transit_status = status
        if ack is not None:
            packet.ack_annotation = ack
        self._publish_status(packet)

    def _publish_status(self, packet: Packet):
        self.context.bus.publish(EntityStatus(
            entity_id=packet.id,
            transit_status=packet.transit_status.value,
            sequence_number=packet.sequence_number,
            ack_annotation=packet.ack_annotation,
            node_id=self.topology.location(packet.id),
            time_ms=self.context.now_ms,
        ))

    def _move(self, packet: Packet, node_id: str,
              status: Optional[TransitStatus] = None):
        """Engine-driven move. Capacity does not apply."""
        self.topology.place(packet.id, node_id, enforce_capacity=False)
        if status is not None:
            packet.transit_status = status
        self._publish_status(packet)

    def _expose(self, packet: Packet) -> Packet:
        """Make a new entity available at the sender."""
        sender = self.topology.sender_id
        packet.origin = sender
        packet.transit_status = TransitStatus.IDLE
        self.registry.add(packet)
        self._move(packet, sender)
        logger.debug(f"Exposed {packet.id}")
        return packet

    def _consume(self, entity_id: str):
        """Destroy an entity; its final status is CONSUMED."""
        packet = self.registry.get(entity_id)
        if packet is None:
            return
        node_id = self.topology.location(entity_id)
        self.topology.remove(entity_id)
        self.registry.destroy(entity_id)
        packet.transit_status = TransitStatus.CONSUMED
        self.context.bus.publish(EntityStatus(
            entity_id=entity_id,
            transit_status=packet.transit_status.value,
            sequence_number=packet.sequence_number,
            ack_annotation=packet.ack_annotation,
            node_id=node_id,
            time_ms=self.context.now_ms,
        ))

    def _consume_later(self, packet: Packet, node_id: str, delay_ms: int):
        stamp = self.context.stamp(packet.id)

        def consume():
            if self._live_at(packet.id, node_id, stamp) is not None:
                self._consume(packet.id)

        self._schedule(delay_ms, consume, label=f"consume {packet.id}")

    # ========== Rejections ==========

    def _bounce(self, packet: Packet, slot: NodeSlot, error: SimulationError,
                tone: str = "warning"):
        """
        Reject an entity where it stands and send it home after a moment.

        The learner sees the rejected status and a notice first, then the
        entity reappears at its origin.
        """
        kind = (SignalKind.INVALID_TRANSITION
                if isinstance(error, InvalidTransition)
                else SignalKind.REJECTED_PLACEMENT)
        logger.debug(f"Rejected {packet.id} at {slot.id}: {error.message}")

        self._set_status(packet, TransitStatus.REJECTED)
        self.context.signal(
            kind, entity_id=packet.id, client_id=packet.client_id,
            sequence_number=packet.sequence_number, message=error.message,
            node_id=slot.id)
        self.context.notify(error.message, tone)

        stamp = self.context.stamp(packet.id)

        def send_home():
            current = self._live_at(packet.id, slot.id, stamp)
            if current is None:
                return
            self._move(current, self._origin_of(current), TransitStatus.IDLE)

        self._schedule(self.config.bounce_ms, send_home, label=f"bounce {packet.id}")

    def _origin_of(self, packet: Packet) -> str:
        if self.topology.has_node(packet.origin):
            return packet.origin
        return self.topology.sender_id

    def _set_phase(self, phase) -> bool:
        """Publish a lesson phase change. Returns False if nothing changed."""
        if getattr(self, "phase", None) == phase:
            return False
        self.phase = phase
        self.context.publish_phase(self.scope, phase.value)
        return True
