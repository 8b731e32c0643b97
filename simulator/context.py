"""
Simulation context - one lesson attempt.

The context owns everything that lives for one attempt: the clock, the
entities, the node slots, the connections (through the reliable engine), the
event bus and the capture. There is no module-level state, so two contexts
never interfere and throwing one away is all it takes to start over.

Usage:
    ctx = SimulationContext(message_delivery())
    ctx.bus.subscribe(HintChanged, lambda e: print(e.hint))

    ctx.place_entity("message-file", "internet")   # learner drops a file
    ctx.advance(500)                                # time passes
    ...
    ctx.teardown()                                  # learner navigates away

The driver only ever places and removes entities. Everything else happens
because the context notices membership changes on its observation pass, which
runs after every placement and after every fired timer.
"""

import logging
from typing import Dict, List, Optional

from transport.connection import Connection
from transport.errors import RejectedPlacement
from transport.hints import derive_hint, status_label
from transport.packet import Packet, TransitStatus

from .capture import ExchangeCapture
from .config import SimulationConfig
from .events import (
    EntityStatus, EventBus, HintChanged, Notice, NoticeCleared, PhaseChange,
    Signal, SignalKind,
)
from .engine import PhaseEngine
from .nodes import NodeRole, NodeSlot, Topology
from .registry import EntityRegistry
from .reliable import ReliableEngine
from .scenarios import Scenario, message_delivery
from .scheduler import TransitScheduler
from .streaming import StreamingEngine


logger = logging.getLogger(__name__)


class SimulationContext:
    """
    Facade the UI talks to.

    Consumed: place_entity(), remove_entity(), advance(), reset_phase(),
    switch_to_broadcast(), teardown().
    Exposed: events on self.bus, plus read-only helpers (status(), hint,
    connection(), client_progress()).
    """

    MAX_OBSERVE_PASSES = 100

    def __init__(self, scenario: Optional[Scenario] = None,
                 config: Optional[SimulationConfig] = None):
        self.scenario = scenario or message_delivery()
        self.config = config or SimulationConfig()

        self.scheduler = TransitScheduler()
        self.bus = EventBus(clock=lambda: self.scheduler.now_ms)
        self.registry = EntityRegistry()
        self.topology = Topology(self.scenario.build_nodes())
        self.capture = ExchangeCapture()

        self.mode = "reliable"
        self.hint = ""
        self.closed = False
        self.complete = False

        self._stamps: Dict[str, int] = {}
        self._observing = False
        self._next_notice = 1
        self._ready = False

        self.reliable = ReliableEngine(self, self.scenario)
        self.streaming: Optional[StreamingEngine] = None
        if self.scenario.broadcast is not None:
            self.streaming = StreamingEngine(self, self.scenario.broadcast.matrix())

        self.scheduler.add_observer(self.observe)
        self.bus.subscribe(object, self._on_event)

        self._ready = True
        self.reliable.start()
        self.observe()
        self._refresh_hint()
        logger.info(f"Simulation '{self.scenario.name}' ready")

    # ========== Driver interface ==========

    def place_entity(self, entity_id: str, node_id: str) -> bool:
        """
        The learner dropped an entity onto a node.

        Returns:
            False if the drop was refused outright (full node, closed context)

        Raises:
            KeyError: Unknown entity or node
        """
        if self.closed:
            logger.warning(f"Ignoring placement of {entity_id}: simulation torn down")
            return False

        self.registry.require(entity_id)
        slot = self.topology.slot(node_id)
        try:
            self.topology.place(entity_id, slot.id)
        except RejectedPlacement as e:
            self.signal(SignalKind.REJECTED_PLACEMENT, entity_id=entity_id,
                        message=e.message, node_id=node_id)
            self.notify(e.message, "warning")
            return False

        logger.debug(f"t={self.now_ms} placed {entity_id} in {node_id}")
        self.observe()
        return True

    def remove_entity(self, entity_id: str, node_id: str) -> bool:
        """
        The learner dragged an entity out of a node; it goes back home.

        Returns:
            False if the entity was not in that node
        """
        if self.closed:
            return False
        packet = self.registry.get(entity_id)
        if packet is None or self.topology.location(entity_id) != node_id:
            return False

        home = packet.origin if self.topology.has_node(packet.origin) \
            else self.topology.sender_id
        self.topology.place(entity_id, home, enforce_capacity=False)
        packet.transit_status = TransitStatus.IDLE
        self._publish_status(packet)
        self.observe()
        return True

    def advance(self, ms: int) -> int:
        """Let virtual time pass. Returns the number of timers fired."""
        if self.closed:
            return 0
        return self.scheduler.advance(ms)

    def run_until_idle(self) -> int:
        if self.closed:
            return 0
        return self.scheduler.run_until_idle()

    def reset_phase(self):
        """
        Reconnect: cancel the reliable timers, then drop the connections and
        everything in flight, and offer fresh SYNs.
        """
        if self.closed:
            return
        if self.mode != "reliable":
            logger.warning("reset_phase() only applies to the reliable stage")
            return
        self.scheduler.cancel_group(self.reliable.group)
        self.reliable.reset()
        self.observe()
        self._refresh_hint()

    def switch_to_broadcast(self):
        """Abandon the reliable stage and start streaming."""
        if self.closed or self.mode == "broadcast":
            return
        if self.streaming is None:
            raise ValueError(f"Scenario '{self.scenario.name}' has no broadcast stage")

        self.scheduler.cancel_group(self.reliable.group)
        self.reliable.discard()
        self.mode = "broadcast"
        self.streaming.start()
        self.observe()
        self._refresh_hint()

    def teardown(self):
        """Cancel every timer. Nothing fires or changes afterwards."""
        if self.closed:
            return
        self.scheduler.shutdown()
        self.closed = True
        logger.info(f"Simulation '{self.scenario.name}' torn down")

    # ========== Observation ==========

    def observe(self):
        """
        Membership-diff pass: hand every new arrival to its engine.

        Repeats until no slot changes, since handling one arrival can move or
        expose other entities.
        """
        if self._observing or self.closed:
            return
        self._observing = True
        try:
            for _ in range(self.MAX_OBSERVE_PASSES):
                changes = [(slot, added, removed)
                           for slot, added, removed in self.topology.diff_all()
                           if added or removed]
                if not changes:
                    return
                for slot, added, removed in changes:
                    engine = self._engine_for(slot)
                    for entity_id in removed:
                        engine.on_departure(entity_id, slot)
                    for entity_id in added:
                        self._dispatch_arrival(engine, entity_id, slot)
            logger.warning("Observation pass did not settle")
        finally:
            self._observing = False

    def _dispatch_arrival(self, engine: PhaseEngine, entity_id: str, slot: NodeSlot):
        if self.closed or self.topology.location(entity_id) != slot.id:
            return
        packet = self.registry.get(entity_id)
        if packet is None:
            return
        self._stamps[entity_id] = self._stamps.get(entity_id, 0) + 1
        engine.on_arrival(packet, slot)

    def _engine_for(self, slot: NodeSlot) -> PhaseEngine:
        if self.streaming is not None and (
                self.mode == "broadcast" or slot.role is NodeRole.OUTBOX):
            return self.streaming
        return self.reliable

    def stamp(self, entity_id: str) -> int:
        """How many arrivals an entity has had; timers use it to spot staleness."""
        return self._stamps.get(entity_id, 0)

    def still_at(self, entity_id: str, node_id: str, stamp: int) -> bool:
        return (
            not self.closed
            and entity_id in self.registry
            and self.topology.location(entity_id) == node_id
            and self._stamps.get(entity_id, 0) == stamp
        )

    # ========== Publishing ==========

    @property
    def now_ms(self) -> int:
        return self.scheduler.now_ms

    def signal(self, kind: SignalKind, entity_id: Optional[str] = None,
               client_id: Optional[str] = None,
               sequence_number: Optional[int] = None,
               message: str = "", **details):
        logger.debug(f"t={self.now_ms} signal {kind.value}: {message}")
        self.bus.publish(Signal(
            kind=kind,
            entity_id=entity_id,
            client_id=client_id,
            sequence_number=sequence_number,
            message=message,
            details=details,
            time_ms=self.now_ms,
        ))

    def notify(self, message: str, tone: str = "info") -> int:
        """Show a short-lived notice. Returns its id."""
        notice_id = self._next_notice
        self._next_notice += 1
        self.bus.publish(Notice(notice_id, message, tone, self.now_ms))

        if not self.scheduler.closed:
            self.scheduler.schedule(
                self.config.notice_ms,
                lambda: self.bus.publish(NoticeCleared(notice_id, self.now_ms)),
                group="notices", label=f"clear notice {notice_id}")
        return notice_id

    def publish_phase(self, scope: str, phase: str):
        logger.debug(f"t={self.now_ms} {scope} -> {phase}")
        self.bus.publish(PhaseChange(scope, phase, self.now_ms))

    def stage_complete(self, scope: str):
        """An engine finished its stage; the last stage completes the simulation."""
        if scope == ReliableEngine.scope and self.streaming is not None:
            logger.info("Reliable stage complete; broadcast stage still to come")
            return
        if self.complete:
            return
        self.complete = True
        logger.info(f"Simulation '{self.scenario.name}' complete")
        self.signal(SignalKind.SIMULATION_COMPLETE, message="Simulation complete.")

    def _publish_status(self, packet: Packet):
        self.bus.publish(EntityStatus(
            entity_id=packet.id,
            transit_status=packet.transit_status.value,
            sequence_number=packet.sequence_number,
            ack_annotation=packet.ack_annotation,
            node_id=self.topology.location(packet.id),
            time_ms=self.now_ms,
        ))

    def _on_event(self, event):
        if isinstance(event, HintChanged) or not self._ready:
            return
        self._refresh_hint()

    def _refresh_hint(self):
        if self.mode == "broadcast" and self.streaming is not None:
            inputs = self.streaming.hint_inputs()
        else:
            inputs = self.reliable.hint_inputs()
        hint = derive_hint(inputs)
        if hint != self.hint:
            self.hint = hint
            self.bus.publish(HintChanged(hint, self.now_ms))

    # ========== Queries ==========

    def status(self, entity_id: str) -> Optional[str]:
        """Status label of an entity, None once it is gone."""
        packet = self.registry.get(entity_id)
        return status_label(packet) if packet is not None else None

    def entity(self, entity_id: str) -> Optional[Packet]:
        return self.registry.get(entity_id)

    def location(self, entity_id: str) -> Optional[str]:
        return self.topology.location(entity_id)

    def members(self, node_id: str) -> List[str]:
        return self.topology.members(node_id)

    def connection(self, client_id: str) -> Optional[Connection]:
        return self.reliable.connections.get(client_id)

    def client_progress(self) -> List[dict]:
        return self.streaming.client_progress() if self.streaming else []

    def __str__(self) -> str:
        return (
            f"SimulationContext({self.scenario.name}, mode={self.mode}, "
            f"t={self.now_ms}ms, {self.topology})"
        )
