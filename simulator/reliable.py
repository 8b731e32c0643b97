"""
Reliable engine - TCP-like delivery, one timer at a time.

The learner drives every step by hand; this engine answers the way the
receiving side of a TCP connection would:

    file -> Internet, no connection   rejected as too large, split into N packets
    file -> Content Splitter          split into N packets
    packet -> server, no connection   rejected: send a SYN first
    SYN    -> server                  SYN-ACK comes back, an ACK tool appears
    ACK    -> server                  connection established
    packets -> server                 received / buffered / duplicate, with ACKs
    3 duplicate ACKs                  the missing packet appears for resending
    all packets in                    file assembled, next file or FIN
    FIN    -> server                  FIN-ACK comes back, done

All timers live in the "reliable" scheduler group so a reconnect can cancel
them in one go before the connections are thrown away.
"""

import logging
from typing import Dict, List, Optional, Set

from transport.connection import Connection, DataResult
from transport.buffer import DeliveryOutcome
from transport.errors import InvalidTransition, RejectedPlacement, SimulationError
from transport.hints import HintInputs
from transport.packet import (
    FileSpec, Packet, PacketKind, TransitStatus,
    create_control_packet, create_data_packet, create_file_packet,
)
from transport.states import ConnectionPhase, LessonPhase

from .engine import PhaseEngine
from .events import SignalKind
from .nodes import NodeRole, NodeSlot


logger = logging.getLogger(__name__)


# Phases in which the learner has not yet opened any connection
PRE_HANDSHAKE = (LessonPhase.MTU, LessonPhase.SPLIT_SEND, LessonPhase.SYN)


def client_label(client_id: Optional[str]) -> str:
    """Single-letter client ids are shown upper-case ("a" -> "A")."""
    if not client_id:
        return "?"
    return client_id.upper() if len(client_id) == 1 else client_id


class ReliableEngine(PhaseEngine):
    """
    Handshake, ordered delivery, fast retransmit and teardown for every
    client of a scenario.
    """

    group = "reliable"
    scope = "reliable"

    def __init__(self, context, scenario):
        super().__init__(context)
        self.scenario = scenario
        self.files: Dict[str, FileSpec] = {f.key: f for f in scenario.files}
        self.connections: Dict[str, Connection] = {}
        self.phase: Optional[LessonPhase] = None

        self.released: Set[str] = set()
        self.split: Set[str] = set()
        self.assembled: Set[str] = set()
        self.current_file: Optional[str] = None
        self.completed = False
        self.packets_sent = 0

        # Entities this engine moved into a receiver (as opposed to dropped there)
        self._carried: Set[str] = set()
        self._assembling: Set[str] = set()

    # ========== Lifecycle ==========

    def start(self):
        self._set_phase(self.scenario.initial_phase)
        if self.scenario.syn_upfront:
            for client_id in self.scenario.clients:
                self._expose_tool(PacketKind.SYN, client_id)
        for client_id in self.scenario.clients:
            self._release_ready(client_id)

    def reset(self):
        """
        Reconnect: drop every connection and everything in flight.

        The context cancels this engine's timers before calling this.
        """
        self._drop_connections()

        for packet in list(self.registry):
            node_id = self.topology.location(packet.id)
            role = self.topology.slot(node_id).role if node_id else None
            if packet.kind is PacketKind.FILE:
                if role is not NodeRole.SENDER:
                    self._move(packet, self._origin_of(packet), TransitStatus.IDLE)
            elif packet.kind.is_control() or role is not NodeRole.SENDER:
                self._consume(packet.id)

        # Fragments lost with the in-flight state come back at the sender
        for key in sorted(self.split - self.assembled):
            self._expose_missing_fragments(self.files[key])

        self.phase = None
        self._set_phase(LessonPhase.SYN)
        for client_id in self.scenario.clients:
            self._expose_tool(PacketKind.SYN, client_id)
        logger.info("Reliable phase reset")

    def discard(self):
        """Throw away all reliable state and entities (handing over to broadcast)."""
        self._drop_connections()
        for packet in list(self.registry):
            self._consume(packet.id)
        logger.debug("Reliable state discarded")

    def _drop_connections(self):
        for connection in self.connections.values():
            connection.reset()
        self.connections.clear()
        self._carried.clear()
        self._assembling.clear()

    # ========== Arrivals ==========

    def on_arrival(self, packet: Packet, slot: NodeSlot):
        try:
            if slot.role is NodeRole.SENDER:
                self._at_sender(packet, slot)
            elif slot.role is NodeRole.TRANSIT:
                self._at_transit(packet, slot)
            elif slot.role is NodeRole.SPLITTER:
                self._at_splitter(packet, slot)
            elif slot.role is NodeRole.RECEIVER:
                self._at_receiver(packet, slot)
            else:
                raise RejectedPlacement("Streaming starts after the connections are set up.")
        except SimulationError as e:
            self._bounce(packet, slot, e)

    def _at_sender(self, packet: Packet, slot: NodeSlot):
        if packet.kind is PacketKind.SYNACK:
            self._synack_returned(packet, slot)
        elif packet.kind is PacketKind.FINACK:
            self._finack_returned(packet, slot)

    def _at_transit(self, packet: Packet, slot: NodeSlot):
        if packet.kind is PacketKind.FILE:
            connection = self.connections.get(packet.client_id)
            if connection is not None and not connection.finished:
                raise RejectedPlacement(
                    "Use the Content Splitter to break the file into packets.")
            self._fragmentation_gate(packet, slot)
            return
        if packet.kind is PacketKind.FRAME:
            raise RejectedPlacement("Frames belong in the Outbox.")

        lost = packet.kind is PacketKind.DATA and self._loss_applies(packet)
        self._set_status(packet, TransitStatus.IN_TRANSIT)
        self._record_send(packet, lost)

        stamp = self.context.stamp(packet.id)

        def arrive():
            current = self._live_at(packet.id, slot.id, stamp)
            if current is None:
                return
            if lost:
                self._lose(current)
            else:
                self._carry(current, slot)

        self._schedule(self.config.propagation_ms, arrive, label=f"carry {packet.id}")

    def _at_splitter(self, packet: Packet, slot: NodeSlot):
        if packet.kind is not PacketKind.FILE:
            raise RejectedPlacement("Only whole files can be split.")

        self._set_status(packet, TransitStatus.PROCESSING)
        stamp = self.context.stamp(packet.id)

        def split():
            current = self._live_at(packet.id, slot.id, stamp)
            if current is None:
                return
            spec = self._split(current)
            if spec.loss_sequence is not None:
                self._set_phase(LessonPhase.LOSS)
            elif self.phase is LessonPhase.MTU:
                self._set_phase(LessonPhase.SPLIT_SEND)
            elif self.phase is LessonPhase.NEXT_FILE:
                self._set_phase(LessonPhase.CONNECTED)

        self._schedule(self.config.processing_ms, split, label=f"split {packet.id}")

    def _at_receiver(self, packet: Packet, slot: NodeSlot):
        carried = packet.id in self._carried
        self._carried.discard(packet.id)
        if not carried:
            if not slot.accepts_drops:
                raise RejectedPlacement("Send packets through the Internet.")
            if slot.client_id is not None and packet.client_id != slot.client_id:
                raise RejectedPlacement(
                    f"This packet is for Client {client_label(packet.client_id)}.")
            if packet.kind is not PacketKind.FILE:
                self._record_send(packet, lost=False)

        if packet.kind is PacketKind.SYN:
            self._syn_at_receiver(packet, slot)
        elif packet.kind is PacketKind.ACK:
            self._ack_at_receiver(packet, slot)
        elif packet.kind is PacketKind.DATA:
            self._data_at_receiver(packet, slot)
        elif packet.kind is PacketKind.FIN:
            self._fin_at_receiver(packet, slot)
        elif packet.kind is PacketKind.FILE:
            raise RejectedPlacement("Split the file into packets first.")
        else:
            raise RejectedPlacement(f"{packet.kind} doesn't go to the receiver.")

    # ========== Fragmentation ==========

    def _fragmentation_gate(self, packet: Packet, slot: NodeSlot):
        spec = self.files[packet.file_key]
        mtu = self.config.mtu
        total = spec.fragment_count(mtu)
        message = (
            f"{spec.name} is too large for one packet "
            f"({spec.size_bytes} bytes, MTU {mtu}). It becomes {total} packets."
        )
        logger.debug(f"Fragmentation gate: {message}")

        self._set_status(packet, TransitStatus.REJECTED)
        self.context.signal(
            SignalKind.REJECTED_PLACEMENT, entity_id=packet.id,
            client_id=packet.client_id, message=message, node_id=slot.id)
        self.context.notify(message, "warning")

        stamp = self.context.stamp(packet.id)

        def split():
            current = self._live_at(packet.id, slot.id, stamp)
            if current is None:
                return
            self._split(current)
            if self.phase is LessonPhase.MTU:
                self._set_phase(LessonPhase.SPLIT_SEND)

        self._schedule(self.config.processing_ms, split, label=f"fragment {packet.id}")

    def _split(self, file_packet: Packet) -> FileSpec:
        """Replace a whole file with its fragments at the sender."""
        spec = self.files[file_packet.file_key]
        self._consume(file_packet.id)
        self.split.add(spec.key)
        self._expose_missing_fragments(spec)
        logger.info(f"{spec.name} split into {spec.fragment_count(self.config.mtu)} packets")
        return spec

    def _expose_missing_fragments(self, spec: FileSpec):
        total = spec.fragment_count(self.config.mtu)
        for seq in range(1, total + 1):
            live = [p for p in self.registry.find(
                        PacketKind.DATA, spec.key, seq, spec.client_id)
                    if p.transit_status is not TransitStatus.LOST]
            if not live:
                self._expose_fragment(spec, seq, total)

    def _expose_fragment(self, spec: FileSpec, seq: int, total: int) -> Packet:
        packet_id = self.registry.unique_id(f"{spec.key}-packet-{seq}")
        return self._expose(create_data_packet(spec, seq, total, packet_id))

    # ========== Transit ==========

    def _loss_applies(self, packet: Packet) -> bool:
        spec = self.files.get(packet.file_key)
        connection = self.connections.get(packet.client_id)
        if spec is None or connection is None or not connection.phase.is_established():
            return False
        return connection.loss_applies(
            packet.file_key, packet.sequence_number, spec.loss_sequence)

    def _record_send(self, packet: Packet, lost: bool):
        self.context.capture.record_send(
            packet, self.context.now_ms, self.config.mtu, lost=lost)
        if not packet.kind.is_reply():
            self.packets_sent += 1

    def _carry(self, packet: Packet, slot: NodeSlot):
        """Hand a packet that crossed the Internet to its destination."""
        if packet.kind.is_reply():
            self._move(packet, self.topology.sender_id)
            return

        receiver = self.topology.receiver_for(packet.client_id)
        if receiver is None:
            self._bounce(packet, slot, RejectedPlacement("Nobody is listening for this packet."))
            return
        self._carried.add(packet.id)
        self._move(packet, receiver.id)

    def _lose(self, packet: Packet):
        logger.debug(f"Packet #{packet.sequence_number} of {packet.file_key} lost")
        self._set_status(packet, TransitStatus.LOST)
        self.context.signal(
            SignalKind.SIMULATED_LOSS, entity_id=packet.id,
            client_id=packet.client_id, sequence_number=packet.sequence_number,
            message=f"Packet #{packet.sequence_number} was lost in the Internet.")
        self._consume_later(packet, self.topology.location(packet.id),
                            self.config.loss_fade_ms)

    # ========== Handshake ==========

    def _open(self, client_id: str) -> Connection:
        connection = Connection(client_id, self.config.dup_ack_threshold)
        scope = f"connection:{client_id}"
        connection.state_machine.on_transition(
            lambda old, new, event: self.context.publish_phase(scope, new.value))
        self.connections[client_id] = connection
        return connection

    def _syn_at_receiver(self, packet: Packet, slot: NodeSlot):
        client_id = packet.client_id
        connection = self.connections.get(client_id)
        if connection is not None and connection.finished:
            raise InvalidTransition(
                "The connection is closed.", phase="closed", event="recv_syn")
        if connection is None:
            connection = self._open(client_id)
        connection.accept_syn()

        self._set_status(packet, TransitStatus.RECEIVED)
        if self.phase in PRE_HANDSHAKE:
            self._set_phase(LessonPhase.SYN_WAIT)

        def answer():
            if self.connections.get(client_id) is not connection:
                return
            self._consume(packet.id)
            self._emit_reply(PacketKind.SYNACK, client_id, slot)

        self._schedule(self.config.processing_ms, answer, label=f"syn-ack {client_id}")

    def _synack_returned(self, packet: Packet, slot: NodeSlot):
        self._set_status(packet, TransitStatus.RECEIVED)
        self._expose_tool(PacketKind.ACK, packet.client_id)
        if self.phase is LessonPhase.SYN_WAIT:
            self._set_phase(LessonPhase.ACK)
        self._consume_later(packet, slot.id, self.config.processing_ms)

    def _ack_at_receiver(self, packet: Packet, slot: NodeSlot):
        client_id = packet.client_id
        connection = self.connections.get(client_id)
        if connection is None:
            raise InvalidTransition(
                "Send a SYN and wait for the SYN-ACK first.",
                phase=ConnectionPhase.CLOSED.value, event="recv_ack")
        if connection.finished:
            raise InvalidTransition(
                "The connection is closed.", phase="closed", event="recv_ack")
        connection.accept_ack()

        self._set_status(packet, TransitStatus.RECEIVED)
        self._consume_later(packet, slot.id, self.config.processing_ms)
        self.context.signal(
            SignalKind.CONNECTION_ESTABLISHED, client_id=client_id,
            message=f"Connection established with Client {client_label(client_id)}.")
        self.context.notify(
            f"Connection established with Client {client_label(client_id)}.", "success")

        if self._all_established() and self.phase in (
                PRE_HANDSHAKE + (LessonPhase.SYN_WAIT, LessonPhase.ACK)):
            self._set_phase(LessonPhase.CONNECTED)

        self._release_ready(client_id)
        self._check_client_done(client_id)

    def _all_established(self) -> bool:
        return all(
            c in self.connections and self.connections[c].phase.is_established()
            for c in self.scenario.clients
        )

    # ========== Data ==========

    def _data_at_receiver(self, packet: Packet, slot: NodeSlot):
        client_id = packet.client_id
        connection = self.connections.get(client_id)
        if connection is None:
            self._prompt_syn(client_id)
            raise RejectedPlacement("No connection yet. Send a SYN first.")

        result = connection.receive_data(
            packet.file_key, packet.sequence_number, packet.total_fragments)
        self.context.capture.record_ack(
            client_id, result.ack_num, self.context.now_ms,
            duplicate=result.duplicate_ack)

        if result.outcome is DeliveryOutcome.ACCEPTED:
            self._set_status(packet, TransitStatus.RECEIVED, ack=result.ack_num)
            self._show_flushed(connection, packet.file_key, result.flushed,
                               result.ack_num, slot)
        elif result.outcome is DeliveryOutcome.BUFFERED:
            self._set_status(packet, TransitStatus.BUFFERED, ack=result.ack_num)
            self.context.signal(
                SignalKind.OUT_OF_ORDER_BUFFERED, entity_id=packet.id,
                client_id=client_id, sequence_number=packet.sequence_number,
                message=f"Packet #{packet.sequence_number} is buffered for ordering.",
                expected=connection.expected_seq)
            self._schedule_release_attempt(connection, packet)
        else:
            self._set_status(packet, TransitStatus.DUPLICATE, ack=result.ack_num)
            self._consume_later(packet, slot.id, self.config.processing_ms)

        if result.retransmit_sequence is not None:
            self._request_retransmit(connection, packet, result, slot)

        if result.complete and packet.file_key not in self._assembling \
                and packet.file_key not in self.assembled:
            self._schedule_assembly(connection, packet.file_key)

    def _show_flushed(self, connection: Connection, file_key: str,
                      flushed: List[int], ack: int, slot: NodeSlot):
        """Release buffered packets on screen one step apart, in order."""
        for i, seq in enumerate(flushed, start=1):
            def release(seq=seq):
                if self.connections.get(connection.client_id) is not connection:
                    return
                for member in self._file_members(file_key, seq, slot):
                    if member.transit_status is TransitStatus.BUFFERED:
                        self._set_status(member, TransitStatus.RECEIVED, ack=ack)

            self._schedule(i * self.config.buffer_step_ms, release,
                           label=f"flush {file_key} #{seq}")

    def _schedule_release_attempt(self, connection: Connection, packet: Packet):
        """
        Check back on a buffered packet after a while.

        The flush itself happens when the missing packet arrives; the attempt
        only reports a packet that is still waiting for the gap to close.
        """
        file_key = packet.file_key
        seq = packet.sequence_number

        def attempt():
            if self.connections.get(connection.client_id) is not connection:
                return
            buffer = connection.transfer(file_key)
            if buffer is not None and seq in buffer.buffered:
                self.context.notify(
                    f"Packet #{seq} is waiting for Packet #{buffer.expected}.", "info")

        self._schedule(self.config.buffer_release_ms, attempt,
                       label=f"release attempt {file_key} #{seq}")

    def _file_members(self, file_key: str, seq: int, slot: NodeSlot) -> List[Packet]:
        members = []
        for entity_id in self.topology.members(slot.id):
            packet = self.registry.get(entity_id)
            if packet is not None and packet.kind is PacketKind.DATA \
                    and packet.file_key == file_key and packet.sequence_number == seq:
                members.append(packet)
        return members

    def _request_retransmit(self, connection: Connection, packet: Packet,
                            result: DataResult, slot: NodeSlot):
        seq = result.retransmit_sequence
        spec = self.files[packet.file_key]
        logger.info(f"[{connection.client_id}] Fast retransmit of {spec.key} #{seq}")

        self.context.signal(
            SignalKind.RETRANSMIT_NEEDED, client_id=connection.client_id,
            sequence_number=seq,
            message=f"{self.config.dup_ack_threshold} duplicate ACKs for {result.ack_num}.",
            file_key=spec.key)
        self.context.notify(
            f"{self.config.dup_ack_threshold} duplicate ACKs. Resend Packet #{seq}.",
            "warning")
        self._set_phase(LessonPhase.RESEND)

        live = [p for p in self.registry.find(
                    PacketKind.DATA, spec.key, seq, connection.client_id)
                if p.transit_status is not TransitStatus.LOST
                and self.topology.location(p.id) != slot.id]
        if not live:
            self._expose_fragment(spec, seq, packet.total_fragments)

    def _schedule_assembly(self, connection: Connection, file_key: str):
        self._assembling.add(file_key)

        def assemble():
            if self.connections.get(connection.client_id) is not connection:
                return
            self._assembling.discard(file_key)
            self._assemble(connection, file_key)

        self._schedule(self.config.assembly_ms, assemble, label=f"assemble {file_key}")

    def _assemble(self, connection: Connection, file_key: str):
        spec = self.files[file_key]
        connection.mark_assembled(file_key)
        self.assembled.add(file_key)

        for packet in self.registry.find(PacketKind.DATA, file_key=file_key,
                                         client_id=connection.client_id):
            self._consume(packet.id)

        self.context.signal(
            SignalKind.FILE_COMPLETE, client_id=connection.client_id,
            message=f"{spec.name} delivered!", file_key=file_key)
        self.context.notify(f"{spec.name} delivered!", "success")

        self._release_ready(connection.client_id)
        self._check_client_done(connection.client_id)

    # ========== Releases ==========

    def _files_for(self, client_id: str) -> List[FileSpec]:
        return [f for f in self.scenario.files if f.client_id == client_id]

    def _release_ready(self, client_id: str):
        """Expose every file whose release condition now holds."""
        connection = self.connections.get(client_id)
        established = connection is not None and connection.phase.is_established()
        previous_done = True
        for spec in self._files_for(client_id):
            if spec.key not in self.released:
                if spec.release == "start" \
                        or (spec.release == "connected" and established) \
                        or (spec.release == "after-previous" and previous_done):
                    self._release(spec)
            previous_done = previous_done and spec.key in self.assembled

    def _release(self, spec: FileSpec):
        self.released.add(spec.key)
        self.current_file = spec.key
        logger.debug(f"Released {spec.name}")

        if spec.pre_split:
            self.split.add(spec.key)
            self._expose_missing_fragments(spec)
            if spec.loss_sequence is not None:
                self._set_phase(LessonPhase.LOSS)
            return

        self._expose(create_file_packet(spec, self.registry.unique_id(f"{spec.key}-file")))
        if any(f.key in self.assembled for f in self._files_for(spec.client_id)):
            self._set_phase(LessonPhase.NEXT_FILE)

    def _files_done(self, client_id: str) -> bool:
        return all(f.key in self.assembled for f in self._files_for(client_id))

    def _check_client_done(self, client_id: str):
        connection = self.connections.get(client_id)
        if connection is None or not connection.phase.is_established():
            return
        if not self._files_done(client_id):
            return

        if self.scenario.teardown:
            self._expose_tool(PacketKind.FIN, client_id)
            if all(self._files_done(c) for c in self.scenario.clients):
                self._set_phase(LessonPhase.CLOSING)
        elif all(self._files_done(c) for c in self.scenario.clients):
            self._finish()

    # ========== Teardown ==========

    def _fin_at_receiver(self, packet: Packet, slot: NodeSlot):
        client_id = packet.client_id
        connection = self.connections.get(client_id)
        if connection is None:
            raise InvalidTransition(
                "There is no open connection to close.",
                phase=ConnectionPhase.CLOSED.value, event="recv_fin")
        if connection.finished:
            raise InvalidTransition(
                "The connection is closed.", phase="closed", event="recv_fin")
        if not self._files_done(client_id):
            raise InvalidTransition(
                "Finish delivering the file before closing.",
                phase=connection.phase.value, event="recv_fin")
        connection.accept_fin()

        self._set_status(packet, TransitStatus.RECEIVED)

        def answer():
            if self.connections.get(client_id) is not connection:
                return
            self._consume(packet.id)
            connection.finish()
            self.context.signal(
                SignalKind.CONNECTION_CLOSED, client_id=client_id,
                message=f"Connection with Client {client_label(client_id)} closed.")
            self._emit_reply(PacketKind.FINACK, client_id, slot)

        self._schedule(self.config.processing_ms, answer, label=f"fin-ack {client_id}")

    def _finack_returned(self, packet: Packet, slot: NodeSlot):
        self._set_status(packet, TransitStatus.RECEIVED)
        self._consume_later(packet, slot.id, self.config.processing_ms)
        if all(c in self.connections and self.connections[c].finished
               for c in self.scenario.clients):
            self._finish()

    def _finish(self):
        if self.completed:
            return
        self.completed = True
        self._set_phase(LessonPhase.COMPLETE)
        logger.info("Reliable delivery complete")
        self.context.stage_complete(self.scope)

    # ========== Tools ==========

    def _emit_reply(self, kind: PacketKind, client_id: str, slot: NodeSlot):
        """Put a SYN-ACK or FIN-ACK on its way back to the sender."""
        packet = create_control_packet(
            kind, client_id, self.registry.unique_id(f"{kind.value}-{client_id}"))
        packet.origin = slot.id
        packet.transit_status = TransitStatus.IN_TRANSIT
        self.registry.add(packet)

        transit = self.topology.first(NodeRole.TRANSIT)
        self._move(packet, transit.id if transit else self.topology.sender_id)

    def _expose_tool(self, kind: PacketKind, client_id: str):
        """Make a control packet available unless one is already around."""
        if self.registry.find(kind=kind, client_id=client_id):
            return
        self._expose(create_control_packet(
            kind, client_id, self.registry.unique_id(f"{kind.value}-{client_id}")))

    def _prompt_syn(self, client_id: str):
        if self.phase in (LessonPhase.MTU, LessonPhase.SPLIT_SEND):
            self._set_phase(LessonPhase.SYN)
        self._expose_tool(PacketKind.SYN, client_id)

    # ========== Narration ==========

    def hint_inputs(self) -> HintInputs:
        spec = self.files.get(self.current_file) if self.current_file else None
        connections = list(self.connections.values())
        return HintInputs(
            mode="reliable",
            lesson_phase=self.phase or self.scenario.initial_phase,
            file_name=spec.name if spec else "the file",
            received_count=sum(c.received_count for c in connections),
            waiting_count=sum(c.waiting_count for c in connections),
            loss_sequence=spec.loss_sequence if spec else None,
            connection_closed=any(
                c.phase is ConnectionPhase.CLOSING or c.finished for c in connections),
        )

    def connection_phase(self, client_id: str) -> ConnectionPhase:
        connection = self.connections.get(client_id)
        return connection.phase if connection else ConnectionPhase.CLOSED
