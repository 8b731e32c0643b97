"""
Streaming engine - UDP-like broadcast of video frames.

Frames are dropped into the Outbox one at a time. A frame in order leaves
after one send delay and reaches whichever clients the delivery matrix says it
reaches; a frame out of order bounces. Nothing is acknowledged, retried or
buffered, and the stream is complete once the last frame has gone out, no
matter what each client actually got.
"""

import logging
from typing import List, Optional

from transport.broadcast import BroadcastSession, DeliveryMatrix
from transport.errors import FrameOutOfOrder, RejectedPlacement, SimulationError
from transport.hints import HintInputs
from transport.packet import Packet, PacketKind, TransitStatus, create_frame_packet
from transport.states import BroadcastPhase

from .engine import PhaseEngine
from .events import SignalKind
from .nodes import NodeRole, NodeSlot


logger = logging.getLogger(__name__)


class StreamingEngine(PhaseEngine):
    """Drives one BroadcastSession on the scheduler."""

    group = "broadcast"
    scope = "broadcast"

    def __init__(self, context, matrix: DeliveryMatrix):
        super().__init__(context)
        self.matrix = matrix
        self.session: Optional[BroadcastSession] = None
        self.phase: Optional[BroadcastPhase] = None
        self.completed = False

    @property
    def started(self) -> bool:
        return self.session is not None

    def start(self):
        """Expose the frames and open the stream after a short intro."""
        if self.started:
            return
        if self.topology.first(NodeRole.OUTBOX) is None:
            raise ValueError("Broadcast needs an outbox node")

        self.session = BroadcastSession(self.matrix)
        self._set_phase(BroadcastPhase.INTRO)
        for n in range(1, self.matrix.total_frames + 1):
            self._expose(create_frame_packet(n, self.registry.unique_id(f"frame-{n}")))

        def begin():
            if self.phase is BroadcastPhase.INTRO:
                self._set_phase(BroadcastPhase.STREAMING)

        self._schedule(self.config.broadcast_intro_ms, begin, label="stream intro")
        logger.info(f"Broadcast started: {self.matrix.total_frames} frames "
                    f"to {len(self.matrix.clients)} clients")

    def on_arrival(self, packet: Packet, slot: NodeSlot):
        if slot.role is NodeRole.SENDER:
            return
        try:
            if not self.started:
                raise RejectedPlacement("Streaming starts after the connections are set up.")
            if slot.role is not NodeRole.OUTBOX:
                raise RejectedPlacement("Drop frames into the Outbox.")
            if packet.kind is not PacketKind.FRAME:
                raise RejectedPlacement("Only video frames can be broadcast.")
            self._send(packet, slot)
        except SimulationError as e:
            packet.out_of_order = isinstance(e, FrameOutOfOrder)
            self._bounce(packet, slot, e)

    def _send(self, packet: Packet, slot: NodeSlot):
        frame_number = packet.frame_number
        self.session.check_order(frame_number)

        self._set_status(packet, TransitStatus.IN_TRANSIT)
        stamp = self.context.stamp(packet.id)

        def fan_out():
            current = self._live_at(packet.id, slot.id, stamp)
            if current is None:
                return
            self._deliver(current)

        self._schedule(self.config.frame_send_ms, fan_out, label=f"send frame {frame_number}")

    def _deliver(self, packet: Packet):
        frame_number = packet.frame_number
        self._consume(packet.id)
        frame = self.session.deliver(frame_number)
        self.context.capture.record_frame(
            frame_number, self.matrix.clients, frame.delivered_to, self.context.now_ms)

        self.context.signal(
            SignalKind.FRAME_DELIVERED, entity_id=packet.id,
            sequence_number=frame_number,
            message=f"Frame {frame_number} sent.",
            delivered_to=sorted(frame.delivered_to))

        if self.session.is_complete:
            self.completed = True
            self._set_phase(BroadcastPhase.COMPLETE)
            logger.info("Broadcast complete")
            self.context.stage_complete(self.scope)

    def client_progress(self) -> List[dict]:
        return self.session.client_progress() if self.session else []

    def hint_inputs(self) -> HintInputs:
        return HintInputs(
            mode="broadcast",
            broadcast_phase=self.phase or BroadcastPhase.INTRO,
            expected_frame=self.session.expected_frame if self.session else 1,
        )
