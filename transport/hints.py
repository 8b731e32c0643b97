"""
Hints - narration derived from simulation state.

Pure functions only. Given the same inputs they always return the same text,
so the UI can recompute them on every change without side effects.
"""

from dataclasses import dataclass
from typing import Optional

from .packet import Packet, PacketKind, TransitStatus
from .states import BroadcastPhase, LessonPhase


@dataclass(frozen=True)
class HintInputs:
    """Aggregate counters the hint is derived from."""
    mode: str = "reliable"
    lesson_phase: LessonPhase = LessonPhase.MTU
    broadcast_phase: BroadcastPhase = BroadcastPhase.INTRO
    file_name: str = "message.txt"
    received_count: int = 0
    waiting_count: int = 0
    loss_sequence: Optional[int] = None
    connection_closed: bool = False
    expected_frame: int = 1


def derive_hint(inputs: HintInputs) -> str:
    """Narration for the current phase and counters."""
    if inputs.mode == "broadcast":
        return _broadcast_hint(inputs)
    return _reliable_hint(inputs)


def _broadcast_hint(inputs: HintInputs) -> str:
    phase = inputs.broadcast_phase
    if phase == BroadcastPhase.INTRO:
        return "Drop frames into the Outbox. They'll reach all clients automatically."
    if phase == BroadcastPhase.STREAMING:
        return f"Send frames in order: next is Frame {inputs.expected_frame}."
    return "Stream complete!"


def _reliable_hint(inputs: HintInputs) -> str:
    phase = inputs.lesson_phase

    if phase == LessonPhase.MTU:
        return f"Drag {inputs.file_name} to the Internet to send it."
    if phase == LessonPhase.SPLIT_SEND:
        return "Send a fragment through the Internet and see how the server responds."
    if phase == LessonPhase.SYN:
        return "The server rejected the fragment. Send a SYN to start the handshake."
    if phase == LessonPhase.SYN_WAIT:
        return "SYN sent. Wait for the SYN-ACK response."
    if phase == LessonPhase.ACK:
        return "SYN-ACK received. Send an ACK to complete the connection."

    if phase == LessonPhase.CONNECTED:
        if inputs.waiting_count > 0:
            return "The server is waiting for the missing packet. Send it next."
        if inputs.received_count == 0:
            return "Send the numbered packets through the Internet."
        return "Try sending packets out of order to see them buffered for ordering."

    if phase == LessonPhase.NEXT_FILE:
        return f"{inputs.file_name} is ready. Drop it onto the Content Splitter."
    if phase == LessonPhase.LOSS:
        hint = f"Send the {inputs.file_name} packets through the Internet."
        if inputs.loss_sequence is not None:
            hint += f" Packet #{inputs.loss_sequence} will go missing."
        return hint
    if phase == LessonPhase.RESEND:
        return "Duplicate ACKs detected. Resend the missing packet."

    if phase == LessonPhase.CLOSING:
        if inputs.connection_closed:
            return "FIN accepted. Waiting for the FIN-ACK."
        return "Send FIN to close the connection cleanly."

    return "Use `tcpdump` in the terminal to inspect the exchange."


_PACKET_LABELS = {
    TransitStatus.IDLE: "Ready",
    TransitStatus.IN_TRANSIT: "Sending...",
    TransitStatus.RECEIVED: "Received",
    TransitStatus.BUFFERED: "Buffered for ordering",
    TransitStatus.DUPLICATE: "Duplicate",
    TransitStatus.LOST: "Lost!",
    TransitStatus.PROCESSING: "Processing...",
    TransitStatus.REJECTED: "Rejected",
}

_FLAG_LABELS = {
    TransitStatus.IDLE: "Ready",
    TransitStatus.IN_TRANSIT: "Sending...",
    TransitStatus.RECEIVED: "Arrived",
    TransitStatus.PROCESSING: "Processing...",
    TransitStatus.REJECTED: "Rejected",
}


def status_label(packet: Packet) -> Optional[str]:
    """
    Short status text shown next to an entity.

    Returns None for consumed entities, which the UI no longer shows.
    """
    status = packet.transit_status
    if status == TransitStatus.CONSUMED:
        return None

    if packet.kind is PacketKind.FILE:
        if status == TransitStatus.REJECTED:
            return f"{packet.name} Too large"
        if status == TransitStatus.PROCESSING:
            return f"{packet.name} Splitting..."
        return f"{packet.name} Ready"

    if packet.kind is PacketKind.DATA:
        label = f"Packet #{packet.sequence_number} {_PACKET_LABELS.get(status, 'Ready')}"
        if packet.ack_annotation is not None and status in (
                TransitStatus.RECEIVED, TransitStatus.BUFFERED,
                TransitStatus.DUPLICATE):
            label += f" (ACK {packet.ack_annotation})"
        return label

    if packet.kind is PacketKind.FRAME:
        if status == TransitStatus.REJECTED:
            reason = "Out of order" if packet.out_of_order else "Rejected"
            return f"Frame {packet.sequence_number} {reason}"
        if status == TransitStatus.IN_TRANSIT:
            return f"Frame {packet.sequence_number} Sending..."
        return f"Frame {packet.sequence_number} Ready"

    if packet.kind.is_reply() and status == TransitStatus.IN_TRANSIT:
        return f"{packet.kind} Receiving"

    return f"{packet.kind} {_FLAG_LABELS.get(status, 'Ready')}"
