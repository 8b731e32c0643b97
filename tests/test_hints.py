"""
Tests for narration and status labels.
"""

from transport.hints import HintInputs, derive_hint, status_label
from transport.packet import (
    FileSpec, PacketKind, TransitStatus,
    create_control_packet, create_data_packet, create_file_packet,
    create_frame_packet,
)
from transport.states import BroadcastPhase, LessonPhase


class TestDeriveHint:
    """Test hint derivation."""

    def test_deterministic(self):
        inputs = HintInputs(lesson_phase=LessonPhase.CONNECTED, received_count=1)
        assert derive_hint(inputs) == derive_hint(inputs)

    def test_reliable_phases(self):
        assert derive_hint(HintInputs()) == "Drag message.txt to the Internet to send it."
        assert "SYN" in derive_hint(HintInputs(lesson_phase=LessonPhase.SYN))
        assert "ACK" in derive_hint(HintInputs(lesson_phase=LessonPhase.ACK))
        assert derive_hint(HintInputs(lesson_phase=LessonPhase.RESEND)) == \
            "Duplicate ACKs detected. Resend the missing packet."

    def test_connected_counters(self):
        """The connected hint depends on what has arrived."""
        fresh = HintInputs(lesson_phase=LessonPhase.CONNECTED)
        assert derive_hint(fresh) == "Send the numbered packets through the Internet."

        waiting = HintInputs(lesson_phase=LessonPhase.CONNECTED,
                             received_count=1, waiting_count=1)
        assert derive_hint(waiting) == \
            "The server is waiting for the missing packet. Send it next."

    def test_loss_phase(self):
        inputs = HintInputs(lesson_phase=LessonPhase.LOSS,
                            file_name="notes.txt", loss_sequence=2)
        assert derive_hint(inputs) == (
            "Send the notes.txt packets through the Internet. "
            "Packet #2 will go missing.")

    def test_closing(self):
        assert derive_hint(HintInputs(lesson_phase=LessonPhase.CLOSING)) == \
            "Send FIN to close the connection cleanly."
        assert "FIN-ACK" in derive_hint(HintInputs(
            lesson_phase=LessonPhase.CLOSING, connection_closed=True))

    def test_broadcast(self):
        streaming = HintInputs(mode="broadcast",
                               broadcast_phase=BroadcastPhase.STREAMING,
                               expected_frame=3)
        assert derive_hint(streaming) == "Send frames in order: next is Frame 3."
        done = HintInputs(mode="broadcast", broadcast_phase=BroadcastPhase.COMPLETE)
        assert derive_hint(done) == "Stream complete!"


class TestStatusLabel:
    """Test labels shown next to entities."""

    def test_data_labels(self):
        spec = FileSpec("message", "message.txt", 4200)
        packet = create_data_packet(spec, 2, 3)
        assert status_label(packet) == "Packet #2 Ready"

        packet.transit_status = TransitStatus.BUFFERED
        packet.ack_annotation = 2
        assert status_label(packet) == "Packet #2 Buffered for ordering (ACK 2)"

        packet.transit_status = TransitStatus.LOST
        assert status_label(packet) == "Packet #2 Lost!"

    def test_file_labels(self):
        packet = create_file_packet(FileSpec("message", "message.txt", 4200))
        packet.transit_status = TransitStatus.REJECTED
        assert status_label(packet) == "message.txt Too large"

    def test_flag_labels(self):
        syn = create_control_packet(PacketKind.SYN, "client")
        syn.transit_status = TransitStatus.RECEIVED
        assert status_label(syn) == "SYN Arrived"

        synack = create_control_packet(PacketKind.SYNACK, "client")
        synack.transit_status = TransitStatus.IN_TRANSIT
        assert status_label(synack) == "SYN-ACK Receiving"

    def test_frame_labels(self):
        """Only an order bounce reads as out of order."""
        frame = create_frame_packet(4)
        frame.transit_status = TransitStatus.REJECTED
        assert status_label(frame) == "Frame 4 Rejected"

        frame.out_of_order = True
        assert status_label(frame) == "Frame 4 Out of order"

    def test_consumed_has_no_label(self):
        frame = create_frame_packet(1)
        frame.transit_status = TransitStatus.CONSUMED
        assert status_label(frame) is None
