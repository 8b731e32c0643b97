"""
Tests for packets, files and frames.
"""

import pytest
from transport.packet import (
    Packet, PacketKind, TransitStatus, FileSpec,
    create_file_packet, create_data_packet, create_control_packet,
    create_frame_packet, fragment_file,
)


class TestPacketKind:
    """Test packet kind helpers."""

    def test_control_kinds(self):
        """Test which kinds are handshake/teardown packets."""
        for kind in (PacketKind.SYN, PacketKind.SYNACK, PacketKind.ACK,
                     PacketKind.FIN, PacketKind.FINACK):
            assert kind.is_control(), f"{kind} should be control"

        for kind in (PacketKind.DATA, PacketKind.FILE, PacketKind.FRAME):
            assert not kind.is_control(), f"{kind} should not be control"

    def test_replies(self):
        """Only SYN-ACK and FIN-ACK travel back to the sender."""
        assert PacketKind.SYNACK.is_reply()
        assert PacketKind.FINACK.is_reply()
        assert not PacketKind.SYN.is_reply()
        assert not PacketKind.ACK.is_reply()

    def test_labels(self):
        assert str(PacketKind.SYNACK) == "SYN-ACK"
        assert str(PacketKind.DATA) == "Packet"
        assert PacketKind.FINACK.value == "finack"


class TestPacket:
    """Test packet construction and validation."""

    def test_data_packet_defaults(self):
        packet = Packet("p1", PacketKind.DATA, file_key="message",
                        sequence_number=2, total_fragments=3)
        assert packet.transit_status == TransitStatus.IDLE
        assert packet.name == "Packet #2"
        assert packet.ack_annotation is None
        assert packet.frame_number is None

    def test_data_packet_needs_file(self):
        with pytest.raises(ValueError):
            Packet("p1", PacketKind.DATA, sequence_number=1, total_fragments=3)

    def test_sequence_out_of_range(self):
        """Sequence numbers run 1..N."""
        with pytest.raises(ValueError):
            Packet("p1", PacketKind.DATA, file_key="m", sequence_number=0,
                   total_fragments=3)
        with pytest.raises(ValueError):
            Packet("p1", PacketKind.DATA, file_key="m", sequence_number=4,
                   total_fragments=3)

    def test_frame_number(self):
        frame = create_frame_packet(3)
        assert frame.id == "frame-3"
        assert frame.frame_number == 3
        assert frame.name == "Frame 3"

        with pytest.raises(ValueError):
            Packet("f0", PacketKind.FRAME, sequence_number=0)

    def test_file_needs_size(self):
        with pytest.raises(ValueError):
            Packet("f", PacketKind.FILE, file_key="message", size_bytes=0)


class TestFileSpec:
    """Test files and fragmentation."""

    def test_fragment_count(self):
        """N = ceil(size / mtu), at least one."""
        assert FileSpec("m", "message.txt", 4200).fragment_count(1400) == 3
        assert FileSpec("m", "message.txt", 4201).fragment_count(1400) == 4
        assert FileSpec("m", "message.txt", 10).fragment_count(1400) == 1

    def test_invalid_release(self):
        with pytest.raises(ValueError):
            FileSpec("m", "message.txt", 4200, release="later")

    def test_fragment_file(self):
        spec = FileSpec("notes", "notes.txt", 8400, client_id="a")
        fragments = fragment_file(spec, 1400)

        assert [p.sequence_number for p in fragments] == [1, 2, 3, 4, 5, 6]
        assert all(p.total_fragments == 6 for p in fragments)
        assert all(p.client_id == "a" for p in fragments)
        assert fragments[0].id == "notes-packet-1"

    def test_file_packet(self):
        spec = FileSpec("message", "message.txt", 4200)
        packet = create_file_packet(spec)
        assert packet.id == "message-file"
        assert packet.kind is PacketKind.FILE
        assert packet.name == "message.txt"
        assert packet.size_bytes == 4200

    def test_data_packet_custom_id(self):
        spec = FileSpec("notes", "notes.txt", 8400)
        packet = create_data_packet(spec, 2, 6, "notes-packet-2-r1")
        assert packet.id == "notes-packet-2-r1"
        assert packet.sequence_number == 2


class TestControlPackets:
    """Test control packet factory."""

    def test_control_packet(self):
        packet = create_control_packet(PacketKind.SYN, "client")
        assert packet.id == "syn-client"
        assert packet.sequence_number is None
        assert packet.name == "SYN"

    def test_not_a_control_kind(self):
        with pytest.raises(ValueError):
            create_control_packet(PacketKind.DATA, "client")
