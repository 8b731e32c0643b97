"""
Tests for the video-streaming lesson: three TCP clients, then a broadcast.
"""

import pytest
from simulator import (
    SimulationConfig, SimulationContext, SignalKind, PhaseChange, video_streaming,
)
from transport.broadcast import FRAME_DESTINY
from transport.packet import PacketKind, TransitStatus
from transport.states import ConnectionPhase


CONFIG = SimulationConfig.fast()
CLIENTS = ("a", "b", "c")


@pytest.fixture
def ctx():
    context = SimulationContext(video_streaming(), CONFIG)
    yield context
    context.teardown()


def connect_all(ctx):
    for c in CLIENTS:
        assert ctx.place_entity(f"syn-{c}", f"inbox-{c}")
    ctx.advance(CONFIG.processing_ms + CONFIG.propagation_ms)
    for c in CLIENTS:
        assert ctx.place_entity(f"ack-{c}", f"inbox-{c}")


def deliver_videos(ctx):
    for c in CLIENTS:
        for seq in (1, 2):
            assert ctx.place_entity(f"video-{c}-packet-{seq}", f"inbox-{c}")
    ctx.advance(CONFIG.assembly_ms)


def broadcast_phases(ctx):
    return [e.phase for e in ctx.bus.of_type(PhaseChange) if e.scope == "broadcast"]


class TestMultiClientHandshake:
    """Test per-client inboxes."""

    def test_syns_up_front(self, ctx):
        for c in CLIENTS:
            assert ctx.location(f"syn-{c}") == "inventory"
        assert ctx.reliable.phase.value == "syn"

    def test_wrong_inbox(self, ctx):
        """A packet for Client B bounces out of Client A's inbox."""
        ctx.place_entity("syn-b", "inbox-a")
        assert ctx.entity("syn-b").transit_status == TransitStatus.REJECTED
        rejected = ctx.bus.signals(SignalKind.REJECTED_PLACEMENT)
        assert rejected[-1].message == "This packet is for Client B."
        assert ctx.connection("a") is None
        assert ctx.connection("b") is None

        ctx.advance(CONFIG.bounce_ms)
        assert ctx.location("syn-b") == "inventory"

    def test_all_clients_connect(self, ctx):
        connect_all(ctx)
        for c in CLIENTS:
            assert ctx.connection(c).phase == ConnectionPhase.ESTABLISHED
            assert ctx.location(f"video-{c}-packet-1") == "inventory"
        assert ctx.reliable.phase.value == "connected"
        assert len(ctx.bus.signals(SignalKind.CONNECTION_ESTABLISHED)) == 3

    def test_reliable_stage_completes_without_ending(self, ctx):
        """Finishing the TCP stage does not end a lesson that still streams."""
        connect_all(ctx)
        deliver_videos(ctx)
        assert ctx.reliable.phase.value == "complete"
        assert len(ctx.bus.signals(SignalKind.FILE_COMPLETE)) == 3
        assert not ctx.complete
        assert ctx.bus.signals(SignalKind.SIMULATION_COMPLETE) == []

    def test_outbox_closed_during_tcp(self, ctx):
        ctx.place_entity("syn-a", "outbox")
        assert ctx.entity("syn-a").transit_status == TransitStatus.REJECTED


class TestReconnect:
    """Test reset_phase() on the multi-client lesson."""

    def test_reset_mid_transfer(self, ctx):
        connect_all(ctx)
        ctx.place_entity("video-a-packet-1", "inbox-a")
        ctx.place_entity("video-b-packet-1", "internet")

        ctx.reset_phase()
        assert ctx.scheduler.pending("reliable") == 0
        for c in CLIENTS:
            assert ctx.connection(c) is None
            assert ctx.location(f"syn-{c}") == "inventory"
        assert ctx.members("inbox-a") == []
        assert ctx.members("internet") == []
        assert ctx.location("video-a-packet-1") == "inventory"
        assert ctx.location("video-b-packet-1") == "inventory"
        assert ctx.reliable.phase.value == "syn"

        # Nothing from before the reset arrives later
        ctx.advance(CONFIG.propagation_ms * 2)
        assert ctx.members("inbox-b") == []

    def test_reconnect_and_finish(self, ctx):
        connect_all(ctx)
        ctx.place_entity("video-a-packet-1", "inbox-a")
        ctx.reset_phase()

        connect_all(ctx)
        deliver_videos(ctx)
        assert ctx.reliable.phase.value == "complete"


class TestBroadcast:
    """Test the UDP-like stage."""

    def start(self, ctx):
        ctx.switch_to_broadcast()
        ctx.advance(CONFIG.broadcast_intro_ms)

    def test_switch(self, ctx):
        connect_all(ctx)
        ctx.switch_to_broadcast()

        assert ctx.mode == "broadcast"
        assert all(p.kind is PacketKind.FRAME for p in ctx.registry)
        assert len(ctx.registry) == 6
        assert broadcast_phases(ctx) == ["intro"]
        assert ctx.hint.startswith("Drop frames into the Outbox.")

        ctx.advance(CONFIG.broadcast_intro_ms)
        assert broadcast_phases(ctx) == ["intro", "streaming"]
        assert ctx.hint == "Send frames in order: next is Frame 1."

    def test_out_of_order_bounces(self, ctx):
        self.start(ctx)
        ctx.place_entity("frame-2", "outbox")
        assert ctx.entity("frame-2").transit_status == TransitStatus.REJECTED
        assert ctx.status("frame-2") == "Frame 2 Out of order"
        assert ctx.bus.signals(SignalKind.REJECTED_PLACEMENT)[-1].message == \
            "Send Frame 1 first."

        ctx.advance(CONFIG.bounce_ms)
        assert ctx.location("frame-2") == "inventory"
        assert ctx.streaming.session.last_sent == 0

    def test_frames_only_in_outbox(self, ctx):
        self.start(ctx)
        ctx.place_entity("frame-1", "internet")
        assert ctx.entity("frame-1").transit_status == TransitStatus.REJECTED
        assert ctx.status("frame-1") == "Frame 1 Rejected"

    def test_in_order_stream_matches_matrix(self, ctx):
        """Each client ends up with exactly the matrix's frames."""
        self.start(ctx)
        for n in range(1, 7):
            assert ctx.place_entity(f"frame-{n}", "outbox")
            assert ctx.entity(f"frame-{n}").transit_status == TransitStatus.IN_TRANSIT
            ctx.advance(CONFIG.frame_send_ms)
            assert ctx.entity(f"frame-{n}") is None

        session = ctx.streaming.session
        for c in CLIENTS:
            expected = {n for n, row in FRAME_DESTINY.items() if row[c]}
            assert session.deliveries[c] == expected

        delivered = ctx.bus.signals(SignalKind.FRAME_DELIVERED)
        assert [s.sequence_number for s in delivered] == [1, 2, 3, 4, 5, 6]
        assert delivered[1].details["delivered_to"] == ["a", "b"]

        assert broadcast_phases(ctx)[-1] == "complete"
        assert ctx.hint == "Stream complete!"
        assert ctx.complete
        assert len(ctx.bus.signals(SignalKind.SIMULATION_COMPLETE)) == 1

        progress = {p["client_id"]: p for p in ctx.client_progress()}
        assert progress["a"]["received_count"] == 5
        assert "UDP, frame 2 [lost]" in ctx.capture.tcpdump()

    def test_no_broadcast_in_message_lesson(self):
        ctx = SimulationContext(config=CONFIG)
        with pytest.raises(ValueError):
            ctx.switch_to_broadcast()
        ctx.teardown()
