"""
Tests for the simulation context: placement, observation, notices, teardown.
"""

import pytest
from simulator import (
    HintChanged, Notice, NoticeCleared, SignalKind, SimulationConfig,
    SimulationContext, message_delivery,
)
from simulator.events import EntityStatus
from transport.packet import PacketKind, TransitStatus, create_control_packet


CONFIG = SimulationConfig.fast()


@pytest.fixture
def ctx():
    context = SimulationContext(message_delivery(), CONFIG)
    yield context
    context.teardown()


def split_message(ctx):
    ctx.place_entity("message-file", "splitter")
    ctx.advance(CONFIG.processing_ms)


class TestPlacement:
    """Test the driver interface."""

    def test_unknown_ids(self, ctx):
        with pytest.raises(KeyError):
            ctx.place_entity("nothing", "internet")
        with pytest.raises(KeyError):
            ctx.place_entity("message-file", "mars")

    def test_full_node_refuses(self, ctx):
        """A drop onto a full node never reaches an engine."""
        split_message(ctx)
        for seq in (1, 2, 3):
            assert ctx.place_entity(f"message-packet-{seq}", "internet")

        extra = ctx.registry.add(create_control_packet(PacketKind.SYN, "client"))
        ctx.topology.place(extra.id, "inventory")
        ctx.observe()

        assert not ctx.place_entity("syn-client", "internet")
        assert ctx.location("syn-client") == "inventory"
        assert ctx.bus.signals(SignalKind.REJECTED_PLACEMENT)[-1].message == \
            "Internet is full."

    def test_split_in_splitter(self, ctx):
        ctx.place_entity("message-file", "splitter")
        assert ctx.status("message-file") == "message.txt Splitting..."

        ctx.advance(CONFIG.processing_ms)
        assert ctx.entity("message-file") is None
        assert ctx.members("inventory") == [
            "message-packet-1", "message-packet-2", "message-packet-3"]
        assert ctx.reliable.phase.value == "split-send"

    def test_remove_restarts_timers(self, ctx):
        """Taking an entity out and putting it back only counts the second arrival."""
        ctx.place_entity("message-file", "splitter")
        ctx.advance(20)
        assert ctx.remove_entity("message-file", "splitter")
        assert ctx.location("message-file") == "inventory"
        assert ctx.entity("message-file").transit_status == TransitStatus.IDLE

        ctx.place_entity("message-file", "splitter")
        ctx.advance(CONFIG.processing_ms - 20)
        assert ctx.location("message-file") == "splitter"

        ctx.advance(20)
        assert ctx.entity("message-file") is None
        assert len(ctx.registry.find(kind=PacketKind.DATA)) == 3

    def test_remove_wrong_node(self, ctx):
        assert not ctx.remove_entity("message-file", "internet")


class TestNotices:
    """Test short-lived notices."""

    def test_cleared_after_delay(self, ctx):
        ctx.place_entity("message-file", "internet")
        notice = ctx.bus.of_type(Notice)[-1]
        assert notice.tone == "warning"
        assert "too large" in notice.message

        ctx.advance(CONFIG.notice_ms - 1)
        assert notice.notice_id not in [e.notice_id for e in ctx.bus.of_type(NoticeCleared)]
        ctx.advance(1)
        assert notice.notice_id in [e.notice_id for e in ctx.bus.of_type(NoticeCleared)]

    def test_ids_increase(self, ctx):
        first = ctx.notify("one")
        second = ctx.notify("two")
        assert second == first + 1


class TestHints:
    """Test hint publishing."""

    def test_initial_hint(self, ctx):
        assert ctx.hint == "Drag message.txt to the Internet to send it."

    def test_hint_changes_published(self, ctx):
        seen = []
        ctx.bus.subscribe(HintChanged, lambda e: seen.append(e.hint))
        split_message(ctx)
        assert seen == ["Send a fragment through the Internet and see how the server responds."]

        # Unchanged hints are not republished
        ctx.advance(CONFIG.notice_ms)
        assert len(seen) == 1

    def test_status_events(self, ctx):
        statuses = []
        ctx.bus.subscribe(EntityStatus, statuses.append)
        split_message(ctx)
        consumed = [e for e in statuses if e.transit_status == "consumed"]
        assert [e.entity_id for e in consumed] == ["message-file"]
        assert ctx.status("message-file") is None
        assert ctx.status("message-packet-2") == "Packet #2 Ready"


class TestTeardown:
    """Test that teardown stops everything."""

    def test_no_timers_after_teardown(self, ctx):
        ctx.place_entity("message-file", "splitter")
        ctx.teardown()

        assert ctx.advance(1000) == 0
        assert ctx.location("message-file") == "splitter"
        assert ctx.registry.find(kind=PacketKind.DATA) == []
        assert ctx.scheduler.pending() == 0

    def test_placement_after_teardown(self, ctx):
        ctx.teardown()
        assert not ctx.place_entity("message-file", "internet")
        assert not ctx.remove_entity("message-file", "inventory")
        assert ctx.location("message-file") == "inventory"

    def test_teardown_twice(self, ctx):
        ctx.teardown()
        ctx.teardown()
        assert ctx.closed


class TestIsolation:
    """Two contexts never share state."""

    def test_independent_contexts(self):
        first = SimulationContext(message_delivery(), CONFIG)
        second = SimulationContext(message_delivery(), CONFIG)

        first.place_entity("message-file", "splitter")
        first.advance(CONFIG.processing_ms)

        assert second.entity("message-file") is not None
        assert second.now_ms == 0
        assert second.reliable.phase.value == "mtu"

        first.teardown()
        second.teardown()
