"""
Tests for node slots, the topology and the entity registry.
"""

import pytest
from simulator.nodes import NodeRole, NodeSlot, Topology
from simulator.registry import EntityRegistry
from transport.errors import RejectedPlacement
from transport.packet import FileSpec, PacketKind, create_control_packet, fragment_file


@pytest.fixture
def topology():
    return Topology([
        NodeSlot("inventory", NodeRole.SENDER),
        NodeSlot("internet", NodeRole.TRANSIT, capacity=2, label="Internet"),
        NodeSlot("inbox-a", NodeRole.RECEIVER, client_id="a"),
        NodeSlot("inbox-b", NodeRole.RECEIVER, client_id="b"),
    ])


class TestNodeSlot:
    """Test membership diffs."""

    def test_diff(self):
        slot = NodeSlot("internet", NodeRole.TRANSIT)
        slot.members.extend(["p1", "p2"])
        assert slot.diff() == (["p1", "p2"], [])
        assert slot.diff() == ([], [])

        slot.members.remove("p1")
        slot.members.append("p3")
        assert slot.diff() == (["p3"], ["p1"])

    def test_capacity(self):
        slot = NodeSlot("splitter", NodeRole.SPLITTER, capacity=1)
        assert not slot.is_full
        slot.members.append("f")
        assert slot.is_full
        assert not NodeSlot("inventory", NodeRole.SENDER).is_full


class TestTopology:
    """Test ownership and placement."""

    def test_single_owner(self, topology):
        """An entity lives in exactly one slot."""
        topology.place("p1", "inventory")
        topology.place("p1", "internet")
        assert topology.location("p1") == "internet"
        assert topology.members("inventory") == []
        assert topology.members("internet") == ["p1"]

    def test_capacity_rejects(self, topology):
        topology.place("p1", "internet")
        topology.place("p2", "internet")
        with pytest.raises(RejectedPlacement) as exc:
            topology.place("p3", "internet")
        assert exc.value.message == "Internet is full."
        assert topology.location("p3") is None

        # Engine moves ignore capacity
        topology.place("p3", "internet", enforce_capacity=False)
        assert len(topology.members("internet")) == 3

    def test_unknown_node(self, topology):
        with pytest.raises(KeyError):
            topology.place("p1", "mars")

    def test_needs_one_sender(self):
        with pytest.raises(ValueError):
            Topology([NodeSlot("internet", NodeRole.TRANSIT)])

    def test_receiver_for(self, topology):
        assert topology.receiver_for("b").id == "inbox-b"
        assert topology.receiver_for("z") is None

        shared = Topology([
            NodeSlot("inventory", NodeRole.SENDER),
            NodeSlot("server", NodeRole.RECEIVER),
        ])
        assert shared.receiver_for("client").id == "server"

    def test_remove(self, topology):
        topology.place("p1", "internet")
        assert topology.remove("p1") == "internet"
        assert topology.remove("p1") is None
        assert topology.members("internet") == []

    def test_diff_all(self, topology):
        topology.place("p1", "inventory")
        changes = {slot.id: (added, removed)
                   for slot, added, removed in topology.diff_all()}
        assert changes["inventory"] == (["p1"], [])

        topology.place("p1", "internet")
        changes = {slot.id: (added, removed)
                   for slot, added, removed in topology.diff_all()}
        assert changes["inventory"] == ([], ["p1"])
        assert changes["internet"] == (["p1"], [])


class TestEntityRegistry:
    """Test entity lookup by id and fields."""

    def test_add_get_destroy(self):
        registry = EntityRegistry()
        syn = registry.add(create_control_packet(PacketKind.SYN, "a"))
        assert registry.get("syn-a") is syn
        assert "syn-a" in registry
        assert registry.destroy("syn-a") is syn
        assert registry.get("syn-a") is None

        with pytest.raises(KeyError):
            registry.require("syn-a")

    def test_duplicate_id(self):
        registry = EntityRegistry()
        registry.add(create_control_packet(PacketKind.SYN, "a"))
        with pytest.raises(ValueError):
            registry.add(create_control_packet(PacketKind.SYN, "a"))

    def test_unique_id(self):
        """Retransmission copies get suffixed ids."""
        registry = EntityRegistry()
        assert registry.unique_id("notes-packet-2") == "notes-packet-2"
        registry.add(create_control_packet(PacketKind.SYN, "a", "notes-packet-2"))
        assert registry.unique_id("notes-packet-2") == "notes-packet-2-r1"

    def test_find(self):
        registry = EntityRegistry()
        for packet in fragment_file(FileSpec("notes", "notes.txt", 4200, client_id="a"), 1400):
            registry.add(packet)
        registry.add(create_control_packet(PacketKind.SYN, "a"))

        assert len(registry.find(kind=PacketKind.DATA)) == 3
        assert [p.id for p in registry.find(sequence_number=2)] == ["notes-packet-2"]
        assert len(registry.find(client_id="a")) == 4
        assert registry.find(file_key="message") == []
