"""
Built-in lessons.

A Scenario is just data: which nodes exist, which files have to be delivered
to whom, and what the broadcast stage looks like if there is one.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from transport.broadcast import FRAME_DESTINY, DeliveryMatrix
from transport.packet import FileSpec
from transport.states import LessonPhase

from .nodes import NodeRole, NodeSlot


@dataclass
class NodeSpec:
    id: str
    role: NodeRole
    capacity: Optional[int] = None
    client_id: Optional[str] = None
    label: str = ""
    accepts_drops: bool = True

    def build(self) -> NodeSlot:
        return NodeSlot(
            id=self.id,
            role=self.role,
            capacity=self.capacity,
            client_id=self.client_id,
            label=self.label or self.id,
            accepts_drops=self.accepts_drops,
        )


@dataclass
class BroadcastSpec:
    outcomes: Mapping[int, Mapping[str, bool]] = field(
        default_factory=lambda: FRAME_DESTINY)
    clients: Optional[Tuple[str, ...]] = None

    def matrix(self) -> DeliveryMatrix:
        return DeliveryMatrix(self.outcomes, self.clients)


@dataclass
class Scenario:
    """
    Layout and script of one lesson.

    Attributes:
        name: Lesson name
        nodes: Node slots, exactly one of them a sender
        files: Files in release order
        clients: Clients that take part in the reliable stage
        initial_phase: Narration phase at start
        syn_upfront: Expose a SYN per client right away
        teardown: Finish the reliable stage with FIN / FIN-ACK
        broadcast: Optional streaming stage after the reliable one
    """
    name: str
    nodes: List[NodeSpec]
    files: List[FileSpec] = field(default_factory=list)
    clients: List[str] = field(default_factory=list)
    initial_phase: LessonPhase = LessonPhase.MTU
    syn_upfront: bool = False
    teardown: bool = True
    broadcast: Optional[BroadcastSpec] = None

    def __post_init__(self):
        if not self.clients:
            seen: Dict[str, None] = {}
            for spec in self.files:
                seen.setdefault(spec.client_id, None)
            self.clients = list(seen)
        keys = [f.key for f in self.files]
        if len(keys) != len(set(keys)):
            raise ValueError(f"Duplicate file keys in {self.name}")

    def build_nodes(self) -> List[NodeSlot]:
        return [n.build() for n in self.nodes]


def message_delivery() -> Scenario:
    """
    One client, one server, two files.

    message.txt has to be fragmented and needs a handshake first; notes.txt
    loses its second packet until three duplicate ACKs ask for it again.
    The lesson ends with FIN / FIN-ACK.
    """
    return Scenario(
        name="message-delivery",
        nodes=[
            NodeSpec("inventory", NodeRole.SENDER, label="Inventory"),
            NodeSpec("splitter", NodeRole.SPLITTER, capacity=1, label="Content Splitter"),
            NodeSpec("internet", NodeRole.TRANSIT, capacity=3, label="Internet"),
            NodeSpec("server", NodeRole.RECEIVER, capacity=12, label="Server",
                     accepts_drops=False),
        ],
        files=[
            FileSpec("message", "message.txt", 4200),
            FileSpec("notes", "notes.txt", 8400, loss_sequence=2,
                     release="after-previous"),
        ],
        initial_phase=LessonPhase.MTU,
    )


VIDEO_CLIENTS = ("a", "b", "c")


def video_streaming() -> Scenario:
    """
    Three viewers: connect each one over TCP, then give up and broadcast.

    Every client gets a SYN up front and a two-packet video chunk once its
    connection is up. The broadcast stage sends six frames with a fixed loss
    pattern.
    """
    nodes = [
        NodeSpec("inventory", NodeRole.SENDER, label="Inventory"),
        NodeSpec("internet", NodeRole.TRANSIT, capacity=4, label="Internet"),
    ]
    for client_id in VIDEO_CLIENTS:
        nodes.append(NodeSpec(
            f"inbox-{client_id}", NodeRole.RECEIVER, capacity=4,
            client_id=client_id, label=f"Client {client_id.upper()}"))
    nodes.append(NodeSpec("outbox", NodeRole.OUTBOX, capacity=1, label="Outbox"))

    return Scenario(
        name="video-streaming",
        nodes=nodes,
        files=[
            FileSpec(f"video-{c}", f"video-{c}.mp4", 2800, client_id=c,
                     pre_split=True, release="connected")
            for c in VIDEO_CLIENTS
        ],
        clients=list(VIDEO_CLIENTS),
        initial_phase=LessonPhase.SYN,
        syn_upfront=True,
        teardown=False,
        broadcast=BroadcastSpec(FRAME_DESTINY, VIDEO_CLIENTS),
    )
