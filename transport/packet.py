"""
Packets - the entities a learner drags around.

Everything that moves between nodes is a Packet: whole files, fragments,
handshake and teardown control packets, and broadcast frames. The fields mirror
what a real segment would tell you, stripped down to what the lesson shows:

    +--------+--------+-----------------+----------+-------------------+
    |  kind  |  file  | sequence number |  client  |  transit status   |
    +--------+--------+-----------------+----------+-------------------+

Control packets (SYN, SYN-ACK, ACK, FIN, FIN-ACK) carry no sequence number.
Data fragments are numbered 1..N within their file. Frames use the sequence
number field for the frame number.

A file larger than the MTU cannot be sent as-is. It must be split into
fragments first:

    message.txt (4200 bytes), MTU 1400  ->  #1 (1400)  #2 (1400)  #3 (1400)
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set


class PacketKind(Enum):
    """What an entity is. The value is the name shown to the UI."""

    DATA = "data"
    SYN = "syn"
    SYNACK = "synack"
    ACK = "ack"
    FIN = "fin"
    FINACK = "finack"

    # Not packets on the wire, but entities in the registry all the same
    FILE = "file"
    FRAME = "frame"

    def is_control(self) -> bool:
        """Check if this is a handshake or teardown packet."""
        return self in CONTROL_KINDS

    def is_reply(self) -> bool:
        """Check if this packet only ever travels receiver -> sender."""
        return self in (PacketKind.SYNACK, PacketKind.FINACK)

    def __str__(self) -> str:
        return KIND_LABELS[self]


CONTROL_KINDS = frozenset({
    PacketKind.SYN, PacketKind.SYNACK, PacketKind.ACK,
    PacketKind.FIN, PacketKind.FINACK,
})

KIND_LABELS = {
    PacketKind.DATA: "Packet",
    PacketKind.SYN: "SYN",
    PacketKind.SYNACK: "SYN-ACK",
    PacketKind.ACK: "ACK",
    PacketKind.FIN: "FIN",
    PacketKind.FINACK: "FIN-ACK",
    PacketKind.FILE: "File",
    PacketKind.FRAME: "Frame",
}


class TransitStatus(Enum):
    """Where a packet is in its life, as the UI should show it."""

    IDLE = "idle"
    IN_TRANSIT = "in-transit"
    PROCESSING = "processing"
    RECEIVED = "received"
    BUFFERED = "buffered"
    DUPLICATE = "duplicate"
    LOST = "lost"
    REJECTED = "rejected"

    # Final status, published once when the entity is destroyed
    CONSUMED = "consumed"


@dataclass
class Packet:
    """
    A simulated packet, file or frame.

    A packet is owned by exactly one node slot at a time. The registry and
    topology in the simulator track that; the packet itself only carries the
    node it bounces back to when rejected (origin).
    """

    id: str
    kind: PacketKind
    file_key: Optional[str] = None
    sequence_number: Optional[int] = None
    client_id: Optional[str] = None
    transit_status: TransitStatus = TransitStatus.IDLE

    # Cumulative ACK value the receiver answered with, if any
    ack_annotation: Optional[int] = None

    # Set when a frame last bounced for being sent ahead of its turn
    out_of_order: bool = False

    # Fragments know how many siblings they have, files know their size
    total_fragments: Optional[int] = None
    size_bytes: int = 0

    origin: str = "inventory"
    name: str = ""

    def __post_init__(self):
        """Validate packet after construction."""
        if self.kind is PacketKind.DATA:
            if self.file_key is None:
                raise ValueError(f"Data packet {self.id} has no file")
            if self.total_fragments is None or self.total_fragments < 1:
                raise ValueError(f"Invalid fragment count: {self.total_fragments}")
            if self.sequence_number is None or \
               not 1 <= self.sequence_number <= self.total_fragments:
                raise ValueError(f"Invalid sequence number: {self.sequence_number}")
        elif self.kind is PacketKind.FRAME:
            if self.sequence_number is None or self.sequence_number < 1:
                raise ValueError(f"Invalid frame number: {self.sequence_number}")
        elif self.kind is PacketKind.FILE:
            if self.file_key is None:
                raise ValueError(f"File {self.id} has no key")
            if self.size_bytes <= 0:
                raise ValueError(f"Invalid file size: {self.size_bytes}")
        if not self.name:
            self.name = self._default_name()

    def _default_name(self) -> str:
        if self.kind is PacketKind.DATA:
            return f"Packet #{self.sequence_number}"
        if self.kind is PacketKind.FRAME:
            return f"Frame {self.sequence_number}"
        if self.kind is PacketKind.FILE:
            return f"{self.file_key}.txt"
        return str(self.kind)

    @property
    def frame_number(self) -> Optional[int]:
        """Frame number for broadcast frames (alias of sequence_number)."""
        return self.sequence_number if self.kind is PacketKind.FRAME else None

    def __str__(self) -> str:
        seq = f", seq={self.sequence_number}" if self.sequence_number else ""
        return (
            f"Packet({self.id}, {self.kind.value}{seq}, "
            f"status={self.transit_status.value})"
        )


@dataclass
class Frame:
    """A broadcast frame and the clients that actually got it."""

    frame_number: int
    delivered_to: Set[str] = field(default_factory=set)


@dataclass
class FileSpec:
    """
    A file the learner has to deliver.

    Attributes:
        key: Short identifier shared by the file and its fragments
        name: Display name ("message.txt")
        size_bytes: File size; together with the MTU decides the fragment count
        loss_sequence: Fragment dropped in transit until fast retransmit fires
        client_id: Connection the file travels on
        pre_split: Expose fragments directly instead of a whole file
        release: When the file appears: "start", "connected" or "after-previous"
    """

    key: str
    name: str
    size_bytes: int
    loss_sequence: Optional[int] = None
    client_id: str = "client"
    pre_split: bool = False
    release: str = "start"

    RELEASES = ("start", "connected", "after-previous")

    def __post_init__(self):
        if self.size_bytes <= 0:
            raise ValueError(f"Invalid file size: {self.size_bytes}")
        if self.release not in self.RELEASES:
            raise ValueError(f"Invalid release: {self.release}")

    def fragment_count(self, mtu: int) -> int:
        """Number of MTU-sized fragments needed to carry this file."""
        return max(1, math.ceil(self.size_bytes / mtu))


# Convenience functions for creating common packet types

def create_file_packet(spec: FileSpec, packet_id: Optional[str] = None) -> Packet:
    """Create the whole, unfragmented file entity."""
    return Packet(
        id=packet_id or f"{spec.key}-file",
        kind=PacketKind.FILE,
        file_key=spec.key,
        client_id=spec.client_id,
        size_bytes=spec.size_bytes,
        name=spec.name,
    )


def create_data_packet(spec: FileSpec, seq: int, total: int,
                       packet_id: Optional[str] = None) -> Packet:
    """Create one numbered fragment of a file."""
    return Packet(
        id=packet_id or f"{spec.key}-packet-{seq}",
        kind=PacketKind.DATA,
        file_key=spec.key,
        sequence_number=seq,
        client_id=spec.client_id,
        total_fragments=total,
    )


def fragment_file(spec: FileSpec, mtu: int) -> List[Packet]:
    """Split a file into MTU-sized fragments numbered 1..N."""
    total = spec.fragment_count(mtu)
    return [create_data_packet(spec, seq, total) for seq in range(1, total + 1)]


def create_control_packet(kind: PacketKind, client_id: str,
                          packet_id: Optional[str] = None) -> Packet:
    """Create a handshake or teardown packet for a client."""
    if not kind.is_control():
        raise ValueError(f"Not a control packet kind: {kind}")
    return Packet(
        id=packet_id or f"{kind.value}-{client_id}",
        kind=kind,
        client_id=client_id,
    )


def create_frame_packet(frame_number: int, packet_id: Optional[str] = None) -> Packet:
    """Create a broadcast frame."""
    return Packet(
        id=packet_id or f"frame-{frame_number}",
        kind=PacketKind.FRAME,
        sequence_number=frame_number,
    )
