"""
Exchange capture - a tcpdump view of the lesson.

Every packet the learner sends, every ACK the receiver answers with and every
scripted loss is recorded, so the exchange can be replayed as a transcript:

    0.000 client > server: Flags [S], length 0
    0.500 server > client: Flags [S.], length 0
    2.000 client > server: Flags [.], length 0
    3.500 client > server: Flags [P.], seq 1, length 1400 (message)
    3.500 server > client: Flags [.], ack 2, length 0
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple

from transport.packet import Packet, PacketKind


logger = logging.getLogger(__name__)


FLAGS = {
    PacketKind.SYN: "S",
    PacketKind.SYNACK: "S.",
    PacketKind.ACK: ".",
    PacketKind.FIN: "F.",
    PacketKind.FINACK: "F.",
    PacketKind.DATA: "P.",
}


@dataclass
class CapturedPacket:
    """One line of the transcript."""
    time_ms: int
    src: str
    dst: str
    kind: str
    sequence_number: Optional[int] = None
    ack_number: Optional[int] = None
    file_key: Optional[str] = None
    length: int = 0
    lost: bool = False
    retransmission: bool = False
    duplicate_ack: bool = False

    def render(self) -> str:
        timestamp = f"{self.time_ms / 1000:.3f}"
        if self.kind == "frame":
            line = f"{timestamp} {self.src} > {self.dst}: UDP, frame {self.sequence_number}"
            return line + (" [lost]" if self.lost else "")

        flags = self.kind
        parts = [f"Flags [{flags}]"]
        if self.sequence_number is not None:
            parts.append(f"seq {self.sequence_number}")
        if self.ack_number is not None:
            parts.append(f"ack {self.ack_number}")
        parts.append(f"length {self.length}")

        line = f"{timestamp} {self.src} > {self.dst}: {', '.join(parts)}"
        if self.file_key:
            line += f" ({self.file_key})"
        if self.duplicate_ack:
            line += " [dup ack]"
        if self.retransmission:
            line += " [retransmission]"
        if self.lost:
            line += " [lost]"
        return line


class ExchangeCapture:
    """
    Record and summarize what went over the simulated wire.

    Useful for debugging a lesson run and for the learner's terminal.
    """

    def __init__(self, server_name: str = "server"):
        self.server_name = server_name
        self._packets: List[CapturedPacket] = []
        self._seen: Set[Tuple[Optional[str], Optional[str], Optional[int]]] = set()

    def record_send(self, packet: Packet, time_ms: int, mtu: int,
                    lost: bool = False) -> CapturedPacket:
        """Capture a packet leaving the sender (or a reply leaving the receiver)."""
        client = packet.client_id or "client"
        if packet.kind.is_reply():
            src, dst = self.server_name, client
        else:
            src, dst = client, self.server_name

        retransmission = False
        length = 0
        if packet.kind is PacketKind.DATA:
            key = (client, packet.file_key, packet.sequence_number)
            retransmission = key in self._seen
            self._seen.add(key)
            length = mtu

        entry = CapturedPacket(
            time_ms=time_ms,
            src=src,
            dst=dst,
            kind=FLAGS.get(packet.kind, "."),
            sequence_number=packet.sequence_number if packet.kind is PacketKind.DATA else None,
            file_key=packet.file_key if packet.kind is PacketKind.DATA else None,
            length=length,
            lost=lost,
            retransmission=retransmission,
        )
        self._packets.append(entry)
        return entry

    def record_ack(self, client_id: str, ack_number: int, time_ms: int,
                   duplicate: bool = False) -> CapturedPacket:
        """Capture the cumulative ACK answering a data fragment."""
        entry = CapturedPacket(
            time_ms=time_ms,
            src=self.server_name,
            dst=client_id,
            kind=".",
            ack_number=ack_number,
            duplicate_ack=duplicate,
        )
        self._packets.append(entry)
        return entry

    def record_frame(self, frame_number: int, clients: Iterable[str],
                     delivered_to: Iterable[str], time_ms: int):
        """Capture one broadcast frame fanning out to every client."""
        delivered = set(delivered_to)
        for client_id in clients:
            self._packets.append(CapturedPacket(
                time_ms=time_ms,
                src=self.server_name,
                dst=client_id,
                kind="frame",
                sequence_number=frame_number,
                lost=client_id not in delivered,
            ))

    def get_packets(self) -> List[CapturedPacket]:
        return list(self._packets)

    def clear(self):
        self._packets.clear()
        self._seen.clear()

    @property
    def total_packets(self) -> int:
        return len(self._packets)

    @property
    def retransmissions(self) -> int:
        return sum(1 for p in self._packets if p.retransmission)

    @property
    def losses(self) -> int:
        return sum(1 for p in self._packets if p.lost)

    @property
    def duplicate_acks(self) -> int:
        return sum(1 for p in self._packets if p.duplicate_ack)

    def tcpdump(self, limit: Optional[int] = None) -> str:
        """The transcript, one captured packet per line."""
        if not self._packets:
            return "No packets captured"

        packets = self._packets if limit is None else self._packets[:limit]
        lines = [p.render() for p in packets]
        if limit is not None and len(self._packets) > limit:
            lines.append(f"... and {len(self._packets) - limit} more")
        return "\n".join(lines)

    def summary(self) -> str:
        return (
            f"{self.total_packets} packets captured\n"
            f"{self.retransmissions} retransmissions\n"
            f"{self.losses} lost\n"
            f"{self.duplicate_acks} duplicate ACKs"
        )
