"""
Entity Registry - every live packet, file and frame by id.

Callbacks never hold on to packet objects; they keep the id and look it up
again when they fire. An entity that has been consumed is simply gone, and the
lookup returns None.
"""

import logging
from typing import Dict, Iterator, List, Optional

from transport.packet import Packet, PacketKind


logger = logging.getLogger(__name__)


class EntityRegistry:
    """Owner of all live entities in one simulation context."""

    def __init__(self):
        self._entities: Dict[str, Packet] = {}
        self._copies: Dict[str, int] = {}

    def add(self, packet: Packet) -> Packet:
        if packet.id in self._entities:
            raise ValueError(f"Entity {packet.id} already exists")
        self._entities[packet.id] = packet
        return packet

    def get(self, entity_id: str) -> Optional[Packet]:
        return self._entities.get(entity_id)

    def require(self, entity_id: str) -> Packet:
        """Like get(), but an unknown id is a programming error."""
        packet = self._entities.get(entity_id)
        if packet is None:
            raise KeyError(f"Unknown entity: {entity_id}")
        return packet

    def destroy(self, entity_id: str) -> Optional[Packet]:
        return self._entities.pop(entity_id, None)

    def unique_id(self, base: str) -> str:
        """
        An id derived from base that is not in use.

        Retransmission copies get "-r1", "-r2", ... suffixes.
        """
        if base not in self._entities:
            return base
        n = self._copies.get(base, 0)
        while True:
            n += 1
            candidate = f"{base}-r{n}"
            if candidate not in self._entities:
                self._copies[base] = n
                return candidate

    def find(self, kind: Optional[PacketKind] = None,
             file_key: Optional[str] = None,
             sequence_number: Optional[int] = None,
             client_id: Optional[str] = None) -> List[Packet]:
        """All live entities matching every given field."""
        matches = []
        for packet in self._entities.values():
            if kind is not None and packet.kind is not kind:
                continue
            if file_key is not None and packet.file_key != file_key:
                continue
            if sequence_number is not None and packet.sequence_number != sequence_number:
                continue
            if client_id is not None and packet.client_id != client_id:
                continue
            matches.append(packet)
        return matches

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def __iter__(self) -> Iterator[Packet]:
        return iter(list(self._entities.values()))

    def __len__(self) -> int:
        return len(self._entities)
