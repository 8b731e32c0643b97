"""
Node Slots - bounded containers the learner drops entities into.

A lesson is laid out as a handful of nodes:

    [ sender ] --> [ splitter ] --> [ transit ] --> [ receiver(s) ]
                                        |
    (broadcast)          [ outbox ] ----+--> every client

Each slot keeps its members in arrival order and remembers what it looked like
at the last observation pass, so the engine can ask "what arrived, what left"
instead of reacting to every individual move.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from transport.errors import RejectedPlacement


logger = logging.getLogger(__name__)


class NodeRole(Enum):
    """What a node does with entities placed into it."""

    SENDER = "sender"
    TRANSIT = "transit"
    SPLITTER = "splitter"
    RECEIVER = "receiver"
    OUTBOX = "outbox"


@dataclass
class NodeSlot:
    """
    One node and the entities it currently holds.

    capacity None means unbounded.
    """
    id: str
    role: NodeRole
    capacity: Optional[int] = None
    client_id: Optional[str] = None
    label: str = ""
    # Receivers only: whether the learner may drop entities here directly
    accepts_drops: bool = True
    members: List[str] = field(default_factory=list)
    _snapshot: Tuple[str, ...] = field(default=(), repr=False)

    @property
    def is_full(self) -> bool:
        return self.capacity is not None and len(self.members) >= self.capacity

    def diff(self) -> Tuple[List[str], List[str]]:
        """
        Compare members with the previous snapshot and take a new one.

        Returns:
            Tuple of (added, removed), each in member order
        """
        previous = set(self._snapshot)
        current = set(self.members)
        added = [m for m in self.members if m not in previous]
        removed = [m for m in self._snapshot if m not in current]
        self._snapshot = tuple(self.members)
        return added, removed


class Topology:
    """
    All node slots of a lesson and which slot owns which entity.

    An entity lives in exactly one slot. Moving it is the only way ownership
    changes.
    """

    def __init__(self, slots: Iterable[NodeSlot]):
        self._slots: Dict[str, NodeSlot] = {}
        self._owner: Dict[str, str] = {}
        for slot in slots:
            if slot.id in self._slots:
                raise ValueError(f"Duplicate node id: {slot.id}")
            self._slots[slot.id] = slot

        if len(self.by_role(NodeRole.SENDER)) != 1:
            raise ValueError("A topology needs exactly one sender node")

    # ========== Lookup ==========

    def slot(self, node_id: str) -> NodeSlot:
        try:
            return self._slots[node_id]
        except KeyError:
            raise KeyError(f"Unknown node: {node_id}") from None

    def has_node(self, node_id: str) -> bool:
        return node_id in self._slots

    @property
    def slots(self) -> List[NodeSlot]:
        return list(self._slots.values())

    def by_role(self, role: NodeRole) -> List[NodeSlot]:
        return [s for s in self._slots.values() if s.role is role]

    def first(self, role: NodeRole) -> Optional[NodeSlot]:
        slots = self.by_role(role)
        return slots[0] if slots else None

    @property
    def sender_id(self) -> str:
        return self.by_role(NodeRole.SENDER)[0].id

    def receiver_for(self, client_id: Optional[str]) -> Optional[NodeSlot]:
        """
        The receiver serving a client.

        A receiver without a client_id (a single server) serves everyone.
        """
        receivers = self.by_role(NodeRole.RECEIVER)
        for slot in receivers:
            if slot.client_id == client_id:
                return slot
        for slot in receivers:
            if slot.client_id is None:
                return slot
        return None

    def location(self, entity_id: str) -> Optional[str]:
        return self._owner.get(entity_id)

    def members(self, node_id: str) -> List[str]:
        return list(self.slot(node_id).members)

    # ========== Ownership ==========

    def place(self, entity_id: str, node_id: str, enforce_capacity: bool = True):
        """
        Move an entity into a slot, taking it out of wherever it was.

        Raises:
            KeyError: Unknown node
            RejectedPlacement: The slot is full
        """
        slot = self.slot(node_id)
        current = self._owner.get(entity_id)
        if current == node_id:
            return

        if enforce_capacity and slot.is_full:
            raise RejectedPlacement(
                f"{slot.label or slot.id} is full.",
                entity_id=entity_id, node_id=node_id)

        if current is not None:
            self._slots[current].members.remove(entity_id)
        slot.members.append(entity_id)
        self._owner[entity_id] = node_id

    def remove(self, entity_id: str) -> Optional[str]:
        """Take an entity out of the topology. Returns the slot it was in."""
        node_id = self._owner.pop(entity_id, None)
        if node_id is not None:
            self._slots[node_id].members.remove(entity_id)
        return node_id

    def diff_all(self) -> List[Tuple[NodeSlot, List[str], List[str]]]:
        """Run diff() on every slot, in topology order."""
        return [(slot,) + slot.diff() for slot in self._slots.values()]

    def __str__(self) -> str:
        parts = [f"{s.id}={len(s.members)}" for s in self._slots.values()]
        return f"Topology({', '.join(parts)})"
