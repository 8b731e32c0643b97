"""
Reorder Buffer - ordered delivery of numbered fragments.

The receiver hands fragments to the application strictly in order. A fragment
that arrives ahead of a gap has to wait:

    received        buffered (head-of-line blocked)
    [ 1 ][ 2 ]  _  [ 4 ][ 5 ]
                ^
          expected = 3, ack = 3

When #3 finally shows up, it and the contiguous run behind it (#4, #5) are
released together and the ack jumps to 6.

The ack is always cumulative: "everything before this number has arrived".
There is no selective acknowledgement of the buffered fragments.
"""

from enum import Enum
from typing import List, Set, Tuple


class DeliveryOutcome(Enum):
    """What happened to a fragment at the receiver."""

    ACCEPTED = "accepted"
    BUFFERED = "buffered"
    DUPLICATE = "duplicate"


class ReorderBuffer:
    """
    Receive-side state for one file: which fragments arrived, which wait.

    Invariants:
    - expected is the smallest sequence not in received
    - received and buffered never overlap
    - nothing in buffered is smaller than expected
    """

    def __init__(self, file_key: str, total: int):
        """
        Initialize reorder buffer.

        Args:
            file_key: The file whose fragments this buffer collects
            total: Number of fragments N; sequences run 1..N
        """
        if total < 1:
            raise ValueError(f"Invalid fragment count: {total}")
        self.file_key = file_key
        self.total = total
        self.received: Set[int] = set()
        self.buffered: Set[int] = set()
        self.assembled = False
        # Set once a fast retransmit has been requested for this file
        self.retransmit_allowed = False

    @property
    def expected(self) -> int:
        """Smallest sequence number not yet received (N + 1 when done)."""
        seq = 1
        while seq in self.received:
            seq += 1
        return seq

    @property
    def ack_number(self) -> int:
        """Cumulative ACK: 1 + length of the unbroken received prefix."""
        return self.expected

    @property
    def is_complete(self) -> bool:
        return len(self.received) == self.total

    def receive(self, seq: int) -> Tuple[DeliveryOutcome, int, List[int]]:
        """
        Receive one fragment.

        Args:
            seq: Sequence number of the fragment

        Returns:
            Tuple of (outcome, ack_num, flushed)
            flushed: previously buffered sequences released by this arrival,
                     in delivery order
        """
        if not 1 <= seq <= self.total:
            raise ValueError(f"Sequence {seq} outside 1..{self.total}")

        if seq in self.received or seq in self.buffered:
            return (DeliveryOutcome.DUPLICATE, self.expected, [])

        expected = self.expected
        if seq == expected:
            self.received.add(seq)
            flushed = self.flush()
            return (DeliveryOutcome.ACCEPTED, self.expected, flushed)

        # Ahead of a gap - hold it back, ACK does not move
        self.buffered.add(seq)
        return (DeliveryOutcome.BUFFERED, expected, [])

    def flush(self) -> List[int]:
        """
        Move the buffered run that starts at expected into received.

        Returns the released sequences in order. A no-op while the gap is
        still open.
        """
        flushed = []
        seq = self.expected
        while seq in self.buffered:
            self.buffered.discard(seq)
            self.received.add(seq)
            flushed.append(seq)
            seq += 1
        return flushed

    def missing(self) -> List[int]:
        """Sequences neither received nor buffered."""
        return [s for s in range(1, self.total + 1)
                if s not in self.received and s not in self.buffered]

    def __len__(self) -> int:
        return len(self.received)

    def __str__(self) -> str:
        return (
            f"ReorderBuffer({self.file_key}, expected={self.expected}, "
            f"received={sorted(self.received)}, buffered={sorted(self.buffered)})"
        )
