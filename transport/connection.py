"""
Connection - receiver-side protocol logic for one client.

This module brings together the pieces of reliable delivery:
- State machine for the handshake and teardown
- Reorder buffers for ordered delivery of each file's fragments
- Duplicate ACK detection for fast retransmit
- The scripted loss rule

A Connection is pure protocol state. It never schedules anything and never
touches nodes; the reliable engine in the simulator does that and asks the
connection what the protocol says should happen.

Data transfer, on fragment s arriving while established:

    expected = smallest missing sequence
    s == expected  ->  receive, flush buffered run behind it, ack = new expected
    s >  expected  ->  buffer it (head-of-line blocking), ack unchanged
    already seen   ->  duplicate, ack unchanged

Every ack that does not move forward is a duplicate ACK. The third duplicate
for the same value asks the sender to retransmit that sequence - once, until
the ack moves again.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

from .buffer import DeliveryOutcome, ReorderBuffer
from .errors import InvalidTransition, RejectedPlacement
from .states import ConnectionPhase, ConnectionStateMachine


logger = logging.getLogger(__name__)


class DuplicateAckTracker:
    """
    Counts ACKs that make no forward progress.

    TCP's fast retransmit: three duplicate ACKs mean a segment is very likely
    lost (as opposed to merely reordered), so resend it without waiting for a
    timeout. The signal is one-shot per ack value.
    """

    DEFAULT_THRESHOLD = 3

    def __init__(self, threshold: int = DEFAULT_THRESHOLD):
        if threshold < 1:
            raise ValueError(f"Invalid duplicate ACK threshold: {threshold}")
        self.threshold = threshold
        self.last_ack: Optional[int] = None
        self.count = 0
        self._fired_for: Optional[int] = None

    def observe(self, ack_num: int) -> Optional[int]:
        """
        Record an outgoing ACK.

        Returns:
            The sequence to retransmit when this ACK is the threshold-th
            duplicate, otherwise None
        """
        if self.last_ack is None or ack_num > self.last_ack:
            # Forward progress
            self.last_ack = ack_num
            self.count = 0
            self._fired_for = None
            return None

        if ack_num == self.last_ack:
            self.count += 1
            if self.count == self.threshold and self._fired_for != ack_num:
                self._fired_for = ack_num
                return ack_num

        return None

    def reset(self):
        self.last_ack = None
        self.count = 0
        self._fired_for = None


@dataclass
class DataResult:
    """What the receiver did with one data fragment."""
    outcome: DeliveryOutcome
    ack_num: int
    flushed: List[int] = field(default_factory=list)
    retransmit_sequence: Optional[int] = None
    complete: bool = False
    # The ACK repeats the previous one (no forward progress)
    duplicate_ack: bool = False


class Connection:
    """
    One simulated connection, seen from the receiver.

    Created on the first SYN from a client, finished by the FIN / FIN-ACK
    exchange, or thrown away by an explicit phase reset.

    Usage:
        conn = Connection("client")
        conn.accept_syn()           # -> SYN-RECEIVED, answer with SYN-ACK
        conn.accept_ack()           # -> ESTABLISHED
        result = conn.receive_data("message", 1, total=3)
        ...
        conn.mark_assembled("message")
        conn.accept_fin()           # -> CLOSING, answer with FIN-ACK
        conn.finish()               # -> CLOSED for good
    """

    def __init__(self, client_id: str,
                 dup_ack_threshold: int = DuplicateAckTracker.DEFAULT_THRESHOLD):
        self.client_id = client_id
        self._state_machine = ConnectionStateMachine()
        self._dup_acks = DuplicateAckTracker(dup_ack_threshold)

        # One reorder buffer per file; only the active one takes new data
        self._transfers: Dict[str, ReorderBuffer] = {}
        self._active: Optional[ReorderBuffer] = None

    # ========== Observable state ==========

    @property
    def phase(self) -> ConnectionPhase:
        return self._state_machine.state

    @property
    def finished(self) -> bool:
        """True once the FIN / FIN-ACK exchange has completed."""
        return self._state_machine.finished

    @property
    def state_machine(self) -> ConnectionStateMachine:
        return self._state_machine

    @property
    def active_file(self) -> Optional[str]:
        return self._active.file_key if self._active else None

    @property
    def expected_seq(self) -> int:
        return self._active.expected if self._active else 1

    @property
    def received_set(self) -> FrozenSet[int]:
        return frozenset(self._active.received) if self._active else frozenset()

    @property
    def buffered_set(self) -> FrozenSet[int]:
        return frozenset(self._active.buffered) if self._active else frozenset()

    @property
    def dup_ack_count(self) -> int:
        return self._dup_acks.count

    @property
    def last_ack_number(self) -> Optional[int]:
        return self._dup_acks.last_ack

    def transfer(self, file_key: str) -> Optional[ReorderBuffer]:
        return self._transfers.get(file_key)

    def is_assembled(self, file_key: str) -> bool:
        buffer = self._transfers.get(file_key)
        return buffer is not None and buffer.assembled

    # ========== Handshake ==========

    def accept_syn(self):
        """SYN arrived: move to SYN-RECEIVED. Caller answers with SYN-ACK."""
        self._transition("recv_syn", "A SYN is only valid on a closed connection.")
        logger.debug(f"[{self.client_id}] SYN received")

    def accept_ack(self):
        """Handshake ACK arrived: move to ESTABLISHED with fresh buffers."""
        self._transition("recv_ack", "Send a SYN and wait for the SYN-ACK first.")
        self._transfers.clear()
        self._active = None
        self._dup_acks.reset()
        logger.info(f"[{self.client_id}] Connection established")

    # ========== Data transfer ==========

    def receive_data(self, file_key: str, seq: int, total: int) -> DataResult:
        """
        Receive one data fragment on this connection.

        Raises:
            RejectedPlacement: No connection yet, or another file is still
                               being delivered
            InvalidTransition: The connection is closing or closed
        """
        if not self.phase.can_receive_data():
            if self.finished or self.phase == ConnectionPhase.CLOSING:
                raise InvalidTransition(
                    "The connection is closed.",
                    phase=self.phase.value, event="recv_data")
            raise RejectedPlacement("No connection yet. Send a SYN first.")

        buffer = self._transfer_for(file_key, total)
        outcome, ack_num, flushed = buffer.receive(seq)

        duplicate_ack = self._dup_acks.last_ack == ack_num
        retransmit = self._dup_acks.observe(ack_num)
        if retransmit is not None and retransmit > buffer.total:
            # Everything arrived; nothing left to resend
            retransmit = None
        if retransmit is not None:
            buffer.retransmit_allowed = True
            logger.debug(
                f"[{self.client_id}] {self._dup_acks.count} duplicate ACKs "
                f"for {ack_num} - fast retransmit #{retransmit}")

        logger.debug(
            f"[{self.client_id}] {file_key} #{seq}: {outcome.value}, ack={ack_num}")

        return DataResult(
            outcome=outcome,
            ack_num=ack_num,
            flushed=flushed,
            retransmit_sequence=retransmit,
            complete=buffer.is_complete,
            duplicate_ack=duplicate_ack,
        )

    def _transfer_for(self, file_key: str, total: int) -> ReorderBuffer:
        buffer = self._transfers.get(file_key)
        if buffer is not None:
            if buffer.total != total:
                raise ValueError(
                    f"{file_key} has {buffer.total} fragments, not {total}")
            return buffer

        if self._active is not None and not self._active.assembled:
            raise RejectedPlacement(
                f"Finish delivering {self._active.file_key} first.")

        # A new file starts numbering from 1 again
        buffer = ReorderBuffer(file_key, total)
        self._transfers[file_key] = buffer
        self._active = buffer
        self._dup_acks.reset()
        return buffer

    def loss_applies(self, file_key: str, seq: int,
                     loss_sequence: Optional[int]) -> bool:
        """
        Check if a fragment in flight falls to the scripted loss.

        The designated sequence is dropped until fast retransmit has been
        requested for its file.
        """
        if loss_sequence is None or seq != loss_sequence:
            return False
        buffer = self._transfers.get(file_key)
        return not (buffer is not None and buffer.retransmit_allowed)

    def mark_assembled(self, file_key: str):
        """The assembly delay has elapsed for a complete file."""
        buffer = self._transfers.get(file_key)
        if buffer is None or not buffer.is_complete:
            raise InvalidTransition(
                f"{file_key} is not complete.", phase=self.phase.value,
                event="assemble")
        buffer.assembled = True
        logger.info(f"[{self.client_id}] {file_key} assembled")

    # ========== Teardown ==========

    def can_close(self) -> bool:
        """
        FIN is allowed once every file on the connection is assembled.

        A connection that carried no files may close straight away; whether
        files are still owed is the engine's call.
        """
        return (
            self.phase.is_established()
            and all(b.assembled for b in self._transfers.values())
        )

    def accept_fin(self):
        """FIN arrived: move to CLOSING. Caller answers with FIN-ACK."""
        if self.phase.is_established() and not self.can_close():
            raise InvalidTransition(
                "Finish delivering the file before closing.",
                phase=self.phase.value, event="recv_fin")
        self._transition("recv_fin", "There is no open connection to close.")
        logger.debug(f"[{self.client_id}] FIN received")

    def finish(self):
        """FIN-ACK sent: the connection is closed for good."""
        self._transition("send_fin_ack", "The connection is not closing.")
        logger.info(f"[{self.client_id}] Connection closed")

    def reset(self):
        """Discard everything (reconnect scenario)."""
        self._state_machine.transition("reset")
        self._transfers.clear()
        self._active = None
        self._dup_acks.reset()

    def _transition(self, event: str, message: str):
        phase = self.phase
        success, _ = self._state_machine.transition(event)
        if not success:
            raise InvalidTransition(message, phase=phase.value, event=event)

    # ========== Counters for narration ==========

    @property
    def received_count(self) -> int:
        return len(self._active.received) if self._active else 0

    @property
    def waiting_count(self) -> int:
        return len(self._active.buffered) if self._active else 0

    def __str__(self) -> str:
        return (
            f"Connection({self.client_id}, {self.phase.value}, "
            f"expected={self.expected_seq}, dup_acks={self.dup_ack_count})"
        )
