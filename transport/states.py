"""
Connection State Machine - the lifecycle of one simulated connection.

Real TCP has 11 states. The lesson only needs the receiver's side of the story,
which collapses to four:

    +--------+  recv SYN   +--------------+  recv ACK   +-------------+
    | CLOSED | ----------> | SYN-RECEIVED | ----------> | ESTABLISHED |
    +--------+ snd SYN-ACK +--------------+             +-------------+
        ^                                                      |
        |            snd FIN-ACK      +---------+   recv FIN   |
        +-----------------------------| CLOSING |<-------------+
                                      +---------+

A connection cannot skip states: an ACK without a prior SYN, or a FIN before
the handshake, is an invalid transition. Once a connection has gone through
CLOSING back to CLOSED it is finished and accepts nothing more.

This module also holds the lesson-level phases that drive narration. Those are
not protocol states; they describe where the learner is in the story.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple


class ConnectionPhase(Enum):
    """The receiver-side states of a simulated connection."""

    CLOSED = "closed"
    SYN_RECEIVED = "syn-received"
    ESTABLISHED = "established"
    CLOSING = "closing"

    def is_established(self) -> bool:
        """Check if connection is fully established."""
        return self == ConnectionPhase.ESTABLISHED

    def can_receive_data(self) -> bool:
        """Check if data fragments are accepted in this state."""
        return self == ConnectionPhase.ESTABLISHED


class LessonPhase(Enum):
    """Where the learner is in the reliable-delivery lesson."""

    MTU = "mtu"
    SPLIT_SEND = "split-send"
    SYN = "syn"
    SYN_WAIT = "syn-wait"
    ACK = "ack"
    CONNECTED = "connected"
    NEXT_FILE = "next-file"
    LOSS = "loss"
    RESEND = "resend"
    CLOSING = "closing"
    COMPLETE = "complete"


class BroadcastPhase(Enum):
    """Where the learner is in the streaming lesson."""

    INTRO = "intro"
    STREAMING = "streaming"
    COMPLETE = "complete"


@dataclass
class StateTransition:
    """
    Represents a state transition with its action.

    Kept in the state machine's history so the capture and tests can replay
    exactly how a connection got where it is.
    """
    from_state: ConnectionPhase
    event: str
    to_state: ConnectionPhase
    action: Optional[str] = None

    def __str__(self) -> str:
        action_str = f" / {self.action}" if self.action else ""
        return f"{self.from_state.name} --[{self.event}]--> {self.to_state.name}{action_str}"


class ConnectionStateMachine:
    """
    Validates and applies phase transitions for one connection.

    Like the real thing, the machine is deterministic given the same inputs.
    An event that is not legal in the current phase leaves the phase untouched
    and reports failure; callers decide how to surface that.
    """

    def __init__(self, initial_state: ConnectionPhase = ConnectionPhase.CLOSED):
        self.state = initial_state
        self.finished = False
        self.history: List[StateTransition] = []
        self._transition_callbacks: List[Callable] = []

    def on_transition(self, callback: Callable[[ConnectionPhase, ConnectionPhase, str], None]):
        """Register a callback for state transitions."""
        self._transition_callbacks.append(callback)

    def _notify_transition(self, from_state: ConnectionPhase,
                           to_state: ConnectionPhase, event: str):
        for callback in self._transition_callbacks:
            callback(from_state, to_state, event)

    def transition(self, event: str) -> Tuple[bool, Optional[str]]:
        """
        Attempt a state transition based on an event.

        Args:
            event: The event triggering the transition

        Returns:
            Tuple of (success, action_to_take)
            If success is False, the transition was invalid.
        """
        old_state = self.state
        success, action = self._process_event(event)

        if success:
            self.history.append(StateTransition(old_state, event, self.state, action))
            if self.state != old_state:
                self._notify_transition(old_state, self.state, event)

        return success, action

    def _process_event(self, event: str) -> Tuple[bool, Optional[str]]:
        # A finished connection only allows an explicit reset
        if self.finished:
            if event == "reset":
                self.finished = False
                self.state = ConnectionPhase.CLOSED
                return (True, "delete_tcb")
            return (False, None)

        if event == "reset":
            self.state = ConnectionPhase.CLOSED
            return (True, "delete_tcb")

        if self.state == ConnectionPhase.CLOSED:
            if event == "recv_syn":
                self.state = ConnectionPhase.SYN_RECEIVED
                return (True, "send_syn_ack")

        elif self.state == ConnectionPhase.SYN_RECEIVED:
            if event == "recv_ack":
                self.state = ConnectionPhase.ESTABLISHED
                return (True, "reset_buffers")

        elif self.state == ConnectionPhase.ESTABLISHED:
            if event == "recv_fin":
                self.state = ConnectionPhase.CLOSING
                return (True, "send_fin_ack")

        elif self.state == ConnectionPhase.CLOSING:
            if event == "send_fin_ack":
                self.state = ConnectionPhase.CLOSED
                self.finished = True
                return (True, "delete_tcb")

        return (False, None)

    def is_established(self) -> bool:
        return self.state.is_established()

    def is_closed(self) -> bool:
        return self.state == ConnectionPhase.CLOSED

    def __str__(self) -> str:
        return f"ConnectionStateMachine(state={self.state.name})"

