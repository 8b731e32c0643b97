"""
Broadcast - UDP-like fan-out of video frames.

Streaming trades reliability for timeliness. The sender pushes each frame once
to every viewer:

    Outbox --Frame 2--+--> Client A  (got it)
                      +--> Client B  (got it)
                      +--> Client C  (lost - and nobody will resend it)

There is no handshake, no ACK, no retransmission and no reorder buffer. The
only rule the sender keeps is its own send order: frame f may go out only
right after frame f - 1. Which viewer receives which frame is fixed ahead of
time by a delivery matrix so every run of the lesson looks the same.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import FrameOutOfOrder, InvalidTransition
from .packet import Frame


logger = logging.getLogger(__name__)


# frame -> client -> delivered
FRAME_DESTINY: Dict[int, Dict[str, bool]] = {
    1: {"a": True, "b": True, "c": True},
    2: {"a": True, "b": True, "c": False},
    3: {"a": True, "b": True, "c": True},
    4: {"a": False, "b": True, "c": True},
    5: {"a": True, "b": False, "c": True},
    6: {"a": True, "b": True, "c": True},
}


class DeliveryMatrix:
    """
    Static, precomputed per-receiver delivery outcomes.

    A missing frame or client entry means "not delivered".
    """

    def __init__(self, outcomes: Mapping[int, Mapping[str, bool]],
                 clients: Optional[Iterable[str]] = None):
        if not outcomes:
            raise ValueError("Delivery matrix is empty")
        frames = sorted(outcomes)
        if frames != list(range(1, len(frames) + 1)):
            raise ValueError(f"Frames must be numbered 1..N, got {frames}")

        self._outcomes = {f: dict(row) for f, row in outcomes.items()}
        if clients is None:
            clients = sorted({c for row in outcomes.values() for c in row})
        self.clients: Tuple[str, ...] = tuple(clients)

    @property
    def total_frames(self) -> int:
        return len(self._outcomes)

    def delivered(self, frame_number: int, client_id: str) -> bool:
        return self._outcomes.get(frame_number, {}).get(client_id, False)

    def recipients(self, frame_number: int) -> Set[str]:
        """Clients that get this frame."""
        return {c for c in self.clients if self.delivered(frame_number, c)}

    def expected_frames(self, client_id: str) -> Set[int]:
        """All frames a client ends up with after a full in-order stream."""
        return {f for f in range(1, self.total_frames + 1)
                if self.delivered(f, client_id)}

    @classmethod
    def default(cls) -> "DeliveryMatrix":
        return cls(FRAME_DESTINY)


class BroadcastSession:
    """
    Sender-side state of one stream.

    Stateless per send apart from the strict ordering rule and a record of
    what each client ended up with.
    """

    def __init__(self, matrix: DeliveryMatrix):
        self.matrix = matrix
        self.last_sent = 0
        self.frames: Dict[int, Frame] = {}
        self.deliveries: Dict[str, Set[int]] = {c: set() for c in matrix.clients}

    @property
    def total_frames(self) -> int:
        return self.matrix.total_frames

    @property
    def expected_frame(self) -> int:
        """Next frame the sender will accept (capped at the last frame)."""
        return min(self.last_sent + 1, self.total_frames)

    @property
    def is_complete(self) -> bool:
        return self.last_sent >= self.total_frames

    def check_order(self, frame_number: int):
        """
        Validate that a frame may be sent now.

        Raises:
            InvalidTransition: The stream already finished
            FrameOutOfOrder: The frame is out of order
        """
        if self.is_complete:
            raise InvalidTransition(
                "The stream is already complete.", phase="complete",
                event="send_frame")
        if frame_number != self.last_sent + 1:
            raise FrameOutOfOrder(self.last_sent + 1)

    def deliver(self, frame_number: int) -> Frame:
        """
        Fan a frame out to every client according to the matrix.

        No acknowledgement, no retry.
        """
        self.check_order(frame_number)
        frame = Frame(frame_number, self.matrix.recipients(frame_number))
        self.frames[frame_number] = frame
        self.last_sent = frame_number
        for client_id in frame.delivered_to:
            self.deliveries[client_id].add(frame_number)

        dropped = sorted(set(self.matrix.clients) - frame.delivered_to)
        logger.debug(
            f"Frame {frame_number} -> {sorted(frame.delivered_to)}"
            + (f", lost for {dropped}" if dropped else ""))
        return frame

    def client_progress(self) -> List[dict]:
        """Per-client frame map and percentage, for progress bars."""
        progress = []
        for client_id in self.matrix.clients:
            got = self.deliveries[client_id]
            progress.append({
                "client_id": client_id,
                "frames": [f in got for f in range(1, self.total_frames + 1)],
                "received_count": len(got),
                "percent": round(len(got) / self.total_frames * 100),
            })
        return progress
