"""
Simulation configuration.

All timing constants are pedagogical, chosen so a learner can follow each step
on screen. They are virtual milliseconds on the scheduler's clock, never wall
time.
"""

from dataclasses import dataclass, fields, replace


@dataclass(frozen=True)
class SimulationConfig:
    """Configuration options for one simulation context."""

    # Time for a packet to cross the Internet node
    propagation_ms: int = 1500
    # Time a node takes to handle an arrival (split, answer SYN/FIN)
    processing_ms: int = 500
    # Time a rejected entity stays put before bouncing back
    bounce_ms: int = 400

    # Gap between visual releases of flushed fragments
    buffer_step_ms: int = 300
    # Delay before a buffered fragment retries the flush
    buffer_release_ms: int = 1200
    # Time between the last fragment arriving and the file being assembled
    assembly_ms: int = 1000
    # Fade-out of a lost packet before it disappears
    loss_fade_ms: int = 600

    # Broadcast
    frame_send_ms: int = 1500
    broadcast_intro_ms: int = 200

    # Lifetime of a notice before it is cleared
    notice_ms: int = 2000

    # Maximum bytes a single packet may carry
    mtu: int = 1400

    # Duplicate ACKs needed for fast retransmit
    dup_ack_threshold: int = 3

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, int) or value < 0:
                raise ValueError(f"Invalid {f.name}: {value!r}")
        if self.mtu < 1:
            raise ValueError(f"Invalid mtu: {self.mtu}")
        if self.dup_ack_threshold < 1:
            raise ValueError(f"Invalid dup_ack_threshold: {self.dup_ack_threshold}")

    def with_overrides(self, **kwargs) -> "SimulationConfig":
        """Return a copy with some values replaced."""
        return replace(self, **kwargs)

    @classmethod
    def fast(cls) -> "SimulationConfig":
        """Short delays with the same relative ordering, for tests and demos."""
        return cls(
            propagation_ms=150,
            processing_ms=50,
            bounce_ms=40,
            buffer_step_ms=30,
            buffer_release_ms=120,
            assembly_ms=100,
            loss_fade_ms=60,
            frame_send_ms=150,
            broadcast_intro_ms=20,
            notice_ms=200,
        )
