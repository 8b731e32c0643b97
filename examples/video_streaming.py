#!/usr/bin/env python3
"""
Video Streaming Walkthrough

Plays the streaming lesson:
- Open a TCP connection to each of the three clients
- Deliver each client's video reliably
- Switch to broadcast and push six frames through the Outbox

Some frames never reach some clients, and nobody resends them. The
per-client progress at the end shows the difference.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from simulator import (
    SimulationConfig, SimulationContext, Signal, SignalKind, video_streaming,
)
from simulator.scenarios import VIDEO_CLIENTS
import logging

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def on_signal(event: Signal):
    if event.kind is SignalKind.FRAME_DELIVERED:
        print(f"[{event.time_ms:>6}ms] Frame {event.sequence_number} -> "
              f"{', '.join(event.details['delivered_to']) or 'nobody'}")
    elif event.kind is SignalKind.SIMULATION_COMPLETE:
        print(f"[{event.time_ms:>6}ms] {event.message}")


def run(config: SimulationConfig):
    ctx = SimulationContext(video_streaming(), config)
    ctx.bus.subscribe(Signal, on_signal)

    # TCP stage, one inbox per client
    for c in VIDEO_CLIENTS:
        ctx.place_entity(f"syn-{c}", f"inbox-{c}")
    ctx.advance(config.processing_ms + config.propagation_ms)
    for c in VIDEO_CLIENTS:
        ctx.place_entity(f"ack-{c}", f"inbox-{c}")
    for c in VIDEO_CLIENTS:
        for seq in (1, 2):
            ctx.place_entity(f"video-{c}-packet-{seq}", f"inbox-{c}")
    ctx.advance(config.assembly_ms)
    print(f"Reliable stage: {ctx.reliable.phase.value}")

    # Broadcast stage
    ctx.switch_to_broadcast()
    ctx.advance(config.broadcast_intro_ms)
    for n in range(1, ctx.streaming.matrix.total_frames + 1):
        ctx.place_entity(f"frame-{n}", "outbox")
        ctx.advance(config.frame_send_ms)

    print()
    for progress in ctx.client_progress():
        frames = "".join("#" if got else "." for got in progress["frames"])
        print(f"Client {progress['client_id'].upper()}: [{frames}] {progress['percent']}%")
    print()
    print(ctx.capture.tcpdump())
    ctx.teardown()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Video streaming walkthrough")
    parser.add_argument('--fast', action='store_true', help='Use short delays')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    run(SimulationConfig.fast() if args.fast else SimulationConfig())
