#!/usr/bin/env python3
"""
Message Delivery Walkthrough

Plays the reliable-delivery lesson the way a learner would:
- Drop the whole file on the Internet and watch it get split
- Send a packet with no connection and get asked for a SYN
- Do the three-way handshake
- Send message.txt out of order and watch the reorder buffer
- Lose a packet of notes.txt, collect 3 duplicate ACKs, resend it
- Close the connection with FIN

Prints the tcpdump-style capture at the end.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from simulator import (
    SimulationConfig, SimulationContext, HintChanged, Notice, message_delivery,
)
import logging

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def send(ctx: SimulationContext, entity_id: str):
    """Drop an entity on the Internet and wait for it to arrive."""
    ctx.place_entity(entity_id, "internet")
    ctx.advance(ctx.config.propagation_ms)


def run(config: SimulationConfig):
    ctx = SimulationContext(message_delivery(), config)
    ctx.bus.subscribe(HintChanged, lambda e: print(f"[{e.time_ms:>6}ms] hint: {e.hint}"))
    ctx.bus.subscribe(Notice, lambda e: print(f"[{e.time_ms:>6}ms] {e.tone}: {e.message}"))

    # Too large for one packet
    ctx.place_entity("message-file", "internet")
    ctx.advance(config.processing_ms)

    # No connection yet
    send(ctx, "message-packet-1")
    ctx.advance(config.bounce_ms)

    # Handshake
    send(ctx, "syn-client")
    ctx.advance(config.processing_ms + config.propagation_ms)
    send(ctx, "ack-client")

    # Out of order on purpose
    for seq in (1, 3, 2):
        send(ctx, f"message-packet-{seq}")
    ctx.advance(config.assembly_ms)

    # Second file, one packet goes missing
    ctx.place_entity("notes-file", "splitter")
    ctx.advance(config.processing_ms)
    for seq in range(1, 7):
        send(ctx, f"notes-packet-{seq}")
    ctx.advance(config.loss_fade_ms)
    send(ctx, "notes-packet-2")
    ctx.advance(config.assembly_ms)

    # Teardown
    send(ctx, "fin-client")
    ctx.advance(config.processing_ms + config.propagation_ms)
    ctx.run_until_idle()

    print()
    print(ctx.capture.tcpdump())
    print()
    print(ctx.capture.summary())
    print(f"Complete: {ctx.complete}")
    ctx.teardown()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Message delivery walkthrough")
    parser.add_argument('--fast', action='store_true', help='Use short delays')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    run(SimulationConfig.fast() if args.fast else SimulationConfig())
