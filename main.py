#!/usr/bin/env python3
"""Run one node of the simulated packet network as its own process.

    python main.py 0 100 2 "this is a message from 0" 30 1 &
    python main.py 1 100 2 "this is a message from 1" 30 0 2 &
    python main.py 2 100 2 1 &

Neighbors talk through fromXtoY.txt files in the channel directory.
"""

import logging
import sys
from typing import Dict, Optional, Sequence

import simpy.rt

from netstack_sim.config import ConfigError, build_parser, parse_args
from netstack_sim.core.channel import Channel, FileChannel
from netstack_sim.core.errors import ChannelUnavailable
from netstack_sim.core.node import READ_RETRIES, TICK, Node

logger = logging.getLogger("netstack_sim")


def open_channels(node_id: int, neighbors: Sequence[int], directory: str) -> Dict[int, Channel]:
    """Open one file channel per neighbor, closing them all on failure."""
    channels: Dict[int, Channel] = {}
    try:
        for neighbor in neighbors:
            channels[neighbor] = FileChannel(node_id, neighbor, directory)
    except ChannelUnavailable:
        for channel in channels.values():
            channel.close()
        raise
    return channels


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse the command line, run the node and return the exit status."""
    try:
        config, args = parse_args(argv)
    except ConfigError as exc:
        build_parser().print_usage(sys.stderr)
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=args.log_level.upper(),
        format=f"%(asctime)s node{config.node_id} %(levelname)s %(name)s: %(message)s",
    )

    try:
        channels = open_channels(config.node_id, config.neighbors, config.channel_dir)
    except ChannelUnavailable as exc:
        logger.error("Cannot start node %d: %s", config.node_id, exc)
        return 1

    # Retries for every neighbor must fit in half a tick.
    retry_delay = TICK / (2 * READ_RETRIES * len(channels))
    env = simpy.rt.RealtimeEnvironment(factor=args.time_factor, strict=False)
    try:
        node = Node(env, config, channels, retry_delay=retry_delay)
        env.run(until=node.process)
    finally:
        for channel in channels.values():
            channel.close()

    for message in node.received:
        print(f"Node {config.node_id} received: {message.decode('utf-8', errors='replace')}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
