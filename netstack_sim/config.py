"""Node configuration and command-line parsing.

A node is started the same way on every host::

    main.py ID DURATION DEST [MESSAGE START] NEIGHBOR [NEIGHBOR ...]

When DEST equals ID the node only relays and receives, so MESSAGE and START
are left out and the remaining arguments are all neighbor IDs.
"""

import argparse
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from netstack_sim.core.packet import validate_node_id
from netstack_sim.core.router import ADVERT_INTERVAL
from netstack_sim.core.transport import PAYLOAD_SIZE

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ValueError):
    """Raised when a node configuration is invalid."""


@dataclass(frozen=True)
class NodeConfig:
    """Validated startup configuration of one node.

    Attributes:
        node_id: ID of this node.
        duration: Number of seconds (ticks) the node runs.
        dest: Destination of this node's message; equal to node_id if none.
        message: Text the transport layer sends to dest.
        start_offset: Tick at which the message is sent.
        neighbors: IDs of the directly connected nodes.
        payload_size: Transport chunk size in bytes.
        advert_interval: Ticks between periodic routing advertisements.
        channel_dir: Directory holding the file channels.
    """

    node_id: int
    duration: int
    dest: int
    message: str = ""
    start_offset: int = 0
    neighbors: Tuple[int, ...] = ()
    payload_size: int = PAYLOAD_SIZE
    advert_interval: int = ADVERT_INTERVAL
    channel_dir: str = "."

    def __post_init__(self):
        """Validate every field."""
        try:
            validate_node_id(self.node_id, "node id")
            validate_node_id(self.dest, "destination")
            for neighbor in self.neighbors:
                validate_node_id(neighbor, "neighbor")
        except ValueError as exc:
            raise ConfigError(str(exc)) from None
        object.__setattr__(self, "neighbors", tuple(self.neighbors))

        if not self.neighbors:
            raise ConfigError("A node needs at least one neighbor.")
        if len(set(self.neighbors)) != len(self.neighbors):
            raise ConfigError(f"Duplicate neighbors in {list(self.neighbors)}")
        if self.node_id in self.neighbors:
            raise ConfigError(f"Node {self.node_id} cannot be its own neighbor.")
        if self.duration <= 0:
            raise ConfigError("duration must be positive.")
        if self.start_offset < 0:
            raise ConfigError("start offset must not be negative.")
        if self.payload_size < 1:
            raise ConfigError("payload size must be at least 1.")
        if self.advert_interval < 1:
            raise ConfigError("advert interval must be at least 1.")
        if self.sends_message and not self.message:
            raise ConfigError(f"Node {self.node_id} sends to {self.dest} but has no message.")

    @property
    def sends_message(self) -> bool:
        """Whether this node has a transport message to send."""
        return self.dest != self.node_id


def _int(value: str, what: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{what} must be an integer, got {value!r}") from None


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for a single node."""
    parser = argparse.ArgumentParser(
        description="Run one node of the simulated packet network."
    )
    parser.add_argument("id", help="ID of this node (0-9)")
    parser.add_argument("duration", help="Seconds to run before terminating")
    parser.add_argument("dest", help="Destination of the transport message")
    parser.add_argument(
        "rest",
        nargs="+",
        metavar="ARG",
        help="MESSAGE START NEIGHBOR... or, when dest equals id, NEIGHBOR...",
    )
    parser.add_argument(
        "--payload-size", type=int, default=PAYLOAD_SIZE, help="Transport chunk size in bytes"
    )
    parser.add_argument(
        "--advert-interval",
        type=int,
        default=ADVERT_INTERVAL,
        help="Seconds between routing advertisements",
    )
    parser.add_argument(
        "--channel-dir", default=".", help="Directory holding the fromXtoY.txt channel files"
    )
    parser.add_argument(
        "--time-factor",
        type=float,
        default=1.0,
        help="Real seconds per simulated second",
    )
    parser.add_argument(
        "--log-level", default="INFO", help=f"Logging level ({', '.join(LOG_LEVELS)})"
    )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> Tuple[NodeConfig, argparse.Namespace]:
    """Parse a node command line into a validated NodeConfig.

    Args:
        argv: Arguments without the program name; defaults to sys.argv.

    Returns:
        The NodeConfig and the raw parsed namespace.

    Raises:
        ConfigError: If the arguments do not describe a valid node.
    """
    args = build_parser().parse_args(argv)
    args.log_level = args.log_level.upper()
    if args.log_level not in LOG_LEVELS:
        raise ConfigError(f"log level must be one of {', '.join(LOG_LEVELS)}, got {args.log_level!r}")
    node_id = _int(args.id, "id")
    dest = _int(args.dest, "dest")
    rest: List[str] = list(args.rest)

    message, start_offset = "", 0
    if dest != node_id:
        if len(rest) < 3:
            raise ConfigError("Expected MESSAGE START and at least one NEIGHBOR.")
        message, start_offset, rest = rest[0], _int(rest[1], "start"), rest[2:]

    config = NodeConfig(
        node_id=node_id,
        duration=_int(args.duration, "duration"),
        dest=dest,
        message=message,
        start_offset=start_offset,
        neighbors=tuple(_int(n, "neighbor") for n in rest),
        payload_size=args.payload_size,
        advert_interval=args.advert_interval,
        channel_dir=args.channel_dir,
    )
    return config, args
