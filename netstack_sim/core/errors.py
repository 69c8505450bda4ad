"""Error taxonomy for the node protocol stack.

None of these conditions is fatal to a running node. Each layer catches the
errors it owns, logs them and keeps going; only a ChannelUnavailable raised
while a node is starting up ends the process.
"""

from typing import Sequence


class NetstackError(Exception):
    """Base class for protocol stack errors."""


class IncompleteFrame(NetstackError):
    """No END marker has been observed yet; buffer the bytes and retry."""


class MalformedPacket(NetstackError, ValueError):
    """A deframed payload has an unknown tag or an unparseable body."""


class UnknownRoute(NetstackError):
    """The destination has no known route in the routing table."""

    def __init__(self, dest: int) -> None:
        super().__init__(f"No known route to node {dest}")
        self.dest = dest


class UnrecoverableLoss(NetstackError):
    """Chunks of a message were lost and parity could not rebuild them."""

    def __init__(self, source: int, dest: int, missing: Sequence[int]) -> None:
        super().__init__(
            f"Message {source}->{dest} is missing chunks {list(missing)}"
        )
        self.source = source
        self.dest = dest
        self.missing = tuple(missing)


class ChannelUnavailable(NetstackError, OSError):
    """A neighbor channel could not be opened or yielded nothing after retries."""

    def __init__(self, neighbor: int, reason: str = "") -> None:
        message = f"Channel to node {neighbor} unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.neighbor = neighbor
