"""Enumerations for the node protocol stack.

This module defines enumerations used throughout the network simulator.
"""

from enum import Enum


class PacketKind(Enum):
    """Enum for the packet kinds carried on the wire.

    The value of each member is its tag byte, the first byte of every
    deframed payload.

    Attributes:
        DATA: Transport data chunk.
        PARITY: XOR redundancy over a pair of data chunks.
        ROUTING_ADVERT: Path-vector routing table advertisement.
    """

    DATA = b"D"
    PARITY = b"X"
    ROUTING_ADVERT = b"R"

    @classmethod
    def from_tag(cls, tag: bytes) -> "PacketKind":
        """Look up a kind by its tag byte.

        Raises:
            ValueError: If the tag is not a known packet kind.
        """
        return cls(tag)
