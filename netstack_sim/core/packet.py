"""Packet class and wire codec for the node protocol stack.

This module defines the Packet class, which represents a network packet
before it is framed for a channel, together with the encode/decode pair for
each packet kind.

Wire layouts (all ids are single ASCII digits):

    Data:          b"D" src dest seq(2 digits) payload
    Parity:        b"X" src dest seq(2 digits) payload
    RoutingAdvert: b"R" src table_snapshot
"""

from dataclasses import dataclass
from typing import Optional

from netstack_sim.core.enums import PacketKind
from netstack_sim.core.errors import MalformedPacket

MIN_NODE_ID = 0
MAX_NODE_ID = 9
NODE_IDS = range(MIN_NODE_ID, MAX_NODE_ID + 1)

SEQ_MODULUS = 100

# Tag + source + dest + two sequence digits.
TRANSPORT_HEADER_SIZE = 5
ADVERT_HEADER_SIZE = 2


def validate_node_id(node_id: int, what: str = "node id") -> int:
    """Check that a node id lies in the supported range.

    Args:
        node_id: The id to check.
        what: Name used in the error message.

    Returns:
        The id, unchanged.

    Raises:
        ValueError: If the id is not an int in [0, 9].
    """
    if isinstance(node_id, bool) or not isinstance(node_id, int):
        raise ValueError(f"{what} must be an int, got {node_id!r}")
    if node_id not in NODE_IDS:
        raise ValueError(f"{what} must be in [{MIN_NODE_ID}, {MAX_NODE_ID}], got {node_id}")
    return node_id


def _digit(raw: bytes, index: int) -> int:
    value = raw[index]
    if not 0x30 <= value <= 0x39:
        raise MalformedPacket(f"Expected a digit at offset {index}, got {value:#04x}")
    return value - 0x30


@dataclass(frozen=True)
class Packet:
    """Represents a packet handed between the transport and network layers.

    Attributes:
        kind: Packet kind, which also selects the wire layout.
        source: Source node ID.
        dest: Destination node ID, None for routing advertisements.
        seq: Sequence number in [0, 99], None for routing advertisements.
        payload: Chunk bytes for Data, XOR parity for Parity, the serialized
            routing table for RoutingAdvert.
    """

    kind: PacketKind
    source: int
    dest: Optional[int] = None
    seq: Optional[int] = None
    payload: bytes = b""

    def __post_init__(self):
        """Validate the fields required by the packet kind."""
        validate_node_id(self.source, "source")
        if self.kind is PacketKind.ROUTING_ADVERT:
            if self.dest is not None or self.seq is not None:
                raise ValueError("Routing advertisements carry no dest or seq")
            return
        validate_node_id(self.dest, "dest")
        if not isinstance(self.seq, int) or not 0 <= self.seq < SEQ_MODULUS:
            raise ValueError(f"seq must be in [0, {SEQ_MODULUS - 1}], got {self.seq!r}")

    @classmethod
    def data(cls, source: int, dest: int, seq: int, payload: bytes) -> "Packet":
        return cls(PacketKind.DATA, source, dest, seq, bytes(payload))

    @classmethod
    def parity(cls, source: int, dest: int, seq: int, payload: bytes) -> "Packet":
        return cls(PacketKind.PARITY, source, dest, seq, bytes(payload))

    @classmethod
    def advert(cls, source: int, snapshot: bytes) -> "Packet":
        return cls(PacketKind.ROUTING_ADVERT, source, payload=bytes(snapshot))

    @property
    def is_transport(self) -> bool:
        """Whether this packet carries transport data (Data or Parity)."""
        return self.kind is not PacketKind.ROUTING_ADVERT

    def encode(self) -> bytes:
        """Serialize the packet into its wire form.

        Returns:
            The deframed payload bytes, starting with the tag byte.
        """
        if self.kind is PacketKind.ROUTING_ADVERT:
            return encode_advert(self)
        return encode_transport(self)


def encode_transport(packet: Packet) -> bytes:
    """Encode a Data or Parity packet."""
    header = f"{packet.source}{packet.dest}{packet.seq:02d}".encode("ascii")
    return packet.kind.value + header + packet.payload


def decode_transport(kind: PacketKind, raw: bytes) -> Packet:
    """Decode a Data or Parity packet from its wire form."""
    if len(raw) < TRANSPORT_HEADER_SIZE:
        raise MalformedPacket(f"{kind.name} packet too short: {len(raw)} bytes")
    source = _digit(raw, 1)
    dest = _digit(raw, 2)
    seq = _digit(raw, 3) * 10 + _digit(raw, 4)
    return Packet(kind, source, dest, seq, raw[TRANSPORT_HEADER_SIZE:])


def encode_advert(packet: Packet) -> bytes:
    """Encode a RoutingAdvert packet."""
    return packet.kind.value + str(packet.source).encode("ascii") + packet.payload


def decode_advert(raw: bytes) -> Packet:
    """Decode a RoutingAdvert packet from its wire form."""
    if len(raw) < ADVERT_HEADER_SIZE:
        raise MalformedPacket("Routing advertisement too short")
    return Packet.advert(_digit(raw, 1), raw[ADVERT_HEADER_SIZE:])


def decode_packet(raw: bytes) -> Packet:
    """Decode any deframed payload by its leading tag byte.

    Args:
        raw: Deframed payload bytes.

    Returns:
        The decoded Packet.

    Raises:
        MalformedPacket: If the tag is unknown or the body does not parse.
    """
    if not raw:
        raise MalformedPacket("Empty payload")
    try:
        kind = PacketKind.from_tag(raw[:1])
    except ValueError:
        raise MalformedPacket(f"Unknown packet tag {raw[:1]!r}") from None
    if kind is PacketKind.ROUTING_ADVERT:
        return decode_advert(raw)
    return decode_transport(kind, raw)
