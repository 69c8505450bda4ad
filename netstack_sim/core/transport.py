"""Transport layer: segmentation, XOR parity and reassembly.

This module defines the SequenceCounter shared by everything a node sends
and the TransportLayer, which splits outbound messages into fixed-size Data
packets with a Parity packet after every pair, and rebuilds inbound messages,
recovering any single chunk lost from a pair.
"""

from collections import deque
import logging
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple

import numpy as np

from netstack_sim.core.enums import PacketKind
from netstack_sim.core.errors import UnrecoverableLoss
from netstack_sim.core.packet import SEQ_MODULUS, Packet

logger = logging.getLogger(__name__)

PAYLOAD_SIZE = 5

# Sequence offsets inside one pair group: first chunk, second chunk, parity.
PAIR_SPAN = 3
PARITY_ROLE = 2


class SequenceCounter:
    """Node-wide sequence number in [0, 99], wrapping 99 -> 0."""

    def __init__(self, value: int = 0) -> None:
        if not 0 <= value < SEQ_MODULUS:
            raise ValueError(f"Sequence value must be in [0, {SEQ_MODULUS - 1}]")
        self.value = value

    def increment(self) -> int:
        """Advance the counter and return the new value."""
        self.value = (self.value + 1) % SEQ_MODULUS
        return self.value

    def __repr__(self) -> str:
        return f"SequenceCounter({self.value:02d})"


def segment(message: bytes, size: int = PAYLOAD_SIZE) -> Iterator[bytes]:
    """Split a message into chunks of ``size`` bytes; the last may be shorter."""
    if size < 1:
        raise ValueError("Chunk size must be at least 1.")
    for start in range(0, len(message), size):
        yield message[start:start + size]


def xor_chunks(a: bytes, b: bytes) -> bytes:
    """XOR two chunks byte-wise, zero-padding the shorter one."""
    size = max(len(a), len(b))
    left = np.zeros(size, dtype=np.uint8)
    right = np.zeros(size, dtype=np.uint8)
    left[:len(a)] = np.frombuffer(a, dtype=np.uint8)
    right[:len(b)] = np.frombuffer(b, dtype=np.uint8)
    return np.bitwise_xor(left, right).tobytes()


class Conversation:
    """Reassembly buffer for the current message of one (source, dest) pair.

    Packets are placed by their sequence distance from the first packet that
    arrived, so losses leave visible holes. The three packets of a pair use
    consecutive sequence numbers; a parity packet therefore pins which offset
    starts a pair even when the first packets of the message were lost.

    Attributes:
        source: Source node ID.
        dest: Destination node ID.
        chunks: Chunk payloads keyed by chunk index.
        parities: Parity payloads keyed by pair index.
        recovered: Chunk indexes rebuilt from parity.
        touched: Whether a packet arrived since the last tick.
    """

    def __init__(self, source: int, dest: int) -> None:
        self.source = source
        self.dest = dest
        self.chunks: Dict[int, bytes] = {}
        self.parities: Dict[int, bytes] = {}
        self.recovered: List[int] = []
        self.touched = True
        self._raw: List[Tuple[int, PacketKind, bytes]] = []
        self._last_seq: Optional[int] = None
        self._shift = 0
        self._aligned = False

    def add(self, packet: Packet) -> Optional[int]:
        """Buffer one Data or Parity packet.

        Returns:
            The index of a chunk rebuilt from parity by this packet, if any.
        """
        self.touched = True
        if self._last_seq is None:
            offset = 0
            if packet.kind is PacketKind.PARITY:
                self._shift = PARITY_ROLE
        else:
            offset = self._raw[-1][0] + (packet.seq - self._last_seq) % SEQ_MODULUS

        position = offset + self._shift
        if packet.kind is PacketKind.PARITY:
            if position % PAIR_SPAN != PARITY_ROLE:
                if self._aligned:
                    logger.warning(
                        "Parity seq %d of %d->%d does not close a pair; ignored",
                        packet.seq, self.source, self.dest,
                    )
                    return None
                self._shift += (PARITY_ROLE - position % PAIR_SPAN) % PAIR_SPAN
            self._aligned = True
        elif position % PAIR_SPAN == PARITY_ROLE and not self._aligned:
            # A data packet cannot sit where parity goes: the first packet
            # that arrived was the second chunk of its pair.
            self._shift += 1
        self._last_seq = packet.seq
        self._raw.append((offset, packet.kind, packet.payload))
        self._rebuild()

        if packet.kind is PacketKind.PARITY:
            return self._recover(self._pair_of(offset + self._shift))
        return None

    @staticmethod
    def _pair_of(position: int) -> int:
        return position // PAIR_SPAN

    def _rebuild(self) -> None:
        chunks: Dict[int, bytes] = {}
        parities: Dict[int, bytes] = {}
        for offset, kind, payload in self._raw:
            pair, role = divmod(offset + self._shift, PAIR_SPAN)
            if kind is PacketKind.PARITY:
                parities[pair] = payload
            elif role != PARITY_ROLE:
                chunks[2 * pair + role] = payload
        for index in self.recovered:
            chunks.setdefault(index, self.chunks[index])
        self.chunks = chunks
        self.parities = parities

    def _recover(self, pair: int) -> Optional[int]:
        first, second = 2 * pair, 2 * pair + 1
        parity = self.parities.get(pair)
        if parity is None:
            return None
        have_first, have_second = first in self.chunks, second in self.chunks
        if have_first == have_second:
            return None
        if have_first:
            missing = second
            rebuilt = xor_chunks(parity, self.chunks[first])
        else:
            missing = first
            rebuilt = xor_chunks(parity, self.chunks[second])
        self.chunks[missing] = rebuilt
        self.recovered.append(missing)
        return missing

    def _highest(self) -> int:
        highest = max(self.chunks, default=-1)
        if self.parities:
            highest = max(highest, 2 * max(self.parities) + 1)
        return highest

    def missing(self) -> List[int]:
        """Chunk indexes known to be lost and not recoverable."""
        return [i for i in range(self._highest() + 1) if i not in self.chunks]

    def assemble(self) -> bytes:
        """Join the surviving chunks in order.

        A second chunk rebuilt from parity keeps the zero padding of the XOR.
        The padding is only stripped when that chunk ends the message; any
        earlier second chunk is as long as its first chunk and has none.
        """
        indexes = sorted(self.chunks)
        parts = [self.chunks[i] for i in indexes]
        if parts:
            last = indexes[-1]
            if last % 2 == 1 and last in self.recovered and last == self._highest():
                parts[-1] = parts[-1].rstrip(b"\x00")
        return b"".join(parts)


class TransportLayer:
    """Transport layer of one node.

    Attributes:
        id: ID of the owning node.
        send_packet: Hands a packet to the network layer.
        payload_size: Chunk size in bytes.
        sequence: The node-wide SequenceCounter.
        conversations: Open reassembly buffers keyed by (source, dest).
        losses: UnrecoverableLoss reports, in the order they were found.
        on_event: Optional hook callback, called as ``on_event(event_type, *args)``.
    """

    def __init__(
        self,
        node_id: int,
        send_packet: Callable[[Packet], Any],
        payload_size: int = PAYLOAD_SIZE,
        on_event: Optional[Callable[..., Any]] = None,
    ) -> None:
        if payload_size < 1:
            raise ValueError("payload_size must be at least 1.")
        self.id = node_id
        self.send_packet = send_packet
        self.payload_size = payload_size
        self.sequence = SequenceCounter()
        self.conversations: Dict[Tuple[int, int], Conversation] = {}
        self.losses: List[UnrecoverableLoss] = []
        self.on_event = on_event
        self._ready: Deque[bytes] = deque()

        self.packets_sent = 0
        self.parity_sent = 0
        self.messages_sent = 0
        self.chunks_recovered = 0
        self.messages_completed = 0

    def _emit(self, event_type: str, *args: Any) -> None:
        if self.on_event is not None:
            self.on_event(event_type, *args)

    def _transmit(self, packet: Packet) -> None:
        self.send_packet(packet)
        self.packets_sent += 1
        self.sequence.increment()

    def send(self, message: bytes, source: int, dest: int) -> None:
        """Segment a message and send it with one parity packet per chunk pair.

        Args:
            message: Message bytes.
            source: Source node ID.
            dest: Destination node ID.
        """
        pending: Optional[bytes] = None
        count = 0
        for chunk in segment(message, self.payload_size):
            self._transmit(Packet.data(source, dest, self.sequence.value, chunk))
            count += 1
            if pending is None:
                pending = chunk
                continue
            parity = xor_chunks(pending, chunk)
            self._transmit(Packet.parity(source, dest, self.sequence.value, parity))
            self.parity_sent += 1
            pending = None
        self.sequence.increment()
        self.messages_sent += 1
        logger.info(
            "Node %d sent %d bytes to %d in %d chunks", self.id, len(message), dest, count
        )

    def on_data_or_parity(self, packet: Packet) -> None:
        """Buffer an inbound Data or Parity packet addressed to this node.

        Args:
            packet: The received packet.
        """
        if not packet.is_transport:
            raise ValueError(f"Transport cannot handle {packet.kind.name} packets.")
        key = (packet.source, packet.dest)
        conversation = self.conversations.get(key)
        if conversation is None:
            conversation = self.conversations[key] = Conversation(*key)
        index = conversation.add(packet)
        if index is not None:
            self.chunks_recovered += 1
            logger.info(
                "Node %d recovered chunk %d of %d->%d from parity",
                self.id, index, packet.source, packet.dest,
            )
            self._emit("chunk_recovered", self.id, packet.source, index)

    def _complete(self, key: Tuple[int, int]) -> None:
        conversation = self.conversations.pop(key)
        missing = conversation.missing()
        if missing:
            loss = UnrecoverableLoss(conversation.source, conversation.dest, missing)
            self.losses.append(loss)
            logger.warning("Node %d: %s", self.id, loss)
            self._emit("unrecoverable_loss", self.id, loss)
        self.messages_completed += 1
        self._ready.append(conversation.assemble())

    def tick(self) -> None:
        """Complete every conversation that received nothing since the last tick."""
        for key, conversation in list(self.conversations.items()):
            if conversation.touched:
                conversation.touched = False
            else:
                self._complete(key)

    def flush(self) -> None:
        """Complete every open conversation."""
        for key in list(self.conversations):
            self._complete(key)

    def drain_ready(self) -> Iterator[bytes]:
        """Yield completed messages, oldest first."""
        while self._ready:
            yield self._ready.popleft()
