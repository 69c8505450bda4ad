"""Network layer: encapsulation, demultiplexing and path-vector routing.

This module defines the NetworkRouter, which turns transport packets into
frames for the right neighbor channel, demultiplexes inbound frames, relays
traffic for other nodes one hop at a time and keeps the routing table up to
date from neighbor advertisements.
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from netstack_sim.core.channel import Channel
from netstack_sim.core.datalink import encode_frame
from netstack_sim.core.enums import PacketKind
from netstack_sim.core.errors import ChannelUnavailable, MalformedPacket, UnknownRoute
from netstack_sim.core.packet import Packet, decode_packet, validate_node_id
from netstack_sim.core.routing_table import RoutingTable, parse_snapshot

logger = logging.getLogger(__name__)

BROADCAST = -1
ADVERT_INTERVAL = 5


class NetworkRouter:
    """Network layer of one node.

    Attributes:
        id: ID of the owning node.
        channels: Neighbor channels keyed by neighbor ID.
        table: Path-vector routing table.
        deliver: Called with Data/Parity packets addressed to this node.
        advert_interval: Ticks between periodic advertisements.
        seconds_since_advert: Ticks elapsed since the last periodic advertisement.
        on_event: Optional hook callback, called as ``on_event(event_type, *args)``.
    """

    def __init__(
        self,
        node_id: int,
        channels: Dict[int, Channel],
        deliver: Optional[Callable[[Packet], None]] = None,
        advert_interval: int = ADVERT_INTERVAL,
        on_event: Optional[Callable[..., Any]] = None,
    ) -> None:
        """Initialize the router.

        Args:
            node_id: ID of the owning node.
            channels: Neighbor channels keyed by neighbor ID.
            deliver: Callback for packets addressed to this node.
            advert_interval: Ticks between periodic advertisements.
            on_event: Hook callback for simulator events.
        """
        if advert_interval < 1:
            raise ValueError("advert_interval must be at least one tick.")
        self.id = validate_node_id(node_id)
        self.channels = dict(channels)
        self.table = RoutingTable(node_id, self.channels)
        self.deliver = deliver
        self.advert_interval = advert_interval
        self.seconds_since_advert = 0
        self.on_event = on_event

        self.frames_sent = 0
        self.frames_forwarded = 0
        self.packets_delivered = 0
        self.malformed = 0
        self.undeliverable = 0
        self.adverts_sent = 0
        self.route_changes = 0
        self.channel_errors = 0

    def _emit(self, event_type: str, *args: Any) -> None:
        if self.on_event is not None:
            self.on_event(event_type, *args)

    def encapsulate(self, packet: Packet) -> Tuple[bytes, int]:
        """Serialize a packet and choose the neighbor it leaves through.

        Args:
            packet: The packet to send.

        Returns:
            The frame payload and the next hop, BROADCAST for advertisements.

        Raises:
            UnknownRoute: If no route to the packet's destination is known.
        """
        payload = packet.encode()
        if packet.kind is PacketKind.ROUTING_ADVERT:
            return payload, BROADCAST
        next_hop = self.table.next_hop(packet.dest)
        if next_hop is None or next_hop not in self.channels:
            raise UnknownRoute(packet.dest)
        return payload, next_hop

    def send(self, packet: Packet, exclude: Optional[int] = None) -> bool:
        """Encapsulate, frame and write a packet.

        Packets without a route are dropped and counted as undeliverable;
        the caller is never blocked.

        Args:
            packet: The packet to send.
            exclude: Neighbor to skip when broadcasting.

        Returns:
            True if the frame was written to at least one channel.
        """
        try:
            payload, next_hop = self.encapsulate(packet)
        except UnknownRoute as exc:
            self.undeliverable += 1
            logger.warning("Node %d dropped %s packet: %s", self.id, packet.kind.name, exc)
            self._emit("packet_dropped", self.id, packet, "No route to destination")
            return False

        frame = encode_frame(payload)
        if next_hop == BROADCAST:
            targets = [n for n in sorted(self.channels) if n != exclude]
        else:
            targets = [next_hop]

        sent = False
        for target in targets:
            try:
                self.channels[target].write(frame)
            except ChannelUnavailable as exc:
                self.channel_errors += 1
                logger.warning("Node %d could not write to %d: %s", self.id, target, exc)
                continue
            sent = True
            self.frames_sent += 1
            self._emit("frame_sent", self.id, target, packet)
        return sent

    def advertise(self, exclude: Optional[int] = None) -> None:
        """Broadcast the full routing table to the neighbors.

        Args:
            exclude: Neighbor that should not receive this advertisement.
        """
        self.adverts_sent += 1
        self.send(Packet.advert(self.id, self.table.snapshot()), exclude=exclude)

    def on_frame_received(self, payload: bytes, from_neighbor: int) -> None:
        """Demultiplex a deframed payload received from a neighbor.

        Args:
            payload: Deframed payload bytes.
            from_neighbor: ID of the neighbor the frame arrived from.
        """
        try:
            packet = decode_packet(payload)
        except MalformedPacket as exc:
            self.malformed += 1
            logger.warning("Node %d dropped frame from %d: %s", self.id, from_neighbor, exc)
            self._emit("packet_dropped", self.id, None, "Malformed packet")
            return

        if packet.kind is PacketKind.ROUTING_ADVERT:
            self.on_advert(packet, from_neighbor)
        elif packet.dest == self.id:
            self.packets_delivered += 1
            if self.deliver is not None:
                self.deliver(packet)
        else:
            self.frames_forwarded += 1
            logger.debug(
                "Node %d forwarding %s %d->%d seq %d",
                self.id, packet.kind.name, packet.source, packet.dest, packet.seq,
            )
            self.send(packet)

    def on_advert(self, packet: Packet, from_neighbor: int) -> None:
        """Merge a neighbor's advertisement and flood the table if it changed.

        Args:
            packet: The decoded RoutingAdvert packet.
            from_neighbor: ID of the neighbor the advertisement arrived from.
        """
        if from_neighbor not in self.channels or packet.source != from_neighbor:
            self.malformed += 1
            logger.warning(
                "Node %d ignored advert from %d received via %d",
                self.id, packet.source, from_neighbor,
            )
            return
        try:
            advertised = parse_snapshot(packet.payload)
        except MalformedPacket as exc:
            self.malformed += 1
            logger.warning("Node %d dropped advert from %d: %s", self.id, from_neighbor, exc)
            return

        changed = self.table.merge(from_neighbor, advertised)
        if not changed:
            return
        self.route_changes += len(changed)
        for dest in changed:
            entry = self.table[dest]
            logger.debug(
                "Node %d route to %d: %s", self.id, dest,
                "->".join(map(str, entry.path)) if entry.known else "unknown",
            )
        self._emit("routes_changed", self.id, changed)
        self.advertise(exclude=from_neighbor)

    def tick(self) -> None:
        """Advance one second; advertise the table every advert_interval ticks."""
        self.seconds_since_advert += 1
        if self.seconds_since_advert >= self.advert_interval:
            self.advertise()
            self.seconds_since_advert = 0

    def __repr__(self) -> str:
        return f"NetworkRouter({self.id})"
