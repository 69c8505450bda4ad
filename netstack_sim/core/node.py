"""Node class for the simulated packet network.

This module defines the Node class, which owns one node's protocol stack and
drives it from a SimPy process ticking once per second.
"""

import logging
import simpy
from typing import Any, Callable, Dict, Generator, List, Optional

from netstack_sim.config import NodeConfig
from netstack_sim.core.channel import Channel
from netstack_sim.core.datalink import FrameDecoder
from netstack_sim.core.errors import ChannelUnavailable
from netstack_sim.core.router import NetworkRouter
from netstack_sim.core.routing_table import RoutingTable
from netstack_sim.core.transport import TransportLayer

logger = logging.getLogger(__name__)

READ_RETRIES = 2
TICK = 1.0


class Node:
    """One network node: datalink, network and transport layers.

    All routing and sequence state is owned here and only mutated through
    the router and transport of this node, from its single SimPy process.

    Attributes:
        env: SimPy environment.
        id: ID of the node.
        config: Validated node configuration.
        channels: Neighbor channels keyed by neighbor ID.
        decoders: One streaming deframer per neighbor.
        router: Network layer.
        transport: Transport layer.
        received: Messages delivered to this node, in delivery order.
        ticks: Number of completed ticks.
        channel_skips: Neighbor reads given up on after retries.
        process: The SimPy process running the node.
    """

    def __init__(
        self,
        env: simpy.Environment,
        config: NodeConfig,
        channels: Dict[int, Channel],
        on_event: Optional[Callable[..., Any]] = None,
        retry_delay: float = 0.0,
    ) -> None:
        """Initialize a node and start its process.

        Args:
            env: SimPy environment.
            config: Validated node configuration.
            channels: One channel per configured neighbor.
            on_event: Hook callback, called as ``on_event(event_type, *args)``.
            retry_delay: Seconds to wait between empty reads of one channel.
        """
        if set(channels) != set(config.neighbors):
            raise ValueError(
                f"Channels {sorted(channels)} do not match neighbors {sorted(config.neighbors)}"
            )
        self.env = env
        self.id = config.node_id
        self.config = config
        self.channels = dict(channels)
        self.decoders = {neighbor: FrameDecoder() for neighbor in self.channels}
        self.on_event = on_event
        self.retry_delay = retry_delay

        self.transport = TransportLayer(
            self.id,
            self._send_packet,
            payload_size=config.payload_size,
            on_event=on_event,
        )
        self.router = NetworkRouter(
            self.id,
            self.channels,
            deliver=self.transport.on_data_or_parity,
            advert_interval=config.advert_interval,
            on_event=on_event,
        )
        self.received: List[bytes] = []
        self.ticks = 0
        self.channel_skips = 0
        self.process = self.env.process(self.run())

    @property
    def routing_table(self) -> RoutingTable:
        return self.router.table

    def _send_packet(self, packet) -> None:
        self.router.send(packet)

    def _emit(self, event_type: str, *args: Any) -> None:
        if self.on_event is not None:
            self.on_event(event_type, *args)

    def read_with_retry(self, neighbor: int) -> Generator[Any, Any, bytes]:
        """Read one neighbor channel, retrying a bounded number of times.

        Args:
            neighbor: ID of the neighbor to read from.

        Returns:
            The bytes read.

        Raises:
            ChannelUnavailable: If every attempt came back empty or the
                channel is gone.
        """
        channel = self.channels[neighbor]
        for attempt in range(READ_RETRIES + 1):
            data = channel.read_nonblocking()
            if data:
                return data
            if attempt < READ_RETRIES and self.retry_delay > 0:
                yield self.env.timeout(self.retry_delay)
        raise ChannelUnavailable(neighbor, f"nothing to read after {READ_RETRIES} retries")

    def receive_from_channels(self) -> Generator[Any, Any, None]:
        """Read every neighbor and hand each complete frame to the router."""
        for neighbor in sorted(self.channels):
            try:
                data = yield from self.read_with_retry(neighbor)
            except ChannelUnavailable as exc:
                self.channel_skips += 1
                logger.debug("Node %d skipping neighbor %d this tick: %s", self.id, neighbor, exc)
                continue
            for payload in self.decoders[neighbor].feed(data):
                self.router.on_frame_received(payload, neighbor)

    def send_message(self) -> None:
        """Hand the configured message to the transport layer."""
        self.transport.send(self.config.message.encode("utf-8"), self.id, self.config.dest)

    def deliver_ready(self) -> None:
        """Move completed messages from the transport layer to ``received``."""
        for message in self.transport.drain_ready():
            self.received.append(message)
            logger.info(
                "Node %d received message: %s", self.id, message.decode("utf-8", errors="replace")
            )
            self._emit("message_delivered", self, message, self.env.now)

    def step(self) -> Generator[Any, Any, None]:
        """Run one tick of the node."""
        yield from self.receive_from_channels()
        self.router.tick()
        if self.config.sends_message and self.ticks == self.config.start_offset:
            self.send_message()
        self.transport.tick()
        self.deliver_ready()
        self.ticks += 1

    def run(self) -> Generator[Any, Any, None]:
        """SimPy process: tick once per second for the configured duration."""
        for _ in range(self.config.duration):
            tick_start = self.env.now
            yield from self.step()
            yield self.env.timeout(max(0.0, tick_start + TICK - self.env.now))
        self.shutdown()

    def shutdown(self) -> None:
        """Complete any partially received messages and report what arrived."""
        self.transport.flush()
        self.deliver_ready()
        logger.info(
            "Node %d done after %d ticks: %d messages received, %d undeliverable, %d malformed",
            self.id,
            self.ticks,
            len(self.received),
            self.router.undeliverable,
            self.router.malformed,
        )

    def __repr__(self) -> str:
        return f"Node({self.id})"
