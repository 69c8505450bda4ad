"""Network simulator class for the simulated packet network.

This module defines the NetworkSimulator class, which runs several nodes in
one SimPy environment, wired together by in-process channels.
"""

import simpy
import networkx as nx
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from netstack_sim.config import NodeConfig
from netstack_sim.core.channel import MemoryChannel
from netstack_sim.core.datalink import decode_frame
from netstack_sim.core.errors import NetstackError
from netstack_sim.core.node import TICK, Node
from netstack_sim.core.packet import Packet, decode_packet, validate_node_id
from netstack_sim.core.router import ADVERT_INTERVAL
from netstack_sim.core.transport import PAYLOAD_SIZE


def chain_topology(num_nodes: int) -> List[Tuple[int, int]]:
    """Edges of a chain 0 - 1 - ... - (num_nodes - 1)."""
    return list(nx.path_graph(num_nodes).edges())


def ring_topology(num_nodes: int) -> List[Tuple[int, int]]:
    """Edges of a ring over nodes 0 .. num_nodes - 1."""
    return list(nx.cycle_graph(num_nodes).edges())


class NetworkSimulator:
    """In-process network of nodes.

    Attributes:
        env: SimPy environment.
        graph: NetworkX graph of the topology.
        nodes: Node objects keyed by node ID, created by start().
        links: Channel endpoints keyed by (owner, peer).
        messages: Configured messages keyed by source: (dest, text, start).
        delivered: (node ID, message, time) for every delivered message.
        dropped: (node ID, reason) for every dropped packet.
        metrics: Metrics from the last calculate_metrics() call.
    """

    def __init__(
        self,
        env: Optional[simpy.Environment] = None,
        payload_size: int = PAYLOAD_SIZE,
        advert_interval: int = ADVERT_INTERVAL,
    ):
        """Initialize the network simulator.

        Args:
            env: SimPy environment; a new one is created if omitted.
            payload_size: Transport chunk size for every node.
            advert_interval: Ticks between routing advertisements.
        """
        self.env = env if env is not None else simpy.Environment()
        self.payload_size = payload_size
        self.advert_interval = advert_interval
        self.graph = nx.Graph()
        self.nodes: Dict[int, Node] = {}
        self.links: Dict[Tuple[int, int], MemoryChannel] = {}
        self.messages: Dict[int, Tuple[int, str, int]] = {}
        self.delivered: List[Tuple[int, bytes, float]] = []
        self.dropped: List[Tuple[int, str]] = []
        self.metrics: Dict[str, Any] = {}

        self.hooks: Dict[str, List[Callable[..., Any]]] = {
            "frame_sent": [],  # frame written to a neighbor channel
            "packet_dropped": [],  # packet dropped by a router
            "routes_changed": [],  # routing table entries changed
            "chunk_recovered": [],  # chunk rebuilt from parity
            "unrecoverable_loss": [],  # chunks lost for good
            "message_delivered": [],  # message reassembled at its destination
            "sim_end": [],  # the simulation ends
        }
        self.register_hook("message_delivered", self._record_delivery)
        self.register_hook("packet_dropped", self._record_drop)

    @classmethod
    def from_edges(
        cls,
        edges: Iterable[Tuple[int, int]],
        messages: Optional[Dict[int, Tuple[int, str, int]]] = None,
        **kwargs: Any,
    ) -> "NetworkSimulator":
        """Create a simulator from an edge list and per-source messages.

        Args:
            edges: Undirected edges between node IDs.
            messages: Source ID -> (dest, text, start tick).
            **kwargs: Passed to the constructor.

        Returns:
            The configured, not yet started, simulator.
        """
        sim = cls(**kwargs)
        for a, b in edges:
            for node_id in (a, b):
                if node_id not in sim.graph:
                    sim.add_node(node_id)
            sim.add_link(a, b)
        for source, (dest, text, start) in (messages or {}).items():
            sim.add_message(source, dest, text, start)
        return sim

    def add_node(self, node_id: int) -> None:
        """Add a node to the topology.

        Args:
            node_id: Unique identifier for the node.
        """
        validate_node_id(node_id)
        if self.nodes:
            raise ValueError("Cannot change the topology after the simulation started")
        self.graph.add_node(node_id)

    def add_link(self, source: int, destination: int) -> Tuple[MemoryChannel, MemoryChannel]:
        """Add a BIDIRECTIONAL link between nodes.

        Args:
            source: Source node ID.
            destination: Destination node ID.

        Returns:
            The channel endpoints owned by source and by destination.
        """
        if source not in self.graph or destination not in self.graph:
            raise ValueError(f"Nodes {source} and/or {destination} do not exist")
        if self.graph.has_edge(source, destination):
            raise ValueError(f"Link {source}-{destination} already exists")
        if self.nodes:
            raise ValueError("Cannot change the topology after the simulation started")

        end_a, end_b = MemoryChannel.pair(source, destination)
        self.links[(source, destination)] = end_a
        self.links[(destination, source)] = end_b
        self.graph.add_edge(source, destination)
        return end_a, end_b

    def add_message(self, source: int, dest: int, text: str, start_offset: int) -> None:
        """Configure the message a node sends.

        Args:
            source: Sending node ID.
            dest: Destination node ID.
            text: Message text.
            start_offset: Tick at which it is sent.
        """
        if source not in self.graph:
            raise ValueError(f"Node {source} does not exist")
        self.messages[source] = (dest, text, start_offset)

    def drop_frame(
        self,
        source: int,
        target: int,
        predicate: Callable[[Packet], bool],
        count: int = 1,
    ) -> None:
        """Drop frames sent from source to target whose packet matches.

        Each link direction holds a single filter, so a later call for the
        same (source, target) replaces the earlier one.

        Args:
            source: Node writing the frames.
            target: Node the frames are written to.
            predicate: Predicate on the decoded packet.
            count: How many matching frames to drop.
        """
        remaining = [count]

        def drop_filter(frame: bytes) -> bool:
            if remaining[0] <= 0:
                return False
            try:
                packet = decode_packet(decode_frame(frame))
            except NetstackError:
                return False
            if predicate(packet):
                remaining[0] -= 1
                return True
            return False

        self.links[(source, target)].drop_filter = drop_filter

    def start(self, duration: int) -> None:
        """Create one Node per topology node, all running for duration ticks.

        Args:
            duration: Number of ticks each node runs.
        """
        if self.nodes:
            raise ValueError("Simulation already started")
        for node_id in sorted(self.graph.nodes):
            dest, text, start = self.messages.get(node_id, (node_id, "", 0))
            config = NodeConfig(
                node_id=node_id,
                duration=duration,
                dest=dest,
                message=text,
                start_offset=start,
                neighbors=tuple(sorted(self.graph.neighbors(node_id))),
                payload_size=self.payload_size,
                advert_interval=self.advert_interval,
            )
            channels = {peer: self.links[(node_id, peer)] for peer in config.neighbors}
            self.nodes[node_id] = Node(self.env, config, channels, on_event=self.call_hooks)

    def expected_next_hops(self) -> Dict[int, Dict[int, int]]:
        """Minimum-hop next hops for every reachable (source, destination) pair."""
        next_hops: Dict[int, Dict[int, int]] = {}
        for source, paths in nx.all_pairs_shortest_path(self.graph):
            next_hops[source] = {
                destination: path[1]
                for destination, path in paths.items()
                if source != destination
            }
        return next_hops

    def routing_converged(self) -> bool:
        """Whether every node holds a minimum-hop route to every reachable node."""
        for source, lengths in nx.all_pairs_shortest_path_length(self.graph):
            table = self.nodes[source].routing_table
            for destination, hops in lengths.items():
                if destination == source:
                    continue
                entry = table[destination]
                if not entry.known or entry.cost != hops:
                    return False
                if not nx.is_path(self.graph, [source, *entry.path]):
                    return False
        return True

    def _record_delivery(self, node: Node, message: bytes, sim_time: float) -> None:
        self.delivered.append((node.id, message, sim_time))

    def _record_drop(self, node_id: int, packet: Optional[Packet], reason: str) -> None:
        self.dropped.append((node_id, reason))

    def calculate_metrics(self) -> Dict[str, Any]:
        """Calculate metrics over all nodes and links.

        Returns:
            Dictionary of calculated metrics.
        """
        routers = [node.router for node in self.nodes.values()]
        transports = [node.transport for node in self.nodes.values()]

        sent = len([s for s, m in self.messages.items() if m[0] != s])
        bytes_per_link = {key: link.bytes_sent for key, link in sorted(self.links.items())}

        self.metrics["messages_sent"] = sum(t.messages_sent for t in transports)
        self.metrics["messages_delivered"] = len(self.delivered)
        self.metrics["delivery_ratio"] = len(self.delivered) / sent if sent else 0
        self.metrics["frames_sent"] = sum(r.frames_sent for r in routers)
        self.metrics["frames_forwarded"] = sum(r.frames_forwarded for r in routers)
        self.metrics["adverts_sent"] = sum(r.adverts_sent for r in routers)
        self.metrics["undeliverable"] = sum(r.undeliverable for r in routers)
        self.metrics["malformed"] = sum(r.malformed for r in routers)
        self.metrics["chunks_recovered"] = sum(t.chunks_recovered for t in transports)
        self.metrics["unrecoverable_losses"] = sum(len(t.losses) for t in transports)
        self.metrics["frames_dropped_on_links"] = sum(
            link.writes_dropped for link in self.links.values()
        )
        self.metrics["bytes_per_link"] = bytes_per_link
        self.metrics["routing_converged"] = self.routing_converged() if self.nodes else False
        return self.metrics

    def register_hook(self, event_type: str, callback: Callable[..., Any]) -> None:
        """Register a callback function for a specific event type.

        Args:
            event_type: The type of event to register for.
            callback: The function to call when the event occurs.
        """
        if event_type not in self.hooks:
            raise ValueError(f"Unknown hook type: {event_type}")
        self.hooks[event_type].append(callback)

    def call_hooks(self, event_type: str, *args: Any, **kwargs: Any) -> None:
        """Call all registered callbacks for the given event type.

        Args:
            event_type: The type of event that occurred.
            *args, **kwargs: Arguments to pass to the callback functions.
        """
        if event_type in self.hooks:
            for callback in self.hooks[event_type]:
                callback(*args, **kwargs)

    def run(self, duration: int, updates: bool = False) -> Dict[str, Any]:
        """Run the simulation for a specified number of ticks.

        Args:
            duration: Simulation duration in ticks (seconds).
            updates: Whether to print progress.

        Returns:
            Dictionary of calculated metrics.
        """
        if duration < 1:
            raise ValueError("duration must be at least one tick")
        self.start(duration)

        if updates:
            count = 10
            interval = duration / count

            def update():
                for counter in range(1, count + 1):
                    yield self.env.timeout(interval)
                    progress = counter / count * 100
                    print(f"Progress: {progress:.2f}%", end="\r")

            self.env.process(update())

        self.env.run(until=self.env.now + duration * TICK + TICK)

        self.calculate_metrics()

        self.call_hooks("sim_end", self.metrics)

        return self.metrics
