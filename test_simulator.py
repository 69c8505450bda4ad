import simpy
import pytest

from netstack_sim.config import NodeConfig
from netstack_sim.core.channel import FileChannel, MemoryChannel
from netstack_sim.core.datalink import encode_frame
from netstack_sim.core.enums import PacketKind
from netstack_sim.core.node import Node
from netstack_sim.core.simulator import NetworkSimulator, chain_topology, ring_topology


def hello_simulator(start=8, **kwargs):
    return NetworkSimulator.from_edges(
        chain_topology(3), {0: (2, "HELLO!", start)}, payload_size=4, **kwargs
    )


def test_topology_helpers():
    assert chain_topology(3) == [(0, 1), (1, 2)]
    assert sorted(ring_topology(4)) == [(0, 1), (0, 3), (1, 2), (2, 3)]


def test_chain_routing_converges():
    sim = NetworkSimulator.from_edges(chain_topology(3))
    metrics = sim.run(12)
    assert metrics["routing_converged"]
    assert sim.nodes[0].routing_table.next_hop(2) == 1
    assert sim.nodes[2].routing_table.next_hop(0) == 1
    assert sim.nodes[0].routing_table[2].path == (1, 2)
    for source, hops in sim.expected_next_hops().items():
        assert sim.nodes[source].routing_table.next_hops() == hops


def test_chain_is_not_converged_before_first_advert():
    sim = NetworkSimulator.from_edges(chain_topology(3))
    sim.run(3)
    assert not sim.routing_converged()
    assert not sim.nodes[0].routing_table[2].known


def test_ring_routing_converges_to_minimum_hops():
    sim = NetworkSimulator.from_edges(ring_topology(6))
    metrics = sim.run(25)
    assert metrics["routing_converged"]
    assert sim.nodes[0].routing_table[3].cost == 3
    assert sim.nodes[0].routing_table[2].path == (1, 2)
    assert sim.nodes[0].routing_table[4].path == (5, 4)


def test_hello_relayed_through_node_1():
    sim = hello_simulator()
    forwarded = []

    def on_frame_sent(node_id, target, packet):
        if node_id == 1 and packet.kind is PacketKind.DATA:
            forwarded.append((target, packet.payload))

    sim.register_hook("frame_sent", on_frame_sent)
    metrics = sim.run(15)

    assert forwarded == [(2, b"HELL"), (2, b"O!")]
    assert [(node_id, message) for node_id, message, _ in sim.delivered] == [(2, b"HELLO!")]
    assert sim.nodes[2].received == [b"HELLO!"]
    assert metrics["messages_delivered"] == 1
    assert metrics["delivery_ratio"] == 1
    assert metrics["frames_forwarded"] == 3


def test_dropped_second_chunk_is_rebuilt_from_parity():
    sim = hello_simulator()
    sim.drop_frame(0, 1, lambda p: p.kind is PacketKind.DATA and p.payload == b"O!")
    metrics = sim.run(15)

    assert sim.nodes[2].received == [b"HELLO!"]
    assert metrics["frames_dropped_on_links"] == 1
    assert metrics["chunks_recovered"] == 1
    assert metrics["unrecoverable_losses"] == 0


def test_dropping_both_chunks_reports_loss():
    sim = hello_simulator()
    sim.drop_frame(0, 1, lambda p: p.kind is PacketKind.DATA, count=2)
    losses = []
    sim.register_hook("unrecoverable_loss", lambda node_id, loss: losses.append(loss))
    metrics = sim.run(15)

    assert metrics["unrecoverable_losses"] == 1
    assert losses[0].missing == (0, 1)
    assert sim.nodes[2].received == [b""]


def test_later_drop_filter_replaces_earlier_one():
    sim = hello_simulator()
    sim.drop_frame(0, 1, lambda p: p.kind is PacketKind.DATA, count=2)
    sim.drop_frame(0, 1, lambda p: p.kind is PacketKind.DATA and p.payload == b"O!")
    metrics = sim.run(15)

    assert sim.nodes[2].received == [b"HELLO!"]
    assert metrics["frames_dropped_on_links"] == 1
    assert metrics["unrecoverable_losses"] == 0


def test_send_before_routes_exist_is_undeliverable():
    sim = hello_simulator(start=0)
    metrics = sim.run(10)

    assert metrics["undeliverable"] == 3
    assert sim.dropped == [(0, "No route to destination")] * 3
    assert sim.delivered == []
    assert metrics["delivery_ratio"] == 0


def test_malformed_frame_does_not_stop_the_node():
    sim = hello_simulator()
    sim.links[(0, 1)].write(encode_frame(b"Zjunk"))
    metrics = sim.run(15)

    assert sim.nodes[1].router.malformed == 1
    assert metrics["malformed"] == 1
    assert sim.nodes[2].received == [b"HELLO!"]


def test_sim_end_hook_receives_metrics():
    sim = hello_simulator()
    seen = []
    sim.register_hook("sim_end", seen.append)
    metrics = sim.run(5)
    assert seen == [metrics]


def test_unknown_hook_is_rejected():
    with pytest.raises(ValueError):
        NetworkSimulator().register_hook("nope", print)


def test_topology_is_fixed_once_started():
    sim = hello_simulator()
    sim.run(2)
    with pytest.raises(ValueError):
        sim.add_node(5)
    with pytest.raises(ValueError):
        sim.start(2)


def test_links_require_existing_nodes():
    sim = NetworkSimulator()
    sim.add_node(0)
    with pytest.raises(ValueError):
        sim.add_link(0, 1)
    sim.add_node(1)
    sim.add_link(0, 1)
    with pytest.raises(ValueError):
        sim.add_link(1, 0)


def test_node_channels_must_match_neighbors():
    env = simpy.Environment()
    config = NodeConfig(node_id=0, duration=5, dest=0, neighbors=(1, 2))
    channels = {1: MemoryChannel.pair(0, 1)[0]}
    with pytest.raises(ValueError):
        Node(env, config, channels)


def test_nodes_over_file_channels(tmp_path):
    env = simpy.Environment()
    neighbors = {0: (1,), 1: (0, 2), 2: (1,)}
    channels = {
        node_id: {peer: FileChannel(node_id, peer, str(tmp_path)) for peer in peers}
        for node_id, peers in neighbors.items()
    }
    nodes = {}
    for node_id, peers in neighbors.items():
        dest, message = (2, "over files") if node_id == 0 else (node_id, "")
        config = NodeConfig(
            node_id=node_id,
            duration=15,
            dest=dest,
            message=message,
            start_offset=8,
            neighbors=peers,
            payload_size=3,
        )
        nodes[node_id] = Node(env, config, channels[node_id], retry_delay=0.1)
    env.run()

    for endpoints in channels.values():
        for channel in endpoints.values():
            channel.close()

    assert nodes[2].received == [b"over files"]
    assert (tmp_path / "from1to2.txt").stat().st_size > 0
    assert nodes[1].channel_skips > 0
