import pytest

from netstack_sim.core.channel import MemoryChannel
from netstack_sim.core.datalink import FrameDecoder, encode_frame
from netstack_sim.core.enums import PacketKind
from netstack_sim.core.errors import MalformedPacket, UnknownRoute
from netstack_sim.core.packet import Packet, decode_packet
from netstack_sim.core.router import BROADCAST, NetworkRouter
from netstack_sim.core.routing_table import (
    UNKNOWN,
    RoutingEntry,
    RoutingTable,
    parse_snapshot,
)


def make_router(node_id, neighbors, deliver=None):
    """Create a router plus the far endpoint of each of its channels."""
    local, remote = {}, {}
    for neighbor in neighbors:
        local[neighbor], remote[neighbor] = MemoryChannel.pair(node_id, neighbor)
    return NetworkRouter(node_id, local, deliver=deliver), remote


def frames_at(endpoint):
    return [decode_packet(p) for p in FrameDecoder().feed(endpoint.read_nonblocking())]


def test_initial_table():
    table = RoutingTable(1, [0, 2])
    assert len(table) == 10
    assert list(table) == list(range(10))
    assert table[1] == RoutingEntry(1, (), True)
    assert table[1].cost == 0
    assert table[0] == RoutingEntry(0, (0,), True)
    assert table[2].cost == 1
    for dest in range(3, 10):
        assert table[dest] == UNKNOWN
        assert table[dest].cost is None
        assert table.next_hop(dest) is None


def test_table_rejects_bad_ids():
    with pytest.raises(ValueError):
        RoutingTable(10, [1])
    with pytest.raises(ValueError):
        RoutingTable(1, [1])
    with pytest.raises(ValueError):
        RoutingTable(1, [0])[12]


def test_snapshot_format():
    assert RoutingTable(1, [0, 2]).snapshot() == b"10012???????"


def test_parse_snapshot():
    entries = parse_snapshot(b"10012???????")
    assert entries[0] == RoutingEntry(0, (0,), True)
    assert entries[1] == RoutingEntry(None, (), True)
    assert entries[2] == RoutingEntry(2, (2,), True)
    assert all(entries[d] == UNKNOWN for d in range(3, 10))


def test_parse_snapshot_with_long_path():
    snapshot = b"?" * 5 + b"3125" + b"?" * 4
    assert parse_snapshot(snapshot)[5] == RoutingEntry(1, (1, 2, 5), True)


@pytest.mark.parametrize(
    "snapshot",
    [
        b"",
        b"10012??????",  # one record short
        b"10012????????",  # trailing byte
        b"10013???????",  # path to 2 ends at 3
        b"1001x???????",
        b"2001???????",
    ],
)
def test_parse_malformed_snapshot(snapshot):
    with pytest.raises(MalformedPacket):
        parse_snapshot(snapshot)


def test_merge_learns_route_through_neighbor():
    table = RoutingTable(0, [1])
    changed = table.merge(1, parse_snapshot(RoutingTable(1, [0, 2]).snapshot()))
    assert changed == [2]
    assert table[2] == RoutingEntry(1, (1, 2), True)
    assert table.next_hop(2) == 1
    assert table.next_hops() == {1: 1, 2: 1}


def test_merge_prefers_strictly_cheaper_paths():
    table = RoutingTable(0, [1, 3])
    via_1 = {d: UNKNOWN for d in range(10)}
    via_1[5] = RoutingEntry(2, (2, 4, 5), True)
    assert table.merge(1, via_1) == [5]
    assert table[5].cost == 4

    via_3 = {d: UNKNOWN for d in range(10)}
    via_3[5] = RoutingEntry(6, (6, 8, 5), True)
    assert table.merge(3, via_3) == []
    assert table[5].next_hop == 1

    via_3[5] = RoutingEntry(5, (5,), True)
    assert table.merge(3, via_3) == [5]
    assert table[5] == RoutingEntry(3, (3, 5), True)


def test_merge_follows_current_next_hop_even_when_worse():
    table = RoutingTable(0, [1])
    advert = {d: UNKNOWN for d in range(10)}
    advert[4] = RoutingEntry(4, (4,), True)
    table.merge(1, advert)
    assert table[4].cost == 2

    advert[4] = RoutingEntry(2, (2, 3, 4), True)
    assert table.merge(1, advert) == [4]
    assert table[4] == RoutingEntry(1, (1, 2, 3, 4), True)


def test_merge_withdraws_route_when_next_hop_loses_it():
    table = RoutingTable(0, [1])
    advert = {d: UNKNOWN for d in range(10)}
    advert[4] = RoutingEntry(4, (4,), True)
    table.merge(1, advert)

    advert[4] = UNKNOWN
    assert table.merge(1, advert) == [4]
    assert table[4] == UNKNOWN


def test_merge_rejects_paths_through_self():
    table = RoutingTable(0, [1])
    advert = {d: UNKNOWN for d in range(10)}
    advert[3] = RoutingEntry(0, (0, 3), True)
    assert table.merge(1, advert) == []
    assert table[3] == UNKNOWN


def test_merge_never_replaces_direct_neighbor_route():
    table = RoutingTable(0, [1, 2])
    advert = {d: UNKNOWN for d in range(10)}
    advert[2] = RoutingEntry(2, (2,), True)
    assert table.merge(1, advert) == []
    assert table[2] == RoutingEntry(2, (2,), True)


def test_merge_from_non_neighbor_is_rejected():
    with pytest.raises(ValueError):
        RoutingTable(0, [1]).merge(5, {})


def test_encapsulate_to_neighbor_and_via_table():
    router, _ = make_router(0, [1])
    payload, next_hop = router.encapsulate(Packet.data(0, 1, 3, b"hi"))
    assert (payload, next_hop) == (b"D0103hi", 1)

    router.table.merge(1, parse_snapshot(RoutingTable(1, [0, 2]).snapshot()))
    assert router.encapsulate(Packet.parity(0, 2, 4, b"xx"))[1] == 1


def test_encapsulate_advert_is_broadcast():
    router, _ = make_router(1, [0, 2])
    payload, next_hop = router.encapsulate(Packet.advert(1, router.table.snapshot()))
    assert next_hop == BROADCAST
    assert payload == b"R110012???????"


def test_unknown_route_is_dropped_and_counted():
    router, remote = make_router(0, [1])
    with pytest.raises(UnknownRoute):
        router.encapsulate(Packet.data(0, 7, 0, b"x"))
    assert router.send(Packet.data(0, 7, 0, b"x")) is False
    assert router.undeliverable == 1
    assert remote[1].inbound == bytearray()


def test_broadcast_reaches_every_neighbor_but_excluded():
    router, remote = make_router(1, [0, 2, 3])
    router.advertise(exclude=2)
    assert [p.kind for p in frames_at(remote[0])] == [PacketKind.ROUTING_ADVERT]
    assert frames_at(remote[2]) == []
    assert len(frames_at(remote[3])) == 1


def test_packets_for_this_node_are_delivered():
    delivered = []
    router, _ = make_router(2, [1], deliver=delivered.append)
    router.on_frame_received(b"D0200HELL", 1)
    assert delivered == [Packet.data(0, 2, 0, b"HELL")]
    assert router.packets_delivered == 1


def test_packets_for_other_nodes_are_forwarded():
    router, remote = make_router(1, [0, 2])
    router.on_frame_received(b"D0201O!", 0)
    assert frames_at(remote[2]) == [Packet.data(0, 2, 1, b"O!")]
    assert frames_at(remote[0]) == []
    assert router.frames_forwarded == 1


def test_malformed_frame_is_dropped():
    router, remote = make_router(1, [0])
    router.on_frame_received(b"Qwhatever", 0)
    router.on_frame_received(b"R0garbage", 0)
    assert router.malformed == 2
    assert frames_at(remote[0]) == []


def test_changed_advert_is_flooded_except_to_sender():
    router, remote = make_router(1, [0, 2])
    advert = Packet.advert(0, RoutingTable(0, [1, 5]).snapshot())
    router.on_frame_received(advert.encode(), 0)
    assert router.table[5] == RoutingEntry(0, (0, 5), True)
    assert frames_at(remote[0]) == []
    flooded = frames_at(remote[2])
    assert len(flooded) == 1
    assert parse_snapshot(flooded[0].payload)[5] == RoutingEntry(0, (0, 5), True)

    router.on_frame_received(advert.encode(), 0)
    assert frames_at(remote[2]) == []


def test_tick_advertises_every_five_seconds():
    router, remote = make_router(1, [0])
    for _ in range(4):
        router.tick()
    assert frames_at(remote[0]) == []
    router.tick()
    assert len(frames_at(remote[0])) == 1
    assert router.seconds_since_advert == 0
    for _ in range(5):
        router.tick()
    assert router.adverts_sent == 2


def test_frames_written_are_framed():
    router, remote = make_router(0, [1])
    router.send(Packet.data(0, 1, 0, b"\x02\x03"))
    assert remote[1].read_nonblocking() == encode_frame(b"D0100\x02\x03")
