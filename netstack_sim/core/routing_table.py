"""Path-vector routing table.

This module defines RoutingEntry and RoutingTable. The table holds exactly
one entry for every node id 0-9; destinations without a route carry an
explicit unknown state rather than being absent.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from netstack_sim.core.errors import MalformedPacket
from netstack_sim.core.packet import NODE_IDS, validate_node_id

# Wire marker for a destination with no known route.
UNKNOWN_MARKER = b"?"


@dataclass(frozen=True)
class RoutingEntry:
    """Route to one destination.

    Attributes:
        next_hop: Neighbor to forward to, None while unknown.
        path: Hops after this node, ending at the destination.
        known: Whether a route exists.
    """

    next_hop: Optional[int] = None
    path: Tuple[int, ...] = ()
    known: bool = False

    @property
    def cost(self) -> Optional[int]:
        """Hop count of the path, None while unknown."""
        return len(self.path) if self.known else None


UNKNOWN = RoutingEntry()


class RoutingTable:
    """Mapping from every node id to its RoutingEntry.

    Attributes:
        owner: ID of the node that owns the table.
        neighbors: Direct neighbors of the owner.
    """

    def __init__(self, owner: int, neighbors: Iterable[int]) -> None:
        """Initialize the table from the static adjacency list.

        Args:
            owner: ID of the node that owns the table.
            neighbors: IDs of the direct neighbors.
        """
        self.owner = validate_node_id(owner, "owner")
        self.neighbors = frozenset(validate_node_id(n, "neighbor") for n in neighbors)
        if owner in self.neighbors:
            raise ValueError(f"Node {owner} cannot be its own neighbor")

        self._entries: Dict[int, RoutingEntry] = {}
        for dest in NODE_IDS:
            if dest == owner:
                self._entries[dest] = RoutingEntry(owner, (), True)
            elif dest in self.neighbors:
                self._entries[dest] = RoutingEntry(dest, (dest,), True)
            else:
                self._entries[dest] = UNKNOWN

    def __getitem__(self, dest: int) -> RoutingEntry:
        return self._entries[validate_node_id(dest, "destination")]

    def __iter__(self) -> Iterator[int]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def items(self):
        return self._entries.items()

    def next_hop(self, dest: int) -> Optional[int]:
        """Next hop toward a destination, None when no route is known."""
        if dest in self.neighbors:
            return dest
        entry = self[dest]
        return entry.next_hop if entry.known else None

    def next_hops(self) -> Dict[int, int]:
        """Next hops for every other known destination."""
        return {
            dest: entry.next_hop
            for dest, entry in self._entries.items()
            if entry.known and dest != self.owner
        }

    def merge(self, neighbor: int, advertised: Dict[int, RoutingEntry]) -> List[int]:
        """Merge a neighbor's advertised table into this one.

        For each destination d, the candidate route is ``(neighbor,) + path``
        with cost one more than the advertised hop count. It is adopted when d
        is unknown here, when it is strictly cheaper, or when the current next
        hop for d already is ``neighbor``. Candidates passing through this
        node are loops and are never adopted; when they come from the current
        next hop, the route is withdrawn instead.

        Args:
            neighbor: ID of the advertising neighbor.
            advertised: The neighbor's table as decoded from the snapshot.

        Returns:
            The destinations whose entry changed.
        """
        if neighbor not in self.neighbors:
            raise ValueError(f"Node {neighbor} is not a neighbor of {self.owner}")

        changed = []
        for dest, remote in advertised.items():
            if dest == self.owner or dest in self.neighbors:
                continue
            current = self._entries[dest]
            via_neighbor = current.known and current.next_hop == neighbor

            if not remote.known or self.owner in remote.path:
                if via_neighbor:
                    self._entries[dest] = UNKNOWN
                    changed.append(dest)
                continue

            path = (neighbor,) + tuple(remote.path)
            if not remote.path or len(set(path)) != len(path):
                continue
            candidate = RoutingEntry(neighbor, path, True)
            if (
                not current.known
                or candidate.cost < current.cost
                or via_neighbor
            ) and candidate != current:
                self._entries[dest] = candidate
                changed.append(dest)
        return changed

    def snapshot(self) -> bytes:
        """Serialize the table for a routing advertisement.

        Each destination in id order becomes one record: the hop count digit
        followed by that many path digits, or UNKNOWN_MARKER.
        """
        records = []
        for dest in NODE_IDS:
            entry = self._entries[dest]
            if entry.known:
                records.append(f"{len(entry.path)}{''.join(map(str, entry.path))}")
            else:
                records.append(UNKNOWN_MARKER.decode("ascii"))
        return "".join(records).encode("ascii")

    def __repr__(self) -> str:
        routes = ", ".join(
            f"{dest}->{'?' if not e.known else e.next_hop}" for dest, e in self._entries.items()
        )
        return f"RoutingTable({self.owner}: {routes})"


def parse_snapshot(snapshot: bytes) -> Dict[int, RoutingEntry]:
    """Decode a table snapshot into entries keyed by destination.

    The next hop of each decoded entry is the first hop of its path, as seen
    from the advertising node.

    Raises:
        MalformedPacket: If the snapshot does not hold exactly one record per
            node id.
    """
    entries: Dict[int, RoutingEntry] = {}
    pos = 0
    for dest in NODE_IDS:
        if pos >= len(snapshot):
            raise MalformedPacket(f"Snapshot ends before destination {dest}")
        head = snapshot[pos:pos + 1]
        pos += 1
        if head == UNKNOWN_MARKER:
            entries[dest] = UNKNOWN
            continue
        if not head.isdigit():
            raise MalformedPacket(f"Bad hop count {head!r} for destination {dest}")
        hops = int(head)
        digits = snapshot[pos:pos + hops]
        if len(digits) != hops or not digits.isdigit():
            raise MalformedPacket(f"Bad path for destination {dest}")
        pos += hops
        path = tuple(int(chr(d)) for d in digits)
        if path and path[-1] != dest:
            raise MalformedPacket(f"Path for destination {dest} ends at {path[-1]}")
        entries[dest] = RoutingEntry(path[0] if path else None, path, True)
    if pos != len(snapshot):
        raise MalformedPacket(f"{len(snapshot) - pos} trailing bytes in snapshot")
    return entries
