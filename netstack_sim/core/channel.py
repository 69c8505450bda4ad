"""Channel endpoints between neighbor nodes.

This module defines the Channel interface the node reads from and writes
to, an in-process MemoryChannel used by the NetworkSimulator, and the
FileChannel backing used when every node runs as its own process.
"""

from abc import ABC, abstractmethod
import logging
import os
from typing import Callable, Optional, Tuple

from netstack_sim.core.errors import ChannelUnavailable
from netstack_sim.core.packet import validate_node_id

logger = logging.getLogger(__name__)

READ_SIZE = 4096


class Channel(ABC):
    """One end of a duplex byte channel to a neighbor.

    Attributes:
        local: ID of the node owning this endpoint.
        peer: ID of the neighbor at the other end.
        bytes_sent: Number of bytes written through this endpoint.
        writes: Number of write calls (one per frame).
    """

    def __init__(self, local: int, peer: int) -> None:
        self.local = validate_node_id(local, "local")
        self.peer = validate_node_id(peer, "peer")
        if local == peer:
            raise ValueError("A channel needs two distinct endpoints.")
        self.bytes_sent = 0
        self.writes = 0

    @abstractmethod
    def read_nonblocking(self) -> bytes:
        """Return whatever bytes are available, or b"" if none are."""
        pass

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Write bytes toward the peer."""
        pass

    def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.local}<->{self.peer})"


class MemoryChannel(Channel):
    """In-process channel endpoint.

    Each write lands in the peer endpoint's inbound buffer. A drop filter can
    discard individual writes, which is how single frames are lost on purpose.

    Attributes:
        drop_filter: Called with each written frame; True drops it.
        writes_dropped: Number of writes discarded by the drop filter.
    """

    def __init__(self, local: int, peer: int) -> None:
        super().__init__(local, peer)
        self.inbound = bytearray()
        self.remote: Optional["MemoryChannel"] = None
        self.drop_filter: Optional[Callable[[bytes], bool]] = None
        self.writes_dropped = 0
        self.closed = False

    @classmethod
    def pair(cls, a: int, b: int) -> Tuple["MemoryChannel", "MemoryChannel"]:
        """Create both endpoints of a duplex link between nodes a and b.

        Returns:
            The endpoint owned by a and the endpoint owned by b.
        """
        end_a, end_b = cls(a, b), cls(b, a)
        end_a.remote, end_b.remote = end_b, end_a
        return end_a, end_b

    def read_nonblocking(self) -> bytes:
        if self.closed:
            raise ChannelUnavailable(self.peer, "channel closed")
        data = bytes(self.inbound)
        self.inbound.clear()
        return data

    def write(self, data: bytes) -> None:
        if self.closed or self.remote is None or self.remote.closed:
            raise ChannelUnavailable(self.peer, "channel closed")
        self.writes += 1
        if self.drop_filter is not None and self.drop_filter(data):
            self.writes_dropped += 1
            logger.debug("Dropped %d bytes on %r", len(data), self)
            return
        self.remote.inbound.extend(data)
        self.bytes_sent += len(data)

    def close(self) -> None:
        self.closed = True


def channel_filename(source: int, target: int) -> str:
    """Name of the file carrying bytes from source to target."""
    return f"from{source}to{target}.txt"


class FileChannel(Channel):
    """Channel endpoint backed by a pair of files.

    Writes append to ``from{local}to{peer}.txt``; reads tail
    ``from{peer}to{local}.txt``. Both files are created if missing, and the
    outbound file is truncated on open.
    """

    def __init__(self, local: int, peer: int, directory: str = ".") -> None:
        super().__init__(local, peer)
        self.out_path = os.path.join(directory, channel_filename(local, peer))
        self.in_path = os.path.join(directory, channel_filename(peer, local))
        try:
            self.out_fd = os.open(
                self.out_path, os.O_TRUNC | os.O_CREAT | os.O_WRONLY | os.O_APPEND, 0o700
            )
        except OSError as exc:
            raise ChannelUnavailable(peer, f"cannot open {self.out_path}: {exc}") from exc
        try:
            self.in_fd = os.open(self.in_path, os.O_CREAT | os.O_RDONLY, 0o700)
        except OSError as exc:
            os.close(self.out_fd)
            raise ChannelUnavailable(peer, f"cannot open {self.in_path}: {exc}") from exc

    def read_nonblocking(self) -> bytes:
        chunks = []
        try:
            # The peer truncates its outbound file when it (re)starts.
            if os.fstat(self.in_fd).st_size < os.lseek(self.in_fd, 0, os.SEEK_CUR):
                logger.info("%s was truncated; reading from the start", self.in_path)
                os.lseek(self.in_fd, 0, os.SEEK_SET)
            while True:
                chunk = os.read(self.in_fd, READ_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)
        except OSError as exc:
            raise ChannelUnavailable(self.peer, str(exc)) from exc
        return b"".join(chunks)

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        try:
            while view:
                written = os.write(self.out_fd, view)
                view = view[written:]
        except OSError as exc:
            raise ChannelUnavailable(self.peer, str(exc)) from exc
        self.writes += 1
        self.bytes_sent += len(data)

    def close(self) -> None:
        for fd in (self.in_fd, self.out_fd):
            try:
                os.close(fd)
            except OSError:
                logger.debug("Descriptor %d already closed", fd)
