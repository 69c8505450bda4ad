"""Datalink framing for byte channels without message boundaries.

A frame is ``START || escaped(payload) || END``. Any payload byte equal to
START, END or ESCAPE is sent as ``ESCAPE, byte``; every other byte passes
through unchanged.
"""

from typing import Iterator, Tuple

from netstack_sim.core.errors import IncompleteFrame

START_MARKER = 0x02
END_MARKER = 0x03
ESCAPE = 0x10

RESERVED_BYTES = frozenset((START_MARKER, END_MARKER, ESCAPE))


def encode_frame(payload: bytes) -> bytes:
    """Frame and byte-stuff a payload.

    Args:
        payload: Raw payload bytes.

    Returns:
        The frame, ready to be written to a channel.
    """
    frame = bytearray([START_MARKER])
    for byte in payload:
        if byte in RESERVED_BYTES:
            frame.append(ESCAPE)
        frame.append(byte)
    frame.append(END_MARKER)
    return bytes(frame)


def scan_frame(raw: bytes) -> Tuple[bytes, int]:
    """Find and unstuff the first complete frame in a byte buffer.

    Bytes before the first START are skipped. An unescaped START inside an
    open frame means the previous frame was cut short, so decoding restarts
    from there.

    Args:
        raw: Buffered channel bytes.

    Returns:
        The payload and the number of bytes of ``raw`` consumed.

    Raises:
        IncompleteFrame: If no END has been observed after a START.
    """
    payload = bytearray()
    in_frame = False
    escaped = False
    for index, byte in enumerate(raw):
        if not in_frame:
            if byte == START_MARKER:
                in_frame = True
            continue
        if escaped:
            payload.append(byte)
            escaped = False
        elif byte == ESCAPE:
            escaped = True
        elif byte == END_MARKER:
            return bytes(payload), index + 1
        elif byte == START_MARKER:
            payload.clear()
        else:
            payload.append(byte)
    raise IncompleteFrame(f"No frame end in {len(raw)} buffered bytes")


def decode_frame(raw: bytes) -> bytes:
    """Decode the first complete frame in ``raw``.

    Raises:
        IncompleteFrame: If no END has been observed after a START.
    """
    payload, _ = scan_frame(raw)
    return payload


class FrameDecoder:
    """Streaming deframer for one neighbor channel.

    Attributes:
        buffer: Bytes received but not yet part of a complete frame.
    """

    def __init__(self) -> None:
        self.buffer = bytearray()

    def feed(self, data: bytes) -> Iterator[bytes]:
        """Append channel bytes and yield every payload completed by them.

        Args:
            data: Bytes just read from the channel.

        Yields:
            Deframed payloads, in channel order.
        """
        self.buffer.extend(data)
        while self.buffer:
            try:
                payload, consumed = scan_frame(self.buffer)
            except IncompleteFrame:
                self._discard_noise()
                return
            del self.buffer[:consumed]
            yield payload

    def _discard_noise(self) -> None:
        """Drop bytes that can never become part of a frame."""
        start = self.buffer.find(START_MARKER)
        if start < 0:
            self.buffer.clear()
        elif start > 0:
            del self.buffer[:start]

    def __len__(self) -> int:
        return len(self.buffer)
