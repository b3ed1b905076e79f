"""Streaming reassembly of RCSP frames from notification chunks."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from rcspota.protocol.packet import HEADER, MIN_FRAME_LENGTH, Frame, parse

MAX_BUFFER_SIZE = 4096
LOGGER = logging.getLogger(__name__)


class FrameParser:
    """Accumulates received bytes and yields complete frames.

    Resync is aggressive: bytes before the first header are discarded, and a
    buffer holding no header at all is dropped entirely. A buffer growing past
    ``MAX_BUFFER_SIZE`` is cleared; the session above recovers through command
    timeouts.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)
        if len(self._buffer) > MAX_BUFFER_SIZE:
            LOGGER.warning("Receive buffer overflow (%d bytes), clearing", len(self._buffer))
            self._buffer.clear()

    def clear(self) -> None:
        self._buffer.clear()

    def next_frame(self) -> Frame | None:
        while True:
            if len(self._buffer) < MIN_FRAME_LENGTH:
                return None

            head = self._buffer.find(HEADER)
            if head == -1:
                LOGGER.debug("No frame header in %d buffered bytes, dropping", len(self._buffer))
                self._buffer.clear()
                return None
            if head > 0:
                LOGGER.debug("Discarding %d bytes before frame header", head)
                del self._buffer[:head]
                if len(self._buffer) < MIN_FRAME_LENGTH:
                    return None

            total = MIN_FRAME_LENGTH + int.from_bytes(self._buffer[5:7], "big")
            if len(self._buffer) < total:
                return None

            raw = bytes(self._buffer[:total])
            del self._buffer[:total]
            frame = parse(raw)
            if frame is None:
                LOGGER.warning("Dropping malformed frame: %s", raw.hex(" "))
                continue
            return frame

    def frames(self) -> Iterator[Frame]:
        frame = self.next_frame()
        while frame is not None:
            yield frame
            frame = self.next_frame()
