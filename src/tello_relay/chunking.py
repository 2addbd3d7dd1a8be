"""Packet-aligned resegmentation of the transcoded byte stream."""
from __future__ import annotations

import logging

from .config import DEFAULT_FRAME_BUDGET, MPEGTS_PACKET_SIZE

logger = logging.getLogger(__name__)


def frame_unit_size(
    packet_size: int = MPEGTS_PACKET_SIZE, budget: int = DEFAULT_FRAME_BUDGET
) -> int:
    """Return the largest multiple of ``packet_size`` not exceeding ``budget``."""

    if packet_size <= 0:
        raise ValueError("packet_size must be positive")
    if budget < packet_size:
        raise ValueError("budget must hold at least one packet")
    return (budget // packet_size) * packet_size


class StreamChunker:
    """Accumulate byte blocks and cut them into fixed-size frame units.

    The chunker is a pure resegmentation: the frame units it returns,
    concatenated in order and followed by :attr:`pending`, always equal
    the concatenation of every block fed since the last :meth:`reset`.
    After each :meth:`feed` the residual is strictly shorter than one
    frame unit.
    """

    def __init__(self, frame_unit: int) -> None:
        if frame_unit <= 0:
            raise ValueError("frame_unit must be positive")
        self._frame_unit = int(frame_unit)
        self._buffer = bytearray()

    @property
    def frame_unit(self) -> int:
        return self._frame_unit

    @property
    def pending(self) -> bytes:
        """Bytes retained until the next frame unit completes."""

        return bytes(self._buffer)

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> list[bytes]:
        """Append ``data`` and return every completed frame unit."""

        if not data:
            return []
        self._buffer += data
        available = len(self._buffer) // self._frame_unit
        if not available:
            return []
        cut = available * self._frame_unit
        view = bytes(self._buffer[:cut])
        del self._buffer[:cut]
        return [
            view[offset : offset + self._frame_unit]
            for offset in range(0, cut, self._frame_unit)
        ]

    def reset(self) -> int:
        """Discard the residual and return how many bytes were dropped."""

        dropped = len(self._buffer)
        self._buffer.clear()
        if dropped:
            logger.debug("Discarded %d buffered stream bytes", dropped)
        return dropped


__all__ = ["StreamChunker", "frame_unit_size"]
