"""Cut transcoder output into frame units and fan them out."""
from __future__ import annotations

import logging

from .chunking import StreamChunker
from .clients import ClientRegistry
from .recording import RecordingBranch
from .state import RelayState

logger = logging.getLogger(__name__)


class ChunkMultiplexer:
    """Deliver each completed frame unit to every client and the recorder.

    Output that arrives while streaming is disabled is still consumed so the
    transcoder never blocks on a full pipe. It goes through the chunker so
    packet alignment survives the pause, but the completed units are dropped.
    """

    def __init__(
        self,
        state: RelayState,
        registry: ClientRegistry,
        frame_unit: int,
        *,
        recorder: RecordingBranch | None = None,
    ) -> None:
        self._state = state
        self._registry = registry
        self._recorder = recorder
        self._chunker = StreamChunker(frame_unit)
        self.frames_emitted = 0
        self.bytes_discarded = 0
        self.misalignments = 0

    @property
    def frame_unit(self) -> int:
        return self._chunker.frame_unit

    @property
    def buffered(self) -> int:
        return len(self._chunker)

    def reset(self) -> None:
        """Start a fresh stream buffer for a new transcoder process."""

        self._chunker.reset()

    def handle_output(self, data: bytes) -> int:
        """Consume one block of transcoder output and return the units sent."""

        try:
            units = self._chunker.feed(data)
        except Exception:
            logger.exception("[STREAM] Error buffering video data; resetting stream buffer")
            self._resync()
            return 0

        if not self._state.streaming_enabled:
            # Keep the residual so units stay packet aligned after resume.
            self.bytes_discarded += len(units) * self._chunker.frame_unit
            return 0

        for unit in units:
            self._registry.broadcast(unit)
            if self._recorder is not None and self._recorder.active:
                self._recorder.feed(unit)
        self.frames_emitted += len(units)

        # feed() leaves less than one unit buffered.
        if len(self._chunker) >= self._chunker.frame_unit:  # pragma: no cover
            logger.error("[STREAM] Stream buffer misaligned; resetting")
            self._resync()
        return len(units)

    def _resync(self) -> None:
        self.misalignments += 1
        self.bytes_discarded += self._chunker.reset()


__all__ = ["ChunkMultiplexer"]
