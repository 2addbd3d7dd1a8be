"""Shared mutable relay state, owned by the relay service."""
from __future__ import annotations

from dataclasses import dataclass, field

from .device import DeviceSession


@dataclass(slots=True)
class RelayState:
    """State read by several components on the event loop.

    Every mutation happens on the single event loop thread, so no lock is
    held; the flag, not the transcoder process, gates forwarding of chunks.
    """

    streaming_enabled: bool = False
    session: DeviceSession = field(default_factory=DeviceSession)

    def to_dict(self) -> dict[str, object]:
        return {
            "streaming_enabled": self.streaming_enabled,
            "device": self.session.to_dict(),
        }


__all__ = ["RelayState"]
