"""UDP command channel and telemetry classification for the remote device."""
from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .config import DeviceSettings
from .errors import ErrorKind, OperationResult

logger = logging.getLogger(__name__)

ENTER_CONTROL_COMMAND = "command"
STREAM_ON_COMMAND = "streamon"
STREAM_OFF_COMMAND = "streamoff"
EMERGENCY_COMMAND = "emergency"

_NUMERIC_REPLY = re.compile(r"^-?\d+(?:\.\d+)?$")
_COMMAND_PATTERN = re.compile(r"^[\x21-\x7e](?:[\x20-\x7e]*[\x21-\x7e])?$")
_MAX_COMMAND_LENGTH = 64


class TelemetryKind(str, Enum):
    BATTERY = "battery"
    FLIGHT_TIME = "flightTime"
    SPEED = "speed"


# Query command -> telemetry kind carried by the next numeric reply.
TELEMETRY_QUERIES: dict[str, TelemetryKind] = {
    "battery?": TelemetryKind.BATTERY,
    "time?": TelemetryKind.FLIGHT_TIME,
    "speed?": TelemetryKind.SPEED,
}


@dataclass(frozen=True, slots=True)
class TelemetryEvent:
    kind: TelemetryKind
    value: int

    def to_message(self) -> dict[str, object]:
        return {"type": self.kind.value, "value": self.value}


@dataclass(slots=True)
class DeviceSession:
    """Latest known state of the single device session."""

    connected: bool = False
    last_command: str | None = None
    battery: int | None = None
    flight_time: int | None = None
    speed: int | None = None
    updated_at: float | None = None

    def apply(self, event: TelemetryEvent) -> None:
        if event.kind is TelemetryKind.BATTERY:
            self.battery = event.value
        elif event.kind is TelemetryKind.FLIGHT_TIME:
            self.flight_time = event.value
        else:
            self.speed = event.value
        self.updated_at = time.time()

    def reset(self) -> None:
        self.connected = False
        self.last_command = None
        self.battery = None
        self.flight_time = None
        self.speed = None
        self.updated_at = None

    def to_dict(self) -> dict[str, object | None]:
        return {
            "connected": self.connected,
            "last_command": self.last_command,
            "battery": self.battery,
            "flight_time": self.flight_time,
            "speed": self.speed,
            "updated_at": self.updated_at,
        }


def is_valid_command(name: str) -> bool:
    return (
        isinstance(name, str)
        and 0 < len(name) <= _MAX_COMMAND_LENGTH
        and _COMMAND_PATTERN.fullmatch(name) is not None
    )


class _DeviceProtocol(asyncio.DatagramProtocol):
    def __init__(self, channel: "DeviceCommandChannel") -> None:
        self._channel = channel

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self._channel.handle_reply(data)

    def error_received(self, exc: Exception) -> None:
        self._channel.handle_transport_error(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            self._channel.handle_transport_error(exc)


class DeviceCommandChannel:
    """Send plain-text commands and route the untagged replies.

    The device answers queries with bare numbers and no command tag, so a
    numeric reply is attributed to whichever query was sent last.  When two
    queries are outstanding at once the earlier reply is classified as the
    later query; the protocol offers no correlation id to avoid this.
    """

    def __init__(
        self,
        settings: DeviceSettings,
        session: DeviceSession | None = None,
        *,
        local_addr: tuple[str, int] = ("0.0.0.0", 0),
    ) -> None:
        self._settings = settings
        self._session = session or DeviceSession()
        self._local_addr = local_addr
        self._transport: asyncio.DatagramTransport | None = None
        self._last_command: str | None = None
        self._subscribers: list[Callable[[TelemetryEvent], None]] = []

    @property
    def session(self) -> DeviceSession:
        return self._session

    @property
    def last_command(self) -> str | None:
        return self._last_command

    @property
    def is_open(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    async def open(self) -> None:
        if self.is_open:
            return
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _DeviceProtocol(self), local_addr=self._local_addr
        )
        self._transport = transport
        logger.info(
            "Device command channel ready for %s:%s",
            self._settings.host,
            self._settings.control_port,
        )

    def attach(self, transport: asyncio.DatagramTransport) -> None:
        """Use an already created datagram transport."""

        self._transport = transport

    def close(self) -> None:
        transport = self._transport
        self._transport = None
        if transport is not None and not transport.is_closing():
            transport.close()

    def subscribe(self, callback: Callable[[TelemetryEvent], None]) -> None:
        self._subscribers.append(callback)

    def send_command(self, name: str) -> OperationResult:
        """Send ``name`` to the device; failures are reported, never retried."""

        if not is_valid_command(name):
            return OperationResult.failure(
                ErrorKind.INVALID_REQUEST, f"Invalid device command {name!r}"
            )
        transport = self._transport
        if transport is None or transport.is_closing():
            return OperationResult.failure(
                ErrorKind.TRANSPORT_SEND, "Device command socket is closed"
            )
        self._last_command = name
        self._session.last_command = name
        try:
            transport.sendto(name.encode("ascii"), self._settings.address)
        except OSError as exc:
            logger.error("[COMMAND] Failed to send %r to device: %s", name, exc)
            return OperationResult.failure(
                ErrorKind.TRANSPORT_SEND, f"Failed to send command: {exc}"
            )
        logger.debug("Sent device command %r", name)
        return OperationResult.success("Command sent", {"command": name})

    # ------------------------------ replies -----------------------------
    def handle_reply(self, data: bytes) -> TelemetryEvent | None:
        text = data.decode("utf-8", errors="replace").strip()
        logger.info("Drone response: %s", text)
        if not _NUMERIC_REPLY.fullmatch(text):
            return None
        kind = TELEMETRY_QUERIES.get(self._last_command or "")
        if kind is None:
            logger.debug(
                "Ignoring numeric reply %r after non-query command %r", text, self._last_command
            )
            return None
        event = TelemetryEvent(kind, int(float(text)))
        self._session.apply(event)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:  # pragma: no cover - subscriber bug
                logger.exception("Telemetry subscriber failed")
        return event

    def handle_transport_error(self, exc: Exception) -> None:
        logger.warning("[NETWORK] Device socket error: %s", exc)
        if isinstance(exc, ConnectionError):
            self._session.connected = False


__all__ = [
    "DeviceCommandChannel",
    "DeviceSession",
    "EMERGENCY_COMMAND",
    "ENTER_CONTROL_COMMAND",
    "STREAM_OFF_COMMAND",
    "STREAM_ON_COMMAND",
    "TELEMETRY_QUERIES",
    "TelemetryEvent",
    "TelemetryKind",
    "is_valid_command",
]
