"""Registry of connected relay clients and best-effort broadcast."""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from enum import Enum
from typing import Callable, Mapping, Protocol

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_QUEUE_SIZE = 64
# WebSocket close code sent to a client dropped after a send error.
CLOSE_INTERNAL_ERROR = 1011


class RelayTransport(Protocol):
    """Minimal surface of a message-oriented client socket."""

    async def send_bytes(self, data: bytes) -> None: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ClientState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class RelayClient:
    """One relay consumer with its own bounded outbound queue.

    Payloads are queued without awaiting the socket so that a slow client
    never stalls the producer; when the queue is full the oldest payload
    is dropped.
    """

    def __init__(
        self,
        client_id: int,
        transport: RelayTransport,
        *,
        queue_size: int = DEFAULT_CLIENT_QUEUE_SIZE,
        on_failure: Callable[["RelayClient"], None] | None = None,
    ) -> None:
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")
        self.id = client_id
        self.transport = transport
        self.state = ClientState.CONNECTING
        self.dropped = 0
        self._queue: asyncio.Queue[bytes | str] = asyncio.Queue(maxsize=queue_size)
        self._on_failure = on_failure
        self._writer: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"RelayClient(id={self.id}, state={self.state.value})"

    @property
    def is_open(self) -> bool:
        return self.state is ClientState.OPEN

    def open(self) -> None:
        if self.state is not ClientState.CONNECTING:
            return
        self.state = ClientState.OPEN
        self._writer = asyncio.get_running_loop().create_task(self._write_loop())

    def offer(self, payload: bytes | str) -> bool:
        """Queue ``payload`` for delivery; return ``False`` when not open."""

        if self.state is not ClientState.OPEN:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self._drop_oldest()
            self._queue.put_nowait(payload)
        return True

    async def drain(self) -> None:
        """Wait until every queued payload has been handed to the socket."""

        if self._writer is None or self._writer.done():
            return
        await self._queue.join()

    def detach(self) -> None:
        """Stop delivering without touching the socket."""

        if self.state is ClientState.CLOSED:
            return
        self.state = ClientState.CLOSED
        writer = self._writer
        self._writer = None
        if writer is not None and not writer.done():
            writer.cancel()
        self._clear_queue()

    async def aclose(self, code: int = 1001) -> None:
        """Close the underlying socket and stop the writer."""

        if self.state is ClientState.CLOSED:
            return
        self.state = ClientState.CLOSING
        writer = self._writer
        self._writer = None
        if writer is not None and not writer.done():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:  # pragma: no cover - expected path
                pass
        try:
            await self.transport.close(code)
        except Exception as exc:  # pragma: no cover - socket already gone
            logger.debug("Error closing client %s: %s", self.id, exc)
        self.state = ClientState.CLOSED
        self._clear_queue()

    # ------------------------------ helpers -----------------------------
    async def _write_loop(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                if isinstance(payload, str):
                    await self.transport.send_text(payload)
                else:
                    await self.transport.send_bytes(payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Error sending to client %s: %s", self.id, exc)
                self._queue.task_done()
                self.state = ClientState.CLOSED
                self._clear_queue()
                if self._on_failure is not None:
                    self._on_failure(self)
                return
            self._queue.task_done()

    def _drop_oldest(self) -> None:
        try:
            self._queue.get_nowait()
        except asyncio.QueueEmpty:  # pragma: no cover - consumer caught up
            return
        self._queue.task_done()
        self.dropped += 1
        if self.dropped == 1 or self.dropped % 100 == 0:
            logger.debug("Client %s is lagging; dropped %d payloads", self.id, self.dropped)

    def _clear_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()


class ClientRegistry:
    """Set of connected relay clients keyed by their transport."""

    def __init__(self, *, queue_size: int = DEFAULT_CLIENT_QUEUE_SIZE) -> None:
        self._clients: dict[RelayTransport, RelayClient] = {}
        self._ids = itertools.count()
        self._queue_size = queue_size
        self._empty_callbacks: list[Callable[[], None]] = []
        self._closing: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, transport: object) -> bool:
        return transport in self._clients

    def clients(self) -> list[RelayClient]:
        return list(self._clients.values())

    def get(self, transport: RelayTransport) -> RelayClient | None:
        return self._clients.get(transport)

    def on_empty(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` whenever membership drops from one or more to zero."""

        self._empty_callbacks.append(callback)

    def register(self, transport: RelayTransport) -> int:
        """Add ``transport`` as an open client and return its identifier."""

        existing = self._clients.get(transport)
        if existing is not None:
            return existing.id
        client = RelayClient(
            next(self._ids),
            transport,
            queue_size=self._queue_size,
            on_failure=self._handle_failure,
        )
        self._clients[transport] = client
        client.open()
        logger.info("New client %s connected (%d total)", client.id, len(self._clients))
        return client.id

    def unregister(self, transport: RelayTransport) -> bool:
        """Remove ``transport``; removing an unknown client is a no-op."""

        client = self._clients.pop(transport, None)
        if client is None:
            return False
        client.detach()
        logger.info("Client %s disconnected (%d remaining)", client.id, len(self._clients))
        if not self._clients:
            self._notify_empty()
        return True

    def broadcast(self, payload: bytes) -> int:
        """Queue ``payload`` for every open client and return the delivery count."""

        return self._deliver(payload)

    def broadcast_json(self, message: Mapping[str, object]) -> int:
        return self._deliver(json.dumps(message, separators=(",", ":")))

    async def close_all(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()
        if clients:
            self._notify_empty()
        closing = list(self._closing)
        if closing:
            await asyncio.gather(*closing, return_exceptions=True)

    # ------------------------------ helpers -----------------------------
    def _deliver(self, payload: bytes | str) -> int:
        delivered = 0
        for client in list(self._clients.values()):
            if not client.is_open:
                continue
            try:
                if client.offer(payload):
                    delivered += 1
            except Exception as exc:
                logger.warning("Error queueing payload for client %s: %s", client.id, exc)
                self.unregister(client.transport)
                self._schedule_close(client.transport)
        return delivered

    def _handle_failure(self, client: RelayClient) -> None:
        if self._clients.get(client.transport) is client:
            self.unregister(client.transport)
        self._schedule_close(client.transport)

    def _schedule_close(self, transport: RelayTransport) -> None:
        task = asyncio.get_running_loop().create_task(
            self._close_transport(transport, CLOSE_INTERNAL_ERROR)
        )
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_transport(self, transport: RelayTransport, code: int) -> None:
        try:
            await transport.close(code)
        except Exception as exc:  # pragma: no cover - socket already gone
            logger.debug("Error closing failed client socket: %s", exc)

    def _notify_empty(self) -> None:
        for callback in list(self._empty_callbacks):
            try:
                callback()
            except Exception:  # pragma: no cover - callback bug
                logger.exception("Client registry empty callback failed")


__all__ = [
    "ClientRegistry",
    "ClientState",
    "DEFAULT_CLIENT_QUEUE_SIZE",
    "RelayClient",
    "RelayTransport",
]
