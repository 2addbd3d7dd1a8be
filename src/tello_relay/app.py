"""FastAPI application exposing the relay command surface and client socket."""
from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from .config import RelaySettings, load_settings
from .errors import OperationResult
from .relay import RelayService
from .version import APP_VERSION

logger = logging.getLogger(__name__)


class CommandPayload(BaseModel):
    command: str


def _raise_for(result: OperationResult) -> dict[str, object]:
    if not result.ok:
        raise HTTPException(status_code=result.status_code, detail=result.message)
    return result.to_dict()


def create_app(
    config_path: Path | str | None = None,
    *,
    settings: RelaySettings | None = None,
    service: RelayService | None = None,
) -> FastAPI:
    app = FastAPI(title="Tello Relay", version=APP_VERSION)

    if service is None:
        if settings is None:
            settings = load_settings(config_path)
        service = RelayService(settings)
    relay = service
    app.state.relay = relay

    @app.on_event("startup")
    async def startup() -> None:
        await relay.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        result = await relay.shutdown()
        if not result:
            logger.warning("Relay shutdown reported errors: %s", result.detail)

    @app.get("/drone/{command}")
    async def drone_command(command: str) -> dict[str, object]:
        return _raise_for(await relay.send_command(command))

    @app.post("/api/command")
    async def post_command(payload: CommandPayload) -> dict[str, object]:
        return _raise_for(await relay.send_command(payload.command.strip()))

    @app.post("/stream/enable")
    async def enable_stream() -> dict[str, object]:
        return _raise_for(await relay.enable_stream())

    @app.post("/stream/disable")
    async def disable_stream() -> dict[str, object]:
        return _raise_for(await relay.disable_stream())

    @app.post("/start-recording")
    async def start_recording() -> dict[str, object]:
        return _raise_for(await relay.start_recording())

    @app.post("/stop-recording")
    async def stop_recording() -> dict[str, object]:
        return _raise_for(await relay.stop_recording())

    @app.post("/capture-photo")
    async def capture_photo() -> dict[str, object]:
        return _raise_for(await relay.capture_snapshot())

    @app.get("/api/status")
    async def get_status() -> dict[str, object]:
        return relay.status()

    @app.get("/api/logs")
    async def get_logs(
        limit: int = 50, category: str | None = None, since: int | None = None
    ) -> dict[str, object]:
        entries = relay.event_log.tail(limit, category=category, since=since)
        return {
            "entries": [entry.to_dict() for entry in entries],
            "last_seq": relay.event_log.last_seq,
        }

    @app.websocket("/stream")
    async def relay_stream(websocket: WebSocket) -> None:
        await websocket.accept()
        relay.registry.register(websocket)
        try:
            while True:
                message = await websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
        except WebSocketDisconnect:
            pass
        except RuntimeError as exc:
            # Raised by Starlette when the server already closed the socket.
            logger.debug("Relay socket closed: %s", exc)
        finally:
            relay.registry.unregister(websocket)

    return app


__all__ = ["create_app"]
