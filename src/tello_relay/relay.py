"""Relay service wiring the device channel, transcoder and clients together."""
from __future__ import annotations

import asyncio
import logging

from .clients import ClientRegistry
from .config import RelaySettings
from .device import (
    EMERGENCY_COMMAND,
    ENTER_CONTROL_COMMAND,
    STREAM_OFF_COMMAND,
    STREAM_ON_COMMAND,
    DeviceCommandChannel,
    TelemetryEvent,
)
from .errors import ErrorKind, OperationResult
from .event_log import EventLog
from .monitoring import DeviceMonitor
from .multiplexer import ChunkMultiplexer
from .pipeline import PipelineSupervisor, ProcessFactory
from .recording import RecordingBranch
from .snapshot import SnapshotCapture, prepare_media_dirs
from .state import RelayState

logger = logging.getLogger(__name__)


class RelayService:
    """Own every relay component and expose the external command surface.

    Each operation returns an :class:`OperationResult`; component failures
    never escape as exceptions.
    """

    def __init__(
        self,
        settings: RelaySettings | None = None,
        *,
        channel: DeviceCommandChannel | None = None,
        registry: ClientRegistry | None = None,
        process_factory: ProcessFactory | None = None,
        event_log: EventLog | None = None,
    ) -> None:
        self.settings = settings or RelaySettings()
        self.event_log = event_log or EventLog(self.settings.event_log_path)
        self.channel = channel or DeviceCommandChannel(self.settings.device)
        self.state = RelayState(session=self.channel.session)
        self.registry = registry or ClientRegistry()
        self.monitor = DeviceMonitor(self.channel, self.settings.monitor)
        self.recorder = RecordingBranch(
            self.settings.recording,
            self.settings.recordings_dir,
            ffmpeg_binary=self.settings.pipeline.ffmpeg_binary,
            process_factory=process_factory,
            event_log=self.event_log,
        )
        self.multiplexer = ChunkMultiplexer(
            self.state,
            self.registry,
            self.settings.frame_unit,
            recorder=self.recorder,
        )
        self.pipeline = PipelineSupervisor(
            self.settings.pipeline,
            self.settings.device,
            self.state,
            self.multiplexer,
            self.settings.snapshot_path,
            process_factory=process_factory,
            event_log=self.event_log,
        )
        self.snapshots = SnapshotCapture(
            self.settings.snapshot_path,
            self.settings.photos_dir,
            stream_active=lambda: self.pipeline.is_running,
        )
        self.channel.subscribe(self._publish_telemetry)
        self.registry.on_empty(self._handle_idle)
        self._background: set[asyncio.Task[None]] = set()
        self._started = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        if self._started:
            return
        prepare_media_dirs(self.settings.media_dir)
        await self.channel.open()
        self._started = True
        self._closed = False
        self.event_log.record(
            "system",
            "startup",
            "Relay started.",
            metadata={"device": self.settings.device.to_dict(), "frame_unit": self.settings.frame_unit},
        )

    # ------------------------------ commands -----------------------------
    async def send_command(self, name: str) -> OperationResult:
        """Send ``name`` to the device and apply its local side effects."""

        if self._closed:
            return OperationResult.failure(ErrorKind.TRANSPORT_SEND, "Relay is shut down")
        result = self.channel.send_command(name)
        if not result:
            logger.error("[COMMAND] %s", result.message)
            return result

        if name == ENTER_CONTROL_COMMAND:
            if not self.state.session.connected:
                self.event_log.record("device", "connected", "Device entered control mode.")
            self.state.session.connected = True
            self.monitor.start()
        elif name == STREAM_ON_COMMAND:
            self.state.streaming_enabled = True
            started = await self.pipeline.start()
            if not started:
                return started
        elif name == STREAM_OFF_COMMAND:
            self.state.streaming_enabled = False
            self.pipeline.handle_streaming_disabled()
            return OperationResult.success("Stream paused", result.detail)
        return result

    async def enable_stream(self) -> OperationResult:
        return await self.send_command(STREAM_ON_COMMAND)

    async def disable_stream(self) -> OperationResult:
        return await self.send_command(STREAM_OFF_COMMAND)

    async def start_recording(self) -> OperationResult:
        source_active = self.pipeline.is_running and self.state.streaming_enabled
        return await self.recorder.start(source_active=source_active)

    async def stop_recording(self) -> OperationResult:
        return await self.recorder.stop()

    async def capture_snapshot(self) -> OperationResult:
        return await self.snapshots.capture()

    def status(self) -> dict[str, object]:
        session = self.recorder.session
        return {
            "pipeline": self.pipeline.state.value,
            "restarts": self.pipeline.restart_count,
            "clients": len(self.registry),
            "frame_unit": self.multiplexer.frame_unit,
            "frames_emitted": self.multiplexer.frames_emitted,
            "stream_resyncs": self.multiplexer.misalignments,
            "recording": session.to_dict() if session is not None else None,
            **self.state.to_dict(),
        }

    # ------------------------------ shutdown -----------------------------
    async def shutdown(self) -> OperationResult:
        """Tear everything down in dependency order."""

        if self._closed:
            return OperationResult.success("Relay already shut down")
        self._closed = True
        logger.info("Starting graceful shutdown...")
        failed: list[str] = []

        try:
            await self.monitor.aclose()
        except Exception:  # pragma: no cover - logged and reported
            logger.exception("Error stopping device monitoring")
            failed.append("monitor")

        try:
            await self.registry.close_all()
        except Exception:  # pragma: no cover - logged and reported
            logger.exception("Error closing relay clients")
            failed.append("clients")

        if self.settings.device.emergency_on_shutdown and self.state.session.connected:
            result = self.channel.send_command(EMERGENCY_COMMAND)
            if not result:
                logger.error("Error sending emergency command: %s", result.message)
        self.channel.close()

        self.state.streaming_enabled = False
        try:
            await self.pipeline.aclose()
        except Exception:  # pragma: no cover - logged and reported
            logger.exception("Error stopping transcoder")
            failed.append("pipeline")

        try:
            await self.recorder.aclose()
        except Exception:  # pragma: no cover - logged and reported
            logger.exception("Error stopping recording")
            failed.append("recording")

        background = list(self._background)
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)

        self.state.session.reset()
        self._started = False
        self.event_log.record(
            "system",
            "shutdown_complete",
            "Relay shutdown completed.",
            metadata={"failed_steps": failed or None},
        )
        logger.info("Graceful shutdown completed")
        if failed:
            return OperationResult.failure(
                ErrorKind.SUBPROCESS_FATAL,
                "Shutdown completed with errors",
                {"failed_steps": failed},
            )
        return OperationResult.success("Shutdown complete")

    # ------------------------------ helpers -----------------------------
    def _publish_telemetry(self, event: TelemetryEvent) -> None:
        self.registry.broadcast_json(event.to_message())

    def _handle_idle(self) -> None:
        if self._closed or not self.settings.pipeline.stop_when_idle:
            return
        if not self.state.streaming_enabled and self.pipeline.process is None:
            return
        logger.info("No relay clients remain; stopping the video stream")
        try:
            task = asyncio.get_running_loop().create_task(self._idle_teardown())
        except RuntimeError:  # pragma: no cover - loop already closed
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _idle_teardown(self) -> None:
        if len(self.registry):
            return
        result = await self.disable_stream()
        if not result:
            self.state.streaming_enabled = False
        await self.pipeline.stop()
        self.event_log.record("pipeline", "idle_stop", "Stream stopped with no clients.")


__all__ = ["RelayService"]
