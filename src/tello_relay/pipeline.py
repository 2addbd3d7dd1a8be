"""Supervision of the FFmpeg transcoder subprocess."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from .config import DeviceSettings, PipelineSettings
from .errors import ErrorKind, OperationResult
from .event_log import EventLog
from .multiplexer import ChunkMultiplexer
from .state import RelayState

logger = logging.getLogger(__name__)

ProcessFactory = Callable[..., Awaitable[Any]]

ERROR_KEYWORDS = ("error", "failed", "unable to")
_REPEATED_MARKER = "last message repeated"
DEFAULT_READ_SIZE = 64 * 1024


class PipelineState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"


TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.STOPPED: frozenset({PipelineState.STARTING}),
    PipelineState.STARTING: frozenset(
        {PipelineState.RUNNING, PipelineState.RESTARTING, PipelineState.STOPPED}
    ),
    PipelineState.RUNNING: frozenset({PipelineState.STOPPED, PipelineState.RESTARTING}),
    PipelineState.RESTARTING: frozenset({PipelineState.STARTING, PipelineState.STOPPED}),
}


def build_transcoder_command(
    settings: PipelineSettings,
    device: DeviceSettings,
    snapshot_path: Path,
) -> list[str]:
    """Return the FFmpeg invocation for the relay and snapshot outputs."""

    source = (
        f"udp://0.0.0.0:{device.video_port}"
        f"?overrun_nonfatal=1&fifo_size={settings.fifo_size}"
    )
    return [
        settings.ffmpeg_binary,
        "-hide_banner",
        "-loglevel",
        "warning",
        "-i",
        source,
        # Low-latency MPEG-TS for the relay clients.
        "-c:v",
        "mpeg1video",
        "-b:v",
        settings.bitrate,
        "-r",
        str(settings.frame_rate),
        "-f",
        "mpegts",
        "-flush_packets",
        "1",
        "pipe:1",
        # Periodically refreshed still frame.
        "-c:v",
        "mjpeg",
        "-q:v",
        "2",
        "-vf",
        f"fps={settings.snapshot_fps}",
        "-update",
        "1",
        "-f",
        "image2",
        str(snapshot_path),
    ]


def is_failure_line(message: str) -> bool:
    lowered = message.lower()
    if not lowered or _REPEATED_MARKER in lowered:
        return False
    return any(keyword in lowered for keyword in ERROR_KEYWORDS)


class PipelineSupervisor:
    """Own the single transcoder process and restart it after failures.

    ``STOPPED -> STARTING -> RUNNING -> (STOPPED | RESTARTING)``.  A failed
    process is replaced after ``restart_delay`` seconds only while streaming
    is still enabled; otherwise the supervisor settles in ``STOPPED``.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        device: DeviceSettings,
        state: RelayState,
        multiplexer: ChunkMultiplexer,
        snapshot_path: Path,
        *,
        process_factory: ProcessFactory | None = None,
        event_log: EventLog | None = None,
        read_size: int = DEFAULT_READ_SIZE,
    ) -> None:
        self._settings = settings
        self._device = device
        self._relay_state = state
        self._multiplexer = multiplexer
        self._snapshot_path = Path(snapshot_path)
        self._process_factory = process_factory or asyncio.create_subprocess_exec
        self._event_log = event_log
        self._read_size = read_size
        self._state = PipelineState.STOPPED
        self._process: Any | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._restart_task: asyncio.Task[None] | None = None
        self.restart_count = 0

    # ------------------------------ properties -----------------------------
    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def process(self) -> Any | None:
        return self._process

    @property
    def is_running(self) -> bool:
        return self._state is PipelineState.RUNNING and self._process is not None

    @property
    def snapshot_path(self) -> Path:
        return self._snapshot_path

    def command(self) -> list[str]:
        return build_transcoder_command(self._settings, self._device, self._snapshot_path)

    # ------------------------------ control ----------------------------
    async def start(self, *, replace: bool = False) -> OperationResult:
        """Start the transcoder unless one is already running.

        With ``replace`` a running process is terminated first so that at
        most one transcoder is alive at any time.
        """

        if self.is_running:
            if not replace:
                logger.info("FFmpeg process already running")
                return OperationResult.success(
                    "Pipeline already running", {"pid": getattr(self._process, "pid", None)}
                )
            await self._terminate_process()
            self._transition(PipelineState.STOPPED)
        elif self._state is PipelineState.STARTING:
            return OperationResult.success("Pipeline is starting")

        self._cancel_restart()
        self._cancel_tasks()
        self._transition(PipelineState.STARTING)
        self._multiplexer.reset()
        logger.info("Starting FFmpeg process...")
        try:
            process = await self._process_factory(
                *self.command(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("FFmpeg fatal error: %s", exc)
            self._handle_failure(f"spawn failed: {exc}")
            return OperationResult.failure(
                ErrorKind.SUBPROCESS_FATAL, f"Error starting video stream: {exc}"
            )

        if self._state is not PipelineState.STARTING:
            # stop() ran while the process was being spawned.
            await self._kill(process)
            return OperationResult.failure(
                ErrorKind.SUBPROCESS_FATAL, "Pipeline stopped while starting"
            )

        self._process = process
        self._transition(PipelineState.RUNNING)
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._pump_stdout(process)),
            loop.create_task(self._filter_stderr(process)),
            loop.create_task(self._watch_exit(process)),
        ]
        pid = getattr(process, "pid", None)
        self._record("pipeline_started", "Transcoder started.", {"pid": pid})
        return OperationResult.success("Pipeline started", {"pid": pid})

    async def stop(self) -> None:
        """Terminate the transcoder and settle in ``STOPPED``."""

        self._cancel_restart()
        had_process = self._process is not None
        await self._terminate_process()
        if self._state is not PipelineState.STOPPED:
            self._transition(PipelineState.STOPPED)
        tasks = self._cancel_tasks()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if had_process:
            self._record("pipeline_stopped", "Transcoder stopped.")

    async def aclose(self) -> None:
        await self.stop()

    def handle_streaming_disabled(self) -> None:
        """Abandon a pending restart once streaming is switched off."""

        if self._state is PipelineState.RESTARTING:
            self._cancel_restart()
            self._transition(PipelineState.STOPPED)
            logger.info("Pending transcoder restart cancelled; streaming disabled")

    # ------------------------------ lifecycle -----------------------------
    def _transition(self, target: PipelineState) -> None:
        if target not in TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Invalid pipeline transition {self._state.value} -> {target.value}"
            )
        logger.debug("Pipeline %s -> %s", self._state.value, target.value)
        self._state = target

    def _handle_exit(self, process: Any, code: int | None) -> None:
        if process is not self._process:
            return
        self._process = None
        if code == 0:
            logger.info("FFmpeg process closed normally")
            self._transition(PipelineState.STOPPED)
            self._record("pipeline_exited", "Transcoder exited normally.", {"code": code})
            return
        logger.error("FFmpeg process exited with code %s", code)
        self._handle_failure(f"exit code {code}")

    def _handle_failure(self, reason: str) -> None:
        self._transition(PipelineState.RESTARTING)
        if not self._relay_state.streaming_enabled:
            self._transition(PipelineState.STOPPED)
            self._record("pipeline_failed", f"Transcoder failed: {reason}.")
            return
        self._record(
            "pipeline_restart_scheduled",
            f"Transcoder failed: {reason}; restarting.",
            {"delay": self._settings.restart_delay},
        )
        self._restart_task = asyncio.get_running_loop().create_task(self._restart_later())

    async def _restart_later(self) -> None:
        await asyncio.sleep(self._settings.restart_delay)
        self._restart_task = None
        if self._state is not PipelineState.RESTARTING:
            return
        if not self._relay_state.streaming_enabled:
            self._transition(PipelineState.STOPPED)
            return
        self.restart_count += 1
        await self.start()

    def _cancel_restart(self) -> None:
        task = self._restart_task
        self._restart_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _cancel_tasks(self) -> list[asyncio.Task[None]]:
        tasks = self._tasks
        self._tasks = []
        current = asyncio.current_task()
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        return [task for task in tasks if task is not current]

    async def _terminate_process(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:  # pragma: no cover - exited meanwhile
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self._settings.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("FFmpeg did not exit after terminate; killing")
            await self._kill(process)

    async def _kill(self, process: Any) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:  # pragma: no cover - exited meanwhile
            return
        await process.wait()

    # ------------------------------ readers -----------------------------
    async def _pump_stdout(self, process: Any) -> None:
        stream = process.stdout
        if stream is None:  # pragma: no cover - spawned without a pipe
            return
        while True:
            data = await stream.read(self._read_size)
            if not data:
                return
            try:
                self._multiplexer.handle_output(data)
            except Exception:
                logger.exception("[STREAM] Error in FFmpeg data handler")
                self._multiplexer.reset()

    async def _filter_stderr(self, process: Any) -> None:
        stream = process.stderr
        if stream is None:  # pragma: no cover - spawned without a pipe
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            message = line.decode("utf-8", errors="replace").strip()
            if is_failure_line(message):
                logger.error("FFmpeg Error: %s", message)

    async def _watch_exit(self, process: Any) -> None:
        code = await process.wait()
        self._handle_exit(process, code)

    def _record(
        self, event: str, message: str, metadata: dict[str, object | None] | None = None
    ) -> None:
        if self._event_log is not None:
            self._event_log.record("pipeline", event, message, metadata=metadata)


__all__ = [
    "ERROR_KEYWORDS",
    "PipelineState",
    "PipelineSupervisor",
    "TRANSITIONS",
    "build_transcoder_command",
    "is_failure_line",
]
