"""Secondary encode of the relayed byte stream into a seekable container."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from .config import RecordingSettings
from .errors import ErrorKind, OperationResult
from .event_log import EventLog

logger = logging.getLogger(__name__)

ProcessFactory = Callable[..., Awaitable[Any]]


def build_recording_command(binary: str, destination: Path) -> list[str]:
    """Return the FFmpeg invocation that repackages MPEG-TS from stdin."""

    return [
        binary,
        "-hide_banner",
        "-loglevel",
        "warning",
        "-i",
        "pipe:0",
        "-c:v",
        "copy",
        "-c:a",
        "copy",
        "-bsf:a",
        "aac_adtstoasc",
        "-movflags",
        "+faststart",
        "-y",
        str(destination),
    ]


def _recording_path(directory: Path, now: float) -> Path:
    return directory / f"video_{int(now * 1000)}.mp4"


@dataclass(slots=True)
class RecordingSession:
    started_at: datetime
    path: Path
    process: Any
    active: bool = True
    bytes_written: int = 0
    chunks_skipped: int = 0
    tasks: list[asyncio.Task[None]] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "file_name": self.path.name,
            "path": str(self.path),
            "started_at": self.started_at.isoformat(),
            "active": self.active,
            "bytes_written": self.bytes_written,
            "chunks_skipped": self.chunks_skipped,
        }


class RecordingBranch:
    """Feed frame units into an FFmpeg remux process while a session is active."""

    def __init__(
        self,
        settings: RecordingSettings,
        directory: Path,
        *,
        ffmpeg_binary: str = "ffmpeg",
        process_factory: ProcessFactory | None = None,
        event_log: EventLog | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._directory = Path(directory)
        self._binary = ffmpeg_binary
        self._process_factory = process_factory or asyncio.create_subprocess_exec
        self._event_log = event_log
        self._clock = clock
        self._session: RecordingSession | None = None
        self._reapers: set[asyncio.Task[None]] = set()

    @property
    def active(self) -> bool:
        return self._session is not None and self._session.active

    @property
    def session(self) -> RecordingSession | None:
        return self._session

    async def start(self, *, source_active: bool) -> OperationResult:
        """Spawn the remux process; refuses while a session is active."""

        if not source_active:
            return OperationResult.failure(
                ErrorKind.RESOURCE_UNAVAILABLE, "Video stream not active"
            )
        if self.active:
            return OperationResult.failure(ErrorKind.CONFLICT, "Recording already in progress")

        now = self._clock()
        destination = _recording_path(self._directory, now)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            process = await self._process_factory(
                *build_recording_command(self._binary, destination),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("[PROCESS] Failed to start MP4 process: %s", exc)
            return OperationResult.failure(
                ErrorKind.SUBPROCESS_FATAL, f"Failed to start recording: {exc}"
            )

        session = RecordingSession(
            started_at=datetime.fromtimestamp(now, tz=timezone.utc),
            path=destination,
            process=process,
        )
        loop = asyncio.get_running_loop()
        session.tasks.append(loop.create_task(self._log_stderr(process)))
        session.tasks.append(loop.create_task(self._watch_exit(session)))
        self._session = session
        logger.info("Recording started: %s", destination)
        self._record("recording_started", "Recording started.", destination)
        return OperationResult.success("Recording started", {"file_name": destination.name})

    def feed(self, chunk: bytes) -> bool:
        """Forward ``chunk`` when a session is active and its input is writable.

        Chunks that cannot be written right away are skipped, never queued.
        A broken pipe does not make ``write`` raise; the transport just starts
        closing, so a closing input on a live session ends the session.
        """

        session = self._session
        if session is None or not session.active:
            return False
        if session.process.returncode is not None:
            session.chunks_skipped += 1
            return False
        stdin = getattr(session.process, "stdin", None)
        if stdin is None or stdin.is_closing():
            logger.error("MP4 input pipe closed unexpectedly")
            self._teardown(session, "input pipe closed")
            return False
        transport = getattr(stdin, "transport", None)
        if (
            transport is not None
            and transport.get_write_buffer_size() > self._settings.max_pending_bytes
        ):
            session.chunks_skipped += 1
            return False
        try:
            stdin.write(chunk)
        except (OSError, RuntimeError) as exc:
            logger.error("Error writing to MP4 stream: %s", exc)
            self._teardown(session, f"write failed: {exc}")
            return False
        session.bytes_written += len(chunk)
        return True

    async def stop(self) -> OperationResult:
        """Stop feeding and let FFmpeg finalise the container in the background."""

        session = self._session
        if session is None or not session.active:
            return OperationResult.failure(ErrorKind.INVALID_REQUEST, "No active recording")
        detail = {"file_name": session.path.name, "bytes_written": session.bytes_written}
        self._teardown(session, None)
        logger.info("Recording stopped: %s", session.path)
        return OperationResult.success("Recording stopped", detail)

    async def aclose(self) -> None:
        session = self._session
        if session is not None and session.active:
            self._teardown(session, None)
            await self._terminate(session.process)
        reapers = list(self._reapers)
        if reapers:
            await asyncio.gather(*reapers, return_exceptions=True)

    # ------------------------------ helpers -----------------------------
    def _teardown(self, session: RecordingSession, reason: str | None) -> None:
        session.active = False
        if self._session is session:
            self._session = None
        stdin = getattr(session.process, "stdin", None)
        if stdin is not None and not stdin.is_closing():
            try:
                stdin.close()
            except Exception as exc:  # pragma: no cover - pipe already gone
                logger.debug("Error closing MP4 input: %s", exc)
        if reason is not None:
            self._record("recording_failed", f"Recording stopped: {reason}.", session.path)
        else:
            self._record("recording_stopped", "Recording stopped.", session.path)
        try:
            reaper = asyncio.get_running_loop().create_task(self._reap(session))
        except RuntimeError:  # pragma: no cover - loop already closed
            return
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

    async def _reap(self, session: RecordingSession) -> None:
        process = session.process
        try:
            await asyncio.wait_for(process.wait(), timeout=self._settings.stop_grace)
        except asyncio.TimeoutError:
            await self._terminate(process)
            logger.info("MP4 process killed")
        else:
            logger.info("MP4 process cleaned up successfully")

    async def _terminate(self, process: Any) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:  # pragma: no cover - exited meanwhile
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self._settings.stop_grace)
        except asyncio.TimeoutError:  # pragma: no cover - process ignored SIGKILL
            logger.warning("MP4 process did not exit after kill")

    async def _watch_exit(self, session: RecordingSession) -> None:
        code = await session.process.wait()
        if code != 0:
            logger.error("MP4 process exited with code %s", code)
        if session.active:
            self._teardown(session, f"process exited with code {code}")

    async def _log_stderr(self, process: Any) -> None:
        stream = getattr(process, "stderr", None)
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            message = line.decode("utf-8", errors="replace").strip()
            if message:
                logger.debug("FFmpeg MP4: %s", message)

    def _record(self, event: str, message: str, path: Path) -> None:
        if self._event_log is not None:
            self._event_log.record("recording", event, message, metadata={"path": str(path)})


__all__ = ["RecordingBranch", "RecordingSession", "build_recording_command"]
