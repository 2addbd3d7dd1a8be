"""Tests for the recording branch."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import ProcessLauncher, wait_until
from tello_relay.config import RecordingSettings
from tello_relay.errors import ErrorKind
from tello_relay.event_log import EventLog
from tello_relay.recording import RecordingBranch, build_recording_command

pytestmark = pytest.mark.anyio

_NOW = 1_700_000_000.0


def _branch(
    launcher: ProcessLauncher, tmp_path: Path, event_log: EventLog | None = None
) -> RecordingBranch:
    return RecordingBranch(
        RecordingSettings(stop_grace=0.05),
        tmp_path / "mp4_recordings",
        process_factory=launcher,
        event_log=event_log,
        clock=lambda: _NOW,
    )


def test_recording_command_remuxes_stdin(tmp_path: Path) -> None:
    destination = tmp_path / "video.mp4"

    command = build_recording_command("ffmpeg", destination)

    assert command[command.index("-i") + 1] == "pipe:0"
    assert command[command.index("-c:v") + 1] == "copy"
    assert command[command.index("-bsf:a") + 1] == "aac_adtstoasc"
    assert command[command.index("-movflags") + 1] == "+faststart"
    assert command[-2:] == ["-y", str(destination)]


async def test_start_requires_active_stream(launcher: ProcessLauncher, tmp_path: Path) -> None:
    branch = _branch(launcher, tmp_path)

    result = await branch.start(source_active=False)

    assert result.error is ErrorKind.RESOURCE_UNAVAILABLE
    assert result.message == "Video stream not active"
    assert launcher.processes == []
    assert branch.active is False


async def test_start_spawns_single_session(launcher: ProcessLauncher, tmp_path: Path) -> None:
    branch = _branch(launcher, tmp_path)

    first = await branch.start(source_active=True)
    second = await branch.start(source_active=True)

    assert first.ok is True
    assert first.detail == {"file_name": "video_1700000000000.mp4"}
    assert second.error is ErrorKind.CONFLICT
    assert len(launcher.processes) == 1
    assert launcher.processes[0].command[-1].endswith("video_1700000000000.mp4")
    assert (tmp_path / "mp4_recordings").is_dir()
    await branch.aclose()


async def test_spawn_failure_is_reported(launcher: ProcessLauncher, tmp_path: Path) -> None:
    branch = _branch(launcher, tmp_path)
    launcher.error = PermissionError("denied")

    result = await branch.start(source_active=True)

    assert result.error is ErrorKind.SUBPROCESS_FATAL
    assert branch.active is False


async def test_feed_writes_chunks_until_stopped(
    launcher: ProcessLauncher, tmp_path: Path
) -> None:
    log = EventLog()
    branch = _branch(launcher, tmp_path, log)
    await branch.start(source_active=True)
    process = launcher.processes[0]

    assert branch.feed(b"a" * 188) is True
    assert branch.feed(b"b" * 188) is True
    assert branch.session is not None and branch.session.bytes_written == 376

    result = await branch.stop()

    assert result.ok is True
    assert result.detail == {"file_name": "video_1700000000000.mp4", "bytes_written": 376}
    assert process.stdin.closed is True
    assert process.stdin.chunks == [b"a" * 188, b"b" * 188]
    assert branch.feed(b"c" * 188) is False
    assert [entry.event for entry in log.tail(category="recording")] == [
        "recording_started",
        "recording_stopped",
    ]
    await branch.aclose()


async def test_stop_without_session_is_rejected(
    launcher: ProcessLauncher, tmp_path: Path
) -> None:
    branch = _branch(launcher, tmp_path)

    result = await branch.stop()

    assert result.error is ErrorKind.INVALID_REQUEST
    assert result.message == "No active recording"


async def test_unresponsive_process_is_killed_after_grace(
    launcher: ProcessLauncher, tmp_path: Path
) -> None:
    launcher.exit_on_stdin_close = False
    branch = _branch(launcher, tmp_path)
    await branch.start(source_active=True)

    await branch.stop()
    await wait_until(lambda: launcher.processes[0].killed)

    assert launcher.processes[0].returncode == -9


async def test_write_failure_tears_session_down(
    launcher: ProcessLauncher, tmp_path: Path
) -> None:
    branch = _branch(launcher, tmp_path)
    await branch.start(source_active=True)
    process = launcher.processes[0]
    process.stdin.fail_writes = True

    assert branch.feed(b"x" * 188) is False

    assert branch.active is False
    assert process.stdin.closed is True
    assert (await branch.start(source_active=True)).ok is True
    await branch.aclose()


async def test_closed_input_pipe_ends_session(
    launcher: ProcessLauncher, tmp_path: Path
) -> None:
    log = EventLog()
    branch = _branch(launcher, tmp_path, log)
    await branch.start(source_active=True)
    launcher.processes[0].stdin.closed = True

    assert branch.feed(b"x" * 188) is False

    assert branch.active is False
    assert branch.session is None
    assert log.tail(1)[0].event == "recording_failed"
    await branch.aclose()


async def test_exited_process_skips_chunks(launcher: ProcessLauncher, tmp_path: Path) -> None:
    branch = _branch(launcher, tmp_path)
    await branch.start(source_active=True)
    launcher.processes[0].exit(1)

    assert branch.feed(b"x" * 188) is False

    assert branch.session is not None and branch.session.chunks_skipped == 1
    assert launcher.processes[0].stdin.chunks == []
    await branch.aclose()


async def test_unexpected_exit_ends_session(launcher: ProcessLauncher, tmp_path: Path) -> None:
    branch = _branch(launcher, tmp_path)
    await branch.start(source_active=True)

    launcher.processes[0].exit(1)
    await wait_until(lambda: not branch.active)

    assert branch.session is None
    assert branch.feed(b"x") is False


async def test_aclose_kills_active_process(launcher: ProcessLauncher, tmp_path: Path) -> None:
    launcher.exit_on_stdin_close = False
    branch = _branch(launcher, tmp_path)
    await branch.start(source_active=True)

    await branch.aclose()

    assert launcher.processes[0].killed is True
    assert branch.active is False
