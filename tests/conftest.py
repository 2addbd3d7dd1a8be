"""Shared fakes for subprocess, UDP and client socket collaborators."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import pytest


class FakeStdin:
    def __init__(self, process: "FakeProcess") -> None:
        self._process = process
        self.chunks: list[bytes] = []
        self.closed = False
        self.fail_writes = False

    def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise BrokenPipeError("pipe closed")
        self.chunks.append(bytes(data))

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True
        if self._process.exit_on_stdin_close:
            self._process.exit(0)


class FakeProcess:
    """Mimic :class:`asyncio.subprocess.Process` with controllable exits."""

    def __init__(self, pid: int, command: list[str], *, exit_on_stdin_close: bool = True) -> None:
        self.pid = pid
        self.command = command
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.stdin = FakeStdin(self)
        self.returncode: int | None = None
        self.terminated = False
        self.killed = False
        self.exit_on_stdin_close = exit_on_stdin_close
        self._exited = asyncio.Event()

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class ProcessLauncher:
    """Stand-in for ``asyncio.create_subprocess_exec``."""

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.error: OSError | None = None
        self.exit_on_stdin_close = True

    async def __call__(self, *command: str, **kwargs: object) -> FakeProcess:
        if self.error is not None:
            raise self.error
        process = FakeProcess(
            1000 + len(self.processes),
            list(command),
            exit_on_stdin_close=self.exit_on_stdin_close,
        )
        self.processes.append(process)
        return process

    def matching(self, marker: str) -> list[FakeProcess]:
        return [process for process in self.processes if marker in process.command]

    @property
    def transcoders(self) -> list[FakeProcess]:
        return self.matching("pipe:1")

    @property
    def recorders(self) -> list[FakeProcess]:
        return self.matching("pipe:0")


class FakeDatagramTransport:
    """Datagram transport that records sends and can answer like the device."""

    def __init__(self) -> None:
        self.sent: list[tuple[bytes, tuple[str, int]]] = []
        self.closed = False
        self.error: OSError | None = None
        self.replies: dict[str, bytes] = {}
        self.reply_handler: Callable[[bytes], object] | None = None

    def sendto(self, data: bytes, addr: tuple[str, int]) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((data, addr))
        reply = self.replies.get(data.decode("ascii"))
        if reply is not None and self.reply_handler is not None:
            asyncio.get_running_loop().call_soon(self.reply_handler, reply)

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    @property
    def commands(self) -> list[str]:
        return [data.decode("ascii") for data, _ in self.sent]


class FakeSocket:
    """Relay client transport recording what it was sent."""

    def __init__(self, *, fail: bool = False, gate: asyncio.Event | None = None) -> None:
        self.binary: list[bytes] = []
        self.text: list[str] = []
        self.fail = fail
        self.gate = gate
        self.closed_with: int | None = None

    async def _maybe_block(self) -> None:
        if self.fail:
            raise ConnectionResetError("client went away")
        if self.gate is not None:
            await self.gate.wait()

    async def send_bytes(self, data: bytes) -> None:
        await self._maybe_block()
        self.binary.append(data)

    async def send_text(self, data: str) -> None:
        await self._maybe_block()
        self.text.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def launcher() -> ProcessLauncher:
    return ProcessLauncher()


@pytest.fixture
def datagram_transport() -> FakeDatagramTransport:
    return FakeDatagramTransport()


@pytest.fixture
def waiter() -> Callable[..., Awaitable[None]]:
    return wait_until


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
