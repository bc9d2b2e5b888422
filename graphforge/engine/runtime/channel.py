"""Process transports used by the command executor.

A :class:`ShellChannel` is one process running inside a runtime, with its
stdout and stderr delivered as ``(stream, chunk)`` pairs.  Channels are
either one-shot (``sh -c <cmd>``, stdin closed) or interactive (a long-lived
``/bin/sh`` fed through stdin, used for shell sessions).

Two implementations:

- :class:`LocalShellChannel`: host subprocess (``anyio.open_process``) in its
  own process group.
- :class:`DockerShellChannel`: ``docker exec`` with an attached, multiplexed
  socket.  Frames are decoded by ``docker.utils.socket`` in a worker thread;
  control calls (create, inspect, kill) run in worker threads as well.

Both feed their output into an anyio memory object stream from reader tasks
that outlive a single command, since sessions keep one channel across many
calls.  Closing a channel cancels and awaits its readers.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import os
import signal
import socket
import subprocess
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from functools import partial
from typing import TYPE_CHECKING, Any

import anyio
from anyio import from_thread, to_thread
from docker.utils.socket import STDERR, STDOUT, frames_iter

from graphforge.engine.models.enums import OutputStream

if TYPE_CHECKING:
    import docker
    from anyio.abc import ByteReceiveStream, Process
    from anyio.streams.memory import MemoryObjectSendStream

logger = logging.getLogger(__name__)

_TERMINATE_WAIT = 5.0

_FRAME_STREAMS = {STDOUT: OutputStream.STDOUT, STDERR: OutputStream.STDERR}

Chunk = tuple[OutputStream, bytes]
Reader = Callable[["MemoryObjectSendStream[Chunk]"], Awaitable[None]]

# Records the wrapper's PID so a later exec can kill the whole process tree.
_PID_WRAPPER = 'echo $$ >"$0"; "$@"; rc=$?; rm -f "$0"; exit $rc'

_KILL_TREE = """
kill_tree() {
  for child in $(cat /proc/"$1"/task/*/children 2>/dev/null); do
    kill_tree "$child"
  done
  command -v pkill >/dev/null 2>&1 && pkill -9 -P "$1" 2>/dev/null
  kill -9 "$1" 2>/dev/null
}
pid=$(cat "$0" 2>/dev/null)
[ -n "$pid" ] && kill_tree "$pid"
rm -f "$0"
exit 0
"""


class ShellChannel(ABC):
    """Bidirectional byte channel to one process running inside a runtime."""

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Write *data* to the process stdin (interactive channels only)."""

    @abstractmethod
    async def receive(self) -> tuple[OutputStream, bytes] | None:
        """Return the next output chunk, or ``None`` once both streams hit EOF."""

    def discard_pending(self) -> None:  # noqa: B027
        """Drop output that is already buffered but not yet received."""

    @abstractmethod
    async def wait(self) -> int | None:
        """Exit code of the process, after its output reached EOF."""

    @abstractmethod
    async def terminate(self) -> None:
        """Kill the process and all of its descendants, then release the channel."""

    @abstractmethod
    async def aclose(self) -> None:
        """Release the channel without killing anything."""

    @property
    @abstractmethod
    def closed(self) -> bool: ...


class _StreamedChannel(ShellChannel):
    """Channel whose output is written by background readers into a memory stream."""

    def __init__(self) -> None:
        self._send, self._output = anyio.create_memory_object_stream[Chunk](math.inf)
        self._readers: list[asyncio.Task[None]] = []
        self._eof = False
        self._closed = False

    def _start_readers(self, *readers: Reader) -> None:
        # Each reader owns a clone of the send side; the stream ends once all are closed.
        loop = asyncio.get_running_loop()
        for reader in readers:
            self._readers.append(loop.create_task(reader(self._send.clone())))
        self._send.close()

    async def _stop_readers(self) -> None:
        readers, self._readers = self._readers, []
        for task in readers:
            task.cancel()
        for result in await asyncio.gather(*readers, return_exceptions=True):
            if isinstance(result, Exception):
                logger.warning("Channel output reader failed: %s", result, exc_info=result)
        self._output.close()

    @property
    def closed(self) -> bool:
        return self._closed or self._eof

    async def receive(self) -> Chunk | None:
        if self._eof:
            return None
        try:
            return await self._output.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            self._eof = True
            return None

    def discard_pending(self) -> None:
        while not self._eof:
            try:
                self._output.receive_nowait()
            except anyio.WouldBlock:
                return
            except (anyio.EndOfStream, anyio.ClosedResourceError):
                self._eof = True


# ---------------------------------------------------------------------------
# Local subprocess
# ---------------------------------------------------------------------------


class LocalShellChannel(_StreamedChannel):
    def __init__(self, process: Process) -> None:
        super().__init__()
        self._process = process
        self._start_readers(
            partial(_read_process_stream, OutputStream.STDOUT, process.stdout),
            partial(_read_process_stream, OutputStream.STDERR, process.stderr),
        )

    @classmethod
    async def open(
        cls,
        argv: list[str],
        *,
        cwd: str | None,
        env: dict[str, str] | None,
        interactive: bool,
    ) -> LocalShellChannel:
        process = await anyio.open_process(
            argv,
            stdin=subprocess.PIPE if interactive else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=env,
            start_new_session=True,
        )
        return cls(process)

    @property
    def closed(self) -> bool:
        return super().closed or self._process.returncode is not None

    async def send(self, data: bytes) -> None:
        stdin = self._process.stdin
        if stdin is None or self._closed:
            raise ConnectionResetError("Shell stdin is closed")
        try:
            await stdin.send(data)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError) as exc:
            raise ConnectionResetError("Shell stdin is closed") from exc

    async def wait(self) -> int | None:
        return await self._process.wait()

    async def terminate(self) -> None:
        if self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(self._process.pid, signal.SIGKILL)
        await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._process.stdin is not None:
            with contextlib.suppress(anyio.BrokenResourceError, anyio.ClosedResourceError):
                await self._process.stdin.aclose()
        with anyio.move_on_after(_TERMINATE_WAIT):
            await self._process.wait()
        await self._stop_readers()
        for stream in (self._process.stdout, self._process.stderr):
            if stream is not None:
                await stream.aclose()


async def _read_process_stream(
    stream: OutputStream,
    source: ByteReceiveStream | None,
    send: MemoryObjectSendStream[Chunk],
) -> None:
    async with send:
        if source is None:
            return
        with contextlib.suppress(anyio.BrokenResourceError, anyio.ClosedResourceError):
            async for chunk in source:
                await send.send((stream, chunk))


# ---------------------------------------------------------------------------
# Docker exec
# ---------------------------------------------------------------------------


def _raw_socket(sock: Any) -> socket.socket:
    # docker-py returns a SocketIO wrapper for unix and plain tcp daemons.
    raw = getattr(sock, "_sock", sock)
    if not isinstance(raw, socket.socket):
        raise TypeError(f"Unsupported exec socket type: {type(raw).__name__}")
    return raw


class DockerShellChannel(_StreamedChannel):
    def __init__(
        self,
        client: docker.DockerClient,
        container_id: str,
        exec_id: str,
        sock: Any,
        pidfile: str,
    ) -> None:
        super().__init__()
        self._client = client
        self._container_id = container_id
        self._exec_id = exec_id
        self._sock = sock  # keeps the HTTP response alive
        self._raw = _raw_socket(sock)
        # The reader thread blocks on the socket; the client timeout must not end idle sessions.
        self._raw.settimeout(None)
        self._pidfile = pidfile
        self._start_readers(self._read_frames)

    @classmethod
    async def open(
        cls,
        client: docker.DockerClient,
        container_id: str,
        argv: list[str],
        *,
        workdir: str | None,
        env: dict[str, str] | None,
        interactive: bool,
    ) -> DockerShellChannel:
        pidfile = f"/tmp/.graphforge-{uuid.uuid4().hex}.pid"  # noqa: S108
        wrapped = ["/bin/sh", "-c", _PID_WRAPPER, pidfile, *argv]
        created = await to_thread.run_sync(
            partial(
                client.api.exec_create,
                container_id,
                wrapped,
                stdin=interactive,
                stdout=True,
                stderr=True,
                tty=False,
                environment=env or None,
                workdir=workdir,
            ),
            abandon_on_cancel=True,
        )
        exec_id = created["Id"]
        sock = await to_thread.run_sync(
            partial(client.api.exec_start, exec_id, socket=True),
            abandon_on_cancel=True,
        )
        return cls(client, container_id, exec_id, sock, pidfile)

    async def _read_frames(self, send: MemoryObjectSendStream[Chunk]) -> None:
        async with send:
            await to_thread.run_sync(self._demultiplex, send, abandon_on_cancel=True)

    def _demultiplex(self, send: MemoryObjectSendStream[Chunk]) -> None:
        """Worker thread: forward decoded frames until the socket reaches EOF."""
        try:
            for stream_id, payload in frames_iter(self._raw, tty=False):
                if payload:
                    item = (_FRAME_STREAMS.get(stream_id, OutputStream.STDOUT), payload)
                    from_thread.run_sync(send.send_nowait, item)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            return
        except OSError as exc:
            if not self._closed:
                logger.debug("Exec socket of %s failed: %s", self._container_id[:12], exc)

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionResetError("Exec socket is closed")
        await to_thread.run_sync(self._raw.sendall, data, abandon_on_cancel=True)

    async def wait(self) -> int | None:
        for _ in range(20):
            info = await to_thread.run_sync(
                partial(self._client.api.exec_inspect, self._exec_id),
                abandon_on_cancel=True,
            )
            if not info.get("Running"):
                return info.get("ExitCode")
            await anyio.sleep(0.1)
        return None

    async def terminate(self) -> None:
        if not self._closed:
            try:
                await _run_detached(self._client, self._container_id, ["/bin/sh", "-c", _KILL_TREE, self._pidfile])
            except Exception:
                logger.warning("Failed to kill exec process tree in %s", self._container_id[:12], exc_info=True)
        await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Shutdown wakes the reader thread blocked in poll; close alone does not.
        with contextlib.suppress(OSError):
            self._raw.shutdown(socket.SHUT_RDWR)
        await self._stop_readers()
        with contextlib.suppress(OSError):
            self._raw.close()
        with contextlib.suppress(Exception):
            self._sock.close()


async def _run_detached(client: docker.DockerClient, container_id: str, argv: list[str]) -> None:
    def _run() -> None:
        exec_id = client.api.exec_create(container_id, argv, stdout=False, stderr=False)["Id"]
        client.api.exec_start(exec_id)

    await to_thread.run_sync(_run, abandon_on_cancel=True)
