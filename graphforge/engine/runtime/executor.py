"""Command executor shared by every runtime.

Runs one command either as a one-shot ``sh -c`` process or inside a
persistent shell session, and races it against two independent timers and
the caller's abort signal:

- absolute timeout: hard wall-clock ceiling for the whole command;
- tail timeout: fires when no stdout/stderr chunk arrived for that long.
  Every chunk pushes its deadline forward.

Whichever fires first terminates the process tree and yields exit code 124.
Engine failures (docker errors, broken pipes) never escape: they are
reported as a result with exit code 1 and the error message on stderr.
"""

from __future__ import annotations

import logging
import math
import re
import shlex
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import anyio

from graphforge.engine.models.enums import ExecCause, OutputStream
from graphforge.engine.models.runtime import RuntimeExecParams, RuntimeExecResult

if TYPE_CHECKING:
    from graphforge.engine.runtime.base import BaseRuntime
    from graphforge.engine.runtime.channel import ShellChannel

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
DEFAULT_MAX_OUTPUT_BYTES = 4 * 1024 * 1024
# Past this many remembered child workdirs the set is cleared; mkdir -p is idempotent.
MAX_TRACKED_WORKDIRS = 1024

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_UNSAFE_DIRNAME_CHARS = re.compile(r"[^A-Za-z0-9]")


def child_workdir_name(key: str) -> str:
    """Filesystem-safe directory name for an execution key."""
    return _UNSAFE_DIRNAME_CHARS.sub("_", key)


def _deadline(ms: int | None) -> float:
    if not ms or ms <= 0:
        return math.inf
    return anyio.current_time() + ms / 1000


def _export_lines(env: dict[str, str]) -> str:
    lines = []
    for name, value in env.items():
        if not _ENV_NAME.match(name):
            raise ValueError(f"Invalid environment variable name: {name!r}")
        lines.append(f"export {name}={shlex.quote(value)}")
    return "\n".join(lines)


# -- Output capture ----------------------------------------------------------


class _OutputBuffer:
    """Byte buffer that keeps only the last *limit* bytes."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self.data = bytearray()

    def append(self, chunk: bytes) -> None:
        self.data += chunk
        overflow = len(self.data) - self._limit
        if overflow > 0:
            del self.data[:overflow]

    def text(self, end: int | None = None) -> str:
        return bytes(self.data[:end]).decode("utf-8", errors="replace")


class _Capture:
    """Collects output of a one-shot process; finished only at EOF."""

    def __init__(self, limit: int) -> None:
        self.stdout = _OutputBuffer(limit)
        self.stderr = _OutputBuffer(limit)

    def feed(self, stream: OutputStream, chunk: bytes) -> bool:
        (self.stdout if stream is OutputStream.STDOUT else self.stderr).append(chunk)
        return False

    def stdout_text(self) -> str:
        return self.stdout.text()

    def stderr_text(self) -> str:
        return self.stderr.text()


class _SessionCapture(_Capture):
    """Collects output of one command inside a shell session.

    The command is followed by two markers: ``__GF_END_<id>__:<rc>`` on stdout
    and ``__GF_ERR_<id>__`` on stderr.  The command is complete once both
    have been seen.
    """

    def __init__(self, marker: str, limit: int) -> None:
        super().__init__(limit)
        self._end_token = f"__GF_END_{marker}__:".encode()
        self._err_token = f"__GF_ERR_{marker}__\n".encode()
        self._end_at: int | None = None
        self._err_at: int | None = None
        self.exit_code: int | None = None

    @property
    def done(self) -> bool:
        return self.exit_code is not None and self._err_at is not None

    def feed(self, stream: OutputStream, chunk: bytes) -> bool:
        super().feed(stream, chunk)
        if stream is OutputStream.STDOUT:
            self._scan_stdout(len(chunk))
        elif self._err_at is None:
            data = self.stderr.data
            index = data.find(self._err_token, max(0, len(data) - len(chunk) - len(self._err_token)))
            if index != -1:
                self._err_at = index
        return self.done

    def _scan_stdout(self, chunk_size: int) -> None:
        data = self.stdout.data
        if self._end_at is None:
            index = data.find(self._end_token, max(0, len(data) - chunk_size - len(self._end_token)))
            if index == -1:
                return
            self._end_at = index
        start = self._end_at + len(self._end_token)
        newline = data.find(b"\n", start)
        if newline == -1:
            return
        raw = bytes(data[start:newline]).strip()
        self.exit_code = int(raw) if raw.isdigit() else 1

    @staticmethod
    def _strip_marker_newline(text: str) -> str:
        return text[:-1] if text.endswith("\n") else text

    def stdout_text(self) -> str:
        if self._end_at is None:
            return super().stdout_text()
        return self._strip_marker_newline(self.stdout.text(self._end_at))

    def stderr_text(self) -> str:
        if self._err_at is None:
            return super().stderr_text()
        return self._strip_marker_newline(self.stderr.text(self._err_at))


def _session_script(script: str, env: dict[str, str], marker: str) -> str:
    exports = _export_lines(env)
    body = script if script.strip() else ":"
    parts = [exports] if exports else []
    parts.append(f"{{\n{body}\n}} </dev/null")
    # The marker is split into printf arguments so that xtrace output of
    # this line never contains it verbatim.
    parts.append(f"printf '\\n__GF_%s_%s__:%s\\n' END {marker} \"$?\"")
    parts.append(f"printf '\\n__GF_%s_%s__\\n' ERR {marker} >&2")
    return "\n".join(parts) + "\n"


# -- Sessions ----------------------------------------------------------------


@dataclass
class _Session:
    session_id: str
    channel: ShellChannel
    workdir: str


@dataclass
class _SessionLock:
    lock: anyio.Lock = field(default_factory=anyio.Lock)
    users: int = 0


class CommandExecutor:
    """Executes commands for one runtime, owning its shell sessions."""

    def __init__(self, runtime: BaseRuntime, *, max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> None:
        self._runtime = runtime
        self._max_output_bytes = max_output_bytes
        self._sessions: dict[str, _Session] = {}
        self._session_locks: dict[str, _SessionLock] = {}
        self._created_workdirs: set[str] = set()

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    @property
    def session_lock_ids(self) -> list[str]:
        return list(self._session_locks)

    async def exec(self, params: RuntimeExecParams) -> RuntimeExecResult:
        exec_path = params.cwd or self._runtime.workdir
        try:
            exec_path = await self._resolve_exec_path(params)
            if params.session_id:
                return await self._exec_in_session(params, params.session_id, exec_path)
            return await self._exec_once(params, exec_path)
        except Exception as exc:
            logger.warning("Command execution failed in %s: %s", exec_path, exc, exc_info=True)
            return RuntimeExecResult(
                exit_code=1,
                stdout="",
                stderr=str(exc) or type(exc).__name__,
                exec_path=exec_path,
                cause=ExecCause.ERROR,
            )

    async def reset(self) -> None:
        """Terminate every session; called when the runtime stops."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        self._session_locks.clear()
        self._created_workdirs.clear()
        for session in sessions:
            await session.channel.terminate()

    async def drop_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        self._prune_lock(session_id)
        if session is not None:
            logger.debug("Dropping shell session %s", session_id)
            await session.channel.terminate()

    def _prune_lock(self, session_id: str) -> None:
        entry = self._session_locks.get(session_id)
        if entry is not None and not entry.users and session_id not in self._sessions:
            del self._session_locks[session_id]

    # -- Paths -----------------------------------------------------------------

    async def _resolve_exec_path(self, params: RuntimeExecParams) -> str:
        base = params.cwd or self._runtime.workdir
        if not params.child_workdir:
            return base
        if not params.create_child_workdir:
            return f"{base.rstrip('/')}/{params.child_workdir}"

        path = f"{base.rstrip('/')}/{child_workdir_name(params.child_workdir)}"
        if path not in self._created_workdirs:
            result = await self._exec_once(
                RuntimeExecParams(cmd=f"mkdir -p {shlex.quote(path)}", timeout_ms=30_000),
                base,
            )
            if result.fail:
                raise RuntimeError(f"Failed to create working directory {path}: {result.stderr}")
            if len(self._created_workdirs) >= MAX_TRACKED_WORKDIRS:
                self._created_workdirs.clear()
            self._created_workdirs.add(path)
        return path

    # -- One-shot --------------------------------------------------------------

    async def _exec_once(self, params: RuntimeExecParams, exec_path: str) -> RuntimeExecResult:
        if params.signal is not None and params.signal.is_set():
            return self._interrupted(ExecCause.ABORTED, _Capture(0), params, exec_path)

        channel = await self._runtime.open_channel(
            ["/bin/sh", "-c", params.script],
            workdir=exec_path,
            env=params.env,
            interactive=False,
        )
        capture = _Capture(self._max_output_bytes)
        cause = ExecCause.ERROR
        try:
            cause = await self._race(channel, params, capture)
            if cause is not ExecCause.COMPLETED:
                return self._interrupted(cause, capture, params, exec_path)
            exit_code = await channel.wait()
            return RuntimeExecResult(
                exit_code=exit_code if exit_code is not None else 1,
                stdout=capture.stdout_text(),
                stderr=capture.stderr_text(),
                exec_path=exec_path,
            )
        finally:
            with anyio.CancelScope(shield=True):
                if cause is ExecCause.COMPLETED:
                    await channel.aclose()
                else:
                    await channel.terminate()

    # -- Sessions --------------------------------------------------------------

    async def _ensure_session(self, session_id: str, workdir: str) -> _Session:
        session = self._sessions.get(session_id)
        if session is not None and not session.channel.closed:
            return session
        if session is not None:
            await self.drop_session(session_id)

        logger.debug("Starting shell session %s in %s", session_id, workdir)
        channel = await self._runtime.open_channel(["/bin/sh"], workdir=workdir, env=None, interactive=True)
        session = _Session(session_id=session_id, channel=channel, workdir=workdir)
        self._sessions[session_id] = session
        return session

    async def _exec_in_session(self, params: RuntimeExecParams, session_id: str, exec_path: str) -> RuntimeExecResult:
        entry = self._session_locks.setdefault(session_id, _SessionLock())
        entry.users += 1
        try:
            async with entry.lock:
                return await self._exec_locked(params, session_id, exec_path)
        finally:
            entry.users -= 1
            self._prune_lock(session_id)

    async def _exec_locked(self, params: RuntimeExecParams, session_id: str, exec_path: str) -> RuntimeExecResult:
        if params.signal is not None and params.signal.is_set():
            return self._interrupted(ExecCause.ABORTED, _Capture(0), params, exec_path)

        session = await self._ensure_session(session_id, exec_path)
        channel = session.channel
        marker = uuid.uuid4().hex
        capture = _SessionCapture(marker, self._max_output_bytes)

        channel.discard_pending()
        cause = ExecCause.ERROR
        try:
            await channel.send(_session_script(params.script, params.env, marker).encode())
            cause = await self._race(channel, params, capture)
        finally:
            if cause is not ExecCause.COMPLETED:
                with anyio.CancelScope(shield=True):
                    await self.drop_session(session_id)

        if capture.done:
            return RuntimeExecResult(
                exit_code=capture.exit_code if capture.exit_code is not None else 1,
                stdout=capture.stdout_text(),
                stderr=capture.stderr_text(),
                exec_path=exec_path,
            )
        if cause is not ExecCause.COMPLETED:
            return self._interrupted(cause, capture, params, exec_path)

        # The shell itself exited (e.g. ``exit 3``) before printing markers.
        exit_code = await channel.wait()
        with anyio.CancelScope(shield=True):
            await self.drop_session(session_id)
        return RuntimeExecResult(
            exit_code=exit_code if exit_code is not None else 1,
            stdout=capture.stdout_text(),
            stderr=capture.stderr_text(),
            exec_path=exec_path,
        )

    # -- Timeout race ----------------------------------------------------------

    async def _race(self, channel: ShellChannel, params: RuntimeExecParams, capture: _Capture) -> ExecCause:
        finished = False
        async with anyio.create_task_group() as tg:
            if params.signal is not None:
                tg.start_soon(_cancel_on_event, params.signal, tg.cancel_scope)
            with anyio.CancelScope(deadline=_deadline(params.timeout_ms)) as hard_scope:
                with anyio.CancelScope(deadline=_deadline(params.tail_timeout_ms)) as tail_scope:
                    await self._pump(channel, capture, tail_scope, params.tail_timeout_ms)
                    finished = True
            tg.cancel_scope.cancel()

        if finished:
            return ExecCause.COMPLETED
        if tail_scope.cancelled_caught:
            return ExecCause.TAIL_TIMEOUT
        if hard_scope.cancelled_caught:
            return ExecCause.TIMEOUT
        return ExecCause.ABORTED

    @staticmethod
    async def _pump(
        channel: ShellChannel,
        capture: _Capture,
        tail_scope: anyio.CancelScope,
        tail_timeout_ms: int | None,
    ) -> None:
        while True:
            item = await channel.receive()
            if item is None:
                return
            stream, chunk = item
            if tail_timeout_ms and tail_timeout_ms > 0:
                tail_scope.deadline = anyio.current_time() + tail_timeout_ms / 1000
            if capture.feed(stream, chunk):
                return

    @staticmethod
    def _interrupted(
        cause: ExecCause,
        capture: _Capture,
        params: RuntimeExecParams,
        exec_path: str,
    ) -> RuntimeExecResult:
        if cause is ExecCause.TIMEOUT:
            tag = f"[graphforge] command timed out after {params.timeout_ms}ms"
        elif cause is ExecCause.TAIL_TIMEOUT:
            tag = f"[graphforge] no output received for {params.tail_timeout_ms}ms, command timed out"
        else:
            tag = "[graphforge] command aborted"
        stderr = capture.stderr_text()
        return RuntimeExecResult(
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=capture.stdout_text(),
            stderr=f"{stderr.rstrip(chr(10))}\n{tag}" if stderr else tag,
            exec_path=exec_path,
            cause=cause,
        )


async def _cancel_on_event(event: anyio.Event, scope: anyio.CancelScope) -> None:
    await event.wait()
    scope.cancel()
