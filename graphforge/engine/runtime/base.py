"""Runtime abstraction: an isolated place where shell commands run."""

from __future__ import annotations

import logging
import posixpath
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, ClassVar

from graphforge.engine.errors import InitScriptFailedError, RuntimeUnavailableError
from graphforge.engine.models.enums import ExecCause, RuntimeEventType, RuntimeState, RuntimeType
from graphforge.engine.models.runtime import (
    BASE_RUNTIME_WORKDIR,
    RuntimeEvent,
    RuntimeExecParams,
    RuntimeExecResult,
    RuntimeStartParams,
)
from graphforge.engine.runtime.executor import DEFAULT_MAX_OUTPUT_BYTES, CommandExecutor

if TYPE_CHECKING:
    from graphforge.engine.runtime.channel import ShellChannel

logger = logging.getLogger(__name__)

RuntimeListener = Callable[[RuntimeEvent], Awaitable[None]]


class BaseRuntime(ABC):
    """A runtime moves through ``not_started -> starting -> running -> stopping
    -> stopped``; commands are accepted only while running.

    Subclasses implement container (or process) management plus
    :meth:`open_channel`; command execution, sessions and timeouts are shared
    through :class:`CommandExecutor`.
    """

    runtime_type: ClassVar[RuntimeType]

    def __init__(self, *, max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> None:
        self._state = RuntimeState.NOT_STARTED
        self._workdir = BASE_RUNTIME_WORKDIR
        self._listeners: list[RuntimeListener] = []
        self._executor = CommandExecutor(self, max_output_bytes=max_output_bytes)

    # -- State -----------------------------------------------------------------

    @property
    def state(self) -> RuntimeState:
        return self._state

    @property
    def workdir(self) -> str:
        """Default working directory of commands."""
        return self._workdir

    @property
    def executor(self) -> CommandExecutor:
        return self._executor

    def get_workdir(self, workdir: str | list[str] | None = None, parent: str | None = None) -> str:
        """Resolve *workdir* below *parent* (the runtime root by default)."""
        root = parent or BASE_RUNTIME_WORKDIR
        parts = workdir if isinstance(workdir, list) else [workdir] if workdir else []
        joined = "/".join([root, *parts])
        return posixpath.normpath(joined.replace("//", "/"))

    # -- Events ----------------------------------------------------------------

    def subscribe(self, listener: RuntimeListener) -> Callable[[], None]:
        """Register *listener* for runtime events; returns an unsubscribe handle."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self, event: RuntimeEvent) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception("Runtime event listener failed on %s", event.type)

    # -- Lifecycle -------------------------------------------------------------

    @abstractmethod
    async def start(self, params: RuntimeStartParams) -> None: ...

    @abstractmethod
    async def stop(self) -> None:
        """Best-effort teardown; must never raise."""

    @abstractmethod
    async def open_channel(
        self,
        argv: list[str],
        *,
        workdir: str | None,
        env: dict[str, str] | None,
        interactive: bool,
    ) -> ShellChannel: ...

    @abstractmethod
    def get_runtime_info(self) -> str:
        """Human-readable description for tool prompts."""

    # -- Execution -------------------------------------------------------------

    async def exec(self, params: RuntimeExecParams) -> RuntimeExecResult:
        if self._state is not RuntimeState.RUNNING:
            error = RuntimeUnavailableError(f"Runtime is not running (state={self._state})")
            return RuntimeExecResult(exit_code=1, stderr=str(error), exec_path=self._workdir, cause=ExecCause.ERROR)

        await self._emit(RuntimeEvent(type=RuntimeEventType.EXEC_START, params=params))
        result = await self._executor.exec(params)
        await self._emit(RuntimeEvent(type=RuntimeEventType.EXEC_END, params=params, result=result))
        return result

    async def _run_init_script(self, params: RuntimeStartParams, default_timeout_ms: int) -> None:
        """Run init commands in order; the first failure aborts the start."""
        timeout_ms = params.init_script_timeout_ms or default_timeout_ms
        for cmd in params.init_script:
            logger.info("Running init script command: %s", cmd)
            result = await self._executor.exec(
                RuntimeExecParams(cmd=cmd, timeout_ms=timeout_ms, cwd=self._workdir, env=params.env),
            )
            if result.fail:
                raise InitScriptFailedError(cmd, result.exit_code, result.stderr)
