"""Host-process runtime.

Commands run as local subprocesses below a root directory.  There is no
isolation beyond the working directory, so this runtime is meant for
development and tests; production graphs use the docker runtime.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

import anyio
from anyio import to_thread

from graphforge.engine.models.enums import RuntimeEventType, RuntimeState, RuntimeType
from graphforge.engine.models.runtime import RuntimeEvent, RuntimeStartParams
from graphforge.engine.runtime.base import BaseRuntime
from graphforge.engine.runtime.channel import LocalShellChannel
from graphforge.engine.runtime.executor import DEFAULT_MAX_OUTPUT_BYTES

if TYPE_CHECKING:
    from graphforge.engine.runtime.channel import ShellChannel

logger = logging.getLogger(__name__)


class LocalRuntime(BaseRuntime):
    runtime_type = RuntimeType.LOCAL

    def __init__(
        self,
        root: str | Path,
        *,
        init_script_timeout_ms: int = 10 * 60 * 1000,
        stop_timeout: float = 15.0,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ) -> None:
        super().__init__(max_output_bytes=max_output_bytes)
        self._root = Path(root).resolve()
        self._env: dict[str, str] = {}
        self._init_script_timeout_ms = init_script_timeout_ms
        self._stop_timeout = stop_timeout

    @property
    def root(self) -> Path:
        return self._root

    async def start(self, params: RuntimeStartParams) -> None:
        if self._state is RuntimeState.RUNNING and not params.recreate:
            return
        if self._state is RuntimeState.RUNNING:
            await self.stop()

        self._state = RuntimeState.STARTING
        workdir = Path(self.get_workdir(params.workdir, parent=str(self._root)))
        await to_thread.run_sync(lambda: workdir.mkdir(parents=True, exist_ok=True))
        self._workdir = str(workdir)
        self._env = dict(params.env)
        logger.info("Local runtime started in %s", self._workdir)

        try:
            await self._run_init_script(params, self._init_script_timeout_ms)
        except BaseException:
            await self.stop()
            raise

        self._state = RuntimeState.RUNNING
        await self._emit(RuntimeEvent(type=RuntimeEventType.START, params=params))

    async def stop(self) -> None:
        if self._state in (RuntimeState.NOT_STARTED, RuntimeState.STOPPED):
            self._state = RuntimeState.STOPPED
            return
        self._state = RuntimeState.STOPPING
        with anyio.move_on_after(self._stop_timeout, shield=True) as scope:
            await self._executor.reset()
        if scope.cancelled_caught:
            logger.warning("Local runtime stop exceeded %ss, abandoning sessions", self._stop_timeout)
        self._state = RuntimeState.STOPPED
        await self._emit(RuntimeEvent(type=RuntimeEventType.STOP))

    async def open_channel(
        self,
        argv: list[str],
        *,
        workdir: str | None,
        env: dict[str, str] | None,
        interactive: bool,
    ) -> ShellChannel:
        process_env = {**os.environ, **self._env, **(env or {})}
        return await LocalShellChannel.open(
            argv,
            cwd=workdir or self._workdir,
            env=process_env,
            interactive=interactive,
        )

    def get_runtime_info(self) -> str:
        return f"Local shell runtime. Working directory: {self._workdir}"
