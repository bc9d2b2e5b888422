"""Per-runtime-node cache of a started runtime.

A runtime node's instance handle is a :class:`RuntimeThreadProvider`.
Providing it is cheap; the runtime itself starts lazily on the first tool
call, under a lock, so concurrent first calls start it exactly once.  Tool
nodes register one-shot jobs (resource init scripts and the like) that run
once per runtime instance right after it starts.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import anyio
from loguru import logger
from pydantic import BaseModel, Field

from graphforge.engine.models.enums import RuntimeState, RuntimeType
from graphforge.engine.models.runtime import ProvideRuntimeParams, RuntimeStartParams

if TYPE_CHECKING:
    from graphforge.engine.context import ExecutionContext
    from graphforge.engine.runtime.base import BaseRuntime
    from graphforge.engine.runtime.provider import RuntimeProvider

RuntimeJob = Callable[["BaseRuntime", "ExecutionContext"], Awaitable[None]]


class RuntimeThreadProviderParams(BaseModel):
    graph_id: str
    runtime_node_id: str
    type: RuntimeType = RuntimeType.DOCKER
    graph_version: str | None = None
    temporary: bool = False
    start_params: RuntimeStartParams = Field(default_factory=RuntimeStartParams)


class RuntimeThreadProvider:
    def __init__(self, runtime_provider: RuntimeProvider, params: RuntimeThreadProviderParams) -> None:
        self._runtime_provider = runtime_provider
        self._params = params
        self._lock = anyio.Lock()
        self._runtime: BaseRuntime | None = None
        self._stale = False
        self._extra_env: dict[str, dict[str, str]] = {}
        self._started_env: dict[str, str] = {}
        self._jobs: dict[str, dict[str, RuntimeJob]] = {}
        self._completed_jobs: set[str] = set()

    # -- Params ----------------------------------------------------------------

    def get_params(self) -> RuntimeThreadProviderParams:
        return self._params

    def set_params(self, params: RuntimeThreadProviderParams) -> None:
        """Replace params; a start-relevant change restarts the runtime on next use."""
        if params.model_dump() != self._params.model_dump() and self._runtime is not None:
            logger.info("Runtime params of node {} changed, runtime will restart", params.runtime_node_id)
            self._stale = True
        self._params = params

    def add_env_variables(self, env: dict[str, str], owner_id: str = "") -> None:
        """Merge *env* into what *owner_id* contributes to the next start."""
        self._extra_env[owner_id] = {**self._extra_env.get(owner_id, {}), **env}

    def set_env_variables(self, owner_id: str, env: dict[str, str]) -> None:
        """Replace everything *owner_id* contributes; an empty map withdraws it."""
        if env:
            self._extra_env[owner_id] = dict(env)
        else:
            self._extra_env.pop(owner_id, None)

    @property
    def env(self) -> dict[str, str]:
        merged = dict(self._params.start_params.env)
        for contributed in self._extra_env.values():
            merged.update(contributed)
        return merged

    # -- Jobs ------------------------------------------------------------------

    def register_job(self, owner_id: str, job_id: str, fn: RuntimeJob) -> None:
        """Register *fn* to run once per runtime instance.

        Jobs are deduplicated by *job_id* across owners, so two tool nodes
        sharing a resource run its init once.
        """
        self._jobs.setdefault(owner_id, {})[job_id] = fn

    def remove_executor(self, owner_id: str) -> None:
        """Forget every job and env variable contributed by *owner_id*."""
        self._jobs.pop(owner_id, None)
        self._extra_env.pop(owner_id, None)

    def _pending_jobs(self) -> list[tuple[str, RuntimeJob]]:
        pending: dict[str, RuntimeJob] = {}
        for jobs in self._jobs.values():
            for job_id, fn in jobs.items():
                if job_id not in self._completed_jobs and job_id not in pending:
                    pending[job_id] = fn
        return list(pending.items())

    # -- Provide ---------------------------------------------------------------

    @property
    def runtime(self) -> BaseRuntime | None:
        return self._runtime

    def _build_provide_params(self, *, recreate: bool) -> ProvideRuntimeParams:
        start = self._params.start_params.model_copy(update={"env": self.env, "recreate": recreate})
        return ProvideRuntimeParams(
            type=self._params.type,
            graph_id=self._params.graph_id,
            runtime_node_id=self._params.runtime_node_id,
            graph_version=self._params.graph_version,
            temporary=self._params.temporary,
            start_params=start,
        )

    async def provide(self, ctx: ExecutionContext) -> BaseRuntime:
        """Return the running runtime, starting it and running pending jobs if needed."""
        async with self._lock:
            recreate = False
            if self._runtime is not None:
                if self.env != self._started_env:
                    logger.info("Env of runtime node {} changed, restarting", self._params.runtime_node_id)
                    self._stale = True
                if self._stale or self._runtime.state is not RuntimeState.RUNNING:
                    recreate = self._stale
                    await self._runtime.stop()
                    self._runtime = None

            if self._runtime is None:
                params = self._build_provide_params(recreate=recreate)
                self._runtime = await self._runtime_provider.provide(params)
                self._started_env = params.start_params.env
                self._completed_jobs.clear()
                self._stale = False

            for job_id, fn in self._pending_jobs():
                logger.debug("Running job {} on runtime node {}", job_id, self._params.runtime_node_id)
                await fn(self._runtime, ctx)
                self._completed_jobs.add(job_id)
            return self._runtime

    async def cleanup(self) -> None:
        """Stop the cached runtime; a no-op when none was started."""
        async with self._lock:
            runtime, self._runtime = self._runtime, None
            self._completed_jobs.clear()
            self._stale = False
        if runtime is not None:
            await runtime.stop()

    def get_runtime_info(self) -> str:
        if self._runtime is not None:
            return self._runtime.get_runtime_info()
        image = self._params.start_params.image
        if self._params.type is RuntimeType.DOCKER:
            return f"Docker container runtime (image: {image or 'default'}), started on first use."
        return "Local shell runtime, started on first use."
