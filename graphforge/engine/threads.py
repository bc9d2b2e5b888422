"""In-process thread registry.

Tracks in-flight executions by thread id so that "stop this thread" can
reach their abort signals.  Ephemeral: empty on process restart.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from graphforge.engine.context import ExecutionContext


class ShuttingDownError(RuntimeError):
    """Raised when attempting to register an execution during shutdown."""


class ThreadRegistry:
    """Registry of currently executing contexts, keyed by thread id.

    The registry also provides a drain mechanism for graceful shutdown:
    ``wait_until_drained`` blocks until all executions have been unregistered.
    """

    def __init__(self) -> None:
        self._threads: dict[str, list[ExecutionContext]] = {}
        self._drain_event = asyncio.Event()
        self._drain_event.set()
        self._shutting_down = False

    @staticmethod
    def _key(ctx: ExecutionContext) -> str:
        return ctx.thread_id or ctx.execution_key

    # -- Mutation --------------------------------------------------------------

    def register(self, ctx: ExecutionContext) -> None:
        if self._shutting_down:
            raise ShuttingDownError
        key = self._key(ctx)
        logger.debug("Registry: register execution for thread {}", key)
        self._threads.setdefault(key, []).append(ctx)
        self._drain_event.clear()

    def unregister(self, ctx: ExecutionContext) -> None:
        key = self._key(ctx)
        contexts = self._threads.get(key, [])
        if ctx in contexts:
            contexts.remove(ctx)
            logger.debug("Registry: unregister execution for thread {}", key)
        if not contexts:
            self._threads.pop(key, None)
        if not self._threads:
            self._drain_event.set()

    # -- Query -----------------------------------------------------------------

    def get(self, thread_id: str) -> list[ExecutionContext]:
        return list(self._threads.get(thread_id, []))

    @property
    def active_count(self) -> int:
        return sum(len(contexts) for contexts in self._threads.values())

    # -- Control ---------------------------------------------------------------

    def stop_thread(self, thread_id: str) -> int:
        """Abort every in-flight execution of *thread_id*.

        Returns the number of executions that were signalled.  A later run of
        the same thread gets a fresh context and is unaffected.
        """
        contexts = self._threads.get(thread_id, [])
        for ctx in contexts:
            ctx.abort.set()
        if contexts:
            logger.info("Registry: stopped thread {} ({} executions)", thread_id, len(contexts))
        return len(contexts)

    def stop_all(self) -> int:
        return sum(self.stop_thread(thread_id) for thread_id in list(self._threads))

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Mark the registry as shutting down.  New registrations are refused."""
        self._shutting_down = True
        logger.info("Registry: shutdown initiated, refusing new executions")
        if not self._threads:
            self._drain_event.set()

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until all executions have been unregistered.

        Returns ``True`` if the registry is empty, ``False`` if *timeout*
        expired with executions still active.
        """
        if not self._threads:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Registry: drain timed out after {}s with {} executions still active",
                timeout,
                self.active_count,
            )
            return False
        else:
            return True
