"""Per-thread execution context.

Carries the identity of one agent run (graph, node, thread, run) and its
abort signal.  Tools derive the sandbox working directory and the persistent
shell session id from :attr:`ExecutionContext.execution_key`, so the same
thread always lands in the same directory and shell.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import anyio

from graphforge.engine.errors import MissingExecutionIdentityError


@dataclass
class ExecutionContext:
    """In-flight state for a single graph execution.

    Created by a trigger (or any external runner) at run start and registered
    in the ThreadRegistry so that ``stop_thread`` can reach its abort signal.
    """

    # -- Identity --------------------------------------------------------------
    thread_id: str | None = None
    run_id: str | None = None
    parent_thread_id: str | None = None
    """Set for sub-agent runs; they share the parent's sandbox."""

    graph_id: str | None = None
    node_id: str | None = None

    # -- Control ---------------------------------------------------------------
    abort: anyio.Event = field(default_factory=anyio.Event)

    def __post_init__(self) -> None:
        if not (self.parent_thread_id or self.thread_id or self.run_id):
            raise MissingExecutionIdentityError

    @property
    def execution_key(self) -> str:
        """Stable key for workdir and shell session of this thread."""
        return self.parent_thread_id or self.thread_id or self.run_id  # type: ignore[return-value]

    @property
    def aborted(self) -> bool:
        return self.abort.is_set()
