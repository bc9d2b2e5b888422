"""Shell tool: runs a command in the runtime attached to the tool node.

The command runs in a persistent shell session keyed by the thread, inside
a per-thread child working directory, so ``cd`` and ``export`` survive
between calls of the same thread and never leak into other threads.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, SerializeAsAny

from graphforge.engine.models.runtime import RuntimeExecParams

if TYPE_CHECKING:
    from graphforge.engine.context import ExecutionContext
    from graphforge.engine.runtime.thread_provider import RuntimeThreadProvider
    from graphforge.engine.templates.resources import ShellResource

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_LENGTH = 10_000

# -- Tool plumbing -----------------------------------------------------------


class ToolResult(BaseModel):
    output: SerializeAsAny[BaseModel]
    title: str = ""


ToolHandler = Callable[[Any, "ExecutionContext"], Awaitable[ToolResult]]


@dataclass
class BuiltTool:
    """A tool ready to be handed to an agent loop."""

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: ToolHandler

    def json_schema(self) -> dict[str, Any]:
        return self.args_schema.model_json_schema()

    async def invoke(self, args: dict[str, Any] | BaseModel, ctx: ExecutionContext) -> ToolResult:
        validated = args if isinstance(args, self.args_schema) else self.args_schema.model_validate(args)
        return await self.handler(validated, ctx)


# -- Shell -------------------------------------------------------------------


class ShellEnvVar(BaseModel):
    name: str
    value: str


class ShellToolArgs(BaseModel):
    purpose: str = Field(min_length=1, description="Short, human readable reason for running the command.")
    command: str = Field(min_length=1, description="Shell command to execute (sh syntax, heredocs allowed).")
    timeout_ms: int | None = Field(default=None, gt=0, description="Hard limit for the whole command.")
    tail_timeout_ms: int | None = Field(
        default=None,
        gt=0,
        description="Kill the command when it prints nothing for this long.",
    )
    env: list[ShellEnvVar] = Field(default_factory=list, description="Extra environment variables.")
    max_output_length: int = Field(
        default=DEFAULT_MAX_OUTPUT_LENGTH,
        gt=0,
        description="Keep only the last N characters of stdout and stderr.",
    )


class ShellToolOutput(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""


def _tail(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[-limit:]


_BASE_DESCRIPTION = (
    "Execute a shell command in an isolated runtime and return exit code, stdout and stderr. "
    "Commands of the same conversation share one shell session: the working directory and "
    "exported variables persist between calls. Stdin is not available; use non-interactive flags. "
    "Long-running commands are killed after timeout_ms, or after tail_timeout_ms without output; "
    "in both cases the exit code is 124."
)


class ShellTool:
    name = "shell"

    def __init__(
        self,
        runtime_provider: RuntimeThreadProvider,
        *,
        node_id: str,
        resources: Sequence[ShellResource] = (),
        env: dict[str, str] | None = None,
        timeout_ms: int | None = None,
        tail_timeout_ms: int | None = None,
        name: str | None = None,
    ) -> None:
        self._runtime_provider = runtime_provider
        self._node_id = node_id
        self._resources = list(resources)
        self._env = dict(env or {})
        self._timeout_ms = timeout_ms
        self._tail_timeout_ms = tail_timeout_ms
        if name:
            self.name = name

    def description(self) -> str:
        parts = [_BASE_DESCRIPTION, self._runtime_provider.get_runtime_info()]
        parts.extend(r.information for r in self._resources if r.information)
        return "\n\n".join(parts)

    def build(self) -> BuiltTool:
        return BuiltTool(
            name=self.name,
            description=self.description(),
            args_schema=ShellToolArgs,
            handler=self.run,
        )

    def _command_env(self, args: ShellToolArgs) -> dict[str, str]:
        env: dict[str, str] = {}
        for resource in self._resources:
            env.update(resource.env)
        env.update(self._env)
        env.update({var.name: var.value for var in args.env})
        return env

    async def run(self, args: ShellToolArgs, ctx: ExecutionContext) -> ToolResult:
        try:
            runtime = await self._runtime_provider.provide(ctx)
        except Exception as exc:
            logger.warning("Shell tool %s could not acquire its runtime: %s", self._node_id, exc)
            output = ShellToolOutput(exit_code=1, stderr=str(exc) or type(exc).__name__)
            return ToolResult(output=output, title=args.purpose)

        result = await runtime.exec(
            RuntimeExecParams(
                cmd=args.command,
                timeout_ms=args.timeout_ms or self._timeout_ms,
                tail_timeout_ms=args.tail_timeout_ms or self._tail_timeout_ms,
                env=self._command_env(args),
                child_workdir=ctx.execution_key,
                create_child_workdir=True,
                session_id=ctx.execution_key,
                signal=ctx.abort,
                metadata={
                    "graph_id": ctx.graph_id,
                    "node_id": self._node_id,
                    "thread_id": ctx.thread_id,
                    "run_id": ctx.run_id,
                },
            ),
        )
        output = ShellToolOutput(
            exit_code=result.exit_code,
            stdout=_tail(result.stdout, args.max_output_length),
            stderr=_tail(result.stderr, args.max_output_length),
        )
        return ToolResult(output=output, title=args.purpose)
