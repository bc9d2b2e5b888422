"""Tool node templates."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import Field

from graphforge.engine.errors import InitScriptFailedError, ResourceNotFoundError
from graphforge.engine.models.enums import NodeKind
from graphforge.engine.models.runtime import RuntimeExecParams
from graphforge.engine.templates.base import NodeConnection, NodeLifecycle, NodeTemplate, TemplateConfig
from graphforge.engine.tools.shell import BuiltTool, ShellTool

if TYPE_CHECKING:
    from graphforge.engine.context import ExecutionContext
    from graphforge.engine.graph.registry import GraphRegistry
    from graphforge.engine.models.graph import GraphNode
    from graphforge.engine.runtime.base import BaseRuntime
    from graphforge.engine.runtime.thread_provider import RuntimeJob, RuntimeThreadProvider
    from graphforge.engine.settings import GraphForgeSettings
    from graphforge.engine.templates.resources import ShellResource


class ShellToolConfig(TemplateConfig):
    name: str = Field(default="shell", pattern=r"^[A-Za-z0-9_-]+$")
    env: dict[str, str] = Field(default_factory=dict)
    timeout_ms: int | None = Field(default=None, gt=0)
    tail_timeout_ms: int | None = Field(default=None, gt=0)


def resource_init_job(resource: ShellResource, default_timeout_ms: int) -> RuntimeJob:
    """Job that runs a resource's init script once per runtime instance."""

    async def run(runtime: BaseRuntime, ctx: ExecutionContext) -> None:
        for cmd in resource.init_script:
            result = await runtime.exec(
                RuntimeExecParams(
                    cmd=cmd,
                    timeout_ms=resource.init_script_timeout_ms or default_timeout_ms,
                    env=resource.env,
                    signal=ctx.abort,
                ),
            )
            if result.fail:
                raise InitScriptFailedError(cmd, result.exit_code, result.stderr)

    return run


class ShellToolTemplate(NodeTemplate):
    id = "shell-tool"
    name = "Shell"
    description = "Lets connected agents run shell commands in the connected runtime."
    kind = NodeKind.TOOL
    schema = ShellToolConfig
    inputs = (
        NodeConnection.kind(NodeKind.RUNTIME, required=True),
        NodeConnection.kind(NodeKind.RESOURCE, multiple=True),
    )
    outputs = (NodeConnection.kind(NodeKind.SIMPLE_AGENT, multiple=True),)

    def __init__(self, graph_registry: GraphRegistry, settings: GraphForgeSettings) -> None:
        super().__init__(graph_registry)
        self.settings = settings

    def _resources(self, node: GraphNode) -> list[ShellResource]:
        resources = []
        for node_id in node.inputs:
            entry = self.graph_registry.get_node(node.graph_id, node_id)
            if entry is None:
                raise ResourceNotFoundError(node_id, f"input of shell tool '{node.node_id}' is not registered")
            if entry.kind == NodeKind.RESOURCE:
                resources.append(entry.instance)
        return resources

    def create(self) -> NodeLifecycle:
        bound: dict[str, tuple[str, RuntimeThreadProvider]] = {}

        async def provide(node: GraphNode) -> list[BuiltTool]:
            return []

        async def configure(node: GraphNode, instance: list[BuiltTool]) -> None:
            config: ShellToolConfig = node.config  # type: ignore[assignment]
            runtime_provider: RuntimeThreadProvider = self.require_input_node(node, kind=NodeKind.RUNTIME).instance
            resources = self._resources(node)

            previous = bound.get("runtime")
            if previous is not None and previous[1] is not runtime_provider:
                previous[1].remove_executor(node.node_id)
            bound["runtime"] = (node.node_id, runtime_provider)

            runtime_provider.remove_executor(node.node_id)
            env: dict[str, str] = {}
            for resource in resources:
                env.update(resource.env)
            runtime_provider.set_env_variables(node.node_id, env)

            for resource in resources:
                if resource.init_script:
                    runtime_provider.register_job(
                        node.node_id,
                        f"{resource.node_id}:init",
                        resource_init_job(resource, self.settings.init_script_timeout_ms),
                    )

            tool = ShellTool(
                runtime_provider,
                node_id=node.node_id,
                resources=resources,
                env=config.env,
                timeout_ms=config.timeout_ms or self.settings.exec_timeout_ms,
                tail_timeout_ms=config.tail_timeout_ms or self.settings.exec_tail_timeout_ms,
                name=config.name,
            )
            instance[:] = [tool.build()]

        async def destroy(instance: list[BuiltTool]) -> None:
            entry = bound.pop("runtime", None)
            if entry is not None:
                owner_id, runtime_provider = entry
                runtime_provider.remove_executor(owner_id)
            instance.clear()

        return NodeLifecycle(provide=provide, configure=configure, destroy=destroy)
