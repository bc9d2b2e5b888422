"""Agent node template.

The agent collects the tools of its connected tool nodes.  The model loop
itself (prompting, tool calling) is supplied from outside as an
:data:`AgentRunner`; the engine only wires tools and dispatches triggers.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from graphforge.engine.models.enums import NodeKind
from graphforge.engine.templates.base import NodeConnection, NodeLifecycle, NodeTemplate, TemplateConfig

if TYPE_CHECKING:
    from graphforge.engine.context import ExecutionContext
    from graphforge.engine.graph.registry import GraphRegistry
    from graphforge.engine.models.graph import GraphNode
    from graphforge.engine.tools.shell import BuiltTool, ToolResult

AgentRunner = Callable[["SimpleAgent", list[str], "ExecutionContext"], Awaitable[Any]]


class SimpleAgentConfig(TemplateConfig):
    name: str = "agent"
    description: str = ""
    instructions: str = ""


class SimpleAgent:
    def __init__(self, node_id: str, config: SimpleAgentConfig, runner: AgentRunner | None = None) -> None:
        self.node_id = node_id
        self.config = config
        self.runner = runner
        # Tool node instances, shared by reference so re-configured tools show up here.
        self._tool_sources: list[list[BuiltTool]] = []

    def set_tool_sources(self, sources: list[list[BuiltTool]]) -> None:
        self._tool_sources = sources

    @property
    def tools(self) -> list[BuiltTool]:
        return [tool for source in self._tool_sources for tool in source]

    def get_tool(self, name: str) -> BuiltTool:
        for tool in self.tools:
            if tool.name == name:
                return tool
        raise LookupError(f"Agent '{self.node_id}' has no tool named '{name}'")

    async def invoke_tool(self, name: str, args: dict[str, Any], ctx: ExecutionContext) -> ToolResult:
        return await self.get_tool(name).invoke(args, ctx)

    async def run(self, messages: list[str], ctx: ExecutionContext) -> Any:
        if self.runner is None:
            raise RuntimeError(f"Agent '{self.node_id}' has no runner attached")
        return await self.runner(self, messages, ctx)


class SimpleAgentTemplate(NodeTemplate):
    id = "simple-agent"
    name = "Simple agent"
    description = "Agent that uses the tools of its connected tool nodes."
    kind = NodeKind.SIMPLE_AGENT
    schema = SimpleAgentConfig
    inputs = (
        NodeConnection.kind(NodeKind.TOOL, multiple=True),
        NodeConnection.kind(NodeKind.TRIGGER, multiple=True),
    )

    def __init__(self, graph_registry: GraphRegistry, runner: AgentRunner | None = None) -> None:
        super().__init__(graph_registry)
        self.runner = runner

    def create(self) -> NodeLifecycle:
        async def provide(node: GraphNode) -> SimpleAgent:
            return SimpleAgent(node.node_id, node.config, runner=self.runner)  # type: ignore[arg-type]

        async def configure(node: GraphNode, instance: SimpleAgent) -> None:
            instance.config = node.config  # type: ignore[assignment]
            instance.set_tool_sources([entry.instance for entry in self.input_nodes(node, kind=NodeKind.TOOL)])

        async def destroy(instance: SimpleAgent) -> None:
            instance.set_tool_sources([])

        return NodeLifecycle(provide=provide, configure=configure, destroy=destroy)
