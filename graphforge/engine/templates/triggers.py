"""Trigger node templates."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from graphforge.engine.context import ExecutionContext
from graphforge.engine.models.enums import NodeKind
from graphforge.engine.templates.base import NodeConnection, NodeLifecycle, NodeTemplate, TemplateConfig

if TYPE_CHECKING:
    from graphforge.engine.graph.registry import GraphRegistry
    from graphforge.engine.models.graph import GraphNode
    from graphforge.engine.templates.agents import SimpleAgent
    from graphforge.engine.threads import ThreadRegistry


@dataclass
class TriggerEvent:
    messages: list[str]
    context: ExecutionContext


TriggerListener = Callable[[TriggerEvent], Awaitable[Any]]


class ManualTriggerConfig(TemplateConfig):
    """Manual triggers take no configuration."""


class ManualTrigger:
    """Fires on explicit :meth:`trigger` calls and notifies subscribers once each."""

    def __init__(self, graph_id: str, node_id: str, thread_registry: ThreadRegistry) -> None:
        self.graph_id = graph_id
        self.node_id = node_id
        self._thread_registry = thread_registry
        self._listeners: list[TriggerListener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: TriggerListener) -> Callable[[], None]:
        """Register *listener*; the returned callable unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def clear(self) -> None:
        self._listeners.clear()

    async def trigger(
        self,
        messages: Sequence[str],
        *,
        thread_id: str | None = None,
        parent_thread_id: str | None = None,
    ) -> list[Any]:
        """Run every subscriber for one event inside a fresh execution context."""
        ctx = ExecutionContext(
            thread_id=thread_id or uuid.uuid4().hex,
            run_id=uuid.uuid4().hex,
            parent_thread_id=parent_thread_id,
            graph_id=self.graph_id,
            node_id=self.node_id,
        )
        event = TriggerEvent(messages=list(messages), context=ctx)
        logger.info("Trigger {}/{} fired for thread {}", self.graph_id, self.node_id, ctx.thread_id)

        self._thread_registry.register(ctx)
        try:
            return [await listener(event) for listener in list(self._listeners)]
        finally:
            self._thread_registry.unregister(ctx)


class ManualTriggerTemplate(NodeTemplate):
    id = "manual-trigger"
    name = "Manual trigger"
    description = "Starts connected agents on demand."
    kind = NodeKind.TRIGGER
    schema = ManualTriggerConfig
    outputs = (NodeConnection.kind(NodeKind.SIMPLE_AGENT, required=True, multiple=True),)

    def __init__(self, graph_registry: GraphRegistry, thread_registry: ThreadRegistry) -> None:
        super().__init__(graph_registry)
        self.thread_registry = thread_registry

    def create(self) -> NodeLifecycle:
        unsubscribers: list[Callable[[], None]] = []

        def _release() -> None:
            while unsubscribers:
                unsubscribers.pop()()

        async def provide(node: GraphNode) -> ManualTrigger:
            return ManualTrigger(node.graph_id, node.node_id, self.thread_registry)

        async def configure(node: GraphNode, instance: ManualTrigger) -> None:
            _release()
            for entry in self.output_nodes(node, kind=NodeKind.SIMPLE_AGENT):
                unsubscribers.append(instance.subscribe(_dispatch_to(entry.instance)))

        async def destroy(instance: ManualTrigger) -> None:
            _release()
            instance.clear()

        return NodeLifecycle(provide=provide, configure=configure, destroy=destroy)


def _dispatch_to(agent: SimpleAgent) -> TriggerListener:
    async def dispatch(event: TriggerEvent) -> Any:
        return await agent.run(event.messages, event.context)

    return dispatch
