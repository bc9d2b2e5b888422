"""In-process registry of compiled graph nodes.

Entries exist between a successful ``provide`` and the matching ``destroy``.
Reads return snapshots and never block.  Mutations are serialised per graph
id: callers of ``register``, ``unregister``, ``destroy_node`` and ``destroy``
must hold ``locked(graph_id)``, which the compiler does around every edit.
The registry does not take the lock itself because the compiler already
holds it while configuring, and ``anyio.Lock`` is not reentrant.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import anyio
from loguru import logger

if TYPE_CHECKING:
    from pydantic import BaseModel

    from graphforge.engine.models.enums import NodeKind
    from graphforge.engine.models.graph import GraphNode
    from graphforge.engine.templates.base import NodeLifecycle


@dataclass
class CompiledGraphNode:
    """Live node of a compiled graph: the instance plus how to tear it down."""

    id: str
    kind: NodeKind
    template_id: str
    instance: Any
    config: BaseModel
    node: GraphNode
    lifecycle: NodeLifecycle

    async def destroy(self) -> None:
        await self.lifecycle.destroy(self.instance)


class GraphRegistry:
    def __init__(self) -> None:
        self._graphs: dict[str, dict[str, CompiledGraphNode]] = {}
        self._locks: dict[str, anyio.Lock] = {}

    @asynccontextmanager
    async def locked(self, graph_id: str) -> AsyncIterator[None]:
        """Hold the per-graph mutation lock.

        The lock is forgotten on exit once the graph is gone and nobody else
        is waiting for it.
        """
        lock = self._locks.setdefault(graph_id, anyio.Lock())
        try:
            async with lock:
                yield
        finally:
            stats = lock.statistics()
            if graph_id not in self._graphs and not stats.locked and not stats.tasks_waiting:
                self._locks.pop(graph_id, None)

    def lock_ids(self) -> list[str]:
        return list(self._locks)

    # -- Mutation --------------------------------------------------------------

    def register(self, graph_id: str, node_id: str, entry: CompiledGraphNode) -> None:
        if entry.id != node_id:
            raise ValueError(f"Entry {entry.id!r} cannot be registered as node {node_id!r}")
        self._graphs.setdefault(graph_id, {})[node_id] = entry
        logger.debug("Graph registry: registered {}/{} ({})", graph_id, node_id, entry.template_id)

    def unregister(self, graph_id: str, node_id: str) -> CompiledGraphNode | None:
        """Drop an entry without destroying it."""
        nodes = self._graphs.get(graph_id)
        if nodes is None:
            return None
        entry = nodes.pop(node_id, None)
        if not nodes:
            self._graphs.pop(graph_id, None)
        return entry

    async def destroy_node(self, graph_id: str, node_id: str) -> None:
        entry = self.unregister(graph_id, node_id)
        if entry is not None:
            await _destroy_entry(graph_id, entry)

    async def destroy(self, graph_id: str) -> None:
        """Destroy every node of *graph_id*; failures are logged, not raised."""
        nodes = self._graphs.pop(graph_id, None)
        if not nodes:
            return
        logger.info("Graph registry: destroying graph {} ({} nodes)", graph_id, len(nodes))
        async with anyio.create_task_group() as tg:
            for entry in nodes.values():
                tg.start_soon(_destroy_entry, graph_id, entry)

    # -- Query -----------------------------------------------------------------

    def has_graph(self, graph_id: str) -> bool:
        return graph_id in self._graphs

    def graph_ids(self) -> list[str]:
        return list(self._graphs)

    def get_node(self, graph_id: str, node_id: str) -> CompiledGraphNode | None:
        return self._graphs.get(graph_id, {}).get(node_id)

    def get_nodes(self, graph_id: str) -> list[CompiledGraphNode]:
        return list(self._graphs.get(graph_id, {}).values())

    def filter_nodes_by_type(
        self,
        graph_id: str,
        kind: NodeKind,
        node_ids: list[str] | None = None,
    ) -> list[CompiledGraphNode]:
        """Nodes of *kind*, optionally restricted to *node_ids* (in that order)."""
        return [n for n in self._select(graph_id, node_ids) if n.kind == kind]

    def filter_nodes_by_template(
        self,
        graph_id: str,
        template_id: str,
        node_ids: list[str] | None = None,
    ) -> list[CompiledGraphNode]:
        return [n for n in self._select(graph_id, node_ids) if n.template_id == template_id]

    def _select(self, graph_id: str, node_ids: list[str] | None) -> list[CompiledGraphNode]:
        nodes = self._graphs.get(graph_id, {})
        if node_ids is None:
            return list(nodes.values())
        return [nodes[node_id] for node_id in node_ids if node_id in nodes]


async def _destroy_entry(graph_id: str, entry: CompiledGraphNode) -> None:
    try:
        await entry.destroy()
    except Exception:
        logger.exception("Graph registry: failed to destroy node {}/{}", graph_id, entry.id)
