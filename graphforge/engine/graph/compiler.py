"""Graph compiler: turns a graph schema into live, wired node instances.

Compilation runs in three steps:

1. validate the whole schema (ids, templates, configs, edges, cardinality)
   without touching any template code;
2. ``provide`` every node in declaration order and register it, so every
   sibling is discoverable before anyone configures;
3. ``configure`` every node.  If any configure fails, every node of the graph
   is destroyed and the error propagates.

``update`` applies an edited schema to a compiled graph, re-configuring only
the nodes that were added or whose config or connections changed, plus the
nodes downstream of them.  A new graph version or temporary flag
re-configures every node, since runtimes label their containers with both.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import anyio
from loguru import logger

from graphforge.engine.errors import GraphValidationError, InvalidTemplateConfigError, TemplateNotFoundError
from graphforge.engine.graph.registry import CompiledGraphNode
from graphforge.engine.models.graph import CompiledGraph, GraphNode

if TYPE_CHECKING:
    from graphforge.engine.graph.registry import GraphRegistry
    from graphforge.engine.models.graph import GraphMetadata, GraphSchema
    from graphforge.engine.templates.base import NodeConnection
    from graphforge.engine.templates.registry import TemplateRegistry


class GraphCompiler:
    def __init__(self, template_registry: TemplateRegistry, graph_registry: GraphRegistry) -> None:
        self._templates = template_registry
        self._registry = graph_registry
        self._compiled: dict[str, CompiledGraph] = {}

    def get_compiled(self, graph_id: str) -> CompiledGraph | None:
        return self._compiled.get(graph_id)

    # -- Validation ------------------------------------------------------------

    def validate(self, schema: GraphSchema, metadata: GraphMetadata) -> dict[str, GraphNode]:
        """Validate *schema* and return its nodes with connections resolved.

        Raises ``GraphValidationError`` for structural problems; unknown
        templates and invalid configs are reported the same way.
        """
        nodes: dict[str, GraphNode] = {}
        for spec in schema.nodes:
            if spec.id in nodes:
                raise GraphValidationError(f"Duplicate node id '{spec.id}'")
            try:
                template = self._templates.get_template(spec.template)
                config = self._templates.validate_config(spec.template, spec.config)
            except (TemplateNotFoundError, InvalidTemplateConfigError) as exc:
                raise GraphValidationError(f"Node '{spec.id}': {exc}") from exc
            nodes[spec.id] = GraphNode(
                node_id=spec.id,
                template_id=spec.template,
                kind=template.kind,
                config=config,
                metadata=metadata,
            )

        seen_edges: set[tuple[str, str]] = set()
        for edge in schema.edges:
            source, target = nodes.get(edge.source), nodes.get(edge.target)
            if source is None or target is None:
                missing = edge.source if source is None else edge.target
                raise GraphValidationError(f"Edge {edge.source} -> {edge.target} references unknown node '{missing}'")
            if edge.source == edge.target:
                raise GraphValidationError(f"Edge {edge.source} -> {edge.target} connects a node to itself")
            if (edge.source, edge.target) in seen_edges:
                raise GraphValidationError(f"Duplicate edge {edge.source} -> {edge.target}")
            seen_edges.add((edge.source, edge.target))

            if self._match(self._templates.get_template(source.template_id).outputs, target) is None:
                raise GraphValidationError(
                    f"Edge {edge.source} -> {edge.target}: '{source.template_id}' does not accept "
                    f"'{target.template_id}' as an output",
                )
            if self._match(self._templates.get_template(target.template_id).inputs, source) is None:
                raise GraphValidationError(
                    f"Edge {edge.source} -> {edge.target}: '{target.template_id}' does not accept "
                    f"'{source.template_id}' as an input",
                )
            source.outputs.append(target.node_id)
            target.inputs.append(source.node_id)

        for node in nodes.values():
            template = self._templates.get_template(node.template_id)
            self._check_cardinality(node, "input", template.inputs, node.inputs, nodes)
            self._check_cardinality(node, "output", template.outputs, node.outputs, nodes)
        return nodes

    @staticmethod
    def _match(connections: tuple[NodeConnection, ...], other: GraphNode) -> NodeConnection | None:
        # Template-specific declarations win over kind-wide ones.
        ordered = sorted(connections, key=lambda c: c.type != "template")
        return next((c for c in ordered if c.matches(other.kind, other.template_id)), None)

    def _check_cardinality(
        self,
        node: GraphNode,
        direction: str,
        connections: tuple[NodeConnection, ...],
        connected: list[str],
        nodes: dict[str, GraphNode],
    ) -> None:
        counts = {connection: 0 for connection in connections}
        for other_id in connected:
            connection = self._match(connections, nodes[other_id])
            if connection is not None:
                counts[connection] += 1
        for connection, count in counts.items():
            if connection.required and count == 0:
                raise GraphValidationError(
                    f"Node '{node.node_id}' requires an {direction} of {connection.describe()}",
                )
            if not connection.multiple and count > 1:
                raise GraphValidationError(
                    f"Node '{node.node_id}' accepts at most one {direction} of {connection.describe()}, got {count}",
                )

    # -- Compile ---------------------------------------------------------------

    async def compile(self, schema: GraphSchema, metadata: GraphMetadata) -> CompiledGraph:
        graph_id = metadata.graph_id
        nodes = self.validate(schema, metadata)

        async with self._registry.locked(graph_id):
            if self._registry.has_graph(graph_id) or graph_id in self._compiled:
                raise GraphValidationError(f"Graph '{graph_id}' is already compiled")
            logger.info("Compiling graph {} (version {}, {} nodes)", graph_id, metadata.version, len(nodes))
            try:
                for node in nodes.values():
                    await self._provide(node)
                for node in nodes.values():
                    await self._configure(node)
            except BaseException:
                logger.warning("Compilation of graph {} failed, destroying provided nodes", graph_id)
                with anyio.CancelScope(shield=True):
                    await self._registry.destroy(graph_id)
                raise

            compiled = CompiledGraph(metadata=metadata, nodes=nodes, edges=list(schema.edges))
            self._compiled[graph_id] = compiled
            return compiled

    async def _provide(self, node: GraphNode) -> CompiledGraphNode:
        template = self._templates.get_template(node.template_id)
        lifecycle = template.create()
        instance = await lifecycle.provide(node)
        entry = CompiledGraphNode(
            id=node.node_id,
            kind=node.kind,
            template_id=node.template_id,
            instance=instance,
            config=node.config,
            node=node,
            lifecycle=lifecycle,
        )
        self._registry.register(node.graph_id, node.node_id, entry)
        return entry

    async def _configure(self, node: GraphNode) -> None:
        entry = self._registry.get_node(node.graph_id, node.node_id)
        if entry is None:
            raise GraphValidationError(f"Node '{node.node_id}' was not provided")
        entry.node = node
        entry.config = node.config
        await entry.lifecycle.configure(node, entry.instance)

    # -- Update ----------------------------------------------------------------

    async def update(self, schema: GraphSchema, metadata: GraphMetadata) -> CompiledGraph:
        """Apply an edited schema to an already compiled graph."""
        graph_id = metadata.graph_id
        current = self._compiled.get(graph_id)
        if current is None:
            raise GraphValidationError(f"Graph '{graph_id}' is not compiled")
        nodes = self.validate(schema, metadata)

        async with self._registry.locked(graph_id):
            removed = [node_id for node_id in current.nodes if node_id not in nodes]
            replaced = [
                node_id
                for node_id, node in nodes.items()
                if node_id in current.nodes and current.nodes[node_id].template_id != node.template_id
            ]
            added = [node_id for node_id in nodes if node_id not in current.nodes]

            for node_id in [*removed, *replaced]:
                logger.info("Graph {}: destroying node {}", graph_id, node_id)
                await self._registry.destroy_node(graph_id, node_id)
            for node_id in [*replaced, *added]:
                await self._provide(nodes[node_id])

            # Runtime identity labels carry the version and temporary flag.
            identity_changed = (current.metadata.version, current.metadata.temporary) != (
                metadata.version,
                metadata.temporary,
            )
            changed = {
                node_id
                for node_id, node in nodes.items()
                if identity_changed
                or node_id in replaced
                or node_id not in current.nodes
                or current.nodes[node_id].config != node.config
                or current.nodes[node_id].connections() != node.connections()
            }
            # Consumers read their inputs at configure time, so changes flow downstream.
            pending = list(changed)
            while pending:
                for target in nodes[pending.pop()].outputs:
                    if target not in changed:
                        changed.add(target)
                        pending.append(target)

            reconfigure = []
            for node_id, node in nodes.items():
                if node_id in changed:
                    reconfigure.append(node)
                else:
                    entry = self._registry.get_node(graph_id, node_id)
                    if entry is not None:
                        entry.node = node
            for node in reconfigure:
                logger.debug("Graph {}: configuring node {}", graph_id, node.node_id)
                await self._configure(node)

            compiled = CompiledGraph(metadata=metadata, nodes=nodes, edges=list(schema.edges))
            self._compiled[graph_id] = compiled
            return compiled

    # -- Destroy ---------------------------------------------------------------

    async def destroy(self, graph_id: str) -> None:
        """Tear down every node of *graph_id*; never raises for node failures."""
        async with self._registry.locked(graph_id):
            self._compiled.pop(graph_id, None)
            await self._registry.destroy(graph_id)
