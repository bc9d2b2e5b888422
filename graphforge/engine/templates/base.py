"""Node template protocol.

A template declares what a node is (kind, config schema, allowed
connections) and, through :meth:`NodeTemplate.create`, how its instances go
through the provide / configure / destroy lifecycle:

- ``provide(node)`` builds the instance.  Cheap, no side effects, and it may
  not assume any sibling exists yet.
- ``configure(node, instance)`` wires the instance to its neighbours, looked
  up in the graph registry.  It mutates the instance in place (other nodes
  already hold a reference to it) and must be safe to run again.
- ``destroy(instance)`` releases whatever configure acquired.  Tolerates
  partially configured instances.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel, ConfigDict

from graphforge.engine.errors import NodeNotFoundError
from graphforge.engine.models.enums import ConnectionType, NodeKind

if TYPE_CHECKING:
    from graphforge.engine.graph.registry import CompiledGraphNode, GraphRegistry
    from graphforge.engine.models.graph import GraphNode


class TemplateConfig(BaseModel):
    """Base for template config schemas; unknown fields are dropped."""

    model_config = ConfigDict(extra="ignore")


# -- Connections -------------------------------------------------------------


@dataclass(frozen=True)
class NodeConnection:
    type: ConnectionType
    value: str
    required: bool = False
    multiple: bool = False

    @classmethod
    def kind(cls, kind: NodeKind, *, required: bool = False, multiple: bool = False) -> NodeConnection:
        return cls(ConnectionType.KIND, str(kind), required=required, multiple=multiple)

    @classmethod
    def template(cls, template_id: str, *, required: bool = False, multiple: bool = False) -> NodeConnection:
        return cls(ConnectionType.TEMPLATE, template_id, required=required, multiple=multiple)

    def matches(self, kind: NodeKind, template_id: str) -> bool:
        if self.type is ConnectionType.KIND:
            return self.value == kind
        return self.value == template_id

    def describe(self) -> str:
        return f"{self.type}:{self.value}"


# -- Lifecycle ---------------------------------------------------------------


@dataclass(frozen=True)
class NodeLifecycle:
    provide: Callable[[GraphNode], Awaitable[Any]]
    configure: Callable[[GraphNode, Any], Awaitable[None]]
    destroy: Callable[[Any], Awaitable[None]]


# -- Template ----------------------------------------------------------------


class NodeTemplate(ABC):
    id: ClassVar[str]
    name: ClassVar[str]
    description: ClassVar[str] = ""
    kind: ClassVar[NodeKind]
    schema: ClassVar[type[BaseModel]]
    inputs: ClassVar[tuple[NodeConnection, ...]] = ()
    outputs: ClassVar[tuple[NodeConnection, ...]] = ()

    def __init__(self, graph_registry: GraphRegistry) -> None:
        self.graph_registry = graph_registry

    @abstractmethod
    def create(self) -> NodeLifecycle: ...

    # -- Neighbour lookup ------------------------------------------------------

    def input_nodes(
        self,
        node: GraphNode,
        *,
        kind: NodeKind | None = None,
        template_id: str | None = None,
    ) -> list[CompiledGraphNode]:
        return self._lookup(node, node.inputs, kind=kind, template_id=template_id)

    def output_nodes(
        self,
        node: GraphNode,
        *,
        kind: NodeKind | None = None,
        template_id: str | None = None,
    ) -> list[CompiledGraphNode]:
        return self._lookup(node, node.outputs, kind=kind, template_id=template_id)

    def require_input_node(self, node: GraphNode, *, kind: NodeKind) -> CompiledGraphNode:
        found = self.input_nodes(node, kind=kind)
        if not found:
            raise NodeNotFoundError(node.node_id, f"required {kind} input is not available")
        return found[0]

    def _lookup(
        self,
        node: GraphNode,
        node_ids: list[str],
        *,
        kind: NodeKind | None,
        template_id: str | None,
    ) -> list[CompiledGraphNode]:
        if kind is not None:
            return self.graph_registry.filter_nodes_by_type(node.graph_id, kind, node_ids)
        if template_id is not None:
            return self.graph_registry.filter_nodes_by_template(node.graph_id, template_id, node_ids)
        nodes = (self.graph_registry.get_node(node.graph_id, node_id) for node_id in node_ids)
        return [n for n in nodes if n is not None]
