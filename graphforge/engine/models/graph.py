"""Graph schema (what a user submits) and compiled graph nodes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from graphforge.engine.models.enums import NodeKind

# -- Schema ------------------------------------------------------------------


class GraphNodeSchema(BaseModel):
    id: str = Field(min_length=1)
    template: str
    config: dict[str, Any] = Field(default_factory=dict)


class GraphEdge(BaseModel):
    """``source -> target`` makes *source* an input of *target*."""

    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    label: str | None = None


class GraphSchema(BaseModel):
    nodes: list[GraphNodeSchema] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)


class GraphMetadata(BaseModel):
    graph_id: str = Field(min_length=1)
    name: str | None = None
    version: str = "1"
    temporary: bool = False


class GraphDefinition(BaseModel):
    """File format accepted by the CLI: metadata plus schema."""

    metadata: GraphMetadata
    graph: GraphSchema


# -- Compiled ----------------------------------------------------------------


@dataclass
class GraphNode:
    """One configured node of a graph, with its connections resolved."""

    node_id: str
    template_id: str
    kind: NodeKind
    config: BaseModel
    metadata: GraphMetadata
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)

    @property
    def graph_id(self) -> str:
        return self.metadata.graph_id

    def connections(self) -> tuple[tuple[str, ...], tuple[str, ...]]:
        return tuple(sorted(self.inputs)), tuple(sorted(self.outputs))


@dataclass
class CompiledGraph:
    metadata: GraphMetadata
    nodes: dict[str, GraphNode] = field(default_factory=dict)
    edges: list[GraphEdge] = field(default_factory=list)

    @property
    def graph_id(self) -> str:
        return self.metadata.graph_id
