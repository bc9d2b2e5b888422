"""Data models for the graph engine."""

from graphforge.engine.models.enums import (
    ConnectionType,
    ExecCause,
    NodeKind,
    OutputStream,
    ResourceKind,
    RuntimeEventType,
    RuntimeState,
    RuntimeType,
)
from graphforge.engine.models.graph import (
    CompiledGraph,
    GraphDefinition,
    GraphEdge,
    GraphMetadata,
    GraphNode,
    GraphNodeSchema,
    GraphSchema,
)
from graphforge.engine.models.runtime import (
    ProvideRuntimeParams,
    RuntimeEvent,
    RuntimeExecParams,
    RuntimeExecResult,
    RuntimeIdentity,
    RuntimeStartParams,
)

__all__ = [
    # Graph
    "CompiledGraph",
    # Enums
    "ConnectionType",
    "ExecCause",
    "GraphDefinition",
    "GraphEdge",
    "GraphMetadata",
    "GraphNode",
    "GraphNodeSchema",
    "GraphSchema",
    "NodeKind",
    "OutputStream",
    # Runtime
    "ProvideRuntimeParams",
    "ResourceKind",
    "RuntimeEvent",
    "RuntimeEventType",
    "RuntimeExecParams",
    "RuntimeExecResult",
    "RuntimeIdentity",
    "RuntimeStartParams",
    "RuntimeState",
    "RuntimeType",
]
