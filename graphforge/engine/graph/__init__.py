"""Graph compilation and the registry of live graph nodes."""

from graphforge.engine.graph.compiler import GraphCompiler
from graphforge.engine.graph.registry import CompiledGraphNode, GraphRegistry

__all__ = [
    "CompiledGraphNode",
    "GraphCompiler",
    "GraphRegistry",
]
