"""Unit tests for the graph registry and the graph compiler."""

from __future__ import annotations

from typing import Any

import pytest

from graphforge.engine.errors import GraphValidationError
from graphforge.engine.graph.compiler import GraphCompiler
from graphforge.engine.graph.registry import CompiledGraphNode, GraphRegistry
from graphforge.engine.models.enums import NodeKind
from graphforge.engine.models.graph import GraphEdge, GraphMetadata, GraphNode, GraphNodeSchema, GraphSchema
from graphforge.engine.templates.base import NodeConnection, NodeLifecycle, NodeTemplate, TemplateConfig
from graphforge.engine.templates.registry import TemplateRegistry

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Config(TemplateConfig):
    value: int = 0


class _Instance:
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        self.configured = 0
        self.seen_inputs: list[str] = []


class RecordingTemplate(NodeTemplate):
    """Template whose lifecycle only records what happened to it."""

    schema = _Config

    def __init__(
        self,
        graph_registry: GraphRegistry,
        events: list[tuple[str, str]],
        *,
        template_id: str,
        kind: NodeKind,
        inputs: tuple[NodeConnection, ...] = (),
        outputs: tuple[NodeConnection, ...] = (),
        fail_configure: set[str] | None = None,
    ) -> None:
        super().__init__(graph_registry)
        self.id = template_id
        self.name = template_id
        self.kind = kind
        self.inputs = inputs
        self.outputs = outputs
        self.events = events
        self.fail_configure = fail_configure or set()

    def create(self) -> NodeLifecycle:
        async def provide(node: GraphNode) -> _Instance:
            self.events.append(("provide", node.node_id))
            return _Instance(node.node_id)

        async def configure(node: GraphNode, instance: _Instance) -> None:
            self.events.append(("configure", node.node_id))
            if node.node_id in self.fail_configure:
                raise RuntimeError(f"configure of {node.node_id} failed")
            instance.configured += 1
            instance.seen_inputs = [entry.id for entry in self.input_nodes(node)]

        async def destroy(instance: _Instance) -> None:
            self.events.append(("destroy", instance.node_id))

        return NodeLifecycle(provide=provide, configure=configure, destroy=destroy)


def _setup(fail_configure: set[str] | None = None) -> tuple[GraphCompiler, GraphRegistry, list[tuple[str, str]]]:
    events: list[tuple[str, str]] = []
    graph_registry = GraphRegistry()
    templates = TemplateRegistry.from_templates([
        RecordingTemplate(
            graph_registry,
            events,
            template_id="source",
            kind=NodeKind.RUNTIME,
            outputs=(NodeConnection.kind(NodeKind.TOOL, multiple=True),),
        ),
        RecordingTemplate(
            graph_registry,
            events,
            template_id="sink",
            kind=NodeKind.TOOL,
            inputs=(NodeConnection.kind(NodeKind.RUNTIME, required=True),),
            fail_configure=fail_configure,
        ),
    ])
    return GraphCompiler(templates, graph_registry), graph_registry, events


def _schema(nodes: list[tuple[str, str]], edges: list[tuple[str, str]], config: dict[str, Any] | None = None):
    config = config or {}
    return GraphSchema(
        nodes=[
            GraphNodeSchema(id=node_id, template=template, config=config.get(node_id, {}))
            for node_id, template in nodes
        ],
        edges=[GraphEdge(source=source, target=target) for source, target in edges],
    )


METADATA = GraphMetadata(graph_id="g1")

# ---------------------------------------------------------------------------
# GraphRegistry
# ---------------------------------------------------------------------------


def _entry(node_id: str, kind: NodeKind, template_id: str, destroy) -> CompiledGraphNode:
    async def _noop(*_: Any) -> None:
        return None

    node = GraphNode(node_id=node_id, template_id=template_id, kind=kind, config=_Config(), metadata=METADATA)
    return CompiledGraphNode(
        id=node_id,
        kind=kind,
        template_id=template_id,
        instance=object(),
        config=node.config,
        node=node,
        lifecycle=NodeLifecycle(provide=_noop, configure=_noop, destroy=destroy),
    )


def test_registry_filters_preserve_requested_order() -> None:
    async def _noop(_: Any) -> None:
        return None

    registry = GraphRegistry()
    registry.register("g1", "a", _entry("a", NodeKind.TOOL, "shell-tool", _noop))
    registry.register("g1", "b", _entry("b", NodeKind.RESOURCE, "shell-resource", _noop))
    registry.register("g1", "c", _entry("c", NodeKind.TOOL, "other-tool", _noop))

    tools = registry.filter_nodes_by_type("g1", NodeKind.TOOL, ["c", "missing", "a"])
    assert [n.id for n in tools] == ["c", "a"]
    assert [n.id for n in registry.filter_nodes_by_template("g1", "shell-tool")] == ["a"]
    assert registry.get_node("g1", "b") is not None
    assert registry.get_node("g2", "b") is None
    assert registry.filter_nodes_by_type("g2", NodeKind.TOOL) == []


@pytest.mark.anyio
async def test_registry_destroy_tolerates_failures() -> None:
    destroyed: list[str] = []

    async def _fail(_: Any) -> None:
        raise RuntimeError("boom")

    async def _ok(_: Any) -> None:
        destroyed.append("ok")

    registry = GraphRegistry()
    registry.register("g1", "bad", _entry("bad", NodeKind.TOOL, "t", _fail))
    registry.register("g1", "good", _entry("good", NodeKind.TOOL, "t", _ok))

    await registry.destroy("g1")

    assert destroyed == ["ok"]
    assert not registry.has_graph("g1")
    # Destroying an unknown graph is a no-op
    await registry.destroy("g1")


def test_registry_rejects_mismatched_node_id() -> None:
    async def _noop(_: Any) -> None:
        return None

    registry = GraphRegistry()
    with pytest.raises(ValueError, match="cannot be registered"):
        registry.register("g1", "other", _entry("a", NodeKind.TOOL, "t", _noop))
    assert not registry.has_graph("g1")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("nodes", "edges", "config", "message"),
    [
        ([("rt", "source"), ("rt", "source")], [], None, "Duplicate node id"),
        ([("rt", "missing")], [], None, "not found"),
        ([("rt", "source")], [], {"rt": {"value": "not-a-number"}}, "value"),
        ([("rt", "source"), ("t", "sink")], [("rt", "t"), ("rt", "ghost")], None, "unknown node 'ghost'"),
        ([("rt", "source"), ("t", "sink")], [("rt", "t"), ("t", "t")], None, "to itself"),
        ([("rt", "source"), ("t", "sink")], [("rt", "t"), ("rt", "t")], None, "Duplicate edge"),
        ([("rt", "source"), ("t", "sink")], [("t", "rt")], None, "does not accept"),
        ([("t", "sink")], [], None, "requires an input of kind:runtime"),
        (
            [("rt1", "source"), ("rt2", "source"), ("t", "sink")],
            [("rt1", "t"), ("rt2", "t")],
            None,
            "at most one input",
        ),
    ],
)
def test_validate_rejects(nodes, edges, config, message) -> None:
    compiler, _, events = _setup()
    with pytest.raises(GraphValidationError, match=message):
        compiler.validate(_schema(nodes, edges, config), METADATA)
    assert events == []


def test_validate_resolves_connections() -> None:
    compiler, _, _ = _setup()
    schema = _schema([("rt", "source"), ("t1", "sink"), ("t2", "sink")], [("rt", "t1"), ("rt", "t2")])
    nodes = compiler.validate(schema, METADATA)
    assert nodes["rt"].outputs == ["t1", "t2"]
    assert nodes["t1"].inputs == ["rt"]
    assert nodes["t2"].kind is NodeKind.TOOL


def test_edge_aliases() -> None:
    edge = GraphEdge.model_validate({"from": "a", "to": "b"})
    assert (edge.source, edge.target) == ("a", "b")


# ---------------------------------------------------------------------------
# Compile
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_compile_provides_everything_before_configuring() -> None:
    compiler, registry, events = _setup()
    # Sink declared first: its configure still sees the source.
    schema = _schema([("t", "sink"), ("rt", "source")], [("rt", "t")])

    compiled = await compiler.compile(schema, METADATA)

    assert events == [("provide", "t"), ("provide", "rt"), ("configure", "t"), ("configure", "rt")]
    assert compiled.graph_id == "g1"
    assert registry.get_node("g1", "t").instance.seen_inputs == ["rt"]
    assert compiler.get_compiled("g1") is compiled


@pytest.mark.anyio
async def test_compile_twice_rejected() -> None:
    compiler, _, _ = _setup()
    schema = _schema([("rt", "source")], [])
    await compiler.compile(schema, METADATA)
    with pytest.raises(GraphValidationError, match="already compiled"):
        await compiler.compile(schema, METADATA)


@pytest.mark.anyio
async def test_configure_failure_destroys_graph() -> None:
    compiler, registry, events = _setup(fail_configure={"t"})
    schema = _schema([("rt", "source"), ("t", "sink")], [("rt", "t")])

    with pytest.raises(RuntimeError, match="configure of t failed"):
        await compiler.compile(schema, METADATA)

    assert not registry.has_graph("g1")
    assert compiler.get_compiled("g1") is None
    assert {e for e in events if e[0] == "destroy"} == {("destroy", "rt"), ("destroy", "t")}
    assert registry.lock_ids() == []


@pytest.mark.anyio
async def test_destroy_tears_down_all_nodes() -> None:
    compiler, registry, events = _setup()
    await compiler.compile(_schema([("rt", "source"), ("t", "sink")], [("rt", "t")]), METADATA)
    assert registry.lock_ids() == ["g1"]

    await compiler.destroy("g1")
    assert registry.lock_ids() == []

    assert not registry.has_graph("g1")
    assert compiler.get_compiled("g1") is None
    assert sorted(e for e in events if e[0] == "destroy") == [("destroy", "rt"), ("destroy", "t")]


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_update_reconfigures_only_changed_nodes() -> None:
    compiler, registry, events = _setup()
    nodes = [("rt", "source"), ("t1", "sink"), ("t2", "sink")]
    edges = [("rt", "t1"), ("rt", "t2")]
    await compiler.compile(_schema(nodes, edges), METADATA)
    events.clear()

    await compiler.update(_schema(nodes, edges, {"t2": {"value": 5}}), METADATA)

    assert events == [("configure", "t2")]
    assert registry.get_node("g1", "t2").config.value == 5
    assert registry.get_node("g1", "t1").instance.configured == 1


@pytest.mark.anyio
async def test_update_new_version_reconfigures_every_node() -> None:
    compiler, registry, events = _setup()
    nodes = [("rt", "source"), ("t1", "sink")]
    edges = [("rt", "t1")]
    await compiler.compile(_schema(nodes, edges), METADATA)
    events.clear()

    bumped = METADATA.model_copy(update={"version": "2"})
    await compiler.update(_schema(nodes, edges), bumped)

    assert sorted(events) == [("configure", "rt"), ("configure", "t1")]
    assert registry.get_node("g1", "rt").node.metadata.version == "2"

    events.clear()
    await compiler.update(_schema(nodes, edges), bumped.model_copy(update={"temporary": True}))
    assert sorted(events) == [("configure", "rt"), ("configure", "t1")]


@pytest.mark.anyio
async def test_update_adds_and_removes_nodes() -> None:
    compiler, registry, events = _setup()
    await compiler.compile(_schema([("rt", "source"), ("t1", "sink")], [("rt", "t1")]), METADATA)
    original = registry.get_node("g1", "rt").instance
    events.clear()

    await compiler.update(_schema([("rt", "source"), ("t2", "sink")], [("rt", "t2")]), METADATA)

    assert ("destroy", "t1") in events
    assert ("provide", "t2") in events
    # rt's outputs changed, so it is re-configured but keeps its instance
    assert ("configure", "rt") in events
    assert ("provide", "rt") not in events
    assert registry.get_node("g1", "rt").instance is original
    assert registry.get_node("g1", "t1") is None


@pytest.mark.anyio
async def test_update_requires_compiled_graph() -> None:
    compiler, _, _ = _setup()
    with pytest.raises(GraphValidationError, match="not compiled"):
        await compiler.update(_schema([("rt", "source")], []), METADATA)
