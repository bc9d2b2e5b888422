"""Unit tests for the template registry and the built-in template catalog."""

from __future__ import annotations

import pytest

from graphforge.engine.errors import DuplicateTemplateError, InvalidTemplateConfigError, TemplateNotFoundError
from graphforge.engine.graph.registry import GraphRegistry
from graphforge.engine.models.enums import ConnectionType, NodeKind
from graphforge.engine.models.graph import GraphMetadata, GraphNode
from graphforge.engine.runtime.provider import RuntimeProvider
from graphforge.engine.settings import GraphForgeSettings
from graphforge.engine.templates import build_template_registry, default_templates
from graphforge.engine.templates.base import NodeConnection
from graphforge.engine.templates.registry import TemplateRegistry
from graphforge.engine.templates.resources import GithubResourceTemplate, ShellResourceTemplate
from graphforge.engine.threads import ThreadRegistry

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _registry(settings: GraphForgeSettings) -> TemplateRegistry:
    return build_template_registry(GraphRegistry(), RuntimeProvider(settings), ThreadRegistry())


def _node(node_id: str, template_id: str, kind: NodeKind, config) -> GraphNode:
    return GraphNode(
        node_id=node_id,
        template_id=template_id,
        kind=kind,
        config=config,
        metadata=GraphMetadata(graph_id="g1"),
    )


# ---------------------------------------------------------------------------
# TemplateRegistry
# ---------------------------------------------------------------------------


def test_default_catalog_ids(settings: GraphForgeSettings) -> None:
    registry = _registry(settings)
    ids = [t.id for t in registry.all_templates()]
    assert ids == [
        "docker-runtime",
        "local-runtime",
        "shell-tool",
        "shell-resource",
        "github-resource",
        "simple-agent",
        "manual-trigger",
    ]


def test_register_duplicate_id_rejected(settings: GraphForgeSettings) -> None:
    graph_registry = GraphRegistry()
    templates = default_templates(graph_registry, RuntimeProvider(settings), ThreadRegistry())
    registry = TemplateRegistry.from_templates(templates)

    with pytest.raises(DuplicateTemplateError, match="shell-resource"):
        registry.register(ShellResourceTemplate(graph_registry))
    assert len(registry.all_templates()) == len(templates)


def test_get_unknown_template(settings: GraphForgeSettings) -> None:
    registry = _registry(settings)
    assert registry.has_template("local-runtime")
    assert not registry.has_template("nope")
    with pytest.raises(TemplateNotFoundError):
        registry.get_template("nope")


def test_get_templates_by_kind(settings: GraphForgeSettings) -> None:
    registry = _registry(settings)
    runtimes = {t.id for t in registry.get_templates_by_kind(NodeKind.RUNTIME)}
    assert runtimes == {"docker-runtime", "local-runtime"}
    assert registry.get_templates_by_kind(NodeKind.MCP) == []


def test_validate_config_drops_unknown_fields(settings: GraphForgeSettings) -> None:
    registry = _registry(settings)
    config = registry.validate_config("shell-resource", {"env": {"A": "1"}, "bogus": True})
    assert config.env == {"A": "1"}
    assert not hasattr(config, "bogus")


def test_validate_config_normalizes_init_script(settings: GraphForgeSettings) -> None:
    registry = _registry(settings)
    config = registry.validate_config("local-runtime", {"init_script": "echo hi"})
    assert config.init_script == ["echo hi"]
    empty = registry.validate_config("local-runtime", {"init_script": "   "})
    assert empty.init_script == []


def test_validate_config_invalid(settings: GraphForgeSettings) -> None:
    registry = _registry(settings)
    with pytest.raises(InvalidTemplateConfigError, match="timeout_ms"):
        registry.validate_config("shell-tool", {"timeout_ms": -5})
    with pytest.raises(InvalidTemplateConfigError, match="pat_token"):
        registry.validate_config("github-resource", {})


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


def test_connection_matching() -> None:
    by_kind = NodeConnection.kind(NodeKind.TOOL, multiple=True)
    by_template = NodeConnection.template("shell-tool")

    assert by_kind.type is ConnectionType.KIND
    assert by_kind.matches(NodeKind.TOOL, "anything")
    assert not by_kind.matches(NodeKind.RUNTIME, "shell-tool")
    assert by_template.matches(NodeKind.TOOL, "shell-tool")
    assert not by_template.matches(NodeKind.TOOL, "other-tool")
    assert by_template.describe() == "template:shell-tool"


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_shell_resource_configure_updates_in_place(settings: GraphForgeSettings) -> None:
    registry = _registry(settings)
    template = registry.get_template("shell-resource")
    lifecycle = template.create()

    config = registry.validate_config("shell-resource", {"env": {"A": "1"}, "init_script": ["echo a"]})
    instance = await lifecycle.provide(_node("res", "shell-resource", NodeKind.RESOURCE, config))
    assert instance.env == {"A": "1"}

    updated = registry.validate_config("shell-resource", {"env": {"B": "2"}, "information": "info"})
    await lifecycle.configure(_node("res", "shell-resource", NodeKind.RESOURCE, updated), instance)
    assert instance.env == {"B": "2"}
    assert instance.init_script == []
    assert instance.information == "info"

    await lifecycle.destroy(instance)
    assert instance.env == {}


@pytest.mark.anyio
async def test_github_resource_env_and_git_setup(settings: GraphForgeSettings) -> None:
    registry = _registry(settings)
    template: GithubResourceTemplate = registry.get_template("github-resource")  # type: ignore[assignment]
    config = registry.validate_config(
        "github-resource",
        {"pat_token": "ghp_secret", "name": "Dev Bot", "email": "bot@example.com"},
    )
    resource = template.build_resource(_node("gh", "github-resource", NodeKind.RESOURCE, config))

    assert resource.env == {"GITHUB_TOKEN": "ghp_secret", "GH_TOKEN": "ghp_secret"}
    assert resource.init_script[0] == "git config --global user.name 'Dev Bot'"
    assert resource.init_script[1] == "git config --global user.email bot@example.com"
    assert "credential.helper" in resource.init_script[2]
    assert "ghp_secret" not in resource.information
    assert "ghp_secret" not in repr(config)
