"""Node templates and the default template catalog."""

from __future__ import annotations

from typing import TYPE_CHECKING

from graphforge.engine.templates.agents import SimpleAgent, SimpleAgentTemplate
from graphforge.engine.templates.base import NodeConnection, NodeLifecycle, NodeTemplate, TemplateConfig
from graphforge.engine.templates.registry import TemplateRegistry
from graphforge.engine.templates.resources import GithubResourceTemplate, ShellResource, ShellResourceTemplate
from graphforge.engine.templates.runtimes import DockerRuntimeTemplate, LocalRuntimeTemplate
from graphforge.engine.templates.tools import ShellToolTemplate
from graphforge.engine.templates.triggers import ManualTrigger, ManualTriggerTemplate, TriggerEvent

if TYPE_CHECKING:
    from graphforge.engine.graph.registry import GraphRegistry
    from graphforge.engine.runtime.provider import RuntimeProvider
    from graphforge.engine.templates.agents import AgentRunner
    from graphforge.engine.threads import ThreadRegistry


def default_templates(
    graph_registry: GraphRegistry,
    runtime_provider: RuntimeProvider,
    thread_registry: ThreadRegistry,
    *,
    agent_runner: AgentRunner | None = None,
) -> list[NodeTemplate]:
    """Every built-in template, in registration order."""
    return [
        DockerRuntimeTemplate(graph_registry, runtime_provider),
        LocalRuntimeTemplate(graph_registry, runtime_provider),
        ShellToolTemplate(graph_registry, runtime_provider.settings),
        ShellResourceTemplate(graph_registry),
        GithubResourceTemplate(graph_registry),
        SimpleAgentTemplate(graph_registry, agent_runner),
        ManualTriggerTemplate(graph_registry, thread_registry),
    ]


def build_template_registry(
    graph_registry: GraphRegistry,
    runtime_provider: RuntimeProvider,
    thread_registry: ThreadRegistry,
    *,
    agent_runner: AgentRunner | None = None,
) -> TemplateRegistry:
    return TemplateRegistry.from_templates(
        default_templates(graph_registry, runtime_provider, thread_registry, agent_runner=agent_runner),
    )


__all__ = [
    "DockerRuntimeTemplate",
    "GithubResourceTemplate",
    "LocalRuntimeTemplate",
    "ManualTrigger",
    "ManualTriggerTemplate",
    "NodeConnection",
    "NodeLifecycle",
    "NodeTemplate",
    "ShellResource",
    "ShellResourceTemplate",
    "ShellToolTemplate",
    "SimpleAgent",
    "SimpleAgentTemplate",
    "TemplateConfig",
    "TemplateRegistry",
    "TriggerEvent",
    "build_template_registry",
    "default_templates",
]
