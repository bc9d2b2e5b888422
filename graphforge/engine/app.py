"""Engine wiring: builds the registries, providers and compiler as one unit."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from graphforge.engine.graph.compiler import GraphCompiler
from graphforge.engine.graph.registry import GraphRegistry
from graphforge.engine.runtime.provider import RuntimeProvider
from graphforge.engine.settings import GraphForgeSettings, get_settings
from graphforge.engine.templates import build_template_registry
from graphforge.engine.threads import ThreadRegistry

if TYPE_CHECKING:
    import docker

    from graphforge.engine.templates.agents import AgentRunner
    from graphforge.engine.templates.registry import TemplateRegistry


@dataclass
class GraphForge:
    settings: GraphForgeSettings
    graph_registry: GraphRegistry
    thread_registry: ThreadRegistry
    runtime_provider: RuntimeProvider
    template_registry: TemplateRegistry
    compiler: GraphCompiler

    async def aclose(self, drain_timeout: float | None = 30.0) -> None:
        """Stop in-flight threads and destroy every compiled graph."""
        self.thread_registry.begin_shutdown()
        if self.thread_registry.active_count:
            stopped = self.thread_registry.stop_all()
            logger.info("Stopping {} in-flight executions", stopped)
            await self.thread_registry.wait_until_drained(timeout=drain_timeout)
        for graph_id in self.graph_registry.graph_ids():
            await self.compiler.destroy(graph_id)


def create_graphforge(
    settings: GraphForgeSettings | None = None,
    *,
    docker_client: docker.DockerClient | None = None,
    agent_runner: AgentRunner | None = None,
) -> GraphForge:
    settings = settings or get_settings()
    graph_registry = GraphRegistry()
    thread_registry = ThreadRegistry()
    runtime_provider = RuntimeProvider(settings, docker_client=docker_client)
    template_registry = build_template_registry(
        graph_registry,
        runtime_provider,
        thread_registry,
        agent_runner=agent_runner,
    )
    return GraphForge(
        settings=settings,
        graph_registry=graph_registry,
        thread_registry=thread_registry,
        runtime_provider=runtime_provider,
        template_registry=template_registry,
        compiler=GraphCompiler(template_registry, graph_registry),
    )


@asynccontextmanager
async def lifespan(
    settings: GraphForgeSettings | None = None,
    *,
    docker_client: docker.DockerClient | None = None,
    agent_runner: AgentRunner | None = None,
) -> AsyncIterator[GraphForge]:
    forge = create_graphforge(settings, docker_client=docker_client, agent_runner=agent_runner)
    try:
        yield forge
    finally:
        await forge.aclose()
