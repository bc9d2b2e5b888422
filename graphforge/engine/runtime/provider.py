"""Runtime provider: builds and starts runtimes for graph runtime nodes.

Stateless apart from the shared docker client; the per-node cache lives in
:class:`~graphforge.engine.runtime.thread_provider.RuntimeThreadProvider`.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from anyio import to_thread
from loguru import logger

from graphforge.engine.models.enums import RuntimeType
from graphforge.engine.models.runtime import ProvideRuntimeParams, RuntimeIdentity
from graphforge.engine.runtime.docker import (
    DockerRuntime,
    create_docker_client,
    generate_container_name,
    remove_containers_by_labels,
)
from graphforge.engine.runtime.executor import child_workdir_name
from graphforge.engine.runtime.local import LocalRuntime
from graphforge.engine.settings import GraphForgeSettings, get_settings

if TYPE_CHECKING:
    import docker

    from graphforge.engine.runtime.base import BaseRuntime

RuntimeFactory = Callable[[ProvideRuntimeParams], "BaseRuntime"]


def graph_network_name(graph_id: str) -> str:
    return f"graphforge-{child_workdir_name(graph_id)}"


class RuntimeProvider:
    """Resolve a runtime implementation by type and start it for a node."""

    def __init__(
        self,
        settings: GraphForgeSettings | None = None,
        *,
        docker_client: docker.DockerClient | None = None,
        factories: dict[RuntimeType, RuntimeFactory] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._docker_client = docker_client
        self._factories: dict[RuntimeType, RuntimeFactory] = {
            RuntimeType.DOCKER: self._create_docker_runtime,
            RuntimeType.LOCAL: self._create_local_runtime,
        }
        if factories:
            self._factories.update(factories)

    @property
    def settings(self) -> GraphForgeSettings:
        return self._settings

    # -- Factories -------------------------------------------------------------

    def _create_docker_runtime(self, params: ProvideRuntimeParams) -> BaseRuntime:
        return DockerRuntime(self._docker_client, settings=self._settings)

    def _create_local_runtime(self, params: ProvideRuntimeParams) -> BaseRuntime:
        root = (
            Path(self._settings.local_runtime_root)
            / child_workdir_name(params.graph_id)
            / child_workdir_name(params.runtime_node_id)
        )
        return LocalRuntime(
            root,
            init_script_timeout_ms=self._settings.init_script_timeout_ms,
            stop_timeout=self._settings.runtime_stop_timeout,
            max_output_bytes=self._settings.max_output_bytes,
        )

    def create_runtime(self, params: ProvideRuntimeParams) -> BaseRuntime:
        factory = self._factories.get(params.type)
        if factory is None:
            raise ValueError(f"Unsupported runtime type: {params.type}")
        return factory(params)

    # -- Provide ---------------------------------------------------------------

    async def provide(self, params: ProvideRuntimeParams) -> BaseRuntime:
        """Create a runtime of ``params.type`` and start it with system labels."""
        start = params.start_params.model_copy(
            update={
                "identity": RuntimeIdentity(
                    graph_id=params.graph_id,
                    node_id=params.runtime_node_id,
                    graph_version=params.graph_version,
                    temporary=params.temporary,
                ),
                "network": params.start_params.network or graph_network_name(params.graph_id),
                "container_name": params.start_params.container_name
                or generate_container_name(params.runtime_node_id),
                "registry_mirrors": params.start_params.registry_mirrors or self._settings.registry_mirrors(),
                "insecure_registries": params.start_params.insecure_registries
                or self._settings.insecure_registries(),
            },
        )
        runtime = self.create_runtime(params)
        logger.info(
            "Starting {} runtime for graph {} node {}",
            params.type,
            params.graph_id,
            params.runtime_node_id,
        )
        await runtime.start(start)
        return runtime

    async def cleanup_by_node(self, graph_id: str, node_id: str) -> int:
        """Remove docker containers left behind for a (graph, node) pair."""
        if self._docker_client is None:
            self._docker_client = await to_thread.run_sync(create_docker_client, self._settings)
        labels = RuntimeIdentity(graph_id=graph_id, node_id=node_id).node_labels()
        removed = await remove_containers_by_labels(self._docker_client, labels)
        if removed:
            logger.info("Removed {} container(s) for graph {} node {}", removed, graph_id, node_id)
        return removed
