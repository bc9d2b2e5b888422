"""Runtime node templates.

The instance of a runtime node is a :class:`RuntimeThreadProvider`; nothing
is started until a connected tool first needs it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import Field, field_validator

from graphforge.engine.models.enums import NodeKind, RuntimeType
from graphforge.engine.models.runtime import RuntimeStartParams, as_script_list
from graphforge.engine.runtime.thread_provider import RuntimeThreadProvider, RuntimeThreadProviderParams
from graphforge.engine.templates.base import NodeConnection, NodeLifecycle, NodeTemplate, TemplateConfig

if TYPE_CHECKING:
    from graphforge.engine.graph.registry import GraphRegistry
    from graphforge.engine.models.graph import GraphNode
    from graphforge.engine.runtime.provider import RuntimeProvider


class LocalRuntimeConfig(TemplateConfig):
    workdir: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    init_script: list[str] = Field(default_factory=list)
    init_script_timeout_ms: int | None = Field(default=None, gt=0)

    @field_validator("init_script", mode="before")
    @classmethod
    def normalize_init_script(cls, value: Any) -> Any:
        return as_script_list(value)


class DockerRuntimeConfig(LocalRuntimeConfig):
    image: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    enable_dind: bool = False


class _RuntimeTemplate(NodeTemplate):
    kind = NodeKind.RUNTIME
    outputs = (NodeConnection.kind(NodeKind.TOOL, multiple=True),)
    runtime_type: ClassVar[RuntimeType]

    def __init__(self, graph_registry: GraphRegistry, runtime_provider: RuntimeProvider) -> None:
        super().__init__(graph_registry)
        self.runtime_provider = runtime_provider

    def _start_params(self, config: Any) -> RuntimeStartParams:
        return RuntimeStartParams(
            workdir=config.workdir,
            env=config.env,
            init_script=config.init_script,
            init_script_timeout_ms=config.init_script_timeout_ms,
        )

    def _params(self, node: GraphNode) -> RuntimeThreadProviderParams:
        return RuntimeThreadProviderParams(
            graph_id=node.graph_id,
            runtime_node_id=node.node_id,
            type=self.runtime_type,
            graph_version=node.metadata.version,
            temporary=node.metadata.temporary,
            start_params=self._start_params(node.config),
        )

    def create(self) -> NodeLifecycle:
        async def provide(node: GraphNode) -> RuntimeThreadProvider:
            return RuntimeThreadProvider(self.runtime_provider, self._params(node))

        async def configure(node: GraphNode, instance: RuntimeThreadProvider) -> None:
            instance.set_params(self._params(node))

        async def destroy(instance: RuntimeThreadProvider) -> None:
            await instance.cleanup()

        return NodeLifecycle(provide=provide, configure=configure, destroy=destroy)


class DockerRuntimeTemplate(_RuntimeTemplate):
    id = "docker-runtime"
    name = "Docker runtime"
    description = "Long-lived Docker container where connected tools run shell commands."
    schema = DockerRuntimeConfig
    runtime_type = RuntimeType.DOCKER

    def _start_params(self, config: Any) -> RuntimeStartParams:
        params = super()._start_params(config)
        return params.model_copy(
            update={"image": config.image, "labels": config.labels, "enable_dind": config.enable_dind},
        )


class LocalRuntimeTemplate(_RuntimeTemplate):
    id = "local-runtime"
    name = "Local runtime"
    description = "Host shell below a per-node directory. No isolation; for development."
    schema = LocalRuntimeConfig
    runtime_type = RuntimeType.LOCAL
