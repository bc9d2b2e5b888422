"""Resource node templates.

A resource contributes environment variables, init-script commands and a
short information text to the shell tools it is connected to.  Its data is
derived purely from config, so it is ready right after ``provide``.
"""

from __future__ import annotations

import shlex
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import Field, SecretStr, field_validator

from graphforge.engine.models.enums import NodeKind, ResourceKind
from graphforge.engine.models.runtime import as_script_list
from graphforge.engine.templates.base import NodeConnection, NodeLifecycle, NodeTemplate, TemplateConfig

if TYPE_CHECKING:
    from graphforge.engine.models.graph import GraphNode

SHELL_TOOL_TEMPLATE_ID = "shell-tool"


@dataclass
class ShellResource:
    """Instance handle of a resource node, shared with the tools using it."""

    node_id: str
    kind: ResourceKind = ResourceKind.SHELL
    information: str = ""
    env: dict[str, str] = field(default_factory=dict)
    init_script: list[str] = field(default_factory=list)
    init_script_timeout_ms: int | None = None

    def replace_with(self, other: ShellResource) -> None:
        self.information = other.information
        self.env = dict(other.env)
        self.init_script = list(other.init_script)
        self.init_script_timeout_ms = other.init_script_timeout_ms


# -- Configs -----------------------------------------------------------------


class ShellResourceConfig(TemplateConfig):
    information: str = ""
    env: dict[str, str] = Field(default_factory=dict)
    init_script: list[str] = Field(default_factory=list)
    init_script_timeout_ms: int | None = Field(default=None, gt=0)

    @field_validator("init_script", mode="before")
    @classmethod
    def normalize_init_script(cls, value: Any) -> Any:
        return as_script_list(value)


class GithubResourceConfig(TemplateConfig):
    pat_token: SecretStr
    name: str | None = None
    email: str | None = None
    auth: bool = True
    """Configure git to authenticate HTTPS remotes with the token."""


# -- Templates ---------------------------------------------------------------


class _ResourceTemplate(NodeTemplate):
    kind = NodeKind.RESOURCE
    outputs = (NodeConnection.template(SHELL_TOOL_TEMPLATE_ID, multiple=True),)

    @abstractmethod
    def build_resource(self, node: GraphNode) -> ShellResource: ...

    def create(self) -> NodeLifecycle:
        async def provide(node: GraphNode) -> ShellResource:
            return self.build_resource(node)

        async def configure(node: GraphNode, instance: ShellResource) -> None:
            instance.replace_with(self.build_resource(node))

        async def destroy(instance: ShellResource) -> None:
            instance.env.clear()
            instance.init_script.clear()

        return NodeLifecycle(provide=provide, configure=configure, destroy=destroy)


class ShellResourceTemplate(_ResourceTemplate):
    id = "shell-resource"
    name = "Shell resource"
    description = "Environment variables and setup commands for connected shell tools."
    schema = ShellResourceConfig

    def build_resource(self, node: GraphNode) -> ShellResource:
        config: ShellResourceConfig = node.config  # type: ignore[assignment]
        return ShellResource(
            node_id=node.node_id,
            information=config.information,
            env=dict(config.env),
            init_script=list(config.init_script),
            init_script_timeout_ms=config.init_script_timeout_ms,
        )


class GithubResourceTemplate(_ResourceTemplate):
    id = "github-resource"
    name = "GitHub"
    description = "GitHub token and git identity for connected shell tools."
    schema = GithubResourceConfig

    def build_resource(self, node: GraphNode) -> ShellResource:
        config: GithubResourceConfig = node.config  # type: ignore[assignment]
        token = config.pat_token.get_secret_value()
        init_script = []
        if config.name:
            init_script.append(f"git config --global user.name {shlex.quote(config.name)}")
        if config.email:
            init_script.append(f"git config --global user.email {shlex.quote(config.email)}")
        if config.auth:
            helper = '!f() { echo username=x-access-token; echo "password=$GITHUB_TOKEN"; }; f'
            init_script.append(f"git config --global credential.helper {shlex.quote(helper)}")

        information = (
            "GitHub access is configured. The token is available as $GITHUB_TOKEN and $GH_TOKEN; "
            "git authenticates HTTPS remotes on github.com automatically."
            if config.auth
            else "A GitHub token is available as $GITHUB_TOKEN and $GH_TOKEN."
        )
        return ShellResource(
            node_id=node.node_id,
            information=information,
            env={"GITHUB_TOKEN": token, "GH_TOKEN": token},
            init_script=init_script,
        )
