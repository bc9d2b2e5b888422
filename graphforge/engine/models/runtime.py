"""Runtime start / exec parameters and results."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any

import anyio
from pydantic import BaseModel, ConfigDict, Field, field_validator

from graphforge.engine.models.enums import ExecCause, RuntimeEventType, RuntimeType

LABEL_PREFIX = "graphforge"
LABEL_GRAPH_ID = f"{LABEL_PREFIX}/graph_id"
LABEL_NODE_ID = f"{LABEL_PREFIX}/node_id"
LABEL_GRAPH_VERSION = f"{LABEL_PREFIX}/graph_version"
LABEL_TEMPORARY = f"{LABEL_PREFIX}/temporary"
LABEL_CONFIG_HASH = f"{LABEL_PREFIX}/config_hash"
LABEL_MANAGED = f"{LABEL_PREFIX}/managed"
LABEL_DIND_FOR = f"{LABEL_PREFIX}/dind_for"

BASE_RUNTIME_WORKDIR = "/runtime-workspace"


def as_script_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return value


# -- Start -------------------------------------------------------------------


class RuntimeIdentity(BaseModel):
    """Durable identity of a graph-owned runtime, stored as container labels."""

    graph_id: str
    node_id: str
    graph_version: str | None = None
    temporary: bool = False

    def node_labels(self) -> dict[str, str]:
        """Labels that identify the (graph, node) pair regardless of version."""
        return {LABEL_GRAPH_ID: self.graph_id, LABEL_NODE_ID: self.node_id}

    def labels(self) -> dict[str, str]:
        labels = self.node_labels()
        labels[LABEL_GRAPH_VERSION] = self.graph_version or "none"
        labels[LABEL_TEMPORARY] = "true" if self.temporary else "false"
        return labels


class RuntimeStartParams(BaseModel):
    image: str | None = None
    workdir: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    init_script: list[str] = Field(default_factory=list)
    init_script_timeout_ms: int | None = None
    container_name: str | None = None
    network: str | None = None
    enable_dind: bool = False
    registry_mirrors: list[str] = Field(default_factory=list)
    insecure_registries: list[str] = Field(default_factory=list)
    recreate: bool = False
    identity: RuntimeIdentity | None = None

    @field_validator("init_script", mode="before")
    @classmethod
    def normalize_init_script(cls, value: Any) -> Any:
        return as_script_list(value)

    def config_hash(self) -> str:
        """Digest of everything baked into a container at creation time."""
        payload = self.model_dump(
            include={"image", "workdir", "env", "labels", "init_script", "enable_dind"},
        )
        raw = json.dumps(payload, sort_keys=True).encode()
        return hashlib.sha256(raw).hexdigest()[:16]

    def system_labels(self) -> dict[str, str]:
        """Labels the engine owns; a container matching all of them is reusable."""
        if self.identity is None:
            return {}
        labels = self.identity.labels()
        labels[LABEL_CONFIG_HASH] = self.config_hash()
        return labels

    def effective_labels(self) -> dict[str, str]:
        return {**self.labels, LABEL_MANAGED: "true", **self.system_labels()}


class ProvideRuntimeParams(BaseModel):
    """Input of ``RuntimeProvider.provide``."""

    type: RuntimeType = RuntimeType.DOCKER
    graph_id: str
    runtime_node_id: str
    graph_version: str | None = None
    temporary: bool = False
    start_params: RuntimeStartParams = Field(default_factory=RuntimeStartParams)


# -- Exec --------------------------------------------------------------------


class RuntimeExecParams(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    cmd: str | list[str]
    timeout_ms: int | None = None
    tail_timeout_ms: int | None = None
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None
    child_workdir: str | None = None
    create_child_workdir: bool = False
    session_id: str | None = None
    signal: anyio.Event | None = Field(default=None, exclude=True)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def script(self) -> str:
        if isinstance(self.cmd, list):
            return " && ".join(self.cmd)
        return self.cmd


class RuntimeExecResult(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    exec_path: str = ""
    cause: ExecCause = ExecCause.COMPLETED

    @property
    def fail(self) -> bool:
        return self.exit_code != 0


# -- Events ------------------------------------------------------------------


@dataclass
class RuntimeEvent:
    type: RuntimeEventType
    params: RuntimeExecParams | RuntimeStartParams | None = None
    result: RuntimeExecResult | None = None
    error: str | None = None
