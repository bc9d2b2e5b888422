"""Shared enumerations used across the graph engine."""

from __future__ import annotations

from enum import StrEnum

# -- Graph -------------------------------------------------------------------


class NodeKind(StrEnum):
    """Kind of a node template; edges are constrained by kind or template id."""

    RUNTIME = "runtime"
    TOOL = "tool"
    SIMPLE_AGENT = "simpleAgent"
    TRIGGER = "trigger"
    RESOURCE = "resource"
    KNOWLEDGE = "knowledge"
    MCP = "mcp"


class ConnectionType(StrEnum):
    KIND = "kind"
    TEMPLATE = "template"


class ResourceKind(StrEnum):
    SHELL = "shell"


# -- Runtime -----------------------------------------------------------------


class RuntimeType(StrEnum):
    DOCKER = "docker"
    LOCAL = "local"


class RuntimeState(StrEnum):
    """Lifecycle of a single runtime instance."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class RuntimeEventType(StrEnum):
    START = "start"
    STOP = "stop"
    EXEC_START = "exec_start"
    EXEC_END = "exec_end"


# -- Execution ---------------------------------------------------------------


class OutputStream(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"


class ExecCause(StrEnum):
    """Why a command execution ended.

    ``TIMEOUT``, ``TAIL_TIMEOUT`` and ``ABORTED`` all report exit code 124;
    ``ERROR`` is an engine failure reported as exit code 1.
    """

    COMPLETED = "completed"
    TIMEOUT = "timeout"
    TAIL_TIMEOUT = "tail_timeout"
    ABORTED = "aborted"
    ERROR = "error"
