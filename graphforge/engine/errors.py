"""Domain exceptions for the graph engine.

Configuration and validation errors propagate and block a graph from
compiling.  Execution-time failures never surface as exceptions: the command
executor turns them into a ``RuntimeExecResult`` (see
``graphforge.engine.runtime.executor``).
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class DuplicateTemplateError(ValueError):
    """A template with the same id is already registered."""

    def __init__(self, template_id: str) -> None:
        self.template_id = template_id
        super().__init__(f"Template with id '{template_id}' is already registered")


class TemplateNotFoundError(LookupError):
    """No template registered under the requested id."""

    def __init__(self, template_id: str) -> None:
        self.template_id = template_id
        super().__init__(f"Template '{template_id}' not found")


class InvalidTemplateConfigError(ValueError):
    """A node configuration does not satisfy its template schema."""

    def __init__(self, template_id: str, detail: str) -> None:
        self.template_id = template_id
        self.detail = detail
        super().__init__(f"Invalid configuration for template '{template_id}': {detail}")


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class GraphValidationError(ValueError):
    """The graph schema is structurally invalid (ids, edges, cardinality)."""


class NodeNotFoundError(LookupError):
    """A required connection could not be resolved at configure time."""

    def __init__(self, node_id: str, detail: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node '{node_id}': {detail}")


class ResourceNotFoundError(NodeNotFoundError):
    """A connected resource node is missing from the graph registry."""


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


class RuntimeUnavailableError(RuntimeError):
    """The runtime cannot serve requests (not started, engine unreachable)."""


class InitScriptFailedError(RuntimeError):
    """An init-script command exited non-zero during runtime start."""

    def __init__(self, cmd: str, exit_code: int, stderr: str) -> None:
        self.cmd = cmd
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Init script failed (exit code {exit_code}): {stderr or cmd}")


class MissingExecutionIdentityError(ValueError):
    """An execution context carries neither a thread id nor a run id."""

    def __init__(self) -> None:
        super().__init__("Thread id or run id is required for runtime execution")
