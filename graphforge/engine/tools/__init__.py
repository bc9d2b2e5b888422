"""Tools exposed to agents by tool nodes."""

from graphforge.engine.tools.shell import (
    BuiltTool,
    ShellEnvVar,
    ShellTool,
    ShellToolArgs,
    ShellToolOutput,
    ToolResult,
)

__all__ = [
    "BuiltTool",
    "ShellEnvVar",
    "ShellTool",
    "ShellToolArgs",
    "ShellToolOutput",
    "ToolResult",
]
