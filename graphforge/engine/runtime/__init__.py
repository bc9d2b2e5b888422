"""Sandboxed command execution: runtimes, providers and the command executor."""

from graphforge.engine.runtime.base import BaseRuntime
from graphforge.engine.runtime.docker import DockerRuntime
from graphforge.engine.runtime.executor import CommandExecutor, child_workdir_name
from graphforge.engine.runtime.local import LocalRuntime
from graphforge.engine.runtime.provider import RuntimeProvider
from graphforge.engine.runtime.thread_provider import RuntimeThreadProvider, RuntimeThreadProviderParams

__all__ = [
    "BaseRuntime",
    "CommandExecutor",
    "DockerRuntime",
    "LocalRuntime",
    "RuntimeProvider",
    "RuntimeThreadProvider",
    "RuntimeThreadProviderParams",
    "child_workdir_name",
]
