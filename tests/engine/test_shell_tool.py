"""End-to-end tests: a compiled graph whose agent runs shell commands.

The graph wires a local runtime, a shell resource and a shell tool into a
simple agent started by a manual trigger.  The agent runner is a stub that
sends the trigger message straight to the shell tool.
"""

from __future__ import annotations

import copy
from collections.abc import AsyncIterator
from typing import Any

import anyio
import pytest

from graphforge.engine.app import GraphForge, lifespan
from graphforge.engine.context import ExecutionContext
from graphforge.engine.errors import GraphValidationError, ResourceNotFoundError
from graphforge.engine.models.graph import GraphDefinition
from graphforge.engine.settings import GraphForgeSettings
from graphforge.engine.templates.agents import SimpleAgent
from graphforge.engine.templates.triggers import ManualTrigger
from graphforge.engine.tools.shell import ShellToolArgs, ToolResult

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


GRAPH = {
    "metadata": {"graph_id": "demo", "version": "1"},
    "graph": {
        "nodes": [
            {"id": "trigger", "template": "manual-trigger"},
            {"id": "agent", "template": "simple-agent", "config": {"name": "helper"}},
            {"id": "shell", "template": "shell-tool", "config": {"timeout_ms": 20000}},
            {
                "id": "res",
                "template": "shell-resource",
                "config": {
                    "information": "Greeting is configured.",
                    "env": {"GREETING": "hello"},
                    "init_script": "echo ready > resource.txt",
                },
            },
            {"id": "rt", "template": "local-runtime", "config": {"env": {"RUNTIME_VAR": "rt"}}},
        ],
        "edges": [
            {"from": "rt", "to": "shell"},
            {"from": "res", "to": "shell"},
            {"from": "shell", "to": "agent"},
            {"from": "trigger", "to": "agent"},
        ],
    },
}


async def _shell_runner(agent: SimpleAgent, messages: list[str], ctx: ExecutionContext) -> Any:
    return await agent.invoke_tool("shell", {"purpose": "test", "command": messages[0]}, ctx)


@pytest.fixture
async def forge(settings: GraphForgeSettings) -> AsyncIterator[GraphForge]:
    async with lifespan(settings, agent_runner=_shell_runner) as forge:
        definition = GraphDefinition.model_validate(GRAPH)
        await forge.compiler.compile(definition.graph, definition.metadata)
        yield forge


def _trigger(forge: GraphForge) -> ManualTrigger:
    return forge.graph_registry.get_node("demo", "trigger").instance


async def _run(forge: GraphForge, command: str, thread_id: str = "thread-1") -> ToolResult:
    results = await _trigger(forge).trigger([command], thread_id=thread_id)
    return results[0]


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_agent_sees_shell_tool(forge: GraphForge) -> None:
    agent: SimpleAgent = forge.graph_registry.get_node("demo", "agent").instance
    assert [tool.name for tool in agent.tools] == ["shell"]
    tool = agent.get_tool("shell")
    assert "Greeting is configured." in tool.description
    assert tool.json_schema()["required"] == ["purpose", "command"]
    with pytest.raises(LookupError):
        agent.get_tool("missing")
    assert _trigger(forge).listener_count == 1


@pytest.mark.anyio
async def test_runtime_starts_lazily(forge: GraphForge) -> None:
    provider = forge.graph_registry.get_node("demo", "rt").instance
    assert provider.runtime is None
    await _run(forge, "true")
    assert provider.runtime is not None


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_command_sees_resource_and_runtime_env(forge: GraphForge) -> None:
    result = await _run(forge, 'echo "$GREETING $RUNTIME_VAR"; cat ../resource.txt')
    assert result.output.exit_code == 0
    assert result.output.stdout == "hello rt\nready\n"
    assert result.title == "test"


@pytest.mark.anyio
async def test_thread_keeps_session_and_workdir(forge: GraphForge) -> None:
    await _run(forge, "mkdir -p sub && cd sub && export STEP=two")
    result = await _run(forge, 'pwd; echo "$STEP"')
    cwd, step = result.output.stdout.splitlines()
    assert cwd.endswith("/thread_1/sub")
    assert step == "two"

    other = await _run(forge, "pwd", thread_id="thread-2")
    assert other.output.stdout.strip().endswith("/thread_2")


@pytest.mark.anyio
async def test_sub_agent_shares_parent_sandbox(forge: GraphForge) -> None:
    await _run(forge, "echo parent > mine.txt", thread_id="parent")
    results = await _trigger(forge).trigger(["cat mine.txt"], thread_id="child", parent_thread_id="parent")
    assert results[0].output.stdout == "parent\n"


@pytest.mark.anyio
async def test_output_trimmed_to_tail(forge: GraphForge) -> None:
    agent: SimpleAgent = forge.graph_registry.get_node("demo", "agent").instance
    ctx = ExecutionContext(thread_id="trim", graph_id="demo")
    args = ShellToolArgs(purpose="trim", command="printf 0123456789", max_output_length=4)
    result = await agent.invoke_tool("shell", args.model_dump(), ctx)
    assert result.output.stdout == "6789"


@pytest.mark.anyio
async def test_stop_thread_aborts_running_command(forge: GraphForge) -> None:
    results: list[ToolResult] = []
    await _run(forge, "true", thread_id="warm-up")

    async def long_running() -> None:
        results.append(await _run(forge, "sleep 30", thread_id="stoppable"))

    with anyio.fail_after(15):
        async with anyio.create_task_group() as tg:
            tg.start_soon(long_running)
            while not forge.thread_registry.get("stoppable"):
                await anyio.sleep(0.05)
            await anyio.sleep(0.3)
            assert forge.thread_registry.stop_thread("stoppable") == 1

    assert results[0].output.exit_code == 124
    assert "command aborted" in results[0].output.stderr
    assert forge.thread_registry.get("stoppable") == []

    again = await _run(forge, "echo again", thread_id="stoppable")
    assert again.output.exit_code == 0
    assert again.output.stdout == "again\n"


@pytest.mark.anyio
async def test_runtime_failure_reported_as_tool_result(settings: GraphForgeSettings) -> None:
    graph = {
        "metadata": {"graph_id": "broken"},
        "graph": {
            "nodes": [
                {"id": "rt", "template": "local-runtime", "config": {"init_script": ["exit 9"]}},
                {"id": "shell", "template": "shell-tool"},
                {"id": "agent", "template": "simple-agent"},
            ],
            "edges": [{"from": "rt", "to": "shell"}, {"from": "shell", "to": "agent"}],
        },
    }
    async with lifespan(settings) as forge:
        definition = GraphDefinition.model_validate(graph)
        await forge.compiler.compile(definition.graph, definition.metadata)
        agent: SimpleAgent = forge.graph_registry.get_node("broken", "agent").instance

        result = await agent.invoke_tool("shell", {"purpose": "x", "command": "echo hi"}, ExecutionContext(run_id="r"))

        assert result.output.exit_code == 1
        assert "exit code 9" in result.output.stderr


# ---------------------------------------------------------------------------
# Graph edits
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_update_resource_env_restarts_runtime(forge: GraphForge) -> None:
    await _run(forge, "true")
    provider = forge.graph_registry.get_node("demo", "rt").instance
    first_runtime = provider.runtime

    edited = GraphDefinition.model_validate(copy.deepcopy(GRAPH))
    edited.graph.nodes[3].config["env"] = {"GREETING": "bonjour"}
    await forge.compiler.update(edited.graph, edited.metadata)

    result = await _run(forge, 'echo "$GREETING"')
    assert result.output.stdout == "bonjour\n"
    assert provider.runtime is not first_runtime


@pytest.mark.anyio
async def test_removed_resource_env_leaves_runtime(forge: GraphForge) -> None:
    before = await _run(forge, 'echo "${GREETING:-unset}"', thread_id="t-a")
    assert before.output.stdout == "hello\n"

    edited = copy.deepcopy(GRAPH)
    edited["graph"]["nodes"] = [n for n in edited["graph"]["nodes"] if n["id"] != "res"]
    edited["graph"]["edges"] = [e for e in edited["graph"]["edges"] if e["from"] != "res"]
    definition = GraphDefinition.model_validate(edited)
    await forge.compiler.update(definition.graph, definition.metadata)

    after = await _run(forge, 'echo "${GREETING:-unset} $RUNTIME_VAR"', thread_id="t-b")
    assert after.output.stdout == "unset rt\n"
    assert "GREETING" not in forge.graph_registry.get_node("demo", "rt").instance.env


@pytest.mark.anyio
async def test_new_graph_version_reaches_runtime(forge: GraphForge) -> None:
    await _run(forge, "true")
    provider = forge.graph_registry.get_node("demo", "rt").instance
    first_runtime = provider.runtime

    edited = copy.deepcopy(GRAPH)
    edited["metadata"]["version"] = "2"
    definition = GraphDefinition.model_validate(edited)
    await forge.compiler.update(definition.graph, definition.metadata)

    assert provider.get_params().graph_version == "2"
    await _run(forge, "true")
    assert provider.runtime is not first_runtime


@pytest.mark.anyio
async def test_destroy_stops_runtime(forge: GraphForge) -> None:
    await _run(forge, "true")
    runtime = forge.graph_registry.get_node("demo", "rt").instance.runtime
    trigger = _trigger(forge)

    await forge.compiler.destroy("demo")

    assert runtime.state == "stopped"
    assert trigger.listener_count == 0
    assert not forge.graph_registry.has_graph("demo")


@pytest.mark.anyio
async def test_shell_tool_without_runtime_rejected(settings: GraphForgeSettings) -> None:
    graph = {
        "metadata": {"graph_id": "no-runtime"},
        "graph": {"nodes": [{"id": "shell", "template": "shell-tool"}], "edges": []},
    }
    async with lifespan(settings) as forge:
        definition = GraphDefinition.model_validate(graph)
        with pytest.raises(GraphValidationError, match="requires an input of kind:runtime"):
            await forge.compiler.compile(definition.graph, definition.metadata)


def test_resource_not_found_is_lookup_error() -> None:
    error = ResourceNotFoundError("res", "input of shell tool 'shell' is not registered")
    assert isinstance(error, LookupError)
    assert "res" in str(error)
