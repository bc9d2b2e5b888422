"""Unit tests for ExecutionContext and ThreadRegistry."""

from __future__ import annotations

import anyio
import pytest

from graphforge.engine.context import ExecutionContext
from graphforge.engine.errors import MissingExecutionIdentityError
from graphforge.engine.threads import ShuttingDownError, ThreadRegistry

# ---------------------------------------------------------------------------
# ExecutionContext
# ---------------------------------------------------------------------------


def test_execution_key_precedence() -> None:
    assert ExecutionContext(thread_id="t", run_id="r", parent_thread_id="p").execution_key == "p"
    assert ExecutionContext(thread_id="t", run_id="r").execution_key == "t"
    assert ExecutionContext(run_id="r").execution_key == "r"


def test_context_requires_identity() -> None:
    with pytest.raises(MissingExecutionIdentityError):
        ExecutionContext(graph_id="g1")


# ---------------------------------------------------------------------------
# ThreadRegistry
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_stop_thread_signals_only_that_thread() -> None:
    registry = ThreadRegistry()
    first = ExecutionContext(thread_id="t1", run_id="a")
    second = ExecutionContext(thread_id="t1", run_id="b")
    other = ExecutionContext(thread_id="t2")
    for ctx in (first, second, other):
        registry.register(ctx)

    assert registry.active_count == 3
    assert registry.stop_thread("t1") == 2
    assert first.aborted and second.aborted
    assert not other.aborted
    assert registry.stop_thread("unknown") == 0


@pytest.mark.anyio
async def test_unregister_and_drain() -> None:
    registry = ThreadRegistry()
    ctx = ExecutionContext(thread_id="t1")
    registry.register(ctx)
    assert registry.get("t1") == [ctx]

    assert await registry.wait_until_drained(timeout=0.05) is False

    async def finish() -> None:
        await anyio.sleep(0.05)
        registry.unregister(ctx)

    async with anyio.create_task_group() as tg:
        tg.start_soon(finish)
        assert await registry.wait_until_drained(timeout=5) is True

    assert registry.get("t1") == []
    assert registry.active_count == 0


@pytest.mark.anyio
async def test_shutdown_refuses_new_executions() -> None:
    registry = ThreadRegistry()
    ctx = ExecutionContext(thread_id="t1")
    registry.register(ctx)

    registry.begin_shutdown()
    assert registry.stop_all() == 1
    assert ctx.aborted
    with pytest.raises(ShuttingDownError):
        registry.register(ExecutionContext(thread_id="t2"))
