"""Shared fixtures for graph engine tests.

Execution tests run real ``/bin/sh`` processes through the local runtime;
nothing here needs Docker.  Docker-backed tests are marked
``@pytest.mark.integration`` and use the session ``docker_client`` fixture,
which skips when no daemon answers.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest

from graphforge.engine.models.runtime import RuntimeStartParams
from graphforge.engine.runtime.local import LocalRuntime
from graphforge.engine.settings import GraphForgeSettings, get_settings


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path: Path) -> Iterator[GraphForgeSettings]:
    """Settings isolated from the environment, with a per-test local root."""
    get_settings.cache_clear()  # type: ignore[attr-defined]
    yield GraphForgeSettings(
        local_runtime_root=str(tmp_path / "runtimes"),
        exec_timeout_ms=30_000,
        exec_tail_timeout_ms=None,
        init_script_timeout_ms=30_000,
        runtime_stop_timeout=5.0,
    )
    get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture
async def local_runtime(tmp_path: Path) -> AsyncIterator[LocalRuntime]:
    """A started local runtime rooted in the test's tmp directory."""
    runtime = LocalRuntime(tmp_path / "runtime", stop_timeout=5.0)
    await runtime.start(RuntimeStartParams())
    yield runtime
    await runtime.stop()
