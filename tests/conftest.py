"""Shared test fixtures: a real Docker client for integration tests.

The client is session-scoped (connected once per test run).  Tests that
request it are skipped when no daemon answers, and every container the run
labelled as temporary is removed at the end of the session.

Tests needing the daemon should be marked with ``@pytest.mark.integration``.
"""

from __future__ import annotations

from collections.abc import Iterator

import docker
import pytest

from graphforge.engine.models.runtime import LABEL_MANAGED, LABEL_TEMPORARY


@pytest.fixture(scope="session")
def docker_client() -> Iterator[docker.DockerClient]:
    """Docker client for the test session; skips when the daemon is unreachable."""
    try:
        client = docker.from_env()
        client.ping()
    except docker.errors.DockerException as exc:
        pytest.skip(f"Docker daemon not reachable: {exc}")

    yield client

    for container in client.containers.list(
        all=True,
        filters={"label": [f"{LABEL_MANAGED}=true", f"{LABEL_TEMPORARY}=true"]},
    ):
        container.remove(force=True)
    client.close()
