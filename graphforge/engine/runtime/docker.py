"""Docker-backed runtime.

One long-lived container per runtime node, identified by labels so that a
restarted process re-attaches to the container it created before instead of
leaking a new one.  Commands run through ``docker exec`` (see
:class:`~graphforge.engine.runtime.channel.DockerShellChannel`).

All docker SDK calls are blocking and run via ``anyio.to_thread.run_sync``.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from collections.abc import Callable
from functools import partial
from typing import TYPE_CHECKING, Any, TypeVar

import anyio
import docker
from anyio import to_thread

from graphforge.engine.errors import RuntimeUnavailableError
from graphforge.engine.models.enums import RuntimeEventType, RuntimeState, RuntimeType
from graphforge.engine.models.runtime import (
    LABEL_DIND_FOR,
    LABEL_GRAPH_ID,
    LABEL_MANAGED,
    RuntimeEvent,
    RuntimeStartParams,
)
from graphforge.engine.runtime.base import BaseRuntime
from graphforge.engine.runtime.channel import DockerShellChannel
from graphforge.engine.settings import GraphForgeSettings, get_settings

if TYPE_CHECKING:
    from docker.models.containers import Container

    from graphforge.engine.runtime.channel import ShellChannel

logger = logging.getLogger(__name__)

KEEP_ALIVE_COMMAND = ["sh", "-lc", "while :; do sleep 2147483; done"]
DIND_PORT = 2375
_CONTAINER_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]+")


def create_docker_client(settings: GraphForgeSettings) -> docker.DockerClient:
    """Blocking: connects to the daemon configured in *settings* or the environment."""
    if settings.docker_host:
        return docker.DockerClient(base_url=settings.docker_host)
    return docker.from_env()


def generate_container_name(node_id: str, prefix: str = "gf") -> str:
    slug = _CONTAINER_NAME_CHARS.sub("-", node_id).strip("-.").lower()[:32] or "runtime"
    return f"{prefix}-{slug}-{uuid.uuid4().hex[:8]}"


def _label_filters(labels: dict[str, str]) -> dict[str, list[str]]:
    return {"label": [f"{key}={value}" for key, value in labels.items()]}


T = TypeVar("T")


async def _call(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    return await to_thread.run_sync(partial(fn, *args, **kwargs), abandon_on_cancel=True)


def _stop_and_remove(container: Container) -> None:
    try:
        container.stop(timeout=10)
    except docker.errors.NotFound:
        return
    except docker.errors.APIError as exc:
        logger.debug("Stopping container %s failed: %s", container.short_id, exc)
    try:
        container.remove(force=True)
    except docker.errors.NotFound:
        pass


async def remove_containers_by_labels(client: docker.DockerClient, labels: dict[str, str]) -> int:
    """Stop and remove every container carrying all *labels*; returns the count."""
    containers = await _call(client.containers.list, all=True, filters=_label_filters(labels))
    for container in containers:
        logger.info("Removing container %s (%s)", container.name, container.short_id)
        await _call(_stop_and_remove, container)
    return len(containers)


class DockerRuntime(BaseRuntime):
    runtime_type = RuntimeType.DOCKER

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        *,
        settings: GraphForgeSettings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        super().__init__(max_output_bytes=self._settings.max_output_bytes)
        self._client = client
        self._container: Container | None = None
        self._dind: Container | None = None
        self._image: str | None = None
        self._network: str | None = None

    @property
    def container(self) -> Container | None:
        return self._container

    async def _get_client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = await _call(create_docker_client, self._settings)
            except docker.errors.DockerException as exc:
                raise RuntimeUnavailableError(f"Docker is not available: {exc}") from exc
        return self._client

    # -- Start -----------------------------------------------------------------

    async def start(self, params: RuntimeStartParams) -> None:
        if self._state is RuntimeState.RUNNING and self._container is not None and not params.recreate:
            return
        if self._container is not None:
            await self.stop()

        client = await self._get_client()
        self._state = RuntimeState.STARTING
        try:
            await self._start(client, params)
        except BaseException:
            with anyio.CancelScope(shield=True):
                await self._teardown()
            self._state = RuntimeState.STOPPED
            raise

        self._state = RuntimeState.RUNNING
        await self._emit(RuntimeEvent(type=RuntimeEventType.START, params=params))

    async def _start(self, client: docker.DockerClient, params: RuntimeStartParams) -> None:
        image = params.image or self._settings.runtime_image
        network = params.network or self._settings.runtime_network
        labels = params.effective_labels()
        system_labels = params.system_labels()
        self._image = image
        self._network = network
        self._workdir = self.get_workdir(params.workdir)

        existing = None
        if system_labels:
            existing = await self._find_runtime_container(client, system_labels)
        elif params.container_name:
            existing = await self._find_by_name(client, params.container_name)

        if existing is not None and not params.recreate:
            logger.info("Attaching to existing runtime container %s (%s)", existing.name, existing.short_id)
            await self._ensure_running(existing)
            self._container = existing
            if params.enable_dind:
                self._dind = await self._start_dind(client, existing.name, network, labels, params, attach=True)
            return

        if params.identity is not None:
            await remove_containers_by_labels(client, params.identity.node_labels())
        if existing is not None:
            await _call(_stop_and_remove, existing)

        await self._ensure_network(client, network, params)
        await self._ensure_image(client, image)

        name = params.container_name or generate_container_name(
            params.identity.node_id if params.identity else "runtime",
        )
        env = dict(params.env)
        if params.enable_dind:
            self._dind = await self._start_dind(client, name, network, labels, params, attach=False)
            env["DOCKER_HOST"] = f"tcp://{await self._container_ip(self._dind, network)}:{DIND_PORT}"

        self._container = await self._create_container(
            client,
            image=image,
            name=name,
            env=env,
            labels=labels,
            network=network,
        )
        logger.info("Created runtime container %s (%s) from %s", name, self._container.short_id, image)
        await self._run_init_script(params, self._settings.init_script_timeout_ms)

    async def _find_runtime_container(self, client: docker.DockerClient, labels: dict[str, str]) -> Container | None:
        containers = await _call(client.containers.list, all=True, filters=_label_filters(labels))
        containers = [c for c in containers if LABEL_DIND_FOR not in (c.labels or {})]
        return containers[0] if containers else None

    @staticmethod
    async def _find_by_name(client: docker.DockerClient, name: str) -> Container | None:
        try:
            return await _call(client.containers.get, name)
        except docker.errors.NotFound:
            return None

    @staticmethod
    async def _ensure_running(container: Container) -> None:
        if container.status != "running":
            await _call(container.start)
            await _call(container.reload)

    async def _ensure_network(self, client: docker.DockerClient, network: str, params: RuntimeStartParams) -> None:
        existing = await _call(client.networks.list, names=[network])
        if any(n.name == network for n in existing):
            return
        labels = {LABEL_MANAGED: "true"}
        if params.identity is not None:
            labels[LABEL_GRAPH_ID] = params.identity.graph_id
        logger.info("Creating network %s", network)
        try:
            await _call(client.networks.create, network, driver="bridge", labels=labels)
        except docker.errors.APIError as exc:
            # Another runtime of the same graph may have created it concurrently.
            if exc.status_code != 409:
                raise

    @staticmethod
    async def _ensure_image(client: docker.DockerClient, image: str) -> None:
        try:
            await _call(client.images.get, image)
        except docker.errors.ImageNotFound:
            logger.info("Pulling image %s", image)
            await _call(client.images.pull, image)

    async def _create_container(
        self,
        client: docker.DockerClient,
        *,
        image: str,
        name: str,
        env: dict[str, str],
        labels: dict[str, str],
        network: str,
        command: list[str] | None = None,
        privileged: bool = False,
        retry_on_conflict: bool = True,
    ) -> Container:
        try:
            container = await _call(
                client.containers.create,
                image,
                command=command or KEEP_ALIVE_COMMAND,
                name=name,
                environment=env,
                working_dir=None if privileged else self._workdir,
                labels=labels,
                network=network,
                privileged=privileged,
                detach=True,
                tty=False,
            )
        except docker.errors.APIError as exc:
            if not retry_on_conflict or (exc.status_code != 409 and "already in use" not in str(exc)):
                raise
            logger.warning("Container name %s is taken, removing the conflicting container", name)
            conflicting = await self._find_by_name(client, name)
            if conflicting is not None:
                await _call(_stop_and_remove, conflicting)
            return await self._create_container(
                client,
                image=image,
                name=name,
                env=env,
                labels=labels,
                network=network,
                command=command,
                privileged=privileged,
                retry_on_conflict=False,
            )
        try:
            await _call(container.start)
            await _call(container.reload)
        except BaseException:
            with anyio.CancelScope(shield=True):
                await _call(_stop_and_remove, container)
            raise
        return container

    # -- Docker-in-Docker ------------------------------------------------------

    async def _start_dind(
        self,
        client: docker.DockerClient,
        owner_name: str,
        network: str,
        labels: dict[str, str],
        params: RuntimeStartParams,
        *,
        attach: bool,
    ) -> Container:
        name = f"{owner_name}-dind"
        existing = await self._find_by_name(client, name)
        if existing is not None and attach:
            await self._ensure_running(existing)
            await self._wait_dind_ready(existing)
            return existing
        if existing is not None:
            await _call(_stop_and_remove, existing)

        mirrors = params.registry_mirrors or self._settings.registry_mirrors()
        insecure = params.insecure_registries or self._settings.insecure_registries()
        command = [
            "dockerd",
            f"--host=tcp://0.0.0.0:{DIND_PORT}",
            "--host=unix:///var/run/docker.sock",
            *(f"--registry-mirror={mirror}" for mirror in mirrors),
            *(f"--insecure-registry={registry}" for registry in insecure),
        ]
        dind_labels = {key: value for key, value in labels.items() if key in (LABEL_MANAGED, LABEL_GRAPH_ID)}
        if params.identity is not None:
            dind_labels.update(params.identity.node_labels())
        dind_labels[LABEL_DIND_FOR] = owner_name

        await self._ensure_image(client, self._settings.dind_image)
        container = await self._create_container(
            client,
            image=self._settings.dind_image,
            name=name,
            env={"DOCKER_TLS_CERTDIR": ""},
            labels=dind_labels,
            network=network,
            command=command,
            privileged=True,
        )
        logger.info("Started Docker-in-Docker sidecar %s", name)
        await self._wait_dind_ready(container)
        return container

    async def _wait_dind_ready(self, container: Container) -> None:
        deadline = time.monotonic() + self._settings.dind_ready_timeout
        while time.monotonic() < deadline:
            result = await _call(container.exec_run, ["docker", "info"])
            if result.exit_code == 0:
                return
            await anyio.sleep(0.5)
        raise RuntimeUnavailableError(
            f"Docker-in-Docker sidecar {container.name} not ready after {self._settings.dind_ready_timeout}s"
        )

    @staticmethod
    async def _container_ip(container: Container, network: str) -> str:
        await _call(container.reload)
        networks = container.attrs.get("NetworkSettings", {}).get("Networks", {})
        address = (networks.get(network) or {}).get("IPAddress")
        if not address:
            raise RuntimeUnavailableError(f"Container {container.name} has no address on network {network}")
        return address

    # -- Stop ------------------------------------------------------------------

    async def stop(self) -> None:
        if self._container is None and self._dind is None:
            self._state = RuntimeState.STOPPED
            return
        self._state = RuntimeState.STOPPING
        with anyio.move_on_after(self._settings.runtime_stop_timeout, shield=True) as scope:
            await self._executor.reset()
            await self._teardown()
        if scope.cancelled_caught:
            logger.warning(
                "Stopping runtime container exceeded %ss, abandoning it",
                self._settings.runtime_stop_timeout,
            )
        self._container = None
        self._dind = None
        self._state = RuntimeState.STOPPED
        await self._emit(RuntimeEvent(type=RuntimeEventType.STOP))

    async def _teardown(self) -> None:
        for container in (self._container, self._dind):
            if container is None:
                continue
            try:
                await _call(_stop_and_remove, container)
            except Exception:
                logger.warning("Failed to remove container %s", container.short_id, exc_info=True)

    # -- Exec ------------------------------------------------------------------

    async def open_channel(
        self,
        argv: list[str],
        *,
        workdir: str | None,
        env: dict[str, str] | None,
        interactive: bool,
    ) -> ShellChannel:
        if self._container is None:
            raise RuntimeUnavailableError("Runtime container is not started")
        client = await self._get_client()
        return await DockerShellChannel.open(
            client,
            self._container.id,
            argv,
            workdir=workdir or self._workdir,
            env=env,
            interactive=interactive,
        )

    def get_runtime_info(self) -> str:
        lines = [
            f"Docker container runtime (image: {self._image or self._settings.runtime_image}).",
            f"Default working directory: {self._workdir}",
        ]
        if self._dind is not None:
            lines.append("A Docker daemon is available through DOCKER_HOST.")
        return "\n".join(lines)
