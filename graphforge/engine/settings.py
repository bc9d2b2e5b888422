"""Engine configuration loaded from GRAPHFORGE_* environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class GraphForgeSettings(BaseSettings):
    """Graph engine settings.

    All fields are read from environment variables with the ``GRAPHFORGE_``
    prefix.  For example, ``GRAPHFORGE_LOG_LEVEL=DEBUG`` maps to ``log_level``.
    """

    model_config = SettingsConfigDict(
        env_prefix="GRAPHFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_file: str | None = None
    """Optional path of an additional, rotated log file."""

    log_json: bool = False

    # -- Docker ----------------------------------------------------------------
    docker_host: str | None = None
    """Docker Engine URL.  When unset the SDK reads ``DOCKER_HOST`` and friends."""

    runtime_image: str = "python:3.12-slim"
    """Image used when a runtime node does not name one."""

    runtime_network: str = "graphforge-runtime"
    """Network for ad-hoc runtimes that are not bound to a graph."""

    dind_image: str = "docker:27-dind"
    dind_ready_timeout: float = 30.0
    docker_registry_mirror: str | None = None
    """Comma-separated registry mirrors passed to Docker-in-Docker sidecars."""

    docker_insecure_registry: str | None = None
    """Comma-separated insecure registries passed to Docker-in-Docker sidecars."""

    # -- Runtime lifecycle -----------------------------------------------------
    runtime_stop_timeout: float = 15.0
    """Seconds a runtime stop may take before it is abandoned."""

    init_script_timeout_ms: int = 10 * 60 * 1000

    # -- Execution -------------------------------------------------------------
    exec_timeout_ms: int = 10 * 60 * 1000
    exec_tail_timeout_ms: int | None = 5 * 60 * 1000
    max_output_bytes: int = 4 * 1024 * 1024
    """Per-stream capture cap; the tail of the output is retained."""

    # -- Local runtime ---------------------------------------------------------
    local_runtime_root: str = "./data/runtimes"

    # -- Helpers ---------------------------------------------------------------

    def registry_mirrors(self) -> list[str]:
        return _split_csv(self.docker_registry_mirror)

    def insecure_registries(self) -> list[str]:
        return _split_csv(self.docker_insecure_registry)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def get_settings() -> GraphForgeSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``get_settings.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> GraphForgeSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return GraphForgeSettings()


from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
get_settings.cache_clear = _get_settings_cached.cache_clear  # type: ignore[attr-defined]
