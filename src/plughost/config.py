"""Host settings: pydantic-settings models fed from config.toml, .env and the environment.

Non-secret settings live in config.toml. Secrets (the storage service key)
live in .env. Environment variables override both using ``__`` as the
nested delimiter (e.g. ``INSTANCES__TTL=900``). Secrets use SecretStr for
masking in logs.

Source order, highest first: init args, env vars, .env, config.toml

Usage::

    from plughost.config import get_settings

    s = get_settings()
    print(s.server.port)
    print(s.instances.ttl)
"""

from __future__ import annotations

import tempfile
from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, SecretStr, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sections (one [table] each in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Config sections reject unknown keys, so a misspelled option is an error."""

    model_config = {"extra": "forbid"}


class ServerConfig(_StrictModel):
    host: str = "0.0.0.0"
    port: int = 8585


class LoggingConfig(_StrictModel):
    level: str = "INFO"
    format: Literal["console", "json"] = "console"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class StorageConfig(_StrictModel):
    """Where plugin archives live.

    ``local`` reads ``<root>/apps/<plugin_id>/*.zip`` from disk. ``supabase``
    talks to a Supabase Storage bucket over its REST API.
    """

    backend: Literal["local", "supabase"] = "local"
    root: str = "data/storage"  # local backend only
    url: str | None = None  # e.g. https://<project>.supabase.co
    bucket: str = "app-storage"
    prefix: str = "apps"  # archives live under <prefix>/<plugin_id>/
    service_key: SecretStr | None = None

    @model_validator(mode="after")
    def _require_url_for_supabase(self) -> StorageConfig:
        if self.backend == "supabase" and not self.url:
            raise ValueError("storage.url is required when storage.backend = 'supabase'")
        return self


class InstancesConfig(_StrictModel):
    """Plugin process lifecycle. All durations are in seconds."""

    scratch_dir: str | None = None  # None → <tmp>/plughost
    port_start: int = 4000
    port_scan_attempts: int = 50
    start_retries: int = 3
    startup_grace: float = 1.0  # process must survive this long to count as started
    ready_attempts: int = 10
    ready_interval: float = 0.5
    ready_timeout: float = 0.5  # per readiness probe
    activity_threshold: float = 120.0  # idle time before eviction
    ttl: float = 600.0  # hard cap on instance age, even when active
    sweep_interval: float = 30.0
    kill_grace: float = 5.0  # SIGTERM → SIGKILL escalation delay
    # {python}, {port} and {root} are substituted at spawn time
    server_command: list[str] = [
        "{python}",
        "-m",
        "http.server",
        "{port}",
        "--bind",
        "127.0.0.1",
        "--directory",
        "{root}",
    ]

    @field_validator("port_start")
    @classmethod
    def validate_port_start(cls, v: int) -> int:
        if not 1024 <= v <= 65535:
            raise ValueError("port_start must be between 1024 and 65535")
        return v

    @field_validator("port_scan_attempts", "start_retries", "ready_attempts")
    @classmethod
    def clamp_positive(cls, v: int) -> int:
        return max(1, v)

    @field_validator(
        "startup_grace",
        "ready_interval",
        "ready_timeout",
        "activity_threshold",
        "ttl",
        "sweep_interval",
        "kill_grace",
    )
    @classmethod
    def validate_duration(cls, v: float) -> float:
        if v < 0:
            raise ValueError("durations must not be negative")
        return v

    @field_validator("server_command")
    @classmethod
    def validate_server_command(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("server_command cannot be empty")
        if not any("{port}" in part for part in v):
            raise ValueError("server_command must reference {port}")
        return v


class DependenciesConfig(_StrictModel):
    store_dir: str | None = None  # None → the plugin's own node_modules
    cdn_fallback: bool = True  # download missing dist files from public CDNs
    download_timeout: float = 10.0


class BridgeConfig(_StrictModel):
    instrumentation: bool = True  # network/state/test reporting
    sdk_bundle: str | None = None  # path to a UMD bundle injected after the bridge


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()
    storage: StorageConfig = StorageConfig()
    instances: InstancesConfig = InstancesConfig()
    dependencies: DependenciesConfig = DependenciesConfig()
    bridge: BridgeConfig = BridgeConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Put config.toml below env vars and .env, above file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # Resolved paths

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def scratch_dir(self) -> Path:
        if self.instances.scratch_dir:
            return Path(self.instances.scratch_dir).expanduser().resolve()
        return Path(tempfile.gettempdir()) / "plughost"

    @cached_property
    def storage_root(self) -> Path:
        p = Path(self.storage.root).expanduser()
        if not p.is_absolute():
            p = self.project_root / p
        return p.resolve()

    @cached_property
    def store_dir(self) -> Path | None:
        if not self.dependencies.store_dir:
            return None
        return Path(self.dependencies.store_dir).expanduser().resolve()


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process-wide Settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Forget the loaded Settings so the next get_settings() reloads."""
    global _settings
    _settings = None
