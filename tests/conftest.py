"""Shared test fixtures for plughost."""

from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures — importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "project_root",
        "scratch_dir",
        "storage_root",
        "store_dir",
    }
)

PLUGIN_ID = "3f2b8c1e-4a5d-4e6f-9a7b-1c2d3e4f5a6b"
OTHER_PLUGIN_ID = "9d8c7b6a-5f4e-4d3c-8b2a-0f1e2d3c4b5a"

# Serves nothing; exits immediately
EXIT_COMMAND = ["{python}", "-c", "import sys; sys.exit(3)", "{port}"]
# Stays alive but never listens
SLEEP_COMMAND = ["{python}", "-c", "import time; time.sleep(60)", "{port}"]


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (instances, storage, etc.) and cached property
    overrides (scratch_dir, storage_root, store_dir, project_root).

    Usage::

        s = make_settings(scratch_dir=tmp_path)
        s = make_settings(instances=InstancesConfig(ttl=5))
    """
    from plughost.config import (
        BridgeConfig,
        DependenciesConfig,
        InstancesConfig,
        LoggingConfig,
        ServerConfig,
        Settings,
        StorageConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "server": ServerConfig(),
        "logging": LoggingConfig(),
        "storage": StorageConfig(),
        "instances": InstancesConfig(),
        "dependencies": DependenciesConfig(cdn_fallback=False),
        "bridge": BridgeConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def fast_instances(**overrides):
    """InstancesConfig tuned for tests: short grace periods, fast polling."""
    from plughost.config import InstancesConfig

    values = {
        "port_start": 42000,
        "startup_grace": 0.3,
        "ready_attempts": 40,
        "ready_interval": 0.1,
        "ready_timeout": 0.5,
        "kill_grace": 2.0,
    }
    values.update(overrides)
    return InstancesConfig(**values)


def make_zip(files: dict[str, str | bytes]) -> bytes:
    """Build an in-memory zip archive from ``{member_name: content}``."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


def put_archive(storage_root: Path, plugin_id: str, files: dict[str, str | bytes], name="app.zip"):
    """Place a plugin archive where LocalBlobStore expects it."""
    folder = storage_root / "apps" / plugin_id
    folder.mkdir(parents=True, exist_ok=True)
    (folder / name).write_bytes(make_zip(files))
    return folder / name


def make_package(root: Path, name: str, version: str = "1.0.0", files: dict[str, str] | None = None):
    """Create a flat-layout package directory under *root*."""
    pkg = root / name
    pkg.mkdir(parents=True, exist_ok=True)
    (pkg / "package.json").write_text(f'{{"name": "{name}", "version": "{version}"}}')
    for rel, content in (files or {}).items():
        path = pkg / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return pkg


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults — no config.toml,
    no .env, no file I/O.
    """
    safe = make_settings()
    monkeypatch.setattr("plughost.config._settings", safe)

