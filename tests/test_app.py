"""Tests for host wiring."""

from __future__ import annotations

from pathlib import Path

import aiohttp
from conftest import make_settings

from plughost.app import PluginHost
from plughost.config import ServerConfig


async def test_start_and_stop(tmp_path: Path):
    settings = make_settings(
        server=ServerConfig(host="127.0.0.1", port=47950),
        scratch_dir=tmp_path / "scratch",
        storage_root=tmp_path / "storage",
    )
    host = PluginHost(settings)

    await host.start()
    try:
        assert (tmp_path / "scratch").is_dir()
        async with aiohttp.ClientSession() as session:
            async with session.get("http://127.0.0.1:47950/_health") as resp:
                assert resp.status == 200
                assert (await resp.json())["status"] == "ok"
    finally:
        await host.stop()

    assert host._stopped.is_set()
    assert len(host.registry) == 0


def test_builtin_fixups_wired(tmp_path: Path):
    host = PluginHost(make_settings(scratch_dir=tmp_path, storage_root=tmp_path))
    assert "jquery" in host.gateway._fixups
