"""Tests for idle/TTL eviction and the periodic sweep."""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from conftest import OTHER_PLUGIN_ID, PLUGIN_ID, fast_instances

from plughost.lifecycle import LifecycleManager
from plughost.registry import InstanceRegistry
from plughost.supervisor import ProcessSupervisor
from plughost.types import RunningInstance


def _manager(**overrides) -> LifecycleManager:
    cfg = fast_instances(**overrides)
    registry = InstanceRegistry(ttl=cfg.ttl)
    supervisor = ProcessSupervisor(registry, cfg)
    return LifecycleManager(registry, supervisor, cfg)


def _instance(tmp_path: Path, plugin_id: str, port: int, *, idle: float = 0.0, age: float = 0.0):
    working = tmp_path / plugin_id
    (working / "public").mkdir(parents=True)
    now = time.monotonic()
    return RunningInstance(
        plugin_id=plugin_id,
        working_dir=working,
        port=port,
        process=None,
        created_at=now - age,
        last_access_at=now - idle,
        installed=True,
    )


class TestShouldEvict:
    def test_fresh_instance_kept(self, tmp_path: Path):
        mgr = _manager(activity_threshold=120, ttl=600)
        assert not mgr.should_evict(_instance(tmp_path, PLUGIN_ID, 1))

    def test_idle_instance_evicted(self, tmp_path: Path):
        mgr = _manager(activity_threshold=120, ttl=600)
        assert mgr.should_evict(_instance(tmp_path, PLUGIN_ID, 1, idle=121, age=121))

    def test_ttl_is_hard_cap_for_active_instances(self, tmp_path: Path):
        mgr = _manager(activity_threshold=120, ttl=600)
        assert mgr.should_evict(_instance(tmp_path, PLUGIN_ID, 1, idle=0, age=601))

    def test_explicit_now(self, tmp_path: Path):
        mgr = _manager(activity_threshold=10, ttl=600)
        inst = _instance(tmp_path, PLUGIN_ID, 1)
        assert not mgr.should_evict(inst, inst.last_access_at + 5)
        assert mgr.should_evict(inst, inst.last_access_at + 11)


class TestSweep:
    async def test_idle_evicted_touched_survives(self, tmp_path: Path):
        mgr = _manager(activity_threshold=0.2, ttl=600)
        idle = _instance(tmp_path, PLUGIN_ID, 45001)
        busy = _instance(tmp_path, OTHER_PLUGIN_ID, 45002)
        mgr.registry.put(idle)
        mgr.registry.put(busy)

        await asyncio.sleep(0.3)
        mgr.registry.touch(OTHER_PLUGIN_ID)
        evicted = await mgr.sweep()
        await mgr.drain()

        assert evicted == [PLUGIN_ID]
        assert mgr.registry.peek(PLUGIN_ID) is None
        assert mgr.registry.peek(OTHER_PLUGIN_ID) is busy
        assert mgr.registry.reserved_ports() == [45002]
        assert not idle.working_dir.exists()
        assert not any(p.name.endswith(".evicted") for p in tmp_path.iterdir())
        assert busy.working_dir.exists()

    async def test_evict_terminates_process(self, tmp_path: Path):
        mgr = _manager()
        mgr.supervisor.terminate = AsyncMock()
        inst = _instance(tmp_path, PLUGIN_ID, 45003)
        mgr.registry.put(inst)

        assert await mgr.evict(PLUGIN_ID) is True
        mgr.supervisor.terminate.assert_awaited_once_with(inst)

    async def test_evict_unknown(self):
        assert await _manager().evict(PLUGIN_ID) is False

    async def test_evict_replaced_instance_is_noop(self, tmp_path: Path):
        mgr = _manager()
        old = _instance(tmp_path, PLUGIN_ID, 45004)
        new = _instance(tmp_path / "new", PLUGIN_ID, 45005)
        mgr.registry.put(new)

        assert await mgr.evict_instance(old) is False
        assert mgr.registry.peek(PLUGIN_ID) is new

    async def test_missing_working_dir_tolerated(self, tmp_path: Path):
        mgr = _manager()
        inst = _instance(tmp_path, PLUGIN_ID, 45006)
        inst.working_dir = tmp_path / "already-gone"
        mgr.registry.put(inst)

        assert await mgr.evict(PLUGIN_ID) is True
        await mgr.drain()

    async def test_stale_lookup_tears_down(self, tmp_path: Path):
        mgr = _manager(ttl=1)
        mgr.supervisor.terminate = AsyncMock()
        inst = _instance(tmp_path, PLUGIN_ID, 45007, age=5)
        mgr.registry.put(inst)

        assert mgr.registry.get(PLUGIN_ID) is None
        # Directory is moved aside synchronously so a cold start can re-extract
        assert not inst.working_dir.exists()
        await mgr.drain()
        mgr.supervisor.terminate.assert_awaited_once_with(inst)
        assert list(tmp_path.iterdir()) == []

    async def test_crashed_process_directory_reclaimed(self, tmp_path: Path):
        mgr = _manager()
        inst = _instance(tmp_path, PLUGIN_ID, 45008)
        inst.process = await asyncio.create_subprocess_exec(
            sys.executable,
            "-c",
            "import sys; sys.exit(3)",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        mgr.registry.put(inst)

        await mgr.supervisor._watch(inst)
        await mgr.drain()

        assert mgr.registry.peek(PLUGIN_ID) is None
        assert mgr.registry.reserved_ports() == []
        assert list(tmp_path.iterdir()) == []


class TestTicker:
    async def test_periodic_sweep_runs(self, tmp_path: Path):
        mgr = _manager(activity_threshold=0.05, sweep_interval=0.05)
        mgr.registry.put(_instance(tmp_path, PLUGIN_ID, 45010))

        mgr.start()
        try:
            for _ in range(40):
                if mgr.registry.peek(PLUGIN_ID) is None:
                    break
                await asyncio.sleep(0.05)
        finally:
            await mgr.stop()

        assert mgr.registry.peek(PLUGIN_ID) is None

    async def test_sweep_errors_do_not_stop_loop(self, tmp_path: Path):
        mgr = _manager(sweep_interval=0.02)
        calls = 0

        async def flaky_sweep() -> list[str]:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("transient")
            return []

        mgr.sweep = flaky_sweep
        mgr.start()
        await asyncio.sleep(0.2)
        await mgr.stop()

        assert calls >= 2

    async def test_stop_is_idempotent(self):
        mgr = _manager()
        mgr.start()
        await mgr.stop()
        await mgr.stop()

    async def test_shutdown_evicts_everything(self, tmp_path: Path):
        mgr = _manager()
        mgr.registry.put(_instance(tmp_path, PLUGIN_ID, 45020))
        mgr.registry.put(_instance(tmp_path, OTHER_PLUGIN_ID, 45021))
        mgr.start()

        await mgr.shutdown()

        assert len(mgr.registry) == 0
        assert mgr.registry.reserved_ports() == []
        assert list(tmp_path.iterdir()) == []


@pytest.mark.parametrize("threshold", [0.0, 0.5])
def test_short_threshold_evicts_idle_instance(tmp_path: Path, threshold: float):
    mgr = _manager(activity_threshold=threshold)
    inst = _instance(tmp_path, PLUGIN_ID, 1)
    assert mgr.should_evict(inst, inst.last_access_at + 1) is True
