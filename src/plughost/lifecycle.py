"""Instance lifecycle — idle/TTL eviction and teardown.

One periodic sweep task evaluates every registered instance. An instance is
evicted when it has been idle longer than ``activity_threshold`` or has
existed longer than ``ttl``; the TTL is a hard cap that applies even to
instances in active use.

Teardown removes the registry entry, renames the working directory out of
the way (so a cold start for the same plugin can extract again at once),
terminates the process group and deletes the renamed directory in the
background.
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import time
import uuid
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from plughost.config import InstancesConfig
from plughost.logger import logger
from plughost.registry import InstanceRegistry
from plughost.supervisor import ProcessSupervisor
from plughost.types import RunningInstance


def _retire_dir(working_dir: Path) -> Path | None:
    tombstone = working_dir.with_name(f".{working_dir.name}.{uuid.uuid4().hex[:8]}.evicted")
    try:
        working_dir.rename(tombstone)
    except FileNotFoundError:
        return None
    return tombstone


class LifecycleManager:
    def __init__(
        self,
        registry: InstanceRegistry,
        supervisor: ProcessSupervisor,
        config: InstancesConfig,
    ) -> None:
        self.registry = registry
        self.supervisor = supervisor
        self.config = config
        self._sweep_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        registry.on_stale = self._reap
        supervisor.on_exit = self._reap

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def should_evict(self, instance: RunningInstance, now: float | None = None) -> bool:
        now = time.monotonic() if now is None else now
        idle = now - instance.last_access_at > self.config.activity_threshold
        expired = now - instance.created_at > self.config.ttl
        return idle or expired

    async def sweep(self) -> list[str]:
        """Evict every eligible instance. Returns the evicted plugin IDs."""
        now = time.monotonic()
        evicted: list[str] = []
        for instance in self.registry.instances():
            if not self.should_evict(instance, now):
                continue
            if await self.evict_instance(instance, now=now):
                evicted.append(instance.plugin_id)
        if evicted:
            logger.info("Lifecycle sweep evicted instances", plugin_ids=evicted)
        return evicted

    async def evict(self, plugin_id: str) -> bool:
        instance = self.registry.peek(plugin_id)
        if instance is None:
            return False
        return await self.evict_instance(instance)

    async def evict_instance(self, instance: RunningInstance, *, now: float | None = None) -> bool:
        if self.registry.remove(instance.plugin_id, instance=instance) is None:
            return False  # already gone or replaced
        now = time.monotonic() if now is None else now
        logger.info(
            "Evicting plugin instance",
            plugin_id=instance.plugin_id,
            port=instance.port,
            idle_seconds=round(now - instance.last_access_at),
            age_seconds=round(now - instance.created_at),
            access_count=instance.access_count,
        )
        tombstone = _retire_dir(instance.working_dir)
        await self.supervisor.terminate(instance)
        self._remove_later(instance.plugin_id, tombstone)
        return True

    def _reap(self, instance: RunningInstance) -> None:
        """Teardown for entries dropped outside a sweep: stale on lookup, or crashed."""
        tombstone = _retire_dir(instance.working_dir)
        self._spawn(self._teardown(instance, tombstone))

    async def _teardown(self, instance: RunningInstance, tombstone: Path | None) -> None:
        await self.supervisor.terminate(instance)
        self._remove_later(instance.plugin_id, tombstone)

    def _remove_later(self, plugin_id: str, path: Path | None) -> None:
        if path is not None:
            self._spawn(self._remove_dir(plugin_id, path))

    async def _remove_dir(self, plugin_id: str, path: Path) -> None:
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except OSError as exc:
            logger.warning("Failed to remove working directory", plugin_id=plugin_id, err=str(exc))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for pending background teardown work."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Ticker
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("Lifecycle sweep started", interval=self.config.sweep_interval)

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Error in lifecycle sweep")

    async def shutdown(self) -> None:
        """Stop the ticker and tear down every instance."""
        await self.stop()
        instances = self.registry.instances()
        await asyncio.gather(*(self.evict_instance(i) for i in instances))
        await self.drain()
        await self.supervisor.close()
        logger.info("Lifecycle manager shut down", evicted=len(instances))
