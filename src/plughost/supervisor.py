"""Process supervision — one static file server process per plugin.

Starting an instance:

1. reserve a port in the registry (sentinel + bind-test),
2. spawn the server in its own process group with a minimal environment,
3. require it to survive a short startup grace period (else retry on a new
   port),
4. poll it over HTTP until it answers with any non-5xx status,
5. register it and attach an exit watcher that drains its output and
   evicts it if it dies on its own, passing it to ``on_exit`` for cleanup.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import sys
import time
from collections.abc import Callable
from pathlib import Path

import aiohttp

from plughost.config import InstancesConfig
from plughost.errors import PluginHostError, ReadinessTimeout, StartupFailed
from plughost.logger import logger, plugin_logger
from plughost.registry import InstanceRegistry
from plughost.types import RunningInstance

_ENV_PASSTHROUGH = ("PATH", "HOME", "LANG")
_STDERR_TAIL = 2000


def serving_root(working_dir: Path) -> Path:
    public = working_dir / "public"
    return public if public.is_dir() else working_dir


def build_command(template: list[str], *, port: int, root: Path) -> list[str]:
    return [
        part.replace("{python}", sys.executable)
        .replace("{port}", str(port))
        .replace("{root}", str(root))
        for part in template
    ]


def build_env(port: int) -> dict[str, str]:
    """Minimal environment for plugin processes. No host secrets leak through."""
    env = {key: os.environ[key] for key in _ENV_PASSTHROUGH if key in os.environ}
    env["PORT"] = str(port)
    env["NODE_ENV"] = "production"
    return env


async def _read_tail(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    data = b""
    with contextlib.suppress(TimeoutError, OSError, ValueError):
        data = await asyncio.wait_for(stream.read(), timeout=1.0)
    return data.decode(errors="replace")[-_STDERR_TAIL:]


class ProcessSupervisor:
    """Spawns, probes, watches and terminates plugin server processes."""

    def __init__(self, registry: InstanceRegistry, config: InstancesConfig) -> None:
        self.registry = registry
        self.config = config
        self._watchers: set[asyncio.Task[None]] = set()
        self._stopping: set[int] = set()  # pids we are terminating on purpose
        # Called with instances whose process exited on its own
        self.on_exit: Callable[[RunningInstance], None] | None = None

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, plugin_id: str, working_dir: Path) -> RunningInstance:
        """Start a server for *working_dir* and register it once ready."""
        cfg = self.config
        root = serving_root(working_dir)
        stderr_tail = ""

        for attempt in range(1, cfg.start_retries + 1):
            port = self.registry.reserve_port(
                plugin_id, start=cfg.port_start, attempts=cfg.port_scan_attempts
            )
            try:
                proc = await self._spawn(port, root, working_dir)
            except OSError as exc:
                self.registry.release_port(port)
                raise StartupFailed(
                    f"Could not spawn server for plugin {plugin_id}: {exc}",
                    details={"plugin_id": plugin_id, "port": port},
                ) from exc

            try:
                await asyncio.wait_for(proc.wait(), timeout=cfg.startup_grace)
            except TimeoutError:
                break  # still running after the grace period

            stderr_tail = await _read_tail(proc.stderr)
            self.registry.release_port(port)
            logger.warning(
                "Plugin server exited during startup",
                plugin_id=plugin_id,
                port=port,
                attempt=attempt,
                returncode=proc.returncode,
                stderr=stderr_tail,
            )
        else:
            raise StartupFailed(
                f"Server for plugin {plugin_id} failed to start after {cfg.start_retries} attempts",
                details={"plugin_id": plugin_id, "attempts": cfg.start_retries, "stderr": stderr_tail},
            )

        now = time.monotonic()
        instance = RunningInstance(
            plugin_id=plugin_id,
            working_dir=working_dir,
            port=port,
            process=proc,
            created_at=now,
            last_access_at=now,
        )
        try:
            await self.wait_ready(instance)
        except (PluginHostError, asyncio.CancelledError):
            await self.terminate(instance)
            self._stopping.discard(proc.pid)
            self.registry.release_port(port)
            raise

        instance.installed = True
        self.registry.put(instance)
        task = asyncio.create_task(self._watch(instance))
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

        logger.info("Plugin instance ready", plugin_id=plugin_id, port=port, pid=proc.pid)
        return instance

    async def _spawn(self, port: int, root: Path, working_dir: Path) -> asyncio.subprocess.Process:
        cmd = build_command(self.config.server_command, port=port, root=root)
        logger.debug("Spawning plugin server", command=cmd, cwd=str(working_dir))
        return await asyncio.create_subprocess_exec(
            *cmd,
            cwd=working_dir,
            env=build_env(port),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,  # own process group for clean shutdown
        )

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    async def wait_ready(self, instance: RunningInstance) -> None:
        """Poll the instance root until it answers with any status below 500."""
        cfg = self.config
        url = f"{instance.base_url}/"
        start = time.monotonic()
        proc = instance.process

        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=cfg.ready_timeout),
        ) as session:
            for attempt in range(1, cfg.ready_attempts + 1):
                if proc is not None and proc.returncode is not None:
                    raise StartupFailed(
                        f"Server for plugin {instance.plugin_id} exited during readiness check",
                        details={
                            "plugin_id": instance.plugin_id,
                            "port": instance.port,
                            "returncode": proc.returncode,
                            "stderr": await _read_tail(proc.stderr),
                        },
                    )
                try:
                    async with session.get(url) as resp:
                        if resp.status < 500:
                            logger.info(
                                "Readiness check passed",
                                plugin_id=instance.plugin_id,
                                attempt=attempt,
                                elapsed_ms=round((time.monotonic() - start) * 1000),
                            )
                            return
                except (aiohttp.ClientError, OSError, TimeoutError):
                    pass

                if attempt < cfg.ready_attempts:
                    await asyncio.sleep(cfg.ready_interval)

        raise ReadinessTimeout(
            f"Server for plugin {instance.plugin_id} did not become ready",
            details={
                "plugin_id": instance.plugin_id,
                "port": instance.port,
                "attempts": cfg.ready_attempts,
            },
        )

    # ------------------------------------------------------------------
    # Exit watcher
    # ------------------------------------------------------------------

    async def _drain(self, stream: asyncio.StreamReader | None, plugin_id: str, name: str) -> None:
        if stream is None:
            return
        log = plugin_logger(plugin_id, stream=name)
        async for raw in stream:
            line = raw.decode(errors="replace").rstrip()
            if line:
                log.debug("Plugin server output", line=line)

    async def _watch(self, instance: RunningInstance) -> None:
        proc = instance.process
        if proc is None:
            return
        await asyncio.gather(
            self._drain(proc.stdout, instance.plugin_id, "stdout"),
            self._drain(proc.stderr, instance.plugin_id, "stderr"),
        )
        returncode = await proc.wait()

        if proc.pid in self._stopping:
            self._stopping.discard(proc.pid)
            return
        if self.registry.remove(instance.plugin_id, instance=instance) is not None:
            logger.warning(
                "Plugin server exited unexpectedly",
                plugin_id=instance.plugin_id,
                port=instance.port,
                returncode=returncode,
            )
            if self.on_exit is not None:
                self.on_exit(instance)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def terminate(self, instance: RunningInstance, grace: float | None = None) -> None:
        """SIGTERM the instance's process group, escalating to SIGKILL after *grace*."""
        proc = instance.process
        if proc is None or proc.returncode is not None:
            return
        grace = self.config.kill_grace if grace is None else grace

        self._stopping.add(proc.pid)
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return  # already dead

        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except TimeoutError:
            logger.warning("Plugin server ignored SIGTERM, killing", plugin_id=instance.plugin_id)
            with contextlib.suppress(ProcessLookupError):
                os.killpg(proc.pid, signal.SIGKILL)
            await proc.wait()
        logger.debug("Plugin server terminated", plugin_id=instance.plugin_id, port=instance.port)

    async def close(self) -> None:
        """Cancel the exit watchers (call after every instance is terminated)."""
        for task in list(self._watchers):
            task.cancel()
        await asyncio.gather(*self._watchers, return_exceptions=True)
        self._watchers.clear()
