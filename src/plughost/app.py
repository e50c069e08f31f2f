"""Composition root — wires the host components together and runs the service."""

from __future__ import annotations

import asyncio
import os
import signal

from plughost.blobstore import BlobStore, create_blob_store
from plughost.config import Settings, get_settings
from plughost.extractor import ArchiveExtractor
from plughost.gateway import Authorizer, PluginGateway
from plughost.lifecycle import LifecycleManager
from plughost.logger import configure_logging, logger
from plughost.plugin import collect_fixups, get_plugin_manager
from plughost.registry import InstanceRegistry
from plughost.supervisor import ProcessSupervisor


class PluginHost:
    """One host: registry, extractor, supervisor, lifecycle and gateway.

    Everything is built from *settings*; *store* and *authorizer* can be
    injected for embedding and tests.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: BlobStore | None = None,
        authorizer: Authorizer | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings

        self.store = store or create_blob_store(s)
        self.registry = InstanceRegistry(ttl=s.instances.ttl)
        self.extractor = ArchiveExtractor(self.store, s.scratch_dir, prefix=s.storage.prefix)
        self.supervisor = ProcessSupervisor(self.registry, s.instances)
        self.lifecycle = LifecycleManager(self.registry, self.supervisor, s.instances)
        self.gateway = PluginGateway(
            registry=self.registry,
            extractor=self.extractor,
            supervisor=self.supervisor,
            lifecycle=self.lifecycle,
            settings=s,
            authorizer=authorizer,
            fixups=collect_fixups(get_plugin_manager()),
        )

        self._stopped = asyncio.Event()
        self._shutting_down = False

    async def start(self) -> None:
        self.settings.scratch_dir.mkdir(parents=True, exist_ok=True)
        await self.gateway.start()
        self.lifecycle.start()

    async def stop(self) -> None:
        await self.gateway.stop()
        await self.lifecycle.shutdown()
        await self.store.close()
        self._stopped.set()

    async def _shutdown(self, sig_name: str) -> None:
        """Graceful shutdown handler. Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        # Plugin processes get kill_grace to exit; never hang past that
        loop = asyncio.get_running_loop()
        loop.call_later(self.settings.instances.kill_grace + 10, lambda: os._exit(1))
        await self.stop()

    async def run(self) -> None:
        """Main entry point — start serving until SIGTERM/SIGINT."""
        configure_logging(self.settings.logging.level, self.settings.logging.format)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self._shutdown(s.name)),
            )

        await self.start()
        logger.info(
            "Plugin host running",
            storage=self.settings.storage.backend,
            scratch_dir=str(self.settings.scratch_dir),
        )
        await self._stopped.wait()
