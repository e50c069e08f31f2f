"""Archive extraction — blob store → isolated scratch directory.

One extraction per plugin ID may be in flight at a time. Concurrent callers
join the in-flight task instead of starting another; the lock entry is
dropped as soon as the task settles, whatever the outcome.
"""

from __future__ import annotations

import asyncio
import io
import shutil
import time
import zipfile
from collections.abc import Callable
from pathlib import Path

from plughost.blobstore import BlobStore
from plughost.errors import BlobStoreError, ExtractionFailed, NotFoundError
from plughost.logger import logger
from plughost.types import ExtractedInstance


def _unpack(data: bytes, dest: Path) -> int:
    """Unpack a zip archive into *dest*. Returns the number of files written.

    Members resolving outside *dest* (zip-slip) abort the extraction.
    """
    root = dest.resolve()
    count = 0
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        for info in zf.infolist():
            target = (root / info.filename).resolve()
            if not target.is_relative_to(root):
                raise ExtractionFailed(
                    "Archive member escapes the extraction directory",
                    details={"member": info.filename},
                )
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info) as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
            count += 1
    return count


def _reset_dir(path: Path) -> None:
    if path.is_symlink():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


class ArchiveExtractor:
    """Downloads and unpacks plugin archives.

    Args:
        store: Blob store holding ``<prefix>/<plugin_id>/<name>.zip``.
        scratch_dir: Parent of all working directories.
        prefix: Key prefix for plugin archive folders.
        on_extract: Called with the plugin ID each time a real extraction
            starts (joined callers do not trigger it).
    """

    def __init__(
        self,
        store: BlobStore,
        scratch_dir: Path,
        *,
        prefix: str = "apps",
        on_extract: Callable[[str], None] | None = None,
    ) -> None:
        self.store = store
        self.scratch_dir = scratch_dir
        self.prefix = prefix.strip("/")
        self._on_extract = on_extract
        self._locks: dict[str, asyncio.Task[ExtractedInstance]] = {}

    def in_flight(self, plugin_id: str) -> bool:
        return plugin_id in self._locks

    def working_dir_for(self, plugin_id: str) -> Path:
        return self.scratch_dir / plugin_id

    async def extract(self, plugin_id: str) -> ExtractedInstance:
        """Extract *plugin_id*, joining an in-flight extraction if one exists."""
        task = self._locks.get(plugin_id)
        if task is None:
            logger.info("Starting extraction", plugin_id=plugin_id)
            task = asyncio.ensure_future(self._extract(plugin_id))
            self._locks[plugin_id] = task
            task.add_done_callback(lambda t: self._release(plugin_id, t))
        else:
            logger.info("Waiting for ongoing extraction", plugin_id=plugin_id)
        # shield: one cancelled waiter must not cancel the shared extraction
        return await asyncio.shield(task)

    def _release(self, plugin_id: str, task: asyncio.Task[ExtractedInstance]) -> None:
        if self._locks.get(plugin_id) is task:
            del self._locks[plugin_id]

    async def _extract(self, plugin_id: str) -> ExtractedInstance:
        if self._on_extract is not None:
            self._on_extract(plugin_id)

        folder = f"{self.prefix}/{plugin_id}" if self.prefix else plugin_id
        try:
            names = await self.store.list(folder)
        except BlobStoreError as exc:
            raise ExtractionFailed(
                f"Could not list archives for plugin {plugin_id}",
                details={"plugin_id": plugin_id, "reason": str(exc)},
            ) from exc

        archives = [n for n in names if n.lower().endswith(".zip")]
        if not archives:
            raise NotFoundError(
                f"No packaged archive found for plugin {plugin_id}",
                details={
                    "plugin_id": plugin_id,
                    "checked_paths": [f"{folder}/", f"{folder}/*.zip"],
                    "found_files": names,
                },
            )
        if len(archives) > 1:
            raise ExtractionFailed(
                f"Expected exactly one archive for plugin {plugin_id}, found {len(archives)}",
                details={"plugin_id": plugin_id, "archives": archives},
            )

        key = f"{folder}/{archives[0]}"
        try:
            data = await self.store.download(key)
        except BlobStoreError as exc:
            raise ExtractionFailed(
                f"Could not download archive for plugin {plugin_id}",
                details={"plugin_id": plugin_id, "key": key, "reason": str(exc)},
            ) from exc

        working_dir = self.working_dir_for(plugin_id)
        try:
            await asyncio.to_thread(_reset_dir, working_dir)
            count = await asyncio.to_thread(_unpack, data, working_dir)
        except ExtractionFailed:
            await asyncio.to_thread(shutil.rmtree, working_dir, ignore_errors=True)
            raise
        except (zipfile.BadZipFile, OSError, ValueError) as exc:
            await asyncio.to_thread(shutil.rmtree, working_dir, ignore_errors=True)
            raise ExtractionFailed(
                f"Could not unpack archive for plugin {plugin_id}: {exc}",
                details={"plugin_id": plugin_id, "key": key},
            ) from exc

        logger.info(
            "Archive extracted",
            plugin_id=plugin_id,
            archive=archives[0],
            size=len(data),
            files=count,
            working_dir=str(working_dir),
        )
        return ExtractedInstance(
            plugin_id=plugin_id,
            working_dir=working_dir,
            extracted_at=time.time(),
        )
