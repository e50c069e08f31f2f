"""Plugin archive storage — the blob store the extractor downloads from.

Two backends implement the :class:`BlobStore` protocol:

- :class:`LocalBlobStore` — a directory tree (``<root>/<prefix>/<id>/*.zip``),
  used for development and tests.
- :class:`SupabaseBlobStore` — a Supabase Storage bucket over its REST API.

Keys are ``/``-separated relative paths. ``list(prefix)`` returns the file
names directly under *prefix*, not full keys.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

import aiohttp

from plughost.config import Settings
from plughost.errors import BlobStoreError
from plughost.logger import logger


class BlobStore(Protocol):
    async def list(self, prefix: str) -> list[str]: ...

    async def download(self, key: str) -> bytes: ...

    async def close(self) -> None: ...


def _clean_key(key: str) -> str:
    parts = [p for p in key.strip("/").split("/") if p]
    if any(p in (".", "..") or "\\" in p for p in parts):
        raise BlobStoreError(f"Invalid blob key: {key!r}")
    return "/".join(parts)


# ---------------------------------------------------------------------------
# Local directory backend
# ---------------------------------------------------------------------------


class LocalBlobStore:
    """Blob store backed by a local directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, key: str) -> Path:
        return self.root / _clean_key(key)

    async def list(self, prefix: str) -> list[str]:
        directory = self._path(prefix)

        def _list() -> list[str]:
            if not directory.is_dir():
                return []
            return sorted(p.name for p in directory.iterdir() if p.is_file())

        return await asyncio.to_thread(_list)

    async def download(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise BlobStoreError(f"Failed to read {key}: {exc}") from exc

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Supabase Storage backend
# ---------------------------------------------------------------------------


class SupabaseBlobStore:
    """Blob store backed by a Supabase Storage bucket.

    Uses the service-role key, so it must only ever run server-side.
    """

    def __init__(
        self,
        *,
        url: str,
        bucket: str,
        service_key: str,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = url.rstrip("/")
        self.bucket = bucket
        self._service_key = service_key
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._service_key}",
            "apikey": self._service_key,
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def list(self, prefix: str) -> list[str]:
        url = f"{self.base_url}/storage/v1/object/list/{self.bucket}"
        payload = {
            "prefix": _clean_key(prefix),
            "limit": 100,
            "offset": 0,
            "sortBy": {"column": "name", "order": "asc"},
        }
        try:
            async with self._get_session().post(
                url, json=payload, headers=self._headers()
            ) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise BlobStoreError(f"List {prefix} failed ({resp.status}): {text[:500]}")
                entries = await resp.json()
        except aiohttp.ClientError as exc:
            raise BlobStoreError(f"List {prefix} failed: {exc}") from exc

        # Folders come back with id = null; only files are interesting here
        return [e["name"] for e in entries if e.get("name") and e.get("id") is not None]

    async def download(self, key: str) -> bytes:
        url = f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(_clean_key(key))}"
        try:
            async with self._get_session().get(url, headers=self._headers()) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise BlobStoreError(f"Download {key} failed ({resp.status}): {text[:500]}")
                data = await resp.read()
        except aiohttp.ClientError as exc:
            raise BlobStoreError(f"Download {key} failed: {exc}") from exc

        logger.debug("Downloaded blob", key=key, size=len(data))
        return data

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


def create_blob_store(settings: Settings) -> BlobStore:
    """Build the configured backend."""
    cfg = settings.storage
    if cfg.backend == "supabase":
        if cfg.service_key is None:
            logger.warning("Supabase storage configured without a service key")
        return SupabaseBlobStore(
            url=cfg.url or "",
            bucket=cfg.bucket,
            service_key=cfg.service_key.get_secret_value() if cfg.service_key else "",
        )
    return LocalBlobStore(settings.storage_root)
