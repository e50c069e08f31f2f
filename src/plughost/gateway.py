"""Serving gateway — reverse proxy in front of the plugin server processes.

Runs an aiohttp server that maps ``/{plugin_id}/{path}`` onto the static
server process hosting that plugin, starting one on demand.

    Browser ──► Gateway ──► 127.0.0.1:<port>  (one process per plugin)

For every request the gateway:
1. Validates the plugin ID (UUID) and the asset path (no traversal)
2. Authorizes the caller, when an :class:`Authorizer` is configured
3. Proxies to the cached instance, or cold-starts one (single flight per
   plugin: extract → resolve dependencies → start → ready → cache)
4. Injects the capability bridge into the root ``index.html``
5. Adds no-cache and framing headers to every plugin response

Start with :meth:`PluginGateway.start`; tests use :meth:`PluginGateway.make_app`.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import PurePosixPath
from typing import Any, Protocol
from urllib.parse import quote, unquote

import aiohttp
from aiohttp import web

from plughost.bridge import inject
from plughost.config import Settings
from plughost.dependencies import resolve_dependencies
from plughost.errors import InvalidRequest, PluginHostError, ProxyFailure
from plughost.extractor import ArchiveExtractor
from plughost.fixups import Fetcher, PackageFixup
from plughost.lifecycle import LifecycleManager
from plughost.logger import logger
from plughost.registry import InstanceRegistry
from plughost.supervisor import ProcessSupervisor
from plughost.types import RunningInstance, ServeResult

# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

_PLUGIN_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

ROOT_DOCUMENT = "index.html"

MIME_TYPES = {
    ".js": "application/javascript",
    ".mjs": "application/javascript",
    ".jsx": "application/javascript",
    ".ts": "application/javascript",
    ".tsx": "application/javascript",
    ".css": "text/css",
    ".html": "text/html; charset=utf-8",
    ".htm": "text/html; charset=utf-8",
    ".json": "application/json",
    ".xml": "application/xml",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".gz": "application/gzip",
    ".tar": "application/x-tar",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".eot": "application/vnd.ms-fontobject",
    ".otf": "font/otf",
}

SECURITY_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "X-Frame-Options": "SAMEORIGIN",
    "Content-Security-Policy": "frame-ancestors 'self'",
}


def mime_type(path: str) -> str:
    return MIME_TYPES.get(PurePosixPath(path).suffix.lower(), "application/octet-stream")


def validate_plugin_id(plugin_id: str) -> str:
    if not _PLUGIN_ID_RE.match(plugin_id):
        raise InvalidRequest("Invalid plugin ID", details={"plugin_id": plugin_id})
    return plugin_id


def _is_unsafe(path: str) -> bool:
    return ".." in path or path.startswith("/") or "\\" in path or "\x00" in path


def normalize_asset_path(path: str) -> str:
    """Reject traversal in both the given and the percent-decoded form."""
    if _is_unsafe(path) or _is_unsafe(unquote(path)):
        raise InvalidRequest("Invalid asset path", details={"path": path})
    return path or ROOT_DOCUMENT


class Authorizer(Protocol):
    """Authenticates a request; raises :class:`AuthenticationFailed` to reject it."""

    async def __call__(self, request: web.Request) -> Any: ...


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Render :class:`PluginHostError` as structured JSON; never let a request crash the host."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except PluginHostError as exc:
        log = logger.warning if exc.status >= 500 else logger.info
        log("Request failed", path=request.path, code=exc.code, error=exc.message)
        return web.json_response(exc.to_dict(), status=exc.status)
    except Exception:
        logger.exception("Unhandled error serving request", path=request.path)
        return web.json_response(
            {
                "error": "Internal server error",
                "code": "INTERNAL_ERROR",
                "retryable": False,
                "details": {},
            },
            status=500,
        )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class PluginGateway:
    """Reverse proxy that starts plugin instances on demand.

    Args:
        registry: Shared instance registry.
        extractor: Archive extractor for cold starts.
        supervisor: Starts and stops plugin server processes.
        lifecycle: Tears down instances the gateway finds broken.
        settings: Host settings (server, dependencies and bridge sections).
        authorizer: Optional request authenticator.
        fixups: Package fixups by name; ``None`` loads them from the plugin manager.
        fetch: CDN fetcher override for dependency fixups.
    """

    def __init__(
        self,
        *,
        registry: InstanceRegistry,
        extractor: ArchiveExtractor,
        supervisor: ProcessSupervisor,
        lifecycle: LifecycleManager,
        settings: Settings,
        authorizer: Authorizer | None = None,
        fixups: dict[str, list[PackageFixup]] | None = None,
        fetch: Fetcher | None = None,
    ) -> None:
        self.registry = registry
        self.extractor = extractor
        self.supervisor = supervisor
        self.lifecycle = lifecycle
        self.settings = settings
        self.authorizer = authorizer
        self._fixups = fixups
        self._fetch = fetch

        self._cold_starts: dict[str, asyncio.Task[RunningInstance]] = {}
        self._runner: web.AppRunner | None = None
        self._session: aiohttp.ClientSession | None = None

    # ------------------------------------------------------------------
    # Serving
    # ------------------------------------------------------------------

    async def serve(self, plugin_id: str, asset_path: str = "") -> ServeResult:
        """Return *asset_path* of *plugin_id*, cold-starting the plugin if needed."""
        validate_plugin_id(plugin_id)
        asset_path = normalize_asset_path(asset_path)

        instance = self.registry.get(plugin_id)
        if instance is not None:
            try:
                return await self._proxy(instance, asset_path)
            except ProxyFailure as exc:
                logger.warning(
                    "Cached instance unreachable, restarting",
                    plugin_id=plugin_id,
                    port=instance.port,
                    err=exc.message,
                )
                await self.lifecycle.evict_instance(instance)

        instance = await self._cold_start(plugin_id)
        return await self._proxy(instance, asset_path)

    async def _proxy(self, instance: RunningInstance, asset_path: str) -> ServeResult:
        url = f"{instance.base_url}/{quote(asset_path)}"
        session = self._get_session()
        try:
            async with session.get(url) as resp:
                body = await resp.read()
                status = resp.status
                upstream_type = resp.headers.get("Content-Type", "application/octet-stream")
        except (aiohttp.ClientError, OSError, TimeoutError) as exc:
            raise ProxyFailure(
                f"Plugin server for {instance.plugin_id} is unreachable",
                details={"plugin_id": instance.plugin_id, "port": instance.port, "reason": str(exc)},
            ) from exc

        self.registry.touch(instance.plugin_id)
        if status >= 400:
            return ServeResult(status, upstream_type, body)

        if asset_path == ROOT_DOCUMENT:
            cfg = self.settings.bridge
            html = inject(
                body.decode("utf-8", errors="replace"),
                instance.plugin_id,
                instrumentation=cfg.instrumentation,
                sdk_bundle=cfg.sdk_bundle,
            )
            body = html.encode("utf-8")
        return ServeResult(status, mime_type(asset_path), body)

    # ------------------------------------------------------------------
    # Cold start
    # ------------------------------------------------------------------

    async def _cold_start(self, plugin_id: str) -> RunningInstance:
        task = self._cold_starts.get(plugin_id)
        if task is None:
            task = asyncio.ensure_future(self._start_instance(plugin_id))
            self._cold_starts[plugin_id] = task
            task.add_done_callback(lambda t: self._release(plugin_id, t))
        else:
            logger.info("Joining in-flight cold start", plugin_id=plugin_id)
        return await asyncio.shield(task)

    def _release(self, plugin_id: str, task: asyncio.Task[RunningInstance]) -> None:
        if self._cold_starts.get(plugin_id) is task:
            del self._cold_starts[plugin_id]

    async def _start_instance(self, plugin_id: str) -> RunningInstance:
        existing = self.registry.get(plugin_id)
        if existing is not None:
            return existing

        logger.info("Cold-starting plugin", plugin_id=plugin_id)
        extracted = await self.extractor.extract(plugin_id)

        deps = self.settings.dependencies
        report = await resolve_dependencies(
            extracted.working_dir,
            store_dir=self.settings.store_dir,
            fixups=self._fixups,
            cdn_fallback=deps.cdn_fallback,
            download_timeout=deps.download_timeout,
            fetch=self._fetch,
        )
        for warning in report.warnings:
            logger.warning("Dependency warning", plugin_id=plugin_id, warning=warning)

        return await self.supervisor.start(plugin_id, extracted.working_dir)

    # ------------------------------------------------------------------
    # HTTP handlers
    # ------------------------------------------------------------------

    async def _plugin_handler(self, request: web.Request) -> web.Response:
        plugin_id = request.match_info["plugin_id"]
        path = request.match_info.get("path", "")

        if self.authorizer is not None:
            await self.authorizer(request)

        # match_info is already percent-decoded; check the raw form as well
        raw = request.raw_path.split("?", 1)[0].split("/", 2)
        if len(raw) > 2:
            normalize_asset_path(raw[2])

        result = await self.serve(plugin_id, path)
        return web.Response(
            status=result.status,
            body=result.body,
            headers={"Content-Type": result.content_type, **SECURITY_HEADERS},
        )

    async def _root_redirect_handler(self, request: web.Request) -> web.Response:
        """Send ``/{plugin_id}`` to ``/{plugin_id}/`` so relative asset URLs resolve inside the plugin."""
        plugin_id = request.match_info["plugin_id"]
        if self.authorizer is not None:
            await self.authorizer(request)
        validate_plugin_id(plugin_id)
        location = f"/{plugin_id}/"
        if request.query_string:
            location += f"?{request.query_string}"
        raise web.HTTPPermanentRedirect(location)

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "instances": len(self.registry),
                "reserved_ports": self.registry.reserved_ports(),
                "cold_starts_in_flight": len(self._cold_starts),
            }
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30),
            )
        return self._session

    async def _close_session(self, app: web.Application | None = None) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def make_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_get("/_health", self._health_handler)
        app.router.add_get("/{plugin_id}", self._root_redirect_handler)
        app.router.add_get("/{plugin_id}/{path:.*}", self._plugin_handler)
        app.on_cleanup.append(self._close_session)
        return app

    async def start(self) -> None:
        """Create the server and start listening."""
        cfg = self.settings.server
        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, cfg.host, cfg.port)
        await site.start()
        logger.info("Plugin gateway listening", host=cfg.host, port=cfg.port)

    async def stop(self) -> None:
        """Graceful shutdown — stop the server and close proxy connections."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        await self._close_session()
        logger.info("Plugin gateway stopped")
