"""Dependency resolution — link shared packages into a plugin's public tree.

Plugins reference libraries as ``node_modules/<name>/...`` relative to their
``index.html``, but the static server only exposes ``public/``. Resolution
makes each referenced package reachable as ``public/node_modules/<name>``:

1. :func:`detect_packages` reads the ``<script src>`` references,
2. :func:`scan_store` enumerates the shared package store (pnpm or flat),
3. :func:`plan_resolution` decides what to link (pure, no disk access),
4. :func:`apply_plan` creates the aliases (relative symlinks),
5. the per-package fixups from :mod:`plughost.fixups` patch up dist files.

The shared store is only ever read. Everything written lands under the
plugin's own working directory.
"""

from __future__ import annotations

import asyncio
import os
import re
import shutil
from pathlib import Path

import aiohttp

from plughost.fixups import Fetcher, FixupContext, PackageFixup
from plughost.logger import logger
from plughost.types import (
    DependencyRef,
    FixupResult,
    LinkAction,
    ResolutionPlan,
    ResolutionReport,
)

DEFAULT_PACKAGES = (
    "jquery",
    "bootstrap",
    "datatables.net",
    "datatables.net-bs4",
    "datatables.net-buttons",
    "datatables.net-buttons-bs4",
)

_SCRIPT_SRC_RE = re.compile(
    r"""<script\b[^>]*?\bsrc\s*=\s*["']([^"']*node_modules/[^"']*)["']""",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def _package_name(ref: str) -> str | None:
    """``../node_modules/@scope/pkg/dist/x.js`` → ``@scope/pkg``."""
    tail = ref.rsplit("node_modules/", 1)[1]
    parts = [p for p in tail.split("/") if p]
    if not parts:
        return None
    if parts[0].startswith("@"):
        return f"{parts[0]}/{parts[1]}" if len(parts) > 1 else None
    return parts[0]


def detect_packages(html: str) -> list[str]:
    """Package names referenced by ``<script src=".../node_modules/...">`` tags.

    First-seen order, no duplicates.
    """
    seen: dict[str, None] = {}
    for match in _SCRIPT_SRC_RE.finditer(html):
        name = _package_name(match.group(1))
        if name:
            seen.setdefault(name, None)
    return list(seen)


# ---------------------------------------------------------------------------
# Store scanning
# ---------------------------------------------------------------------------


def _version_key(version: str) -> tuple[int, ...]:
    return tuple(int(n) for n in re.findall(r"\d+", version))


def _parse_pnpm_entry(entry: str) -> tuple[str, str] | None:
    """``bootstrap@4.6.2_jquery@3.7.1`` → ``("bootstrap", "4.6.2")``.

    Scoped packages are encoded as ``@scope+name@1.0.0``.
    """
    scoped = entry.startswith("@")
    body = entry[1:] if scoped else entry
    name, sep, version = body.partition("@")
    if not sep or not name:
        return None
    if scoped:
        name = "@" + name.replace("+", "/", 1)
    return name, version.split("_", 1)[0]


def scan_store(store_dir: Path) -> dict[str, Path]:
    """Map package name → directory for every package in *store_dir*.

    Reads the pnpm virtual store (``.pnpm/<name>@<ver>/node_modules/<name>``,
    highest version wins) and then the flat layout (``<name>/``), which
    takes precedence when both hold the same name.
    """
    found: dict[str, Path] = {}
    if not store_dir.is_dir():
        return found

    pnpm_dir = store_dir / ".pnpm"
    if pnpm_dir.is_dir():
        versions: dict[str, tuple[int, ...]] = {}
        for entry in sorted(pnpm_dir.iterdir()):
            parsed = _parse_pnpm_entry(entry.name)
            if parsed is None:
                continue
            name, version = parsed
            pkg_dir = entry / "node_modules" / name
            if not pkg_dir.is_dir():
                continue
            key = _version_key(version)
            if name not in versions or key > versions[name]:
                versions[name] = key
                found[name] = pkg_dir

    for entry in sorted(store_dir.iterdir()):
        if entry.name.startswith(".") or not entry.is_dir():
            continue
        if entry.name.startswith("@"):
            for sub in sorted(entry.iterdir()):
                if sub.is_dir():
                    found[f"{entry.name}/{sub.name}"] = sub
        else:
            found[entry.name] = entry
    return found


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def plan_resolution(html: str | None, available: dict[str, Path]) -> ResolutionPlan:
    """Decide which packages to link. Pure: no filesystem access."""
    detected = detect_packages(html) if html else []
    used_defaults = not detected
    names = list(DEFAULT_PACKAGES) if used_defaults else detected

    plan = ResolutionPlan(used_defaults=used_defaults)
    for name in names:
        source = available.get(name)
        if source is not None:
            plan.actions.append(LinkAction(name, source))
        elif not used_defaults:
            plan.missing.append(name)
            logger.warning("Referenced package not found in store", package=name)
    return plan


def apply_plan(plan: ResolutionPlan, working_dir: Path) -> list[DependencyRef]:
    """Create ``public/node_modules/<name>`` aliases. Safe to call repeatedly."""
    modules_dir = working_dir / "public" / "node_modules"
    modules_dir.mkdir(parents=True, exist_ok=True)

    refs: list[DependencyRef] = []
    for action in plan.actions:
        target = modules_dir / action.name
        refs.append(DependencyRef(action.name, action.source, target))

        if target.is_symlink() and not target.exists():
            target.unlink()  # dangling alias from an earlier store layout
        if target.exists():
            continue

        target.parent.mkdir(parents=True, exist_ok=True)
        rel = os.path.relpath(action.source, target.parent)
        try:
            os.symlink(rel, target, target_is_directory=True)
        except OSError:
            shutil.copytree(action.source, target, symlinks=True)
            logger.debug("Symlink unsupported, copied package", package=action.name)
    return refs


# ---------------------------------------------------------------------------
# Full resolution
# ---------------------------------------------------------------------------


async def fetch_text(session: aiohttp.ClientSession, url: str) -> str:
    async with session.get(url) as resp:
        resp.raise_for_status()
        return await resp.text()


def _read_index(public_dir: Path) -> str | None:
    index = public_dir / "index.html"
    if not index.is_file():
        return None
    return index.read_text(encoding="utf-8", errors="replace")


async def _run_fixups(
    names: list[str],
    fixups: dict[str, list[PackageFixup]],
    ctx: FixupContext,
) -> list[FixupResult]:
    modules_dir = ctx.working_dir / "public" / "node_modules"
    results: list[FixupResult] = []
    for name in names:
        for fixup in fixups.get(name, []):
            try:
                result = await fixup.apply(modules_dir / name, ctx)
            except Exception as exc:
                logger.exception("Package fixup failed", package=name)
                result = FixupResult(name, False, "failed", str(exc))
            results.append(result)
    return results


async def resolve_dependencies(
    working_dir: Path,
    *,
    store_dir: Path | None = None,
    fixups: dict[str, list[PackageFixup]] | None = None,
    cdn_fallback: bool = True,
    download_timeout: float = 10.0,
    fetch: Fetcher | None = None,
) -> ResolutionReport:
    """Link and fix up the packages the plugin's ``index.html`` references.

    Does nothing unless ``working_dir/public`` exists. Missing packages and
    failed fixups are reported as warnings, never raised.
    """
    public_dir = working_dir / "public"
    if not public_dir.is_dir():
        logger.debug("No public/ directory, skipping dependency resolution", path=str(working_dir))
        return ResolutionReport()

    if fixups is None:
        from plughost.plugin import collect_fixups, get_plugin_manager

        fixups = collect_fixups(get_plugin_manager())

    store = store_dir or working_dir / "node_modules"
    html = await asyncio.to_thread(_read_index, public_dir)
    available = await asyncio.to_thread(scan_store, store)
    plan = plan_resolution(html, available)
    refs = await asyncio.to_thread(apply_plan, plan, working_dir)

    # Fixups also cover referenced-but-missing packages so their dist files exist
    names = list(dict.fromkeys([a.name for a in plan.actions] + plan.missing))

    if fetch is not None or not cdn_fallback:
        results = await _run_fixups(names, fixups, FixupContext(working_dir, fetch))
    else:
        timeout = aiohttp.ClientTimeout(total=download_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:

            async def _fetch(url: str) -> str:
                return await fetch_text(session, url)

            results = await _run_fixups(names, fixups, FixupContext(working_dir, _fetch))

    report = ResolutionReport(
        refs=refs,
        missing=plan.missing,
        fixups=results,
        used_defaults=plan.used_defaults,
    )
    logger.info(
        "Dependencies resolved",
        path=str(working_dir),
        linked=[r.name for r in refs],
        missing=plan.missing,
        used_defaults=plan.used_defaults,
        warnings=len(report.warnings),
    )
    return report
