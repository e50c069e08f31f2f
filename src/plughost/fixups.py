"""Built-in structural fixups for shared packages.

Plugins reference libraries through the paths their docs advertise
(``jquery/dist/jquery.min.js``, ``bootstrap/dist/js/bootstrap.bundle.min.js``)
but the packages shipped in an archive do not always contain them. Each
fixup here makes the conventional path exist inside the plugin's own
``public/node_modules`` tree: downloaded from a CDN when allowed, otherwise
a stub that logs a clear console error in the browser.

Fixups never write into the shared package store. An alias that is a
symlink leaving the working directory is replaced by a private copy before
anything is written.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from plughost.hookspecs import hookimpl
from plughost.logger import logger
from plughost.types import FixupResult

Fetcher = Callable[[str], Awaitable[str]]

JQUERY_CDN_URL = "https://code.jquery.com/jquery-3.7.1.min.js"
BOOTSTRAP_CDN_URL = "https://cdn.jsdelivr.net/npm/bootstrap@4.6.2/dist/js/bootstrap.bundle.min.js"

DATATABLES_BUTTONS_EXTENSIONS = (
    "buttons.colVis.min.js",
    "buttons.html5.min.js",
    "buttons.print.min.js",
    "dataTables.buttons.min.js",
)

_JQUERY_STUB = """\
// jQuery could not be downloaded when this plugin was installed.
console.error('[plughost] jQuery failed to load from CDN. Using minimal stub.');
window.$ = window.jQuery = function() {
  console.error('[plughost] jQuery is not available. Please check network connectivity.');
  return {};
};
window.$.fn = {};
window.jQuery.fn = {};
"""

_BOOTSTRAP_STUB = """\
// Bootstrap JS could not be downloaded when this plugin was installed.
console.error('[plughost] Bootstrap JS failed to load from CDN. Interactive components are disabled.');
"""


@dataclass
class FixupContext:
    working_dir: Path
    fetch: Fetcher | None = None  # None → CDN downloads disabled


@dataclass(frozen=True)
class PackageFixup:
    name: str
    apply: Callable[[Path, FixupContext], Awaitable[FixupResult]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def materialize(pkg_path: Path, working_dir: Path) -> None:
    """Replace a symlinked alias pointing outside *working_dir* with a private copy."""
    if not pkg_path.is_symlink():
        return
    target = pkg_path.resolve()
    if target.is_relative_to(working_dir.resolve()):
        return
    pkg_path.unlink()
    if target.is_dir():
        shutil.copytree(target, pkg_path, symlinks=True)
    else:
        pkg_path.mkdir(parents=True)
    logger.debug("Materialized shared package alias", package=pkg_path.name)


def _write(pkg_path: Path, rel: str, content: str, working_dir: Path) -> None:
    materialize(pkg_path, working_dir)
    target = pkg_path / rel
    target.parent.mkdir(parents=True, exist_ok=True)
    # Write then rename so a concurrent reader never sees a half-written file
    tmp = target.with_name(f".{target.name}.tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, target)


async def ensure_dist_file(
    pkg_path: Path,
    ctx: FixupContext,
    *,
    name: str,
    rel: str,
    url: str,
    stub: str,
) -> FixupResult:
    """Make ``pkg_path/rel`` exist: CDN download first, logging stub second."""
    if (pkg_path / rel).exists():
        return FixupResult(name, True, "exists")

    if ctx.fetch is not None:
        try:
            content = await ctx.fetch(url)
        except Exception as exc:
            logger.warning("CDN download failed, writing stub", package=name, url=url, err=str(exc))
        else:
            await asyncio.to_thread(_write, pkg_path, rel, content, ctx.working_dir)
            logger.info("Downloaded dist file from CDN", package=name, path=rel)
            return FixupResult(name, True, "downloaded", url)

    await asyncio.to_thread(_write, pkg_path, rel, stub, ctx.working_dir)
    logger.warning("Wrote stub dist file", package=name, path=rel)
    return FixupResult(name, False, "stubbed", f"{rel} is a stub; download from {url} failed")


# ---------------------------------------------------------------------------
# Built-in fixups
# ---------------------------------------------------------------------------


async def fix_jquery(pkg_path: Path, ctx: FixupContext) -> FixupResult:
    return await ensure_dist_file(
        pkg_path,
        ctx,
        name="jquery",
        rel="dist/jquery.min.js",
        url=JQUERY_CDN_URL,
        stub=_JQUERY_STUB,
    )


async def fix_bootstrap(pkg_path: Path, ctx: FixupContext) -> FixupResult:
    # Bootstrap 4 source installs ship no prebuilt bundle
    return await ensure_dist_file(
        pkg_path,
        ctx,
        name="bootstrap",
        rel="dist/js/bootstrap.bundle.min.js",
        url=BOOTSTRAP_CDN_URL,
        stub=_BOOTSTRAP_STUB,
    )


async def check_datatables_buttons(pkg_path: Path, ctx: FixupContext) -> FixupResult:
    js_dir = pkg_path / "js"
    if not pkg_path.exists():
        return FixupResult("datatables.net-buttons", True, "skipped", "package not installed")
    if not js_dir.is_dir():
        return FixupResult("datatables.net-buttons", False, "checked", "js/ directory missing")
    missing = [ext for ext in DATATABLES_BUTTONS_EXTENSIONS if not (js_dir / ext).exists()]
    if missing:
        return FixupResult(
            "datatables.net-buttons",
            False,
            "checked",
            f"missing extensions: {', '.join(missing)}",
        )
    return FixupResult("datatables.net-buttons", True, "checked")


class BuiltinFixupsPlugin:
    @hookimpl
    def plughost_package_fixups(self) -> list[PackageFixup]:
        return [
            PackageFixup("jquery", fix_jquery),
            PackageFixup("bootstrap", fix_bootstrap),
            PackageFixup("datatables.net-buttons", check_datatables_buttons),
        ]
