"""Capability bridge — the script block injected into a plugin's root document.

The block is a marker comment, a JSON bootstrap (``window.__PLUGHOST__``),
the static bridge script and optionally the instrumentation script and an
SDK bundle. The JS files under ``static/`` are served verbatim; everything
plugin-specific travels in the bootstrap object, so no plugin data is ever
interpolated into script text.
"""

from __future__ import annotations

import functools
import json
import re
from pathlib import Path

from plughost.logger import logger
from plughost.types import MessageType

SENTINEL = "PLUGHOST CAPABILITY BRIDGE"
PROTOCOL_VERSION = 1

_STATIC_DIR = Path(__file__).parent / "static"

_HEAD_RE = re.compile(r"<head\b[^>]*>", re.IGNORECASE)
_BODY_RE = re.compile(r"<body\b[^>]*>", re.IGNORECASE)

# DataTables Buttons ships its export/print/column-visibility extensions as
# separate files that plugins usually forget to include.
EXTENSION_ANCHOR = 'dataTables.buttons.min.js"></script>'
EXTENSION_SCRIPTS = (
    "https://cdn.datatables.net/buttons/3.1.2/js/buttons.colVis.min.js",
    "https://cdn.datatables.net/buttons/3.1.2/js/buttons.html5.min.js",
    "https://cdn.datatables.net/buttons/3.1.2/js/buttons.print.min.js",
)


@functools.cache
def _static(name: str) -> str:
    return (_STATIC_DIR / name).read_text(encoding="utf-8")


@functools.lru_cache(maxsize=4)
def _sdk_bundle(path: str) -> str | None:
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("SDK bundle unavailable, injecting bridge without it", path=path, err=str(exc))
        return None
    return content.replace("</script", "<\\/script")


def bootstrap_json(plugin_id: str, *, instrumentation: bool) -> str:
    data = {
        "pluginId": plugin_id,
        "protocol": PROTOCOL_VERSION,
        "instrumentation": instrumentation,
        "messageTypes": {m.name: m.value for m in MessageType},
    }
    # "</" would let a crafted value close the surrounding <script>
    return json.dumps(data).replace("</", "<\\/")


def render_bridge(
    plugin_id: str,
    *,
    instrumentation: bool = True,
    sdk_bundle: str | Path | None = None,
) -> str:
    parts = [
        f"\n<!-- {SENTINEL} -->",
        f"<script>window.__PLUGHOST__ = {bootstrap_json(plugin_id, instrumentation=instrumentation)};</script>",
        f"<script>\n{_static('bridge.js')}</script>",
    ]
    if instrumentation:
        parts.append(f"<script>\n{_static('instrumentation.js')}</script>")
    if sdk_bundle:
        bundle = _sdk_bundle(str(sdk_bundle))
        if bundle is not None:
            parts.append(f"<script>\n{bundle}\n</script>")
    return "\n".join(parts) + "\n"


def add_extension_scripts(html: str) -> str:
    """Load the DataTables Buttons extensions right after the Buttons core."""
    idx = html.find(EXTENSION_ANCHOR)
    if idx == -1 or EXTENSION_SCRIPTS[0] in html:
        return html
    end = idx + len(EXTENSION_ANCHOR)
    tags = "".join(f'\n<script src="{url}"></script>' for url in EXTENSION_SCRIPTS)
    return html[:end] + tags + html[end:]


def inject(
    html: str,
    plugin_id: str,
    *,
    instrumentation: bool = True,
    sdk_bundle: str | Path | None = None,
) -> str:
    """Insert the bridge once: after ``<head>``, else after ``<body>``, else at the top."""
    if SENTINEL in html:
        return html

    block = render_bridge(plugin_id, instrumentation=instrumentation, sdk_bundle=sdk_bundle)
    match = _HEAD_RE.search(html) or _BODY_RE.search(html)
    if match:
        html = html[: match.end()] + block + html[match.end() :]
    else:
        html = block + html
    return add_extension_scripts(html)
