"""Plugin manager for plughost extensions.

Built on pluggy. The built-in package fixups are always registered;
third-party ones are discovered from the ``plughost`` entry point group.

Usage::

    from plughost.plugin import get_plugin_manager

    pm = get_plugin_manager()
    fixups = collect_fixups(pm)
"""

from __future__ import annotations

import pluggy

from plughost.fixups import BuiltinFixupsPlugin, PackageFixup
from plughost.hookspecs import PlughostSpec
from plughost.logger import logger

__all__ = [
    "collect_fixups",
    "get_plugin_manager",
]


def get_plugin_manager(*, load_entrypoints: bool = True) -> pluggy.PluginManager:
    """Create and configure the plugin manager."""
    pm = pluggy.PluginManager("plughost")
    pm.add_hookspecs(PlughostSpec)
    pm.register(BuiltinFixupsPlugin(), name="builtin-fixups")

    if load_entrypoints:
        discovered = pm.load_setuptools_entrypoints("plughost")
        if discovered:
            logger.info("Discovered third-party plugins", count=discovered)

    plugin_names = [pm.get_name(p) for p in pm.get_plugins()]
    logger.debug("Plugin manager ready", plugins=plugin_names)
    return pm


def collect_fixups(pm: pluggy.PluginManager) -> dict[str, list[PackageFixup]]:
    """Group every registered fixup by package name, preserving hook order."""
    by_name: dict[str, list[PackageFixup]] = {}
    for batch in pm.hook.plughost_package_fixups():
        for fixup in batch or []:
            by_name.setdefault(fixup.name, []).append(fixup)
    return by_name
