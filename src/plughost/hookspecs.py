"""Pluggy hook specifications for plughost extensions.

All hooks use the "plughost" namespace and are validated by pluggy at
registration time. Third-party packages register through the ``plughost``
entry point group in their pyproject.toml.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pluggy

if TYPE_CHECKING:
    from plughost.fixups import PackageFixup

hookspec = pluggy.HookspecMarker("plughost")
hookimpl = pluggy.HookimplMarker("plughost")


class PlughostSpec:
    """Hook specifications for plughost extensions."""

    @hookspec
    def plughost_package_fixups(self) -> list[PackageFixup]:
        """Provide structural fixups for shared packages.

        Some libraries are referenced through a conventional distribution
        path (``jquery/dist/jquery.min.js``) that their installed package does
        not contain. A fixup synthesizes that path inside the plugin's
        working directory.

        Returns:
            List of :class:`~plughost.fixups.PackageFixup`. Each fixup must be
            idempotent — a no-op when its target already exists.
        """
