"""Plugin diagnostics — structure validation and dependency analysis.

Both operate on an unpacked plugin directory (the same layout as inside a
plugin archive) and never modify it. Used by ``plughost validate`` and
``plughost deps``.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from plughost.dependencies import detect_packages
from plughost.errors import NotFoundError

_ANY_SCRIPT_RE = re.compile(r"""<script\b[^>]*?\bsrc\s*=\s*["']([^"']+)["']""", re.IGNORECASE)


@dataclass(frozen=True)
class _FileCheck:
    path: str
    role: str  # files sharing a role are alternatives for each other


_FILE_CHECKS = (
    _FileCheck("public/index.html", "html"),
    _FileCheck("index.html", "html"),
    _FileCheck("public/script.js", "script"),
    _FileCheck("script.js", "script"),
    _FileCheck("public/styles.css", "styles"),
    _FileCheck("styles.css", "styles"),
    _FileCheck("package.json", "package"),
    _FileCheck("metadata.json", "metadata"),
    _FileCheck("README.md", "readme"),
)


@dataclass
class StructureReport:
    valid: bool = True
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    files: dict[str, bool] = field(default_factory=dict)
    structure: dict[str, bool] = field(default_factory=dict)
    preview: list[str] = field(default_factory=list)
    estimated_size: int = 0


def _load_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def validate_structure(directory: Path) -> StructureReport:
    """Check that *directory* looks like a servable plugin.

    Invalid when the directory, an ``index.html`` (public/ or root) or the
    ``package.json`` is missing. Missing script/styles are issues but do not
    invalidate the plugin.
    """
    report = StructureReport()
    if not directory.is_dir():
        report.valid = False
        report.issues.append("Directory does not exist")
        return report

    has_public = (directory / "public").is_dir()
    if not has_public:
        report.suggestions.append("Consider organizing files in a public/ directory")

    present_roles: set[str] = set()
    for check in _FILE_CHECKS:
        path = directory / check.path
        exists = path.is_file()
        report.files[check.path] = exists
        if exists:
            size = path.stat().st_size
            report.preview.append(f"{check.path} ({size} bytes)")
            report.estimated_size += size
            present_roles.add(check.role)

    report.structure = {
        "has_public_dir": has_public,
        "has_index_html": "html" in present_roles,
        "has_script": "script" in present_roles,
        "has_styles": "styles" in present_roles,
        "has_package_json": "package" in present_roles,
    }

    if not report.structure["has_index_html"]:
        report.valid = False
        report.issues.append("Missing index.html file (checked both public/ and root)")
    if not report.structure["has_script"]:
        report.issues.append("Missing script.js file (recommended for functionality)")
    if not report.structure["has_styles"]:
        report.issues.append("Missing styles.css file (recommended for styling)")
    if not report.structure["has_package_json"]:
        report.valid = False
        report.issues.append("Missing package.json file")
    else:
        try:
            package = _load_json(directory / "package.json")
        except (OSError, ValueError):
            report.issues.append("package.json is not valid JSON")
        else:
            if not isinstance(package, dict):
                report.issues.append("package.json must contain a JSON object")
            else:
                for key in ("name", "version"):
                    if not package.get(key):
                        report.issues.append(f'package.json missing "{key}" field')
                if not package.get("description"):
                    report.suggestions.append('Consider adding a "description" field to package.json')

    if report.structure["has_index_html"]:
        if has_public:
            report.suggestions.append("Files are organized in a public/ directory")
        else:
            report.suggestions.append("Files found in root directory; public/ is preferred")
    if not report.preview:
        report.preview.append("No files found")
    return report


# ---------------------------------------------------------------------------
# Dependency analysis
# ---------------------------------------------------------------------------


@dataclass
class DependencyInfo:
    name: str
    found: bool = False
    version: str | None = None
    path: str | None = None
    size: int = 0
    scripts: list[str] = field(default_factory=list)
    styles: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)


@dataclass
class DependencyAnalysis:
    package: dict[str, Any] | None = None
    html_scripts: list[str] = field(default_factory=list)
    node_modules: dict[str, Any] = field(default_factory=dict)
    dependencies: list[DependencyInfo] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    total_size: int = 0


def _dir_size(path: Path) -> int:
    total = 0
    for root, dirs, files in os.walk(path):
        dirs[:] = [d for d in dirs if not d.startswith(".")]
        for name in files:
            try:
                total += (Path(root) / name).stat().st_size
            except OSError:
                continue
    return total


def _find_files(pkg_dir: Path, suffix: str, subdirs: tuple[str, ...]) -> list[str]:
    found: list[str] = []
    for sub in ("", *subdirs):
        directory = pkg_dir / sub if sub else pkg_dir
        if not directory.is_dir():
            continue
        for entry in sorted(directory.iterdir()):
            if entry.is_file() and entry.name.endswith(suffix):
                found.append(f"{sub}/{entry.name}" if sub else entry.name)
    return found


def analyze_dependencies(directory: Path) -> DependencyAnalysis:
    """Compare declared, referenced and installed packages of a plugin."""
    if not directory.is_dir():
        raise NotFoundError("Plugin directory does not exist", details={"path": str(directory)})

    result = DependencyAnalysis()

    try:
        package = _load_json(directory / "package.json")
        result.package = package if isinstance(package, dict) else None
    except (OSError, ValueError):
        result.recommendations.append("Create a package.json file to define dependencies")

    html = None
    for candidate in (directory / "public" / "index.html", directory / "index.html"):
        if candidate.is_file():
            html = candidate.read_text(encoding="utf-8", errors="replace")
            break
    referenced: list[str] = []
    if html is not None:
        result.html_scripts = _ANY_SCRIPT_RE.findall(html)
        referenced = detect_packages(html)

    modules_dir: Path | None = None
    for candidate in (directory / "node_modules", directory / "public" / "node_modules"):
        if candidate.is_dir():
            modules_dir = candidate
            break
    result.node_modules = {
        "exists": modules_dir is not None,
        "path": str(modules_dir) if modules_dir else None,
        "packages": sorted(
            p.name for p in modules_dir.iterdir() if not p.name.startswith((".", "@"))
        )
        if modules_dir
        else [],
    }

    names: dict[str, None] = {}
    if result.package:
        for section in ("dependencies", "devDependencies"):
            deps = result.package.get(section) or {}
            if isinstance(deps, dict):
                names.update(dict.fromkeys(deps))
    names.update(dict.fromkeys(referenced))

    for name in names:
        info = DependencyInfo(name=name)
        if modules_dir is None:
            info.issues.append("No node_modules directory found")
        else:
            pkg_dir = modules_dir / name
            if pkg_dir.is_dir():
                info.found = True
                info.path = str(pkg_dir)
                try:
                    info.version = _load_json(pkg_dir / "package.json").get("version")
                except (OSError, ValueError, AttributeError):
                    info.issues.append("No package.json found in dependency")
                info.size = _dir_size(pkg_dir)
                info.scripts = _find_files(pkg_dir, ".js", ("dist", "js"))
                info.styles = _find_files(pkg_dir, ".css", ("dist", "css"))
                result.total_size += info.size
            else:
                info.issues.append("Package not found in node_modules")
        if name in referenced and not info.found:
            info.issues.append("Referenced in HTML but missing from node_modules")
        result.dependencies.append(info)

    if modules_dir is None:
        result.recommendations.append("Install dependencies so node_modules is present")
    missing = [d.name for d in result.dependencies if not d.found]
    if missing:
        result.recommendations.append(f"Install missing dependencies: {', '.join(missing)}")
    if not result.html_scripts:
        result.recommendations.append("No <script src> references found in index.html")
    unused = [d.name for d in result.dependencies if d.found and d.name not in referenced]
    if unused:
        result.recommendations.append(
            f"Dependencies installed but not referenced in HTML: {', '.join(unused)}"
        )
    return result
