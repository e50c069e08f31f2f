"""Entry point for `python -m plughost` / `plughost`.

Subcommands:
    plughost               Run the host (default)
    plughost serve         Run the host
    plughost validate DIR  Check an unpacked plugin's structure
    plughost deps DIR      Analyze an unpacked plugin's dependencies
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from pathlib import Path


def _serve() -> None:
    from plughost.app import PluginHost

    host = PluginHost()
    asyncio.run(host.run())


def _print_json(report: object) -> None:
    print(json.dumps(dataclasses.asdict(report), indent=2))  # type: ignore[arg-type]


def _validate(directory: Path) -> int:
    from plughost.diagnostics import validate_structure

    report = validate_structure(directory)
    _print_json(report)
    return 0 if report.valid else 1


def _deps(directory: Path) -> int:
    from plughost.diagnostics import analyze_dependencies
    from plughost.errors import PluginHostError

    try:
        analysis = analyze_dependencies(directory)
    except PluginHostError as exc:
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 1
    _print_json(analysis)
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="plughost",
        description="Run third-party UI plugins as isolated, HTTP-served processes",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the plugin host (default)")
    validate = sub.add_parser("validate", help="Validate an unpacked plugin directory")
    validate.add_argument("directory", type=Path)
    deps = sub.add_parser("deps", help="Analyze an unpacked plugin's dependencies")
    deps.add_argument("directory", type=Path)

    args = parser.parse_args(argv)

    match args.command:
        case "validate":
            sys.exit(_validate(args.directory))
        case "deps":
            sys.exit(_deps(args.directory))
        case _:
            _serve()


if __name__ == "__main__":
    main()
