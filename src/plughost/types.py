"""Data models for the plugin host."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Literal


@dataclass
class ExtractedInstance:
    plugin_id: str
    working_dir: Path
    extracted_at: float  # wall clock (time.time())


@dataclass
class RunningInstance:
    """A live static-server process serving one extracted plugin.

    Timestamps are ``time.monotonic()`` values.
    """

    plugin_id: str
    working_dir: Path
    port: int
    process: asyncio.subprocess.Process | None
    created_at: float
    last_access_at: float
    access_count: int = 0
    installed: bool = False  # True once the server answered a readiness probe

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None


@dataclass
class PortReservation:
    """Sentinel stored under ``port_<n>`` so two starts never pick the same port."""

    port: int
    plugin_id: str
    reserved_at: float


@dataclass(frozen=True)
class DependencyRef:
    name: str
    source_path: Path  # location in the shared package store
    target_path: Path  # plugin-local alias under public/node_modules


@dataclass(frozen=True)
class LinkAction:
    name: str
    source: Path


@dataclass
class ResolutionPlan:
    """What to link, computed without touching the plugin's directory."""

    actions: list[LinkAction] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    used_defaults: bool = False


FixupAction = Literal["skipped", "exists", "downloaded", "stubbed", "checked", "failed"]


@dataclass(frozen=True)
class FixupResult:
    name: str
    ok: bool
    action: FixupAction
    detail: str = ""


@dataclass
class ResolutionReport:
    refs: list[DependencyRef] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    fixups: list[FixupResult] = field(default_factory=list)
    used_defaults: bool = False

    @property
    def warnings(self) -> list[str]:
        out = [f"dependency not found in package store: {name}" for name in self.missing]
        out.extend(f"{r.name}: {r.detail}" for r in self.fixups if not r.ok)
        return out


@dataclass(frozen=True)
class ServeResult:
    status: int
    content_type: str
    body: bytes


class MessageType(StrEnum):
    """postMessage types exchanged between the bridge and its embedding page."""

    IFRAME_READY = "IFRAME_READY"
    CONFIG = "CONFIG"
    TOKEN_REQUEST = "TOKEN_REQUEST"
    CONSOLE_LOG = "CONSOLE_LOG"
    NETWORK_REQUEST = "NETWORK_REQUEST"
    STATE_CHANGE = "STATE_CHANGE"
    TEST_RESULT = "TEST_RESULT"
    ERROR = "ERROR"
