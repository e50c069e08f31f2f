"""Instance registry — the one shared mutable structure of the host.

Running instances and port reservations share a single keyspace: plugin IDs
map to :class:`RunningInstance`, ``port_<n>`` keys map to
:class:`PortReservation` sentinels. A port is handed out only while no
sentinel holds it, so two concurrent starts can never pick the same port
even before either process has bound it.

Every mutation happens under one lock and contains no awaits.
"""

from __future__ import annotations

import socket
import threading
import time
from collections.abc import Callable

from plughost.errors import NoPortAvailableError
from plughost.logger import logger
from plughost.types import PortReservation, RunningInstance

_MAX_PORT = 65535


def _port_key(port: int) -> str:
    return f"port_{port}"


def port_is_free(port: int, host: str = "127.0.0.1") -> bool:
    """Bind-test *port*. Mirrors the static server's SO_REUSEADDR."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class InstanceRegistry:
    """Cache of running plugin instances plus port reservations.

    Args:
        ttl: Maximum instance age in seconds; older entries are treated as
            misses by :meth:`get` and dropped.
        on_stale: Called (outside the lock) with each instance :meth:`get`
            drops, so its process can be torn down.
    """

    def __init__(
        self,
        *,
        ttl: float = 600.0,
        on_stale: Callable[[RunningInstance], None] | None = None,
    ) -> None:
        self.ttl = ttl
        self.on_stale = on_stale
        self._entries: dict[str, RunningInstance | PortReservation] = {}
        self._next_port: int | None = None
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for e in self._entries.values() if isinstance(e, RunningInstance))

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def get(self, plugin_id: str) -> RunningInstance | None:
        """Return a usable instance, or ``None`` (dropping a stale entry)."""
        with self._lock:
            entry = self._entries.get(plugin_id)
            if not isinstance(entry, RunningInstance):
                return None
            if entry.installed and time.monotonic() - entry.created_at < self.ttl:
                return entry
            self._drop(plugin_id, entry)

        logger.info("Dropped stale instance", plugin_id=plugin_id, port=entry.port)
        if self.on_stale is not None:
            self.on_stale(entry)
        return None

    def peek(self, plugin_id: str) -> RunningInstance | None:
        with self._lock:
            entry = self._entries.get(plugin_id)
        return entry if isinstance(entry, RunningInstance) else None

    def put(self, instance: RunningInstance) -> None:
        with self._lock:
            self._entries[instance.plugin_id] = instance
            self._entries.setdefault(
                _port_key(instance.port),
                PortReservation(instance.port, instance.plugin_id, time.monotonic()),
            )

    def touch(self, plugin_id: str) -> bool:
        """Record an access. ``last_access_at`` never moves backwards."""
        with self._lock:
            entry = self._entries.get(plugin_id)
            if not isinstance(entry, RunningInstance):
                return False
            entry.last_access_at = max(entry.last_access_at, time.monotonic())
            entry.access_count += 1
            return True

    def remove(
        self, plugin_id: str, *, instance: RunningInstance | None = None
    ) -> RunningInstance | None:
        """Remove an instance and its port sentinel.

        With *instance*, only removes the entry if it is that exact object,
        so a late exit watcher cannot evict a newer instance.
        """
        with self._lock:
            entry = self._entries.get(plugin_id)
            if not isinstance(entry, RunningInstance):
                return None
            if instance is not None and entry is not instance:
                return None
            self._drop(plugin_id, entry)
            return entry

    def instances(self) -> list[RunningInstance]:
        with self._lock:
            return [e for e in self._entries.values() if isinstance(e, RunningInstance)]

    def _drop(self, plugin_id: str, entry: RunningInstance) -> None:
        del self._entries[plugin_id]
        self._entries.pop(_port_key(entry.port), None)

    # ------------------------------------------------------------------
    # Ports
    # ------------------------------------------------------------------

    def reserve_port(self, plugin_id: str, *, start: int = 4000, attempts: int = 50) -> int:
        """Atomically pick and reserve a free port.

        Scans upward from a rolling counter, skipping ports already reserved
        here and ports that fail a bind-test.
        """
        with self._lock:
            if self._next_port is None or self._next_port < start:
                self._next_port = start
            candidate = self._next_port
            for _ in range(attempts):
                port = candidate
                candidate = port + 1 if port < _MAX_PORT else start
                key = _port_key(port)
                if key in self._entries or not port_is_free(port):
                    continue
                self._entries[key] = PortReservation(port, plugin_id, time.monotonic())
                self._next_port = candidate
                logger.debug("Port reserved", plugin_id=plugin_id, port=port)
                return port
            self._next_port = candidate

        raise NoPortAvailableError(
            f"No free port found after {attempts} attempts",
            details={"plugin_id": plugin_id, "start": start, "attempts": attempts},
        )

    def release_port(self, port: int) -> None:
        with self._lock:
            entry = self._entries.get(_port_key(port))
            if entry is None:
                return
            owner = self._entries.get(entry.plugin_id)
            # A port still backing a registered instance stays reserved
            if isinstance(owner, RunningInstance) and owner.port == port:
                return
            del self._entries[_port_key(port)]

    def reserved_ports(self) -> list[int]:
        with self._lock:
            return sorted(e.port for e in self._entries.values() if isinstance(e, PortReservation))
