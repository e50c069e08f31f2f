"""Tests for the instance registry and port reservation."""

from __future__ import annotations

import socket
import time
from pathlib import Path

import pytest
from conftest import OTHER_PLUGIN_ID, PLUGIN_ID

from plughost.errors import NoPortAvailableError
from plughost.registry import InstanceRegistry, port_is_free
from plughost.types import RunningInstance

_START = 43000


def _instance(plugin_id: str = PLUGIN_ID, port: int = _START, *, age: float = 0.0, installed=True):
    now = time.monotonic()
    return RunningInstance(
        plugin_id=plugin_id,
        working_dir=Path("/tmp") / plugin_id,
        port=port,
        process=None,
        created_at=now - age,
        last_access_at=now - age,
        installed=installed,
    )


class TestInstances:
    def test_get_hit(self):
        reg = InstanceRegistry()
        inst = _instance()
        reg.put(inst)
        assert reg.get(PLUGIN_ID) is inst
        assert len(reg) == 1

    def test_get_miss(self):
        assert InstanceRegistry().get(PLUGIN_ID) is None

    def test_expired_entry_dropped_and_reported(self):
        stale: list[RunningInstance] = []
        reg = InstanceRegistry(ttl=10, on_stale=stale.append)
        inst = _instance(age=11)
        reg.put(inst)

        assert reg.get(PLUGIN_ID) is None
        assert stale == [inst]
        assert reg.peek(PLUGIN_ID) is None
        assert reg.reserved_ports() == []

    def test_uninstalled_entry_is_never_returned(self):
        reg = InstanceRegistry()
        reg.put(_instance(installed=False))
        assert reg.get(PLUGIN_ID) is None

    def test_peek_ignores_ttl(self):
        reg = InstanceRegistry(ttl=1)
        inst = _instance(age=5)
        reg.put(inst)
        assert reg.peek(PLUGIN_ID) is inst

    def test_put_reserves_port(self):
        reg = InstanceRegistry()
        reg.put(_instance(port=_START + 7))
        assert reg.reserved_ports() == [_START + 7]

    def test_touch_is_monotonic_and_counts(self):
        reg = InstanceRegistry()
        inst = _instance()
        future = time.monotonic() + 1000
        inst.last_access_at = future
        reg.put(inst)

        assert reg.touch(PLUGIN_ID) is True
        assert inst.last_access_at == future
        assert inst.access_count == 1

    def test_touch_unknown(self):
        assert InstanceRegistry().touch(PLUGIN_ID) is False

    def test_remove_clears_sentinel(self):
        reg = InstanceRegistry()
        inst = _instance()
        reg.put(inst)

        assert reg.remove(PLUGIN_ID) is inst
        assert len(reg) == 0
        assert reg.reserved_ports() == []

    def test_remove_checks_identity(self):
        reg = InstanceRegistry()
        old = _instance()
        new = _instance(port=_START + 1)
        reg.put(new)

        assert reg.remove(PLUGIN_ID, instance=old) is None
        assert reg.peek(PLUGIN_ID) is new

    def test_instances_snapshot_excludes_sentinels(self):
        reg = InstanceRegistry()
        reg.put(_instance(PLUGIN_ID, _START))
        reg.put(_instance(OTHER_PLUGIN_ID, _START + 1))
        reg.reserve_port("pending", start=_START + 10, attempts=5)

        assert {i.plugin_id for i in reg.instances()} == {PLUGIN_ID, OTHER_PLUGIN_ID}
        assert len(reg) == 2


class TestPorts:
    def test_reserved_ports_are_distinct(self):
        reg = InstanceRegistry()
        ports = [reg.reserve_port(f"p{i}", start=_START, attempts=50) for i in range(10)]
        assert len(set(ports)) == 10
        assert reg.reserved_ports() == sorted(ports)

    def test_counter_rolls_forward(self):
        reg = InstanceRegistry()
        first = reg.reserve_port("a", start=_START, attempts=50)
        reg.release_port(first)
        second = reg.reserve_port("b", start=_START, attempts=50)
        assert second > first

    def test_busy_port_skipped(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", _START + 20))
            busy.listen()
            assert not port_is_free(_START + 20)

            reg = InstanceRegistry()
            port = reg.reserve_port("a", start=_START + 20, attempts=10)
            assert port != _START + 20

    def test_exhaustion_raises(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", _START + 30))
            busy.listen()

            reg = InstanceRegistry()
            with pytest.raises(NoPortAvailableError) as exc_info:
                reg.reserve_port("a", start=_START + 30, attempts=1)
        assert exc_info.value.retryable is True
        assert exc_info.value.details["attempts"] == 1

    def test_sentinel_blocks_reuse_before_bind(self):
        reg = InstanceRegistry()
        taken = reg.reserve_port("a", start=_START + 35, attempts=1)
        # Nothing is listening on `taken`, only the sentinel holds it
        reg._next_port = taken
        with pytest.raises(NoPortAvailableError):
            reg.reserve_port("b", start=_START + 35, attempts=1)

    def test_release_keeps_port_of_registered_instance(self):
        reg = InstanceRegistry()
        reg.put(_instance(port=_START + 40))
        reg.release_port(_START + 40)
        assert reg.reserved_ports() == [_START + 40]

    def test_release_unknown_port_is_noop(self):
        InstanceRegistry().release_port(1)
