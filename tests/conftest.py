"""Pytest configuration and shared fixtures."""
from __future__ import annotations

from collections.abc import Iterable
from unittest.mock import Mock, patch

import pytest

from winstate.backends import HardwareBackend
from winstate.errors import AdapterUnresolved, BackendUnavailable, CounterReadError, SensorReadError
from winstate.models import HardwareKind, HardwareNode, SensorHandle, SensorKind
from winstate.network import AGGREGATE_ADAPTER, AdapterSelector

GIB = 1024 * 1024 * 1024


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "lhm: mark test as exercising the LibreHardwareMonitor backend"
    )
    config.addinivalue_line(
        "markers", "threaded: mark test as running the background sampling thread"
    )


class FakeBackend(HardwareBackend):
    """In-memory hardware tree with settable sensor values."""

    name = "fake"

    def __init__(self, fail_open: bool = False) -> None:
        self.fail_open = fail_open
        self._nodes: list[HardwareNode] = []
        self._sensors: dict[str, list[SensorHandle]] = {}
        self.values: dict[str, float | None] = {}
        self.failing: set[str] = set()
        self.update_calls: list[list[str]] = []
        self.open_calls = 0
        self.close_calls = 0

    def add_node(
        self,
        kind: HardwareKind,
        name: str,
        sensors: Iterable[tuple[str, SensorKind, float | None]] = (),
    ) -> HardwareNode:
        node = HardwareNode(node_id=f"/{kind.value}/{len(self._nodes)}", name=name, kind=kind)
        self._nodes.append(node)
        self._sensors[node.node_id] = []
        for sensor_name, sensor_kind, value in sensors:
            self.add_sensor(node, sensor_name, sensor_kind, value)
        return node

    def add_sensor(
        self, node: HardwareNode, name: str, kind: SensorKind, value: float | None
    ) -> SensorHandle:
        sensors = self._sensors[node.node_id]
        handle = SensorHandle(
            node_id=node.node_id,
            sensor_id=f"{node.node_id}/{kind.value}/{len(sensors)}",
            name=name,
            kind=kind,
        )
        sensors.append(handle)
        self.values[handle.sensor_id] = value
        return handle

    def set_value(self, handle: SensorHandle, value: float | None) -> None:
        self.values[handle.sensor_id] = value

    def open(self) -> None:
        self.open_calls += 1
        if self.fail_open:
            raise BackendUnavailable("fake backend refused to open")

    def close(self) -> None:
        self.close_calls += 1

    def nodes(self) -> list[HardwareNode]:
        return list(self._nodes)

    def update(self, node_ids: Iterable[str]) -> None:
        self.update_calls.append(list(node_ids))

    def sensors(self, node_id: str) -> list[SensorHandle]:
        return list(self._sensors[node_id])

    def read(self, handle: SensorHandle) -> float | None:
        if handle.sensor_id in self.failing:
            raise SensorReadError(f"sensor {handle.name} faulted")
        return self.values.get(handle.sensor_id)


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeCounterSource:
    """Byte counters that grow at fixed per-adapter rates on a fake clock."""

    def __init__(self, clock: FakeClock, traffic: dict[str, tuple[float, float]]) -> None:
        self.clock = clock
        self.traffic = dict(traffic)
        self.fail_enumeration = False
        self.broken: set[str] = set()

    def _counters(self, rates: tuple[float, float]) -> tuple[int, int]:
        return int(rates[0] * self.clock.now), int(rates[1] * self.clock.now)

    def per_adapter(self) -> dict[str, tuple[int, int]]:
        if self.fail_enumeration:
            raise AdapterUnresolved("enumeration failed")
        return {name: self._counters(rates) for name, rates in self.traffic.items()}

    def read(self, adapter: str) -> tuple[int, int]:
        if adapter in self.broken:
            raise CounterReadError(f"{adapter} unreadable")
        if adapter == AGGREGATE_ADAPTER:
            sent = sum(rate[0] for rate in self.traffic.values())
            received = sum(rate[1] for rate in self.traffic.values())
            return self._counters((sent, received))
        if adapter not in self.traffic:
            raise CounterReadError(f"{adapter} disappeared")
        return self._counters(self.traffic[adapter])


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def counter_source(clock):
    return FakeCounterSource(
        clock,
        {
            "Ethernet": (2_000.0, 50_000.0),
            "Wi-Fi": (100.0, 1_000.0),
        },
    )


@pytest.fixture
def selector(clock, counter_source):
    return AdapterSelector(
        probe_interval_s=1.0,
        source=counter_source,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def fake_memory():
    """8 GiB of RAM with 2 GiB available (75% used)."""
    with patch("psutil.virtual_memory") as mock_vm:
        mock_vm.return_value = Mock(total=8 * GIB, available=2 * GIB)
        yield mock_vm
