"""Tests for the public engine surface: lifecycle, snapshot and notifications."""
from __future__ import annotations

import threading
import time

import pytest

from winstate.config import EngineConfig, NetworkConfig
from winstate.backends import NativeBackend
from winstate.engine import MetricsEngine, Subscription, build_backend
from winstate.errors import BackendUnavailable, EngineStateError
from winstate.lhm import LibreHardwareMonitorBackend
from winstate.models import NO_POWER_SENSOR, HardwareKind, MetricSample, SensorKind
from winstate.network import AGGREGATE_ADAPTER, AdapterSelector
from winstate.scheduler import SchedulerState

from tests.conftest import FakeBackend, FakeCounterSource

INTERVAL_S = 0.05


@pytest.fixture
def engine(backend, selector, fake_memory):
    engine = MetricsEngine(backend, selector=selector, interval_s=INTERVAL_S)
    yield engine
    engine.close()


def wait_for(event: threading.Event, timeout: float = 5.0) -> None:
    assert event.wait(timeout), "timed out waiting for a notification"


def test_latest_before_first_tick_is_empty(engine):
    sample = engine.latest()
    assert sample.cpu_usage_pct == 0.0
    assert sample.disk_usage_pct == 0.0
    assert sample.net_download_unit == "B/s"
    assert sample.cpu_power_watts == NO_POWER_SENSOR


def test_open_surfaces_backend_unavailable(selector, fake_memory):
    engine = MetricsEngine(FakeBackend(fail_open=True), selector=selector)
    with pytest.raises(BackendUnavailable):
        engine.open()
    with pytest.raises(BackendUnavailable):
        engine.start()
    assert engine.state == SchedulerState.IDLE


@pytest.mark.threaded
def test_cpu_without_power_sensor_end_to_end(engine, backend):
    backend.add_node(HardwareKind.CPU, "CPU", [("CPU Total", SensorKind.LOAD, 42.0)])
    ticked = threading.Event()
    engine.subscribe(ticked.set)

    engine.start()
    wait_for(ticked)

    assert engine.latest().cpu_usage_pct == 42
    assert engine.latest().cpu_power_watts == -1


def test_sample_now_publishes_and_notifies(engine, backend):
    backend.add_node(HardwareKind.CPU, "CPU", [("CPU Total", SensorKind.LOAD, 42.0)])
    notifications = []
    engine.subscribe(lambda: notifications.append(engine.latest()))

    sample = engine.sample_now()

    assert sample.cpu_usage_pct == 42.0
    assert notifications == [sample]


def test_failed_tick_keeps_previous_snapshot(engine, backend):
    node = backend.add_node(HardwareKind.CPU, "CPU")
    handle = backend.add_sensor(node, "CPU Total", SensorKind.LOAD, 10.0)
    notifications = []
    engine.subscribe(lambda: notifications.append(engine.latest()))
    before = engine.sample_now()

    backend.failing.add(handle.sensor_id)
    assert engine.sample_now() is before
    assert len(notifications) == 1

    backend.failing.clear()
    backend.set_value(handle, 20.0)
    after = engine.sample_now()
    assert after.cpu_usage_pct == 20.0
    assert len(notifications) == 2


@pytest.mark.threaded
def test_no_notifications_after_stop(engine):
    count = 0
    lock = threading.Lock()
    first = threading.Event()

    def listener():
        nonlocal count
        with lock:
            count += 1
        first.set()

    engine.subscribe(listener)
    engine.start()
    wait_for(first)
    engine.stop()
    with lock:
        seen = count

    time.sleep(INTERVAL_S * 6)

    with lock:
        assert count == seen
    assert engine.state == SchedulerState.STOPPED


@pytest.mark.threaded
def test_stop_from_listener_does_not_deadlock(engine):
    ticked = threading.Event()

    def listener():
        engine.stop()
        ticked.set()

    engine.subscribe(listener)
    engine.start()
    wait_for(ticked)
    engine.close()
    assert engine.state == SchedulerState.STOPPED


def test_restart_after_stop_is_rejected(engine):
    engine.start()
    engine.stop()
    with pytest.raises(EngineStateError):
        engine.start()


def test_lifecycle_calls_are_idempotent(engine, backend):
    engine.open()
    engine.open()
    engine.start()
    engine.start()
    engine.stop()
    engine.stop()
    engine.close()
    engine.close()
    assert backend.open_calls == 1
    assert backend.close_calls == 1


def test_sample_now_rejected_while_running(engine):
    engine.start()
    try:
        with pytest.raises(EngineStateError):
            engine.sample_now()
    finally:
        engine.stop()


def test_sample_now_rejected_after_stop(engine):
    engine.sample_now()
    engine.stop()
    with pytest.raises(EngineStateError):
        engine.sample_now()


def test_unreadable_network_counters_do_not_escape(backend, clock, fake_memory):
    backend.add_node(HardwareKind.CPU, "CPU", [("CPU Total", SensorKind.LOAD, 42.0)])
    source = FakeCounterSource(clock, {"Teredo Tunneling Pseudo-Interface": (0.0, 10.0)})
    source.broken.add(AGGREGATE_ADAPTER)
    selector = AdapterSelector(
        probe_interval_s=1.0, source=source, clock=clock, sleep=clock.sleep
    )
    engine = MetricsEngine(backend, selector=selector)
    try:
        engine.open()
        samples = [engine.sample_now() for _ in range(3)]
    finally:
        engine.close()

    assert [sample.cpu_usage_pct for sample in samples] == [42.0, 42.0, 42.0]
    assert samples[-1].net_upload_rate == 0.0


def test_network_failure_after_open_keeps_other_metrics(engine, backend, counter_source):
    backend.add_node(HardwareKind.CPU, "CPU", [("CPU Total", SensorKind.LOAD, 42.0)])
    engine.open()
    counter_source.broken.update({"Ethernet", AGGREGATE_ADAPTER})

    engine.sample_now()
    samples = [engine.sample_now() for _ in range(2)]

    assert [sample.cpu_usage_pct for sample in samples] == [42.0, 42.0]
    assert samples[-1].net_download_rate == 0.0


def test_unsubscribe(engine, backend):
    calls = []
    subscription = engine.subscribe(lambda: calls.append("a"))
    other = engine.subscribe(lambda: calls.append("b"))

    assert isinstance(subscription, Subscription)
    assert subscription.cancel() is True
    assert subscription.cancel() is False
    engine.sample_now()
    assert calls == ["b"]

    assert engine.unsubscribe(other.token) is True
    engine.sample_now()
    assert calls == ["b"]


def test_failing_listener_does_not_block_others(engine):
    calls = []

    def broken():
        raise RuntimeError("listener bug")

    engine.subscribe(broken)
    engine.subscribe(lambda: calls.append(engine.latest()))
    engine.sample_now()
    assert len(calls) == 1


def test_samples_are_immutable(engine):
    sample = engine.sample_now()
    assert isinstance(sample, MetricSample)
    with pytest.raises(AttributeError):
        sample.cpu_usage_pct = 99.0


def test_context_manager_starts_and_stops(backend, selector, fake_memory):
    with MetricsEngine(backend, selector=selector, interval_s=INTERVAL_S) as engine:
        assert engine.state == SchedulerState.RUNNING
    assert engine.state == SchedulerState.STOPPED
    assert backend.close_calls == 1


class TestBuildBackend:
    def test_auto_without_url_is_native(self):
        assert isinstance(build_backend(EngineConfig()), NativeBackend)

    def test_auto_with_url_is_lhm(self):
        backend = build_backend(
            EngineConfig(librehardwaremonitor_url="http://localhost:8085/data.json")
        )
        assert isinstance(backend, LibreHardwareMonitorBackend)
        assert backend.url == "http://localhost:8085/data.json"

    def test_lhm_requires_url(self):
        with pytest.raises(ValueError):
            build_backend(EngineConfig(backend="lhm"))

    def test_native_ignores_url(self):
        backend = build_backend(
            EngineConfig(backend="native", librehardwaremonitor_url="http://x/data.json")
        )
        assert isinstance(backend, NativeBackend)

    def test_from_config_applies_network_settings(self):
        engine = MetricsEngine.from_config(
            EngineConfig(interval_s=2.5),
            NetworkConfig(blacklist=("vpn",), probe_interval_s=0.0),
        )
        assert engine.scheduler.interval_s == 2.5
        assert engine.selector.blacklist == ("vpn",)
        assert engine.selector.probe_interval_s == 0.0
