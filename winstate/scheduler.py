from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
import logging
import math
import threading
import time
from typing import Callable

import psutil

from winstate.errors import CounterReadError, EngineStateError, TransientSampleFailure
from winstate.inventory import HardwareInventory
from winstate.models import NO_POWER_SENSOR, MetricSample
from winstate.network import AdapterSelector
from winstate.units import scale

DEFAULT_INTERVAL_S = 1.0
_MB = 1024 * 1024


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


def clamp_pct(value: float | None) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return min(max(float(value), 0.0), 100.0)


class SampleScheduler:
    """Runs one sampling pass per interval on a dedicated daemon thread.

    Passes never overlap: a pass that overruns makes the scheduler skip the
    deadlines it missed instead of queueing them. A failed pass publishes
    nothing.
    """

    def __init__(
        self,
        inventory: HardwareInventory,
        selector: AdapterSelector,
        on_sample: Callable[[MetricSample], None],
        interval_s: float = DEFAULT_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.inventory = inventory
        self.selector = selector
        self.interval_s = interval_s
        self._on_sample = on_sample
        self._clock = clock
        self._state = SchedulerState.IDLE
        self._state_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._total_mb: float | None = None
        self.ticks = 0
        self.skipped = 0
        self.last_failure: TransientSampleFailure | None = None
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def state(self) -> SchedulerState:
        return self._state

    def prepare(self) -> None:
        """Discover sensors, pick the adapter and cache total memory."""
        self.inventory.discover()
        self.selector.select()
        if self._total_mb is None:
            self._total_mb = psutil.virtual_memory().total / _MB

    def start(self) -> None:
        with self._state_lock:
            if self._state == SchedulerState.RUNNING:
                return
            if self._state == SchedulerState.STOPPED:
                raise EngineStateError("A stopped scheduler cannot be restarted")
            self.prepare()
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, name="winstate-sampler", daemon=True
            )
            self._state = SchedulerState.RUNNING
            self._thread.start()
        self.logger.info("Sampling every %s seconds.", self.interval_s)

    def stop(self) -> None:
        with self._state_lock:
            if self._state != SchedulerState.RUNNING:
                return
            self._state = SchedulerState.STOPPED
            self._stop_event.set()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None
        self.selector.close()
        self.logger.info(
            "Sampling stopped after %s ticks (%s skipped).", self.ticks, self.skipped
        )

    def _run(self) -> None:
        next_due = self._clock() + self.interval_s
        while not self._stop_event.wait(max(next_due - self._clock(), 0.0)):
            self.tick()
            now = self._clock()
            next_due += self.interval_s
            if now >= next_due:
                missed = math.floor((now - next_due) / self.interval_s) + 1
                self.skipped += missed
                self.logger.debug("Tick overran; skipping %s interval(s).", missed)
                next_due += missed * self.interval_s

    def tick(self) -> bool:
        """Run one sampling pass; returns True when a sample was published."""
        if not self._tick_lock.acquire(blocking=False):
            self.skipped += 1
            self.logger.debug("Previous tick still running; skipping.")
            return False
        try:
            self.ticks += 1
            try:
                sample = self.sample()
            except Exception as exc:
                failure = TransientSampleFailure(f"Tick {self.ticks} abandoned: {exc}")
                failure.__cause__ = exc
                self.last_failure = failure
                if isinstance(exc, CounterReadError):
                    self.selector.invalidate()
                self.logger.warning("%s", failure, exc_info=exc)
                return False
            self._on_sample(sample)
            return True
        finally:
            self._tick_lock.release()

    def sample(self) -> MetricSample:
        """Read every cached sensor and counter into a new sample."""
        snapshot = self.inventory.snapshot
        self.inventory.refresh()

        cpu = clamp_pct(self.inventory.read(snapshot.cpu_load))
        gpu = clamp_pct(self.inventory.read(snapshot.gpu_load))
        disk_values = [
            value
            for value in (self.inventory.read(handle) for handle in snapshot.disk_load)
            if value is not None
        ]
        disk = clamp_pct(max(disk_values)) if disk_values else 0.0

        power = NO_POWER_SENSOR
        if snapshot.cpu_power is not None:
            reading = self.inventory.read(snapshot.cpu_power)
            if reading is not None and not math.isnan(reading):
                power = float(reading)

        ram = self._ram_usage()

        upload, download = self._network_rates()
        upload_rate, upload_unit = scale(upload)
        download_rate, download_unit = scale(download)

        return MetricSample(
            cpu_usage_pct=cpu,
            gpu_usage_pct=gpu,
            ram_usage_pct=ram,
            disk_usage_pct=disk,
            net_upload_rate=upload_rate,
            net_upload_unit=upload_unit,
            net_download_rate=download_rate,
            net_download_unit=download_unit,
            cpu_power_watts=power,
            timestamp=datetime.now(timezone.utc),
        )

    def _network_rates(self) -> tuple[float, float]:
        selection = self.selector.select()
        if selection is None:
            return 0.0, 0.0
        return selection.rates()

    def _ram_usage(self) -> float:
        if self._total_mb is None:
            self._total_mb = psutil.virtual_memory().total / _MB
        if not self._total_mb:
            return 0.0
        available_mb = psutil.virtual_memory().available / _MB
        return clamp_pct(100 - (available_mb / self._total_mb * 100))
