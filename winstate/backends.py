from __future__ import annotations

from collections.abc import Iterable
import logging
from pathlib import Path
import re
import time
from typing import Callable

import psutil
import pynvml

from winstate.errors import BackendUnavailable
from winstate.logging_utils import TRACE_LEVEL
from winstate.models import HardwareKind, HardwareNode, SensorHandle, SensorKind

CPU_TOTAL = "CPU Total"
CPU_PACKAGE = "CPU Package"
GPU_CORE = "GPU Core"
TOTAL_ACTIVITY = "Total Activity"

RAPL_ROOT = "/sys/class/powercap"

_SKIPPED_DISK = re.compile(r"^(loop|ram|zram|sr|fd)\d+$")
_PARTITION_SUFFIX = re.compile(r"^p?\d+$")


class HardwareBackend:
    """Source of hardware nodes and the sensors hanging off them.

    Sensors only carry current values after their node has been updated, so
    callers are expected to ``update()`` a node before listing or reading its
    sensors.
    """

    name = "base"

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def nodes(self) -> list[HardwareNode]:
        raise NotImplementedError

    def update(self, node_ids: Iterable[str]) -> None:
        raise NotImplementedError

    def sensors(self, node_id: str) -> list[SensorHandle]:
        raise NotImplementedError

    def read(self, handle: SensorHandle) -> float | None:
        raise NotImplementedError


class _NativeNode:
    def __init__(self, node: HardwareNode) -> None:
        self.node = node
        self.sensors: list[SensorHandle] = []
        self.values: dict[str, float | None] = {}

    def add_sensor(self, name: str, kind: SensorKind) -> SensorHandle:
        sensor_id = f"{self.node.node_id}/{kind.value}/{len(self.sensors)}"
        handle = SensorHandle(
            node_id=self.node.node_id, sensor_id=sensor_id, name=name, kind=kind
        )
        self.sensors.append(handle)
        self.values[sensor_id] = None
        return handle

    def update(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class _CpuNode(_NativeNode):
    def __init__(
        self,
        rapl_root: str,
        clock: Callable[[], float],
    ) -> None:
        super().__init__(
            HardwareNode(node_id="/cpu/0", name=_cpu_name(), kind=HardwareKind.CPU)
        )
        self._clock = clock
        self._load = self.add_sensor(CPU_TOTAL, SensorKind.LOAD)
        self._energy_path = _find_rapl_package(Path(rapl_root))
        self._power: SensorHandle | None = None
        self._max_energy_uj: int | None = None
        self._last_energy: tuple[float, int] | None = None
        if self._energy_path is not None:
            self._power = self.add_sensor(CPU_PACKAGE, SensorKind.POWER)
            self._max_energy_uj = _read_int(
                self._energy_path.with_name("max_energy_range_uj")
            )
        # Prime psutil so the first update reports load since discovery.
        psutil.cpu_percent(interval=None)

    def update(self) -> None:
        self.values[self._load.sensor_id] = float(psutil.cpu_percent(interval=None))
        if self._power is not None and self._energy_path is not None:
            self.values[self._power.sensor_id] = self._read_power()

    def _read_power(self) -> float | None:
        energy = _read_int(self._energy_path) if self._energy_path else None
        if energy is None:
            return None
        now = self._clock()
        previous = self._last_energy
        self._last_energy = (now, energy)
        if previous is None:
            return None
        elapsed = now - previous[0]
        if elapsed <= 0:
            return None
        delta = energy - previous[1]
        if delta < 0:
            if not self._max_energy_uj:
                return None
            delta += self._max_energy_uj
        return delta / 1_000_000 / elapsed


class _NvmlGpuNode(_NativeNode):
    def __init__(self, index: int) -> None:
        self._handle = pynvml.nvmlDeviceGetHandleByIndex(index)
        name = pynvml.nvmlDeviceGetName(self._handle)
        if isinstance(name, bytes):
            name = name.decode("utf-8", errors="replace")
        super().__init__(
            HardwareNode(node_id=f"/nvidiagpu/{index}", name=name, kind=HardwareKind.GPU)
        )
        self._load = self.add_sensor(GPU_CORE, SensorKind.LOAD)

    def update(self) -> None:
        util = pynvml.nvmlDeviceGetUtilizationRates(self._handle)
        self.values[self._load.sensor_id] = float(util.gpu)


class _DiskNode(_NativeNode):
    def __init__(self, device: str, clock: Callable[[], float]) -> None:
        super().__init__(
            HardwareNode(node_id=f"/storage/{device}", name=device, kind=HardwareKind.STORAGE)
        )
        self.device = device
        self._clock = clock
        self._activity = self.add_sensor(TOTAL_ACTIVITY, SensorKind.LOAD)
        self._last: tuple[float, float] | None = None

    def update_from(self, counters: dict[str, object] | None) -> None:
        entry = counters.get(self.device) if counters else None
        if entry is None:
            self.values[self._activity.sensor_id] = None
            self._last = None
            return
        busy_ms = _busy_ms(entry)
        now = self._clock()
        previous = self._last
        self._last = (now, busy_ms)
        if previous is None or now <= previous[0]:
            self.values[self._activity.sensor_id] = None
            return
        elapsed_ms = (now - previous[0]) * 1000
        busy = max(busy_ms - previous[1], 0.0)
        self.values[self._activity.sensor_id] = min(busy / elapsed_ms * 100, 100.0)

    def update(self) -> None:
        self.update_from(psutil.disk_io_counters(perdisk=True))


class NativeBackend(HardwareBackend):
    """psutil-backed sensors, with RAPL package power and NVML GPU load."""

    name = "native"

    def __init__(
        self,
        rapl_root: str = RAPL_ROOT,
        enable_nvml: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rapl_root = rapl_root
        self.enable_nvml = enable_nvml
        self._clock = clock
        self._nodes: dict[str, _NativeNode] = {}
        self._nvml_active = False
        self._opened = False
        self.logger = logging.getLogger(self.__class__.__name__)

    def open(self) -> None:
        if self._opened:
            return
        try:
            cpu = _CpuNode(self.rapl_root, self._clock)
        except Exception as exc:
            raise BackendUnavailable(f"psutil cannot read CPU counters: {exc}") from exc
        nodes: list[_NativeNode] = [cpu]
        nodes.extend(self._open_gpus())
        nodes.extend(self._open_disks())
        self._nodes = {entry.node.node_id: entry for entry in nodes}
        self._opened = True
        self.logger.info(
            "Native backend opened with %s hardware nodes.", len(self._nodes)
        )

    def _open_gpus(self) -> list[_NativeNode]:
        if not self.enable_nvml:
            return []
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as exc:
            self.logger.debug("NVML unavailable: %s", exc)
            return []
        self._nvml_active = True
        gpus: list[_NativeNode] = []
        try:
            count = pynvml.nvmlDeviceGetCount()
            for index in range(count):
                gpus.append(_NvmlGpuNode(index))
        except pynvml.NVMLError as exc:
            self.logger.warning("Failed to enumerate NVIDIA GPUs: %s", exc)
        return gpus

    def _open_disks(self) -> list[_NativeNode]:
        try:
            counters = psutil.disk_io_counters(perdisk=True) or {}
        except (OSError, RuntimeError) as exc:
            self.logger.debug("Disk counters unavailable: %s", exc)
            return []
        devices = physical_disks(counters)
        self.logger.log(TRACE_LEVEL, "Physical disks: %s", devices)
        return [_DiskNode(device, self._clock) for device in devices]

    def close(self) -> None:
        if not self._opened:
            return
        self._nodes = {}
        if self._nvml_active:
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError as exc:
                self.logger.debug("NVML shutdown failed: %s", exc)
            self._nvml_active = False
        self._opened = False

    def nodes(self) -> list[HardwareNode]:
        return [entry.node for entry in self._nodes.values()]

    def update(self, node_ids: Iterable[str]) -> None:
        targets = [self._nodes[node_id] for node_id in dict.fromkeys(node_ids)]
        disks = [entry for entry in targets if isinstance(entry, _DiskNode)]
        # All disks share one psutil call.
        if disks:
            counters = psutil.disk_io_counters(perdisk=True)
            for disk in disks:
                disk.update_from(counters)
        for entry in targets:
            if not isinstance(entry, _DiskNode):
                entry.update()

    def sensors(self, node_id: str) -> list[SensorHandle]:
        return list(self._nodes[node_id].sensors)

    def read(self, handle: SensorHandle) -> float | None:
        entry = self._nodes.get(handle.node_id)
        if entry is None:
            return None
        return entry.values.get(handle.sensor_id)


def physical_disks(counters: dict[str, object]) -> list[str]:
    """Drop loop/ram devices and partitions whose parent disk is also listed."""
    names = [name for name in counters if not _SKIPPED_DISK.match(name)]
    disks: list[str] = []
    for name in names:
        is_partition = any(
            name != parent
            and name.startswith(parent)
            and _PARTITION_SUFFIX.match(name[len(parent):])
            for parent in names
        )
        if not is_partition:
            disks.append(name)
    return disks


def _busy_ms(entry: object) -> float:
    busy = getattr(entry, "busy_time", None)
    if busy is not None:
        return float(busy)
    return float(getattr(entry, "read_time", 0) + getattr(entry, "write_time", 0))


def _cpu_name() -> str:
    try:
        for line in Path("/proc/cpuinfo").read_text().splitlines():
            if line.lower().startswith("model name"):
                return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return "CPU"


def _find_rapl_package(root: Path) -> Path | None:
    try:
        zones = sorted(root.glob("intel-rapl:*"))
    except OSError:
        return None
    for zone in zones:
        name_file = zone / "name"
        energy_file = zone / "energy_uj"
        try:
            name = name_file.read_text().strip()
        except OSError:
            continue
        if name.startswith("package") and _read_int(energy_file) is not None:
            return energy_file
    return None


def _read_int(path: Path | None) -> int | None:
    if path is None:
        return None
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return None
