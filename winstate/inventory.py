from __future__ import annotations

import logging

from winstate.backends import HardwareBackend
from winstate.models import (
    HardwareKind,
    InventorySnapshot,
    SensorHandle,
    SensorKind,
)

CPU_LOAD_NAMES = frozenset({"cpu total"})
CPU_POWER_NAMES = frozenset({"cpu package", "package power", "cpu ppt", "package", "soc"})
GPU_LOAD_NAMES = frozenset({"gpu core", "d3d 3d"})
DISK_TOTAL_NAMES = frozenset({"total activity"})
DISK_PARTIAL_NAMES = frozenset({"read activity", "write activity"})

_SCANNED_KINDS = (HardwareKind.CPU, HardwareKind.GPU, HardwareKind.STORAGE)


def _matches(sensor: SensorHandle, kind: SensorKind, names: frozenset[str]) -> bool:
    return sensor.kind == kind and sensor.name.strip().lower() in names


def disk_load_sensors(sensors: list[SensorHandle]) -> list[SensorHandle]:
    """Pick the activity sensors of one storage node.

    ``Total Activity`` already covers reads and writes, so it is used alone
    when present.
    """
    totals = [s for s in sensors if _matches(s, SensorKind.LOAD, DISK_TOTAL_NAMES)]
    if totals:
        return totals[:1]
    return [s for s in sensors if _matches(s, SensorKind.LOAD, DISK_PARTIAL_NAMES)]


class HardwareInventory:
    """Discovers, once, the sensors the sampling loop reads on every tick."""

    def __init__(self, backend: HardwareBackend) -> None:
        self.backend = backend
        self._opened = False
        self._snapshot: InventorySnapshot | None = None
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def opened(self) -> bool:
        return self._opened

    @property
    def snapshot(self) -> InventorySnapshot:
        return self._snapshot or InventorySnapshot()

    def open(self) -> None:
        """Open the backend; raises ``BackendUnavailable`` on failure."""
        if self._opened:
            return
        self.backend.open()
        self._opened = True
        self.logger.debug("Opened %s hardware backend.", self.backend.name)

    def discover(self) -> InventorySnapshot:
        if self._snapshot is not None:
            return self._snapshot
        self.open()

        cpu_load: SensorHandle | None = None
        cpu_power: SensorHandle | None = None
        gpu_load: SensorHandle | None = None
        disk_load: list[SensorHandle] = []

        scanned = [node for node in self.backend.nodes() if node.kind in _SCANNED_KINDS]
        if scanned:
            self.backend.update([node.node_id for node in scanned])

        for node in scanned:
            sensors = self.backend.sensors(node.node_id)
            self.logger.debug(
                "Scanning %s node %r with %s sensors.", node.kind.value, node.name, len(sensors)
            )
            if node.kind == HardwareKind.CPU:
                if cpu_load is None:
                    cpu_load = next(
                        (s for s in sensors if _matches(s, SensorKind.LOAD, CPU_LOAD_NAMES)),
                        None,
                    )
                if cpu_power is None:
                    cpu_power = next(
                        (s for s in sensors if _matches(s, SensorKind.POWER, CPU_POWER_NAMES)),
                        None,
                    )
            elif node.kind == HardwareKind.GPU:
                if gpu_load is None:
                    gpu_load = next(
                        (s for s in sensors if _matches(s, SensorKind.LOAD, GPU_LOAD_NAMES)),
                        None,
                    )
            else:
                disk_load.extend(disk_load_sensors(sensors))

        self._snapshot = InventorySnapshot(
            cpu_load=cpu_load,
            cpu_power=cpu_power,
            gpu_load=gpu_load,
            disk_load=tuple(disk_load),
        )
        self._log_roles(self._snapshot)
        return self._snapshot

    def _log_roles(self, snapshot: InventorySnapshot) -> None:
        for role, handle in (
            ("cpu_load", snapshot.cpu_load),
            ("cpu_power", snapshot.cpu_power),
            ("gpu_load", snapshot.gpu_load),
        ):
            if handle is None:
                self.logger.info("No sensor found for %s; reporting it as absent.", role)
            else:
                self.logger.info("Using sensor %r for %s.", handle.name, role)
        self.logger.info("Found %s disk load sensors.", len(snapshot.disk_load))

    def refresh(self) -> None:
        """Update each node backing a resolved role exactly once."""
        node_ids = self.snapshot.node_ids()
        if node_ids:
            self.backend.update(node_ids)

    def read(self, handle: SensorHandle | None) -> float | None:
        if handle is None:
            return None
        return self.backend.read(handle)

    def close(self) -> None:
        if not self._opened:
            return
        self._opened = False
        self.backend.close()
        self.logger.debug("Closed %s hardware backend.", self.backend.name)
