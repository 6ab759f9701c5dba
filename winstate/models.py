from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from winstate.units import BASE_UNIT

NO_POWER_SENSOR = -1.0


class HardwareKind(str, Enum):
    CPU = "cpu"
    GPU = "gpu"
    STORAGE = "storage"
    NETWORK = "network"
    OTHER = "other"


class SensorKind(str, Enum):
    LOAD = "load"
    POWER = "power"
    THROUGHPUT = "throughput"
    TEMPERATURE = "temperature"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | None) -> SensorKind:
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class HardwareNode:
    node_id: str
    name: str
    kind: HardwareKind


@dataclass(frozen=True)
class SensorHandle:
    """Opaque reference to one readable value of one hardware node."""

    node_id: str
    sensor_id: str
    name: str
    kind: SensorKind


@dataclass(frozen=True)
class InventorySnapshot:
    cpu_load: SensorHandle | None = None
    cpu_power: SensorHandle | None = None
    gpu_load: SensorHandle | None = None
    disk_load: tuple[SensorHandle, ...] = ()

    def handles(self) -> list[SensorHandle]:
        resolved = [self.cpu_load, self.cpu_power, self.gpu_load, *self.disk_load]
        return [handle for handle in resolved if handle is not None]

    def node_ids(self) -> list[str]:
        """Distinct node ids backing resolved roles, in role order."""
        seen: dict[str, None] = {}
        for handle in self.handles():
            seen.setdefault(handle.node_id, None)
        return list(seen)


@dataclass(frozen=True)
class MetricSample:
    cpu_usage_pct: float
    gpu_usage_pct: float
    ram_usage_pct: float
    disk_usage_pct: float
    net_upload_rate: float
    net_upload_unit: str
    net_download_rate: float
    net_download_unit: str
    cpu_power_watts: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def empty(cls, timestamp: datetime | None = None) -> MetricSample:
        """Snapshot reported before the first tick completes."""
        return cls(
            cpu_usage_pct=0.0,
            gpu_usage_pct=0.0,
            ram_usage_pct=0.0,
            disk_usage_pct=0.0,
            net_upload_rate=0.0,
            net_upload_unit=BASE_UNIT,
            net_download_rate=0.0,
            net_download_unit=BASE_UNIT,
            cpu_power_watts=NO_POWER_SENSOR,
            timestamp=timestamp or datetime.now(timezone.utc),
        )

    @property
    def has_cpu_power(self) -> bool:
        return self.cpu_power_watts != NO_POWER_SENSOR

    def to_dict(self) -> dict[str, Any]:
        return {
            "cpu_usage_pct": self.cpu_usage_pct,
            "gpu_usage_pct": self.gpu_usage_pct,
            "ram_usage_pct": self.ram_usage_pct,
            "disk_usage_pct": self.disk_usage_pct,
            "net_upload_rate": self.net_upload_rate,
            "net_upload_unit": self.net_upload_unit,
            "net_download_rate": self.net_download_rate,
            "net_download_unit": self.net_download_unit,
            "cpu_power_watts": self.cpu_power_watts,
            "timestamp": self.timestamp.isoformat(),
        }
