"""LibreHardwareMonitor backend.

Reads the sensor tree served by LibreHardwareMonitor's remote web server
(``http://host:8085/data.json``). Both the legacy layout (``Type: Hardware``
/ ``HardwareType`` / numeric values) and the current one (``SensorId`` /
``ImageURL`` / values formatted with units) are understood.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import json
import logging
from typing import Any
from urllib.request import urlopen

from winstate.backends import HardwareBackend
from winstate.errors import BackendUnavailable, SensorReadError
from winstate.logging_utils import TRACE_LEVEL
from winstate.models import HardwareKind, HardwareNode, SensorHandle, SensorKind

_VALUE_UNITS = ["mWh", "°C", "GB", "MB", "KB", "RPM", "MHz", "V", "A", "W", "%"]


@dataclass(frozen=True)
class LhmTree:
    nodes: list[HardwareNode]
    sensors: dict[str, list[SensorHandle]]
    values: dict[str, float | None]


def parse_numeric(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).replace(",", "").strip()
    text = text.replace("/s", "").strip()
    for token in _VALUE_UNITS:
        if text.endswith(token):
            text = text[: -len(token)].strip()
            break
    try:
        return float(text)
    except ValueError:
        return None


def classify_hardware_type(hardware_type: str) -> HardwareKind:
    lowered = hardware_type.lower()
    if lowered == "cpu":
        return HardwareKind.CPU
    if lowered.startswith("gpu"):
        return HardwareKind.GPU
    if lowered == "storage":
        return HardwareKind.STORAGE
    if lowered == "network":
        return HardwareKind.NETWORK
    return HardwareKind.OTHER


def classify_image(image_url: str) -> HardwareKind | None:
    lowered = image_url.lower()
    if "hdd" in lowered or "ssd" in lowered or "nvme" in lowered:
        return HardwareKind.STORAGE
    if "gpu" in lowered or "ati" in lowered or "nvidia" in lowered:
        return HardwareKind.GPU
    if "nic" in lowered or "network" in lowered or "ethernet" in lowered:
        return HardwareKind.NETWORK
    if "mainboard" in lowered or "motherboard" in lowered or "battery" in lowered:
        return HardwareKind.OTHER
    if "cpu" in lowered:
        return HardwareKind.CPU
    return None


def _sensor_type(node: dict[str, Any]) -> str | None:
    if node.get("Type") == "Sensor":
        return node.get("SensorType")
    if node.get("Type") == "Hardware":
        return None
    if node.get("SensorId") and node.get("Type") and not node.get("Children"):
        return node.get("Type")
    return None


def _hardware_kind(node: dict[str, Any]) -> HardwareKind | None:
    if node.get("Type") == "Hardware":
        return classify_hardware_type(node.get("HardwareType") or "")
    if node.get("Type"):
        return None
    return classify_image(node.get("ImageURL") or "")


def parse_tree(raw: dict[str, Any]) -> LhmTree:
    """Flatten the LHM JSON tree into nodes and sensor handles in tree order.

    Sensors attach to their nearest hardware ancestor; sensors with no
    hardware ancestor are ignored.
    """
    nodes: list[HardwareNode] = []
    sensors: dict[str, list[SensorHandle]] = {}
    values: dict[str, float | None] = {}

    def walk(node: dict[str, Any], path: str, owner: HardwareNode | None) -> None:
        text = (node.get("Text") or "").replace("\x00", "").strip()
        node_key = node.get("SensorId") or path
        sensor_type = _sensor_type(node)
        if sensor_type is not None:
            if owner is not None:
                handle = SensorHandle(
                    node_id=owner.node_id,
                    sensor_id=node_key,
                    name=text,
                    kind=SensorKind.parse(sensor_type),
                )
                sensors[owner.node_id].append(handle)
                values[handle.sensor_id] = parse_numeric(node.get("Value"))
            return

        kind = _hardware_kind(node)
        next_owner = owner
        if kind is not None and path != "":
            next_owner = HardwareNode(node_id=node_key, name=text, kind=kind)
            nodes.append(next_owner)
            sensors[next_owner.node_id] = []

        for index, child in enumerate(node.get("Children", [])):
            if isinstance(child, dict):
                walk(child, f"{path}/{index}", next_owner)

    walk(raw, "", None)
    return LhmTree(nodes=nodes, sensors=sensors, values=values)


class LibreHardwareMonitorBackend(HardwareBackend):
    name = "lhm"

    def __init__(self, url: str, timeout_s: float = 2.0) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self._tree: LhmTree | None = None
        self.logger = logging.getLogger(self.__class__.__name__)

    def _fetch(self) -> dict[str, Any]:
        with urlopen(self.url, timeout=self.timeout_s) as response:
            payload = response.read().decode("utf-8")
        if self.logger.isEnabledFor(TRACE_LEVEL):
            self.logger.log(TRACE_LEVEL, "LibreHardwareMonitor raw payload: %s", payload)
        raw = json.loads(payload)
        if not isinstance(raw, dict) or not isinstance(raw.get("Children"), list):
            raise ValueError("response is not a LibreHardwareMonitor sensor tree")
        return raw

    def open(self) -> None:
        if self._tree is not None:
            return
        try:
            raw = self._fetch()
        except (OSError, ValueError) as exc:
            raise BackendUnavailable(
                f"LibreHardwareMonitor at {self.url} is unavailable: {exc}"
            ) from exc
        self._tree = parse_tree(raw)
        self.logger.info(
            "LibreHardwareMonitor backend opened with %s hardware nodes.",
            len(self._tree.nodes),
        )

    def close(self) -> None:
        self._tree = None

    def _require_tree(self) -> LhmTree:
        if self._tree is None:
            raise SensorReadError("LibreHardwareMonitor backend is not open")
        return self._tree

    def nodes(self) -> list[HardwareNode]:
        return list(self._require_tree().nodes)

    def update(self, node_ids: Iterable[str]) -> None:
        # The web server only serves the whole tree, so one fetch refreshes
        # every requested node.
        requested = list(node_ids)
        if not requested:
            return
        current = self._require_tree()
        try:
            raw = self._fetch()
        except (OSError, ValueError) as exc:
            raise SensorReadError(f"Failed to refresh LibreHardwareMonitor data: {exc}") from exc
        fresh = parse_tree(raw)
        # Handles stay those found at open(); sensors gone from the tree read as None.
        values = {sensor_id: fresh.values.get(sensor_id) for sensor_id in current.values}
        self._tree = LhmTree(nodes=current.nodes, sensors=current.sensors, values=values)

    def sensors(self, node_id: str) -> list[SensorHandle]:
        return list(self._require_tree().sensors.get(node_id, []))

    def read(self, handle: SensorHandle) -> float | None:
        return self._require_tree().values.get(handle.sensor_id)
