from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import configparser

from winstate.network import DEFAULT_BLACKLIST, DEFAULT_PROBE_INTERVAL_S

BACKENDS = ("auto", "lhm", "native")


@dataclass(frozen=True)
class EngineConfig:
    interval_s: float = 1.0
    backend: str = "auto"
    librehardwaremonitor_url: str | None = None
    http_timeout_s: float = 2.0


@dataclass(frozen=True)
class NetworkConfig:
    blacklist: tuple[str, ...] = DEFAULT_BLACKLIST
    probe_interval_s: float = DEFAULT_PROBE_INTERVAL_S


@dataclass(frozen=True)
class MqttConfig:
    enabled: bool
    host: str
    port: int
    base_topic: str
    discovery_topic: str
    client_id: str
    username: str | None
    password: str | None
    qos: int
    retain: bool
    tls_enabled: bool
    ca_cert: str | None
    keepalive: int


@dataclass(frozen=True)
class PublishConfig:
    dump_json: str | None


@dataclass(frozen=True)
class AppConfig:
    engine: EngineConfig
    network: NetworkConfig
    mqtt: MqttConfig
    publish: PublishConfig


def _get_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value if value else None


def _get_list(value: str | None) -> list[str]:
    if value is None:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config(path: str | Path) -> AppConfig:
    parser = configparser.ConfigParser()
    read_files = parser.read(path)
    if not read_files:
        raise FileNotFoundError(f"Config file not found: {path}")

    backend = parser.get("engine", "backend", fallback="auto").strip().lower()
    if backend not in BACKENDS:
        raise ValueError(
            f"Unknown backend {backend!r}; expected one of {', '.join(BACKENDS)}"
        )

    engine = EngineConfig(
        interval_s=max(0.1, parser.getfloat("engine", "interval_s", fallback=1.0)),
        backend=backend,
        librehardwaremonitor_url=_get_optional(
            parser.get("engine", "librehardwaremonitor_url", fallback=None)
        ),
        http_timeout_s=parser.getfloat("engine", "http_timeout_s", fallback=2.0),
    )

    # An explicitly empty blacklist disables filtering entirely.
    if parser.has_option("network", "blacklist"):
        blacklist = tuple(_get_list(parser.get("network", "blacklist")))
    else:
        blacklist = DEFAULT_BLACKLIST
    network = NetworkConfig(
        blacklist=blacklist,
        probe_interval_s=max(
            0.0,
            parser.getfloat(
                "network", "probe_interval_s", fallback=DEFAULT_PROBE_INTERVAL_S
            ),
        ),
    )

    mqtt = MqttConfig(
        enabled=parser.getboolean("mqtt", "enabled", fallback=False),
        host=parser.get("mqtt", "host", fallback="localhost"),
        port=parser.getint("mqtt", "port", fallback=1883),
        base_topic=parser.get("mqtt", "base_topic", fallback="telemetry/winstate"),
        discovery_topic=parser.get("mqtt", "discovery_topic", fallback="homeassistant"),
        client_id=parser.get("mqtt", "client_id", fallback="winstate"),
        username=_get_optional(parser.get("mqtt", "username", fallback=None)),
        password=_get_optional(parser.get("mqtt", "password", fallback=None)),
        qos=parser.getint("mqtt", "qos", fallback=0),
        retain=parser.getboolean("mqtt", "retain", fallback=False),
        tls_enabled=parser.getboolean("mqtt", "tls", fallback=False),
        ca_cert=_get_optional(parser.get("mqtt", "ca_cert", fallback=None)),
        keepalive=parser.getint("mqtt", "keepalive", fallback=60),
    )

    publish = PublishConfig(
        dump_json=_get_optional(parser.get("publish", "dump_json", fallback=None)),
    )

    return AppConfig(engine=engine, network=network, mqtt=mqtt, publish=publish)
