"""WinState hardware metrics sampling engine."""

from winstate.config import AppConfig, load_config
from winstate.engine import MetricsEngine, Subscription, build_backend
from winstate.errors import BackendUnavailable
from winstate.models import MetricSample
from winstate.units import scale

__all__ = [
    "AppConfig",
    "BackendUnavailable",
    "MetricSample",
    "MetricsEngine",
    "Subscription",
    "build_backend",
    "load_config",
    "scale",
]
