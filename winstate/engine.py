from __future__ import annotations

from dataclasses import dataclass, field
import itertools
import logging
import threading
from typing import Callable

from winstate.backends import HardwareBackend, NativeBackend
from winstate.config import EngineConfig, NetworkConfig
from winstate.errors import EngineStateError
from winstate.inventory import HardwareInventory
from winstate.lhm import LibreHardwareMonitorBackend
from winstate.models import MetricSample
from winstate.network import AdapterSelector
from winstate.scheduler import SampleScheduler, SchedulerState

Listener = Callable[[], None]


def build_backend(config: EngineConfig) -> HardwareBackend:
    if config.backend == "lhm" or (
        config.backend == "auto" and config.librehardwaremonitor_url
    ):
        if not config.librehardwaremonitor_url:
            raise ValueError("backend = lhm requires librehardwaremonitor_url")
        return LibreHardwareMonitorBackend(
            config.librehardwaremonitor_url, timeout_s=config.http_timeout_s
        )
    return NativeBackend()


@dataclass(frozen=True)
class Subscription:
    """Handle returned by :meth:`MetricsEngine.subscribe`."""

    token: int
    _engine: MetricsEngine = field(repr=False, compare=False)

    def cancel(self) -> bool:
        return self._engine.unsubscribe(self)


class MetricsEngine:
    """Public face of the sampler.

    Listeners are called with no arguments once per successful tick, after
    the new sample is installed; they read it through :meth:`latest`. No
    listener runs after :meth:`stop` returns.
    """

    def __init__(
        self,
        backend: HardwareBackend,
        selector: AdapterSelector | None = None,
        interval_s: float = 1.0,
    ) -> None:
        self.inventory = HardwareInventory(backend)
        self.selector = selector or AdapterSelector()
        self.scheduler = SampleScheduler(
            self.inventory,
            self.selector,
            on_sample=self._publish,
            interval_s=interval_s,
        )
        self._latest = MetricSample.empty()
        self._listeners: dict[int, Listener] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.RLock()
        self._stopped = False
        self._closed = False
        self.logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_config(
        cls, engine: EngineConfig, network: NetworkConfig | None = None
    ) -> MetricsEngine:
        network = network or NetworkConfig()
        selector = AdapterSelector(
            blacklist=network.blacklist, probe_interval_s=network.probe_interval_s
        )
        return cls(build_backend(engine), selector=selector, interval_s=engine.interval_s)

    def __enter__(self) -> MetricsEngine:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
        self.close()

    @property
    def state(self) -> SchedulerState:
        return self.scheduler.state

    def open(self) -> None:
        """Open the backend and discover sensors.

        Raises ``BackendUnavailable`` when the backend cannot be opened.
        """
        if self._closed:
            raise EngineStateError("Engine has been closed")
        self.inventory.open()
        self.scheduler.prepare()

    def start(self) -> None:
        if self.scheduler.state == SchedulerState.RUNNING:
            return
        if self._stopped:
            raise EngineStateError("A stopped engine cannot be restarted")
        self.open()
        self.scheduler.start()

    def stop(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        self.scheduler.stop()

    def close(self) -> None:
        self.stop()
        if self._closed:
            return
        self._closed = True
        self.selector.close()
        self.inventory.close()

    def latest(self) -> MetricSample:
        return self._latest

    def sample_now(self) -> MetricSample:
        """Run a single pass on the calling thread and return the latest sample.

        Only valid before start() and never after stop().
        """
        if self.scheduler.state == SchedulerState.RUNNING:
            raise EngineStateError("sample_now() cannot be used while the engine is running")
        if self._stopped:
            raise EngineStateError("sample_now() cannot be used after stop()")
        self.open()
        self.scheduler.tick()
        return self._latest

    def subscribe(self, listener: Listener) -> Subscription:
        with self._lock:
            token = next(self._tokens)
            self._listeners[token] = listener
        return Subscription(token=token, _engine=self)

    def unsubscribe(self, subscription: Subscription | int) -> bool:
        token = subscription.token if isinstance(subscription, Subscription) else subscription
        with self._lock:
            return self._listeners.pop(token, None) is not None

    def _publish(self, sample: MetricSample) -> None:
        with self._lock:
            if self._stopped:
                self.logger.debug("Engine stopped; dropping sample.")
                return
            self._latest = sample
            listeners = list(self._listeners.values())
            for listener in listeners:
                try:
                    listener()
                except Exception:
                    self.logger.exception("Metrics listener %r failed.", listener)
