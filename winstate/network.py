from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable

import psutil

from winstate.errors import AdapterUnresolved, CounterReadError

AGGREGATE_ADAPTER = "_Total"
DEFAULT_PROBE_INTERVAL_S = 0.2

# Substrings (case-insensitive) naming tunnel, debug and loopback pseudo-adapters.
DEFAULT_BLACKLIST = (
    "WAN Miniport",
    "6to4 Adapter",
    "Microsoft IP-HTTPS",
    "Microsoft Kernel Debug",
    "Teredo Tunneling",
    "Network Monitor",
    "Loopback",
    "isatap",
    "docker",
    "veth",
    "virbr",
)
# Whole names only, since "lo" is a substring of real interfaces such as "wlo1".
LOOPBACK_NAMES = frozenset({"lo", "lo0"})

SENT = "sent"
RECEIVED = "received"


class PsutilCounterSource:
    """Cumulative byte counters per network interface."""

    def per_adapter(self) -> dict[str, tuple[int, int]]:
        try:
            counters = psutil.net_io_counters(pernic=True)
        except OSError as exc:
            raise AdapterUnresolved(f"Failed to enumerate network adapters: {exc}") from exc
        return {
            name: (int(stats.bytes_sent), int(stats.bytes_recv))
            for name, stats in (counters or {}).items()
        }

    def read(self, adapter: str) -> tuple[int, int]:
        if adapter == AGGREGATE_ADAPTER:
            try:
                stats = psutil.net_io_counters(pernic=False)
            except OSError as exc:
                raise CounterReadError(f"Failed to read aggregate counters: {exc}") from exc
            if stats is None:
                raise CounterReadError("No aggregate network counters available")
            return int(stats.bytes_sent), int(stats.bytes_recv)
        try:
            counters = self.per_adapter()
        except AdapterUnresolved as exc:
            raise CounterReadError(str(exc)) from exc
        if adapter not in counters:
            raise CounterReadError(f"Network adapter {adapter!r} disappeared")
        return counters[adapter]


class RateCounter:
    """Bytes-per-second counter bound to one adapter and one direction.

    Like a performance counter, the first read only establishes a baseline
    and reports 0.
    """

    def __init__(
        self,
        adapter: str,
        direction: str,
        source: PsutilCounterSource,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.adapter = adapter
        self.direction = direction
        self._source = source
        self._clock = clock
        self._last: tuple[float, int] | None = None

    def next_value(self) -> float:
        sent, received = self._source.read(self.adapter)
        value = sent if self.direction == SENT else received
        now = self._clock()
        previous = self._last
        self._last = (now, value)
        if previous is None:
            return 0.0
        elapsed = now - previous[0]
        delta = value - previous[1]
        # Counter reset or wrap: report idle for this interval.
        if elapsed <= 0 or delta < 0:
            return 0.0
        return delta / elapsed

    def close(self) -> None:
        self._last = None


@dataclass(frozen=True)
class AdapterCandidate:
    name: str
    recv_rate: float


@dataclass(frozen=True)
class AdapterSelection:
    adapter: str
    sent: RateCounter
    received: RateCounter

    @property
    def is_aggregate(self) -> bool:
        return self.adapter == AGGREGATE_ADAPTER

    def rates(self) -> tuple[float, float]:
        """Current (upload, download) bytes per second."""
        return self.sent.next_value(), self.received.next_value()

    def close(self) -> None:
        self.sent.close()
        self.received.close()


class AdapterSelector:
    """Picks the adapter carrying real external traffic and caches the choice.

    The busiest adapter by received bytes over one short probe window wins.
    This is a best-effort heuristic: a burst on an adapter missing from the
    blacklist can still win the probe.
    """

    def __init__(
        self,
        blacklist: tuple[str, ...] | list[str] = DEFAULT_BLACKLIST,
        probe_interval_s: float = DEFAULT_PROBE_INTERVAL_S,
        source: PsutilCounterSource | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.blacklist = tuple(item.lower() for item in blacklist if item)
        self.probe_interval_s = probe_interval_s
        self.source = source or PsutilCounterSource()
        self._clock = clock
        self._sleep = sleep
        self._selection: AdapterSelection | None = None
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def selection(self) -> AdapterSelection | None:
        return self._selection

    def is_usable(self, name: str) -> bool:
        lowered = name.lower()
        if lowered in LOOPBACK_NAMES:
            return False
        return not any(keyword in lowered for keyword in self.blacklist)

    def candidates(self) -> list[AdapterCandidate]:
        """Usable adapters with their received bytes/sec over one probe window."""
        before = self.source.per_adapter()
        started = self._clock()
        self._sleep(self.probe_interval_s)
        after = self.source.per_adapter()
        elapsed = max(self._clock() - started, 1e-6)

        candidates: list[AdapterCandidate] = []
        for name, (_sent, received) in after.items():
            if not self.is_usable(name):
                self.logger.debug("Skipping blacklisted adapter %r.", name)
                continue
            baseline = before.get(name, (0, received))[1]
            rate = max(received - baseline, 0) / elapsed
            self.logger.debug("Adapter %r receiving %.0f B/s.", name, rate)
            candidates.append(AdapterCandidate(name=name, recv_rate=rate))
        return candidates

    def resolve(self) -> str:
        try:
            candidates = self.candidates()
        except AdapterUnresolved as exc:
            self.logger.warning("%s; falling back to %s.", exc, AGGREGATE_ADAPTER)
            return AGGREGATE_ADAPTER
        best: AdapterCandidate | None = None
        for candidate in candidates:
            if best is None or candidate.recv_rate > best.recv_rate:
                best = candidate
        if best is None:
            self.logger.info(
                "No usable network adapter found; using %s.", AGGREGATE_ADAPTER
            )
            return AGGREGATE_ADAPTER
        return best.name

    def _bind(self, adapter: str) -> AdapterSelection:
        selection = AdapterSelection(
            adapter=adapter,
            sent=RateCounter(adapter, SENT, self.source, self._clock),
            received=RateCounter(adapter, RECEIVED, self.source, self._clock),
        )
        # Prime both counters; raises CounterReadError when they are unreadable.
        selection.rates()
        return selection

    def select(self) -> AdapterSelection | None:
        """Return the cached selection, resolving it on first use.

        Returns None when neither the chosen adapter nor the aggregate
        counters can be read. Nothing is cached in that case, so the next
        call probes again.
        """
        if self._selection is not None:
            return self._selection
        adapter = self.resolve()
        try:
            selection = self._bind(adapter)
        except CounterReadError as exc:
            if adapter == AGGREGATE_ADAPTER:
                self.logger.warning("Network counters unreadable (%s); reporting zero rates.", exc)
                return None
            self.logger.warning(
                "Counters for %r unreadable (%s); using %s.", adapter, exc, AGGREGATE_ADAPTER
            )
            try:
                selection = self._bind(AGGREGATE_ADAPTER)
            except CounterReadError as aggregate_exc:
                self.logger.warning(
                    "Network counters unreadable (%s); reporting zero rates.", aggregate_exc
                )
                return None
        self.logger.info("Monitoring network adapter %r.", selection.adapter)
        self._selection = selection
        return selection

    def invalidate(self) -> None:
        """Drop the cached adapter so the next ``select()`` re-resolves it."""
        if self._selection is None:
            return
        self.logger.warning(
            "Discarding network adapter %r after a counter failure.", self._selection.adapter
        )
        self._selection.close()
        self._selection = None

    def close(self) -> None:
        if self._selection is not None:
            self._selection.close()
            self._selection = None
