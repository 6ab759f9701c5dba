"""Exception hierarchy for the metrics engine.

Only :class:`BackendUnavailable` is allowed to escape ``MetricsEngine.open()``.
Everything else is absorbed by the engine and shows up as data (zero or
sentinel values) in the published sample.
"""
from __future__ import annotations


class WinStateError(Exception):
    """Base class for all engine errors."""


class BackendUnavailable(WinStateError):
    """The hardware/counter backend could not be initialized."""


class SensorAbsent(WinStateError):
    """A role has no matching sensor.

    Never raised by the engine itself; an absent sensor is an unresolved role
    in the inventory. Kept so callers can raise it from their own lookups.
    """


class SensorReadError(WinStateError):
    """A hardware node could not be refreshed during a tick."""


class AdapterUnresolved(WinStateError):
    """No usable network adapter could be found."""


class CounterReadError(WinStateError):
    """The counters bound to the selected adapter can no longer be read."""


class TransientSampleFailure(WinStateError):
    """A single tick failed and was discarded."""


class EngineStateError(WinStateError):
    """A lifecycle call is not valid in the current state.

    Raised when starting an engine that was already stopped; restart after
    stop is not supported.
    """
