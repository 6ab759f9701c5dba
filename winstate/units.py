from __future__ import annotations

# Network rates are presented in bytes per second, base 1000.
BYTE_RATE_UNITS = ("B/s", "KB/s", "MB/s", "GB/s")
BASE_UNIT = BYTE_RATE_UNITS[0]
_STEP = 1000


def scale(bytes_per_sec: float) -> tuple[float, str]:
    """Scale a byte rate to the largest unit that keeps the value below 1000.

    ``GB/s`` is the ceiling, so values of 1000 GB/s and above stay in GB/s.
    No rounding is applied.
    """
    if bytes_per_sec < 0:
        raise ValueError(f"Rate must be non-negative, got {bytes_per_sec!r}")
    exponent = 0
    while (
        exponent < len(BYTE_RATE_UNITS) - 1
        and bytes_per_sec >= _STEP ** (exponent + 1)
    ):
        exponent += 1
    if exponent == 0:
        return float(bytes_per_sec), BASE_UNIT
    return bytes_per_sec / _STEP**exponent, BYTE_RATE_UNITS[exponent]
