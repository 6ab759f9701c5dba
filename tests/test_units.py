"""Tests for byte-rate scaling."""
from __future__ import annotations

import pytest

from winstate.units import BASE_UNIT, scale


@pytest.mark.parametrize("rate", [0, 1, 512, 999, 999.5])
def test_below_one_thousand_stays_in_base_unit(rate):
    assert scale(rate) == (float(rate), BASE_UNIT)


def test_unit_boundaries():
    assert scale(1_000) == (1.0, "KB/s")
    assert scale(999_999) == (999.999, "KB/s")
    assert scale(1_000_000) == (1.0, "MB/s")
    assert scale(1_000_000_000) == (1.0, "GB/s")


def test_giga_is_the_ceiling():
    value, unit = scale(5_000_000_000_000)
    assert unit == "GB/s"
    assert value == 5000.0


def test_no_rounding_is_applied():
    value, unit = scale(1_234_567)
    assert unit == "MB/s"
    assert value == 1_234_567 / 1_000_000


def test_directions_scale_independently():
    upload = scale(42_000)
    download = scale(42_000_000)
    assert upload == (42.0, "KB/s")
    assert download == (42.0, "MB/s")


def test_negative_rate_is_rejected():
    with pytest.raises(ValueError):
        scale(-1)
