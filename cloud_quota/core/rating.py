"""
Usage rating arithmetic.

Converts the usage of an entry into the quantity a tariff is charged on and
computes the quota used for a tariff value, according to the usage unit.
"""

import calendar
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN
from enum import Enum
from typing import Optional

from .quota_types import UsageUnit

GIB = Decimal(1024 * 1024 * 1024)
QUOTA_PRECISION = Decimal("0.00000001")


class RateBasis(Enum):
    """What a tariff value of a time-based unit is quoted per."""
    HOURLY = "hourly"    # the value is charged per hour of usage
    MONTHLY = "monthly"  # the value is charged per month, spread over its hours

    @classmethod
    def from_string(cls, basis: str) -> "RateBasis":
        for candidate in cls:
            if candidate.value == (basis or "").strip().lower():
                return candidate
        raise ValueError(f"rate_basis must be one of {[b.value for b in cls]}, got {basis!r}")


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(QUOTA_PRECISION, rounding=ROUND_HALF_EVEN)


def hours_in_month(moment: datetime) -> int:
    """Number of hours in the calendar month containing ``moment``."""
    return calendar.monthrange(moment.year, moment.month)[1] * 24


def cost_per_hour(monthly_value: Decimal, moment: datetime) -> Decimal:
    """Spread a monthly value over the hours of the month containing ``moment``."""
    return _quantize(Decimal(monthly_value) / Decimal(hours_in_month(moment)))


def hourly_rate(
    tariff_value: Decimal,
    rate_basis: RateBasis = RateBasis.HOURLY,
    moment: Optional[datetime] = None
) -> Decimal:
    """Per-hour rate of a time-based tariff value.

    Args:
        tariff_value: Value resolved from the tariff
        rate_basis: What the value is quoted per
        moment: Any instant of the month being rated, required for the
            monthly basis

    Raises:
        ValueError: If the monthly basis is used without a moment
    """
    if rate_basis == RateBasis.HOURLY:
        return Decimal(tariff_value)
    if moment is None:
        raise ValueError("A moment within the rated month is required for the monthly rate basis")
    return cost_per_hour(tariff_value, moment)


def billable_quantity(unit: UsageUnit, raw_usage: float, size: Optional[int] = None) -> Decimal:
    """Quantity a tariff of ``unit`` is charged on.

    Args:
        unit: Usage unit of the tariff
        raw_usage: Usage of the entry (hours for time-based units, bytes or
            operations otherwise)
        size: Size of the metered resource in bytes, used by ``GB*Month``

    Returns:
        Hours for time-based units, GiB-hours for ``GB*Month``, GiB for
        ``GB`` and the raw usage for ``Bytes`` and ``IOPS``
    """
    usage = Decimal(str(raw_usage))
    if unit == UsageUnit.GB_MONTH:
        return usage * Decimal(size or 0) / GIB
    if unit == UsageUnit.GB:
        return usage / GIB
    return usage


def calculate_quota_used(
    unit: UsageUnit,
    quantity: Decimal,
    tariff_value: Decimal,
    rate_basis: RateBasis = RateBasis.HOURLY,
    moment: Optional[datetime] = None
) -> Decimal:
    """Quota used by ``quantity`` of billable usage at ``tariff_value``.

    Time-based units are charged per hour (see ``hourly_rate``); ``GB``,
    ``Bytes`` and ``IOPS`` are charged on the quantity directly.

    Returns:
        The quota used, rounded half-even to 8 decimal places
    """
    if unit.is_time_based:
        rate = hourly_rate(tariff_value, rate_basis, moment)
    else:
        rate = Decimal(tariff_value)
    return _quantize(Decimal(quantity) * rate)


def calculate_quote(
    unit: UsageUnit,
    volume: Decimal,
    tariffs_value: Decimal,
    rate_basis: RateBasis = RateBasis.HOURLY,
    moment: Optional[datetime] = None
) -> Decimal:
    """Quota an estimated ``volume`` would use at ``tariffs_value``.

    Only ``GB`` volumes are charged on the volume directly. Every other unit,
    ``Bytes`` and ``IOPS`` included, is charged at the per-hour rate.
    """
    if unit == UsageUnit.GB:
        rate = Decimal(tariffs_value)
    else:
        rate = hourly_rate(tariffs_value, rate_basis, moment)
    return _quantize(Decimal(volume) * rate)
