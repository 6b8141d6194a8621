import math
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Coerce a column value, str or number to a 2dp Decimal."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def billable_minutes(started_at: datetime, ended_at: datetime) -> int:
    """Whole minutes to bill, rounded up; any session that ran bills at least one."""
    seconds = (ended_at - started_at).total_seconds()
    return max(1, math.ceil(seconds / 60))


def split_cost(total_cost: Decimal, reader_share: Decimal) -> tuple[Decimal, Decimal]:
    """Return (reader_earnings, platform_fee).

    The platform fee is the exact complement of the rounded reader share, so
    the two always add back up to total_cost.
    """
    reader_earnings = round2(total_cost * reader_share)
    return reader_earnings, total_cost - reader_earnings
