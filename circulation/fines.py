"""Fine policies.

A fine policy is any callable taking the number of whole days a loan is
late and returning the amount owed.  The engine never hard-codes a rate;
it is handed a policy when the library is wired up.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Sequence, Tuple

from circulation.models import as_utc, to_money

FinePolicy = Callable[[int], Decimal]

ZERO = Decimal("0.00")
DEFAULT_DAILY_RATE = "1.00"


class FlatDailyRate:
    """Charge the same amount for every day late."""

    def __init__(self, rate=DEFAULT_DAILY_RATE):
        self.rate = to_money(rate)
        if self.rate < 0:
            raise ValueError("Daily fine rate cannot be negative")

    def __call__(self, days_late: int) -> Decimal:
        if days_late <= 0:
            return ZERO
        return to_money(self.rate * days_late)

    def __repr__(self) -> str:
        return f"FlatDailyRate({self.rate})"


class TieredRate:
    """Charge each late day at the rate of the tier it falls in.

    ``tiers`` is a sequence of ``(last_day, rate)`` pairs ordered by
    ``last_day``; days past the final tier keep its rate.  ``cap`` limits
    the total charged for a single loan.
    """

    def __init__(self, tiers: Sequence[Tuple[int, object]], cap=None):
        if not tiers:
            raise ValueError("At least one fine tier is required")
        self.tiers = sorted((int(last_day), to_money(rate)) for last_day, rate in tiers)
        if any(rate < 0 for _, rate in self.tiers):
            raise ValueError("Fine tier rates cannot be negative")
        self.cap = to_money(cap) if cap is not None else None

    def _rate_for(self, day: int) -> Decimal:
        for last_day, rate in self.tiers:
            if day <= last_day:
                return rate
        return self.tiers[-1][1]

    def __call__(self, days_late: int) -> Decimal:
        total = sum((self._rate_for(day) for day in range(1, days_late + 1)), ZERO)
        if self.cap is not None:
            total = min(total, self.cap)
        return to_money(total)

    def __repr__(self) -> str:
        return f"TieredRate({self.tiers}, cap={self.cap})"


def days_late(due_date: datetime, at: datetime) -> int:
    """Whole days past ``due_date``; a started day counts as a full day."""
    delta = as_utc(at) - as_utc(due_date)
    if delta.total_seconds() <= 0:
        return 0
    return delta.days + (1 if delta.seconds or delta.microseconds else 0)


def calculate_fine(due_date: datetime, at: datetime, policy: FinePolicy) -> Decimal:
    return to_money(policy(days_late(due_date, at)))


def policy_from_settings(
    daily_rate: str = DEFAULT_DAILY_RATE,
    tiers: Optional[str] = None,
    cap: Optional[str] = None,
) -> FinePolicy:
    """Build a policy from configuration text.

    ``tiers`` looks like ``"7:0.50,30:1.00"``; when it is empty a flat
    ``daily_rate`` applies.
    """
    if tiers:
        parsed = []
        for chunk in tiers.split(","):
            last_day, _, rate = chunk.strip().partition(":")
            if not rate:
                raise ValueError(f"Malformed fine tier: {chunk!r}")
            parsed.append((int(last_day), rate))
        return TieredRate(parsed, cap=cap or None)
    return FlatDailyRate(daily_rate)
