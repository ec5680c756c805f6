"""Money parsing, the protection step table and the market base price."""

import math
from datetime import timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Tuple

from territory_market.errors import ValidationError

CENT = Decimal('0.01')

DEFAULT_PROTECTION_TIERS = '0:7,100:14,200:21,300:28,400:30'
BASELINE_PROTECTION_DAYS = 7

EMA_WEIGHT_OLD = Decimal('0.7')
EMA_WEIGHT_NEW = Decimal('0.3')
MARKET_CAP_MULTIPLIER = Decimal('3.0')
MARKET_FLOOR_MULTIPLIER = Decimal('0.7')


def to_money(value, field='amount', allow_zero=False) -> Decimal:
    """Parse a client-supplied amount into a 2dp Decimal, rejecting junk."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f'{field} is required', field=field)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f'{field} must be a number', field=field)
    if not amount.is_finite():
        raise ValidationError(f'{field} must be a finite number', field=field)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f'{field} must be positive', field=field)
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class ProtectionSchedule:
    """Price -> protection window, as a step function over price thresholds.

    The table must be non-decreasing in days so that paying more never buys
    a shorter window.
    """

    def __init__(self, tiers: List[Tuple[Decimal, int]]):
        if not tiers:
            raise ValueError('protection table is empty')
        ordered = sorted(tiers, key=lambda t: t[0])
        days = [d for _, d in ordered]
        if days != sorted(days):
            raise ValueError('protection days must not decrease as price increases')
        self.tiers = ordered

    @classmethod
    def parse(cls, spec: str = DEFAULT_PROTECTION_TIERS) -> 'ProtectionSchedule':
        tiers = []
        for chunk in (spec or DEFAULT_PROTECTION_TIERS).split(','):
            threshold, _, days = chunk.strip().partition(':')
            tiers.append((Decimal(threshold), int(days)))
        return cls(tiers)

    def days_for(self, price) -> int:
        try:
            amount = Decimal(str(price))
        except (InvalidOperation, ValueError):
            return BASELINE_PROTECTION_DAYS
        if not amount.is_finite() or amount <= 0:
            return BASELINE_PROTECTION_DAYS
        days = self.tiers[0][1]
        for threshold, tier_days in self.tiers:
            if amount >= threshold:
                days = tier_days
        return days

    def duration_for(self, price) -> timedelta:
        return timedelta(days=self.days_for(price))


def next_market_base(current, price) -> Decimal:
    """Smooth the territory's reference price towards the latest winning bid.

    Exponential moving average, clamped to [0.7x, 3x] of the old value and
    rounded up to a whole unit.
    """
    price = Decimal(price)
    current = Decimal(current) if current else Decimal(0)
    if current <= 0:
        current = price
    if price <= 0:
        return current
    raw = current * EMA_WEIGHT_OLD + price * EMA_WEIGHT_NEW
    capped = min(raw, current * MARKET_CAP_MULTIPLIER)
    floored = max(capped, current * MARKET_FLOOR_MULTIPLIER)
    return Decimal(math.ceil(floored))
