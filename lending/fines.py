"""Fine arithmetic for overdue returns and lost copies."""
from __future__ import annotations

import math
from datetime import datetime

from lending.models import ensure_utc

SECONDS_PER_DAY = 24 * 60 * 60


def days_overdue(due_date: datetime, now: datetime) -> int:
    """Whole days late, rounding partial days up. Zero when not late."""
    elapsed = (ensure_utc(now) - ensure_utc(due_date)).total_seconds()
    if elapsed <= 0:
        return 0
    return math.ceil(elapsed / SECONDS_PER_DAY)


def overdue_fine(due_date: datetime, now: datetime, rate: float) -> float | None:
    days = days_overdue(due_date, now)
    if days <= 0:
        return None
    amount = round(days * rate, 2)
    return amount if amount > 0 else None


def replacement_cost(price: float | None, ratio: float, default: float) -> float:
    # An unknown or zero price falls back to the flat replacement cost.
    if not price:
        return round(default, 2)
    return round(float(price) * ratio, 2)
