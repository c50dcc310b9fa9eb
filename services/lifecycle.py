"""Subscription date and price arithmetic.

Everything here is a pure function over :class:`SubscriptionTerms`, an
immutable snapshot of the fields that drive renewal and pricing, so the rules
can be exercised without a database.  ``now`` is always passed in explicitly.
"""

from __future__ import annotations

import datetime
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from exceptions import InvalidStateError, ValidationError
from utils import add_months, as_utc, ceil_days, money, to_decimal

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")

CYCLE_MONTHS = {"monthly": 1, "quarterly": 3, "yearly": 12}


@dataclass(frozen=True)
class SubscriptionTerms:
    status: str
    billing_cycle: str
    start_date: datetime.datetime
    end_date: datetime.datetime
    base_price: Decimal
    discount_percentage: Decimal = _ZERO
    discount_amount: Decimal = _ZERO
    tax_percentage: Decimal = _ZERO
    tax_amount: Decimal = _ZERO
    grace_period_days: int = 3
    cycle_days: Optional[int] = None
    auto_renew: bool = False

    @classmethod
    def from_subscription(cls, sub) -> "SubscriptionTerms":
        return cls(
            status=sub.status,
            billing_cycle=sub.billing_cycle,
            start_date=as_utc(sub.start_date),
            end_date=as_utc(sub.end_date),
            base_price=to_decimal(sub.base_price, _ZERO),
            discount_percentage=to_decimal(sub.discount_percentage, _ZERO),
            discount_amount=to_decimal(sub.discount_amount, _ZERO),
            tax_percentage=to_decimal(sub.tax_percentage, _ZERO),
            tax_amount=to_decimal(sub.tax_amount, _ZERO),
            grace_period_days=sub.grace_period_days if sub.grace_period_days is not None else 3,
            cycle_days=sub.cycle_days,
            auto_renew=bool(sub.auto_renew),
        )


# ---------------------------------------------------------------------------
# Billing cycle arithmetic
# ---------------------------------------------------------------------------

def advance_cycle(
    value: datetime.datetime, billing_cycle: str, cycle_days: Optional[int] = None
) -> datetime.datetime:
    """Move *value* forward by one billing-cycle unit.

    Month-based cycles clamp to the last day of the target month.
    """
    if billing_cycle in CYCLE_MONTHS:
        return add_months(value, CYCLE_MONTHS[billing_cycle])
    if billing_cycle == "custom":
        if not cycle_days or cycle_days <= 0:
            raise ValidationError("Custom billing cycle requires a positive cycle_days")
        return value + datetime.timedelta(days=cycle_days)
    raise ValidationError(f"Unknown billing cycle {billing_cycle!r}")


def next_renewal_date(terms: SubscriptionTerms) -> datetime.datetime:
    """The current end date advanced by one cycle, never anchored to now."""
    return advance_cycle(terms.end_date, terms.billing_cycle, terms.cycle_days)


def ensure_renewable(terms: SubscriptionTerms) -> None:
    if terms.status == "cancelled":
        raise InvalidStateError("Cannot renew a cancelled subscription")


# ---------------------------------------------------------------------------
# Expiry predicates
# ---------------------------------------------------------------------------

def is_expired(terms: SubscriptionTerms, now: datetime.datetime) -> bool:
    return now > terms.end_date


def is_in_grace_period(terms: SubscriptionTerms, now: datetime.datetime) -> bool:
    if not is_expired(terms, now):
        return False
    grace_end = terms.end_date + datetime.timedelta(days=terms.grace_period_days)
    return now <= grace_end


def days_remaining(terms: SubscriptionTerms, now: datetime.datetime) -> int:
    if terms.status in ("expired", "cancelled"):
        return 0
    return ceil_days(terms.end_date - now)


def is_expiring_soon(terms: SubscriptionTerms, now: datetime.datetime, days: int = 10) -> bool:
    if terms.status != "active":
        return False
    remaining = ceil_days(terms.end_date - now)
    return 0 < remaining <= days


def duration_in_months(terms: SubscriptionTerms) -> int:
    """Length of the current term in 30-day months, rounded up."""
    seconds = (terms.end_date - terms.start_date).total_seconds()
    return math.ceil(seconds / (30 * 86400))


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

def effective_price(terms: SubscriptionTerms) -> Decimal:
    """Base price after discount then tax.

    Order: percentage discount, flat discount (floored at zero), percentage
    tax, flat tax.  Rounded half-up to cents at the end.
    """
    price = terms.base_price
    if terms.discount_percentage > 0:
        price = price * (1 - terms.discount_percentage / _HUNDRED)
    if terms.discount_amount > 0:
        price = max(_ZERO, price - terms.discount_amount)
    if terms.tax_percentage > 0:
        price = price * (1 + terms.tax_percentage / _HUNDRED)
    if terms.tax_amount > 0:
        price = price + terms.tax_amount
    return money(price)


def invoice_amounts(terms: SubscriptionTerms) -> dict:
    """Subtotal, discount, tax and total for one invoice of *terms*.

    ``discount = min(subtotal * pct / 100 + amount, subtotal)`` and tax is
    levied on the discounted base.
    """
    subtotal = money(terms.base_price)
    discount = money(
        min(subtotal * terms.discount_percentage / _HUNDRED + terms.discount_amount, subtotal)
    )
    tax = money((subtotal - discount) * terms.tax_percentage / _HUNDRED + terms.tax_amount)
    return {
        "subtotal": subtotal,
        "discount": discount,
        "tax": tax,
        "total": subtotal - discount + tax,
    }
