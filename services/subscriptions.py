"""Subscription store: creation and state-machine transitions.

This module is the only writer of subscription lifecycle fields (status,
dates, renewal count).  ``total_revenue`` belongs to the payment ledger.
Every public operation is one unit of work: the subscription change and its
activity log entry are committed together or not at all.
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Optional

from exceptions import InvalidStateError, NotFoundError, ValidationError
from extensions import atomic, db
from models import (
    SYSTEM_ACTOR,
    VALID_BILLING_CYCLES,
    Client,
    Package,
    Subscription,
)
from services import activity
from services.lifecycle import (
    SubscriptionTerms,
    advance_cycle,
    ensure_renewable,
    next_renewal_date,
)
from services.numbering import generate_number
from services.settings import get_automation_config
from utils import as_utc, money, parse_datetime, safe_int, to_decimal, utc_now

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")

UPDATABLE_FIELDS = {
    "notes",
    "auto_renew",
    "grace_period_days",
    "base_price",
    "tax_percentage",
    "tax_amount",
    "discount_percentage",
    "discount_amount",
    "discount_reason",
    "discount_valid_until",
}
_MONEY_FIELDS = {"base_price", "tax_amount", "discount_amount"}
_PERCENT_FIELDS = {"tax_percentage", "discount_percentage"}


def get_subscription(subscription_id: int, *, lock: bool = False) -> Subscription:
    query = Subscription.query.filter_by(id=subscription_id)
    if lock:
        query = query.with_for_update()
    sub = query.first()
    if not sub:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return sub


def state_snapshot(sub: Subscription) -> dict:
    """JSON-safe view of the fields that lifecycle transitions touch."""
    def _iso(value):
        value = as_utc(value)
        return value.isoformat() if value else None

    return {
        "status": sub.status,
        "startDate": _iso(sub.start_date),
        "endDate": _iso(sub.end_date),
        "nextBillingDate": _iso(sub.next_billing_date),
        "lastBillingDate": _iso(sub.last_billing_date),
        "renewalCount": sub.renewal_count or 0,
        "billingCycle": sub.billing_cycle,
        "basePrice": str(money(sub.base_price)),
    }


def _package_price(package: Package, billing_cycle: str) -> Decimal:
    monthly = to_decimal(package.price_monthly, _ZERO)
    if billing_cycle == "quarterly":
        return to_decimal(package.price_quarterly) or monthly * 3
    if billing_cycle == "yearly":
        return to_decimal(package.price_yearly) or monthly * 12
    return monthly


def _check_money(field: str, value) -> Decimal:
    amount = to_decimal(value)
    if amount is None:
        raise ValidationError(f"{field} must be a number")
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative")
    return money(amount)


def _check_percent(field: str, value) -> Decimal:
    pct = to_decimal(value)
    if pct is None or pct < 0 or pct > 100:
        raise ValidationError(f"{field} must be between 0 and 100")
    return pct


def _check_days(field: str, value) -> int:
    days = safe_int(value, -1)
    if isinstance(value, bool) or days < 0:
        raise ValidationError(f"{field} must be a whole number of days, not negative")
    return days


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def create_subscription(
    client_id: int,
    package_id: int,
    billing_cycle: str = "monthly",
    *,
    custom_price=None,
    start_date: Optional[datetime.datetime] = None,
    end_date: Optional[datetime.datetime] = None,
    cycle_days: Optional[int] = None,
    status: str = "active",
    auto_renew: bool = False,
    discount_percentage=0,
    discount_amount=0,
    discount_reason: Optional[str] = None,
    discount_valid_until: Optional[datetime.datetime] = None,
    tax_percentage=0,
    tax_amount=0,
    trial_days: int = 0,
    grace_period_days: Optional[int] = None,
    notes: Optional[str] = None,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Subscription:
    """Create a subscription for a client/package pair.

    The base price is *custom_price* when given, otherwise the package list
    price for the cycle.  Without *end_date* the first term is one cycle long.
    """
    now = now or utc_now()
    if billing_cycle not in VALID_BILLING_CYCLES:
        raise ValidationError(f"Invalid billing cycle {billing_cycle!r}")
    if billing_cycle == "custom" and not cycle_days:
        raise ValidationError("Custom billing cycle requires cycle_days")
    if status not in ("active", "pending_payment"):
        raise ValidationError("New subscriptions start as active or pending_payment")
    if grace_period_days is None:
        grace_period_days = get_automation_config().grace_period_days
    grace_period_days = _check_days("grace_period_days", grace_period_days)

    with atomic():
        client = db.session.get(Client, client_id)
        if not client:
            raise NotFoundError(f"Client {client_id} not found")
        package = db.session.get(Package, package_id)
        if not package:
            raise NotFoundError(f"Package {package_id} not found")

        if custom_price not in (None, ""):
            base_price = _check_money("custom_price", custom_price)
        else:
            base_price = money(_package_price(package, billing_cycle))

        start = as_utc(start_date) or now
        end = as_utc(end_date) or advance_cycle(start, billing_cycle, cycle_days)
        if end <= start:
            raise ValidationError("end_date must be after start_date")

        sub = Subscription(
            subscription_code=generate_number("subscription", now=now),
            client_id=client.id,
            package_id=package.id,
            billing_cycle=billing_cycle,
            cycle_days=cycle_days if billing_cycle == "custom" else None,
            status=status,
            start_date=start,
            end_date=end,
            next_billing_date=end if status == "active" else None,
            base_price=base_price,
            currency=package.currency or "USD",
            discount_percentage=_check_percent("discount_percentage", discount_percentage or 0),
            discount_amount=_check_money("discount_amount", discount_amount or 0),
            discount_reason=discount_reason,
            discount_valid_until=as_utc(discount_valid_until),
            tax_percentage=_check_percent("tax_percentage", tax_percentage or 0),
            tax_amount=_check_money("tax_amount", tax_amount or 0),
            auto_renew=bool(auto_renew),
            trial_days=trial_days or 0,
            grace_period_days=grace_period_days,
            renewal_count=0,
            total_revenue=_ZERO,
            notes=notes,
            assigned_by=performed_by,
            created_at=now,
        )
        db.session.add(sub)
        db.session.flush()

        activity.log_action(
            sub,
            "created",
            f"Subscription created for {client.company_name or client.name} "
            f"with {package.name} package",
            new_values=state_snapshot(sub),
            metadata={
                "packageName": package.name,
                "billingCycle": billing_cycle,
                "amount": str(base_price),
            },
            performed_by=performed_by,
            now=now,
        )

    logger.info(
        "Subscription %s created for client %s (%s, %s)",
        sub.subscription_code, client_id, billing_cycle, base_price,
    )
    return sub


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------

def update_subscription(
    subscription_id: int,
    changes: dict,
    *,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Subscription:
    """Apply whitelisted field *changes*; unknown keys are rejected."""
    now = now or utc_now()
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Fields cannot be updated: {', '.join(sorted(unknown))}"
        )

    with atomic():
        sub = get_subscription(subscription_id, lock=True)
        if sub.status == "cancelled":
            raise InvalidStateError(
                f"Subscription {sub.subscription_code} is cancelled"
            )
        had_discount = bool(
            to_decimal(sub.discount_percentage, _ZERO) or to_decimal(sub.discount_amount, _ZERO)
        )
        previous, new = {}, {}
        for field, value in changes.items():
            if field in _MONEY_FIELDS:
                value = _check_money(field, value)
            elif field in _PERCENT_FIELDS:
                value = _check_percent(field, value)
            elif field == "grace_period_days":
                value = _check_days(field, value)
            elif field == "auto_renew":
                value = bool(value)
            elif field == "discount_valid_until":
                value = as_utc(value) if isinstance(value, datetime.datetime) else parse_datetime(value)
            old = getattr(sub, field)
            previous[field] = _jsonable(old)
            new[field] = _jsonable(value)
            setattr(sub, field, value)

        activity.log_action(
            sub,
            "updated",
            f"Subscription {sub.subscription_code} updated",
            previous_values=previous,
            new_values=new,
            performed_by=performed_by,
            now=now,
        )

        has_discount = bool(
            to_decimal(sub.discount_percentage, _ZERO) or to_decimal(sub.discount_amount, _ZERO)
        )
        discount_touched = bool({"discount_percentage", "discount_amount"} & set(changes))
        if discount_touched and has_discount:
            activity.log_action(
                sub,
                "discount_applied",
                f"Discount applied to {sub.subscription_code}",
                category="billing",
                new_values={
                    "discountPercentage": str(sub.discount_percentage),
                    "discountAmount": str(sub.discount_amount),
                },
                metadata={"reason": sub.discount_reason},
                performed_by=performed_by,
                now=now,
            )
        elif discount_touched and had_discount:
            activity.log_action(
                sub,
                "discount_removed",
                f"Discount removed from {sub.subscription_code}",
                category="billing",
                performed_by=performed_by,
                now=now,
            )

    logger.info("Subscription %s updated: %s", sub.subscription_code, sorted(changes))
    return sub


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime.datetime):
        return as_utc(value).isoformat()
    return value


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def apply_renewal(sub: Subscription, now: datetime.datetime) -> tuple[dict, dict]:
    """Advance *sub* by one cycle from its current end date.

    Mutates only; the caller owns the unit of work and the log entry.
    Returns ``(previous, new)`` snapshots.
    """
    terms = SubscriptionTerms.from_subscription(sub)
    ensure_renewable(terms)
    previous = state_snapshot(sub)
    new_end = next_renewal_date(terms)
    sub.end_date = new_end
    sub.next_billing_date = new_end
    sub.last_billing_date = now
    sub.renewal_count = (sub.renewal_count or 0) + 1
    sub.status = "active"
    sub.status_reason = None
    return previous, state_snapshot(sub)


def renew_subscription(
    subscription_id: int,
    *,
    billing_cycle: Optional[str] = None,
    custom_price=None,
    discount_percentage=None,
    discount_amount=None,
    notes: Optional[str] = None,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Subscription:
    """Manually renew a subscription, optionally changing its terms first."""
    now = now or utc_now()
    if billing_cycle is not None and billing_cycle not in VALID_BILLING_CYCLES:
        raise ValidationError(f"Invalid billing cycle {billing_cycle!r}")

    with atomic():
        sub = get_subscription(subscription_id, lock=True)
        if sub.status == "cancelled":
            raise InvalidStateError(
                f"Cannot renew cancelled subscription {sub.subscription_code}"
            )
        if billing_cycle:
            if billing_cycle == "custom" and not sub.cycle_days:
                raise ValidationError("Custom billing cycle requires cycle_days")
            sub.billing_cycle = billing_cycle
        if custom_price not in (None, ""):
            sub.base_price = _check_money("custom_price", custom_price)
        if discount_percentage is not None:
            sub.discount_percentage = _check_percent("discount_percentage", discount_percentage)
        if discount_amount is not None:
            sub.discount_amount = _check_money("discount_amount", discount_amount)
        if notes:
            sub.notes = notes

        previous, new = apply_renewal(sub, now)
        activity.log_action(
            sub,
            "manually_renewed",
            f"Subscription {sub.subscription_code} renewed",
            category="renewal",
            previous_values=previous,
            new_values=new,
            metadata={"billingCycle": sub.billing_cycle},
            performed_by=performed_by,
            now=now,
        )

    logger.info(
        "Subscription %s renewed until %s", sub.subscription_code, new["endDate"]
    )
    return sub


def suspend_subscription(
    subscription_id: int,
    reason: str,
    *,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Subscription:
    now = now or utc_now()
    if not reason or not reason.strip():
        raise ValidationError("A suspension reason is required")

    with atomic():
        sub = get_subscription(subscription_id, lock=True)
        if sub.status != "active":
            raise InvalidStateError(
                f"Only active subscriptions can be suspended ({sub.subscription_code} is {sub.status})"
            )
        previous = state_snapshot(sub)
        sub.status = "suspended"
        sub.status_reason = reason
        sub.suspended_at = now
        activity.log_action(
            sub,
            "suspended",
            f"Subscription {sub.subscription_code} suspended",
            severity="high",
            previous_values=previous,
            new_values=state_snapshot(sub),
            metadata={"reason": reason},
            performed_by=performed_by,
            now=now,
        )

    logger.info("Subscription %s suspended: %s", sub.subscription_code, reason)
    return sub


def reactivate_subscription(
    subscription_id: int,
    *,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Subscription:
    now = now or utc_now()
    with atomic():
        sub = get_subscription(subscription_id, lock=True)
        if sub.status != "suspended":
            raise InvalidStateError(
                f"Only suspended subscriptions can be reactivated ({sub.subscription_code} is {sub.status})"
            )
        previous = state_snapshot(sub)
        _activate(sub)
        sub.suspended_at = None
        activity.log_action(
            sub,
            "reactivated",
            f"Subscription {sub.subscription_code} reactivated",
            previous_values=previous,
            new_values=state_snapshot(sub),
            performed_by=performed_by,
            now=now,
        )

    logger.info("Subscription %s reactivated", sub.subscription_code)
    return sub


def cancel_subscription(
    subscription_id: int,
    reason: str,
    *,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Subscription:
    now = now or utc_now()
    if not reason or not reason.strip():
        raise ValidationError("A cancellation reason is required")

    with atomic():
        sub = get_subscription(subscription_id, lock=True)
        if sub.status not in ("active", "suspended", "pending_payment"):
            raise InvalidStateError(
                f"Subscription {sub.subscription_code} is {sub.status} and cannot be cancelled"
            )
        previous = state_snapshot(sub)
        sub.status = "cancelled"
        sub.status_reason = reason
        sub.cancelled_at = now
        sub.auto_renew = False
        sub.next_billing_date = None
        activity.log_action(
            sub,
            "cancelled",
            f"Subscription {sub.subscription_code} cancelled",
            category="cancellation",
            severity="high",
            previous_values=previous,
            new_values=state_snapshot(sub),
            metadata={"reason": reason},
            performed_by=performed_by,
            now=now,
        )

    logger.info("Subscription %s cancelled: %s", sub.subscription_code, reason)
    return sub


def expire(sub: Subscription, now: datetime.datetime, idempotency_key: Optional[str] = None):
    """Move an active subscription past its grace period to ``expired``.

    Automatic only; joins the caller's unit of work.
    """
    if sub.status != "active":
        raise InvalidStateError(
            f"Only active subscriptions expire ({sub.subscription_code} is {sub.status})"
        )
    previous = state_snapshot(sub)
    sub.status = "expired"
    sub.status_reason = "Grace period ended"
    sub.next_billing_date = None
    return activity.log_action(
        sub,
        "expired",
        f"Subscription {sub.subscription_code} expired after grace period",
        severity="high",
        previous_values=previous,
        new_values=state_snapshot(sub),
        metadata={"gracePeriodDays": sub.grace_period_days},
        idempotency_key=idempotency_key,
        now=now,
    )


def _activate(sub: Subscription) -> None:
    sub.status = "active"
    sub.status_reason = None
    if not sub.next_billing_date:
        sub.next_billing_date = sub.end_date


def activate_after_payment(sub: Subscription, now: datetime.datetime) -> None:
    """``pending_payment`` -> ``active`` once an invoice is settled.

    Called by the payment ledger inside its unit of work.
    """
    if sub.status != "pending_payment":
        return
    previous = state_snapshot(sub)
    _activate(sub)
    activity.log_action(
        sub,
        "reactivated",
        f"Subscription {sub.subscription_code} activated after payment",
        category="payment",
        previous_values=previous,
        new_values=state_snapshot(sub),
        now=now,
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def find_expiring(days: int = 10, now: Optional[datetime.datetime] = None) -> list[Subscription]:
    now = now or utc_now()
    horizon = now + datetime.timedelta(days=days)
    return (
        Subscription.query.filter(
            Subscription.status == "active",
            Subscription.end_date >= now,
            Subscription.end_date <= horizon,
        )
        .order_by(Subscription.end_date)
        .all()
    )


def find_expired(now: Optional[datetime.datetime] = None) -> list[Subscription]:
    now = now or utc_now()
    return (
        Subscription.query.filter(
            Subscription.status.in_(("active", "pending_payment")),
            Subscription.end_date < now,
        )
        .order_by(Subscription.end_date)
        .all()
    )
