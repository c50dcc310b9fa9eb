"""Invoice generation and invoice-level bookkeeping.

Amounts are derived from the subscription terms at generation time; the
payment ledger is the only writer of ``paid_amount`` afterwards.
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from flask import current_app, has_app_context

from exceptions import InvalidStateError, NotFoundError, ValidationError
from extensions import atomic, db
from models import SYSTEM_ACTOR, Invoice, Package, Payment, Subscription
from services import activity
from services.lifecycle import SubscriptionTerms, advance_cycle, invoice_amounts
from services.numbering import generate_number
from utils import as_utc, ceil_days, money, to_decimal, utc_now

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")
CLOSED_STATUSES = ("paid", "cancelled", "refunded")


def _default_due_days() -> int:
    if has_app_context():
        cfg = current_app.config.get("AUTOMATION_CONFIG")
        if cfg is not None:
            return cfg.invoice_due_days
    return 30


def get_invoice(invoice_id: int, *, lock: bool = False) -> Invoice:
    query = Invoice.query.filter_by(id=invoice_id)
    if lock:
        query = query.with_for_update()
    invoice = query.first()
    if not invoice:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def find_period_invoice(subscription_id: int, period_start: datetime.datetime) -> Optional[Invoice]:
    """The live invoice already covering the period starting at *period_start*."""
    return Invoice.query.filter(
        Invoice.subscription_id == subscription_id,
        Invoice.billing_period_start == period_start,
        Invoice.status != "cancelled",
    ).first()


# ---------------------------------------------------------------------------
# Derived values
# ---------------------------------------------------------------------------

def is_overdue(invoice: Invoice, now: datetime.datetime) -> bool:
    if invoice.status in ("paid", "cancelled"):
        return False
    return now > as_utc(invoice.due_date)


def days_overdue(invoice: Invoice, now: datetime.datetime) -> int:
    if not is_overdue(invoice, now):
        return 0
    return ceil_days(now - as_utc(invoice.due_date))


def remaining_amount(invoice: Invoice) -> Decimal:
    total = to_decimal(invoice.total, _ZERO)
    paid = to_decimal(invoice.paid_amount, _ZERO)
    return max(_ZERO, money(total - paid))


def payment_percentage(invoice: Invoice) -> int:
    total = to_decimal(invoice.total, _ZERO)
    if total == 0:
        return 100
    paid = to_decimal(invoice.paid_amount, _ZERO)
    return int((paid / total * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def late_fee(invoice: Invoice, percentage, now: datetime.datetime) -> Decimal:
    pct = to_decimal(percentage, _ZERO)
    if not is_overdue(invoice, now) or pct == 0:
        return _ZERO
    return money(to_decimal(invoice.total, _ZERO) * pct / 100)


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def build_invoice(
    sub: Subscription,
    period_start: datetime.datetime,
    period_end: datetime.datetime,
    *,
    due_date: Optional[datetime.datetime] = None,
    due_days: Optional[int] = None,
    generated_by: str = SYSTEM_ACTOR,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> Invoice:
    """Create the invoice row and its log entry inside the caller's unit."""
    now = now or utc_now()
    if period_end <= period_start:
        raise ValidationError("Billing period end must be after its start")
    if due_date is None:
        due_date = now + datetime.timedelta(
            days=due_days if due_days is not None else _default_due_days()
        )

    terms = SubscriptionTerms.from_subscription(sub)
    amounts = invoice_amounts(terms)
    package = db.session.get(Package, sub.package_id)
    package_name = package.name if package else "Package"

    invoice = Invoice(
        invoice_number=generate_number("invoice", now=now),
        subscription_id=sub.id,
        client_id=sub.client_id,
        package_id=sub.package_id,
        billing_period_start=period_start,
        billing_period_end=period_end,
        description=f"{package_name} - {sub.billing_cycle} subscription",
        subtotal=amounts["subtotal"],
        discount=amounts["discount"],
        tax=amounts["tax"],
        total=amounts["total"],
        discount_percentage=terms.discount_percentage,
        discount_reason=sub.discount_reason,
        tax_percentage=terms.tax_percentage,
        currency=sub.currency,
        status="draft",
        payment_status="pending",
        due_date=as_utc(due_date),
        paid_amount=_ZERO,
        reminders_sent=0,
        generated_by=generated_by,
        created_at=now,
    )
    db.session.add(invoice)
    db.session.flush()

    activity.log_action(
        sub,
        "invoice_generated",
        f"Invoice {invoice.invoice_number} generated for {sub.subscription_code}",
        category="billing",
        new_values={
            "invoiceNumber": invoice.invoice_number,
            "total": str(amounts["total"]),
            "periodStart": as_utc(period_start).isoformat(),
            "periodEnd": as_utc(period_end).isoformat(),
        },
        metadata={"invoiceId": invoice.id, "amount": str(amounts["total"])},
        performed_by=generated_by,
        idempotency_key=idempotency_key,
        now=now,
    )
    logger.info(
        "Invoice %s generated for subscription %s: %s %s",
        invoice.invoice_number, sub.subscription_code, amounts["total"], sub.currency,
    )
    return invoice


def generate_invoice(
    subscription_id: int,
    period_start: Optional[datetime.datetime] = None,
    period_end: Optional[datetime.datetime] = None,
    due_date: Optional[datetime.datetime] = None,
    *,
    due_days: Optional[int] = None,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Invoice:
    """Generate an invoice on demand.

    Without an explicit period the invoice covers the next cycle starting at
    the subscription's next billing date (or its end date).  A second live
    invoice for the same period is refused.
    """
    now = now or utc_now()
    with atomic():
        sub = Subscription.query.filter_by(id=subscription_id).with_for_update().first()
        if not sub:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if sub.status == "cancelled":
            raise InvalidStateError(
                f"Cannot invoice cancelled subscription {sub.subscription_code}"
            )
        start = as_utc(period_start) or as_utc(sub.next_billing_date) or as_utc(sub.end_date)
        end = as_utc(period_end) or advance_cycle(start, sub.billing_cycle, sub.cycle_days)
        if find_period_invoice(sub.id, start):
            raise ValidationError(
                f"Subscription {sub.subscription_code} already has an invoice "
                f"for the period starting {start.date().isoformat()}"
            )
        invoice = build_invoice(
            sub, start, end,
            due_date=as_utc(due_date),
            due_days=due_days,
            generated_by=performed_by,
            now=now,
        )
    return invoice


def generate_scheduled_invoice(
    sub: Subscription,
    *,
    due_days: Optional[int] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> tuple[Invoice, bool]:
    """Invoice the cycle starting at ``next_billing_date`` and advance it.

    Joins the caller's unit.  Returns ``(invoice, created)``; an existing
    live invoice for the same period is reused.
    """
    now = now or utc_now()
    start = as_utc(sub.next_billing_date)
    if start is None:
        raise InvalidStateError(
            f"Subscription {sub.subscription_code} has no next billing date"
        )
    end = advance_cycle(start, sub.billing_cycle, sub.cycle_days)
    invoice = find_period_invoice(sub.id, start)
    created = invoice is None
    if created:
        invoice = build_invoice(
            sub, start, end,
            due_days=due_days,
            idempotency_key=idempotency_key,
            now=now,
        )
    sub.next_billing_date = end
    sub.last_billing_date = now
    return invoice, created


def generate_renewal_invoice(
    sub: Subscription,
    period_start: datetime.datetime,
    period_end: datetime.datetime,
    *,
    due_days: Optional[int] = None,
    now: Optional[datetime.datetime] = None,
) -> tuple[Invoice, bool]:
    """Invoice a freshly renewed term ``[old end, new end]``; joins the caller's unit."""
    existing = find_period_invoice(sub.id, period_start)
    if existing:
        return existing, False
    return build_invoice(sub, period_start, period_end, due_days=due_days, now=now), True


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------

def record_reminder(invoice: Invoice, now: datetime.datetime) -> None:
    invoice.reminders_sent = (invoice.reminders_sent or 0) + 1
    invoice.last_reminder_date = now


def mark_overdue(invoice: Invoice) -> bool:
    """Flag an unpaid draft/sent invoice as overdue.  Returns True if changed."""
    if invoice.status in ("draft", "sent"):
        invoice.status = "overdue"
        return True
    return False


def send_invoice_reminder(
    invoice_id: int,
    *,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Invoice:
    """Record a manual payment reminder for an open invoice."""
    now = now or utc_now()
    with atomic():
        invoice = get_invoice(invoice_id, lock=True)
        if invoice.status in CLOSED_STATUSES:
            raise InvalidStateError(
                f"Invoice {invoice.invoice_number} is {invoice.status}; no reminder needed"
            )
        record_reminder(invoice, now)
        sub = db.session.get(Subscription, invoice.subscription_id)
        activity.log_action(
            sub,
            "reminder_sent",
            f"Payment reminder sent for invoice {invoice.invoice_number}",
            category="billing",
            metadata={
                "invoiceId": invoice.id,
                "remindersSent": invoice.reminders_sent,
                "alertType": "manual_payment_reminder",
            },
            performed_by=performed_by,
            now=now,
        )
    logger.info("Reminder %s sent for invoice %s", invoice.reminders_sent, invoice.invoice_number)
    return invoice


def mark_invoice_sent(
    invoice_id: int, *, now: Optional[datetime.datetime] = None
) -> Invoice:
    now = now or utc_now()
    with atomic():
        invoice = get_invoice(invoice_id, lock=True)
        if invoice.status in CLOSED_STATUSES:
            raise InvalidStateError(
                f"Invoice {invoice.invoice_number} is {invoice.status}"
            )
        if invoice.status == "draft":
            invoice.status = "sent"
        invoice.email_sent = True
        invoice.email_sent_date = now
    logger.info("Invoice %s marked as sent", invoice.invoice_number)
    return invoice


def cancel_invoice(
    invoice_id: int,
    reason: str,
    *,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Invoice:
    """Void an invoice nothing has been paid against."""
    now = now or utc_now()
    if not reason or not reason.strip():
        raise ValidationError("A cancellation reason is required")
    with atomic():
        invoice = get_invoice(invoice_id, lock=True)
        if invoice.status in CLOSED_STATUSES:
            raise InvalidStateError(
                f"Invoice {invoice.invoice_number} is already {invoice.status}"
            )
        if to_decimal(invoice.paid_amount, _ZERO) > 0:
            raise InvalidStateError(
                f"Invoice {invoice.invoice_number} has payments; refund them first"
            )
        open_payments = Payment.query.filter(
            Payment.invoice_id == invoice.id,
            Payment.status.in_(("pending", "processing")),
        ).count()
        if open_payments:
            raise InvalidStateError(
                f"Invoice {invoice.invoice_number} has {open_payments} open payment(s); "
                "fail or complete them first"
            )
        invoice.status = "cancelled"
        invoice.cancelled_reason = reason
        sub = db.session.get(Subscription, invoice.subscription_id)
        activity.log_action(
            sub,
            "updated",
            f"Invoice {invoice.invoice_number} cancelled",
            category="billing",
            metadata={"invoiceId": invoice.id, "reason": reason},
            performed_by=performed_by,
            now=now,
        )
    logger.info("Invoice %s cancelled: %s", invoice.invoice_number, reason)
    return invoice


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def find_overdue(now: Optional[datetime.datetime] = None) -> list[Invoice]:
    now = now or utc_now()
    return (
        Invoice.query.filter(
            Invoice.status.notin_(CLOSED_STATUSES),
            Invoice.due_date < now,
        )
        .order_by(Invoice.due_date)
        .all()
    )


def find_due_soon(days: int = 7, now: Optional[datetime.datetime] = None) -> list[Invoice]:
    now = now or utc_now()
    horizon = now + datetime.timedelta(days=days)
    return (
        Invoice.query.filter(
            Invoice.status.notin_(CLOSED_STATUSES),
            Invoice.due_date >= now,
            Invoice.due_date <= horizon,
        )
        .order_by(Invoice.due_date)
        .all()
    )
