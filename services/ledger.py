"""Payment ledger: payments, completions, failures and refunds.

The ledger is the only writer of ``Invoice.paid_amount`` and
``Subscription.total_revenue``.  Each public operation locks the payment,
its invoice and its subscription and updates them as one unit of work.
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
    VALID_PAYMENT_METHODS,
    Invoice,
    Payment,
    Subscription,
)
from services import activity
from services.invoice import get_invoice, remaining_amount
from services.numbering import generate_number
from services.settings import get_automation_config
from services.subscriptions import activate_after_payment
from utils import as_utc, money, to_decimal, utc_now

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")
OPEN_PAYMENT_STATUSES = ("pending", "processing")
REFUNDABLE_STATUSES = ("completed", "partially_refunded")


def get_payment(payment_id: int, *, lock: bool = False) -> Payment:
    query = Payment.query.filter_by(id=payment_id)
    if lock:
        query = query.with_for_update()
    payment = query.first()
    if not payment:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def _lock_subscription(subscription_id: int) -> Subscription:
    sub = Subscription.query.filter_by(id=subscription_id).with_for_update().first()
    if not sub:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return sub


def net_amount(payment: Payment) -> Decimal:
    return money(to_decimal(payment.amount, _ZERO) - to_decimal(payment.fees_total, _ZERO))


def refundable_amount(payment: Payment) -> Decimal:
    return money(to_decimal(payment.amount, _ZERO) - to_decimal(payment.refund_amount, _ZERO))


def _severity_for(amount: Decimal) -> str:
    threshold = get_automation_config().high_value_transaction_threshold
    return "high" if amount >= threshold else "medium"


def _positive_amount(value, field: str = "amount") -> Decimal:
    amount = to_decimal(value)
    if amount is None:
        raise ValidationError(f"{field} must be a number")
    amount = money(amount)
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    return amount


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------

def _new_payment(
    invoice: Invoice,
    amount: Decimal,
    method: str,
    *,
    payment_gateway: Optional[str],
    transaction_id: Optional[str],
    payment_reference: Optional[str],
    gateway_fee,
    processing_fee,
    notes: Optional[str],
    performed_by: str,
    now: datetime.datetime,
) -> Payment:
    if method not in VALID_PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method {method!r}")
    if invoice.status in ("cancelled", "refunded"):
        raise InvalidStateError(
            f"Invoice {invoice.invoice_number} is {invoice.status}; payments are not accepted"
        )
    sub = _lock_subscription(invoice.subscription_id)
    payment = Payment(
        payment_code=generate_number("payment", now=now),
        invoice_id=invoice.id,
        subscription_id=invoice.subscription_id,
        client_id=invoice.client_id,
        amount=amount,
        currency=invoice.currency,
        payment_method=method,
        payment_gateway=payment_gateway,
        status="pending",
        transaction_id=transaction_id,
        payment_reference=payment_reference,
        payment_date=now,
        gateway_fee=money(gateway_fee or 0),
        processing_fee=money(processing_fee or 0),
        refund_amount=_ZERO,
        notes=notes,
        processed_by=performed_by,
        created_at=now,
    )
    db.session.add(payment)
    db.session.flush()
    activity.log_action(
        sub,
        "payment_created",
        f"Payment {payment.payment_code} of {amount} {payment.currency} recorded "
        f"for invoice {invoice.invoice_number}",
        category="payment",
        severity=_severity_for(amount),
        metadata={
            "invoiceId": invoice.id,
            "paymentId": payment.id,
            "amount": str(amount),
            "method": method,
        },
        performed_by=performed_by,
        now=now,
    )
    return payment


def record_payment(
    invoice_id: int,
    amount,
    method: str,
    *,
    payment_gateway: Optional[str] = None,
    transaction_id: Optional[str] = None,
    payment_reference: Optional[str] = None,
    gateway_fee=0,
    processing_fee=0,
    notes: Optional[str] = None,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Payment:
    """Record a pending payment against an invoice."""
    now = now or utc_now()
    amount = _positive_amount(amount)
    with atomic():
        invoice = get_invoice(invoice_id, lock=True)
        payment = _new_payment(
            invoice, amount, method,
            payment_gateway=payment_gateway,
            transaction_id=transaction_id,
            payment_reference=payment_reference,
            gateway_fee=gateway_fee,
            processing_fee=processing_fee,
            notes=notes,
            performed_by=performed_by,
            now=now,
        )
    logger.info(
        "Payment %s recorded for invoice %s: %s", payment.payment_code, invoice_id, amount
    )
    return payment


# ---------------------------------------------------------------------------
# Completion / failure
# ---------------------------------------------------------------------------

def _apply_completion(
    payment: Payment,
    transaction_id: Optional[str],
    gateway_response: Optional[dict],
    performed_by: str,
    now: datetime.datetime,
) -> None:
    if payment.status not in OPEN_PAYMENT_STATUSES:
        raise InvalidStateError(
            f"Payment {payment.payment_code} is {payment.status} and cannot be completed"
        )
    invoice = get_invoice(payment.invoice_id, lock=True)
    if invoice.status in ("cancelled", "refunded"):
        raise InvalidStateError(
            f"Invoice {invoice.invoice_number} is {invoice.status}; "
            f"payment {payment.payment_code} cannot be completed against it"
        )
    sub = _lock_subscription(payment.subscription_id)
    amount = to_decimal(payment.amount, _ZERO)

    payment.status = "completed"
    payment.processed_date = now
    if transaction_id:
        payment.transaction_id = transaction_id
    if gateway_response:
        payment.gateway_response = gateway_response

    previous_paid = to_decimal(invoice.paid_amount, _ZERO)
    invoice.paid_amount = money(previous_paid + amount)
    invoice.payment_method = payment.payment_method
    invoice.transaction_id = payment.transaction_id
    invoice.payment_reference = payment.payment_reference
    fully_paid = invoice.paid_amount >= to_decimal(invoice.total, _ZERO)
    if fully_paid:
        invoice.status = "paid"
        invoice.payment_status = "paid"
        invoice.paid_date = now
    else:
        invoice.payment_status = "partial"

    sub.total_revenue = money(to_decimal(sub.total_revenue, _ZERO) + amount)

    activity.log_action(
        sub,
        "payment_received",
        f"Payment {payment.payment_code} of {amount} {payment.currency} received "
        f"for invoice {invoice.invoice_number}",
        category="payment",
        severity=_severity_for(amount),
        previous_values={"paidAmount": str(previous_paid)},
        new_values={
            "paidAmount": str(invoice.paid_amount),
            "paymentStatus": invoice.payment_status,
        },
        metadata={
            "invoiceId": invoice.id,
            "paymentId": payment.id,
            "amount": str(amount),
        },
        performed_by=performed_by,
        now=now,
    )
    if fully_paid:
        activate_after_payment(sub, now)


def complete_payment(
    payment_id: int,
    transaction_id: Optional[str] = None,
    gateway_response: Optional[dict] = None,
    *,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Payment:
    """Mark a pending payment completed and apply it to invoice and subscription."""
    now = now or utc_now()
    with atomic():
        payment = get_payment(payment_id, lock=True)
        _apply_completion(payment, transaction_id, gateway_response, performed_by, now)
    logger.info("Payment %s completed", payment.payment_code)
    return payment


def fail_payment(
    payment_id: int,
    reason: str,
    gateway_response: Optional[dict] = None,
    *,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Payment:
    """Mark a pending payment failed.  Invoice and subscription are untouched."""
    now = now or utc_now()
    with atomic():
        payment = get_payment(payment_id, lock=True)
        if payment.status not in OPEN_PAYMENT_STATUSES:
            raise InvalidStateError(
                f"Payment {payment.payment_code} is {payment.status} and cannot fail"
            )
        payment.status = "failed"
        payment.failure_reason = reason
        if gateway_response:
            payment.gateway_response = gateway_response
        sub = db.session.get(Subscription, payment.subscription_id)
        activity.log_action(
            sub,
            "payment_failed",
            f"Payment {payment.payment_code} failed: {reason}",
            category="payment",
            severity="high",
            metadata={
                "invoiceId": payment.invoice_id,
                "paymentId": payment.id,
                "amount": str(payment.amount),
                "reason": reason,
            },
            performed_by=performed_by,
            now=now,
        )
    logger.warning("Payment %s failed: %s", payment.payment_code, reason)
    return payment


def mark_invoice_paid(
    invoice_id: int,
    amount=None,
    method: str = "offline",
    *,
    transaction_id: Optional[str] = None,
    payment_reference: Optional[str] = None,
    notes: Optional[str] = None,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Payment:
    """Record and complete a payment in one step (offline settlements).

    Without *amount* the invoice's remaining balance is paid.
    """
    now = now or utc_now()
    with atomic():
        invoice = get_invoice(invoice_id, lock=True)
        if invoice.status == "paid":
            raise InvalidStateError(f"Invoice {invoice.invoice_number} is already paid")
        value = _positive_amount(amount if amount not in (None, "") else remaining_amount(invoice))
        payment = _new_payment(
            invoice, value, method,
            payment_gateway=None,
            transaction_id=transaction_id,
            payment_reference=payment_reference,
            gateway_fee=0,
            processing_fee=0,
            notes=notes,
            performed_by=performed_by,
            now=now,
        )
        _apply_completion(payment, transaction_id, None, performed_by, now)
    logger.info("Invoice %s settled by payment %s", invoice.invoice_number, payment.payment_code)
    return payment


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------

def refund_payment(
    payment_id: int,
    amount=None,
    reason: str = "",
    refund_transaction_id: Optional[str] = None,
    *,
    performed_by: str = SYSTEM_ACTOR,
    now: Optional[datetime.datetime] = None,
) -> Payment:
    """Refund part or all of a completed payment.

    The refunded amount is taken back off the invoice's paid amount and the
    subscription's revenue.  An invoice with nothing left paid becomes
    ``refunded``; a previously paid invoice with a remainder reopens as
    ``sent`` (or ``overdue`` past its due date).  The same rules apply
    whatever the subscription's status.
    """
    now = now or utc_now()
    with atomic():
        payment = get_payment(payment_id, lock=True)
        if payment.status not in REFUNDABLE_STATUSES:
            raise InvalidStateError(
                f"Payment {payment.payment_code} is {payment.status} and cannot be refunded"
            )
        refundable = refundable_amount(payment)
        value = _positive_amount(
            amount if amount not in (None, "") else refundable, "refund amount"
        )
        if value > refundable:
            raise ValidationError(
                f"Refund of {value} exceeds refundable amount {refundable} "
                f"on payment {payment.payment_code}"
            )

        invoice = get_invoice(payment.invoice_id, lock=True)
        sub = _lock_subscription(payment.subscription_id)

        payment.is_refunded = True
        payment.refund_amount = money(to_decimal(payment.refund_amount, _ZERO) + value)
        payment.refund_date = now
        payment.refund_reason = reason
        payment.refund_transaction_id = refund_transaction_id
        if payment.refund_amount >= to_decimal(payment.amount, _ZERO):
            payment.status = "refunded"
        else:
            payment.status = "partially_refunded"

        previous_paid = to_decimal(invoice.paid_amount, _ZERO)
        invoice.paid_amount = money(previous_paid - value)
        if invoice.paid_amount <= 0:
            invoice.paid_amount = _ZERO
            invoice.status = "refunded"
            invoice.payment_status = "refunded"
        else:
            invoice.payment_status = "partial"
            if invoice.status == "paid":
                invoice.status = "overdue" if now > as_utc(invoice.due_date) else "sent"
                invoice.paid_date = None

        sub.total_revenue = money(to_decimal(sub.total_revenue, _ZERO) - value)

        activity.log_action(
            sub,
            "payment_refunded",
            f"Refund of {value} {payment.currency} on payment {payment.payment_code}",
            category="payment",
            severity=_severity_for(value),
            previous_values={"paidAmount": str(previous_paid)},
            new_values={
                "paidAmount": str(invoice.paid_amount),
                "paymentStatus": payment.status,
            },
            metadata={
                "invoiceId": invoice.id,
                "paymentId": payment.id,
                "amount": str(value),
                "reason": reason,
            },
            performed_by=performed_by,
            now=now,
        )
    logger.info(
        "Payment %s refunded %s (%s)", payment.payment_code, value, payment.status
    )
    return payment


# ---------------------------------------------------------------------------
# Audit metadata
# ---------------------------------------------------------------------------

def verify_payment(
    payment_id: int, verified_by: str, *, now: Optional[datetime.datetime] = None
) -> Payment:
    now = now or utc_now()
    with atomic():
        payment = get_payment(payment_id, lock=True)
        payment.verified_by = verified_by
        payment.verified_date = now
        sub = db.session.get(Subscription, payment.subscription_id)
        activity.log_action(
            sub,
            "payment_verified",
            f"Payment {payment.payment_code} verified by {verified_by}",
            category="payment",
            severity="low",
            metadata={"paymentId": payment.id},
            performed_by=verified_by,
            now=now,
        )
    return payment


def reconcile_payment(
    payment_id: int, reconciled_by: str, *, now: Optional[datetime.datetime] = None
) -> Payment:
    now = now or utc_now()
    with atomic():
        payment = get_payment(payment_id, lock=True)
        if payment.status in OPEN_PAYMENT_STATUSES or payment.status in ("failed", "cancelled"):
            raise InvalidStateError(
                f"Payment {payment.payment_code} is {payment.status} and cannot be reconciled"
            )
        payment.reconciled = True
        payment.reconciled_date = now
        payment.reconciled_by = reconciled_by
        sub = db.session.get(Subscription, payment.subscription_id)
        activity.log_action(
            sub,
            "payment_reconciled",
            f"Payment {payment.payment_code} reconciled by {reconciled_by}",
            category="payment",
            severity="low",
            metadata={"paymentId": payment.id},
            performed_by=reconciled_by,
            now=now,
        )
    return payment


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def find_pending() -> list[Payment]:
    return (
        Payment.query.filter(Payment.status.in_(OPEN_PAYMENT_STATUSES))
        .order_by(Payment.payment_date)
        .all()
    )


def find_failed() -> list[Payment]:
    return (
        Payment.query.filter(Payment.status.in_(("failed", "cancelled")))
        .order_by(Payment.payment_date.desc())
        .all()
    )
