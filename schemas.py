"""JSON views of the billing entities.

Field names follow the persisted document layout (camelCase, nested
``billingPeriod`` / ``amount`` / ``fees`` / ``refund`` groups) so API
consumers see the same shape as stored records.
"""

from __future__ import annotations

from typing import Optional

from models import Invoice, Payment, Subscription, SubscriptionLog
from services import invoice as invoice_service
from services import ledger
from services.lifecycle import (
    SubscriptionTerms,
    days_remaining,
    duration_in_months,
    effective_price,
    is_expiring_soon,
)
from utils import as_utc, money, utc_now


def _iso(value) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _amount(value) -> str:
    return str(money(value or 0))


def subscription_to_dict(sub: Subscription, now=None) -> dict:
    now = now or utc_now()
    terms = SubscriptionTerms.from_subscription(sub)
    return {
        "id": sub.id,
        "subscriptionCode": sub.subscription_code,
        "clientId": sub.client_id,
        "packageId": sub.package_id,
        "billingCycle": sub.billing_cycle,
        "cycleDays": sub.cycle_days,
        "status": sub.status,
        "statusReason": sub.status_reason,
        "startDate": _iso(sub.start_date),
        "endDate": _iso(sub.end_date),
        "nextBillingDate": _iso(sub.next_billing_date),
        "lastBillingDate": _iso(sub.last_billing_date),
        "basePrice": _amount(sub.base_price),
        "currency": sub.currency,
        "discount": {
            "percentage": str(sub.discount_percentage or 0),
            "amount": _amount(sub.discount_amount),
            "reason": sub.discount_reason,
            "validUntil": _iso(sub.discount_valid_until),
        },
        "tax": {
            "percentage": str(sub.tax_percentage or 0),
            "amount": _amount(sub.tax_amount),
        },
        "autoRenew": bool(sub.auto_renew),
        "trialDays": sub.trial_days or 0,
        "gracePeriodDays": sub.grace_period_days,
        "renewalCount": sub.renewal_count or 0,
        "totalRevenue": _amount(sub.total_revenue),
        "notes": sub.notes,
        "assignedBy": sub.assigned_by,
        "cancelledAt": _iso(sub.cancelled_at),
        "suspendedAt": _iso(sub.suspended_at),
        "createdAt": _iso(sub.created_at),
        "daysRemaining": days_remaining(terms, now),
        "isExpiringSoon": is_expiring_soon(terms, now),
        "effectivePrice": str(effective_price(terms)),
        "durationInMonths": duration_in_months(terms),
    }


def invoice_to_dict(invoice: Invoice, now=None) -> dict:
    now = now or utc_now()
    return {
        "id": invoice.id,
        "invoiceNumber": invoice.invoice_number,
        "subscriptionId": invoice.subscription_id,
        "clientId": invoice.client_id,
        "packageId": invoice.package_id,
        "billingPeriod": {
            "startDate": _iso(invoice.billing_period_start),
            "endDate": _iso(invoice.billing_period_end),
        },
        "description": invoice.description,
        "amount": {
            "subtotal": _amount(invoice.subtotal),
            "discount": _amount(invoice.discount),
            "tax": _amount(invoice.tax),
            "total": _amount(invoice.total),
        },
        "currency": invoice.currency,
        "status": invoice.status,
        "paymentStatus": invoice.payment_status,
        "paymentMethod": invoice.payment_method,
        "transactionId": invoice.transaction_id,
        "dueDate": _iso(invoice.due_date),
        "paidDate": _iso(invoice.paid_date),
        "paidAmount": _amount(invoice.paid_amount),
        "remindersSent": invoice.reminders_sent or 0,
        "lastReminderDate": _iso(invoice.last_reminder_date),
        "emailSent": bool(invoice.email_sent),
        "createdAt": _iso(invoice.created_at),
        "isOverdue": invoice_service.is_overdue(invoice, now),
        "daysOverdue": invoice_service.days_overdue(invoice, now),
        "remainingAmount": str(invoice_service.remaining_amount(invoice)),
        "paymentPercentage": invoice_service.payment_percentage(invoice),
    }


def payment_to_dict(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "paymentId": payment.payment_code,
        "invoiceId": payment.invoice_id,
        "subscriptionId": payment.subscription_id,
        "clientId": payment.client_id,
        "amount": _amount(payment.amount),
        "currency": payment.currency,
        "paymentMethod": payment.payment_method,
        "paymentGateway": payment.payment_gateway,
        "status": payment.status,
        "transactionId": payment.transaction_id,
        "paymentReference": payment.payment_reference,
        "paymentDate": _iso(payment.payment_date),
        "processedDate": _iso(payment.processed_date),
        "failureReason": payment.failure_reason,
        "fees": {
            "gatewayFee": _amount(payment.gateway_fee),
            "processingFee": _amount(payment.processing_fee),
            "total": _amount(payment.fees_total),
        },
        "refund": {
            "isRefunded": bool(payment.is_refunded),
            "refundAmount": _amount(payment.refund_amount),
            "refundDate": _iso(payment.refund_date),
            "refundReason": payment.refund_reason,
            "refundTransactionId": payment.refund_transaction_id,
        },
        "verifiedBy": payment.verified_by,
        "verifiedDate": _iso(payment.verified_date),
        "reconciled": bool(payment.reconciled),
        "reconciledBy": payment.reconciled_by,
        "reconciledDate": _iso(payment.reconciled_date),
        "netAmount": str(ledger.net_amount(payment)),
        "refundableAmount": str(ledger.refundable_amount(payment)),
    }


def log_to_dict(entry: SubscriptionLog) -> dict:
    return {
        "id": entry.id,
        "subscriptionId": entry.subscription_id,
        "clientId": entry.client_id,
        "action": entry.action,
        "description": entry.description,
        "previousValues": entry.previous_values,
        "newValues": entry.new_values,
        "metadata": entry.log_metadata or {},
        "performedBy": entry.performed_by,
        "performedByRole": entry.performed_by_role,
        "timestamp": _iso(entry.timestamp),
        "severity": entry.severity,
        "category": entry.category,
        "reviewedBy": entry.reviewed_by,
        "reviewedAt": _iso(entry.reviewed_at),
    }
