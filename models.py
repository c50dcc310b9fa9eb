"""SQLAlchemy models for the subscription billing ledger."""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import event, inspect

from exceptions import InvalidStateError
from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Enumerations (persisted values)
# ---------------------------------------------------------------------------

VALID_BILLING_CYCLES = {"monthly", "quarterly", "yearly", "custom"}
VALID_SUBSCRIPTION_STATUSES = {"active", "pending_payment", "suspended", "expired", "cancelled"}
VALID_INVOICE_STATUSES = {"draft", "sent", "paid", "overdue", "cancelled", "refunded"}
VALID_INVOICE_PAYMENT_STATUSES = {"pending", "partial", "paid", "failed", "refunded"}
VALID_PAYMENT_STATUSES = {
    "pending",
    "processing",
    "completed",
    "failed",
    "cancelled",
    "refunded",
    "partially_refunded",
}
VALID_PAYMENT_METHODS = {
    "online",
    "offline",
    "bank_transfer",
    "check",
    "cash",
    "card",
    "digital_wallet",
    "cryptocurrency",
}
VALID_LOG_ACTIONS = {
    "created",
    "updated",
    "renewed",
    "cancelled",
    "suspended",
    "reactivated",
    "expired",
    "payment_created",
    "payment_received",
    "payment_failed",
    "payment_refunded",
    "payment_verified",
    "payment_reconciled",
    "invoice_generated",
    "reminder_sent",
    "grace_period_started",
    "auto_renewed",
    "auto_renewal_failed",
    "manually_renewed",
    "downgraded",
    "upgraded",
    "discount_applied",
    "discount_removed",
}
CRITICAL_LOG_ACTIONS = {"cancelled", "suspended", "expired", "payment_failed"}
VALID_LOG_CATEGORIES = {"subscription", "billing", "payment", "renewal", "cancellation", "system"}
VALID_LOG_SEVERITIES = {"low", "medium", "high", "critical"}

SYSTEM_ACTOR = "system"

_ZERO = Decimal("0.00")


# ---------------------------------------------------------------------------
# Collaborator records (owned by onboarding / package management)
# ---------------------------------------------------------------------------

class Client(db.Model):
    """A paying customer organisation."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    company_name = db.Column(db.String(160))
    email = db.Column(db.String(120))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)


class Package(db.Model):
    """A sellable package with list prices per billing cycle."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(60), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    description = db.Column(db.Text)
    price_monthly = db.Column(db.Numeric(10, 2, asdecimal=True), default=0.0)
    price_quarterly = db.Column(db.Numeric(10, 2, asdecimal=True))
    price_yearly = db.Column(db.Numeric(10, 2, asdecimal=True))
    currency = db.Column(db.String(10), default="USD")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------

class Subscription(db.Model):
    """A client's time-bound entitlement to a package."""
    id = db.Column(db.Integer, primary_key=True)
    subscription_code = db.Column(db.String(30), unique=True)
    client_id = db.Column(db.Integer, db.ForeignKey("client.id"), nullable=False)
    package_id = db.Column(db.Integer, db.ForeignKey("package.id"), nullable=False)
    billing_cycle = db.Column(db.String(20), nullable=False, default="monthly")
    cycle_days = db.Column(db.Integer)  # only for billing_cycle == "custom"
    status = db.Column(db.String(30), nullable=False, default="active")
    start_date = db.Column(db.DateTime, nullable=False, default=utc_now)
    end_date = db.Column(db.DateTime, nullable=False)
    next_billing_date = db.Column(db.DateTime)
    last_billing_date = db.Column(db.DateTime)
    base_price = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(10), default="USD")
    discount_percentage = db.Column(db.Numeric(5, 2, asdecimal=True), default=_ZERO)
    discount_amount = db.Column(db.Numeric(10, 2, asdecimal=True), default=_ZERO)
    discount_reason = db.Column(db.String(255))
    discount_valid_until = db.Column(db.DateTime)
    tax_percentage = db.Column(db.Numeric(5, 2, asdecimal=True), default=_ZERO)
    tax_amount = db.Column(db.Numeric(10, 2, asdecimal=True), default=_ZERO)
    auto_renew = db.Column(db.Boolean, default=False)
    trial_days = db.Column(db.Integer, default=0)
    grace_period_days = db.Column(db.Integer, default=3)
    renewal_count = db.Column(db.Integer, default=0)
    total_revenue = db.Column(db.Numeric(12, 2, asdecimal=True), default=_ZERO)
    notes = db.Column(db.Text)
    status_reason = db.Column(db.String(255))
    assigned_by = db.Column(db.String(80))
    cancelled_at = db.Column(db.DateTime)
    suspended_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.Index("ix_subscription_client_status", "client_id", "status"),
        db.Index("ix_subscription_package_status", "package_id", "status"),
        db.Index("ix_subscription_end_date_status", "end_date", "status"),
        db.Index("ix_subscription_next_billing_status", "next_billing_date", "status"),
    )


# ---------------------------------------------------------------------------
# Invoice
# ---------------------------------------------------------------------------

class Invoice(db.Model):
    """A bill for one subscription billing period."""
    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(30), unique=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey("client.id"), nullable=False)
    package_id = db.Column(db.Integer, db.ForeignKey("package.id"), nullable=False)
    billing_period_start = db.Column(db.DateTime, nullable=False)
    billing_period_end = db.Column(db.DateTime, nullable=False)
    description = db.Column(db.String(255))
    subtotal = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    discount = db.Column(db.Numeric(10, 2, asdecimal=True), default=_ZERO)
    tax = db.Column(db.Numeric(10, 2, asdecimal=True), default=_ZERO)
    total = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=_ZERO)
    discount_percentage = db.Column(db.Numeric(5, 2, asdecimal=True), default=_ZERO)
    discount_reason = db.Column(db.String(255))
    tax_percentage = db.Column(db.Numeric(5, 2, asdecimal=True), default=_ZERO)
    currency = db.Column(db.String(10), default="USD")
    status = db.Column(db.String(30), default="draft")
    payment_status = db.Column(db.String(30), default="pending")
    payment_method = db.Column(db.String(30))
    transaction_id = db.Column(db.String(120))
    payment_reference = db.Column(db.String(120))
    due_date = db.Column(db.DateTime, nullable=False)
    paid_date = db.Column(db.DateTime)
    paid_amount = db.Column(db.Numeric(10, 2, asdecimal=True), default=_ZERO)
    notes = db.Column(db.Text)
    email_sent = db.Column(db.Boolean, default=False)
    email_sent_date = db.Column(db.DateTime)
    reminders_sent = db.Column(db.Integer, default=0)
    last_reminder_date = db.Column(db.DateTime)
    generated_by = db.Column(db.String(80))
    cancelled_reason = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.Index("ix_invoice_subscription_status", "subscription_id", "status"),
        db.Index("ix_invoice_client_status", "client_id", "status"),
        db.Index("ix_invoice_due_date_status", "due_date", "status"),
        db.Index("ix_invoice_billing_period", "billing_period_start", "billing_period_end"),
    )


def _recompute_invoice_total(_mapper, _connection, target):
    """Keep ``total == subtotal - discount + tax`` on every write."""
    subtotal = Decimal(str(target.subtotal or 0))
    discount = Decimal(str(target.discount or 0))
    tax = Decimal(str(target.tax or 0))
    target.total = subtotal - discount + tax


event.listen(Invoice, "before_insert", _recompute_invoice_total)
event.listen(Invoice, "before_update", _recompute_invoice_total)


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------

class Payment(db.Model):
    """A payment received (or attempted) against an invoice."""
    id = db.Column(db.Integer, primary_key=True)
    payment_code = db.Column(db.String(30), unique=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), nullable=False)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey("client.id"), nullable=False)
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(10), default="USD")
    payment_method = db.Column(db.String(30), nullable=False)
    payment_gateway = db.Column(db.String(30))
    status = db.Column(db.String(30), nullable=False, default="pending")
    transaction_id = db.Column(db.String(120), index=True)
    gateway_transaction_id = db.Column(db.String(120))
    payment_reference = db.Column(db.String(120))
    payment_date = db.Column(db.DateTime, default=utc_now)
    processed_date = db.Column(db.DateTime)
    failure_reason = db.Column(db.String(255))
    gateway_response = db.Column(db.JSON)
    gateway_fee = db.Column(db.Numeric(10, 2, asdecimal=True), default=_ZERO)
    processing_fee = db.Column(db.Numeric(10, 2, asdecimal=True), default=_ZERO)
    fees_total = db.Column(db.Numeric(10, 2, asdecimal=True), default=_ZERO)
    is_refunded = db.Column(db.Boolean, default=False)
    refund_amount = db.Column(db.Numeric(10, 2, asdecimal=True), default=_ZERO)
    refund_date = db.Column(db.DateTime)
    refund_reason = db.Column(db.String(255))
    refund_transaction_id = db.Column(db.String(120))
    notes = db.Column(db.Text)
    internal_notes = db.Column(db.Text)
    processed_by = db.Column(db.String(80))
    verified_by = db.Column(db.String(80))
    verified_date = db.Column(db.DateTime)
    reconciled = db.Column(db.Boolean, default=False)
    reconciled_date = db.Column(db.DateTime)
    reconciled_by = db.Column(db.String(80))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.Index("ix_payment_invoice_status", "invoice_id", "status"),
        db.Index("ix_payment_subscription_status", "subscription_id", "status"),
        db.Index("ix_payment_status_date", "status", "payment_date"),
        db.CheckConstraint("refund_amount <= amount", name="ck_payment_refund_le_amount"),
    )


def _recompute_payment_fees(_mapper, _connection, target):
    gateway_fee = Decimal(str(target.gateway_fee or 0))
    processing_fee = Decimal(str(target.processing_fee or 0))
    target.fees_total = gateway_fee + processing_fee


event.listen(Payment, "before_insert", _recompute_payment_fees)
event.listen(Payment, "before_update", _recompute_payment_fees)


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------

class SubscriptionLog(db.Model):
    """Append-only lifecycle event.  Only the review marker may change later."""
    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey("client.id"), nullable=False)
    action = db.Column(db.String(40), nullable=False)
    description = db.Column(db.Text, nullable=False)
    previous_values = db.Column(db.JSON)
    new_values = db.Column(db.JSON)
    log_metadata = db.Column("metadata", db.JSON, default=dict)
    performed_by = db.Column(db.String(80), nullable=False, default=SYSTEM_ACTOR)
    performed_by_role = db.Column(db.String(40), nullable=False, default=SYSTEM_ACTOR)
    timestamp = db.Column(db.DateTime, default=utc_now, nullable=False)
    severity = db.Column(db.String(20), default="medium")
    category = db.Column(db.String(20), nullable=False, default="subscription")
    idempotency_key = db.Column(db.String(160), unique=True)
    reviewed_by = db.Column(db.String(80))
    reviewed_at = db.Column(db.DateTime)

    __table_args__ = (
        db.Index("ix_subscription_log_subscription_ts", "subscription_id", "timestamp"),
        db.Index("ix_subscription_log_client_ts", "client_id", "timestamp"),
        db.Index("ix_subscription_log_action_ts", "action", "timestamp"),
        db.Index("ix_subscription_log_severity_ts", "severity", "timestamp"),
    )


_LOG_MUTABLE_COLUMNS = {"reviewed_by", "reviewed_at"}


def _refuse_log_rewrite(_mapper, _connection, target):
    state = inspect(target)
    for attr in state.mapper.column_attrs:
        if attr.key in _LOG_MUTABLE_COLUMNS:
            continue
        if state.attrs[attr.key].history.has_changes():
            raise InvalidStateError(
                f"Activity log entry {target.id} is append-only ({attr.key} cannot change)"
            )


event.listen(SubscriptionLog, "before_update", _refuse_log_rewrite)


# ---------------------------------------------------------------------------
# Numbering, settings and automation runs
# ---------------------------------------------------------------------------

class NumberSequence(db.Model):
    """Sequence counters per entity type and scope (e.g. year)."""
    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(40), nullable=False)
    scope_key = db.Column(db.String(120), default="")
    last_value = db.Column(db.Integer, default=0)

    __table_args__ = (
        db.UniqueConstraint("entity_type", "scope_key", name="uq_number_sequence"),
    )


class AppSetting(db.Model):
    """Key-value store for operator-editable settings."""
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(80), unique=True, nullable=False)
    value = db.Column(db.Text)
    updated_by = db.Column(db.String(80))
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


class AutomationRun(db.Model):
    """One execution of the daily billing automation and its report."""
    id = db.Column(db.Integer, primary_key=True)
    run_date = db.Column(db.Date, nullable=False, index=True)
    started_at = db.Column(db.DateTime, default=utc_now)
    finished_at = db.Column(db.DateTime)
    triggered_by = db.Column(db.String(80), default=SYSTEM_ACTOR)
    cancelled = db.Column(db.Boolean, default=False)
    report = db.Column(db.JSON)
