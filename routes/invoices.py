"""Invoice routes."""

import logging

from flask import Blueprint, request

from models import Invoice, Payment, VALID_INVOICE_STATUSES
from routes.common import current_actor, json_body, ok, optional_datetime
from schemas import invoice_to_dict, payment_to_dict
from services import invoice as invoice_service
from services import ledger
from services.notifier import current_notifier, safe_notify
from utils import safe_int, utc_now

logger = logging.getLogger(__name__)

invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


@invoices_bp.route("", methods=["GET"])
def list_invoices():
    if request.args.get("overdue"):
        invoices = invoice_service.find_overdue()
    elif request.args.get("dueSoon"):
        invoices = invoice_service.find_due_soon(safe_int(request.args.get("dueSoon"), 7))
    else:
        query = Invoice.query
        status = request.args.get("status")
        if status in VALID_INVOICE_STATUSES:
            query = query.filter_by(status=status)
        subscription_id = safe_int(request.args.get("subscriptionId"), 0)
        if subscription_id:
            query = query.filter_by(subscription_id=subscription_id)
        invoices = query.order_by(Invoice.id.desc()).all()
    return ok([invoice_to_dict(i) for i in invoices], count=len(invoices))


@invoices_bp.route("", methods=["POST"])
def generate_invoice():
    data = json_body()
    invoice = invoice_service.generate_invoice(
        safe_int(data.get("subscriptionId")),
        optional_datetime(data, "periodStart"),
        optional_datetime(data, "periodEnd"),
        optional_datetime(data, "dueDate"),
        performed_by=current_actor(),
    )
    return ok(invoice_to_dict(invoice), 201, message="Invoice generated successfully")


@invoices_bp.route("/<int:invoice_id>", methods=["GET"])
def get_invoice(invoice_id: int):
    invoice = invoice_service.get_invoice(invoice_id)
    data = invoice_to_dict(invoice)
    late_fee_pct = request.args.get("lateFeePercentage")
    if late_fee_pct:
        data["lateFee"] = str(invoice_service.late_fee(invoice, late_fee_pct, utc_now()))
    data["payments"] = [
        payment_to_dict(p)
        for p in Payment.query.filter_by(invoice_id=invoice.id).order_by(Payment.id)
    ]
    return ok(data)


@invoices_bp.route("/<int:invoice_id>/send", methods=["POST"])
def send_invoice(invoice_id: int):
    invoice = invoice_service.mark_invoice_sent(invoice_id)
    safe_notify(current_notifier(), "invoice_generated", invoice, {})
    return ok(invoice_to_dict(invoice), message="Invoice sent")


@invoices_bp.route("/<int:invoice_id>/remind", methods=["POST"])
def remind_invoice(invoice_id: int):
    invoice = invoice_service.send_invoice_reminder(invoice_id, performed_by=current_actor())
    safe_notify(
        current_notifier(),
        "payment_reminder",
        invoice,
        {"daysOverdue": invoice_service.days_overdue(invoice, utc_now())},
    )
    return ok(invoice_to_dict(invoice), message="Reminder sent successfully")


@invoices_bp.route("/<int:invoice_id>/cancel", methods=["POST"])
def cancel_invoice(invoice_id: int):
    data = json_body()
    invoice = invoice_service.cancel_invoice(
        invoice_id, data.get("reason", ""), performed_by=current_actor()
    )
    return ok(invoice_to_dict(invoice), message="Invoice cancelled")


@invoices_bp.route("/<int:invoice_id>/mark-paid", methods=["POST"])
def mark_invoice_paid(invoice_id: int):
    data = json_body()
    payment = ledger.mark_invoice_paid(
        invoice_id,
        data.get("amount"),
        data.get("paymentMethod", "offline"),
        transaction_id=data.get("transactionId"),
        payment_reference=data.get("paymentReference"),
        notes=data.get("notes"),
        performed_by=current_actor(),
    )
    invoice = invoice_service.get_invoice(invoice_id)
    return ok(
        {"invoice": invoice_to_dict(invoice), "payment": payment_to_dict(payment)},
        message="Invoice marked as paid",
    )
