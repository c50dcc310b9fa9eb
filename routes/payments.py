"""Payment routes."""

import logging

from flask import Blueprint, request

from models import Payment, VALID_PAYMENT_STATUSES
from routes.common import current_actor, json_body, ok
from schemas import payment_to_dict
from services import ledger
from utils import safe_int

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.route("", methods=["GET"])
def list_payments():
    status = request.args.get("status")
    if status == "open":
        payments = ledger.find_pending()
    elif status == "unsuccessful":
        payments = ledger.find_failed()
    else:
        query = Payment.query
        if status in VALID_PAYMENT_STATUSES:
            query = query.filter_by(status=status)
        invoice_id = safe_int(request.args.get("invoiceId"), 0)
        if invoice_id:
            query = query.filter_by(invoice_id=invoice_id)
        payments = query.order_by(Payment.id.desc()).all()
    return ok([payment_to_dict(p) for p in payments], count=len(payments))


@payments_bp.route("", methods=["POST"])
def record_payment():
    data = json_body()
    fees = data.get("fees") or {}
    payment = ledger.record_payment(
        safe_int(data.get("invoiceId")),
        data.get("amount"),
        data.get("paymentMethod", "online"),
        payment_gateway=data.get("paymentGateway"),
        transaction_id=data.get("transactionId"),
        payment_reference=data.get("paymentReference"),
        gateway_fee=fees.get("gatewayFee", 0),
        processing_fee=fees.get("processingFee", 0),
        notes=data.get("notes"),
        performed_by=current_actor(),
    )
    return ok(payment_to_dict(payment), 201, message="Payment recorded successfully")


@payments_bp.route("/<int:payment_id>", methods=["GET"])
def get_payment(payment_id: int):
    return ok(payment_to_dict(ledger.get_payment(payment_id)))


@payments_bp.route("/<int:payment_id>/complete", methods=["POST"])
def complete_payment(payment_id: int):
    data = json_body()
    payment = ledger.complete_payment(
        payment_id,
        data.get("transactionId"),
        data.get("gatewayResponse"),
        performed_by=current_actor(),
    )
    return ok(payment_to_dict(payment), message="Payment completed")


@payments_bp.route("/<int:payment_id>/fail", methods=["POST"])
def fail_payment(payment_id: int):
    data = json_body()
    payment = ledger.fail_payment(
        payment_id,
        data.get("reason", "Payment failed"),
        data.get("gatewayResponse"),
        performed_by=current_actor(),
    )
    return ok(payment_to_dict(payment), message="Payment marked as failed")


@payments_bp.route("/<int:payment_id>/refund", methods=["POST"])
def refund_payment(payment_id: int):
    data = json_body()
    payment = ledger.refund_payment(
        payment_id,
        data.get("amount"),
        data.get("reason", ""),
        data.get("refundTransactionId"),
        performed_by=current_actor(),
    )
    return ok(payment_to_dict(payment), message="Refund processed successfully")


@payments_bp.route("/<int:payment_id>/verify", methods=["POST"])
def verify_payment(payment_id: int):
    payment = ledger.verify_payment(payment_id, current_actor())
    return ok(payment_to_dict(payment), message="Payment verified")


@payments_bp.route("/<int:payment_id>/reconcile", methods=["POST"])
def reconcile_payment(payment_id: int):
    payment = ledger.reconcile_payment(payment_id, current_actor())
    return ok(payment_to_dict(payment), message="Payment reconciled")
