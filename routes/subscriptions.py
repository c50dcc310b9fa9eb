"""Subscription routes."""

import logging

from flask import Blueprint, request

from models import Invoice, Payment, Subscription, VALID_SUBSCRIPTION_STATUSES
from routes.common import current_actor, json_body, ok, optional_datetime
from schemas import (
    invoice_to_dict,
    log_to_dict,
    payment_to_dict,
    subscription_to_dict,
)
from services import activity
from services import subscriptions as store
from utils import safe_int

logger = logging.getLogger(__name__)

subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/api/subscriptions")


@subscriptions_bp.route("", methods=["GET"])
def list_subscriptions():
    query = Subscription.query
    status = request.args.get("status")
    if status in VALID_SUBSCRIPTION_STATUSES:
        query = query.filter_by(status=status)
    client_id = safe_int(request.args.get("clientId"), 0)
    if client_id:
        query = query.filter_by(client_id=client_id)
    subs = query.order_by(Subscription.id.desc()).all()
    return ok([subscription_to_dict(s) for s in subs], count=len(subs))


@subscriptions_bp.route("", methods=["POST"])
def create_subscription():
    data = json_body()
    sub = store.create_subscription(
        safe_int(data.get("clientId")),
        safe_int(data.get("packageId")),
        data.get("billingCycle", "monthly"),
        custom_price=data.get("customPrice"),
        start_date=optional_datetime(data, "startDate"),
        end_date=optional_datetime(data, "endDate"),
        cycle_days=safe_int(data.get("cycleDays"), 0) or None,
        status=data.get("status", "active"),
        auto_renew=bool(data.get("autoRenew", False)),
        discount_percentage=(data.get("discount") or {}).get("percentage", 0),
        discount_amount=(data.get("discount") or {}).get("amount", 0),
        discount_reason=(data.get("discount") or {}).get("reason"),
        tax_percentage=(data.get("tax") or {}).get("percentage", 0),
        tax_amount=(data.get("tax") or {}).get("amount", 0),
        trial_days=safe_int(data.get("trialDays"), 0),
        grace_period_days=data.get("gracePeriodDays"),
        notes=data.get("notes"),
        performed_by=current_actor(),
    )
    return ok(subscription_to_dict(sub), 201, message="Subscription created successfully")


@subscriptions_bp.route("/expiring", methods=["GET"])
def expiring_subscriptions():
    days = safe_int(request.args.get("days"), 10)
    subs = store.find_expiring(days)
    return ok([subscription_to_dict(s) for s in subs], count=len(subs))


@subscriptions_bp.route("/expired", methods=["GET"])
def expired_subscriptions():
    subs = store.find_expired()
    return ok([subscription_to_dict(s) for s in subs], count=len(subs))


@subscriptions_bp.route("/<int:subscription_id>", methods=["GET"])
def get_subscription(subscription_id: int):
    sub = store.get_subscription(subscription_id)
    data = subscription_to_dict(sub)
    data["invoices"] = [
        invoice_to_dict(i)
        for i in Invoice.query.filter_by(subscription_id=sub.id).order_by(Invoice.id.desc())
    ]
    data["payments"] = [
        payment_to_dict(p)
        for p in Payment.query.filter_by(subscription_id=sub.id).order_by(Payment.id.desc())
    ]
    data["timeline"] = [log_to_dict(e) for e in activity.timeline(sub.id)[:20]]
    return ok(data)


_API_FIELDS = {
    "notes": "notes",
    "autoRenew": "auto_renew",
    "gracePeriodDays": "grace_period_days",
    "basePrice": "base_price",
    "discountPercentage": "discount_percentage",
    "discountAmount": "discount_amount",
    "discountReason": "discount_reason",
    "discountValidUntil": "discount_valid_until",
    "taxPercentage": "tax_percentage",
    "taxAmount": "tax_amount",
}


@subscriptions_bp.route("/<int:subscription_id>", methods=["PATCH"])
def update_subscription(subscription_id: int):
    data = json_body()
    changes = {_API_FIELDS.get(key, key): value for key, value in data.items()}
    sub = store.update_subscription(subscription_id, changes, performed_by=current_actor())
    return ok(subscription_to_dict(sub), message="Subscription updated successfully")


@subscriptions_bp.route("/<int:subscription_id>/renew", methods=["POST"])
def renew_subscription(subscription_id: int):
    data = json_body()
    discount = data.get("discount") or {}
    sub = store.renew_subscription(
        subscription_id,
        billing_cycle=data.get("billingCycle"),
        custom_price=data.get("customPrice"),
        discount_percentage=discount.get("percentage"),
        discount_amount=discount.get("amount"),
        notes=data.get("notes"),
        performed_by=current_actor(),
    )
    return ok(subscription_to_dict(sub), message="Subscription renewed successfully")


@subscriptions_bp.route("/<int:subscription_id>/suspend", methods=["POST"])
def suspend_subscription(subscription_id: int):
    data = json_body()
    sub = store.suspend_subscription(
        subscription_id, data.get("reason", ""), performed_by=current_actor()
    )
    return ok(subscription_to_dict(sub), message="Subscription suspended")


@subscriptions_bp.route("/<int:subscription_id>/reactivate", methods=["POST"])
def reactivate_subscription(subscription_id: int):
    sub = store.reactivate_subscription(subscription_id, performed_by=current_actor())
    return ok(subscription_to_dict(sub), message="Subscription reactivated")


@subscriptions_bp.route("/<int:subscription_id>/cancel", methods=["POST"])
def cancel_subscription(subscription_id: int):
    data = json_body()
    sub = store.cancel_subscription(
        subscription_id, data.get("reason", ""), performed_by=current_actor()
    )
    return ok(subscription_to_dict(sub), message="Subscription cancelled")


@subscriptions_bp.route("/<int:subscription_id>/timeline", methods=["GET"])
def subscription_timeline(subscription_id: int):
    store.get_subscription(subscription_id)
    return ok([log_to_dict(e) for e in activity.timeline(subscription_id)])
