"""Billing automation routes: daily run, status, settings and activity log."""

import logging

from flask import Blueprint, request

from extensions import limiter
from routes.common import current_actor, json_body, ok
from schemas import log_to_dict
from services import activity
from services.automation import build_engine
from services.settings import get_automation_config, update_automation_settings
from utils import safe_int

logger = logging.getLogger(__name__)

automation_bp = Blueprint("automation", __name__, url_prefix="/api/billing-automation")


@automation_bp.route("/run", methods=["POST"])
@limiter.limit("10 per hour")
def run_daily_automation():
    actor = current_actor()
    logger.info("Daily billing automation triggered by %s", actor)
    report = build_engine().run_daily(triggered_by=actor)
    return ok(report.to_dict(), message="Billing automation completed")


@automation_bp.route("/status", methods=["GET"])
def automation_status():
    return ok(build_engine().automation_status())


@automation_bp.route("/settings", methods=["GET"])
def get_settings():
    return ok(get_automation_config().to_dict())


@automation_bp.route("/settings", methods=["PUT"])
def update_settings():
    config = update_automation_settings(json_body(), updated_by=current_actor())
    return ok(config.to_dict(), message="Automation settings updated")


@automation_bp.route("/subscriptions/<int:subscription_id>/renewal-alert", methods=["POST"])
def trigger_renewal_alert(subscription_id: int):
    result = build_engine().trigger_renewal_alert(subscription_id, performed_by=current_actor())
    return ok(result, message="Renewal alert sent")


@automation_bp.route("/subscriptions/<int:subscription_id>/auto-renew", methods=["POST"])
def trigger_auto_renewal(subscription_id: int):
    result = build_engine().trigger_auto_renewal(subscription_id)
    return ok(result, message="Subscription auto-renewed")


@automation_bp.route("/critical-actions", methods=["GET"])
def critical_actions():
    days = safe_int(request.args.get("days"), 30)
    return ok([log_to_dict(e) for e in activity.critical_actions(days)])


@automation_bp.route("/clients/<int:client_id>/activity", methods=["GET"])
def client_activity(client_id: int):
    limit = safe_int(request.args.get("limit"), 50)
    return ok([log_to_dict(e) for e in activity.client_activity(client_id, limit)])


@automation_bp.route("/logs/<int:log_id>/review", methods=["POST"])
def review_log(log_id: int):
    entry = activity.mark_reviewed(log_id, current_actor())
    return ok(log_to_dict(entry), message="Log entry marked as reviewed")
