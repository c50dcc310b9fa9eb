"""Revenue and payment reporting routes."""

from flask import Blueprint, request

from routes.common import ok
from services import activity, reports
from utils import parse_datetime, safe_int

reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


def _period():
    return parse_datetime(request.args.get("start")), parse_datetime(request.args.get("end"))


@reports_bp.route("/revenue", methods=["GET"])
def revenue():
    start, end = _period()
    return ok(reports.revenue_stats(start, end))


@reports_bp.route("/revenue/monthly", methods=["GET"])
def monthly_revenue():
    year = safe_int(request.args.get("year"), 0) or None
    return ok(reports.monthly_revenue(year))


@reports_bp.route("/payments", methods=["GET"])
def payments():
    start, end = _period()
    return ok(reports.payment_stats(start, end))


@reports_bp.route("/payment-methods", methods=["GET"])
def payment_methods():
    start, end = _period()
    return ok(reports.payment_method_stats(start, end))


@reports_bp.route("/actions", methods=["GET"])
def actions():
    start, end = _period()
    return ok(activity.action_stats(start, end))
