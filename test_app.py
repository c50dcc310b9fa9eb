"""Test suite for the subscription billing application.

Tests cover: app creation, configuration loading, utility helpers, the JSON
API (subscriptions, invoices, payments, automation, reports), error
handling and the command line.
"""

import dataclasses
import datetime
import json
import os
from decimal import Decimal

import pytest
from click.testing import CliRunner

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["RATELIMIT_ENABLED"] = "false"

from app import (
    AutomationRun,
    Client,
    Invoice,
    Package,
    Subscription,
    SubscriptionLog,
    create_app,
    error_status,
)
from billing_cli import cli
from config import load_config
from config_models import AppConfig, AutomationConfig, EmailConfig, NumberingConfig
from exceptions import (
    BillingError,
    ConcurrencyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from extensions import db
from utils import (
    add_months,
    as_utc,
    ceil_days,
    money,
    parse_bool,
    parse_date,
    parse_datetime,
    parse_int_list,
    safe_int,
    to_decimal,
)


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    yield application


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def sample_data(app):
    """Create sample data for tests. Returns dict of IDs to avoid detached instance errors."""
    with app.app_context():
        customer = Client(
            name="Jana Novakova",
            company_name="Novak Design",
            email="jana@novak.test",
        )
        package = Package(
            name="Starter",
            slug="starter",
            price_monthly=Decimal("49.90"),
            price_quarterly=Decimal("139.00"),
        )
        db.session.add_all([customer, package])
        db.session.commit()
        return {"client_id": customer.id, "package_id": package.id}


def create_sub(client, sample_data, **payload):
    body = {"clientId": sample_data["client_id"], "packageId": sample_data["package_id"]}
    body.update(payload)
    resp = client.post("/api/subscriptions", json=body)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["data"]


def create_invoice(client, subscription_id):
    resp = client.post("/api/invoices", json={"subscriptionId": subscription_id})
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["data"]


# ---------------------------------------------------------------------------
# Utility functions
# ---------------------------------------------------------------------------


class TestUtilityFunctions:
    def test_safe_int_valid(self):
        assert safe_int("42") == 42

    def test_safe_int_none(self):
        assert safe_int(None) == 0

    def test_safe_int_invalid(self):
        assert safe_int("abc", 7) == 7

    def test_to_decimal_keeps_float_text(self):
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal("x") is None

    def test_money_rounds_half_up(self):
        assert money("2.675") == Decimal("2.68")
        assert money(None) == Decimal("0.00")

    def test_parse_date_valid(self):
        assert parse_date("2026-03-01") == datetime.date(2026, 3, 1)

    def test_parse_date_invalid(self):
        assert parse_date("01.03.2026") is None

    def test_parse_datetime_is_utc(self):
        value = parse_datetime("2026-03-01T10:00:00Z")
        assert value == datetime.datetime(2026, 3, 1, 10, 0, tzinfo=datetime.timezone.utc)
        assert parse_datetime("2026-03-01").tzinfo is not None

    def test_parse_datetime_invalid(self):
        assert parse_datetime("yesterday") is None

    def test_as_utc_naive(self):
        naive = datetime.datetime(2026, 1, 1, 8, 0)
        assert as_utc(naive).tzinfo == datetime.timezone.utc
        assert as_utc(None) is None

    def test_add_months_clamps_to_month_end(self):
        jan31 = datetime.datetime(2026, 1, 31)
        assert add_months(jan31, 1) == datetime.datetime(2026, 2, 28)
        assert add_months(jan31, 13) == datetime.datetime(2027, 2, 28)
        assert add_months(datetime.datetime(2026, 3, 31), -1) == datetime.datetime(2026, 2, 28)

    def test_ceil_days(self):
        assert ceil_days(datetime.timedelta(hours=1)) == 1
        assert ceil_days(datetime.timedelta(days=2)) == 2
        assert ceil_days(datetime.timedelta(days=-1, hours=1)) == 0

    def test_parse_int_list(self):
        assert parse_int_list("30, 7,1") == (30, 7, 1)
        assert parse_int_list([3, "2"]) == (3, 2)
        assert parse_int_list("a,b", (1,)) == (1,)

    def test_parse_bool(self):
        assert parse_bool("Yes") is True
        assert parse_bool("off") is False
        assert parse_bool(None, True) is True


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestConfig:
    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "missing.yaml"))
        app_cfg, email_cfg, automation_cfg, numbering_cfg, db_uri = load_config()
        assert isinstance(app_cfg, AppConfig)
        assert isinstance(email_cfg, EmailConfig)
        assert automation_cfg == AutomationConfig()
        assert numbering_cfg == NumberingConfig()
        assert db_uri == "sqlite://"

    def test_yaml_and_env_overrides(self, monkeypatch, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "automation:\n"
            "  grace_period_days: 7\n"
            "  renewal_alert_days: [20, 5]\n"
            "numbering:\n"
            "  invoice: 'F[YY][MM]-[CCC]'\n",
            encoding="utf-8",
        )
        monkeypatch.setenv("CONFIG_PATH", str(config_file))
        monkeypatch.setenv("BILLING_RENEWAL_ALERT_DAYS", "10,2")
        monkeypatch.setenv("BILLING_AUTO_RENEWAL_ENABLED", "false")
        _app, _email, automation_cfg, numbering_cfg, _uri = load_config()
        assert automation_cfg.grace_period_days == 7
        assert automation_cfg.renewal_alert_days == (10, 2)
        assert automation_cfg.auto_renewal_enabled is False
        assert numbering_cfg.invoice_pattern == "F[YY][MM]-[CCC]"
        assert numbering_cfg.payment_pattern == "PAY-[YYYY]-[CCCCC]"

    def test_automation_config_is_frozen(self):
        config = AutomationConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.grace_period_days = 10
        changed = config.with_overrides(grace_period_days=10)
        assert changed.grace_period_days == 10
        assert config.grace_period_days == 3
        assert changed.to_dict()["gracePeriodDays"] == 10


# ---------------------------------------------------------------------------
# App creation
# ---------------------------------------------------------------------------


class TestAppCreation:
    def test_create_app(self, app):
        assert app is not None

    def test_app_config(self, app):
        assert app.config["TESTING"] is True
        assert app.config["SQLALCHEMY_DATABASE_URI"] == "sqlite://"
        assert isinstance(app.config["AUTOMATION_CONFIG"], AutomationConfig)

    def test_tables_created(self, app):
        with app.app_context():
            assert Subscription.query.count() == 0
            assert AutomationRun.query.count() == 0

    def test_error_status_mapping(self):
        assert error_status(NotFoundError("x")) == 404
        assert error_status(ValidationError("x")) == 422
        assert error_status(InvalidStateError("x")) == 409
        assert error_status(ConcurrencyError("x")) == 409
        assert error_status(BillingError("x")) == 400


# ---------------------------------------------------------------------------
# Subscription routes
# ---------------------------------------------------------------------------


class TestSubscriptionRoutes:
    def test_create_subscription(self, client, sample_data):
        data = create_sub(
            client,
            sample_data,
            billingCycle="quarterly",
            discount={"percentage": 10},
            tax={"percentage": 20},
        )
        assert data["subscriptionCode"] == "SUB0001"
        assert data["status"] == "active"
        assert data["basePrice"] == "139.00"
        # 139 * 0.9 * 1.2
        assert data["effectivePrice"] == "150.12"
        assert data["durationInMonths"] in (3, 4)
        assert data["nextBillingDate"] == data["endDate"]

    def test_create_with_unknown_package(self, client, sample_data):
        resp = client.post(
            "/api/subscriptions",
            json={"clientId": sample_data["client_id"], "packageId": 999},
        )
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "not_found"

    def test_create_invalid_cycle(self, client, sample_data):
        resp = client.post(
            "/api/subscriptions",
            json={
                "clientId": sample_data["client_id"],
                "packageId": sample_data["package_id"],
                "billingCycle": "weekly",
            },
        )
        assert resp.status_code == 422
        body = resp.get_json()
        assert body["success"] is False
        assert body["error"] == "validation_error"

    def test_list_and_filter(self, client, sample_data):
        create_sub(client, sample_data)
        second = create_sub(client, sample_data)
        client.post(f"/api/subscriptions/{second['id']}/suspend", json={"reason": "audit"})
        resp = client.get("/api/subscriptions?status=suspended")
        body = resp.get_json()
        assert body["count"] == 1
        assert body["data"][0]["id"] == second["id"]
        assert client.get("/api/subscriptions").get_json()["count"] == 2

    def test_get_subscription_details(self, client, sample_data):
        sub = create_sub(client, sample_data)
        create_invoice(client, sub["id"])
        resp = client.get(f"/api/subscriptions/{sub['id']}")
        data = resp.get_json()["data"]
        assert len(data["invoices"]) == 1
        assert data["payments"] == []
        assert [e["action"] for e in data["timeline"]] == ["invoice_generated", "created"]

    def test_get_missing_subscription(self, client):
        resp = client.get("/api/subscriptions/12345")
        assert resp.status_code == 404
        assert resp.get_json()["success"] is False

    def test_patch_subscription(self, client, sample_data):
        sub = create_sub(client, sample_data)
        resp = client.patch(
            f"/api/subscriptions/{sub['id']}",
            json={"autoRenew": True, "discountPercentage": 5, "discountReason": "promo"},
            headers={"X-Operator": "alice"},
        )
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["autoRenew"] is True
        assert Decimal(data["discount"]["percentage"]) == 5
        timeline = client.get(f"/api/subscriptions/{sub['id']}/timeline").get_json()["data"]
        assert timeline[0]["performedBy"] == "alice"
        assert {e["action"] for e in timeline} >= {"updated", "discount_applied"}

    def test_patch_rejects_status(self, client, sample_data):
        sub = create_sub(client, sample_data)
        resp = client.patch(f"/api/subscriptions/{sub['id']}", json={"status": "expired"})
        assert resp.status_code == 422

    def test_patch_non_numeric_grace_period(self, client, sample_data):
        sub = create_sub(client, sample_data)
        resp = client.patch(
            f"/api/subscriptions/{sub['id']}", json={"gracePeriodDays": "soon"}
        )
        assert resp.status_code == 422
        assert resp.get_json()["error"] == "validation_error"
        data = client.get(f"/api/subscriptions/{sub['id']}").get_json()["data"]
        assert data["gracePeriodDays"] == 3

    def test_create_uses_configured_grace_period(self, client, sample_data):
        resp = client.put("/api/billing-automation/settings", json={"gracePeriodDays": 9})
        assert resp.status_code == 200
        assert create_sub(client, sample_data)["gracePeriodDays"] == 9
        assert create_sub(client, sample_data, gracePeriodDays=1)["gracePeriodDays"] == 1

    def test_renew(self, client, sample_data):
        sub = create_sub(client, sample_data)
        resp = client.post(f"/api/subscriptions/{sub['id']}/renew", json={})
        data = resp.get_json()["data"]
        assert data["renewalCount"] == 1
        old_end = parse_datetime(sub["endDate"])
        assert parse_datetime(data["endDate"]) == add_months(old_end, 1)

    def test_suspend_requires_reason(self, client, sample_data):
        sub = create_sub(client, sample_data)
        resp = client.post(f"/api/subscriptions/{sub['id']}/suspend", json={})
        assert resp.status_code == 422

    def test_suspend_reactivate_cycle(self, client, sample_data):
        sub = create_sub(client, sample_data)
        resp = client.post(
            f"/api/subscriptions/{sub['id']}/suspend", json={"reason": "unpaid"}
        )
        assert resp.get_json()["data"]["status"] == "suspended"
        resp = client.post(f"/api/subscriptions/{sub['id']}/reactivate")
        assert resp.get_json()["data"]["status"] == "active"

    def test_cancel_twice_conflicts(self, client, sample_data):
        sub = create_sub(client, sample_data, autoRenew=True)
        resp = client.post(f"/api/subscriptions/{sub['id']}/cancel", json={"reason": "moving"})
        data = resp.get_json()["data"]
        assert data["status"] == "cancelled"
        assert data["autoRenew"] is False
        assert data["nextBillingDate"] is None
        resp = client.post(f"/api/subscriptions/{sub['id']}/cancel", json={"reason": "again"})
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "invalid_state"

    def test_expiring_list(self, client, sample_data):
        now = datetime.datetime.now(datetime.timezone.utc)
        create_sub(
            client,
            sample_data,
            startDate=(now - datetime.timedelta(days=25)).isoformat(),
            endDate=(now + datetime.timedelta(days=4)).isoformat(),
        )
        create_sub(client, sample_data, billingCycle="yearly")
        body = client.get("/api/subscriptions/expiring?days=7").get_json()
        assert body["count"] == 1
        assert body["data"][0]["isExpiringSoon"] is True


# ---------------------------------------------------------------------------
# Invoice routes
# ---------------------------------------------------------------------------


class TestInvoiceRoutes:
    def test_generate_invoice(self, client, sample_data):
        sub = create_sub(client, sample_data, tax={"percentage": 20})
        invoice = create_invoice(client, sub["id"])
        year = datetime.datetime.now(datetime.timezone.utc).year
        assert invoice["invoiceNumber"] == f"INV-{year}-0001"
        assert invoice["amount"] == {
            "subtotal": "49.90",
            "discount": "0.00",
            "tax": "9.98",
            "total": "59.88",
        }
        assert invoice["status"] == "draft"
        assert invoice["remainingAmount"] == "59.88"
        assert invoice["billingPeriod"]["startDate"] == sub["endDate"]

    def test_duplicate_period(self, client, sample_data):
        sub = create_sub(client, sample_data)
        create_invoice(client, sub["id"])
        resp = client.post("/api/invoices", json={"subscriptionId": sub["id"]})
        assert resp.status_code == 422

    def test_send_and_remind(self, client, sample_data):
        sub = create_sub(client, sample_data)
        invoice = create_invoice(client, sub["id"])
        resp = client.post(f"/api/invoices/{invoice['id']}/send")
        assert resp.get_json()["data"]["status"] == "sent"
        resp = client.post(f"/api/invoices/{invoice['id']}/remind")
        assert resp.get_json()["data"]["remindersSent"] == 1

    def test_mark_paid(self, client, sample_data):
        sub = create_sub(client, sample_data)
        invoice = create_invoice(client, sub["id"])
        resp = client.post(
            f"/api/invoices/{invoice['id']}/mark-paid", json={"paymentMethod": "cash"}
        )
        assert resp.status_code == 200
        detail = client.get(f"/api/invoices/{invoice['id']}").get_json()["data"]
        assert detail["status"] == "paid"
        assert detail["paymentPercentage"] == 100
        assert len(detail["payments"]) == 1
        resp = client.post(f"/api/invoices/{invoice['id']}/mark-paid", json={})
        assert resp.status_code == 409

    def test_cancel_paid_invoice_conflicts(self, client, sample_data):
        sub = create_sub(client, sample_data)
        invoice = create_invoice(client, sub["id"])
        client.post(f"/api/invoices/{invoice['id']}/mark-paid", json={"amount": "10"})
        resp = client.post(f"/api/invoices/{invoice['id']}/cancel", json={"reason": "oops"})
        assert resp.status_code == 409

    def test_filter_by_subscription(self, client, sample_data):
        sub = create_sub(client, sample_data)
        other = create_sub(client, sample_data)
        create_invoice(client, sub["id"])
        create_invoice(client, other["id"])
        body = client.get(f"/api/invoices?subscriptionId={sub['id']}").get_json()
        assert body["count"] == 1


# ---------------------------------------------------------------------------
# Payment routes
# ---------------------------------------------------------------------------


class TestPaymentRoutes:
    def _completed_payment(self, client, sample_data, amount="49.90"):
        sub = create_sub(client, sample_data)
        invoice = create_invoice(client, sub["id"])
        resp = client.post(
            "/api/payments",
            json={
                "invoiceId": invoice["id"],
                "amount": amount,
                "paymentMethod": "card",
                "fees": {"gatewayFee": "1.20"},
            },
        )
        assert resp.status_code == 201
        payment = resp.get_json()["data"]
        assert payment["status"] == "pending"
        resp = client.post(
            f"/api/payments/{payment['id']}/complete", json={"transactionId": "ch_1"}
        )
        assert resp.status_code == 200
        return sub, invoice, resp.get_json()["data"]

    def test_record_and_complete(self, client, sample_data):
        sub, invoice, payment = self._completed_payment(client, sample_data)
        assert payment["status"] == "completed"
        assert payment["netAmount"] == "48.70"
        assert payment["fees"]["total"] == "1.20"
        detail = client.get(f"/api/subscriptions/{sub['id']}").get_json()["data"]
        assert detail["totalRevenue"] == "49.90"

    def test_invalid_method(self, client, sample_data):
        sub = create_sub(client, sample_data)
        invoice = create_invoice(client, sub["id"])
        resp = client.post(
            "/api/payments",
            json={"invoiceId": invoice["id"], "amount": "5", "paymentMethod": "iou"},
        )
        assert resp.status_code == 422

    def test_refund_too_much(self, client, sample_data):
        _sub, _invoice, payment = self._completed_payment(client, sample_data)
        resp = client.post(
            f"/api/payments/{payment['id']}/refund", json={"amount": "60", "reason": "x"}
        )
        assert resp.status_code == 422

    def test_partial_refund(self, client, sample_data):
        _sub, invoice, payment = self._completed_payment(client, sample_data)
        resp = client.post(
            f"/api/payments/{payment['id']}/refund",
            json={"amount": "9.90", "reason": "downtime credit"},
        )
        data = resp.get_json()["data"]
        assert data["status"] == "partially_refunded"
        assert data["refundableAmount"] == "40.00"
        detail = client.get(f"/api/invoices/{invoice['id']}").get_json()["data"]
        assert detail["paidAmount"] == "40.00"
        assert detail["paymentStatus"] == "partial"

    def test_fail_then_list_unsuccessful(self, client, sample_data):
        sub = create_sub(client, sample_data)
        invoice = create_invoice(client, sub["id"])
        payment = client.post(
            "/api/payments", json={"invoiceId": invoice["id"], "amount": "49.90"}
        ).get_json()["data"]
        resp = client.post(
            f"/api/payments/{payment['id']}/fail", json={"reason": "insufficient funds"}
        )
        assert resp.get_json()["data"]["failureReason"] == "insufficient funds"
        body = client.get("/api/payments?status=unsuccessful").get_json()
        assert body["count"] == 1

    def test_missing_payment(self, client):
        resp = client.get("/api/payments/77")
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Billing automation routes
# ---------------------------------------------------------------------------


class TestAutomationRoutes:
    def test_run_and_status(self, client, sample_data):
        now = datetime.datetime.now(datetime.timezone.utc)
        create_sub(
            client,
            sample_data,
            startDate=(now - datetime.timedelta(days=40)).isoformat(),
            endDate=(now - datetime.timedelta(days=10)).isoformat(),
        )
        resp = client.post("/api/billing-automation/run")
        assert resp.status_code == 200
        report = resp.get_json()["data"]
        assert report["expiredSubscriptions"] == 1
        assert report["errors"] == []

        status = client.get("/api/billing-automation/status").get_json()["data"]
        assert status["lastRun"]["expiredSubscriptions"] == 1
        assert status["upcoming"]["expirations"] == 0
        assert status["settings"]["gracePeriodDays"] == 3

    def test_settings_roundtrip(self, client):
        resp = client.put(
            "/api/billing-automation/settings",
            json={"renewalAlertDays": [1, 14, 7], "autoRenewalEnabled": False},
        )
        assert resp.status_code == 200
        data = client.get("/api/billing-automation/settings").get_json()["data"]
        assert data["renewalAlertDays"] == [14, 7, 1]
        assert data["autoRenewalEnabled"] is False

    def test_settings_unknown_key(self, client):
        resp = client.put("/api/billing-automation/settings", json={"retries": 3})
        assert resp.status_code == 422

    def test_manual_renewal_alert(self, client, sample_data):
        sub = create_sub(client, sample_data)
        resp = client.post(f"/api/billing-automation/subscriptions/{sub['id']}/renewal-alert")
        data = resp.get_json()["data"]
        assert data["success"] is True
        assert data["daysRemaining"] >= 28

    def test_manual_auto_renew(self, client, sample_data):
        sub = create_sub(client, sample_data, autoRenew=True)
        resp = client.post(f"/api/billing-automation/subscriptions/{sub['id']}/auto-renew")
        assert resp.status_code == 200
        new_end = parse_datetime(resp.get_json()["data"]["newEndDate"])
        assert new_end == add_months(parse_datetime(sub["endDate"]), 1)

    def test_manual_auto_renew_requires_opt_in(self, client, sample_data):
        sub = create_sub(client, sample_data)
        resp = client.post(f"/api/billing-automation/subscriptions/{sub['id']}/auto-renew")
        assert resp.status_code == 409

    def test_critical_actions_and_review(self, client, app, sample_data):
        sub = create_sub(client, sample_data)
        client.post(f"/api/subscriptions/{sub['id']}/cancel", json={"reason": "fraud"})
        entries = client.get("/api/billing-automation/critical-actions").get_json()["data"]
        assert [e["action"] for e in entries] == ["cancelled"]
        resp = client.post(
            f"/api/billing-automation/logs/{entries[0]['id']}/review",
            headers={"X-Operator": "compliance"},
        )
        assert resp.get_json()["data"]["reviewedBy"] == "compliance"
        with app.app_context():
            assert SubscriptionLog.query.count() == 2

    def test_client_activity(self, client, sample_data):
        create_sub(client, sample_data)
        resp = client.get(f"/api/billing-automation/clients/{sample_data['client_id']}/activity")
        assert len(resp.get_json()["data"]) == 1


# ---------------------------------------------------------------------------
# Report routes
# ---------------------------------------------------------------------------


class TestReportRoutes:
    def test_revenue_after_payment(self, client, sample_data):
        sub = create_sub(client, sample_data)
        invoice = create_invoice(client, sub["id"])
        client.post(f"/api/invoices/{invoice['id']}/mark-paid", json={})
        data = client.get("/api/reports/revenue").get_json()["data"]
        assert data["totalRevenue"] == "49.90"
        assert data["totalInvoices"] == 1
        monthly = client.get("/api/reports/revenue/monthly").get_json()["data"]
        assert len(monthly) == 12
        assert sum(m["invoiceCount"] for m in monthly) == 1

    def test_payment_method_stats(self, client, sample_data):
        sub = create_sub(client, sample_data)
        invoice = create_invoice(client, sub["id"])
        client.post(
            f"/api/invoices/{invoice['id']}/mark-paid", json={"paymentMethod": "bank_transfer"}
        )
        data = client.get("/api/reports/payment-methods").get_json()["data"]
        assert data == [{"method": "bank_transfer", "count": 1, "totalAmount": "49.90"}]

    def test_action_stats(self, client, sample_data):
        create_sub(client, sample_data)
        data = client.get("/api/reports/actions").get_json()["data"]
        assert data == [{"action": "created", "count": 1}]


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


class TestErrorHandling:
    def test_unknown_route_is_json(self, client):
        resp = client.get("/api/nothing-here")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "not_found"

    def test_non_object_body(self, client):
        resp = client.post("/api/subscriptions", json=[1, 2, 3])
        assert resp.status_code == 422

    def test_failed_request_leaves_no_partial_rows(self, client, app, sample_data):
        client.post(
            "/api/subscriptions",
            json={
                "clientId": sample_data["client_id"],
                "packageId": sample_data["package_id"],
                "customPrice": "-10",
            },
        )
        with app.app_context():
            assert Subscription.query.count() == 0
            assert SubscriptionLog.query.count() == 0
            assert Invoice.query.count() == 0


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


class TestCLI:
    def test_settings_show(self):
        result = CliRunner().invoke(cli, ["settings"])
        assert result.exit_code == 0
        assert json.loads(result.output)["gracePeriodDays"] == 3

    def test_settings_set_invalid(self):
        result = CliRunner().invoke(cli, ["settings", "--set", "gracePeriodDays=-4"])
        assert result.exit_code == 1

    def test_run_daily_for_date(self):
        result = CliRunner().invoke(cli, ["run-daily", "--date", "2026-03-15"])
        assert result.exit_code == 0
        report = json.loads(result.output)
        assert report["runDate"] == "2026-03-15"
        assert report["errors"] == []

    def test_run_daily_bad_date(self):
        result = CliRunner().invoke(cli, ["run-daily", "--date", "15.03.2026"])
        assert result.exit_code == 1

    def test_renew_missing_subscription(self):
        result = CliRunner().invoke(cli, ["renew", "404"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_status(self):
        result = CliRunner().invoke(cli, ["status"])
        assert result.exit_code == 0
        assert json.loads(result.output)["lastRun"] is None
