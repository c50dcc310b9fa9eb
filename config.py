"""Configuration loading: YAML file + environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import AppConfig, AutomationConfig, EmailConfig, NumberingConfig
from utils import parse_bool, parse_int_list, safe_int

logger = logging.getLogger(__name__)


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, EmailConfig, AutomationConfig, NumberingConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    email_cfg = raw.get("email", {})
    auto_cfg = raw.get("automation", {})
    numbering_cfg = raw.get("numbering", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml."
        )

    defaults = AutomationConfig()

    return (
        AppConfig(
            name=app_cfg.get("name", "Subscription Billing"),
            secret_key=secret_key,
            base_currency=os.environ.get(
                "BASE_CURRENCY", app_cfg.get("base_currency", "USD")
            ),
        ),
        EmailConfig(
            enabled=parse_bool(
                os.environ.get("EMAIL_ENABLED", email_cfg.get("enabled", False))
            ),
            smtp_host=os.environ.get("SMTP_HOST", email_cfg.get("smtp_host", "")),
            smtp_port=int(os.environ.get("SMTP_PORT", email_cfg.get("smtp_port", 587))),
            smtp_user=os.environ.get("SMTP_USER", email_cfg.get("smtp_user", "")),
            smtp_password=os.environ.get("SMTP_PASSWORD", email_cfg.get("smtp_password", "")),
            sender=os.environ.get("EMAIL_SENDER", email_cfg.get("sender", "")),
            operator_cc=os.environ.get("EMAIL_OPERATOR_CC", email_cfg.get("operator_cc", "")),
        ),
        AutomationConfig(
            renewal_alert_days=parse_int_list(
                os.environ.get("BILLING_RENEWAL_ALERT_DAYS", auto_cfg.get("renewal_alert_days")),
                defaults.renewal_alert_days,
            ),
            grace_period_days=safe_int(
                os.environ.get("BILLING_GRACE_PERIOD_DAYS", auto_cfg.get("grace_period_days")),
                defaults.grace_period_days,
            ),
            auto_renewal_enabled=parse_bool(
                os.environ.get("BILLING_AUTO_RENEWAL_ENABLED", auto_cfg.get("auto_renewal_enabled")),
                defaults.auto_renewal_enabled,
            ),
            email_notifications_enabled=parse_bool(
                os.environ.get(
                    "BILLING_EMAIL_NOTIFICATIONS_ENABLED",
                    auto_cfg.get("email_notifications_enabled"),
                ),
                defaults.email_notifications_enabled,
            ),
            overdue_reminder_days=parse_int_list(
                os.environ.get("BILLING_OVERDUE_REMINDER_DAYS", auto_cfg.get("overdue_reminder_days")),
                defaults.overdue_reminder_days,
            ),
            invoice_due_days=safe_int(
                os.environ.get("BILLING_INVOICE_DUE_DAYS", auto_cfg.get("invoice_due_days")),
                defaults.invoice_due_days,
            ),
            high_value_transaction_threshold=safe_int(
                os.environ.get(
                    "BILLING_HIGH_VALUE_THRESHOLD",
                    auto_cfg.get("high_value_transaction_threshold"),
                ),
                defaults.high_value_transaction_threshold,
            ),
        ),
        NumberingConfig(
            invoice_pattern=numbering_cfg.get("invoice", NumberingConfig.invoice_pattern),
            payment_pattern=numbering_cfg.get("payment", NumberingConfig.payment_pattern),
            subscription_pattern=numbering_cfg.get(
                "subscription", NumberingConfig.subscription_pattern
            ),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///billing.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
