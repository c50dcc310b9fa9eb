"""Notification delivery for billing events.

Notifications are fire-and-forget: :func:`safe_notify` is called only after
the related change has been committed, and a failing notifier is logged and
ignored so it can never undo a financial mutation.
"""

from __future__ import annotations

import logging
from typing import Optional

from config_models import AutomationConfig, EmailConfig
from exceptions import NotificationError
from extensions import db
from mailer import MailerError, send_notification_email
from models import Client, Invoice, Subscription
from utils import as_utc

logger = logging.getLogger(__name__)

NOTIFICATION_KINDS = {
    "renewal_alert",
    "grace_period_alert",
    "expired",
    "auto_renewed",
    "auto_renewal_failed",
    "overdue_reminder",
    "invoice_generated",
    "payment_reminder",
}


class Notifier:
    """Interface: ``notify(kind, target, context)``; raise NotificationError on failure."""

    def notify(self, kind: str, target, context: Optional[dict] = None) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes each notification to the application log."""

    def notify(self, kind, target, context=None):
        logger.info("Notification %s for %s: %s", kind, _label(target), context or {})


class EmailNotifier(Notifier):
    """Sends notifications to the client's email address over SMTP."""

    def __init__(self, config: EmailConfig):
        self.config = config

    def notify(self, kind, target, context=None):
        context = context or {}
        client = db.session.get(Client, target.client_id)
        if not client or not client.email:
            raise NotificationError(f"No email address for client of {_label(target)}")
        subject, body = render_message(kind, target, client, context)
        try:
            send_notification_email(
                self.config, subject, client.email, body, cc=self.config.operator_cc
            )
        except MailerError as exc:
            raise NotificationError(str(exc)) from exc


def build_notifier(email_cfg: EmailConfig, automation_cfg: AutomationConfig) -> Notifier:
    if email_cfg.enabled and automation_cfg.email_notifications_enabled:
        return EmailNotifier(email_cfg)
    return LoggingNotifier()


def safe_notify(notifier: Notifier, kind: str, target, context: Optional[dict] = None) -> bool:
    """Deliver a notification, logging instead of raising on failure."""
    try:
        notifier.notify(kind, target, context or {})
        return True
    except Exception as exc:  # noqa: BLE001
        logger.warning("Notification %s for %s failed: %s", kind, _label(target), exc)
        return False


def _label(target) -> str:
    if isinstance(target, Subscription):
        return target.subscription_code or f"subscription {target.id}"
    if isinstance(target, Invoice):
        return target.invoice_number or f"invoice {target.id}"
    return repr(target)


def render_message(kind: str, target, client: Client, context: dict) -> tuple[str, str]:
    """Subject and plain-text body for a notification."""
    name = client.company_name or client.name
    label = _label(target)
    if kind == "renewal_alert":
        days = context.get("daysUntilExpiry")
        end = as_utc(target.end_date).date().isoformat()
        return (
            f"Your subscription {label} expires in {days} day(s)",
            f"Dear {name},\n\nYour subscription {label} expires on {end}. "
            "Please renew to keep your service active.\n",
        )
    if kind == "grace_period_alert":
        return (
            f"Subscription {label} has expired",
            f"Dear {name},\n\nYour subscription {label} has expired and is in its "
            f"grace period of {target.grace_period_days} day(s). Renew now to avoid "
            "interruption.\n",
        )
    if kind == "expired":
        return (
            f"Subscription {label} is no longer active",
            f"Dear {name},\n\nYour subscription {label} has expired.\n",
        )
    if kind == "auto_renewed":
        end = as_utc(target.end_date).date().isoformat()
        return (
            f"Subscription {label} renewed",
            f"Dear {name},\n\nYour subscription {label} was renewed automatically "
            f"and now runs until {end}.\n",
        )
    if kind == "auto_renewal_failed":
        return (
            f"Automatic renewal of {label} failed",
            f"Dear {name},\n\nWe could not renew your subscription {label} "
            f"automatically: {context.get('error', 'unknown error')}.\n",
        )
    if kind in ("overdue_reminder", "payment_reminder"):
        days = context.get("daysOverdue")
        due = as_utc(target.due_date).date().isoformat()
        return (
            f"Payment reminder for invoice {label}",
            f"Dear {name},\n\nInvoice {label} of {target.total} {target.currency} "
            f"was due on {due}"
            + (f" and is {days} day(s) overdue" if days else "")
            + ". Please arrange payment.\n",
        )
    if kind == "invoice_generated":
        due = as_utc(target.due_date).date().isoformat()
        return (
            f"New invoice {label}",
            f"Dear {name},\n\nInvoice {label} of {target.total} {target.currency} "
            f"has been issued and is due on {due}.\n",
        )
    raise NotificationError(f"Unknown notification kind {kind!r}")


def current_notifier() -> Notifier:
    """The notifier configured for the running application."""
    from flask import current_app

    from services.settings import get_automation_config

    configured = current_app.config.get("BILLING_NOTIFIER")
    if configured is not None:
        return configured
    return build_notifier(current_app.config["EMAIL_CONFIG"], get_automation_config())
