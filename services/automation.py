"""Daily billing automation.

One run walks five phases in order:

1. renewal alerts for subscriptions ending exactly N days from today
2. expiry: grace-period alerts, then hard expiry once the grace period ends
3. auto-renewal of expired subscriptions that opted in
4. scheduled invoices for subscriptions whose next billing date is today
5. overdue flags and payment reminders on the configured overdue days

Every subscription (or invoice) is handled in its own unit of work, so one
failure is recorded in the run report and the run moves on.  Each side
effect carries an idempotency key ``kind:id:date[:extra]`` stored on its
activity log entry; a second run on the same day finds the key and skips.
Renewal alerts use the announced end date instead of the run date, and
auto-renewal alerts a subscription whose new end date lands on a threshold.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError

from config_models import AutomationConfig
from exceptions import InvalidStateError
from extensions import atomic, db
from models import SYSTEM_ACTOR, AutomationRun, Invoice, Subscription
from services import activity
from services.invoice import (
    CLOSED_STATUSES,
    days_overdue,
    generate_renewal_invoice,
    generate_scheduled_invoice,
    mark_overdue,
    record_reminder,
)
from services.lifecycle import SubscriptionTerms, days_remaining, is_expired, is_in_grace_period
from services.notifier import LoggingNotifier, Notifier, current_notifier, safe_notify
from services.settings import get_automation_config
from services.subscriptions import apply_renewal, expire, get_subscription
from utils import as_utc, start_of_day, utc_now

logger = logging.getLogger(__name__)

_ONE_DAY = datetime.timedelta(days=1)


@dataclass
class RunReport:
    run_date: datetime.date
    renewal_alerts: int = 0
    grace_alerts: int = 0
    expired_subscriptions: int = 0
    auto_renewals: int = 0
    invoices_generated: int = 0
    overdue_reminders: int = 0
    skipped: int = 0
    cancelled: bool = False
    errors: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "runDate": self.run_date.isoformat(),
            "renewalAlerts": self.renewal_alerts,
            "gracePeriodAlerts": self.grace_alerts,
            "expiredSubscriptions": self.expired_subscriptions,
            "autoRenewals": self.auto_renewals,
            "invoicesGenerated": self.invoices_generated,
            "overdueReminders": self.overdue_reminders,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "errors": list(self.errors),
        }


class _Skip(Exception):
    """Raised inside a unit of work when its side effect already happened."""


class BillingAutomationEngine:
    """Runs the daily billing phases against the current database session."""

    def __init__(
        self,
        config: AutomationConfig,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime.datetime] = utc_now,
    ):
        self.config = config
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock
        self._cancel_requested = False

    def now(self) -> datetime.datetime:
        return as_utc(self.clock())

    def cancel(self) -> None:
        """Stop the running batch before the next subscription is touched."""
        self._cancel_requested = True

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run_daily(self, triggered_by: str = SYSTEM_ACTOR) -> RunReport:
        now = self.now()
        today = now.date()
        report = RunReport(run_date=today)
        started = now
        self._cancel_requested = False
        logger.info("Daily billing automation started for %s", today)

        phases = (
            ("renewal alerts", self._renewal_alerts),
            ("expiry", self._expiry),
            ("auto-renewal", self._auto_renewals),
            ("scheduled invoices", self._scheduled_invoices),
            ("overdue reminders", self._overdue_reminders),
        )
        for name, phase in phases:
            if report.cancelled:
                break
            try:
                phase(report, now)
            except Exception as exc:
                db.session.rollback()
                logger.exception("Billing phase %s failed", name)
                report.errors.append(f"{name}: {exc}")

        self._store_run(report, started, triggered_by)
        logger.info(
            "Daily billing automation finished for %s: %s", today, report.to_dict()
        )
        return report

    def _store_run(self, report: RunReport, started: datetime.datetime, triggered_by: str) -> None:
        try:
            with atomic():
                db.session.add(
                    AutomationRun(
                        run_date=report.run_date,
                        started_at=started,
                        finished_at=self.now(),
                        triggered_by=triggered_by,
                        cancelled=report.cancelled,
                        report=report.to_dict(),
                    )
                )
        except Exception as exc:
            logger.error("Could not store automation run report: %s", exc)
            report.errors.append(f"run report: {exc}")

    def _each(self, report: RunReport, ids, label: str, handler) -> None:
        """Apply *handler* to every id, isolating failures and honouring cancel()."""
        for entity_id in ids:
            if self._cancel_requested:
                report.cancelled = True
                logger.warning("Billing automation cancelled during %s", label)
                return
            try:
                handler(entity_id)
            except _Skip:
                report.skipped += 1
            except IntegrityError:
                db.session.rollback()
                report.skipped += 1
                logger.info("%s for %s already recorded; skipped", label, entity_id)
            except Exception as exc:
                db.session.rollback()
                logger.error("%s failed for %s: %s", label, entity_id, exc)
                report.errors.append(f"{label} failed for {entity_id}: {exc}")

    @staticmethod
    def _claim(key: str) -> None:
        if activity.has_key(key):
            raise _Skip(key)

    # ------------------------------------------------------------------
    # Phase 1: renewal alerts
    # ------------------------------------------------------------------

    def _renewal_alerts(self, report: RunReport, now: datetime.datetime) -> None:
        today = now.date()
        for days in self.config.renewal_alert_days:
            window_start = start_of_day(today + datetime.timedelta(days=days))
            ids = [
                row.id
                for row in db.session.query(Subscription.id).filter(
                    Subscription.status == "active",
                    Subscription.end_date >= window_start,
                    Subscription.end_date < window_start + _ONE_DAY,
                ).order_by(Subscription.id)
            ]

            def handle(subscription_id, days=days):
                self._send_renewal_alert(report, subscription_id, days, now)

            self._each(report, ids, "Renewal alert", handle)
            if report.cancelled:
                return

    def _send_renewal_alert(
        self, report: RunReport, subscription_id: int, days: int, now: datetime.datetime
    ) -> None:
        # keyed by the end date being announced, not the run date
        with atomic():
            sub = get_subscription(subscription_id, lock=True)
            end = as_utc(sub.end_date).date().isoformat()
            key = f"renewal_alert:{subscription_id}:{end}:{days}"
            self._claim(key)
            activity.log_action(
                sub,
                "reminder_sent",
                f"Renewal reminder sent - {days} days until expiry",
                metadata={"daysUntilExpiry": days, "alertType": "renewal_reminder"},
                idempotency_key=key,
                now=now,
            )
        report.renewal_alerts += 1
        safe_notify(self.notifier, "renewal_alert", sub, {"daysUntilExpiry": days})

    def _alert_if_on_threshold(self, report: RunReport, sub: Subscription, now: datetime.datetime) -> None:
        """Renewal alert for a subscription whose new end date was set after phase 1 ran."""
        days = (as_utc(sub.end_date).date() - now.date()).days
        if days not in self.config.renewal_alert_days:
            return
        try:
            self._send_renewal_alert(report, sub.id, days, now)
        except _Skip:
            pass
        except IntegrityError:
            db.session.rollback()

    # ------------------------------------------------------------------
    # Phase 2: expiry and grace period
    # ------------------------------------------------------------------

    def _expiry(self, report: RunReport, now: datetime.datetime) -> None:
        today = now.date().isoformat()
        query = db.session.query(Subscription.id).filter(
            Subscription.status == "active",
            Subscription.end_date < now,
        )
        if self.config.auto_renewal_enabled:
            # opted-in subscriptions are renewed by the next phase instead
            query = query.filter(Subscription.auto_renew.isnot(True))
        ids = [row.id for row in query.order_by(Subscription.id)]

        def handle(subscription_id):
            with atomic():
                sub = get_subscription(subscription_id, lock=True)
                terms = SubscriptionTerms.from_subscription(sub)
                if sub.status != "active" or not is_expired(terms, now):
                    raise _Skip(subscription_id)
                if is_in_grace_period(terms, now):
                    key = f"grace_alert:{subscription_id}:{today}"
                    self._claim(key)
                    activity.log_action(
                        sub,
                        "grace_period_started",
                        "Grace period alert sent for expired subscription",
                        metadata={"alertType": "grace_period"},
                        idempotency_key=key,
                        now=now,
                    )
                    kind = "grace_period_alert"
                else:
                    expire(sub, now, idempotency_key=f"expired:{subscription_id}:{today}")
                    kind = "expired"
            if kind == "expired":
                report.expired_subscriptions += 1
                logger.info("Subscription %s expired", sub.subscription_code)
            else:
                report.grace_alerts += 1
            safe_notify(self.notifier, kind, sub, {})

        self._each(report, ids, "Expiry processing", handle)

    # ------------------------------------------------------------------
    # Phase 3: auto-renewal
    # ------------------------------------------------------------------

    def _auto_renewals(self, report: RunReport, now: datetime.datetime) -> None:
        if not self.config.auto_renewal_enabled:
            return
        ids = [
            row.id
            for row in db.session.query(Subscription.id).filter(
                Subscription.status == "active",
                Subscription.auto_renew.is_(True),
                Subscription.end_date < now,
            ).order_by(Subscription.id)
        ]
        today = now.date().isoformat()

        def handle(subscription_id):
            key = f"auto_renew:{subscription_id}:{today}"
            self._claim(key)
            try:
                sub, created = self._renew_with_invoice(subscription_id, now, key)
            except (_Skip, IntegrityError):
                raise
            except Exception as exc:
                db.session.rollback()
                self._record_renewal_failure(subscription_id, exc, now)
                raise
            report.auto_renewals += 1
            if created:
                report.invoices_generated += 1
            safe_notify(self.notifier, "auto_renewed", sub, {})
            self._alert_if_on_threshold(report, sub, now)

        self._each(report, ids, "Auto-renewal", handle)

    def _renew_with_invoice(self, subscription_id: int, now: datetime.datetime, key: Optional[str]):
        with atomic():
            sub = get_subscription(subscription_id, lock=True)
            if not sub.auto_renew:
                raise InvalidStateError(
                    f"Auto-renewal is not enabled for {sub.subscription_code}"
                )
            old_end = as_utc(sub.end_date)
            previous, new = apply_renewal(sub, now)
            invoice, created = generate_renewal_invoice(
                sub, old_end, as_utc(sub.end_date),
                due_days=self.config.invoice_due_days,
                now=now,
            )
            activity.log_action(
                sub,
                "auto_renewed",
                f"Subscription {sub.subscription_code} renewed automatically",
                category="renewal",
                previous_values=previous,
                new_values=new,
                metadata={"invoiceId": invoice.id, "billingCycle": sub.billing_cycle},
                idempotency_key=key,
                now=now,
            )
        logger.info(
            "Subscription %s auto-renewed until %s", sub.subscription_code, new["endDate"]
        )
        return sub, created

    def _record_renewal_failure(self, subscription_id: int, error: Exception, now: datetime.datetime) -> None:
        key = f"auto_renewal_failed:{subscription_id}:{now.date().isoformat()}"
        try:
            if activity.has_key(key):
                return
            with atomic():
                sub = get_subscription(subscription_id)
                activity.log_action(
                    sub,
                    "auto_renewal_failed",
                    f"Auto-renewal failed for {sub.subscription_code}: {error}",
                    category="renewal",
                    severity="high",
                    metadata={"reason": str(error)},
                    idempotency_key=key,
                    now=now,
                )
        except Exception as exc:
            db.session.rollback()
            logger.error("Could not log auto-renewal failure for %s: %s", subscription_id, exc)
            return
        safe_notify(self.notifier, "auto_renewal_failed", sub, {"error": str(error)})

    # ------------------------------------------------------------------
    # Phase 4: scheduled invoices
    # ------------------------------------------------------------------

    def _scheduled_invoices(self, report: RunReport, now: datetime.datetime) -> None:
        day_start = start_of_day(now.date())
        ids = [
            row.id
            for row in db.session.query(Subscription.id).filter(
                Subscription.status == "active",
                Subscription.next_billing_date >= day_start,
                Subscription.next_billing_date < day_start + _ONE_DAY,
            ).order_by(Subscription.id)
        ]
        today = now.date().isoformat()

        def handle(subscription_id):
            key = f"scheduled_invoice:{subscription_id}:{today}"
            self._claim(key)
            with atomic():
                sub = get_subscription(subscription_id, lock=True)
                invoice, created = generate_scheduled_invoice(
                    sub,
                    due_days=self.config.invoice_due_days,
                    idempotency_key=key,
                    now=now,
                )
            if not created:
                raise _Skip(key)
            report.invoices_generated += 1
            safe_notify(self.notifier, "invoice_generated", invoice, {})

        self._each(report, ids, "Invoice generation", handle)

    # ------------------------------------------------------------------
    # Phase 5: overdue invoices
    # ------------------------------------------------------------------

    def _overdue_reminders(self, report: RunReport, now: datetime.datetime) -> None:
        ids = [
            row.id
            for row in db.session.query(Invoice.id).filter(
                Invoice.status.notin_(CLOSED_STATUSES),
                Invoice.due_date < now,
            ).order_by(Invoice.id)
        ]
        today = now.date().isoformat()
        reminder_days = set(self.config.overdue_reminder_days)

        def handle(invoice_id):
            key = f"overdue_reminder:{invoice_id}:{today}"
            reminded = False
            with atomic():
                invoice = Invoice.query.filter_by(id=invoice_id).with_for_update().first()
                overdue_days = days_overdue(invoice, now)
                mark_overdue(invoice)
                if overdue_days in reminder_days and not activity.has_key(key):
                    record_reminder(invoice, now)
                    sub = db.session.get(Subscription, invoice.subscription_id)
                    activity.log_action(
                        sub,
                        "reminder_sent",
                        f"Overdue reminder for invoice {invoice.invoice_number} - "
                        f"{overdue_days} days overdue",
                        category="billing",
                        metadata={
                            "invoiceId": invoice.id,
                            "daysOverdue": overdue_days,
                            "alertType": "overdue_payment",
                        },
                        idempotency_key=key,
                        now=now,
                    )
                    reminded = True
            if reminded:
                report.overdue_reminders += 1
                safe_notify(self.notifier, "overdue_reminder", invoice, {"daysOverdue": overdue_days})

        self._each(report, ids, "Overdue reminder", handle)

    # ------------------------------------------------------------------
    # Manual triggers
    # ------------------------------------------------------------------

    def trigger_renewal_alert(self, subscription_id: int, performed_by: str = SYSTEM_ACTOR) -> dict:
        """Send a renewal reminder for one subscription now."""
        now = self.now()
        with atomic():
            sub = get_subscription(subscription_id)
            remaining = days_remaining(SubscriptionTerms.from_subscription(sub), now)
            activity.log_action(
                sub,
                "reminder_sent",
                f"Renewal reminder sent - {remaining} days until expiry",
                metadata={"daysUntilExpiry": remaining, "alertType": "renewal_reminder"},
                performed_by=performed_by,
                now=now,
            )
        safe_notify(self.notifier, "renewal_alert", sub, {"daysUntilExpiry": remaining})
        return {"success": True, "daysRemaining": remaining}

    def trigger_auto_renewal(self, subscription_id: int) -> dict:
        """Run the auto-renewal path for one subscription immediately."""
        now = self.now()
        sub, _created = self._renew_with_invoice(subscription_id, now, None)
        safe_notify(self.notifier, "auto_renewed", sub, {})
        return {"success": True, "newEndDate": as_utc(sub.end_date).isoformat()}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def automation_status(self) -> dict:
        """Last run and the work today's run would pick up."""
        now = self.now()
        today = now.date()
        alerts_due = 0
        for days in self.config.renewal_alert_days:
            window_start = start_of_day(today + datetime.timedelta(days=days))
            alerts_due += Subscription.query.filter(
                Subscription.status == "active",
                Subscription.end_date >= window_start,
                Subscription.end_date < window_start + _ONE_DAY,
            ).count()
        expired = Subscription.query.filter(
            Subscription.status == "active", Subscription.end_date < now
        )
        renewals_due = 0
        if self.config.auto_renewal_enabled:
            renewals_due = expired.filter(Subscription.auto_renew.is_(True)).count()
            expirations_due = expired.filter(Subscription.auto_renew.isnot(True)).count()
        else:
            expirations_due = expired.count()
        day_start = start_of_day(today)
        invoices_due = Subscription.query.filter(
            Subscription.status == "active",
            Subscription.next_billing_date >= day_start,
            Subscription.next_billing_date < day_start + _ONE_DAY,
        ).count()
        overdue = Invoice.query.filter(
            Invoice.status.notin_(CLOSED_STATUSES), Invoice.due_date < now
        ).count()
        last = AutomationRun.query.order_by(AutomationRun.id.desc()).first()
        return {
            "lastRun": last.report if last else None,
            "lastRunAt": as_utc(last.finished_at).isoformat() if last and last.finished_at else None,
            "upcoming": {
                "renewalAlerts": alerts_due,
                "expirations": expirations_due,
                "autoRenewals": renewals_due,
                "scheduledInvoices": invoices_due,
                "overdueInvoices": overdue,
            },
            "settings": self.config.to_dict(),
        }


def build_engine(clock: Optional[Callable[[], datetime.datetime]] = None) -> BillingAutomationEngine:
    """Engine wired from the application config and persisted overrides."""
    return BillingAutomationEngine(get_automation_config(), current_notifier(), clock or utc_now)
