from dataclasses import dataclass, replace


@dataclass
class AppConfig:
    name: str
    secret_key: str
    base_currency: str


@dataclass
class EmailConfig:
    enabled: bool
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    sender: str
    operator_cc: str


@dataclass
class NumberingConfig:
    invoice_pattern: str = "INV-[YYYY]-[CCCC]"
    payment_pattern: str = "PAY-[YYYY]-[CCCCC]"
    subscription_pattern: str = "SUB[CCCC]"


@dataclass(frozen=True)
class AutomationConfig:
    """Settings for one run of the daily billing automation.

    Built fresh for every run (config file + persisted overrides); never
    mutated in place.  Use :meth:`with_overrides` to derive a new one.
    """

    renewal_alert_days: tuple = (30, 14, 7, 3, 1)
    grace_period_days: int = 3
    auto_renewal_enabled: bool = True
    email_notifications_enabled: bool = True
    overdue_reminder_days: tuple = (1, 7, 14, 30)
    invoice_due_days: int = 30
    high_value_transaction_threshold: int = 10000

    def with_overrides(self, **changes) -> "AutomationConfig":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "renewalAlertDays": list(self.renewal_alert_days),
            "gracePeriodDays": self.grace_period_days,
            "autoRenewalEnabled": self.auto_renewal_enabled,
            "emailNotificationsEnabled": self.email_notifications_enabled,
            "overdueReminderDays": list(self.overdue_reminder_days),
            "invoiceDueDays": self.invoice_due_days,
            "highValueTransactionThreshold": self.high_value_transaction_threshold,
        }
