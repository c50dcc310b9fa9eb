"""Operator-editable automation settings.

The file/env configuration gives the baseline ``AutomationConfig``; values
saved by operators live in ``app_setting`` rows and are merged in every time
a config is requested.  No configuration object is ever mutated.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from flask import current_app, has_app_context

from config_models import AutomationConfig
from exceptions import ValidationError
from extensions import atomic, db
from models import AppSetting
from utils import parse_bool, parse_int_list, safe_int

logger = logging.getLogger(__name__)

_PREFIX = "automation."

# field name -> (camelCase API key, parser)
_FIELDS = {
    "renewal_alert_days": ("renewalAlertDays", "int_list"),
    "grace_period_days": ("gracePeriodDays", "int"),
    "auto_renewal_enabled": ("autoRenewalEnabled", "bool"),
    "email_notifications_enabled": ("emailNotificationsEnabled", "bool"),
    "overdue_reminder_days": ("overdueReminderDays", "int_list"),
    "invoice_due_days": ("invoiceDueDays", "int"),
    "high_value_transaction_threshold": ("highValueTransactionThreshold", "int"),
}
_BY_API_KEY = {api: field for field, (api, _kind) in _FIELDS.items()}


def _baseline() -> AutomationConfig:
    if has_app_context():
        cfg = current_app.config.get("AUTOMATION_CONFIG")
        if cfg is not None:
            return cfg
    return AutomationConfig()


def _get_setting(key: str, default: Optional[str] = None) -> Optional[str]:
    row = AppSetting.query.filter_by(key=key).first()
    return row.value if row and row.value is not None else default


def _parse(field: str, raw):
    kind = _FIELDS[field][1]
    if kind == "int_list":
        values = parse_int_list(raw, None)
        if values is None or any(v <= 0 for v in values):
            raise ValidationError(f"{_FIELDS[field][0]} must be a list of positive integers")
        return tuple(sorted(set(values), reverse=True))
    if kind == "int":
        value = safe_int(raw, -1)
        if value < 0:
            raise ValidationError(f"{_FIELDS[field][0]} must be a non-negative integer")
        return value
    return parse_bool(raw)


def get_automation_config(base: Optional[AutomationConfig] = None) -> AutomationConfig:
    """Baseline config with persisted operator overrides applied."""
    base = base or _baseline()
    overrides = {}
    for field in _FIELDS:
        raw = _get_setting(_PREFIX + field)
        if raw is None:
            continue
        try:
            overrides[field] = _parse(field, json.loads(raw))
        except (ValueError, ValidationError):
            logger.warning("Ignoring invalid stored setting %s=%r", field, raw)
    return base.with_overrides(**overrides) if overrides else base


def update_automation_settings(changes: dict, updated_by: str = "system") -> AutomationConfig:
    """Validate and persist *changes* (camelCase or snake_case keys)."""
    parsed = {}
    for key, raw in changes.items():
        field = _BY_API_KEY.get(key, key)
        if field not in _FIELDS:
            raise ValidationError(f"Unknown automation setting {key!r}")
        parsed[field] = _parse(field, raw)

    with atomic():
        for field, value in parsed.items():
            stored = json.dumps(list(value) if isinstance(value, tuple) else value)
            row = AppSetting.query.filter_by(key=_PREFIX + field).first()
            if row:
                row.value = stored
                row.updated_by = updated_by
            else:
                db.session.add(AppSetting(key=_PREFIX + field, value=stored, updated_by=updated_by))

    logger.info("Automation settings updated by %s: %s", updated_by, sorted(parsed))
    return get_automation_config()
