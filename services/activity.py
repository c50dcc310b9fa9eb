"""Subscription activity log: append-only audit trail and idempotency oracle."""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from sqlalchemy import func, or_

from exceptions import NotFoundError, ValidationError
from extensions import atomic, db
from models import (
    CRITICAL_LOG_ACTIONS,
    SYSTEM_ACTOR,
    VALID_LOG_ACTIONS,
    VALID_LOG_CATEGORIES,
    VALID_LOG_SEVERITIES,
    SubscriptionLog,
)
from utils import utc_now

logger = logging.getLogger(__name__)


def log_action(
    subscription,
    action: str,
    description: str,
    *,
    category: str = "subscription",
    severity: str = "medium",
    previous_values: Optional[dict] = None,
    new_values: Optional[dict] = None,
    metadata: Optional[dict] = None,
    performed_by: str = SYSTEM_ACTOR,
    performed_by_role: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> SubscriptionLog:
    """Append a log entry for *subscription*.

    NOTE: This does NOT commit; the entry joins the caller's unit of work so
    it is written together with the change it describes.
    """
    if action not in VALID_LOG_ACTIONS:
        raise ValidationError(f"Unknown activity action {action!r}")
    if category not in VALID_LOG_CATEGORIES:
        raise ValidationError(f"Unknown activity category {category!r}")
    if severity not in VALID_LOG_SEVERITIES:
        raise ValidationError(f"Unknown activity severity {severity!r}")

    meta = dict(metadata or {})
    meta.setdefault("automatic", performed_by == SYSTEM_ACTOR)

    entry = SubscriptionLog(
        subscription_id=subscription.id,
        client_id=subscription.client_id,
        action=action,
        description=description,
        previous_values=previous_values,
        new_values=new_values,
        log_metadata=meta,
        performed_by=performed_by,
        performed_by_role=performed_by_role or (
            SYSTEM_ACTOR if performed_by == SYSTEM_ACTOR else "operator"
        ),
        timestamp=now or utc_now(),
        severity=severity,
        category=category,
        idempotency_key=idempotency_key,
    )
    db.session.add(entry)
    return entry


def has_key(idempotency_key: str) -> bool:
    """True if a side effect with *idempotency_key* was already recorded."""
    return db.session.query(
        SubscriptionLog.query.filter_by(idempotency_key=idempotency_key).exists()
    ).scalar()


def is_critical(entry: SubscriptionLog) -> bool:
    return entry.action in CRITICAL_LOG_ACTIONS


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def timeline(subscription_id: int) -> list[SubscriptionLog]:
    return (
        SubscriptionLog.query.filter_by(subscription_id=subscription_id)
        .order_by(SubscriptionLog.timestamp.desc(), SubscriptionLog.id.desc())
        .all()
    )


def client_activity(client_id: int, limit: int = 50) -> list[SubscriptionLog]:
    return (
        SubscriptionLog.query.filter_by(client_id=client_id)
        .order_by(SubscriptionLog.timestamp.desc(), SubscriptionLog.id.desc())
        .limit(limit)
        .all()
    )


def critical_actions(
    days: int = 30, now: Optional[datetime.datetime] = None
) -> list[SubscriptionLog]:
    """High/critical severity entries and critical actions of the last *days*."""
    since = (now or utc_now()) - datetime.timedelta(days=days)
    return (
        SubscriptionLog.query.filter(
            SubscriptionLog.timestamp >= since,
            or_(
                SubscriptionLog.severity.in_(("high", "critical")),
                SubscriptionLog.action.in_(tuple(CRITICAL_LOG_ACTIONS)),
            ),
        )
        .order_by(SubscriptionLog.timestamp.desc())
        .all()
    )


def action_stats(
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    now: Optional[datetime.datetime] = None,
) -> list[dict]:
    """Count of entries per action, most frequent first.

    Defaults to the current calendar year up to now.
    """
    now = now or utc_now()
    start = start or datetime.datetime(now.year, 1, 1, tzinfo=datetime.timezone.utc)
    end = end or now
    count = func.count(SubscriptionLog.id)
    rows = (
        db.session.query(SubscriptionLog.action, count)
        .filter(SubscriptionLog.timestamp >= start, SubscriptionLog.timestamp <= end)
        .group_by(SubscriptionLog.action)
        .order_by(count.desc())
        .all()
    )
    return [{"action": action, "count": total} for action, total in rows]


def mark_reviewed(
    log_id: int, reviewed_by: str, now: Optional[datetime.datetime] = None
) -> SubscriptionLog:
    """Attach the reviewer marker, the only permitted change to an entry."""
    with atomic():
        entry = db.session.get(SubscriptionLog, log_id)
        if not entry:
            raise NotFoundError(f"Activity log entry {log_id} not found")
        entry.reviewed_by = reviewed_by
        entry.reviewed_at = now or utc_now()
    logger.info("Activity log %s reviewed by %s", log_id, reviewed_by)
    return entry
