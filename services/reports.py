"""Read-only revenue and payment reporting derived from the ledger."""

from __future__ import annotations

import datetime
from typing import Optional

from sqlalchemy import func

from extensions import db
from models import Invoice, Payment
from utils import as_utc, money, utc_now


def _range(start, end, now):
    now = now or utc_now()
    start = start or datetime.datetime(now.year, 1, 1, tzinfo=datetime.timezone.utc)
    return start, end or now


def revenue_stats(
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    now: Optional[datetime.datetime] = None,
) -> dict:
    """Totals over paid invoices; defaults to the year to date."""
    start, end = _range(start, end, now)
    total, count, average = (
        db.session.query(
            func.sum(Invoice.paid_amount),
            func.count(Invoice.id),
            func.avg(Invoice.total),
        )
        .filter(
            Invoice.status == "paid",
            Invoice.paid_date >= start,
            Invoice.paid_date <= end,
        )
        .one()
    )
    return {
        "totalRevenue": str(money(total or 0)),
        "totalInvoices": count or 0,
        "averageInvoiceValue": str(money(average or 0)),
    }


def monthly_revenue(year: Optional[int] = None) -> list[dict]:
    """Paid revenue per calendar month of *year* (12 entries)."""
    year = year or utc_now().year
    start = datetime.datetime(year, 1, 1, tzinfo=datetime.timezone.utc)
    end = datetime.datetime(year + 1, 1, 1, tzinfo=datetime.timezone.utc)
    rows = (
        db.session.query(Invoice.paid_date, Invoice.paid_amount)
        .filter(
            Invoice.status == "paid",
            Invoice.paid_date >= start,
            Invoice.paid_date < end,
        )
        .all()
    )
    buckets = {month: [money(0), 0] for month in range(1, 13)}
    for paid_date, paid_amount in rows:
        bucket = buckets[as_utc(paid_date).month]
        bucket[0] += money(paid_amount)
        bucket[1] += 1
    return [
        {"month": month, "revenue": str(revenue), "invoiceCount": count}
        for month, (revenue, count) in buckets.items()
    ]


def payment_stats(
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    now: Optional[datetime.datetime] = None,
) -> list[dict]:
    """Count and amounts of payments per status."""
    start, end = _range(start, end, now)
    rows = (
        db.session.query(
            Payment.status,
            func.count(Payment.id),
            func.sum(Payment.amount),
            func.avg(Payment.amount),
        )
        .filter(Payment.payment_date >= start, Payment.payment_date <= end)
        .group_by(Payment.status)
        .order_by(Payment.status)
        .all()
    )
    return [
        {
            "status": status,
            "count": count,
            "totalAmount": str(money(total or 0)),
            "averageAmount": str(money(average or 0)),
        }
        for status, count, total, average in rows
    ]


def payment_method_stats(
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    now: Optional[datetime.datetime] = None,
) -> list[dict]:
    """Completed payments broken down by method, largest total first."""
    start, end = _range(start, end, now)
    total = func.sum(Payment.amount)
    rows = (
        db.session.query(Payment.payment_method, func.count(Payment.id), total)
        .filter(
            Payment.status == "completed",
            Payment.payment_date >= start,
            Payment.payment_date <= end,
        )
        .group_by(Payment.payment_method)
        .order_by(total.desc())
        .all()
    )
    return [
        {"method": method, "count": count, "totalAmount": str(money(amount or 0))}
        for method, count, amount in rows
    ]
