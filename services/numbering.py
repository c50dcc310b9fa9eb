"""Tag-based code numbering for subscriptions, invoices and payments.

Supported tags:
  [YYYY]    4-digit year
  [YY]      2-digit year
  [MM]      month (01-12)
  [DD]      day (01-31)
  [C+]      counter, number of C's = digit width (resets per scope)

Everything outside brackets is literal text.
Example: ``INV-[YYYY]-[CCCC]`` -> ``INV-2026-0001``

Counters live in ``number_sequence`` rows keyed by (entity type, scope);
the scope is built from the date tags so ``INV-[YYYY]-...`` restarts each year.
"""

from __future__ import annotations

import datetime
import logging
import re
from typing import Optional

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError

from config_models import NumberingConfig
from exceptions import ConcurrencyError, ValidationError
from extensions import db
from models import NumberSequence
from utils import utc_now

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"\[([A-Z]+)\]")


def _numbering_config() -> NumberingConfig:
    if has_app_context():
        return current_app.config.get("NUMBERING_CONFIG") or NumberingConfig()
    return NumberingConfig()


def pattern_for(entity_type: str) -> str:
    cfg = _numbering_config()
    patterns = {
        "invoice": cfg.invoice_pattern,
        "payment": cfg.payment_pattern,
        "subscription": cfg.subscription_pattern,
    }
    if entity_type not in patterns:
        raise ValidationError(f"No numbering pattern for {entity_type!r}")
    return patterns[entity_type]


def _next_sequence(entity_type: str, scope_key: str) -> int:
    """Atomically increment and return the next sequence value.

    Must run inside the caller's unit of work; the counter row is locked
    (``SELECT ... FOR UPDATE`` where supported) and incremented with a single
    SQL expression.  A concurrent first insert of the same scope surfaces as
    ``ConcurrencyError`` and the whole unit rolls back.
    """
    seq = NumberSequence.query.filter_by(
        entity_type=entity_type, scope_key=scope_key
    ).with_for_update().first()
    if not seq:
        seq = NumberSequence(
            entity_type=entity_type, scope_key=scope_key, last_value=1
        )
        db.session.add(seq)
        try:
            db.session.flush()
        except IntegrityError as exc:
            logger.warning(
                "Sequence collision for %s/%s", entity_type, scope_key
            )
            raise ConcurrencyError(
                f"Sequence {entity_type}/{scope_key} was allocated concurrently"
            ) from exc
        return 1
    seq.last_value = NumberSequence.last_value + 1
    db.session.flush()
    db.session.refresh(seq)
    return seq.last_value


def format_number(
    pattern: str, now: datetime.datetime, counter: Optional[int] = None
) -> tuple[str, str, int]:
    """Expand *pattern* for *now*.

    Returns ``(text, scope_key, counter_digits)``.  When *counter* is None the
    counter tag is left as ``{counter}`` for the caller to fill in.
    """
    scope_parts: list[str] = []
    result_parts: list[str] = []
    counter_digits = 0
    last_end = 0

    for match in _TAG_RE.finditer(pattern):
        tag = match.group(1)
        start, end = match.start(), match.end()
        if start > last_end:
            result_parts.append(pattern[last_end:start])

        if tag == "YYYY":
            val = str(now.year)
            result_parts.append(val)
            scope_parts.append(val)
        elif tag == "YY":
            val = str(now.year % 100).zfill(2)
            result_parts.append(val)
            scope_parts.append(val)
        elif tag == "MM":
            val = f"{now.month:02d}"
            result_parts.append(val)
            scope_parts.append(val)
        elif tag == "DD":
            val = f"{now.day:02d}"
            result_parts.append(val)
            scope_parts.append(val)
        elif tag and all(c == "C" for c in tag):
            counter_digits = len(tag)
            if counter is None:
                result_parts.append("{counter}")
            else:
                result_parts.append(str(counter).zfill(counter_digits))
        else:
            # Unknown tag, kept as literal
            result_parts.append(match.group(0))
        last_end = end

    if last_end < len(pattern):
        result_parts.append(pattern[last_end:])

    return "".join(result_parts), "-".join(scope_parts), counter_digits


def generate_number(
    entity_type: str, *, now: Optional[datetime.datetime] = None
) -> str:
    """Allocate the next code for *entity_type* (``invoice``, ``payment``,
    ``subscription``) using its configured pattern."""
    now = now or utc_now()
    pattern = pattern_for(entity_type)
    template, scope_key, digits = format_number(pattern, now)
    if not digits:
        raise ValidationError(
            f"Numbering pattern {pattern!r} for {entity_type} has no counter tag"
        )
    value = _next_sequence(entity_type, scope_key)
    return template.replace("{counter}", str(value).zfill(digits))
