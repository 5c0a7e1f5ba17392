from __future__ import annotations

from datetime import datetime
from sqlalchemy.orm import Session

from app.models.billing import BillingNumberSeries, NumberDocType, NumberResetPeriod


def _period_key(dt: datetime, reset: NumberResetPeriod) -> str | None:
    if reset == NumberResetPeriod.NONE:
        return None
    if reset == NumberResetPeriod.YEAR:
        return dt.strftime("%Y")
    return dt.strftime("%Y-%m")  # MONTH


def next_billing_number(
    db: Session,
    *,
    doc_type: NumberDocType,
    prefix: str,
    reset_period: NumberResetPeriod = NumberResetPeriod.YEAR,
    padding: int = 5,
    now: datetime | None = None,
) -> str:
    """
    PAY + YEAR -> "PAY-2026-00001". One series row per (doc_type, prefix),
    locked while the counter moves so two payments never share a number.
    """
    now = now or datetime.utcnow()
    pk = _period_key(now, reset_period)

    row = (db.query(BillingNumberSeries).filter(
        BillingNumberSeries.doc_type == doc_type.value,
        BillingNumberSeries.prefix == prefix,
        BillingNumberSeries.is_active.is_(True),
    ).with_for_update().first())

    if not row:
        row = BillingNumberSeries(
            doc_type=doc_type.value,
            prefix=prefix,
            reset_period=reset_period.value,
            padding=padding,
            next_number=1,
            last_period_key=pk,
            is_active=True,
        )
        db.add(row)
        db.flush()

    # reset logic
    if reset_period != NumberResetPeriod.NONE and row.last_period_key != pk:
        row.last_period_key = pk
        row.next_number = 1

    n = int(row.next_number or 1)
    row.next_number = n + 1
    db.flush()

    parts = [prefix]
    if pk:
        parts.append(pk)
    parts.append(str(n).zfill(int(row.padding or padding)))
    return "-".join(parts)
