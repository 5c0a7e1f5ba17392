# FILE: app/services/ipd_billing.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.billing import (
    BillPaymentStatus,
    IpdBilling,
    NumberDocType,
    NumberResetPeriod,
)
from app.models.ipd import IpdAdmission
from app.services.billing_math import D, ZERO, money, percent_of
from app.services.billing_numbers import next_billing_number

# charge_type on IpdAdmissionCharge -> bill column
CHARGE_HEADS = {
    "lab": "lab_charges",
    "medication": "medication_charges",
    "imaging": "imaging_charges",
    "procedure": "procedure_charges",
    "other": "other_charges",
}

# -------------------------
# Helpers / Rules
# -------------------------


def billable_days(adm: IpdAdmission, as_of: Optional[datetime] = None) -> int:
    """
    Days of room rent for an admission.
    Priority:
      1) admission.stay_days (manual override)
      2) calendar days between admission and discharge (or as_of / now)
    Minimum one day.
    """
    if adm.stay_days:
        return max(1, int(adm.stay_days))

    start = (adm.admitted_at or datetime.utcnow()).date()
    end_ts = adm.discharged_at or as_of or datetime.utcnow()
    end: date = end_ts.date()
    return max(1, (end - start).days)


def compute_admission_charges(
    adm: IpdAdmission,
    *,
    tax_percent=None,
    as_of: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Bill values for an admission that has no IPD bill yet.

    room = daily rate x billable days, plus posted charges by head,
    flat tax on (subtotal - discount). Advance / insurance are copied from
    the admission desk values.
    """
    rate = D(settings.BILLING_IPD_TAX_PERCENT
             if tax_percent is None else tax_percent)

    days = billable_days(adm, as_of)
    heads: Dict[str, Decimal] = {col: ZERO for col in CHARGE_HEADS.values()}
    heads["room_charges"] = money(D(adm.room_daily_rate) * days)

    for ch in adm.charges or []:
        col = CHARGE_HEADS.get((ch.charge_type or "other").lower(),
                               "other_charges")
        heads[col] = money(heads[col] + D(ch.amount))

    subtotal = money(sum(heads.values(), Decimal("0")))
    discount = ZERO
    tax = percent_of(subtotal - discount, rate)
    total = money(subtotal - discount + tax)

    out: Dict[str, Any] = dict(heads)
    out.update({
        "subtotal": subtotal,
        "discount": discount,
        "tax": tax,
        "total_amount": total,
        "advance_paid": money(adm.advance_payment),
        "insurance_covered": money(adm.insurance_coverage_amount),
        "stay_days": days,
        "tax_percent": rate,
    })
    return out


def build_ipd_bill_values(db: Session, adm: IpdAdmission) -> Dict[str, Any]:
    """
    Column values for a new IpdBilling row synthesized from an admission.
    due_amount is left NULL: the first status pass computes it from the ledger.
    """
    charges = compute_admission_charges(adm)
    values = {
        k: v
        for k, v in charges.items() if hasattr(IpdBilling, k)
    }
    values["bill_number"] = next_billing_number(
        db,
        doc_type=NumberDocType.IPD_BILL,
        prefix=settings.BILLING_IPD_BILL_PREFIX,
        reset_period=NumberResetPeriod.YEAR,
        padding=settings.BILLING_NUMBER_PADDING,
    )
    values["paid_amount"] = ZERO
    values["due_amount"] = None
    values["payment_status"] = BillPaymentStatus.PENDING.value
    return values
