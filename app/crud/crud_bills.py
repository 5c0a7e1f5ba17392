# FILE: app/crud/crud_bills.py
from __future__ import annotations

from typing import Any, Dict, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from app.models.billing import BillType, IpdBilling, OpdBill
from app.models.ipd import IpdAdmission

Bill = Union[IpdBilling, OpdBill]

BILL_MODELS = {
    BillType.IPD: IpdBilling,
    BillType.OPD: OpdBill,
}

# the field holding "advance already applied" differs per table
ADVANCE_FIELD = {
    BillType.IPD: "advance_paid",
    BillType.OPD: "advance_applied",
}

# fields a caller may write through update_bill
WRITABLE_FIELDS = {
    "advance_paid",
    "advance_applied",
    "wallet_applied",
    "insurance_covered",
    "paid_amount",
    "due_amount",
    "payment_status",
    "updated_by",
}


def get_bill(db: Session,
             bill_type: BillType,
             bill_id: int,
             *,
             lock: bool = False) -> Optional[Bill]:
    model = BILL_MODELS.get(bill_type)
    if model is None or bill_id is None:
        return None
    stmt = select(model).where(model.id == int(bill_id))
    if lock:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def get_ipd_by_admission(db: Session,
                         admission_id: int,
                         *,
                         lock: bool = False) -> Optional[IpdBilling]:
    """
    Latest IPD bill for an admission (legacy rows were keyed by admission).
    """
    stmt = (select(IpdBilling).where(
        IpdBilling.admission_id == int(admission_id)).order_by(
            IpdBilling.billing_date.desc(), IpdBilling.id.desc()).limit(1))
    if lock:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def get_admission(db: Session, admission_id: int) -> Optional[IpdAdmission]:
    return db.get(IpdAdmission, int(admission_id))


def create_ipd_billing(db: Session, *, admission: IpdAdmission,
                       values: Dict[str, Any],
                       actor_id: Optional[int]) -> IpdBilling:
    bill = IpdBilling(
        admission_id=admission.id,
        patient_id=admission.patient_id,
        created_by=actor_id,
        updated_by=actor_id,
        **values,
    )
    db.add(bill)
    db.flush()
    return bill


def update_bill(db: Session, bill: Bill, **fields: Any) -> Bill:
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Not writable on bills: {sorted(unknown)}")
    for k, v in fields.items():
        setattr(bill, k, v)
    db.add(bill)
    # flush bumps version; a concurrent writer raises StaleDataError here
    db.flush()
    return bill


def touch_bill(db: Session, bill: Bill, *, actor_id: Optional[int]) -> Bill:
    """
    Claim the bill for this transaction before money is booked against it.
    Always issues an UPDATE, so the version moves even when nothing else
    changes and a writer holding an older copy fails here with
    StaleDataError.
    """
    bill.updated_by = actor_id
    flag_modified(bill, "updated_by")
    db.add(bill)
    db.flush()
    return bill


def list_ipd_bills(db: Session):
    return db.scalars(select(IpdBilling).order_by(IpdBilling.id.asc())).all()
