# FILE: app/crud/crud_advance.py
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models.billing import PatientAdvanceBalance


def get_balance_row(db: Session,
                    patient_id: int,
                    *,
                    lock: bool = False) -> Optional[PatientAdvanceBalance]:
    stmt = select(PatientAdvanceBalance).where(
        PatientAdvanceBalance.patient_id == int(patient_id))
    if lock:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def get_or_create_balance_row(db: Session,
                              patient_id: int) -> PatientAdvanceBalance:
    row = get_balance_row(db, patient_id, lock=True)
    if row is None:
        row = PatientAdvanceBalance(
            patient_id=int(patient_id),
            total_advance_paid=Decimal("0"),
            total_advance_used=Decimal("0"),
            current_balance=Decimal("0"),
        )
        db.add(row)
        db.flush()
    return row


def _apply(db: Session, patient_id: int, stmt) -> bool:
    res = db.execute(stmt.execution_options(synchronize_session=False))
    # loaded wallet rows are stale after a bulk UPDATE
    for obj in list(db.identity_map.values()):
        if isinstance(obj, PatientAdvanceBalance) and obj.patient_id == int(
                patient_id):
            db.expire(obj)
    return (res.rowcount or 0) == 1


def increment(db: Session, patient_id: int, *, balance: Decimal,
              paid: Decimal = Decimal("0"), used: Decimal = Decimal("0")) -> bool:
    """
    current_balance += balance, total_advance_paid += paid,
    total_advance_used += used (any of them may be negative).
    """
    stmt = (update(PatientAdvanceBalance).where(
        PatientAdvanceBalance.patient_id == int(patient_id)).values(
            current_balance=PatientAdvanceBalance.current_balance + balance,
            total_advance_paid=PatientAdvanceBalance.total_advance_paid + paid,
            total_advance_used=PatientAdvanceBalance.total_advance_used + used,
        ))
    return _apply(db, patient_id, stmt)


def decrement_if_available(db: Session, patient_id: int, *, amount: Decimal,
                           paid: Decimal = Decimal("0"),
                           used: Decimal = Decimal("0")) -> bool:
    """
    Compare-and-set debit: only touches the row while
    current_balance >= amount, so two debits can never both pass.
    """
    stmt = (update(PatientAdvanceBalance).where(
        PatientAdvanceBalance.patient_id == int(patient_id)).where(
            PatientAdvanceBalance.current_balance >= amount).values(
                current_balance=PatientAdvanceBalance.current_balance - amount,
                total_advance_paid=PatientAdvanceBalance.total_advance_paid +
                paid,
                total_advance_used=PatientAdvanceBalance.total_advance_used +
                used,
            ))
    return _apply(db, patient_id, stmt)
