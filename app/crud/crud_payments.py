# FILE: app/crud/crud_payments.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.billing import (
    NumberDocType,
    PatientPayment,
    PaymentRecordStatus,
    PaymentType,
)
from app.services.billing_math import money
from app.services.billing_numbers import next_billing_number


def _bill_filter(stmt, bill_type: str, bill_id: int):
    return stmt.where(PatientPayment.bill_type == bill_type).where(
        PatientPayment.bill_id == int(bill_id))


def insert_payment(db: Session, *, with_receipt: bool = True,
                   **fields: Any) -> PatientPayment:
    """
    Write one ledger row. payment_number / receipt_number come from the
    numbering series; refunds get an RFD- number and no receipt.
    """
    is_refund = fields.get("payment_type") == PaymentType.REFUND.value
    pad = settings.BILLING_NUMBER_PADDING

    if is_refund:
        number = next_billing_number(db,
                                     doc_type=NumberDocType.REFUND,
                                     prefix=settings.BILLING_REFUND_PREFIX,
                                     padding=pad)
    else:
        number = next_billing_number(db,
                                     doc_type=NumberDocType.PAYMENT,
                                     prefix=settings.BILLING_PAYMENT_PREFIX,
                                     padding=pad)
    receipt = None
    if with_receipt and not is_refund:
        receipt = next_billing_number(db,
                                      doc_type=NumberDocType.RECEIPT,
                                      prefix=settings.BILLING_RECEIPT_PREFIX,
                                      padding=pad)

    row = PatientPayment(payment_number=number,
                         receipt_number=receipt,
                         **fields)
    db.add(row)
    db.flush()
    return row


def get_payment(db: Session,
                payment_id: int,
                *,
                lock: bool = False) -> Optional[PatientPayment]:
    stmt = select(PatientPayment).where(PatientPayment.id == int(payment_id))
    if lock:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def get_by_receipt(db: Session, receipt_number: str) -> Optional[PatientPayment]:
    return db.scalar(
        select(PatientPayment).where(
            PatientPayment.receipt_number == receipt_number.strip()))


def sum_non_refunded(db: Session, bill_type: str, bill_id: int) -> Decimal:
    """
    Money currently held against a bill:
      completed rows count in full,
      refunded originals count only their unrefunded remainder,
      refund rows themselves never count.
    """
    remaining = case(
        (PatientPayment.payment_status == PaymentRecordStatus.COMPLETED.value,
         PatientPayment.amount),
        else_=PatientPayment.amount - PatientPayment.refunded_amount,
    )
    stmt = select(func.coalesce(func.sum(remaining), 0)).where(
        PatientPayment.payment_type != PaymentType.REFUND.value)
    stmt = _bill_filter(stmt, bill_type, bill_id)
    return money(db.scalar(stmt))


def count_by_bill(db: Session, bill_type: str, bill_id: int) -> int:
    stmt = select(func.count(PatientPayment.id))
    stmt = _bill_filter(stmt, bill_type, bill_id)
    return int(db.scalar(stmt) or 0)


def list_by_bill(db: Session, bill_type: str,
                 bill_id: int) -> List[PatientPayment]:
    stmt = select(PatientPayment).order_by(PatientPayment.payment_date.asc(),
                                           PatientPayment.id.asc())
    stmt = _bill_filter(stmt, bill_type, bill_id)
    return list(db.scalars(stmt).all())


def list_by_patient(db: Session,
                    patient_id: int,
                    *,
                    bill_type: Optional[str] = None) -> List[PatientPayment]:
    stmt = (select(PatientPayment).where(
        PatientPayment.patient_id == int(patient_id)).order_by(
            PatientPayment.payment_date.desc(), PatientPayment.id.desc()))
    if bill_type:
        stmt = stmt.where(PatientPayment.bill_type == bill_type)
    return list(db.scalars(stmt).all())


def mark_refunded(db: Session, payment: PatientPayment, *, amount: Decimal,
                  at: datetime) -> bool:
    """
    Flip a completed payment to refunded. Guarded on the current status,
    so of two refunds racing on the same payment only one gets the row.
    """
    stmt = (update(PatientPayment).where(
        PatientPayment.id == payment.id).where(
            PatientPayment.payment_status ==
            PaymentRecordStatus.COMPLETED.value).values(
                payment_status=PaymentRecordStatus.REFUNDED.value,
                refunded_amount=amount,
                refunded_at=at,
            ).execution_options(synchronize_session=False))
    res = db.execute(stmt)
    db.expire(payment)
    return (res.rowcount or 0) == 1
