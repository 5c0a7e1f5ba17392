from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_actor_id, get_db
from app.api.response import from_result
from app.schemas.billing_payments import AdvanceAmountIn, PaymentIn, RefundIn
from app.services.billing_payment_service import PaymentProcessor

router = APIRouter(prefix="/billing/payments", tags=["Billing Payments"])


def _processor(db: Session) -> PaymentProcessor:
    return PaymentProcessor(db)


# ------------------------------------------------------------------
# payments
# ------------------------------------------------------------------
@router.post("")
def create_payment(
        payload: PaymentIn = Body(...),
        db: Session = Depends(get_db),
        actor_id: Optional[int] = Depends(get_actor_id),
):
    res = _processor(db).process_payment(payload, actor_id=actor_id)
    return from_result(res, status_code=201)


@router.post("/bills/{bill_type}/{bill_id}")
def pay_bill(
        bill_type: str,
        bill_id: int,
        payload: PaymentIn = Body(...),
        db: Session = Depends(get_db),
        actor_id: Optional[int] = Depends(get_actor_id),
):
    res = _processor(db).process_bill_payment(bill_type,
                                              bill_id,
                                              payload,
                                              actor_id=actor_id)
    return from_result(res, status_code=201)


@router.get("/bills/{bill_type}/{bill_id}")
def bill_summary(
        bill_type: str,
        bill_id: int,
        db: Session = Depends(get_db),
):
    return from_result(_processor(db).get_bill_summary(bill_type, bill_id))


@router.post("/bills/{bill_type}/{bill_id}/status")
def recompute_bill_status(
        bill_type: str,
        bill_id: int,
        db: Session = Depends(get_db),
        actor_id: Optional[int] = Depends(get_actor_id),
):
    res = _processor(db).update_billing_status(bill_type,
                                               bill_id,
                                               actor_id=actor_id)
    return from_result(res)


@router.post("/bills/{bill_type}/{bill_id}/apply-advance")
def apply_advance(
        bill_type: str,
        bill_id: int,
        payload: AdvanceAmountIn = Body(...),
        db: Session = Depends(get_db),
        actor_id: Optional[int] = Depends(get_actor_id),
):
    res = _processor(db).apply_advance_balance(bill_type,
                                               bill_id,
                                               payload.amount,
                                               actor_id=actor_id)
    return from_result(res)


@router.post("/bills/{bill_type}/{bill_id}/release-advance")
def release_advance(
        bill_type: str,
        bill_id: int,
        payload: AdvanceAmountIn = Body(...),
        db: Session = Depends(get_db),
        actor_id: Optional[int] = Depends(get_actor_id),
):
    res = _processor(db).release_advance_balance(bill_type,
                                                 bill_id,
                                                 payload.amount,
                                                 actor_id=actor_id)
    return from_result(res)


@router.post("/{payment_id}/refund")
def refund(
        payment_id: int,
        payload: Optional[RefundIn] = Body(None),
        db: Session = Depends(get_db),
        actor_id: Optional[int] = Depends(get_actor_id),
):
    payload = payload or RefundIn()
    res = _processor(db).refund_payment(payment_id,
                                        payload.amount,
                                        payload.reason,
                                        actor_id=actor_id)
    return from_result(res, status_code=201)


# ------------------------------------------------------------------
# patients
# ------------------------------------------------------------------
@router.get("/patients/{patient_id}")
def patient_payments(
        patient_id: int,
        bill_type: Optional[str] = Query(None),
        db: Session = Depends(get_db),
):
    res = _processor(db).list_patient_payments(patient_id, bill_type)
    return from_result(res)


@router.post("/patients/{patient_id}/advance")
def add_advance(
        patient_id: int,
        payload: PaymentIn = Body(...),
        db: Session = Depends(get_db),
        actor_id: Optional[int] = Depends(get_actor_id),
):
    res = _processor(db).process_advance_payment(patient_id,
                                                 payload,
                                                 actor_id=actor_id)
    return from_result(res, status_code=201)


@router.get("/patients/{patient_id}/advance")
def advance_summary(
        patient_id: int,
        db: Session = Depends(get_db),
):
    return from_result(_processor(db).get_advance_summary(patient_id))


# ------------------------------------------------------------------
# single payment lookups
# ------------------------------------------------------------------
@router.get("/receipts/{receipt_number}")
def payment_by_receipt(
        receipt_number: str,
        db: Session = Depends(get_db),
):
    return from_result(_processor(db).get_payment_by_receipt(receipt_number))


@router.get("/{payment_id}")
def get_payment(
        payment_id: int,
        db: Session = Depends(get_db),
):
    return from_result(_processor(db).get_payment(payment_id))
