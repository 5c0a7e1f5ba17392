# FILE: app/schemas/billing_payments.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from app.schemas.common import ApiError


class PaymentIn(BaseModel):
    """
    Raw payment request. Fields are deliberately loose: the payment
    validator owns the rules and their order, so a bad request surfaces
    as a typed billing error rather than a schema error.
    """
    patient_id: Optional[int] = None
    amount: Optional[Decimal] = None
    payment_method: Optional[str] = None
    payment_type: Optional[str] = None

    bill_type: Optional[str] = None
    bill_id: Optional[int] = None

    transaction_id: Optional[str] = None
    bank_name: Optional[str] = None
    cheque_number: Optional[str] = None
    cheque_date: Optional[date] = None

    payment_date: Optional[datetime] = None
    notes: Optional[str] = None


class AdvanceAmountIn(BaseModel):
    amount: Optional[Decimal] = None


class RefundIn(BaseModel):
    amount: Optional[Decimal] = None
    reason: str = ""


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payment_number: str
    receipt_number: Optional[str] = None
    patient_id: int
    bill_type: str
    bill_id: Optional[int] = None
    payment_type: str
    payment_method: str
    amount: Decimal
    payment_status: str
    refunded_amount: Decimal = Decimal("0")
    refund_of_id: Optional[int] = None
    transaction_id: Optional[str] = None
    bank_name: Optional[str] = None
    cheque_number: Optional[str] = None
    cheque_date: Optional[date] = None
    notes: Optional[str] = None
    payment_date: datetime
    processed_by: Optional[int] = None


class AdvanceSummaryOut(BaseModel):
    patient_id: int
    total_advance_paid: Decimal
    total_advance_used: Decimal
    current_balance: Decimal


class BillingResult(BaseModel):
    """
    What every PaymentProcessor operation returns:
    {success: true, data: {...}} or {success: false, error: {code, msg}}.
    """
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[ApiError] = None

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None) -> "BillingResult":
        return cls(success=True, data=data or {})

    @classmethod
    def fail(cls, code: str, msg: str) -> "BillingResult":
        return cls(success=False, error=ApiError(msg=msg, code=code))

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None
