# FILE: app/services/billing_validator.py
from __future__ import annotations

from typing import Optional

from app.models.billing import BillType, PaymentMethod, PaymentType
from app.schemas.billing_payments import PaymentIn
from app.services.billing_errors import (
    InvalidAmount,
    InvalidBillType,
    InvalidMethod,
    InvalidPaymentType,
    MissingChequeFields,
    MissingPatient,
    MissingTransactionId,
)
from app.services.billing_math import money

NEEDS_TRANSACTION_ID = {PaymentMethod.CARD, PaymentMethod.BANK_TRANSFER}


def _blank(v) -> bool:
    return v is None or (isinstance(v, str) and not v.strip())


def validate_payment(req: PaymentIn) -> PaymentMethod:
    """
    Checks run in a fixed order and stop at the first failure:
    patient, amount, method, cheque fields, transaction id.
    Returns the parsed payment method.
    """
    if not req.patient_id:
        raise MissingPatient()

    if req.amount is None or money(req.amount) <= 0:
        raise InvalidAmount()

    if _blank(req.payment_method):
        raise InvalidMethod("Payment method is required")
    try:
        method = PaymentMethod(req.payment_method.strip().lower())
    except ValueError:
        raise InvalidMethod(f"Invalid payment method: {req.payment_method}")

    if method == PaymentMethod.CHEQUE:
        if _blank(req.cheque_number) or _blank(req.bank_name):
            raise MissingChequeFields()

    if method in NEEDS_TRANSACTION_ID and _blank(req.transaction_id):
        raise MissingTransactionId(
            f"Transaction ID is required for {method.value} payments")

    return method


def parse_bill_type(value) -> BillType:
    if isinstance(value, BillType):
        return value
    try:
        return BillType(str(value or "").strip().lower())
    except ValueError:
        raise InvalidBillType(f"Invalid bill type: {value}")


def parse_payment_type(value) -> Optional[PaymentType]:
    if _blank(value):
        return None
    if isinstance(value, PaymentType):
        return value
    try:
        return PaymentType(str(value).strip().lower())
    except ValueError:
        raise InvalidPaymentType(f"Invalid payment type: {value}")
