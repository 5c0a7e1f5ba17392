# FILE: app/services/billing_errors.py
from __future__ import annotations


class BillingError(Exception):
    """
    Base for every failure the payment core reports to its callers.

    code is stable (used by API clients / tests), msg is human readable,
    http_status is what the HTTP layer answers with.
    """
    code = "billing_error"
    http_status = 400

    def __init__(self, msg: str | None = None):
        self.msg = msg or self.default_msg()
        super().__init__(self.msg)

    def default_msg(self) -> str:
        return "Billing operation failed"


# ---------- validation ----------
class ValidationError(BillingError):
    code = "validation_error"

    def default_msg(self) -> str:
        return "Invalid payment request"


class MissingPatient(ValidationError):
    code = "missing_patient"

    def default_msg(self) -> str:
        return "Patient ID is required"


class InvalidAmount(ValidationError):
    code = "invalid_amount"

    def default_msg(self) -> str:
        return "Valid payment amount is required"


class InvalidMethod(ValidationError):
    code = "invalid_method"

    def default_msg(self) -> str:
        return "Invalid payment method"


class MissingChequeFields(ValidationError):
    code = "missing_cheque_fields"

    def default_msg(self) -> str:
        return "Cheque number and bank name are required for cheque payments"


class MissingTransactionId(ValidationError):
    code = "missing_transaction_id"

    def default_msg(self) -> str:
        return "Transaction ID is required"


class InvalidBillType(ValidationError):
    code = "invalid_bill_type"

    def default_msg(self) -> str:
        return "Invalid bill type"


class InvalidPaymentType(ValidationError):
    code = "invalid_payment_type"

    def default_msg(self) -> str:
        return "Invalid payment type"


class PatientMismatch(ValidationError):
    code = "patient_mismatch"

    def default_msg(self) -> str:
        return "Payment patient does not match the bill's patient"


# ---------- lookups ----------
class BillNotFound(BillingError):
    code = "bill_not_found"
    http_status = 404

    def default_msg(self) -> str:
        return "Bill not found"


class PaymentNotFound(BillingError):
    code = "payment_not_found"
    http_status = 404

    def default_msg(self) -> str:
        return "Payment not found"


# ---------- business rules ----------
class AmountExceedsDue(BillingError):
    code = "amount_exceeds_due"
    http_status = 409

    def default_msg(self) -> str:
        return "Payment amount exceeds due amount"


class InsufficientAdvanceBalance(BillingError):
    code = "insufficient_advance_balance"
    http_status = 409

    def default_msg(self) -> str:
        return "Insufficient advance balance"


class AlreadyRefunded(BillingError):
    code = "already_refunded"
    http_status = 409

    def default_msg(self) -> str:
        return "Payment already refunded"


class RefundExceedsPayment(BillingError):
    code = "refund_exceeds_payment"
    http_status = 409

    def default_msg(self) -> str:
        return "Refund amount cannot exceed payment amount"


class InvalidRefundTarget(BillingError):
    code = "invalid_refund_target"
    http_status = 409

    def default_msg(self) -> str:
        return "A refund record cannot itself be refunded"


# ---------- infrastructure ----------
class PersistenceError(BillingError):
    code = "persistence_error"
    http_status = 503

    def default_msg(self) -> str:
        return "Failed to save billing data"


class ProcessingError(BillingError):
    code = "processing_error"
    http_status = 500

    def default_msg(self) -> str:
        return "Payment processing error"


def http_status_for(code: str | None) -> int:
    """HTTP status for an error code carried in a BillingResult."""
    stack = [BillingError]
    while stack:
        cls = stack.pop()
        if cls.code == code:
            return cls.http_status
        stack.extend(cls.__subclasses__())
    return 400
