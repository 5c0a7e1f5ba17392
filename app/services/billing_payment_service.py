# FILE: app/services/billing_payment_service.py
"""
Payment processing pipeline.

Every public method is one database transaction:

    coerce -> resolve bill -> validate -> check due -> write ledger
           -> touch wallet -> recompute status (savepoint) -> commit

and returns a BillingResult instead of raising. A failed status recompute
after the payment row is written does not undo the payment; it is reported
through the event sink and the result carries billing_updated=False.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.crud import crud_bills, crud_payments
from app.models.billing import (
    BillType,
    PatientPayment,
    PaymentRecordStatus,
    PaymentType,
    PaymentMethod,
)
from app.schemas.billing_payments import BillingResult, PaymentIn, PaymentOut
from app.services.billing_advance import AdvanceBalanceManager
from app.services.billing_due import DueBreakdown, classify_payment, resolve_due
from app.services.billing_errors import (
    AlreadyRefunded,
    AmountExceedsDue,
    BillingError,
    InsufficientAdvanceBalance,
    InvalidAmount,
    InvalidPaymentType,
    InvalidRefundTarget,
    PatientMismatch,
    PaymentNotFound,
    PersistenceError,
    ProcessingError,
    RefundExceedsPayment,
    ValidationError,
)
from app.services.billing_events import BillingEventSink, LoggingEventSink
from app.services.billing_math import money
from app.services.billing_resolver import BillResolver, ResolvedBill
from app.services.billing_status import BillingStatusUpdater, StatusUpdate
from app.services.billing_validator import (
    parse_bill_type,
    parse_payment_type,
    validate_payment,
)

logger = logging.getLogger(__name__)


def _fmt(x: Decimal) -> str:
    return f"{money(x):,.2f}"


def _payment_dict(row: PatientPayment) -> Dict[str, Any]:
    return PaymentOut.model_validate(row).model_dump()


def _first_pydantic_error(e: PydanticValidationError) -> str:
    errs = e.errors()
    if not errs:
        return "Invalid payment request"
    loc = ".".join(str(p) for p in errs[0].get("loc", ()))
    return f"Invalid value for {loc}: {errs[0].get('msg')}"


class PaymentProcessor:

    def __init__(self, db: Session, events: BillingEventSink | None = None):
        self.db = db
        self.events = events or LoggingEventSink()
        self.resolver = BillResolver(db, self.events)
        self.advances = AdvanceBalanceManager(db, self.events)
        self.status = BillingStatusUpdater(db, self.events)

    # =====================================================================
    # transaction boundary
    # =====================================================================
    def _run(self, op: str, fn: Callable[[], Dict[str, Any]],
             **ctx: Any) -> BillingResult:
        try:
            data = fn()
            self.db.commit()
        except BillingError as e:
            self.db.rollback()
            self.events.emit("operation_rejected",
                             logging.WARNING,
                             op=op,
                             code=e.code,
                             msg=e.msg,
                             **ctx)
            return BillingResult.fail(e.code, e.msg)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("billing %s: database error", op)
            self.events.emit("persistence_failed",
                             logging.ERROR,
                             op=op,
                             error=str(e),
                             **ctx)
            err = PersistenceError()
            return BillingResult.fail(err.code, err.msg)
        except Exception as e:
            self.db.rollback()
            logger.exception("billing %s: unexpected error", op)
            self.events.emit("processing_failed",
                             logging.ERROR,
                             op=op,
                             error=repr(e),
                             **ctx)
            err = ProcessingError()
            return BillingResult.fail(err.code, err.msg)
        return BillingResult.ok(data)

    def _recompute(self, resolved: ResolvedBill, *, actor_id: Optional[int],
                   reason: str) -> Optional[StatusUpdate]:
        """Status recompute inside a SAVEPOINT; None when it failed."""
        try:
            with self.db.begin_nested():
                return self.status.update(resolved,
                                          actor_id=actor_id,
                                          reason=reason)
        except (SQLAlchemyError, ValueError) as e:
            logger.warning("status recompute failed for %s: %s",
                           resolved.ref(), e)
            self.events.emit("status_recompute_failed",
                             logging.ERROR,
                             **resolved.ref(),
                             reason=reason,
                             error=str(e))
            return None

    # =====================================================================
    # helpers
    # =====================================================================
    @staticmethod
    def _coerce(payload) -> PaymentIn:
        if isinstance(payload, PaymentIn):
            return payload.model_copy()
        try:
            return PaymentIn.model_validate(payload or {})
        except PydanticValidationError as e:
            raise ValidationError(_first_pydantic_error(e))

    def _due(self, resolved: ResolvedBill) -> DueBreakdown:
        paid = crud_payments.sum_non_refunded(self.db,
                                              resolved.bill_type.value,
                                              resolved.canonical_id)
        return resolve_due(resolved.total_amount,
                           resolved.advance_applied,
                           resolved.insurance_covered,
                           paid,
                           stored_due=resolved.stored_due)

    def _insert(self, req: PaymentIn, *, method: PaymentMethod,
                amount: Decimal, bill_type: str, bill_id: Optional[int],
                payment_type: str,
                actor_id: Optional[int]) -> PatientPayment:
        row = crud_payments.insert_payment(
            self.db,
            patient_id=int(req.patient_id),
            bill_type=bill_type,
            bill_id=bill_id,
            payment_type=payment_type,
            payment_method=method.value,
            amount=amount,
            transaction_id=req.transaction_id,
            bank_name=req.bank_name,
            cheque_number=req.cheque_number,
            cheque_date=req.cheque_date,
            payment_status=PaymentRecordStatus.COMPLETED.value,
            notes=req.notes,
            payment_date=req.payment_date or datetime.utcnow(),
            processed_by=actor_id,
        )
        self.events.emit("payment_recorded",
                         payment_id=row.id,
                         payment_number=row.payment_number,
                         patient_id=row.patient_id,
                         bill_type=bill_type,
                         bill_id=bill_id,
                         payment_type=payment_type,
                         amount=str(amount))
        return row

    def _accept_advance(self, req: PaymentIn, method: PaymentMethod, *,
                        actor_id: Optional[int]) -> Dict[str, Any]:
        requested = parse_payment_type(req.payment_type)
        if requested not in (None, PaymentType.ADVANCE):
            raise InvalidPaymentType(
                "Payments without a bill must be advance payments")

        amount = money(req.amount)
        row = self._insert(req,
                           method=method,
                           amount=amount,
                           bill_type=BillType.ADVANCE.value,
                           bill_id=None,
                           payment_type=PaymentType.ADVANCE.value,
                           actor_id=actor_id)
        balance = self.advances.add(row.patient_id, amount)
        return {
            "payment_id": row.id,
            "payment": _payment_dict(row),
            "advance_balance": balance,
            "billing_updated": False,
        }

    def _accept_bill(self, req: PaymentIn, method: PaymentMethod,
                     resolved: ResolvedBill, *, actor_id: Optional[int],
                     honour_payment_type: bool) -> Dict[str, Any]:
        if int(req.patient_id) != resolved.patient_id:
            raise PatientMismatch(
                f"Patient {req.patient_id} does not own "
                f"{resolved.bill_type.value} bill {resolved.bill.id}")

        amount = money(req.amount)
        due = self._due(resolved)
        if amount > due.due_amount:
            raise AmountExceedsDue(
                f"Payment amount ({_fmt(amount)}) exceeds due amount "
                f"({_fmt(due.due_amount)}). Bill total: "
                f"{_fmt(due.total_amount)}, Already paid: "
                f"{_fmt(due.total_paid)}")

        payment_type = classify_payment(due.due_amount, amount)
        requested = parse_payment_type(req.payment_type)
        if honour_payment_type and requested is not None:
            if requested in (PaymentType.ADVANCE, PaymentType.REFUND):
                raise InvalidPaymentType(
                    f"{requested.value} is not a valid type for a bill payment")
            payment_type = requested.value

        # the due above was read against this version of the bill
        crud_bills.touch_bill(self.db, resolved.bill, actor_id=actor_id)
        row = self._insert(req,
                           method=method,
                           amount=amount,
                           bill_type=resolved.bill_type.value,
                           bill_id=resolved.canonical_id,
                           payment_type=payment_type,
                           actor_id=actor_id)

        upd = self._recompute(resolved, actor_id=actor_id, reason="payment")
        out: Dict[str, Any] = {
            "payment_id": row.id,
            "payment": _payment_dict(row),
            "bill": resolved.ref(),
            "due_before": due.due_amount,
            "billing_updated": upd is not None,
        }
        if upd is not None:
            out.update(upd.as_dict())
        return out

    # =====================================================================
    # payments
    # =====================================================================
    def process_payment(self, payload, *,
                        actor_id: Optional[int] = None) -> BillingResult:
        """
        Generic entry point. Without a bill_id (or with bill_type 'advance')
        the money goes to the patient wallet; otherwise it is applied to
        the resolved bill and payment_type, when given, is kept.
        """

        def work():
            req = self._coerce(payload)
            method = validate_payment(req)

            if req.bill_type is None or not str(req.bill_type).strip():
                if req.bill_id:
                    raise ValidationError(
                        "Bill type is required when bill_id is given")
                bill_type = BillType.ADVANCE
            else:
                bill_type = parse_bill_type(req.bill_type)

            if bill_type is BillType.ADVANCE:
                return self._accept_advance(req, method, actor_id=actor_id)

            resolved = self.resolver.resolve(bill_type,
                                             req.bill_id,
                                             actor_id=actor_id,
                                             lock=True)
            return self._accept_bill(req,
                                     method,
                                     resolved,
                                     actor_id=actor_id,
                                     honour_payment_type=True)

        return self._run("process_payment", work)

    def process_bill_payment(self,
                             bill_type,
                             bill_id,
                             payload,
                             *,
                             actor_id: Optional[int] = None) -> BillingResult:
        """
        Pay against a specific bill. patient_id defaults to the bill's
        patient; payment_type is always derived (full/partial) from the due.
        """

        def work():
            req = self._coerce(payload)
            bt = parse_bill_type(bill_type)
            resolved = self.resolver.resolve(bt,
                                             bill_id,
                                             actor_id=actor_id,
                                             lock=True)
            if not req.patient_id:
                req.patient_id = resolved.patient_id
            method = validate_payment(req)
            return self._accept_bill(req,
                                     method,
                                     resolved,
                                     actor_id=actor_id,
                                     honour_payment_type=False)

        return self._run("process_bill_payment",
                         work,
                         bill_type=str(bill_type),
                         bill_id=bill_id)

    def process_advance_payment(self,
                                patient_id,
                                payload,
                                *,
                                actor_id: Optional[int] = None
                                ) -> BillingResult:

        def work():
            req = self._coerce(payload)
            req.patient_id = patient_id
            req.bill_type = BillType.ADVANCE.value
            req.bill_id = None
            method = validate_payment(req)
            return self._accept_advance(req, method, actor_id=actor_id)

        return self._run("process_advance_payment", work, patient_id=patient_id)

    # =====================================================================
    # wallet <-> bill
    # =====================================================================
    def apply_advance_balance(self,
                              bill_type,
                              bill_id,
                              amount,
                              *,
                              actor_id: Optional[int] = None) -> BillingResult:
        """Move wallet money onto a bill (never more than its due)."""

        def work():
            if amount is None or money(amount) <= 0:
                raise InvalidAmount("Amount to apply must be > 0")
            amt = money(amount)
            resolved = self.resolver.resolve(parse_bill_type(bill_type),
                                             bill_id,
                                             actor_id=actor_id,
                                             lock=True)
            due = self._due(resolved)
            if amt > due.due_amount:
                raise AmountExceedsDue(
                    f"Advance to apply ({_fmt(amt)}) exceeds due amount "
                    f"({_fmt(due.due_amount)})")
            crud_bills.touch_bill(self.db, resolved.bill, actor_id=actor_id)

            pid = resolved.patient_id
            if not self.advances.use(pid, amt):
                raise InsufficientAdvanceBalance(
                    f"Insufficient advance balance. Available: "
                    f"{_fmt(self.advances.get_balance(pid))}")

            bill = resolved.bill
            crud_bills.update_bill(
                self.db,
                bill,
                **{
                    resolved.advance_field: resolved.advance_applied + amt,
                    "wallet_applied": money(bill.wallet_applied) + amt,
                    "updated_by": actor_id,
                })

            upd = self._recompute(resolved,
                                  actor_id=actor_id,
                                  reason="advance_apply")
            out: Dict[str, Any] = {
                "bill": resolved.ref(),
                "applied": amt,
                "advance_balance": self.advances.get_balance(pid),
                "billing_updated": upd is not None,
            }
            if upd is not None:
                out.update(upd.as_dict())
            return out

        return self._run("apply_advance_balance",
                         work,
                         bill_type=str(bill_type),
                         bill_id=bill_id)

    def release_advance_balance(self,
                                bill_type,
                                bill_id,
                                amount,
                                *,
                                actor_id: Optional[int] = None
                                ) -> BillingResult:
        """
        Undo an earlier apply: take wallet money back off the bill and
        return it to the patient's balance. Only money that came from the
        wallet can be released.
        """

        def work():
            if amount is None or money(amount) <= 0:
                raise InvalidAmount("Amount to release must be > 0")
            amt = money(amount)
            resolved = self.resolver.resolve(parse_bill_type(bill_type),
                                             bill_id,
                                             actor_id=actor_id,
                                             lock=True,
                                             synthesize=False)
            bill = resolved.bill
            from_wallet = money(bill.wallet_applied)
            if amt > from_wallet:
                raise InsufficientAdvanceBalance(
                    f"Only {_fmt(from_wallet)} of wallet advance is applied "
                    f"to this bill")

            crud_bills.update_bill(
                self.db,
                bill,
                **{
                    resolved.advance_field: resolved.advance_applied - amt,
                    "wallet_applied": from_wallet - amt,
                    "updated_by": actor_id,
                })
            balance = self.advances.reverse(resolved.patient_id, amt)

            upd = self._recompute(resolved,
                                  actor_id=actor_id,
                                  reason="advance_release")
            out: Dict[str, Any] = {
                "bill": resolved.ref(),
                "released": amt,
                "advance_balance": balance,
                "billing_updated": upd is not None,
            }
            if upd is not None:
                out.update(upd.as_dict())
            return out

        return self._run("release_advance_balance",
                         work,
                         bill_type=str(bill_type),
                         bill_id=bill_id)

    # =====================================================================
    # status / refunds
    # =====================================================================
    def update_billing_status(self,
                              bill_type,
                              bill_id,
                              *,
                              actor_id: Optional[int] = None) -> BillingResult:
        """Recompute paid/due/status from the ledger. Idempotent."""

        def work():
            bt = parse_bill_type(bill_type)
            if bt is BillType.ADVANCE:
                return {"billing_updated": False, "bill": None}
            resolved = self.resolver.resolve(bt,
                                             bill_id,
                                             actor_id=actor_id,
                                             lock=True,
                                             synthesize=False)
            upd = self.status.update(resolved,
                                     actor_id=actor_id,
                                     reason="recompute")
            out = {"bill": resolved.ref(), "billing_updated": True}
            out.update(upd.as_dict())
            return out

        return self._run("update_billing_status",
                         work,
                         bill_type=str(bill_type),
                         bill_id=bill_id)

    def refund_payment(self,
                       payment_id,
                       amount=None,
                       reason: str = "",
                       *,
                       actor_id: Optional[int] = None) -> BillingResult:
        """
        Refund all (amount=None) or part of a payment. Adds a refund row,
        marks the original refunded, takes advance refunds back out of the
        wallet and recomputes the bill.
        """

        def work():
            original = crud_payments.get_payment(self.db, payment_id, lock=True)
            if not original:
                raise PaymentNotFound(f"Payment not found: {payment_id}")
            if original.payment_type == PaymentType.REFUND.value:
                raise InvalidRefundTarget()
            if original.payment_status == PaymentRecordStatus.REFUNDED.value:
                raise AlreadyRefunded()

            paid = money(original.amount)
            refund_amt = paid if amount is None else money(amount)
            if refund_amt <= 0:
                raise InvalidAmount("Refund amount must be > 0")
            if refund_amt > paid:
                raise RefundExceedsPayment(
                    f"Refund amount ({_fmt(refund_amt)}) cannot exceed "
                    f"payment amount ({_fmt(paid)})")

            is_advance = (original.bill_type == BillType.ADVANCE.value
                          or original.payment_type == PaymentType.ADVANCE.value)

            resolved = None
            if not is_advance and original.bill_id:
                resolved = self.resolver.resolve(
                    parse_bill_type(original.bill_type),
                    original.bill_id,
                    actor_id=actor_id,
                    lock=True,
                    synthesize=False)

            if not crud_payments.mark_refunded(self.db,
                                               original,
                                               amount=refund_amt,
                                               at=datetime.utcnow()):
                raise AlreadyRefunded()

            if is_advance and not self.advances.refund_advance(
                    original.patient_id, refund_amt):
                raise InsufficientAdvanceBalance(
                    "Advance has already been applied to bills. Available: "
                    f"{_fmt(self.advances.get_balance(original.patient_id))}")

            refund = crud_payments.insert_payment(
                self.db,
                with_receipt=False,
                patient_id=original.patient_id,
                bill_type=original.bill_type,
                bill_id=original.bill_id,
                payment_type=PaymentType.REFUND.value,
                payment_method=original.payment_method,
                amount=refund_amt,
                payment_status=PaymentRecordStatus.REFUNDED.value,
                refund_of_id=original.id,
                notes=f"Refund: {reason}" if reason else "Refund",
                payment_date=datetime.utcnow(),
                processed_by=actor_id,
            )
            self.events.emit("payment_refunded",
                             payment_id=original.id,
                             refund_id=refund.id,
                             amount=str(refund_amt),
                             reason=reason)

            out: Dict[str, Any] = {
                "refund": _payment_dict(refund),
                "original": _payment_dict(original),
                "billing_updated": False,
            }
            if is_advance:
                out["advance_balance"] = self.advances.get_balance(
                    original.patient_id)
            if resolved is not None:
                upd = self._recompute(resolved,
                                      actor_id=actor_id,
                                      reason="refund")
                out["bill"] = resolved.ref()
                out["billing_updated"] = upd is not None
                if upd is not None:
                    out.update(upd.as_dict())
            return out

        return self._run("refund_payment", work, payment_id=payment_id)

    # =====================================================================
    # reads
    # =====================================================================
    def get_bill_summary(self, bill_type, bill_id) -> BillingResult:

        def work():
            resolved = self.resolver.resolve(parse_bill_type(bill_type),
                                             bill_id,
                                             lock=False,
                                             synthesize=False)
            due = self._due(resolved)
            rows = crud_payments.list_by_bill(self.db,
                                              resolved.bill_type.value,
                                              resolved.canonical_id)
            out = {
                "bill": resolved.ref(),
                "payment_status": resolved.bill.payment_status,
                "split_ledger": resolved.split_ledger,
                "payments": [_payment_dict(r) for r in rows],
            }
            out.update(due.as_dict())
            return out

        return self._run("get_bill_summary",
                         work,
                         bill_type=str(bill_type),
                         bill_id=bill_id)

    def get_payment(self, payment_id) -> BillingResult:

        def work():
            row = crud_payments.get_payment(self.db, payment_id)
            if not row:
                raise PaymentNotFound(f"Payment not found: {payment_id}")
            return {"payment": _payment_dict(row)}

        return self._run("get_payment", work, payment_id=payment_id)

    def get_payment_by_receipt(self, receipt_number) -> BillingResult:

        def work():
            row = None
            if receipt_number and str(receipt_number).strip():
                row = crud_payments.get_by_receipt(self.db,
                                                   str(receipt_number))
            if not row:
                raise PaymentNotFound(
                    f"No payment with receipt number: {receipt_number}")
            return {"payment": _payment_dict(row)}

        return self._run("get_payment_by_receipt",
                         work,
                         receipt_number=receipt_number)

    def list_patient_payments(self,
                              patient_id,
                              bill_type=None) -> BillingResult:

        def work():
            bt = parse_bill_type(bill_type).value if bill_type else None
            rows = crud_payments.list_by_patient(self.db,
                                                 patient_id,
                                                 bill_type=bt)
            return {
                "patient_id": int(patient_id),
                "payments": [_payment_dict(r) for r in rows],
            }

        return self._run("list_patient_payments", work, patient_id=patient_id)

    def get_advance_summary(self, patient_id) -> BillingResult:
        return self._run("get_advance_summary",
                         lambda: self.advances.summary(patient_id),
                         patient_id=patient_id)
